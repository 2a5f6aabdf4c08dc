"""Tests for request validation and plan construction."""

import pytest

from mkwebuser.config.settings import ProvisioningSettings
from mkwebuser.errors import (
    InvalidQuota,
    InvalidUsername,
    PathConflict,
    ResourceConflictError,
    UserAlreadyExists,
)
from mkwebuser.gateway import GatewayOperation
from mkwebuser.provisioning import (
    ChrootJail,
    CreateSftpAccount,
    CreateUser,
    CreateVolume,
    MountVolume,
    ResourcePlanner,
)


@pytest.fixture
def planner(host):
    return ResourcePlanner(host, ProvisioningSettings())


class TestUsernameValidation:
    @pytest.mark.parametrize("username", ["alice", "_svc", "web-01", "a", "x" * 32])
    def test_accepts_system_account_names(self, planner, make_request, username):
        assert planner.check_request(make_request(username=username))[0] == username

    @pytest.mark.parametrize(
        "username",
        [
            "",
            "Alice",
            "1alice",
            "-alice",
            "al ice",
            "al.ice",
            "../etc",
            "alice$",
            "x" * 33,
        ],
    )
    def test_rejects_invalid_names(self, planner, make_request, username):
        with pytest.raises(InvalidUsername):
            planner.check_request(make_request(username=username))

    def test_rejects_non_string(self, planner, make_request):
        with pytest.raises(InvalidUsername):
            planner.check_request(make_request(username=None))

    @pytest.mark.parametrize("username", ["root", "www-data", "nobody", "sshd"])
    def test_rejects_reserved_names(self, planner, make_request, username):
        with pytest.raises(InvalidUsername, match="reserved"):
            planner.check_request(make_request(username=username))

    def test_configured_reserved_names(self, host, make_request):
        planner = ResourcePlanner(host, ProvisioningSettings(reserved_usernames=["deploy"]))
        with pytest.raises(InvalidUsername, match="reserved"):
            planner.check_request(make_request(username="deploy"))


class TestQuotaValidation:
    @pytest.mark.parametrize("quota", [1, 500, 102400])
    def test_accepts_positive_quota(self, planner, make_request, quota):
        assert planner.check_request(make_request(quota=quota))[1] == quota

    @pytest.mark.parametrize("quota", [0, -1, "500", 1.5, None, True])
    def test_rejects_invalid_quota(self, planner, make_request, quota):
        with pytest.raises(InvalidQuota):
            planner.check_request(make_request(quota=quota))

    def test_rejects_quota_above_maximum(self, host, make_request):
        planner = ResourcePlanner(host, ProvisioningSettings(quota_max_mib=1000))
        with pytest.raises(InvalidQuota, match="maximum"):
            planner.check_request(make_request(quota=1001))


class TestPathValidation:
    def test_derives_home_and_mount_point(self, planner, make_request):
        _, _, home, mount_point = planner.check_request(
            make_request(user_base="/srv/users/", mount_base="/srv//mnt")
        )
        assert home == "/srv/users/alice"
        assert mount_point == "/srv/mnt/alice"

    @pytest.mark.parametrize(
        "user_base,mount_base",
        [
            ("srv/users", "/srv/mnt"),
            ("/srv/users", "mnt"),
            ("", "/srv/mnt"),
        ],
    )
    def test_rejects_relative_paths(self, planner, make_request, user_base, mount_base):
        with pytest.raises(PathConflict, match="absolute"):
            planner.check_request(make_request(user_base=user_base, mount_base=mount_base))

    def test_rejects_identical_bases(self, planner, make_request):
        with pytest.raises(PathConflict, match="differ"):
            planner.check_request(make_request(user_base="/srv/x", mount_base="/srv/x/"))

    def test_rejects_overlapping_home_and_mount_point(self, planner, make_request):
        # home /srv/alice, mount point /srv/alice/alice
        with pytest.raises(PathConflict, match="overlap"):
            planner.check_request(make_request(user_base="/srv", mount_base="/srv/alice"))

    def test_check_request_asks_the_host_nothing(self, planner, host, make_request):
        planner.check_request(make_request())
        assert host.calls == []


class TestPlan:
    def test_five_steps_in_fixed_order(self, planner, request_alice):
        plan = planner.validate(request_alice)

        assert [type(s) for s in plan.steps] == [
            CreateUser,
            CreateVolume,
            MountVolume,
            ChrootJail,
            CreateSftpAccount,
        ]
        assert plan.step_ids == [
            "create_user",
            "create_volume",
            "mount_volume",
            "chroot_jail",
            "create_sftp_account",
        ]

    def test_step_parameters(self, planner, request_alice):
        user, volume, mount, jail, sftp = planner.validate(request_alice).steps

        assert user.home == "/srv/users/alice"
        assert volume.path == "/srv/users/alice/volume"
        assert volume.quota_mib == 500
        assert mount.volume == volume.path
        assert mount.target == "/srv/mnt/alice"
        assert jail.jail == mount.target
        assert sftp.jail == mount.target

    def test_plan_id_is_deterministic(self, planner, make_request):
        first = planner.validate(make_request())
        second = planner.validate(make_request())
        other = planner.validate(make_request(quota=501))

        assert first.plan_id == second.plan_id
        assert first.plan_id.startswith("plan-alice-")
        assert other.plan_id != first.plan_id

    def test_planning_never_mutates(self, planner, host, request_alice):
        planner.validate(request_alice)
        assert host.mutating_calls() == []

    def test_existing_account(self, planner, host, request_alice):
        host.execute(GatewayOperation.CREATE_ACCOUNT, ["alice", "/srv/users/alice", "/bin/sh"])
        with pytest.raises(UserAlreadyExists):
            planner.validate(request_alice)

    def test_existing_home_directory(self, planner, host, request_alice):
        host.makedirs("/srv/users/alice")
        with pytest.raises(PathConflict, match="/srv/users/alice"):
            planner.validate(request_alice)

    def test_existing_mount_point(self, planner, host, request_alice):
        host.makedirs("/srv/mnt/alice")
        with pytest.raises(PathConflict, match="/srv/mnt/alice"):
            planner.validate(request_alice)

    def test_resume_accepts_existing_resources(self, planner, host, request_alice):
        host.execute(GatewayOperation.CREATE_ACCOUNT, ["alice", "/srv/users/alice", "/bin/sh"])
        host.makedirs("/srv/mnt/alice")

        plan = planner.validate(request_alice, resume=True)

        assert len(plan.steps) == 5

    def test_resume_rejects_account_with_other_home(self, planner, host, request_alice):
        host.execute(GatewayOperation.CREATE_ACCOUNT, ["alice", "/home/alice", "/bin/sh"])
        with pytest.raises(ResourceConflictError, match="/home/alice"):
            planner.validate(request_alice, resume=True)
