"""
Resource planner.

Purpose
Validate a provisioning request and turn it into the fixed five-step plan.

The order never changes because each step's precondition is the previous
step's postcondition: the volume file lives in the home directory, the
mount needs the volume, the jail is the mount point, and the sftp entry is
scoped to the jail.

The planner has no side effects. It may ask the gateway read-only
questions (does the account exist, does the path exist) but never
mutates the host.
"""

from __future__ import annotations

import hashlib
import posixpath
import re

from mkwebuser.config.settings import ProvisioningSettings
from mkwebuser.errors import (
    InvalidQuota,
    InvalidUsername,
    PathConflict,
    ResourceConflictError,
    UserAlreadyExists,
)
from mkwebuser.gateway.base import GatewayOperation, PrivilegedGateway, query, stat_path
from mkwebuser.provisioning.steps import (
    ChrootJail,
    CreateSftpAccount,
    CreateUser,
    CreateVolume,
    MountVolume,
)
from mkwebuser.provisioning.types import ProvisionPlan, ProvisionRequest

# useradd's default NAME_REGEX, without the trailing '$' for machine accounts
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
MAX_USERNAME_LENGTH = 32

VOLUME_NAME = "volume"

RESERVED_USERNAMES = frozenset(
    {
        "root", "daemon", "bin", "sys", "sync", "games", "man", "lp", "mail",
        "news", "uucp", "proxy", "www-data", "backup", "list", "irc", "gnats",
        "nobody", "nogroup", "sshd", "messagebus", "syslog", "systemd-network",
        "systemd-resolve", "systemd-timesync", "_apt", "admin", "sudo", "wheel",
        "adm", "operator", "halt", "shutdown", "ftp", "postfix",
    }
)


def _overlaps(a: str, b: str) -> bool:
    return a == b or a.startswith(b.rstrip("/") + "/") or b.startswith(a.rstrip("/") + "/")


class ResourcePlanner:
    """
    Deterministic planner.

    validate
    Validates the request and returns an immutable ProvisionPlan.
    Raises a ValidationError subclass for bad input, or
    ResourceConflictError when resuming onto an incompatible account.
    """

    def __init__(self, gateway: PrivilegedGateway, settings: ProvisioningSettings):
        self._gateway = gateway
        self._settings = settings

    def check_request(self, request: ProvisionRequest):
        """
        Syntactic validation only, without asking the host anything.

        Returns (username, quota, home, mount_point).
        """
        username = self._validate_username(request.username)
        quota = self._validate_quota(request.quota)
        home, mount_point = self._validate_paths(request)
        return username, quota, home, mount_point

    def validate(self, request: ProvisionRequest, resume: bool = False) -> ProvisionPlan:
        username, quota, home, mount_point = self.check_request(request)
        self._check_host(username, home, mount_point, resume)

        volume = posixpath.join(home, VOLUME_NAME)
        steps = (
            CreateUser(username=username, home=home),
            CreateVolume(path=volume, quota_mib=quota),
            MountVolume(volume=volume, target=mount_point),
            ChrootJail(username=username, jail=mount_point),
            CreateSftpAccount(username=username, jail=mount_point),
        )

        digest = hashlib.sha1(
            f"{username}|{quota}|{home}|{mount_point}".encode()
        ).hexdigest()[:8]

        return ProvisionPlan(
            plan_id=f"plan-{username}-{digest}",
            request=request,
            steps=steps,
        )

    def _validate_username(self, username) -> str:
        if not isinstance(username, str) or not username:
            raise InvalidUsername("Username must be a non-empty string")
        if len(username) > MAX_USERNAME_LENGTH:
            raise InvalidUsername(
                f"Username {username!r} is longer than {MAX_USERNAME_LENGTH} characters"
            )
        if not USERNAME_PATTERN.match(username):
            raise InvalidUsername(
                f"Username {username!r} must start with a lowercase letter or underscore "
                f"and contain only lowercase letters, digits, '_' and '-'"
            )
        reserved = RESERVED_USERNAMES | set(self._settings.reserved_usernames)
        if username in reserved:
            raise InvalidUsername(f"Username {username!r} is reserved")
        return username

    def _validate_quota(self, quota) -> int:
        if isinstance(quota, bool) or not isinstance(quota, int):
            raise InvalidQuota(f"Quota must be an integer number of MiB, got {quota!r}")
        if quota <= 0:
            raise InvalidQuota(f"Quota must be positive, got {quota}")
        if quota > self._settings.quota_max_mib:
            raise InvalidQuota(
                f"Quota {quota}M exceeds the maximum of {self._settings.quota_max_mib}M"
            )
        return quota

    def _validate_paths(self, request: ProvisionRequest):
        for name, value in (("base", request.user_base), ("mountbase", request.mount_base)):
            if not isinstance(value, str) or not posixpath.isabs(value):
                raise PathConflict(f"{name} must be an absolute path, got {value!r}")

        user_base = posixpath.normpath(request.user_base)
        mount_base = posixpath.normpath(request.mount_base)
        if user_base == mount_base:
            raise PathConflict(f"base and mountbase must differ, both are {user_base}")

        home = posixpath.join(user_base, request.username)
        mount_point = posixpath.join(mount_base, request.username)
        if _overlaps(home, mount_point):
            raise PathConflict(f"Home {home} and mount point {mount_point} overlap")
        return home, mount_point

    def _check_host(self, username: str, home: str, mount_point: str, resume: bool) -> None:
        account_home = query(self._gateway, GatewayOperation.LOOKUP_ACCOUNT, username)

        if resume:
            if account_home is not None and posixpath.normpath(account_home) != home:
                raise ResourceConflictError(
                    f"Account {username} exists with home {account_home}, expected {home}"
                )
            return

        if account_home is not None:
            raise UserAlreadyExists(
                f"Account {username} already exists (use --resume to converge it)"
            )
        for path in (home, mount_point):
            if stat_path(self._gateway, path) is not None:
                raise PathConflict(f"{path} already exists")
