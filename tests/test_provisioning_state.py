"""
Unit tests for provisioning state management.

Tests the ProvisioningStateManager and ProvisioningJob classes.
"""

import json

import pytest

from mkwebuser.provisioning.state import (
    JobStatus,
    ProvisioningJob,
    ProvisioningStateManager,
)

STEP_IDS = ["create_user", "create_volume", "mount_volume"]


class TestJobStatus:
    """Tests for JobStatus enum."""

    def test_status_values(self):
        """All expected status values exist."""
        assert JobStatus.RUNNING.value == "running"
        assert JobStatus.ROLLING_BACK.value == "rolling_back"
        assert JobStatus.COMPLETED.value == "completed"
        assert JobStatus.ROLLED_BACK.value == "rolled_back"
        assert JobStatus.ROLLBACK_INCOMPLETE.value == "rollback_incomplete"


class TestProvisioningJob:
    """Tests for ProvisioningJob dataclass."""

    def test_job_to_dict(self):
        """Job can be serialized to dict."""
        job = ProvisioningJob(
            job_id="prov-123",
            correlation_id="corr-456",
            username="alice",
            plan_id="plan-alice-1a2b3c4d",
            status=JobStatus.RUNNING,
            step="create_volume",
            step_states={"create_user": "applied", "create_volume": "applying"},
        )

        data = job.to_dict()

        assert data["job_id"] == "prov-123"
        assert data["status"] == "running"  # Enum converted to string
        assert data["step"] == "create_volume"
        assert data["step_states"]["create_user"] == "applied"

    def test_job_from_dict(self):
        """Job can be deserialized from dict."""
        data = {
            "job_id": "prov-123",
            "correlation_id": "corr-456",
            "username": "alice",
            "plan_id": "plan-alice-1a2b3c4d",
            "status": "rollback_incomplete",
            "step": "create_user",
            "step_states": {"create_user": "rolled_back", "mount_volume": "rollback_failed"},
            "resumed": False,
            "started_at": "2025-01-01T00:00:00+00:00",
            "completed_at": "2025-01-01T00:05:00+00:00",
            "error": "chroot_jail failed: boom",
            "rollback_errors": ["rollback of mount_volume failed: busy"],
            "residual_resources": ["mount /srv/mnt/alice"],
        }

        job = ProvisioningJob.from_dict(data)

        assert job.status == JobStatus.ROLLBACK_INCOMPLETE
        assert job.residual_resources == ["mount /srv/mnt/alice"]
        assert job.step_states["mount_volume"] == "rollback_failed"

    def test_job_default_values(self):
        """Job has correct default values."""
        job = ProvisioningJob(
            job_id="prov",
            correlation_id="corr",
            username="alice",
            plan_id="plan",
            status=JobStatus.RUNNING,
        )

        assert job.step == ""
        assert job.step_states == {}
        assert job.resumed is False
        assert job.error == ""
        assert job.rollback_errors == []
        assert job.residual_resources == []


class TestProvisioningStateManager:
    """Tests for ProvisioningStateManager."""

    @pytest.fixture
    def state_file(self, tmp_path):
        return tmp_path / "state" / "provisioning.json"

    @pytest.fixture
    def manager(self, state_file):
        return ProvisioningStateManager(state_file=state_file)

    def test_create_job(self, manager):
        """Jobs start running with every step pending."""
        job = manager.create_job("alice", "plan-alice-1", STEP_IDS)

        assert job.job_id.startswith("prov-")
        assert job.correlation_id.startswith("corr-")
        assert job.status == JobStatus.RUNNING
        assert job.step_states == {s: "pending" for s in STEP_IDS}
        assert job.started_at != ""

    def test_create_job_with_correlation_id(self, manager):
        """Caller-provided correlation ID is kept."""
        job = manager.create_job("alice", "plan", STEP_IDS, correlation_id="corr-mine")

        assert job.correlation_id == "corr-mine"

    def test_record_step(self, manager):
        """Step transitions update the current step and its state."""
        job = manager.create_job("alice", "plan", STEP_IDS)

        manager.record_step(job.job_id, "create_user", "applied")
        updated = manager.record_step(job.job_id, "create_volume", "applying")

        assert updated.step == "create_volume"
        assert updated.step_states["create_user"] == "applied"
        assert updated.step_states["create_volume"] == "applying"
        assert updated.resumed is False

    def test_record_resumed_step(self, manager):
        """Skipped steps flag the job as resumed."""
        job = manager.create_job("alice", "plan", STEP_IDS)

        updated = manager.record_step(job.job_id, "create_user", "applied", resumed=True)

        assert updated.resumed is True

    def test_record_step_unknown_job(self, manager):
        """Unknown job IDs return None."""
        assert manager.record_step("prov-missing", "create_user", "applied") is None

    def test_complete_job(self, manager):
        """Completed jobs get a completion timestamp."""
        job = manager.create_job("alice", "plan", STEP_IDS)

        completed = manager.complete_job(job.job_id)

        assert completed.status == JobStatus.COMPLETED
        assert completed.completed_at != ""

    def test_rollback_lifecycle(self, manager):
        """Failure records the cause, then the rollback outcome."""
        job = manager.create_job("alice", "plan", STEP_IDS)

        rolling = manager.start_rollback(job.job_id, "mount_volume failed: boom")
        assert rolling.status == JobStatus.ROLLING_BACK
        assert rolling.error == "mount_volume failed: boom"

        done = manager.mark_rolled_back(job.job_id)
        assert done.status == JobStatus.ROLLED_BACK
        assert done.error == "mount_volume failed: boom"
        assert done.residual_resources == []

    def test_rollback_incomplete(self, manager):
        """Residual resources are kept for the operator."""
        job = manager.create_job("alice", "plan", STEP_IDS)
        manager.start_rollback(job.job_id, "chroot_jail failed")

        done = manager.mark_rollback_incomplete(
            job.job_id,
            ["rollback of mount_volume failed: busy"],
            ["mount /srv/mnt/alice"],
        )

        assert done.status == JobStatus.ROLLBACK_INCOMPLETE
        assert done.rollback_errors == ["rollback of mount_volume failed: busy"]
        assert done.residual_resources == ["mount /srv/mnt/alice"]

    def test_state_persisted_atomically(self, manager, state_file):
        """State file is valid JSON and no temp file is left behind."""
        job = manager.create_job("alice", "plan", STEP_IDS)
        manager.complete_job(job.job_id)

        data = json.loads(state_file.read_text())

        assert data["jobs"][0]["job_id"] == job.job_id
        assert data["jobs"][0]["status"] == "completed"
        assert "updated_at" in data
        assert not state_file.with_suffix(".tmp").exists()

    def test_state_reloaded(self, manager, state_file):
        """A new manager sees jobs written by a previous one."""
        job = manager.create_job("alice", "plan", STEP_IDS)
        manager.start_rollback(job.job_id, "boom")
        manager.mark_rollback_incomplete(job.job_id, ["busy"], ["mount /srv/mnt/alice"])

        reloaded = ProvisioningStateManager(state_file=state_file)
        restored = reloaded.get_job(job.job_id)

        assert restored.status == JobStatus.ROLLBACK_INCOMPLETE
        assert restored.residual_resources == ["mount /srv/mnt/alice"]

    def test_corrupted_state_file(self, state_file):
        """A corrupted state file starts an empty journal."""
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{not json")

        manager = ProvisioningStateManager(state_file=state_file)

        assert manager.list_jobs() == []

    def test_invalid_job_skipped(self, state_file):
        """Jobs that cannot be parsed are skipped, the rest load."""
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({
            "jobs": [
                {"job_id": "broken"},
                {
                    "job_id": "prov-ok",
                    "correlation_id": "corr",
                    "username": "bob",
                    "plan_id": "plan",
                    "status": "completed",
                },
            ]
        }))

        manager = ProvisioningStateManager(state_file=state_file)

        assert [j.job_id for j in manager.list_jobs()] == ["prov-ok"]

    def test_in_memory_journal(self, tmp_path):
        """Without a state file nothing touches the disk."""
        manager = ProvisioningStateManager()
        job = manager.create_job("alice", "plan", STEP_IDS)
        manager.complete_job(job.job_id)

        assert manager.state_file is None
        assert manager.get_job(job.job_id).status == JobStatus.COMPLETED
        assert list(tmp_path.iterdir()) == []

    def test_list_jobs_filters(self, manager):
        """Jobs can be filtered by username and status."""
        a = manager.create_job("alice", "plan-a", STEP_IDS)
        b = manager.create_job("bob", "plan-b", STEP_IDS)
        manager.complete_job(a.job_id)

        assert [j.job_id for j in manager.list_jobs(username="bob")] == [b.job_id]
        assert [j.job_id for j in manager.list_jobs(status=JobStatus.COMPLETED)] == [a.job_id]
        assert len(manager.list_jobs(limit=1)) == 1

    def test_prune_old_jobs(self, state_file):
        """Only max_history finished jobs are kept."""
        manager = ProvisioningStateManager(state_file=state_file, max_history=2)

        for i in range(4):
            job = manager.create_job(f"user{i}", "plan", STEP_IDS)
            manager.complete_job(job.job_id)
        running = manager.create_job("carol", "plan", STEP_IDS)

        remaining = {j.job_id for j in manager.list_jobs(limit=100)}
        assert running.job_id in remaining
        assert len(remaining) == 3
