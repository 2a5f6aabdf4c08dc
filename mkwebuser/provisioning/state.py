"""
Provisioning journal.

Tracks provisioning jobs with per-step lifecycle states, errors and the
resources left behind when rollback could not finish.

State is persisted to a JSON file so an operator can see what an
interrupted or failed run left on the host. Without a state file the
journal is kept in memory only.
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from mkwebuser.timestamps import isonow

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Provisioning job status values."""

    RUNNING = "running"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_INCOMPLETE = "rollback_incomplete"


FINISHED_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.ROLLED_BACK,
    JobStatus.ROLLBACK_INCOMPLETE,
}


def new_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:8]}"


@dataclass
class ProvisioningJob:
    """
    A single provisioning run.

    Attributes:
        job_id: Unique job identifier
        correlation_id: Correlation ID used as log prefix
        username: Account being provisioned
        plan_id: Deterministic plan identifier
        status: Current job status
        step: Step currently being executed or rolled back
        step_states: Step id to lifecycle state value
        resumed: True when the run verified and skipped existing resources
        started_at: Job start timestamp (ISO format)
        completed_at: Job completion timestamp (ISO format)
        error: Original failure cause
        rollback_errors: Rollback failure messages
        residual_resources: Resources that need manual cleanup
    """

    job_id: str
    correlation_id: str
    username: str
    plan_id: str
    status: JobStatus
    step: str = ""
    step_states: Dict[str, str] = field(default_factory=dict)
    resumed: bool = False
    started_at: str = ""
    completed_at: str = ""
    error: str = ""
    rollback_errors: List[str] = field(default_factory=list)
    residual_resources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningJob":
        """Create from dictionary (JSON deserialization)."""
        data = dict(data)
        data["status"] = JobStatus(data["status"])
        return cls(**data)


class ProvisioningStateManager:
    """
    Manages the provisioning journal with optional persistence.

    Thread-safe implementation using locks for concurrent access.

    Usage:
        manager = ProvisioningStateManager(Path("/var/lib/mkwebuser/state.json"))

        job = manager.create_job("alice", "plan-alice-1a2b3c4d", ["create_user", ...])
        manager.record_step(job.job_id, "create_user", "applied")
        manager.complete_job(job.job_id)
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        max_history: int = 100,
    ):
        """
        Initialize state manager.

        Args:
            state_file: Path to state JSON file (None keeps the journal in memory)
            max_history: Maximum finished jobs to retain
        """
        self.state_file = Path(state_file) if state_file else None
        self.max_history = max_history

        self._jobs: Dict[str, ProvisioningJob] = {}
        self._lock = threading.RLock()

        if self.state_file is not None:
            self._load_state()

    def _load_state(self) -> None:
        """Load state from disk."""
        if not self.state_file.exists():
            logger.debug("No existing state file, starting fresh")
            return

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)

            for job_data in data.get("jobs", []):
                try:
                    job = ProvisioningJob.from_dict(job_data)
                    self._jobs[job.job_id] = job
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Failed to load job: {e}")

            logger.debug(f"Loaded {len(self._jobs)} jobs from state file")

        except json.JSONDecodeError as e:
            logger.error(f"Corrupted state file: {e}")
        except OSError as e:
            logger.error(f"Failed to load state: {e}")

    def _save_state(self) -> None:
        """Persist state to disk."""
        if self.state_file is None:
            return

        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "updated_at": isonow(),
                "jobs": [job.to_dict() for job in self._jobs.values()],
            }

            # Write atomically using temp file
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)

            temp_file.replace(self.state_file)

        except OSError as e:
            logger.error(f"Failed to save state: {e}")

    def _generate_job_id(self) -> str:
        """Generate unique job ID."""
        return f"prov-{uuid.uuid4().hex[:8]}"

    def _generate_correlation_id(self) -> str:
        """Generate correlation ID if not provided."""
        return new_correlation_id()

    def create_job(
        self,
        username: str,
        plan_id: str,
        step_ids: List[str],
        correlation_id: Optional[str] = None,
    ) -> ProvisioningJob:
        """
        Create a new provisioning job with every step pending.

        Args:
            username: Account being provisioned
            plan_id: Plan identifier
            step_ids: Step ids in plan order
            correlation_id: Optional caller-provided correlation ID

        Returns:
            New ProvisioningJob instance
        """
        with self._lock:
            job = ProvisioningJob(
                job_id=self._generate_job_id(),
                correlation_id=correlation_id or self._generate_correlation_id(),
                username=username,
                plan_id=plan_id,
                status=JobStatus.RUNNING,
                step_states={step_id: "pending" for step_id in step_ids},
                started_at=isonow(),
            )

            self._jobs[job.job_id] = job
            self._save_state()

            logger.info(
                f"[{job.correlation_id}] Created provisioning job {job.job_id} "
                f"for {username}"
            )

            return job

    def record_step(
        self,
        job_id: str,
        step_id: str,
        state: str,
        resumed: bool = False,
    ) -> Optional[ProvisioningJob]:
        """
        Record a step lifecycle transition.

        Args:
            job_id: Job to update
            step_id: Step whose state changed
            state: New lifecycle state value
            resumed: Step was found already applied and skipped

        Returns:
            Updated job or None if not found
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                logger.warning(f"Job {job_id} not found")
                return None

            job.step = step_id
            job.step_states[step_id] = state
            if resumed:
                job.resumed = True

            self._save_state()

            logger.debug(f"[{job.correlation_id}] Job {job_id}: {step_id} -> {state}")

            return job

    def start_rollback(self, job_id: str, error: str) -> Optional[ProvisioningJob]:
        """Record the original failure and switch the job to rolling back."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            job.status = JobStatus.ROLLING_BACK
            job.error = error
            self._save_state()

            logger.error(f"[{job.correlation_id}] Job {job_id} failed: {error}")

            return job

    def complete_job(self, job_id: str) -> Optional[ProvisioningJob]:
        """Mark job as completed successfully."""
        return self._finish(job_id, JobStatus.COMPLETED)

    def mark_rolled_back(self, job_id: str) -> Optional[ProvisioningJob]:
        """Mark job as failed with a clean rollback."""
        return self._finish(job_id, JobStatus.ROLLED_BACK)

    def mark_rollback_incomplete(
        self,
        job_id: str,
        rollback_errors: List[str],
        residual_resources: List[str],
    ) -> Optional[ProvisioningJob]:
        """Mark job as failed with resources left behind."""
        return self._finish(
            job_id,
            JobStatus.ROLLBACK_INCOMPLETE,
            rollback_errors=rollback_errors,
            residual_resources=residual_resources,
        )

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        rollback_errors: Optional[List[str]] = None,
        residual_resources: Optional[List[str]] = None,
    ) -> Optional[ProvisioningJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            job.status = status
            job.completed_at = isonow()
            job.rollback_errors = list(rollback_errors or [])
            job.residual_resources = list(residual_resources or [])

            self._save_state()
            self._prune_old_jobs()

            if status == JobStatus.ROLLBACK_INCOMPLETE:
                logger.error(
                    f"[{job.correlation_id}] Job {job_id} left residual resources: "
                    f"{', '.join(job.residual_resources)}"
                )
            else:
                logger.info(f"[{job.correlation_id}] Job {job_id} {status.value}")

            return job

    def get_job(self, job_id: str) -> Optional[ProvisioningJob]:
        """Get job by ID."""
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(
        self,
        username: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[ProvisioningJob]:
        """
        List jobs with optional filters.

        Args:
            username: Filter by account
            status: Filter by status
            limit: Maximum jobs to return

        Returns:
            List of matching jobs (newest first)
        """
        with self._lock:
            jobs = list(self._jobs.values())

            if username:
                jobs = [j for j in jobs if j.username == username]

            if status:
                jobs = [j for j in jobs if j.status == status]

            jobs.sort(key=lambda j: j.started_at, reverse=True)

            return jobs[:limit]

    def _prune_old_jobs(self) -> None:
        """Remove old finished jobs beyond max_history."""
        finished = [j for j in self._jobs.values() if j.status in FINISHED_STATUSES]

        if len(finished) > self.max_history:
            finished.sort(key=lambda j: j.completed_at or "", reverse=True)
            for job in finished[self.max_history:]:
                del self._jobs[job.job_id]
                logger.debug(f"Pruned old job {job.job_id}")
            self._save_state()
