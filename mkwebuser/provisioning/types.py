"""
Provisioning data model.

ProvisionRequest is the validated input, ProvisionPlan the immutable
five-step plan derived from it, StepRecord the engine-owned lifecycle of
one step and ProvisionResult the terminal outcome of a provision call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from mkwebuser.errors import (
    EXIT_ROLLBACK_INCOMPLETE,
    EXIT_ROLLED_BACK,
    EXIT_SUCCESS,
    RollbackError,
    StepApplyError,
)

if TYPE_CHECKING:
    from mkwebuser.provisioning.steps import Step


@dataclass(frozen=True)
class ProvisionRequest:
    """
    Provisioning request.

    username
    System account to create.

    quota
    Volume size in MiB. The volume is its own filesystem, so this is a
    hard cap.

    user_base
    Parent of the account's home directory.

    mount_base
    Parent of the volume's mount point.
    """

    username: str
    quota: int
    user_base: str
    mount_base: str


@dataclass(frozen=True)
class ProvisionPlan:
    """Ordered, immutable sequence of steps for one request."""

    plan_id: str
    request: ProvisionRequest
    steps: Tuple["Step", ...]

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]


class StepState(str, Enum):
    """Lifecycle of a step inside one provision call."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class Verification(str, Enum):
    """Result of a step's idempotency probe."""

    ALREADY_APPLIED = "already_applied"
    NOT_APPLIED = "not_applied"


@dataclass
class StepRecord:
    """
    Mutable lifecycle record for one step.

    Only the orchestration engine mutates these.

    verified
    True when the step was found already applied and skipped.
    """

    step: "Step"
    state: StepState = StepState.PENDING
    verified: bool = False
    error: Optional[BaseException] = None

    @property
    def step_id(self) -> str:
        return self.step.step_id


class ProvisionOutcome(str, Enum):
    SUCCESS = "success"
    FAILED_AND_ROLLED_BACK = "failed_and_rolled_back"
    FAILED_ROLLBACK_INCOMPLETE = "failed_rollback_incomplete"


_EXIT_CODES = {
    ProvisionOutcome.SUCCESS: EXIT_SUCCESS,
    ProvisionOutcome.FAILED_AND_ROLLED_BACK: EXIT_ROLLED_BACK,
    ProvisionOutcome.FAILED_ROLLBACK_INCOMPLETE: EXIT_ROLLBACK_INCOMPLETE,
}


@dataclass
class ProvisionResult:
    """
    Terminal outcome of a provision call.

    cause
    The original step failure. Rollback errors never replace it.

    residual_resources
    Resources whose rollback failed and need manual cleanup.
    """

    outcome: ProvisionOutcome
    plan: ProvisionPlan
    steps: List[StepRecord]
    job_id: str = ""
    cause: Optional[StepApplyError] = None
    rollback_errors: List[RollbackError] = field(default_factory=list)
    residual_resources: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == ProvisionOutcome.SUCCESS

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.outcome]

    def state_of(self, step_id: str) -> StepState:
        for record in self.steps:
            if record.step_id == step_id:
                return record.state
        raise KeyError(step_id)
