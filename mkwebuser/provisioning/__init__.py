"""
Provisioning orchestration.

This package turns a provisioning request into five dependent host
resources that either all exist or are all undone:
- Resource planner: request validation and the fixed five-step plan
- Step executors: apply / verify / rollback per resource type
- Orchestration engine: ordering, rollback, locking, timeout
- Journal: persisted record of every run

Usage:
    from mkwebuser.provisioning import ProvisioningEngine, ProvisionRequest

    engine = ProvisioningEngine(gateway)
    result = engine.provision(
        ProvisionRequest(username="alice", quota=500,
                         user_base="/srv/users", mount_base="/srv/mnt")
    )
    if not result.ok:
        print(result.cause, result.residual_resources)
"""

from mkwebuser.provisioning.engine import ProvisioningEngine
from mkwebuser.provisioning.locks import MountTableLock, UsernameLocks
from mkwebuser.provisioning.planner import ResourcePlanner
from mkwebuser.provisioning.state import (
    JobStatus,
    ProvisioningJob,
    ProvisioningStateManager,
)
from mkwebuser.provisioning.steps import (
    ChrootJail,
    CreateSftpAccount,
    CreateUser,
    CreateVolume,
    MountVolume,
    Step,
    StepContext,
)
from mkwebuser.provisioning.types import (
    ProvisionOutcome,
    ProvisionPlan,
    ProvisionRequest,
    ProvisionResult,
    StepRecord,
    StepState,
    Verification,
)

__all__ = [
    "ChrootJail",
    "CreateSftpAccount",
    "CreateUser",
    "CreateVolume",
    "JobStatus",
    "MountTableLock",
    "MountVolume",
    "ProvisionOutcome",
    "ProvisionPlan",
    "ProvisionRequest",
    "ProvisionResult",
    "ProvisioningEngine",
    "ProvisioningJob",
    "ProvisioningStateManager",
    "ResourcePlanner",
    "Step",
    "StepContext",
    "StepRecord",
    "StepState",
    "UsernameLocks",
    "Verification",
]
