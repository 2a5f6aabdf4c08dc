"""
Orchestration engine.

Runs a provisioning plan as a single logical unit on top of OS primitives
that are neither transactional nor reversible by themselves:

1) validate the request (no side effects)
2) take the per-username lock (fail fast)
3) plan against the host's current state (read-only)
4) when resuming, verify every step up front (read-only)
5) apply the steps that are not already in place, in order
6) on failure roll back every step this call applied, in reverse order

Rollback is best-effort and continue-on-error. The original failure stays
the primary cause; rollback errors are reported alongside it together with
the resources they left behind. Resources found in place while resuming
existed before the call and are never rolled back.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from mkwebuser.config.settings import AppSettings, get_settings
from mkwebuser.errors import (
    FatalOrchestrationError,
    ProvisionTimeoutError,
    RollbackError,
    StepApplyError,
)
from mkwebuser.gateway.base import PrivilegedGateway
from mkwebuser.provisioning.locks import MountTableLock, UsernameLocks
from mkwebuser.provisioning.planner import ResourcePlanner
from mkwebuser.provisioning.state import ProvisioningStateManager, new_correlation_id
from mkwebuser.provisioning.steps import STEP_ORDER, StepContext
from mkwebuser.provisioning.types import (
    ProvisionOutcome,
    ProvisionPlan,
    ProvisionRequest,
    ProvisionResult,
    StepRecord,
    StepState,
    Verification,
)
from mkwebuser.timestamps import deadline_after, expired

logger = logging.getLogger(__name__)


class ProvisioningEngine:
    """
    Provisioning orchestrator.

    gateway
    Executes privileged operations on the host.

    settings
    Application settings (defaults to the global singleton).

    state_manager
    Journal of provisioning jobs. Defaults to the configured state file.

    username_locks
    Per-username exclusivity. Share one instance between engines that
    may run concurrently in the same process.

    Usage:
        engine = ProvisioningEngine(SubprocessGateway(settings.host), settings)
        result = engine.provision(ProvisionRequest("alice", 500, "/srv/users", "/srv/mnt"))
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        gateway: PrivilegedGateway,
        settings: Optional[AppSettings] = None,
        state_manager: Optional[ProvisioningStateManager] = None,
        username_locks: Optional[UsernameLocks] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._gateway = gateway
        self._planner = ResourcePlanner(gateway, self._settings.provisioning)
        self._state = state_manager or ProvisioningStateManager(self._settings.host.state_path)
        self._locks = username_locks or UsernameLocks(self._settings.host.lock_dir)
        self._mount_lock = MountTableLock(self._settings.host.lock_dir)

    @property
    def state_manager(self) -> ProvisioningStateManager:
        return self._state

    def plan(self, request: ProvisionRequest, resume: bool = False) -> ProvisionPlan:
        """Validate a request and return its plan without touching the host."""
        plan = self._planner.validate(request, resume=resume)
        self._check_plan(plan)
        return plan

    def provision(
        self,
        request: ProvisionRequest,
        resume: Optional[bool] = None,
        timeout: Optional[float] = None,
        correlation_id: Optional[str] = None,
    ) -> ProvisionResult:
        """
        Provision one sftp-only user environment.

        Args:
            request: What to provision
            resume: Skip steps whose resource already exists as expected
                (defaults to the configured value)
            timeout: Seconds for the whole call; checked between steps
                (defaults to the configured value)
            correlation_id: Log prefix for this run

        Returns:
            ProvisionResult

        Raises:
            ValidationError: bad request, nothing touched
            ResourceConflictError: an existing resource cannot be converged
            FatalOrchestrationError: lock contention or broken invariant
        """
        prov = self._settings.provisioning
        resume = prov.resume if resume is None else resume
        timeout = prov.timeout_seconds if timeout is None else timeout

        deadline = deadline_after(timeout)

        # the username must be sane before it names a lock file
        self._planner.check_request(request)

        with self._locks.hold(request.username):
            plan = self.plan(request, resume=resume)
            return self._run_plan(plan, resume, deadline, correlation_id)

    def _check_plan(self, plan: ProvisionPlan) -> None:
        kinds = tuple(type(step) for step in plan.steps)
        if kinds != STEP_ORDER:
            raise FatalOrchestrationError(
                f"Plan {plan.plan_id} is malformed: {[k.__name__ for k in kinds]}"
            )

    def _run_plan(
        self,
        plan: ProvisionPlan,
        resume: bool,
        deadline: float,
        correlation_id: Optional[str],
    ) -> ProvisionResult:
        username = plan.request.username
        ctx = StepContext(
            gateway=self._gateway,
            settings=self._settings,
            mount_lock=self._mount_lock,
            correlation_id=correlation_id or new_correlation_id(),
            username=username,
        )
        log_prefix = ctx.log_prefix
        records = [StepRecord(step=step) for step in plan.steps]

        if resume:
            # a conflict anywhere is rejected before anything is touched
            self._verify_all(records, ctx)

        job = self._state.create_job(username, plan.plan_id, plan.step_ids, ctx.correlation_id)

        failure: Optional[StepApplyError] = None
        for record in records:
            failure = self._advance(record, ctx, job.job_id, deadline)
            if failure is not None:
                break

        if failure is None:
            self._state.complete_job(job.job_id)
            logger.info(
                f"{log_prefix} Provisioning of {username} completed",
                extra=ctx.log_extra(),
            )
            return ProvisionResult(
                outcome=ProvisionOutcome.SUCCESS,
                plan=plan,
                steps=records,
                job_id=job.job_id,
            )

        self._state.start_rollback(job.job_id, str(failure))
        rollback_errors = self._rollback(records, ctx, job.job_id)
        residual = [r.step.resource for r in records if r.state == StepState.ROLLBACK_FAILED]

        if rollback_errors:
            self._state.mark_rollback_incomplete(
                job.job_id, [str(e) for e in rollback_errors], residual
            )
            outcome = ProvisionOutcome.FAILED_ROLLBACK_INCOMPLETE
        else:
            self._state.mark_rolled_back(job.job_id)
            outcome = ProvisionOutcome.FAILED_AND_ROLLED_BACK

        return ProvisionResult(
            outcome=outcome,
            plan=plan,
            steps=records,
            job_id=job.job_id,
            cause=failure,
            rollback_errors=rollback_errors,
            residual_resources=residual,
        )

    def _verify_all(self, records: List[StepRecord], ctx: StepContext) -> None:
        """
        Mark the steps whose resource already exists as expected.

        Raises ResourceConflictError for the first incompatible resource.
        Only read-only gateway operations are used.
        """
        for record in records:
            if record.step.verify(ctx) == Verification.ALREADY_APPLIED:
                record.verified = True
                logger.info(
                    f"{ctx.log_prefix} Step {record.step_id}: already applied",
                    extra=ctx.log_extra(record.step_id),
                )

    def _advance(
        self,
        record: StepRecord,
        ctx: StepContext,
        job_id: str,
        deadline: float,
    ) -> Optional[StepApplyError]:
        """Skip or apply one step. Returns the failure, if any."""
        step_id = record.step_id

        if expired(deadline):
            cause = ProvisionTimeoutError(f"Deadline passed before {step_id} started")
            return self._fail(record, ctx, job_id, cause)

        if record.verified:
            record.state = StepState.APPLIED
            self._state.record_step(job_id, step_id, record.state.value, resumed=True)
            logger.info(
                f"{ctx.log_prefix} Step {step_id}: skipping",
                extra=ctx.log_extra(step_id),
            )
            return None

        record.state = StepState.APPLYING
        self._state.record_step(job_id, step_id, record.state.value)
        logger.info(f"{ctx.log_prefix} Step: {step_id}", extra=ctx.log_extra(step_id))
        try:
            record.step.apply(ctx)
        except Exception as e:
            return self._fail(record, ctx, job_id, e)

        record.state = StepState.APPLIED
        self._state.record_step(job_id, step_id, record.state.value)

        if expired(deadline):
            # the step finished late; it stays applied so rollback removes it
            cause = ProvisionTimeoutError(f"Deadline passed while {step_id} was running")
            record.error = cause
            logger.error(
                f"{ctx.log_prefix} Step {step_id} overran the deadline",
                extra=ctx.log_extra(step_id),
            )
            return StepApplyError(step_id, cause)

        return None

    def _fail(
        self,
        record: StepRecord,
        ctx: StepContext,
        job_id: str,
        cause: BaseException,
    ) -> StepApplyError:
        record.state = StepState.FAILED
        record.error = cause
        self._state.record_step(job_id, record.step_id, record.state.value)
        logger.error(
            f"{ctx.log_prefix} Step {record.step_id} failed: {cause}",
            extra=ctx.log_extra(record.step_id),
        )
        return StepApplyError(record.step_id, cause)

    def _rollback(
        self,
        records: List[StepRecord],
        ctx: StepContext,
        job_id: str,
    ) -> List[RollbackError]:
        """Roll back the steps this run applied, in reverse order, collecting failures."""
        applied = [
            r for r in records if r.state == StepState.APPLIED and not r.verified
        ]
        for record in records:
            if record.verified:
                logger.info(
                    f"{ctx.log_prefix} Keeping {record.step.resource}, it predates this run",
                    extra=ctx.log_extra(record.step_id),
                )

        if not applied:
            logger.info(f"{ctx.log_prefix} No rollback actions to execute", extra=ctx.log_extra())
            return []

        logger.warning(
            f"{ctx.log_prefix} Rolling back {len(applied)} steps",
            extra=ctx.log_extra(),
        )

        errors: List[RollbackError] = []
        for record in reversed(applied):
            try:
                record.step.rollback(ctx)
            except Exception as e:
                record.state = StepState.ROLLBACK_FAILED
                record.error = e
                errors.append(RollbackError(record.step_id, e))
                logger.error(
                    f"{ctx.log_prefix} Rollback of {record.step_id} failed: {e}",
                    extra=ctx.log_extra(record.step_id),
                )
            else:
                record.state = StepState.ROLLED_BACK
            self._state.record_step(job_id, record.step_id, record.state.value)

        return errors
