"""
Centralized error handling for mkwebuser.

Error Hierarchy:
- ProvisioningError: expected failures, each carrying the CLI exit code
  - ValidationError (1): bad input, detected before any side effect
  - ResourceConflictError (1): existing resource cannot be converged
  - FatalOrchestrationError (1): lock contention or broken invariant
  - StepApplyError (2): a step failed to apply, rollback follows
  - RollbackError (3): a step failed to roll back, manual cleanup needed
- GatewayCommandError: a privileged command returned a non-zero status

Usage:
    from mkwebuser.errors import InvalidQuota, failure_exit_code

    # For expected errors - raise with a message safe to print
    raise InvalidQuota(f"Quota must be positive, got {quota}")

    # At the process boundary
    except Exception as e:
        return failure_exit_code(e, "provision alice")
"""

import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Exit codes
# =============================================================================

EXIT_SUCCESS = 0
EXIT_REJECTED = 1
EXIT_ROLLED_BACK = 2
EXIT_ROLLBACK_INCOMPLETE = 3


# =============================================================================
# Exception Classes (expected errors)
# =============================================================================

class ProvisioningError(Exception):
    """
    Base class for expected provisioning errors.
    Messages are safe to show to the operator.
    """
    exit_code = EXIT_REJECTED

    def __init__(self, message: str, exit_code: int = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ValidationError(ProvisioningError):
    """Request validation failed, nothing was touched."""
    exit_code = EXIT_REJECTED


class InvalidUsername(ValidationError):
    """Username is not an acceptable system account name."""


class InvalidQuota(ValidationError):
    """Quota is not a positive integer within the configured maximum."""


class PathConflict(ValidationError):
    """Base paths are invalid or already hold an entry for this username."""


class UserAlreadyExists(ValidationError):
    """The system account already exists and resume was not requested."""


class ResourceConflictError(ProvisioningError):
    """Resource exists in a state incompatible with resumption."""
    exit_code = EXIT_REJECTED


class FatalOrchestrationError(ProvisioningError):
    """Lock acquisition failure or internal invariant violation."""
    exit_code = EXIT_REJECTED


class LockContentionError(FatalOrchestrationError):
    """Another provisioning run holds the lock for this username."""


class ProvisionTimeoutError(ProvisioningError):
    """The overall provisioning deadline passed between steps."""
    exit_code = EXIT_ROLLED_BACK


class StepApplyError(ProvisioningError):
    """A step's apply failed; triggers rollback of earlier steps."""
    exit_code = EXIT_ROLLED_BACK

    def __init__(self, step_id: str, cause: BaseException):
        super().__init__(f"{step_id} failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class RollbackError(ProvisioningError):
    """
    A step's rollback failed.

    Non-fatal: collected alongside the original StepApplyError, never
    in place of it.
    """
    exit_code = EXIT_ROLLBACK_INCOMPLETE

    def __init__(self, step_id: str, cause: BaseException):
        super().__init__(f"rollback of {step_id} failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class GatewayCommandError(Exception):
    """
    A privileged gateway operation returned a non-zero exit status.

    Carries the full CommandResult so callers can log stderr.
    """

    def __init__(self, operation, result):
        stderr = (result.stderr or "").strip()
        detail = f": {stderr}" if stderr else ""
        super().__init__(
            f"{operation.value} exited with status {result.exit_status}{detail}"
        )
        self.operation = operation
        self.result = result


# =============================================================================
# Process boundary helper
# =============================================================================

def failure_exit_code(
    e: Exception,
    operation: str,
    error_id: Optional[str] = None,
) -> int:
    """
    Log a failure and pick the process exit code for it.

    For ProvisioningError subclasses (expected errors):
        - Logs the message at WARNING level
        - Returns the exception's exit_code

    For all other exceptions (unexpected errors):
        - Logs the full traceback at ERROR level
        - Returns EXIT_REJECTED when nothing is known about side effects

    Args:
        e: The exception that was caught
        operation: Human-readable description of what failed (e.g., "provision alice")
        error_id: Optional reference for support; generated when omitted

    Returns:
        Process exit code
    """
    error_id = error_id or str(uuid.uuid4())[:8]
    log_extra = {"error_id": error_id}

    if isinstance(e, ProvisioningError):
        logger.warning(f"{operation}: {e}", extra=log_extra)
        return e.exit_code

    logger.exception(f"{operation} failed", extra=log_extra)
    return EXIT_REJECTED
