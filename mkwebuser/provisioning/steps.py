"""
Step executors.

One executor per resource type. Each carries the parameters derived from
the request and co-locates the three capabilities the engine needs:

apply
  Create the resource through the gateway. Raises on failure.

verify
  Idempotency probe. Returns ALREADY_APPLIED when the resource exists in
  the expected configuration, NOT_APPLIED when it is absent, and raises
  ResourceConflictError when something incompatible is in the way.

rollback
  Best-effort undo. Never assumes the resource is pristine.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Set

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mkwebuser.config.settings import AppSettings
from mkwebuser.errors import GatewayCommandError, ResourceConflictError
from mkwebuser.gateway.base import (
    GatewayOperation,
    PrivilegedGateway,
    query,
    run_checked,
    stat_path,
)
from mkwebuser.provisioning.locks import MountTableLock
from mkwebuser.provisioning.types import Verification

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass
class StepContext:
    """
    Per-call execution context shared by the steps of one plan.

    markers
    Step ids whose resource was created by this call. Rollback uses them
    to avoid deleting resources that existed before the call.

    mount_lock
    Process-wide mutex around mount table and loop device mutations.
    """

    gateway: PrivilegedGateway
    settings: AppSettings
    mount_lock: MountTableLock
    correlation_id: str = ""
    username: str = ""
    markers: Set[str] = field(default_factory=set)

    @property
    def log_prefix(self) -> str:
        return f"[{self.correlation_id}]"

    def log_extra(self, step: Optional[str] = None) -> Dict[str, str]:
        """Structured fields for JSON log records."""
        extra = {"correlation_id": self.correlation_id, "username": self.username}
        if step:
            extra["step"] = step
        return extra


class Step:
    """Base class for the five step variants."""

    step_id: ClassVar[str] = ""

    @property
    def resource(self) -> str:
        """Human readable name of the resource this step owns."""
        raise NotImplementedError

    def apply(self, ctx: StepContext) -> None:
        raise NotImplementedError

    def verify(self, ctx: StepContext) -> Verification:
        raise NotImplementedError

    def rollback(self, ctx: StepContext) -> None:
        raise NotImplementedError


def _same_path(a: str, b: str) -> bool:
    return posixpath.normpath(a) == posixpath.normpath(b)


def _rollback_retrying(ctx: StepContext, what: str) -> Retrying:
    """Bounded exponential backoff for busy unmount / detach."""
    prov = ctx.settings.provisioning

    def _log_retry(retry_state):
        logger.warning(
            f"{ctx.log_prefix} {what} failed "
            f"(attempt {retry_state.attempt_number}/{prov.rollback_attempts}): "
            f"{retry_state.outcome.exception()}"
        )

    return Retrying(
        stop=stop_after_attempt(prov.rollback_attempts),
        wait=wait_exponential(
            multiplier=prov.rollback_backoff_seconds,
            max=prov.rollback_backoff_max_seconds,
        ),
        retry=retry_if_exception_type(GatewayCommandError),
        before_sleep=_log_retry,
        reraise=True,
    )


# =============================================================================
# Account
# =============================================================================

@dataclass(frozen=True)
class CreateUser(Step):
    """System account with home at <user_base>/<username> and no login shell."""

    step_id: ClassVar[str] = "create_user"

    username: str
    home: str

    @property
    def resource(self) -> str:
        return f"account {self.username}"

    def apply(self, ctx: StepContext) -> None:
        run_checked(
            ctx.gateway,
            GatewayOperation.CREATE_ACCOUNT,
            self.username,
            self.home,
            ctx.settings.host.nologin_shell,
        )
        ctx.markers.add(self.step_id)
        logger.info(f"{ctx.log_prefix} User created: {self.username} ({self.home})")

    def verify(self, ctx: StepContext) -> Verification:
        home = query(ctx.gateway, GatewayOperation.LOOKUP_ACCOUNT, self.username)
        if home is None:
            return Verification.NOT_APPLIED
        if not _same_path(home, self.home):
            raise ResourceConflictError(
                f"Account {self.username} exists with home {home}, expected {self.home}"
            )
        return Verification.ALREADY_APPLIED

    def rollback(self, ctx: StepContext) -> None:
        if self.step_id not in ctx.markers:
            logger.warning(
                f"{ctx.log_prefix} Account {self.username} was not created by this run, "
                f"leaving it in place"
            )
            return
        run_checked(ctx.gateway, GatewayOperation.DELETE_ACCOUNT, self.username)
        ctx.markers.discard(self.step_id)
        logger.info(f"{ctx.log_prefix} User deleted: {self.username}")


# =============================================================================
# Volume
# =============================================================================

@dataclass(frozen=True)
class CreateVolume(Step):
    """Fixed-size filesystem image. Its size is the user's hard quota."""

    step_id: ClassVar[str] = "create_volume"

    path: str
    quota_mib: int
    fstype: str = "ext4"

    @property
    def resource(self) -> str:
        return f"volume {self.path}"

    def apply(self, ctx: StepContext) -> None:
        result = ctx.gateway.execute(
            GatewayOperation.CREATE_FILESYSTEM_IMAGE,
            [self.path, str(self.quota_mib), self.fstype],
        )
        if not result.ok:
            # dd may have left a partial image behind
            cleanup = ctx.gateway.execute(GatewayOperation.DELETE_FILE, [self.path])
            if not cleanup.ok:
                logger.error(
                    f"{ctx.log_prefix} Could not remove partial image {self.path}: "
                    f"{cleanup.stderr.strip()}"
                )
            raise GatewayCommandError(GatewayOperation.CREATE_FILESYSTEM_IMAGE, result)
        logger.info(
            f"{ctx.log_prefix} Space created: {self.quota_mib}M {self.fstype} ({self.path})"
        )

    def verify(self, ctx: StepContext) -> Verification:
        info = stat_path(ctx.gateway, self.path)
        if info is None:
            return Verification.NOT_APPLIED
        if info.kind != "file":
            raise ResourceConflictError(f"{self.path} exists and is a {info.kind}")

        fstype = query(ctx.gateway, GatewayOperation.PROBE_FILESYSTEM, self.path)
        if not fstype:
            # leftover of an interrupted dd, safe to overwrite
            return Verification.NOT_APPLIED
        if fstype != self.fstype or info.size != self.quota_mib * MIB:
            raise ResourceConflictError(
                f"{self.path} holds a {info.size // MIB}M {fstype} filesystem, "
                f"expected {self.quota_mib}M {self.fstype}"
            )
        return Verification.ALREADY_APPLIED

    def rollback(self, ctx: StepContext) -> None:
        run_checked(ctx.gateway, GatewayOperation.DELETE_FILE, self.path)
        logger.info(f"{ctx.log_prefix} Space deleted: {self.path}")


# =============================================================================
# Mount
# =============================================================================

@dataclass(frozen=True)
class MountVolume(Step):
    """Loop-mount the volume at <mount_base>/<username>."""

    step_id: ClassVar[str] = "mount_volume"

    volume: str
    target: str

    @property
    def resource(self) -> str:
        return f"mount {self.target}"

    def _loop_devices(self, ctx: StepContext) -> List[str]:
        out = query(ctx.gateway, GatewayOperation.FIND_LOOP_DEVICES, self.volume)
        return out.split() if out else []

    def apply(self, ctx: StepContext) -> None:
        with ctx.mount_lock:
            devices = self._loop_devices(ctx)
            if devices:
                device = devices[0]
                logger.info(f"{ctx.log_prefix} Reusing loop device {device} for {self.volume}")
            else:
                result = run_checked(ctx.gateway, GatewayOperation.ATTACH_LOOP_DEVICE, self.volume)
                device = result.stdout.strip()

            result = ctx.gateway.execute(GatewayOperation.MOUNT, [device, self.target])
            if not result.ok:
                # mount creates the mount point before it runs
                for operation, arg in (
                    (GatewayOperation.DETACH_LOOP_DEVICE, device),
                    (GatewayOperation.DELETE_FILE, self.target),
                ):
                    cleanup = ctx.gateway.execute(operation, [arg])
                    if not cleanup.ok:
                        logger.error(
                            f"{ctx.log_prefix} Could not {operation.value} {arg}: "
                            f"{cleanup.stderr.strip()}"
                        )
                raise GatewayCommandError(GatewayOperation.MOUNT, result)

        logger.info(f"{ctx.log_prefix} Space mounted: {device} on {self.target}")

    def verify(self, ctx: StepContext) -> Verification:
        source = query(ctx.gateway, GatewayOperation.LOOKUP_MOUNT, self.target)
        if source is None:
            return Verification.NOT_APPLIED
        if source in self._loop_devices(ctx):
            return Verification.ALREADY_APPLIED
        raise ResourceConflictError(f"{self.target} already has {source} mounted")

    def rollback(self, ctx: StepContext) -> None:
        with ctx.mount_lock:
            for attempt in _rollback_retrying(ctx, f"unmount {self.target}"):
                with attempt:
                    if query(ctx.gateway, GatewayOperation.LOOKUP_MOUNT, self.target) is None:
                        break
                    if attempt.retry_state.attempt_number > 1:
                        run_checked(ctx.gateway, GatewayOperation.UNMOUNT, self.target, "lazy")
                    else:
                        run_checked(ctx.gateway, GatewayOperation.UNMOUNT, self.target)

            for device in self._loop_devices(ctx):
                for attempt in _rollback_retrying(ctx, f"detach {device}"):
                    with attempt:
                        run_checked(ctx.gateway, GatewayOperation.DETACH_LOOP_DEVICE, device)

            run_checked(ctx.gateway, GatewayOperation.DELETE_FILE, self.target)

        logger.info(f"{ctx.log_prefix} Space unmounted: {self.target}")


# =============================================================================
# Chroot jail
# =============================================================================

@dataclass(frozen=True)
class ChrootJail(Step):
    """Confine the account to the mounted volume."""

    step_id: ClassVar[str] = "chroot_jail"

    username: str
    jail: str
    skeleton_dir: str = "files"

    @property
    def resource(self) -> str:
        return f"chroot binding {self.username} -> {self.jail}"

    def apply(self, ctx: StepContext) -> None:
        run_checked(
            ctx.gateway,
            GatewayOperation.BIND_CHROOT,
            self.username,
            self.jail,
            self.skeleton_dir,
        )
        logger.info(f"{ctx.log_prefix} Chroot bound: {self.username} -> {self.jail}")

    def verify(self, ctx: StepContext) -> Verification:
        bound = query(ctx.gateway, GatewayOperation.LOOKUP_CHROOT, self.username)
        if bound is None:
            return Verification.NOT_APPLIED
        if not _same_path(bound, self.jail):
            raise ResourceConflictError(
                f"{self.username} is already confined to {bound}, expected {self.jail}"
            )

        root = stat_path(ctx.gateway, self.jail)
        skeleton = stat_path(ctx.gateway, posixpath.join(self.jail, self.skeleton_dir))
        if root is None or root.owner != "root":
            return Verification.NOT_APPLIED
        if skeleton is None or skeleton.owner != self.username:
            return Verification.NOT_APPLIED
        return Verification.ALREADY_APPLIED

    def rollback(self, ctx: StepContext) -> None:
        # mount and volume belong to the earlier steps
        run_checked(ctx.gateway, GatewayOperation.UNBIND_CHROOT, self.username)
        logger.info(f"{ctx.log_prefix} Chroot unbound: {self.username}")


# =============================================================================
# Sftp-only login
# =============================================================================

@dataclass(frozen=True)
class CreateSftpAccount(Step):
    """Restrict the account's login to internal-sftp inside the jail."""

    step_id: ClassVar[str] = "create_sftp_account"

    username: str
    jail: str

    @property
    def resource(self) -> str:
        return f"sftp-only login {self.username}"

    def apply(self, ctx: StepContext) -> None:
        host = ctx.settings.host
        run_checked(
            ctx.gateway,
            GatewayOperation.SET_RESTRICTED_LOGIN,
            self.username,
            self.jail,
            host.sftp_group,
            host.sftp_shell,
        )
        logger.info(f"{ctx.log_prefix} Sftp-only login set: {self.username}")

    def verify(self, ctx: StepContext) -> Verification:
        scope = query(ctx.gateway, GatewayOperation.LOOKUP_RESTRICTED_LOGIN, self.username)
        if scope is None:
            return Verification.NOT_APPLIED
        if not _same_path(scope, self.jail):
            raise ResourceConflictError(
                f"Sftp login for {self.username} is scoped to {scope}, expected {self.jail}"
            )
        return Verification.ALREADY_APPLIED

    def rollback(self, ctx: StepContext) -> None:
        host = ctx.settings.host
        run_checked(
            ctx.gateway,
            GatewayOperation.CLEAR_RESTRICTED_LOGIN,
            self.username,
            host.sftp_group,
            host.nologin_shell,
        )
        logger.info(f"{ctx.log_prefix} Sftp-only login cleared: {self.username}")


STEP_ORDER = (CreateUser, CreateVolume, MountVolume, ChrootJail, CreateSftpAccount)
