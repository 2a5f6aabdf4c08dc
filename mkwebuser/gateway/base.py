"""
Privileged command gateway interface.

Goal
Keep every privileged OS mutation behind one narrow call so the
orchestrator never shells out directly and can be driven against a
simulated host in tests.

Contract
execute(operation, args) returns a CommandResult with stdout, stderr and
exit_status. A non-zero exit status is an ordinary failure, never an
exception. Calls are synchronous and are never interrupted half way.

Argument order per operation

create-account            username, home, shell
delete-account            username                  (removes the home too)
create-filesystem-image   path, size_mib, fstype
delete-file               path                      (file or empty directory, missing is ok)
attach-loop-device        image_path                -> stdout: loop device
detach-loop-device        device
mount                     device, target            (creates target)
unmount                   target [, "lazy"]
bind-chroot               username, jail, skeleton_dir
unbind-chroot             username
set-restricted-login      username, jail, group, shell
clear-restricted-login    username, group, shell

Read-only inspection

lookup-account            username      -> stdout: home directory
stat-path                 path          -> stdout: "<kind> <size_bytes> <owner>"
probe-filesystem          path          -> stdout: filesystem type
find-loop-devices         image_path    -> stdout: one loop device per line
lookup-mount              target        -> stdout: mounted source device
lookup-chroot             username      -> stdout: jail directory
lookup-restricted-login   username      -> stdout: jail directory
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from mkwebuser.errors import GatewayCommandError


class GatewayOperation(str, Enum):
    """Operations the gateway understands."""

    # Mutating
    CREATE_ACCOUNT = "create-account"
    DELETE_ACCOUNT = "delete-account"
    CREATE_FILESYSTEM_IMAGE = "create-filesystem-image"
    DELETE_FILE = "delete-file"
    ATTACH_LOOP_DEVICE = "attach-loop-device"
    DETACH_LOOP_DEVICE = "detach-loop-device"
    MOUNT = "mount"
    UNMOUNT = "unmount"
    BIND_CHROOT = "bind-chroot"
    UNBIND_CHROOT = "unbind-chroot"
    SET_RESTRICTED_LOGIN = "set-restricted-login"
    CLEAR_RESTRICTED_LOGIN = "clear-restricted-login"

    # Read-only
    LOOKUP_ACCOUNT = "lookup-account"
    STAT_PATH = "stat-path"
    PROBE_FILESYSTEM = "probe-filesystem"
    FIND_LOOP_DEVICES = "find-loop-devices"
    LOOKUP_MOUNT = "lookup-mount"
    LOOKUP_CHROOT = "lookup-chroot"
    LOOKUP_RESTRICTED_LOGIN = "lookup-restricted-login"

    @property
    def read_only(self) -> bool:
        return self in _READ_ONLY


_READ_ONLY = frozenset(
    {
        GatewayOperation.LOOKUP_ACCOUNT,
        GatewayOperation.STAT_PATH,
        GatewayOperation.PROBE_FILESYSTEM,
        GatewayOperation.FIND_LOOP_DEVICES,
        GatewayOperation.LOOKUP_MOUNT,
        GatewayOperation.LOOKUP_CHROOT,
        GatewayOperation.LOOKUP_RESTRICTED_LOGIN,
    }
)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single gateway call."""

    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True)
class PathInfo:
    """Parsed stat-path output."""

    kind: str
    size: int
    owner: str


class PrivilegedGateway(Protocol):
    """
    Minimal privileged command interface.

    Real implementations run system tools as root.
    We keep the interface narrow for testability.
    """

    def execute(self, operation: GatewayOperation, args: Sequence[str]) -> CommandResult:
        """Run one operation and report its outcome."""


def run_checked(
    gateway: PrivilegedGateway,
    operation: GatewayOperation,
    *args,
) -> CommandResult:
    """Execute an operation, raising GatewayCommandError on failure."""
    result = gateway.execute(operation, [str(a) for a in args])
    if not result.ok:
        raise GatewayCommandError(operation, result)
    return result


def query(
    gateway: PrivilegedGateway,
    operation: GatewayOperation,
    *args,
) -> Optional[str]:
    """
    Run a read-only operation.

    Returns stripped stdout, or None when the resource is absent
    (non-zero exit status).
    """
    result = gateway.execute(operation, [str(a) for a in args])
    if not result.ok:
        return None
    return result.stdout.strip()


def stat_path(gateway: PrivilegedGateway, path) -> Optional[PathInfo]:
    """Return PathInfo for ``path`` or None when it does not exist."""
    out = query(gateway, GatewayOperation.STAT_PATH, path)
    if not out:
        return None
    kind, size, owner = out.split(maxsplit=2)
    return PathInfo(kind=kind, size=int(size), owner=owner)
