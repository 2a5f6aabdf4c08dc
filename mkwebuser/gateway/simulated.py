"""
In memory host.

This gateway is used for tests and for ``mkwebuser --simulate``.
It behaves like a tiny single-host OS: an account database, a file tree,
a bounded loop-device table, a mount table and the sshd drop-ins that
bind chroots and sftp-only logins.

Features
- Records every mutating call so tests can assert on side effects
- Fault injection per operation, for a number of calls or permanently
- Volume capacity is the image size, so writes into a mounted volume
  past its quota fail with ENOSPC
"""

from __future__ import annotations

import errno
import posixpath
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from mkwebuser.gateway.base import CommandResult, GatewayOperation

MIB = 1024 * 1024


@dataclass
class SimAccount:
    home: str
    shell: str
    groups: set = field(default_factory=set)


@dataclass
class SimPath:
    kind: str
    size: int = 0
    owner: str = "root"
    fstype: Optional[str] = None


@dataclass
class Fault:
    """Injected failure for an operation."""

    stderr: str
    exit_status: int = 1
    remaining: Optional[int] = None  # None means every call fails
    match: Optional[str] = None  # only calls whose first argument equals this


class SimulatedHost:
    """
    In memory privileged gateway.

    max_loop_devices
    Size of the loop-device table. Attach fails once it is full, which
    simulates loop-device exhaustion.
    """

    def __init__(self, max_loop_devices: int = 8):
        self.max_loop_devices = max_loop_devices
        self.accounts: Dict[str, SimAccount] = {}
        self.paths: Dict[str, SimPath] = {"/": SimPath(kind="directory")}
        self.loop_devices: Dict[str, str] = {}
        self.mounts: Dict[str, str] = {}
        self.chroots: Dict[str, str] = {}
        self.restricted_logins: Dict[str, str] = {}
        self.usage: Dict[str, int] = {}
        self.calls: List[Tuple[GatewayOperation, Tuple[str, ...]]] = []
        self._faults: Dict[GatewayOperation, List[Fault]] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Test controls
    # =========================================================================

    def fail(
        self,
        operation: GatewayOperation,
        stderr: str = "injected failure",
        times: Optional[int] = None,
        exit_status: int = 1,
        match: Optional[str] = None,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` fail (all calls if None)."""
        with self._lock:
            self._faults.setdefault(operation, []).append(
                Fault(stderr=stderr, exit_status=exit_status, remaining=times, match=match)
            )

    def clear_faults(self) -> None:
        with self._lock:
            self._faults.clear()

    def mutating_calls(self) -> List[Tuple[GatewayOperation, Tuple[str, ...]]]:
        return [c for c in self.calls if not c[0].read_only]

    def makedirs(self, path: str, owner: str = "root") -> None:
        """Create a directory and its parents."""
        with self._lock:
            self._makedirs(posixpath.normpath(path), owner)

    def write(self, path: str, size_mib: int) -> None:
        """
        Write ``size_mib`` MiB of data at ``path``.

        Raises OSError(ENOSPC) when the path sits on a mounted volume that
        cannot hold the data.
        """
        with self._lock:
            path = posixpath.normpath(path)
            target = self._mount_for(path)
            size = size_mib * MIB
            if target is not None:
                image = self.loop_devices[self.mounts[target]]
                capacity = self.paths[image].size
                if self.usage.get(target, 0) + size > capacity:
                    raise OSError(errno.ENOSPC, "No space left on device", path)
                self.usage[target] = self.usage.get(target, 0) + size
            self._makedirs(posixpath.dirname(path), "root")
            self.paths[path] = SimPath(kind="file", size=size)

    # =========================================================================
    # Gateway interface
    # =========================================================================

    def execute(self, operation: GatewayOperation, args: Sequence[str]) -> CommandResult:
        args = tuple(str(a) for a in args)
        with self._lock:
            self.calls.append((operation, args))
            fault = self._take_fault(operation, args)
            if fault is not None:
                return CommandResult(stderr=fault.stderr, exit_status=fault.exit_status)
            handler = getattr(self, "_" + operation.value.replace("-", "_"))
            return handler(*args)

    def _take_fault(self, operation: GatewayOperation, args: Tuple[str, ...]) -> Optional[Fault]:
        for fault in self._faults.get(operation, []):
            if fault.match is not None and (not args or args[0] != fault.match):
                continue
            if fault.remaining is None:
                return fault
            if fault.remaining > 0:
                fault.remaining -= 1
                return fault
        return None

    # =========================================================================
    # Path helpers
    # =========================================================================

    def _makedirs(self, path: str, owner: str) -> None:
        parts = []
        while path not in self.paths:
            parts.append(path)
            path = posixpath.dirname(path)
        for p in reversed(parts):
            self.paths[p] = SimPath(kind="directory", owner=owner)

    def _children(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in self.paths if p.startswith(prefix)]

    def _mount_for(self, path: str) -> Optional[str]:
        best = None
        for target in self.mounts:
            if path == target or path.startswith(target.rstrip("/") + "/"):
                if best is None or len(target) > len(best):
                    best = target
        return best

    @staticmethod
    def _ok(stdout: str = "") -> CommandResult:
        return CommandResult(stdout=stdout)

    @staticmethod
    def _err(stderr: str, status: int = 1) -> CommandResult:
        return CommandResult(stderr=stderr, exit_status=status)

    # =========================================================================
    # Mutating operations
    # =========================================================================

    def _create_account(self, username: str, home: str, shell: str) -> CommandResult:
        if username in self.accounts:
            return self._err(f"useradd: user '{username}' already exists", 9)
        home = posixpath.normpath(home)
        if home in self.paths:
            return self._err(f"useradd: home directory {home} already exists", 12)
        self._makedirs(posixpath.dirname(home), "root")
        self.paths[home] = SimPath(kind="directory", owner=username)
        self.accounts[username] = SimAccount(home=home, shell=shell)
        return self._ok()

    def _delete_account(self, username: str) -> CommandResult:
        account = self.accounts.pop(username, None)
        if account is None:
            return self._err(f"userdel: user '{username}' does not exist", 6)
        for p in self._children(account.home) + [account.home]:
            self.paths.pop(p, None)
        return self._ok()

    def _create_filesystem_image(self, path: str, size_mib: str, fstype: str) -> CommandResult:
        path = posixpath.normpath(path)
        parent = self.paths.get(posixpath.dirname(path))
        if parent is None or parent.kind != "directory":
            return self._err(f"dd: failed to open '{path}': No such file or directory")
        self.paths[path] = SimPath(kind="file", size=int(size_mib) * MIB, fstype=fstype)
        return self._ok()

    def _delete_file(self, path: str) -> CommandResult:
        path = posixpath.normpath(path)
        entry = self.paths.get(path)
        if entry is None:
            return self._ok()
        if path in self.mounts:
            return self._err(f"rm: cannot remove '{path}': Device or resource busy")
        if entry.kind == "directory" and self._children(path):
            return self._err(f"rm: cannot remove '{path}': Directory not empty")
        del self.paths[path]
        return self._ok()

    def _attach_loop_device(self, image_path: str) -> CommandResult:
        image_path = posixpath.normpath(image_path)
        if image_path not in self.paths:
            return self._err(f"losetup: {image_path}: failed to set up loop device: No such file or directory")
        for index in range(self.max_loop_devices):
            device = f"/dev/loop{index}"
            if device not in self.loop_devices:
                self.loop_devices[device] = image_path
                return self._ok(device + "\n")
        return self._err("losetup: cannot find an unused loop device")

    def _detach_loop_device(self, device: str) -> CommandResult:
        if device not in self.loop_devices:
            return self._err(f"losetup: {device}: detach failed: No such device or address")
        if device in self.mounts.values():
            return self._err(f"losetup: {device}: detach failed: Device or resource busy")
        del self.loop_devices[device]
        return self._ok()

    def _mount(self, device: str, target: str) -> CommandResult:
        target = posixpath.normpath(target)
        self._makedirs(target, "root")
        if device not in self.loop_devices:
            return self._err(f"mount: {target}: special device {device} does not exist", 32)
        if target in self.mounts:
            return self._err(f"mount: {target}: already mounted", 32)
        self.mounts[target] = device
        self.usage[target] = 0
        return self._ok()

    def _unmount(self, target: str, mode: str = "") -> CommandResult:
        target = posixpath.normpath(target)
        if target not in self.mounts:
            return self._err(f"umount: {target}: not mounted", 32)
        del self.mounts[target]
        self.usage.pop(target, None)
        # the volume's own contents disappear with the mount
        for p in self._children(target):
            del self.paths[p]
        return self._ok()

    def _bind_chroot(self, username: str, jail: str, skeleton_dir: str) -> CommandResult:
        jail = posixpath.normpath(jail)
        if username not in self.accounts:
            return self._err(f"getpwnam(): name not found: '{username}'")
        if jail not in self.paths:
            return self._err(f"[Errno 2] No such file or directory: '{jail}'")
        self.paths[jail].owner = "root"
        skeleton = posixpath.join(jail, skeleton_dir)
        self.paths[skeleton] = SimPath(kind="directory", owner=username)
        self.chroots[username] = jail
        return self._ok()

    def _unbind_chroot(self, username: str) -> CommandResult:
        self.chroots.pop(username, None)
        return self._ok()

    def _set_restricted_login(self, username: str, jail: str, group: str, shell: str) -> CommandResult:
        account = self.accounts.get(username)
        if account is None:
            return self._err(f"usermod: user '{username}' does not exist", 6)
        account.groups.add(group)
        account.shell = shell
        self.restricted_logins[username] = posixpath.normpath(jail)
        return self._ok()

    def _clear_restricted_login(self, username: str, group: str, shell: str) -> CommandResult:
        self.restricted_logins.pop(username, None)
        account = self.accounts.get(username)
        if account is not None:
            account.groups.discard(group)
            account.shell = shell
        return self._ok()

    # =========================================================================
    # Read-only operations
    # =========================================================================

    def _lookup_account(self, username: str) -> CommandResult:
        account = self.accounts.get(username)
        if account is None:
            return self._err("", 2)
        return self._ok(account.home + "\n")

    def _stat_path(self, path: str) -> CommandResult:
        entry = self.paths.get(posixpath.normpath(path))
        if entry is None:
            return self._err(f"stat: cannot statx '{path}': No such file or directory")
        return self._ok(f"{entry.kind} {entry.size} {entry.owner}\n")

    def _probe_filesystem(self, path: str) -> CommandResult:
        entry = self.paths.get(posixpath.normpath(path))
        if entry is None or entry.fstype is None:
            return self._err("", 2)
        return self._ok(entry.fstype + "\n")

    def _find_loop_devices(self, image_path: str) -> CommandResult:
        image_path = posixpath.normpath(image_path)
        devices = sorted(d for d, img in self.loop_devices.items() if img == image_path)
        return self._ok("".join(f"{d}\n" for d in devices))

    def _lookup_mount(self, target: str) -> CommandResult:
        device = self.mounts.get(posixpath.normpath(target))
        if device is None:
            return self._err("", 1)
        return self._ok(device + "\n")

    def _lookup_chroot(self, username: str) -> CommandResult:
        jail = self.chroots.get(username)
        if jail is None:
            return self._err("", 1)
        return self._ok(jail + "\n")

    def _lookup_restricted_login(self, username: str) -> CommandResult:
        jail = self.restricted_logins.get(username)
        if jail is None:
            return self._err("", 1)
        return self._ok(jail + "\n")
