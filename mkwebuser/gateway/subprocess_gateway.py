"""
Host gateway backed by system tools.

Runs useradd/userdel, dd/mkfs.ext4, losetup, mount/umount, usermod and the
read-only probes (getent, findmnt, blkid) through subprocess. Chroot binding
and the sftp-only restriction are per-user sshd drop-in files:

    <sshd_config_dir>/mkwebuser-<user>-chroot.conf
    <sshd_config_dir>/mkwebuser-<user>-sftp.conf

Each drop-in carries a ``# mkwebuser-jail: <path>`` header so lookups can
report which jail an entry is scoped to. sshd is reloaded after every
drop-in change.

Must run as root.
"""

import grp
import logging
import os
import pwd
import shlex
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from mkwebuser.config.settings import HostSettings
from mkwebuser.gateway.base import CommandResult, GatewayOperation

logger = logging.getLogger(__name__)

JAIL_HEADER = "# mkwebuser-jail:"

CHROOT_TPL = """{header} {jail}
# Auto-generated chroot binding for user: {user}

Match User {user}
    ChrootDirectory {jail}
"""

SFTP_TPL = """{header} {jail}
# Auto-generated sftp-only login for user: {user}

Match User {user}
    ForceCommand internal-sftp
    PasswordAuthentication no
    X11Forwarding no
    AllowTcpForwarding no
    PermitTunnel no
"""

# useradd(8) exit statuses
USERADD_REASONS = {
    1: "Unable to update password file",
    2: "Invalid command syntax",
    3: "Invalid argument to option",
    4: "UID already in use",
    6: "The specified group does not exist",
    9: "Username already in use",
    10: "Failed to update group file",
    12: "Failed to create home directory",
    13: "Failed to create mail spool",
    14: "Failed to update SELinux user mapping",
}


class SubprocessGateway:
    """
    Privileged gateway for the local host.

    Usage:
        gateway = SubprocessGateway(get_settings().host)
        result = gateway.execute(GatewayOperation.LOOKUP_ACCOUNT, ["alice"])
    """

    def __init__(self, settings: HostSettings):
        self.settings = settings
        self._handlers: Dict[GatewayOperation, Callable[..., CommandResult]] = {
            GatewayOperation.CREATE_ACCOUNT: self._create_account,
            GatewayOperation.DELETE_ACCOUNT: self._delete_account,
            GatewayOperation.CREATE_FILESYSTEM_IMAGE: self._create_filesystem_image,
            GatewayOperation.DELETE_FILE: self._delete_file,
            GatewayOperation.ATTACH_LOOP_DEVICE: self._attach_loop_device,
            GatewayOperation.DETACH_LOOP_DEVICE: self._detach_loop_device,
            GatewayOperation.MOUNT: self._mount,
            GatewayOperation.UNMOUNT: self._unmount,
            GatewayOperation.BIND_CHROOT: self._bind_chroot,
            GatewayOperation.UNBIND_CHROOT: self._unbind_chroot,
            GatewayOperation.SET_RESTRICTED_LOGIN: self._set_restricted_login,
            GatewayOperation.CLEAR_RESTRICTED_LOGIN: self._clear_restricted_login,
            GatewayOperation.LOOKUP_ACCOUNT: self._lookup_account,
            GatewayOperation.STAT_PATH: self._stat_path,
            GatewayOperation.PROBE_FILESYSTEM: self._probe_filesystem,
            GatewayOperation.FIND_LOOP_DEVICES: self._find_loop_devices,
            GatewayOperation.LOOKUP_MOUNT: self._lookup_mount,
            GatewayOperation.LOOKUP_CHROOT: self._lookup_chroot,
            GatewayOperation.LOOKUP_RESTRICTED_LOGIN: self._lookup_restricted_login,
        }

    def execute(self, operation: GatewayOperation, args: Sequence[str]) -> CommandResult:
        handler = self._handlers[operation]
        logger.debug(
            f"gateway {operation.value} {' '.join(args)}",
            extra={"operation": operation.value},
        )
        try:
            return handler(*args)
        except (OSError, KeyError) as e:
            return CommandResult(stderr=str(e), exit_status=1)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _run(self, argv: List[str], timeout: Optional[int] = None) -> CommandResult:
        """Run a command, mapping launch failures to exit statuses."""
        timeout = timeout or self.settings.command_timeout
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                stderr=f"{argv[0]} timed out after {timeout}s", exit_status=124
            )
        except FileNotFoundError:
            return CommandResult(stderr=f"{argv[0]} not found", exit_status=127)
        return CommandResult(
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            exit_status=proc.returncode,
        )

    def _dropin(self, username: str, kind: str) -> Path:
        return Path(self.settings.sshd_config_dir) / f"mkwebuser-{username}-{kind}.conf"

    def _write_dropin(self, path: Path, content: str) -> CommandResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(content)
        os.chmod(tmp, 0o644)
        tmp.replace(path)
        return self._reload_sshd()

    def _remove_dropin(self, path: Path) -> CommandResult:
        if not path.exists():
            return CommandResult()
        path.unlink()
        return self._reload_sshd()

    def _read_jail(self, path: Path) -> CommandResult:
        if not path.exists():
            return CommandResult(stderr=f"{path} not found", exit_status=1)
        for line in path.read_text().splitlines():
            if line.startswith(JAIL_HEADER):
                return CommandResult(stdout=line[len(JAIL_HEADER):].strip() + "\n")
        return CommandResult(stderr=f"{path} has no jail header", exit_status=1)

    def _reload_sshd(self) -> CommandResult:
        if not self.settings.sshd_reload_command:
            return CommandResult()
        return self._run(shlex.split(self.settings.sshd_reload_command))

    # =========================================================================
    # Accounts
    # =========================================================================

    def _create_account(self, username: str, home: str, shell: str) -> CommandResult:
        Path(home).parent.mkdir(parents=True, exist_ok=True)
        result = self._run([
            "useradd",
            "--home-dir", home,
            "--comment", f"mkwebuser {username}",
            "--inactive", "-1",  # never mark user as inactive
            "--shell", shell,  # no interactive shell
            "--create-home",
            username,
        ])
        if not result.ok and not result.stderr.strip():
            reason = USERADD_REASONS.get(result.exit_status, "Unknown")
            return CommandResult(stdout=result.stdout, stderr=reason, exit_status=result.exit_status)
        return result

    def _delete_account(self, username: str) -> CommandResult:
        return self._run(["userdel", "--remove", username])

    def _lookup_account(self, username: str) -> CommandResult:
        result = self._run(["getent", "passwd", username])
        if not result.ok:
            return result
        fields = result.stdout.strip().split(":")
        if len(fields) < 7:
            return CommandResult(stderr="malformed passwd entry", exit_status=1)
        return CommandResult(stdout=fields[5] + "\n")

    # =========================================================================
    # Files and volumes
    # =========================================================================

    def _create_filesystem_image(self, path: str, size_mib: str, fstype: str) -> CommandResult:
        result = self._run([
            "dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={int(size_mib)}",
        ])
        if not result.ok:
            return result
        os.chmod(path, 0o600)
        return self._run([f"mkfs.{fstype}", "-F", "-q", path])

    def _delete_file(self, path: str) -> CommandResult:
        p = Path(path)
        if p.is_dir() and not p.is_symlink():
            p.rmdir()
        elif p.exists() or p.is_symlink():
            p.unlink()
        return CommandResult()

    def _stat_path(self, path: str) -> CommandResult:
        p = Path(path)
        if not p.exists():
            return CommandResult(stderr=f"{path} not found", exit_status=1)
        st = p.stat()
        kind = "directory" if p.is_dir() else "file" if p.is_file() else "other"
        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        return CommandResult(stdout=f"{kind} {st.st_size} {owner}\n")

    def _probe_filesystem(self, path: str) -> CommandResult:
        return self._run(["blkid", "-o", "value", "-s", "TYPE", path])

    # =========================================================================
    # Loop devices and mounts
    # =========================================================================

    def _attach_loop_device(self, image_path: str) -> CommandResult:
        return self._run(["losetup", "--find", "--show", image_path])

    def _detach_loop_device(self, device: str) -> CommandResult:
        return self._run(["losetup", "--detach", device])

    def _find_loop_devices(self, image_path: str) -> CommandResult:
        result = self._run(["losetup", "--noheadings", "--output", "NAME", "--associated", image_path])
        if not result.ok:
            return result
        devices = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return CommandResult(stdout="".join(f"{d}\n" for d in devices))

    def _mount(self, device: str, target: str) -> CommandResult:
        Path(target).mkdir(parents=True, exist_ok=True)
        return self._run(["mount", device, target])

    def _unmount(self, target: str, mode: str = "") -> CommandResult:
        argv = ["umount"]
        if mode == "lazy":
            argv.append("--lazy")
        argv.append(target)
        return self._run(argv)

    def _lookup_mount(self, target: str) -> CommandResult:
        return self._run(["findmnt", "--noheadings", "--output", "SOURCE", "--mountpoint", target])

    # =========================================================================
    # Chroot binding and sftp-only login
    # =========================================================================

    def _bind_chroot(self, username: str, jail: str, skeleton_dir: str) -> CommandResult:
        pw = pwd.getpwnam(username)

        # sshd requires the chroot root to be root:root and not group/other writable
        os.chown(jail, 0, 0)
        os.chmod(jail, 0o755)

        skeleton = Path(jail) / skeleton_dir
        skeleton.mkdir(exist_ok=True)
        os.chown(skeleton, pw.pw_uid, pw.pw_gid)
        os.chmod(skeleton, 0o755)

        content = CHROOT_TPL.format(header=JAIL_HEADER, user=username, jail=jail)
        return self._write_dropin(self._dropin(username, "chroot"), content)

    def _unbind_chroot(self, username: str) -> CommandResult:
        return self._remove_dropin(self._dropin(username, "chroot"))

    def _lookup_chroot(self, username: str) -> CommandResult:
        return self._read_jail(self._dropin(username, "chroot"))

    def _set_restricted_login(self, username: str, jail: str, group: str, shell: str) -> CommandResult:
        try:
            grp.getgrnam(group)
        except KeyError:
            result = self._run(["groupadd", "--system", group])
            if not result.ok:
                return result

        result = self._run(["usermod", "--append", "--groups", group, "--shell", shell, username])
        if not result.ok:
            return result

        content = SFTP_TPL.format(header=JAIL_HEADER, user=username, jail=jail)
        return self._write_dropin(self._dropin(username, "sftp"), content)

    def _clear_restricted_login(self, username: str, group: str, shell: str) -> CommandResult:
        result = self._remove_dropin(self._dropin(username, "sftp"))
        if not result.ok:
            return result

        try:
            pwd.getpwnam(username)
        except KeyError:
            return CommandResult()

        try:
            members = grp.getgrnam(group).gr_mem
        except KeyError:
            members = []
        if username in members:
            result = self._run(["gpasswd", "--delete", username, group])
            if not result.ok:
                return result

        return self._run(["usermod", "--shell", shell, "--lock", username])

    def _lookup_restricted_login(self, username: str) -> CommandResult:
        return self._read_jail(self._dropin(username, "sftp"))
