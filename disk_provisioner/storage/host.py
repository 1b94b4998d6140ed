"""The privileged primitives the provisioning engine runs against.

LinuxHost bundles the storage helpers behind one object so the engine can be
exercised against an in-memory double in tests. Fatal primitives raise
(``subprocess.CalledProcessError``, ``OSError``, ``ProvisioningError``);
best-effort primitives return ``bool``.
"""

from __future__ import annotations

import os
import pwd
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from disk_provisioner.domain.models import BlockDevice
from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage import devices, format as fmt, mount
from disk_provisioner.storage.exceptions import PrivilegeError
from disk_provisioner.storage.fstab import MountTable


log = LoggerFactory.for_system()


class LinuxHost:
    def __init__(
        self,
        mount_table: MountTable,
        *,
        command_timeout: Optional[float] = None,
        mounts_path: str = devices.PROC_MOUNTS,
    ):
        self.mount_table = mount_table
        self.command_timeout = command_timeout
        self.mounts_path = mounts_path

    # Environment

    def check_privileges(self) -> None:
        if os.geteuid() != 0:
            raise PrivilegeError("this command must be run as root")

    # Enumeration and inspection

    def list_block_devices(self) -> list[BlockDevice]:
        return devices.list_block_devices(self.mounts_path)

    def list_active_mounts(self, device: BlockDevice) -> list[str]:
        return devices.list_active_mounts(device.identifier, self.mounts_path)

    def list_mounts(self) -> list[tuple[str, str, str]]:
        return devices.read_mounts(self.mounts_path)

    def disk_usage(self, path: str) -> Optional[tuple[int, int]]:
        """(total, used) bytes of the filesystem at path, None if unavailable."""
        try:
            usage = shutil.disk_usage(path)
        except OSError:
            return None
        return usage.total, usage.used

    def path_exists(self, path: str) -> bool:
        return os.path.exists(path)  # noqa: PTH110

    def owner_of(self, path: str) -> Optional[str]:
        try:
            return Path(path).owner()
        except (OSError, KeyError):
            return None

    # Best-effort primitives

    def unmount(self, mountpoint: str) -> bool:
        return mount.unmount_mountpoint(
            mountpoint, timeout=self.command_timeout, mounts_path=self.mounts_path
        )

    def wipe_signatures(self, device: BlockDevice) -> bool:
        return fmt.wipe_signatures(device.device_path, timeout=self.command_timeout)

    def wait_for_device(
        self, device: BlockDevice, settle_seconds: float, timeout: float
    ) -> bool:
        return fmt.wait_for_partition(
            device.device_path,
            device.primary_partition_path,
            settle_seconds=settle_seconds,
            timeout=timeout,
        )

    def chown_recursive(self, path: str, account: str) -> bool:
        try:
            devices.run_command(
                ["chown", "-R", f"{account}:{account}", path],
                timeout=self.command_timeout,
            )
            return True
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug(f"chown of {path} to {account} failed: {error}")
            return False

    # Fatal primitives

    def create_gpt(self, device: BlockDevice) -> None:
        fmt.create_gpt_label(device.device_path, timeout=self.command_timeout)

    def create_partition(self, device: BlockDevice, span_percent: int = 100) -> None:
        fmt.create_partition(
            device.device_path, span_percent, timeout=self.command_timeout
        )

    def format_filesystem(
        self, device: BlockDevice, filesystem: str, force: bool = True
    ) -> None:
        fmt.format_filesystem(
            device.primary_partition_path,
            filesystem,
            force=force,
            timeout=self.command_timeout,
        )

    def read_uuid(self, device: BlockDevice) -> str:
        return fmt.read_filesystem_uuid(
            device.primary_partition_path, timeout=self.command_timeout
        )

    def make_directory(self, path: str) -> None:
        mount.ensure_directory(path)

    def mount_by_table(self, mountpoint: str) -> None:
        mount.mount_by_table(mountpoint, timeout=self.command_timeout)

    # Accounts

    def account_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True
