"""
Pytest configuration and shared fixtures for disk-provisioner tests.

This module provides common fixtures and an in-memory host double used to
exercise the provisioning engine end to end without touching real disks.
"""

import json
import subprocess
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest
from loguru import logger

from disk_provisioner.config import settings as settings_module
from disk_provisioner.config.settings import ProvisioningSettings
from disk_provisioner.domain.models import BlockDevice, PartitionInfo, partition_name
from disk_provisioner.storage.exceptions import PrivilegeError, ProvisioningError
from disk_provisioner.storage.fstab import MountTable


# ==============================================================================
# Global state
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_settings_store(tmp_path):
    """Start every test from the built-in defaults, not the host's settings file."""
    settings_module.load_settings(tmp_path / "no-settings.json")
    yield
    settings_module.load_settings(tmp_path / "no-settings.json")


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo setup_logging() sinks a test may have installed."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


# ==============================================================================
# lsblk Fixtures
# ==============================================================================


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """
    Fixture providing the VM's system disk as returned by lsblk.

    Returns:
        Dict representing a disk whose partitions host / and /boot.
    """
    return {
        "name": "vda",
        "type": "disk",
        "size": 107374182400,
        "fstype": None,
        "label": None,
        "uuid": None,
        "mountpoint": None,
        "children": [
            {
                "name": "vda1",
                "type": "part",
                "size": 106300440576,
                "fstype": "ext4",
                "label": "cloudimg-rootfs",
                "uuid": "d6f0a3a0-4a3e-4b8e-9b1c-2c1f1e0c6a11",
                "mountpoint": "/",
            },
            {
                "name": "vda15",
                "type": "part",
                "size": 111149056,
                "fstype": "vfat",
                "label": "UEFI",
                "uuid": "5C3B-1D2E",
                "mountpoint": "/boot/efi",
            },
            {
                "name": "vda16",
                "type": "part",
                "size": 957350400,
                "fstype": "ext4",
                "label": "BOOT",
                "uuid": "8e2f3f52-0a6b-4f1d-a3a7-4b3bfa6f31c2",
                "mountpoint": "/boot",
            },
        ],
    }


@pytest.fixture
def mock_cidata_disk() -> Dict[str, Any]:
    """Fixture providing the hypervisor's cloud-init seed volume."""
    return {
        "name": "vdb",
        "type": "disk",
        "size": 1048576,
        "fstype": "iso9660",
        "label": "cidata",
        "uuid": "2025-01-01-00-00-00-00",
        "mountpoint": "/mnt/lima-cidata",
    }


@pytest.fixture
def mock_data_disk() -> Dict[str, Any]:
    """Fixture providing a blank data disk."""
    return {
        "name": "vdc",
        "type": "disk",
        "size": 21474836480,
        "fstype": None,
        "label": None,
        "uuid": None,
        "mountpoint": None,
    }


@pytest.fixture
def mock_formatted_data_disk() -> Dict[str, Any]:
    """Fixture providing a data disk provisioned by an earlier run."""
    return {
        "name": "vdd",
        "type": "disk",
        "size": 21474836480,
        "fstype": None,
        "label": None,
        "uuid": None,
        "mountpoint": None,
        "children": [
            {
                "name": "vdd1",
                "type": "part",
                "size": 21473787904,
                "fstype": "xfs",
                "label": None,
                "uuid": "0b1c5c7e-77d4-4c61-a7b5-7f2a7f0c2f10",
                "mountpoint": "/mnt/minio2",
            }
        ],
    }


@pytest.fixture
def mock_lsblk_output(
    mock_system_disk, mock_cidata_disk, mock_data_disk, mock_formatted_data_disk
) -> str:
    """
    Fixture providing mock lsblk JSON output.

    Returns:
        JSON string with a system disk, a seed volume, two data disks and a cdrom.
    """
    output = {
        "blockdevices": [
            mock_system_disk,
            mock_cidata_disk,
            mock_data_disk,
            mock_formatted_data_disk,
            {"name": "sr0", "type": "rom", "size": 1073741312, "mountpoint": None},
        ]
    }
    return json.dumps(output)


@pytest.fixture
def proc_mounts(tmp_path) -> Path:
    """A /proc/mounts stand-in matching mock_lsblk_output."""
    path = tmp_path / "mounts"
    path.write_text(
        "\n".join(
            [
                "sysfs /sys sysfs rw,nosuid,nodev,noexec,relatime 0 0",
                "/dev/vda1 / ext4 rw,relatime,discard,errors=remount-ro 0 0",
                "/dev/vda16 /boot ext4 rw,relatime 0 0",
                "/dev/vda15 /boot/efi vfat rw,relatime 0 0",
                "/dev/vdb /mnt/lima-cidata iso9660 ro,relatime 0 0",
                "/dev/vdd1 /mnt/minio2 xfs rw,relatime,attr2,inode64 0 0",
                "/dev/vdd1 /mnt/old\\040data xfs rw,relatime 0 0",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    return path


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    mock_result = Mock()
    mock_result.returncode = 0
    mock_result.stdout = ""
    mock_result.stderr = ""
    return mocker.patch("subprocess.run", return_value=mock_result)


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always fails.

    Returns:
        Mock object for subprocess.run that raises CalledProcessError.
    """

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=raise_error)


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for verification.

    Returns:
        List that accumulates the command lists passed to subprocess.run.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


# ==============================================================================
# In-memory host
# ==============================================================================


@dataclass
class FakeDisk:
    name: str
    label: Optional[str] = None
    is_system: bool = False
    size_bytes: int = 21474836480
    has_partition: bool = False
    fstype: Optional[str] = None
    fs_uuid: Optional[str] = None
    # paths relative to the filesystem root -> owner
    files: Dict[str, str] = field(default_factory=dict)

    @property
    def partition(self) -> str:
        return partition_name(self.name)


class FakeHost:
    """In-memory stand-in for LinuxHost.

    Models partitions, filesystems, the mount list and directories, and keeps
    a real MountTable on disk so fstab handling is exercised for real.
    Failures are injected per (device or path, operation).
    """

    def __init__(self, fstab_path: Path, accounts=("minio-user",)):
        self.mount_table = MountTable(fstab_path)
        self.disks: Dict[str, FakeDisk] = {}
        self.mounts: List[tuple] = []  # (source device name, mountpoint, fstype)
        self.directories = {"/", "/mnt"}
        self.root_owners: Dict[str, str] = {}
        self.accounts = set(accounts)
        self.privileged = True
        self.failures: Dict[tuple, BaseException] = {}
        self.unmount_failures = set()
        self.calls: List[tuple] = []

    # -- test helpers -------------------------------------------------------

    def add_disk(self, name: str, **kwargs) -> FakeDisk:
        disk = FakeDisk(name=name, **kwargs)
        self.disks[name] = disk
        return disk

    def add_formatted_disk(self, name: str, fstype: str = "xfs", **kwargs) -> FakeDisk:
        return self.add_disk(
            name, has_partition=True, fstype=fstype, fs_uuid=str(uuid.uuid4()), **kwargs
        )

    def mount_partition(self, name: str, mountpoint: str) -> None:
        disk = self.disks[name]
        self.directories.add(mountpoint)
        self.mounts.append((disk.partition, mountpoint, disk.fstype))

    def fail(self, key: str, operation: str, error: Optional[BaseException] = None) -> None:
        self.failures[(key, operation)] = error or subprocess.CalledProcessError(
            1, [operation], stderr=f"injected {operation} failure"
        )

    def _maybe_fail(self, key: str, operation: str) -> None:
        self.calls.append((operation, key))
        error = self.failures.get((key, operation))
        if error is not None:
            raise error

    def _disk_for_source(self, source: str) -> Optional[FakeDisk]:
        for disk in self.disks.values():
            if source in (disk.name, disk.partition):
                return disk
        return None

    def _resolve(self, path: str):
        """Return (disk, relative path) when path lies on a mounted filesystem."""
        best = None
        for source, mountpoint, _fstype in self.mounts:
            # the root filesystem is modelled by self.directories
            if mountpoint == "/":
                continue
            if path == mountpoint or path.startswith(mountpoint.rstrip("/") + "/"):
                if best is None or len(mountpoint) > len(best[1]):
                    best = (source, mountpoint)
        if best is None:
            return None, path
        disk = self._disk_for_source(best[0])
        return disk, path[len(best[1]) :].lstrip("/")

    def mounted_at(self, mountpoint: str) -> Optional[FakeDisk]:
        for source, mp, _fstype in self.mounts:
            if mp == mountpoint:
                return self._disk_for_source(source)
        return None

    # -- LinuxHost interface ------------------------------------------------

    def check_privileges(self) -> None:
        if not self.privileged:
            raise PrivilegeError("this command must be run as root")

    def list_block_devices(self) -> List[BlockDevice]:
        self._maybe_fail("*", "list_block_devices")
        devices = []
        for disk in self.disks.values():
            partitions = ()
            if disk.has_partition:
                mountpoint = next(
                    (mp for src, mp, _ in self.mounts if src == disk.partition), None
                )
                partitions = (
                    PartitionInfo(
                        name=disk.partition,
                        fstype=disk.fstype,
                        uuid=disk.fs_uuid,
                        mountpoint=mountpoint,
                    ),
                )
            devices.append(
                BlockDevice(
                    identifier=disk.name,
                    label=disk.label,
                    is_system_device=disk.is_system,
                    current_mounts=tuple(self._active_mounts(disk)),
                    partitions=partitions,
                    size_bytes=disk.size_bytes,
                )
            )
        return devices

    def _active_mounts(self, disk: FakeDisk) -> List[str]:
        return [mp for src, mp, _ in self.mounts if src in (disk.name, disk.partition)]

    def list_active_mounts(self, device: BlockDevice) -> List[str]:
        return self._active_mounts(self.disks[device.identifier])

    def list_mounts(self) -> List[tuple]:
        return [(f"/dev/{src}", mp, fstype) for src, mp, fstype in self.mounts]

    def disk_usage(self, path: str):
        disk, _ = self._resolve(path)
        if disk is None:
            return None
        return disk.size_bytes, 4096 * len(disk.files)

    def path_exists(self, path: str) -> bool:
        disk, relative = self._resolve(path)
        if disk is None:
            return path in self.directories
        return relative == "" or relative in disk.files

    def owner_of(self, path: str) -> Optional[str]:
        disk, relative = self._resolve(path)
        if disk is None:
            return self.root_owners.get(path, "root") if path in self.directories else None
        return disk.files.get(relative, "root")

    def unmount(self, mountpoint: str) -> bool:
        self._maybe_fail(mountpoint, "unmount")
        if mountpoint in self.unmount_failures:
            return False
        for index, (_, mp, _) in enumerate(self.mounts):
            if mp == mountpoint:
                del self.mounts[index]
                return True
        return True

    def wipe_signatures(self, device: BlockDevice) -> bool:
        self._maybe_fail(device.identifier, "wipe_signatures")
        disk = self.disks[device.identifier]
        if self._active_mounts(disk):
            return False
        disk.has_partition = False
        disk.fstype = None
        disk.fs_uuid = None
        disk.label = None
        disk.files.clear()
        return True

    def create_gpt(self, device: BlockDevice) -> None:
        self._maybe_fail(device.identifier, "create_gpt")
        disk = self.disks[device.identifier]
        if self._active_mounts(disk):
            raise subprocess.CalledProcessError(
                1, ["parted"], stderr="Partition(s) on /dev/x are being used."
            )
        disk.has_partition = False

    def create_partition(self, device: BlockDevice, span_percent: int = 100) -> None:
        self._maybe_fail(device.identifier, "create_partition")
        self.disks[device.identifier].has_partition = True

    def wait_for_device(self, device: BlockDevice, settle_seconds, timeout) -> bool:
        self._maybe_fail(device.identifier, "wait_for_device")
        return self.disks[device.identifier].has_partition

    def format_filesystem(self, device: BlockDevice, filesystem: str, force: bool = True) -> None:
        self._maybe_fail(device.identifier, "format_filesystem")
        disk = self.disks[device.identifier]
        if not disk.has_partition:
            raise subprocess.CalledProcessError(
                1, [f"mkfs.{filesystem}"], stderr="No such file or directory"
            )
        if disk.fstype and not force:
            raise subprocess.CalledProcessError(
                1, [f"mkfs.{filesystem}"], stderr="appears to contain an existing filesystem"
            )
        disk.fstype = filesystem
        disk.fs_uuid = str(uuid.uuid4())
        disk.files.clear()

    def read_uuid(self, device: BlockDevice) -> str:
        self._maybe_fail(device.identifier, "read_uuid")
        disk = self.disks[device.identifier]
        if not disk.fs_uuid:
            raise ProvisioningError(f"No filesystem UUID reported for {disk.partition}")
        return disk.fs_uuid

    def make_directory(self, path: str) -> None:
        self._maybe_fail(path, "make_directory")
        disk, relative = self._resolve(path)
        if disk is None:
            parts = Path(path).parts
            for index in range(1, len(parts) + 1):
                self.directories.add(str(Path(*parts[:index])))
        elif relative:
            disk.files.setdefault(relative, "root")

    def mount_by_table(self, mountpoint: str) -> None:
        self._maybe_fail(mountpoint, "mount_by_table")
        records = self.mount_table.records_for_mount_point(mountpoint)
        if not records:
            raise subprocess.CalledProcessError(
                1, ["mount", mountpoint], stderr=f"can't find {mountpoint} in /etc/fstab"
            )
        record = records[-1]
        disk = next(
            (d for d in self.disks.values() if d.fs_uuid and d.fs_uuid == record.filesystem_uuid),
            None,
        )
        if disk is None:
            raise subprocess.CalledProcessError(
                1, ["mount", mountpoint], stderr=f"can't find {record.source}"
            )
        if mountpoint not in self.directories:
            raise subprocess.CalledProcessError(
                32, ["mount", mountpoint], stderr="mount point does not exist"
            )
        self.mounts.append((disk.partition, mountpoint, disk.fstype))

    def account_exists(self, name: str) -> bool:
        return name in self.accounts

    def chown_recursive(self, path: str, account: str) -> bool:
        self._maybe_fail(path, "chown_recursive")
        disk, relative = self._resolve(path)
        if disk is None:
            self.root_owners[path] = account
        else:
            disk.files[relative] = account
        return True


@pytest.fixture
def fstab_path(tmp_path) -> Path:
    path = tmp_path / "fstab"
    path.write_text(
        "# /etc/fstab: static file system information.\n"
        "LABEL=cloudimg-rootfs / ext4 discard,errors=remount-ro 0 1\n"
        "LABEL=UEFI /boot/efi vfat umask=0077 0 1\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def fake_host(fstab_path) -> FakeHost:
    """A host with a system disk and the cidata seed volume attached."""
    host = FakeHost(fstab_path)
    host.add_formatted_disk("vda", fstype="ext4", is_system=True)
    host.mount_partition("vda", "/")
    host.add_disk("vdb", label="cidata")
    return host


@pytest.fixture
def provisioning_settings(fstab_path) -> ProvisioningSettings:
    return ProvisioningSettings(
        fstab_path=str(fstab_path),
        settle_seconds=0,
        partition_wait_seconds=0,
        device_timeout_seconds=None,
    )


@pytest.fixture
def host_without_account(fstab_path) -> FakeHost:
    """A host where the service account has not been created."""
    return FakeHost(fstab_path, accounts=())
