"""Partitioning and filesystem creation for data disks.

Supported Filesystems:
    xfs:    default for object-storage data disks
    ext4:   Linux native filesystem
    btrfs:  copy-on-write filesystem

Partitioning:
    - GPT partition table
    - One partition spanning the full device (0% to 100%, parted aligns it)

Operations:
    - wipe_signatures(): best-effort removal of filesystem/partition signatures
    - create_gpt_label(): write a fresh GPT partition table
    - create_partition(): create the single data partition
    - wait_for_partition(): bounded wait for the partition node to appear
    - format_filesystem(): forced mkfs of the partition
    - read_filesystem_uuid(): read back the UUID mkfs assigned

Security Notes:
    - All operations require root privileges
    - Every operation here destroys data on the target device
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import time
from typing import Optional

from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.devices import run_command
from disk_provisioner.storage.exceptions import ProvisioningError


log = LoggerFactory.for_disk()

# mkfs flag that overwrites an existing signature without prompting
FORCE_FLAGS = {
    "xfs": "-f",
    "ext4": "-F",
    "btrfs": "-f",
}


def _validate_device_path(device_path: str) -> bool:
    """Validate that device path starts with /dev/."""
    return device_path.startswith("/dev/")


def _require_device_path(device_path: str) -> None:
    if not _validate_device_path(device_path):
        raise ValueError(f"Invalid device path: {device_path}")


def _settle(device_path: str) -> None:
    """Best-effort: ask the kernel and udev to catch up with table changes."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(subprocess.CalledProcessError, OSError):
                run_command(cmd, log_command=False)


def wipe_signatures(device_path: str, timeout: Optional[float] = None) -> bool:
    """Erase filesystem and partition-table signatures.

    A device with no signature is not an error.

    Returns:
        True on success, False on failure
    """
    _require_device_path(device_path)
    try:
        run_command(["wipefs", "-a", device_path], timeout=timeout)
        log.debug(f"Wiped signatures on {device_path}")
        return True
    except (subprocess.CalledProcessError, OSError) as error:
        log.debug(f"wipefs failed on {device_path}: {error}")
        return False


def create_gpt_label(device_path: str, timeout: Optional[float] = None) -> None:
    """Write a new GPT partition table.

    Raises:
        subprocess.CalledProcessError: If parted fails
    """
    _require_device_path(device_path)
    log.debug(f"Creating GPT partition table on {device_path}")
    run_command(["parted", "-s", device_path, "mklabel", "gpt"], timeout=timeout)


def create_partition(
    device_path: str, span_percent: int = 100, timeout: Optional[float] = None
) -> None:
    """Create one primary partition from 0% to ``span_percent``.

    Raises:
        ValueError: If span_percent is outside 1..100
        subprocess.CalledProcessError: If parted fails
    """
    _require_device_path(device_path)
    if not 0 < span_percent <= 100:
        raise ValueError(f"span_percent must be within 1..100, got {span_percent}")
    log.debug(f"Creating primary partition on {device_path} (0%-{span_percent}%)")
    run_command(
        ["parted", "-s", device_path, "mkpart", "primary", "0%", f"{span_percent}%"],
        timeout=timeout,
    )


def wait_for_partition(
    device_path: str,
    partition_path: str,
    settle_seconds: float = 2.0,
    timeout: float = 5.0,
) -> bool:
    """Wait for the kernel to expose the new partition node.

    Sleeps a fixed settle delay, re-reads the partition table, then polls for
    the node for at most ``timeout`` seconds.

    Returns:
        True when the partition node exists, False otherwise
    """
    time.sleep(settle_seconds)
    _settle(device_path)

    deadline = time.monotonic() + timeout
    while True:
        if os.path.exists(partition_path):  # noqa: PTH110
            log.debug(f"Partition node found: {partition_path}")
            return True
        if time.monotonic() >= deadline:
            break
        time.sleep(0.5)

    log.warning(f"Partition node {partition_path} did not appear within {timeout:g}s")
    return False


def format_filesystem(
    partition_path: str,
    filesystem: str,
    force: bool = True,
    timeout: Optional[float] = None,
) -> None:
    """Create a filesystem on the partition.

    Raises:
        ValueError: If the filesystem type is not supported
        subprocess.CalledProcessError: If mkfs fails
    """
    _require_device_path(partition_path)
    filesystem = filesystem.lower()
    if filesystem not in FORCE_FLAGS:
        raise ValueError(f"Unsupported filesystem type: {filesystem}")

    command = [f"mkfs.{filesystem}"]
    if force:
        command.append(FORCE_FLAGS[filesystem])
    command.append(partition_path)

    log.debug(f"Formatting {partition_path} as {filesystem}")
    try:
        run_command(command, timeout=timeout)
    except subprocess.CalledProcessError as error:
        log.error(f"Format command failed with code {error.returncode}")
        log.error(f"Command: {' '.join(command)}")
        if error.stderr:
            log.error(f"Error output: {error.stderr.strip()}")
        raise


def read_filesystem_uuid(partition_path: str, timeout: Optional[float] = None) -> str:
    """Return the filesystem UUID of a freshly formatted partition.

    Raises:
        subprocess.CalledProcessError: If blkid fails
        ProvisioningError: If blkid reports no UUID
    """
    _require_device_path(partition_path)
    result = run_command(
        ["blkid", "-s", "UUID", "-o", "value", partition_path], timeout=timeout
    )
    uuid = (result.stdout or "").strip()
    if not uuid:
        raise ProvisioningError(f"No filesystem UUID reported for {partition_path}")
    log.debug(f"{partition_path} UUID: {uuid}")
    return uuid
