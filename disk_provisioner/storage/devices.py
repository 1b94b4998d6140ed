"""Block device enumeration using lsblk, blkid and /proc/mounts.

This module is the upstream collaborator of the provisioning engine: it
reports the disks currently attached to the host, with enough metadata for
the classifier to tell data disks from the system disk and the hypervisor's
seed volume.

Device Detection:
    Uses lsblk with JSON output to enumerate block devices and their
    partitions:
    - Device name (e.g., vdb, nvme1n1)
    - Size in bytes
    - Filesystem type, label and UUID
    - Mountpoint
    Only entries of type "disk" are reported; partitions are nested under
    their disk and cdrom/loop devices are dropped.

System Disk Detection:
    A disk is the system disk when it, or one of its partitions, is mounted
    at /, /boot or /boot/firmware.

Active Mounts:
    lsblk reports a single mountpoint per entry, so the full list of active
    mounts (which may include several stale ones) is read from /proc/mounts.

Example:
    >>> from disk_provisioner.storage.devices import list_block_devices
    >>> for device in list_block_devices():
    ...     print(device.identifier, device.label, device.current_mounts)
    vda None ('/', '/boot')
    vdb cidata ()
    vdc None ()
"""

from __future__ import annotations

import json
import os
import subprocess
from typing import Optional

from disk_provisioner.domain.models import BlockDevice, PartitionInfo, device_node_pattern
from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.exceptions import EnumerationError


ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware"}
LSBLK_COLUMNS = "NAME,TYPE,SIZE,FSTYPE,LABEL,UUID,MOUNTPOINT"
PROC_MOUNTS = "/proc/mounts"

log = LoggerFactory.for_command()
output_log = LoggerFactory.for_command_output()


def run_command(
    command: list[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    timeout: Optional[float] = None,
    **kwargs,
) -> subprocess.CompletedProcess:
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    # own session: a terminal Ctrl-C must not kill parted or mkfs mid-step
    kwargs.setdefault("start_new_session", True)
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, timeout=timeout, **kwargs
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            output_log.trace(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def has_root_mountpoint(device: dict) -> bool:
    mountpoint = device.get("mountpoint")
    if mountpoint in ROOT_MOUNTPOINTS:
        return True
    for child in get_children(device):
        if has_root_mountpoint(child):
            return True
    return False


def is_root_device(device: dict) -> bool:
    if device.get("type") != "disk":
        return False
    return has_root_mountpoint(device)


def list_active_mounts(device_name: str, mounts_path: str = PROC_MOUNTS) -> list[str]:
    """Mountpoints backed by the device or any of its partitions.

    Returned in /proc/mounts order; a mountpoint mounted twice is listed
    twice so each stacked mount gets its own unmount.
    """
    pattern = device_node_pattern(device_name)
    mountpoints: list[str] = []
    try:
        with open(mounts_path, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and pattern.match(parts[0]):
                    # /proc/mounts escapes spaces as \040
                    mountpoints.append(parts[1].replace("\\040", " "))
    except FileNotFoundError:
        log.debug(f"{mounts_path} not available; assuming no active mounts")
    return mountpoints


def is_mountpoint_active(mountpoint: str, mounts_path: str = PROC_MOUNTS) -> bool:
    try:
        with open(mounts_path, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1].replace("\\040", " ") == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def get_filesystem_label(device_path: str) -> Optional[str]:
    """Read a filesystem label straight from the device signature."""
    try:
        result = run_command(
            ["blkid", "-s", "LABEL", "-o", "value", device_path],
            check=False,
            log_command=False,
        )
    except (OSError, subprocess.SubprocessError) as error:
        log.debug(f"blkid label probe failed for {device_path}: {error}")
        return None
    label = (result.stdout or "").strip()
    return label or None


def get_block_devices() -> list[dict]:
    """Return raw lsblk entries; raises EnumerationError when lsblk fails."""
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, OSError, json.JSONDecodeError) as error:
        log.error(f"lsblk failed: {error}")
        raise EnumerationError(str(error)) from error
    devices = data.get("blockdevices", []) or []
    names = [device.get("name") for device in devices if device.get("name")]
    if names:
        log.debug(f"lsblk found {len(names)} devices: {', '.join(names)}")
    else:
        log.debug("lsblk found no block devices")
    return devices


def block_device_from_lsblk(
    device: dict, mounts_path: str = PROC_MOUNTS
) -> BlockDevice:
    name = device["name"]
    label = device.get("label") or get_filesystem_label(f"/dev/{name}")
    try:
        size_bytes = int(device.get("size") or 0)
    except (TypeError, ValueError):
        size_bytes = 0
    return BlockDevice(
        identifier=name,
        label=label,
        is_system_device=is_root_device(device),
        current_mounts=tuple(list_active_mounts(name, mounts_path)),
        partitions=tuple(
            PartitionInfo.from_lsblk_dict(child)
            for child in get_children(device)
            if child.get("name")
        ),
        size_bytes=size_bytes,
    )


def list_block_devices(mounts_path: str = PROC_MOUNTS) -> list[BlockDevice]:
    """Disks attached to the host, in lsblk order."""
    return [
        block_device_from_lsblk(device, mounts_path)
        for device in get_block_devices()
        if device.get("type") == "disk" and device.get("name")
    ]


def read_mounts(mounts_path: str = PROC_MOUNTS) -> list[tuple[str, str, str]]:
    """(source, mountpoint, fstype) for every active mount."""
    entries: list[tuple[str, str, str]] = []
    try:
        with open(mounts_path, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 2:
                    entries.append((parts[0], parts[1].replace("\\040", " "), parts[2]))
    except FileNotFoundError:
        log.debug(f"{mounts_path} not available")
    return entries
