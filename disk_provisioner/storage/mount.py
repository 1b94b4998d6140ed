"""Mount and unmount helpers with secure subprocess handling.

All commands are executed with argument lists, never through a shell, and
mountpoints are validated to be absolute paths before use.

Functions:
    - unmount_mountpoint(): best-effort unmount, falling back to a lazy unmount
    - mount_by_table(): mount a mountpoint through its fstab entry
    - ensure_directory(): create a mountpoint or data directory
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Optional

from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.devices import PROC_MOUNTS, is_mountpoint_active, run_command


log = LoggerFactory.for_system()


def _validate_mountpoint(mountpoint: str) -> None:
    if not mountpoint or not os.path.isabs(mountpoint):
        raise ValueError(f"Mountpoint must be an absolute path: {mountpoint!r}")
    if ".." in Path(mountpoint).parts:
        raise ValueError(f"Mountpoint must not contain '..': {mountpoint!r}")


def unmount_mountpoint(
    mountpoint: str, timeout: Optional[float] = None, mounts_path: str = PROC_MOUNTS
) -> bool:
    """Unmount one mountpoint.

    Tries a normal unmount first and a lazy unmount if that fails.

    Returns:
        True when the mountpoint is no longer active, False otherwise.
    """
    _validate_mountpoint(mountpoint)
    try:
        run_command(["umount", mountpoint], timeout=timeout)
        log.debug(f"Unmounted {mountpoint}")
        return True
    except subprocess.CalledProcessError as error:
        log.debug(f"Failed to unmount {mountpoint}: {error}")
    except OSError as error:
        log.debug(f"umount unavailable for {mountpoint}: {error}")
        return False

    time.sleep(0.5)
    if not is_mountpoint_active(mountpoint, mounts_path):
        log.debug(f"{mountpoint} already unmounted")
        return True

    try:
        run_command(["umount", "-l", mountpoint], timeout=timeout)
        log.debug(f"Lazy unmounted {mountpoint}")
        return True
    except (subprocess.CalledProcessError, OSError) as error:
        log.debug(f"Failed to lazy unmount {mountpoint}: {error}")
        return False


def mount_by_table(mountpoint: str, timeout: Optional[float] = None) -> None:
    """Mount a mountpoint so that fstab resolves the device.

    Raises:
        ValueError: If the mountpoint is not an absolute path
        subprocess.CalledProcessError: If mount fails
    """
    _validate_mountpoint(mountpoint)
    run_command(["mount", mountpoint], timeout=timeout)
    log.debug(f"Mounted {mountpoint} from fstab")


def ensure_directory(path: str) -> None:
    """Create a directory and its parents if absent.

    Raises:
        OSError: If the directory cannot be created
    """
    Path(path).mkdir(parents=True, exist_ok=True)
