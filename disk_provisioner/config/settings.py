"""Settings storage for provisioning configuration."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DISK_PROVISIONER_SETTINGS_PATH",
        "/etc/disk-provisioner/settings.json",
    )
)

SUPPORTED_FILESYSTEMS = ("xfs", "ext4", "btrfs")

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_MOUNT_PREFIX = "/mnt/minio"
DEFAULT_FILESYSTEM = "xfs"
DEFAULT_SEED_LABEL = "cidata"
DEFAULT_SERVICE_ACCOUNT = "minio-user"
DEFAULT_SETTLE_SECONDS = 2.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "mount_prefix": DEFAULT_MOUNT_PREFIX,
    "filesystem": DEFAULT_FILESYSTEM,
    "mount_options": "defaults",
    "service_account": DEFAULT_SERVICE_ACCOUNT,
    "seed_label": DEFAULT_SEED_LABEL,
    "device_pattern": None,
    "fstab_path": "/etc/fstab",
    "data_dir_name": "data",
    "settle_seconds": DEFAULT_SETTLE_SECONDS,
    "partition_wait_seconds": 5.0,
    "command_timeout_seconds": 120.0,
    "device_timeout_seconds": 600.0,
    "log_dir": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


@dataclass(frozen=True)
class ProvisioningSettings:
    """Immutable settings for one provisioning run."""

    mount_prefix: str = DEFAULT_MOUNT_PREFIX
    filesystem: str = DEFAULT_FILESYSTEM
    mount_options: str = "defaults"
    service_account: str | None = DEFAULT_SERVICE_ACCOUNT
    seed_label: str = DEFAULT_SEED_LABEL
    device_pattern: str | None = None
    fstab_path: str = "/etc/fstab"
    data_dir_name: str = "data"
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    partition_wait_seconds: float = 5.0
    command_timeout_seconds: float | None = 120.0
    device_timeout_seconds: float | None = 600.0

    def __post_init__(self):
        if self.filesystem not in SUPPORTED_FILESYSTEMS:
            raise ValueError(
                f"Unsupported filesystem {self.filesystem!r}; "
                f"expected one of {', '.join(SUPPORTED_FILESYSTEMS)}"
            )
        if self.device_pattern:
            try:
                re.compile(self.device_pattern)
            except re.error as error:
                raise ValueError(
                    f"Invalid device pattern {self.device_pattern!r}: {error}"
                ) from error

    @classmethod
    def from_store(cls, **overrides: Any) -> ProvisioningSettings:
        """Build settings from the loaded store; non-None overrides win."""
        known = {f.name for f in fields(cls)}
        values = {
            key: value for key, value in settings_store.values.items() if key in known
        }
        values.update(
            {key: value for key, value in overrides.items() if value is not None}
        )
        return cls(**values)


load_settings()
