"""Domain model for disk provisioning.

Type-safe objects for the block devices we inspect, the mount slots we
assign, the fstab records we write, and the per-device outcomes we report.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from disk_provisioner.storage.exceptions import BestEffortWarning


# ==============================================================================
# Devices
# ==============================================================================


def partition_name(device_name: str, number: int = 1) -> str:
    """Kernel name of a partition (vdb -> vdb1, nvme0n1 -> nvme0n1p1)."""
    suffix = "p" if device_name[-1:].isdigit() else ""
    return f"{device_name}{suffix}{number}"


def device_node_pattern(device_name: str) -> re.Pattern:
    """Match /dev/<name> and its partition nodes only.

    Uses the same suffix rule as partition_name, so nvme0n1 matches
    /dev/nvme0n1p2 but not /dev/nvme0n12, and vdb never matches /dev/vdbb.
    """
    suffix = r"p\d+" if device_name[-1:].isdigit() else r"\d+"
    return re.compile(rf"^/dev/{re.escape(device_name)}({suffix})?$")


@dataclass(frozen=True)
class PartitionInfo:
    """A partition reported under a block device by lsblk."""

    name: str  # e.g., "vdb1"
    fstype: str | None = None
    uuid: str | None = None
    label: str | None = None
    mountpoint: str | None = None

    @classmethod
    def from_lsblk_dict(cls, child: dict[str, Any]) -> PartitionInfo:
        return cls(
            name=child["name"],
            fstype=child.get("fstype") or None,
            uuid=child.get("uuid") or None,
            label=child.get("label") or None,
            mountpoint=child.get("mountpoint") or None,
        )


@dataclass(frozen=True)
class BlockDevice:
    """A raw storage device visible to the host.

    Enumerated fresh on every run; the host is the source of truth.
    """

    identifier: str  # e.g., "vdb"
    label: str | None = None
    is_system_device: bool = False
    current_mounts: tuple[str, ...] = ()
    partitions: tuple[PartitionInfo, ...] = ()
    size_bytes: int = 0

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/vdb)."""
        return f"/dev/{self.identifier}"

    @property
    def primary_partition_name(self) -> str:
        return partition_name(self.identifier, 1)

    @property
    def primary_partition_path(self) -> str:
        return f"/dev/{self.primary_partition_name}"

    def primary_partition(self) -> PartitionInfo | None:
        for partition in self.partitions:
            if partition.name == self.primary_partition_name:
                return partition
        return None


# ==============================================================================
# Mount slots and fstab records
# ==============================================================================


@dataclass(frozen=True)
class MountAssignment:
    """An eligible device bound to a 1-based mount slot for this run."""

    device: BlockDevice
    slot_index: int
    mount_point: str

    @property
    def device_name(self) -> str:
        return self.device.identifier


_FSTAB_FIELD_SPLIT = re.compile(r"\s+")


@dataclass(frozen=True)
class PersistentMountRecord:
    """One line of the persistent mount table.

    Records written by this tool are keyed by ``UUID=<uuid>``; records read
    back may use any source the host accepts (device path, LABEL=, ...).
    """

    source: str
    mount_point: str
    filesystem_type: str
    options: str = "defaults"
    dump: int = 0
    passno: int = 2

    @classmethod
    def for_uuid(
        cls,
        filesystem_uuid: str,
        mount_point: str,
        filesystem_type: str,
        options: str = "defaults",
    ) -> PersistentMountRecord:
        return cls(
            source=f"UUID={filesystem_uuid}",
            mount_point=mount_point,
            filesystem_type=filesystem_type,
            options=options,
        )

    @property
    def filesystem_uuid(self) -> str | None:
        if self.source.startswith("UUID="):
            return self.source[len("UUID=") :]
        return None

    def to_line(self) -> str:
        return (
            f"{self.source} {self.mount_point} {self.filesystem_type} "
            f"{self.options} {self.dump} {self.passno}"
        )

    @classmethod
    def from_line(cls, line: str) -> PersistentMountRecord | None:
        """Parse an fstab line; comments, blanks and short lines yield None."""
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        fields = _FSTAB_FIELD_SPLIT.split(stripped)
        if len(fields) < 3:
            return None
        options = fields[3] if len(fields) > 3 else "defaults"
        try:
            dump = int(fields[4]) if len(fields) > 4 else 0
            passno = int(fields[5]) if len(fields) > 5 else 0
        except ValueError:
            dump, passno = 0, 0
        return cls(
            source=fields[0],
            mount_point=fields[1],
            filesystem_type=fields[2],
            options=options,
            dump=dump,
            passno=passno,
        )


# ==============================================================================
# Lifecycle states and outcomes
# ==============================================================================


class DeviceState(Enum):
    """Per-device state inferred from host inspection at the start of a run."""

    UNKNOWN_RAW = "unknown_raw"
    MOUNTED_ELSEWHERE_OR_STALE = "mounted_elsewhere_or_stale"
    STALE_RECORDED = "stale_recorded"
    CONVERGED = "converged"


class ProvisionMode(Enum):
    """How the executor treats a device that already looks converged."""

    FORCE_REFORMAT = "force_reformat"  # replay every step, always destructive
    SKIP_CONVERGED = "skip_converged"  # leave converged devices untouched


class LifecycleStep(Enum):
    UNMOUNT = "unmount"
    PURGE_RECORDS = "purge-records"
    WIPE = "wipe"
    PARTITION = "partition"
    SETTLE = "settle"
    FORMAT = "format"
    READ_UUID = "read-uuid"
    CREATE_MOUNT_POINT = "create-mount-point"
    APPEND_RECORD = "append-record"
    MOUNT = "mount"
    CREATE_DATA_DIR = "create-data-dir"
    CHOWN = "chown"


class OutcomeStatus(Enum):
    CONVERGED = "CONVERGED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


@dataclass
class DeviceOutcome:
    """Result of one device's lifecycle."""

    assignment: MountAssignment
    status: OutcomeStatus
    initial_state: DeviceState | None = None
    failed_step: LifecycleStep | None = None
    reason: str | None = None
    filesystem_uuid: str | None = None
    skipped: bool = False
    warnings: list[BestEffortWarning] = field(default_factory=list)

    @property
    def device_name(self) -> str:
        return self.assignment.device_name

    @property
    def mount_point(self) -> str:
        return self.assignment.mount_point

    @property
    def is_failure(self) -> bool:
        return self.status in (OutcomeStatus.FAILED, OutcomeStatus.TIMEOUT)

    def describe(self) -> str:
        """Outcome column text, e.g. ``FAILED(format: mkfs.xfs exited 1)``."""
        if self.status is OutcomeStatus.CONVERGED:
            return "CONVERGED (skipped)" if self.skipped else "CONVERGED"
        if self.reason:
            step = f"{self.failed_step.value}: " if self.failed_step else ""
            return f"{self.status.value}({step}{self.reason})"
        return self.status.value


@dataclass
class BatchResult:
    """Ordered per-device outcomes for one host run."""

    outcomes: list[DeviceOutcome] = field(default_factory=list)

    @property
    def converged(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.CONVERGED]

    @property
    def failures(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if o.is_failure]

    @property
    def warning_count(self) -> int:
        return sum(len(o.warnings) for o in self.outcomes)

    @property
    def all_converged(self) -> bool:
        return all(o.status is OutcomeStatus.CONVERGED for o in self.outcomes)
