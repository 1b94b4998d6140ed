"""Operator-facing tables: batch outcomes and current mount status."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

from disk_provisioner.config.settings import ProvisioningSettings
from disk_provisioner.domain.models import BatchResult
from disk_provisioner.storage.devices import human_size


@dataclass(frozen=True)
class MountStatus:
    """One provisioned mount point as seen on the host right now."""

    mount_point: str
    source: Optional[str]
    filesystem_type: Optional[str]
    total_bytes: Optional[int]
    used_bytes: Optional[int]
    data_dir_exists: bool
    data_dir_owner: Optional[str]
    fstab_source: Optional[str]

    @property
    def mounted(self) -> bool:
        return self.source is not None


def _render_table(headers: list[str], rows: list[list[str]]) -> str:
    widths = [len(header) for header in headers]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    lines = [
        "  ".join(header.ljust(width) for header, width in zip(headers, widths)),
        "  ".join("-" * width for width in widths),
    ]
    for row in rows:
        lines.append("  ".join(cell.ljust(width) for cell, width in zip(row, widths)))
    return "\n".join(line.rstrip() for line in lines)


def format_outcome_table(result: BatchResult) -> str:
    """device -> mount point -> outcome, one row per assignment."""
    rows = []
    for outcome in result.outcomes:
        rows.append(
            [
                f"/dev/{outcome.device_name}",
                outcome.mount_point,
                outcome.describe(),
                str(len(outcome.warnings)),
            ]
        )
    return _render_table(["DEVICE", "MOUNT POINT", "OUTCOME", "WARNINGS"], rows)


def collect_mount_status(host, settings: ProvisioningSettings) -> list[MountStatus]:
    """Mount points under the prefix, from fstab and the live mount list."""
    slot_pattern = re.compile(rf"^{re.escape(settings.mount_prefix)}(\d+)$")
    fstab = {
        record.mount_point: record.source
        for record in host.mount_table.read_records()
        if slot_pattern.match(record.mount_point)
    }
    active = {
        mountpoint: (source, fstype)
        for source, mountpoint, fstype in host.list_mounts()
        if slot_pattern.match(mountpoint)
    }

    def _slot(mount_point: str) -> int:
        return int(slot_pattern.match(mount_point).group(1))

    statuses = []
    for mount_point in sorted(set(fstab) | set(active), key=_slot):
        source, fstype = active.get(mount_point, (None, None))
        usage = host.disk_usage(mount_point) if source else None
        data_dir = os.path.join(mount_point, settings.data_dir_name)
        data_dir_exists = host.path_exists(data_dir)
        statuses.append(
            MountStatus(
                mount_point=mount_point,
                source=source,
                filesystem_type=fstype,
                total_bytes=usage[0] if usage else None,
                used_bytes=usage[1] if usage else None,
                data_dir_exists=data_dir_exists,
                data_dir_owner=host.owner_of(data_dir) if data_dir_exists else None,
                fstab_source=fstab.get(mount_point),
            )
        )
    return statuses


def format_status_table(statuses: list[MountStatus]) -> str:
    rows = []
    for status in statuses:
        if status.total_bytes is not None:
            usage = f"{human_size(status.used_bytes)}/{human_size(status.total_bytes)}"
        else:
            usage = "-"
        rows.append(
            [
                status.mount_point,
                status.source or "(not mounted)",
                status.filesystem_type or "-",
                usage,
                (status.data_dir_owner or "yes") if status.data_dir_exists else "missing",
                status.fstab_source or "(no record)",
            ]
        )
    return _render_table(
        ["MOUNT POINT", "DEVICE", "TYPE", "USED/SIZE", "DATA DIR", "FSTAB"], rows
    )
