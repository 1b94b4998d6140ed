"""Order-based mapping of eligible devices to mount slots."""

from __future__ import annotations

from typing import Iterable

from disk_provisioner.domain.models import BlockDevice, MountAssignment


def mount_point_for_slot(prefix: str, slot_index: int) -> str:
    return f"{prefix}{slot_index}"


def assign_slots(devices: Iterable[BlockDevice], prefix: str) -> list[MountAssignment]:
    # Slots follow enumeration order and are not persisted between runs.
    return [
        MountAssignment(
            device=device,
            slot_index=index,
            mount_point=mount_point_for_slot(prefix, index),
        )
        for index, device in enumerate(devices, start=1)
    ]
