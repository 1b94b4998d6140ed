"""Eligibility filter for data disks."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from disk_provisioner.domain.models import BlockDevice
from disk_provisioner.logging import LoggerFactory


log = LoggerFactory.for_system()


def is_eligible(
    device: BlockDevice,
    seed_label: str = "cidata",
    name_pattern: Optional[str] = None,
) -> bool:
    if device.is_system_device:
        return False
    if seed_label and device.label == seed_label:
        return False
    if name_pattern and not re.fullmatch(name_pattern, device.identifier):
        return False
    return True


def classify_devices(
    devices: Iterable[BlockDevice],
    seed_label: str = "cidata",
    name_pattern: Optional[str] = None,
) -> list[BlockDevice]:
    """Return the eligible data disks, preserving input order.

    Drops the system disk and any device carrying the hypervisor's seed
    volume label. ``name_pattern`` optionally restricts eligible names
    (e.g. ``vd[b-z]``). An empty result is not an error.
    """
    eligible = []
    for device in devices:
        if device.is_system_device:
            log.debug(f"Skipping {device.identifier}: system disk")
        elif seed_label and device.label == seed_label:
            log.info(f"Skipping {device.identifier}: {seed_label} metadata volume")
        elif not is_eligible(device, seed_label, name_pattern):
            log.debug(f"Skipping {device.identifier}: name does not match {name_pattern}")
        else:
            eligible.append(device)
    return eligible
