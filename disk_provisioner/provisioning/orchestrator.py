"""Batch orchestration: classify, assign, converge every eligible disk."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from disk_provisioner.config.settings import ProvisioningSettings
from disk_provisioner.domain.models import (
    BatchResult,
    DeviceOutcome,
    MountAssignment,
    OutcomeStatus,
    ProvisionMode,
)
from disk_provisioner.logging import operation_context
from disk_provisioner.provisioning.classifier import classify_devices
from disk_provisioner.provisioning.lifecycle import DiskLifecycleExecutor
from disk_provisioner.provisioning.slots import assign_slots
from disk_provisioner.storage.exceptions import NoEligibleDevicesError


def plan_assignments(host, settings: ProvisioningSettings) -> list[MountAssignment]:
    """Enumerate, classify and assign slots without touching any disk.

    Raises:
        EnumerationError: If the host cannot list its block devices
        NoEligibleDevicesError: If no device is eligible
    """
    devices = host.list_block_devices()
    eligible = classify_devices(
        devices,
        seed_label=settings.seed_label,
        name_pattern=settings.device_pattern,
    )
    if not eligible:
        raise NoEligibleDevicesError([device.identifier for device in devices])
    return assign_slots(eligible, settings.mount_prefix)


def _converge_unless_cancelled(
    executor: DiskLifecycleExecutor,
    assignment: MountAssignment,
    cancel_event: Optional[threading.Event],
) -> DeviceOutcome:
    # Cancellation is honoured only before a device's lifecycle starts.
    if cancel_event is not None and cancel_event.is_set():
        return DeviceOutcome(
            assignment=assignment,
            status=OutcomeStatus.CANCELLED,
            reason="cancelled before start",
        )
    return executor.converge(assignment)


def run_assignments(
    executor: DiskLifecycleExecutor,
    assignments: list[MountAssignment],
    *,
    jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> list[DeviceOutcome]:
    """Converge each assignment; outcomes keep assignment order."""
    if jobs <= 1 or len(assignments) <= 1:
        return [
            _converge_unless_cancelled(executor, assignment, cancel_event)
            for assignment in assignments
        ]
    with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="disk") as pool:
        futures = [
            pool.submit(_converge_unless_cancelled, executor, assignment, cancel_event)
            for assignment in assignments
        ]
        return [future.result() for future in futures]


def provision_host(
    host,
    settings: ProvisioningSettings,
    *,
    mode: ProvisionMode = ProvisionMode.FORCE_REFORMAT,
    jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    """Run the whole pipeline for one host.

    Environment errors (PrivilegeError, EnumerationError,
    NoEligibleDevicesError) are raised before any disk is touched.
    Per-device failures are reported in the result, never raised.
    """
    with operation_context(
        "provision",
        prefix=settings.mount_prefix,
        filesystem=settings.filesystem,
        mode=mode.value,
    ) as log:
        host.check_privileges()
        assignments = plan_assignments(host, settings)
        log.info(
            "Found disks: {}",
            ", ".join(f"{a.device_name}->{a.mount_point}" for a in assignments),
        )

        executor = DiskLifecycleExecutor(host, settings, mode)
        outcomes = run_assignments(
            executor, assignments, jobs=jobs, cancel_event=cancel_event
        )
        result = BatchResult(outcomes)

        log.info(
            "{} of {} disk(s) converged, {} failed, {} warning(s)",
            len(result.converged),
            len(result.outcomes),
            len(result.failures),
            result.warning_count,
        )
        return result
