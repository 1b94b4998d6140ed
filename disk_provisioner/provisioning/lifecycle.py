"""Per-device lifecycle: bring one disk to the converged state.

WARNING: this is destructive. In FORCE_REFORMAT mode every step is replayed
on every run, so any data written to an eligible disk since the last run is
lost. Re-running is safe in the sense that it always ends in the same
converged layout, never in the sense that it preserves data.

Converged means:
    - one GPT partition spanning the disk, formatted with the target filesystem
    - mounted at the slot's mount point
    - exactly one UUID-keyed fstab record for that filesystem
    - <mount point>/data present, owned by the service account when it exists

In SKIP_CONVERGED mode a device whose filesystem layout is already in place
only gets steps 11 and 12 repaired; its filesystem is never touched.

Steps (fatal unless marked best-effort):
    1. unmount every active mount of the device (best-effort)
    2. purge fstab records keyed by the device node, by the device's old
       filesystem UUIDs, or by the slot's mount point
    3. wipe signatures (best-effort)
    4. write a GPT label and one full-size partition
    5. settle and wait for the partition node (best-effort)
    6. format, forcing overwrite of leftover signatures
    7. read back the filesystem UUID
    8. create the mount point
    9. append the UUID-keyed fstab record
    10. mount through fstab
    11. create the data directory
    12. chown the data directory to the service account (best-effort)

A fatal failure ends the lifecycle of this device only; the outcome carries
the failing step and the reason.
"""

from __future__ import annotations

import os
import subprocess
import time
from typing import Callable, Optional

from disk_provisioner.config.settings import ProvisioningSettings
from disk_provisioner.domain.models import (
    DeviceOutcome,
    DeviceState,
    LifecycleStep,
    MountAssignment,
    OutcomeStatus,
    PersistentMountRecord,
    ProvisionMode,
)
from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.exceptions import (
    BestEffortWarning,
    DeviceLifecycleError,
    DeviceTimeoutError,
    ProvisioningError,
)
from disk_provisioner.storage.fstab import references_device


def describe_error(error: BaseException) -> str:
    """One-line reason for an outcome table."""
    if isinstance(error, subprocess.CalledProcessError):
        command = error.cmd[0] if isinstance(error.cmd, (list, tuple)) else error.cmd
        detail = (error.stderr or "").strip().splitlines()
        message = f"{command} exited {error.returncode}"
        if detail:
            message += f": {detail[-1]}"
        return message
    return str(error) or type(error).__name__


class DiskLifecycleExecutor:
    """Runs the convergence steps for one MountAssignment at a time.

    The executor holds no per-device state, so one instance may serve
    several worker threads; fstab edits are serialized by the host's
    MountTable.
    """

    def __init__(
        self,
        host,
        settings: ProvisioningSettings,
        mode: ProvisionMode = ProvisionMode.FORCE_REFORMAT,
    ):
        self.host = host
        self.settings = settings
        self.mode = mode

    @property
    def mount_table(self):
        return self.host.mount_table

    def data_directory(self, assignment: MountAssignment) -> str:
        return os.path.join(assignment.mount_point, self.settings.data_dir_name)

    # ------------------------------------------------------------------
    # State inference
    # ------------------------------------------------------------------

    def inspect(self, assignment: MountAssignment) -> DeviceState:
        """Infer the device's state from live host data."""
        device = assignment.device
        if self.mount_table.device_entries(device.identifier):
            return DeviceState.STALE_RECORDED
        if self.is_converged(assignment):
            return DeviceState.CONVERGED
        if device.current_mounts:
            return DeviceState.MOUNTED_ELSEWHERE_OR_STALE
        return DeviceState.UNKNOWN_RAW

    def is_converged(self, assignment: MountAssignment) -> bool:
        """True when partition, filesystem, mount and fstab record are in place.

        The data directory is not part of this check; steps 11 and 12 repair
        it in place.
        """
        device = assignment.device
        partition = device.primary_partition()
        if partition is None or not partition.uuid:
            return False
        if partition.fstype != self.settings.filesystem:
            return False
        if list(device.current_mounts) != [assignment.mount_point]:
            return False

        records = self.mount_table.records_for_mount_point(assignment.mount_point)
        if len(records) != 1 or records[0].filesystem_uuid != partition.uuid:
            return False
        return len(self.mount_table.records_for_uuid(partition.uuid)) == 1

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    def converge(self, assignment: MountAssignment) -> DeviceOutcome:
        """Bring one device to the converged state and report the outcome.

        Never raises for lifecycle failures; they are reported on the
        returned outcome.
        """
        name = assignment.device_name
        log = LoggerFactory.for_disk(name)
        outcome = DeviceOutcome(assignment=assignment, status=OutcomeStatus.CONVERGED)
        log.info(f"Processing disk: /dev/{name} -> {assignment.mount_point}")

        try:
            outcome.initial_state = self.inspect(assignment)
        except (OSError, ProvisioningError) as error:
            log.error(f"Could not inspect {name}: {error}")
            outcome.status = OutcomeStatus.FAILED
            outcome.reason = f"inspection failed: {describe_error(error)}"
            return outcome
        log.debug(f"{name} initial state: {outcome.initial_state.value}")

        deadline = None
        if self.settings.device_timeout_seconds:
            deadline = time.monotonic() + self.settings.device_timeout_seconds

        try:
            if (
                self.mode is ProvisionMode.SKIP_CONVERGED
                and outcome.initial_state is DeviceState.CONVERGED
            ):
                outcome.filesystem_uuid = assignment.device.primary_partition().uuid
                outcome.skipped = True
                log.info(f"{name} already converged at {assignment.mount_point}; skipping")
                self._prepare_data_directory(
                    assignment, outcome, deadline, log, only_if_needed=True
                )
                return outcome

            outcome.filesystem_uuid = self._run_steps(assignment, outcome, deadline, log)
        except DeviceTimeoutError as error:
            outcome.status = OutcomeStatus.TIMEOUT
            outcome.failed_step = LifecycleStep(error.step)
            outcome.reason = str(error.cause)
            log.error(str(error))
            return outcome
        except DeviceLifecycleError as error:
            outcome.status = OutcomeStatus.FAILED
            outcome.failed_step = LifecycleStep(error.step)
            outcome.reason = str(error.cause)
            log.error(str(error))
            return outcome

        log.success(
            f"Successfully mounted {name} to {assignment.mount_point} "
            f"(UUID {outcome.filesystem_uuid})"
        )
        return outcome

    def _check_deadline(
        self, name: str, step: LifecycleStep, deadline: Optional[float]
    ) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise DeviceTimeoutError(
                name, step.value, self.settings.device_timeout_seconds
            )

    def _fatal(
        self,
        name: str,
        step: LifecycleStep,
        deadline: Optional[float],
        func: Callable,
        *args,
        **kwargs,
    ):
        self._check_deadline(name, step, deadline)
        try:
            return func(*args, **kwargs)
        except DeviceLifecycleError:
            raise
        except subprocess.TimeoutExpired as error:
            raise DeviceTimeoutError(name, step.value, error.timeout) from error
        except (
            subprocess.CalledProcessError,
            OSError,
            ValueError,
            ProvisioningError,
        ) as error:
            raise DeviceLifecycleError(name, step.value, describe_error(error)) from error

    def _best_effort(
        self,
        outcome: DeviceOutcome,
        step: LifecycleStep,
        deadline: Optional[float],
        func: Callable,
        *args,
        failure: str = "",
        **kwargs,
    ) -> bool:
        name = outcome.device_name
        self._check_deadline(name, step, deadline)
        try:
            succeeded = bool(func(*args, **kwargs))
            cause = failure
        except (subprocess.SubprocessError, OSError, ValueError) as error:
            succeeded = False
            cause = describe_error(error)
        if not succeeded:
            self._warn(outcome, step, cause)
        return succeeded

    def _warn(self, outcome: DeviceOutcome, step: LifecycleStep, cause: str) -> None:
        warning = BestEffortWarning(outcome.device_name, step.value, cause)
        outcome.warnings.append(warning)
        LoggerFactory.for_disk(outcome.device_name).warning(str(warning))

    def _purge_records(self, assignment: MountAssignment) -> list[str]:
        device = assignment.device
        stale_uuids = {p.uuid for p in device.partitions if p.uuid}

        def _is_stale(line: str) -> bool:
            if references_device(line, device.identifier):
                return True
            record = PersistentMountRecord.from_line(line)
            if record is None:
                return False
            if record.filesystem_uuid and record.filesystem_uuid in stale_uuids:
                return True
            return record.mount_point == assignment.mount_point

        return self.mount_table.remove_lines_matching(_is_stale)

    def _run_steps(
        self,
        assignment: MountAssignment,
        outcome: DeviceOutcome,
        deadline: Optional[float],
        log,
    ) -> str:
        device = assignment.device
        name = device.identifier
        host = self.host
        settings = self.settings

        # 1. Unmount whatever is mounted from this device right now
        try:
            mounts = host.list_active_mounts(device)
        except OSError as error:
            self._warn(outcome, LifecycleStep.UNMOUNT, describe_error(error))
            mounts = []
        if mounts:
            log.info(f"Unmounting existing partitions for {name}...")
        for mountpoint in mounts:
            self._best_effort(
                outcome,
                LifecycleStep.UNMOUNT,
                deadline,
                host.unmount,
                mountpoint,
                failure=f"Failed to unmount {mountpoint}",
            )

        # 2. Purge stale fstab records
        with self.mount_table.locked():
            removed = self._fatal(
                name, LifecycleStep.PURGE_RECORDS, deadline, self._purge_records, assignment
            )
        if removed:
            log.info(f"Removed {len(removed)} stale fstab record(s) for {name}")

        # 3. Wipe signatures
        self._best_effort(
            outcome,
            LifecycleStep.WIPE,
            deadline,
            host.wipe_signatures,
            device,
            failure=f"Could not wipe signatures on {name}",
        )

        # 4. Partition
        log.info(f"Creating partition table on {device.device_path}...")
        self._fatal(name, LifecycleStep.PARTITION, deadline, host.create_gpt, device)
        self._fatal(
            name, LifecycleStep.PARTITION, deadline, host.create_partition, device, 100
        )

        # 5. Settle
        self._best_effort(
            outcome,
            LifecycleStep.SETTLE,
            deadline,
            host.wait_for_device,
            device,
            settings.settle_seconds,
            settings.partition_wait_seconds,
            failure=f"{device.primary_partition_path} did not appear",
        )

        # 6. Format
        log.info(f"Formatting {device.primary_partition_path} with {settings.filesystem}...")
        self._fatal(
            name,
            LifecycleStep.FORMAT,
            deadline,
            host.format_filesystem,
            device,
            settings.filesystem,
            force=True,
        )

        # 7. UUID
        filesystem_uuid = self._fatal(
            name, LifecycleStep.READ_UUID, deadline, host.read_uuid, device
        )
        log.info(f"Disk UUID: {filesystem_uuid}")

        # 8. Mount point
        self._fatal(
            name,
            LifecycleStep.CREATE_MOUNT_POINT,
            deadline,
            host.make_directory,
            assignment.mount_point,
        )

        # 9. Persistent record
        record = PersistentMountRecord.for_uuid(
            filesystem_uuid,
            assignment.mount_point,
            settings.filesystem,
            settings.mount_options,
        )
        with self.mount_table.locked():
            self._fatal(
                name,
                LifecycleStep.APPEND_RECORD,
                deadline,
                self.mount_table.append_record,
                record,
            )

        # 10. Mount through fstab
        self._fatal(
            name, LifecycleStep.MOUNT, deadline, host.mount_by_table, assignment.mount_point
        )

        self._prepare_data_directory(assignment, outcome, deadline, log)
        return filesystem_uuid

    def _prepare_data_directory(
        self,
        assignment: MountAssignment,
        outcome: DeviceOutcome,
        deadline: Optional[float],
        log,
        only_if_needed: bool = False,
    ) -> None:
        """Steps 11 and 12. With only_if_needed, state already in place is kept."""
        name = assignment.device_name
        host = self.host
        data_dir = self.data_directory(assignment)

        # 11. Data directory
        if not (only_if_needed and host.path_exists(data_dir)):
            if only_if_needed:
                log.info(f"Recreating missing {data_dir}")
            self._fatal(
                name, LifecycleStep.CREATE_DATA_DIR, deadline, host.make_directory, data_dir
            )

        # 12. Ownership
        account = self.settings.service_account
        if account and host.account_exists(account):
            if only_if_needed and host.owner_of(data_dir) == account:
                return
            if self._best_effort(
                outcome,
                LifecycleStep.CHOWN,
                deadline,
                host.chown_recursive,
                data_dir,
                account,
                failure=f"Could not chown {data_dir} to {account}",
            ):
                log.info(f"Set ownership of {data_dir} to {account}")
        elif account and not only_if_needed:
            log.warning(f"{account} not found, keeping default ownership of {data_dir}")
