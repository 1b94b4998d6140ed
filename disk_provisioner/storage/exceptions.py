"""Custom exceptions for disk provisioning.

Exception Hierarchy:
    ProvisioningError (base)
        ├── PrivilegeError
        ├── EnumerationError
        ├── NoEligibleDevicesError
        ├── MountTableError
        └── DeviceLifecycleError
            └── DeviceTimeoutError

    BestEffortWarning (UserWarning, never raised)

Environment-level errors (privilege, enumeration, no eligible devices) abort a
batch before any device is touched. DeviceLifecycleError aborts one device
only; the orchestrator turns it into a failed outcome. BestEffortWarning
records a non-fatal step failure and is attached to the device outcome.

Usage:
    from disk_provisioner.storage.exceptions import DeviceLifecycleError

    raise DeviceLifecycleError("vdb", "format", error)
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for all provisioning errors."""


class PrivilegeError(ProvisioningError):
    """The caller does not hold the privileges the disk operations need."""

    def __init__(self, reason: str = "root privileges are required"):
        self.reason = reason
        super().__init__(f"Insufficient privileges: {reason}")


class EnumerationError(ProvisioningError):
    """Block devices could not be enumerated."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to enumerate block devices: {reason}")


class NoEligibleDevicesError(ProvisioningError):
    """No device survived classification."""

    def __init__(self, considered: list[str] | None = None):
        self.considered = list(considered or [])
        msg = "No eligible data disks found"
        if self.considered:
            msg += f" (considered: {', '.join(self.considered)})"
        super().__init__(msg)


class MountTableError(ProvisioningError):
    """The persistent mount table could not be read or rewritten."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Mount table {path}: {reason}")


class DeviceLifecycleError(ProvisioningError):
    """A fatal lifecycle step failed for one device."""

    def __init__(self, device_name: str, step: str, cause: object = None):
        self.device_name = device_name
        self.step = step
        self.cause = cause
        msg = f"Device {device_name} failed at step '{step}'"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class DeviceTimeoutError(DeviceLifecycleError):
    """A device exceeded its per-device time budget."""

    def __init__(self, device_name: str, step: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            device_name, step, f"timed out after {timeout_seconds:g} seconds"
        )


class BestEffortWarning(UserWarning):
    """A best-effort step failed; the lifecycle continued."""

    def __init__(self, device_name: str, step: str, cause: object = None):
        self.device_name = device_name
        self.step = step
        self.cause = cause
        msg = f"{device_name}: best-effort step '{step}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)
