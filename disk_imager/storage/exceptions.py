"""Custom exceptions for imaging operations.

This module defines a hierarchy of exceptions so callers can tell a safety
refusal from a failed capture or a corrupt backup set, and so every fatal
condition carries the device, partition or file it is about.

Exception Hierarchy:
    ImagerError (base)
        ├── PermissionRequiredError
        ├── DeviceError
        │   ├── NotABlockDeviceError
        │   ├── NoDiskFoundError
        │   ├── MountedSourceError
        │   ├── DeviceBusyError
        │   └── InsufficientSpaceError
        ├── ToolError
        │   ├── MissingRequiredToolError
        │   └── CommandFailedError
        ├── BackupError
        │   ├── BackupSetExistsError
        │   ├── CaptureFailureError
        │   └── AuditFailureError
        ├── RestoreFailureError
        └── VerificationError

    ConfirmationDeclined is deliberately outside the hierarchy: a user
    answering "no" is a clean cancel, not a failure.

Usage:
    from disk_imager.storage.exceptions import MountedSourceError

    if mounted and not allow_mounted:
        raise MountedSourceError(device, mounted)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .commands import CommandResult


class ImagerError(Exception):
    """Base exception for all imaging operations."""


class PermissionRequiredError(ImagerError):
    """Operation needs root privileges."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"{operation} must run as root (or set SKIP_ROOT_CHECK=1 for tests)"
        )


class DeviceError(ImagerError):
    """Base exception for device-related errors."""


class NotABlockDeviceError(DeviceError):
    """Identifier does not resolve to a usable block device."""

    def __init__(self, identifier: str, hint: str = ""):
        self.identifier = identifier
        self.hint = hint
        msg = f"Not a block device: {identifier}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class NoDiskFoundError(DeviceError):
    """Auto-detection found no non-removable disk."""

    def __init__(self):
        super().__init__("No non-removable disk found to use as default device")


class MountedSourceError(DeviceError):
    """Source partitions are mounted and the caller did not override."""

    def __init__(self, device_name: str, mountpoints: Iterable[str]):
        self.device_name = device_name
        self.mountpoints = list(mountpoints)
        super().__init__(
            f"Refusing to image {device_name} while mounted "
            f"({', '.join(self.mountpoints)}); unmount it or pass --allow-mounted"
        )


class DeviceBusyError(DeviceError):
    """Device is in use by the running system."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InsufficientSpaceError(DeviceError):
    """Target device is too small for the backup set."""

    def __init__(self, device_name: str, device_size: int, required_size: int):
        self.device_name = device_name
        self.device_size = device_size
        self.required_size = required_size
        super().__init__(
            f"Target {device_name} ({device_size} bytes) is too small "
            f"for backup ({required_size} bytes)"
        )


class ToolError(ImagerError):
    """Base exception for external tool problems."""


class MissingRequiredToolError(ToolError):
    """A tool the operation cannot degrade around is not installed."""

    def __init__(self, tools: Iterable[str]):
        self.tools = list(tools)
        super().__init__(f"Missing required commands: {' '.join(self.tools)}")


class CommandFailedError(ToolError):
    """An external command exited non-zero."""

    def __init__(self, result: CommandResult, context: str = ""):
        self.result = result
        self.context = context
        msg = f"Command failed ({result.command_line}): {result.error_summary}"
        if context:
            msg = f"{context}: {msg}"
        super().__init__(msg)


class BackupError(ImagerError):
    """Base exception for backup runs."""


class BackupSetExistsError(BackupError):
    """Backup directory already holds files."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Backup directory already exists and is not empty: {path}")


class CaptureFailureError(BackupError):
    """No capture method produced an image for a partition."""

    def __init__(self, partition: str, method: str, detail: str):
        self.partition = partition
        self.method = method
        self.detail = detail
        super().__init__(f"Capture of {partition} failed (method={method}): {detail}")


class AuditFailureError(BackupError):
    """Post-backup audit rejected the backup set."""

    def __init__(self, backup_dir: str, problems: Iterable[str]):
        self.backup_dir = backup_dir
        self.problems = list(problems)
        super().__init__(
            f"Audit failed for {backup_dir}: {'; '.join(self.problems)}"
        )


class RestoreFailureError(ImagerError):
    """A restore step could not complete."""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        partition: Optional[str] = None,
    ):
        self.target = target
        self.partition = partition
        super().__init__(message)


class VerificationKind(Enum):
    """What a failed verification found."""

    MISSING_DIRECTORY = "missing_directory"
    MISSING_FILE = "missing_file"
    MALFORMED = "malformed"
    LEDGER_MISMATCH = "ledger_mismatch"
    MISSING_IMAGE = "missing_image"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    EMPTY_IMAGE = "empty_image"
    MISSING_TABLE_SOURCE = "missing_table_source"
    INTEGRITY = "integrity"
    AUDIT_FAILED = "audit_failed"
    PARTITION_COUNT = "partition_count"
    FILESYSTEM_MISMATCH = "filesystem_mismatch"


class VerificationError(ImagerError):
    """Backup set failed verification."""

    def __init__(
        self,
        kind: VerificationKind,
        message: str,
        partition: Optional[int] = None,
    ):
        self.kind = kind
        self.partition = partition
        super().__init__(message)


class ConfirmationDeclined(Exception):
    """User did not type the confirmation phrase."""

    def __init__(self, action: str = "Restore"):
        self.action = action
        super().__init__(f"{action} cancelled")
