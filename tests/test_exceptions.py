"""Tests for storage exception classes."""

import pytest

from disk_imager.storage.commands import CommandResult
from disk_imager.storage.exceptions import (
    AuditFailureError,
    BackupError,
    BackupSetExistsError,
    CaptureFailureError,
    CommandFailedError,
    ConfirmationDeclined,
    DeviceBusyError,
    DeviceError,
    ImagerError,
    InsufficientSpaceError,
    MissingRequiredToolError,
    MountedSourceError,
    NoDiskFoundError,
    NotABlockDeviceError,
    PermissionRequiredError,
    RestoreFailureError,
    ToolError,
    VerificationError,
    VerificationKind,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error,parent",
        [
            (NotABlockDeviceError("/dev/sdz"), DeviceError),
            (NoDiskFoundError(), DeviceError),
            (MountedSourceError("/dev/sda", ["/mnt"]), DeviceError),
            (DeviceBusyError("/dev/sda"), DeviceError),
            (InsufficientSpaceError("/dev/sda", 1, 2), DeviceError),
            (MissingRequiredToolError(["dd"]), ToolError),
            (BackupSetExistsError("/backups/x"), BackupError),
            (CaptureFailureError("/dev/sda1", "dd+gzip", "boom"), BackupError),
            (AuditFailureError("/backups/x", ["bad"]), BackupError),
            (RestoreFailureError("failed"), ImagerError),
            (VerificationError(VerificationKind.MALFORMED, "bad"), ImagerError),
            (PermissionRequiredError("Backup"), ImagerError),
        ],
    )
    def test_parents(self, error, parent):
        """Test each error sits under its category and the base."""
        assert isinstance(error, parent)
        assert isinstance(error, ImagerError)

    def test_confirmation_declined_is_not_a_failure(self):
        """Test that a declined confirmation is outside the failure hierarchy."""
        declined = ConfirmationDeclined()

        assert not isinstance(declined, ImagerError)
        assert str(declined) == "Restore cancelled"


class TestExceptionMessages:
    """Test that messages carry the context they are about."""

    def test_missing_tools_message(self):
        """Test the missing commands message lists every tool."""
        error = MissingRequiredToolError(["lsblk", "gzip"])

        assert str(error) == "Missing required commands: lsblk gzip"
        assert error.tools == ["lsblk", "gzip"]

    def test_not_a_block_device_hint(self):
        """Test the hint is appended in parentheses."""
        error = NotABlockDeviceError("/dev/sda", "sandboxed")

        assert str(error) == "Not a block device: /dev/sda (sandboxed)"

    def test_mounted_source(self):
        """Test mountpoints are listed and the override is named."""
        error = MountedSourceError("/dev/sda", ["/dev/sda1 on /mnt"])

        assert "/dev/sda1 on /mnt" in str(error)
        assert "--allow-mounted" in str(error)

    def test_command_failed_includes_context(self):
        """Test command failures name the command and the context."""
        result = CommandResult("sfdisk --dump /dev/sda", 1, "", "sfdisk: no table")
        error = CommandFailedError(result, "Unable to dump table")

        assert str(error) == (
            "Unable to dump table: Command failed (sfdisk --dump /dev/sda): sfdisk: no table"
        )
        assert error.result is result

    def test_verification_error_kind(self):
        """Test verification errors carry kind and partition."""
        error = VerificationError(
            VerificationKind.FILESYSTEM_MISMATCH, "Partition 2 mismatch", partition=2
        )

        assert error.kind is VerificationKind.FILESYSTEM_MISMATCH
        assert error.partition == 2

    def test_insufficient_space_attributes(self):
        """Test sizes are kept on the error."""
        error = InsufficientSpaceError("/dev/sdb", 100, 200)

        assert error.device_size == 100
        assert error.required_size == 200
        assert "too small" in str(error)
