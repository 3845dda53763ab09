"""Domain models for block device imaging."""

from __future__ import annotations

from .models import (
    GENERIC_FALLBACK,
    UNKNOWN_FSTYPE,
    WHOLE_DISK_IMAGE_NAME,
    WHOLE_DISK_PARTITION,
    BackupMode,
    Capability,
    ChecksumEntry,
    DeviceHandle,
    ImageFormat,
    ManifestEntry,
    PartitionDescriptor,
    image_name_for,
    partition_path_from_number,
)


__all__ = [
    "GENERIC_FALLBACK",
    "UNKNOWN_FSTYPE",
    "WHOLE_DISK_IMAGE_NAME",
    "WHOLE_DISK_PARTITION",
    "BackupMode",
    "Capability",
    "ChecksumEntry",
    "DeviceHandle",
    "ImageFormat",
    "ManifestEntry",
    "PartitionDescriptor",
    "image_name_for",
    "partition_path_from_number",
]
