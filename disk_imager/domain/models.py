"""Domain model for block device imaging.

Type-safe objects for the values that flow between device enumeration, the
backup and restore engines and the on-disk backup set.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union


UNKNOWN_FSTYPE = "unknown"
WHOLE_DISK_PARTITION = "disk"


# ==============================================================================
# Device Domain
# ==============================================================================


@dataclass(frozen=True)
class DeviceHandle:
    """A resolved block device node (e.g. /dev/nvme0n1).

    Only the device resolver creates handles, so a handle always points at an
    addressable disk node rather than a controller node.
    """

    path: str

    @property
    def name(self) -> str:
        """Kernel name (e.g., nvme0n1)."""
        return Path(self.path).name

    def partition_path(self, number: int) -> str:
        """Node path for a partition number on this device."""
        return partition_path_from_number(self.path, number)

    def __str__(self) -> str:
        return self.path


def partition_path_from_number(disk: str, number: int) -> str:
    """Build a partition node path: /dev/sda + 1 -> /dev/sda1, /dev/nvme0n1 + 1 -> /dev/nvme0n1p1."""
    if disk and disk[-1].isdigit():
        return f"{disk}p{number}"
    return f"{disk}{number}"


@dataclass(frozen=True)
class PartitionDescriptor:
    """A partition captured in the pre-operation inventory."""

    number: int
    path: str  # e.g., "/dev/nvme0n1p2"
    fstype: str  # "" when neither lsblk nor blkid could identify it
    size_bytes: int
    partuuid: str = ""
    uuid: str = ""

    @property
    def fstype_label(self) -> str:
        """Filesystem type as written to the manifest and image names."""
        return self.fstype or UNKNOWN_FSTYPE


# ==============================================================================
# Capture Domain
# ==============================================================================


class ImageFormat(Enum):
    """Container format of a stored image."""

    PARTCLONE = "partclone"  # partclone image, restorable only by partclone
    RAW_GZIP = "raw+gzip"  # raw block copy piped through gzip

    @property
    def suffix(self) -> str:
        return ".img.gz" if self is ImageFormat.RAW_GZIP else ".img"

    @classmethod
    def from_image_name(cls, image: str) -> ImageFormat:
        """Infer the format from the file name (manifests without a format column)."""
        if image.endswith(".gz"):
            return cls.RAW_GZIP
        return cls.PARTCLONE


@dataclass(frozen=True)
class Capability:
    """An imaging tool for one filesystem family, or the generic fallback."""

    name: str  # manifest label, e.g. "partclone.extfs" or "dd+gzip"
    family: str  # e.g. "ext", "ntfs", "raw"
    tool: Optional[str] = None  # executable; None for the generic fallback

    @property
    def is_fallback(self) -> bool:
        return self.tool is None

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.RAW_GZIP if self.is_fallback else ImageFormat.PARTCLONE


GENERIC_FALLBACK = Capability(name="dd+gzip", family="raw", tool=None)


class BackupMode(Enum):
    """Layout of a backup set, fixed when the set is created."""

    PARTITIONS = "partitions"
    WHOLE_DISK = "whole-disk"


def image_name_for(partition: PartitionDescriptor, capability: Capability) -> str:
    """Relative image path for a partition captured with a capability."""
    return f"part-{partition.number}-{partition.fstype_label}{capability.image_format.suffix}"


WHOLE_DISK_IMAGE_NAME = "whole-disk" + ImageFormat.RAW_GZIP.suffix


# ==============================================================================
# Backup Set Domain
# ==============================================================================


@dataclass(frozen=True)
class ManifestEntry:
    """One image in a backup set."""

    partition: Union[int, str]  # partition number, or "disk" in whole-disk mode
    fstype: str
    method: str  # capability name that produced the image
    image: str  # path relative to the backup set directory
    image_format: ImageFormat

    @property
    def is_whole_disk(self) -> bool:
        return self.partition == WHOLE_DISK_PARTITION

    @property
    def used_fallback(self) -> bool:
        return self.method == GENERIC_FALLBACK.name

    @property
    def fallback_compatible(self) -> bool:
        """Whether the stored image can be replayed by the generic method."""
        return self.image_format is ImageFormat.RAW_GZIP

    def to_row(self) -> str:
        return "\t".join(
            [
                str(self.partition),
                self.fstype or UNKNOWN_FSTYPE,
                self.method,
                self.image,
                self.image_format.value,
            ]
        )

    @classmethod
    def from_row(cls, line: str) -> ManifestEntry:
        """Parse a manifest row (4 or 5 tab-separated columns).

        Raises:
            ValueError: If the row is malformed
        """
        columns = line.rstrip("\n").split("\t")
        if len(columns) not in (4, 5):
            raise ValueError(f"expected 4 or 5 columns, got {len(columns)}")
        partition_text, fstype, method, image = columns[:4]
        partition: Union[int, str]
        if partition_text == WHOLE_DISK_PARTITION:
            partition = WHOLE_DISK_PARTITION
        else:
            partition = int(partition_text)
        if not image:
            raise ValueError("empty image path")
        if len(columns) == 5 and columns[4]:
            image_format = ImageFormat(columns[4])
        else:
            image_format = ImageFormat.from_image_name(image)
        return cls(
            partition=partition,
            fstype=fstype or UNKNOWN_FSTYPE,
            method=method,
            image=image,
            image_format=image_format,
        )


@dataclass(frozen=True)
class ChecksumEntry:
    """One line of the checksum ledger."""

    digest: str
    image: str

    def to_line(self) -> str:
        return f"{self.digest}  {self.image}"

    @classmethod
    def from_line(cls, line: str) -> ChecksumEntry:
        digest, separator, image = line.rstrip("\n").partition("  ")
        if not separator or not digest or not image:
            raise ValueError(f"malformed checksum line: {line.strip()!r}")
        return cls(digest=digest.strip(), image=image.lstrip("*"))
