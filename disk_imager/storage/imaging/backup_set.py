"""On-disk layout of a backup set.

A backup set is one directory:

    metadata.txt              key=value facts about the source and the run
    inventory.tsv             partitions seen before capture
    manifest.tsv              one row per image (partition, fstype, method, image, format)
    checksums.txt             "<sha256>  <image>" per image
    audit_report.txt          written by the post-backup audit
    partition_table.sfdisk    sfdisk --dump of the source (when sfdisk is installed)
    partition_table.json      sfdisk --json of the source
    lsblk.json                lsblk description of the source
    disk-head-2MiB.bin.gz     raw first sectors (table fallback)
    disk-tail-2MiB.bin.gz     raw last sectors (GPT backup header)
    part-<n>-<fstype>.img     partclone image
    part-<n>-<fstype>.img.gz  generic raw image
    whole-disk.img.gz         whole-device image

Manifest and ledger are committed together after each image so an
interrupted run leaves a consistent prefix rather than rows without digests.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional

from disk_imager.domain import (
    BackupMode,
    ChecksumEntry,
    ManifestEntry,
    PartitionDescriptor,
)

from ..exceptions import BackupSetExistsError, VerificationError, VerificationKind


METADATA_FILE = "metadata.txt"
INVENTORY_FILE = "inventory.tsv"
MANIFEST_FILE = "manifest.tsv"
CHECKSUMS_FILE = "checksums.txt"
AUDIT_REPORT_FILE = "audit_report.txt"
SFDISK_DUMP_FILE = "partition_table.sfdisk"
SFDISK_JSON_FILE = "partition_table.json"
LSBLK_FILE = "lsblk.json"
RAW_HEAD_FILE = "disk-head-2MiB.bin.gz"
RAW_TAIL_FILE = "disk-tail-2MiB.bin.gz"

DIGEST_CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    """SHA-256 hex digest, read in 1 MiB chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(DIGEST_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_text_atomic(path: Path, text: str) -> None:
    """Write through a temp file in the same directory, then rename over ``path``."""
    temp_path = path.with_name(f".{path.name}.tmp")
    with open(temp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp_path, path)


def format_key_values(items: Mapping[str, object]) -> str:
    return "".join(f"{key}={value}\n" for key, value in items.items())


def parse_key_values(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


def format_inventory(partitions: Iterable[PartitionDescriptor], captured_utc: str) -> str:
    lines = [f"# captured_utc={captured_utc}"]
    for partition in partitions:
        lines.append(
            "\t".join(
                [
                    str(partition.number),
                    partition.path,
                    partition.fstype_label,
                    str(partition.size_bytes),
                    partition.partuuid,
                    partition.uuid,
                ]
            )
        )
    return "\n".join(lines) + "\n"


def parse_inventory(text: str) -> list[PartitionDescriptor]:
    partitions = []
    for line in text.splitlines():
        if not line.strip() or line.startswith("#"):
            continue
        columns = line.split("\t")
        if len(columns) < 4:
            raise ValueError(f"malformed inventory row: {line!r}")
        columns += [""] * (6 - len(columns))
        partitions.append(
            PartitionDescriptor(
                number=int(columns[0]),
                path=columns[1],
                fstype=columns[2],
                size_bytes=int(columns[3] or 0),
                partuuid=columns[4],
                uuid=columns[5],
            )
        )
    return partitions


def prepare_backup_dir(path: Path) -> Path:
    """Create the backup directory; refuse one that already holds files."""
    if path.exists() and any(path.iterdir()):
        raise BackupSetExistsError(str(path))
    path.mkdir(parents=True, exist_ok=True)
    return path


class ManifestWriter:
    """Appends images to the manifest and checksum ledger of a new set."""

    def __init__(self, backup_dir: Path):
        self.backup_dir = backup_dir
        self.entries: list[ManifestEntry] = []
        self.checksums: list[ChecksumEntry] = []
        self._flush()

    def commit(self, entry: ManifestEntry, digest: str) -> None:
        self.entries.append(entry)
        self.checksums.append(ChecksumEntry(digest=digest, image=entry.image))
        self._flush()

    def _flush(self) -> None:
        # Ledger first: a manifest row is never visible without its digest.
        write_text_atomic(
            self.backup_dir / CHECKSUMS_FILE,
            "".join(f"{checksum.to_line()}\n" for checksum in self.checksums),
        )
        write_text_atomic(
            self.backup_dir / MANIFEST_FILE,
            "".join(f"{entry.to_row()}\n" for entry in self.entries),
        )


@dataclass
class BackupSet:
    """Read-only view of a backup set directory."""

    path: Path
    metadata: dict[str, str] = field(default_factory=dict)
    entries: list[ManifestEntry] = field(default_factory=list)
    ledger: list[ChecksumEntry] = field(default_factory=list)
    inventory: list[PartitionDescriptor] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> BackupSet:
        """Load a backup set.

        Raises:
            VerificationError: If the directory or a required file is missing,
                or a file cannot be parsed
        """
        path = Path(path)
        if not path.is_dir():
            raise VerificationError(
                VerificationKind.MISSING_DIRECTORY, f"Backup dir not found: {path}"
            )
        for required in (MANIFEST_FILE, CHECKSUMS_FILE):
            if not (path / required).is_file():
                raise VerificationError(
                    VerificationKind.MISSING_FILE, f"Missing {required} in {path}"
                )

        backup_set = cls(path=path)
        metadata_path = path / METADATA_FILE
        if metadata_path.is_file():
            backup_set.metadata = parse_key_values(metadata_path.read_text(encoding="utf-8"))
        backup_set.entries = _parse_lines(
            path / MANIFEST_FILE, ManifestEntry.from_row
        )
        backup_set.ledger = _parse_lines(path / CHECKSUMS_FILE, ChecksumEntry.from_line)
        inventory_path = path / INVENTORY_FILE
        if inventory_path.is_file():
            try:
                backup_set.inventory = parse_inventory(
                    inventory_path.read_text(encoding="utf-8")
                )
            except ValueError as error:
                raise VerificationError(
                    VerificationKind.MALFORMED, f"{INVENTORY_FILE}: {error}"
                ) from error
        _ = backup_set.mode  # raises on an unknown backup_mode
        return backup_set

    @property
    def mode(self) -> BackupMode:
        value = self.metadata.get("backup_mode")
        if value is None:
            # Without metadata a 'disk' row marks a whole-disk set
            if any(entry.is_whole_disk for entry in self.entries):
                return BackupMode.WHOLE_DISK
            return BackupMode.PARTITIONS
        try:
            return BackupMode(value)
        except ValueError as error:
            raise VerificationError(
                VerificationKind.MALFORMED, f"Unknown backup_mode in metadata: {value}"
            ) from error

    @property
    def source_size_bytes(self) -> Optional[int]:
        value = self.metadata.get("source_size_bytes", "")
        return int(value) if value.isdigit() else None

    @property
    def checksums(self) -> dict[str, str]:
        return {checksum.image: checksum.digest for checksum in self.ledger}

    def image_path(self, entry: ManifestEntry) -> Path:
        return self.path / entry.image

    def has_file(self, name: str) -> bool:
        return (self.path / name).is_file()


def _parse_lines(path: Path, parser):
    items = []
    for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            items.append(parser(line))
        except ValueError as error:
            raise VerificationError(
                VerificationKind.MALFORMED, f"{path.name} line {number}: {error}"
            ) from error
    return items
