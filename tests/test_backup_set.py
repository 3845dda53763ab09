"""Tests for the backup set layout helpers."""

import hashlib

import pytest

from disk_imager.domain import BackupMode, ImageFormat, ManifestEntry, PartitionDescriptor
from disk_imager.storage.exceptions import (
    BackupSetExistsError,
    VerificationError,
    VerificationKind,
)
from disk_imager.storage.imaging.backup_set import (
    CHECKSUMS_FILE,
    MANIFEST_FILE,
    METADATA_FILE,
    BackupSet,
    ManifestWriter,
    format_inventory,
    parse_inventory,
    parse_key_values,
    prepare_backup_dir,
    sha256_file,
    write_text_atomic,
)


def ntfs_entry():
    return ManifestEntry(1, "ntfs", "partclone.ntfs", "part-1-ntfs.img", ImageFormat.PARTCLONE)


class TestFileHelpers:
    """Tests for digests and atomic writes."""

    def test_sha256_file(self, tmp_path):
        """Test the digest matches hashlib over the whole file."""
        path = tmp_path / "image"
        data = b"x" * (3 * 1024 * 1024 + 17)
        path.write_bytes(data)

        assert sha256_file(path) == hashlib.sha256(data).hexdigest()

    def test_write_text_atomic_replaces(self, tmp_path):
        """Test the file is replaced and no temp file is left."""
        path = tmp_path / "manifest.tsv"
        path.write_text("old\n")

        write_text_atomic(path, "new\n")

        assert path.read_text() == "new\n"
        assert [p.name for p in tmp_path.iterdir()] == ["manifest.tsv"]

    def test_parse_key_values(self):
        """Test comments, blanks and separators."""
        values = parse_key_values("# header\n\nsource_disk=/dev/sda\nnote = a=b \nbroken\n")

        assert values == {"source_disk": "/dev/sda", "note": "a=b"}


class TestInventory:
    """Tests for the inventory file."""

    def test_round_trip(self):
        """Test the inventory parses back into descriptors."""
        partitions = [
            PartitionDescriptor(1, "/dev/sda1", "vfat", 1024, "pu-1", "u-1"),
            PartitionDescriptor(2, "/dev/sda2", "", 2048),
        ]

        text = format_inventory(partitions, "2026-01-01T00:00:00Z")
        parsed = parse_inventory(text)

        assert text.startswith("# captured_utc=2026-01-01T00:00:00Z\n")
        assert parsed[0] == partitions[0]
        assert parsed[1].fstype == "unknown"

    def test_malformed_row(self):
        """Test short rows are rejected."""
        with pytest.raises(ValueError):
            parse_inventory("1\t/dev/sda1\n")


class TestPrepareBackupDir:
    """Tests for backup directory creation."""

    def test_creates_parents(self, tmp_path):
        """Test nested directories are created."""
        path = prepare_backup_dir(tmp_path / "a" / "b")

        assert path.is_dir()

    def test_empty_existing_dir_allowed(self, tmp_path):
        """Test an existing empty directory is reused."""
        (tmp_path / "set").mkdir()

        assert prepare_backup_dir(tmp_path / "set").is_dir()

    def test_non_empty_dir_refused(self, tmp_path):
        """Test a directory holding files is never overwritten."""
        (tmp_path / "set").mkdir()
        (tmp_path / "set" / "manifest.tsv").write_text("")

        with pytest.raises(BackupSetExistsError):
            prepare_backup_dir(tmp_path / "set")


class TestManifestWriter:
    """Tests for manifest and ledger commits."""

    def test_starts_empty(self, tmp_path):
        """Test both files exist and are empty before any image."""
        ManifestWriter(tmp_path)

        assert (tmp_path / MANIFEST_FILE).read_text() == ""
        assert (tmp_path / CHECKSUMS_FILE).read_text() == ""

    def test_commit_writes_row_and_digest(self, tmp_path):
        """Test each commit adds one row and its digest."""
        writer = ManifestWriter(tmp_path)
        writer.commit(ntfs_entry(), "a" * 64)

        assert (tmp_path / MANIFEST_FILE).read_text() == (
            "1\tntfs\tpartclone.ntfs\tpart-1-ntfs.img\tpartclone\n"
        )
        assert (tmp_path / CHECKSUMS_FILE).read_text() == f"{'a' * 64}  part-1-ntfs.img\n"


class TestBackupSetLoad:
    """Tests for BackupSet.load."""

    def test_missing_directory(self, tmp_path):
        """Test a missing directory is reported by kind."""
        with pytest.raises(VerificationError) as excinfo:
            BackupSet.load(tmp_path / "nope")

        assert excinfo.value.kind is VerificationKind.MISSING_DIRECTORY

    def test_missing_manifest(self, tmp_path):
        """Test a directory without a manifest is not a backup set."""
        (tmp_path / CHECKSUMS_FILE).write_text("")

        with pytest.raises(VerificationError) as excinfo:
            BackupSet.load(tmp_path)

        assert excinfo.value.kind is VerificationKind.MISSING_FILE

    def test_malformed_manifest(self, tmp_path):
        """Test parse errors name the file and line."""
        (tmp_path / MANIFEST_FILE).write_text("1\tntfs\n")
        (tmp_path / CHECKSUMS_FILE).write_text("")

        with pytest.raises(VerificationError, match="manifest.tsv line 1") as excinfo:
            BackupSet.load(tmp_path)

        assert excinfo.value.kind is VerificationKind.MALFORMED

    def test_unknown_mode(self, tmp_path):
        """Test an unknown backup_mode is malformed."""
        ManifestWriter(tmp_path)
        (tmp_path / METADATA_FILE).write_text("backup_mode=tape\n")

        with pytest.raises(VerificationError, match="backup_mode"):
            BackupSet.load(tmp_path)

    def test_loaded_view(self, tmp_path):
        """Test the loaded set exposes entries, digests and metadata."""
        writer = ManifestWriter(tmp_path)
        writer.commit(ntfs_entry(), "b" * 64)
        (tmp_path / METADATA_FILE).write_text("source_size_bytes=4096\n")

        backup_set = BackupSet.load(tmp_path)

        assert backup_set.mode is BackupMode.PARTITIONS
        assert backup_set.source_size_bytes == 4096
        assert backup_set.checksums == {"part-1-ntfs.img": "b" * 64}
        assert backup_set.image_path(backup_set.entries[0]) == tmp_path / "part-1-ntfs.img"
        assert backup_set.has_file(MANIFEST_FILE)
