"""Backup set verification and the post-backup audit.

``Verifier.verify`` is the gate in front of every restore and the ``verify``
command: manifest and ledger must agree, every image must exist and hash to
its recorded digest, a table source must be present, and an audit report
(when there is one) must say ``result=ok``. With a comparison device it also
checks that the live partition layout still matches the manifest.

``Auditor.audit`` runs once at the end of a backup. It re-reads everything
the backup just wrote, checks image integrity with the image's own tools,
and always leaves ``audit_report.txt`` behind, even when it fails.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from disk_imager.domain import (
    UNKNOWN_FSTYPE,
    BackupMode,
    DeviceHandle,
    ImageFormat,
    ManifestEntry,
)
from disk_imager.logging import LoggerFactory, operation_context

from ..commands import CommandRunner
from ..devices import PartitionCollector
from ..exceptions import (
    AuditFailureError,
    MissingRequiredToolError,
    VerificationError,
    VerificationKind,
)
from ..tools import PARTCLONE_CHECK_TOOL, ToolProber
from .backup_set import (
    AUDIT_REPORT_FILE,
    RAW_HEAD_FILE,
    SFDISK_DUMP_FILE,
    BackupSet,
    format_key_values,
    sha256_file,
    write_text_atomic,
)


log = LoggerFactory.for_verify()

INTEGRITY_OK = "ok"
INTEGRITY_SKIPPED = "skipped"
INTEGRITY_FAILED = "failed"
AUDIT_OK_LINE = "result=ok"
AUDIT_FAILED_LINE = "result=failed"


def check_image_integrity(
    runner: CommandRunner, prober: ToolProber, path: Path, image_format: ImageFormat
) -> tuple[str, str]:
    """Run the format's own integrity check.

    Returns:
        (status, detail) where status is "ok", "skipped" or "failed"
    """
    if image_format is ImageFormat.RAW_GZIP:
        compressor = prober.compression_tool()
        if compressor is None:
            raise MissingRequiredToolError(["gzip"])
        result = runner.run([compressor, "-t", str(path)])
    elif prober.can_check_partclone_images():
        result = runner.run([PARTCLONE_CHECK_TOOL, "-s", str(path)])
    else:
        return INTEGRITY_SKIPPED, f"{PARTCLONE_CHECK_TOOL} not installed"
    if result.ok:
        return INTEGRITY_OK, ""
    return INTEGRITY_FAILED, result.error_summary


def ledger_problems(backup_set: BackupSet) -> list[str]:
    """Differences between the manifest and the checksum ledger."""
    problems = []
    manifest_images = [entry.image for entry in backup_set.entries]
    ledger_images = [checksum.image for checksum in backup_set.ledger]
    for image in sorted({i for i in manifest_images if manifest_images.count(i) > 1}):
        problems.append(f"{image} listed more than once in manifest")
    for image in sorted({i for i in ledger_images if ledger_images.count(i) > 1}):
        problems.append(f"{image} has more than one checksum")
    for image in sorted(set(manifest_images) - set(ledger_images)):
        problems.append(f"{image} has no checksum")
    for image in sorted(set(ledger_images) - set(manifest_images)):
        problems.append(f"{image} has a checksum but no manifest entry")
    return problems


def has_table_source(backup_set: BackupSet) -> bool:
    return backup_set.has_file(SFDISK_DUMP_FILE) or backup_set.has_file(RAW_HEAD_FILE)


def read_audit_result(backup_dir: Path) -> Optional[str]:
    """Last non-empty line of the audit report, or None when there is no report."""
    path = backup_dir / AUDIT_REPORT_FILE
    if not path.is_file():
        return None
    lines = [line.strip() for line in path.read_text(encoding="utf-8").splitlines()]
    lines = [line for line in lines if line]
    return lines[-1] if lines else ""


@dataclass
class VerificationReport:
    backup_dir: Path
    mode: BackupMode
    images_checked: int = 0
    audit_result: str = "missing"
    compared_device: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        text = (
            f"Verification OK: {self.backup_dir} "
            f"({self.images_checked} images, mode={self.mode.value}, "
            f"audit={self.audit_result})"
        )
        if self.compared_device:
            text += f", layout matches {self.compared_device}"
        return text


class Verifier:
    """Checks a backup set, optionally against a live device."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        prober: Optional[ToolProber] = None,
        collector: Optional[PartitionCollector] = None,
    ):
        self.runner = runner or CommandRunner()
        self.prober = prober or ToolProber(self.runner)
        self.collector = collector or PartitionCollector(self.runner)

    def verify(
        self,
        backup_dir: Union[Path, str],
        compare_device: Optional[DeviceHandle] = None,
    ) -> VerificationReport:
        """Verify a backup set.

        Raises:
            VerificationError: On the first problem found, with its kind
        """
        backup_dir = Path(backup_dir)
        with operation_context("verify", backup_dir=backup_dir):
            backup_set = BackupSet.load(backup_dir)
            report = VerificationReport(backup_dir=backup_dir, mode=backup_set.mode)

            problems = ledger_problems(backup_set)
            if problems:
                raise VerificationError(
                    VerificationKind.LEDGER_MISMATCH,
                    f"Manifest and checksum ledger disagree: {'; '.join(problems)}",
                )
            self._check_images(backup_set)
            report.images_checked = len(backup_set.entries)

            audit_result = read_audit_result(backup_dir)
            if audit_result is None:
                message = f"No {AUDIT_REPORT_FILE} in {backup_dir}; set predates audits"
                log.warning(message)
                report.warnings.append(message)
            elif audit_result != AUDIT_OK_LINE:
                raise VerificationError(
                    VerificationKind.AUDIT_FAILED,
                    f"{AUDIT_REPORT_FILE} does not record a passing audit "
                    f"(last line: {audit_result or 'empty'})",
                )
            else:
                report.audit_result = INTEGRITY_OK

            if backup_set.mode is BackupMode.WHOLE_DISK:
                self._check_whole_disk(backup_set)
                if compare_device is not None:
                    log.info("Whole-disk backup; live layout comparison skipped")
            else:
                if any(entry.is_whole_disk for entry in backup_set.entries):
                    raise VerificationError(
                        VerificationKind.MALFORMED,
                        "Partition backup lists a whole-disk 'disk' image in the manifest",
                    )
                if not has_table_source(backup_set):
                    raise VerificationError(
                        VerificationKind.MISSING_TABLE_SOURCE,
                        f"Missing partition table backup files ({SFDISK_DUMP_FILE} "
                        f"or {RAW_HEAD_FILE}) in {backup_dir}",
                    )
                if compare_device is not None:
                    self._compare_layout(backup_set, compare_device)
                    report.compared_device = str(compare_device)

            log.info(report.summary())
            return report

    def _check_images(self, backup_set: BackupSet) -> None:
        checksums = backup_set.checksums
        for entry in backup_set.entries:
            path = backup_set.image_path(entry)
            if not path.is_file():
                raise VerificationError(
                    VerificationKind.MISSING_IMAGE,
                    f"Missing image file: {path}",
                    partition=_partition_number(entry),
                )
            if path.stat().st_size == 0:
                raise VerificationError(
                    VerificationKind.EMPTY_IMAGE,
                    f"Image file is empty: {path}",
                    partition=_partition_number(entry),
                )
            actual = sha256_file(path)
            if actual != checksums[entry.image]:
                raise VerificationError(
                    VerificationKind.CHECKSUM_MISMATCH,
                    f"Checksum mismatch for {entry.image}: "
                    f"expected {checksums[entry.image]}, got {actual}",
                    partition=_partition_number(entry),
                )
            log.debug(f"Checksum OK: {entry.image}")

    def _check_whole_disk(self, backup_set: BackupSet) -> None:
        entries = backup_set.entries
        if len(entries) != 1 or not entries[0].is_whole_disk:
            raise VerificationError(
                VerificationKind.MALFORMED,
                "Whole-disk backup must list exactly one 'disk' image in the manifest",
            )
        entry = entries[0]
        status, detail = check_image_integrity(
            self.runner, self.prober, backup_set.image_path(entry), entry.image_format
        )
        if status == INTEGRITY_FAILED:
            raise VerificationError(
                VerificationKind.INTEGRITY,
                f"Integrity check failed for {entry.image}: {detail}",
            )

    def _compare_layout(self, backup_set: BackupSet, device: DeviceHandle) -> None:
        log.info(f"Comparing backup manifest against current disk layout: {device}")
        live = self.collector.filesystem_types(device)
        expected_count = len(backup_set.entries)
        if len(live) != expected_count:
            raise VerificationError(
                VerificationKind.PARTITION_COUNT,
                f"Partition count mismatch on {device}: "
                f"backup={expected_count} current={len(live)}",
            )
        for entry in backup_set.entries:
            if entry.fstype == UNKNOWN_FSTYPE or entry.is_whole_disk:
                continue
            current = live.get(int(entry.partition), "missing")
            if current != entry.fstype:
                raise VerificationError(
                    VerificationKind.FILESYSTEM_MISMATCH,
                    f"Partition {entry.partition} filesystem mismatch on {device}: "
                    f"backup={entry.fstype} current={current}",
                    partition=int(entry.partition),
                )


def _partition_number(entry: ManifestEntry) -> Optional[int]:
    return None if entry.is_whole_disk else int(entry.partition)


@dataclass
class AuditReport:
    backup_dir: Path
    lines: list[str] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.problems

    def render(self) -> str:
        body = list(self.lines)
        body.extend(f"problem={problem}" for problem in self.problems)
        body.append(AUDIT_OK_LINE if self.passed else AUDIT_FAILED_LINE)
        return "\n".join(body) + "\n"


class Auditor:
    """Post-backup audit of a freshly written set."""

    def __init__(self, runner: CommandRunner, prober: ToolProber):
        self.runner = runner
        self.prober = prober

    def audit(self, backup_dir: Path) -> AuditReport:
        """Audit a set and write ``audit_report.txt``.

        Raises:
            AuditFailureError: If any check fails (the report is still written)
        """
        report = AuditReport(backup_dir=backup_dir)
        report.lines.append(
            format_key_values(
                {
                    "backup_dir": backup_dir,
                    "audit_time_utc": datetime.now(timezone.utc).strftime(
                        "%Y-%m-%dT%H:%M:%SZ"
                    ),
                }
            ).rstrip("\n")
        )
        try:
            backup_set = BackupSet.load(backup_dir)
        except VerificationError as error:
            report.problems.append(str(error))
            return self._finish(report)

        report.lines.append(f"backup_mode={backup_set.mode.value}")
        report.lines.append(f"manifest_entries={len(backup_set.entries)}")
        if backup_set.mode is BackupMode.PARTITIONS:
            report.lines.append(f"inventory_partitions={len(backup_set.inventory)}")
            if len(backup_set.inventory) != len(backup_set.entries):
                report.problems.append(
                    f"partition count mismatch: inventory={len(backup_set.inventory)} "
                    f"manifest={len(backup_set.entries)}"
                )
            if not has_table_source(backup_set):
                report.problems.append(
                    f"no partition table source: neither {SFDISK_DUMP_FILE} "
                    f"nor {RAW_HEAD_FILE} was saved"
                )
        report.problems.extend(ledger_problems(backup_set))

        checksums = backup_set.checksums
        for entry in backup_set.entries:
            report.lines.append(self._audit_image(backup_set, entry, checksums, report))
        return self._finish(report)

    def _audit_image(
        self,
        backup_set: BackupSet,
        entry: ManifestEntry,
        checksums: dict[str, str],
        report: AuditReport,
    ) -> str:
        path = backup_set.image_path(entry)
        if not path.is_file():
            report.problems.append(f"{entry.image} missing")
            return f"image {entry.image} missing"

        size = path.stat().st_size
        digest_status = INTEGRITY_OK
        if checksums.get(entry.image) != sha256_file(path):
            digest_status = INTEGRITY_FAILED
            report.problems.append(f"{entry.image} checksum mismatch")
        if size == 0:
            report.problems.append(f"{entry.image} is empty")

        integrity, detail = check_image_integrity(
            self.runner, self.prober, path, entry.image_format
        )
        if integrity == INTEGRITY_FAILED:
            report.problems.append(f"{entry.image} integrity check failed: {detail}")
        elif integrity == INTEGRITY_SKIPPED:
            log.info(f"Integrity check of {entry.image} skipped: {detail}")
        return (
            f"image {entry.image} partition={entry.partition} method={entry.method} "
            f"size={size} sha256={digest_status} integrity={integrity}"
        )

    def _finish(self, report: AuditReport) -> AuditReport:
        write_text_atomic(report.backup_dir / AUDIT_REPORT_FILE, report.render())
        if not report.passed:
            for problem in report.problems:
                log.error(f"Audit problem: {problem}")
            raise AuditFailureError(str(report.backup_dir), report.problems)
        log.success(f"Audit passed: {report.backup_dir}")
        return report
