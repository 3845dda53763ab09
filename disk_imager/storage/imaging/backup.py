"""Backup engine.

Runs a backup as a fixed sequence of steps:

    preflight -> mount guard -> directory prep -> metadata -> inventory
        -> capture each partition -> audit

Every step can abort the run. Partitions are captured one at a time in
ascending order; for each one the specialized partclone tool is tried first
and the generic ``dd | gzip`` copy runs once if it is missing or fails. After
every image the digest is computed and the manifest and ledger are committed
together, so a run that dies part-way leaves a consistent prefix.
"""
from __future__ import annotations

import platform
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from disk_imager.__version__ import __version__
from disk_imager.config.settings import ImagerSettings
from disk_imager.domain import (
    GENERIC_FALLBACK,
    UNKNOWN_FSTYPE,
    WHOLE_DISK_IMAGE_NAME,
    WHOLE_DISK_PARTITION,
    BackupMode,
    Capability,
    DeviceHandle,
    ManifestEntry,
    PartitionDescriptor,
    image_name_for,
)
from disk_imager.logging import LoggerFactory, operation_context

from ..commands import CommandResult, CommandRunner
from ..devices import DeviceResolver, PartitionCollector
from ..exceptions import CaptureFailureError, MountedSourceError
from ..tools import ToolProber, require_root
from . import partition_table
from .backup_set import (
    INVENTORY_FILE,
    LSBLK_FILE,
    METADATA_FILE,
    ManifestWriter,
    format_inventory,
    format_key_values,
    prepare_backup_dir,
    sha256_file,
)
from .strategy import Step, run_with_fallback
from .verification import Auditor


log = LoggerFactory.for_backup()

ProgressCallback = Callable[[list[str], Optional[float]], None]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def default_backup_name(prefix: str) -> str:
    return f"{prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"


@dataclass(frozen=True)
class PartitionPlan:
    """What the preflight expects to happen to one partition."""

    partition: PartitionDescriptor
    capability: Capability
    available: bool

    @property
    def method(self) -> Capability:
        return self.capability if self.available else GENERIC_FALLBACK

    def describe(self) -> str:
        tool_state = "installed" if self.available else "missing"
        if self.capability.is_fallback:
            tool_state = "generic"
        return (
            f"{self.partition.path}\tfstype={self.partition.fstype_label}\t"
            f"capability={self.capability.name} ({tool_state})\t"
            f"method={self.method.name}"
        )


@dataclass(frozen=True)
class PreflightReport:
    device: DeviceHandle
    partitions: list[PartitionPlan]
    mounted: list[tuple[str, str]]
    compression_tool: Optional[str]
    sfdisk_available: bool

    def lines(self) -> list[str]:
        lines = [
            f"device={self.device}",
            f"compression={self.compression_tool or 'missing'}",
            f"partition_table_method={'sfdisk' if self.sfdisk_available else 'dd-gzip'}",
        ]
        lines.extend(f"mounted={node} on {mountpoint}" for node, mountpoint in self.mounted)
        lines.extend(plan.describe() for plan in self.partitions)
        return lines


@dataclass
class BackupResult:
    """Result of a backup operation."""

    backup_dir: Path
    mode: BackupMode
    entries: list[ManifestEntry] = field(default_factory=list)
    fallbacks: list[int] = field(default_factory=list)
    partition_table_method: str = ""
    elapsed_seconds: float = 0.0


class BackupEngine:
    """Captures a device into a new backup set."""

    def __init__(
        self,
        settings: ImagerSettings,
        *,
        runner: Optional[CommandRunner] = None,
        resolver: Optional[DeviceResolver] = None,
        prober: Optional[ToolProber] = None,
        collector: Optional[PartitionCollector] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.resolver = resolver or DeviceResolver(self.runner)
        self.prober = prober or ToolProber(self.runner)
        self.collector = collector or PartitionCollector(self.runner)
        self.progress_callback = progress_callback

    def _emit(self, lines: list[str], ratio: Optional[float] = None) -> None:
        if self.progress_callback:
            self.progress_callback(lines, ratio)

    def _check_prerequisites(self, operation: str) -> None:
        require_root(operation, skip_root_check=self.settings.skip_root_check)
        self.prober.require_core_tools()

    def preflight(self, device: Optional[str] = None) -> PreflightReport:
        """Report what a backup of ``device`` would do, without side effects.

        Raises:
            PermissionRequiredError: If not root and the check is not skipped
            MissingRequiredToolError: If lsblk, dd or gzip is missing
        """
        handle = self.resolver.resolve(device or self.settings.source_disk)
        self._check_prerequisites("Backup")
        plans = []
        for partition in self.collector.enumerate(handle):
            capability = self.prober.capability_for(partition.fstype)
            plans.append(
                PartitionPlan(
                    partition=partition,
                    capability=capability,
                    available=self.prober.is_available(capability),
                )
            )
        return PreflightReport(
            device=handle,
            partitions=plans,
            mounted=self.collector.mounted_partitions(handle),
            compression_tool=self.prober.compression_tool(),
            sfdisk_available=self.runner.has("sfdisk"),
        )

    def backup(
        self,
        device: Optional[str] = None,
        backup_root: Optional[Path] = None,
        name: Optional[str] = None,
        *,
        whole_disk: bool = False,
        allow_mounted: bool = False,
    ) -> BackupResult:
        """Capture a device into ``<backup_root>/<name>``.

        Args:
            device: Device identifier; settings' source disk when omitted
            backup_root: Parent directory; settings' backup root when omitted
            name: Set name; ``<prefix>-YYYYmmdd-HHMMSS`` when omitted
            whole_disk: Capture the whole device as one raw image
            allow_mounted: Capture even if partitions are mounted

        Returns:
            BackupResult for the audited set
        """
        handle = self.resolver.resolve(device or self.settings.source_disk)
        mode = BackupMode.WHOLE_DISK if whole_disk else BackupMode.PARTITIONS
        start = time.monotonic()
        with operation_context("backup", source=handle.path, mode=mode.value):
            self._check_prerequisites("Backup")
            partitions = self.collector.enumerate(handle)
            self._guard_mounts(handle, allow_mounted)

            root = Path(backup_root) if backup_root else self.settings.backup_root
            backup_dir = prepare_backup_dir(
                root / (name or default_backup_name(self.settings.name_prefix))
            )
            log.info(f"Writing backup set to {backup_dir}")
            self._emit(["BACKUP", "Metadata"], 0.0)

            table_method = self._capture_metadata(handle, backup_dir, mode)
            (backup_dir / INVENTORY_FILE).write_text(
                format_inventory(partitions, utc_timestamp()), encoding="utf-8"
            )

            result = BackupResult(
                backup_dir=backup_dir, mode=mode, partition_table_method=table_method
            )
            writer = ManifestWriter(backup_dir)
            if mode is BackupMode.WHOLE_DISK:
                self._capture_whole_disk(handle, backup_dir, writer)
            else:
                if not partitions:
                    log.warning(f"No partitions found on {handle}; only the table is saved")
                total = len(partitions)
                for index, partition in enumerate(partitions, start=1):
                    self._emit([f"P {index}/{total}", partition.path], (index - 1) / total)
                    if self._capture_partition(partition, backup_dir, writer):
                        result.fallbacks.append(partition.number)
            result.entries = list(writer.entries)

            self._emit(["BACKUP", "Audit"], 0.99)
            Auditor(self.runner, self.prober).audit(backup_dir)
            result.elapsed_seconds = time.monotonic() - start
            self._emit(["BACKUP", "Complete"], 1.0)
            log.info(f"Backup finished: {backup_dir}")
            return result

    def _guard_mounts(self, handle: DeviceHandle, allow_mounted: bool) -> None:
        mounted = self.collector.mounted_partitions(handle)
        if not mounted:
            return
        mountpoints = [f"{node} on {mountpoint}" for node, mountpoint in mounted]
        if not allow_mounted:
            raise MountedSourceError(handle.path, mountpoints)
        log.warning(
            f"Imaging {handle} while mounted ({', '.join(mountpoints)}); "
            "images may be inconsistent"
        )

    def _capture_metadata(
        self, handle: DeviceHandle, backup_dir: Path, mode: BackupMode
    ) -> str:
        table_method = partition_table.save_partition_table(self.runner, handle, backup_dir)
        (backup_dir / LSBLK_FILE).write_text(
            self.collector.describe_device(handle), encoding="utf-8"
        )

        if self.settings.skip_raw_headers:
            raw_headers = "skipped"
        else:
            written = partition_table.capture_raw_headers(
                self.runner,
                self.prober,
                self.settings,
                handle,
                backup_dir,
                self.collector.sector_count(handle),
            )
            raw_headers = ",".join(written) or "none"

        size = self.collector.size_bytes(handle)
        metadata = {
            "source_disk": handle.path,
            "backup_time_utc": utc_timestamp(),
            "hostname": socket.gethostname(),
            "kernel": platform.release(),
            "partition_table_method": table_method,
            "backup_mode": mode.value,
            "source_size_bytes": size if size is not None else "",
            "raw_headers": raw_headers,
            "tool_version": __version__,
        }
        (backup_dir / METADATA_FILE).write_text(
            format_key_values(metadata), encoding="utf-8"
        )
        return table_method

    def _generic_capture(self, source: str, output_path: Path) -> CommandResult:
        compressor = self.prober.compression_tool() or "gzip"
        return self.runner.run_pipeline(
            [
                ["dd", f"if={source}", f"bs={self.settings.block_size}", "status=none"],
                [compressor, f"-{self.settings.compression_level}", "-c"],
            ],
            output_path=output_path,
        )

    def _capture_partition(
        self, partition: PartitionDescriptor, backup_dir: Path, writer: ManifestWriter
    ) -> bool:
        """Capture one partition and commit it; returns True if the fallback was used."""
        capability = self.prober.capability_for(partition.fstype)
        generic_image = backup_dir / image_name_for(partition, GENERIC_FALLBACK)
        generic = Step(
            label=GENERIC_FALLBACK.name,
            available=self.prober.is_available(GENERIC_FALLBACK),
            run=lambda: self._generic_capture(partition.path, generic_image),
            cleanup=lambda: generic_image.unlink(missing_ok=True),
        )
        if capability.is_fallback:
            primary, fallback = generic, None
        else:
            specialized_image = backup_dir / image_name_for(partition, capability)
            primary = Step(
                label=capability.name,
                available=self.prober.is_available(capability),
                run=lambda: self.runner.run(
                    [capability.tool, "-c", "-s", partition.path, "-o", str(specialized_image)]
                ),
                cleanup=lambda: specialized_image.unlink(missing_ok=True),
            )
            fallback = generic

        log.info(
            f"Backing up {partition.path} (fstype={partition.fstype_label}, "
            f"method={primary.label if primary.available else GENERIC_FALLBACK.name})"
        )
        outcome = run_with_fallback(primary, fallback, subject=partition.path)
        if not outcome.succeeded:
            raise CaptureFailureError(partition.path, outcome.label, outcome.detail)

        method = capability if outcome.label == capability.name else GENERIC_FALLBACK
        entry = ManifestEntry(
            partition=partition.number,
            fstype=partition.fstype_label,
            method=method.name,
            image=image_name_for(partition, method),
            image_format=method.image_format,
        )
        digest = sha256_file(backup_dir / entry.image)
        writer.commit(entry, digest)
        log.info(f"Captured {partition.path} -> {entry.image} ({method.name})")
        return method.is_fallback and not capability.is_fallback

    def _capture_whole_disk(
        self, handle: DeviceHandle, backup_dir: Path, writer: ManifestWriter
    ) -> None:
        image_path = backup_dir / WHOLE_DISK_IMAGE_NAME
        log.info(f"Backing up whole device {handle} (method={GENERIC_FALLBACK.name})")
        self._emit(["DISK", handle.path], 0.0)
        result = self._generic_capture(handle.path, image_path)
        if not result.ok:
            image_path.unlink(missing_ok=True)
            raise CaptureFailureError(handle.path, GENERIC_FALLBACK.name, result.error_summary)
        entry = ManifestEntry(
            partition=WHOLE_DISK_PARTITION,
            fstype=UNKNOWN_FSTYPE,
            method=GENERIC_FALLBACK.name,
            image=WHOLE_DISK_IMAGE_NAME,
            image_format=GENERIC_FALLBACK.image_format,
        )
        writer.commit(entry, sha256_file(image_path))
