"""Restore engine.

Replays a verified backup set onto a target device:

    validate -> preflight -> confirmation -> unmount -> wipe
        -> partition table -> settle -> restore each partition -> settle

The target can be a different physical disk than the source. Partition
nodes are derived from the target's own name (``/dev/sdb`` + 2 is
``/dev/sdb2``, ``/dev/nvme1n1`` + 2 is ``/dev/nvme1n1p2``), so the table has
to be in place and the kernel has to see it before any image is written.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from disk_imager.config.settings import ImagerSettings
from disk_imager.domain import (
    GENERIC_FALLBACK,
    BackupMode,
    DeviceHandle,
    ManifestEntry,
)
from disk_imager.logging import LoggerFactory, operation_context

from ..commands import CommandResult, CommandRunner
from ..devices import (
    SYSTEM_MOUNTPOINTS,
    DeviceResolver,
    PartitionCollector,
    has_system_mountpoint,
    unmount_all,
)
from ..exceptions import (
    ConfirmationDeclined,
    DeviceBusyError,
    InsufficientSpaceError,
    RestoreFailureError,
)
from ..tools import ToolProber, require_root
from . import partition_table
from .backup_set import BackupSet
from .strategy import Step, run_with_fallback
from .verification import Verifier


log = LoggerFactory.for_restore()

CONFIRMATION_PHRASE = "RESTORE"
CONFIRMATION_PROMPT = f"Type {CONFIRMATION_PHRASE} to continue: "

ProgressCallback = Callable[[list[str], Optional[float]], None]


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    target: DeviceHandle
    backup_dir: Path
    mode: BackupMode
    table_method: str = ""
    restored: list[ManifestEntry] = field(default_factory=list)
    fallbacks: list[Union[int, str]] = field(default_factory=list)
    elapsed_seconds: float = 0.0


class RestoreEngine:
    """Writes a backup set onto a device."""

    def __init__(
        self,
        settings: ImagerSettings,
        *,
        runner: Optional[CommandRunner] = None,
        resolver: Optional[DeviceResolver] = None,
        prober: Optional[ToolProber] = None,
        collector: Optional[PartitionCollector] = None,
        verifier: Optional[Verifier] = None,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.resolver = resolver or DeviceResolver(self.runner)
        self.prober = prober or ToolProber(self.runner)
        self.collector = collector or PartitionCollector(self.runner)
        self.verifier = verifier or Verifier(self.runner, self.prober, self.collector)
        self.progress_callback = progress_callback
        self.sleep = sleep

    def _emit(self, lines: list[str], ratio: Optional[float] = None) -> None:
        if self.progress_callback:
            self.progress_callback(lines, ratio)

    def restore(
        self,
        target: Optional[str],
        backup_dir: Union[Path, str],
        *,
        assume_yes: bool = False,
        confirm: Optional[Callable[[str], str]] = None,
    ) -> RestoreResult:
        """Restore ``backup_dir`` onto ``target``.

        Args:
            target: Device identifier; settings' source disk when omitted
            backup_dir: Backup set directory
            assume_yes: Skip the confirmation prompt
            confirm: Prompt function returning the typed answer (defaults to input)

        Raises:
            VerificationError: If the set fails validation (nothing is written)
            ConfirmationDeclined: If the answer is not the confirmation phrase
            RestoreFailureError: If the table or a partition cannot be restored
        """
        handle = self.resolver.resolve(target or self.settings.source_disk)
        backup_dir = Path(backup_dir)
        self._emit(["RESTORE", "Verify"], 0.0)
        self.verifier.verify(backup_dir)
        backup_set = BackupSet.load(backup_dir)
        self._preflight(handle, backup_set)
        self._confirm(handle, backup_dir, assume_yes, confirm)

        start = time.monotonic()
        with operation_context("restore", target=handle.path, backup_dir=backup_dir):
            result = RestoreResult(target=handle, backup_dir=backup_dir, mode=backup_set.mode)
            self._unmount(handle)
            self._wipe(handle)

            if backup_set.mode is BackupMode.WHOLE_DISK:
                entry = backup_set.entries[0]
                log.info(f"Restoring whole device {handle} from {entry.image}")
                self._emit(["DISK", handle.path], 0.1)
                restored = self._generic_restore(backup_set.image_path(entry), handle.path)
                if not restored.ok:
                    raise RestoreFailureError(
                        f"Whole-disk restore onto {handle} failed "
                        f"(image={entry.image}): {restored.error_summary}",
                        target=handle.path,
                    )
                result.restored.append(entry)
                partition_table.settle(
                    self.runner, self.collector, self.settings, handle, 0, sleep=self.sleep
                )
            else:
                self._emit(["RESTORE", "Partition table"], 0.05)
                result.table_method = partition_table.restore_partition_table(
                    self.runner,
                    self.prober,
                    self.collector,
                    self.settings,
                    backup_dir,
                    handle,
                )
                expected = len(backup_set.entries)
                partition_table.settle(
                    self.runner, self.collector, self.settings, handle, expected,
                    sleep=self.sleep,
                )
                for index, entry in enumerate(backup_set.entries, start=1):
                    self._emit(
                        [f"P {index}/{expected}", handle.partition_path(int(entry.partition))],
                        index / (expected + 1),
                    )
                    if self._restore_partition(handle, backup_set, entry):
                        result.fallbacks.append(entry.partition)
                    result.restored.append(entry)
                partition_table.settle(
                    self.runner, self.collector, self.settings, handle, expected,
                    sleep=self.sleep,
                )

            result.elapsed_seconds = time.monotonic() - start
            self._emit(["RESTORE", "Complete"], 1.0)
            log.info(f"Restore completed: {handle}")
            return result

    def _preflight(self, handle: DeviceHandle, backup_set: BackupSet) -> None:
        require_root("Restore", skip_root_check=self.settings.skip_root_check)
        self.prober.require_core_tools()

        mounts = self.collector.mounted_partitions(handle)
        if has_system_mountpoint(mounts):
            in_use = [
                mountpoint for _node, mountpoint in mounts if mountpoint in SYSTEM_MOUNTPOINTS
            ]
            raise DeviceBusyError(
                handle.path, f"holds system mountpoints {', '.join(sorted(in_use))}"
            )

        if backup_set.mode is BackupMode.WHOLE_DISK:
            required = backup_set.source_size_bytes
            available = self.collector.size_bytes(handle)
            if required is not None and available is not None and available < required:
                raise InsufficientSpaceError(handle.path, available, required)

    def _confirm(
        self,
        handle: DeviceHandle,
        backup_dir: Path,
        assume_yes: bool,
        confirm: Optional[Callable[[str], str]],
    ) -> None:
        if assume_yes:
            log.info("Confirmation skipped (--yes)")
            return
        ask = confirm or input
        log.warning(f"About to wipe and restore {handle} from {backup_dir}")
        try:
            answer = ask(CONFIRMATION_PROMPT)
        except EOFError:
            answer = ""
        if (answer or "").strip() != CONFIRMATION_PHRASE:
            log.warning("Restore cancelled at confirmation prompt")
            raise ConfirmationDeclined("Restore")

    def _unmount(self, handle: DeviceHandle) -> None:
        mounts = self.collector.mounted_partitions(handle)
        if mounts:
            log.info(f"Unmounting partitions on {handle}")
        failed = unmount_all(self.runner, mounts)
        if failed:
            log.warning(f"Continuing with mountpoints still busy: {', '.join(failed)}")

    def _wipe(self, handle: DeviceHandle) -> None:
        if not self.runner.has("wipefs"):
            log.debug("wipefs not installed; skipping signature wipe")
            return
        result = self.runner.run(["wipefs", "-a", handle.path])
        if not result.ok:
            log.warning(f"wipefs failed on {handle}: {result.error_summary}")

    def _generic_restore(self, image_path: Path, destination: str) -> CommandResult:
        decompressor = self.prober.compression_tool() or "gzip"
        return self.runner.run_pipeline(
            [
                [decompressor, "-dc", str(image_path)],
                [
                    "dd",
                    f"of={destination}",
                    f"bs={self.settings.block_size}",
                    "conv=fsync",
                    "status=none",
                ],
            ]
        )

    def _restore_partition(
        self, handle: DeviceHandle, backup_set: BackupSet, entry: ManifestEntry
    ) -> bool:
        """Restore one manifest entry; returns True if the generic fallback was used."""
        partition_path = handle.partition_path(int(entry.partition))
        image_path = backup_set.image_path(entry)
        generic = Step(
            label=GENERIC_FALLBACK.name,
            available=self.prober.is_available(GENERIC_FALLBACK),
            run=lambda: self._generic_restore(image_path, partition_path),
        )
        if entry.used_fallback:
            primary, fallback = generic, None
        else:
            capability = self.prober.capability_by_name(entry.method)
            primary = Step(
                label=capability.name,
                available=self.prober.is_available(capability),
                run=lambda: self.runner.run(
                    [capability.tool, "-r", "-s", str(image_path), "-o", partition_path]
                ),
            )
            # A partclone image cannot be replayed by dd.
            fallback = generic if entry.fallback_compatible else None

        log.info(f"Restoring partition {partition_path} using {primary.label}")
        outcome = run_with_fallback(primary, fallback, subject=partition_path)
        if not outcome.succeeded:
            raise RestoreFailureError(
                f"Restore of partition {entry.partition} onto {partition_path} failed "
                f"(method={entry.method}, image={entry.image}): {outcome.detail}",
                target=handle.path,
                partition=partition_path,
            )
        return outcome.downgraded
