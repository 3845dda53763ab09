"""Partition table capture and replay.

Primary method: ``sfdisk --dump`` on backup and ``sfdisk --force`` on
restore. When sfdisk is missing (either side) the first and last 4096
sectors of the disk are copied raw through gzip and written back with dd.
The tail copy carries the GPT backup header; on restore it is written at the
end of the *target*, which may differ in size from the source.
"""
from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from disk_imager.config.settings import ImagerSettings
from disk_imager.domain import DeviceHandle
from disk_imager.logging import get_logger

from ..commands import CommandRunner
from ..devices import PartitionCollector
from ..exceptions import CommandFailedError, DeviceError, RestoreFailureError
from ..tools import ToolProber
from .backup_set import (
    RAW_HEAD_FILE,
    RAW_TAIL_FILE,
    SFDISK_DUMP_FILE,
    SFDISK_JSON_FILE,
)


log = get_logger(source="ptable")

TABLE_METHOD_SFDISK = "sfdisk"
TABLE_METHOD_RAW = "dd-gzip"


def save_partition_table(runner: CommandRunner, device: DeviceHandle, output_dir: Path) -> str:
    """Dump the table with sfdisk when possible.

    Returns:
        "sfdisk" when the dump was written, "dd-gzip" when the raw header
        copies are the only table source
    """
    if not runner.has("sfdisk"):
        log.warning("sfdisk not installed; partition table kept only as raw headers")
        return TABLE_METHOD_RAW
    dump = runner.run(["sfdisk", "--dump", device.path])
    if not dump.ok:
        log.warning(f"sfdisk --dump failed for {device}: {dump.error_summary}")
        return TABLE_METHOD_RAW
    (output_dir / SFDISK_DUMP_FILE).write_text(dump.stdout, encoding="utf-8")

    as_json = runner.run(["sfdisk", "--json", device.path])
    if as_json.ok:
        (output_dir / SFDISK_JSON_FILE).write_text(as_json.stdout, encoding="utf-8")
    else:
        log.warning(f"sfdisk --json failed for {device}: {as_json.error_summary}")
    return TABLE_METHOD_SFDISK


def capture_raw_headers(
    runner: CommandRunner,
    prober: ToolProber,
    settings: ImagerSettings,
    device: DeviceHandle,
    output_dir: Path,
    sector_count: Optional[int],
) -> list[str]:
    """Copy the first and last sectors of the disk through gzip, best effort.

    Returns:
        File names written
    """
    compressor = prober.compression_tool()
    if compressor is None or not runner.has("dd"):
        log.warning("dd or gzip missing; raw header copies skipped")
        return []

    count = settings.raw_header_sectors
    regions = [(RAW_HEAD_FILE, 0)]
    if sector_count is not None and sector_count > count:
        regions.append((RAW_TAIL_FILE, sector_count - count))
    else:
        log.debug(f"Sector count of {device} unknown or too small, tail copy skipped")

    written = []
    for name, skip in regions:
        read_command = [
            "dd",
            f"if={device.path}",
            f"bs={settings.sector_size}",
            f"count={count}",
            "status=none",
        ]
        if skip:
            read_command.insert(3, f"skip={skip}")
        output_path = output_dir / name
        result = runner.run_pipeline(
            [read_command, [compressor, f"-{settings.compression_level}", "-c"]],
            output_path=output_path,
        )
        if result.ok:
            written.append(name)
        else:
            log.warning(f"Raw header copy {name} failed: {result.error_summary}")
            output_path.unlink(missing_ok=True)
    return written


def restore_partition_table(
    runner: CommandRunner,
    prober: ToolProber,
    collector: PartitionCollector,
    settings: ImagerSettings,
    backup_dir: Path,
    target: DeviceHandle,
) -> str:
    """Write the saved table onto the target.

    Raises:
        RestoreFailureError: If no table source can be applied
    """
    dump_path = backup_dir / SFDISK_DUMP_FILE
    if dump_path.is_file() and runner.has("sfdisk"):
        log.info(f"Restoring partition table onto {target} using sfdisk")
        result = runner.run(
            ["sfdisk", "--force", target.path],
            input_text=dump_path.read_text(encoding="utf-8"),
        )
        if not result.ok:
            raise RestoreFailureError(
                f"sfdisk could not write the partition table to {target}: "
                f"{result.error_summary}",
                target=target.path,
            )
        return TABLE_METHOD_SFDISK

    head_path = backup_dir / RAW_HEAD_FILE
    if not head_path.is_file():
        raise RestoreFailureError(
            f"No partition table source in {backup_dir}: need {SFDISK_DUMP_FILE} "
            f"(with sfdisk installed) or {RAW_HEAD_FILE}",
            target=target.path,
        )

    log.info(
        f"sfdisk unavailable or no table dump; replaying raw table headers onto {target}"
    )
    _replay_raw(runner, prober, settings, head_path, target, seek=0)

    tail_path = backup_dir / RAW_TAIL_FILE
    if tail_path.is_file():
        sectors = collector.sector_count(target)
        if sectors is not None and sectors > settings.raw_header_sectors:
            _replay_raw(
                runner,
                prober,
                settings,
                tail_path,
                target,
                seek=sectors - settings.raw_header_sectors,
            )
        else:
            log.warning(f"Cannot size {target}; GPT backup header not restored")
    return TABLE_METHOD_RAW


def _replay_raw(
    runner: CommandRunner,
    prober: ToolProber,
    settings: ImagerSettings,
    image_path: Path,
    target: DeviceHandle,
    *,
    seek: int,
) -> None:
    write_command = [
        "dd",
        f"of={target.path}",
        f"bs={settings.sector_size}",
        "conv=fsync",
        "status=none",
    ]
    if seek:
        write_command.insert(3, f"seek={seek}")
    result = runner.run_pipeline(
        [[prober.compression_tool() or "gzip", "-dc", str(image_path)], write_command]
    )
    if not result.ok:
        raise RestoreFailureError(
            f"Raw table replay of {image_path.name} onto {target} failed: "
            f"{result.error_summary}",
            target=target.path,
        )


def reread_partition_table(runner: CommandRunner, target: DeviceHandle) -> None:
    """Force kernel to re-read partition table."""
    if runner.has("partprobe"):
        result = runner.run(["partprobe", target.path])
    elif runner.has("blockdev"):
        result = runner.run(["blockdev", "--rereadpt", target.path])
    else:
        log.warning("Neither partprobe nor blockdev installed; kernel table not re-read")
        return
    if not result.ok:
        log.warning(f"Partition table re-read of {target} failed: {result.error_summary}")


def settle_udev(runner: CommandRunner) -> None:
    """Wait for udev to settle."""
    if runner.has("udevadm"):
        result = runner.run(["udevadm", "settle"])
        if not result.ok:
            log.debug(f"udevadm settle failed: {result.error_summary}")


def wait_for_partition_count(
    collector: PartitionCollector,
    target: DeviceHandle,
    required_count: int,
    *,
    timeout_seconds: float,
    poll_interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Wait for a specific number of partitions to appear."""
    deadline = time.monotonic() + timeout_seconds
    last_count = 0
    while True:
        try:
            last_count = len(collector.enumerate(target))
        except (CommandFailedError, DeviceError) as error:
            log.debug(f"Re-enumerating {target} failed: {error}")
        else:
            if last_count >= required_count:
                return last_count
        if time.monotonic() >= deadline:
            break
        sleep(poll_interval)
    raise RestoreFailureError(
        "Partition table applied but kernel did not create all partitions "
        f"(expected {required_count}, saw {last_count}).",
        target=target.path,
    )


def settle(
    runner: CommandRunner,
    collector: PartitionCollector,
    settings: ImagerSettings,
    target: DeviceHandle,
    expected_count: int,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Re-read the table, let udev settle, then wait for the partition nodes."""
    reread_partition_table(runner, target)
    settle_udev(runner)
    if expected_count:
        wait_for_partition_count(
            collector,
            target,
            expected_count,
            timeout_seconds=settings.settle_timeout_seconds,
            poll_interval=settings.settle_poll_interval,
            sleep=sleep,
        )
