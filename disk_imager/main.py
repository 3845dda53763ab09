from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from disk_imager.__version__ import __version__
from disk_imager.config.settings import ImagerSettings, load_settings
from disk_imager.logging import LoggerFactory, setup_logging
from disk_imager.storage.commands import CommandRunner
from disk_imager.storage.devices import (
    DeviceResolver,
    PartitionCollector,
    PassthroughResolver,
)
from disk_imager.storage.exceptions import ConfirmationDeclined, ImagerError
from disk_imager.storage.imaging import BackupEngine, RestoreEngine, Verifier
from disk_imager.storage.tools import ToolProber
from disk_imager.ui import prompts


@dataclass
class Services:
    """Everything a command needs, wired once per process."""

    settings: ImagerSettings
    runner: CommandRunner
    resolver: Union[DeviceResolver, PassthroughResolver]
    prober: ToolProber
    collector: PartitionCollector
    verifier: Verifier
    backup: BackupEngine
    restore: RestoreEngine


def build_services(
    settings: ImagerSettings, runner: Optional[CommandRunner] = None
) -> Services:
    runner = runner or CommandRunner()
    if settings.test_mode:
        resolver: Union[DeviceResolver, PassthroughResolver] = PassthroughResolver(
            settings.source_disk
        )
    else:
        resolver = DeviceResolver(runner)
    prober = ToolProber(runner)
    collector = PartitionCollector(runner)
    verifier = Verifier(runner, prober, collector)
    return Services(
        settings=settings,
        runner=runner,
        resolver=resolver,
        prober=prober,
        collector=collector,
        verifier=verifier,
        backup=BackupEngine(
            settings, runner=runner, resolver=resolver, prober=prober, collector=collector
        ),
        restore=RestoreEngine(
            settings,
            runner=runner,
            resolver=resolver,
            prober=prober,
            collector=collector,
            verifier=verifier,
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="disk-imager",
        description="Partition-aware block device backup, restore and verification",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Settings JSON file")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log captured command output")
    parser.add_argument("--log-dir", type=Path, help="Write log files to this directory")
    parser.add_argument(
        "--skip-root-check", action="store_true", help="Do not require root (tests only)"
    )

    subparsers = parser.add_subparsers(dest="command")

    preflight = subparsers.add_parser("preflight", help="Show what a backup would do")
    preflight.add_argument("--source", help="Source disk")

    backup = subparsers.add_parser("backup", help="Create a backup image set")
    backup.add_argument("--source", help="Source disk")
    backup.add_argument("--backup-root", type=Path, help="Directory that holds backup sets")
    backup.add_argument("--name", help="Backup set name (default: <prefix>-<timestamp>)")
    backup.add_argument(
        "--whole-disk", action="store_true", help="Capture the whole device as one raw image"
    )
    backup.add_argument(
        "--allow-mounted", action="store_true", help="Image even if partitions are mounted"
    )

    restore = subparsers.add_parser("restore", help="Restore a disk from a backup set")
    restore.add_argument("--target", help="Disk to wipe and restore")
    restore.add_argument("--backup-dir", type=Path, required=True, help="Backup set directory")
    restore.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    verify = subparsers.add_parser("verify", help="Verify backup integrity")
    verify.add_argument("--backup-dir", type=Path, required=True, help="Backup set directory")
    verify.add_argument("--compare-disk", help="Compare the manifest against this disk")

    subparsers.add_parser("tui", help="Interactive menu (default)")
    return parser


def run_preflight(args: argparse.Namespace, services: Services) -> int:
    report = services.backup.preflight(args.source)
    for line in report.lines():
        print(line)
    return 0


def run_backup(args: argparse.Namespace, services: Services) -> int:
    result = services.backup.backup(
        args.source,
        args.backup_root,
        args.name,
        whole_disk=args.whole_disk,
        allow_mounted=args.allow_mounted,
    )
    for partition in result.fallbacks:
        print(f"Partition {partition} captured with the generic fallback", file=sys.stderr)
    print(result.backup_dir)
    return 0


def run_restore(args: argparse.Namespace, services: Services) -> int:
    result = services.restore.restore(args.target, args.backup_dir, assume_yes=args.yes)
    print(f"Restore completed: {result.target}")
    return 0


def run_verify(args: argparse.Namespace, services: Services) -> int:
    compare = services.resolver.resolve(args.compare_disk) if args.compare_disk else None
    report = services.verifier.verify(args.backup_dir, compare)
    print(report.summary())
    return 0


def run_tui(args: argparse.Namespace, services: Services) -> int:
    def backup(disk: str, root: str, name: Optional[str]) -> str:
        result = services.backup.backup(disk, Path(root), name)
        return f"Backup finished: {result.backup_dir}"

    def restore(target: str, backup_dir: str, confirm: Callable[[str], str]) -> str:
        result = services.restore.restore(target, backup_dir, confirm=confirm)
        return f"Restore completed: {result.target}"

    def verify(backup_dir: str, compare_disk: Optional[str]) -> str:
        compare = services.resolver.resolve(compare_disk) if compare_disk else None
        return services.verifier.verify(backup_dir, compare).summary()

    return prompts.run_interactive(
        prompts.choose_prompter(services.runner),
        prompts.InteractiveActions(backup=backup, restore=restore, verify=verify),
        services.settings,
    )


COMMANDS: dict[str, Callable[[argparse.Namespace, Services], int]] = {
    "preflight": run_preflight,
    "backup": run_backup,
    "restore": run_restore,
    "verify": run_verify,
    "tui": run_tui,
}


def main(argv=None, runner: Optional[CommandRunner] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config).with_overrides(
            skip_root_check=True if args.skip_root_check else None,
            log_dir=args.log_dir,
        )
    except ValueError as error:
        print(f"ERROR: Bad settings: {error}", file=sys.stderr)
        return 1
    log_path = setup_logging(debug=args.debug, trace=args.trace, log_dir=settings.log_dir)
    log = LoggerFactory.for_system()
    if args.config is not None and not args.config.is_file():
        log.warning(f"Settings file not found: {args.config}; using defaults")
    log.debug(f"disk-imager {__version__} starting with {settings}")

    services = build_services(settings, runner)
    command = args.command or "tui"
    try:
        return COMMANDS[command](args, services)
    except ConfirmationDeclined as declined:
        print(str(declined))
        return 0
    except (ImagerError, OSError) as error:
        log.error(f"{command} failed: {error}")
        print(f"ERROR: {error}", file=sys.stderr)
        if log_path is not None:
            print(f"See log: {log_path}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("ERROR: Interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
