"""
Pytest configuration and shared fixtures for disk-imager tests.

The central fixture is ``FakeHost``: a ``CommandRunner`` that simulates the
external tools (lsblk, blkid, sfdisk, partclone, dd, gzip, ...) in-process
against a small model of disks and partitions, so backup, verify and restore
run end to end on ``tmp_path`` without root or real block devices.
"""

from __future__ import annotations

import gzip
import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from loguru import logger

from disk_imager.config.settings import ImagerSettings
from disk_imager.domain import partition_path_from_number
from disk_imager.main import build_services
from disk_imager.storage.commands import (
    CommandResult,
    CommandRunner,
    format_command,
    format_pipeline,
)
from disk_imager.storage.devices import get_partition_number


DEFAULT_TOOLS = frozenset(
    {
        "lsblk",
        "blkid",
        "sfdisk",
        "blockdev",
        "dd",
        "gzip",
        "wipefs",
        "partprobe",
        "udevadm",
        "umount",
        "sync",
        "partclone.ntfs",
        "partclone.extfs",
        "partclone.chkimg",
    }
)

MIB = 1024 * 1024


# ==============================================================================
# Fake Host
# ==============================================================================


@dataclass
class FakeDisk:
    path: str
    size_bytes: int
    partitions: List[Dict[str, Any]] = field(default_factory=list)
    removable: bool = False
    mountpoint: Optional[str] = None

    def partition_path(self, number: int) -> str:
        return partition_path_from_number(self.path, number)

    def layout(self, *, with_fstype: bool = False) -> List[Dict[str, Any]]:
        layout = []
        for part in self.partitions:
            item = {"number": part["number"], "size": part["size"]}
            if with_fstype:
                item["fstype"] = part["fstype"]
            layout.append(item)
        return layout

    def apply_layout(self, layout: List[Dict[str, Any]]) -> None:
        self.partitions = [
            make_partition(item["number"], item.get("fstype", ""), item["size"])
            for item in layout
        ]


def make_partition(
    number: int, fstype: str, size: int = 4 * MIB, mountpoint: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "number": number,
        "fstype": fstype,
        "size": size,
        "mountpoint": mountpoint,
        "partuuid": f"0000-{number:04d}",
        "uuid": f"uuid-{number}" if fstype else "",
    }


class FakeHost(CommandRunner):
    """In-process stand-in for the host's block devices and tools."""

    def __init__(self, tools=DEFAULT_TOOLS):
        self.tools = set(tools)
        self.failing: set[str] = set()
        self.disks: Dict[str, FakeDisk] = {}
        self.blkid_types: Dict[str, str] = {}
        self.calls: List[str] = []
        self.writes: List[tuple[str, int, bytes]] = []

    def add_disk(self, path: str, size_bytes: int = 100000 * 512, partitions=(), **kwargs) -> FakeDisk:
        disk = FakeDisk(path=path, size_bytes=size_bytes, partitions=list(partitions), **kwargs)
        self.disks[path] = disk
        return disk

    def ran(self, prefix: str) -> List[str]:
        return [call for call in self.calls if call.startswith(prefix)]

    # -- CommandRunner interface ------------------------------------------------

    def which(self, tool: str) -> Optional[str]:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def run(self, command, *, input_text=None, timeout=None) -> CommandResult:
        argv = [str(part) for part in command]
        self.calls.append(format_command(argv))
        stdin = input_text.encode() if input_text is not None else b""
        returncode, stdout, stderr = self._execute(argv, stdin)
        return CommandResult(
            format_command(argv), returncode, stdout.decode(errors="replace"), stderr
        )

    def run_pipeline(self, commands, *, output_path=None, timeout=None) -> CommandResult:
        command_line = format_pipeline(commands, output_path)
        data = b""
        for command in commands:
            argv = [str(part) for part in command]
            self.calls.append(format_command(argv))
            returncode, data, stderr = self._execute(argv, data)
            if returncode != 0:
                if output_path is not None:
                    Path(output_path).write_bytes(b"partial")
                return CommandResult(
                    command_line, returncode, "", f"{format_command(argv)}: {stderr}"
                )
        if output_path is not None:
            Path(output_path).write_bytes(data)
            return CommandResult(command_line, 0)
        return CommandResult(command_line, 0, data.decode(errors="replace"), "")

    # -- simulation -------------------------------------------------------------

    def _execute(self, argv: List[str], stdin: bytes):
        tool = Path(argv[0]).name
        if tool not in self.tools:
            return 127, b"", f"{tool}: command not found"
        if tool in self.failing:
            if tool.startswith("partclone.") and "-o" in argv:
                Path(argv[argv.index("-o") + 1]).write_bytes(b"partial")
            return 1, b"", f"{tool}: simulated failure"
        if tool.startswith("partclone.") and tool != "partclone.chkimg":
            return self._partclone(argv)
        handler = getattr(self, "_" + tool.replace(".", "_"))
        return handler(argv, stdin)

    def _lookup(self, path: str):
        if path in self.disks:
            return self.disks[path], None
        for disk in self.disks.values():
            for part in disk.partitions:
                if disk.partition_path(part["number"]) == path:
                    return disk, part
        return None, None

    def _disk_entry(self, disk: FakeDisk, *, children: bool = True) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "name": Path(disk.path).name,
            "path": disk.path,
            "type": "disk",
            "size": disk.size_bytes,
            "fstype": None,
            "partn": None,
            "partuuid": None,
            "uuid": None,
            "rm": disk.removable,
            "mountpoint": disk.mountpoint,
        }
        if children and disk.partitions:
            entry["children"] = [
                {
                    "name": Path(disk.partition_path(part["number"])).name,
                    "path": disk.partition_path(part["number"]),
                    "type": "part",
                    "size": part["size"],
                    "fstype": part["fstype"] or None,
                    "partn": part["number"],
                    "partuuid": part["partuuid"],
                    "uuid": part["uuid"] or None,
                    "rm": disk.removable,
                    "mountpoint": part["mountpoint"],
                }
                for part in disk.partitions
            ]
        return entry

    def _lsblk(self, argv, stdin):
        if "-d" in argv:
            entries = [self._disk_entry(disk, children=False) for disk in self.disks.values()]
            return 0, json.dumps({"blockdevices": entries}).encode(), ""
        device = argv[-1]
        disk = self.disks.get(device)
        if disk is None:
            return 32, b"", f"lsblk: {device}: not a block device"
        return 0, json.dumps({"blockdevices": [self._disk_entry(disk)]}).encode(), ""

    def _blkid(self, argv, stdin):
        fstype = self.blkid_types.get(argv[-1])
        if not fstype:
            return 2, b"", ""
        return 0, f"{fstype}\n".encode(), ""

    def _sfdisk(self, argv, stdin):
        device = argv[-1]
        disk = self.disks.get(device)
        if disk is None:
            return 1, b"", f"sfdisk: cannot open {device}"
        if "--dump" in argv:
            lines = ["label: gpt", f"device: {device}", "unit: sectors", ""]
            start = 2048
            for part in disk.partitions:
                sectors = part["size"] // 512
                lines.append(
                    f"{disk.partition_path(part['number'])} : start={start}, size={sectors}"
                )
                start += sectors
            return 0, ("\n".join(lines) + "\n").encode(), ""
        if "--json" in argv:
            table = {
                "partitiontable": {
                    "label": "gpt",
                    "device": device,
                    "partitions": [
                        {"node": disk.partition_path(part["number"]), "size": part["size"] // 512}
                        for part in disk.partitions
                    ],
                }
            }
            return 0, json.dumps(table).encode(), ""
        layout = []
        for line in stdin.decode().splitlines():
            if " : start=" not in line:
                continue
            node, _, fields = line.partition(" : ")
            size = int(fields.split("size=")[1].split(",")[0]) * 512
            layout.append({"number": get_partition_number(node.strip()), "size": size})
        disk.apply_layout(layout)
        return 0, b"", ""

    def _blockdev(self, argv, stdin):
        disk = self.disks.get(argv[-1])
        if disk is None:
            return 1, b"", "blockdev: cannot open"
        if "--getsz" in argv:
            return 0, f"{disk.size_bytes // 512}\n".encode(), ""
        return 0, b"", ""

    def _partclone(self, argv):
        source = argv[argv.index("-s") + 1]
        output = argv[argv.index("-o") + 1]
        if "-c" in argv:
            _disk, part = self._lookup(source)
            if part is None:
                return 1, b"", f"partclone: cannot open {source}"
            Path(output).write_bytes(f"partclone:{part['fstype']}:{source}\n".encode())
            return 0, b"", ""
        content = Path(source).read_bytes()
        _disk, part = self._lookup(output)
        if part is None:
            return 1, b"", f"partclone: cannot open {output}"
        part["fstype"] = content.split(b":")[1].decode()
        self.writes.append((output, 0, content))
        return 0, b"", ""

    def _partclone_chkimg(self, argv, stdin):
        image = Path(argv[argv.index("-s") + 1])
        if image.read_bytes().startswith(b"partclone:"):
            return 0, b"", ""
        return 1, b"", "partclone.chkimg: bad image"

    def _dd(self, argv, stdin):
        options = dict(arg.split("=", 1) for arg in argv[1:] if "=" in arg)
        if "if" in options:
            source = options["if"]
            disk, part = self._lookup(source)
            if disk is None:
                return 1, b"", f"dd: failed to open '{source}'"
            if "count" in options:
                if "skip" in options:
                    return 0, f"tail:{source}:{options['skip']}\n".encode(), ""
                return 0, b"table:" + json.dumps(disk.layout()).encode() + b"\n", ""
            if part is None:
                layout = json.dumps(disk.layout(with_fstype=True)).encode()
                return 0, b"disk:" + layout + b"\n", ""
            return 0, f"raw:{part['fstype']}:{source}\n".encode() * 64, ""

        destination = options["of"]
        disk, part = self._lookup(destination)
        if disk is None:
            return 1, b"", f"dd: failed to open '{destination}'"
        self.writes.append((destination, int(options.get("seek", 0)), stdin))
        if part is not None:
            if stdin.startswith(b"raw:"):
                part["fstype"] = stdin.split(b":")[1].decode()
        elif stdin.startswith(b"table:"):
            disk.apply_layout(json.loads(stdin[len(b"table:"):]))
        elif stdin.startswith(b"disk:"):
            disk.apply_layout(json.loads(stdin[len(b"disk:"):]))
        return 0, b"", ""

    def _gzip(self, argv, stdin):
        if "-t" in argv or "-dc" in argv:
            try:
                data = gzip.decompress(Path(argv[-1]).read_bytes())
            except (OSError, EOFError) as error:
                return 1, b"", f"gzip: {argv[-1]}: {error}"
            return 0, (b"" if "-t" in argv else data), ""
        return 0, gzip.compress(stdin), ""

    _pigz = _gzip

    def _wipefs(self, argv, stdin):
        disk = self.disks.get(argv[-1])
        if disk is not None:
            disk.partitions = []
        return 0, b"", ""

    def _partprobe(self, argv, stdin):
        return 0, b"", ""

    def _udevadm(self, argv, stdin):
        return 0, b"", ""

    def _sync(self, argv, stdin):
        return 0, b"", ""

    def _umount(self, argv, stdin):
        mountpoint = argv[-1]
        for disk in self.disks.values():
            for part in disk.partitions:
                if part["mountpoint"] == mountpoint:
                    part["mountpoint"] = None
                    return 0, b"", ""
        return 32, b"", f"umount: {mountpoint}: not mounted"


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop sinks added by setup_logging so later tests never write to closed streams."""
    yield
    logger.remove()


@pytest.fixture
def host() -> FakeHost:
    """
    Fixture providing a host with a two-partition source disk and an empty target.

    /dev/mock0: p1 ntfs, p2 ext4 (partclone.ntfs and partclone.extfs installed)
    /dev/mock1: blank disk of the same size
    """
    fake = FakeHost()
    fake.add_disk(
        "/dev/mock0",
        partitions=[make_partition(1, "ntfs"), make_partition(2, "ext4")],
    )
    fake.add_disk("/dev/mock1")
    return fake


@pytest.fixture
def settings(tmp_path) -> ImagerSettings:
    return ImagerSettings(
        source_disk="/dev/mock0",
        backup_root=tmp_path / "backups",
        skip_root_check=True,
        settle_timeout_seconds=0.0,
        settle_poll_interval=0.0,
        test_mode=True,
    )


@pytest.fixture
def services(host, settings):
    """Engines wired to the fake host with the passthrough resolver."""
    return build_services(settings, host)


@pytest.fixture
def backup_set(services, settings) -> Path:
    """A completed backup of /dev/mock0 named "snap"."""
    return services.backup.backup("/dev/mock0", settings.backup_root, "snap").backup_dir


@pytest.fixture
def real_settings(settings) -> ImagerSettings:
    return replace(settings, test_mode=False)


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a temporary settings.json file.
    """
    return tmp_path / "settings.json"
