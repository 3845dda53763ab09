"""Tool capability probing.

Maps filesystem types to the partclone tool that can image them and checks
what the current host actually has installed. A missing specialized tool is
normal and handled by degrading to the generic ``dd | gzip`` method; only the
generic tools themselves are mandatory.
"""
from __future__ import annotations

import os
from typing import Optional

from disk_imager.domain import GENERIC_FALLBACK, Capability

from .commands import CommandRunner
from .exceptions import MissingRequiredToolError, PermissionRequiredError


PARTCLONE_CHECK_TOOL = "partclone.chkimg"

_CAPABILITIES: dict[str, Capability] = {
    "ext": Capability(name="partclone.extfs", family="ext", tool="partclone.extfs"),
    "xfs": Capability(name="partclone.xfs", family="xfs", tool="partclone.xfs"),
    "btrfs": Capability(name="partclone.btrfs", family="btrfs", tool="partclone.btrfs"),
    "ntfs": Capability(name="partclone.ntfs", family="ntfs", tool="partclone.ntfs"),
    "fat": Capability(name="partclone.fat", family="fat", tool="partclone.fat"),
    "exfat": Capability(name="partclone.exfat", family="exfat", tool="partclone.exfat"),
    "swap": Capability(name="partclone.swap", family="swap", tool="partclone.swap"),
    "reiserfs": Capability(
        name="partclone.reiserfs", family="reiserfs", tool="partclone.reiserfs"
    ),
    "hfsplus": Capability(name="partclone.hfsp", family="hfsplus", tool="partclone.hfsp"),
}

_FSTYPE_FAMILIES: dict[str, str] = {
    "ext2": "ext",
    "ext3": "ext",
    "ext4": "ext",
    "xfs": "xfs",
    "btrfs": "btrfs",
    "ntfs": "ntfs",
    "vfat": "fat",
    "fat": "fat",
    "fat12": "fat",
    "fat16": "fat",
    "fat32": "fat",
    "exfat": "exfat",
    "swap": "swap",
    "reiserfs": "reiserfs",
    "hfsplus": "hfsplus",
    "hfs+": "hfsplus",
}


def normalize_fstype(fstype: Optional[str]) -> str:
    return (fstype or "").strip().lower()


def is_root() -> bool:
    return os.geteuid() == 0


def require_root(operation: str, *, skip_root_check: bool = False) -> None:
    """Raise PermissionRequiredError unless running as root."""
    if skip_root_check:
        return
    if not is_root():
        raise PermissionRequiredError(operation)


class ToolProber:
    """Answers which imaging capability applies to a filesystem and whether it is installed."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def capability_for(self, fstype: Optional[str]) -> Capability:
        """Specialized capability for a filesystem type, else the generic fallback."""
        family = _FSTYPE_FAMILIES.get(normalize_fstype(fstype))
        if family is None:
            return GENERIC_FALLBACK
        return _CAPABILITIES[family]

    def capability_by_name(self, name: str) -> Capability:
        """Capability for a manifest method label."""
        if name == GENERIC_FALLBACK.name:
            return GENERIC_FALLBACK
        for capability in _CAPABILITIES.values():
            if capability.name == name:
                return capability
        # Written by a newer or foreign tool; still worth probing for the executable.
        return Capability(name=name, family="unknown", tool=name)

    def compression_tool(self) -> Optional[str]:
        """pigz when installed, else gzip."""
        return self.runner.which("pigz") or self.runner.which("gzip")

    def is_available(self, capability: Capability) -> bool:
        if capability.is_fallback:
            return self.runner.has("dd") and self.compression_tool() is not None
        return self.runner.has(capability.tool)

    def missing_core_tools(self, *extra: str) -> list[str]:
        """Names of required fallback tools that are not installed."""
        missing = [tool for tool in ("lsblk", "dd", *extra) if not self.runner.has(tool)]
        if self.compression_tool() is None:
            missing.append("gzip")
        return missing

    def require_core_tools(self, *extra: str) -> None:
        missing = self.missing_core_tools(*extra)
        if missing:
            raise MissingRequiredToolError(missing)

    def can_check_partclone_images(self) -> bool:
        return self.runner.has(PARTCLONE_CHECK_TOOL)
