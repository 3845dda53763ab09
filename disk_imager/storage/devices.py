"""Block device resolution and partition enumeration using lsblk.

Device Resolution:
    ``DeviceResolver`` turns what the user typed into a ``DeviceHandle`` for a
    real disk node:

    1. A usable block device is returned unchanged
    2. A symlink (e.g. /dev/disk/by-id/...) is followed once
    3. An NVMe controller node (/dev/nvme0) is swapped for its first
       namespace (/dev/nvme0n1), with a warning
    4. A disk-shaped name that is not a block device fails with a hint that
       the process probably cannot see host devices (container, sandbox)

    ``PassthroughResolver`` is the test double. It performs no checks and is
    only wired in by the CLI when test mode is enabled.

Partition Enumeration:
    ``PartitionCollector`` queries lsblk (JSON output) every time it is asked;
    layouts change between preparing a backup and running a restore, so
    nothing is cached. Partitions lsblk cannot type are retried with blkid;
    if both come back empty the type stays "" and callers treat it as
    unknown.

Example:
    >>> resolver = DeviceResolver(CommandRunner())
    >>> handle = resolver.resolve("/dev/nvme0")
    >>> [p.path for p in PartitionCollector(CommandRunner()).enumerate(handle)]
    ['/dev/nvme0n1p1', '/dev/nvme0n1p2']
"""
from __future__ import annotations

import json
import os
import re
import stat
from typing import Any, Callable, Optional, Union

from disk_imager.domain import DeviceHandle, PartitionDescriptor
from disk_imager.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import DeviceError, NoDiskFoundError, NotABlockDeviceError


log = LoggerFactory.for_system()

SYSTEM_MOUNTPOINTS = {"/", "/boot", "/boot/efi", "/boot/firmware"}

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,FSTYPE,PARTN,PARTUUID,UUID,RM,MOUNTPOINT"

CONTROLLER_NODE_PATTERN = re.compile(r"^/dev/nvme(\d+)$")
DISK_NODE_PATTERN = re.compile(
    r"^/dev/(sd[a-z]+|vd[a-z]+|xvd[a-z]+|hd[a-z]+|nvme\d+n\d+|mmcblk\d+|loop\d+)$"
)

DeviceRef = Union[DeviceHandle, str]


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def device_path(device: DeviceRef) -> str:
    """Convert a handle, name or path to a /dev path."""
    if isinstance(device, DeviceHandle):
        return device.path
    return device if device.startswith("/") else f"/dev/{device}"


def get_partition_number(name: Optional[str]) -> Optional[int]:
    """Extract partition number from device name."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _is_removable(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() in ("1", "true")
    return bool(value)


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


class DeviceResolver:
    """Resolves user-supplied identifiers to disk nodes."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        is_block: Callable[[str], bool] = is_block_device,
    ):
        self.runner = runner
        self.is_block = is_block

    def resolve(self, identifier: Optional[DeviceRef]) -> DeviceHandle:
        """Resolve an identifier; empty means auto-detect.

        Raises:
            NotABlockDeviceError: If no usable block device matches
            NoDiskFoundError: If auto-detection finds nothing
        """
        if isinstance(identifier, DeviceHandle):
            return identifier
        if not identifier:
            return self.auto_detect()

        path = device_path(identifier)
        if self.is_block(path):
            return DeviceHandle(path)

        if os.path.islink(path):
            target = os.readlink(path)
            if not os.path.isabs(target):
                target = os.path.normpath(os.path.join(os.path.dirname(path), target))
            if self.is_block(target):
                log.debug(f"Resolved {path} -> {target}")
                return DeviceHandle(target)
            raise NotABlockDeviceError(path, f"symlink target {target} is not a block device")

        controller = CONTROLLER_NODE_PATTERN.match(path)
        if controller:
            namespace = f"{path}n1"
            if self.is_block(namespace):
                log.warning(
                    f"{path} is an NVMe controller node, using its first disk {namespace}"
                )
                return DeviceHandle(namespace)
            raise NotABlockDeviceError(
                path, f"NVMe controller node and {namespace} is not available"
            )

        if DISK_NODE_PATTERN.match(path):
            raise NotABlockDeviceError(
                path,
                "the node is not visible as a block device here; this usually means "
                "the process runs in a container or sandbox without access to host devices",
            )
        raise NotABlockDeviceError(path)

    def auto_detect(self) -> DeviceHandle:
        """First non-removable disk reported by lsblk."""
        output = self.runner.run_checked(
            ["lsblk", "-J", "-b", "-d", "-o", "NAME,PATH,TYPE,RM"],
            context="Unable to list block devices",
        )
        try:
            blockdevices = json.loads(output).get("blockdevices", [])
        except json.JSONDecodeError as error:
            raise DeviceError(f"Unable to parse lsblk output: {error}") from error
        for device in blockdevices:
            if device.get("type") != "disk" or _is_removable(device.get("rm")):
                continue
            path = device.get("path") or f"/dev/{device.get('name')}"
            log.info(f"Auto-detected disk {path}")
            return DeviceHandle(path)
        raise NoDiskFoundError()


class PassthroughResolver:
    """Identity resolver for tests and dry runs: no node checks at all."""

    def __init__(self, default_disk: str):
        self.default_disk = default_disk

    def resolve(self, identifier: Optional[DeviceRef]) -> DeviceHandle:
        if isinstance(identifier, DeviceHandle):
            return identifier
        if not identifier:
            return self.auto_detect()
        return DeviceHandle(device_path(identifier))

    def auto_detect(self) -> DeviceHandle:
        return DeviceHandle(self.default_disk)


class PartitionCollector:
    """Pure queries about a device's partitions."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def describe_device(self, device: DeviceRef) -> str:
        """Raw lsblk JSON for the device tree."""
        return self.runner.run_checked(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device_path(device)],
            context=f"Unable to query {device_path(device)}",
        )

    def describe(self, device: DeviceRef) -> dict:
        """lsblk entry for the device itself, children included."""
        output = self.describe_device(device)
        try:
            blockdevices = json.loads(output).get("blockdevices", [])
        except json.JSONDecodeError as error:
            raise DeviceError(
                f"Unable to parse lsblk output for {device_path(device)}: {error}"
            ) from error
        if not blockdevices:
            raise DeviceError(f"lsblk returned nothing for {device_path(device)}")
        return blockdevices[0]

    def enumerate(self, device: DeviceRef) -> list[PartitionDescriptor]:
        """Partitions of a device in ascending partition-number order."""
        info = self.describe(device)
        partitions = []
        for child in get_children(info):
            if child.get("type") != "part":
                continue
            path = child.get("path") or f"/dev/{child.get('name')}"
            number = child.get("partn")
            if number in (None, ""):
                number = get_partition_number(child.get("name") or path)
            if number is None:
                raise DeviceError(f"Could not determine partition number for {path}")
            fstype = (child.get("fstype") or "").strip()
            if not fstype:
                fstype = self.identify_fstype(path)
            partitions.append(
                PartitionDescriptor(
                    number=int(number),
                    path=path,
                    fstype=fstype,
                    size_bytes=_as_int(child.get("size")),
                    partuuid=(child.get("partuuid") or "").strip(),
                    uuid=(child.get("uuid") or "").strip(),
                )
            )
        return sorted(partitions, key=lambda partition: partition.number)

    def identify_fstype(self, partition_path: str) -> str:
        """Ask blkid for a filesystem type; "" when it cannot tell."""
        if not self.runner.has("blkid"):
            return ""
        result = self.runner.run(["blkid", "-o", "value", "-s", "TYPE", partition_path])
        if not result.ok:
            return ""
        return result.stdout.strip()

    def filesystem_types(self, device: DeviceRef) -> dict[int, str]:
        """Partition number -> current filesystem type ("unknown" when empty)."""
        return {
            partition.number: partition.fstype_label
            for partition in self.enumerate(device)
        }

    def size_bytes(self, device: DeviceRef) -> Optional[int]:
        size = self.describe(device).get("size")
        if size in (None, ""):
            return None
        return _as_int(size)

    def sector_count(self, device: DeviceRef) -> Optional[int]:
        """512-byte sector count from blockdev --getsz."""
        if not self.runner.has("blockdev"):
            return None
        result = self.runner.run(["blockdev", "--getsz", device_path(device)])
        if not result.ok:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def mounted_partitions(self, device: DeviceRef) -> list[tuple[str, str]]:
        """(node, mountpoint) for the device and everything below it."""
        mounts: list[tuple[str, str]] = []

        def walk(entry: dict) -> None:
            mountpoint = entry.get("mountpoint")
            if mountpoint:
                mounts.append((entry.get("path") or f"/dev/{entry.get('name')}", mountpoint))
            for child in get_children(entry):
                walk(child)

        walk(self.describe(device))
        return mounts


def has_system_mountpoint(mounts: list[tuple[str, str]]) -> bool:
    return any(mountpoint in SYSTEM_MOUNTPOINTS for _node, mountpoint in mounts)


def unmount_all(runner: CommandRunner, mounts: list[tuple[str, str]]) -> list[str]:
    """Unmount every mountpoint, best effort.

    Returns:
        Mountpoints that could not be unmounted
    """
    if not mounts:
        return []
    if runner.has("sync"):
        runner.run(["sync"])
    failed = []
    # Deepest mountpoints first so nested mounts do not block their parents.
    for node, mountpoint in sorted(mounts, key=lambda item: len(item[1]), reverse=True):
        result = runner.run(["umount", mountpoint])
        if result.ok:
            log.info(f"Unmounted {node} from {mountpoint}")
        else:
            log.warning(f"Failed to unmount {node} ({mountpoint}): {result.error_summary}")
            failed.append(mountpoint)
    return failed
