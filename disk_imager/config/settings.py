"""Settings for the imager.

Defaults come from ``DEFAULT_SETTINGS``, are overridden by the JSON settings
file and then by environment variables. The result is a frozen
``ImagerSettings`` built once at process start and handed to each engine.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional


SETTINGS_PATH = Path(
    os.environ.get(
        "DISK_IMAGER_SETTINGS_PATH",
        Path.home() / ".config" / "disk-imager" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SOURCE_DISK = "/dev/nvme0"
DEFAULT_BACKUP_ROOT = "/root/samba"
DEFAULT_NAME_PREFIX = "disk-image"
DEFAULT_RAW_HEADER_SECTORS = 4096
DEFAULT_SECTOR_SIZE = 512
DEFAULT_BLOCK_SIZE = "16M"
DEFAULT_COMPRESSION_LEVEL = 1
DEFAULT_SETTLE_TIMEOUT_SECONDS = 10.0
DEFAULT_SETTLE_POLL_INTERVAL = 0.5

DEFAULT_SETTINGS: dict[str, Any] = {
    "source_disk": DEFAULT_SOURCE_DISK,
    "backup_root": DEFAULT_BACKUP_ROOT,
    "name_prefix": DEFAULT_NAME_PREFIX,
    "skip_root_check": False,
    "skip_raw_headers": False,
    "raw_header_sectors": DEFAULT_RAW_HEADER_SECTORS,
    "sector_size": DEFAULT_SECTOR_SIZE,
    "block_size": DEFAULT_BLOCK_SIZE,
    "compression_level": DEFAULT_COMPRESSION_LEVEL,
    "settle_timeout_seconds": DEFAULT_SETTLE_TIMEOUT_SECONDS,
    "settle_poll_interval": DEFAULT_SETTLE_POLL_INTERVAL,
    "log_dir": None,
    "test_mode": False,
}

# Environment variable -> settings key
ENV_OVERRIDES: dict[str, str] = {
    "SOURCE_DISK": "source_disk",
    "BACKUP_ROOT": "backup_root",
    "NAME_PREFIX": "name_prefix",
    "SKIP_ROOT_CHECK": "skip_root_check",
    "DISK_IMAGER_SKIP_RAW_HEADERS": "skip_raw_headers",
    "DISK_IMAGER_TEST_MODE": "test_mode",
    "DISK_IMAGER_LOG_DIR": "log_dir",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ImagerSettings:
    source_disk: str = DEFAULT_SOURCE_DISK
    backup_root: Path = Path(DEFAULT_BACKUP_ROOT)
    name_prefix: str = DEFAULT_NAME_PREFIX
    skip_root_check: bool = False
    skip_raw_headers: bool = False
    raw_header_sectors: int = DEFAULT_RAW_HEADER_SECTORS
    sector_size: int = DEFAULT_SECTOR_SIZE
    block_size: str = DEFAULT_BLOCK_SIZE
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    settle_timeout_seconds: float = DEFAULT_SETTLE_TIMEOUT_SECONDS
    settle_poll_interval: float = DEFAULT_SETTLE_POLL_INTERVAL
    log_dir: Optional[Path] = None
    test_mode: bool = False

    @property
    def raw_header_bytes(self) -> int:
        return self.raw_header_sectors * self.sector_size

    def with_overrides(self, **overrides: Any) -> ImagerSettings:
        """Return a copy with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **_coerce_values(changes))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _coerce_values(values: Mapping[str, Any]) -> dict[str, Any]:
    known = {field.name: field for field in fields(ImagerSettings)}
    coerced: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            continue
        default = getattr(ImagerSettings, key, None)
        if key in ("backup_root", "log_dir"):
            coerced[key] = Path(value).expanduser() if value not in (None, "") else None
            if key == "backup_root" and coerced[key] is None:
                coerced[key] = Path(DEFAULT_BACKUP_ROOT)
        elif isinstance(default, bool):
            coerced[key] = _as_bool(value)
        elif isinstance(default, (int, float)):
            try:
                coerced[key] = type(default)(value)
            except (TypeError, ValueError) as error:
                raise ValueError(f"Invalid value for {key}: {value!r}") from error
        else:
            coerced[key] = str(value)
    return coerced


def read_settings_file(path: Path) -> dict[str, Any]:
    """Read the JSON settings file, ignoring missing or corrupt files."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(data, dict):
        return data
    return {}


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ImagerSettings:
    values = dict(DEFAULT_SETTINGS)
    values.update(read_settings_file(path or SETTINGS_PATH))
    env = os.environ if environ is None else environ
    for env_name, key in ENV_OVERRIDES.items():
        env_value = env.get(env_name)
        if env_value is not None and env_value != "":
            values[key] = env_value
    return ImagerSettings(**_coerce_values(values))
