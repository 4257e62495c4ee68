from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from archive_errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "discvault"
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_DEVICE = "/dev/sr0"
DEFAULT_CAPACITY_GB = 25
ALLOWED_CAPACITIES_GB = (25, 50, 100, 128)
BURN_METHODS = ("iso", "direct")
DEFAULT_MOUNT_ROOTS = ["/media", "/mnt", "/run/media"]


def _xdg_dir(env_key: str, fallback: str) -> Path:
    base = os.environ.get(env_key, "").strip()
    root = Path(base) if base else Path.home() / fallback
    return root / APP_NAME


def data_dir() -> Path:
    return _xdg_dir("XDG_DATA_HOME", ".local/share")


def config_dir() -> Path:
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def config_file_path() -> Path:
    return config_dir() / CONFIG_FILE_NAME


def expand_path(s: str | Path) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(str(s))))


def as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return v != 0
    if isinstance(v, str):
        s = v.strip().lower()
        if s in {"1", "true", "yes", "on"}:
            return True
        if s in {"0", "false", "no", "off"}:
            return False
    return default


def strip_quotes(s: str) -> str:
    t = s.strip()
    if len(t) >= 2 and ((t[0] == t[-1] == '"') or (t[0] == t[-1] == "'")):
        return t[1:-1]
    return t


def parse_simple_yaml(path: Path) -> dict[str, Any]:
    """Parse the YAML subset used by config.yaml: `key: value` scalars and
    `key:` followed by `- item` lists. Comments and blank lines are ignored."""
    data: dict[str, Any] = {}
    current_list_key: str | None = None
    lines = path.read_text(encoding="utf-8").splitlines()
    for i, raw in enumerate(lines, start=1):
        line = raw.rstrip()
        if not line.strip():
            continue
        if line.lstrip().startswith("#"):
            continue
        m_key_list = re.match(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*:\s*$", line)
        if m_key_list:
            key = m_key_list.group(1)
            current_list_key = key
            if key not in data:
                data[key] = []
            if not isinstance(data[key], list):
                raise ConfigError(f"invalid YAML at {path}:{i}: key '{key}' used as both scalar and list")
            continue
        m_key_value = re.match(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*:\s*(.+?)\s*$", line)
        if m_key_value:
            key = m_key_value.group(1)
            value = strip_quotes(m_key_value.group(2))
            if value.isdigit():
                data[key] = int(value)
            else:
                data[key] = value
            current_list_key = None
            continue
        m_list_item = re.match(r"^\s*-\s*(.+?)\s*$", line)
        if m_list_item and current_list_key:
            data[current_list_key].append(strip_quotes(m_list_item.group(1)))
            continue
        raise ConfigError(f"invalid YAML syntax at {path}:{i}: {line}")
    return data


@dataclass
class ArchiveConfig:
    device: str = DEFAULT_DEVICE
    staging_dir: str | None = None
    database_path: str | None = None
    qr_dir: str | None = None
    capacity_gb: int = DEFAULT_CAPACITY_GB
    burn_method: str = "iso"
    use_rsync: bool = True
    use_qrencode: bool = True
    auto_verify: bool = False
    keep_iso: bool = False
    mount_roots: list[str] = field(default_factory=lambda: list(DEFAULT_MOUNT_ROOTS))
    log_file: str | None = None

    @property
    def capacity_bytes(self) -> int:
        return int(self.capacity_gb) * 1024 * 1024 * 1024

    def staging_path(self) -> Path:
        if self.staging_dir:
            return expand_path(self.staging_dir)
        return Path(tempfile.gettempdir()) / f"{APP_NAME}_staging"

    def database_file(self) -> Path:
        if self.database_path:
            return expand_path(self.database_path)
        return data_dir() / "archive.db"

    def qr_path(self) -> Path:
        if self.qr_dir:
            return expand_path(self.qr_dir)
        return data_dir() / "qrcodes"

    def validate(self) -> None:
        if not str(self.device or "").strip():
            raise ConfigError("device must not be empty")
        if int(self.capacity_gb) not in ALLOWED_CAPACITIES_GB:
            raise ConfigError(
                f"capacity_gb must be one of {', '.join(str(c) for c in ALLOWED_CAPACITIES_GB)} (got {self.capacity_gb})"
            )
        if self.burn_method not in BURN_METHODS:
            raise ConfigError(f"burn_method must be one of {', '.join(BURN_METHODS)} (got {self.burn_method})")

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def config_from_dict(raw: dict[str, Any]) -> ArchiveConfig:
    cfg = ArchiveConfig()
    known = {f.name for f in fields(cfg)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("unknown config key ignored: %s", key)
            continue
        default = getattr(cfg, key)
        if isinstance(default, bool):
            setattr(cfg, key, as_bool(value, default))
        elif key == "capacity_gb":
            try:
                cfg.capacity_gb = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"capacity_gb must be an integer (got {value!r})")
        elif key == "mount_roots":
            cfg.mount_roots = [str(v) for v in value] if isinstance(value, list) else [str(value)]
        else:
            setattr(cfg, key, str(value) if value is not None else None)
    cfg.validate()
    return cfg


def load_config(path: str | Path | None = None) -> ArchiveConfig:
    p = Path(path) if path is not None else config_file_path()
    if not p.exists():
        if path is not None:
            raise ConfigError(f"config file not found: {p}")
        logger.debug("no config file at %s, using defaults", p)
        return ArchiveConfig()
    logger.debug("loading config: %s", p)
    return config_from_dict(parse_simple_yaml(p))


def save_config(cfg: ArchiveConfig, path: str | Path | None = None) -> Path:
    p = Path(path) if path is not None else config_file_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    for key, value in cfg.to_dict().items():
        if value is None:
            continue
        if isinstance(value, list):
            lines.append(f"{key}:")
            lines.extend(f"  - {v}" for v in value)
        elif isinstance(value, bool):
            lines.append(f"{key}: {'true' if value else 'false'}")
        else:
            lines.append(f"{key}: {value}")
    p.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return p
