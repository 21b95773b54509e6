from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .bend.device import DeviceProfile, generate_device_id, load_or_create_device_id
from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FINTRACK_CONFIG"
CONFIG_FILENAME = "config.yaml"
LOCAL_CONFIG_DIRS = (Path(".fintrack"), Path("configs"), Path("."))

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def global_config_dir() -> Path:
    return Path.home() / ".config" / "fintrack"


def parse_duration(value: Any) -> float:
    """Seconds from a number or a "500ms" / "1s" / "2m" style string."""
    if isinstance(value, (int, float)):
        return float(value)
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"invalid duration: {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


class BendSettings(BaseModel):
    base_url: str = "https://bend.example.com"
    origin: Optional[str] = None
    rate_limit: float = 1.0
    timeout: float = 30.0
    session_file: Path = Field(default_factory=lambda: global_config_dir() / "session.json")
    refresh_token: Optional[str] = None
    device_hash: Optional[str] = None
    device_type: str = "Web"
    device_location: str = "Default"

    @field_validator("rate_limit", "timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> float:
        return parse_duration(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bend: BendSettings = Field(default_factory=BendSettings)

    log_level: str = "INFO"
    log_http: bool = False
    staging_dir: Path = Path("staging")

    config_file: Optional[Path] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # config file values arrive as init kwargs; the environment wins over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    def validate_required(self) -> None:
        if not self.bend.base_url:
            raise ConfigError("bend.base_url is required")
        if not self.bend.base_url.startswith(("http://", "https://")):
            raise ConfigError("bend.base_url must be a valid HTTP/HTTPS URL")
        if self.bend.timeout <= 0:
            raise ConfigError("bend.timeout must be positive")
        if self.bend.rate_limit < 0:
            raise ConfigError("bend.rate_limit must not be negative")

    def device_profile(self) -> DeviceProfile:
        return DeviceProfile(
            device_id=resolve_device_id(self.bend.device_hash),
            device_type=self.bend.device_type,
            device_location=self.bend.device_location,
        )


def find_config_file(explicit: Path | str | None = None) -> Path | None:
    if explicit:
        return Path(explicit)
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    for d in (*LOCAL_CONFIG_DIRS, global_config_dir()):
        candidate = d / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def expand_path(path: Path, base_dir: Path | None) -> Path:
    expanded = Path(os.path.expanduser(os.path.expandvars(str(path))))
    if not expanded.is_absolute() and base_dir is not None:
        expanded = base_dir / expanded
    return expanded


def resolve_device_id(configured: str | None) -> str:
    if configured:
        return configured
    try:
        return load_or_create_device_id(global_config_dir())
    except OSError as e:
        logger.warning("Could not persist device id (%s); using a temporary one", e)
        return generate_device_id()


def load_settings(config_file: Path | str | None = None) -> Settings:
    path = find_config_file(config_file)
    data = read_config_file(path) if path is not None else {}
    data.pop("config_file", None)

    try:
        settings = Settings(**data, config_file=path)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    base_dir = path.parent if path is not None else None
    settings.bend.session_file = expand_path(settings.bend.session_file, base_dir)
    settings.validate_required()
    logger.debug("session_file resolved to %s", settings.bend.session_file)
    return settings


def update_config_file(path: Path | None, values: dict[str, Any]) -> Path:
    """
    Write dotted keys ("bend.refresh_token") into the YAML config, creating
    the file under ~/.config/fintrack when none exists yet.
    """
    path = path or (global_config_dir() / CONFIG_FILENAME)
    data = read_config_file(path)

    for dotted, value in values.items():
        node = data
        *parents, leaf = dotted.split(".")
        for key in parents:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[leaf] = value

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    os.chmod(tmp, 0o600)
    tmp.replace(path)
    return path


KNOWN_KEYS = (
    "bend.base_url",
    "bend.origin",
    "bend.rate_limit",
    "bend.timeout",
    "bend.session_file",
    "bend.refresh_token",
    "bend.device_hash",
    "bend.device_type",
    "bend.device_location",
    "log_level",
    "log_http",
    "staging_dir",
)
DEVICE_TYPES = ("Web", "Mobile", "CLI")

_KEY_RE = re.compile(r"[A-Za-z0-9._-]+")


def validate_config_key(key: str) -> None:
    if not key:
        raise ConfigError("key cannot be empty")
    if not _KEY_RE.fullmatch(key):
        bad = next(ch for ch in key if not (ch.isascii() and (ch.isalnum() or ch in "._-")))
        raise ConfigError(f"key contains invalid character {bad!r}")
    if key not in KNOWN_KEYS:
        logger.warning("Unknown configuration key '%s'", key)


def validate_config_value(key: str, value: str) -> None:
    if key == "bend.base_url" and not value.startswith(("http://", "https://")):
        raise ConfigError("base_url must be a valid HTTP/HTTPS URL")
    if key == "bend.timeout" and not value.endswith(("s", "m", "h")):
        raise ConfigError("timeout must include unit (s, m, h)")
    if key == "bend.rate_limit" and not value.endswith(("s", "ms")):
        raise ConfigError("rate_limit must include unit (s, ms)")
    if key == "bend.device_type" and value not in DEVICE_TYPES:
        raise ConfigError(f"device_type must be one of: {', '.join(DEVICE_TYPES)}")


def get_config_value(data: dict[str, Any], key: str) -> Any:
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or node.get(part) is None:
            raise ConfigError(f"key '{key}' not found")
        node = node[part]
    return node


LOCAL_DIR_NAME = ".fintrack"
IGNORE_FILENAME = ".fintrackignore"

_LOCAL_CONFIG_TEMPLATE = """\
# fintrack configuration for this directory

bend:
  base_url: "https://bend.example.com"
  rate_limit: "1s"
  timeout: "30s"
  session_file: {session_file}

  # device_hash is generated on first use when left unset
  device_type: "Web"  # Web, Mobile or CLI
  device_location: "Default"

  # written by 'fintrack bend login'
  # refresh_token: ""

log_level: "INFO"
"""

_IGNORE_TEMPLATE = """\
# files fintrack leaves alone

# exported financial data
*.csv
*.xlsx
*.xls
*.pdf
*.json

# backups and temporary files
*.bak
*.backup
*~
*.tmp
*.temp

# OS and editor files
.DS_Store
Thumbs.db
.vscode/
.idea/
*.swp

*.log

secrets/
private/
"""


@dataclass(frozen=True)
class InitResult:
    root: Path
    config_file: Path
    ignore_file: Path
    config_created: bool
    ignore_created: bool


def init_local_config(target_dir: Path | str = ".", force: bool = False) -> InitResult:
    """
    Create <target_dir>/.fintrack/config.yaml (session file kept beside it)
    and <target_dir>/.fintrackignore. Existing files are kept unless `force`.
    """
    root = Path(target_dir).resolve()
    if not root.is_dir():
        raise ConfigError(f"directory does not exist: {root}")

    local_dir = root / LOCAL_DIR_NAME
    if local_dir.exists() and not force:
        raise ConfigError(f"{LOCAL_DIR_NAME} directory already exists in {root}. Use --force to overwrite")
    local_dir.mkdir(parents=True, exist_ok=True)

    config_file = local_dir / CONFIG_FILENAME
    config_created = force or not config_file.exists()
    if config_created:
        session_file = json.dumps(str(local_dir / "session.json"))
        config_file.write_text(_LOCAL_CONFIG_TEMPLATE.format(session_file=session_file), encoding="utf-8")

    ignore_file = root / IGNORE_FILENAME
    ignore_created = force or not ignore_file.exists()
    if ignore_created:
        ignore_file.write_text(_IGNORE_TEMPLATE, encoding="utf-8")

    return InitResult(
        root=root,
        config_file=config_file,
        ignore_file=ignore_file,
        config_created=config_created,
        ignore_created=ignore_created,
    )
