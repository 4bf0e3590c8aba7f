"""Settings loading for virtdev: defaults, YAML settings file, environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from virtdev.constants import (
    CONTAINER_PREFIX,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CPUS,
    DEFAULT_CREATE_RETRIES,
    DEFAULT_DATA_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_BASE_PORT,
    DEFAULT_STOP_TIMEOUT,
    DOCKER_IMAGE_NAME,
)
from virtdev.exceptions import ValidationError
from virtdev.utils import ensure_directory, get_env, log, parse_int, parse_size_string

# Environment overrides, applied after the settings file.
_ENV_OVERRIDES = {
    "VIRTDEV_CACHE_DIR": "cache_dir",
    "VIRTDEV_MEMORY": "memory_mb",
    "VIRTDEV_CPUS": "cpus",
    "VIRTDEV_DATA_SIZE": "data_size",
    "VIRTDEV_SSH_BASE_PORT": "ssh_base_port",
}


def default_cache_dir() -> Path:
    xdg = get_env("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "virtdev"


@dataclass
class Settings:
    cache_dir: Path
    container_prefix: str = CONTAINER_PREFIX
    image_name: str = DOCKER_IMAGE_NAME
    ssh_base_port: int = DEFAULT_SSH_BASE_PORT
    memory_mb: int = DEFAULT_MEMORY_MB
    cpus: int = DEFAULT_CPUS
    data_size: str = DEFAULT_DATA_SIZE
    stop_timeout: int = DEFAULT_STOP_TIMEOUT
    create_retries: int = DEFAULT_CREATE_RETRIES


def _read_settings_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ValidationError(f"Settings file {config_path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ValidationError(f"Cannot read settings file {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(
            f"Settings file {config_path} must contain a mapping, got {type(data).__name__}"
        )
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        log("WARN", f"Ignoring unknown settings in {config_path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def _coerce(raw: Dict[str, Any]) -> Settings:
    cache_dir = raw.get("cache_dir")
    settings = Settings(
        cache_dir=Path(os.path.expanduser(str(cache_dir))) if cache_dir else default_cache_dir()
    )
    if "container_prefix" in raw:
        prefix = str(raw["container_prefix"]).strip()
        if not prefix:
            raise ValidationError("container_prefix must not be empty")
        settings.container_prefix = prefix
    if "image_name" in raw:
        settings.image_name = str(raw["image_name"]).strip() or DOCKER_IMAGE_NAME
    if "ssh_base_port" in raw:
        settings.ssh_base_port = parse_int("ssh_base_port", raw["ssh_base_port"], min_val=1, max_val=65535)
    if "memory_mb" in raw:
        settings.memory_mb = parse_int("memory_mb", raw["memory_mb"], min_val=256)
    if "cpus" in raw:
        settings.cpus = parse_int("cpus", raw["cpus"], min_val=1)
    if "data_size" in raw:
        data_size = str(raw["data_size"]).strip()
        parse_size_string(data_size)
        settings.data_size = data_size
    if "stop_timeout" in raw:
        settings.stop_timeout = parse_int("stop_timeout", raw["stop_timeout"], min_val=0)
    if "create_retries" in raw:
        settings.create_retries = parse_int("create_retries", raw["create_retries"], min_val=1)
    return settings


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Resolve settings from defaults, the YAML settings file and the environment."""
    if config_path is None:
        config_path = Path(get_env("VIRTDEV_CONFIG") or DEFAULT_CONFIG_PATH)
    config_path = Path(os.path.expanduser(str(config_path)))

    raw = _read_settings_file(config_path)
    for env_name, key in _ENV_OVERRIDES.items():
        value = get_env(env_name)
        if value is not None and value.strip():
            raw[key] = value.strip()
    return _coerce(raw)


def get_cache_directory(settings: Settings) -> Path:
    """Return the cache directory, creating it if needed."""
    ensure_directory(settings.cache_dir)
    return settings.cache_dir
