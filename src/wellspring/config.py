"""Wellspring configuration management.

Loads configuration from .wellspring/config.yaml with sensible defaults.
All settings can be overridden via environment variables (WELLSPRING_*).

Config locations (in priority order):
1. Explicit path passed to load_config()
2. .wellspring/config.yaml (project-local)
3. ~/.wellspring/config.yaml (user-global)
4. Built-in defaults

Thread Safety:
    Uses threading.Lock for thread-safe lazy initialization.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass
class StoreConfig:
    """Where fingerprints, values, and workspaces are persisted."""

    path: str = ".wellspring"
    """Store root, relative to the working directory."""


@dataclass
class ExecutionConfig:
    """Scheduler settings."""

    max_workers: int = 1
    """Targets run concurrently within a wave (1 = sequential)."""


@dataclass
class FilesConfig:
    """File-target tracking."""

    trust_mtime: bool = True
    """Skip rehashing files whose mtime and size are unchanged."""


@dataclass
class WorkspaceConfig:
    """Failure workspace capture."""

    capture: bool = True
    """Snapshot the environment of failing targets."""

    directory: str = "workspaces"
    """Snapshot directory, relative to the store root."""


@dataclass
class LoggingConfig:
    """Persistent session logs."""

    persist: bool = True
    """Write per-session logs under <store>/logs/."""

    level: str | None = None
    """Console log level override (e.g. DEBUG)."""


@dataclass
class WellspringConfig:
    """Root configuration for Wellspring."""

    store: StoreConfig = field(default_factory=StoreConfig)
    """Store location."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    """Scheduler configuration."""

    files: FilesConfig = field(default_factory=FilesConfig)
    """File tracking configuration."""

    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    """Workspace capture configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    """Logging configuration."""

    debug: bool = False
    """Enable debug logging by default."""

    @property
    def store_path(self) -> Path:
        return Path(self.store.path)

    @property
    def workspace_path(self) -> Path:
        return self.store_path / self.workspace.directory


# Global config instance (lazy-loaded, thread-safe)
_config: WellspringConfig | None = None
_config_lock = threading.Lock()

_SECTIONS = ("store", "execution", "files", "workspace", "logging")
_TOP_LEVEL = ("debug",)


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dict with another dict."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit() or (value.startswith("-") and value[1:].isdigit()):
        return int(value)
    return value


def _apply_env_overrides(config_dict: dict) -> dict:
    """Apply environment variable overrides.

    Environment variables follow the pattern WELLSPRING_SECTION_KEY.

    Examples:
        WELLSPRING_EXECUTION_MAX_WORKERS=4
        WELLSPRING_FILES_TRUST_MTIME=false
        WELLSPRING_STORE_PATH=/tmp/wellspring
    """
    prefix = "WELLSPRING_"

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        path_str = key[len(prefix):].lower()

        if path_str in _TOP_LEVEL:
            config_dict[path_str] = _coerce(value)
            continue

        for section in _SECTIONS:
            if path_str.startswith(section + "_"):
                option = path_str[len(section) + 1:]
                section_dict = config_dict.get(section)
                if isinstance(section_dict, dict) and option in section_dict:
                    section_dict[option] = _coerce(value)
                else:
                    logger.debug("Ignoring unknown setting %s", key)
                break

    return config_dict


def _defaults() -> dict[str, Any]:
    return {
        "store": {"path": ".wellspring"},
        "execution": {"max_workers": 1},
        "files": {"trust_mtime": True},
        "workspace": {"capture": True, "directory": "workspaces"},
        "logging": {"persist": True, "level": None},
        "debug": False,
    }


def _dict_to_config(data: dict) -> WellspringConfig:
    """Convert a dict to WellspringConfig."""
    return WellspringConfig(
        store=StoreConfig(**data.get("store", {})),
        execution=ExecutionConfig(**data.get("execution", {})),
        files=FilesConfig(**data.get("files", {})),
        workspace=WorkspaceConfig(**data.get("workspace", {})),
        logging=LoggingConfig(**data.get("logging", {})),
        debug=bool(data.get("debug", False)),
    )


def load_config(path: str | Path | None = None) -> WellspringConfig:
    """Load configuration from file with defaults and env overrides.

    Priority (highest to lowest):
    1. Environment variables (WELLSPRING_*)
    2. Explicit path if provided
    3. .wellspring/config.yaml (project-local)
    4. ~/.wellspring/config.yaml (user-global)
    5. Built-in defaults

    Args:
        path: Optional explicit config file path.

    Returns:
        Merged WellspringConfig instance.
    """
    global _config

    config_dict = _defaults()

    config_paths = []
    if path:
        config_paths.append(Path(path))
    config_paths.extend([
        Path(".wellspring/config.yaml"),
        Path.home() / ".wellspring" / "config.yaml",
    ])

    for config_path in config_paths:
        if config_path.exists():
            try:
                with open(config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Skipping invalid config file %s: %s", config_path, e)
                continue
            if isinstance(file_config, dict):
                _deep_update(config_dict, file_config)
                break

    config_dict = _apply_env_overrides(config_dict)

    _config = _dict_to_config(config_dict)
    return _config


def get_config() -> WellspringConfig:
    """Get the current configuration, loading if needed.

    Thread-safe with double-check locking.
    """
    global _config

    # Fast path: already initialized
    if _config is not None:
        return _config

    with _config_lock:
        if _config is None:
            _config = load_config()
        return _config


def reset_config() -> None:
    """Reset the global config (useful for testing)."""
    global _config
    with _config_lock:
        _config = None


def save_default_config(path: str | Path = ".wellspring/config.yaml") -> Path:
    """Save the default configuration to a file.

    Args:
        path: Where to save the config.

    Returns:
        Path to the saved config file.
    """
    config_content = """# Wellspring Configuration

# Fingerprint store (records, stored values, workspaces, logs)
store:
  path: ".wellspring"

# Scheduler
execution:
  # Targets run concurrently within a wave; 1 runs sequentially
  max_workers: 1

# File targets
files:
  # Skip rehashing files whose mtime and size are unchanged
  trust_mtime: true

# Failure workspaces
workspace:
  # Snapshot the environment of failing targets for post-mortem debugging
  capture: true
  # Relative to the store path
  directory: "workspaces"

# Logging
logging:
  # Keep per-session logs under <store>/logs/
  persist: true
  # Console level override (DEBUG, INFO, WARNING, ...)
  level: null

debug: false
"""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config_content)
    return path
