"""
Configuration management for planrunner.

WHAT THIS FILE DOES:
-------------------
Loads configuration from YAML files with sensible defaults. Everything has
a default, so planrunner runs with no config file at all.

CONFIG FILE LOCATION:
--------------------
Default search order:
1. ~/.planrunner/config.yaml
2. ./planrunner.yaml
3. ./planrunner.yml

CONFIG FORMAT:
-------------
```yaml
engine:
  project_id: "default"
  audit_capacity: 1000
  backup_creates: true
  validate_before_execute: true

storage:
  directory: "~/.planrunner/plans"

validator:
  accept_all: false
  satisfied:
    - "Git repository is clean"

alerts:
  terminal: true

logging:
  level: "INFO"
```
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class EngineConfig:
    """Configuration for the execution engine."""
    project_id: str = "default"
    audit_capacity: int = 1000
    backup_creates: bool = True
    validate_before_execute: bool = True


@dataclass
class StorageConfig:
    """Where persisted plan sessions live."""
    directory: str = "~/.planrunner/plans"

    @property
    def directory_path(self) -> Path:
        """Get directory path, expanding ~ if present."""
        return Path(self.directory).expanduser()


@dataclass
class ValidatorConfig:
    """Pre-condition validator settings."""
    accept_all: bool = False
    satisfied: list[str] = field(default_factory=list)


@dataclass
class AlertConfig:
    """Configuration for alerts and notifications."""
    terminal: bool = True


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Config:
    """
    Complete configuration for planrunner.

    Loaded from a YAML file or created with defaults.
    """
    engine: EngineConfig = field(default_factory=EngineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def get_default_config() -> Config:
    """Get the default configuration."""
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

DEFAULT_PATHS = [
    Path.home() / ".planrunner" / "config.yaml",
    Path("./planrunner.yaml"),
    Path("./planrunner.yml"),
]


def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "engine" in data:
        engine_data = data["engine"] or {}
        config.engine = EngineConfig(
            project_id=str(engine_data.get("project_id", "default")),
            audit_capacity=int(engine_data.get("audit_capacity", 1000)),
            backup_creates=engine_data.get("backup_creates", True),
            validate_before_execute=engine_data.get("validate_before_execute", True),
        )

    if "storage" in data:
        storage_data = data["storage"] or {}
        config.storage = StorageConfig(
            directory=storage_data.get("directory", "~/.planrunner/plans"),
        )

    if "validator" in data:
        validator_data = data["validator"] or {}
        config.validator = ValidatorConfig(
            accept_all=validator_data.get("accept_all", False),
            satisfied=list(validator_data.get("satisfied") or []),
        )

    if "alerts" in data:
        alerts_data = data["alerts"] or {}
        config.alerts = AlertConfig(terminal=alerts_data.get("terminal", True))

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(level=str(logging_data.get("level", "INFO")).upper())

    return config


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries the default locations
              and falls back to defaults.

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    active = get_config_path()
    if active:
        return load_config_from_file(active)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """Save configuration to a YAML file."""
    data = {
        "engine": {
            "project_id": config.engine.project_id,
            "audit_capacity": config.engine.audit_capacity,
            "backup_creates": config.engine.backup_creates,
            "validate_before_execute": config.engine.validate_before_execute,
        },
        "storage": {
            "directory": config.storage.directory,
        },
        "validator": {
            "accept_all": config.validator.accept_all,
            "satisfied": list(config.validator.satisfied),
        },
        "alerts": {
            "terminal": config.alerts.terminal,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Get the path to the active config file, if any exists.

    Returns:
        Path to config file or None if using defaults
    """
    for path in DEFAULT_PATHS:
        if path.exists():
            return path

    return None
