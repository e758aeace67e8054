"""
Configuration management for depsync.

Settings are layered: dataclass defaults, then the first config file found,
then DEPSYNC_* environment variables. CLI flags override all of them.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console

from .error_handling import log_validation_error

console = Console(stderr=True)


@dataclass
class SyncConfig:
    """Core synchronization configuration."""

    table_path: str = "DEPS.json"
    root: str = "."
    parallelism: int = 8
    retry_attempts: int = 2
    fetch_timeout_seconds: int = 900
    state_dir_name: str = ".depsync"


@dataclass
class NetworkConfig:
    """HTTP settings used by the archive backend."""

    user_agent: str = "depsync/1.0.0"
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    follow_redirects: bool = True


@dataclass
class ToolsConfig:
    """External clients the backends shell out to."""

    git_binary: str = "git"
    cipd_binary: str = "cipd"
    git_shallow: bool = False


@dataclass
class LoggingConfig:
    """Logging and error handling configuration."""

    log_level: str = "WARNING"
    enable_file_logging: bool = False
    log_file_path: Optional[str] = None
    enable_sensitive_data_masking: bool = True


@dataclass
class DepsyncConfig:
    """Main configuration containing all subsections."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SECTIONS = ("sync", "network", "tools", "logging")

_global_config: Optional[DepsyncConfig] = None


def validate_config_values(config: DepsyncConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Args:
        config: Configuration to validate

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    if config.sync.parallelism <= 0:
        errors.append("sync.parallelism must be positive")
    if config.sync.retry_attempts < 0:
        errors.append("sync.retry_attempts must be non-negative")
    if config.sync.fetch_timeout_seconds <= 0:
        errors.append("sync.fetch_timeout_seconds must be positive")
    if not config.sync.state_dir_name or "/" in config.sync.state_dir_name:
        errors.append("sync.state_dir_name must be a single path component")

    if config.network.connect_timeout <= 0:
        errors.append("network.connect_timeout must be positive")
    if config.network.read_timeout <= 0:
        errors.append("network.read_timeout must be positive")

    if config.logging.log_level.upper() not in (
        "DEBUG",
        "INFO",
        "WARNING",
        "ERROR",
        "CRITICAL",
    ):
        errors.append(f"logging.log_level is not a valid level: {config.logging.log_level}")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load config from a JSON or YAML file.

    Returns None when the file is missing or cannot be parsed.
    """
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                data = yaml.safe_load(f)
            elif config_path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                return None
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(
            f"⚠️  Error loading config from {config_path}: {e}", style="yellow"
        )
        return None

    if not isinstance(data, dict):
        console.print(
            f"⚠️  Config file {config_path} must contain a mapping", style="yellow"
        )
        return None
    return data


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / ".depsync.json",
        Path.cwd() / ".depsync.yaml",
        Path.cwd() / ".depsync.yml",
        Path.home() / ".config" / "depsync" / "config.json",
        Path.home() / ".config" / "depsync" / "config.yaml",
    ]

    for location in locations:
        if location.exists():
            return location

    return None


def load_environment_overrides(config: DepsyncConfig) -> None:
    """Load DEPSYNC_* environment variable overrides."""

    def get_env_bool(key: str, default: bool = False) -> bool:
        value = os.environ.get(key, "").lower()
        return value in ["true", "1", "yes", "on"] if value else default

    def get_env_int(key: str) -> Optional[int]:
        try:
            return int(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid integer value for {key}, using default", style="yellow")
            return None

    def get_env_float(key: str) -> Optional[float]:
        try:
            return float(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid float value for {key}, using default", style="yellow")
            return None

    if table := os.environ.get("DEPSYNC_TABLE"):
        config.sync.table_path = table
    if root := os.environ.get("DEPSYNC_ROOT"):
        config.sync.root = root
    if (parallelism := get_env_int("DEPSYNC_PARALLELISM")) is not None:
        config.sync.parallelism = parallelism
    if (retry_attempts := get_env_int("DEPSYNC_RETRY_ATTEMPTS")) is not None:
        config.sync.retry_attempts = retry_attempts
    if (timeout := get_env_int("DEPSYNC_FETCH_TIMEOUT")) is not None:
        config.sync.fetch_timeout_seconds = timeout

    if user_agent := os.environ.get("DEPSYNC_USER_AGENT"):
        config.network.user_agent = user_agent
    if connect_timeout := get_env_float("DEPSYNC_CONNECT_TIMEOUT"):
        config.network.connect_timeout = connect_timeout
    if read_timeout := get_env_float("DEPSYNC_READ_TIMEOUT"):
        config.network.read_timeout = read_timeout

    if git_binary := os.environ.get("DEPSYNC_GIT"):
        config.tools.git_binary = git_binary
    if cipd_binary := os.environ.get("DEPSYNC_CIPD"):
        config.tools.cipd_binary = cipd_binary
    config.tools.git_shallow = get_env_bool("DEPSYNC_GIT_SHALLOW", config.tools.git_shallow)

    if log_level := os.environ.get("DEPSYNC_LOG_LEVEL"):
        config.logging.log_level = log_level.upper()
    if log_file := os.environ.get("DEPSYNC_LOG_FILE"):
        config.logging.log_file_path = log_file
        config.logging.enable_file_logging = True


def apply_config_section(
    config: Any, section_data: Dict[str, Any], section_name: str
) -> None:
    """Apply configuration from dictionary to config section."""
    for key, value in section_data.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            console.print(
                f"⚠️  Unknown config key in {section_name}: {key}", style="yellow"
            )


def apply_config_data(config: DepsyncConfig, file_config: Dict[str, Any]) -> None:
    """Apply every known section of a loaded config mapping."""
    for section in _SECTIONS:
        section_data = file_config.get(section)
        if isinstance(section_data, dict):
            apply_config_section(getattr(config, section), section_data, section)


def load_config() -> DepsyncConfig:
    """Load configuration from file and environment."""
    global _global_config

    if _global_config is not None:
        return _global_config

    config = DepsyncConfig()

    config_file = find_config_file()
    if config_file:
        file_config = load_config_file(config_file)
        if file_config:
            apply_config_data(config, file_config)

    load_environment_overrides(config)

    validation_errors = validate_config_values(config)
    if validation_errors:
        console.print("⚠️  Configuration validation errors:", style="red")
        for error in validation_errors:
            console.print(f"  • {error}", style="red")
            log_validation_error(
                error, "cli_config", "load_config", setting=error.split(" ", 1)[0]
            )
        console.print("Using default values for invalid settings.", style="yellow")
        _restore_invalid_defaults(config)

    _global_config = config
    return config


def _restore_invalid_defaults(config: DepsyncConfig) -> None:
    defaults = DepsyncConfig()
    if config.sync.parallelism <= 0:
        config.sync.parallelism = defaults.sync.parallelism
    if config.sync.retry_attempts < 0:
        config.sync.retry_attempts = defaults.sync.retry_attempts
    if config.sync.fetch_timeout_seconds <= 0:
        config.sync.fetch_timeout_seconds = defaults.sync.fetch_timeout_seconds
    if not config.sync.state_dir_name or "/" in config.sync.state_dir_name:
        config.sync.state_dir_name = defaults.sync.state_dir_name
    if config.network.connect_timeout <= 0:
        config.network.connect_timeout = defaults.network.connect_timeout
    if config.network.read_timeout <= 0:
        config.network.read_timeout = defaults.network.read_timeout
    if config.logging.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        config.logging.log_level = defaults.logging.log_level


def get_config() -> DepsyncConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _global_config
    _global_config = None


def create_sample_config() -> str:
    """Generate a sample configuration file body."""
    return json.dumps(DepsyncConfig().to_dict(), indent=2)
