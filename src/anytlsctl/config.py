"""
Configuration management for the AnyTLS lifecycle manager.

This module holds the tool's own settings: where things live on disk, where
releases come from, how the systemd unit is shaped, and how health checks and
backups behave. It is unrelated to the persisted ServiceConfig (port,
credential, mask domain), which lives in anytlsctl.lifecycle.store.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/anytlsctl/config.yml or --config path)
3. Environment variables (ANYTLSCTL_* prefix, __ for nesting)
4. Explicit overrides (from the command line)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/anytlsctl/config.yml")
DEFAULT_ENV_PREFIX = "ANYTLSCTL_"

# =============================================================================
# Paths Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Host paths managed by the tool.

    Attributes:
        config_dir: Directory holding the binary, env file and version record.
        binary_name: File name of the installed server binary.
        env_file: File name of the persisted ServiceConfig.
        version_file: File name of the InstalledVersion record.
        unit_dir: Directory where the systemd unit is written.
        lock_file: Path of the management lock file.
    """

    config_dir: str = Field(
        default="/etc/AnyTLS",
        description="Directory holding binary, env file and version record",
    )
    binary_name: str = Field(
        default="anytls-server",
        description="File name of the installed server binary",
    )
    env_file: str = Field(
        default="anytls.env",
        description="File name of the persisted connection settings",
    )
    version_file: str = Field(
        default="version",
        description="File name of the installed-version record",
    )
    unit_dir: str = Field(
        default="/etc/systemd/system",
        description="Directory for the systemd unit file",
    )
    lock_file: str = Field(
        default="/var/lock/anytls_manager.lock",
        description="Path of the management lock file",
    )

    @property
    def config_path(self) -> Path:
        """Absolute path of the managed directory."""
        return Path(self.config_dir)

    @property
    def binary_path(self) -> Path:
        """Absolute path of the installed binary."""
        return self.config_path / self.binary_name

    @property
    def env_path(self) -> Path:
        """Absolute path of the Configuration Store file."""
        return self.config_path / self.env_file

    @property
    def version_path(self) -> Path:
        """Absolute path of the InstalledVersion record."""
        return self.config_path / self.version_file

    @property
    def lock_path(self) -> Path:
        """Absolute path of the lock file."""
        return Path(self.lock_file)


# =============================================================================
# Release Configuration
# =============================================================================


class ReleaseConfig(BaseModel):
    """Release source and download policy.

    Attributes:
        project: GitHub project in owner/name form.
        api_base: Base URL of the release-metadata API.
        web_base: Base URL for the "latest release" redirect and downloads.
        asset_template: Archive name; {version_number} has no leading 'v'.
        executable_name: Name of the executable inside the archive.
        api_timeout_seconds: Timeout for the metadata request.
        fallback_timeout_seconds: Timeout for the redirect fallback.
        download_retries: Retries after the first download attempt.
        retry_delay_seconds: Fixed delay between download attempts.
        connect_timeout_seconds: Connect timeout per download attempt.
        max_download_seconds: Total time ceiling per download attempt.
    """

    project: str = Field(default="anytls/anytls-go")
    api_base: str = Field(default="https://api.github.com")
    web_base: str = Field(default="https://github.com")
    asset_template: str = Field(
        default="anytls_{version_number}_linux_{arch}.zip",
        description="Archive name template",
    )
    executable_name: str = Field(default="anytls-server")
    api_timeout_seconds: float = Field(default=8.0, gt=0)
    fallback_timeout_seconds: float = Field(default=10.0, gt=0)
    download_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    connect_timeout_seconds: float = Field(default=6.0, gt=0)
    max_download_seconds: float = Field(default=60.0, gt=0)


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceUnitConfig(BaseModel):
    """Shape of the generated systemd unit.

    Attributes:
        name: systemd unit name.
        description: Unit description.
        listen_host: Address the server binds to.
        restart_sec: Delay before an automatic restart.
        start_limit_interval_sec: Rolling window for the restart-storm breaker.
        start_limit_burst: Maximum restarts inside that window.
        limit_nofile: File descriptor limit for the server.
        systemctl_timeout_seconds: Timeout for each systemctl invocation.
    """

    name: str = Field(default="anytls.service")
    description: str = Field(default="AnyTLS Server")
    listen_host: str = Field(default="0.0.0.0")
    restart_sec: int = Field(default=3, ge=0)
    start_limit_interval_sec: int = Field(default=60, gt=0)
    start_limit_burst: int = Field(default=10, gt=0)
    limit_nofile: int = Field(default=65535, gt=0)
    systemctl_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Require the .service suffix."""
        if not v.endswith(".service"):
            return f"{v}.service"
        return v


# =============================================================================
# Health and Backup Configuration
# =============================================================================


class HealthConfig(BaseModel):
    """Post-start verification settings.

    Attributes:
        attempts: Number of health-check attempts before giving up.
        interval_seconds: Delay between attempts.
    """

    attempts: int = Field(default=5, ge=1)
    interval_seconds: float = Field(default=1.0, ge=0)


class BackupConfig(BaseModel):
    """Binary backup retention.

    Attributes:
        retention: Number of most recent backups kept after a commit.
    """

    retention: int = Field(default=3, ge=1)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        paths: Managed host paths.
        release: Release source and download policy.
        service: systemd unit shape.
        health: Health-check retry policy.
        backups: Backup retention.
        logging: Logging configuration.
    """

    paths: PathsConfig = Field(default_factory=PathsConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    service: ServiceUnitConfig = Field(default_factory=ServiceUnitConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    backups: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ANYTLSCTL_RELEASE__DOWNLOAD_RETRIES=5.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Highest-precedence values, typically from CLI flags.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"logging": {"level": "debug"}})
        >>> config.paths.binary_path
        PosixPath('/etc/AnyTLS/anytls-server')
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
