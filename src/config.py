"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


class ConfigurationError(Exception):
    """Raised when configuration or credentials are missing or invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/earnlytics.db"


@dataclass
class EmailConfig:
    """Email provider (Resend) settings."""

    api_key: str = ""
    api_url: str = "https://api.resend.com/emails"
    from_address: str = "alerts@earnlytics.com"
    from_name: str = "Earnlytics"
    timeout_seconds: int = 10


@dataclass
class AppLinkConfig:
    """Public application settings used in email links."""

    url: str = "https://earnlytics.com"


@dataclass
class ScheduleConfig:
    """Schedule configuration."""

    timezone: str = "Asia/Shanghai"


@dataclass
class AlertsConfig:
    """Rule evaluation settings."""

    earnings_match: str = "exact"
    symbol_delay_seconds: float = 0.5


@dataclass
class DeliveryConfig:
    """Email queue settings."""

    batch_size: int = 50
    max_retries: int = 3
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    app: AppLinkConfig = field(default_factory=AppLinkConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)

    def require_email_credentials(self) -> None:
        """Raise if the email provider cannot be used."""
        if not self.email.api_key:
            raise ConfigurationError("RESEND_API_KEY not configured")


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_timezone(timezone: str) -> None:
    """Validate timezone string."""
    if not timezone:
        raise ConfigurationError("Timezone cannot be empty")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {timezone}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigurationError("Database path is required")

    path = Path(db_path)
    parent = path.parent
    if parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigurationError(f"Database path not writable: {parent}")

    schedule = config_dict.get("schedule") or {}
    _validate_timezone(schedule.get("timezone", ScheduleConfig.timezone))

    alerts = config_dict.get("alerts") or {}
    earnings_match = alerts.get("earnings_match", "exact")
    if earnings_match not in ("exact", "within"):
        raise ConfigurationError(
            f"alerts.earnings_match must be 'exact' or 'within', got {earnings_match!r}"
        )

    delivery = config_dict.get("delivery") or {}
    if _as_int(delivery, "max_retries", 3) < 1:
        raise ConfigurationError("delivery.max_retries must be at least 1")
    if _as_int(delivery, "batch_size", 50) < 1:
        raise ConfigurationError("delivery.batch_size must be at least 1")


def _as_int(section: dict[str, Any], key: str, default: int) -> int:
    try:
        return int(section.get(key, default))
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"delivery.{key} must be an integer, got {section.get(key)!r}"
        )


def _section(config_dict: dict[str, Any], name: str, cls: type) -> Any:
    """Build a section dataclass, rejecting unknown keys."""
    values = config_dict.get(name) or {}
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid '{name}' section: {e}")


def config_from_dict(raw_config: Optional[dict[str, Any]]) -> AppConfig:
    """
    Build an AppConfig from a raw mapping.

    Args:
        raw_config: Parsed YAML mapping (may be None or empty)

    Returns:
        AppConfig instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config_dict = _substitute_env_vars(raw_config or {})
    config_dict["database"] = config_dict.get("database") or {}
    config_dict["database"].setdefault("path", DatabaseConfig.path)

    _validate_config(config_dict)

    return AppConfig(
        database=_section(config_dict, "database", DatabaseConfig),
        email=_section(config_dict, "email", EmailConfig),
        app=_section(config_dict, "app", AppLinkConfig),
        schedule=_section(config_dict, "schedule", ScheduleConfig),
        alerts=_section(config_dict, "alerts", AlertsConfig),
        delivery=_section(config_dict, "delivery", DeliveryConfig),
        advanced=_section(config_dict, "advanced", AdvancedConfig),
    )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigurationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        try:
            raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    return config_from_dict(raw_config)
