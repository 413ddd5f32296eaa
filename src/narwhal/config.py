"""
Configuration loading for narwhal services.

Sources are merged lowest precedence first:

1. Defaults declared on the pydantic models below
2. Base YAML file (``configs/{service}.yaml``, ``CONFIG_PATH`` or an explicit path)
3. Environment-specific YAML file (``configs/{service}.{ENVIRONMENT}.yaml``)
4. Environment variables prefixed with the upper-cased service name,
   e.g. ``LIBRARY_AUTH_JWT_SECRET`` -> ``auth.jwt_secret``
"""

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

# Secrets that ship in sample configs and must never reach production
WELL_KNOWN_SECRETS = {
    "secret",
    "changeme",
    "change-me",
    "your-secret-key",
    "dev-secret",
    "development-secret",
}

PRODUCTION_ENVIRONMENTS = {"production", "prod"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_duration(value: Any) -> timedelta:
    """
    Parse a duration value.

    Accepts a timedelta, a number of seconds, or a string made of
    number+unit parts such as ``"15m"``, ``"24h"``, ``"7d"`` or ``"1h30m"``.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            return timedelta(seconds=int(text))
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ValueError(f"invalid duration: {value!r}")
        seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
        return timedelta(seconds=seconds)
    raise ValueError(f"invalid duration: {value!r}")


class ServiceSettings(BaseModel):
    name: str = "library"
    environment: str = "dev"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in PRODUCTION_ENVIRONMENTS


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    grpc_port: int = 9090
    http_port: int = 8080
    shutdown_grace: float = 20.0
    enable_reflection: bool = True
    max_message_mb: int = 16


class DatabaseSettings(BaseModel):
    path: str = "data/narwhal.db"


class AuthSettings(BaseModel):
    jwt_secret: str = ""
    refresh_secret: str = ""
    issuer: str = "narwhal-library-service"
    access_token_duration: timedelta = timedelta(minutes=15)
    refresh_token_duration: timedelta = timedelta(days=7)
    rbac_type: str = "builtin"
    rbac_model_path: str = "configs/rbac_model.conf"
    rbac_policy_path: str = "configs/rbac_policy.csv"

    @field_validator("access_token_duration", "refresh_token_duration", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> timedelta:
        return parse_duration(value)


class PaginationSettings(BaseModel):
    cursor_encryption_key: str = ""
    max_page_size: int = 200
    default_page_size: int = 50
    cursor_expiration: timedelta = timedelta(hours=24)

    @field_validator("cursor_expiration", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> timedelta:
        return parse_duration(value)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = False


class Settings(BaseModel):
    """Complete service configuration."""

    service: ServiceSettings = Field(default_factory=ServiceSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def validate_settings(self) -> List[str]:
        """
        Validate cross-field rules.

        Returns:
            List of problems; empty when the configuration is usable
        """
        errors = []

        for name, port in (("server.grpc_port", self.server.grpc_port),
                           ("server.http_port", self.server.http_port)):
            if not (0 <= port <= 65535):
                errors.append(f"invalid {name}: {port}")

        if self.auth.access_token_duration < timedelta(minutes=1):
            errors.append("auth.access_token_duration must be at least 1 minute")
        if self.auth.refresh_token_duration < self.auth.access_token_duration:
            errors.append("auth.refresh_token_duration must not be shorter than the access token duration")

        if self.auth.rbac_type.lower() not in ("builtin", "file", "casbin"):
            errors.append(f"invalid auth.rbac_type: {self.auth.rbac_type}")

        if self.pagination.default_page_size <= 0:
            errors.append("pagination.default_page_size must be positive")
        if self.pagination.max_page_size < self.pagination.default_page_size:
            errors.append("pagination.max_page_size must be >= pagination.default_page_size")
        if self.pagination.cursor_expiration <= timedelta(0):
            errors.append("pagination.cursor_expiration must be positive")

        if self.service.is_production:
            if not self.auth.jwt_secret:
                errors.append("auth.jwt_secret is required in production")
            elif self.auth.jwt_secret.lower() in WELL_KNOWN_SECRETS:
                errors.append("auth.jwt_secret must not be a well-known value in production")
            if self.auth.refresh_secret and self.auth.refresh_secret.lower() in WELL_KNOWN_SECRETS:
                errors.append("auth.refresh_secret must not be a well-known value in production")
            if not self.pagination.cursor_encryption_key:
                errors.append("pagination.cursor_encryption_key is required in production")

        valid_levels = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if self.logging.level.upper() not in valid_levels:
            errors.append(f"invalid logging.level: {self.logging.level}")

        return errors


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _env_overrides(service_name: str, environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``{SERVICE}_{SECTION}_{KEY}`` variables into a nested dict."""
    prefix = service_name.upper() + "_"
    sections = set(Settings.model_fields)
    overrides: Dict[str, Any] = {}

    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        rest = name[len(prefix):].lower()
        section, _, key = rest.partition("_")
        if section not in sections or not key:
            continue
        overrides.setdefault(section, {})[key] = value

    return overrides


def load_settings(
    service_name: str = "library",
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    config_dir: str = "configs",
) -> Settings:
    """
    Load and validate settings for a service.

    Args:
        service_name: Service name; selects config files and the env prefix
        config_path: Explicit base config file (overrides CONFIG_PATH)
        environ: Environment mapping (defaults to os.environ)
        config_dir: Directory holding per-service YAML files

    Returns:
        Validated Settings

    Raises:
        ConfigError: If a file cannot be parsed or validation fails
    """
    environ = os.environ if environ is None else environ
    environment = environ.get("ENVIRONMENT") or environ.get("ENV") or "dev"

    data: Dict[str, Any] = {"service": {"name": service_name, "environment": environment}}

    base = config_path or environ.get("CONFIG_PATH")
    candidates = [Path(base)] if base else [Path(config_dir) / f"{service_name}.yaml"]
    candidates.append(Path(config_dir) / f"{service_name}.{environment}.yaml")

    for path in candidates:
        if path.exists():
            data = _deep_merge(data, _load_yaml(path))
            logger.debug(f"Loaded config file: {path}")
        elif config_path and path == Path(config_path):
            raise ConfigError(f"Config file not found: {path}")

    data = _deep_merge(data, _env_overrides(service_name, environ))

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    problems = settings.validate_settings()
    if problems:
        raise ConfigError("Configuration validation failed: " + "; ".join(problems))

    return settings
