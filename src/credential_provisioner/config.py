"""Configuration management for the credential provisioner.

Provides configuration loading from environment variables, .env files,
and optional configuration files with proper precedence handling. The
resulting Config is built once at startup and handed to the orchestrator.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "CRED_PROVISIONER_"


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


class Provider(str, Enum):
    """Providers a credential can be provisioned for.

    The value doubles as the provider row name in the credential store.
    """

    ANTHROPIC = "Anthropic"
    GEMINI = "Gemini"

    @classmethod
    def _missing_(cls, value: object) -> Provider | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None

    @property
    def env_name(self) -> str:
        return self.value.upper()


class FlowKind(str, Enum):
    """How a provider authorizes the user."""

    AUTHORIZATION_CODE = "authorization_code"
    POLLING_LOGIN = "polling_login"


class ProviderConfig(BaseModel):
    """Endpoints and client settings for one provider.

    For polling-login providers ``authorize_url`` is the device
    authorization endpoint and ``token_url`` is polled for completion.
    """

    client_id: str = Field(min_length=1, description="OAuth client identifier")
    authorize_url: str = Field(min_length=1, description="Authorization endpoint URL")
    token_url: str = Field(min_length=1, description="Token endpoint URL")
    api_key_url: str | None = Field(
        default=None, description="Endpoint that mints an API key from an access token"
    )
    redirect_uri: str = Field(default="", description="Registered redirect URI")
    scopes: tuple[str, ...] = Field(default=(), description="Requested scopes")
    flow: FlowKind = Field(default=FlowKind.AUTHORIZATION_CODE, description="Flow kind")
    poll_interval_seconds: float = Field(
        default=5.0, gt=0, description="Polling interval for polling-login providers"
    )
    extra_authorize_params: dict[str, str] = Field(
        default_factory=dict, description="Additional authorization URL parameters"
    )

    model_config = {"frozen": True}

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, v: Any) -> Any:
        """Accept scopes as a comma or space separated string."""
        if isinstance(v, str):
            return tuple(s for s in re.split(r"[,\s]+", v) if s)
        return v

    @field_validator("flow", mode="before")
    @classmethod
    def normalize_flow(cls, v: Any) -> Any:
        """Normalize flow kind to lowercase."""
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v

    @model_validator(mode="after")
    def validate_redirect_uri(self) -> ProviderConfig:
        """Authorization-code providers need a redirect URI."""
        if self.flow == FlowKind.AUTHORIZATION_CODE and not self.redirect_uri:
            msg = "redirect_uri is required for authorization_code providers"
            raise ValueError(msg)
        return self

    @property
    def issues_api_key(self) -> bool:
        return bool(self.api_key_url)

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class Config(BaseModel):
    """Main configuration model for the credential provisioner.

    Configuration can be loaded from:
    - Environment variables with CRED_PROVISIONER_ prefix
    - Optional .env file in project root
    - Optional configuration file passed via CLI
    """

    app_name: str = Field(default="Credential Provisioner", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # HTTP surface
    host: str = Field(default="127.0.0.1", description="Server bind host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server bind port")

    # Outbound HTTP
    http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for token and issuance requests"
    )

    # Flow lifetimes
    session_ttl_seconds: int = Field(
        default=600, ge=1, description="Lifetime of an in-flight authorization"
    )
    web_login_ttl_seconds: int = Field(
        default=300, ge=1, description="Lifetime of a pending polling login"
    )
    reaper_interval_seconds: float = Field(
        default=30.0, gt=0, description="Interval of the pending login reaper"
    )
    session_retention_seconds: int = Field(
        default=3600, ge=1, description="How long expired attempts are kept before sweeping"
    )

    # Credential storage and encryption
    credential_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet encryption key for credential storage"
    )
    credential_store_path: str | None = Field(
        default=None, description="Path for persistent credential storage"
    )

    providers: dict[Provider, ProviderConfig] = Field(
        default_factory=dict, description="Per-provider OAuth settings"
    )

    model_config = {
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Normalize environment to lowercase."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("providers", mode="before")
    @classmethod
    def normalize_provider_names(cls, v: Any) -> Any:
        """Accept provider names case-insensitively."""
        if isinstance(v, dict):
            return {
                Provider(k) if isinstance(k, str) else k: value for k, value in v.items()
            }
        return v

    @model_validator(mode="after")
    def validate_credential_store(self) -> Config:
        """Validate credential store configuration."""
        if self.credential_store_path and not self.credential_encryption_key:
            msg = "credential_encryption_key is required when credential_store_path is set"
            raise ValueError(msg)
        return self


_ENV_MAPPING = {
    "app_name": "APP_NAME",
    "log_level": "LOG_LEVEL",
    "environment": "ENVIRONMENT",
    "host": "HOST",
    "port": "PORT",
    "http_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
    "session_ttl_seconds": "SESSION_TTL_SECONDS",
    "web_login_ttl_seconds": "WEB_LOGIN_TTL_SECONDS",
    "reaper_interval_seconds": "REAPER_INTERVAL_SECONDS",
    "session_retention_seconds": "SESSION_RETENTION_SECONDS",
    "credential_encryption_key": "CREDENTIAL_ENCRYPTION_KEY",
    "credential_store_path": "CREDENTIAL_STORE_PATH",
}

_INT_FIELDS = {
    "port",
    "session_ttl_seconds",
    "web_login_ttl_seconds",
    "session_retention_seconds",
}
_FLOAT_FIELDS = {"http_timeout_seconds", "reaper_interval_seconds"}

_PROVIDER_FIELDS = (
    "client_id",
    "authorize_url",
    "token_url",
    "api_key_url",
    "redirect_uri",
    "scopes",
    "flow",
    "poll_interval_seconds",
)


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


def _load_env_config() -> dict[str, Any]:
    """Load top-level settings from environment variables."""
    config: dict[str, Any] = {}
    for field_name, env_suffix in _ENV_MAPPING.items():
        value: Any = _get_env_value(env_suffix)
        if value is None:
            continue
        if field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                value = int(value)
        elif field_name in _FLOAT_FIELDS:
            with contextlib.suppress(ValueError):
                value = float(value)
        config[field_name] = value

    return config


def _load_env_providers() -> dict[str, dict[str, Any]]:
    """Load provider settings from CRED_PROVISIONER_<PROVIDER>_<FIELD>."""
    providers: dict[str, dict[str, Any]] = {}
    for provider in Provider:
        values: dict[str, Any] = {}
        for field_name in _PROVIDER_FIELDS:
            value = _get_env_value(f"{provider.env_name}_{field_name}")
            if value is not None:
                values[field_name] = value
        if values:
            providers[provider.value] = values
    return providers


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _merge_providers(
    base: dict[str, Any], overrides: dict[str, dict[str, Any]]
) -> dict[str, Any]:
    """Layer provider field overrides on top of file-provided providers."""
    merged: dict[str, Any] = {}
    for name, values in base.items():
        merged[str(Provider(name).value)] = dict(values)
    for name, values in overrides.items():
        merged.setdefault(name, {}).update(values)
    return merged


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key == "credential_encryption_key" and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    try:
        config_dict: dict[str, Any] = {}
        if path:
            logger.debug("Loading configuration from file: %s", path)
            config_dict.update(_load_file_config(path))

        for key, value in _load_env_config().items():
            config_dict[key] = value
            logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

        env_providers = _load_env_providers()
        if env_providers or "providers" in config_dict:
            config_dict["providers"] = _merge_providers(
                config_dict.get("providers") or {}, env_providers
            )

        if cli_args:
            for key, value in cli_args.items():
                if value is not None:
                    config_dict[key] = value
                    logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

        return Config(**config_dict)
    except ConfigError:
        raise
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
