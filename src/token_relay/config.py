# src/token_relay/config.py
"""
Pipeline configuration.

All values can be overridden via environment variables (read after loading
an optional .env file, never overriding variables that are already set):
    TOKEN_RELAY_BASE_URL - Base URL for every request
    TOKEN_RELAY_TIMEOUT - Default request timeout in seconds (default: 10)
    TOKEN_RELAY_RETRY_MAX_ATTEMPTS - Sends per request on 5xx (default: 3)
    TOKEN_RELAY_RETRY_BASE_DELAY - First backoff in seconds (default: 1.0)
    TOKEN_RELAY_EXPIRY_THRESHOLD_MINUTES - Renew this early (default: 10)
    TOKEN_RELAY_REFRESH_INTERVAL - Proactive check period in seconds (default: 300)
    TOKEN_RELAY_REFRESH_PATH - Renewal endpoint (default: /api/auth/refresh)
    TOKEN_RELAY_REFRESH_TRANSPORT - "header" or "cookie" (default: header)
    TOKEN_RELAY_PUBLIC_PATHS - Comma-separated paths sent without credentials
    TOKEN_RELAY_WITHDRAWAL_ALLOWED_PATHS - Comma-separated paths allowed in withdrawal mode
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import httpx
import yaml
from dotenv import load_dotenv

lib_logger = logging.getLogger("token_relay")

ENV_PREFIX = "TOKEN_RELAY_"

REFRESH_TRANSPORTS = ("header", "cookie")


class ConfigLoadError(Exception):
    """Raised when configuration fails to load."""
    pass


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def _default_headers() -> Dict[str, str]:
    return {"Content-Type": "application/json", "Accept": "application/json"}


@dataclass
class ApiConfig:
    base_url: str = ""
    timeout: float = 10.0
    headers: Dict[str, str] = field(default_factory=_default_headers)

    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_jitter: float = 0.3

    expiry_threshold_minutes: float = 10.0
    expiry_cache_ttl: float = 1.0
    proactive_refresh_interval: float = 300.0

    refresh_path: str = "/api/auth/refresh"
    refresh_transport: str = "header"
    refresh_header_name: str = "X-Refresh-Token"
    refresh_cookie_name: str = "refresh_token"
    # Falls back to `timeout` when unset
    renewal_timeout: Optional[float] = None

    public_paths: Tuple[str, ...] = (
        "/api/auth/login",
        "/api/auth/signup",
        "/api/auth/refresh",
    )
    withdrawal_allowed_paths: Tuple[str, ...] = (
        "/api/user/withdraw",
        "/api/auth/logout",
    )

    def __post_init__(self):
        self.public_paths = tuple(self.public_paths)
        self.withdrawal_allowed_paths = tuple(self.withdrawal_allowed_paths)
        self.validate()

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ConfigValidationError("timeout must be positive")
        if self.retry_max_attempts < 1:
            raise ConfigValidationError("retry_max_attempts must be at least 1")
        if self.retry_base_delay < 0:
            raise ConfigValidationError("retry_base_delay cannot be negative")
        if self.proactive_refresh_interval <= 0:
            raise ConfigValidationError("proactive_refresh_interval must be positive")
        if self.refresh_transport not in REFRESH_TRANSPORTS:
            raise ConfigValidationError(
                f"refresh_transport must be one of {REFRESH_TRANSPORTS}, "
                f"got '{self.refresh_transport}'"
            )
        if not self.refresh_path.startswith("/"):
            raise ConfigValidationError("refresh_path must start with '/'")

    @property
    def effective_renewal_timeout(self) -> float:
        return self.renewal_timeout if self.renewal_timeout is not None else self.timeout

    def httpx_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout)

    # --- loaders ----------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ApiConfig":
        """Build a config from a plain mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigValidationError(f"Unknown configuration keys: {', '.join(unknown)}")
        values = dict(data)
        for key in ("public_paths", "withdrawal_allowed_paths"):
            if isinstance(values.get(key), str):
                values[key] = _split_list(values[key])
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigValidationError(str(e)) from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ApiConfig":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigLoadError(f"Failed to load config from '{path}': {e}") from e
        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config file '{path}' must contain a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> "ApiConfig":
        """
        Build a config from TOKEN_RELAY_* variables.

        When `env` is None, the process environment is used after loading
        `dotenv_path` (or a .env in the working directory) without overriding
        existing values. Invalid numbers fall back to the default with a warning.
        """
        if env is None:
            if dotenv_path is not None:
                load_dotenv(dotenv_path, override=False)
            else:
                load_dotenv(override=False)
            env = os.environ

        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.name in ("public_paths", "withdrawal_allowed_paths"):
                values[f.name] = _split_list(raw)
            elif f.name == "headers":
                lib_logger.warning(
                    f"{ENV_PREFIX}HEADERS is not supported; set headers in code or YAML."
                )
            elif f.name == "retry_max_attempts":
                values[f.name] = _get_env_int(f"{ENV_PREFIX}{f.name.upper()}", raw, f.default)
            elif f.name in ("base_url", "refresh_path", "refresh_transport",
                            "refresh_header_name", "refresh_cookie_name"):
                values[f.name] = raw.strip()
            else:
                values[f.name] = _get_env_float(
                    f"{ENV_PREFIX}{f.name.upper()}", raw, f.default
                )
        return cls(**values)


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _get_env_float(key: str, value: str, default: Optional[float]) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default


def _get_env_int(key: str, value: str, default: int) -> int:
    try:
        return int(value)
    except ValueError:
        lib_logger.warning(f"Invalid value for {key}: {value}. Using default: {default}")
        return default
