from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from citizenauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected at process start."""


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration such as ``15m``, ``2h`` or ``7d``."""

    match = _DURATION_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid duration '{value}', expected <int><s|m|h|d>")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/citizen_security", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic behaviors for the test suite.",
    )
    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lock_duration: str = env_field("15m", "LOCK_DURATION")
    # Tokens
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("citizen-security-api", "JWT_ISSUER")
    jwt_audience: str = env_field("citizen-security-client", "JWT_AUDIENCE")
    access_token_ttl: str = env_field("2h", "ACCESS_TOKEN_TTL")
    refresh_token_ttl: str = env_field("7d", "REFRESH_TOKEN_TTL")
    password_change_token_ttl: str = env_field(
        "15m",
        "PASSWORD_CHANGE_TOKEN_TTL",
        description="Lifetime of the restricted token handed out when a password change is forced",
    )
    # Password policy
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH", ge=1)
    max_password_length: int = env_field(128, "MAX_PASSWORD_LENGTH", ge=1)
    password_require_complexity: bool = env_field(True, "PASSWORD_REQUIRE_COMPLEXITY")
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE", ge=0)
    password_reset_ttl: str = env_field("1h", "PASSWORD_RESET_TTL")
    # Accounts
    default_role_slug: str = env_field(
        "usuario_basico",
        "DEFAULT_ROLE_SLUG",
        description="Role granted to self-registered accounts",
    )
    operation_timeout_seconds: float = env_field(
        10.0,
        "OPERATION_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for a single login/refresh/password transaction",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "lock_duration",
        "access_token_ttl",
        "refresh_token_ttl",
        "password_change_token_ttl",
        "password_reset_ttl",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def lock_timedelta(self) -> timedelta:
        return parse_duration(self.lock_duration)

    @property
    def access_token_timedelta(self) -> timedelta:
        return parse_duration(self.access_token_ttl)

    @property
    def refresh_token_timedelta(self) -> timedelta:
        return parse_duration(self.refresh_token_ttl)

    @property
    def password_change_token_timedelta(self) -> timedelta:
        return parse_duration(self.password_change_token_ttl)

    @property
    def password_reset_timedelta(self) -> timedelta:
        return parse_duration(self.password_reset_ttl)

    def require_secrets(self) -> None:
        """Fail fast when the token signing secrets are unusable.

        Both secrets must be present and must differ, otherwise a refresh
        token would verify as an access token.
        """

        missing = [
            env
            for env, value in (
                ("JWT_ACCESS_SECRET", self.jwt_access_secret),
                ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
            )
            if not value
        ]
        if missing:
            logger.error("signing_secret_missing", missing=missing)
            raise ConfigurationError(
                "Missing token signing secret(s): {}".format(", ".join(missing))
            )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            logger.error("signing_secrets_identical")
            raise ConfigurationError(
                "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be distinct"
            )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
