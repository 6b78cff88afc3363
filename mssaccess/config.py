from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mssaccess.logging import get_logger

logger = get_logger(__name__)


class OrgType(str, Enum):
    """Organization kinds recognised by the portal."""

    PROVIDER = "mss_provider"
    CUSTOMER = "customer"


CUSTOMER_ROLES: tuple[str, ...] = ("admin", "report_viewer", "request_user", "basic_user")
PROVIDER_ROLES: tuple[str, ...] = (
    "super_admin",
    "technician",
    "security_analyst",
    "account_manager",
)

# Provider roles that may hold technician grants against customer tenants
TECHNICIAN_ROLES: tuple[str, ...] = ("technician", "security_analyst", "super_admin")

# Provider roles allowed to grant, update, revoke and hand off technician access
GRANT_ADMIN_ROLES: tuple[str, ...] = ("super_admin", "account_manager")

ROLES_BY_ORG_TYPE: dict[str, tuple[str, ...]] = {
    OrgType.PROVIDER.value: PROVIDER_ROLES,
    OrgType.CUSTOMER.value: CUSTOMER_ROLES,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the identity and access control core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/mssaccess", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_state_dir: str | None = env_field(
        None,
        "MEMORY_STATE_DIR",
        description="Directory for the in-memory store JSON snapshot; unset disables persistence",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits running without Redis",
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Caller-level timeout applied to database and cache calls",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("mss-platform", "JWT_ISSUER")
    jwt_audience: str = env_field("mss-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    clock_skew_seconds: int = env_field(
        30,
        "CLOCK_SKEW_SECONDS",
        ge=0,
        description="Leeway applied to iat/exp checks when verifying tokens",
    )

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_symbols: bool = env_field(True, "PASSWORD_REQUIRE_SYMBOLS")
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS", ge=0)
    password_history_size: int = env_field(
        5,
        "PASSWORD_HISTORY_SIZE",
        ge=0,
        description="Number of previous password hashes a new password may not match",
    )

    # Lockout and reset
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1)
    reset_max_attempts_per_hour: int = env_field(3, "RESET_MAX_ATTEMPTS_PER_HOUR", ge=1)

    # MFA
    mfa_required_roles: list[str] = env_field(
        ["super_admin", "admin", "security_analyst", "technician"],
        "MFA_REQUIRED_ROLES",
        description="Comma separated roles that may not hold a long-lived session without MFA",
    )
    mfa_issuer: str = env_field("MSS Platform", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    mfa_totp_window: int = env_field(1, "MFA_TOTP_WINDOW", ge=0, le=5)
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", ge=1)

    # Audit
    audit_retention_days: int = env_field(2555, "AUDIT_RETENTION_DAYS", ge=1)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mfa_required_roles", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        if not value or not value.strip():
            env_name = info.field_name.upper()
            logger.error("signing_secret_missing", setting=env_name)
            raise ValueError(f"{env_name} must be configured")
        return value

    @model_validator(mode="after")
    def _check_token_policy(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError(
                "REFRESH_TOKEN_TTL_MINUTES must exceed ACCESS_TOKEN_TTL_MINUTES"
            )
        if not self.mfa_encryption_key:
            logger.warning(
                "mfa_encryption_key_fallback",
                message="MFA_ENCRYPTION_KEY unset; deriving MFA secret keys from JWT_SECRET",
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so the next call re-reads the environment."""

    global _settings_cache
    _settings_cache = None
