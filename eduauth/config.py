from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, model_validator

from eduauth.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Account roles recognised by the platform."""

    STUDENT = "STUDENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


# Roles a user may pick for themselves at sign-up (form or OAuth)
SELF_SERVICE_ROLES = frozenset({Role.STUDENT.value, Role.INSTRUCTOR.value})


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field read from the environment variable ``env``."""
    return Field(default, json_schema_extra={"env": env}, **kwargs)


class Settings(BaseModel):
    database_url: str = env_field(
        "postgresql://localhost:5432/eduauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/eduauth", "SHARED_FS_ROOT")

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(
        5.0, "REDIS_SOCKET_TIMEOUT_SECONDS"
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("eduauth", "JWT_ISSUER")
    jwt_audience: str = env_field("eduauth-clients", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS", ge=1)
    max_sessions_per_user: int = env_field(
        10,
        "MAX_SESSIONS_PER_USER",
        ge=1,
        description="Active sessions kept per account; the oldest are revoked first",
    )

    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    registration_otp_ttl_minutes: int = env_field(10, "REGISTRATION_OTP_TTL_MINUTES")
    password_reset_otp_ttl_minutes: int = env_field(
        15, "PASSWORD_RESET_OTP_TTL_MINUTES"
    )
    verification_link_ttl_minutes: int = env_field(30, "VERIFICATION_LINK_TTL_MINUTES")
    auth_code_ttl_seconds: int = env_field(300, "AUTH_CODE_TTL_SECONDS")
    user_cache_ttl_seconds: int = env_field(900, "USER_CACHE_TTL_SECONDS")

    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    oauth_redirect_base_url: str = env_field(
        "http://localhost:8000/api/auth/oauth", "OAUTH_REDIRECT_BASE_URL"
    )
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Educademy", "EMAIL_FROM_NAME")

    outbound_timeout_seconds: float = env_field(
        10.0,
        "OUTBOUND_TIMEOUT_SECONDS",
        description="Upper bound for email, OAuth provider and other side calls",
    )
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_UPLOAD_BYTES")
    cors_allow_origins: str = env_field("http://localhost:5173", "CORS_ALLOW_ORIGINS")
    trusted_proxy_hops: int = env_field(
        0,
        "TRUSTED_PROXY_HOPS",
        ge=0,
        description="Reverse proxies in front of the app whose X-Forwarded-For entries are trusted",
    )

    model_config = ConfigDict(extra="ignore")

    @staticmethod
    def env_name(name: str, field) -> str:
        extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
        return extra.get("env") or name.upper()

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment layered over ``env_file``."""
        layered = {**dotenv_values(env_file), **os.environ}
        values = {}
        for name, field in cls.model_fields.items():
            raw = layered.get(cls.env_name(name, field))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_days * 24 * 60 * 60

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @model_validator(mode="after")
    def _resolve_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root) / ".jwt_secret")
        elif len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH and not self.test_mode:
            raise ValueError(f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters")
        return self


MIN_JWT_SECRET_LENGTH = 32


def _load_or_create_secret(path: Path) -> str:
    """Return the signing secret stored at ``path``, creating it on first use.

    The file is written with mode 0600 through a temp file and a rename, so
    every worker sharing the directory converges on one secret and tokens
    survive restarts.
    """
    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_unreadable", path=str(path), error=str(exc))
        else:
            if len(stored) >= MIN_JWT_SECRET_LENGTH:
                return stored
            logger.warning("jwt_secret_too_short", path=str(path))

    path.parent.mkdir(parents=True, exist_ok=True)
    secret = secrets.token_urlsafe(64)
    fd, staging = tempfile.mkstemp(dir=str(path.parent), prefix=".jwt_", suffix=".partial")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, path)
    except OSError as exc:
        Path(staging).unlink(missing_ok=True)
        raise RuntimeError(
            f"cannot persist a JWT secret under {path.parent}; set JWT_SECRET instead"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return secret


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings_cache() -> None:
    global _settings
    _settings = None
