from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from medisecure.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected at startup
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth, session and authorization core."""

    shared_fs_root: str = env_field("/srv/medisecure", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows in-memory ephemeral state.",
    )
    api_base_url: str = env_field("http://localhost:8080", "API_BASE_URL")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins."
    )
    state_cleanup_interval_seconds: int = env_field(300, "STATE_CLEANUP_INTERVAL_SECONDS")

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("medisecure", "JWT_ISSUER")
    jwt_audience: str = env_field("medisecure-clients", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(
        8 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Fixed horizon for session tokens; there is no refresh or revocation.",
    )
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")

    # Single sign-on
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")
    sso_pending_ttl_minutes: int = env_field(10, "SSO_PENDING_TTL_MINUTES")
    sso_default_role: str = env_field("patient", "SSO_DEFAULT_ROLE")

    # Multi-factor authentication
    totp_issuer: str = env_field("MediSecure", "TOTP_ISSUER")
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("MediSecure", "WEBAUTHN_RP_NAME")
    webauthn_origin: str = env_field("http://localhost:8080", "WEBAUTHN_ORIGIN")
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Authorization and tenancy
    ownership_fail_open: bool = env_field(
        False,
        "OWNERSHIP_FAIL_OPEN",
        description="Let resource types without an ownership rule pass (logged on every use).",
    )
    default_organization_id: str = env_field("org-1", "DEFAULT_ORGANIZATION_ID")
    default_organization_name: str = env_field(
        "MediSecure General Hospital", "DEFAULT_ORGANIZATION_NAME"
    )
    default_organization_plan: str = env_field("basic", "DEFAULT_ORGANIZATION_PLAN")

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

    @property
    def oauth_redirect_uri(self) -> str:
        return self.google_callback_url or f"{self.api_base_url.rstrip('/')}/v1/auth/google/callback"

    @field_validator("sso_default_role")
    @classmethod
    def _validate_sso_role(cls, value: str) -> str:
        from medisecure.storage.models import Role

        return Role(value).value

    @field_validator("default_organization_plan")
    @classmethod
    def _validate_plan(cls, value: str) -> str:
        from medisecure.storage.models import Plan

        return Plan(value).value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                logger.error("jwt_secret_too_short", length=len(value))
                raise RuntimeError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/medisecure"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Signing key unavailable; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


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
