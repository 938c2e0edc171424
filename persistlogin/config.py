from __future__ import annotations

import hashlib
import os
import secrets
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from persistlogin.logging import get_logger

logger = get_logger(__name__)

_SAMESITE_VALUES = {"lax", "strict", "none"}
MAX_DIGEST_SIZE = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the persistent login engine and its host app."""

    # Persistent login options
    automatic: bool = env_field(
        True,
        "PERSIST_AUTOMATIC",
        description="Persist every credential login without an explicit remember-me request",
    )
    use_fingerprint: bool = env_field(
        True,
        "PERSIST_USE_FINGERPRINT",
        description="Bind grants to a hash of client address and user agent",
    )
    persistent_id: str = env_field(
        "persistent",
        "PERSIST_SESSION_FLAG",
        description="Session flag set when the identity came from the persistent cookie",
    )
    cookie_expires: int = env_field(
        7, "PERSIST_COOKIE_EXPIRES", description="Cookie and grant lifetime in days"
    )
    cookie_name: str = env_field("persist", "PERSIST_COOKIE_NAME")
    roles: set[str] = env_field(
        set(),
        "PERSIST_ROLES",
        description="Roles allowed to persist logins; empty means unrestricted",
    )
    # Secure=false matches the historical cookie; flip it for TLS-only deployments.
    cookie_secure: bool = env_field(False, "PERSIST_COOKIE_SECURE")
    cookie_samesite: Optional[str] = env_field(None, "PERSIST_COOKIE_SAMESITE")
    hash_algorithm: str = env_field("sha256", "PERSIST_HASH_ALGORITHM")
    persist_secret: str = env_field(None, "PERSIST_SECRET", validate_default=True)

    # Host application
    database_url: str = env_field(
        "postgresql://localhost:5432/persistlogin", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/persistlogin", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_ttl_minutes: int = env_field(60, "SESSION_TTL_MINUTES")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )

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

    @field_validator("roles", mode="before")
    @classmethod
    def _parse_roles(cls, value: Any) -> set[str]:
        if value is None:
            return set()
        if isinstance(value, str):
            return {part.strip() for part in value.split(",") if part.strip()}
        return {str(part).strip() for part in value if str(part).strip()}

    @field_validator("cookie_expires")
    @classmethod
    def _validate_cookie_expires(cls, value: int) -> int:
        if value < 1:
            raise ValueError("cookie_expires must be at least one day")
        return value

    @field_validator("hash_algorithm")
    @classmethod
    def _validate_hash_algorithm(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in hashlib.algorithms_available or normalized.startswith("shake"):
            raise ValueError(f"unsupported hash algorithm: {value}")
        # series and token hex digests are stored in 64-character columns
        if hashlib.new(normalized).digest_size > MAX_DIGEST_SIZE:
            raise ValueError(
                f"hash algorithm {value} produces digests longer than {MAX_DIGEST_SIZE} bytes"
            )
        return normalized

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        normalized = value.lower()
        if normalized not in _SAMESITE_VALUES:
            raise ValueError("cookie_samesite must be lax, strict or none")
        return normalized

    @field_validator("persist_secret", mode="before")
    @classmethod
    def _ensure_persist_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued cookies stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/persistlogin"))
        secret_path = fs_root / ".persist_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "persist_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "persist_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".persist_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            logger.error(
                "persist_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist the login secret; set PERSIST_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def cookie_max_age(self) -> int:
        """Cookie lifetime in seconds; also the grant TTL used by pruning."""
        return self.cookie_expires * 24 * 60 * 60


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
