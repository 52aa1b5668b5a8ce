from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from portcullis.logging import get_logger
from portcullis.service.errors import ConfigurationError

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; each selects a security preset."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


DEFAULT_CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
DEFAULT_CORS_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-API-Key",
    "X-Request-ID",
]
DEFAULT_CORS_EXPOSE_HEADERS = [
    "RateLimit-Limit",
    "RateLimit-Remaining",
    "RateLimit-Reset",
    "X-Request-ID",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    """Accept comma separated strings or JSON arrays for list settings."""
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Gateway settings, read once at startup."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/portcullis", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/portcullis", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; uses the sync Redis client.",
    )

    # Token verification
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("portcullis", "JWT_ISSUER")
    jwt_audience: str = env_field("portcullis-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(120, "JWT_CLOCK_SKEW_SECONDS", ge=0)

    # API keys
    api_key_header: str = env_field("X-API-Key", "API_KEY_HEADER")
    api_key_prefix: str = env_field(
        "pk",
        "API_KEY_PREFIX",
        description="Literal placed before '_' in issued keys",
        pattern=r"^[a-z0-9]{1,7}$",
    )
    api_key_max_per_principal: int = env_field(10, "API_KEY_MAX_PER_PRINCIPAL", ge=1)
    key_cleanup_interval_seconds: int = env_field(
        3600, "KEY_CLEANUP_INTERVAL_SECONDS", ge=1
    )

    # argon2id cost factors
    hash_time_cost: int = env_field(3, "HASH_TIME_COST", ge=1)
    hash_memory_cost: int = env_field(65536, "HASH_MEMORY_COST", ge=8)
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM", ge=1)

    # CORS
    cors_enabled: bool = env_field(True, "CORS_ENABLED")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: List[str] = env_field(
        list(DEFAULT_CORS_METHODS), "CORS_ALLOW_METHODS"
    )
    cors_allow_headers: List[str] = env_field(
        list(DEFAULT_CORS_HEADERS), "CORS_ALLOW_HEADERS"
    )
    cors_expose_headers: List[str] = env_field(
        list(DEFAULT_CORS_EXPOSE_HEADERS), "CORS_EXPOSE_HEADERS"
    )
    cors_max_age: int = env_field(86400, "CORS_MAX_AGE", ge=0)

    # CSP; None means "use the environment preset"
    csp_enabled: Optional[bool] = env_field(None, "CSP_ENABLED")
    csp_report_only: Optional[bool] = env_field(None, "CSP_REPORT_ONLY")
    csp_report_uri: Optional[str] = env_field(None, "CSP_REPORT_URI")
    csp_directives: Dict[str, Union[bool, List[str]]] = env_field({}, "CSP_DIRECTIVES")
    csp_upgrade_insecure_requests: Optional[bool] = env_field(
        None, "CSP_UPGRADE_INSECURE_REQUESTS"
    )
    csp_block_all_mixed_content: bool = env_field(False, "CSP_BLOCK_ALL_MIXED_CONTENT")
    csp_use_nonce: bool = env_field(True, "CSP_USE_NONCE")

    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

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
        try:
            return cls(**merged)
        except ValidationError as exc:
            fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
            raise ConfigurationError(
                f"invalid settings: {', '.join(fields)}", setting=fields[0] if fields else None
            ) from exc

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment in (Environment.DEVELOPMENT, Environment.TEST)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "cors_expose_headers",
        mode="before",
    )
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("csp_directives", mode="before")
    @classmethod
    def _parse_directives(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("CSP_DIRECTIVES must be a JSON object") from exc
            value = parsed
        if not isinstance(value, dict):
            raise ValueError("CSP_DIRECTIVES must be a JSON object")
        directives: Dict[str, Any] = {}
        for name, sources in value.items():
            if isinstance(sources, str):
                sources = [sources]
            elif not isinstance(sources, (bool, list)):
                raise ValueError(f"CSP directive {name!r} must be a source list or a boolean")
            directives[str(name)] = sources
        return directives

    @field_validator("csp_report_uri", mode="before")
    @classmethod
    def _blank_report_uri(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ephemeral_test_secret(self) -> "Settings":
        # Outside test mode a missing secret is rejected when the runtime is built
        if not self.jwt_secret and self.test_mode:
            self.jwt_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_secret_ephemeral", reason="TEST_MODE without JWT_SECRET")
        return self


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
