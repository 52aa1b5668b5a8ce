from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from portcullis.config import Settings, get_settings
from portcullis.logging import get_logger
from portcullis.service.api_keys import KeyAuthenticator, KeyVault, UsageRecorder
from portcullis.service.cors import OriginPolicyBuilder
from portcullis.service.csp import ContentPolicyBuilder
from portcullis.service.errors import ConfigurationError
from portcullis.service.handshake import HandshakeAuthenticator
from portcullis.service.hashing import SecretHasher
from portcullis.service.presets import cors_config_for, csp_config_for
from portcullis.service.principals import PrincipalDirectory
from portcullis.service.rate_limit import RateLimiter
from portcullis.service.tokens import TokenVerifier
from portcullis.storage.memory import MemoryStore
from portcullis.storage.postgres import PostgresStore
from portcullis.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379 for log output."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Application context: every gateway component, built once from settings.

    Security policies are compiled here, so a bad configuration raises
    ConfigurationError before the app serves anything. Instances live on
    ``app.state.runtime``; there is no process-wide singleton.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        cache=None,
        connect_cache: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        if not s.jwt_secret:
            raise ConfigurationError(
                "JWT_SECRET is required outside TEST_MODE", setting="jwt_secret"
            )

        # Policies first: they are pure and fail fast on misconfiguration
        self.origin_policy = OriginPolicyBuilder.build(cors_config_for(s))
        self.content_policy = ContentPolicyBuilder.compile(csp_config_for(s))

        if store is None:
            try:
                store = (
                    MemoryStore(fs_root=s.shared_fs_root)
                    if s.use_memory_store
                    else PostgresStore(s.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if s.use_memory_store else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        self.cache = cache
        if self.cache is None and connect_cache:
            self.cache = self._connect_cache()

        self.hasher = SecretHasher.from_settings(s)
        self.usage = UsageRecorder(self.store)
        self.vault = KeyVault(
            self.store,
            self.hasher,
            key_prefix=s.api_key_prefix,
            max_keys_per_principal=s.api_key_max_per_principal,
        )
        self.authenticator = KeyAuthenticator(
            self.store, self.hasher, key_prefix=s.api_key_prefix, usage=self.usage
        )
        self.limiter = RateLimiter(self.cache)
        self.verifier = TokenVerifier.from_settings(s)
        self.principals = PrincipalDirectory(self.store, self.verifier)
        self.handshake = HandshakeAuthenticator(self.principals)

        logger.info(
            "runtime_initialized",
            environment=s.environment.value,
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            cors_enabled=self.origin_policy.enabled,
            csp_header=self.content_policy.header_name if self.content_policy.enabled else None,
        )

    def _connect_cache(self):
        s = self.settings
        redis_error: Exception | None = None
        if s.redis_url:
            try:
                # Sync client in test mode avoids binding a pool to one event loop
                cache = SyncRedisCache(s.redis_url) if s.test_mode else RedisCache(s.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not s.test_mode and not s.allow_redis_fallback_dev:
            raise ConfigurationError(
                "Redis is required for rate limiting; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process counters.",
                setting="redis_url",
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(s.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if s.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        await self.usage.drain()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
