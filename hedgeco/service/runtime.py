from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from hedgeco.config import Settings, get_settings
from hedgeco.logging import get_logger
from hedgeco.service.credentials import CredentialVerifier
from hedgeco.service.health import HealthAggregator
from hedgeco.service.ledger import TokenLedger
from hedgeco.service.rate_limit import RateLimiter
from hedgeco.service.session import SessionService
from hedgeco.service.tokens import TokenCodec
from hedgeco.storage.cache import CacheLayer, build_cache
from hedgeco.storage.memory import MemoryStore
from hedgeco.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns every service instance for one application lifetime.

    Construction is cheap and never touches the network; :meth:`startup` and
    :meth:`shutdown` are driven by the FastAPI lifespan.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Optional[CacheLayer] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self.cache = cache if cache is not None else build_cache(self.settings)
        self.codec = TokenCodec.from_settings(self.settings)
        self.rate_limiter = RateLimiter(self.cache)
        self._started = False
        self._wire(self._store)

    def _wire(self, store: Any) -> None:
        self.store = store
        if store is None:
            return
        self.ledger = TokenLedger(
            store, refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes
        )
        self.sessions = SessionService(
            self.codec,
            self.ledger,
            self.cache,
            store,
            reuse_revokes_all_sessions=self.settings.reuse_revokes_all_sessions,
        )
        self.credentials = CredentialVerifier(store)
        self.health = HealthAggregator(
            store,
            self.cache,
            version=self.settings.app_version,
            redis_required=self.settings.redis_required,
        )

    def _build_store(self) -> Any:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    async def startup(self) -> None:
        if self._started:
            return
        if self.store is None:
            self._wire(await asyncio.to_thread(self._build_store))
        connected = await self.cache.connect()
        if self.cache.configured and not connected:
            logger.warning(
                "redis_unavailable_at_startup",
                redis_url=_mask_url_password(self.settings.redis_url),
                message="Serving without cache until Redis recovers.",
            )
        self._started = True
        logger.info(
            "runtime_started",
            cache_configured=self.cache.configured,
            cache_state=self.cache.status()["state"],
        )

    async def shutdown(self) -> None:
        await self.cache.close()
        if self.store is not None:
            await asyncio.to_thread(self.store.close)
        self._started = False
        logger.info("runtime_stopped")


__all__ = ["Runtime"]
