from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from canvasflow.config import get_settings, reset_settings_cache
from canvasflow.logging import get_logger
from canvasflow.service.admission import AdmissionController, RedisQuotaLedger, StoreQuotaLedger
from canvasflow.service.content import ArticleFetcher
from canvasflow.service.engine import WorkflowEngine
from canvasflow.service.llm import GeminiClient
from canvasflow.service.recorder import RunRecorder
from canvasflow.storage.memory import MemoryStore
from canvasflow.storage.postgres import PostgresStore
from canvasflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(default_credit_balance=self.settings.default_credit_balance)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    default_credit_balance=self.settings.default_credit_balance,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Quota reservations fall back to the primary store.",
                )

        if self.cache is not None:
            ledger = RedisQuotaLedger(
                self.cache,
                self.store,
                ttl_seconds=self.settings.quota_reservation_ttl_seconds,
            )
        else:
            ledger = StoreQuotaLedger(
                self.store, ttl_seconds=self.settings.quota_reservation_ttl_seconds
            )

        self.admission = AdmissionController(
            self.store,
            ledger,
            free_limit=self.settings.free_tier_monthly_runs,
            unlimited_tiers=self.settings.unlimited_tier_set,
            credit_debit_enabled=self.settings.credit_debit_enabled,
        )
        self.ai_client = GeminiClient(
            self.settings.gemini_api_key,
            model=self.settings.gemini_model,
            api_base=self.settings.gemini_api_base,
            default_timeout_seconds=self.settings.ai_timeout_seconds,
        )
        self.fetcher = (
            ArticleFetcher(timeout_seconds=self.settings.article_fetch_timeout_seconds)
            if self.settings.article_fetch_enabled
            else None
        )
        self.recorder = RunRecorder(self.store)
        self.engine = WorkflowEngine(
            self.store,
            self.ai_client,
            self.admission,
            recorder=self.recorder,
            fetcher=self.fetcher,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            model=self.settings.gemini_model,
            ai_configured=self.ai_client.is_configured,
            redis_enabled=self.cache is not None,
            scheduler_strategy=self.settings.scheduler_strategy.value,
            article_fetch_enabled=self.fetcher is not None,
        )

    async def aclose(self) -> None:
        """Release network clients. Called on application shutdown."""
        await self.ai_client.close()
        if self.fetcher is not None:
            await self.fetcher.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
