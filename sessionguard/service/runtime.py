from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import AuditSinkKind, Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.audit import (
    AuditSink,
    JsonlAuditSink,
    LoggingAuditSink,
    RedisAuditSink,
)
from sessionguard.service.codec import HS256Codec
from sessionguard.service.tokens import TokenLifecycleManager
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
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


def build_audit_sink(settings: Settings) -> AuditSink:
    if settings.audit_sink == AuditSinkKind.JSONL:
        return JsonlAuditSink(settings.resolved_audit_dir())
    if settings.audit_sink == AuditSinkKind.REDIS:
        if not settings.redis_url:
            raise RuntimeError("AUDIT_SINK=redis requires REDIS_URL")
        return RedisAuditSink(settings.redis_url)
    return LoggingAuditSink()


class Runtime:
    """Holds the assembled collaborators for the HTTP app and CLI."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.audit = build_audit_sink(self.settings)
        logger.info(
            "runtime_audit_sink_initialized",
            audit_sink=self.settings.audit_sink.value,
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        self.codec = HS256Codec(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.tokens = TokenLifecycleManager(
            self.store,
            self.codec,
            self.settings,
            self.audit,
        )

    async def close(self) -> None:
        if isinstance(self.audit, RedisAuditSink):
            await self.audit.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
