from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from commonroom.config import get_settings, reset_settings_cache
from commonroom.logging import get_logger
from commonroom.service.access import ChannelAccess
from commonroom.service.ai_gateway import AIGateway
from commonroom.service.ai_worker import AIReplyWorker
from commonroom.service.auth import AuthService
from commonroom.service.study_log import StudyLogPipeline
from commonroom.storage.memory import MemoryStore
from commonroom.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.auth = AuthService(self.store, self.settings)
        self.access = ChannelAccess(self.auth, self.store)
        self.gateway = AIGateway.from_settings(self.settings)
        self.reply_worker = AIReplyWorker(
            self.gateway,
            self.store,
            concurrency=self.settings.ai_worker_concurrency,
            max_queue_size=self.settings.ai_queue_max_size,
        )
        self.study_log = StudyLogPipeline(
            self.store,
            self.gateway,
            self.reply_worker,
            tag_timeout=self.settings.ai_tag_timeout_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            ai_enabled=self.gateway.available,
            ai_model=self.settings.ai_model if self.gateway.available else None,
        )

    @property
    def ai_enabled(self) -> bool:
        return self.gateway.available


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
    """Rebuild the runtime from the current environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()
        runtime = Runtime()
        return runtime
