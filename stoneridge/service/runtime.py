from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from stoneridge.config import Settings, get_settings, reset_settings_cache
from stoneridge.logging import get_logger
from stoneridge.service.auth import AuthService
from stoneridge.service.clock import Clock, SystemClock
from stoneridge.service.devices import DeviceTrustRegistry
from stoneridge.service.lockout import LockoutLedger
from stoneridge.service.negotiation import NegotiationEngine
from stoneridge.service.notifications import (
    EmailNotificationSink,
    NotificationSink,
    RecordingNotificationSink,
)
from stoneridge.service.offer_sweeper import OfferExpiryWorker
from stoneridge.service.passwords import Argon2PasswordHasher
from stoneridge.service.tokens import TokenService
from stoneridge.storage.memory import MemoryStore
from stoneridge.storage.postgres import PostgresStore

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

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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
        logger.info("runtime_store_initialized", store_type=store_type)

        self.clock = clock or SystemClock()
        if notifier is not None:
            self.notifier = notifier
        elif self.settings.test_mode:
            self.notifier = RecordingNotificationSink()
        else:
            self.notifier = EmailNotificationSink(
                smtp_host=self.settings.smtp_host,
                smtp_port=self.settings.smtp_port,
                smtp_user=self.settings.smtp_user,
                smtp_password=self.settings.smtp_password,
                smtp_use_tls=self.settings.smtp_use_tls,
                from_email=self.settings.email_from_address,
                from_name=self.settings.email_from_name,
                base_url=self.settings.app_base_url,
            )

        self.hasher = Argon2PasswordHasher()
        self.tokens = TokenService(self.settings, self.clock)
        self.ledger = LockoutLedger(self.store, self.settings, self.clock, self.notifier)
        self.devices = DeviceTrustRegistry(self.store, self.settings, self.clock, self.notifier)
        self.auth = AuthService(
            self.store,
            self.settings,
            self.clock,
            self.hasher,
            self.tokens,
            self.ledger,
            self.devices,
            self.notifier,
        )
        self.negotiation = NegotiationEngine(self.store, self.settings, self.clock)
        self.offer_sweeper = OfferExpiryWorker(
            self.negotiation,
            self.clock,
            interval=self.settings.offer_sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            notifier=type(self.notifier).__name__,
            offer_sweep_enabled=self.settings.offer_sweep_enabled,
            offer_sweep_interval_seconds=self.settings.offer_sweep_interval_seconds,
        )

    def close(self) -> None:
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
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
