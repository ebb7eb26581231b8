from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from idbadge.config import Settings, StoreBackend, get_settings, reset_settings_cache
from idbadge.logging import get_logger
from idbadge.service.accounts import AccountService
from idbadge.service.badges import BadgeSigner
from idbadge.service.credentials import CredentialVerifier
from idbadge.service.directory import IdentityDirectory
from idbadge.service.invitations import InvitationService
from idbadge.service.limited_actions import LimitedActions, policies_from_settings
from idbadge.service.login import LoginService
from idbadge.service.mfa import MfaService
from idbadge.service.notifications import (
    EmailSender,
    HttpSmsSender,
    LoggingSmsSender,
    Notifier,
    SmsSender,
    SmtpEmailSender,
)
from idbadge.service.registration import RegistrationService
from idbadge.service.token_actions import TokenActionStore
from idbadge.storage.common import Store, utc_now
from idbadge.storage.memory import MemoryStore
from idbadge.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_store(settings: Settings) -> Store:
    if settings.store_backend == StoreBackend.REDIS:
        store = RedisStore(settings.redis_url, key_prefix=settings.redis_key_prefix)
        store.verify_connection()
        return store
    return MemoryStore(fs_root=settings.shared_fs_root)


def _build_sms_sender(settings: Settings) -> SmsSender:
    if settings.sms_gateway_url:
        return HttpSmsSender(settings.sms_gateway_url, token=settings.sms_gateway_token)
    return LoggingSmsSender()


class Runtime:
    """Holds the store, collaborators and engines for the FastAPI app.

    Everything is constructed here once; the engines themselves keep no
    per-request state. Tests pass a store, senders and clock explicitly.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = store or _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=self.settings.store_backend.value,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.clock = clock

        self.email_sender = email_sender or SmtpEmailSender(self.settings)
        self.sms_sender = sms_sender or _build_sms_sender(self.settings)
        self.notifier = Notifier(
            self.email_sender,
            self.sms_sender,
            base_url=self.settings.app_base_url,
            product_name=self.settings.email_from_name,
        )

        # The signing secret is acquired once, here, and injected
        self.signer = BadgeSigner(
            self.settings.badge_secret,
            issuer=self.settings.badge_issuer,
            audience=self.settings.badge_audience,
            clock=clock,
        )
        self.credentials = CredentialVerifier(
            self.settings.mfa_encryption_key or self.settings.badge_secret,
            issuer=self.settings.badge_issuer,
            clock=clock,
        )
        self.directory = IdentityDirectory(self.store)
        self.tokens = TokenActionStore(self.store, clock=clock)
        self.limited = LimitedActions(policies_from_settings(self.settings), store=self.store, clock=clock)
        self.mfa = MfaService(
            self.store, self.credentials, self.limited, self.notifier, self.settings, clock=clock
        )
        self.login = LoginService(
            self.store,
            self.directory,
            self.credentials,
            self.mfa,
            self.limited,
            self.notifier,
            self.tokens,
            self.signer,
            self.settings,
            clock=clock,
        )
        self.registration = RegistrationService(
            self.store,
            self.directory,
            self.credentials,
            self.limited,
            self.notifier,
            self.tokens,
            self.login,
            self.settings,
            clock=clock,
        )
        self.invitations = InvitationService(
            self.store,
            self.directory,
            self.limited,
            self.notifier,
            self.tokens,
            self.settings,
            clock=clock,
        )
        self.accounts = AccountService(self.store, self.directory, self.login, clock=clock)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            email_configured=getattr(self.email_sender, "is_configured", True),
            sms_gateway=bool(self.settings.sms_gateway_url),
        )

    async def close(self) -> None:
        await self.store.close()


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


def set_runtime(instance: Runtime) -> Runtime:
    """Install a pre-built runtime, e.g. one wired with test doubles."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                logger.warning("runtime_close_skipped", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
