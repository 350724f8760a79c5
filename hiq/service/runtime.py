from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from hiq.config import get_settings, reset_settings_cache
from hiq.logging import get_logger
from hiq.service.access_requests import AccessRequestService
from hiq.service.email import EmailService
from hiq.service.identity import CredentialVerifier, IdentityProvider
from hiq.service.identity_memory import MemoryIdentityProvider
from hiq.service.interview_access import InterviewAccessGate
from hiq.service.interviews import InterviewService
from hiq.service.registration_tokens import RegistrationTokenStore
from hiq.service.roles import RoleResolver
from hiq.service.session_tokens import SessionTokenStore
from hiq.service.sessions import SessionLifecycleManager
from hiq.storage.documents import DocumentStore
from hiq.storage.memory import MemoryStore
from hiq.storage.models import utcnow
from hiq.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.firebase_app = None
        store: DocumentStore
        provider: IdentityProvider
        try:
            if self.settings.use_memory_store:
                store = MemoryStore()
                provider = MemoryIdentityProvider()
            else:
                from hiq.service.firebase import (
                    FirebaseIdentityProvider,
                    firestore_client,
                    initialize_firebase,
                )
                from hiq.storage.firestore import FirestoreStore

                self.firebase_app = initialize_firebase(self.settings)
                store = FirestoreStore(firestore_client(self.firebase_app))
                provider = FirebaseIdentityProvider(self.firebase_app)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "firestore",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "firestore",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.store = store
        self.provider = provider

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
                    message="Rate limits are tracked in-process only.",
                )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            resend_api_key=self.settings.resend_api_key,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.verifier = CredentialVerifier(self.provider)
        self.roles = RoleResolver(self.provider, self.store, self.settings)
        self.registration_tokens = RegistrationTokenStore(self.store, self.settings)
        self.session_tokens = SessionTokenStore(self.store, self.settings)
        self.sessions = SessionLifecycleManager(
            self.session_tokens,
            self.registration_tokens,
            self.store,
            self.email,
            self.settings,
        )
        self.gate = InterviewAccessGate(self.store, self.settings)
        self.interviews = InterviewService(self.store, self.gate, self.email)
        self.access_requests = AccessRequestService(
            self.store,
            self.registration_tokens,
            self.roles,
            self.provider,
            self.email,
            self.settings,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            admin_email_configured=bool(self.settings.admin_email),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if self.firebase_app is not None:
            from hiq.service.firebase import close_firebase

            close_firebase(self.firebase_app)
            self.firebase_app = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit, shared through Redis when it is available.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    return (allowed, remaining, reset_seconds)
