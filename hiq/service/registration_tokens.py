from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.errors import (
    NotFoundError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TooManyAttemptsError,
)
from hiq.storage.documents import REGISTRATION_TOKENS, Document, DocumentStore
from hiq.storage.models import RegistrationToken, as_utc, utcnow

# 32 random bytes rendered as 64 hex characters
TOKEN_BYTES = 32


class RegistrationTokenStore:
    """One-time tokens binding an approved email to a registration window.

    Tokens are consumed at most once. ``mark_used`` is a compare-and-set on the
    ``used`` flag so two registrations racing on the same token cannot both win.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=settings.registration_token_ttl_hours)
        self.max_attempts = settings.registration_max_attempts
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, email: str) -> str:
        token_id = secrets.token_hex(TOKEN_BYTES)
        now = self._now()
        self.store.set(
            REGISTRATION_TOKENS,
            token_id,
            {
                "email": email.strip().lower(),
                "used": False,
                "created_at": now,
                "expires_at": now + self.ttl,
                "attempts": 0,
                "last_attempt_at": None,
            },
        )
        self.logger.info(
            "registration_token_issued",
            email=email,
            expires_at=(now + self.ttl).isoformat(),
        )
        return token_id

    def get(self, token_id: str) -> Optional[RegistrationToken]:
        doc = self.store.get(REGISTRATION_TOKENS, token_id)
        return RegistrationToken.from_doc(token_id, doc) if doc is not None else None

    def validate(self, token_id: str) -> str:
        """Return the bound email, or raise the first failing check.

        Order: existence, used flag, expiry, attempt count.
        """
        token = self.get(token_id) if token_id else None
        if token is None:
            raise NotFoundError("invalid registration token")
        if token.used:
            raise TokenAlreadyUsedError("registration token has already been used")
        if self._now() >= token.expires_at:
            raise TokenExpiredError("registration token has expired")
        if token.attempts >= self.max_attempts:
            raise TooManyAttemptsError("too many attempts for this registration token")
        return token.email

    def record_failed_attempt(self, token_id: str) -> None:
        now = self._now()

        def _increment(current: Optional[Document]) -> Optional[Document]:
            if current is None:
                return None
            return {
                "attempts": int(current.get("attempts", 0) or 0) + 1,
                "last_attempt_at": now,
            }

        updated = self.store.transact(REGISTRATION_TOKENS, token_id, _increment)
        if updated is not None:
            self.logger.warning(
                "registration_token_failed_attempt", attempts=updated.get("attempts")
            )

    def mark_used(self, token_id: str, consumer_id: str) -> None:
        now = self._now()

        def _consume(current: Optional[Document]) -> Optional[Document]:
            if current is None:
                raise NotFoundError("invalid registration token")
            if current.get("used"):
                raise TokenAlreadyUsedError("registration token has already been used")
            if now >= as_utc(current["expires_at"]):
                raise TokenExpiredError("registration token has expired")
            return {"used": True, "used_at": now, "used_by": consumer_id}

        self.store.transact(REGISTRATION_TOKENS, token_id, _consume)
        self.logger.info("registration_token_consumed", user_id=consumer_id)

    def cleanup_expired(self, limit: int = 500) -> int:
        """Delete expired tokens that were never used; used tokens are kept."""
        rows = self.store.query(
            REGISTRATION_TOKENS,
            [("used", "==", False), ("expires_at", "<=", self._now())],
            limit=limit,
        )
        if not rows:
            return 0
        removed = self.store.batch_delete(REGISTRATION_TOKENS, [doc_id for doc_id, _ in rows])
        self.logger.info("registration_tokens_cleaned", count=removed)
        return removed


__all__ = ["RegistrationTokenStore", "TOKEN_BYTES"]
