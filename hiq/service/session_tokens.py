from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.errors import NotFoundError, SessionExpiredError
from hiq.storage.documents import SESSION_TOKENS, DocumentStore
from hiq.storage.errors import DocumentNotFound
from hiq.storage.models import SessionToken, utcnow

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedSessionToken:
    token: str
    user_id: str
    expires_at: datetime


class SessionTokenStore:
    """Opaque session tokens with an absolute expiry.

    Activity tracking never moves ``expires_at``.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=settings.session_ttl_hours)
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, user_id: str) -> IssuedSessionToken:
        token = secrets.token_hex(TOKEN_BYTES)
        now = self._now()
        expires_at = now + self.ttl
        self.store.set(
            SESSION_TOKENS,
            token,
            {
                "user_id": user_id,
                "created_at": now,
                "expires_at": expires_at,
                "last_activity_at": now,
            },
        )
        return IssuedSessionToken(token=token, user_id=user_id, expires_at=expires_at)

    def get(self, token: str) -> Optional[SessionToken]:
        doc = self.store.get(SESSION_TOKENS, token) if token else None
        return SessionToken.from_doc(token, doc) if doc is not None else None

    def validate(self, token: str) -> str:
        record = self.get(token)
        if record is None:
            raise NotFoundError("session not found")
        if self._now() >= record.expires_at:
            raise SessionExpiredError("session expired")
        return record.user_id

    def refresh(self, old_token: str) -> IssuedSessionToken:
        """Replace ``old_token`` with a new token for the same user.

        The old token is removed atomically, so concurrent refreshes of one
        token yield at most one new token.
        """
        doc = self.store.pop(SESSION_TOKENS, old_token) if old_token else None
        if doc is None:
            raise NotFoundError("session not found")
        record = SessionToken.from_doc(old_token, doc)
        if self._now() >= record.expires_at:
            raise SessionExpiredError("session expired")
        issued = self.issue(record.user_id)
        self.logger.info("session_token_refreshed", user_id=record.user_id)
        return issued

    def invalidate(self, token: str) -> None:
        if token:
            self.store.delete(SESSION_TOKENS, token)

    def touch(self, token: str) -> None:
        try:
            self.store.update(SESSION_TOKENS, token, {"last_activity_at": self._now()})
        except DocumentNotFound:
            self.logger.debug("session_touch_missing")

    def active_for_user(self, user_id: str) -> List[SessionToken]:
        rows = self.store.query(
            SESSION_TOKENS,
            [("user_id", "==", user_id), ("expires_at", ">", self._now())],
        )
        return [SessionToken.from_doc(token, doc) for token, doc in rows]

    def cleanup_expired(self, limit: int = 500) -> int:
        rows = self.store.query(SESSION_TOKENS, [("expires_at", "<=", self._now())], limit=limit)
        if not rows:
            return 0
        removed = self.store.batch_delete(SESSION_TOKENS, [token for token, _ in rows])
        self.logger.info("session_tokens_cleaned", count=removed)
        return removed


__all__ = ["IssuedSessionToken", "SessionTokenStore"]
