from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.errors import AuthenticationError, NotFoundError, SessionExpiredError
from hiq.service.registration_tokens import RegistrationTokenStore
from hiq.service.session_tokens import SessionTokenStore
from hiq.storage.documents import SESSION_TOKENS, SESSIONS, USERS, DocumentStore
from hiq.storage.errors import StoreError
from hiq.storage.models import DeviceInfo, SessionRecord, utcnow

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_TERMINATED = "terminated"


class SessionNotifier(Protocol):
    def send_session_expiry_warning(self, to_email: str, name: str) -> bool: ...

    def send_session_expired(self, to_email: str, name: str) -> bool: ...


@dataclass(frozen=True)
class SessionHandle:
    session_token: str
    user_id: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionActivity:
    user_id: str
    expires_at: datetime
    inactivity_warning_sent: bool = False


@dataclass(frozen=True)
class SweepResult:
    sessions: int = 0
    registration_tokens: int = 0
    session_tokens: int = 0


class SessionLifecycleManager:
    """Session creation, activity tracking, expiry and bulk termination.

    Session records move from ``active`` to ``expired`` or ``terminated`` and
    never leave those states. The expiry email is sent only by the caller whose
    conditional update actually flipped the status, so it goes out once.
    """

    def __init__(
        self,
        tokens: SessionTokenStore,
        registration_tokens: RegistrationTokenStore,
        store: DocumentStore,
        notifier: SessionNotifier,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tokens = tokens
        self.registration_tokens = registration_tokens
        self.store = store
        self.notifier = notifier
        self.inactivity_threshold = timedelta(minutes=settings.inactivity_warning_minutes)
        self.batch_size = settings.sweep_batch_size
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def login(self, user_id: str, device: Optional[DeviceInfo] = None) -> SessionHandle:
        issued = self.tokens.issue(user_id)
        now = self._now()
        self.store.set(
            SESSIONS,
            issued.token,
            {
                "user_id": user_id,
                "status": STATUS_ACTIVE,
                "created_at": now,
                "last_activity_at": now,
                "expires_at": issued.expires_at,
                "device_info": (device or DeviceInfo()).to_doc(),
            },
        )
        try:
            self.store.set(
                USERS, user_id, {"last_login_at": now, "last_activity_at": now}, merge=True
            )
        except StoreError as exc:
            self.logger.warning("login_profile_update_failed", user_id=user_id, error=str(exc))
        self.logger.info("session_created", user_id=user_id)
        return SessionHandle(
            session_token=issued.token, user_id=user_id, expires_at=issued.expires_at
        )

    def _record(self, token: str) -> Optional[SessionRecord]:
        doc = self.store.get(SESSIONS, token)
        return SessionRecord.from_doc(token, doc) if doc is not None else None

    async def validate(self, token: Optional[str]) -> SessionRecord:
        if not token:
            raise AuthenticationError("invalid session")
        record = self._record(token)
        if record is None:
            raise AuthenticationError("invalid session")
        if record.status == STATUS_EXPIRED:
            raise SessionExpiredError("session expired")
        if record.status != STATUS_ACTIVE:
            raise AuthenticationError("session is no longer active")
        try:
            self.tokens.validate(token)
        except SessionExpiredError:
            await self.expire(token)
            raise
        except NotFoundError as exc:
            raise AuthenticationError("invalid session") from exc
        return record

    async def check_activity(self, token: Optional[str]) -> SessionActivity:
        record = await self.validate(token)
        now = self._now()
        warned = False
        if now - record.last_activity_at > self.inactivity_threshold:
            warned = await self._notify(record.user_id, "warning")
        self.tokens.touch(record.token)
        try:
            self.store.update(SESSIONS, record.token, {"last_activity_at": now})
            self.store.set(USERS, record.user_id, {"last_activity_at": now}, merge=True)
        except StoreError as exc:
            self.logger.warning("session_activity_update_failed", error=str(exc))
        return SessionActivity(
            user_id=record.user_id,
            expires_at=record.expires_at,
            inactivity_warning_sent=warned,
        )

    async def expire(self, token: str) -> bool:
        """Move one session to ``expired``; returns True only for the winner."""
        applied = self.store.batch_update(
            SESSIONS,
            {token: {"status": STATUS_EXPIRED, "expired_at": self._now()}},
            expect={"status": STATUS_ACTIVE},
        )
        if not applied:
            return False
        record = self._record(token)
        if record is not None:
            self.logger.info("session_expired", user_id=record.user_id)
            await self._notify(record.user_id, "expired")
        return True

    async def refresh(self, token: Optional[str]) -> SessionHandle:
        record = await self.validate(token)
        try:
            issued = self.tokens.refresh(record.token)
        except NotFoundError as exc:
            raise AuthenticationError("invalid session") from exc
        now = self._now()
        self.store.batch_update(
            SESSIONS,
            {
                record.token: {
                    "status": STATUS_TERMINATED,
                    "terminated_at": now,
                    "termination_reason": "rotated",
                }
            },
            expect={"status": STATUS_ACTIVE},
        )
        self.store.set(
            SESSIONS,
            issued.token,
            {
                "user_id": record.user_id,
                "status": STATUS_ACTIVE,
                "created_at": now,
                "last_activity_at": now,
                "expires_at": issued.expires_at,
                "device_info": record.device_info.to_doc(),
            },
        )
        return SessionHandle(
            session_token=issued.token, user_id=record.user_id, expires_at=issued.expires_at
        )

    async def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        self.tokens.invalidate(token)
        self.store.batch_update(
            SESSIONS,
            {
                token: {
                    "status": STATUS_TERMINATED,
                    "terminated_at": self._now(),
                    "termination_reason": "user_logout",
                }
            },
            expect={"status": STATUS_ACTIVE},
        )

    async def terminate_all(self, user_id: str) -> int:
        rows = self.store.query(
            SESSIONS, [("user_id", "==", user_id), ("status", "==", STATUS_ACTIVE)]
        )
        if not rows:
            return 0
        now = self._now()
        applied = self.store.batch_update(
            SESSIONS,
            {
                token: {
                    "status": STATUS_TERMINATED,
                    "terminated_at": now,
                    "termination_reason": "user_logout_all",
                }
                for token, _ in rows
            },
            expect={"status": STATUS_ACTIVE},
        )
        self.store.batch_delete(SESSION_TOKENS, applied)
        self.logger.info("sessions_terminated", user_id=user_id, count=len(applied))
        return len(applied)

    async def sweep_expired(self) -> SweepResult:
        """Expire overdue active sessions in batches, then purge stale tokens.

        Re-running is a no-op for sessions already moved out of ``active``.
        """
        now = self._now()
        expired_sessions = 0
        while True:
            rows = self.store.query(
                SESSIONS,
                [("status", "==", STATUS_ACTIVE), ("expires_at", "<=", now)],
                limit=self.batch_size,
            )
            if not rows:
                break
            applied = self.store.batch_update(
                SESSIONS,
                {token: {"status": STATUS_EXPIRED, "expired_at": now} for token, _ in rows},
                expect={"status": STATUS_ACTIVE},
            )
            expired_sessions += len(applied)
            users = {token: doc["user_id"] for token, doc in rows}
            for token in applied:
                await self._notify(users[token], "expired")
            if len(rows) < self.batch_size:
                break
        registration_removed = self.registration_tokens.cleanup_expired(self.batch_size)
        tokens_removed = self.tokens.cleanup_expired(self.batch_size)
        result = SweepResult(
            sessions=expired_sessions,
            registration_tokens=registration_removed,
            session_tokens=tokens_removed,
        )
        self.logger.info(
            "session_sweep_completed",
            sessions=result.sessions,
            registration_tokens=result.registration_tokens,
            session_tokens=result.session_tokens,
        )
        return result

    def list_sessions(self, user_id: str) -> List[SessionRecord]:
        rows = self.store.query(
            SESSIONS,
            [("user_id", "==", user_id), ("status", "==", STATUS_ACTIVE)],
        )
        records = [SessionRecord.from_doc(token, doc) for token, doc in rows]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def analytics(self) -> Dict[str, int]:
        since = self._now() - timedelta(hours=24)
        active = self.store.query(SESSIONS, [("status", "==", STATUS_ACTIVE)])
        expired = self.store.query(SESSIONS, [("status", "==", STATUS_EXPIRED)])
        recent = self.store.query(SESSIONS, [("created_at", ">=", since)])
        return {
            "active_sessions": len(active),
            "expired_sessions": len(expired),
            "logins_last_24h": len(recent),
        }

    async def _notify(self, user_id: str, kind: str) -> bool:
        """Best-effort session email; failures are logged and swallowed."""
        try:
            profile = self.store.get(USERS, user_id)
        except StoreError as exc:
            self.logger.warning("session_notify_lookup_failed", user_id=user_id, error=str(exc))
            return False
        email = (profile or {}).get("email")
        if not email:
            self.logger.warning("session_notify_no_email", user_id=user_id, kind=kind)
            return False
        name = profile.get("display_name") or email
        send = (
            self.notifier.send_session_expiry_warning
            if kind == "warning"
            else self.notifier.send_session_expired
        )
        try:
            sent = await asyncio.to_thread(send, email, name)
        except Exception as exc:
            self.logger.error(
                "session_notify_failed", user_id=user_id, kind=kind, error=str(exc)
            )
            return False
        if not sent:
            self.logger.warning("session_notify_not_sent", user_id=user_id, kind=kind)
        return bool(sent)


__all__ = [
    "SessionHandle",
    "SessionActivity",
    "SessionLifecycleManager",
    "SessionNotifier",
    "SweepResult",
    "STATUS_ACTIVE",
    "STATUS_EXPIRED",
    "STATUS_TERMINATED",
]
