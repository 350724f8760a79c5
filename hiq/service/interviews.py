from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hiq.logging import get_logger
from hiq.service.email import EmailService
from hiq.service.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hiq.service.identity import Identity
from hiq.service.interview_access import InterviewAccess, InterviewAccessGate
from hiq.storage.documents import INTERVIEWS, USERS, Document, DocumentStore
from hiq.storage.models import Interview, as_utc, utcnow

SESSION_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
SESSION_ID_LENGTH = 10

INTERVIEW_STATUSES = frozenset({"scheduled", "invited", "in_progress", "completed", "cancelled"})
CANCELLABLE_STATUSES = frozenset({"scheduled", "invited"})


def new_session_id() -> str:
    return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(SESSION_ID_LENGTH))


@dataclass(frozen=True)
class InterviewRequest:
    candidate_name: str
    candidate_email: str
    date: datetime
    type: str = "technical"
    level: str = "mid"
    duration: int = 45


class InterviewService:
    """Interview scheduling and status changes around the access gate."""

    def __init__(
        self,
        store: DocumentStore,
        gate: InterviewAccessGate,
        email: EmailService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gate = gate
        self.email = email
        self._clock = clock
        self.logger = get_logger(__name__)

    async def _notify(self, event: str, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        try:
            sent = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            self.logger.error("interview_email_failed", email_event=event, error=str(exc))
            return
        if not sent:
            self.logger.warning("interview_email_not_sent", email_event=event)

    def get(self, interview_id: str) -> Interview:
        doc = self.store.get(INTERVIEWS, interview_id)
        if doc is None:
            raise NotFoundError("interview not found")
        return Interview.from_doc(interview_id, doc)

    async def schedule(self, identity: Identity, request: InterviewRequest) -> Interview:
        scheduled_at = as_utc(request.date)
        now = self._clock()
        if scheduled_at <= now:
            raise ValidationError("interview date must be in the future", detail={"field": "date"})
        if not request.candidate_name.strip():
            raise ValidationError("candidate name is required", detail={"field": "candidate_name"})
        if request.duration <= 0:
            raise ValidationError("duration must be positive", detail={"field": "duration"})
        session_id = new_session_id()
        interview_id = self.store.add(
            INTERVIEWS,
            {
                "session_id": session_id,
                "candidate_name": request.candidate_name.strip(),
                "candidate_email": request.candidate_email.strip().lower(),
                "interviewer_id": identity.uid,
                "date": scheduled_at,
                "type": request.type,
                "level": request.level,
                "duration": request.duration,
                "status": "scheduled",
                "created_at": now,
                "updated_at": now,
            },
        )
        self.logger.info("interview_scheduled", interview_id=interview_id, interviewer_id=identity.uid)
        await self._notify(
            "invite",
            self.email.send_interview_invite,
            request.candidate_email.strip().lower(),
            candidate_name=request.candidate_name.strip(),
            interview_type=request.type,
            level=request.level,
            scheduled_at=scheduled_at,
            session_id=session_id,
        )
        return self.get(interview_id)

    def list_for_interviewer(self, uid: str, status: Optional[str] = None) -> List[Interview]:
        filters = [("interviewer_id", "==", uid)]
        if status:
            if status not in INTERVIEW_STATUSES:
                raise ValidationError("invalid status filter", detail={"status": status})
            filters.append(("status", "==", status))
        rows = self.store.query(INTERVIEWS, filters)
        interviews = [Interview.from_doc(doc_id, doc) for doc_id, doc in rows]
        return sorted(interviews, key=lambda item: item.date)

    def _change_status(
        self,
        interview_id: str,
        allowed: frozenset,
        fields: Callable[[Document], Document],
        check: Optional[Callable[[Document], None]] = None,
    ) -> Interview:
        def _apply(current: Optional[Document]) -> Document:
            if current is None:
                raise NotFoundError("interview not found")
            if check is not None:
                check(current)
            if current.get("status") not in allowed:
                raise InvalidStateError(
                    f"interview cannot be changed from status {current.get('status')}",
                    detail={"status": current.get("status")},
                )
            return fields(current)

        self.store.transact(INTERVIEWS, interview_id, _apply)
        return self.get(interview_id)

    async def cancel(self, identity: Identity, interview_id: str) -> Interview:
        def _owner_only(current: Document) -> None:
            if current.get("interviewer_id") != identity.uid:
                raise ForbiddenError("only the interviewer can cancel this interview")

        now = self._clock()
        interview = self._change_status(
            interview_id,
            CANCELLABLE_STATUSES,
            lambda _: {
                "status": "cancelled",
                "cancelled_at": now,
                "cancelled_by": identity.uid,
                "updated_at": now,
            },
            check=_owner_only,
        )
        self.logger.info("interview_cancelled", interview_id=interview_id)
        await self._notify(
            "cancelled",
            self.email.send_interview_cancelled,
            interview.candidate_email,
            candidate_name=interview.candidate_name,
            scheduled_at=interview.date,
        )
        return interview

    def start(self, identity: Identity, interview_id: str) -> InterviewAccess:
        access = self.gate.authorize(identity, interview_id)
        now = self._clock()
        interview = self._change_status(
            interview_id,
            frozenset({"scheduled", "invited"}),
            lambda _: {
                "status": "in_progress",
                "started_at": now,
                "started_by": access.access_type,
                "updated_at": now,
            },
        )
        self.logger.info(
            "interview_started", interview_id=interview_id, access_type=access.access_type
        )
        return InterviewAccess(access_type=access.access_type, interview=interview)

    async def complete(self, identity: Identity, interview_id: str) -> Interview:
        def _participant(current: Document) -> None:
            is_interviewer = current.get("interviewer_id") == identity.uid
            is_candidate = bool(identity.email) and (
                (current.get("candidate_email") or "").lower() == identity.email.lower()
            )
            if not (is_interviewer or is_candidate):
                raise ForbiddenError("not a participant in this interview")

        now = self._clock()

        def _fields(current: Document) -> Document:
            started_at = as_utc(current.get("started_at")) or now
            return {
                "status": "completed",
                "completed_at": now,
                "actual_duration": max(0, int((now - started_at).total_seconds() // 60)),
                "updated_at": now,
            }

        interview = self._change_status(
            interview_id, frozenset({"in_progress"}), _fields, check=_participant
        )
        self.logger.info("interview_completed", interview_id=interview_id)
        interviewer = self.store.get(USERS, interview.interviewer_id) or {}
        if interviewer.get("email"):
            await self._notify(
                "completed",
                self.email.send_interview_completed,
                interviewer["email"],
                candidate_name=interview.candidate_name,
                interview_id=interview.id,
            )
        return interview

    def public_details(self, session_id: str) -> Dict[str, Any]:
        """Candidate-facing lookup by share id; never exposes the interviewer."""
        rows = self.store.query(
            INTERVIEWS,
            [("session_id", "==", session_id), ("status", "==", "scheduled")],
            limit=1,
        )
        if not rows:
            raise NotFoundError("interview not found or no longer available")
        doc_id, doc = rows[0]
        interview = Interview.from_doc(doc_id, doc)
        return {
            "id": interview.id,
            "session_id": interview.session_id,
            "candidate_name": interview.candidate_name,
            "date": interview.date,
            "type": interview.type,
            "level": interview.level,
            "duration": interview.duration,
            "status": interview.status,
        }


__all__ = [
    "InterviewRequest",
    "InterviewService",
    "new_session_id",
]
