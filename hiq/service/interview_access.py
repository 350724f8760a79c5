from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    OutOfWindowError,
)
from hiq.service.identity import Identity
from hiq.storage.documents import INTERVIEW_ACCESS_LOGS, INTERVIEWS, DocumentStore
from hiq.storage.errors import StoreError
from hiq.storage.models import Interview, utcnow

ACCESS_INTERVIEWER = "interviewer"
ACCESS_CANDIDATE = "candidate"

JOINABLE_STATUSES = frozenset({"scheduled", "invited"})


@dataclass(frozen=True)
class InterviewAccess:
    access_type: str
    interview: Interview


class InterviewAccessGate:
    """Decides whether a participant may enter an interview right now.

    The window opens ``early`` before the scheduled start and closes ``late``
    after it; both edges are inclusive.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.early = timedelta(minutes=settings.interview_early_access_minutes)
        self.late = timedelta(minutes=settings.interview_late_access_minutes)
        self._clock = clock
        self.logger = get_logger(__name__)

    def within_window(self, scheduled: datetime, now: datetime) -> bool:
        delta = scheduled - now
        return -self.late <= delta <= self.early

    def authorize(self, identity: Identity, interview_id: str) -> InterviewAccess:
        doc = self.store.get(INTERVIEWS, interview_id)
        if doc is None:
            raise NotFoundError("interview not found")
        interview = Interview.from_doc(interview_id, doc)
        if interview.status not in JOINABLE_STATUSES:
            raise InvalidStateError(
                "interview is not available for access",
                detail={"status": interview.status},
            )
        now = self._clock()
        if not self.within_window(interview.date, now):
            raise OutOfWindowError(
                "interview can only be accessed from "
                f"{int(self.early.total_seconds() // 60)} minutes before to "
                f"{int(self.late.total_seconds() // 60)} minutes after its scheduled time",
                detail={"scheduled_at": interview.date.isoformat()},
            )
        if interview.interviewer_id and identity.uid == interview.interviewer_id:
            access_type = ACCESS_INTERVIEWER
        elif identity.email and identity.email.lower() == interview.candidate_email.lower():
            access_type = ACCESS_CANDIDATE
        else:
            raise ForbiddenError("not a participant in this interview")
        self._log_access(interview, identity, access_type, now)
        return InterviewAccess(access_type=access_type, interview=interview)

    def _log_access(
        self, interview: Interview, identity: Identity, access_type: str, now: datetime
    ) -> None:
        try:
            self.store.add(
                INTERVIEW_ACCESS_LOGS,
                {
                    "interview_id": interview.id,
                    "user_id": identity.uid,
                    "user_email": identity.email,
                    "access_type": access_type,
                    "timestamp": now,
                },
            )
        except StoreError as exc:
            self.logger.error(
                "interview_access_log_failed", interview_id=interview.id, error=str(exc)
            )


__all__ = [
    "InterviewAccess",
    "InterviewAccessGate",
    "ACCESS_INTERVIEWER",
    "ACCESS_CANDIDATE",
    "JOINABLE_STATUSES",
]
