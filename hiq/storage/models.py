from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """Normalize stored timestamps; naive values are treated as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class RegistrationToken:
    id: str
    email: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None

    @classmethod
    def from_doc(cls, doc_id: str, doc: Dict[str, Any]) -> "RegistrationToken":
        return cls(
            id=doc_id,
            email=doc["email"],
            created_at=as_utc(doc["created_at"]),
            expires_at=as_utc(doc["expires_at"]),
            used=bool(doc.get("used", False)),
            attempts=int(doc.get("attempts", 0) or 0),
            last_attempt_at=as_utc(doc.get("last_attempt_at")),
            used_at=as_utc(doc.get("used_at")),
            used_by=doc.get("used_by"),
        )


@dataclass
class SessionToken:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime

    @classmethod
    def from_doc(cls, token: str, doc: Dict[str, Any]) -> "SessionToken":
        created_at = as_utc(doc["created_at"])
        return cls(
            token=token,
            user_id=doc["user_id"],
            created_at=created_at,
            expires_at=as_utc(doc["expires_at"]),
            last_activity_at=as_utc(doc.get("last_activity_at")) or created_at,
        )


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    location: Optional[str] = None
    device: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    token: str
    user_id: str
    status: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    expired_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None

    @classmethod
    def from_doc(cls, token: str, doc: Dict[str, Any]) -> "SessionRecord":
        device = doc.get("device_info") or {}
        return cls(
            token=token,
            user_id=doc["user_id"],
            status=doc.get("status", "active"),
            created_at=as_utc(doc["created_at"]),
            last_activity_at=as_utc(doc.get("last_activity_at") or doc["created_at"]),
            expires_at=as_utc(doc["expires_at"]),
            device_info=DeviceInfo(
                user_agent=device.get("user_agent"),
                ip=device.get("ip"),
                location=device.get("location"),
                device=device.get("device"),
            ),
            expired_at=as_utc(doc.get("expired_at")),
            terminated_at=as_utc(doc.get("terminated_at")),
            termination_reason=doc.get("termination_reason"),
        )


@dataclass
class AccessRequest:
    id: str
    email: str
    work_domain: str
    status: str
    created_at: datetime
    updated_at: datetime
    team_size: Optional[str] = None
    message: Optional[str] = None
    registration_token: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc_id: str, doc: Dict[str, Any]) -> "AccessRequest":
        return cls(
            id=doc_id,
            email=doc["email"],
            work_domain=doc.get("work_domain", ""),
            status=doc.get("status", "pending"),
            created_at=as_utc(doc["created_at"]),
            updated_at=as_utc(doc.get("updated_at") or doc["created_at"]),
            team_size=doc.get("team_size"),
            message=doc.get("message"),
            registration_token=doc.get("registration_token"),
            approved_by=doc.get("approved_by"),
            approved_at=as_utc(doc.get("approved_at")),
            rejection_reason=doc.get("rejection_reason"),
            rejected_by=doc.get("rejected_by"),
            rejected_at=as_utc(doc.get("rejected_at")),
        )


@dataclass
class Interview:
    id: str
    session_id: str
    candidate_name: str
    candidate_email: str
    interviewer_id: str
    date: datetime
    status: str
    type: str = "technical"
    level: str = "mid"
    duration: int = 45
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None

    @classmethod
    def from_doc(cls, doc_id: str, doc: Dict[str, Any]) -> "Interview":
        return cls(
            id=doc_id,
            session_id=doc.get("session_id", ""),
            candidate_name=doc.get("candidate_name", ""),
            candidate_email=doc.get("candidate_email", ""),
            interviewer_id=doc.get("interviewer_id", ""),
            date=as_utc(doc["date"]),
            status=doc.get("status", "scheduled"),
            type=doc.get("type", "technical"),
            level=doc.get("level", "mid"),
            duration=int(doc.get("duration", 45) or 45),
            created_at=as_utc(doc.get("created_at")),
            started_at=as_utc(doc.get("started_at")),
            completed_at=as_utc(doc.get("completed_at")),
            actual_duration=doc.get("actual_duration"),
            cancelled_at=as_utc(doc.get("cancelled_at")),
            cancelled_by=doc.get("cancelled_by"),
        )


@dataclass
class UserProfile:
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str = "user"
    is_admin: bool = False
    capabilities: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc_id: str, doc: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=doc_id,
            email=doc.get("email"),
            display_name=doc.get("display_name"),
            role=doc.get("role", "user"),
            is_admin=bool(doc.get("is_admin", False)),
            capabilities=list(doc.get("capabilities") or []),
            created_at=as_utc(doc.get("created_at")),
            last_login_at=as_utc(doc.get("last_login_at")),
            last_activity_at=as_utc(doc.get("last_activity_at")),
        )
