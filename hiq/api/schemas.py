from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_state",
    "out_of_window",
    "token_used",
    "token_expired",
    "too_many_attempts",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class AccessRequestCreate(BaseModel):
    email: str
    work_domain: str = Field(..., min_length=1, max_length=255)
    team_size: Optional[str] = Field(default=None, max_length=32)
    message: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("work_domain")
    @classmethod
    def _strip_domain(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("work domain is required")
        return value


class AccessRequestResponse(BaseModel):
    id: str
    email: str
    work_domain: str
    status: str
    team_size: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class AccessRequestListResponse(BaseModel):
    items: List[AccessRequestResponse]


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class InvitationResponse(BaseModel):
    email: str


class RegisterRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_unicode(value).strip()
        return value or None


class UserResponse(BaseModel):
    uid: str
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    role: str = "user"
    is_admin: bool = False


class DeviceInfoRequest(BaseModel):
    device: Optional[str] = Field(default=None, max_length=64)
    location: Optional[str] = Field(default=None, max_length=128)


class SessionResponse(BaseModel):
    session_token: str
    user_id: str
    expires_at: datetime


class SessionActivityResponse(BaseModel):
    user_id: str
    expires_at: datetime
    inactivity_warning_sent: bool = False


class SessionSummary(BaseModel):
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    device: Optional[str] = None
    location: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionSummary]


class InterviewCreate(BaseModel):
    candidate_name: str = Field(..., min_length=1, max_length=200)
    candidate_email: str
    date: datetime
    type: str = Field(default="technical", max_length=32)
    level: str = Field(default="mid", max_length=32)
    duration: int = Field(default=45, gt=0, le=480)

    @field_validator("candidate_email")
    @classmethod
    def _validate_candidate_email(cls, value: str) -> str:
        return _validate_email(value)


class InterviewResponse(BaseModel):
    id: str
    session_id: str
    candidate_name: str
    candidate_email: str
    interviewer_id: Optional[str] = None
    date: datetime
    status: str
    type: str
    level: str
    duration: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration: Optional[int] = None
    cancelled_at: Optional[datetime] = None


class InterviewListResponse(BaseModel):
    items: List[InterviewResponse]


class InterviewAccessResponse(BaseModel):
    access_type: str
    interview: InterviewResponse


class PublicInterviewResponse(BaseModel):
    id: str
    session_id: str
    candidate_name: str
    date: datetime
    type: str
    level: str
    duration: int
    status: str


class RoleUpdateRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"user", "interviewer", "admin", "moderator"}:
            raise ValueError("role must be one of user, interviewer, admin, moderator")
        return normalized


class SessionAnalyticsResponse(BaseModel):
    active_sessions: int
    expired_sessions: int
    logins_last_24h: int


class SweepResponse(BaseModel):
    sessions: int
    registration_tokens: int
    session_tokens: int
