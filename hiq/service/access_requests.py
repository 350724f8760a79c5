from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.email import EmailService
from hiq.service.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ServerError,
    ServiceError,
    ValidationError,
)
from hiq.service.identity import (
    IdentityProvider,
    ProviderConflict,
    ProviderError,
    ProviderInvalidArgument,
    ProviderUser,
    ProviderUserNotFound,
    Role,
)
from hiq.service.registration_tokens import RegistrationTokenStore
from hiq.service.roles import RoleResolver
from hiq.storage.documents import ACCESS_REQUESTS, USERS, Document, DocumentStore
from hiq.storage.models import AccessRequest, utcnow

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
REQUEST_STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED})

DEFAULT_REJECTION_REASON = "No specific reason provided"


@dataclass(frozen=True)
class AccessRequestSubmission:
    email: str
    work_domain: str
    team_size: Optional[str] = None
    message: Optional[str] = None


class AccessRequestService:
    """Public access requests, admin review, and invitation-based registration.

    Approval issues a one-time registration token bound to the request email;
    registration consumes it exactly once.
    """

    def __init__(
        self,
        store: DocumentStore,
        tokens: RegistrationTokenStore,
        resolver: RoleResolver,
        provider: IdentityProvider,
        email: EmailService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.resolver = resolver
        self.provider = provider
        self.email = email
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    async def _notify(self, event: str, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        try:
            sent = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            self.logger.error("access_email_failed", email_event=event, error=str(exc))
            return
        if not sent:
            self.logger.warning("access_email_not_sent", email_event=event)

    def _get(self, request_id: str) -> AccessRequest:
        doc = self.store.get(ACCESS_REQUESTS, request_id)
        if doc is None:
            raise NotFoundError("access request not found")
        return AccessRequest.from_doc(request_id, doc)

    async def submit(self, submission: AccessRequestSubmission) -> AccessRequest:
        email = submission.email.strip().lower()
        work_domain = submission.work_domain.strip().lower()
        if not EMAIL_RE.match(email):
            raise ValidationError("invalid email format", detail={"field": "email"})
        if not work_domain:
            raise ValidationError("work domain is required", detail={"field": "work_domain"})
        domain = email.split("@", 1)[1]
        if domain in self.settings.generic_email_domains:
            raise ValidationError(
                "please use a work email address",
                detail={"field": "email", "reason": "generic_domain"},
            )
        pending = self.store.query(
            ACCESS_REQUESTS,
            [("email", "==", email), ("status", "==", STATUS_PENDING)],
            limit=1,
        )
        if pending:
            raise ValidationError("a request for this email is already pending")
        now = self._clock()
        request_id = self.store.add(
            ACCESS_REQUESTS,
            {
                "email": email,
                "work_domain": work_domain,
                "team_size": submission.team_size,
                "message": submission.message,
                "status": STATUS_PENDING,
                "created_at": now,
                "updated_at": now,
            },
        )
        self.logger.info("access_request_submitted", request_id=request_id, work_domain=work_domain)
        if self.settings.admin_email:
            await self._notify(
                "admin_notification",
                self.email.send_access_request_notification,
                self.settings.admin_email,
                requester_email=email,
                work_domain=work_domain,
                team_size=submission.team_size,
                message=submission.message,
            )
        return self._get(request_id)

    def list_requests(self, status: Optional[str] = STATUS_PENDING) -> List[AccessRequest]:
        if status is not None and status not in REQUEST_STATUSES:
            raise ValidationError("invalid status filter", detail={"status": status})
        filters = [("status", "==", status)] if status else []
        rows = self.store.query(
            ACCESS_REQUESTS, filters, order_by="created_at", descending=True
        )
        return [AccessRequest.from_doc(doc_id, doc) for doc_id, doc in rows]

    def _transition(self, request_id: str, fields: Document) -> AccessRequest:
        """Move a pending request to a final status exactly once."""

        def _decide(current: Optional[Document]) -> Document:
            if current is None:
                raise NotFoundError("access request not found")
            if current.get("status") != STATUS_PENDING:
                raise InvalidStateError(
                    "request already processed", detail={"status": current.get("status")}
                )
            return fields

        self.store.transact(ACCESS_REQUESTS, request_id, _decide)
        return self._get(request_id)

    async def approve(self, request_id: str, admin_uid: str) -> AccessRequest:
        now = self._clock()
        request = self._transition(
            request_id,
            {
                "status": STATUS_APPROVED,
                "approved_by": admin_uid,
                "approved_at": now,
                "updated_at": now,
            },
        )
        token_id = self.tokens.issue(request.email)
        self.store.update(ACCESS_REQUESTS, request_id, {"registration_token": token_id})
        token = self.tokens.get(token_id)
        self.logger.info("access_request_approved", request_id=request_id, admin_id=admin_uid)
        await self._notify(
            "registration_invite",
            self.email.send_registration_invite,
            request.email,
            token_id,
            token.expires_at if token else now,
        )
        return self._get(request_id)

    async def reject(
        self, request_id: str, admin_uid: str, reason: Optional[str] = None
    ) -> AccessRequest:
        now = self._clock()
        reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        request = self._transition(
            request_id,
            {
                "status": STATUS_REJECTED,
                "rejection_reason": reason,
                "rejected_by": admin_uid,
                "rejected_at": now,
                "updated_at": now,
            },
        )
        self.logger.info("access_request_rejected", request_id=request_id, admin_id=admin_uid)
        await self._notify("rejection", self.email.send_access_rejected, request.email, reason)
        return request

    def lookup_invitation(self, token_id: str) -> str:
        """Validate a registration link and return its bound email."""
        try:
            return self.tokens.validate(token_id)
        except NotFoundError:
            raise
        except ServiceError:
            self.tokens.record_failed_attempt(token_id)
            raise

    async def register(
        self,
        token_id: str,
        email: str,
        password: str,
        display_name: Optional[str] = None,
    ) -> ProviderUser:
        bound_email = self.lookup_invitation(token_id)
        if email.strip().lower() != bound_email:
            self.tokens.record_failed_attempt(token_id)
            raise ValidationError("email does not match the invitation")
        try:
            user = self.provider.create_user(
                bound_email, password, display_name, email_verified=True
            )
        except ProviderConflict as exc:
            raise ConflictError("an account with this email already exists") from exc
        except ProviderInvalidArgument as exc:
            raise ValidationError(str(exc)) from exc
        except ProviderError as exc:
            self.logger.error("registration_provider_failed", error=str(exc))
            raise ServerError("failed to create account") from exc
        try:
            self.tokens.mark_used(token_id, user.uid)
        except ServiceError:
            self._discard_user(user.uid)
            raise
        now = self._clock()
        # The token is spent; from here on the account must survive partial failures
        try:
            self.resolver.assign_role(user.uid, Role.INTERVIEWER)
        except ServiceError as exc:
            self.logger.error(
                "registration_role_write_failed", user_id=user.uid, error=exc.message
            )
        self.store.set(
            USERS,
            user.uid,
            {
                "email": bound_email,
                "display_name": display_name,
                "role": Role.INTERVIEWER.value,
                "is_admin": False,
                "created_at": now,
                "capabilities": [],
            },
            merge=True,
        )
        self.logger.info("user_registered", user_id=user.uid)
        return self.provider.get_user(user.uid)

    def _discard_user(self, uid: str) -> None:
        try:
            self.provider.delete_user(uid)
        except ProviderUserNotFound:
            pass
        except ProviderError as exc:
            self.logger.error("registration_rollback_failed", user_id=uid, error=str(exc))


__all__ = [
    "AccessRequestService",
    "AccessRequestSubmission",
    "EMAIL_RE",
    "STATUS_PENDING",
    "STATUS_APPROVED",
    "STATUS_REJECTED",
]
