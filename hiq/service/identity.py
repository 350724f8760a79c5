from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol

from hiq.logging import get_logger
from hiq.service.errors import AuthenticationError, ServerError
from hiq.storage.models import as_utc

logger = get_logger(__name__)


class Role(str, Enum):
    USER = "user"
    INTERVIEWER = "interviewer"
    ADMIN = "admin"
    MODERATOR = "moderator"


# Custom claim keys as stored by the identity provider
ROLE_CLAIM = "role"
ADMIN_CLAIM = "isAdmin"
LAST_LOGIN_CLAIM = "lastLogin"
UPDATED_AT_CLAIM = "updatedAt"

# Standard token fields that are never custom claims
_RESERVED_TOKEN_FIELDS = frozenset(
    {
        "uid",
        "sub",
        "user_id",
        "email",
        "email_verified",
        "name",
        "picture",
        "iss",
        "aud",
        "auth_time",
        "iat",
        "exp",
        "firebase",
        "phone_number",
    }
)


class ProviderError(Exception):
    """Identity provider call failed."""


class ProviderTokenInvalid(ProviderError):
    """Token failed signature, expiry, or revocation checks."""


class ProviderUserNotFound(ProviderError):
    """No user exists for the requested subject id or email."""


class ProviderConflict(ProviderError):
    """A user with the requested email already exists."""


class ProviderInvalidArgument(ProviderError):
    """Provider refused the input, e.g. a malformed email or weak password."""


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or its keys could not be loaded."""


@dataclass(frozen=True)
class Claims:
    """Custom claims resolved at the provider boundary.

    ``role`` is always present; an absent or unknown role reads as USER.
    Claims this service does not interpret are kept verbatim in ``extra``.
    """

    role: Role = Role.USER
    is_admin: Optional[bool] = None
    last_login: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, raw: Optional[Mapping[str, Any]]) -> "Claims":
        raw = dict(raw or {})
        role_value = raw.pop(ROLE_CLAIM, None)
        try:
            role = Role(role_value) if role_value is not None else Role.USER
        except ValueError:
            logger.warning("unknown_role_claim", role=str(role_value))
            role = Role.USER
        admin_value = raw.pop(ADMIN_CLAIM, None)
        last_login_value = raw.pop(LAST_LOGIN_CLAIM, None)
        try:
            last_login = as_utc(last_login_value)
        except (TypeError, ValueError):
            last_login = None
        return cls(
            role=role,
            is_admin=bool(admin_value) if admin_value is not None else None,
            last_login=last_login,
            extra=raw,
        )

    @property
    def asserts_admin(self) -> bool:
        return self.is_admin is True and self.role is Role.ADMIN

    def to_provider(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data[ROLE_CLAIM] = self.role.value
        if self.is_admin is not None:
            data[ADMIN_CLAIM] = self.is_admin
        if self.last_login is not None:
            data[LAST_LOGIN_CLAIM] = self.last_login.isoformat()
        return data


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str]
    email_verified: bool = False
    claims: Claims = field(default_factory=Claims)

    @property
    def role(self) -> Role:
        return self.claims.role


@dataclass
class ProviderUser:
    uid: str
    email: Optional[str]
    email_verified: bool = False
    display_name: Optional[str] = None
    disabled: bool = False
    custom_claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def claims(self) -> Claims:
        return Claims.from_provider(self.custom_claims)


class IdentityProvider(Protocol):
    def verify_token(self, token: str) -> Dict[str, Any]: ...

    def get_user(self, uid: str) -> ProviderUser: ...

    def get_user_by_email(self, email: str) -> ProviderUser: ...

    def set_custom_claims(self, uid: str, claims: Mapping[str, Any]) -> None: ...

    def create_user(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> ProviderUser: ...

    def delete_user(self, uid: str) -> None: ...


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        return None
    token = token.strip()
    return token or None


class CredentialVerifier:
    """Turns a bearer Authorization header into a verified Identity."""

    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider
        self.logger = get_logger(__name__)

    def verify(self, authorization: Optional[str]) -> Identity:
        token = _extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("invalid credentials")
        try:
            decoded = self.provider.verify_token(token)
        except ProviderUnavailable as exc:
            self.logger.error("credential_provider_unavailable", error=str(exc))
            raise ServerError("identity provider unavailable") from exc
        except ProviderError as exc:
            self.logger.info("credential_rejected", reason=type(exc).__name__)
            raise AuthenticationError("invalid credentials") from exc
        uid = decoded.get("uid") or decoded.get("sub")
        if not uid:
            raise AuthenticationError("invalid credentials")
        custom = {
            key: value for key, value in decoded.items() if key not in _RESERVED_TOKEN_FIELDS
        }
        email = decoded.get("email")
        return Identity(
            uid=str(uid),
            email=email.lower() if isinstance(email, str) else None,
            email_verified=bool(decoded.get("email_verified", False)),
            claims=Claims.from_provider(custom),
        )


__all__ = [
    "Role",
    "Claims",
    "Identity",
    "ProviderUser",
    "IdentityProvider",
    "ProviderError",
    "ProviderTokenInvalid",
    "ProviderUserNotFound",
    "ProviderConflict",
    "ProviderInvalidArgument",
    "ProviderUnavailable",
    "CredentialVerifier",
]
