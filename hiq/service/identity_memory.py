from __future__ import annotations

import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from hiq.service.identity import (
    ProviderConflict,
    ProviderInvalidArgument,
    ProviderTokenInvalid,
    ProviderUser,
    ProviderUserNotFound,
)
from hiq.storage.models import utcnow

# Same floor the hosted provider enforces
MIN_PASSWORD_LENGTH = 6


class MemoryIdentityProvider:
    """In-process identity provider for tests and local development.

    Mirrors the provider surface the services use: opaque id tokens carry
    the user's current custom claims at issue time, like provider-signed
    tokens do.
    """

    def __init__(
        self,
        *,
        token_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._users: Dict[str, ProviderUser] = {}
        self._passwords: Dict[str, str] = {}
        self._tokens: Dict[str, Tuple[str, datetime, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._hasher = PasswordHasher(type=Type.ID)
        self.token_ttl = token_ttl
        self._clock = clock

    def _find_by_email(self, email: str) -> Optional[ProviderUser]:
        email = email.lower()
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    def create_user(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> ProviderUser:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ProviderInvalidArgument("password must be at least 6 characters")
        with self._lock:
            if self._find_by_email(email) is not None:
                raise ProviderConflict("email already exists")
            user = ProviderUser(
                uid=uuid.uuid4().hex[:28],
                email=email.lower(),
                email_verified=email_verified,
                display_name=display_name,
            )
            self._users[user.uid] = user
            self._passwords[user.uid] = self._hasher.hash(password)
            return user

    def delete_user(self, uid: str) -> None:
        with self._lock:
            if self._users.pop(uid, None) is None:
                raise ProviderUserNotFound(uid)
            self._passwords.pop(uid, None)
            self._tokens = {
                token: entry for token, entry in self._tokens.items() if entry[0] != uid
            }

    def get_user(self, uid: str) -> ProviderUser:
        with self._lock:
            user = self._users.get(uid)
            if user is None:
                raise ProviderUserNotFound(uid)
            return ProviderUser(
                uid=user.uid,
                email=user.email,
                email_verified=user.email_verified,
                display_name=user.display_name,
                disabled=user.disabled,
                custom_claims=dict(user.custom_claims),
            )

    def get_user_by_email(self, email: str) -> ProviderUser:
        with self._lock:
            user = self._find_by_email(email)
            if user is None:
                raise ProviderUserNotFound(email)
            return self.get_user(user.uid)

    def set_custom_claims(self, uid: str, claims: Mapping[str, Any]) -> None:
        with self._lock:
            user = self._users.get(uid)
            if user is None:
                raise ProviderUserNotFound(uid)
            user.custom_claims = dict(claims)

    def mark_email_verified(self, uid: str) -> None:
        with self._lock:
            user = self._users.get(uid)
            if user is None:
                raise ProviderUserNotFound(uid)
            user.email_verified = True

    def issue_token(self, uid: str) -> str:
        with self._lock:
            user = self._users.get(uid)
            if user is None:
                raise ProviderUserNotFound(uid)
            token = secrets.token_urlsafe(32)
            payload = {
                "uid": user.uid,
                "sub": user.uid,
                "email": user.email,
                "email_verified": user.email_verified,
                **user.custom_claims,
            }
            self._tokens[token] = (uid, self._clock() + self.token_ttl, payload)
            return token

    def sign_in_with_password(self, email: str, password: str) -> str:
        with self._lock:
            user = self._find_by_email(email)
            stored = self._passwords.get(user.uid) if user else None
        if user is None or stored is None:
            raise ProviderTokenInvalid("invalid credentials")
        try:
            self._hasher.verify(stored, password)
        except (InvalidHash, VerifyMismatchError) as exc:
            raise ProviderTokenInvalid("invalid credentials") from exc
        return self.issue_token(user.uid)

    def verify_token(self, token: str) -> Dict[str, Any]:
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                raise ProviderTokenInvalid("unknown token")
            uid, expires_at, payload = entry
            if uid not in self._users:
                raise ProviderTokenInvalid("user deleted")
        if self._clock() >= expires_at:
            raise ProviderTokenInvalid("token expired")
        return dict(payload)


__all__ = ["MemoryIdentityProvider"]
