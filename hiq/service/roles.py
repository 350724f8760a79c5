from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.errors import ForbiddenError, NotFoundError, ServerError
from hiq.service.identity import (
    ADMIN_CLAIM,
    ROLE_CLAIM,
    UPDATED_AT_CLAIM,
    Identity,
    IdentityProvider,
    ProviderError,
    ProviderUser,
    ProviderUserNotFound,
    Role,
)
from hiq.storage.documents import ACCESS_CONTROL, ADMIN_ALLOW_LIST_DOC, USERS, DocumentStore
from hiq.storage.errors import StoreError
from hiq.storage.models import UserProfile, utcnow

logger = get_logger(__name__)

TIER_CLAIMS = "claims"
TIER_ADMIN_EMAIL = "admin_email"
TIER_ALLOW_LIST = "allow_list"


@dataclass(frozen=True)
class AdminDecision:
    granted: bool
    tier: Optional[str] = None

    @property
    def needs_reconcile(self) -> bool:
        return self.granted and self.tier in (TIER_ADMIN_EMAIL, TIER_ALLOW_LIST)


def decide_admin(
    user: ProviderUser,
    admin_email: Optional[str],
    load_allow_list: Callable[[], Iterable[str]],
) -> AdminDecision:
    """Pure admin decision over the three tiers, short-circuiting in order.

    ``load_allow_list`` is only invoked when the first two tiers fail.
    """
    if user.claims.asserts_admin:
        return AdminDecision(granted=True, tier=TIER_CLAIMS)
    email = (user.email or "").lower()
    if email and admin_email and email == admin_email.lower():
        return AdminDecision(granted=True, tier=TIER_ADMIN_EMAIL)
    if email and email in {entry.lower() for entry in load_allow_list()}:
        return AdminDecision(granted=True, tier=TIER_ALLOW_LIST)
    return AdminDecision(granted=False)


class RoleResolver:
    """Admin checks plus the only writer of role claims and mirrored profiles."""

    def __init__(
        self,
        provider: IdentityProvider,
        store: DocumentStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    def _lookup_user(self, uid: str) -> ProviderUser:
        try:
            return self.provider.get_user(uid)
        except ProviderUserNotFound as exc:
            raise NotFoundError("user not found") from exc
        except ProviderError as exc:
            self.logger.error("admin_lookup_failed", user_id=uid, error=str(exc))
            raise ServerError("failed to verify admin status") from exc

    def _load_allow_list(self) -> List[str]:
        try:
            doc = self.store.get(ACCESS_CONTROL, ADMIN_ALLOW_LIST_DOC)
        except StoreError as exc:
            self.logger.error("admin_allow_list_read_failed", error=str(exc))
            raise ServerError("failed to verify admin status") from exc
        return list((doc or {}).get("emails") or [])

    def _admin_claims(self, user: ProviderUser) -> dict:
        claims = dict(user.custom_claims)
        claims[ROLE_CLAIM] = Role.ADMIN.value
        claims[ADMIN_CLAIM] = True
        claims[UPDATED_AT_CLAIM] = self._clock().isoformat()
        return claims

    def reconcile(self, decision: AdminDecision, user: ProviderUser) -> None:
        """Write back admin claims after a lower-tier grant.

        Failures are logged and never raised; the grant already stands.
        """
        if not decision.needs_reconcile:
            return
        now = self._clock()
        try:
            self.provider.set_custom_claims(user.uid, self._admin_claims(user))
        except ProviderError as exc:
            self.logger.error(
                "admin_reconcile_failed", user_id=user.uid, target="claims", error=str(exc)
            )
        if decision.tier != TIER_ADMIN_EMAIL:
            return
        try:
            self.store.set(
                USERS,
                user.uid,
                {
                    "email": user.email,
                    "role": Role.ADMIN.value,
                    "is_admin": True,
                    "updated_at": now,
                },
                merge=True,
            )
        except StoreError as exc:
            self.logger.error(
                "admin_reconcile_failed", user_id=user.uid, target="profile", error=str(exc)
            )
        try:
            self.store.array_union(
                ACCESS_CONTROL,
                ADMIN_ALLOW_LIST_DOC,
                "emails",
                [user.email],
                extra={"updated_at": now},
            )
        except StoreError as exc:
            self.logger.error(
                "admin_reconcile_failed", user_id=user.uid, target="allow_list", error=str(exc)
            )

    def require_admin(self, identity: Identity) -> ProviderUser:
        user = self._lookup_user(identity.uid)
        decision = decide_admin(user, self.settings.admin_email, self._load_allow_list)
        if not decision.granted:
            self.logger.info("admin_access_denied", user_id=identity.uid)
            raise ForbiddenError("admin access required")
        if decision.needs_reconcile:
            self.logger.info("admin_claims_self_heal", user_id=user.uid, tier=decision.tier)
            self.reconcile(decision, user)
        return user

    def require_capabilities(
        self, identity: Identity, capabilities: Sequence[str]
    ) -> ProviderUser:
        user = self.require_admin(identity)
        try:
            profile = self.store.get(USERS, user.uid) or {}
        except StoreError as exc:
            self.logger.error("capability_lookup_failed", user_id=user.uid, error=str(exc))
            raise ServerError("failed to verify capabilities") from exc
        granted = set(UserProfile.from_doc(user.uid, profile).capabilities)
        missing = [cap for cap in capabilities if cap not in granted]
        if missing:
            raise ForbiddenError(
                "insufficient capabilities",
                detail={"required": list(capabilities), "missing": missing},
            )
        return user

    def is_admin(self, uid: str) -> bool:
        """Non-raising admin check that never writes."""
        try:
            user = self.provider.get_user(uid)
            return decide_admin(user, self.settings.admin_email, self._load_allow_list).granted
        except (ProviderError, ServerError) as exc:
            self.logger.warning("admin_status_check_failed", user_id=uid, error=str(exc))
            return False

    def assign_role(self, uid: str, role: Role) -> None:
        """Set the role in provider claims and the mirrored profile record."""
        user = self._lookup_user(uid)
        claims = dict(user.custom_claims)
        claims[ROLE_CLAIM] = role.value
        claims[ADMIN_CLAIM] = role is Role.ADMIN
        claims[UPDATED_AT_CLAIM] = self._clock().isoformat()
        try:
            self.provider.set_custom_claims(uid, claims)
        except ProviderError as exc:
            self.logger.error("role_claims_write_failed", user_id=uid, error=str(exc))
            raise ServerError("failed to update role") from exc
        try:
            self.store.set(
                USERS,
                uid,
                {
                    "email": user.email,
                    "role": role.value,
                    "is_admin": role is Role.ADMIN,
                    "updated_at": self._clock(),
                },
                merge=True,
            )
        except StoreError as exc:
            # Claims are authoritative; the profile converges on the next write
            self.logger.error("role_profile_write_failed", user_id=uid, error=str(exc))
        self.logger.info("role_assigned", user_id=uid, role=role.value)


__all__ = [
    "AdminDecision",
    "RoleResolver",
    "decide_admin",
    "TIER_CLAIMS",
    "TIER_ADMIN_EMAIL",
    "TIER_ALLOW_LIST",
]
