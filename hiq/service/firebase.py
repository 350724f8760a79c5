from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

import firebase_admin
from firebase_admin import auth, credentials, exceptions as firebase_exceptions, firestore

from hiq.config import Settings
from hiq.logging import get_logger
from hiq.service.identity import (
    ProviderConflict,
    ProviderError,
    ProviderInvalidArgument,
    ProviderTokenInvalid,
    ProviderUnavailable,
    ProviderUser,
    ProviderUserNotFound,
)

logger = get_logger(__name__)

APP_NAME = "hiq"


def initialize_firebase(settings: Settings) -> firebase_admin.App:
    """Create the named firebase_admin app from service-account settings.

    Falls back to application default credentials when neither a path nor
    inline JSON is configured.
    """
    try:
        return firebase_admin.get_app(APP_NAME)
    except ValueError:
        pass
    if settings.firebase_credentials_json:
        cred = credentials.Certificate(json.loads(settings.firebase_credentials_json))
    elif settings.firebase_credentials_path:
        cred = credentials.Certificate(settings.firebase_credentials_path)
    else:
        cred = credentials.ApplicationDefault()
    options: Dict[str, Any] = {}
    if settings.firebase_project_id:
        options["projectId"] = settings.firebase_project_id
    app = firebase_admin.initialize_app(cred, options or None, name=APP_NAME)
    logger.info("firebase_initialized", project_id=app.project_id)
    return app


def close_firebase(app: firebase_admin.App) -> None:
    firebase_admin.delete_app(app)
    logger.info("firebase_closed")


def firestore_client(app: firebase_admin.App) -> firestore.Client:
    return firestore.client(app)


def _to_provider_user(record: auth.UserRecord) -> ProviderUser:
    return ProviderUser(
        uid=record.uid,
        email=record.email.lower() if record.email else None,
        email_verified=bool(record.email_verified),
        display_name=record.display_name,
        disabled=bool(record.disabled),
        custom_claims=dict(record.custom_claims or {}),
    )


class FirebaseIdentityProvider:
    """IdentityProvider backed by Firebase Authentication."""

    def __init__(self, app: firebase_admin.App) -> None:
        self.app = app

    def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            return auth.verify_id_token(token, app=self.app, check_revoked=True)
        except auth.CertificateFetchError as exc:
            raise ProviderUnavailable("could not fetch signing certificates") from exc
        except (auth.InvalidIdTokenError, auth.UserDisabledError, ValueError) as exc:
            raise ProviderTokenInvalid(type(exc).__name__) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc

    def get_user(self, uid: str) -> ProviderUser:
        try:
            return _to_provider_user(auth.get_user(uid, app=self.app))
        except auth.UserNotFoundError as exc:
            raise ProviderUserNotFound(uid) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc

    def get_user_by_email(self, email: str) -> ProviderUser:
        try:
            return _to_provider_user(auth.get_user_by_email(email, app=self.app))
        except auth.UserNotFoundError as exc:
            raise ProviderUserNotFound(email) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc

    def set_custom_claims(self, uid: str, claims: Mapping[str, Any]) -> None:
        try:
            auth.set_custom_user_claims(uid, dict(claims), app=self.app)
        except auth.UserNotFoundError as exc:
            raise ProviderUserNotFound(uid) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc

    def create_user(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        email_verified: bool = False,
    ) -> ProviderUser:
        try:
            record = auth.create_user(
                email=email,
                password=password,
                display_name=display_name or None,
                email_verified=email_verified,
                app=self.app,
            )
        except auth.EmailAlreadyExistsError as exc:
            raise ProviderConflict("email already exists") from exc
        except ValueError as exc:
            # Raised locally for malformed email or weak password
            raise ProviderInvalidArgument(str(exc)) from exc
        except firebase_exceptions.InvalidArgumentError as exc:
            raise ProviderInvalidArgument(str(exc)) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc
        return _to_provider_user(record)

    def delete_user(self, uid: str) -> None:
        try:
            auth.delete_user(uid, app=self.app)
        except auth.UserNotFoundError as exc:
            raise ProviderUserNotFound(uid) from exc
        except firebase_exceptions.FirebaseError as exc:
            raise ProviderError(str(exc)) from exc


__all__ = [
    "FirebaseIdentityProvider",
    "initialize_firebase",
    "close_firebase",
    "firestore_client",
]
