# portal/services/identity.py
"""
Firebase Auth adapter. The rest of the portal only sees `Identity` values and
`AuthError` codes; firebase_admin stays behind this module.
"""
from __future__ import annotations

import logging
import os
import threading

import firebase_admin
from firebase_admin import auth as fb_auth, credentials
from firebase_admin import exceptions as fb_exceptions

from portal.core.config import settings
from portal.services.session import Identity, PASSWORD_PROVIDER

log = logging.getLogger(__name__)

# Same user-facing wording the portal pages have always shown
AUTH_ERROR_MESSAGES = {
    "auth/email-already-in-use": "This email is already registered. Please sign in instead.",
    "auth/invalid-email": "Please enter a valid email address.",
    "auth/weak-password": "Password should be at least 6 characters.",
    "auth/operation-not-allowed": "Email/password accounts are not enabled. Please contact the administrator.",
    "auth/user-disabled": "This account has been disabled. Please contact the administrator.",
    "auth/user-not-found": "No account found with this email. Please sign up first.",
    "auth/invalid-credential": "Invalid email or password. Please try again.",
    "auth/too-many-requests": "Too many failed attempts. Please try again later.",
    "auth/not-configured": "Firebase not configured. Please contact the administrator.",
}


class AuthError(Exception):
    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or AUTH_ERROR_MESSAGES.get(code, "An error occurred during sign in.")
        super().__init__(self.message)


_init_lock = threading.Lock()


def _ensure_firebase_app():
    with _init_lock:
        try:
            return firebase_admin.get_app()
        except ValueError:
            pass
        service_account_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if service_account_path and os.path.exists(service_account_path):
            cred = credentials.Certificate(service_account_path)
            log.info("[firebase] Admin SDK initialized with service account: %s", service_account_path)
        else:
            cred = credentials.ApplicationDefault()
            log.info("[firebase] Admin SDK initialized with Application Default Credentials")
        options = {"projectId": settings.gcp_project} if settings.gcp_project else None
        return firebase_admin.initialize_app(cred, options)


def identity_from_claims(decoded: dict) -> Identity:
    fb = decoded.get("firebase") or {}
    provider = fb.get("sign_in_provider") or PASSWORD_PROVIDER
    identities = tuple((fb.get("identities") or {}).keys())
    return Identity(
        id=decoded["uid"],
        email=(decoded.get("email") or "").lower() or None,
        email_verified=bool(decoded.get("email_verified")),
        provider=provider,
        provider_ids=identities,
    )


class FirebaseAuthProvider:
    """Thin wrapper over firebase_admin.auth (lazy app init)."""

    def __init__(self):
        self._app = None

    @property
    def app(self):
        if self._app is None:
            self._app = _ensure_firebase_app()
        return self._app

    def verify_id_token(self, id_token: str) -> Identity:
        try:
            decoded = fb_auth.verify_id_token(id_token, app=self.app)
        except fb_auth.UserDisabledError as e:
            raise AuthError("auth/user-disabled") from e
        except Exception as e:
            log.info("[firebase] ID token verification failed: %s", e)
            raise AuthError("auth/invalid-credential") from e
        return identity_from_claims(decoded)

    def create_user(self, email: str, password: str, display_name: str | None = None) -> Identity:
        try:
            rec = fb_auth.create_user(
                email=email, password=password,
                display_name=display_name or None, app=self.app,
            )
        except fb_auth.EmailAlreadyExistsError as e:
            raise AuthError("auth/email-already-in-use") from e
        except ValueError as e:
            msg = str(e).lower()
            raise AuthError("auth/weak-password" if "password" in msg else "auth/invalid-email") from e
        except fb_exceptions.FirebaseError as e:
            log.error("[firebase] create_user failed: %s", e)
            raise AuthError("auth/operation-not-allowed") from e
        return Identity(id=rec.uid, email=(rec.email or email).lower(),
                        email_verified=bool(rec.email_verified), provider=PASSWORD_PROVIDER)

    def generate_verification_link(self, email: str, continue_url: str | None = None) -> str:
        acs = fb_auth.ActionCodeSettings(url=continue_url) if continue_url else None
        try:
            return fb_auth.generate_email_verification_link(email, acs, app=self.app)
        except fb_auth.UserNotFoundError as e:
            raise AuthError("auth/user-not-found") from e
        except fb_exceptions.FirebaseError as e:
            log.error("[firebase] verification link failed for %s: %s", email, e)
            raise AuthError("auth/too-many-requests") from e

    def generate_password_reset_link(self, email: str, continue_url: str | None = None) -> str:
        acs = fb_auth.ActionCodeSettings(url=continue_url) if continue_url else None
        try:
            return fb_auth.generate_password_reset_link(email, acs, app=self.app)
        except fb_auth.UserNotFoundError as e:
            raise AuthError("auth/user-not-found", "No account found with this email address.") from e
        except ValueError as e:
            raise AuthError("auth/invalid-email") from e

    def revoke_sessions(self, uid: str) -> None:
        fb_auth.revoke_refresh_tokens(uid, app=self.app)
