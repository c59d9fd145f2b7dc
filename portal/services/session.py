# portal/services/session.py
"""
Session / identity gate.

The identity provider pushes identity changes into the gate. The first push
marks the gate *ready*; from then on every caller, whether it started waiting
before or after that moment, resolves from the cached state. The ready signal
is a one-shot broadcast (threading.Event), so there is no callback list and
no polling.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import MutableMapping, Tuple

GOOGLE_PROVIDER = "google.com"
PASSWORD_PROVIDER = "password"

# Legacy cross-page key (kept in a cookie by the HTTP layer)
LEGACY_USER_ID_KEY = "elPasoUserId"


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None
    email_verified: bool = False
    provider: str = PASSWORD_PROVIDER
    provider_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_google(self) -> bool:
        return self.provider == GOOGLE_PROVIDER or GOOGLE_PROVIDER in self.provider_ids

    @property
    def is_verified(self) -> bool:
        # Google sign-ins count as verified for gating purposes
        return bool(self.email_verified) or self.is_google


class IdentityGate:
    def __init__(self, legacy_cache: MutableMapping[str, str] | None = None,
                 provider_available: bool = True):
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._identity: Identity | None = None
        self._legacy = legacy_cache if legacy_cache is not None else {}
        self.provider_available = provider_available
        if not provider_available:
            # never hang: unconfigured provider → ready, unauthenticated
            self._ready.set()

    @classmethod
    def unconfigured(cls, legacy_cache: MutableMapping[str, str] | None = None) -> "IdentityGate":
        return cls(legacy_cache=legacy_cache, provider_available=False)

    # provider push subscription
    def on_identity_changed(self, identity: Identity | None) -> None:
        with self._lock:
            self._identity = identity
            if identity is not None:
                self._legacy[LEGACY_USER_ID_KEY] = identity.id
        self._ready.set()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def await_ready(self, timeout: float | None = None) -> bool:
        """Block until the first identity callback; True iff an identity is present."""
        if not self._ready.wait(timeout):
            return False
        return self.is_authenticated()

    def current_identity(self) -> Identity | None:
        return self._identity

    def is_authenticated(self) -> bool:
        return self._identity is not None

    def is_verified(self) -> bool:
        ident = self._identity
        return bool(ident and ident.is_verified)

    def current_user_id(self) -> str | None:
        if self._identity is not None:
            return self._identity.id
        if not self.provider_available:
            return self._legacy.get(LEGACY_USER_ID_KEY)
        return None

    def current_email(self) -> str | None:
        return self._identity.email if self._identity else None

    def display_name(self, custom: str | None = None) -> str:
        """Custom name → email prefix → Pioneer_<id tail> → Anonymous Pioneer."""
        if custom and custom.strip():
            return custom.strip()
        email = self.current_email()
        if email:
            return email.split("@")[0]
        uid = self.current_user_id()
        if uid:
            return f"Pioneer_{uid[-6:].upper()}"
        return "Anonymous Pioneer"
