import datetime as dt
from functools import lru_cache

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer

from portal.core.config import settings
from portal.services.identity import FirebaseAuthProvider
from portal.services.session import LEGACY_USER_ID_KEY, Identity, IdentityGate

bearer = HTTPBearer(auto_error=False)

LEGACY_COOKIE = LEGACY_USER_ID_KEY


def _sign(identity: Identity, ttl_h: int | None = None) -> str:
    payload = {
        "sub": identity.id,
        "email": identity.email,
        "email_verified": bool(identity.email_verified),
        "provider": identity.provider,
        "exp": dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=ttl_h or settings.access_ttl_h),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def _decode(token: str) -> Identity:
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_alg],
        leeway=30,              # clock skew cushion
        options={"require": ["exp", "sub"]},
    )
    return Identity(
        id=payload["sub"],
        email=payload.get("email"),
        email_verified=bool(payload.get("email_verified")),
        provider=payload.get("provider") or "password",
    )


@lru_cache(maxsize=1)
def get_auth_provider() -> FirebaseAuthProvider | None:
    return FirebaseAuthProvider() if settings.firebase_enabled else None


def get_identity_gate(request: Request, cred=Depends(bearer),
                      provider=Depends(get_auth_provider)) -> IdentityGate:
    """Resolve the request's session into a ready gate (never raises)."""
    legacy = {LEGACY_COOKIE: request.cookies[LEGACY_COOKIE]} if LEGACY_COOKIE in request.cookies else {}
    if provider is None:
        return IdentityGate.unconfigured(legacy)

    gate = IdentityGate(legacy_cache=legacy)
    identity = None
    if cred and cred.credentials:
        try:
            identity = _decode(cred.credentials)
            request.state.user_id = identity.id
        except jwt.InvalidTokenError:
            identity = None
    gate.on_identity_changed(identity)
    return gate


def require_identity(gate: IdentityGate = Depends(get_identity_gate)) -> Identity:
    if not gate.await_ready(timeout=0) or gate.current_identity() is None:
        raise HTTPException(401, {"error": "Not signed in", "redirect": "login"})
    return gate.current_identity()


def require_verified(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_verified:
        raise HTTPException(403, {"error": "Email not verified", "redirect": "login?verify=pending"})
    return identity
