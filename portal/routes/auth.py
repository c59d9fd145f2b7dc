# portal/routes/auth.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, EmailStr, Field

from portal.core.config import settings
from portal.routes.deps import get_ledger, get_onboarding
from portal.services.auth import LEGACY_COOKIE, _sign, get_identity_gate, require_identity
from portal.services.fraud_signals import DeviceTraits, client_ip
from portal.services.identity import AuthError
from portal.services.ledger import CreditLedger
from portal.services.onboarding import Onboarding
from portal.services.session import Identity, IdentityGate

router = APIRouter(prefix="/auth", tags=["auth"])

# codes that mean "who are you?" rather than "bad input"
_UNAUTHORIZED = {"auth/invalid-credential", "auth/user-disabled"}


class SignupIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    displayName: Optional[str] = Field(None, max_length=40)
    recaptchaToken: Optional[str] = None
    device: Optional[DeviceTraits] = None


class IdTokenIn(BaseModel):
    idToken: str
    displayName: Optional[str] = Field(None, max_length=40)
    device: Optional[DeviceTraits] = None


class ResendIn(BaseModel):
    idToken: str


class ResetIn(BaseModel):
    email: EmailStr


class DisplayNameIn(BaseModel):
    displayName: str = Field(..., min_length=1, max_length=40)


def _auth_http_error(e: AuthError) -> HTTPException:
    status = 401 if e.code in _UNAUTHORIZED else 503 if e.code == "auth/not-configured" else 400
    return HTTPException(status, {"code": e.code, "error": e.message})


def _peer(request: Request) -> Optional[str]:
    return client_ip(request.headers, request.client.host if request.client else None)


@router.post("/signup")
def signup(data: SignupIn, request: Request, onboarding: Onboarding = Depends(get_onboarding)):
    try:
        out = onboarding.signup(
            data.email, data.password, data.displayName,
            ip=_peer(request), traits=data.device, recaptcha_token=data.recaptchaToken,
            user_agent=request.headers.get("user-agent"),
        )
    except AuthError as e:
        raise _auth_http_error(e)

    if not out.ok:
        status = 429 if out.reason == "rate_limited" else 400
        raise HTTPException(status, {"code": out.reason, "error": out.error})

    resp = {"ok": True, "userId": out.user_id,
            "verificationSent": bool(out.email.get("ok")), "redirect": "login?verify=pending"}
    if out.email.get("link"):
        resp["verificationLink"] = out.email["link"]
    return resp


@router.post("/firebase")
def firebase_login(data: IdTokenIn, request: Request, response: Response,
                   onboarding: Onboarding = Depends(get_onboarding)):
    try:
        out = onboarding.sign_in(
            data.idToken, data.displayName, ip=_peer(request), traits=data.device,
            user_agent=request.headers.get("user-agent"),
        )
    except AuthError as e:
        raise _auth_http_error(e)

    if out.needs_verification:
        return {"ok": False, "needsVerification": True, "email": out.identity.email,
                "redirect": "login?verify=pending"}

    response.set_cookie(LEGACY_COOKIE, out.identity.id, httponly=True, samesite="lax")
    return {
        "ok": True,
        "token": _sign(out.identity),
        "userId": out.identity.id,
        "created": out.created,
        "bonusGranted": out.bonus_granted,
        "bonusAmount": settings.signup_bonus if out.bonus_granted else 0,
        "balance": out.balance,
    }


@router.post("/resend-verification")
def resend_verification(data: ResendIn, onboarding: Onboarding = Depends(get_onboarding)):
    try:
        return onboarding.resend_verification(data.idToken)
    except AuthError as e:
        raise _auth_http_error(e)


@router.post("/password-reset")
def password_reset(data: ResetIn, onboarding: Onboarding = Depends(get_onboarding)):
    try:
        return onboarding.send_password_reset(data.email)
    except AuthError as e:
        raise _auth_http_error(e)


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(LEGACY_COOKIE)
    return {"ok": True, "redirect": "index"}


@router.get("/session")
def session(gate: IdentityGate = Depends(get_identity_gate),
            ledger: CreditLedger = Depends(get_ledger)):
    uid = gate.current_user_id()
    account = ledger.get_account(uid) if uid else None
    return {
        "authenticated": gate.is_authenticated(),
        "verified": gate.is_verified(),
        "userId": uid,
        "email": gate.current_email(),
        "displayName": gate.display_name((account or {}).get("displayName")),
    }


@router.put("/display-name")
def set_display_name(data: DisplayNameIn, identity: Identity = Depends(require_identity),
                     ledger: CreditLedger = Depends(get_ledger)):
    if not ledger.set_display_name(identity.id, data.displayName):
        raise HTTPException(404, "Account not found")
    return {"ok": True, "displayName": data.displayName.strip()}
