# portal/services/fraud_signals.py
"""
Signup protection: the signals that decide whether a new account may sign up
and whether it is eligible for the PASO signup bonus.

  1. Disposable email domain blocking (exact domain match)
  2. IP-based rate limiting over `signupAttempts`
  3. Device fingerprinting from browser-reported traits
  4. reCAPTCHA verification

No single signal is authoritative. Each one fails open on infrastructure
errors: a flaky lookup degrades to "allow / eligible", never to "block".
"""
from __future__ import annotations

import datetime as _dt
import hashlib
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field
from google.cloud.firestore_v1 import FieldFilter

from portal.core.config import settings
from portal.services import events
from portal.services.disposable_domains import DISPOSABLE_EMAIL_DOMAINS
from portal.services.store import C_SIGNUPS, C_USERS, _as_utc, _fs_safe, _server_ts, _utc_now

log = logging.getLogger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"

MSG_DISPOSABLE = "Please use a permanent email address. Temporary or disposable emails are not allowed."
MSG_RECAPTCHA = "Please complete the reCAPTCHA verification."
MSG_RATE_LIMITED = "Too many signup attempts from your location. Please try again later."


# ───────────────────────── Verdicts ─────────────────────────
@dataclass(frozen=True)
class RateLimitVerdict:
    allowed: bool
    remaining: int
    current_count: int = 0


@dataclass(frozen=True)
class FingerprintVerdict:
    is_new: bool
    existing_email: Optional[str] = None


@dataclass(frozen=True)
class BonusVerdict:
    """What the credit ledger records on the new account."""
    eligible: bool
    fingerprint: Optional[str] = None


NOT_ELIGIBLE = BonusVerdict(eligible=False, fingerprint=None)


@dataclass
class SignupVerdict:
    valid: bool = True
    error: Optional[str] = None
    reason: Optional[str] = None
    fingerprint: Optional[str] = None
    ip: Optional[str] = None
    bonus_eligible: bool = True

    @property
    def bonus_verdict(self) -> BonusVerdict:
        return BonusVerdict(eligible=self.valid and self.bonus_eligible, fingerprint=self.fingerprint)


# ───────────────────────── Device fingerprint ─────────────────────────
class DeviceTraits(BaseModel):
    """Browser/environment characteristics, in fingerprint order."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    screen_width: int = Field(0, alias="screenWidth")
    screen_height: int = Field(0, alias="screenHeight")
    color_depth: Optional[int] = Field(None, alias="colorDepth")
    pixel_depth: Optional[int] = Field(None, alias="pixelDepth")
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = Field(None, alias="timezoneOffset")
    language: Optional[str] = None
    languages: Tuple[str, ...] = ()
    platform: Optional[str] = None
    hardware_concurrency: Optional[int] = Field(None, alias="hardwareConcurrency")
    device_memory: Optional[float] = Field(None, alias="deviceMemory")
    cookie_enabled: bool = Field(False, alias="cookieEnabled")
    local_storage: bool = Field(False, alias="localStorage")
    session_storage: bool = Field(False, alias="sessionStorage")
    indexed_db: bool = Field(False, alias="indexedDB")
    webgl_vendor: Optional[str] = Field(None, alias="webglVendor")
    webgl_renderer: Optional[str] = Field(None, alias="webglRenderer")
    canvas_digest: Optional[str] = Field(None, alias="canvasDigest")


def _component(v) -> str:
    if v is None:
        return "unknown"
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


@lru_cache(maxsize=1024)
def fingerprint_device(traits: DeviceTraits) -> str:
    """SHA-256 over the fixed, ordered trait list (memoized per trait set)."""
    components = [
        f"{traits.screen_width}x{traits.screen_height}",
        _component(traits.color_depth),
        _component(traits.pixel_depth),
        _component(traits.timezone),
        _component(traits.timezone_offset),
        _component(traits.language),
        ",".join(traits.languages),
        _component(traits.platform),
        _component(traits.hardware_concurrency),
        _component(traits.device_memory),
        _component(traits.cookie_enabled),
        _component(traits.local_storage),
        _component(traits.session_storage),
        _component(traits.indexed_db),
    ]
    # WebGL renderer is only present when the browser exposes the debug extension
    if traits.webgl_vendor or traits.webgl_renderer:
        components += [_component(traits.webgl_vendor), _component(traits.webgl_renderer)]
    components.append(traits.canvas_digest or "canvas-error")
    return hashlib.sha256("|||".join(components).encode("utf-8")).hexdigest()


# ───────────────────────── Email ─────────────────────────
def is_disposable_email(email: str | None) -> bool:
    if not email or not isinstance(email, str) or "@" not in email:
        return False
    domain = email.strip().lower().rsplit("@", 1)[1]
    if not domain:
        return False
    return domain in DISPOSABLE_EMAIL_DOMAINS


def client_ip(headers, fallback: str | None = None) -> str | None:
    """First X-Forwarded-For hop (Cloud Run / LB), else the socket peer."""
    fwd = headers.get("x-forwarded-for") if headers else None
    if fwd:
        first = fwd.split(",")[0].strip()
        if first:
            return first
    return fallback


# ───────────────────────── Collector ─────────────────────────
class FraudSignalCollector:
    def __init__(self, db, bus: events.EventBus | None = None, http=None,
                 max_signups_per_ip: int | None = None, window_hours: int | None = None,
                 recaptcha_secret: str | None = None, timeout: float | None = None):
        self.db = db
        self.bus = bus or events.NullBus()
        self._http = http or requests
        self.max_signups_per_ip = max_signups_per_ip if max_signups_per_ip is not None else settings.max_signups_per_ip
        self.window_hours = window_hours if window_hours is not None else settings.signup_window_hours
        self.recaptcha_secret = recaptcha_secret if recaptcha_secret is not None else settings.recaptcha_secret
        self.timeout = timeout if timeout is not None else settings.http_timeout_s

    is_disposable_email = staticmethod(is_disposable_email)
    fingerprint_device = staticmethod(fingerprint_device)

    # ───────── IP rate limit ─────────
    def _count_attempts(self, ip: str, window_start: _dt.datetime) -> int:
        col = self.db.collection(C_SIGNUPS)
        try:
            snaps = (
                col.where(filter=FieldFilter("ip", "==", ip))
                   .where(filter=FieldFilter("timestamp", ">", window_start))
                   .get(timeout=self.timeout)
            )
            return len(snaps)
        except Exception as e:
            # Composite (ip, timestamp) index may still be building
            log.warning("[signup] rate-limit index query failed, filtering in memory: %s", e)
        snaps = col.where(filter=FieldFilter("ip", "==", ip)).get(timeout=self.timeout)
        count = 0
        for s in snaps:
            ts = _as_utc((s.to_dict() or {}).get("timestamp"))
            if ts is not None and ts > window_start:
                count += 1
        return count

    def check_ip_rate_limit(self, ip: str | None) -> RateLimitVerdict:
        cap = self.max_signups_per_ip
        if not ip or self.db is None:
            return RateLimitVerdict(allowed=True, remaining=cap)

        window_start = _utc_now() - _dt.timedelta(hours=self.window_hours)
        try:
            count = self._count_attempts(ip, window_start)
        except Exception as e:
            # Allow on error to not block legitimate users
            log.warning("[signup] rate-limit lookup failed for %s, allowing: %s", ip, e)
            return RateLimitVerdict(allowed=True, remaining=cap)

        return RateLimitVerdict(
            allowed=count < cap,
            remaining=max(0, cap - count),
            current_count=count,
        )

    def record_attempt(self, ip: str | None, email: str | None, fingerprint: str | None = None,
                       user_agent: str | None = None) -> bool:
        if self.db is None:
            return False
        try:
            self.db.collection(C_SIGNUPS).add(_fs_safe({
                "ip": ip or "unknown",
                "email": email,
                "fingerprint": fingerprint,
                "timestamp": _server_ts(),
                "userAgent": user_agent,
            }))
        except Exception as e:
            log.error("[signup] failed to record signup attempt: %s", e)
            return False
        self.bus.emit(events.SIGNUP_ATTEMPT, ip=ip, email=email, fingerprint=fingerprint)
        return True

    # ───────── Device fingerprint ─────────
    def is_fingerprint_reused(self, fingerprint: str | None) -> FingerprintVerdict:
        if not fingerprint or self.db is None:
            return FingerprintVerdict(is_new=True)
        try:
            snaps = (
                self.db.collection(C_USERS)
                    .where(filter=FieldFilter("deviceFingerprint", "==", fingerprint))
                    .where(filter=FieldFilter("signupBonusGranted", "==", True))
                    .limit(1)
                    .get(timeout=self.timeout)
            )
        except Exception as e:
            log.warning("[signup] fingerprint lookup failed, treating as new: %s", e)
            return FingerprintVerdict(is_new=True)
        if snaps:
            existing = snaps[0].to_dict() or {}
            return FingerprintVerdict(is_new=False, existing_email=existing.get("email"))
        return FingerprintVerdict(is_new=True)

    # ───────── reCAPTCHA ─────────
    def verify_recaptcha(self, token: str | None, ip: str | None = None) -> bool:
        if not self.recaptcha_secret:
            return True     # not configured → allow through
        if not token:
            return False
        data = {"secret": self.recaptcha_secret, "response": token}
        if ip:
            data["remoteip"] = ip
        try:
            resp = self._http.post(RECAPTCHA_VERIFY_URL, data=data, timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("[signup] reCAPTCHA verification unavailable, allowing: %s", e)
            return True
        return bool(body.get("success"))

    # ───────── Combined verdict ─────────
    def validate_signup_attempt(self, email: str, ip: str | None = None,
                                traits: DeviceTraits | None = None,
                                recaptcha_token: str | None = None) -> SignupVerdict:
        result = SignupVerdict(ip=ip)

        if self.is_disposable_email(email):
            result.valid = False
            result.reason = "disposable_email"
            result.error = MSG_DISPOSABLE
            return result

        if not self.verify_recaptcha(recaptcha_token, ip):
            result.valid = False
            result.reason = "recaptcha_failed"
            result.error = MSG_RECAPTCHA
            return result

        if ip:
            ip_check = self.check_ip_rate_limit(ip)
            if not ip_check.allowed:
                result.valid = False
                result.reason = "rate_limited"
                result.error = MSG_RATE_LIMITED
                return result

        if traits is not None:
            result.fingerprint = self.fingerprint_device(traits)
            fp_check = self.is_fingerprint_reused(result.fingerprint)
            if not fp_check.is_new:
                # Don't block signup, but no second bonus from this device
                result.bonus_eligible = False
                log.info("[signup] device fingerprint already used for a signup bonus")

        return result
