import datetime as _dt

import pytest
import requests

from conftest import FakeFirestore
from portal.services import events
from portal.services.fraud_signals import (
    MSG_DISPOSABLE, MSG_RATE_LIMITED, DeviceTraits, FraudSignalCollector,
    client_ip, fingerprint_device, is_disposable_email,
)
from portal.services.store import C_SIGNUPS, C_USERS


def _ago(**kw):
    return _dt.datetime.now(_dt.timezone.utc) - _dt.timedelta(**kw)


TRAITS = DeviceTraits(
    screenWidth=1920, screenHeight=1080, colorDepth=24, pixelDepth=24,
    timezone="America/Denver", timezoneOffset=360, language="en-US",
    languages=("en-US", "en"), platform="MacIntel", hardwareConcurrency=8,
    deviceMemory=8, cookieEnabled=True, localStorage=True, sessionStorage=True,
    indexedDB=True, webglVendor="Apple", webglRenderer="Apple M1", canvasDigest="abc123",
)


class FakeResponse:
    def __init__(self, body):
        self._body = body

    def json(self):
        return self._body


class FakeHttp:
    def __init__(self, body=None, exc=None):
        self.body = body
        self.exc = exc
        self.calls = []

    def post(self, url, data=None, timeout=None, **kw):
        self.calls.append((url, data, timeout))
        if self.exc:
            raise self.exc
        return FakeResponse(self.body)


# ───────── disposable email ─────────
@pytest.mark.parametrize("email,expected", [
    ("user@mailinator.com", True),
    ("user@MAILINATOR.COM", True),
    ("  someone@Guerrillamail.com ", True),
    ("user@mailinator.com.legit.org", False),
    ("user@sub.mailinator.com", False),
    ("user@gmail.com", False),
    ("not-an-email", False),
    ("", False),
    (None, False),
])
def test_disposable_domain_is_exact_match(email, expected):
    assert is_disposable_email(email) is expected


# ───────── IP rate limit ─────────
def test_rate_limit_blocks_fourth_attempt_in_window(db):
    for h in (1, 2, 3):
        db.put(C_SIGNUPS, f"a{h}", {"ip": "1.2.3.4", "timestamp": _ago(hours=h)})
    c = FraudSignalCollector(db)

    verdict = c.check_ip_rate_limit("1.2.3.4")
    assert verdict.allowed is False
    assert verdict.remaining == 0
    assert verdict.current_count == 3


def test_rate_limit_ignores_attempts_outside_window(db):
    db.put(C_SIGNUPS, "a1", {"ip": "1.2.3.4", "timestamp": _ago(hours=1)})
    db.put(C_SIGNUPS, "a2", {"ip": "1.2.3.4", "timestamp": _ago(hours=2)})
    db.put(C_SIGNUPS, "old", {"ip": "1.2.3.4", "timestamp": _ago(hours=25)})
    db.put(C_SIGNUPS, "other", {"ip": "9.9.9.9", "timestamp": _ago(hours=1)})
    c = FraudSignalCollector(db)

    verdict = c.check_ip_rate_limit("1.2.3.4")
    assert verdict.allowed is True
    assert verdict.remaining == 1
    assert verdict.current_count == 2


def test_rate_limit_falls_back_while_index_builds():
    db = FakeFirestore(missing_indexes=True)
    for h in (1, 2, 3):
        db.put(C_SIGNUPS, f"a{h}", {"ip": "1.2.3.4", "timestamp": _ago(hours=h)})
    db.put(C_SIGNUPS, "old", {"ip": "1.2.3.4", "timestamp": _ago(hours=30)})

    verdict = FraudSignalCollector(db).check_ip_rate_limit("1.2.3.4")
    assert verdict.allowed is False
    assert verdict.current_count == 3


def test_rate_limit_fails_open_on_lookup_error(db):
    db.fail.add("query")
    verdict = FraudSignalCollector(db).check_ip_rate_limit("1.2.3.4")
    assert verdict.allowed is True
    assert verdict.remaining == 3


def test_rate_limit_without_ip_or_db_allows():
    assert FraudSignalCollector(None).check_ip_rate_limit("1.2.3.4").allowed
    assert FraudSignalCollector(FakeFirestore()).check_ip_rate_limit(None).allowed


def test_record_attempt_appends_and_emits(db, bus):
    c = FraudSignalCollector(db, bus)
    assert c.record_attempt("1.2.3.4", "a@example.com", "fp1", "UA/1.0")

    rows = list(db.docs(C_SIGNUPS).values())
    assert len(rows) == 1
    assert rows[0]["ip"] == "1.2.3.4"
    assert rows[0]["fingerprint"] == "fp1"
    assert isinstance(rows[0]["timestamp"], _dt.datetime)
    assert len(bus.of(events.SIGNUP_ATTEMPT)) == 1


def test_record_attempt_swallows_write_errors(db):
    db.fail.add("write")
    assert FraudSignalCollector(db).record_attempt("1.2.3.4", "a@example.com") is False


# ───────── fingerprint ─────────
def test_fingerprint_is_stable_sha256():
    fp = fingerprint_device(TRAITS)
    assert fp == fingerprint_device(TRAITS.model_copy())
    assert len(fp) == 64
    int(fp, 16)


def test_fingerprint_changes_with_traits():
    other = TRAITS.model_copy(update={"screen_width": 1280})
    assert fingerprint_device(other) != fingerprint_device(TRAITS)


def test_fingerprint_reuse_only_counts_granted_accounts(db):
    fp = fingerprint_device(TRAITS)
    c = FraudSignalCollector(db)
    db.put(C_USERS, "u1", {"email": "a@example.com", "deviceFingerprint": fp, "signupBonusGranted": False})
    assert c.is_fingerprint_reused(fp).is_new is True

    db.put(C_USERS, "u2", {"email": "b@example.com", "deviceFingerprint": fp, "signupBonusGranted": True})
    verdict = c.is_fingerprint_reused(fp)
    assert verdict.is_new is False
    assert verdict.existing_email == "b@example.com"


def test_fingerprint_lookup_fails_open(db):
    db.fail.add("query")
    assert FraudSignalCollector(db).is_fingerprint_reused("abc").is_new is True


# ───────── reCAPTCHA ─────────
def test_recaptcha_not_configured_allows():
    http = FakeHttp({"success": False})
    assert FraudSignalCollector(None, http=http, recaptcha_secret="").verify_recaptcha(None)
    assert http.calls == []


def test_recaptcha_configured_requires_token():
    http = FakeHttp({"success": True})
    c = FraudSignalCollector(None, http=http, recaptcha_secret="s3cret")
    assert c.verify_recaptcha("") is False
    assert c.verify_recaptcha("tok", ip="1.2.3.4") is True
    url, data, timeout = http.calls[0]
    assert data["response"] == "tok"
    assert data["remoteip"] == "1.2.3.4"
    assert timeout is not None


def test_recaptcha_rejected_token():
    c = FraudSignalCollector(None, http=FakeHttp({"success": False}), recaptcha_secret="s3cret")
    assert c.verify_recaptcha("tok") is False


def test_recaptcha_network_error_fails_open():
    http = FakeHttp(exc=requests.Timeout("slow"))
    assert FraudSignalCollector(None, http=http, recaptcha_secret="s3cret").verify_recaptcha("tok")


# ───────── combined verdict ─────────
def test_validate_blocks_disposable_first(db):
    verdict = FraudSignalCollector(db, recaptcha_secret="").validate_signup_attempt("x@yopmail.com", "1.2.3.4")
    assert verdict.valid is False
    assert verdict.reason == "disposable_email"
    assert verdict.error == MSG_DISPOSABLE


def test_validate_blocks_rate_limited(db):
    for h in (1, 2, 3):
        db.put(C_SIGNUPS, f"a{h}", {"ip": "1.2.3.4", "timestamp": _ago(hours=h)})
    verdict = FraudSignalCollector(db, recaptcha_secret="").validate_signup_attempt("x@example.com", "1.2.3.4")
    assert verdict.valid is False
    assert verdict.reason == "rate_limited"
    assert verdict.error == MSG_RATE_LIMITED


def test_validate_reused_device_signs_up_without_bonus(db):
    fp = fingerprint_device(TRAITS)
    db.put(C_USERS, "u1", {"email": "a@example.com", "deviceFingerprint": fp, "signupBonusGranted": True})

    verdict = FraudSignalCollector(db, recaptcha_secret="").validate_signup_attempt(
        "new@example.com", "1.2.3.4", TRAITS,
    )
    assert verdict.valid is True
    assert verdict.fingerprint == fp
    assert verdict.bonus_verdict.eligible is False


def test_validate_clean_signup_is_eligible(db):
    verdict = FraudSignalCollector(db, recaptcha_secret="").validate_signup_attempt(
        "new@example.com", "1.2.3.4", TRAITS,
    )
    assert verdict.valid is True
    assert verdict.bonus_verdict.eligible is True


def test_client_ip_prefers_forwarded_for():
    assert client_ip({"x-forwarded-for": "203.0.113.5, 10.0.0.1"}, "10.0.0.2") == "203.0.113.5"
    assert client_ip({}, "10.0.0.2") == "10.0.0.2"
