# portal/services/onboarding.py
"""
Signup and sign-in pipelines.

    signup   : fraud checks -> Firebase user -> signup attempt -> account (bonus deferred) -> verification email
    sign_in  : verify ID token -> [unverified password user: stop] -> account if absent -> bonus if eligible

The bonus is only ever paid from `sign_in`, with a verified identity.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from portal.services.fraud_signals import (
    BonusVerdict, DeviceTraits, FraudSignalCollector, NOT_ELIGIBLE,
)
from portal.services.identity import AuthError
from portal.services.ledger import CreditLedger
from portal.services.mailer import Mailer, continue_url
from portal.services.session import Identity

log = logging.getLogger(__name__)


@dataclass
class SignupOutcome:
    ok: bool
    user_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    bonus_eligible: bool = False
    email: dict = field(default_factory=dict)     # mailer result (may carry the link in dev)


@dataclass
class SignInOutcome:
    identity: Identity
    needs_verification: bool = False
    created: bool = False
    bonus_granted: bool = False
    balance: int = 0


class Onboarding:
    def __init__(self, provider, collector: FraudSignalCollector, ledger: CreditLedger,
                 mailer: Mailer | None = None):
        self.provider = provider
        self.collector = collector
        self.ledger = ledger
        self.mailer = mailer or Mailer()

    def _require_provider(self):
        if self.provider is None:
            raise AuthError("auth/not-configured")
        return self.provider

    def signup(self, email: str, password: str, display_name: str | None = None,
               ip: str | None = None, traits: DeviceTraits | None = None,
               recaptcha_token: str | None = None, user_agent: str | None = None) -> SignupOutcome:
        provider = self._require_provider()
        email = (email or "").strip().lower()

        verdict = self.collector.validate_signup_attempt(email, ip, traits, recaptcha_token)
        if not verdict.valid:
            log.info("[signup] rejected %s: %s", email, verdict.reason)
            return SignupOutcome(ok=False, reason=verdict.reason, error=verdict.error)

        try:
            identity = provider.create_user(email, password, display_name)
        except AuthError as e:
            return SignupOutcome(ok=False, reason=e.code, error=e.message)

        self.collector.record_attempt(ip, email, verdict.fingerprint, user_agent)
        bonus = verdict.bonus_verdict
        self.ledger.create_account(identity.id, email, display_name, bonus, signup_method="email")

        try:
            link = provider.generate_verification_link(email, continue_url("/login?verified=1"))
            mail = self.mailer.send_verification(email, link)
        except Exception as e:
            log.error("[signup] verification email for %s failed: %s", email, e)
            mail = {"ok": False, "warn": "Verification email could not be sent"}

        return SignupOutcome(ok=True, user_id=identity.id, bonus_eligible=bonus.eligible, email=mail)

    def _first_sign_in_verdict(self, identity: Identity, ip: str | None,
                               traits: DeviceTraits | None, user_agent: str | None) -> BonusVerdict:
        """Verdict for an identity that never went through `signup` (Google)."""
        if self.collector.is_disposable_email(identity.email):
            return NOT_ELIGIBLE
        fingerprint = self.collector.fingerprint_device(traits) if traits is not None else None
        reuse = self.collector.is_fingerprint_reused(fingerprint)
        self.collector.record_attempt(ip, identity.email, fingerprint, user_agent)
        return BonusVerdict(eligible=reuse.is_new, fingerprint=fingerprint)

    def sign_in(self, id_token: str, display_name: str | None = None, ip: str | None = None,
                traits: DeviceTraits | None = None, user_agent: str | None = None) -> SignInOutcome:
        identity = self._require_provider().verify_id_token(id_token)

        if not identity.is_verified:
            log.info("[signin] %s signed in with an unverified email", identity.id)
            return SignInOutcome(identity=identity, needs_verification=True)

        created = False
        if self.ledger.get_account(identity.id) is None:
            verdict = self._first_sign_in_verdict(identity, ip, traits, user_agent)
            created = self.ledger.create_account(
                identity.id, identity.email, display_name, verdict,
                signup_method="google" if identity.is_google else "email",
            )

        granted = self.ledger.grant_bonus_if_eligible(identity.id)
        balance = self.ledger.get_balance(identity.id)
        return SignInOutcome(identity=identity, created=created, bonus_granted=granted, balance=balance)

    def resend_verification(self, id_token: str) -> dict:
        provider = self._require_provider()
        identity = provider.verify_id_token(id_token)
        if identity.is_verified:
            return {"ok": True, "alreadyVerified": True}
        if not identity.email:
            raise AuthError("auth/invalid-email")
        link = provider.generate_verification_link(identity.email, continue_url("/login?verified=1"))
        return self.mailer.send_verification(identity.email, link)

    def send_password_reset(self, email: str) -> dict:
        provider = self._require_provider()
        email = (email or "").strip().lower()
        link = provider.generate_password_reset_link(email, continue_url("/login"))
        return self.mailer.send_password_reset(email, link)
