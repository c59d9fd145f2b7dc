# portal/services/ledger.py
"""
PASO credit ledger.

Owns the per-user balance (`users/{uid}.pasoCredits`), the append-only
history (`pointsHistory`) and the signup-bonus state machine:

    [no account] --create_account--> UNVERIFIED (0 credits, bonus not granted)
    UNVERIFIED --grant_bonus_if_eligible (verified sign-in)--> VERIFIED (+bonus)
    any --grant / deduct--> same state, balance adjusted

The bonus is never paid at creation time, only recorded as eligible; it is
paid on the first verified sign-in. Exactly-once issuance is enforced by the
bonus history entry having a fixed id (`signup_bonus_<uid>`) written with
`create()`: only one caller, in any process, can create it. If the balance
update that follows fails, the claim is deleted again so a retry can pay.

Every mutation of an account goes through this module.
"""
from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore  # type: ignore
from google.cloud.firestore_v1 import FieldFilter

from portal.core.config import settings
from portal.services import events
from portal.services.fraud_signals import NOT_ELIGIBLE, BonusVerdict
from portal.services.locks import KeyedLock, SingleFlight
from portal.services.session import IdentityGate
from portal.services.store import C_POINTS, C_USERS, _as_utc, _server_ts, normalize_email

log = logging.getLogger(__name__)

REASON_SIGNUP_BONUS = "signup_bonus"
REASON_GRANT = "grant"
REASON_DEDUCT = "deduct"

BONUS_DESCRIPTION = "Welcome bonus for joining El Paso Verse"

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)


def bonus_doc_id(user_id: str) -> str:
    return f"signup_bonus_{user_id}"


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    balance: Optional[int] = None
    reason: Optional[str] = None     # insufficient_balance | invalid_amount | not_found | unavailable | error


class CreditLedger:
    def __init__(self, db, bus: events.EventBus | None = None, bonus_amount: int | None = None):
        self.db = db
        self.bus = bus or events.NullBus()
        self.bonus_amount = int(bonus_amount if bonus_amount is not None else settings.signup_bonus)
        self._creating = SingleFlight()
        self._granting = SingleFlight()
        # serialises check-then-decrement per user within this process
        self._deducting = KeyedLock()

    # ───────── refs ─────────
    def _user_ref(self, user_id: str):
        return self.db.collection(C_USERS).document(user_id)

    def _load_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        snap = self._user_ref(user_id).get()
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        """The account document, or None when it is missing or cannot be read."""
        if self.db is None:
            return None
        try:
            return self._load_account(user_id)
        except Exception as e:
            log.error("[ledger] error loading account %s: %s", user_id, e)
            return None

    # ───────── creation ─────────
    def create_account(self, user_id: str, email: str | None, display_name: str | None = None,
                       verdict: BonusVerdict = NOT_ELIGIBLE, signup_method: str = "email") -> bool:
        """
        Create the account if absent. True only for the caller that created it.
        Never pays the signup bonus.
        """
        if self.db is None:
            log.warning("[ledger] Firestore not available - cannot create account for %s", user_id)
            return False

        with self._creating.hold(user_id) as claimed:
            if not claimed:
                log.info("[ledger] account creation already in flight for %s", user_id)
                return False
            try:
                if self._user_ref(user_id).get().exists:
                    log.info("[ledger] account %s already exists, not overwriting", user_id)
                    return False

                email = (email or "").strip()
                doc = {
                    "email": email,
                    "normalizedEmail": normalize_email(email),
                    "displayName": display_name or (email.split("@")[0] if email else f"Pioneer_{user_id[-6:].upper()}"),
                    "pasoCredits": 0,
                    "signupBonusGranted": False,
                    "bonusEligible": bool(verdict.eligible),
                    "deviceFingerprint": verdict.fingerprint,
                    "signupMethod": signup_method,
                    "createdAt": _server_ts(),
                    "updatedAt": _server_ts(),
                }
                # create() is the cross-process arbiter: another tab/instance may have won
                self._user_ref(user_id).create(doc)
            except AlreadyExists:
                log.info("[ledger] account %s created concurrently elsewhere", user_id)
                return False
            except Exception as e:
                log.error("[ledger] error creating account %s: %s", user_id, e)
                return False

        self.bus.emit(
            events.ACCOUNT_CREATED,
            user_id=user_id, email=doc["email"], display_name=doc["displayName"],
            signup_method=signup_method, initial_balance=0,
            bonus_eligible=doc["bonusEligible"],
        )
        log.info("[ledger] account %s created (bonusEligible=%s)", user_id, doc["bonusEligible"])
        return True

    # ───────── signup bonus ─────────
    def grant_bonus_if_eligible(self, user_id: str) -> bool:
        """Pay the signup bonus once. Safe to call on every verified sign-in."""
        if self.db is None:
            return False

        with self._granting.hold(user_id) as claimed:
            if not claimed:
                return False
            try:
                account = self._load_account(user_id)
                if account is None or account.get("signupBonusGranted"):
                    return False
                if not account.get("bonusEligible", False):
                    log.info("[ledger] %s not eligible for the signup bonus", user_id)
                    return False

                # claim: the bonus history entry can only be created once
                claim = self.db.collection(C_POINTS).document(bonus_doc_id(user_id))
                try:
                    claim.create({
                        "userId": user_id,
                        "amount": self.bonus_amount,
                        "reason": REASON_SIGNUP_BONUS,
                        "description": BONUS_DESCRIPTION,
                        "timestamp": _server_ts(),
                    })
                except AlreadyExists:
                    log.info("[ledger] signup bonus for %s already claimed", user_id)
                    return False

                try:
                    self._user_ref(user_id).update({
                        "pasoCredits": firestore.Increment(self.bonus_amount),
                        "signupBonusGranted": True,
                        "updatedAt": _server_ts(),
                    })
                except Exception:
                    # unpaid claim is released so the next verified sign-in can pay it
                    self._release_bonus_claim(user_id, claim)
                    raise
            except Exception as e:
                log.error("[ledger] error granting signup bonus to %s: %s", user_id, e)
                return False

        balance_after = int(account.get("pasoCredits") or 0) + self.bonus_amount
        self.bus.emit(
            events.POINTS_TRANSACTION,
            user_id=user_id, email=account.get("email"), amount=self.bonus_amount,
            balance_after=balance_after, reason=REASON_SIGNUP_BONUS, description=BONUS_DESCRIPTION,
        )
        log.info("[ledger] granted %s PASO signup bonus to %s", self.bonus_amount, user_id)
        return True

    def _release_bonus_claim(self, user_id: str, claim) -> None:
        try:
            claim.delete()
        except Exception as e:
            log.error("[ledger] could not release signup bonus claim for %s: %s", user_id, e)

    # ───────── generic grant / deduct ─────────
    def _log_transaction(self, user_id: str, amount: int, reason: str, description: str) -> None:
        self.db.collection(C_POINTS).add({
            "userId": user_id,
            "amount": int(amount),
            "reason": reason,
            "description": description or "",
            "timestamp": _server_ts(),
        })

    def _apply(self, user_id: str, account: dict, delta: int, reason: str, description: str) -> LedgerResult:
        self._user_ref(user_id).update({
            "pasoCredits": firestore.Increment(delta),
            "updatedAt": _server_ts(),
        })
        try:
            self._log_transaction(user_id, delta, reason, description)
        except Exception as e:
            # balance already moved; history catches up on the next reconcile
            log.error("[ledger] balance for %s changed by %s but history append failed: %s", user_id, delta, e)
        balance_after = int(account.get("pasoCredits") or 0) + delta
        self.bus.emit(
            events.POINTS_TRANSACTION,
            user_id=user_id, email=account.get("email"), amount=delta,
            balance_after=balance_after, reason=reason, description=description,
        )
        return LedgerResult(ok=True, balance=balance_after)

    def grant(self, user_id: str, amount: int, reason: str = REASON_GRANT, description: str = "") -> LedgerResult:
        if self.db is None:
            log.warning("[ledger] Firestore not available - cannot grant points")
            return LedgerResult(ok=False, reason="unavailable")
        if int(amount) <= 0:
            log.error("[ledger] grant amount must be positive (got %s)", amount)
            return LedgerResult(ok=False, reason="invalid_amount")
        try:
            account = self._load_account(user_id)
            if account is None:
                return LedgerResult(ok=False, reason="not_found")
            return self._apply(user_id, account, int(amount), reason, description)
        except Exception as e:
            log.error("[ledger] error granting points to %s: %s", user_id, e)
            return LedgerResult(ok=False, reason="error")

    def deduct(self, user_id: str, amount: int, reason: str = REASON_DEDUCT, description: str = "") -> LedgerResult:
        if self.db is None:
            log.warning("[ledger] Firestore not available - cannot deduct points")
            return LedgerResult(ok=False, reason="unavailable")
        if int(amount) <= 0:
            log.error("[ledger] deduct amount must be positive (got %s)", amount)
            return LedgerResult(ok=False, reason="invalid_amount")

        with self._deducting.hold(user_id):
            try:
                account = self._load_account(user_id)
                if account is None:
                    return LedgerResult(ok=False, reason="not_found")
                current = int(account.get("pasoCredits") or 0)
                if current < int(amount):
                    log.info("[ledger] insufficient PASO credits for %s (%s < %s)", user_id, current, amount)
                    return LedgerResult(ok=False, balance=current, reason="insufficient_balance")
                return self._apply(user_id, account, -int(amount), reason, description)
            except Exception as e:
                log.error("[ledger] error deducting points from %s: %s", user_id, e)
                return LedgerResult(ok=False, reason="error")

    def set_display_name(self, user_id: str, display_name: str) -> bool:
        if self.db is None:
            return False
        name = (display_name or "").strip()[:40]
        if not name:
            return False
        try:
            self._user_ref(user_id).update({"displayName": name, "updatedAt": _server_ts()})
        except Exception as e:
            log.error("[ledger] error updating display name for %s: %s", user_id, e)
            return False
        return True

    # ───────── reads ─────────
    def get_balance(self, user_id: str, gate: IdentityGate | None = None) -> int:
        """
        Current balance. An authenticated identity with no account predates the
        ledger: backfill it (not bonus-eligible) instead of reporting a miss.
        """
        if self.db is None:
            return 0
        try:
            account = self._load_account(user_id)
            if account is not None:
                return int(account.get("pasoCredits") or 0)

            ident = gate.current_identity() if gate is not None else None
            if ident is not None and ident.id == user_id:
                log.info("[ledger] backfilling missing account for %s", user_id)
                self.create_account(user_id, ident.email, None, NOT_ELIGIBLE,
                                    signup_method="google" if ident.is_google else "email")
                account = self._load_account(user_id)
                return int((account or {}).get("pasoCredits") or 0)
            return 0
        except Exception as e:
            log.error("[ledger] error fetching balance for %s: %s", user_id, e)
            return 0

    def has_enough_credits(self, user_id: str, required: int) -> bool:
        return self.get_balance(user_id) >= int(required)

    def get_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if self.db is None:
            return []
        col = self.db.collection(C_POINTS)
        try:
            snaps = (
                col.where(filter=FieldFilter("userId", "==", user_id))
                   .order_by("timestamp", direction=firestore.Query.DESCENDING)
                   .limit(limit)
                   .get()
            )
            return [s.to_dict() | {"id": s.id} for s in snaps]
        except Exception as e:
            log.warning("[ledger] history index query failed, sorting in memory: %s", e)

        try:
            snaps = col.where(filter=FieldFilter("userId", "==", user_id)).get()
        except Exception as e:
            log.error("[ledger] error fetching history for %s: %s", user_id, e)
            return []
        items = [s.to_dict() | {"id": s.id} for s in snaps]
        items.sort(key=lambda d: _as_utc(d.get("timestamp")) or _EPOCH, reverse=True)
        return items[:limit]
