# portal/services/sheet_logger.py
"""
Google Sheets logger: forwards portal activity to the Apps Script web app.

Delivery is one-way and best-effort: no confirmation, no retry, a bounded
timeout, and every failure is logged and swallowed. The shared secret is a
static token the Apps Script checks, nothing more.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from portal.core.config import settings
from portal.services import events
from portal.services.store import _utc_now

log = logging.getLogger(__name__)

SHEET_USERS = "Users"
SHEET_TRANSACTIONS = "Transactions"
SHEET_WALLETS = "Wallets"
SHEET_LAND_VOTES = "LandVotes"


class SheetLogger:
    def __init__(self, webhook_url: str | None = None, secret: str | None = None,
                 timeout: float | None = None, session: requests.Session | None = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.sheet_webhook_url
        self.secret = secret if secret is not None else settings.sheet_secret
        self.timeout = timeout if timeout is not None else settings.http_timeout_s
        self._http = session or requests

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    def log_to_sheet(self, sheet_name: str, data: Dict[str, Any]) -> bool:
        if not self.configured:
            log.info("[sheet] webhook not configured; %s: %s", sheet_name, data)
            return False

        payload = {
            "secret": self.secret,
            "sheet": sheet_name,
            "data": data,
            "timestamp": _utc_now().isoformat(),
        }
        try:
            self._http.post(self.webhook_url, json=payload, timeout=self.timeout)
            log.debug("[sheet] sent row to %s", sheet_name)
            return True
        except requests.RequestException as e:
            log.error("[sheet] failed to log to %s: %s", sheet_name, e)
            return False

    # ───────── event subscribers ─────────
    def on_account_created(self, event: events.Event):
        d = event.data
        self.log_to_sheet(SHEET_USERS, {
            "userId": d.get("user_id"),
            "email": d.get("email") or "unknown",
            "displayName": d.get("display_name") or "Pioneer",
            "signupMethod": d.get("signup_method") or "email",
            "initialBalance": int(d.get("initial_balance") or 0),
            "bonusEligible": bool(d.get("bonus_eligible")),
            "signupDate": event.at.isoformat(),
        })

    def on_transaction(self, event: events.Event):
        d = event.data
        self.log_to_sheet(SHEET_TRANSACTIONS, {
            "userId": d.get("user_id"),
            "email": d.get("email") or "unknown",
            "type": d.get("reason"),
            "amount": d.get("amount"),
            "balanceAfter": d.get("balance_after"),
            "reason": d.get("reason"),
            "description": d.get("description") or "",
            "transactionDate": event.at.isoformat(),
        })

    def on_wallet_connected(self, event: events.Event):
        d = event.data
        self.log_to_sheet(SHEET_WALLETS, {
            "userId": d.get("user_id"),
            "email": d.get("email") or "unknown",
            "walletAddress": d.get("address"),
            "walletType": d.get("wallet_type"),
            "walletPasoBalance": d.get("balance") or 0,
            "connectionDate": event.at.isoformat(),
        })

    def on_vote_cast(self, event: events.Event):
        d = event.data
        self.log_to_sheet(SHEET_LAND_VOTES, {
            "userId": d.get("voter_id"),
            "email": d.get("email") or "unknown",
            "targetId": d.get("target_id"),
            "voteDate": event.at.isoformat(),
        })

    def attach(self, bus: events.EventBus) -> "SheetLogger":
        bus.subscribe(events.ACCOUNT_CREATED, self.on_account_created)
        bus.subscribe(events.POINTS_TRANSACTION, self.on_transaction)
        bus.subscribe(events.WALLET_CONNECTED, self.on_wallet_connected)
        bus.subscribe(events.VOTE_CAST, self.on_vote_cast)
        return self
