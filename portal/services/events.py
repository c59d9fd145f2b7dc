# portal/services/events.py
"""
Outbound domain events.

The ledger, the fraud-signal collector and the engagement ledger publish an
event *after* a state change has landed. Subscribers (the Google Sheets
logger, tests) consume them independently: a failing subscriber is logged
and never reaches the publisher.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from portal.services.store import _utc_now

log = logging.getLogger(__name__)

# Event kinds
ACCOUNT_CREATED = "account.created"
POINTS_TRANSACTION = "points.transaction"
SIGNUP_ATTEMPT = "signup.attempt"
VOTE_CAST = "vote.cast"
IDEA_SUPPORTED = "idea.supported"
WALLET_CONNECTED = "wallet.connected"


@dataclass(frozen=True)
class Event:
    kind: str
    data: Dict[str, Any]
    at: Any = field(default_factory=_utc_now)


Handler = Callable[[Event], None]


class EventBus:
    """
    Tiny pub/sub. With an executor, handlers run off the caller's thread
    (fire-and-forget); without one they run inline, still isolated by
    try/except so the publisher never sees a subscriber failure.
    """

    def __init__(self, executor: Executor | None = None):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._executor = executor

    def subscribe(self, kind: str, handler: Handler) -> None:
        self._handlers[kind].append(handler)

    def emit(self, kind: str, **data) -> Event:
        event = Event(kind=kind, data=data)
        for handler in list(self._handlers.get(kind, ())):
            if self._executor is not None:
                try:
                    self._executor.submit(self._dispatch, handler, event)
                except RuntimeError as e:  # executor shut down
                    log.error("[events] could not schedule %s for %s: %s", handler, kind, e)
            else:
                self._dispatch(handler, event)
        return event

    @staticmethod
    def _dispatch(handler: Handler, event: Event) -> None:
        try:
            handler(event)
        except Exception:
            log.exception("[events] subscriber failed for %s", event.kind)


class NullBus(EventBus):
    """Bus that drops everything (demo mode / scripts)."""

    def emit(self, kind: str, **data) -> Event:
        return Event(kind=kind, data=data)
