# portal/services/store.py
"""
Firestore helpers shared by the ledger, fraud-signal and engagement services.

Collections (Native mode):
  • users           : one Account per Firebase uid (doc id == uid)
  • pointsHistory   : append-only PASO credit transactions
  • signupAttempts  : append-only anti-abuse audit log
  • landVotes       : `totals` counter doc + one doc per voter
  • filmIdeas       : community film ideas with supporter sets
  • emailQueue      : welcome emails waiting to be rendered and sent
  • waiverAcceptances, grantAcceptances : participation document records

Notes
-----
• No multi-document transactions are used. Single-document atomicity comes
  from `firestore.Increment`, `ArrayUnion` / `ArrayRemove` and `create()`
  (which fails with AlreadyExists when the document is already there).
• Timestamps are written as the server timestamp sentinel; reads compare
  against timezone-aware UTC datetimes.
"""
from __future__ import annotations

import datetime as _dt
import math

from google.cloud import firestore  # type: ignore
from google.api_core.datetime_helpers import DatetimeWithNanoseconds  # type: ignore

C_USERS = "users"
C_POINTS = "pointsHistory"
C_SIGNUPS = "signupAttempts"
C_LAND_VOTES = "landVotes"
C_IDEAS = "filmIdeas"
C_EMAIL_QUEUE = "emailQueue"
C_WAIVERS = "waiverAcceptances"
C_GRANTS = "grantAcceptances"

VOTE_TOTALS_DOC = "totals"


def _server_ts():  # Firestore server timestamp sentinel
    return firestore.SERVER_TIMESTAMP


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _fs_safe(value):
    """Recursively convert value to Firestore-acceptable types."""
    if value is None or isinstance(value, (str, bool, int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return value

    # keep sentinels and transforms (SERVER_TIMESTAMP, Increment, ArrayUnion …) as-is
    if value is firestore.SERVER_TIMESTAMP:
        return value
    if isinstance(value, (firestore.Increment, firestore.ArrayUnion, firestore.ArrayRemove)):
        return value

    if isinstance(value, (_dt.datetime, DatetimeWithNanoseconds)):
        return value

    if isinstance(value, (list, tuple, set, frozenset)):
        return [_fs_safe(v) for v in value]

    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            ks = str(k)
            if ks == "__name__":
                ks = "_name"
            out[ks] = _fs_safe(v)
        return out

    return str(value)


def _as_utc(ts) -> _dt.datetime | None:
    """Normalise a stored timestamp (aware, naive or missing) to aware UTC."""
    if ts is None or not isinstance(ts, _dt.datetime):
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=_dt.timezone.utc)
    return ts.astimezone(_dt.timezone.utc)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().casefold()
