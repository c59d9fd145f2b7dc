# portal/services/engagement.py
"""
Engagement ledger: land-target votes and film-idea support.

Both keep the same invariant: a voter id is in a target's voter set at most
once, and the target's counter equals the size of that set. Counters move
with `firestore.Increment`, voter sets with `ArrayUnion` / `ArrayRemove`.
The voter set is written before the counter. If the counter write then
fails, the next vote from that voter is still rejected, so the counter can
lag but never double count.
"""
from __future__ import annotations

import datetime as _dt
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from google.cloud import firestore  # type: ignore
from google.cloud.firestore_v1 import FieldFilter

from portal.core.config import settings
from portal.services import events
from portal.services.locks import SingleFlight
from portal.services.store import C_IDEAS, C_LAND_VOTES, VOTE_TOTALS_DOC, _as_utc, _fs_safe, _server_ts

log = logging.getLogger(__name__)

IDEA_STATUSES = ("gathering", "review", "greenlit", "production", "released")
GREENLIT_STATUSES = {"greenlit", "production", "released"}
STATUS_LABELS = {
    "gathering": "Gathering Support",
    "review": "Under Review",
    "greenlit": "Greenlit",
    "production": "In Production",
    "released": "Released",
}

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)


@dataclass(frozen=True)
class VoteResult:
    ok: bool
    tally: int = 0
    reason: Optional[str] = None     # already_voted | unknown_target | in_flight | unavailable | error


@dataclass(frozen=True)
class SupportResult:
    ok: bool
    supported: bool = False
    support_count: int = 0
    reason: Optional[str] = None     # not_found | in_flight | unavailable | error


# ───────────────────────── Land votes ─────────────────────────
class VoteLedger:
    def __init__(self, db, bus: events.EventBus | None = None, targets: Dict[str, str] | None = None):
        self.db = db
        self.bus = bus or events.NullBus()
        self.targets = dict(targets if targets is not None else settings.land_vote_targets)
        self._voting = SingleFlight()

    def _col(self):
        return self.db.collection(C_LAND_VOTES)

    def get_tallies(self) -> Dict[str, int]:
        if self.db is None:
            return {t: 0 for t in self.targets}
        try:
            snap = self._col().document(VOTE_TOTALS_DOC).get()
        except Exception as e:
            log.error("[votes] failed to load totals: %s", e)
            return {t: 0 for t in self.targets}
        totals = snap.to_dict() if snap.exists else {}
        return {t: int((totals or {}).get(t, 0)) for t in self.targets}

    def get_tally(self, target_id: str) -> int:
        return self.get_tallies().get(target_id, 0)

    def _voter_targets(self, voter_id: str) -> List[str]:
        snap = self._col().document(voter_id).get()
        if not snap.exists:
            return []
        return list((snap.to_dict() or {}).get("votes") or [])

    def has_voted(self, voter_id: str, target_id: str) -> bool:
        if self.db is None or not voter_id:
            return False
        try:
            return target_id in self._voter_targets(voter_id)
        except Exception as e:
            log.error("[votes] failed to load votes for %s: %s", voter_id, e)
            return False

    def vote(self, voter_id: str, target_id: str, email: str | None = None) -> VoteResult:
        if target_id not in self.targets:
            return VoteResult(ok=False, reason="unknown_target")
        if self.db is None:
            return VoteResult(ok=False, reason="unavailable")

        with self._voting.hold((voter_id, target_id)) as claimed:
            if not claimed:
                return VoteResult(ok=False, tally=self.get_tally(target_id), reason="in_flight")
            try:
                if target_id in self._voter_targets(voter_id):
                    return VoteResult(ok=False, tally=self.get_tally(target_id), reason="already_voted")

                self._col().document(voter_id).set(
                    {"votes": firestore.ArrayUnion([target_id])}, merge=True,
                )
                self._col().document(VOTE_TOTALS_DOC).set(
                    {target_id: firestore.Increment(1)}, merge=True,
                )
            except Exception as e:
                log.error("[votes] vote by %s for %s failed: %s", voter_id, target_id, e)
                return VoteResult(ok=False, reason="error")

        self.bus.emit(events.VOTE_CAST, voter_id=voter_id, email=email, target_id=target_id)
        return VoteResult(ok=True, tally=self.get_tally(target_id))


# ───────────────────────── Film ideas ─────────────────────────
class IdeaIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    logline: str = Field(..., min_length=1, max_length=500)
    description: str = Field("", max_length=5000)
    genre: str = Field("Other", max_length=50)
    submitter: Optional[str] = Field(None, max_length=80)


class IdeaFilters(BaseModel):
    sort: str = "popular"       # popular | recent | closest
    genre: str = "all"
    status: str = "all"
    search: str = ""


DEMO_IDEAS: List[Dict[str, Any]] = [
    {
        "id": "demo-sombra",
        "title": "Sombra de Lobo",
        "logline": "A man called El Lobo follows a pull only the desert understands.",
        "description": (
            "Sombra de Lobo follows a wounded gunman who survives a fall into the desert night "
            "and awakens changed, a man known now only as El Lobo. Drawn by a silent pull he "
            "cannot name, he crosses ravines, riverbeds, and forgotten trails toward Sombrajo."
        ),
        "genre": "Mystery",
        "submitter": "Ryan Wiik",
        "imageUrl": "assets/sombra-concept.png",
        "supportCount": 127,
        "supportGoal": 1000,
        "status": "gathering",
    },
    {
        "id": "demo-breakwater",
        "title": "The Founding of Breakwater",
        "logline": "A town rises from rumors in the desert, but can it survive the forces that seek to destroy it?",
        "description": (
            "Chronicle the birth of Breakwater through the eyes of its first settlers, as they face "
            "harsh elements, internal conflicts, and mysterious forces that seem determined to "
            "prevent the town from ever existing."
        ),
        "genre": "Western",
        "submitter": "Pioneer Community",
        "imageUrl": "assets/brownsville-reference.jpg",
        "supportCount": 342,
        "supportGoal": 1000,
        "status": "gathering",
    },
]


def filter_ideas(ideas: List[Dict[str, Any]], filters: IdeaFilters) -> List[Dict[str, Any]]:
    filtered = list(ideas)

    if filters.search:
        q = filters.search.lower()
        filtered = [
            i for i in filtered
            if q in (i.get("title") or "").lower()
            or q in (i.get("logline") or "").lower()
            or q in (i.get("description") or "").lower()
        ]

    if filters.genre != "all":
        filtered = [i for i in filtered if i.get("genre") == filters.genre]

    if filters.status != "all":
        filtered = [i for i in filtered if i.get("status") == filters.status]

    if filters.sort == "popular":
        filtered.sort(key=lambda i: int(i.get("supportCount") or 0), reverse=True)
    elif filters.sort == "recent":
        filtered.sort(key=lambda i: _as_utc(i.get("submittedDate")) or _EPOCH, reverse=True)
    elif filters.sort == "closest":
        filtered.sort(
            key=lambda i: int(i.get("supportCount") or 0) / float(i.get("supportGoal") or 1000),
            reverse=True,
        )
    return filtered


def idea_stats(ideas: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "totalIdeas": len(ideas),
        "totalSupport": sum(int(i.get("supportCount") or 0) for i in ideas),
        "greenlitCount": sum(1 for i in ideas if i.get("status") in GREENLIT_STATUSES),
    }


class IdeaBoard:
    def __init__(self, db, bucket=None, bus: events.EventBus | None = None,
                 support_goal: int | None = None, image_max_bytes: int | None = None):
        self.db = db
        self.bucket = bucket
        self.bus = bus or events.NullBus()
        self.support_goal = support_goal or settings.support_goal
        self.image_max_bytes = image_max_bytes or settings.idea_image_max_bytes
        self._supporting = SingleFlight()

    def _col(self):
        return self.db.collection(C_IDEAS)

    def list_ideas(self, filters: IdeaFilters | None = None) -> List[Dict[str, Any]]:
        filters = filters or IdeaFilters()
        if self.db is None:
            return filter_ideas([dict(i) for i in DEMO_IDEAS], filters)
        try:
            snaps = self._col().get()
        except Exception as e:
            log.error("[ideas] failed to load ideas: %s", e)
            return []
        ideas = [s.to_dict() | {"id": s.id} for s in snaps]
        return filter_ideas(ideas, filters)

    def supported_by(self, voter_id: str) -> List[str]:
        """Idea ids the voter supports."""
        if self.db is None or not voter_id:
            return []
        try:
            snaps = self._col().where(filter=FieldFilter("supporters", "array_contains", voter_id)).get()
        except Exception as e:
            log.error("[ideas] failed to load supported ideas for %s: %s", voter_id, e)
            return []
        return [s.id for s in snaps]

    def upload_image(self, data: bytes, filename: str, content_type: str | None = None) -> str:
        if len(data) > self.image_max_bytes:
            raise ValueError("Image file too large. Maximum size is 2MB.")
        if self.bucket is None:
            raise RuntimeError("Cloud Storage not configured")
        safe_name = "".join(ch for ch in (filename or "image") if ch.isalnum() or ch in "._-")[-80:]
        path = f"ideas/{uuid.uuid4().hex[:8]}_{safe_name}"
        blob = self.bucket.blob(path)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        return blob.public_url

    def submit_idea(self, submitter_id: str, idea: IdeaIn, image_url: str | None = None) -> Optional[str]:
        if self.db is None:
            return None
        ref = self._col().document()
        try:
            ref.set(_fs_safe({
                "title": idea.title.strip(),
                "logline": idea.logline.strip(),
                "description": idea.description.strip(),
                "genre": idea.genre,
                "submitter": (idea.submitter or "").strip() or None,
                "submitterId": submitter_id,
                "submittedDate": _server_ts(),
                "status": "gathering",
                "supportCount": 0,
                "supportGoal": self.support_goal,
                "supporters": [],
                "imageUrl": image_url,
            }))
        except Exception as e:
            log.error("[ideas] submission by %s failed: %s", submitter_id, e)
            return None
        log.info("[ideas] %s submitted idea %s", submitter_id, ref.id)
        return ref.id

    def toggle_support(self, voter_id: str, idea_id: str) -> SupportResult:
        if self.db is None:
            return SupportResult(ok=False, reason="unavailable")

        with self._supporting.hold((voter_id, idea_id)) as claimed:
            if not claimed:
                return SupportResult(ok=False, reason="in_flight")
            try:
                ref = self._col().document(idea_id)
                snap = ref.get()
                if not snap.exists:
                    return SupportResult(ok=False, reason="not_found")
                idea = snap.to_dict() or {}
                supporters = idea.get("supporters") or []
                count = int(idea.get("supportCount") or 0)

                if voter_id in supporters:
                    ref.update({
                        "supporters": firestore.ArrayRemove([voter_id]),
                        "supportCount": firestore.Increment(-1),
                    })
                    supported, count = False, max(0, count - 1)
                else:
                    ref.update({
                        "supporters": firestore.ArrayUnion([voter_id]),
                        "supportCount": firestore.Increment(1),
                    })
                    supported, count = True, count + 1
            except Exception as e:
                log.error("[ideas] support toggle by %s on %s failed: %s", voter_id, idea_id, e)
                return SupportResult(ok=False, reason="error")

        self.bus.emit(events.IDEA_SUPPORTED, voter_id=voter_id, idea_id=idea_id, supported=supported)
        return SupportResult(ok=True, supported=supported, support_count=count)
