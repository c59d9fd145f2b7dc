# portal/routes/votes.py
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from portal.routes.deps import get_votes
from portal.services.auth import get_identity_gate, require_verified
from portal.services.engagement import VoteLedger
from portal.services.session import Identity, IdentityGate

router = APIRouter(prefix="/votes", tags=["votes"])


class VoteIn(BaseModel):
    targetId: str


@router.get("")
def tallies(gate: IdentityGate = Depends(get_identity_gate),
            votes: VoteLedger = Depends(get_votes)):
    uid = gate.current_user_id() if gate.is_authenticated() else None
    counts = votes.get_tallies()
    return {
        "targets": [
            {
                "id": tid,
                "name": name,
                "votes": counts.get(tid, 0),
                "hasVoted": votes.has_voted(uid, tid) if uid else False,
            }
            for tid, name in votes.targets.items()
        ],
        "totalVotes": sum(counts.values()),
    }


@router.get("/{target_id}")
def tally(target_id: str, votes: VoteLedger = Depends(get_votes)):
    if target_id not in votes.targets:
        raise HTTPException(404, "Unknown land target")
    return {"id": target_id, "votes": votes.get_tally(target_id)}


@router.post("")
def cast(data: VoteIn, identity: Identity = Depends(require_verified),
         votes: VoteLedger = Depends(get_votes)):
    res = votes.vote(identity.id, data.targetId, email=identity.email)
    if res.ok:
        return {"ok": True, "targetId": data.targetId, "votes": res.tally}
    if res.reason == "unknown_target":
        raise HTTPException(404, {"code": res.reason, "error": "Unknown land target"})
    if res.reason == "already_voted":
        raise HTTPException(409, {"code": res.reason, "error": "You have already voted for this land", "votes": res.tally})
    if res.reason == "in_flight":
        raise HTTPException(409, {"code": res.reason, "error": "Your vote is still being recorded", "votes": res.tally})
    raise HTTPException(503, {"code": res.reason, "error": "Voting is unavailable right now"})
