# portal/routes/account.py
from fastapi import APIRouter, Depends, Query

from portal.routes.deps import get_ledger
from portal.services.auth import get_identity_gate, require_verified
from portal.services.ledger import CreditLedger
from portal.services.session import Identity, IdentityGate

router = APIRouter(prefix="/account", tags=["account"])


@router.get("/balance")
def balance(identity: Identity = Depends(require_verified),
            gate: IdentityGate = Depends(get_identity_gate),
            ledger: CreditLedger = Depends(get_ledger)):
    return {"userId": identity.id, "balance": ledger.get_balance(identity.id, gate)}


@router.get("/history")
def history(limit: int = Query(50, ge=1, le=200),
            identity: Identity = Depends(require_verified),
            ledger: CreditLedger = Depends(get_ledger)):
    return {"items": ledger.get_history(identity.id, limit=limit)}


@router.get("/can-afford")
def can_afford(amount: int = Query(..., ge=0),
               identity: Identity = Depends(require_verified),
               ledger: CreditLedger = Depends(get_ledger)):
    return {"amount": amount, "enough": ledger.has_enough_credits(identity.id, amount)}
