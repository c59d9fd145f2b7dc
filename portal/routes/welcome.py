# portal/routes/welcome.py
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from portal.routes.deps import get_ledger, get_welcome
from portal.services.auth import require_verified
from portal.services.fraud_signals import client_ip
from portal.services.ledger import CreditLedger
from portal.services.session import Identity
from portal.services.welcome import WelcomeQueue

router = APIRouter(prefix="/welcome", tags=["welcome"])


@router.post("/accept")
def accept_documents(request: Request, tasks: BackgroundTasks,
                     identity: Identity = Depends(require_verified),
                     ledger: CreditLedger = Depends(get_ledger),
                     queue: WelcomeQueue = Depends(get_welcome)):
    account = ledger.get_account(identity.id) or {}
    ip = client_ip(request.headers, request.client.host if request.client else None)
    entry_id = queue.accept_documents(identity.id, identity.email, account.get("displayName"), ip=ip)
    if entry_id is None:
        raise HTTPException(503, "Could not record your acceptance right now")
    tasks.add_task(queue.process, entry_id)
    return {"ok": True, "queueId": entry_id}


@router.post("/{entry_id}/resend")
def resend(entry_id: str, tasks: BackgroundTasks,
           identity: Identity = Depends(require_verified),
           queue: WelcomeQueue = Depends(get_welcome)):
    new_id = queue.resend(entry_id, user_id=identity.id)
    if new_id is None:
        raise HTTPException(404, "Email document not found")
    tasks.add_task(queue.process, new_id)
    return {"ok": True, "queueId": new_id, "message": "Email queued for resend"}
