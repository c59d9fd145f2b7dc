# portal/routes/wallet.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from portal.routes.deps import get_bus
from portal.services import events
from portal.services.auth import get_identity_gate
from portal.services.events import EventBus
from portal.services.session import IdentityGate
from portal.services.wallet import SUPPORTED_WALLETS, format_address, token_balance

router = APIRouter(prefix="/wallet", tags=["wallet"])


class WalletIn(BaseModel):
    walletType: str
    address: Optional[str] = None
    utxos: List[str] = Field(default_factory=list)


@router.get("/supported")
def supported():
    return {"wallets": [{"id": k, "name": v} for k, v in SUPPORTED_WALLETS.items()]}


@router.post("/balance")
def wallet_balance(data: WalletIn, gate: IdentityGate = Depends(get_identity_gate),
                   bus: EventBus = Depends(get_bus)):
    if data.walletType not in SUPPORTED_WALLETS:
        raise HTTPException(400, f"Unsupported wallet: {data.walletType}")
    balance = token_balance(data.utxos)
    uid = gate.current_user_id()
    if uid:
        bus.emit(
            events.WALLET_CONNECTED,
            user_id=uid, email=gate.current_email(), address=data.address,
            wallet_type=SUPPORTED_WALLETS[data.walletType], balance=balance,
        )
    return {
        "walletType": data.walletType,
        "address": format_address(data.address),
        "pasoBalance": balance,
    }
