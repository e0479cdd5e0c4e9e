"""
Wallet endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_engine
from .schemas import InitWalletRequest, SetEmailRequest, wallet_view
from ..transfers import TransferEngine


router = APIRouter()


@router.post("/init")
def init_wallet(
    request: InitWalletRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Create a wallet (or return the existing one)"""
    account = engine.init_wallet(request.address, request.email)
    return wallet_view(account, include_email=False)


@router.post("/email")
def set_email(
    request: SetEmailRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Bind the notification email of an existing wallet"""
    account = engine.set_email(request.address, request.email)
    return {"email": account.email}


@router.get("/{address}")
def get_wallet(
    address: str,
    engine: TransferEngine = Depends(get_engine)
):
    """Get wallet balance"""
    return wallet_view(engine.get_account(address))
