"""
Transfer approval, execution and history endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_engine
from .schemas import (
    ApproveEthRequest, ApproveRequest, ApproveUsdRequest, ExecuteRequest,
    amount_text, approval_view, record_view
)
from ..transfers import TransferEngine
from ..units import CurrencyMode


router = APIRouter()
history_router = APIRouter()


@router.post("/approve")
def approve_transfer(
    request: ApproveRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Build the message the sender signs"""
    quote = engine.approve_transfer(
        request.from_address,
        request.to_address,
        amount_text(request.amount),
        CurrencyMode.parse(request.currency_mode)
    )
    return approval_view(quote)


@router.post("/approve-eth")
def approve_eth_transfer(
    request: ApproveEthRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Native-denominated approval"""
    quote = engine.approve_transfer(
        request.from_address, request.to_address,
        amount_text(request.amount), CurrencyMode.NATIVE
    )
    view = approval_view(quote)
    view["amountWei"] = view["amountMinorUnits"]
    return view


@router.post("/approve-usd")
def approve_usd_transfer(
    request: ApproveUsdRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Fiat-denominated approval; the quoted native amount is bound into the message"""
    quote = engine.approve_transfer(
        request.from_address, request.to_address,
        amount_text(request.usd_amount), CurrencyMode.FIAT
    )
    view = approval_view(quote)
    view.update({
        "ethAmount": quote.amount,
        "ethAmountWei": str(quote.amount_minor_units),
        "usdAmount": quote.fiat_amount,
        "originalQuote": quote.quote_reference,
    })
    return view


@router.post("/execute")
def execute_transfer(
    request: ExecuteRequest,
    engine: TransferEngine = Depends(get_engine)
):
    """Verify a signed approval and settle it"""
    result = engine.execute_transfer(
        request.from_address,
        request.to_address,
        amount_text(request.amount),
        request.signature,
        request.message,
        currency_mode=request.resolved_mode(),
        quote_reference=request.resolved_quote_reference(),
        fiat_amount=request.resolved_fiat_amount()
    )
    return {
        "success": True,
        "transaction": record_view(result.record),
        "newBalance": result.new_balance,
        "newBalanceMinorUnits": str(result.new_balance_minor_units),
    }


@history_router.get("/{address}")
def get_history(
    address: str,
    limit: Optional[int] = None,
    engine: TransferEngine = Depends(get_engine)
):
    """Transfers sent or received by an address, newest first"""
    return [record_view(record) for record in engine.get_history(address, limit)]
