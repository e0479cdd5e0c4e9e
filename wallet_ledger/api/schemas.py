"""
Pydantic schemas for API requests and response rendering
"""

from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from ..ledger import Account, TransferRecord
from ..transfers import ApprovalQuote
from ..units import CurrencyMode

# JSON numbers are accepted for amounts but converted to text before parsing
AmountField = Optional[Union[str, int, float]]


def amount_text(value: AmountField) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Wallet schemas
class InitWalletRequest(CamelModel):
    address: str
    email: Optional[str] = None


class SetEmailRequest(CamelModel):
    address: str
    email: str


# Transfer schemas
class ApproveRequest(CamelModel):
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    amount: AmountField = None
    currency_mode: str = Field("native", alias="currencyMode", description="native or fiat")


class ApproveEthRequest(CamelModel):
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    amount: AmountField = None


class ApproveUsdRequest(CamelModel):
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    usd_amount: AmountField = Field(None, alias="usdAmount")


class ExecuteRequest(CamelModel):
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    amount: AmountField = None
    signature: Optional[str] = None
    message: Optional[str] = None
    currency_mode: Optional[str] = Field(None, alias="currencyMode")
    is_usd: Optional[bool] = Field(None, alias="isUsd")
    quote_reference: Optional[str] = Field(None, alias="quoteReference")
    original_quote: Optional[str] = Field(None, alias="originalQuote")
    fiat_amount: AmountField = Field(None, alias="fiatAmount")
    usd_amount: AmountField = Field(None, alias="usdAmount")
    
    def resolved_mode(self) -> CurrencyMode:
        if self.currency_mode is not None:
            return CurrencyMode.parse(self.currency_mode)
        return CurrencyMode.FIAT if self.is_usd else CurrencyMode.NATIVE
    
    def resolved_quote_reference(self) -> Optional[str]:
        return self.quote_reference or self.original_quote
    
    def resolved_fiat_amount(self) -> Optional[str]:
        return amount_text(self.fiat_amount if self.fiat_amount is not None else self.usd_amount)


# Response rendering
def wallet_view(account: Account, include_email: bool = True) -> Dict[str, Any]:
    view = {
        "address": account.address,
        "balance": account.balance,
        "balanceMinorUnits": str(account.balance_minor_units),
    }
    if include_email:
        view["email"] = account.email
    return view


def record_view(record: TransferRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "from": record.from_address,
        "to": record.to_address,
        "amount": record.display_amount,
        "amountMinorUnits": str(record.amount_minor_units),
        "fiatAmount": record.fiat_amount,
        "currencyMode": record.currency_mode.value,
        "quoteReference": record.quote_reference,
        "signature": record.signature,
        "timestamp": record.timestamp.isoformat(),
    }


def approval_view(quote: ApprovalQuote) -> Dict[str, Any]:
    view = {
        "message": quote.message,
        "expiresAt": quote.expires_at,
        "amount": quote.amount,
        "amountMinorUnits": str(quote.amount_minor_units),
        "currencyMode": quote.currency_mode.value,
    }
    if quote.fiat_amount is not None:
        view["fiatAmount"] = quote.fiat_amount
    if quote.quote_reference is not None:
        view["quoteReference"] = quote.quote_reference
    return view
