"""
Error Taxonomy Module

Domain exceptions raised by the transfer protocol. Each carries the HTTP
status the API layer renders it with and a stable machine-readable code.
"""

from typing import Any, Dict


class WalletLedgerError(Exception):
    """Base class for all ledger errors"""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(WalletLedgerError):
    """Missing or malformed request fields"""
    status_code = 400
    code = "validation_error"


class InvalidAmount(ValidationError):
    """Amount is unparsable, non-finite or not positive"""
    code = "invalid_amount"


class MalformedMessage(ValidationError):
    """Approval message is not in canonical form"""
    code = "malformed_message"


class SignatureInvalid(WalletLedgerError):
    """Signature does not recover to the sender, or the signed terms differ"""
    status_code = 401
    code = "signature_invalid"


class TransferExpired(WalletLedgerError):
    """Approval window embedded in the message has passed"""
    status_code = 400
    code = "transfer_expired"


class TransferAlreadyExecuted(WalletLedgerError):
    """The approval nonce has already been consumed"""
    status_code = 409
    code = "transfer_already_executed"


class QuoteUnavailable(WalletLedgerError):
    """The quote oracle failed or returned an unusable quote"""
    status_code = 502
    code = "quote_unavailable"


class QuoteMissing(ValidationError):
    """A fiat execute arrived without its quote reference"""
    code = "quote_missing"


class AccountNotFound(WalletLedgerError):
    status_code = 404
    code = "account_not_found"


class SenderNotFound(AccountNotFound):
    code = "sender_not_found"


class InsufficientBalance(WalletLedgerError):
    status_code = 400
    code = "insufficient_balance"


class StoreUnavailable(WalletLedgerError):
    """Persistence failure; nothing was committed"""
    status_code = 500
    code = "store_unavailable"
