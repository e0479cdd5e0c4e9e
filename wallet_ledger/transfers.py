"""
Transfer Engine Module

Orchestrates the approve -> sign -> execute protocol.

Approval builds a message embedding both parties, the native amount (and for
fiat transfers the bound quote), a single-use nonce and the expiry. The client
signs it off-system. Execution verifies the signature, the expiry and that the
request re-derives the exact signed terms, then commits through the ledger in
one atomic step. Nothing before that commit has observable side effects, so
every failed attempt is safe to retry.

The engine keeps no state between approve and execute; the signed message is
the approval ticket.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union
from decimal import Decimal
import time
import uuid

from .errors import (
    AccountNotFound, MalformedMessage, QuoteMissing, QuoteUnavailable,
    SenderNotFound, InsufficientBalance, SignatureInvalid, TransferAlreadyExecuted,
    TransferExpired, ValidationError, WalletLedgerError
)
from .ledger import Account, LedgerStore, TransferRecord
from .logging_config import get_logger, log_action
from .messages import MessageTerms, build_message, new_nonce, parse_expiry, parse_message
from .notifications import NotificationDispatcher, transfer_notification
from .quotes import QuoteOracle
from .signatures import verify_signature
from .units import (
    CurrencyMode, FIAT_LABEL, FIAT_UNIT, NATIVE_UNIT, format_fiat, format_minor_units,
    normalize_address, parse_amount, to_minor_units
)


DEFAULT_NATIVE_WINDOW_MS = 30_000
DEFAULT_FIAT_WINDOW_MS = 60_000

Amount = Union[str, int, Decimal, None]


def epoch_millis() -> int:
    return int(time.time() * 1000)


class TransferState(Enum):
    """States of a single approve or execute attempt"""
    REQUESTED = "requested"
    QUOTED = "quoted"
    APPROVED = "approved"
    VERIFIED = "verified"
    SETTLED = "settled"
    REJECTED = "rejected"


_TRANSITIONS = {
    TransferState.REQUESTED: {TransferState.QUOTED, TransferState.APPROVED},
    TransferState.QUOTED: {TransferState.APPROVED},
    TransferState.APPROVED: {TransferState.VERIFIED},
    TransferState.VERIFIED: {TransferState.SETTLED},
    TransferState.SETTLED: set(),
    TransferState.REJECTED: set(),
}


@dataclass
class TransferAttempt:
    """Tracks the protocol state of one request for logging"""
    operation: str
    state: TransferState = TransferState.REQUESTED
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    reason: Optional[str] = None
    history: List[TransferState] = field(default_factory=list)
    
    def __post_init__(self):
        self.history.append(self.state)
    
    @property
    def is_terminal(self) -> bool:
        return self.state in (TransferState.SETTLED, TransferState.REJECTED)
    
    def advance(self, state: TransferState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Cannot move transfer from {self.state.value} to {state.value}")
        self.state = state
        self.history.append(state)
    
    def reject(self, reason: str) -> None:
        """Rejection is reachable from every non-terminal state"""
        if self.is_terminal:
            raise ValueError(f"Cannot reject transfer in {self.state.value} state")
        self.state = TransferState.REJECTED
        self.reason = reason
        self.history.append(TransferState.REJECTED)


@dataclass(frozen=True)
class ApprovalQuote:
    """Everything the client needs to sign; never persisted"""
    message: str
    expires_at: int
    amount: str  # Native display amount
    amount_minor_units: int
    currency_mode: CurrencyMode
    nonce: str
    fiat_amount: Optional[str] = None
    quote_reference: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    record: TransferRecord
    new_balance_minor_units: int
    
    @property
    def new_balance(self) -> str:
        return format_minor_units(self.new_balance_minor_units, NATIVE_UNIT)


class TransferEngine:
    """
    Approves and executes signed transfers against a LedgerStore
    
    Collaborators are injected once at construction; the engine holds no
    per-transfer state.
    """
    
    def __init__(
        self,
        ledger: LedgerStore,
        quote_oracle: Optional[QuoteOracle] = None,
        notifier: Optional[NotificationDispatcher] = None,
        native_window_ms: int = DEFAULT_NATIVE_WINDOW_MS,
        fiat_window_ms: int = DEFAULT_FIAT_WINDOW_MS,
        initial_balance_minor_units: int = 0,
        clock: Callable[[], int] = epoch_millis
    ):
        if native_window_ms <= 0 or fiat_window_ms <= 0:
            raise ValueError("Approval windows must be positive")
        if initial_balance_minor_units < 0:
            raise ValueError("Initial balance cannot be negative")
        
        self.ledger = ledger
        self.quote_oracle = quote_oracle
        self.notifier = notifier
        self.native_window_ms = native_window_ms
        self.fiat_window_ms = fiat_window_ms
        self.initial_balance_minor_units = initial_balance_minor_units
        self.clock = clock
        self.logger = get_logger("wallet_ledger.transfers")
    
    # Wallets
    
    def init_wallet(self, address: str, email: Optional[str] = None) -> Account:
        """Create the wallet with the configured starting balance unless it exists"""
        return self.ledger.create_account(
            address, self.initial_balance_minor_units, email
        )
    
    def get_account(self, address: str) -> Account:
        account = self.ledger.get_account(address)
        if not account:
            raise AccountNotFound("Wallet not found")
        return account
    
    def set_email(self, address: str, email: Optional[str]) -> Account:
        return self.ledger.set_email(address, email)
    
    def get_history(self, address: str, limit: Optional[int] = None) -> List[TransferRecord]:
        return self.ledger.list_records_for_address(address, limit)
    
    # Approve
    
    def approve_transfer(
        self,
        from_address: str,
        to_address: str,
        amount: Amount,
        currency_mode: Union[CurrencyMode, str] = CurrencyMode.NATIVE
    ) -> ApprovalQuote:
        """
        Build the approval message for a transfer
        
        Fiat amounts are quoted once here and the quoted native amount is
        embedded in the message; execution never re-prices.
        
        Args:
            from_address: Sender address
            to_address: Recipient address
            amount: Display amount in native units, or in fiat for fiat mode
            currency_mode: NATIVE or FIAT
            
        Returns:
            ApprovalQuote carrying the message to sign
            
        Raises:
            ValidationError / InvalidAmount: On malformed input
            SenderNotFound: If the sender has no wallet
            QuoteUnavailable: If the oracle fails (fiat only)
            InsufficientBalance: Advisory check; execution re-checks
        """
        attempt = TransferAttempt(operation="approve")
        try:
            from_address, to_address = self._parties(from_address, to_address, attempt)
            mode = CurrencyMode.parse(currency_mode)
            
            sender = self.ledger.get_account(from_address)
            if not sender:
                raise SenderNotFound("Sender wallet not found")
            
            fiat_display = None
            quote_reference = None
            if mode == CurrencyMode.FIAT:
                fiat_value = parse_amount(amount)
                # The signed fiat text cannot be finer than the USDC amount actually quoted
                to_minor_units(fiat_value, FIAT_UNIT)
                if self.quote_oracle is None:
                    raise QuoteUnavailable("No quote oracle configured")
                quote = self.quote_oracle.quote(fiat_value)
                attempt.advance(TransferState.QUOTED)
                amount_minor_units = quote.amount_minor_units
                quote_reference = quote.quote_reference
                fiat_display = format_fiat(fiat_value)
                window_ms = self.fiat_window_ms
            else:
                amount_minor_units = to_minor_units(amount, NATIVE_UNIT)
                window_ms = self.native_window_ms
            
            if sender.balance_minor_units < amount_minor_units:
                raise InsufficientBalance("Insufficient balance")
            
            display_amount = format_minor_units(amount_minor_units, NATIVE_UNIT)
            expires_at = self.clock() + window_ms
            nonce = new_nonce()
            message = build_message(
                from_address, to_address, display_amount, NATIVE_UNIT.code, expires_at,
                fiat_amount=fiat_display, fiat_label=FIAT_LABEL,
                quote_reference=quote_reference, nonce=nonce
            )
            attempt.advance(TransferState.APPROVED)
        except WalletLedgerError as e:
            self._reject(attempt, e)
            raise
        
        log_action(
            self.logger, "info", "Transfer approved",
            action="approve_transfer", resource=f"attempt:{attempt.id}",
            extra={
                "from": from_address,
                "to": to_address,
                "amount": display_amount,
                "amount_minor_units": str(amount_minor_units),
                "currency_mode": mode.value,
                "fiat_amount": fiat_display,
                "quote_reference": quote_reference,
                "expires_at": expires_at
            }
        )
        
        return ApprovalQuote(
            message=message,
            expires_at=expires_at,
            amount=display_amount,
            amount_minor_units=amount_minor_units,
            currency_mode=mode,
            nonce=nonce,
            fiat_amount=fiat_display,
            quote_reference=quote_reference
        )
    
    # Execute
    
    def execute_transfer(
        self,
        from_address: str,
        to_address: str,
        amount: Amount,
        signature: str,
        message: str,
        currency_mode: Union[CurrencyMode, str] = CurrencyMode.NATIVE,
        quote_reference: Optional[str] = None,
        fiat_amount: Amount = None
    ) -> ExecutionResult:
        """
        Verify a signed approval and settle it
        
        Args:
            from_address: Sender address (must be the signer)
            to_address: Recipient address (created if absent)
            amount: Native display amount; required in native mode
            signature: Sender's signature over ``message``
            message: The exact message returned by approve
            currency_mode: NATIVE or FIAT
            quote_reference: Quote reference returned by a fiat approve
            fiat_amount: Fiat amount of a fiat approve (optional cross-check)
            
        Returns:
            ExecutionResult with the appended record and new sender balance
        """
        attempt = TransferAttempt(operation="execute", state=TransferState.APPROVED)
        try:
            if not from_address or not to_address:
                raise ValidationError("from and to are required")
            from_address, to_address = self._parties(from_address, to_address, attempt)
            mode = CurrencyMode.parse(currency_mode)
            if not signature or not message:
                raise ValidationError("signature and message are required")
            if mode == CurrencyMode.NATIVE and _is_blank(amount):
                raise ValidationError("Amount required")
            
            verify_signature(message, signature, from_address)
            
            expires_at = parse_expiry(message)
            if self.clock() > expires_at:
                raise TransferExpired("Transaction expired")
            
            terms = parse_message(message)
            amount_minor_units = self._bound_amount(
                terms, from_address, to_address, mode, amount, quote_reference, fiat_amount
            )
            attempt.advance(TransferState.VERIFIED)
            
            if self.ledger.is_nonce_consumed(terms.nonce):
                raise TransferAlreadyExecuted("Approval has already been executed")
            
            result = self.ledger.apply_transfer(
                from_address,
                to_address,
                amount_minor_units,
                display_amount=format_minor_units(amount_minor_units, NATIVE_UNIT),
                signature=signature,
                currency_mode=mode,
                fiat_amount=terms.fiat_amount,
                quote_reference=terms.quote_reference,
                nonce=terms.nonce
            )
            attempt.advance(TransferState.SETTLED)
        except WalletLedgerError as e:
            self._reject(attempt, e)
            raise
        
        record = result.record
        log_action(
            self.logger, "info", "Transfer settled",
            action="execute_transfer", resource=f"transfer:{record.id}",
            extra={
                "attempt_id": attempt.id,
                "from": record.from_address,
                "to": record.to_address,
                "amount": record.display_amount,
                "amount_minor_units": str(record.amount_minor_units),
                "currency_mode": record.currency_mode.value,
                "fiat_amount": record.fiat_amount,
                "new_from_balance": str(result.new_from_balance),
                "new_to_balance": str(result.new_to_balance)
            }
        )
        
        self._notify_sender(record, result.new_from_balance)
        return ExecutionResult(record=record, new_balance_minor_units=result.new_from_balance)
    
    def _bound_amount(
        self,
        terms: MessageTerms,
        from_address: str,
        to_address: str,
        mode: CurrencyMode,
        amount: Amount,
        quote_reference: Optional[str],
        fiat_amount: Amount
    ) -> int:
        """
        Resolve the authoritative minor-unit amount from the signed terms
        
        The request must re-derive exactly what was signed; any divergence is
        treated as a signature failure.
        """
        if terms.nonce is None:
            raise MalformedMessage("Message carries no approval nonce")
        if (terms.from_address.lower() != from_address
                or terms.to_address.lower() != to_address
                or terms.unit_label != NATIVE_UNIT.code):
            raise SignatureInvalid("Signed message does not match transfer terms")
        
        signed_minor_units = to_minor_units(terms.amount, NATIVE_UNIT)
        
        if mode == CurrencyMode.FIAT:
            if not quote_reference:
                raise QuoteMissing("Quote reference required for fiat transfers")
            if not terms.is_fiat or terms.quote_reference != quote_reference:
                raise SignatureInvalid("Signed message does not match the bound quote")
            if not _is_blank(fiat_amount) and format_fiat(fiat_amount) != terms.fiat_amount:
                raise SignatureInvalid("Signed message does not match the fiat amount")
            if not _is_blank(amount) and to_minor_units(amount, NATIVE_UNIT) != signed_minor_units:
                raise SignatureInvalid("Signed message does not match the quoted amount")
            return signed_minor_units
        
        if terms.is_fiat or terms.quote_reference is not None:
            raise SignatureInvalid("Signed message is a fiat approval")
        requested = to_minor_units(amount, NATIVE_UNIT)
        if requested != signed_minor_units:
            raise SignatureInvalid("Signed message does not match transfer amount")
        return requested
    
    def _notify_sender(self, record: TransferRecord, new_balance_minor_units: int) -> None:
        """Best effort; a failure here never affects the settled transfer"""
        if self.notifier is None:
            return
        try:
            sender = self.ledger.get_account(record.from_address)
            if not sender or not sender.email:
                return
            subject, body = transfer_notification(
                record.display_amount, NATIVE_UNIT.code, record.to_address,
                format_minor_units(new_balance_minor_units, NATIVE_UNIT),
                record.fiat_amount
            )
            self.notifier.dispatch(sender.email, subject, body)
        except Exception as e:
            self.logger.error(f"Could not queue notification for transfer {record.id}: {e}")
    
    def _parties(self, from_address: str, to_address: str,
                 attempt: TransferAttempt) -> Tuple[str, str]:
        from_address = normalize_address(from_address, "from")
        to_address = normalize_address(to_address, "to")
        attempt.from_address = from_address
        attempt.to_address = to_address
        if from_address == to_address:
            raise ValidationError("Sender and recipient must differ")
        return from_address, to_address
    
    def _reject(self, attempt: TransferAttempt, error: WalletLedgerError) -> None:
        attempt.reject(error.code)
        log_action(
            self.logger, "warning", f"Transfer {attempt.operation} rejected: {error.message}",
            action=f"{attempt.operation}_transfer", resource=f"attempt:{attempt.id}",
            extra={
                "reason": error.code,
                "from": attempt.from_address,
                "to": attempt.to_address,
                "states": [state.value for state in attempt.history]
            }
        )


def _is_blank(value: Amount) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())
