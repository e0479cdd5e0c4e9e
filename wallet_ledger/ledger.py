"""
Balance Ledger Module

Accounts keyed by address with integer minor-unit balances, the append-only
transfer record log, and the set of consumed approval nonces.

``apply_transfer`` is the single commit point of the system: the balance
check, debit, credit, record append and nonce consumption happen inside one
serializable storage section, so either all of them become visible or none do.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import uuid

from .errors import (
    AccountNotFound, InsufficientBalance, SenderNotFound,
    TransferAlreadyExecuted, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .units import CurrencyMode, NATIVE_UNIT, format_minor_units, normalize_address, normalize_email


@dataclass
class Account:
    """Custodial balance for one address"""
    address: str
    balance_minor_units: int
    email: Optional[str]
    created_at: datetime
    updated_at: datetime
    
    def __post_init__(self):
        if self.balance_minor_units < 0:
            raise ValueError(f"Account {self.address} balance cannot be negative")
    
    @property
    def balance(self) -> str:
        """Display balance in native units"""
        return format_minor_units(self.balance_minor_units, NATIVE_UNIT)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "balance_minor_units": str(self.balance_minor_units),
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            address=data["address"],
            balance_minor_units=int(data["balance_minor_units"]),
            email=data.get("email"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"])
        )


@dataclass(frozen=True)
class TransferRecord:
    """Immutable record of one settled transfer"""
    id: str
    from_address: str
    to_address: str
    display_amount: str
    amount_minor_units: int
    signature: str
    timestamp: datetime
    currency_mode: CurrencyMode = CurrencyMode.NATIVE
    fiat_amount: Optional[str] = None
    quote_reference: Optional[str] = None
    
    def involves(self, address: str) -> bool:
        return address in (self.from_address, self.to_address)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "display_amount": self.display_amount,
            "amount_minor_units": str(self.amount_minor_units),
            "signature": self.signature,
            "timestamp": self.timestamp.isoformat(),
            "currency_mode": self.currency_mode.value,
            "fiat_amount": self.fiat_amount,
            "quote_reference": self.quote_reference
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferRecord":
        return cls(
            id=data["id"],
            from_address=data["from_address"],
            to_address=data["to_address"],
            display_amount=data["display_amount"],
            amount_minor_units=int(data["amount_minor_units"]),
            signature=data["signature"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            currency_mode=CurrencyMode(data.get("currency_mode", CurrencyMode.NATIVE.value)),
            fiat_amount=data.get("fiat_amount"),
            quote_reference=data.get("quote_reference")
        )


@dataclass(frozen=True)
class TransferResult:
    """Balances after a committed transfer and the record appended for it"""
    new_from_balance: int
    new_to_balance: int
    record: TransferRecord


class LedgerStore:
    """
    Account balances and transfer history on top of a storage backend
    
    Every mutation goes through ``storage.atomic()``; reads outside a section
    see only committed state.
    """
    
    ACCOUNTS_TABLE = "accounts"
    TRANSFERS_TABLE = "transfers"
    NONCES_TABLE = "consumed_nonces"
    
    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("wallet_ledger.ledger")
    
    # Accounts
    
    def get_account(self, address: str) -> Optional[Account]:
        """Get an account by address, or None if it has never been referenced"""
        data = self.storage.load(self.ACCOUNTS_TABLE, normalize_address(address))
        if data:
            return Account.from_dict(data)
        return None
    
    def create_account(
        self,
        address: str,
        initial_balance: int = 0,
        email: Optional[str] = None
    ) -> Account:
        """
        Create an account unless it exists (create-or-fetch)
        
        Concurrent first references to the same address all succeed and
        observe the same account; ``initial_balance`` and ``email`` apply only
        to the call that actually creates it.
        """
        address = normalize_address(address)
        if initial_balance < 0:
            raise ValidationError("Initial balance cannot be negative")
        
        with self.storage.atomic():
            existed = self.storage.exists(self.ACCOUNTS_TABLE, address)
            data = self.storage.insert_if_absent(
                self.ACCOUNTS_TABLE, address,
                self._new_account(address, initial_balance, normalize_email(email)).to_dict()
            )
        
        account = Account.from_dict(data)
        if not existed:
            log_action(
                self.logger, "info", "Account created",
                action="create_account", resource=f"account:{address}",
                extra={"initial_balance": account.balance}
            )
        return account
    
    def set_email(self, address: str, email: Optional[str]) -> Account:
        """Bind the notification address of an existing account"""
        address = normalize_address(address)
        email = normalize_email(email)
        
        with self.storage.atomic():
            data = self.storage.load(self.ACCOUNTS_TABLE, address)
            if not data:
                raise AccountNotFound(f"Account {address} not found")
            account = Account.from_dict(data)
            account.email = email
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.ACCOUNTS_TABLE, address, account.to_dict())
        
        log_action(
            self.logger, "info", "Account email updated",
            action="set_email", resource=f"account:{address}"
        )
        return account
    
    # Transfers
    
    def apply_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_minor_units: int,
        *,
        display_amount: str,
        signature: str,
        currency_mode: CurrencyMode = CurrencyMode.NATIVE,
        fiat_amount: Optional[str] = None,
        quote_reference: Optional[str] = None,
        nonce: Optional[str] = None
    ) -> TransferResult:
        """
        Atomically move ``amount_minor_units`` from sender to recipient
        
        Args:
            from_address: Sender address (must exist)
            to_address: Recipient address (created with zero balance if absent)
            amount_minor_units: Positive amount to move
            display_amount: Native display string recorded with the transfer
            signature: Authorizing signature recorded with the transfer
            currency_mode: How the transfer was denominated
            fiat_amount: Fiat display amount for fiat transfers
            quote_reference: Bound quote reference for fiat transfers
            nonce: Approval nonce consumed by this transfer
            
        Returns:
            TransferResult with both new balances and the appended record
            
        Raises:
            SenderNotFound: If the sender has no account
            InsufficientBalance: If the sender cannot cover the amount
            TransferAlreadyExecuted: If the nonce was already consumed
            StoreUnavailable: If persistence fails (nothing is committed)
        """
        from_address = normalize_address(from_address, "from")
        to_address = normalize_address(to_address, "to")
        if from_address == to_address:
            raise ValidationError("Sender and recipient must differ")
        if amount_minor_units <= 0:
            raise ValidationError("Transfer amount must be positive")
        
        with self.storage.atomic():
            sender_data = self.storage.load(self.ACCOUNTS_TABLE, from_address)
            if not sender_data:
                raise SenderNotFound(f"Sender account {from_address} not found")
            sender = Account.from_dict(sender_data)
            
            if nonce is not None and self.storage.exists(self.NONCES_TABLE, nonce):
                raise TransferAlreadyExecuted("Approval has already been executed")
            
            if sender.balance_minor_units < amount_minor_units:
                raise InsufficientBalance("Insufficient balance")
            
            recipient = Account.from_dict(self.storage.insert_if_absent(
                self.ACCOUNTS_TABLE, to_address,
                self._new_account(to_address, 0).to_dict()
            ))
            
            now = datetime.now(timezone.utc)
            sender.balance_minor_units -= amount_minor_units
            sender.updated_at = now
            self.storage.save(self.ACCOUNTS_TABLE, from_address, sender.to_dict())
            
            recipient.balance_minor_units += amount_minor_units
            recipient.updated_at = now
            self.storage.save(self.ACCOUNTS_TABLE, to_address, recipient.to_dict())
            
            record = TransferRecord(
                id=str(uuid.uuid4()),
                from_address=from_address,
                to_address=to_address,
                display_amount=display_amount,
                amount_minor_units=amount_minor_units,
                signature=signature,
                timestamp=now,
                currency_mode=currency_mode,
                fiat_amount=fiat_amount,
                quote_reference=quote_reference
            )
            self.append_record(record)
            
            if nonce is not None:
                self.storage.save(self.NONCES_TABLE, nonce, {
                    "nonce": nonce,
                    "transfer_id": record.id,
                    "consumed_at": now.isoformat()
                })
        
        return TransferResult(
            new_from_balance=sender.balance_minor_units,
            new_to_balance=recipient.balance_minor_units,
            record=record
        )
    
    def append_record(self, record: TransferRecord) -> None:
        """Append a transfer record; records are never rewritten"""
        with self.storage.atomic():
            if self.storage.exists(self.TRANSFERS_TABLE, record.id):
                raise ValueError(f"Transfer record {record.id} already exists")
            self.storage.save(self.TRANSFERS_TABLE, record.id, record.to_dict())
    
    def get_record(self, record_id: str) -> Optional[TransferRecord]:
        data = self.storage.load(self.TRANSFERS_TABLE, record_id)
        if data:
            return TransferRecord.from_dict(data)
        return None
    
    def list_records_for_address(self, address: str, limit: Optional[int] = None) -> List[TransferRecord]:
        """
        Get transfers sent or received by ``address``, newest first
        
        Args:
            address: Account address
            limit: Maximum number of records to return
        """
        address = normalize_address(address)
        rows = self.storage.find(
            self.TRANSFERS_TABLE,
            {"from_address": address, "to_address": address},
            match_any=True
        )
        records = [TransferRecord.from_dict(data) for data in rows]
        # Newest first; equal timestamps fall back to reverse insertion order
        records.reverse()
        records.sort(key=lambda r: r.timestamp, reverse=True)
        
        if limit is not None:
            records = records[:max(limit, 0)]
        return records
    
    def is_nonce_consumed(self, nonce: str) -> bool:
        return self.storage.exists(self.NONCES_TABLE, nonce)
    
    @staticmethod
    def _new_account(address: str, balance: int, email: Optional[str] = None) -> Account:
        now = datetime.now(timezone.utc)
        return Account(
            address=address,
            balance_minor_units=balance,
            email=email,
            created_at=now,
            updated_at=now
        )
