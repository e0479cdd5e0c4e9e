"""
Service wiring and request dependencies
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import Request

from ..config import WalletLedgerConfig, get_config
from ..ledger import LedgerStore
from ..notifications import NotificationDispatcher, create_notification_sender
from ..quotes import QuoteOracle, create_quote_oracle
from ..storage import StorageInterface, create_storage
from ..transfers import TransferEngine
from ..units import NATIVE_UNIT, to_minor_units


class LedgerSystem:
    """Ledger service with all collaborators constructed once"""
    
    def __init__(
        self,
        config: Optional[WalletLedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        quote_oracle: Optional[QuoteOracle] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock=None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.ledger = LedgerStore(self.storage)
        self.quote_oracle = quote_oracle or create_quote_oracle(self.config)
        self.notifier = notifier if notifier is not None else self._create_notifier()
        
        engine_options = {}
        if clock is not None:
            engine_options["clock"] = clock
        
        self.engine = TransferEngine(
            self.ledger,
            quote_oracle=self.quote_oracle,
            notifier=self.notifier,
            native_window_ms=self.config.native_approval_window_ms,
            fiat_window_ms=self.config.fiat_approval_window_ms,
            initial_balance_minor_units=self._initial_balance(),
            **engine_options
        )
    
    def _initial_balance(self) -> int:
        text = (self.config.initial_balance or "0").strip()
        try:
            if Decimal(text) == 0:
                return 0
        except InvalidOperation:
            raise ValueError(f"Invalid initial balance: {self.config.initial_balance}")
        return to_minor_units(text, NATIVE_UNIT)
    
    def _create_notifier(self) -> Optional[NotificationDispatcher]:
        sender = create_notification_sender(self.config)
        if sender is None:
            return None
        return NotificationDispatcher(sender, max_workers=self.config.notification_workers)
    
    def close(self) -> None:
        if self.notifier is not None:
            self.notifier.shutdown(wait=True)
        self.quote_oracle.close()
        self.storage.close()


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def get_engine(request: Request) -> TransferEngine:
    return request.app.state.system.engine
