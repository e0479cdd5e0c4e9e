"""
Tests for the balance ledger
"""

import threading

import pytest

from wallet_ledger.errors import (
    AccountNotFound, InsufficientBalance, SenderNotFound, StoreUnavailable,
    TransferAlreadyExecuted, ValidationError
)
from wallet_ledger.ledger import Account, LedgerStore, TransferRecord
from wallet_ledger.storage import InMemoryStorage, SQLiteStorage
from wallet_ledger.units import CurrencyMode, to_minor_units

ALICE = "0x19e7e376e7c213b7e7e7e46cc70a5dd086daff2a"
BOB = "0x1563915e194d8cfba1943570603f7606a3115508"
CAROL = "0x5cbdd86a2fa8dc4bddd8a8f69dba48572eec07fb"

ONE_ETH = 10 ** 18


class FailingRecordInMemoryStorage(InMemoryStorage):
    """Fails when a transfer record is written"""
    
    def save(self, table, record_id, data):
        if table == LedgerStore.TRANSFERS_TABLE:
            raise StoreUnavailable("disk full")
        super().save(table, record_id, data)


class FailingRecordSQLiteStorage(SQLiteStorage):
    
    def save(self, table, record_id, data):
        if table == LedgerStore.TRANSFERS_TABLE:
            raise StoreUnavailable("disk full")
        super().save(table, record_id, data)


class FailRecipientCreditMixin:
    """Fails when the recipient account is written, after the sender was debited"""
    
    def save(self, table, record_id, data):
        if table == LedgerStore.ACCOUNTS_TABLE and record_id == BOB:
            raise StoreUnavailable("disk full")
        super().save(table, record_id, data)


class FailingCreditInMemoryStorage(FailRecipientCreditMixin, InMemoryStorage):
    pass


class FailingCreditSQLiteStorage(FailRecipientCreditMixin, SQLiteStorage):
    pass


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(tmp_path / "ledger.db")
    yield LedgerStore(storage)
    storage.close()


def transfer(ledger, amount, from_address=ALICE, to_address=BOB, **kwargs):
    kwargs.setdefault("display_amount", "x")
    kwargs.setdefault("signature", "0xsig")
    return ledger.apply_transfer(from_address, to_address, amount, **kwargs)


class TestAccounts:
    
    def test_create_account(self, ledger):
        account = ledger.create_account(ALICE.upper().replace("0X", "0x"), 5 * ONE_ETH, "alice@example.com")
        
        assert account.address == ALICE
        assert account.balance_minor_units == 5 * ONE_ETH
        assert account.balance == "5.0"
        assert account.email == "alice@example.com"
        assert ledger.get_account(ALICE) == account
    
    def test_create_is_create_or_fetch(self, ledger):
        first = ledger.create_account(ALICE, 5 * ONE_ETH)
        second = ledger.create_account(ALICE, 9 * ONE_ETH, "late@example.com")
        
        assert second.balance_minor_units == 5 * ONE_ETH
        assert second.email is None
        assert second.created_at == first.created_at
    
    def test_concurrent_creation_yields_one_account(self, ledger):
        results = []
        
        def create():
            results.append(ledger.create_account(ALICE, ONE_ETH))
        
        threads = [threading.Thread(target=create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert len(results) == 8
        assert len({a.created_at for a in results}) == 1
        assert ledger.storage.count(LedgerStore.ACCOUNTS_TABLE) == 1
    
    def test_get_unknown_account(self, ledger):
        assert ledger.get_account(ALICE) is None
    
    def test_negative_initial_balance(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create_account(ALICE, -1)
    
    def test_invalid_address(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create_account("alice")
    
    def test_set_email(self, ledger):
        ledger.create_account(ALICE)
        ledger.set_email(ALICE, "Alice@Example.com")
        assert ledger.get_account(ALICE).email == "Alice@Example.com"
        
        ledger.set_email(ALICE, None)
        assert ledger.get_account(ALICE).email is None
    
    def test_set_email_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.set_email(ALICE, "alice@example.com")
    
    def test_account_rejects_negative_balance(self):
        with pytest.raises(ValueError):
            Account.from_dict({
                "address": ALICE, "balance_minor_units": "-1", "email": None,
                "created_at": "2024-01-01T00:00:00+00:00",
                "updated_at": "2024-01-01T00:00:00+00:00"
            })


class TestApplyTransfer:
    
    def test_transfer_moves_funds(self, ledger):
        ledger.create_account(ALICE, 5 * ONE_ETH)
        
        result = transfer(ledger, 2 * ONE_ETH, display_amount="2.0", nonce="n1")
        
        assert result.new_from_balance == 3 * ONE_ETH
        assert result.new_to_balance == 2 * ONE_ETH
        assert ledger.get_account(ALICE).balance_minor_units == 3 * ONE_ETH
        assert ledger.get_account(BOB).balance_minor_units == 2 * ONE_ETH
        assert ledger.get_record(result.record.id) == result.record
        assert result.record.display_amount == "2.0"
        assert ledger.is_nonce_consumed("n1")
    
    def test_recipient_created_implicitly(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        assert ledger.get_account(BOB) is None
        
        transfer(ledger, ONE_ETH // 4)
        
        bob = ledger.get_account(BOB)
        assert bob.balance_minor_units == ONE_ETH // 4
        assert bob.email is None
    
    def test_existing_recipient_credited(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        ledger.create_account(BOB, ONE_ETH, "bob@example.com")
        
        transfer(ledger, ONE_ETH)
        
        bob = ledger.get_account(BOB)
        assert bob.balance_minor_units == 2 * ONE_ETH
        assert bob.email == "bob@example.com"
        assert ledger.get_account(ALICE).balance_minor_units == 0
    
    def test_unknown_sender(self, ledger):
        with pytest.raises(SenderNotFound):
            transfer(ledger, 1)
        assert ledger.get_account(BOB) is None
    
    def test_insufficient_balance_changes_nothing(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        
        with pytest.raises(InsufficientBalance):
            transfer(ledger, ONE_ETH + 1, nonce="n1")
        
        assert ledger.get_account(ALICE).balance_minor_units == ONE_ETH
        assert ledger.get_account(BOB) is None
        assert ledger.list_records_for_address(ALICE) == []
        assert not ledger.is_nonce_consumed("n1")
    
    def test_consumed_nonce_rejected(self, ledger):
        ledger.create_account(ALICE, 5 * ONE_ETH)
        transfer(ledger, ONE_ETH, nonce="n1")
        
        with pytest.raises(TransferAlreadyExecuted):
            transfer(ledger, ONE_ETH, nonce="n1")
        
        assert ledger.get_account(ALICE).balance_minor_units == 4 * ONE_ETH
        assert len(ledger.list_records_for_address(ALICE)) == 1
    
    def test_self_transfer_rejected(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        with pytest.raises(ValidationError):
            transfer(ledger, 1, to_address=ALICE)
    
    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected(self, ledger, amount):
        ledger.create_account(ALICE, ONE_ETH)
        with pytest.raises(ValidationError):
            transfer(ledger, amount)
    
    def test_fiat_record_fields(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        
        result = transfer(
            ledger, ONE_ETH // 20, display_amount="0.05",
            currency_mode=CurrencyMode.FIAT, fiat_amount="100", quote_reference="q_1"
        )
        
        stored = ledger.get_record(result.record.id)
        assert stored.currency_mode == CurrencyMode.FIAT
        assert stored.fiat_amount == "100"
        assert stored.quote_reference == "q_1"
        assert stored.amount_minor_units == ONE_ETH // 20
    
    def test_balances_are_exact_integers(self, ledger):
        tenth = to_minor_units("0.1")
        ledger.create_account(ALICE, to_minor_units("0.3"))
        
        for _ in range(3):
            transfer(ledger, tenth)
        
        assert ledger.get_account(ALICE).balance_minor_units == 0
        assert ledger.get_account(BOB).balance_minor_units == to_minor_units("0.3")


class TestTransferAtomicity:
    """A failure while recording leaves no partial effect"""
    
    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_record_failure_rolls_back_balances(self, backend, tmp_path):
        if backend == "memory":
            storage = FailingRecordInMemoryStorage()
        else:
            storage = FailingRecordSQLiteStorage(tmp_path / "failing.db")
        ledger = LedgerStore(storage)
        ledger.create_account(ALICE, 5 * ONE_ETH)
        
        with pytest.raises(StoreUnavailable):
            transfer(ledger, 2 * ONE_ETH, nonce="n1")
        
        assert ledger.get_account(ALICE).balance_minor_units == 5 * ONE_ETH
        assert ledger.get_account(BOB) is None
        assert not ledger.is_nonce_consumed("n1")
        storage.close()
    
    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    @pytest.mark.parametrize("recipient_exists", [False, True])
    def test_credit_failure_after_debit_rolls_back(self, backend, recipient_exists, tmp_path):
        if backend == "memory":
            storage = FailingCreditInMemoryStorage()
        else:
            storage = FailingCreditSQLiteStorage(tmp_path / "failing-credit.db")
        ledger = LedgerStore(storage)
        ledger.create_account(ALICE, 5 * ONE_ETH)
        if recipient_exists:
            ledger.create_account(BOB, ONE_ETH)
        
        with pytest.raises(StoreUnavailable):
            transfer(ledger, 2 * ONE_ETH, nonce="n1")
        
        assert ledger.get_account(ALICE).balance_minor_units == 5 * ONE_ETH
        bob = ledger.get_account(BOB)
        if recipient_exists:
            assert bob.balance_minor_units == ONE_ETH
        else:
            assert bob is None
        assert ledger.list_records_for_address(ALICE) == []
        assert not ledger.is_nonce_consumed("n1")
        storage.close()
    
    def test_concurrent_transfers_never_overdraw(self, ledger):
        ledger.create_account(ALICE, 10 * ONE_ETH)
        outcomes = []
        lock = threading.Lock()
        
        def spend(i):
            try:
                transfer(ledger, 3 * ONE_ETH, to_address=BOB if i % 2 else CAROL, nonce=f"n{i}")
                result = "ok"
            except InsufficientBalance:
                result = "insufficient"
            with lock:
                outcomes.append(result)
        
        threads = [threading.Thread(target=spend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert outcomes.count("ok") == 3
        assert outcomes.count("insufficient") == 5
        alice = ledger.get_account(ALICE).balance_minor_units
        bob = ledger.get_account(BOB).balance_minor_units if ledger.get_account(BOB) else 0
        carol = ledger.get_account(CAROL).balance_minor_units if ledger.get_account(CAROL) else 0
        assert alice == ONE_ETH
        assert alice + bob + carol == 10 * ONE_ETH
    
    def test_concurrent_replay_settles_once(self, ledger):
        ledger.create_account(ALICE, 10 * ONE_ETH)
        outcomes = []
        
        def execute():
            try:
                transfer(ledger, ONE_ETH, nonce="shared")
                outcomes.append("ok")
            except TransferAlreadyExecuted:
                outcomes.append("replay")
        
        threads = [threading.Thread(target=execute) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert sorted(outcomes) == ["ok"] + ["replay"] * 5
        assert ledger.get_account(ALICE).balance_minor_units == 9 * ONE_ETH


class TestHistory:
    
    def test_history_newest_first(self, ledger):
        ledger.create_account(ALICE, 10 * ONE_ETH)
        ledger.create_account(CAROL, 10 * ONE_ETH)
        
        first = transfer(ledger, 1, display_amount="first").record
        second = transfer(ledger, 2, from_address=CAROL, to_address=ALICE, display_amount="second").record
        third = transfer(ledger, 3, display_amount="third").record
        transfer(ledger, 4, from_address=CAROL, to_address=BOB)
        
        history = ledger.list_records_for_address(ALICE)
        assert [r.id for r in history] == [third.id, second.id, first.id]
        assert all(r.involves(ALICE) for r in history)
        assert len(ledger.list_records_for_address(BOB)) == 3
    
    def test_history_limit(self, ledger):
        ledger.create_account(ALICE, 10 * ONE_ETH)
        records = [transfer(ledger, i + 1).record for i in range(5)]
        
        limited = ledger.list_records_for_address(ALICE, limit=2)
        assert [r.id for r in limited] == [records[4].id, records[3].id]
        assert ledger.list_records_for_address(ALICE, limit=0) == []
    
    def test_history_unknown_address_empty(self, ledger):
        assert ledger.list_records_for_address(CAROL) == []
    
    def test_append_record_never_overwrites(self, ledger):
        ledger.create_account(ALICE, ONE_ETH)
        record = transfer(ledger, 1).record
        
        with pytest.raises(ValueError):
            ledger.append_record(record)
    
    def test_record_round_trip(self):
        record = TransferRecord.from_dict({
            "id": "t1", "from_address": ALICE, "to_address": BOB,
            "display_amount": "1.0", "amount_minor_units": str(ONE_ETH),
            "signature": "0xsig", "timestamp": "2024-01-01T00:00:00+00:00"
        })
        assert record.currency_mode == CurrencyMode.NATIVE
        assert TransferRecord.from_dict(record.to_dict()) == record
