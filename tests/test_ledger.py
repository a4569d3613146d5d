"""
Unit tests for state/ledger.py -- durable credit / dead-letter / mint records.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from bridge.models import TransferEvent
from state.ledger import BridgeLedger

ALICE = "0x1111111111111111111111111111111111111111"
DEPOSIT = "0xac266f88d6889e98209eba3cbc3ac42a425637d1"


def _event(n: int, block: int = 100, amount: int = 5_000_000) -> TransferEvent:
    return TransferEvent(
        tx_hash="0x" + f"{n:064x}",
        from_address=ALICE,
        to_address=DEPOSIT,
        amount=amount,
        block_number=block,
        log_index=n,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "bridge_state.db"


@pytest.fixture
def ledger(db_path: Path) -> BridgeLedger:
    db = BridgeLedger(db_path)
    yield db
    db.close()


class TestCredits:
    def test_record_and_query(self, ledger: BridgeLedger):
        event = _event(1)
        assert not ledger.is_credited(event.tx_hash)

        assert ledger.record_credit(event, "0x" + "aa" * 32) is True

        assert ledger.is_credited(event.tx_hash)
        assert ledger.credited_hashes() == {event.tx_hash}

    def test_second_record_ignored(self, ledger: BridgeLedger):
        event = _event(1)
        ledger.record_credit(event, "0x" + "aa" * 32)
        assert ledger.record_credit(event, "0x" + "bb" * 32) is False
        assert ledger.stats["credited"] == 1

    def test_survives_reopen(self, db_path: Path):
        first = BridgeLedger(db_path)
        first.record_credit(_event(1), "0x" + "aa" * 32)
        first.close()

        second = BridgeLedger(db_path)
        try:
            assert second.is_credited(_event(1).tx_hash)
        finally:
            second.close()

    def test_large_amount_kept_exact(self, ledger: BridgeLedger):
        event = _event(1, amount=2**200)
        ledger.record_failure(event, "boom")
        assert ledger.open_dead_letters()[0].event.amount == 2**200


class TestDeadLetters:
    def test_failure_recorded(self, ledger: BridgeLedger):
        event = _event(1)
        assert ledger.record_failure(event, "TransactionReverted: creditDeposit reverted") == 1

        letters = ledger.open_dead_letters()
        assert len(letters) == 1
        assert letters[0].event == event
        assert letters[0].attempts == 1
        assert "reverted" in letters[0].error

    def test_attempts_increment(self, ledger: BridgeLedger):
        event = _event(1)
        ledger.record_failure(event, "first")
        assert ledger.record_failure(event, "second") == 2
        assert ledger.open_dead_letters()[0].error == "second"

    def test_credit_resolves_dead_letter(self, ledger: BridgeLedger):
        event = _event(1)
        ledger.record_failure(event, "timeout")
        ledger.record_credit(event, "0x" + "aa" * 32)

        assert ledger.open_dead_letters() == []
        assert ledger.stats["open_dead_letters"] == 0

    def test_ordered_oldest_first(self, ledger: BridgeLedger):
        ledger.record_failure(_event(1, block=100), "x")
        ledger.record_failure(_event(2, block=200), "x")
        ledger.record_failure(_event(1, block=100), "again")
        hashes = [dl.event.tx_hash for dl in ledger.open_dead_letters()]
        assert hashes == [_event(1).tx_hash, _event(2).tx_hash]


class TestPendingCredits:
    def test_unconfirmed_credit_tx_kept_across_reopen(self, db_path: Path):
        event = _event(1)
        first = BridgeLedger(db_path)
        first.record_failure(event, "ConfirmationTimeout: not confirmed", pending_tx_hash="0x" + "cc" * 32)
        first.close()

        second = BridgeLedger(db_path)
        try:
            assert second.pending_credits() == {event.tx_hash: "0x" + "cc" * 32}
            assert second.open_dead_letters()[0].pending_tx_hash == "0x" + "cc" * 32
        finally:
            second.close()

    def test_plain_failure_has_no_pending_tx(self, ledger: BridgeLedger):
        ledger.record_failure(_event(1), "ConnectionError: rpc down")
        assert ledger.open_dead_letters()[0].pending_tx_hash is None
        assert ledger.pending_credits() == {}

    def test_later_failure_replaces_pending_tx(self, ledger: BridgeLedger):
        event = _event(1)
        ledger.record_failure(event, "timeout", pending_tx_hash="0x" + "cc" * 32)
        ledger.record_failure(event, "TransactionReverted: creditDeposit reverted")
        assert ledger.pending_credits() == {}

    def test_credit_settles_pending_tx(self, ledger: BridgeLedger):
        event = _event(1)
        ledger.record_failure(event, "timeout", pending_tx_hash="0x" + "cc" * 32)
        ledger.record_credit(event, "0x" + "cc" * 32)
        assert ledger.pending_credits() == {}

    def test_adds_column_to_older_database(self, db_path: Path):
        conn = sqlite3.connect(db_path)
        conn.execute(
            "CREATE TABLE dead_letters (tx_hash TEXT PRIMARY KEY, sender TEXT NOT NULL, "
            "recipient TEXT NOT NULL, amount TEXT NOT NULL, block_number INTEGER NOT NULL, "
            "log_index INTEGER NOT NULL DEFAULT 0, error TEXT NOT NULL, "
            "attempts INTEGER NOT NULL DEFAULT 1, first_failed_at REAL NOT NULL, "
            "last_failed_at REAL NOT NULL, resolved_at REAL)"
        )
        conn.commit()
        conn.close()

        ledger = BridgeLedger(db_path)
        try:
            ledger.record_failure(_event(1), "timeout", pending_tx_hash="0x" + "cc" * 32)
            assert ledger.pending_credits() == {_event(1).tx_hash: "0x" + "cc" * 32}
        finally:
            ledger.close()


class TestMints:
    def test_record_and_get(self, ledger: BridgeLedger):
        assert ledger.get_mint("ord-1") is None
        assert ledger.record_mint("ord-1", ALICE, "yes", 3, "0x" + "cc" * 32) is True

        mint = ledger.get_mint("ord-1")
        assert mint["recipient"] == ALICE
        assert mint["side"] == "yes"
        assert mint["count"] == 3
        assert mint["tx_hash"] == "0x" + "cc" * 32

    def test_duplicate_order_ignored(self, ledger: BridgeLedger):
        ledger.record_mint("ord-1", ALICE, "yes", 3, "0x" + "cc" * 32)
        assert ledger.record_mint("ord-1", ALICE, "yes", 3, "0x" + "dd" * 32) is False
        assert ledger.get_mint("ord-1")["tx_hash"] == "0x" + "cc" * 32


class TestConcurrency:
    def test_parallel_credits(self, ledger: BridgeLedger):
        errors: list[Exception] = []

        def worker(start: int) -> None:
            try:
                for i in range(start, start + 20):
                    ledger.record_credit(_event(i), "0x" + "aa" * 32)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n * 20,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert ledger.stats["credited"] == 80


def test_stats_shape(ledger: BridgeLedger, db_path: Path):
    assert ledger.stats == {
        "db_path": str(db_path),
        "credited": 0,
        "open_dead_letters": 0,
        "minted_orders": 0,
    }
