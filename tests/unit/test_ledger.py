"""Tests for the commitment ledger (durable store + in-memory tree)."""

import threading

import pytest

from helpers import TREE_DEPTH, commitment
from zkasp.core.ledger import CommitmentLedger
from zkasp.core.merkle_tree import MerkleAccumulator
from zkasp.exceptions import DuplicateCommitmentError, InvalidLedgerStateError
from zkasp.storage.database import RelayState


def _relay_row(db, tx_id, key, outputs=(), state=None):
    with db.session_scope() as session:
        db.create_relay_transaction(session, tx_id, f"op-{tx_id}", "deposit", key, {}, outputs)
        if state is not None:
            db.update_relay_transaction(session, tx_id, state=state, chain_tx_id=f"0x{tx_id}")


class TestRecordCommitment:
    """Appending leaves through the ledger."""

    def test_record_assigns_sequential_indices(self, ledger, db):
        assert ledger.record_commitment(commitment(1)) == 0
        assert ledger.record_commitment(commitment(2), source_ref="relay-x") == 1

        with db.session_scope() as session:
            assert db.get_leaf_count(session) == 2
            current = db.get_current_root(session)
            assert current.value == ledger.snapshot()[0]
            assert current.leaf_count == 2

    def test_duplicate_leaves_tree_untouched(self, ledger):
        ledger.record_commitment(commitment(1))
        root = ledger.snapshot()
        with pytest.raises(DuplicateCommitmentError):
            ledger.record_commitment(commitment(1))
        assert ledger.snapshot() == root

    def test_concurrent_records_get_distinct_indices(self, ledger):
        indices = []

        def record(k):
            indices.append(ledger.record_commitment(commitment(k)))

        threads = [threading.Thread(target=record, args=(k,)) for k in range(1, 11)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(indices) == list(range(10))
        for index in range(10):
            assert ledger.path(index).verify()

    def test_commitment_at(self, ledger):
        ledger.record_commitment(commitment(4))
        assert ledger.commitment_at(0) == commitment(4)
        assert ledger.commitment_at(1) is None


class TestRecovery:
    """Rebuilding the tree from the durable store."""

    def test_recovered_root_matches(self, db, ledger):
        for k in range(1, 6):
            ledger.record_commitment(commitment(k))
        expected = ledger.snapshot()

        restarted = CommitmentLedger(db, depth=TREE_DEPTH)
        assert restarted.recover() == 5
        assert restarted.snapshot() == expected
        assert restarted.accumulator.leaf_index_of(commitment(3)) == 2

    def test_recover_empty(self, ledger):
        assert ledger.recover() == 0
        assert ledger.snapshot() == (MerkleAccumulator(depth=TREE_DEPTH).root, 0)

    def test_gap_is_fatal(self, db, ledger):
        with db.session_scope() as session:
            db.add_commitment(session, 0, commitment(1))
            db.add_commitment(session, 2, commitment(3))
            session.commit()
        with pytest.raises(InvalidLedgerStateError):
            ledger.recover()

    def test_root_mismatch_is_fatal(self, db, ledger):
        ledger.record_commitment(commitment(1))
        with db.session_scope() as session:
            db.add_root(session, b"\xee" * 32, 2)
            session.commit()
            db.add_commitment(session, 1, commitment(2))
            session.commit()
        with pytest.raises(InvalidLedgerStateError):
            CommitmentLedger(db, depth=TREE_DEPTH).recover()

    def test_missing_root_row_is_repaired(self, db):
        with db.session_scope() as session:
            db.add_commitment(session, 0, commitment(1))
            session.commit()

        ledger = CommitmentLedger(db, depth=TREE_DEPTH)
        ledger.recover()
        with db.session_scope() as session:
            current = db.get_current_root(session)
            assert current.leaf_count == 1
            assert current.value == ledger.snapshot()[0]

    def test_stored_root_not_marked_current_is_restored(self, db):
        expected = MerkleAccumulator(depth=TREE_DEPTH)
        expected.insert(commitment(1))
        with db.session_scope() as session:
            db.add_commitment(session, 0, commitment(1))
            row = db.add_root(session, expected.root, 1)
            session.commit()
            row.is_current = False
            session.commit()

        CommitmentLedger(db, depth=TREE_DEPTH).recover()
        with db.session_scope() as session:
            current = db.get_current_root(session)
            assert current.leaf_count == 1
            assert current.value == expected.root
            assert len(db.get_root_history(session, 10)) == 1


class TestNullifierClaims:
    """Nullifier claims through the ledger."""

    def test_claim_and_owner(self, ledger):
        assert ledger.nullifier_owner(b"\x05" * 32) is None
        assert ledger.claim_nullifier(b"\x05" * 32, "membership", "op-1")
        assert not ledger.claim_nullifier(b"\x05" * 32, "swap", "op-2")
        assert ledger.nullifier_owner(b"\x05" * 32) == "op-1"

    def test_multi_claim_is_all_or_nothing(self, ledger):
        first, second = b"\x0a" * 32, b"\x0b" * 32
        assert ledger.claim_nullifier(second, "membership", "other-op")

        assert not ledger.claim_nullifiers([first, second], "mint", "mint-op")
        assert ledger.nullifier_owner(first) is None
        assert ledger.nullifier_owner(second) == "other-op"

        assert ledger.claim_nullifiers([first, b"\x0c" * 32], "mint", "mint-op")
        assert ledger.nullifier_owner(first) == "mint-op"


class TestRootAcceptance:
    """Stale-root window."""

    def test_current_and_recent_roots(self, ledger):
        roots = []
        for k in range(1, 6):
            ledger.record_commitment(commitment(k))
            roots.append(ledger.snapshot()[0])

        assert ledger.is_acceptable_root(roots[-1], 1)
        assert ledger.is_acceptable_root(roots[-3], 3)
        assert not ledger.is_acceptable_root(roots[-4], 3)
        assert not ledger.is_acceptable_root(b"\x42" * 32, 30)


class TestConfirmRelay:
    """Materializing relay outputs on confirmation."""

    def test_confirm_inserts_outputs_once(self, db, ledger):
        _relay_row(db, "r1", "0xk1", [commitment(1), commitment(2)], RelayState.SUBMITTED)

        outcome = ledger.confirm_relay("r1", block_number=7)
        assert outcome.transitioned
        assert outcome.inserted == [0, 1]

        again = ledger.confirm_relay("r1", block_number=7)
        assert not again.transitioned
        assert again.inserted == []
        assert ledger.snapshot()[1] == 2

        with db.session_scope() as session:
            tx = db.get_relay_transaction(session, "r1")
            assert tx.state == RelayState.CONFIRMED
            assert tx.confirmed_block == 7

    def test_resume_after_partial_materialization(self, db, ledger):
        _relay_row(db, "r1", "0xk1", [commitment(1), commitment(2)], RelayState.SUBMITTED)
        # crash after the first output was recorded
        ledger.record_commitment(commitment(1), source_ref="r1")

        outcome = ledger.confirm_relay("r1")
        assert outcome.transitioned
        assert outcome.inserted == [1]

    def test_unknown_transaction(self, ledger):
        assert not ledger.confirm_relay("nope").transitioned

    def test_failed_with_live_replacement_is_ignored(self, db, ledger):
        _relay_row(db, "r1", "0xk1", [commitment(1)], RelayState.FAILED)
        _relay_row(db, "r2", "0xk1", [commitment(1)], RelayState.SUBMITTED)

        assert not ledger.confirm_relay("r1").transitioned
        assert ledger.snapshot()[1] == 0

    def test_failed_transaction_that_landed_is_confirmed(self, db, ledger):
        _relay_row(db, "r1", "0xk1", [commitment(9)], RelayState.FAILED)

        outcome = ledger.confirm_relay("r1", block_number=3)
        assert outcome.transitioned
        assert ledger.accumulator.leaf_index_of(commitment(9)) == 0
