"""Commitment ledger: keeps the durable store and the in-memory tree in step.

The database is the source of truth. The accumulator is a projection that
``recover`` can rebuild at any time from the ``commitments`` table. Every
leaf insert goes through ``record_commitment``, which holds the global write
lock, commits the commitment row and the new root row in one database
transaction and only then applies the insert to the tree.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from zkasp.core.merkle_tree import MerkleAccumulator, MerklePath
from zkasp.exceptions import DuplicateCommitmentError, InvalidLedgerStateError
from zkasp.storage.database import DatabaseManager, RelayState

logger = logging.getLogger(__name__)


@dataclass
class ConfirmOutcome:
    """Result of confirming a relay transaction."""

    transitioned: bool
    inserted: List[int] = field(default_factory=list)


class CommitmentLedger:
    """Pairs ``DatabaseManager`` with a ``MerkleAccumulator``."""

    def __init__(self, db: DatabaseManager, depth: int = MerkleAccumulator.DEFAULT_DEPTH):
        self.db = db
        self.accumulator = MerkleAccumulator(depth=depth)
        self._write_lock = threading.RLock()

    def recover(self) -> int:
        """
        Rebuild the accumulator from recorded commitments, in leaf-index order.

        Returns:
            int: Number of leaves replayed

        Raises:
            InvalidLedgerStateError: If indices have gaps or the rebuilt root
                disagrees with the stored current root
        """
        with self._write_lock:
            accumulator = MerkleAccumulator(depth=self.accumulator.depth)
            with self.db.session_scope() as session:
                rows = self.db.get_all_commitments(session)
                for expected, row in enumerate(rows):
                    if row.leaf_index != expected:
                        raise InvalidLedgerStateError(
                            f"Commitment table has a gap: expected leaf {expected}, found {row.leaf_index}"
                        )
                    accumulator.insert(row.value)

                current = self.db.get_current_root(session)
                if rows:
                    if current is None or current.leaf_count != len(rows):
                        current = self.db.get_root_at(session, len(rows))
                        if current is None:
                            logger.warning(
                                "Root row missing for %d leaves, recording rebuilt root", len(rows)
                            )
                            current = self.db.add_root(session, accumulator.root, len(rows))
                        else:
                            logger.warning(
                                "Root row for %d leaves is not current, marking it current", len(rows)
                            )
                            self.db.set_current_root(session, current)
                        session.commit()
                    if current.value != accumulator.root:
                        raise InvalidLedgerStateError(
                            f"Rebuilt root {accumulator.root.hex()} does not match "
                            f"stored root {current.value.hex()} at {len(rows)} leaves"
                        )

            self.accumulator = accumulator
            logger.info("Merkle tree rebuilt: %d leaves, root %s", len(rows), accumulator.root.hex())
            return len(rows)

    def record_commitment(self, value: bytes, source_ref: Optional[str] = None) -> int:
        """
        Append a commitment to the durable ledger and the tree.

        Returns:
            int: Assigned leaf index

        Raises:
            DuplicateCommitmentError: If the value is already in the tree
            TreeFullError: If the tree is full
            StorageError: If the database transaction fails (tree untouched)
        """
        with self._write_lock:
            pending = self.accumulator.prepare_insert(value)
            with self.db.session_scope() as session:
                self.db.add_commitment(session, pending.leaf_index, value, source_ref)
                self.db.add_root(session, pending.root, pending.leaf_index + 1)
                session.commit()
            self.accumulator.apply(pending)

        logger.info("Commitment %s recorded at leaf %d", value.hex()[:16], pending.leaf_index)
        return pending.leaf_index

    def confirm_relay(self, tx_id: str, block_number: Optional[int] = None) -> ConfirmOutcome:
        """
        Mark a relay transaction confirmed and materialize its output commitments.

        Outputs are inserted before the state flips, each in its own
        transaction, and already-present outputs are skipped, so replaying a
        confirmation (or resuming after a crash in the middle) is a no-op for
        what was already done.
        """
        with self._write_lock:
            with self.db.session_scope() as session:
                tx = self.db.get_relay_transaction(session, tx_id)
                if tx is None:
                    logger.warning("Confirmation for unknown relay transaction %s", tx_id)
                    return ConfirmOutcome(transitioned=False)
                if tx.state == RelayState.CONFIRMED:
                    return ConfirmOutcome(transitioned=False)
                if tx.state == RelayState.FAILED:
                    active = self.db.get_active_relay_for_key(session, tx.idempotency_key)
                    if active is not None:
                        logger.error(
                            "Failed relay %s landed on chain while %s is live for the same key",
                            tx_id, active.id,
                        )
                        return ConfirmOutcome(transitioned=False)
                outputs = tx.output_values

            inserted = []
            for value in outputs:
                if self.accumulator.leaf_index_of(value) is not None:
                    continue
                try:
                    inserted.append(self.record_commitment(value, source_ref=tx_id))
                except DuplicateCommitmentError:
                    logger.error("Output %s of %s is already in the tree", value.hex(), tx_id)

            with self.db.session_scope() as session:
                transitioned = self.db.update_relay_transaction(
                    session,
                    tx_id,
                    from_states=[RelayState.PENDING, RelayState.SUBMITTED, RelayState.FAILED],
                    state=RelayState.CONFIRMED,
                    confirmed_block=block_number,
                )

        if transitioned:
            logger.info("Relay transaction %s confirmed (block %s)", tx_id, block_number)
        return ConfirmOutcome(transitioned=transitioned, inserted=inserted)

    def claim_nullifier(self, value: bytes, op_kind: str, op_ref: str) -> bool:
        """Atomic insert-if-absent; the only place a spend is decided."""
        with self.db.session_scope() as session:
            claimed = self.db.claim_nullifier(session, value, op_kind, op_ref)
        if claimed:
            logger.info("Nullifier %s claimed by %s %s", value.hex()[:16], op_kind, op_ref)
        return claimed

    def claim_nullifiers(self, values: Sequence[bytes], op_kind: str, op_ref: str) -> bool:
        """All-or-nothing claim of the nullifiers one operation spends."""
        with self.db.session_scope() as session:
            claimed = self.db.claim_nullifiers(session, values, op_kind, op_ref)
        if claimed:
            logger.info("Nullifiers %s claimed by %s %s",
                        ", ".join(v.hex()[:16] for v in values), op_kind, op_ref)
        return claimed

    def nullifier_owner(self, value: bytes) -> Optional[str]:
        """Operation reference that claimed a nullifier, if claimed."""
        with self.db.session_scope() as session:
            row = self.db.get_nullifier(session, value)
            return row.op_ref if row else None

    def snapshot(self) -> Tuple[bytes, int]:
        """Current ``(root, leaf_count)``."""
        return self.accumulator.snapshot()

    def path(self, leaf_index: int) -> MerklePath:
        """Authentication path against the current root."""
        return self.accumulator.path(leaf_index)

    def paths(self, leaf_indices: List[int]) -> List[MerklePath]:
        """Authentication paths sharing one root."""
        return self.accumulator.paths(leaf_indices)

    def is_acceptable_root(self, root: bytes, window: int) -> bool:
        """Whether proofs against ``root`` are still accepted."""
        if root == self.accumulator.root:
            return True
        with self.db.session_scope() as session:
            return self.db.is_known_root(session, root, window)

    def commitment_at(self, leaf_index: int) -> Optional[bytes]:
        """Recorded commitment value at a leaf index."""
        with self.db.session_scope() as session:
            row = self.db.get_commitment_by_index(session, leaf_index)
            return row.value if row else None
