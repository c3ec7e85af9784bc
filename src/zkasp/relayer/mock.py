"""Deterministic in-memory chain for offline runs and tests."""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from zkasp.exceptions import ChainRpcError, RelayAmbiguousError, RelaySubmitError
from zkasp.relayer import operations
from zkasp.relayer.base import ChainEvent, ChainOperation, ChainTxStatus, EventKind

logger = logging.getLogger(__name__)


@dataclass
class MockBlock:
    number: int
    hash: str
    tx_ids: List[str] = field(default_factory=list)
    events: List[ChainEvent] = field(default_factory=list)


class MockChain:
    """
    Chain double implementing ``Submitter`` and ``ChainReader``.

    Every accepted submission is mined into its own block unless
    ``auto_mine`` is off. Failures, reverts, ambiguous outcomes and
    reorganizations are injected explicitly.
    """

    def __init__(self, auto_mine: bool = True):
        self.auto_mine = auto_mine
        self.blocks: List[MockBlock] = [MockBlock(0, self._block_hash(0, 0, ""))]
        self.operations: Dict[str, ChainOperation] = {}
        self.mempool: List[str] = []
        self.reverted: set = set()
        self.submissions: List[str] = []
        self._nonce = 0
        self._salt = 0
        self._fail_submits = 0
        self._ambiguous: List[Tuple[bool, bool, bool]] = []
        self.rejected: set = set()
        self.hidden: set = set()
        self._revert_next = 0
        self.rpc_down = False

    @staticmethod
    def _block_hash(number: int, salt: int, parent: str) -> str:
        return "0x" + hashlib.sha256(f"{number}:{salt}:{parent}".encode()).hexdigest()

    # Failure injection

    def fail_next_submits(self, count: int) -> None:
        """Reject the next ``count`` submissions before they reach the chain."""
        self._fail_submits += count

    def ambiguous_next_submit(self, landed: bool, with_tx_id: bool = True, visible: bool = True) -> None:
        """
        Make the next submission time out after (maybe) landing.

        A send that did not land is reported as rejected. With ``visible``
        off the node does not know the transaction yet, landed or not, until
        ``reveal`` is called.
        """
        self._ambiguous.append((landed, with_tx_id, visible))

    def reveal(self) -> None:
        """Let status queries see transactions hidden by ``ambiguous_next_submit``."""
        self.hidden.clear()

    def revert_next(self, count: int = 1) -> None:
        """Include the next ``count`` transactions but revert them."""
        self._revert_next += count

    # Submitter

    async def submit(self, operation: ChainOperation) -> str:
        if self.rpc_down:
            raise RelaySubmitError("Mock chain unreachable")
        if self._fail_submits:
            self._fail_submits -= 1
            raise RelaySubmitError("Injected submission failure")

        self._nonce += 1
        tx_id = "0x" + hashlib.sha256(
            f"{self._nonce}:{operation.idempotency_key}".encode()
        ).hexdigest()

        if self._ambiguous:
            landed, with_tx_id, visible = self._ambiguous.pop(0)
            if not visible:
                self.hidden.add(tx_id)
            if landed:
                self._accept(tx_id, operation)
            elif visible:
                self.rejected.add(tx_id)
            raise RelayAmbiguousError("Injected timeout after send",
                                      chain_tx_id=tx_id if with_tx_id else None)

        self._accept(tx_id, operation)
        return tx_id

    def _accept(self, tx_id: str, operation: ChainOperation) -> None:
        self.operations[tx_id] = operation
        self.submissions.append(tx_id)
        if self._revert_next:
            self._revert_next -= 1
            self.reverted.add(tx_id)
        self.mempool.append(tx_id)
        if self.auto_mine:
            self.mine()

    async def status(self, tx_id: str) -> ChainTxStatus:
        if self.rpc_down:
            raise ChainRpcError("Mock chain unreachable")
        if tx_id in self.hidden:
            return ChainTxStatus.UNKNOWN
        if tx_id in self.rejected:
            return ChainTxStatus.FAILED
        if tx_id in self.reverted and not self._in_mempool(tx_id):
            return ChainTxStatus.FAILED
        if self._in_mempool(tx_id):
            return ChainTxStatus.PENDING
        if self.block_of(tx_id) is not None:
            return ChainTxStatus.CONFIRMED
        return ChainTxStatus.UNKNOWN

    def _in_mempool(self, tx_id: str) -> bool:
        return tx_id in self.mempool

    # Mining and reorgs

    def mine(self, count: int = 1) -> List[MockBlock]:
        """Mine ``count`` blocks; the first takes the whole mempool."""
        mined = []
        for _ in range(count):
            parent = self.blocks[-1]
            block = MockBlock(len(self.blocks), self._block_hash(len(self.blocks), self._salt, parent.hash))
            for tx_id in self.mempool:
                block.tx_ids.append(tx_id)
                if tx_id not in self.reverted:
                    block.events.extend(self._events_for(block, tx_id))
            self.mempool = []
            self.blocks.append(block)
            mined.append(block)
        return mined

    def reorg(self, depth: int, remine: bool = True) -> None:
        """
        Replace the last ``depth`` blocks.

        With ``remine`` the dropped transactions are included again, in the
        same order, in blocks with new hashes.
        """
        if depth <= 0 or depth >= len(self.blocks):
            raise ValueError("Invalid reorg depth")
        dropped = self.blocks[-depth:]
        self.blocks = self.blocks[:-depth]
        self._salt += 1
        logger.info("Mock chain reorg: dropped blocks %d..%d", dropped[0].number, dropped[-1].number)
        if not remine:
            return
        for old in dropped:
            self.mempool = list(old.tx_ids)
            self.mine()

    def block_of(self, tx_id: str) -> Optional[MockBlock]:
        for block in self.blocks:
            if tx_id in block.tx_ids:
                return block
        return None

    def _leaf_count(self) -> int:
        return sum(
            1 for block in self.blocks for event in block.events
            if event.kind == EventKind.COMMITMENT_ADDED
        )

    def _events_for(self, block: MockBlock, tx_id: str) -> List[ChainEvent]:
        operation = self.operations[tx_id]
        events = []

        def emit(kind: EventKind, value: bytes, index: Optional[int] = None) -> None:
            events.append(ChainEvent(kind, block.number, block.hash, tx_id, value, index))

        for nullifier in operation.nullifiers:
            emit(EventKind.NULLIFIER_SPENT, nullifier)
        if operation.kind == operations.SUBMIT_MERKLE_ROOT:
            root = bytes.fromhex(operation.idempotency_key[2:])
            emit(EventKind.ROOT_PUBLISHED, root, operation.params.get("leaf_count"))
        leaf_count = self._leaf_count() + sum(
            1 for event in block.events if event.kind == EventKind.COMMITMENT_ADDED
        )
        for offset, output in enumerate(operation.outputs):
            emit(EventKind.COMMITMENT_ADDED, output, leaf_count + offset)
        return events

    # ChainReader

    async def head(self) -> int:
        if self.rpc_down:
            raise ChainRpcError("Mock chain unreachable")
        return self.blocks[-1].number

    async def block_hash(self, number: int) -> Optional[str]:
        if self.rpc_down:
            raise ChainRpcError("Mock chain unreachable")
        if 0 <= number < len(self.blocks):
            return self.blocks[number].hash
        return None

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        if self.rpc_down:
            raise ChainRpcError("Mock chain unreachable")
        return [
            event
            for block in self.blocks[max(from_block, 0):to_block + 1]
            for event in block.events
        ]
