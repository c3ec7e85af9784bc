"""
Chain sync loop: reconciles local state with what the chain reports.

Each tick handles one batch of blocks after the persisted cursor. Every
per-event step is idempotent, and the cursor only moves after the whole batch
is applied, so a crash or a reorg just means some events are seen again.
Local commitments are never rewound; a disagreement between chain and local
state is recorded and stops the loop until an operator clears it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from zkasp.core.ledger import CommitmentLedger
from zkasp.exceptions import ASPException, ReconciliationDivergenceError
from zkasp.relayer.base import ChainEvent, ChainReader, EventKind
from zkasp.relayer.relay import RelaySubsystem
from zkasp.storage.database import DatabaseManager, RelayState
from zkasp.utils.encoding import bytes_to_hex

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """What one tick did."""

    halted: bool = False
    rewound_to: Optional[int] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    events: int = 0
    confirmed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    tree_advanced: bool = False


class DivergenceDetected(ReconciliationDivergenceError):
    def __init__(self, message: str, detail: Dict[str, Any]):
        self.detail = dict(detail, message=message)
        super().__init__(message)


class ChainSyncLoop:
    """Periodic reconciliation task."""

    def __init__(
        self,
        db: DatabaseManager,
        ledger: CommitmentLedger,
        reader: ChainReader,
        relay: RelaySubsystem,
        interval: float = 5.0,
        batch_blocks: int = 100,
        confirmations: int = 0,
        start_block: int = 0,
        max_reorg_depth: int = 1000,
        on_tree_advanced: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.reader = reader
        self.relay = relay
        self.interval = interval
        self.batch_blocks = batch_blocks
        self.confirmations = confirmations
        self.start_block = start_block
        self.max_reorg_depth = max_reorg_depth
        self.on_tree_advanced = on_tree_advanced
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    # Loop control

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = asyncio.Event()
            self._task = asyncio.ensure_future(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def run(self) -> None:
        logger.info("Chain sync loop started (every %ss)", self.interval)
        while not self._stopping.is_set():
            try:
                await self.tick()
            except ASPException as e:
                logger.warning("Sync tick failed: %s", e)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Chain sync loop stopped")

    # Divergence

    def divergence(self) -> Optional[Dict[str, Any]]:
        with self.db.session_scope() as session:
            return self.db.get_divergence(session)

    def clear_divergence(self) -> None:
        """Operator acknowledgement; processing resumes from the cursor."""
        with self.db.session_scope() as session:
            self.db.clear_divergence(session)
        logger.warning("Reconciliation divergence cleared by operator")

    def cursor(self) -> Optional[Tuple[int, str]]:
        with self.db.session_scope() as session:
            return self.db.get_sync_cursor(session)

    # One pass

    async def tick(self) -> SyncReport:
        report = SyncReport()
        if self.divergence() is not None:
            logger.debug("Sync halted on reconciliation divergence")
            report.halted = True
            return report

        root_before = self.ledger.snapshot()[0]
        try:
            report.rewound_to = await self._check_reorg()
            await self._process_batch(report)
        except DivergenceDetected as e:
            with self.db.session_scope() as session:
                self.db.set_divergence(session, e.detail)
            logger.error("Reconciliation divergence, sync halted: %s", e)
            report.halted = True

        if not report.halted:
            polled = await self.relay.poll_submitted()
            report.confirmed.extend(polled.confirmed)
            report.failed.extend(polled.failed)

        report.tree_advanced = self.ledger.snapshot()[0] != root_before
        if report.tree_advanced and self.on_tree_advanced is not None:
            try:
                await self.on_tree_advanced()
            except ASPException as e:
                logger.warning("Tree-advanced hook failed: %s", e)
        return report

    async def _check_reorg(self) -> Optional[int]:
        """
        Rewind the cursor if its block is no longer canonical.

        Returns the block number rewound to (-1 for a full rescan), or None.
        """
        cursor = self.cursor()
        if cursor is None:
            return None
        number, stored_hash = cursor
        if await self.reader.block_hash(number) == stored_hash:
            return None

        logger.warning("Chain reorganization detected at block %d", number)
        with self.db.session_scope() as session:
            journal = [(b.number, b.hash) for b in
                       self.db.get_journal(session, number - 1, self.max_reorg_depth)]

        common = None
        for block_number, block_hash in journal:
            if await self.reader.block_hash(block_number) == block_hash:
                common = (block_number, block_hash)
                break

        with self.db.session_scope() as session:
            if common is None:
                self.db.rewind_sync_cursor(session, None, None)
            else:
                self.db.rewind_sync_cursor(session, common[0], common[1])
        rewound = common[0] if common else -1
        logger.warning("Sync cursor rewound to block %d", rewound)
        return rewound

    async def _process_batch(self, report: SyncReport) -> None:
        cursor = self.cursor()
        start = cursor[0] + 1 if cursor else self.start_block
        head = await self.reader.head()
        end = min(head - self.confirmations, start + self.batch_blocks - 1)
        if end < start:
            return

        end_hash = await self.reader.block_hash(end)
        events = await self.reader.get_events(start, end)
        if end_hash is None or await self.reader.block_hash(end) != end_hash:
            logger.info("Block %d changed while syncing, retrying next tick", end)
            return

        report.from_block, report.to_block = start, end
        for event in events:
            await asyncio.to_thread(self._apply_event, event, report)
        report.events = len(events)

        blocks = {(event.block_number, event.block_hash) for event in events}
        blocks.add((end, end_hash))
        with self.db.session_scope() as session:
            self.db.advance_sync_cursor(session, sorted(blocks))
        logger.debug("Synced blocks %d..%d (%d events)", start, end, len(events))

    def _apply_event(self, event: ChainEvent, report: SyncReport) -> None:
        with self.db.session_scope() as session:
            relay_tx = self.db.get_relay_by_chain_tx(session, event.tx_id)
        if relay_tx is not None and relay_tx.state != RelayState.CONFIRMED:
            if self.ledger.confirm_relay(relay_tx.id, event.block_number).transitioned:
                report.confirmed.append(relay_tx.id)

        if event.kind == EventKind.ROOT_PUBLISHED:
            self._reconcile_root(event)
        elif event.kind == EventKind.COMMITMENT_ADDED:
            self._reconcile_commitment(event)
        elif event.kind == EventKind.NULLIFIER_SPENT:
            self._record_spend(event)

    def _divergence(self, message: str, event: ChainEvent, **extra) -> DivergenceDetected:
        detail = {
            "kind": event.kind.value,
            "block": event.block_number,
            "tx": event.tx_id,
            "chain_value": bytes_to_hex(event.value),
            "index": event.index,
        }
        detail.update(extra)
        return DivergenceDetected(message, detail)

    def _reconcile_root(self, event: ChainEvent) -> None:
        with self.db.session_scope() as session:
            local = self.db.get_root_at(session, event.index) if event.index is not None else None
            if local is None:
                raise self._divergence(
                    f"Chain published root at {event.index} leaves with no local root", event
                )
            if local.value != event.value:
                raise self._divergence(
                    f"Chain root at {event.index} leaves differs from local root", event,
                    local_value=bytes_to_hex(local.value),
                )
            if not local.chain_confirmed:
                self.db.mark_root_confirmed(session, event.index)
                logger.info("Root at %d leaves confirmed on chain", event.index)

    def _reconcile_commitment(self, event: ChainEvent) -> None:
        local = self.ledger.commitment_at(event.index)
        if local is None:
            placed = self.ledger.accumulator.leaf_index_of(event.value)
            if placed is not None:
                raise self._divergence(
                    f"Commitment is leaf {placed} locally but {event.index} on chain", event,
                    local_index=placed,
                )
            # Produced by a relay transaction that is not materialized yet
            return
        if local != event.value:
            raise self._divergence(
                f"Commitment at leaf {event.index} differs from chain", event,
                local_value=bytes_to_hex(local),
            )

    def _record_spend(self, event: ChainEvent) -> None:
        if self.ledger.nullifier_owner(event.value) is not None:
            return
        if self.ledger.claim_nullifier(event.value, "chain", f"chain:{event.tx_id}"):
            logger.warning("Nullifier %s spent on chain by %s without a local claim",
                           bytes_to_hex(event.value), event.tx_id)
