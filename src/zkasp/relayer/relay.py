"""Relay subsystem: submits proven operations and tracks them to a final state."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from zkasp.core.ledger import CommitmentLedger
from zkasp.exceptions import (
    AlreadySpentError,
    ASPException,
    ChainRpcError,
    RelayAmbiguousError,
    RelayConflictError,
    RelayError,
    RelaySubmitError,
    RelaySubmitFailedError,
)
from zkasp.relayer.base import ChainOperation, ChainTxStatus, Submitter
from zkasp.storage.database import DatabaseManager, RelayState, RelayTransaction
from zkasp.utils.encoding import bytes_to_hex

logger = logging.getLogger(__name__)


@dataclass
class PollReport:
    confirmed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class RelaySubsystem:
    """
    Owns every ``RelayTransaction`` transition up to ``submitted``.

    Submissions are serialized on one lock so the relay account sends a
    single, well-defined transaction sequence; confirmation is left to
    ``poll_submitted`` and the chain sync loop. A submission is retried with
    exponential backoff only when it certainly did not reach the chain.
    """

    def __init__(
        self,
        db: DatabaseManager,
        ledger: CommitmentLedger,
        submitter: Submitter,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.ledger = ledger
        self.submitter = submitter
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._lock: Optional[asyncio.Lock] = None

    def _submit_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    async def relay(self, operation: ChainOperation) -> RelayTransaction:
        """
        Record and submit an operation.

        Raises:
            AlreadySpentError: A nullifier is claimed by a different operation
            RelayConflictError: A live relay transaction exists for the key
            RelaySubmitFailedError: Every attempt failed
            RelayAmbiguousError: The outcome is unknown and needs an operator
        """
        self._check_claims(operation)

        tx_id = uuid.uuid4().hex
        with self.db.session_scope() as session:
            self.db.create_relay_transaction(
                session,
                tx_id,
                operation.operation_id,
                operation.kind,
                operation.idempotency_key,
                operation.to_payload(),
                operation.outputs,
            )
        logger.info("Relaying %s %s as %s", operation.kind, operation.operation_id, tx_id)
        return await self._submit(tx_id, operation)

    def _check_claims(self, operation: ChainOperation) -> None:
        for nullifier in operation.nullifiers:
            owner = self.ledger.nullifier_owner(nullifier)
            if owner is None:
                raise RelayConflictError(
                    f"Nullifier {bytes_to_hex(nullifier)} is not claimed by {operation.operation_id}"
                )
            if owner != operation.operation_id:
                raise AlreadySpentError(bytes_to_hex(nullifier))

    async def _submit(self, tx_id: str, operation: ChainOperation) -> RelayTransaction:
        attempt = 0
        while True:
            attempt += 1
            self._update(tx_id, attempts=attempt)
            try:
                async with self._submit_lock():
                    chain_tx_id = await self.submitter.submit(operation)
            except RelayAmbiguousError as e:
                adopted = await self._resolve_ambiguous(tx_id, e)
                if adopted is not None:
                    return adopted
                error = str(e)
            except RelaySubmitError as e:
                error = str(e)
            except ASPException as e:
                self._mark_failed(tx_id, str(e))
                raise
            else:
                return self._mark_submitted(tx_id, chain_tx_id)

            logger.warning("Relay %s attempt %d/%d failed: %s", tx_id, attempt, self.max_attempts, error)
            if attempt >= self.max_attempts:
                self._mark_failed(tx_id, error)
                raise RelaySubmitFailedError(
                    f"Relay {tx_id} failed after {attempt} attempts: {error}"
                )
            self._update(tx_id, last_error=error)
            await self._sleep(self.backoff(attempt))

    async def _resolve_ambiguous(self, tx_id: str, error: RelayAmbiguousError) -> Optional[RelayTransaction]:
        """
        Decide what an ambiguous send means by asking the chain.

        Returns the adopted transaction, or None when the chain says the
        send was rejected and another attempt is safe. A transaction the
        node does not know is never resent.
        """
        if error.chain_tx_id is None:
            self._mark_failed(tx_id, f"ambiguous: {error}")
            logger.error("Relay %s outcome unknown and untraceable; operator follow-up needed", tx_id)
            raise error

        try:
            status = await self.submitter.status(error.chain_tx_id)
        except RelayError as status_error:
            self._mark_failed(tx_id, f"ambiguous: {error}; status check failed: {status_error}",
                              chain_tx_id=error.chain_tx_id)
            raise RelayAmbiguousError(str(error), chain_tx_id=error.chain_tx_id) from status_error

        if status in (ChainTxStatus.PENDING, ChainTxStatus.CONFIRMED):
            logger.info("Relay %s landed as %s despite the send error", tx_id, error.chain_tx_id)
            return self._mark_submitted(tx_id, error.chain_tx_id)
        if status == ChainTxStatus.UNKNOWN:
            # may still appear; chain sync confirms the row if it lands
            self._mark_failed(tx_id, f"ambiguous: {error}; {error.chain_tx_id} not visible on chain",
                              chain_tx_id=error.chain_tx_id)
            logger.error("Relay %s sent as %s but not visible on chain; operator follow-up needed",
                         tx_id, error.chain_tx_id)
            raise error
        return None

    async def resubmit(self, idempotency_key: str) -> RelayTransaction:
        """
        Relay again after the last transaction for a key failed.

        Only ever called on operator request.
        """
        with self.db.session_scope() as session:
            latest = self.db.get_latest_relay_for_key(session, idempotency_key)
            if latest is None:
                raise RelayError(f"No relay transaction for {idempotency_key}")
            if latest.state != RelayState.FAILED:
                raise RelayConflictError(
                    f"Relay transaction {latest.id} for {idempotency_key} is {latest.state.value}"
                )
            operation = ChainOperation.from_payload(json.loads(latest.payload))
        logger.info("Operator resubmission for %s", idempotency_key)
        return await self.relay(operation)

    async def poll_submitted(self) -> PollReport:
        """
        Check the chain status of every submitted transaction.

        Reverted transactions are marked failed. Confirmed ones without
        outputs are confirmed here; transactions with outputs wait for their
        events so the tree grows in chain order.
        """
        report = PollReport()
        with self.db.session_scope() as session:
            submitted = self.db.list_relay_transactions(session, RelayState.SUBMITTED)

        for tx in submitted:
            try:
                status = await self.submitter.status(tx.chain_tx_id)
            except ChainRpcError as e:
                logger.warning("Status check for %s failed: %s", tx.chain_tx_id, e)
                continue

            if status == ChainTxStatus.FAILED:
                with self.db.session_scope() as session:
                    moved = self.db.update_relay_transaction(
                        session, tx.id, from_states=[RelayState.SUBMITTED],
                        state=RelayState.FAILED, last_error="reverted or rejected on chain",
                    )
                if moved:
                    logger.warning("Relay %s (%s) failed on chain", tx.id, tx.chain_tx_id)
                    report.failed.append(tx.id)
            elif status == ChainTxStatus.UNKNOWN:
                logger.debug("Relay %s (%s) not visible on chain yet", tx.id, tx.chain_tx_id)
            elif status == ChainTxStatus.CONFIRMED and not tx.output_values:
                outcome = await asyncio.to_thread(self.ledger.confirm_relay, tx.id)
                if outcome.transitioned:
                    report.confirmed.append(tx.id)
        return report

    def get(self, tx_id: str) -> Optional[RelayTransaction]:
        with self.db.session_scope() as session:
            return self.db.get_relay_transaction(session, tx_id)

    def _update(self, tx_id: str, **fields) -> None:
        with self.db.session_scope() as session:
            self.db.update_relay_transaction(session, tx_id, **fields)

    def _mark_submitted(self, tx_id: str, chain_tx_id: str) -> RelayTransaction:
        with self.db.session_scope() as session:
            self.db.update_relay_transaction(
                session, tx_id, from_states=[RelayState.PENDING],
                state=RelayState.SUBMITTED, chain_tx_id=chain_tx_id,
            )
            tx = self.db.get_relay_transaction(session, tx_id)
        logger.info("Relay %s submitted as %s", tx_id, chain_tx_id)
        return tx

    def _mark_failed(self, tx_id: str, error: str, **fields) -> None:
        with self.db.session_scope() as session:
            self.db.update_relay_transaction(
                session, tx_id, from_states=[RelayState.PENDING],
                state=RelayState.FAILED, last_error=error, **fields
            )
