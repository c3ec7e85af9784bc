"""
Operation orchestrator: the facade the API layer calls.

Every workflow validates first, reads the ledger, gets the circuit work done
by the proof pipeline, claims nullifiers (the one double-spend decision
point) and hands the proven operation to the relay subsystem. Output
commitments enter the tree when the chain confirms the relay transaction.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from zkasp import __version__
from zkasp.config import Settings
from zkasp.core.ledger import CommitmentLedger
from zkasp.core.merkle_tree import MerklePath
from zkasp.core.validation import (
    unsigned_tick,
    validate_address,
    validate_decimal,
    validate_hex_u256,
    validate_leaf_index,
    validate_liquidity,
    validate_secret,
    validate_tick_range,
)
from zkasp.exceptions import (
    AlreadySpentError,
    ASPException,
    DuplicateCommitmentError,
    ProofFailedError,
    RelayAmbiguousError,
    RelayConflictError,
    RelayStrandedError,
    RelaySubmitFailedError,
    UnknownLeafError,
    UnknownRootError,
    ValidationError,
)
from zkasp.models.schemas import (
    Accepted,
    BurnRequest,
    CommitmentLookup,
    ContractAddresses,
    DepositRequest,
    MintRequest,
    NoteInput,
    NullifierResponse,
    OperationKind,
    OperationResult,
    ProofJobResponse,
    Rejected,
    RelayResponse,
    StatusResponse,
    SwapRequest,
    TreeStatus,
    WithdrawRequest,
)
from zkasp.prover.pipeline import ProofPipeline, ProofResult
from zkasp.relayer import operations
from zkasp.relayer.base import ChainOperation
from zkasp.relayer.relay import RelaySubsystem
from zkasp.storage.database import DatabaseManager, RelayTransaction
from zkasp.utils.encoding import bytes_to_hex, field_to_decimal, to_field_bytes

logger = logging.getLogger(__name__)


def _decimal(value: bytes) -> str:
    return field_to_decimal(value)


def _is_zero(value: bytes) -> bool:
    return not any(value)


class Orchestrator:
    """Composes ledger, prover and relay into the shielded-pool workflows."""

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        ledger: CommitmentLedger,
        pipeline: ProofPipeline,
        relay: RelaySubsystem,
    ):
        self.settings = settings
        self.db = db
        self.ledger = ledger
        self.pipeline = pipeline
        self.relay = relay

    # Result handling

    async def _execute(self, kind: OperationKind,
                       work: Callable[[str], Awaitable[Dict[str, Any]]]) -> OperationResult:
        operation_id = uuid.uuid4().hex
        try:
            details = await work(operation_id)
        except ASPException as e:
            log = logger.warning if e.retryable else logger.info
            log("%s %s rejected (%s): %s", kind.value, operation_id, e.code, e)
            return Rejected(
                operation_id=operation_id,
                kind=kind,
                code=e.code,
                reason=str(e),
                retryable=e.retryable,
            )
        logger.info("%s %s accepted", kind.value, operation_id)
        return Accepted(operation_id=operation_id, kind=kind, details=details)

    @staticmethod
    def _relay_details(tx: RelayTransaction) -> Dict[str, Any]:
        return {
            "relay_id": tx.id,
            "relay_state": tx.state.value,
            "tx_hash": tx.chain_tx_id,
        }

    # Prover helpers

    async def _note_hashes(self, secret: str, nullifier: str, amount_low: str,
                           amount_high: str, token: str) -> Tuple[bytes, bytes]:
        """Commitment and nullifier hash of a note, computed by the worker."""
        result = await self.pipeline.prove("commitment", {
            "secret": secret,
            "nullifier": nullifier,
            "amount_low": amount_low,
            "amount_high": amount_high,
            "token": token,
        })
        return self._hash_pair(result)

    async def _position_hashes(self, secret: str, nullifier: str, tick_lower: int,
                               tick_upper: int, liquidity: str) -> Tuple[bytes, bytes]:
        result = await self.pipeline.prove("position_commitment", {
            "secret": secret,
            "nullifier": nullifier,
            "tickLower": unsigned_tick(tick_lower),
            "tickUpper": unsigned_tick(tick_upper),
            "liquidity": liquidity,
        })
        return self._hash_pair(result)

    @staticmethod
    def _hash_pair(result: ProofResult) -> Tuple[bytes, bytes]:
        try:
            return (to_field_bytes(result.data["commitment"]),
                    to_field_bytes(result.data["nullifierHash"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ProofFailedError(f"Malformed {result.kind} result: {e}", result.job_id)

    @staticmethod
    def _signal(proof: ProofResult, position: int) -> bytes:
        """Public signal as a field element; missing signals read as zero."""
        signals = proof.public_signals
        if position >= len(signals):
            return bytes(32)
        try:
            return to_field_bytes(signals[position])
        except (TypeError, ValueError) as e:
            raise ProofFailedError(f"Malformed public signal {position}: {e}", proof.job_id)

    # Ledger checks

    def _check_leaf(self, leaf_index: int, commitment: bytes) -> None:
        stored = self.ledger.commitment_at(leaf_index)
        if stored is None:
            raise UnknownLeafError(leaf_index)
        if stored != commitment:
            raise ValidationError(f"Commitment mismatch at leaf {leaf_index}")

    def _check_unspent(self, nullifier_hash: bytes) -> None:
        if self.ledger.nullifier_owner(nullifier_hash) is not None:
            raise AlreadySpentError(bytes_to_hex(nullifier_hash))

    def _check_root(self, root: bytes) -> None:
        if not self.ledger.is_acceptable_root(root, self.settings.root_history_size):
            raise UnknownRootError(
                f"Root {bytes_to_hex(root)} is older than the last "
                f"{self.settings.root_history_size} roots"
            )

    async def _claim(self, nullifiers: Sequence[bytes], circuit: str, operation_id: str) -> None:
        """Claim every nullifier together; a lost claim leaves none of them claimed."""
        claimed = await asyncio.to_thread(
            self.ledger.claim_nullifiers, nullifiers, circuit, operation_id
        )
        if not claimed:
            taken = next((n for n in nullifiers if self.ledger.nullifier_owner(n) is not None),
                         nullifiers[0])
            raise AlreadySpentError(bytes_to_hex(taken))

    async def _relay_spend(self, operation: ChainOperation) -> RelayTransaction:
        """Relay an operation whose nullifiers are already claimed."""
        try:
            return await self.relay.relay(operation)
        except (RelaySubmitFailedError, RelayAmbiguousError) as e:
            raise RelayStrandedError(
                f"{e}; nullifiers stay claimed, an operator can retry relay {operation.idempotency_key}",
                operation.idempotency_key,
            ) from e

    async def _spend_note(self, note: NoteInput) -> Tuple[bytes, bytes]:
        commitment, nullifier_hash = await self._note_hashes(
            note.secret, note.nullifier, note.balance_low, note.balance_high, note.token
        )
        self._check_leaf(note.leaf_index, commitment)
        self._check_unspent(nullifier_hash)
        return commitment, nullifier_hash

    @staticmethod
    def _validate_note(note: NoteInput, prefix: str) -> None:
        validate_secret(note.secret, f"{prefix}.secret")
        validate_secret(note.nullifier, f"{prefix}.nullifier")
        validate_decimal(note.balance_low, f"{prefix}.balance_low")
        validate_decimal(note.balance_high, f"{prefix}.balance_high")
        validate_address(note.token, f"{prefix}.token")
        validate_leaf_index(note.leaf_index, f"{prefix}.leaf_index")

    @staticmethod
    def _validate_pool_key(pool_key) -> None:
        validate_address(pool_key.token_0, "pool_key.token_0")
        validate_address(pool_key.token_1, "pool_key.token_1")

    # Workflows

    async def deposit(self, request: DepositRequest) -> OperationResult:
        """Relay ``coordinator.deposit``; the commitment becomes a leaf on confirmation."""

        async def work(operation_id: str) -> Dict[str, Any]:
            commitment = to_field_bytes(validate_hex_u256(request.commitment, "commitment"))
            if self.ledger.accumulator.leaf_index_of(commitment) is not None:
                raise DuplicateCommitmentError(f"Commitment {bytes_to_hex(commitment)} is already in the tree")

            operation = operations.deposit_operation(
                operation_id, self.settings.coordinator_address, commitment
            )
            try:
                tx = await self.relay.relay(operation)
            except RelayConflictError as e:
                raise DuplicateCommitmentError(f"Deposit already in progress: {e}") from e
            return dict(self._relay_details(tx), commitment=bytes_to_hex(commitment))

        return await self._execute(OperationKind.DEPOSIT, work)

    async def withdraw(self, request: WithdrawRequest) -> OperationResult:
        """Membership proof relayed to ``coordinator.verify_membership``."""

        async def work(operation_id: str) -> Dict[str, Any]:
            validate_secret(request.secret, "secret")
            validate_secret(request.nullifier, "nullifier")
            validate_decimal(request.amount_low, "amount_low")
            validate_decimal(request.amount_high, "amount_high")
            validate_address(request.token, "token")
            validate_address(request.recipient, "recipient")
            validate_leaf_index(request.leaf_index)

            commitment, nullifier_hash = await self._note_hashes(
                request.secret, request.nullifier, request.amount_low,
                request.amount_high, request.token,
            )
            self._check_leaf(request.leaf_index, commitment)
            self._check_unspent(nullifier_hash)

            path = self.ledger.path(request.leaf_index)
            circuit = path.to_dict()
            proof = await self.pipeline.prove("membership", {
                "root": circuit["root"],
                "nullifierHash": _decimal(nullifier_hash),
                "recipient": request.recipient,
                "amount_low": request.amount_low,
                "amount_high": request.amount_high,
                "token": request.token,
                "secret": request.secret,
                "nullifier": request.nullifier,
                "pathElements": circuit["pathElements"],
                "pathIndices": circuit["pathIndices"],
            })

            self._check_root(path.root)
            await self._claim([nullifier_hash], "membership", operation_id)
            tx = await self._relay_spend(operations.membership_operation(
                operation_id, self.settings.coordinator_address, proof.calldata, nullifier_hash
            ))
            return dict(self._relay_details(tx), nullifier_hash=bytes_to_hex(nullifier_hash))

        return await self._execute(OperationKind.WITHDRAW, work)

    async def swap(self, request: SwapRequest) -> OperationResult:
        """Shielded swap; output and change notes are created by the circuit."""

        async def work(operation_id: str) -> Dict[str, Any]:
            self._validate_note(request.input_note, "input_note")
            params = request.swap_params
            validate_address(params.token_in, "swap_params.token_in")
            validate_address(params.token_out, "swap_params.token_out")
            validate_decimal(params.amount_in, "swap_params.amount_in")
            validate_decimal(params.amount_out_min, "swap_params.amount_out_min")
            validate_decimal(params.amount_out_low, "swap_params.amount_out_low")
            validate_decimal(params.amount_out_high, "swap_params.amount_out_high")
            validate_secret(request.output_note.secret, "output_note.secret")
            validate_secret(request.output_note.nullifier, "output_note.nullifier")
            validate_secret(request.change_note.secret, "change_note.secret")
            validate_secret(request.change_note.nullifier, "change_note.nullifier")
            self._validate_pool_key(request.pool_key)
            sqrt_price_limit = validate_hex_u256(request.sqrt_price_limit, "sqrt_price_limit")

            note = request.input_note
            _, nullifier_hash = await self._spend_note(note)
            output_commitment, _ = await self._note_hashes(
                request.output_note.secret, request.output_note.nullifier,
                params.amount_out_low, params.amount_out_high, params.token_out,
            )

            path = self.ledger.path(note.leaf_index)
            circuit = path.to_dict()
            proof = await self.pipeline.prove("swap", {
                "root": circuit["root"],
                "nullifierHash": _decimal(nullifier_hash),
                "newCommitment": _decimal(output_commitment),
                "tokenIn": params.token_in,
                "tokenOut": params.token_out,
                "amountIn": params.amount_in,
                "amountOutMin": params.amount_out_min,
                "secret": note.secret,
                "nullifier": note.nullifier,
                "balance_low": note.balance_low,
                "balance_high": note.balance_high,
                "pathElements": circuit["pathElements"],
                "pathIndices": circuit["pathIndices"],
                "newSecret": request.output_note.secret,
                "newNullifier": request.output_note.nullifier,
                "amountOut_low": params.amount_out_low,
                "amountOut_high": params.amount_out_high,
                "changeSecret": request.change_note.secret,
                "changeNullifier": request.change_note.nullifier,
            })
            # circuit outputs come first in the public signals
            change_commitment = self._signal(proof, 0)

            self._check_root(path.root)
            await self._claim([nullifier_hash], "swap", operation_id)
            tx = await self._relay_spend(operations.swap_operation(
                operation_id, self.settings.pool_address, request.pool_key, proof.calldata,
                sqrt_price_limit, nullifier_hash, [output_commitment, change_commitment],
            ))
            return dict(
                self._relay_details(tx),
                nullifier_hash=bytes_to_hex(nullifier_hash),
                new_commitment=bytes_to_hex(output_commitment),
                change_commitment=None if _is_zero(change_commitment) else bytes_to_hex(change_commitment),
            )

        return await self._execute(OperationKind.SWAP, work)

    async def mint(self, request: MintRequest) -> OperationResult:
        """Two notes in, one liquidity position and up to two change notes out."""

        async def work(operation_id: str) -> Dict[str, Any]:
            self._validate_note(request.input_note_0, "input_note_0")
            self._validate_note(request.input_note_1, "input_note_1")
            position = request.position
            validate_secret(position.secret, "position.secret")
            validate_secret(position.nullifier, "position.nullifier")
            validate_decimal(position.liquidity, "position.liquidity")
            validate_tick_range(position.tick_lower, position.tick_upper)
            for name, value in request.amounts.model_dump().items():
                validate_decimal(value, f"amounts.{name}")
            for prefix, change in (("change_note_0", request.change_note_0),
                                   ("change_note_1", request.change_note_1)):
                validate_secret(change.secret, f"{prefix}.secret")
                validate_secret(change.nullifier, f"{prefix}.nullifier")
            self._validate_pool_key(request.pool_key)
            validate_liquidity(request.liquidity)

            note0, note1 = request.input_note_0, request.input_note_1
            _, nullifier_0 = await self._spend_note(note0)
            _, nullifier_1 = await self._spend_note(note1)
            if nullifier_0 == nullifier_1:
                raise ValidationError("Both input notes have the same nullifier")
            position_commitment, _ = await self._position_hashes(
                position.secret, position.nullifier, position.tick_lower,
                position.tick_upper, position.liquidity,
            )

            path0, path1 = self.ledger.paths([note0.leaf_index, note1.leaf_index])
            circuit0, circuit1 = path0.to_dict(), path1.to_dict()
            amounts = request.amounts
            proof = await self.pipeline.prove("mint", {
                "root": circuit0["root"],
                "nullifierHash0": _decimal(nullifier_0),
                "nullifierHash1": _decimal(nullifier_1),
                "positionCommitment": _decimal(position_commitment),
                "tickLower": str(unsigned_tick(position.tick_lower)),
                "tickUpper": str(unsigned_tick(position.tick_upper)),
                "secret0": note0.secret,
                "nullifier0": note0.nullifier,
                "balance0_low": note0.balance_low,
                "balance0_high": note0.balance_high,
                "token0": note0.token,
                "pathElements0": circuit0["pathElements"],
                "pathIndices0": circuit0["pathIndices"],
                "secret1": note1.secret,
                "nullifier1": note1.nullifier,
                "balance1_low": note1.balance_low,
                "balance1_high": note1.balance_high,
                "token1": note1.token,
                "pathElements1": circuit1["pathElements"],
                "pathIndices1": circuit1["pathIndices"],
                "positionSecret": position.secret,
                "positionNullifier": position.nullifier,
                "liquidity": position.liquidity,
                "amount0_low": amounts.amount0_low,
                "amount0_high": amounts.amount0_high,
                "amount1_low": amounts.amount1_low,
                "amount1_high": amounts.amount1_high,
                "changeSecret0": request.change_note_0.secret,
                "changeNullifier0": request.change_note_0.nullifier,
                "changeSecret1": request.change_note_1.secret,
                "changeNullifier1": request.change_note_1.nullifier,
            })
            # [changeCommitment0, changeCommitment1, root, nH0, nH1, positionCommitment, ...]
            change_0 = self._signal(proof, 0)
            change_1 = self._signal(proof, 1)

            self._check_root(path0.root)
            await self._claim([nullifier_0, nullifier_1], "mint", operation_id)
            tx = await self._relay_spend(operations.mint_operation(
                operation_id, self.settings.pool_address, request.pool_key, proof.calldata,
                request.liquidity, [nullifier_0, nullifier_1],
                [change_0, change_1, position_commitment],
            ))
            return dict(
                self._relay_details(tx),
                position_commitment=bytes_to_hex(position_commitment),
                change_commitment_0=None if _is_zero(change_0) else bytes_to_hex(change_0),
                change_commitment_1=None if _is_zero(change_1) else bytes_to_hex(change_1),
            )

        return await self._execute(OperationKind.MINT, work)

    async def burn(self, request: BurnRequest) -> OperationResult:
        """Burn a position note into two output notes."""

        async def work(operation_id: str) -> Dict[str, Any]:
            position = request.position_note
            validate_secret(position.secret, "position_note.secret")
            validate_secret(position.nullifier, "position_note.nullifier")
            validate_decimal(position.liquidity, "position_note.liquidity")
            validate_tick_range(position.tick_lower, position.tick_upper)
            validate_leaf_index(position.leaf_index, "position_note.leaf_index")
            for prefix, output in (("output_note_0", request.output_note_0),
                                   ("output_note_1", request.output_note_1)):
                validate_secret(output.secret, f"{prefix}.secret")
                validate_secret(output.nullifier, f"{prefix}.nullifier")
                validate_decimal(output.amount_low, f"{prefix}.amount_low")
                validate_decimal(output.amount_high, f"{prefix}.amount_high")
                validate_address(output.token, f"{prefix}.token")
            self._validate_pool_key(request.pool_key)
            validate_liquidity(request.liquidity)

            position_commitment, nullifier_hash = await self._position_hashes(
                position.secret, position.nullifier, position.tick_lower,
                position.tick_upper, position.liquidity,
            )
            self._check_leaf(position.leaf_index, position_commitment)
            self._check_unspent(nullifier_hash)

            outputs = []
            for output in (request.output_note_0, request.output_note_1):
                commitment, _ = await self._note_hashes(
                    output.secret, output.nullifier, output.amount_low,
                    output.amount_high, output.token,
                )
                outputs.append(commitment)

            path = self.ledger.path(position.leaf_index)
            circuit = path.to_dict()
            out0, out1 = request.output_note_0, request.output_note_1
            proof = await self.pipeline.prove("burn", {
                "root": circuit["root"],
                "positionNullifierHash": _decimal(nullifier_hash),
                "newCommitment0": _decimal(outputs[0]),
                "newCommitment1": _decimal(outputs[1]),
                "tickLower": str(unsigned_tick(position.tick_lower)),
                "tickUpper": str(unsigned_tick(position.tick_upper)),
                "positionSecret": position.secret,
                "positionNullifier": position.nullifier,
                "liquidity": position.liquidity,
                "pathElements": circuit["pathElements"],
                "pathIndices": circuit["pathIndices"],
                "newSecret0": out0.secret,
                "newNullifier0": out0.nullifier,
                "amount0_low": out0.amount_low,
                "amount0_high": out0.amount_high,
                "token0": out0.token,
                "newSecret1": out1.secret,
                "newNullifier1": out1.nullifier,
                "amount1_low": out1.amount_low,
                "amount1_high": out1.amount_high,
                "token1": out1.token,
            })

            self._check_root(path.root)
            await self._claim([nullifier_hash], "burn", operation_id)
            tx = await self._relay_spend(operations.burn_operation(
                operation_id, self.settings.pool_address, request.pool_key, proof.calldata,
                request.liquidity, nullifier_hash, outputs,
            ))
            return dict(
                self._relay_details(tx),
                nullifier_hash=bytes_to_hex(nullifier_hash),
                new_commitment_0=bytes_to_hex(outputs[0]),
                new_commitment_1=bytes_to_hex(outputs[1]),
            )

        return await self._execute(OperationKind.BURN, work)

    # Root publication and operator actions

    async def publish_root(self) -> Optional[RelayTransaction]:
        """
        Relay ``submit_merkle_root`` for the current root.

        Keyed on the root, so publishing the same root twice is a no-op.
        """
        root, leaf_count = self.ledger.snapshot()
        if leaf_count == 0:
            return None
        key = bytes_to_hex(root)
        with self.db.session_scope() as session:
            if self.db.get_active_relay_for_key(session, key) is not None:
                return None

        operation = operations.root_operation(
            uuid.uuid4().hex, self.settings.coordinator_address, root, leaf_count
        )
        try:
            tx = await self.relay.relay(operation)
        except RelayConflictError:
            return None
        with self.db.session_scope() as session:
            self.db.mark_root_published(session, root, tx.id)
        logger.info("Root %s (%d leaves) published as %s", key, leaf_count, tx.chain_tx_id)
        return tx

    async def retry_relay(self, idempotency_key: str) -> RelayTransaction:
        """Operator resubmission of a failed relay transaction."""
        return await self.relay.resubmit(idempotency_key)

    # Reads

    def get_root(self) -> Tuple[str, int]:
        root, leaf_count = self.ledger.snapshot()
        return bytes_to_hex(root), leaf_count

    def get_path(self, leaf_index: int) -> MerklePath:
        return self.ledger.path(leaf_index)

    def get_nullifier_status(self, value: str) -> NullifierResponse:
        try:
            nullifier = to_field_bytes(value)
        except ValueError as e:
            raise ValidationError(f"Invalid nullifier hash: {e}") from e

        with self.db.session_scope() as session:
            row = self.db.get_nullifier(session, nullifier)
            if row is None:
                return NullifierResponse(nullifier_hash=bytes_to_hex(nullifier), spent=False)
            relay_tx = self.db.get_latest_relay_for_key(session, bytes_to_hex(nullifier))
            return NullifierResponse(
                nullifier_hash=bytes_to_hex(nullifier),
                spent=True,
                circuit_type=row.op_kind,
                op_ref=row.op_ref,
                tx_hash=relay_tx.chain_tx_id if relay_tx else None,
            )

    def find_commitments(self, values: List[str]) -> List[CommitmentLookup]:
        lookups = []
        for value in values:
            try:
                commitment = to_field_bytes(value)
            except ValueError:
                lookups.append(CommitmentLookup(commitment=value))
                continue
            lookups.append(CommitmentLookup(
                commitment=value,
                leaf_index=self.ledger.accumulator.leaf_index_of(commitment),
            ))
        return lookups

    def get_job(self, job_id: str) -> Optional[ProofJobResponse]:
        with self.db.session_scope() as session:
            job = self.db.get_proof_job(session, job_id)
            if job is None:
                return None
            return ProofJobResponse(
                id=job.id, kind=job.kind, state=job.state.value,
                error_code=job.error_code, error=job.error, retry_count=job.retry_count,
            )

    def get_relay(self, idempotency_key: str) -> Optional[RelayResponse]:
        with self.db.session_scope() as session:
            tx = self.db.get_latest_relay_for_key(session, idempotency_key)
            if tx is None:
                return None
            return RelayResponse(
                id=tx.id, operation_id=tx.operation_id, kind=tx.kind,
                idempotency_key=tx.idempotency_key, state=tx.state.value,
                chain_tx_id=tx.chain_tx_id, attempts=tx.attempts,
                last_error=tx.last_error, confirmed_block=tx.confirmed_block,
            )

    async def status(self) -> StatusResponse:
        root, leaf_count = self.ledger.snapshot()
        with self.db.session_scope() as session:
            cursor = self.db.get_sync_cursor(session)
            divergence = self.db.get_divergence(session)
            confirmed = self.db.get_confirmed_root(session)
        prover_alive = await self.pipeline.ping() if self.pipeline.is_running else False
        return StatusResponse(
            healthy=self.db.is_healthy() and prover_alive and divergence is None,
            version=__version__,
            tree=TreeStatus(
                leaf_count=leaf_count,
                root=bytes_to_hex(root) if leaf_count else None,
                confirmed_leaf_count=confirmed.leaf_count if confirmed else None,
            ),
            last_synced_block=cursor[0] if cursor else None,
            divergence=divergence,
            prover_alive=prover_alive,
            contracts=ContractAddresses(
                coordinator=self.settings.coordinator_address,
                pool=self.settings.pool_address,
            ),
        )
