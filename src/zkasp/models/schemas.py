"""Pydantic data models for ASP requests, results and read responses."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional, Union
from enum import Enum


class OperationKind(str, Enum):
    """Operations the orchestrator accepts."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    SWAP = "swap"
    MINT = "mint"
    BURN = "burn"
    PUBLISH_ROOT = "publish_root"


# Shared request parts

class PoolKey(BaseModel):
    """CLMM pool identifier."""
    token_0: str = Field(..., description="Token 0 address (hex)")
    token_1: str = Field(..., description="Token 1 address (hex)")
    fee: int = Field(..., ge=0, description="Pool fee")
    tick_spacing: int = Field(..., ge=0, description="Tick spacing")


class NoteInput(BaseModel):
    """A note being spent: its secrets, balance and leaf index."""
    secret: str = Field(..., description="Note secret")
    nullifier: str = Field(..., description="Note nullifier preimage")
    balance_low: str = Field(..., description="Balance low 128 bits (decimal)")
    balance_high: str = Field(..., description="Balance high 128 bits (decimal)")
    token: str = Field(..., description="Token address (hex)")
    leaf_index: int = Field(..., description="Leaf index in tree")


class NoteSecrets(BaseModel):
    """Secrets for a note the circuit creates."""
    secret: str
    nullifier: str


class OutputNoteInput(BaseModel):
    """A fully specified output note."""
    secret: str
    nullifier: str
    amount_low: str = Field(..., description="Amount low 128 bits (decimal)")
    amount_high: str = Field(..., description="Amount high 128 bits (decimal)")
    token: str = Field(..., description="Token address (hex)")


class PositionInput(BaseModel):
    """A liquidity position note."""
    secret: str
    nullifier: str
    liquidity: str = Field(..., description="Position liquidity (decimal)")
    tick_lower: int
    tick_upper: int


class PositionNoteInput(PositionInput):
    """A position note being burned."""
    leaf_index: int = Field(..., description="Leaf index in tree")


class SwapParams(BaseModel):
    token_in: str
    token_out: str
    amount_in: str
    amount_out_min: str
    amount_out_low: str
    amount_out_high: str


class MintAmounts(BaseModel):
    amount0_low: str
    amount0_high: str
    amount1_low: str
    amount1_high: str


# Operation requests

class DepositRequest(BaseModel):
    """Request model for deposit operations."""
    commitment: str = Field(..., description="Note commitment (0x-prefixed hex u256)")


class WithdrawRequest(BaseModel):
    """Request model for withdrawal (membership proof) operations."""
    secret: str
    nullifier: str
    amount_low: str
    amount_high: str
    token: str
    recipient: str = Field(..., description="Recipient address (hex)")
    leaf_index: int = Field(..., description="Leaf index in tree")


class SwapRequest(BaseModel):
    """Request model for shielded swaps."""
    pool_key: PoolKey
    input_note: NoteInput
    swap_params: SwapParams
    output_note: NoteSecrets
    change_note: NoteSecrets
    sqrt_price_limit: str = Field(..., description="Price limit (0x-prefixed hex u256)")


class MintRequest(BaseModel):
    """Request model for shielded liquidity mints."""
    pool_key: PoolKey
    input_note_0: NoteInput
    input_note_1: NoteInput
    position: PositionInput
    amounts: MintAmounts
    change_note_0: NoteSecrets
    change_note_1: NoteSecrets
    liquidity: int


class BurnRequest(BaseModel):
    """Request model for shielded liquidity burns."""
    pool_key: PoolKey
    position_note: PositionNoteInput
    output_note_0: OutputNoteInput
    output_note_1: OutputNoteInput
    liquidity: int


class SyncCommitmentsRequest(BaseModel):
    """Commitments whose leaf indexes a client wants to look up."""
    commitments: List[str] = Field(..., description="Commitments (decimal or 0x hex)")


# Operation results

class Accepted(BaseModel):
    """The operation was accepted and handed to the relay."""
    status: Literal["accepted"] = "accepted"
    operation_id: str
    kind: OperationKind
    details: Dict[str, Any] = Field(default_factory=dict)


class Rejected(BaseModel):
    """
    The operation was not carried out.

    ``retryable`` is False when the request itself was invalid or already
    processed; True when the service could not complete it right now.
    """
    status: Literal["rejected"] = "rejected"
    operation_id: Optional[str] = None
    kind: OperationKind
    code: str
    reason: str
    retryable: bool


OperationResult = Union[Accepted, Rejected]


# Read responses

class TreeRootResponse(BaseModel):
    root: str = Field(..., description="Current Merkle root (hex)")
    leaf_count: int


class TreePathResponse(BaseModel):
    leaf_index: int
    commitment: str
    path_elements: List[str]
    path_indices: List[int]
    root: str


class NullifierResponse(BaseModel):
    nullifier_hash: str
    spent: bool
    circuit_type: Optional[str] = None
    op_ref: Optional[str] = None
    tx_hash: Optional[str] = None


class CommitmentLookup(BaseModel):
    commitment: str
    leaf_index: Optional[int] = None


class SyncCommitmentsResponse(BaseModel):
    commitments: List[CommitmentLookup]


class ProofJobResponse(BaseModel):
    id: str
    kind: str
    state: str
    error_code: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0


class RelayResponse(BaseModel):
    id: str
    operation_id: str
    kind: str
    idempotency_key: str
    state: str
    chain_tx_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    confirmed_block: Optional[int] = None


class TreeStatus(BaseModel):
    leaf_count: int
    root: Optional[str] = None
    confirmed_leaf_count: Optional[int] = None


class ContractAddresses(BaseModel):
    coordinator: str
    pool: str


class StatusResponse(BaseModel):
    """Service health and sync state."""
    healthy: bool
    version: str
    tree: TreeStatus
    last_synced_block: Optional[int] = None
    divergence: Optional[Dict[str, Any]] = None
    prover_alive: bool = False
    contracts: ContractAddresses
