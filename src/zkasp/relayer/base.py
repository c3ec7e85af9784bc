"""Chain capabilities the relay subsystem and the sync loop depend on.

Capabilities are structural (``typing.Protocol``): the live JSON-RPC client
and the in-memory mock chain both satisfy them without a shared base class.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from zkasp.utils.encoding import bytes_to_hex, hex_to_bytes


class ChainTxStatus(str, Enum):
    """What the chain reports about a submitted transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"  # node has no record of the hash


class EventKind(str, Enum):
    """Contract events the sync loop reconciles."""
    COMMITMENT_ADDED = "commitment_added"
    ROOT_PUBLISHED = "root_published"
    NULLIFIER_SPENT = "nullifier_spent"


@dataclass(frozen=True)
class ContractCall:
    """A single contract invocation; the signer resolves the selector."""

    contract: str
    entrypoint: str
    calldata: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"contract": self.contract, "entrypoint": self.entrypoint,
                "calldata": list(self.calldata)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContractCall":
        return cls(data["contract"], data["entrypoint"], tuple(data["calldata"]))


@dataclass(frozen=True)
class ChainOperation:
    """
    A proven operation ready to be relayed.

    ``idempotency_key`` is the chain-visible key (nullifier, commitment or
    root) that at most one live relay transaction may use. ``nullifiers``
    must already be claimed by ``operation_id``; ``outputs`` are materialized
    into the tree once the transaction is confirmed.
    """

    operation_id: str
    kind: str
    idempotency_key: str
    calls: Tuple[ContractCall, ...]
    nullifiers: Tuple[bytes, ...] = ()
    outputs: Tuple[bytes, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "idempotency_key": self.idempotency_key,
            "calls": [call.to_dict() for call in self.calls],
            "nullifiers": [bytes_to_hex(n) for n in self.nullifiers],
            "outputs": [bytes_to_hex(o) for o in self.outputs],
            "params": self.params,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChainOperation":
        return cls(
            operation_id=payload["operation_id"],
            kind=payload["kind"],
            idempotency_key=payload["idempotency_key"],
            calls=tuple(ContractCall.from_dict(c) for c in payload["calls"]),
            nullifiers=tuple(hex_to_bytes(n) for n in payload.get("nullifiers", [])),
            outputs=tuple(hex_to_bytes(o) for o in payload.get("outputs", [])),
            params=dict(payload.get("params", {})),
        )


@dataclass(frozen=True)
class ChainEvent:
    """
    A decoded contract event.

    ``value`` is the commitment, root or nullifier. ``index`` is the leaf
    index for ``COMMITMENT_ADDED`` and the leaf count for ``ROOT_PUBLISHED``.
    """

    kind: EventKind
    block_number: int
    block_hash: str
    tx_id: str
    value: bytes
    index: Optional[int] = None


@dataclass(frozen=True)
class SignedInvoke:
    """An invoke transaction ready for submission, and its hash if known."""

    transaction: Dict[str, Any]
    tx_hash: Optional[str] = None


class Submitter(Protocol):
    async def submit(self, operation: ChainOperation) -> str:
        """
        Send an operation and return the chain transaction id.

        Raises:
            RelaySubmitError: The transaction certainly did not reach the chain
            RelayAmbiguousError: It may have; the status must be checked
        """
        ...

    async def status(self, tx_id: str) -> ChainTxStatus:
        ...


class ChainReader(Protocol):
    async def head(self) -> int:
        ...

    async def block_hash(self, number: int) -> Optional[str]:
        ...

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        """Events in ``[from_block, to_block]`` in chain order."""
        ...


class TransactionSigner(Protocol):
    """Holds the relay account key; wallet management lives outside this service."""

    address: str

    def sign_invoke(self, calls: Sequence[ContractCall], nonce: int) -> SignedInvoke:
        ...
