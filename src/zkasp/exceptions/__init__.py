"""Custom exceptions for the ASP service.

Every exception carries a stable ``code`` and a ``retryable`` flag. The
orchestrator turns them into ``Rejected`` results: non-retryable errors mean
the request itself was invalid or already processed, retryable errors mean the
service could not complete it right now.
"""

from typing import Optional


class ASPException(Exception):
    """Base exception for all ASP errors."""

    code = "internal_error"
    retryable = True


# Request Errors
class ValidationError(ASPException):
    """Raised when request input is malformed."""

    code = "invalid_input"
    retryable = False


class UnknownRootError(ValidationError):
    """Raised when a proof targets a root outside the accepted history."""

    code = "unknown_root"
    retryable = True


# Ledger Errors
class LedgerError(ASPException):
    """Base exception for commitment/nullifier ledger errors."""

    retryable = False


class DuplicateCommitmentError(LedgerError):
    """Raised when a commitment already has a leaf index."""

    code = "duplicate_commitment"


class AlreadySpentError(LedgerError):
    """Raised when a nullifier has already been claimed."""

    code = "already_spent"

    def __init__(self, nullifier: str, message: Optional[str] = None):
        self.nullifier = nullifier
        super().__init__(message or f"Nullifier already spent: {nullifier}")


# Merkle Tree Errors
class MerkleTreeError(LedgerError):
    """Base exception for Merkle tree errors."""


class TreeFullError(MerkleTreeError):
    """Raised when the tree has no free leaf left."""

    code = "tree_full"


class UnknownLeafError(MerkleTreeError):
    """Raised when a leaf index was never inserted."""

    code = "unknown_leaf"

    def __init__(self, leaf_index: int):
        self.leaf_index = leaf_index
        super().__init__(f"Commitment not found at leaf index {leaf_index}")


class InvalidLedgerStateError(LedgerError):
    """Raised when the stored ledger cannot be replayed into a consistent tree."""

    code = "invalid_ledger_state"
    retryable = True


# Prover Errors
class ProverError(ASPException):
    """Base exception for external prover failures."""

    code = "prover_error"

    def __init__(self, message: str, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message)


class ProverTimeoutError(ProverError):
    """Raised when the prover did not answer a job in time."""

    code = "prover_timeout"


class ProverCrashedError(ProverError):
    """Raised when the prover process died with the job in flight."""

    code = "prover_crashed"


class ProofFailedError(ProverError):
    """Raised when the prover answered with ``ok: false``."""

    code = "proof_failed"


class ProverUnavailableError(ProverError):
    """Raised when the prover process cannot be started."""

    code = "prover_unavailable"


# Relay Errors
class RelayError(ASPException):
    """Base exception for on-chain submission errors."""

    code = "relay_error"


class RelaySubmitError(RelayError):
    """A single submission attempt failed before reaching the chain."""

    code = "relay_submit_error"


class RelaySubmitFailedError(RelayError):
    """Raised when submission failed on every allowed attempt."""

    code = "relay_submit_failed"


class RelayAmbiguousError(RelayError):
    """Raised when a submission may or may not have landed on chain."""

    code = "relay_ambiguous"
    retryable = False

    def __init__(self, message: str, chain_tx_id: Optional[str] = None):
        self.chain_tx_id = chain_tx_id
        super().__init__(message)


class RelayConflictError(RelayError):
    """Raised when a non-failed relay transaction already exists for a key."""

    code = "relay_conflict"
    retryable = False


class RelayStrandedError(RelayError):
    """
    Raised when a spend's nullifiers are claimed but its relay did not go through.

    Resending the request cannot help because the claim stays. An operator
    resubmits the relay for ``idempotency_key``.
    """

    code = "relay_needs_operator"
    retryable = False

    def __init__(self, message: str, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(message)


class ChainRpcError(RelayError):
    """Raised when a read-only chain query fails."""

    code = "rpc_error"


# Sync Errors
class ReconciliationDivergenceError(ASPException):
    """Raised when chain state disagrees with locally recorded state."""

    code = "reconciliation_divergence"
    retryable = False


# Storage Errors
class StorageError(ASPException):
    """Raised when a storage transaction fails."""

    code = "storage_error"


class ConfigurationError(ASPException):
    """Raised when settings are missing or invalid."""

    code = "config_error"
    retryable = False
