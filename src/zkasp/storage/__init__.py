"""Storage layer for persistent data."""

from zkasp.storage.database import (
    DatabaseManager,
    Commitment,
    Nullifier,
    MerkleRoot,
    ProofJob,
    ProofJobState,
    RelayTransaction,
    RelayState,
    SyncBlock,
    SyncState,
    Base,
    get_db_manager,
    reset_db_manager,
)

__all__ = [
    "DatabaseManager",
    "Commitment",
    "Nullifier",
    "MerkleRoot",
    "ProofJob",
    "ProofJobState",
    "RelayTransaction",
    "RelayState",
    "SyncBlock",
    "SyncState",
    "Base",
    "get_db_manager",
    "reset_db_manager",
]
