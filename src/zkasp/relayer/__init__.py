"""Relaying proven operations to the chain."""

from zkasp.relayer.base import (
    ChainEvent,
    ChainOperation,
    ChainReader,
    ChainTxStatus,
    ContractCall,
    EventKind,
    SignedInvoke,
    Submitter,
    TransactionSigner,
)
from zkasp.relayer.mock import MockChain
from zkasp.relayer.relay import PollReport, RelaySubsystem
from zkasp.relayer.starknet import StarknetRpcClient

__all__ = [
    "ChainEvent",
    "ChainOperation",
    "ChainReader",
    "ChainTxStatus",
    "ContractCall",
    "EventKind",
    "SignedInvoke",
    "Submitter",
    "TransactionSigner",
    "MockChain",
    "PollReport",
    "RelaySubsystem",
    "StarknetRpcClient",
]
