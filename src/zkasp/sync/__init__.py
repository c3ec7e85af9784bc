"""Chain synchronization."""

from zkasp.sync.chain_sync import ChainSyncLoop, SyncReport

__all__ = ["ChainSyncLoop", "SyncReport"]
