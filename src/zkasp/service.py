"""Component wiring and lifecycle for a running ASP instance."""

import logging
from typing import Optional

from zkasp.config import Settings
from zkasp.core.ledger import CommitmentLedger
from zkasp.core.orchestrator import Orchestrator
from zkasp.exceptions import ASPException
from zkasp.prover.pipeline import ProofPipeline
from zkasp.relayer.base import EventKind, TransactionSigner
from zkasp.relayer.mock import MockChain
from zkasp.relayer.relay import RelaySubsystem
from zkasp.relayer.starknet import StarknetRpcClient
from zkasp.storage.database import DatabaseManager
from zkasp.sync.chain_sync import ChainSyncLoop

logger = logging.getLogger(__name__)


class Service:
    """
    Builds every component from ``Settings`` and runs them.

    ``chain`` may be passed in (any object that is both a ``Submitter`` and
    a ``ChainReader``); otherwise it is chosen by ``settings.chain_backend``.
    """

    def __init__(
        self,
        settings: Settings,
        chain=None,
        signer: Optional[TransactionSigner] = None,
        db: Optional[DatabaseManager] = None,
    ):
        self.settings = settings
        self.db = db or DatabaseManager(settings.database_url)
        self.db.create_tables()

        self.chain = chain if chain is not None else self._build_chain(settings, signer)
        self.ledger = CommitmentLedger(self.db, depth=settings.tree_depth)
        self.pipeline = ProofPipeline(
            self.db,
            settings.prover_argv,
            timeout=settings.prover_timeout,
            max_in_flight=settings.prover_max_in_flight,
            startup_timeout=settings.prover_startup_timeout,
            max_restarts=settings.prover_max_restarts,
        )
        self.relay = RelaySubsystem(
            self.db,
            self.ledger,
            self.chain,
            max_attempts=settings.relay_max_attempts,
            backoff_base=settings.relay_backoff_base,
            backoff_max=settings.relay_backoff_max,
        )
        self.orchestrator = Orchestrator(settings, self.db, self.ledger, self.pipeline, self.relay)
        self.sync = ChainSyncLoop(
            self.db,
            self.ledger,
            self.chain,
            self.relay,
            interval=settings.sync_interval,
            batch_blocks=settings.sync_batch_blocks,
            confirmations=settings.sync_confirmations,
            on_tree_advanced=self.orchestrator.publish_root,
        )

    @staticmethod
    def _build_chain(settings: Settings, signer: Optional[TransactionSigner]):
        if settings.chain_backend == "mock":
            logger.warning("Using the in-memory mock chain")
            return MockChain()

        event_keys = {
            kind: key
            for kind, key in (
                (EventKind.COMMITMENT_ADDED, settings.commitment_added_key),
                (EventKind.ROOT_PUBLISHED, settings.root_published_key),
                (EventKind.NULLIFIER_SPENT, settings.nullifier_spent_key),
            )
            if key
        }
        return StarknetRpcClient(
            settings.rpc_url,
            settings.coordinator_address,
            settings.pool_address,
            event_keys=event_keys,
            signer=signer,
            timeout=settings.rpc_timeout,
        )

    async def start(self, run_sync: bool = True) -> None:
        """Recover the tree, start the prover and (optionally) the sync loop."""
        leaves = self.ledger.recover()
        await self.pipeline.start()
        try:
            await self.orchestrator.publish_root()
        except ASPException as e:
            logger.warning("Startup root publication failed: %s", e)
        if run_sync:
            self.sync.start()
        logger.info("ASP started with %d leaves", leaves)

    async def stop(self) -> None:
        await self.sync.stop()
        await self.pipeline.stop()
        logger.info("ASP stopped")
