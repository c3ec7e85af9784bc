"""Pytest configuration and fixtures."""

import shlex
import sys
from pathlib import Path

import pytest

# Add src (and the test helpers) to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))
sys.path.insert(0, str(Path(__file__).parent / "fixtures"))

from helpers import TREE_DEPTH, prover_argv  # noqa: E402
from zkasp.config import Settings  # noqa: E402
from zkasp.core.ledger import CommitmentLedger  # noqa: E402
from zkasp.relayer.mock import MockChain  # noqa: E402
from zkasp.storage.database import DatabaseManager  # noqa: E402


@pytest.fixture
def db(tmp_path):
    """File-backed database, so several threads and sessions share it."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'asp.db'}")
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def ledger(db):
    return CommitmentLedger(db, depth=TREE_DEPTH)


@pytest.fixture
def chain():
    return MockChain()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'service.db'}",
        tree_depth=TREE_DEPTH,
        prover_command=shlex.join(prover_argv()),
        prover_timeout=10.0,
        prover_startup_timeout=10.0,
        coordinator_address="0x1c0",
        pool_address="0x9001",
        relay_max_attempts=3,
        relay_backoff_base=0.0,
        relay_backoff_max=0.0,
        sync_interval=0.05,
        chain_backend="mock",
    )
