"""Shared helpers for the test suite."""

import asyncio
import sys
from pathlib import Path

FAKE_PROVER = Path(__file__).parent / "fake_prover.py"

TREE_DEPTH = 8


def prover_argv(*flags):
    """Command line for the fake prover worker."""
    return [sys.executable, str(FAKE_PROVER), *flags]


async def no_sleep(_delay):
    await asyncio.sleep(0)


def commitment(k: int) -> bytes:
    """Leaf ``c_k``: the integer k as a 32-byte big-endian value."""
    return k.to_bytes(32, "big")


def run(coro):
    return asyncio.run(coro)
