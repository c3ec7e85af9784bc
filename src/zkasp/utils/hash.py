"""Node hashing for the commitment tree."""

import hashlib
from functools import lru_cache
from typing import Tuple

NODE_SIZE = 32
ZERO_LEAF = b"\x00" * NODE_SIZE


def merkle_hash(left: bytes, right: bytes) -> bytes:
    """
    Parent node value: SHA-256 over the two 32-byte children, left first.

    Raises:
        ValueError: If either child is not a 32-byte value
    """
    for side, node in (("Left", left), ("Right", right)):
        if not isinstance(node, bytes) or len(node) != NODE_SIZE:
            raise ValueError(f"{side} node must be {NODE_SIZE} bytes")
    return hashlib.sha256(left + right).digest()


@lru_cache(maxsize=None)
def zero_hashes(depth: int) -> Tuple[bytes, ...]:
    """
    Return the empty-subtree value for every level ``0..depth``.

    ``zeros[0]`` is the empty leaf and ``zeros[i + 1] = H(zeros[i] || zeros[i])``,
    so ``zeros[depth]`` is the root of an empty tree.
    """
    zeros = [ZERO_LEAF]
    for _ in range(depth):
        zeros.append(merkle_hash(zeros[-1], zeros[-1]))
    return tuple(zeros)
