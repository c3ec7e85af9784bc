"""Append-only Merkle accumulator over note commitments."""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from zkasp.utils.hash import NODE_SIZE, merkle_hash, zero_hashes
from zkasp.exceptions import (
    DuplicateCommitmentError,
    TreeFullError,
    UnknownLeafError,
)


@dataclass(frozen=True)
class MerklePath:
    """
    Authentication path from a leaf to the root it was read against.

    ``directions[level]`` is 0 when the node on the path is a left child
    (sibling on the right) and 1 when it is a right child.
    """

    leaf_index: int
    leaf: bytes
    siblings: Tuple[bytes, ...]
    directions: Tuple[int, ...]
    root: bytes

    def compute_root(self, leaf: Optional[bytes] = None) -> bytes:
        """Fold the path starting from ``leaf`` (defaults to the stored leaf)."""
        current = self.leaf if leaf is None else leaf
        for sibling, direction in zip(self.siblings, self.directions):
            if direction == 0:
                current = merkle_hash(current, sibling)
            else:
                current = merkle_hash(sibling, current)
        return current

    def verify(self, root: Optional[bytes] = None, leaf: Optional[bytes] = None) -> bool:
        """Check that the path folds to ``root`` (defaults to the snapshot root)."""
        try:
            return self.compute_root(leaf) == (self.root if root is None else root)
        except ValueError:
            return False

    def to_dict(self) -> dict:
        """Prover-friendly form (decimal strings, like circuit inputs)."""
        return {
            "leafIndex": self.leaf_index,
            "pathElements": [str(int.from_bytes(s, "big")) for s in self.siblings],
            "pathIndices": list(self.directions),
            "root": str(int.from_bytes(self.root, "big")),
        }


@dataclass(frozen=True)
class PendingInsert:
    """An insert computed against a tree size but not yet applied."""

    leaf_index: int
    commitment: bytes
    updates: Tuple[Tuple[int, int, bytes], ...]  # (level, position, hash)
    root: bytes


class MerkleAccumulator:
    """
    Fixed-depth sparse Merkle tree storing commitments as leaves.

    This implementation uses a binary tree structure where:
    - Leaves are commitments, appended left to right
    - Internal nodes are SHA-256(left || right)
    - Missing subtrees take the per-level zero value from ``zero_hashes``

    Only non-empty nodes are stored, keyed by (level, position). An insert
    is computed first (``prepare_insert``) and then swapped in under the
    tree lock (``apply``), so readers always see a whole tree version.
    """

    DEFAULT_DEPTH = 20
    MAX_DEPTH = 32

    def __init__(self, depth: int = DEFAULT_DEPTH):
        """
        Initialize empty accumulator.

        Args:
            depth: Number of levels above the leaves (default 20)

        Raises:
            ValueError: If depth is invalid
        """
        if depth < 1 or depth > self.MAX_DEPTH:
            raise ValueError(f"Tree depth must be between 1 and {self.MAX_DEPTH}")

        self.depth = depth
        self.capacity = 2 ** depth
        self.zeros = zero_hashes(depth)

        self.leaves: List[bytes] = []
        self._index_of: Dict[bytes, int] = {}
        self.nodes: Dict[Tuple[int, int], bytes] = {}
        self._root = self.zeros[depth]
        self._lock = threading.Lock()

    def _node(self, level: int, position: int) -> bytes:
        return self.nodes.get((level, position), self.zeros[level])

    def prepare_insert(self, commitment: bytes) -> PendingInsert:
        """
        Compute the node updates for appending ``commitment``.

        Does not modify the tree.

        Raises:
            ValueError: If commitment format is invalid
            DuplicateCommitmentError: If the value already has a leaf index
            TreeFullError: If every leaf is taken
        """
        if not isinstance(commitment, bytes) or len(commitment) != NODE_SIZE:
            raise ValueError("Commitment must be 32 bytes")

        with self._lock:
            if commitment in self._index_of:
                raise DuplicateCommitmentError(
                    f"Commitment {commitment.hex()} already at leaf {self._index_of[commitment]}"
                )
            leaf_index = len(self.leaves)
            if leaf_index >= self.capacity:
                raise TreeFullError(f"Tree is full (max {self.capacity} commitments)")

            updates = [(0, leaf_index, commitment)]
            current = commitment
            position = leaf_index
            for level in range(self.depth):
                sibling = self._node(level, position ^ 1)
                if position % 2 == 0:
                    current = merkle_hash(current, sibling)
                else:
                    current = merkle_hash(sibling, current)
                position >>= 1
                updates.append((level + 1, position, current))

        return PendingInsert(
            leaf_index=leaf_index,
            commitment=commitment,
            updates=tuple(updates),
            root=current,
        )

    def apply(self, pending: PendingInsert) -> int:
        """
        Apply a prepared insert.

        Raises:
            ValueError: If the tree changed since the insert was prepared
        """
        with self._lock:
            if pending.leaf_index != len(self.leaves):
                raise ValueError(
                    f"Stale insert for leaf {pending.leaf_index}; tree has {len(self.leaves)} leaves"
                )
            for level, position, value in pending.updates:
                self.nodes[(level, position)] = value
            self.leaves.append(pending.commitment)
            self._index_of[pending.commitment] = pending.leaf_index
            self._root = pending.root
        return pending.leaf_index

    def insert(self, commitment: bytes) -> int:
        """
        Insert commitment leaf and return leaf index.

        Args:
            commitment: 32-byte commitment value

        Returns:
            int: Leaf index in tree
        """
        return self.apply(self.prepare_insert(commitment))

    def path(self, leaf_index: int) -> MerklePath:
        """
        Return the authentication path for a leaf.

        Raises:
            UnknownLeafError: If the leaf was never inserted
        """
        with self._lock:
            return self._path(leaf_index)

    def paths(self, leaf_indices: List[int]) -> List[MerklePath]:
        """Paths for several leaves, all read against the same root."""
        with self._lock:
            return [self._path(i) for i in leaf_indices]

    def _path(self, leaf_index: int) -> MerklePath:
        if leaf_index < 0 or leaf_index >= len(self.leaves):
            raise UnknownLeafError(leaf_index)

        siblings = []
        directions = []
        position = leaf_index
        for level in range(self.depth):
            siblings.append(self._node(level, position ^ 1))
            directions.append(position & 1)
            position >>= 1

        return MerklePath(
            leaf_index=leaf_index,
            leaf=self.leaves[leaf_index],
            siblings=tuple(siblings),
            directions=tuple(directions),
            root=self._root,
        )

    def leaf_index_of(self, commitment: bytes) -> Optional[int]:
        """Return the leaf index assigned to ``commitment``, if any."""
        return self._index_of.get(commitment)

    @property
    def root(self) -> bytes:
        """Get the current Merkle root hash."""
        return self._root

    def snapshot(self) -> Tuple[bytes, int]:
        """Return ``(root, leaf_count)`` read together."""
        with self._lock:
            return self._root, len(self.leaves)

    def __len__(self) -> int:
        """Return the number of leaves in the tree."""
        return len(self.leaves)

    def __repr__(self) -> str:
        return (
            f"MerkleAccumulator(depth={self.depth}, "
            f"leaves={len(self.leaves)}/{self.capacity}, "
            f"root={self.root.hex()[:16]}...)"
        )
