"""Placement of matrix partitions onto PS shards."""

import hashlib
from bisect import bisect_right
from typing import Dict, List, Tuple


class ConsistentHashRing:
    """
    Consistent hashing ring for distributing matrix partitions across shards.

    Uses virtual nodes to keep the distribution balanced and to limit
    movement when the number of shards changes between a checkpoint and a
    recovery.
    """

    def __init__(self, num_servers: int, virtual_nodes: int = 150):
        """
        Initialize the hash ring.

        Args:
            num_servers: Number of physical shards
            virtual_nodes: Virtual nodes per shard (higher = more balanced)
        """
        if num_servers < 1:
            raise ValueError("num_servers must be at least 1")

        self.num_servers = num_servers
        self.virtual_nodes = virtual_nodes
        self._ring: List[Tuple[int, int]] = []  # (hash_value, server_id)
        self._sorted_hashes: List[int] = []

        self._build_ring()

    def _hash(self, key: str) -> int:
        return int(hashlib.md5(key.encode()).hexdigest(), 16)

    def _build_ring(self) -> None:
        for server_id in range(self.num_servers):
            for vn in range(self.virtual_nodes):
                self._ring.append((self._hash(f"server_{server_id}_vn_{vn}"), server_id))

        self._ring.sort(key=lambda x: x[0])
        self._sorted_hashes = [h for h, _ in self._ring]

    def get_server(self, key: str) -> int:
        """
        Get the shard index owning ``key``.

        Args:
            key: Partition key, e.g. "matrix_3/part_0"

        Returns:
            Shard index (0 to num_servers-1)
        """
        idx = bisect_right(self._sorted_hashes, self._hash(key))
        if idx >= len(self._ring):
            idx = 0
        return self._ring[idx][1]


def partition_key(matrix_id: int, part_index: int) -> str:
    return f"matrix_{matrix_id}/part_{part_index}"


def row_blocks(rows: int, block_rows: int) -> List[Tuple[int, int]]:
    """
    Split ``rows`` into consecutive [start, end) blocks of ``block_rows``.

    The last block may be shorter.
    """
    if rows < 1 or block_rows < 1:
        raise ValueError("rows and block_rows must be positive")
    return [(start, min(start + block_rows, rows)) for start in range(0, rows, block_rows)]


def place_partitions(
    matrix_id: int,
    blocks: List[Tuple[int, int]],
    num_servers: int,
    scheme: str = "range",
    virtual_nodes: int = 150
) -> Dict[int, int]:
    """
    Assign each row block of a matrix to a shard.

    Args:
        matrix_id: Committed matrix id (used to rotate range placement)
        blocks: Row blocks from ``row_blocks``
        num_servers: Number of shards
        scheme: "range" (round-robin starting at matrix_id) or "hash"
        virtual_nodes: Virtual nodes for the hash scheme

    Returns:
        Dict mapping partition index -> shard id
    """
    if scheme == "range":
        return {i: (matrix_id + i) % num_servers for i in range(len(blocks))}
    if scheme == "hash":
        ring = ConsistentHashRing(num_servers, virtual_nodes=virtual_nodes)
        return {i: ring.get_server(partition_key(matrix_id, i)) for i in range(len(blocks))}
    raise ValueError(f"Unknown partition scheme: {scheme}")
