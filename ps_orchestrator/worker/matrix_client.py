"""Client used by tasks and the model manager to read and write matrix values."""

import uuid
from typing import Dict, List, Optional, Sequence
from concurrent.futures import ThreadPoolExecutor
import numpy as np

from ps_orchestrator.contexts import PartitionAssignment
from ps_orchestrator.communication.protocol import MessageType, ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCClient, RetryPolicy
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.errors import ConfigurationError
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


class MatrixClient:
    """
    Reads and writes committed matrices held by the PS shards.

    Requests for the blocks of one matrix are grouped per shard and sent
    in parallel; results are reassembled in row order.
    """

    def __init__(
        self,
        servers: List[ServerInfo],
        assignments: Dict[str, PartitionAssignment],
        config: PSConfig,
        client_id: Optional[str] = None
    ):
        """
        Initialize matrix client.

        Args:
            servers: Shard endpoints
            assignments: Matrix name -> partition placement
            config: Job configuration
            client_id: Identifier stamped on requests (auto-generated)
        """
        self.config = config
        self.client_id = client_id or f"matrix_client_{uuid.uuid4().hex[:8]}"
        self.logger = get_logger("matrix_client")

        self._servers = {s.server_id: s for s in servers}
        self._assignments = dict(assignments)

        self._rpc_client = RPCClient(
            timeout=config.timeout_seconds,
            max_message_size=config.max_message_size,
            serializer=Serializer(
                compression=config.compression,
                compression_algorithm=config.compression_algorithm
            ),
            retry_policy=RetryPolicy.from_config(config),
            client_id=self.client_id,
        )
        self._executor = ThreadPoolExecutor(max_workers=max(1, len(servers)))
        self._closed = False

    def assignment(self, name: str) -> PartitionAssignment:
        if name not in self._assignments:
            raise ConfigurationError(f"Matrix {name} is not committed")
        return self._assignments[name]

    @property
    def matrix_names(self) -> List[str]:
        return sorted(self._assignments)

    def _request(self, shard_id: int, msg_type: MessageType, payload, idempotent: bool = True):
        if self._closed:
            raise RuntimeError("Client is closed")
        server = self._servers[shard_id]
        return self._rpc_client.request(server.host, server.port, msg_type, payload, idempotent=idempotent)

    def _pull_blocks(self, assignment: PartitionAssignment, indices: Sequence[int]) -> Dict[int, np.ndarray]:
        by_shard: Dict[int, List[int]] = {}
        for index in indices:
            by_shard.setdefault(assignment.shards[index], []).append(index)

        futures = [
            self._executor.submit(
                self._request,
                shard_id,
                MessageType.PULL_PARTITIONS,
                {"matrix_id": assignment.matrix_id, "indices": wanted},
            )
            for shard_id, wanted in by_shard.items()
        ]

        blocks = {}
        for future in futures:
            for index, values in future.result()["partitions"].items():
                blocks[int(index)] = values
        return blocks

    def _push_blocks(self, assignment: PartitionAssignment, blocks: Dict[int, np.ndarray], mode: str):
        by_shard: Dict[int, Dict[int, np.ndarray]] = {}
        for index, values in blocks.items():
            by_shard.setdefault(assignment.shards[index], {})[index] = values

        futures = [
            self._executor.submit(
                self._request,
                shard_id,
                MessageType.PUSH_PARTITIONS,
                {"matrix_id": assignment.matrix_id, "partitions": parts, "mode": mode},
                mode != "add",
            )
            for shard_id, parts in by_shard.items()
        ]
        for future in futures:
            future.result()

    def pull(self, name: str) -> np.ndarray:
        """
        Pull the full values of a matrix.

        Returns:
            np.ndarray of shape (rows, cols)
        """
        assignment = self.assignment(name)
        blocks = self._pull_blocks(assignment, range(len(assignment.blocks)))
        return np.concatenate([blocks[i] for i in range(len(assignment.blocks))], axis=0)

    def pull_rows(self, name: str, rows: Sequence[int]) -> np.ndarray:
        """
        Pull selected rows of a matrix.

        Only the blocks holding the requested rows are fetched.

        Returns:
            np.ndarray of shape (len(rows), cols)
        """
        assignment = self.assignment(name)
        rows = [int(r) for r in rows]
        if not rows:
            return np.zeros((0, assignment.cols), dtype=assignment.dtype)
        if min(rows) < 0 or max(rows) >= assignment.rows:
            raise IndexError(f"Row out of range for matrix {name} with {assignment.rows} rows")

        blocks = self._pull_blocks(assignment, assignment.partitions_for_rows(rows))
        starts = {i: assignment.blocks[i][0] for i in blocks}
        result = np.empty((len(rows), assignment.cols), dtype=assignment.dtype)
        for out, row in enumerate(rows):
            index = assignment.partitions_for_rows([row])[0]
            result[out] = blocks[index][row - starts[index]]
        return result

    def _split(self, assignment: PartitionAssignment, values: np.ndarray) -> Dict[int, np.ndarray]:
        values = np.asarray(values, dtype=assignment.dtype)
        if values.shape != assignment.shape:
            raise ValueError(
                f"Shape mismatch for matrix {assignment.name}: {values.shape} != {assignment.shape}"
            )
        return {i: values[start:end] for i, (start, end) in enumerate(assignment.blocks)}

    def push(self, name: str, values: np.ndarray):
        """Overwrite the full values of a matrix."""
        assignment = self.assignment(name)
        self._push_blocks(assignment, self._split(assignment, values), mode="set")

    def increment(self, name: str, delta: np.ndarray):
        """Add ``delta`` (same shape as the matrix) to its values."""
        assignment = self.assignment(name)
        self._push_blocks(assignment, self._split(assignment, delta), mode="add")

    def increment_rows(self, name: str, rows: Sequence[int], deltas: np.ndarray):
        """
        Add ``deltas[i]`` to row ``rows[i]``.

        Args:
            name: Matrix name
            rows: Row indices (may repeat)
            deltas: np.ndarray of shape (len(rows), cols)
        """
        assignment = self.assignment(name)
        deltas = np.asarray(deltas, dtype=assignment.dtype)
        if deltas.shape != (len(rows), assignment.cols):
            raise ValueError(f"Expected deltas of shape {(len(rows), assignment.cols)}, got {deltas.shape}")

        blocks: Dict[int, np.ndarray] = {}
        for row, delta in zip(rows, deltas):
            index = assignment.partitions_for_rows([row])[0]
            start, end = assignment.blocks[index]
            if index not in blocks:
                blocks[index] = np.zeros((end - start, assignment.cols), dtype=assignment.dtype)
            blocks[index][row - start] += delta

        if blocks:
            self._push_blocks(assignment, blocks, mode="add")

    def close(self):
        """Close client connections."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        self._rpc_client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
