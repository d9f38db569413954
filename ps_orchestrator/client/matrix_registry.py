"""Session registry of distributed matrices."""

import math
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from ps_orchestrator.contexts import MatrixContext, PartitionAssignment
from ps_orchestrator.communication.protocol import MessageType, ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCClient
from ps_orchestrator.errors import ClusterError, ConfigurationError, ErrorKind
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger
from ps_orchestrator.utils.sharding import place_partitions, row_blocks
from ps_orchestrator.worker.matrix_client import MatrixClient


class MatrixRegistry:
    """
    Staged and committed matrix declarations of one session.

    ``add_matrix`` only stages a declaration. ``create_matrices`` commits a
    batch atomically: either every matrix of the batch is created on the PS
    tier and recorded, or none is. All mutation happens under one lock.
    """

    def __init__(self, config: PSConfig, rpc_client: RPCClient):
        """
        Initialize matrix registry.

        Args:
            config: Job configuration
            rpc_client: Client used to reach the PS shards
        """
        self.config = config
        self.logger = get_logger("matrix_registry")
        self._rpc_client = rpc_client

        self._staged: "OrderedDict[str, MatrixContext]" = OrderedDict()
        self._committed: "OrderedDict[str, MatrixContext]" = OrderedDict()
        self._assignments: Dict[str, PartitionAssignment] = {}
        self._shards: List[ServerInfo] = []
        self._next_id = 0
        self._matrix_client: Optional[MatrixClient] = None
        self._lock = threading.RLock()

    def bind(self, shards: List[ServerInfo]):
        """Attach the ready PS shards matrices are placed on."""
        with self._lock:
            if self._committed and [s.server_id for s in shards] != [s.server_id for s in self._shards]:
                raise ConfigurationError("Cannot move committed matrices to a different set of shards")
            self._shards = sorted(shards, key=lambda s: s.server_id)

    def add_matrix(self, ctx: MatrixContext):
        """
        Stage a matrix declaration.

        Raises:
            ConfigurationError: invalid declaration or duplicate name
        """
        ctx.validate()
        with self._lock:
            if ctx.name in self._staged or ctx.name in self._committed:
                raise ConfigurationError(f"Matrix {ctx.name} is already registered")
            self._staged[ctx.name] = ctx
            self.logger.debug(f"Staged matrix {ctx.name} ({ctx.rows}x{ctx.cols})")

    def create_matrices(self, contexts: Optional[Iterable[MatrixContext]] = None) -> List[MatrixContext]:
        """
        Commit the staged matrices, or the given ones, as one batch.

        Args:
            contexts: Declarations to commit instead of the staged ones

        Returns:
            Every committed matrix, in commit order

        Raises:
            ConfigurationError: a declaration is invalid or duplicated, or
                no PS shards are bound; nothing is committed
            ConnectivityError: the PS tier could not be reached; shards
                that accepted the batch are rolled back
        """
        with self._lock:
            batch = list(self._staged.values()) if contexts is None else list(contexts)
            if not batch:
                return self.committed()

            self._validate_batch(batch, from_staging=contexts is None)
            if not self._shards:
                raise ConfigurationError("PS shards must be started before matrices are created")

            assigned = []
            assignments = {}
            for offset, ctx in enumerate(batch):
                committed = ctx.with_id(self._next_id + offset)
                assigned.append(committed)
                assignments[ctx.name] = self._place(committed)

            self._push(assigned, assignments)

            for ctx in assigned:
                self._committed[ctx.name] = ctx
                self._assignments[ctx.name] = assignments[ctx.name]
                self._staged.pop(ctx.name, None)
            self._next_id += len(assigned)
            self._close_matrix_client()

            self.logger.info(f"Committed matrices: {[c.name for c in assigned]}")
            return self.committed()

    def _validate_batch(self, batch: List[MatrixContext], from_staging: bool):
        seen = set()
        for ctx in batch:
            ctx.validate()
            if ctx.name in seen:
                raise ConfigurationError(f"Matrix {ctx.name} appears twice in the batch")
            seen.add(ctx.name)
            if ctx.name in self._committed:
                raise ConfigurationError(f"Matrix {ctx.name} is already committed")
            if not from_staging and ctx.name in self._staged:
                raise ConfigurationError(f"Matrix {ctx.name} is already staged")

    def _place(self, ctx: MatrixContext) -> PartitionAssignment:
        num_shards = len(self._shards)
        block_rows = ctx.partition or math.ceil(ctx.rows / num_shards)
        blocks = row_blocks(ctx.rows, block_rows)
        placement = place_partitions(
            ctx.matrix_id,
            blocks,
            num_shards,
            scheme=self.config.partition_scheme,
            virtual_nodes=self.config.virtual_nodes_per_server,
        )
        return PartitionAssignment(
            matrix_id=ctx.matrix_id,
            name=ctx.name,
            rows=ctx.rows,
            cols=ctx.cols,
            dtype=ctx.dtype,
            blocks=blocks,
            shards={i: self._shards[slot].server_id for i, slot in placement.items()},
        )

    def _shard_meta(self, ctx: MatrixContext, assignment: PartitionAssignment, shard_id: int) -> Dict:
        return {
            "matrix_id": ctx.matrix_id,
            "name": ctx.name,
            "rows": ctx.rows,
            "cols": ctx.cols,
            "dtype": ctx.dtype,
            "storage": ctx.storage,
            "init_strategy": ctx.init_strategy,
            "init_scale": ctx.init_scale,
            "partitions": [
                {"index": i, "start": assignment.blocks[i][0], "end": assignment.blocks[i][1]}
                for i in assignment.partitions_on(shard_id)
            ],
        }

    def _push(self, batch: List[MatrixContext], assignments: Dict[str, PartitionAssignment]):
        """Create the batch on every shard, rolling back on failure."""
        attempted = []
        try:
            for shard in self._shards:
                metas = [
                    self._shard_meta(ctx, assignments[ctx.name], shard.server_id)
                    for ctx in batch
                    if assignments[ctx.name].partitions_on(shard.server_id)
                ]
                if not metas:
                    continue
                attempted.append(shard)
                self._rpc_client.request(
                    shard.host, shard.port, MessageType.CREATE_MATRICES, {"matrices": metas}
                )
        except ClusterError as e:
            self.logger.error(f"Matrix creation failed on the PS tier: {e}")
            self._rollback(attempted, [ctx.matrix_id for ctx in batch])
            if e.kind == ErrorKind.CONFIGURATION:
                raise ConfigurationError("PS shard rejected matrix creation", cause=e)
            raise

    def _rollback(self, shards: List[ServerInfo], matrix_ids: List[int]):
        for shard in shards:
            try:
                self._rpc_client.request(
                    shard.host, shard.port, MessageType.DROP_MATRICES, {"matrix_ids": matrix_ids}
                )
            except ClusterError as e:
                self.logger.warning(f"Rollback on shard {shard.server_id} failed: {e}")

    def init_matrices(self, names: Iterable[str], seed: int = 0):
        """Re-initialize committed matrices with their init strategy."""
        with self._lock:
            ids_by_shard: Dict[int, List[int]] = {}
            for name in names:
                assignment = self.assignment(name)
                for shard_id in assignment.shard_ids():
                    ids_by_shard.setdefault(shard_id, []).append(assignment.matrix_id)

            for shard in self._shards:
                if shard.server_id in ids_by_shard:
                    self._rpc_client.request(
                        shard.host,
                        shard.port,
                        MessageType.INIT_MATRICES,
                        {"matrix_ids": ids_by_shard[shard.server_id], "seed": seed},
                    )

    def matrix_client(self) -> MatrixClient:
        """Shared client over the committed matrices."""
        with self._lock:
            if self._matrix_client is None:
                self._matrix_client = MatrixClient(
                    self._shards, self._assignments, self.config, client_id="control_client"
                )
            return self._matrix_client

    def _close_matrix_client(self):
        if self._matrix_client is not None:
            self._matrix_client.close()
            self._matrix_client = None

    def get(self, name: str) -> MatrixContext:
        with self._lock:
            if name in self._committed:
                return self._committed[name]
            if name in self._staged:
                return self._staged[name]
        raise ConfigurationError(f"Unknown matrix: {name}")

    def assignment(self, name: str) -> PartitionAssignment:
        with self._lock:
            if name not in self._assignments:
                raise ConfigurationError(f"Matrix {name} is not committed")
            return self._assignments[name]

    def assignments(self) -> Dict[str, PartitionAssignment]:
        with self._lock:
            return dict(self._assignments)

    def committed(self) -> List[MatrixContext]:
        with self._lock:
            return list(self._committed.values())

    def staged(self) -> List[MatrixContext]:
        with self._lock:
            return list(self._staged.values())

    @property
    def shards(self) -> List[ServerInfo]:
        with self._lock:
            return list(self._shards)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._committed or name in self._staged

    def clear(self):
        """Forget every matrix; used on session teardown."""
        with self._lock:
            self._close_matrix_client()
            self._staged.clear()
            self._committed.clear()
            self._assignments.clear()
            self._shards = []
