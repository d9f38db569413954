"""Partition storage held by one PS shard."""

import threading
import zlib
from typing import Any, Dict, Iterable, List, Optional, Tuple
import numpy as np


INIT_STRATEGIES = ("zeros", "ones", "random", "normal", "xavier", "he")


def init_block(
    shape: Tuple[int, int],
    init_strategy: str,
    init_scale: float,
    dtype: str,
    seed: int,
    fan: Optional[Tuple[int, int]] = None
) -> np.ndarray:
    """
    Create the initial values for one row block.

    Args:
        shape: Block shape (rows, cols)
        init_strategy: One of INIT_STRATEGIES
        init_scale: Scale for random/normal initialization
        dtype: Numpy dtype name
        seed: Seed for the block's random generator
        fan: (fan_in, fan_out) of the whole matrix for xavier/he
    """
    rng = np.random.default_rng(seed)
    fan_in, fan_out = fan or shape

    if init_strategy == "zeros":
        values = np.zeros(shape)
    elif init_strategy == "ones":
        values = np.ones(shape)
    elif init_strategy == "random":
        values = (rng.random(shape) - 0.5) * 2 * init_scale
    elif init_strategy == "normal":
        values = rng.standard_normal(shape) * init_scale
    elif init_strategy == "xavier":
        values = rng.standard_normal(shape) * np.sqrt(2.0 / (fan_in + fan_out))
    elif init_strategy == "he":
        values = rng.standard_normal(shape) * np.sqrt(2.0 / fan_in)
    else:
        raise ValueError(f"Unknown init strategy: {init_strategy}")

    return values.astype(dtype)


def block_seed(name: str, part_index: int, base_seed: int = 0) -> int:
    """Deterministic seed so re-initialization reproduces the same values."""
    return zlib.crc32(f"{name}/{part_index}".encode()) ^ base_seed


class MatrixStore:
    """
    Thread-safe storage for the matrix partitions owned by one shard.

    Each matrix is kept as a dict of row blocks keyed by partition index.
    Blocks are filled by the matrix's init strategy when it is created, and
    ``init`` with the same seed reproduces exactly those values.
    """

    def __init__(self):
        self._meta: Dict[int, Dict[str, Any]] = {}
        self._parts: Dict[int, Dict[int, np.ndarray]] = {}
        self._versions: Dict[int, int] = {}
        self._lock = threading.RLock()

        self._stats = {
            "total_pulls": 0,
            "total_pushes": 0,
        }

    def create(self, meta: Dict[str, Any]):
        """
        Allocate the blocks of one matrix owned by this shard.

        Args:
            meta: Matrix description with "matrix_id", "name", "cols",
                "dtype", "init_strategy", "init_scale" and "partitions"
                (list of {"index", "start", "end"}).
        """
        matrix_id = meta["matrix_id"]
        with self._lock:
            if matrix_id in self._meta:
                if self._meta[matrix_id]["name"] != meta["name"]:
                    raise ValueError(f"Matrix id {matrix_id} already used by {self._meta[matrix_id]['name']}")
                return

            self._meta[matrix_id] = dict(meta)
            self._parts[matrix_id] = {
                part["index"]: np.zeros((part["end"] - part["start"], meta["cols"]), dtype=meta["dtype"])
                for part in meta["partitions"]
            }
            self._versions[matrix_id] = 0
            self.init(matrix_id)

    def drop(self, matrix_ids: Iterable[int]) -> List[int]:
        """Remove matrices; unknown ids are ignored. Returns dropped ids."""
        dropped = []
        with self._lock:
            for matrix_id in matrix_ids:
                if matrix_id in self._meta:
                    del self._meta[matrix_id]
                    del self._parts[matrix_id]
                    del self._versions[matrix_id]
                    dropped.append(matrix_id)
        return dropped

    def init(self, matrix_id: int, base_seed: int = 0):
        """Fill every local block of a matrix using its init strategy."""
        with self._lock:
            meta = self._require(matrix_id)
            strategy = meta["init_strategy"]
            if meta.get("storage") == "sparse":
                strategy = "zeros"

            for part in meta["partitions"]:
                index = part["index"]
                self._parts[matrix_id][index] = init_block(
                    self._parts[matrix_id][index].shape,
                    strategy,
                    meta["init_scale"],
                    meta["dtype"],
                    block_seed(meta["name"], index, base_seed),
                    fan=(meta["rows"], meta["cols"]),
                )
            self._versions[matrix_id] += 1

    def get_partitions(
        self,
        matrix_id: int,
        indices: Optional[Iterable[int]] = None
    ) -> Dict[int, np.ndarray]:
        """Return copies of the requested (default: all local) blocks."""
        with self._lock:
            self._require(matrix_id)
            self._stats["total_pulls"] += 1

            parts = self._parts[matrix_id]
            wanted = parts.keys() if indices is None else indices
            missing = [i for i in wanted if i not in parts]
            if missing:
                raise KeyError(f"Partitions {missing} of matrix {matrix_id} are not on this shard")
            return {i: parts[i].copy() for i in wanted}

    def set_partitions(self, matrix_id: int, blocks: Dict[int, np.ndarray], add: bool = False):
        """
        Overwrite (or increment) local blocks.

        Args:
            matrix_id: Matrix id
            blocks: Partition index -> values with the block's exact shape
            add: Add the values to the stored block instead of replacing it
        """
        with self._lock:
            meta = self._require(matrix_id)
            self._stats["total_pushes"] += 1

            parts = self._parts[matrix_id]
            for index, values in blocks.items():
                index = int(index)
                if index not in parts:
                    raise KeyError(f"Partition {index} of matrix {matrix_id} is not on this shard")
                values = np.asarray(values)
                if values.shape != parts[index].shape:
                    raise ValueError(
                        f"Shape mismatch for {meta['name']}[{index}]: "
                        f"{values.shape} != {parts[index].shape}"
                    )

            for index, values in blocks.items():
                index = int(index)
                if add:
                    parts[index] = (parts[index] + values).astype(meta["dtype"])
                else:
                    parts[index] = np.array(values, dtype=meta["dtype"], copy=True)

            self._versions[matrix_id] += 1

    def get_version(self, matrix_id: int) -> int:
        with self._lock:
            return self._versions.get(matrix_id, -1)

    def get_meta(self, matrix_id: int) -> Dict[str, Any]:
        with self._lock:
            return dict(self._require(matrix_id))

    def matrix_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._meta)

    def _require(self, matrix_id: int) -> Dict[str, Any]:
        if matrix_id not in self._meta:
            raise KeyError(f"Matrix {matrix_id} not found on this shard")
        return self._meta[matrix_id]

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        with self._lock:
            blocks = [b for parts in self._parts.values() for b in parts.values()]
            return {
                "num_matrices": len(self._meta),
                "num_partitions": len(blocks),
                "total_parameters": int(sum(b.size for b in blocks)),
                "memory_bytes": int(sum(b.nbytes for b in blocks)),
                **self._stats,
            }

    def clear(self):
        with self._lock:
            self._meta.clear()
            self._parts.clear()
            self._versions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._meta)

    def __contains__(self, matrix_id: int) -> bool:
        with self._lock:
            return matrix_id in self._meta
