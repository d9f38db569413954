"""Matrix and model contexts shared by the control client and the workers."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
import numpy as np

from ps_orchestrator.errors import ConfigurationError
from ps_orchestrator.server.matrix_store import INIT_STRATEGIES


STORAGE_CLASSES = ("dense", "sparse")
MODEL_SCHEMA_VERSION = 2


@dataclass(frozen=True)
class MatrixContext:
    """
    Declaration of one distributed matrix.

    Attributes:
        name: Unique name within a session
        rows: Number of rows
        cols: Number of columns
        partition: Rows per partition block (None = split evenly over shards)
        storage: "dense" or "sparse"
        dtype: Numpy dtype name
        init_strategy: Initializer used in training mode
        init_scale: Scale for random/normal initialization
        matrix_id: Assigned on commit, None while staged
    """

    name: str
    rows: int
    cols: int
    partition: Optional[int] = None
    storage: str = "dense"
    dtype: str = "float32"
    init_strategy: str = "normal"
    init_scale: float = 0.01
    matrix_id: Optional[int] = None

    def validate(self):
        """Raise ConfigurationError if the declaration is unusable."""
        if not self.name or "/" in self.name:
            raise ConfigurationError(f"Invalid matrix name: {self.name!r}")
        if self.rows <= 0 or self.cols <= 0:
            raise ConfigurationError(
                f"Matrix {self.name} must have positive dimensions, got {self.rows}x{self.cols}"
            )
        if self.partition is not None and self.partition <= 0:
            raise ConfigurationError(f"Matrix {self.name} partition must be positive")
        if self.storage not in STORAGE_CLASSES:
            raise ConfigurationError(f"Matrix {self.name} has unknown storage class {self.storage!r}")
        if self.init_strategy not in INIT_STRATEGIES:
            raise ConfigurationError(
                f"Matrix {self.name} has unknown init strategy {self.init_strategy!r}"
            )
        try:
            np.dtype(self.dtype)
        except TypeError as e:
            raise ConfigurationError(f"Matrix {self.name} has invalid dtype {self.dtype!r}", cause=e)

    def with_id(self, matrix_id: int) -> "MatrixContext":
        return replace(self, matrix_id=matrix_id)

    @property
    def committed(self) -> bool:
        return self.matrix_id is not None

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)


@dataclass
class PartitionAssignment:
    """Placement of one committed matrix's row blocks on PS shards."""

    matrix_id: int
    name: str
    rows: int
    cols: int
    dtype: str
    blocks: List[Tuple[int, int]]
    shards: Dict[int, int]

    def partitions_on(self, shard_id: int) -> List[int]:
        return sorted(i for i, s in self.shards.items() if s == shard_id)

    def shard_ids(self) -> List[int]:
        return sorted(set(self.shards.values()))

    def partitions_for_rows(self, rows: Sequence[int]) -> List[int]:
        """Indices of the blocks holding the given rows."""
        starts = [start for start, _ in self.blocks]
        return sorted({int(np.searchsorted(starts, r, side="right")) - 1 for r in rows})

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matrix_id": self.matrix_id,
            "name": self.name,
            "rows": self.rows,
            "cols": self.cols,
            "dtype": self.dtype,
            "blocks": [list(b) for b in self.blocks],
            "shards": dict(self.shards),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionAssignment":
        return cls(
            matrix_id=data["matrix_id"],
            name=data["name"],
            rows=data["rows"],
            cols=data["cols"],
            dtype=data["dtype"],
            blocks=[tuple(b) for b in data["blocks"]],
            shards={int(k): v for k, v in data["shards"].items()},
        )


@dataclass(frozen=True)
class ModelContext:
    """
    Where and what to load or save.

    Attributes:
        path: Model directory, relative to the storage root
        matrix_names: Matrices concerned (empty = every committed matrix)
        checkpoint_id: Checkpoint to recover from, if any
        format: Value file format ("npz" or "parquet")
        schema_version: Layout version of the persisted model
    """

    path: str = ""
    matrix_names: Tuple[str, ...] = field(default_factory=tuple)
    checkpoint_id: Optional[int] = None
    format: str = "npz"
    schema_version: int = MODEL_SCHEMA_VERSION


# Loading and saving take the same versioned context
ModelLoadContext = ModelContext
ModelSaveContext = ModelContext
