"""Matrix value and metadata serialization for persisted models and checkpoints."""

import hashlib
import io
import json
import zipfile
from typing import Any, Dict
import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq


MODEL_FORMATS = ("npz", "parquet")


def checksum(data: bytes) -> str:
    """Hex sha256 digest of a stored blob."""
    return hashlib.sha256(data).hexdigest()


class ModelSerializer:
    """
    Serializer for matrix values.

    Supports two formats:
    - NumPy (.npz), used for checkpoint snapshots and by default for models
    - Parquet (flattened values, shape kept in the schema metadata)
    """

    def __init__(self, compression: str = "zstd"):
        """
        Initialize serializer.

        Args:
            compression: Parquet compression codec
        """
        self.compression = compression

    def serialize_matrix(self, values: np.ndarray, format: str = "npz") -> bytes:
        """
        Serialize one matrix.

        Args:
            values: Full matrix values
            format: Output format ("npz" or "parquet")

        Returns:
            Serialized bytes
        """
        if format == "npz":
            buffer = io.BytesIO()
            np.savez_compressed(buffer, values=values)
            return buffer.getvalue()

        elif format == "parquet":
            table = pa.table({"values": values.ravel()})
            table = table.replace_schema_metadata({
                "shape": json.dumps(list(values.shape)),
                "dtype": values.dtype.str,
            })
            buffer = io.BytesIO()
            pq.write_table(table, buffer, compression=self.compression)
            return buffer.getvalue()

        else:
            raise ValueError(f"Unsupported format: {format}")

    def deserialize_matrix(self, data: bytes, format: str = "npz") -> np.ndarray:
        """
        Deserialize one matrix.

        Raises:
            ValueError: the bytes are not a valid matrix in ``format``
        """
        if format == "npz":
            try:
                with np.load(io.BytesIO(data)) as npz:
                    return npz["values"]
            except (OSError, KeyError, EOFError, zipfile.BadZipFile) as e:
                raise ValueError(f"Invalid npz matrix: {e}") from e

        elif format == "parquet":
            try:
                table = pq.read_table(io.BytesIO(data))
            except pa.ArrowException as e:
                raise ValueError(f"Invalid parquet matrix: {e}") from e
            metadata = table.schema.metadata or {}
            if b"shape" not in metadata:
                raise ValueError("Parquet matrix has no shape metadata")
            shape = tuple(json.loads(metadata[b"shape"].decode()))
            values = table.column("values").to_numpy()
            return values.astype(metadata[b"dtype"].decode()).reshape(shape)

        else:
            raise ValueError(f"Unsupported format: {format}")

    def serialize_metadata(self, metadata: Dict[str, Any]) -> bytes:
        """Serialize metadata to JSON."""
        return json.dumps(metadata, indent=2, sort_keys=True).encode()

    def deserialize_metadata(self, data: bytes) -> Dict[str, Any]:
        """Deserialize metadata from JSON."""
        return json.loads(data.decode())
