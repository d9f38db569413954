"""Serialization of control messages exchanged with the master and shards."""

from typing import Any
import numpy as np
import msgpack

try:
    import lz4.frame as lz4
    HAS_LZ4 = True
except ImportError:
    HAS_LZ4 = False


# msgpack extension code for numpy arrays
NUMPY_EXT = 1

# First byte of every serialized frame
FLAG_RAW = 0x00
FLAG_LZ4 = 0x01


def _encode_default(obj: Any) -> Any:
    """msgpack hook for types it does not know natively."""
    if isinstance(obj, np.ndarray):
        if obj.dtype.hasobject:
            raise TypeError("object arrays cannot be serialized")
        body = msgpack.packb(
            [obj.dtype.str, list(obj.shape), np.ascontiguousarray(obj).tobytes()],
            use_bin_type=True,
        )
        return msgpack.ExtType(NUMPY_EXT, body)
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def _ext_hook(code: int, data: bytes) -> Any:
    if code == NUMPY_EXT:
        dtype, shape, buf = msgpack.unpackb(data, raw=False)
        # frombuffer is read-only; callers mutate pulled partitions
        return np.frombuffer(buf, dtype=np.dtype(dtype)).reshape(shape).copy()
    return msgpack.ExtType(code, data)


class Serializer:
    """
    msgpack serializer with numpy support and optional lz4 compression.

    Frames start with one flag byte telling whether the body is compressed,
    so a compressing sender can talk to a receiver that never compresses.
    """

    def __init__(
        self,
        compression: bool = True,
        compression_algorithm: str = "lz4",
        compression_level: int = 0,
        min_compress_size: int = 1024
    ):
        """
        Initialize serializer.

        Args:
            compression: Enable compression for large frames
            compression_algorithm: Only "lz4" is supported
            compression_level: lz4 compression level
            min_compress_size: Frames smaller than this are sent raw
        """
        if compression_algorithm != "lz4":
            raise ValueError(f"Unsupported compression algorithm: {compression_algorithm}")

        # Compression is an optional extra; without lz4 installed frames go raw
        self.compression = compression and HAS_LZ4
        self.compression_level = compression_level
        self.min_compress_size = min_compress_size

    def serialize(self, data: Any) -> bytes:
        """Serialize ``data`` into one frame."""
        raw = msgpack.packb(data, default=_encode_default, use_bin_type=True)

        if self.compression and len(raw) >= self.min_compress_size:
            return bytes([FLAG_LZ4]) + lz4.compress(raw, compression_level=self.compression_level)
        return bytes([FLAG_RAW]) + raw

    def deserialize(self, data: bytes) -> Any:
        """Deserialize one frame produced by ``serialize``."""
        if not data:
            return None

        flag, body = data[0], data[1:]
        if flag == FLAG_LZ4:
            if not HAS_LZ4:
                raise ValueError("Received lz4-compressed frame but lz4 is not installed")
            body = lz4.decompress(body)
        elif flag != FLAG_RAW:
            raise ValueError(f"Unknown frame flag: {flag}")

        return msgpack.unpackb(body, ext_hook=_ext_hook, raw=False, strict_map_key=False)
