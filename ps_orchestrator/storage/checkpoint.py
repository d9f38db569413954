"""Crash-consistent checkpoints of PS-resident matrices."""

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
import numpy as np

from ps_orchestrator.errors import (
    CheckpointCorruptError,
    CheckpointNotFoundError,
    ClusterError,
    ConsistencyError,
    ErrorKind,
)
from ps_orchestrator.storage.backend import join_path
from ps_orchestrator.storage.serialization import ModelSerializer, checksum
from ps_orchestrator.utils.logging import get_logger


CHECKPOINT_PREFIX = "checkpoint-"
MANIFEST_NAME = "manifest.json"
STAGING_DIR = "_staging"
MANIFEST_VERSION = 1


@dataclass
class CheckpointRecord:
    """Manifest of one published checkpoint."""

    checkpoint_id: int
    timestamp: float
    snapshots: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    complete: bool = False
    version: int = MANIFEST_VERSION
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "timestamp": self.timestamp,
            "snapshots": self.snapshots,
            "complete": self.complete,
            "version": self.version,
            "metadata": self.metadata,
        }

    @classmethod
    def from_manifest(cls, data: Dict[str, Any]) -> "CheckpointRecord":
        return cls(
            checkpoint_id=int(data["checkpoint_id"]),
            timestamp=float(data["timestamp"]),
            snapshots=dict(data["snapshots"]),
            complete=bool(data.get("complete", False)),
            version=int(data.get("version", MANIFEST_VERSION)),
            metadata=data.get("metadata", {}),
        )

    @property
    def matrix_names(self) -> List[str]:
        return sorted(self.snapshots)


class CheckpointManager:
    """
    Manages checkpoint publication and recovery on a storage backend.

    Checkpoint structure:
        base_path/
        ├── _staging/                  # in-progress writes, never read
        ├── checkpoint-1/
        │   ├── snapshots/
        │   │   ├── A.npz
        │   │   └── B.npz
        │   └── manifest.json          # written last, complete=true
        └── checkpoint-2/
            └── ...

    A checkpoint is written entirely under ``_staging`` and then renamed to
    its published name, so a crash at any point leaves either the complete
    checkpoint or nothing. Only checkpoints whose manifest is readable and
    marked complete count as present.
    """

    def __init__(self, backend, base_path: str = "checkpoints", max_to_keep: int = 0):
        """
        Initialize checkpoint manager.

        Args:
            backend: Storage backend (LocalStorageBackend or S3Backend)
            base_path: Checkpoint root, relative to the backend root
            max_to_keep: Published checkpoints to retain (0 = keep all)
        """
        self.backend = backend
        self.base_path = base_path
        self.max_to_keep = max_to_keep

        self.logger = get_logger("checkpoint_manager")
        self.serializer = ModelSerializer()
        self._publish_lock = threading.Lock()

    def _published_path(self, checkpoint_id: int) -> str:
        return join_path(self.base_path, f"{CHECKPOINT_PREFIX}{checkpoint_id}")

    def _published_ids(self) -> List[int]:
        """Ids of every published checkpoint directory, complete or not."""
        ids = []
        for name in self.backend.list_children(self.base_path):
            if not name.startswith(CHECKPOINT_PREFIX):
                continue
            try:
                ids.append(int(name[len(CHECKPOINT_PREFIX):]))
            except ValueError:
                continue
        return sorted(ids)

    def check_next_id(self, checkpoint_id: int):
        """
        Raise ``ConsistencyError`` unless ``checkpoint_id`` is greater than
        every complete checkpoint. Directories left by failed publishes do
        not count.
        """
        complete = [r.checkpoint_id for r in self.list_checkpoints()]
        if complete and checkpoint_id <= complete[-1]:
            raise ConsistencyError(
                f"Checkpoint id {checkpoint_id} must be greater than {complete[-1]}"
            )

    def save(
        self,
        checkpoint_id: int,
        snapshots: Dict[str, np.ndarray],
        metadata: Optional[Dict[str, Any]] = None
    ) -> CheckpointRecord:
        """
        Write and publish a checkpoint.

        Args:
            checkpoint_id: Id greater than every complete checkpoint id
            snapshots: Matrix name -> full matrix values
            metadata: Extra manifest fields

        Raises:
            ConsistencyError: ``checkpoint_id`` is not greater than the
                highest complete checkpoint id
            ClusterError: kind CONNECTIVITY when the storage write failed
        """
        with self._publish_lock:
            self.check_next_id(checkpoint_id)

            self.logger.info(f"Writing checkpoint {checkpoint_id} ({len(snapshots)} matrices)")
            start_time = time.time()

            staging = join_path(
                self.base_path, STAGING_DIR,
                f"{CHECKPOINT_PREFIX}{checkpoint_id}-{uuid.uuid4().hex[:8]}"
            )
            record = CheckpointRecord(
                checkpoint_id=checkpoint_id,
                timestamp=time.time(),
                metadata=dict(metadata or {}),
            )

            target = self._published_path(checkpoint_id)
            try:
                if self.backend.exists(target):
                    self.logger.warning(f"Removing incomplete checkpoint directory {target}")
                    self.backend.delete_prefix(target)

                for name, values in snapshots.items():
                    data = self.serializer.serialize_matrix(values, format="npz")
                    path = join_path("snapshots", f"{name}.npz")
                    self.backend.write(join_path(staging, path), data)
                    record.snapshots[name] = {
                        "path": path,
                        "shape": list(values.shape),
                        "dtype": values.dtype.str,
                        "sha256": checksum(data),
                    }

                record.complete = True
                self.backend.write(
                    join_path(staging, MANIFEST_NAME),
                    self.serializer.serialize_metadata(record.to_manifest())
                )
                self.backend.rename(staging, target, commit_last=MANIFEST_NAME)
            except Exception as e:
                self._discard(staging)
                # A rename that copies can fail after part of the target exists
                if not self._is_complete(checkpoint_id):
                    self._discard(target)
                raise ClusterError(
                    f"Checkpoint {checkpoint_id} was not published",
                    kind=ErrorKind.CONNECTIVITY,
                    cause=e,
                )

            elapsed = time.time() - start_time
            self.logger.info(f"Checkpoint {checkpoint_id} published in {elapsed:.2f}s")

            self._prune()
            return record

    def _discard(self, path: str):
        try:
            self.backend.delete_prefix(path)
        except Exception as e:
            self.logger.warning(f"Could not remove {path}: {e}")

    def _is_complete(self, checkpoint_id: int) -> bool:
        try:
            self.read_record(checkpoint_id)
        except (CheckpointNotFoundError, CheckpointCorruptError):
            return False
        except Exception as e:
            self.logger.warning(f"Could not inspect checkpoint {checkpoint_id}: {e}")
            return False
        return True

    def read_record(self, checkpoint_id: int) -> CheckpointRecord:
        """
        Read the manifest of a published checkpoint.

        Raises:
            CheckpointNotFoundError: no checkpoint with this id was published
            CheckpointCorruptError: the manifest is missing, unreadable or
                not marked complete
        """
        path = self._published_path(checkpoint_id)
        if not self.backend.exists(path):
            raise CheckpointNotFoundError(f"Checkpoint {checkpoint_id} does not exist")

        try:
            data = self.backend.read(join_path(path, MANIFEST_NAME))
        except FileNotFoundError as e:
            raise CheckpointCorruptError(f"Checkpoint {checkpoint_id} has no manifest", cause=e)

        try:
            record = CheckpointRecord.from_manifest(self.serializer.deserialize_metadata(data))
        except (ValueError, KeyError, TypeError) as e:
            raise CheckpointCorruptError(
                f"Checkpoint {checkpoint_id} manifest is unreadable", cause=e
            )

        if not record.complete:
            raise CheckpointCorruptError(f"Checkpoint {checkpoint_id} is incomplete")
        if record.checkpoint_id != checkpoint_id:
            raise CheckpointCorruptError(
                f"Checkpoint {checkpoint_id} manifest names id {record.checkpoint_id}"
            )
        return record

    def load(
        self,
        checkpoint_id: int,
        names: Optional[Iterable[str]] = None
    ) -> Tuple[CheckpointRecord, Dict[str, np.ndarray]]:
        """
        Read and verify the snapshots of a checkpoint.

        Args:
            checkpoint_id: Checkpoint to read
            names: Matrices to read (default: all in the manifest)

        Returns:
            (record, matrix name -> values)

        Raises:
            CheckpointNotFoundError: no such checkpoint
            CheckpointCorruptError: manifest or a snapshot is bad, or a
                requested matrix is not part of the checkpoint
        """
        record = self.read_record(checkpoint_id)
        path = self._published_path(checkpoint_id)
        wanted = record.matrix_names if names is None else list(names)

        values = {}
        for name in wanted:
            entry = record.snapshots.get(name)
            if entry is None:
                raise CheckpointCorruptError(
                    f"Checkpoint {checkpoint_id} has no snapshot of matrix {name}"
                )

            try:
                data = self.backend.read(join_path(path, entry["path"]))
            except FileNotFoundError as e:
                raise CheckpointCorruptError(
                    f"Snapshot {entry['path']} of checkpoint {checkpoint_id} is missing", cause=e
                )

            if checksum(data) != entry["sha256"]:
                raise CheckpointCorruptError(
                    f"Snapshot {entry['path']} of checkpoint {checkpoint_id} fails its checksum"
                )

            try:
                matrix = self.serializer.deserialize_matrix(data, format="npz")
            except ValueError as e:
                raise CheckpointCorruptError(
                    f"Snapshot {entry['path']} of checkpoint {checkpoint_id} is unreadable", cause=e
                )

            if list(matrix.shape) != list(entry["shape"]) or matrix.dtype.str != entry["dtype"]:
                raise CheckpointCorruptError(
                    f"Snapshot {entry['path']} of checkpoint {checkpoint_id} does not match its manifest"
                )
            values[name] = matrix

        self.logger.info(f"Loaded checkpoint {checkpoint_id} ({len(values)} matrices)")
        return record, values

    def list_checkpoints(self) -> List[CheckpointRecord]:
        """Complete checkpoints, oldest first."""
        records = []
        for checkpoint_id in self._published_ids():
            try:
                records.append(self.read_record(checkpoint_id))
            except (CheckpointNotFoundError, CheckpointCorruptError) as e:
                self.logger.warning(f"Skipping checkpoint {checkpoint_id}: {e}")
        return records

    def latest(self) -> Optional[CheckpointRecord]:
        """The highest complete checkpoint, if any."""
        records = self.list_checkpoints()
        return records[-1] if records else None

    def delete(self, checkpoint_id: int):
        """Delete a checkpoint."""
        self.logger.info(f"Deleting checkpoint {checkpoint_id}")
        self.backend.delete_prefix(self._published_path(checkpoint_id))

    def _prune(self):
        if self.max_to_keep <= 0:
            return
        published = self._published_ids()
        for checkpoint_id in published[:-self.max_to_keep]:
            self.delete(checkpoint_id)

    def cleanup_staging(self):
        """Remove staging areas left behind by interrupted writes."""
        staging = join_path(self.base_path, STAGING_DIR)
        if self.backend.exists(staging):
            self.logger.info("Removing leftover checkpoint staging area")
            self.backend.delete_prefix(staging)
