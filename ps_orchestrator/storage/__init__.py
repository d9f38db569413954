"""Storage backends and checkpointing."""

from ps_orchestrator.storage.backend import LocalStorageBackend, create_backend
from ps_orchestrator.storage.s3_backend import S3Backend
from ps_orchestrator.storage.checkpoint import CheckpointManager, CheckpointRecord
from ps_orchestrator.storage.serialization import ModelSerializer

__all__ = [
    "LocalStorageBackend",
    "S3Backend",
    "create_backend",
    "CheckpointManager",
    "CheckpointRecord",
    "ModelSerializer",
]
