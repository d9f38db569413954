"""Loading, saving, checkpointing and recovery of PS-resident model state."""

import threading
import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ps_orchestrator.client.matrix_registry import MatrixRegistry
from ps_orchestrator.contexts import MODEL_SCHEMA_VERSION, MatrixContext, ModelContext
from ps_orchestrator.errors import ClusterError, ConfigurationError, ErrorKind
from ps_orchestrator.storage.backend import join_path
from ps_orchestrator.storage.checkpoint import CheckpointManager, CheckpointRecord
from ps_orchestrator.storage.serialization import MODEL_FORMATS, ModelSerializer, checksum
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import MetricsLogger, get_logger


MODEL_META_NAME = "meta.json"


class ModelState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    SAVING = "saving"
    CHECKPOINTING = "checkpointing"
    RECOVERING = "recovering"


class LegacyModelAdapter:
    """
    Turns an old-style model object into matrix declarations and a
    versioned ``ModelContext``.

    A legacy model exposes ``matrices`` (a dict of name -> MatrixContext or
    a list of MatrixContext) plus ``load_path`` and ``save_path``
    attributes; missing paths fall back to ``model_path``.
    """

    LEGACY_SCHEMA_VERSION = 1

    def __init__(self, model: Any):
        self.model = model

    def matrix_contexts(self) -> List[MatrixContext]:
        matrices = getattr(self.model, "matrices", None)
        if matrices is None:
            raise ConfigurationError(f"{type(self.model).__name__} declares no matrices")
        if isinstance(matrices, dict):
            matrices = list(matrices.values())
        return list(matrices)

    def _context(self, attr: str) -> ModelContext:
        path = getattr(self.model, attr, None) or getattr(self.model, "model_path", None) or ""
        return ModelContext(
            path=path,
            matrix_names=tuple(ctx.name for ctx in self.matrix_contexts()),
            schema_version=self.LEGACY_SCHEMA_VERSION,
        )

    def load_context(self) -> ModelContext:
        return self._context("load_path")

    def save_context(self) -> ModelContext:
        return self._context("save_path")


class ModelLifecycleManager:
    """
    Moves matrix values between the PS tier and storage.

    State transitions (a failed transition returns to the source state):
        UNLOADED -> LOADING -> LOADED
        UNLOADED/LOADED -> RECOVERING -> LOADED
        UNLOADED/LOADED -> SAVING -> (source)
        UNLOADED/LOADED -> CHECKPOINTING -> (source)

    Committed matrices hold their initial values while the manager is
    UNLOADED, so they can already be saved and checkpointed.

    Model layout under ``ctx.path``:
        meta.json            # schema_version, format, per-matrix shape/dtype/sha256
        <matrix>.npz|.parquet
    """

    def __init__(self, config: PSConfig, registry: MatrixRegistry, storage):
        """
        Initialize model manager.

        Args:
            config: Job configuration
            registry: Session matrix registry
            storage: Storage backend
        """
        self.config = config
        self.registry = registry
        self.storage = storage

        self.logger = get_logger("model_manager")
        self.metrics = MetricsLogger("model_manager")
        self.serializer = ModelSerializer()
        self.checkpoints = CheckpointManager(
            storage,
            base_path=config.checkpoint_path,
            max_to_keep=config.max_checkpoints_to_keep,
        )
        self.checkpoints.cleanup_staging()

        self._state = ModelState.UNLOADED
        self._lock = threading.RLock()

    @property
    def state(self) -> ModelState:
        return self._state

    def _begin(self, allowed: Tuple[ModelState, ...], during: ModelState) -> ModelState:
        if self._state not in allowed:
            raise ConfigurationError(
                f"Cannot enter {during.value} while the model is {self._state.value}"
            )
        source, self._state = self._state, during
        return source

    def _matrix_names(self, ctx: ModelContext) -> List[str]:
        committed = [c.name for c in self.registry.committed()]
        names = list(ctx.matrix_names) or committed
        unknown = [n for n in names if n not in committed]
        if unknown:
            raise ConfigurationError(f"Unknown or uncommitted matrices: {unknown}")
        if not names:
            raise ConfigurationError("No committed matrices")
        return names

    def _check_context(self, ctx: ModelContext):
        if ctx.schema_version > MODEL_SCHEMA_VERSION:
            raise ConfigurationError(
                f"Model schema version {ctx.schema_version} is newer than {MODEL_SCHEMA_VERSION}"
            )
        if ctx.format not in MODEL_FORMATS:
            raise ConfigurationError(f"Unsupported model format: {ctx.format}")

    def load(self, ctx: ModelContext):
        """
        Bring matrix values into the PS tier.

        In ``train`` mode the matrices are (re)initialized; in ``inctrain``
        and ``predict`` modes the values saved under ``ctx.path`` are pushed
        to the shards. A context carrying ``checkpoint_id`` recovers from
        that checkpoint instead.

        Raises:
            ConfigurationError: unknown matrices, bad context or model files
            ConnectivityError: the PS tier could not be reached
        """
        if ctx.checkpoint_id is not None:
            return self.recover(ctx.checkpoint_id, ctx)

        with self._lock:
            self._check_context(ctx)
            names = self._matrix_names(ctx)
            source = self._begin((ModelState.UNLOADED,), ModelState.LOADING)
            start_time = time.time()
            try:
                if self.config.action_type == "train":
                    self.registry.init_matrices(names)
                    self.logger.info(f"Initialized matrices {names}")
                else:
                    self._load_values(ctx, names)
            except BaseException:
                self._state = source
                raise

            self._state = ModelState.LOADED
            self.metrics.record("load_seconds", time.time() - start_time)

    def _load_values(self, ctx: ModelContext, names: List[str]):
        if not ctx.path:
            raise ConfigurationError(f"{self.config.action_type} mode requires a model path")

        self.storage.restore_interrupted(ctx.path)
        try:
            meta = self.serializer.deserialize_metadata(
                self.storage.read(join_path(ctx.path, MODEL_META_NAME))
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"No model found at {ctx.path}", cause=e)
        except ValueError as e:
            raise ConfigurationError(f"Unreadable model metadata at {ctx.path}", cause=e)

        version = meta.get("schema_version", LegacyModelAdapter.LEGACY_SCHEMA_VERSION)
        if version > MODEL_SCHEMA_VERSION:
            raise ConfigurationError(f"Model at {ctx.path} has unsupported schema version {version}")

        client = self.registry.matrix_client()
        for name in names:
            entry = meta.get("matrices", {}).get(name)
            if entry is None:
                raise ConfigurationError(f"Model at {ctx.path} has no matrix {name}")

            assignment = self.registry.assignment(name)
            if list(entry["shape"]) != list(assignment.shape):
                raise ConfigurationError(
                    f"Matrix {name} has shape {tuple(entry['shape'])} in the model, "
                    f"{assignment.shape} in the session"
                )

            path = join_path(ctx.path, entry["file"])
            try:
                data = self.storage.read(path)
            except FileNotFoundError as e:
                raise ConfigurationError(f"Model file {path} is missing", cause=e)

            # Schema version 1 models carry no checksums
            if version >= 2 and checksum(data) != entry["sha256"]:
                raise ConfigurationError(f"Model file {path} fails its checksum")

            try:
                values = self.serializer.deserialize_matrix(data, format=meta.get("format", "npz"))
            except ValueError as e:
                raise ConfigurationError(f"Model file {path} is unreadable", cause=e)

            client.push(name, values)
            self.logger.info(f"Loaded matrix {name} from {path}")

    def save(self, ctx: ModelContext):
        """
        Persist the current values of the matrices under ``ctx.path``.

        Values are written to a temporary sibling directory that replaces
        ``ctx.path`` only once every file is written.

        Raises:
            ConfigurationError: predict mode, or bad context
            ConnectivityError: the PS tier or the storage could not be reached
        """
        if self.config.action_type == "predict":
            raise ConfigurationError("Models cannot be saved in predict mode")
        if not ctx.path:
            raise ConfigurationError("save requires a model path")

        with self._lock:
            self._check_context(ctx)
            names = self._matrix_names(ctx)
            source = self._begin((ModelState.UNLOADED, ModelState.LOADED), ModelState.SAVING)
            start_time = time.time()
            try:
                self._save_values(ctx, names)
            finally:
                self._state = source
            self.metrics.record("save_seconds", time.time() - start_time)

    def _save_values(self, ctx: ModelContext, names: List[str]):
        client = self.registry.matrix_client()
        tmp_path = f"{ctx.path.rstrip('/')}._tmp-{uuid.uuid4().hex[:8]}"
        ext = "npz" if ctx.format == "npz" else "parquet"
        meta: Dict[str, Any] = {
            "schema_version": MODEL_SCHEMA_VERSION,
            "format": ctx.format,
            "action_type": self.config.action_type,
            "timestamp": time.time(),
            "matrices": {},
        }

        try:
            for name in names:
                values = client.pull(name)
                data = self.serializer.serialize_matrix(values, format=ctx.format)
                fname = f"{name}.{ext}"
                self.storage.write(join_path(tmp_path, fname), data)
                meta["matrices"][name] = {
                    "file": fname,
                    "shape": list(values.shape),
                    "dtype": values.dtype.str,
                    "sha256": checksum(data),
                }

            self.storage.write(join_path(tmp_path, MODEL_META_NAME), self.serializer.serialize_metadata(meta))
            self.storage.rename(tmp_path, ctx.path, overwrite=True, commit_last=MODEL_META_NAME)
        except ClusterError:
            self._discard(tmp_path)
            raise
        except Exception as e:
            self._discard(tmp_path)
            raise ClusterError(f"Could not save model to {ctx.path}", kind=ErrorKind.CONNECTIVITY, cause=e)

        self.logger.info(f"Saved matrices {names} to {ctx.path}")

    def _discard(self, path: str):
        try:
            self.storage.delete_prefix(path)
        except Exception as e:
            self.logger.warning(f"Could not remove {path}: {e}")

    def checkpoint(self, checkpoint_id: int, ctx: Optional[ModelContext] = None) -> CheckpointRecord:
        """
        Publish checkpoint ``checkpoint_id`` of the matrices.

        Raises:
            ConsistencyError: id not greater than every published id
            ConnectivityError: the PS tier or the storage could not be reached
        """
        ctx = ctx or ModelContext()
        with self._lock:
            names = self._matrix_names(ctx)
            source = self._begin((ModelState.UNLOADED, ModelState.LOADED), ModelState.CHECKPOINTING)
            start_time = time.time()
            try:
                self.checkpoints.check_next_id(checkpoint_id)
                client = self.registry.matrix_client()
                snapshots = {name: client.pull(name) for name in names}
                record = self.checkpoints.save(
                    checkpoint_id,
                    snapshots,
                    metadata={"action_type": self.config.action_type},
                )
            finally:
                self._state = source
            self.metrics.record("checkpoint_seconds", time.time() - start_time)
            return record

    def recover(self, checkpoint_id: int, ctx: Optional[ModelContext] = None) -> CheckpointRecord:
        """
        Restore matrix values from checkpoint ``checkpoint_id``.

        Without explicit ``ctx.matrix_names`` every committed matrix found in
        the checkpoint is restored.

        Raises:
            CheckpointNotFoundError: no such checkpoint
            CheckpointCorruptError: incomplete or unreadable checkpoint
            ConfigurationError: the checkpoint does not match the session
        """
        ctx = ctx or ModelContext()
        with self._lock:
            source = self._begin((ModelState.UNLOADED, ModelState.LOADED), ModelState.RECOVERING)
            start_time = time.time()
            try:
                record = self.checkpoints.read_record(checkpoint_id)
                names = self._recover_names(ctx, record)
                record, values = self.checkpoints.load(checkpoint_id, names)

                client = self.registry.matrix_client()
                for name in names:
                    assignment = self.registry.assignment(name)
                    if values[name].shape != assignment.shape:
                        raise ConfigurationError(
                            f"Checkpoint {checkpoint_id} holds {name} with shape "
                            f"{values[name].shape}, session expects {assignment.shape}"
                        )
                    client.push(name, values[name])
            except BaseException:
                self._state = source
                raise

            self._state = ModelState.LOADED
            self.metrics.record("recover_seconds", time.time() - start_time)
            self.logger.info(f"Recovered matrices {names} from checkpoint {checkpoint_id}")
            return record

    def _recover_names(self, ctx: ModelContext, record: CheckpointRecord) -> List[str]:
        if ctx.matrix_names:
            return self._matrix_names(ctx)

        committed = [c.name for c in self.registry.committed()]
        names = [n for n in committed if n in record.snapshots]
        skipped = [n for n in committed if n not in record.snapshots]
        if skipped:
            self.logger.warning(f"Checkpoint {record.checkpoint_id} has no snapshot of {skipped}")
        if not names:
            raise ConfigurationError(
                f"Checkpoint {record.checkpoint_id} holds none of the committed matrices"
            )
        return names

    def latest_checkpoint(self) -> Optional[CheckpointRecord]:
        return self.checkpoints.latest()

    def list_checkpoints(self) -> List[CheckpointRecord]:
        return self.checkpoints.list_checkpoints()

    def legacy_contexts(self, model: Any) -> Tuple[Iterable[MatrixContext], ModelContext, ModelContext]:
        """Matrix declarations plus load and save contexts of a legacy model."""
        adapter = LegacyModelAdapter(model)
        return adapter.matrix_contexts(), adapter.load_context(), adapter.save_context()

    def reset(self):
        with self._lock:
            self._state = ModelState.UNLOADED
