"""Control client driving one PS training job from start to termination."""

import signal
import threading
import time
import uuid
import warnings
from contextlib import contextmanager
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ps_orchestrator.client.bootstrap import ClusterBootstrapper
from ps_orchestrator.client.matrix_registry import MatrixRegistry
from ps_orchestrator.client.model_manager import ModelLifecycleManager
from ps_orchestrator.client.task_dispatcher import TaskDispatcher, TaskFactory, TaskRegistry
from ps_orchestrator.communication.protocol import ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCClient, RetryPolicy
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.contexts import MatrixContext, ModelContext
from ps_orchestrator.errors import ClusterError, ConfigurationError, ErrorKind
from ps_orchestrator.storage.backend import create_backend
from ps_orchestrator.storage.checkpoint import CheckpointRecord
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import MetricsLogger, configure_logging, get_logger
from ps_orchestrator.worker.worker_pool import WorkerPool


class ClientState(Enum):
    CREATED = "created"
    PS_STARTING = "ps_starting"
    PS_READY = "ps_ready"
    MATRICES_COMMITTED = "matrices_committed"
    MODEL_LOADED = "model_loaded"
    TASKS_RUNNING = "tasks_running"
    TASKS_DONE = "tasks_done"
    STOPPED = "stopped"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (ClientState.STOPPED, ClientState.FAILED, ClientState.KILLED)


class StateCode(IntEnum):
    """Terminal status recorded by ``stop`` and used as the process exit code."""

    SUCCEEDED = 0
    KILLED = 1
    FAILED = 2


_TERMINAL_STATE = {
    StateCode.SUCCEEDED: ClientState.STOPPED,
    StateCode.KILLED: ClientState.KILLED,
    StateCode.FAILED: ClientState.FAILED,
}

# Errors after which the job cannot continue
_FATAL_KINDS = (ErrorKind.CONNECTIVITY, ErrorKind.TASK_FAILURE, ErrorKind.CHECKPOINT_CORRUPT)

_MODEL_STATES = (
    ClientState.MATRICES_COMMITTED,
    ClientState.MODEL_LOADED,
    ClientState.TASKS_DONE,
)


class PSMainClient:
    """
    Control client of a PS training job.

    Owns the session: matrix registry, PS bootstrapper, model manager,
    task dispatcher and worker pool are created with the client and torn
    down by ``stop``/``close``. Typical flow:

        with PSMainClient(config, task_registry={"train": TrainTask}) as client:
            client.add_matrix(MatrixContext("w", 100, 10))
            client.start_ps_server()
            client.create_matrices()
            client.run_task("train")
            client.wait_for_completion()
            client.save(ModelContext(path="model"))

    ``kill`` may be called from any thread or a signal handler; it
    interrupts ``start_ps_server`` and ``wait_for_completion``.
    """

    def __init__(
        self,
        config: Optional[PSConfig] = None,
        task_registry: Optional[Union[TaskRegistry, Dict[str, TaskFactory]]] = None,
        storage=None
    ):
        """
        Initialize control client.

        Args:
            config: Job configuration (defaults if None)
            task_registry: Task types available to this session
            storage: Storage backend (default: built from config)

        Raises:
            ConfigurationError: invalid configuration
        """
        self.config = config or PSConfig()
        try:
            self.config.validate()
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}", cause=e)

        configure_logging(self.config.log_level, self.config.log_file)
        self.client_id = f"main_{uuid.uuid4().hex[:8]}"
        self.logger = get_logger("main_client")
        self.metrics = MetricsLogger("main_client")

        self._lock = threading.RLock()
        self._kill_event = threading.Event()
        self._state = ClientState.CREATED
        self._exit_code: Optional[StateCode] = None
        self._stragglers: List[str] = []
        self._stopping = False
        self._killed = False
        self._stopped = False
        self._closed = False

        self._rpc_client = RPCClient(
            timeout=self.config.timeout_seconds,
            max_message_size=self.config.max_message_size,
            serializer=Serializer(
                compression=self.config.compression,
                compression_algorithm=self.config.compression_algorithm
            ),
            retry_policy=RetryPolicy.from_config(self.config),
            client_id=self.client_id,
        )
        self.storage = storage or create_backend(self.config)

        if not isinstance(task_registry, TaskRegistry):
            task_registry = TaskRegistry(task_registry)
        self.task_registry = task_registry

        self.matrix_registry = MatrixRegistry(self.config, self._rpc_client)
        self.bootstrapper = ClusterBootstrapper(self.config, self._rpc_client, self._kill_event)
        self.model_manager = ModelLifecycleManager(self.config, self.matrix_registry, self.storage)
        self.worker_pool = WorkerPool(self.config.num_workers)
        self.dispatcher = TaskDispatcher(
            self.config,
            self.matrix_registry,
            self.task_registry,
            self.worker_pool,
            self.storage,
            self._kill_event,
        )

        self.logger.info(
            f"Client {self.client_id} created (mode={self.config.action_type}, "
            f"servers={self.config.num_servers}, workers={self.config.num_workers})"
        )

    # State handling

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def exit_code(self) -> Optional[StateCode]:
        return self._exit_code

    @property
    def stragglers(self) -> List[str]:
        return list(self._stragglers)

    def _set_state(self, state: ClientState):
        with self._lock:
            if state != self._state:
                self.logger.info(f"State {self._state.value} -> {state.value}")
                self._state = state

    def _require(self, operation: str, allowed: Tuple[ClientState, ...]):
        with self._lock:
            if self._state in allowed:
                return
            if self._state.is_terminal:
                raise ConfigurationError(f"Cannot {operation}: client is {self._state.value}")
            raise ConfigurationError(
                f"Cannot {operation} in state {self._state.value} "
                f"(expected one of {[s.value for s in allowed]})"
            )

    @contextmanager
    def _operation(self, name: str):
        """Record phase duration and move to FAILED/KILLED on fatal errors."""
        start_time = time.time()
        try:
            yield
        except ClusterError as e:
            if e.kind == ErrorKind.KILLED or self._kill_event.is_set():
                self._set_state(ClientState.KILLED)
            elif e.kind in _FATAL_KINDS:
                self.logger.error(f"{name} failed: {e}")
                self._set_state(ClientState.FAILED)
            raise
        self.metrics.record(f"{name}_seconds", time.time() - start_time)

    # Matrices and PS tier

    def add_matrix(self, ctx: MatrixContext):
        """Stage a matrix declaration."""
        self._require("add a matrix", tuple(s for s in ClientState if not s.is_terminal))
        self.matrix_registry.add_matrix(ctx)

    def start_ps_server(self) -> List[ServerInfo]:
        """
        Start the PS tier and wait for the shard quorum.

        Idempotent once the tier is up.
        """
        if self._state not in (ClientState.CREATED, ClientState.PS_STARTING):
            self._require("start the PS tier", tuple(s for s in ClientState if not s.is_terminal))
            return self.bootstrapper.shards

        self._set_state(ClientState.PS_STARTING)
        try:
            with self._operation("bootstrap"):
                shards = self.bootstrapper.start_ps_server()
                self.matrix_registry.bind(shards)
        except ClusterError:
            if self._state == ClientState.PS_STARTING:
                self._set_state(ClientState.CREATED)
            raise

        self._set_state(ClientState.PS_READY)
        return shards

    def create_matrices(self, contexts: Optional[Iterable[MatrixContext]] = None) -> List[MatrixContext]:
        """Commit the staged (or given) matrices atomically."""
        self._require("create matrices", (ClientState.PS_READY,) + _MODEL_STATES)
        with self._operation("commit"):
            committed = self.matrix_registry.create_matrices(contexts)
        if self._state == ClientState.PS_READY and committed:
            self._set_state(ClientState.MATRICES_COMMITTED)
        return committed

    # Model lifecycle

    def load(self, ctx: ModelContext):
        self._require("load the model", _MODEL_STATES)
        with self._operation("load"):
            self.model_manager.load(ctx)
        self._set_state(ClientState.MODEL_LOADED)

    def recover(self, checkpoint_id: int, ctx: Optional[ModelContext] = None) -> CheckpointRecord:
        self._require("recover", _MODEL_STATES)
        with self._operation("recover"):
            record = self.model_manager.recover(checkpoint_id, ctx)
        self._set_state(ClientState.MODEL_LOADED)
        return record

    def save(self, ctx: ModelContext):
        self._require("save the model", _MODEL_STATES)
        with self._operation("save"):
            self.model_manager.save(ctx)

    def checkpoint(self, checkpoint_id: int, ctx: Optional[ModelContext] = None) -> CheckpointRecord:
        self._require("checkpoint", _MODEL_STATES)
        with self._operation("checkpoint"):
            return self.model_manager.checkpoint(checkpoint_id, ctx)

    def load_model(self, model: Any):
        """Declare, commit and load the matrices of a legacy model object."""
        matrices, load_ctx, _ = self.model_manager.legacy_contexts(model)
        for ctx in matrices:
            if ctx.name not in self.matrix_registry:
                self.add_matrix(ctx)
        self.create_matrices()
        self.load(load_ctx)

    def save_model(self, model: Any):
        """Save the matrices of a legacy model object."""
        _, _, save_ctx = self.model_manager.legacy_contexts(model)
        self.save(save_ctx)

    def latest_checkpoint(self) -> Optional[CheckpointRecord]:
        return self.model_manager.latest_checkpoint()

    def list_checkpoints(self) -> List[CheckpointRecord]:
        return self.model_manager.list_checkpoints()

    # Tasks

    def register_task(self, task_type: str, factory: TaskFactory):
        self.task_registry.register(task_type, factory)

    def run_task(self, task_type: str) -> List[str]:
        """Dispatch the tasks of one run and return their ids immediately."""
        if self._state in (ClientState.CREATED, ClientState.PS_STARTING, ClientState.PS_READY):
            raise ConfigurationError("Matrices must be committed before tasks are dispatched")
        self._require("run tasks", _MODEL_STATES)
        with self._operation("dispatch"):
            task_ids = self.dispatcher.run_task(task_type)
        self._set_state(ClientState.TASKS_RUNNING)
        return task_ids

    def run(self) -> List[str]:
        """Deprecated: dispatch ``config.default_task_type``."""
        warnings.warn(
            "PSMainClient.run() is deprecated; use run_task(task_type)",
            DeprecationWarning,
            stacklevel=2,
        )
        if not self.config.default_task_type:
            raise ConfigurationError("run() requires config.default_task_type")
        return self.run_task(self.config.default_task_type)

    def wait_for_completion(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Block until every task of the current run is terminal.

        Raises:
            TaskFailureError: tasks failed (after all are terminal)
            ClusterError: kind TIMEOUT (run still in progress) or KILLED
        """
        self._require("wait for tasks", (ClientState.TASKS_RUNNING,))
        with self._operation("wait"):
            summary = self.dispatcher.wait_for_completion(timeout)
        self._set_state(ClientState.TASKS_DONE)
        return summary

    # Termination

    def stop(self, state_code: int = StateCode.SUCCEEDED):
        """
        Gracefully tear down the job and record its terminal status.

        Idempotent; cleanup failures are logged, never raised. Running tasks
        get ``shutdown_grace_seconds`` to finish and are recorded in
        ``stragglers`` otherwise. A ``kill`` issued while this runs takes
        over and its status wins.

        Args:
            state_code: 0 succeeded, 1 killed, 2 failed
        """
        code = StateCode(state_code)
        with self._lock:
            if self._stopping or self._killed:
                return
            self._stopping = True

        self.logger.info(f"Stopping job with state code {int(code)}")
        self._best_effort("cancel tasks", self.dispatcher.cancel_all)
        self._best_effort("stop workers", self._stop_workers)
        self._best_effort("remove temporary output", self.dispatcher.cleanup)
        self._best_effort("stop PS tier", self.bootstrapper.shutdown)
        self._best_effort("reset model state", self.model_manager.reset)
        self._best_effort("clear matrices", self.matrix_registry.clear)
        self.metrics.log_stats()

        with self._lock:
            if self._killed:
                return
            self._stopped = True
            self._exit_code = code
            self._set_state(_TERMINAL_STATE[code])

    def _stop_workers(self):
        grace = self.config.shutdown_grace_seconds
        running = self.worker_pool.shutdown(wait=True, timeout=grace)
        if not running:
            return
        self.logger.warning(f"Tasks still running after {grace:.1f}s: {running}")
        with self._lock:
            if not self._killed:
                self._stragglers = [f"task_{tid}" for tid in running]

    def kill(self, ack_timeout: float = 0.5) -> List[str]:
        """
        Forcefully terminate the job.

        Interrupts blocking waits, including a graceful ``stop`` in
        progress, and stops shards and workers without waiting for them;
        whatever is still running after ``ack_timeout`` is recorded in
        ``stragglers``.
        """
        self._kill_event.set()
        with self._lock:
            if self._stopped or self._killed:
                return self.stragglers
            self._killed = True

        self.logger.warning("Killing job" + (" during graceful stop" if self._stopping else ""))
        self.dispatcher.barrier.interrupt()

        stragglers: List[str] = []
        try:
            stragglers += [f"ps_shard_{sid}" for sid in self.bootstrapper.kill(ack_timeout)]
        except Exception as e:
            self.logger.error(f"Killing the PS tier failed: {e}")
        try:
            stragglers += [f"task_{tid}" for tid in self.worker_pool.kill(ack_timeout)]
        except Exception as e:
            self.logger.error(f"Killing the workers failed: {e}")

        with self._lock:
            self._stragglers = stragglers
            self._stopped = True
            self._exit_code = StateCode.KILLED
            self._set_state(ClientState.KILLED)
        return self.stragglers

    def close(self):
        """Release local resources; stops the job first if needed."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if not self._stopped:
            if self._state == ClientState.FAILED:
                self.stop(StateCode.FAILED)
            elif self._state == ClientState.KILLED:
                self.stop(StateCode.KILLED)
            else:
                self.stop(StateCode.SUCCEEDED)

        self._best_effort("remove temporary output", self.dispatcher.cleanup)
        self._best_effort("clear matrices", self.matrix_registry.clear)
        self._best_effort("close RPC client", self._rpc_client.close)
        self._best_effort("close storage", self.storage.close)

    def _best_effort(self, what: str, fn: Callable[[], Any]):
        try:
            fn()
        except Exception as e:
            self.logger.warning(f"Could not {what}: {e}")

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)):
        """Kill the job on SIGINT/SIGTERM. Must be called from the main thread."""

        def handle(signum, frame):
            self.logger.warning(f"Received signal {signum}")
            threading.Thread(target=self.kill, name="ps-kill", daemon=True).start()

        for sig in signals:
            signal.signal(sig, handle)

    # Introspection

    def get_cluster_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "matrices": [c.name for c in self.matrix_registry.committed()],
            "ps": self.bootstrapper.get_cluster_stats(),
            "tasks": self.dispatcher.counts(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "client": self.metrics.get_all_stats(),
            "model": self.model_manager.metrics.get_all_stats(),
            "tasks": self.dispatcher.metrics.get_all_stats(),
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None and not self._stopped:
            killed = isinstance(exc, ClusterError) and exc.kind == ErrorKind.KILLED
            self.stop(StateCode.KILLED if killed else StateCode.FAILED)
        self.close()
        return False
