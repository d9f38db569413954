"""Dispatching of tasks to the worker pool and waiting for their completion."""

import math
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from ps_orchestrator.client.barrier import CompletionBarrier
from ps_orchestrator.client.matrix_registry import MatrixRegistry
from ps_orchestrator.errors import (
    ClusterError,
    ConfigurationError,
    ConnectivityError,
    ErrorKind,
    TaskFailureError,
)
from ps_orchestrator.storage.backend import join_path
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import MetricsLogger, get_logger
from ps_orchestrator.worker.task import BaseTask, InputSplit, TaskContext, TaskStatus
from ps_orchestrator.worker.worker_pool import WorkerPool


TaskFactory = Callable[[], BaseTask]


class TaskRegistry:
    """Explicit table of task type -> task factory."""

    def __init__(self, tasks: Optional[Dict[str, TaskFactory]] = None):
        self._factories: Dict[str, TaskFactory] = {}
        for task_type, factory in (tasks or {}).items():
            self.register(task_type, factory)

    def register(self, task_type: str, factory: TaskFactory):
        if not task_type:
            raise ConfigurationError("Task type must be a non-empty string")
        if not callable(factory):
            raise ConfigurationError(f"Factory for task type {task_type} is not callable")
        self._factories[task_type] = factory

    def get(self, task_type: str) -> TaskFactory:
        if task_type not in self._factories:
            raise ConfigurationError(
                f"Unknown task type {task_type!r}; registered: {sorted(self._factories)}"
            )
        return self._factories[task_type]

    def types(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._factories


class TaskDispatcher:
    """
    Runs one task per input split on the worker pool.

    ``run_task`` returns as soon as every task is queued;
    ``wait_for_completion`` is the barrier that reports the outcome of the
    whole run.
    """

    def __init__(
        self,
        config: PSConfig,
        registry: MatrixRegistry,
        task_registry: TaskRegistry,
        worker_pool: WorkerPool,
        storage,
        kill_event: Optional[threading.Event] = None
    ):
        """
        Initialize dispatcher.

        Args:
            config: Job configuration
            registry: Session matrix registry
            task_registry: Task types available to the session
            worker_pool: Pool running the tasks
            storage: Storage backend for input and output
            kill_event: Aborts ``wait_for_completion`` when set
        """
        self.config = config
        self.registry = registry
        self.task_registry = task_registry
        self.worker_pool = worker_pool
        self.storage = storage
        self._kill_event = kill_event or threading.Event()

        self.logger = get_logger("task_dispatcher")
        self.metrics = MetricsLogger("task_dispatcher")
        self.barrier = CompletionBarrier()

        self._contexts: Dict[str, TaskContext] = {}
        self._run_id: Optional[str] = None
        self._task_type: Optional[str] = None
        self._run_start: Optional[float] = None
        self._lock = threading.Lock()

    def _run_dir(self) -> str:
        return join_path(self.config.temp_path, self._run_id)

    def _output_dir(self) -> str:
        return join_path(self._run_dir(), "output")

    def input_splits(self) -> List[InputSplit]:
        """Group the input files round-robin into ``tasks_per_run`` splits."""
        num_tasks = self.config.tasks_per_run
        splits = [InputSplit(index=i) for i in range(num_tasks)]
        if not self.config.input_path:
            return splits

        files = self.storage.list(self.config.input_path)
        if not files:
            raise ConfigurationError(f"No input files under {self.config.input_path}")
        for i, path in enumerate(files):
            splits[i % num_tasks].paths.append(path)
        return splits

    def run_task(self, task_type: str) -> List[str]:
        """
        Dispatch one task of ``task_type`` per input split.

        Returns:
            Ids of the dispatched tasks

        Raises:
            ConfigurationError: unknown task type, matrices not committed,
                a run still in progress, or no input
            ConnectivityError: the worker pool has no live workers
        """
        factory = self.task_registry.get(task_type)

        with self._lock:
            if not self.registry.committed():
                raise ConfigurationError("Matrices must be committed before tasks are dispatched")
            if self._contexts and any(not c.status.is_terminal for c in self._contexts.values()):
                raise ConfigurationError("Previous run has not completed")
            if self.worker_pool.live_workers < 1:
                raise ConnectivityError("No live workers available")

            splits = self.input_splits()
            self._run_id = f"{task_type}-{uuid.uuid4().hex[:8]}"
            self._task_type = task_type
            self._run_start = time.time()
            self.barrier.reset()
            self.worker_pool.clear()

            matrices = self.registry.matrix_client()
            contexts = [
                TaskContext(
                    task_id=f"{self._run_id}-{split.index:05d}",
                    task_type=task_type,
                    split=split,
                    matrices=matrices,
                    storage=self.storage,
                    output_dir=self._output_dir(),
                    params=dict(self.config.task_params),
                    action_type=self.config.action_type,
                )
                for split in splits
            ]
            self._contexts = {c.task_id: c for c in contexts}
            self.barrier.register(self._contexts)

            try:
                for context in contexts:
                    self.worker_pool.submit(factory(), context, self.barrier.notify)
            except RuntimeError as e:
                self.worker_pool.cancel_all()
                raise ConnectivityError("Worker pool stopped during dispatch", cause=e)

            self.logger.info(f"Dispatched {len(contexts)} {task_type} tasks (run {self._run_id})")
            return list(self._contexts)

    def wait_for_completion(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Block until every task of the current run is terminal.

        Up to ``task_failure_tolerance`` of the tasks may fail without
        failing the run. In predict mode the run's output directory is then
        moved to ``output_path``.

        Returns:
            Run summary

        Raises:
            TaskFailureError: too many tasks failed or were killed; lists
                every such task id
            ClusterError: kind TIMEOUT or KILLED
        """
        if not self._contexts:
            raise ConfigurationError("No tasks have been dispatched")

        statuses = self.barrier.wait(timeout=timeout, kill_event=self._kill_event)
        elapsed = time.time() - self._run_start
        self.metrics.record("run_seconds", elapsed)

        bad = sorted(tid for tid, s in statuses.items() if s != TaskStatus.SUCCEEDED)
        allowed = math.floor(self.config.task_failure_tolerance * len(statuses))
        failed = self.barrier.failed()

        if len(bad) > allowed:
            details = "; ".join(f"{tid}: {failed.get(tid) or statuses[tid].value}" for tid in bad)
            raise TaskFailureError(
                f"{len(bad)} of {len(statuses)} tasks did not succeed ({details})",
                task_ids=bad,
            )
        if bad:
            self.logger.warning(
                f"{len(bad)} of {len(statuses)} tasks did not succeed, "
                f"within tolerance {self.config.task_failure_tolerance}: {bad}"
            )

        summary: Dict[str, Any] = {
            "run_id": self._run_id,
            "task_type": self._task_type,
            "num_tasks": len(statuses),
            "succeeded": len(statuses) - len(bad),
            "failed": bad,
            "elapsed_seconds": elapsed,
            "tasks": [c.summary() for c in self._contexts.values()],
        }

        if self.config.action_type == "predict":
            summary["output_path"] = self._commit_output()

        self.logger.info(f"Run {self._run_id} finished in {elapsed:.2f}s")
        return summary

    def _commit_output(self) -> str:
        output_dir = self._output_dir()
        if not self.storage.exists(output_dir):
            self.logger.warning(f"Run {self._run_id} wrote no output")
            return self.config.output_path

        try:
            self.storage.rename(output_dir, self.config.output_path, overwrite=True)
        except Exception as e:
            raise ClusterError(
                f"Could not move {output_dir} to {self.config.output_path}",
                kind=ErrorKind.CONNECTIVITY,
                cause=e,
            )
        self.logger.info(f"Committed predict output to {self.config.output_path}")
        return self.config.output_path

    def cancel_all(self):
        self.worker_pool.cancel_all()
        self.barrier.interrupt()

    @property
    def tasks(self) -> List[TaskContext]:
        return list(self._contexts.values())

    def counts(self) -> Dict[str, int]:
        return self.barrier.counts()

    def cleanup(self):
        """Remove the temporary directories of the current run."""
        if self._run_id is None:
            return
        run_dir = self._run_dir()
        if self.storage.exists(run_dir):
            self.storage.delete_prefix(run_dir)
            self.logger.debug(f"Removed {run_dir}")
