"""Worker side: task interface, worker pool and matrix access."""

from ps_orchestrator.worker.task import BaseTask, TaskContext, TaskStatus, TaskKilled, InputSplit
from ps_orchestrator.worker.worker_pool import WorkerPool
from ps_orchestrator.worker.matrix_client import MatrixClient

__all__ = [
    "BaseTask",
    "TaskContext",
    "TaskStatus",
    "TaskKilled",
    "InputSplit",
    "WorkerPool",
    "MatrixClient",
]
