"""Task execution engine: the task interface and its per-run context."""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ps_orchestrator.storage.backend import join_path


class TaskStatus(Enum):
    """Lifecycle status of one dispatched task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.KILLED)


class TaskKilled(Exception):
    """Raised inside a task when its run has been cancelled."""


@dataclass
class InputSplit:
    """Input partition handed to one task: a group of storage paths."""

    index: int
    paths: List[str] = field(default_factory=list)


@dataclass
class TaskContext:
    """
    Everything one task sees while it runs.

    Attributes:
        task_id: Unique id within the run
        task_type: Registered task type
        split: Input partition
        status: Current status
        error: Failure description when status is FAILED
        matrices: MatrixClient for the committed matrices
        storage: Storage backend
        output_dir: Directory the task writes its output to
        params: Free-form task parameters
        action_type: Job mode
        records: Parsed records, filled by ``BaseTask.pre_process``
        result: Value returned by ``BaseTask.run``
    """

    task_id: str
    task_type: str
    split: InputSplit
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None
    matrices: Any = None
    storage: Any = None
    output_dir: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    action_type: str = "train"
    records: List[Any] = field(default_factory=list)
    result: Any = None
    submit_time: float = field(default_factory=time.time)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self):
        """Raise TaskKilled if the run has been cancelled."""
        if self.cancel_event.is_set():
            raise TaskKilled(self.task_id)

    def read_split(self) -> Iterator[Tuple[str, str]]:
        """Yield (key, line) for every line of every file in the split."""
        for path in self.split.paths:
            data = self.storage.read(path).decode("utf-8")
            for lineno, line in enumerate(data.splitlines()):
                self.check_cancelled()
                yield f"{path}:{lineno}", line

    def write_output(self, data: bytes, name: Optional[str] = None) -> str:
        """Write one output file into the task's output directory."""
        if self.output_dir is None:
            raise RuntimeError(f"Task {self.task_id} has no output directory")
        path = join_path(self.output_dir, name or f"part-{self.split.index:05d}")
        self.storage.write(path, data)
        return path

    def summary(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "error": self.error,
            "records": len(self.records),
            "duration": self.duration,
        }


class BaseTask(ABC):
    """
    Interface of user computation run by the worker pool.

    ``pre_process`` reads the task's input split through ``parse``;
    ``run`` does the computation against the PS matrices. Raising from
    either marks the task failed.
    """

    def parse(self, key: str, value: str) -> Any:
        """Turn one input record into a value; None drops the record."""
        return value

    def pre_process(self, context: TaskContext):
        for key, value in context.read_split():
            record = self.parse(key, value)
            if record is not None:
                context.records.append(record)

    @abstractmethod
    def run(self, context: TaskContext) -> Any:
        """Do the task's work."""
