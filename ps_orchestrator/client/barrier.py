"""Completion barrier for dispatched tasks."""

import threading
import time
from typing import Dict, Iterable, List, Optional

from ps_orchestrator.errors import ClusterError, ErrorKind
from ps_orchestrator.utils.logging import get_logger
from ps_orchestrator.worker.task import TaskContext, TaskStatus


class CompletionBarrier:
    """
    Tracks the status of every task of a run.

    Worker threads report through ``notify``; the control thread blocks in
    ``wait`` until every registered task is terminal. The wait wakes up on
    each notification and also polls the kill event, backing off from
    0.1s to 1.0s between polls.
    """

    def __init__(self):
        self.logger = get_logger("completion_barrier")
        self._status: Dict[str, TaskStatus] = {}
        self._errors: Dict[str, Optional[str]] = {}
        self._cond = threading.Condition()

    def register(self, task_ids: Iterable[str]):
        with self._cond:
            for task_id in task_ids:
                if task_id in self._status:
                    raise ValueError(f"Duplicate task id: {task_id}")
                self._status[task_id] = TaskStatus.PENDING

    def notify(self, context: TaskContext):
        """Completion callback handed to the worker pool."""
        with self._cond:
            if context.task_id not in self._status:
                self.logger.warning(f"Notification for unknown task {context.task_id}")
                return
            self._status[context.task_id] = context.status
            self._errors[context.task_id] = context.error
            self._cond.notify_all()

    def interrupt(self):
        """Wake up waiters so they re-check the kill event."""
        with self._cond:
            self._cond.notify_all()

    def _pending(self) -> List[str]:
        return [tid for tid, s in self._status.items() if not s.is_terminal]

    def wait(
        self,
        timeout: Optional[float] = None,
        kill_event: Optional[threading.Event] = None
    ) -> Dict[str, TaskStatus]:
        """
        Block until every registered task is terminal.

        Args:
            timeout: Seconds to wait (None = no limit)
            kill_event: Aborts the wait when set

        Returns:
            Task id -> terminal status

        Raises:
            ClusterError: kind TIMEOUT or KILLED
        """
        start_time = time.time()
        poll_interval = 0.1

        with self._cond:
            while True:
                if kill_event is not None and kill_event.is_set():
                    raise ClusterError("Wait for task completion was killed", kind=ErrorKind.KILLED)

                pending = self._pending()
                if not pending:
                    return dict(self._status)

                wait_for = poll_interval
                if timeout is not None:
                    remaining = timeout - (time.time() - start_time)
                    if remaining <= 0:
                        raise ClusterError(
                            f"{len(pending)} tasks still running after {timeout:.1f}s",
                            kind=ErrorKind.TIMEOUT,
                        )
                    wait_for = min(wait_for, remaining)

                self._cond.wait(wait_for)
                poll_interval = min(poll_interval * 1.5, 1.0)

    def counts(self) -> Dict[str, int]:
        with self._cond:
            counts = {s.value: 0 for s in TaskStatus}
            for status in self._status.values():
                counts[status.value] += 1
            return counts

    def failed(self) -> Dict[str, Optional[str]]:
        """Failed task id -> error description."""
        with self._cond:
            return {
                tid: self._errors.get(tid)
                for tid, s in self._status.items()
                if s == TaskStatus.FAILED
            }

    def reset(self):
        with self._cond:
            self._status.clear()
            self._errors.clear()

    def __len__(self) -> int:
        with self._cond:
            return len(self._status)
