"""Thread pool running dispatched tasks and reporting their completion."""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from ps_orchestrator.utils.logging import get_logger
from ps_orchestrator.worker.task import BaseTask, TaskContext, TaskKilled, TaskStatus


class WorkerPool:
    """
    Runs tasks on a fixed number of worker threads.

    Every submitted task reports exactly once through its ``on_done``
    callback, whatever way it ends (succeeded, failed, killed before or
    while running).
    """

    def __init__(self, num_workers: int, name: str = "worker_pool"):
        """
        Initialize worker pool.

        Args:
            num_workers: Number of worker threads
            name: Component name used for logging
        """
        self.num_workers = num_workers
        self.logger = get_logger(name)

        self._executor = ThreadPoolExecutor(
            max_workers=num_workers,
            thread_name_prefix="ps-worker"
        )
        self._futures: Dict[str, Future] = {}
        self._contexts: Dict[str, TaskContext] = {}
        self._callbacks: Dict[str, Callable[[TaskContext], None]] = {}
        self._running: Dict[str, TaskContext] = {}
        self._lock = threading.Lock()
        self._shutdown = False

    @property
    def live_workers(self) -> int:
        return 0 if self._shutdown else self.num_workers

    def submit(
        self,
        task: BaseTask,
        context: TaskContext,
        on_done: Callable[[TaskContext], None]
    ):
        """
        Queue a task.

        Raises:
            RuntimeError: the pool has been shut down
        """
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Worker pool is shut down")
            self._contexts[context.task_id] = context
            self._callbacks[context.task_id] = on_done
            self._futures[context.task_id] = self._executor.submit(
                self._execute, task, context, on_done
            )

    def _execute(self, task: BaseTask, context: TaskContext, on_done: Callable[[TaskContext], None]):
        with self._lock:
            self._running[context.task_id] = context

        try:
            context.check_cancelled()
            context.status = TaskStatus.RUNNING
            context.start_time = time.time()
            self.logger.debug(f"Task {context.task_id} started")

            task.pre_process(context)
            context.check_cancelled()
            context.result = task.run(context)
            context.status = TaskStatus.SUCCEEDED

        except TaskKilled:
            context.status = TaskStatus.KILLED

        except Exception as e:
            context.error = f"{type(e).__name__}: {e}"
            if context.cancelled:
                context.status = TaskStatus.KILLED
            else:
                context.status = TaskStatus.FAILED
                self.logger.error(f"Task {context.task_id} failed: {context.error}")

        finally:
            context.end_time = time.time()
            with self._lock:
                self._running.pop(context.task_id, None)
            self._notify(context, on_done)

    def _notify(self, context: TaskContext, on_done: Callable[[TaskContext], None]):
        try:
            on_done(context)
        except Exception as e:
            self.logger.error(f"Completion callback for task {context.task_id} failed: {e}")

    def cancel_all(self):
        """Cancel queued tasks and ask running ones to stop."""
        with self._lock:
            items = [
                (self._contexts[tid], f, self._callbacks[tid])
                for tid, f in self._futures.items()
            ]

        cancelled = 0
        for context, future, on_done in items:
            context.cancel_event.set()
            if future.cancel():
                cancelled += 1
                context.status = TaskStatus.KILLED
                context.end_time = time.time()
                self._notify(context, on_done)

        if items:
            self.logger.info(f"Cancelled {cancelled} queued tasks, signalled the running ones")

    def running_tasks(self) -> List[str]:
        with self._lock:
            return sorted(self._running)

    def clear(self):
        """Forget finished tasks before a new run."""
        with self._lock:
            for task_id in [tid for tid, f in self._futures.items() if f.done()]:
                del self._futures[task_id]
                del self._contexts[task_id]
                del self._callbacks[task_id]

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> List[str]:
        """
        Stop accepting tasks; running tasks are cancelled first.

        Args:
            wait: Wait for running tasks to finish
            timeout: Upper bound on the wait (None = until they finish)

        Returns:
            Ids of tasks still running when the call returns
        """
        with self._lock:
            first = not self._shutdown
            self._shutdown = True

        if first:
            self.cancel_all()
            self._executor.shutdown(wait=wait and timeout is None, cancel_futures=True)

        if wait and timeout is not None:
            deadline = time.time() + timeout
            while self.running_tasks() and time.time() < deadline:
                time.sleep(0.01)
        return self.running_tasks()

    def kill(self, ack_timeout: float = 0.5) -> List[str]:
        """
        Cancel everything without waiting for running tasks.

        Returns:
            Ids of tasks still running after ``ack_timeout``
        """
        stragglers = self.shutdown(wait=True, timeout=ack_timeout)
        if stragglers:
            self.logger.warning(f"Tasks still running after kill: {stragglers}")
        return stragglers
