"""Priority task queue.

Ordered holding area for pending tasks: higher priority first, submission
order within a priority. Holds no business logic beyond ordering.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Optional

from autodev.core.exceptions import QueueClosedError
from autodev.core.models import Task, TaskStatus

logger = logging.getLogger("autodev.orchestrator.task_queue")


class TaskQueue:
    """Thread-safe priority queue of pending tasks.

    Heap entries are ``(-rank, sequence, task_id)``; removed tasks are
    dropped lazily when they reach the top.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, str]] = []
        self._tasks: dict[str, Task] = {}
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    def put(self, task: Task) -> str:
        """Enqueue a pending task and return its id.

        Raises:
            QueueClosedError: If the queue no longer accepts work.
            ValueError: If the task is not pending or is already queued.
        """
        if task.status != TaskStatus.PENDING:
            raise ValueError(f"Only pending tasks can be queued (task {task.id} is {task.status.value})")
        with self._cond:
            if self._closed:
                raise QueueClosedError(f"Queue closed, rejecting task {task.id}")
            if task.id in self._tasks:
                raise ValueError(f"Task {task.id} is already queued")
            self._tasks[task.id] = task
            heapq.heappush(self._heap, (-task.priority.rank, next(self._counter), task.id))
            self._cond.notify()
        logger.debug("Queued task %s (%s)", task.id, task.priority.value)
        return task.id

    def get(self, timeout: Optional[float] = None) -> Optional[Task]:
        """Pop the next task, waiting up to ``timeout`` seconds.

        Returns None on timeout, or immediately when the queue is closed
        and empty.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                task = self._pop_locked()
                if task is not None:
                    return task
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)

    def remove(self, task_id: str) -> Optional[Task]:
        """Take a queued task out of the queue without dequeuing it."""
        with self._cond:
            return self._tasks.pop(task_id, None)

    def pending(self) -> list[Task]:
        """Queued tasks in dequeue order."""
        with self._cond:
            ordered = sorted(self._heap)
            return [self._tasks[tid] for _, _, tid in ordered if tid in self._tasks]

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._tasks)

    def _pop_locked(self) -> Optional[Task]:
        while self._heap:
            _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.pop(task_id, None)
            if task is not None:
                return task
        return None
