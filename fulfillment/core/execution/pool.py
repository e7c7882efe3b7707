from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional, Set

from fulfillment.core.errors import FulfillmentError
from fulfillment.core.execution.http import AutomatedExecutor
from fulfillment.core.scope import Scope
from fulfillment.core.tasks.models import Task


class TaskWorkerPool:
    """
    Runs automated tasks on a thread pool, one task per worker.

    A task id already in flight is not submitted twice.
    """

    def __init__(self, *, executor: AutomatedExecutor, max_workers: int = 4, logger: Any = None):
        self.executor = executor
        self.logger = logger
        self._pool = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="fulfillment-worker")
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def submit(self, scope: Scope, task_id: str) -> Optional["Future[Task]"]:
        with self._lock:
            if task_id in self._in_flight:
                return None
            self._in_flight.add(task_id)
        try:
            fut = self._pool.submit(self._run, scope, task_id)
        except RuntimeError:
            with self._lock:
                self._in_flight.discard(task_id)
            raise
        return fut

    def _run(self, scope: Scope, task_id: str) -> Task:
        try:
            return self.executor.execute(scope, task_id)
        except FulfillmentError as e:
            if self.logger:
                self.logger.warning(f"[workers] task={task_id} not executed: {e}")
            raise
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.error(f"[workers] task={task_id} crashed: {e}")
            raise
        finally:
            with self._lock:
                self._in_flight.discard(task_id)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
