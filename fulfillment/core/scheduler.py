from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from fulfillment.core.activity.models import ActorType
from fulfillment.core.errors import ConcurrentModificationError, InvalidTransitionError
from fulfillment.core.execution.pool import TaskWorkerPool
from fulfillment.core.locations.models import AutomatedActionConfig, Location
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore
from fulfillment.core.tasks.models import Task, TaskFilters, TaskOrder, TaskStatus
from fulfillment.core.tasks.state_machine import TaskStateMachine


class SweepScheduler:
    """
    Periodic sweep, per tenant:
    - retry failed tasks whose backoff has elapsed
    - fail tasks stuck in awaiting_callback past their callback window
    - hand pending automated tasks to the worker pool

    `run_once()` performs one sweep synchronously; `start()` runs it on a
    background thread every `interval_seconds` until `stop()`.
    """

    def __init__(
        self,
        *,
        store: SqliteRecordStore,
        machine: TaskStateMachine,
        pool: Optional[TaskWorkerPool] = None,
        scopes: Optional[Callable[[], Iterable[Scope]]] = None,
        interval_seconds: float = 30.0,
        batch_limit: int = 100,
        default_callback_window_minutes: int = 60,
        clock: Callable[[], float] = time.time,
        logger: Any = None,
    ):
        self.store = store
        self.machine = machine
        self.pool = pool
        self.scopes = scopes or self._all_tenants
        self.interval = max(0.05, float(interval_seconds))
        self.batch_limit = int(batch_limit)
        self.default_callback_window_minutes = int(default_callback_window_minutes)
        self.clock = clock
        self.logger = logger

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _all_tenants(self) -> List[Scope]:
        return [Scope(tenant_id=t) for t in self.store.list_tenants()]

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="fulfillment-sweep", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"[sweep] tick failed: {e}")
            self._stop.wait(self.interval)

    # ---------- sweep ----------
    def run_once(self) -> Dict[str, int]:
        totals = {"retried": 0, "timed_out": 0, "dispatched": 0}
        for scope in self.scopes():
            for k, v in self.sweep_scope(scope).items():
                totals[k] += v
        if self.logger and any(totals.values()):
            self.logger.info(f"[sweep] retried={totals['retried']} timed_out={totals['timed_out']} dispatched={totals['dispatched']}")
        return totals

    def sweep_scope(self, scope: Scope) -> Dict[str, int]:
        return {
            "retried": self._retry_due(scope),
            "timed_out": self._expire_callbacks(scope),
            "dispatched": self._dispatch_pending(scope),
        }

    def _query(self, scope: Scope, filters: TaskFilters, now: float) -> List[Task]:
        items, _total = self.store.query_tasks(
            scope, filters, now=now, order_by=TaskOrder.CREATED_AT, order_direction="asc", limit=self.batch_limit
        )
        return items

    def _retry_due(self, scope: Scope) -> int:
        n = 0
        for t in self._query(scope, TaskFilters(needs_retry=True), float(self.clock())):
            try:
                self.machine.retry(scope, t.id, actor=ActorType.automation)
                n += 1
            except (InvalidTransitionError, ConcurrentModificationError) as e:
                if self.logger:
                    self.logger.info(f"[sweep] retry skipped task={t.id}: {e}")
        return n

    def callback_deadline(self, task: Task, loc: Optional[Location]) -> Optional[float]:
        if task.last_attempt_at is None:
            return None
        minutes = self.default_callback_window_minutes
        if loc is not None and isinstance(loc.action_config, AutomatedActionConfig):
            if loc.action_config.webhook.expected_within:
                minutes = int(loc.action_config.webhook.expected_within)
        return float(task.last_attempt_at) + minutes * 60.0

    def _expire_callbacks(self, scope: Scope) -> int:
        now = float(self.clock())
        waiting = self._query(scope, TaskFilters(awaiting_callback=True), now)
        if not waiting:
            return 0
        locations = self.store.get_locations(scope, [t.location_id for t in waiting])
        n = 0
        for t in waiting:
            deadline = self.callback_deadline(t, locations.get(t.location_id))
            if deadline is None or deadline > now:
                continue
            window = int(round((deadline - float(t.last_attempt_at or deadline)) / 60.0))
            try:
                self.machine.fail(
                    scope,
                    t.id,
                    f"Callback not received within {window} minutes",
                    schedule_retry=True,
                    actor=ActorType.automation,
                )
                n += 1
            except (InvalidTransitionError, ConcurrentModificationError) as e:
                if self.logger:
                    self.logger.info(f"[sweep] callback timeout skipped task={t.id}: {e}")
        return n

    def _dispatch_pending(self, scope: Scope) -> int:
        if self.pool is None:
            return 0
        pending = self._query(scope, TaskFilters(status=TaskStatus.PENDING), float(self.clock()))
        if not pending:
            return 0
        locations = self.store.get_locations(scope, [t.location_id for t in pending])
        n = 0
        for t in pending:
            loc = locations.get(t.location_id)
            if loc is None or not isinstance(loc.action_config, AutomatedActionConfig):
                continue
            if self.pool.submit(scope, t.id) is not None:
                n += 1
        return n
