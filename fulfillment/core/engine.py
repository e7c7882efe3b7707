from __future__ import annotations

import time
from typing import Any, Callable, List, Mapping, Optional, TypeVar

from fulfillment.core.activity.sink import ActivitySink, NullActivitySink, SqliteActivitySink
from fulfillment.core.config.models import FulfillmentConfig
from fulfillment.core.config.paths import ConfigFsPaths
from fulfillment.core.errors import StoreUnavailableError
from fulfillment.core.locations.models import RequestType
from fulfillment.core.locations.registry import LocationRegistry
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore
from fulfillment.core.tasks.aggregator import RequestAggregator
from fulfillment.core.tasks.models import Task, TaskProgress, TaskSummary
from fulfillment.core.tasks.planner import FanOutPlanner
from fulfillment.core.tasks.state_machine import TaskStateMachine
from fulfillment.core.tasks.webhooks import WebhookCorrelator


T = TypeVar("T")


class FulfillmentEngine:
    """
    Public surface of the task fulfillment engine.

    Every operation takes an explicit Scope. The engine never moves the
    parent request to a terminal status; callers read `summarize()` and decide.
    """

    def __init__(
        self,
        *,
        store: SqliteRecordStore,
        activity: Optional[ActivitySink] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
        default_max_attempts: int = 3,
        backoff_base_minutes: int = 1,
    ):
        self.store = store
        self.activity = activity or NullActivitySink()
        self.logger = logger
        self.clock = clock

        self.registry = LocationRegistry(store=store, logger=logger, clock=clock)
        self.machine = TaskStateMachine(
            store=store, activity=self.activity, logger=logger, clock=clock, backoff_base_minutes=backoff_base_minutes
        )
        self.planner = FanOutPlanner(
            store=store,
            registry=self.registry,
            activity=self.activity,
            logger=logger,
            clock=clock,
            default_max_attempts=default_max_attempts,
        )
        self.webhooks = WebhookCorrelator(machine=self.machine, logger=logger)
        self.aggregator = RequestAggregator(store=store, logger=logger)

    @classmethod
    def from_config(cls, cfg: FulfillmentConfig, *, fs: Optional[ConfigFsPaths] = None, logger: Any = None, clock: Callable[[], float] = time.time) -> "FulfillmentEngine":
        fs = fs or ConfigFsPaths(".")
        db_path = fs.resolve(cfg.db_path)
        store = SqliteRecordStore(db_path=db_path, logger=logger)
        activity: ActivitySink = SqliteActivitySink(path=db_path) if cfg.activity_enabled else NullActivitySink()
        return cls(
            store=store,
            activity=activity,
            logger=logger,
            clock=clock,
            default_max_attempts=cfg.default_max_attempts,
            backoff_base_minutes=cfg.backoff_base_minutes,
        )

    def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except StoreUnavailableError as e:
            if self.logger:
                self.logger.error(f"[engine] {op} failed, store unavailable: {e.context.get('error', e)}")
            raise

    # ---------- public surface ----------
    def plan_tasks(self, scope: Scope, request_id: str, request_type: RequestType) -> List[Task]:
        return self._call("plan_tasks", lambda: self.planner.plan_tasks(scope, request_id, request_type))

    def start(self, scope: Scope, task_id: str, assignee: Optional[str] = None) -> Task:
        return self._call("start", lambda: self.machine.start(scope, task_id, assignee))

    def complete(self, scope: Scope, task_id: str, result: Mapping[str, Any]) -> Task:
        return self._call("complete", lambda: self.machine.complete(scope, task_id, result))

    def fail(self, scope: Scope, task_id: str, error_message: str, schedule_retry: bool = False) -> Task:
        return self._call("fail", lambda: self.machine.fail(scope, task_id, error_message, schedule_retry))

    def skip(self, scope: Scope, task_id: str, reason: str) -> Task:
        return self._call("skip", lambda: self.machine.skip(scope, task_id, reason))

    def block(self, scope: Scope, task_id: str, reason: str) -> Task:
        return self._call("block", lambda: self.machine.block(scope, task_id, reason))

    def retry(self, scope: Scope, task_id: str, force: bool = False) -> Task:
        return self._call("retry", lambda: self.machine.retry(scope, task_id, force))

    def verify(self, scope: Scope, task_id: str, verified_by: str, notes: Optional[str] = None) -> Task:
        return self._call("verify", lambda: self.machine.verify(scope, task_id, verified_by, notes))

    def resolve_callback(self, scope: Scope, correlation_id: str, payload: Optional[Mapping[str, Any]], success: bool) -> Task:
        return self._call("resolve_callback", lambda: self.webhooks.resolve_callback(scope, correlation_id, payload, success))

    def summarize(self, scope: Scope, request_id: str) -> TaskSummary:
        return self._call("summarize", lambda: self.aggregator.summarize(scope, request_id))

    def progress(self, scope: Scope, request_id: str) -> TaskProgress:
        return self._call("progress", lambda: self.aggregator.progress(scope, request_id))
