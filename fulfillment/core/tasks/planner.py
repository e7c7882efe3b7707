from __future__ import annotations

import time
from typing import Any, Callable, List, Optional

from fulfillment.core.activity.models import ActivityEvent, ActivityType, ActorType
from fulfillment.core.activity.sink import ActivitySink, NullActivitySink
from fulfillment.core.errors import ValidationError
from fulfillment.core.locations.models import AutomatedActionConfig, ExecutionType, Location, ManualActionConfig, RequestType
from fulfillment.core.locations.registry import LocationRegistry
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore
from fulfillment.core.tasks.models import Task, TaskStatus


def max_attempts_for(location: Location, default: int) -> int:
    cfg = location.action_config
    if isinstance(cfg, AutomatedActionConfig):
        if cfg.endpoint.retry_policy is not None:
            return int(cfg.endpoint.retry_policy.max_retries)
        return int(default)
    if isinstance(cfg, ManualActionConfig):
        return int(default)
    raise TypeError(f"unsupported action config: {type(cfg).__name__}")


class FanOutPlanner:
    """
    Creates one task per active location supporting the request type.

    Not idempotent: a second call for the same request creates a second set
    of tasks. Callers check for existing tasks first.
    """

    def __init__(
        self,
        *,
        store: SqliteRecordStore,
        registry: LocationRegistry,
        activity: Optional[ActivitySink] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
        default_max_attempts: int = 3,
    ):
        self.store = store
        self.registry = registry
        self.activity = activity or NullActivitySink()
        self.logger = logger
        self.clock = clock
        self.default_max_attempts = int(default_max_attempts)

    def plan_tasks(self, scope: Scope, request_id: str, request_type: RequestType) -> List[Task]:
        if not isinstance(request_id, str) or not request_id.strip():
            raise ValidationError("request_id is required.")
        try:
            rt = RequestType(request_type)
        except ValueError as e:
            raise ValidationError(f"Unknown request type: {request_type}", request_type=str(request_type)) from e

        locations = self.registry.list_active_for_request_type(scope, rt)
        now = float(self.clock())
        tasks: List[Task] = []
        for loc in locations:
            status = TaskStatus.MANUAL_ACTION if loc.execution_type == ExecutionType.MANUAL else TaskStatus.PENDING
            tasks.append(
                Task(
                    tenant_id=scope.tenant_id,
                    request_id=request_id,
                    location_id=loc.id,
                    task_type=rt,
                    status=status,
                    max_attempts=max_attempts_for(loc, self.default_max_attempts),
                    created_at=now,
                    updated_at=now,
                )
            )
        self.store.create_tasks(scope, tasks)

        if self.logger:
            self.logger.info(f"[planner] request={request_id} type={rt.value} tasks={len(tasks)}")
        by_id = {loc.id: loc for loc in locations}
        for t in tasks:
            loc = by_id[t.location_id]
            try:
                self.activity.record(
                    ActivityEvent(
                        timestamp=now,
                        tenant_id=scope.tenant_id,
                        request_id=request_id,
                        task_id=t.id,
                        location_name=loc.name,
                        activity_type=ActivityType.task_created,
                        description=f"Task created for {loc.name}",
                        actor_type=ActorType.system,
                        actor_id=scope.actor_id,
                        new_status=t.status.value,
                        correlation_id=t.correlation_id,
                        details={"execution_type": loc.execution_type.value, "priority_order": loc.priority_order},
                    )
                )
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.warning(f"[planner] activity record failed task={t.id}: {e}")
        return tasks
