from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fulfillment.core.activity.models import ActivityEvent, ActivityType, ActorType
from fulfillment.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from fulfillment.core.scope import Scope
from fulfillment.core.tasks.models import Task
from fulfillment.core.tasks.state_machine import TaskStateMachine


def failure_message(payload: Mapping[str, Any]) -> str:
    for key in ("error", "errorMessage", "message", "reason"):
        v = payload.get(key)
        if isinstance(v, str) and v.strip():
            return f"Callback reported failure: {v.strip()}"
    return "Callback reported failure"


class WebhookCorrelator:
    """
    Routes an asynchronous callback to the task that minted its correlation id.

    Callbacks are at-least-once: a callback for a terminal task changes
    nothing and is only recorded as a duplicate.
    """

    def __init__(self, *, machine: TaskStateMachine, logger: Any = None):
        self.machine = machine
        self.logger = logger

    def resolve_callback(self, scope: Scope, correlation_id: str, payload: Optional[Mapping[str, Any]], success: bool) -> Task:
        if payload is not None and not isinstance(payload, Mapping):
            raise ValidationError("Callback payload must be an object.", correlation_id=correlation_id)
        body: Dict[str, Any] = dict(payload or {})

        task = self.machine.store.find_task_by_correlation_id(scope, str(correlation_id))
        if task is None:
            if self.logger:
                self.logger.warning(f"[webhooks] unknown correlation id {correlation_id}")
            raise NotFoundError("Task for correlation id", correlation_id)

        result = {"webhookReceived": True, "webhookPayload": body}
        with self.machine.task_lock(task.id):
            cur = self.machine.load(scope, task.id)
            if cur.is_terminal():
                self._note(scope, cur, ActivityType.task_callback_duplicate, f"Duplicate callback ignored (task already {cur.status.value})", body, success)
                return cur
            try:
                if success:
                    return self.machine.complete(scope, cur.id, result, actor=ActorType.automation)
                return self.machine.fail(
                    scope, cur.id, failure_message(body), schedule_retry=False, result=result, actor=ActorType.automation
                )
            except InvalidTransitionError:
                # timed out by the sweep, or not waiting for a callback yet
                self._note(scope, cur, ActivityType.task_callback_late, f"Callback arrived while task was {cur.status.value}", body, success)
                raise

    def _note(self, scope: Scope, task: Task, activity_type: ActivityType, description: str, payload: Dict[str, Any], success: bool) -> None:
        if self.logger:
            self.logger.info(f"[webhooks] {activity_type.value} task={task.id} status={task.status.value}")
        self.machine.record(
            ActivityEvent(
                timestamp=float(self.machine.clock()),
                tenant_id=scope.tenant_id,
                request_id=task.request_id,
                task_id=task.id,
                activity_type=activity_type,
                description=description,
                actor_type=ActorType.automation,
                actor_id=scope.actor_id,
                previous_status=task.status.value,
                new_status=task.status.value,
                correlation_id=task.correlation_id,
                details={"success": bool(success), "payload": payload},
            )
        )
