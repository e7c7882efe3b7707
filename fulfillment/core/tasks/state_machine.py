from __future__ import annotations

import contextlib
import threading
import time
from typing import Any, Callable, Collection, Dict, Iterator, Mapping, Optional

from fulfillment.core.activity.models import ActivityEvent, ActivityType, ActorType
from fulfillment.core.activity.sink import ActivitySink, NullActivitySink
from fulfillment.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from fulfillment.core.locations.models import Location, ManualActionConfig
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore
from fulfillment.core.tasks.models import Task, TaskStatus


START_FROM = frozenset({TaskStatus.PENDING, TaskStatus.MANUAL_ACTION})
COMPLETE_FROM = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.MANUAL_ACTION, TaskStatus.AWAITING_CALLBACK, TaskStatus.VERIFICATION})
FAIL_FROM = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.AWAITING_CALLBACK})
VERIFY_FROM = frozenset({TaskStatus.COMPLETED, TaskStatus.VERIFICATION})

Mutation = Callable[[Task, float, Optional[Location]], None]


def backoff_seconds(attempt_count: int, base_minutes: int = 1) -> float:
    """
    2**attempt_count * base_minutes, in seconds.
    """
    return float(2 ** max(0, int(attempt_count))) * float(base_minutes) * 60.0


class _TaskLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class TaskStateMachine:
    """
    Owns every status change of a task.

    Each transition runs under a per-task lock: read, check preconditions,
    build the next state, compare-and-swap write. Nothing is written when a
    precondition fails. Activity recording happens after the write and never
    fails the transition.
    """

    def __init__(
        self,
        *,
        store: SqliteRecordStore,
        activity: Optional[ActivitySink] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
        backoff_base_minutes: int = 1,
    ):
        self.store = store
        self.activity = activity or NullActivitySink()
        self.logger = logger
        self.clock = clock
        self.backoff_base_minutes = int(backoff_base_minutes)
        self._locks: Dict[str, _TaskLock] = {}
        self._locks_guard = threading.Lock()

    # ---- locking ----
    @contextlib.contextmanager
    def task_lock(self, task_id: str) -> Iterator[None]:
        # entries live only while someone holds or waits on them
        with self._locks_guard:
            entry = self._locks.get(task_id)
            if entry is None:
                entry = _TaskLock()
                self._locks[task_id] = entry
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._locks.pop(task_id, None)

    # ---- helpers ----
    def load(self, scope: Scope, task_id: str) -> Task:
        task = self.store.get_task(scope, task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def record(self, event: ActivityEvent) -> None:
        try:
            self.activity.record(event)
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.warning(f"[tasks] activity record failed ({event.activity_type.value} task={event.task_id}): {e}")

    @staticmethod
    def _actor(scope: Scope, actor: Optional[ActorType]) -> ActorType:
        if actor is not None:
            return actor
        return ActorType.system if scope.actor_id == "system" else ActorType.user

    def _transition(
        self,
        scope: Scope,
        task_id: str,
        *,
        operation: str,
        allowed: Optional[Collection[TaskStatus]],
        mutate: Mutation,
        activity_type: ActivityType,
        description: str,
        actor: Optional[ActorType] = None,
        details: Optional[Dict[str, Any]] = None,
        allow_terminal: Collection[TaskStatus] = (),
    ) -> Task:
        """
        `allowed=None` means "any non-terminal status".
        `allow_terminal` lists terminal statuses this operation may still act on.
        """
        with self.task_lock(task_id):
            cur = self.load(scope, task_id)
            if cur.is_terminal() and cur.status not in allow_terminal:
                raise InvalidTransitionError(
                    task_id=cur.id, current_status=cur.status.value, operation=operation, reason="task is terminal"
                )
            if allowed is not None and cur.status not in allowed:
                raise InvalidTransitionError(task_id=cur.id, current_status=cur.status.value, operation=operation)

            loc = self.store.get_location(scope, cur.location_id)
            now = float(self.clock())
            nxt = cur.model_copy(deep=True)
            mutate(nxt, now, loc)
            nxt.version = cur.version + 1
            nxt.updated_at = now
            saved = self.store.update_task(scope, nxt, expected_version=cur.version)

        if self.logger:
            self.logger.info(f"[tasks] {operation} task={saved.id} {cur.status.value}->{saved.status.value} attempt={saved.attempt_count}/{saved.max_attempts}")
        self.record(
            ActivityEvent(
                timestamp=now,
                tenant_id=scope.tenant_id,
                request_id=saved.request_id,
                task_id=saved.id,
                location_name=loc.name if loc else None,
                activity_type=activity_type,
                description=description[:500],
                actor_type=self._actor(scope, actor),
                actor_id=scope.actor_id,
                previous_status=cur.status.value,
                new_status=saved.status.value,
                correlation_id=saved.correlation_id,
                details=dict(details or {}),
            )
        )
        return saved

    @staticmethod
    def _require_text(value: Any, field: str, task_id: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} must be a non-empty string.", task_id=task_id, field=field)
        return value.strip()

    # ---- transitions ----
    def start(self, scope: Scope, task_id: str, assignee: Optional[str] = None, *, actor: Optional[ActorType] = None) -> Task:
        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            if t.attempt_count >= t.max_attempts:
                raise InvalidTransitionError(
                    task_id=t.id, current_status=t.status.value, operation="start", reason="attempts exhausted"
                )
            t.status = TaskStatus.IN_PROGRESS
            if t.started_at is None:
                t.started_at = now
            t.attempt_count += 1
            t.last_attempt_at = now
            if assignee:
                t.assigned_to = str(assignee)
                t.assigned_at = now

        return self._transition(
            scope,
            task_id,
            operation="start",
            allowed=START_FROM,
            mutate=mutate,
            activity_type=ActivityType.task_started,
            description=f"Task started{f' by {assignee}' if assignee else ''}",
            actor=actor,
            details={"assignee": assignee} if assignee else None,
        )

    def complete(self, scope: Scope, task_id: str, result: Mapping[str, Any], *, actor: Optional[ActorType] = None) -> Task:
        if not isinstance(result, Mapping):
            raise ValidationError("result must be an object.", task_id=task_id)

        def mutate(t: Task, now: float, loc: Optional[Location]) -> None:
            if loc is not None and isinstance(loc.action_config, ManualActionConfig):
                _check_checklist(t.id, loc.action_config, result)
            t.status = TaskStatus.COMPLETED
            t.execution_result = {**t.execution_result, **dict(result)}
            t.completed_at = now
            t.next_retry_at = None

        return self._transition(
            scope,
            task_id,
            operation="complete",
            allowed=COMPLETE_FROM,
            mutate=mutate,
            activity_type=ActivityType.task_completed,
            description="Task completed",
            actor=actor,
            details={"result_keys": sorted(str(k) for k in result.keys())},
        )

    def fail(
        self,
        scope: Scope,
        task_id: str,
        error_message: str,
        schedule_retry: bool = False,
        *,
        result: Optional[Mapping[str, Any]] = None,
        actor: Optional[ActorType] = None,
    ) -> Task:
        msg = self._require_text(error_message, "error_message", task_id)
        if result is not None and not isinstance(result, Mapping):
            raise ValidationError("result must be an object.", task_id=task_id)

        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.FAILED
            t.execution_result = {**t.execution_result, **dict(result or {}), "errorMessage": msg}
            t.completed_at = now
            if schedule_retry and t.attempt_count < t.max_attempts:
                t.next_retry_at = now + backoff_seconds(t.attempt_count, self.backoff_base_minutes)
            else:
                t.next_retry_at = None

        return self._transition(
            scope,
            task_id,
            operation="fail",
            allowed=FAIL_FROM,
            mutate=mutate,
            activity_type=ActivityType.task_failed,
            description=f"Task failed: {msg}",
            actor=actor,
            details={"schedule_retry": bool(schedule_retry)},
        )

    def retry(self, scope: Scope, task_id: str, force: bool = False, *, actor: Optional[ActorType] = None) -> Task:
        """
        Move a failed task back to `pending`.

        Without `force` the scheduled retry time must have passed. `force` is
        the operator path: any failed task, attempt counter reset.
        """

        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            if not force:
                if t.next_retry_at is None:
                    raise InvalidTransitionError(
                        task_id=t.id, current_status=t.status.value, operation="retry", reason="no retry scheduled"
                    )
                if t.next_retry_at > now:
                    raise InvalidTransitionError(
                        task_id=t.id, current_status=t.status.value, operation="retry", reason="retry not yet due"
                    )
            else:
                t.attempt_count = 0
            t.status = TaskStatus.PENDING
            t.next_retry_at = None
            t.completed_at = None

        return self._transition(
            scope,
            task_id,
            operation="retry",
            allowed={TaskStatus.FAILED},
            mutate=mutate,
            activity_type=ActivityType.task_retried,
            description="Task retried by operator" if force else "Task retry scheduled",
            actor=actor,
            details={"force": bool(force)},
            allow_terminal={TaskStatus.FAILED} if force else (),
        )

    def skip(self, scope: Scope, task_id: str, reason: str, *, actor: Optional[ActorType] = None) -> Task:
        why = self._require_text(reason, "reason", task_id)

        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.SKIPPED
            t.notes = why
            t.completed_at = now
            t.next_retry_at = None

        return self._transition(
            scope,
            task_id,
            operation="skip",
            allowed=None,
            mutate=mutate,
            activity_type=ActivityType.task_skipped,
            description=f"Task skipped: {why}",
            actor=actor,
        )

    def block(self, scope: Scope, task_id: str, reason: str, *, actor: Optional[ActorType] = None) -> Task:
        why = self._require_text(reason, "reason", task_id)

        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.BLOCKED
            t.notes = why
            t.completed_at = now
            t.next_retry_at = None

        return self._transition(
            scope,
            task_id,
            operation="block",
            allowed=None,
            mutate=mutate,
            activity_type=ActivityType.task_blocked,
            description=f"Task blocked: {why}",
            actor=actor,
        )

    def verify(
        self,
        scope: Scope,
        task_id: str,
        verified_by: str,
        notes: Optional[str] = None,
        *,
        actor: Optional[ActorType] = None,
    ) -> Task:
        who = self._require_text(verified_by, "verified_by", task_id)

        def mutate(t: Task, now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.COMPLETED
            if t.completed_at is None:
                t.completed_at = now
            t.verified_by = who
            t.verified_at = now
            t.verification_notes = notes

        return self._transition(
            scope,
            task_id,
            operation="verify",
            allowed=VERIFY_FROM,
            mutate=mutate,
            activity_type=ActivityType.task_verified,
            description=f"Task verified by {who}",
            actor=actor,
            allow_terminal={TaskStatus.COMPLETED},
        )

    def await_callback(
        self,
        scope: Scope,
        task_id: str,
        result: Optional[Mapping[str, Any]] = None,
        *,
        actor: Optional[ActorType] = ActorType.automation,
    ) -> Task:
        if result is not None and not isinstance(result, Mapping):
            raise ValidationError("result must be an object.", task_id=task_id)

        def mutate(t: Task, _now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.AWAITING_CALLBACK
            if result:
                t.execution_result = {**t.execution_result, **dict(result)}

        return self._transition(
            scope,
            task_id,
            operation="await_callback",
            allowed={TaskStatus.IN_PROGRESS},
            mutate=mutate,
            activity_type=ActivityType.task_awaiting_callback,
            description="Waiting for webhook callback",
            actor=actor,
        )

    def await_verification(
        self,
        scope: Scope,
        task_id: str,
        result: Optional[Mapping[str, Any]] = None,
        *,
        actor: Optional[ActorType] = ActorType.automation,
    ) -> Task:
        if result is not None and not isinstance(result, Mapping):
            raise ValidationError("result must be an object.", task_id=task_id)

        def mutate(t: Task, _now: float, _loc: Optional[Location]) -> None:
            t.status = TaskStatus.VERIFICATION
            if result:
                t.execution_result = {**t.execution_result, **dict(result)}

        return self._transition(
            scope,
            task_id,
            operation="await_verification",
            allowed={TaskStatus.IN_PROGRESS},
            mutate=mutate,
            activity_type=ActivityType.task_awaiting_verification,
            description="Waiting for manual verification",
            actor=actor,
        )


def _check_checklist(task_id: str, cfg: ManualActionConfig, result: Mapping[str, Any]) -> None:
    if not cfg.verification_checklist:
        return
    done = result.get("checklistCompleted")
    if not isinstance(done, Mapping):
        raise ValidationError("checklistCompleted is required for this location.", task_id=task_id)
    missing = [item for item in cfg.verification_checklist if done.get(item) is not True]
    if missing:
        raise ValidationError(f"Checklist items not confirmed: {missing}", task_id=task_id, missing=missing)
