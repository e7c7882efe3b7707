from __future__ import annotations

from typing import Any, Dict, List, Optional

from fulfillment.core.locations.models import ManualActionConfig
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore
from fulfillment.core.tasks.models import Task, TaskFilters, TaskProgress, TaskStatus, TaskSummary


ATTENTION_STATUSES = frozenset({TaskStatus.MANUAL_ACTION, TaskStatus.FAILED, TaskStatus.BLOCKED})

_PAGE = 500


class RequestAggregator:
    """
    Read-only rollup of a request's tasks. Never writes the parent request.
    """

    def __init__(self, *, store: SqliteRecordStore, logger: Any = None):
        self.store = store
        self.logger = logger

    def summarize(self, scope: Scope, request_id: str) -> TaskSummary:
        rows = self.store.list_task_statuses(scope, request_id)
        counts: Dict[TaskStatus, int] = {s: 0 for s in TaskStatus}
        manual_locations: List[str] = []
        for _task_id, status, location_id in rows:
            counts[status] += 1
            if status == TaskStatus.MANUAL_ACTION:
                manual_locations.append(location_id)

        total = len(rows)
        done = counts[TaskStatus.COMPLETED] + counts[TaskStatus.SKIPPED]
        return TaskSummary(
            request_id=str(request_id),
            total=total,
            by_status=counts,
            all_completed=total > 0 and done == total,
            has_failures=counts[TaskStatus.FAILED] > 0 or counts[TaskStatus.BLOCKED] > 0,
            pending_manual_actions=counts[TaskStatus.MANUAL_ACTION],
            awaiting_callbacks=counts[TaskStatus.AWAITING_CALLBACK],
            estimated_completion_minutes=self._estimate_minutes(scope, manual_locations),
        )

    def _estimate_minutes(self, scope: Scope, location_ids: List[str]) -> Optional[int]:
        if not location_ids:
            return None
        locations = self.store.get_locations(scope, location_ids)
        minutes = 0
        known = False
        for lid in location_ids:
            loc = locations.get(lid)
            if loc is None or not isinstance(loc.action_config, ManualActionConfig):
                continue
            if loc.action_config.estimated_minutes is not None:
                minutes += int(loc.action_config.estimated_minutes)
                known = True
        return minutes if known else None

    def _all_tasks(self, scope: Scope, request_id: str) -> List[Task]:
        out: List[Task] = []
        offset = 0
        while True:
            page, total = self.store.query_tasks(
                scope, TaskFilters(request_id=request_id), order_direction="asc", limit=_PAGE, offset=offset
            )
            out.extend(page)
            offset += len(page)
            if not page or offset >= total:
                return out

    def progress(self, scope: Scope, request_id: str) -> TaskProgress:
        tasks = self._all_tasks(scope, request_id)
        total = len(tasks)
        done = sum(1 for t in tasks if t.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED})
        in_flight = [t for t in tasks if t.status in {TaskStatus.IN_PROGRESS, TaskStatus.AWAITING_CALLBACK, TaskStatus.VERIFICATION}]
        attention = [t for t in tasks if t.status in ATTENTION_STATUSES]

        if total == 0:
            phase = "no_tasks"
        elif done == total:
            phase = "completed"
        elif attention:
            phase = "action_required"
        elif in_flight:
            phase = "executing"
        else:
            phase = "pending"

        return TaskProgress(
            request_id=str(request_id),
            completion_percentage=int(round(100.0 * done / total)) if total else 0,
            completed_count=done,
            total_count=total,
            current_phase=phase,
            in_progress_tasks=in_flight,
            action_required=attention,
        )
