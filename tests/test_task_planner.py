from __future__ import annotations

import pytest

from conftest import automated_location, manual_location
from fulfillment.core.errors import ValidationError
from fulfillment.core.locations.models import RequestType, RetryPolicy
from fulfillment.core.tasks.models import TaskFilters, TaskStatus


def test_plans_one_task_per_supporting_location_in_priority_order(engine, scope):
    engine.registry.register(scope, manual_location(name="Archive", priority=5, request_types=[RequestType.ERASURE]))
    engine.registry.register(scope, automated_location(name="CRM", priority=1, request_types=[RequestType.ERASURE]))
    engine.registry.register(scope, automated_location(name="Exporter", priority=0, request_types=[RequestType.ACCESS]))

    tasks = engine.plan_tasks(scope, "req-1", RequestType.ERASURE)

    assert len(tasks) == 2
    names = [engine.registry.get(scope, t.location_id).name for t in tasks]
    assert names == ["CRM", "Archive"]
    assert [t.status for t in tasks] == [TaskStatus.PENDING, TaskStatus.MANUAL_ACTION]
    assert all(t.task_type == RequestType.ERASURE for t in tasks)
    assert len({t.correlation_id for t in tasks}) == 2

    stored, total = engine.store.query_tasks(scope, TaskFilters(request_id="req-1"))
    assert total == 2 and {t.id for t in stored} == {t.id for t in tasks}


def test_inactive_locations_are_not_planned(engine, scope):
    loc = engine.registry.register(scope, automated_location())
    engine.registry.deactivate(scope, loc.id)
    assert engine.plan_tasks(scope, "req-1", RequestType.ERASURE) == []


def test_no_matching_locations_is_empty(engine, scope):
    engine.registry.register(scope, automated_location(request_types=[RequestType.ACCESS]))
    assert engine.plan_tasks(scope, "req-1", RequestType.OBJECTION) == []
    assert engine.summarize(scope, "req-1").total == 0


def test_max_attempts_from_retry_policy_or_default(store, activity, logger, clock, scope):
    from fulfillment.core.engine import FulfillmentEngine

    engine = FulfillmentEngine(store=store, activity=activity, logger=logger, clock=clock, default_max_attempts=5)
    engine.registry.register(scope, automated_location(name="A", priority=1, retry_policy=RetryPolicy(max_retries=7)))
    engine.registry.register(scope, automated_location(name="B", priority=2))
    engine.registry.register(scope, manual_location(name="C", priority=3))

    tasks = engine.plan_tasks(scope, "req-1", RequestType.ERASURE)
    assert [t.max_attempts for t in tasks] == [7, 5, 5]


def test_planning_twice_duplicates_tasks(engine, scope):
    engine.registry.register(scope, automated_location())
    engine.plan_tasks(scope, "req-1", RequestType.ERASURE)
    engine.plan_tasks(scope, "req-1", RequestType.ERASURE)
    assert engine.summarize(scope, "req-1").total == 2


def test_rejects_bad_input(engine, scope):
    with pytest.raises(ValidationError):
        engine.plan_tasks(scope, "", RequestType.ERASURE)
    with pytest.raises(ValidationError):
        engine.plan_tasks(scope, "req-1", "shred")  # type: ignore[arg-type]


def test_task_created_activity_recorded(engine, activity, scope):
    engine.registry.register(scope, automated_location())
    (t,) = engine.plan_tasks(scope, "req-1", RequestType.ERASURE)
    rows = activity.query(tenant_id="acme", request_id="req-1")
    assert [r.activity_type.value for r in rows] == ["task_created"]
    assert rows[0].correlation_id == t.correlation_id
    assert rows[0].location_name == "CRM"
