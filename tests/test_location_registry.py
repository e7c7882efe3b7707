from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import automated_location, manual_location
from fulfillment.core.errors import NotFoundError, ValidationError
from fulfillment.core.locations.models import (
    AutomatedActionConfig,
    EndpointConfig,
    Location,
    ManualActionConfig,
    RequestType,
    SystemType,
)
from fulfillment.core.locations.registry import VERIFICATION_MAX_AGE_SECONDS
from fulfillment.core.scope import Scope


def test_list_active_for_request_type(engine, scope):
    reg = engine.registry
    a = reg.register(scope, automated_location(name="A", priority=30))
    b = reg.register(scope, manual_location(name="B", priority=10))
    c = reg.register(scope, automated_location(name="C", priority=20, request_types=[RequestType.ACCESS]))
    d = reg.register(scope, automated_location(name="D", priority=5))
    reg.deactivate(scope, d.id)

    erasure = reg.list_active_for_request_type(scope, RequestType.ERASURE)
    assert [loc.id for loc in erasure] == [b.id, a.id]
    access = reg.list_active_for_request_type(scope, RequestType.ACCESS)
    assert [loc.id for loc in access] == [b.id, c.id, a.id]


def test_default_supported_request_types():
    loc = automated_location()
    assert loc.supported_request_types == [RequestType.ERASURE, RequestType.ACCESS, RequestType.PORTABILITY]
    assert loc.priority_order == 100


def test_action_config_is_tagged_union():
    loc = Location.model_validate(
        {
            "tenant_id": "acme",
            "name": "Docs",
            "system_type": "manual",
            "execution_type": "manual",
            "action_config": {"kind": "manual", "instructions": [{"step": 1, "title": "Delete"}]},
        }
    )
    assert isinstance(loc.action_config, ManualActionConfig)
    assert loc.webhook() is None

    api = automated_location(webhook=True)
    assert isinstance(api.action_config, AutomatedActionConfig)
    assert api.webhook() is not None and api.webhook().enabled


def test_register_requires_request_types(engine, scope):
    with pytest.raises(ValidationError):
        engine.registry.register(scope, automated_location(request_types=[]))


def test_duplicate_name_rejected(engine, scope):
    engine.registry.register(scope, automated_location(name="CRM"))
    with pytest.raises(ValidationError):
        engine.registry.register(scope, automated_location(name="CRM"))
    # same name is fine for another tenant
    engine.registry.register(Scope(tenant_id="other"), automated_location(tenant_id="other", name="CRM"))


def test_update_merges_metadata_and_validates(engine, scope):
    loc = engine.registry.register(scope, automated_location())
    engine.registry.update(scope, loc.id, {"metadata": {"region": "eu"}})
    upd = engine.registry.update(scope, loc.id, {"metadata": {"tier": "gold"}, "priority_order": 3})
    assert upd.metadata == {"region": "eu", "tier": "gold"}
    assert upd.priority_order == 3

    with pytest.raises(ValidationError):
        engine.registry.update(scope, loc.id, {"tenant_id": "evil"})
    with pytest.raises(ValidationError):
        engine.registry.update(scope, loc.id, {"action_config": {"kind": "automated", "endpoint": {"url": ""}}})
    with pytest.raises(ValidationError):
        engine.registry.update(scope, loc.id, {"supported_request_types": []})


def test_update_swaps_action_config_kind(engine, scope):
    loc = engine.registry.register(scope, automated_location())
    upd = engine.registry.update(scope, loc.id, {"action_config": ManualActionConfig(estimated_minutes=10)})
    assert isinstance(engine.registry.get(scope, upd.id).action_config, ManualActionConfig)


def test_get_unknown(engine, scope):
    with pytest.raises(NotFoundError):
        engine.registry.get(scope, "missing")
    with pytest.raises(NotFoundError):
        engine.registry.deactivate(scope, "missing")


def test_summary_counts_and_verification_age(engine, scope, clock):
    reg = engine.registry
    a = reg.register(scope, automated_location(name="A"))
    reg.register(scope, manual_location(name="B"))
    c = reg.register(scope, automated_location(name="C"))
    reg.deactivate(scope, c.id)
    reg.mark_verified(scope, a.id)

    s = reg.summary(scope)
    assert s.total == 3 and s.active == 2
    assert s.by_system_type == {SystemType.API.value: 2, SystemType.MANUAL.value: 1}
    assert s.by_execution_type == {"automated": 2, "manual": 1}
    assert s.needs_verification == 1

    clock.advance(VERIFICATION_MAX_AGE_SECONDS + 1)
    assert reg.summary(scope).needs_verification == 2


def test_endpoint_requires_url():
    with pytest.raises(PydanticValidationError):
        EndpointConfig(url="")
