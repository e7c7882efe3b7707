from __future__ import annotations

import pytest
import requests

from conftest import FakeResponse, FakeSession, automated_location, manual_location
from fulfillment.core.errors import ValidationError
from fulfillment.core.execution.http import AutomatedExecutor, env_secret_resolver, render_template
from fulfillment.core.locations.models import (
    AuthConfig,
    AuthType,
    HttpMethod,
    RequestBodyTemplate,
    RequestType,
    ResponseBodyMatch,
    SuccessCondition,
)
from fulfillment.core.tasks.models import RequestRecord, TaskStatus


def _setup(engine, scope, loc, subject=None):
    engine.registry.register(scope, loc)
    engine.store.create_request(
        scope, RequestRecord(id="req-1", tenant_id="acme", request_type=RequestType.ERASURE, subject=subject or {"email": "ann@example.com"})
    )
    (t,) = engine.plan_tasks(scope, "req-1", RequestType.ERASURE)
    return t


def _executor(engine, session, **kw):
    return AutomatedExecutor(machine=engine.machine, session=session, **kw)


def test_render_template():
    ctx = {"email": "a@b.c", "user": {"id": 7}}
    assert render_template("https://x/{{email}}/{{ user.id }}", ctx) == "https://x/a@b.c/7"
    assert render_template({"id": "{{user.id}}", "tags": ["{{email}}"]}, ctx) == {"id": 7, "tags": ["a@b.c"]}
    with pytest.raises(ValidationError):
        render_template("{{missing}}", ctx)


def test_env_secret_resolver(monkeypatch):
    monkeypatch.setenv("CRM_KEY", "k-123")
    assert env_secret_resolver("env:CRM_KEY") == "k-123"
    assert env_secret_resolver("vault:crm") is None


def test_success_completes_task(engine, scope):
    loc = automated_location(
        method=HttpMethod.DELETE,
        auth_type=AuthType.BEARER,
        auth_config=AuthConfig(secret_ref="env:CRM"),
        headers={"X-Request": "{{request_id}}"},
    )
    loc.action_config.request_body = RequestBodyTemplate(template={"email": "{{email}}", "ref": "{{correlation_id}}"})
    t = _setup(engine, scope, loc)
    session = FakeSession(FakeResponse(200, {"deleted": 4}))

    done = _executor(engine, session, secret_resolver=lambda ref: "tok" if ref == "env:CRM" else None).execute(scope, t.id)

    assert done.status == TaskStatus.COMPLETED
    assert done.attempt_count == 1
    assert done.execution_result["httpStatus"] == 200
    assert done.execution_result["apiResponse"] == {"deleted": 4}
    assert "durationMs" in done.execution_result
    (call,) = session.calls
    assert call["method"] == "DELETE"
    assert call["url"] == "https://crm.example.com/users/ann@example.com"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["headers"]["X-Request"] == "req-1"
    assert call["json"] == {"email": "ann@example.com", "ref": t.correlation_id}


def test_webhook_location_awaits_callback(engine, scope):
    t = _setup(engine, scope, automated_location(webhook=True))
    out = _executor(engine, FakeSession(FakeResponse(202, {"queued": True}))).execute(scope, t.id)
    assert out.status == TaskStatus.AWAITING_CALLBACK
    assert out.execution_result["httpStatus"] == 202

    done = engine.resolve_callback(scope, t.correlation_id, {"ok": True}, success=True)
    assert done.status == TaskStatus.COMPLETED
    assert done.execution_result["httpStatus"] == 202
    assert done.execution_result["webhookReceived"] is True


def test_semi_automated_awaits_verification(engine, scope):
    t = _setup(engine, scope, automated_location(execution_type="semi_automated"))
    out = _executor(engine, FakeSession(FakeResponse(200, {}))).execute(scope, t.id)
    assert out.status == TaskStatus.VERIFICATION
    assert engine.verify(scope, t.id, "dpo").status == TaskStatus.COMPLETED


def test_http_error_schedules_retry(engine, scope, clock):
    t = _setup(engine, scope, automated_location())
    out = _executor(engine, FakeSession(FakeResponse(503, text="busy"))).execute(scope, t.id)
    assert out.status == TaskStatus.FAILED
    assert out.execution_result["errorMessage"] == "HTTP 503"
    assert out.execution_result["apiResponse"] == "busy"
    assert out.next_retry_at == pytest.approx(clock() + 120)


def test_transport_error_schedules_retry(engine, scope):
    t = _setup(engine, scope, automated_location())
    out = _executor(engine, FakeSession(requests.ConnectionError("refused"))).execute(scope, t.id)
    assert out.status == TaskStatus.FAILED
    assert out.next_retry_at is not None
    assert "refused" in out.execution_result["errorMessage"]


def test_response_body_match(engine, scope):
    loc = automated_location()
    loc.action_config.success_condition = SuccessCondition(
        http_status=[200], response_body_match=ResponseBodyMatch(path="result.deleted", value=True)
    )
    t = _setup(engine, scope, loc)
    out = _executor(engine, FakeSession(FakeResponse(200, {"result": {"deleted": False}}))).execute(scope, t.id)
    assert out.status == TaskStatus.FAILED
    assert out.execution_result["errorMessage"] == "Response did not match success condition"


def test_missing_secret_blocks_task(engine, scope):
    loc = automated_location(auth_type=AuthType.API_KEY, auth_config=AuthConfig(secret_ref="env:NOPE_NOT_SET", header_name="X-Key"))
    t = _setup(engine, scope, loc)
    session = FakeSession()
    out = _executor(engine, session, secret_resolver=lambda _ref: None).execute(scope, t.id)
    assert out.status == TaskStatus.BLOCKED
    assert "Configuration error" in (out.notes or "")
    assert session.calls == []


def test_missing_placeholder_blocks_task(engine, scope):
    t = _setup(engine, scope, automated_location(url="https://x/{{customer_number}}"))
    out = _executor(engine, FakeSession()).execute(scope, t.id)
    assert out.status == TaskStatus.BLOCKED


def test_manual_location_is_never_executed(engine, scope):
    t = _setup(engine, scope, manual_location())
    session = FakeSession()
    with pytest.raises(ValidationError):
        _executor(engine, session).execute(scope, t.id)
    assert session.calls == []
    assert engine.machine.load(scope, t.id).status == TaskStatus.MANUAL_ACTION


def test_timeout_from_endpoint(engine, scope):
    t = _setup(engine, scope, automated_location(timeout_ms=2500))
    session = FakeSession(FakeResponse(204))
    out = _executor(engine, session, default_timeout_seconds=30).execute(scope, t.id)
    assert out.status == TaskStatus.COMPLETED
    assert session.calls[0]["timeout"] == 2.5
    assert out.execution_result["apiResponse"] == ""
