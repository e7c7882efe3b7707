from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest

from fulfillment.core.activity.sink import SqliteActivitySink
from fulfillment.core.engine import FulfillmentEngine
from fulfillment.core.locations.models import (
    AutomatedActionConfig,
    EndpointConfig,
    ExecutionType,
    Location,
    ManualActionConfig,
    ManualInstruction,
    RequestType,
    SystemType,
    WebhookConfig,
)
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._t = float(start)

    def __call__(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)


class DummyLogger:
    def __init__(self) -> None:
        self.lines: List[str] = []

    def info(self, msg, *_a, **_k):  # noqa: ANN001
        self.lines.append(f"INFO {msg}")

    def warning(self, msg, *_a, **_k):  # noqa: ANN001
        self.lines.append(f"WARNING {msg}")

    def error(self, msg, *_a, **_k):  # noqa: ANN001
        self.lines.append(f"ERROR {msg}")


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None):
        self.status_code = int(status_code)
        self._body = body
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no json body")
        return self._body


class FakeSession:
    """
    Stands in for requests.Session: records calls, replays queued responses
    or raises queued exceptions.
    """

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):  # noqa: ANN001
        self.calls.append({"method": method, "url": url, **kwargs})
        nxt = self.responses.pop(0) if self.responses else FakeResponse(200, {"ok": True})
        if isinstance(nxt, BaseException):
            raise nxt
        return nxt


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def logger() -> DummyLogger:
    return DummyLogger()


@pytest.fixture
def scope() -> Scope:
    return Scope(tenant_id="acme", actor_id="alice")


@pytest.fixture
def store(tmp_path, logger) -> SqliteRecordStore:
    return SqliteRecordStore(db_path=str(tmp_path / "runtime" / "fulfillment.sqlite"), logger=logger)


@pytest.fixture
def activity(tmp_path) -> SqliteActivitySink:
    return SqliteActivitySink(path=str(tmp_path / "runtime" / "fulfillment.sqlite"))


@pytest.fixture
def engine(store, activity, logger, clock) -> FulfillmentEngine:
    return FulfillmentEngine(store=store, activity=activity, logger=logger, clock=clock)


def automated_location(
    tenant_id: str = "acme",
    name: str = "CRM",
    *,
    priority: int = 100,
    request_types: Optional[List[RequestType]] = None,
    webhook: bool = False,
    execution_type: ExecutionType = ExecutionType.AUTOMATED,
    url: str = "https://crm.example.com/users/{{email}}",
    **endpoint: Any,
) -> Location:
    kw: Dict[str, Any] = {}
    if request_types is not None:
        kw["supported_request_types"] = request_types
    return Location(
        tenant_id=tenant_id,
        name=name,
        system_type=SystemType.API,
        execution_type=execution_type,
        priority_order=priority,
        action_config=AutomatedActionConfig(
            endpoint=EndpointConfig(url=url, **endpoint),
            webhook=WebhookConfig(enabled=webhook, callback_path="/hooks/crm"),
        ),
        **kw,
    )


def manual_location(
    tenant_id: str = "acme",
    name: str = "Paper archive",
    *,
    priority: int = 100,
    request_types: Optional[List[RequestType]] = None,
    checklist: Optional[List[str]] = None,
    estimated_minutes: Optional[int] = None,
) -> Location:
    kw: Dict[str, Any] = {}
    if request_types is not None:
        kw["supported_request_types"] = request_types
    return Location(
        tenant_id=tenant_id,
        name=name,
        system_type=SystemType.MANUAL,
        execution_type=ExecutionType.MANUAL,
        priority_order=priority,
        action_config=ManualActionConfig(
            instructions=[ManualInstruction(step=1, title="Shred the folder")],
            estimated_minutes=estimated_minutes,
            verification_checklist=list(checklist or []),
        ),
        **kw,
    )
