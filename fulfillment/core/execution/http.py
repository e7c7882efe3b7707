from __future__ import annotations

import os
import re
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests

from fulfillment.core.activity.models import ActorType
from fulfillment.core.errors import NotFoundError, ValidationError
from fulfillment.core.locations.models import (
    AuthType,
    AutomatedActionConfig,
    ExecutionType,
    Location,
    ManualActionConfig,
    SuccessCondition,
)
from fulfillment.core.scope import Scope
from fulfillment.core.tasks.models import Task, TaskStatus
from fulfillment.core.tasks.state_machine import TaskStateMachine


_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_MAX_RESPONSE_TEXT = 2000

SecretResolver = Callable[[str], Optional[str]]


def env_secret_resolver(ref: str) -> Optional[str]:
    """
    Resolve "env:NAME" references from the process environment.
    """
    ref = str(ref or "")
    if ref.startswith("env:"):
        return os.environ.get(ref[4:]) or None
    return None


def _lookup(data: Any, path: str) -> Tuple[bool, Any]:
    cur = data
    for part in str(path).split("."):
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit() and int(part) < len(cur):
            cur = cur[int(part)]
        else:
            return False, None
    return True, cur


def render_template(value: Any, context: Mapping[str, Any]) -> Any:
    """
    Substitute {{name}} placeholders (dotted paths allowed) inside strings,
    dicts and lists. A string that is exactly one placeholder keeps the
    value's type.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            ok, v = _lookup(context, whole.group(1))
            if not ok:
                raise ValidationError(f"Missing value for placeholder '{whole.group(1)}'.", placeholder=whole.group(1))
            return v

        def sub(m: "re.Match[str]") -> str:
            ok, v = _lookup(context, m.group(1))
            if not ok:
                raise ValidationError(f"Missing value for placeholder '{m.group(1)}'.", placeholder=m.group(1))
            return str(v)

        return _PLACEHOLDER.sub(sub, value)
    if isinstance(value, Mapping):
        return {k: render_template(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, context) for v in value]
    return value


def is_success(cond: SuccessCondition, status_code: int, body: Any) -> bool:
    if int(status_code) not in cond.http_status:
        return False
    if cond.response_body_match is None:
        return True
    ok, v = _lookup(body, cond.response_body_match.path)
    return ok and v == cond.response_body_match.value


class AutomatedExecutor:
    """
    Calls an automated location's endpoint for one task and drives the task
    to its next state from the outcome.

    Outcome mapping:
    - success + webhook enabled -> awaiting_callback
    - success + semi_automated  -> verification
    - success                   -> completed
    - HTTP/transport failure    -> failed, retry scheduled
    - unusable configuration    -> blocked
    """

    def __init__(
        self,
        *,
        machine: TaskStateMachine,
        session: Any = None,
        secret_resolver: SecretResolver = env_secret_resolver,
        default_timeout_seconds: float = 30.0,
        logger: Any = None,
    ):
        self.machine = machine
        self.store = machine.store
        self.session = session if session is not None else requests.Session()
        self.secret_resolver = secret_resolver
        self.default_timeout_seconds = float(default_timeout_seconds)
        self.logger = logger

    def _location(self, scope: Scope, task: Task) -> Location:
        loc = self.store.get_location(scope, task.location_id)
        if loc is None:
            raise NotFoundError("Location", task.location_id)
        return loc

    def _subject(self, scope: Scope, task: Task) -> Dict[str, Any]:
        req = self.store.get_request(scope, task.request_id)
        return dict(req.subject) if req is not None else {}

    def _auth(self, cfg: AutomatedActionConfig, headers: Dict[str, str]) -> Optional[Tuple[str, str]]:
        ep = cfg.endpoint
        ac = ep.auth_config
        if ep.auth_type == AuthType.NONE:
            return None
        if ac is None:
            raise ValidationError(f"auth_type '{ep.auth_type.value}' requires auth_config.")
        if ep.auth_type == AuthType.BASIC:
            user = self.secret_resolver(ac.username_ref or "")
            pw = self.secret_resolver(ac.password_ref or "")
            if not user or pw is None:
                raise ValidationError("Basic auth credentials could not be resolved.")
            return (user, pw)
        secret = self.secret_resolver(ac.secret_ref or "")
        if not secret:
            raise ValidationError(f"Secret '{ac.secret_ref}' could not be resolved.")
        if ep.auth_type == AuthType.BEARER:
            headers["Authorization"] = f"Bearer {secret}"
        elif ep.auth_type == AuthType.API_KEY:
            headers[ac.header_name or "X-API-Key"] = secret
        else:
            raise ValidationError(f"Unsupported auth type: {ep.auth_type.value}")
        return None

    def execute(self, scope: Scope, task_id: str, subject: Optional[Mapping[str, Any]] = None) -> Task:
        task = self.machine.load(scope, task_id)
        loc = self._location(scope, task)
        cfg = loc.action_config
        if isinstance(cfg, ManualActionConfig):
            raise ValidationError("Manual locations are not executed automatically.", task_id=task.id, location_id=loc.id)
        if not isinstance(cfg, AutomatedActionConfig):
            raise TypeError(f"unsupported action config: {type(cfg).__name__}")

        if task.status != TaskStatus.IN_PROGRESS:
            task = self.machine.start(scope, task.id, actor=ActorType.automation)

        context: Dict[str, Any] = {
            **(dict(subject) if subject is not None else self._subject(scope, task)),
            "task_id": task.id,
            "request_id": task.request_id,
            "correlation_id": task.correlation_id,
            "location_id": loc.id,
        }
        ep = cfg.endpoint
        try:
            url = render_template(ep.url, context)
            headers = {str(k): str(v) for k, v in render_template(dict(ep.headers), context).items()}
            body = render_template(dict(cfg.request_body.template), context) if cfg.request_body else None
            auth = self._auth(cfg, headers)
        except ValidationError as e:
            if self.logger:
                self.logger.warning(f"[executor] location {loc.name} misconfigured: {e}")
            return self.machine.block(scope, task.id, f"Configuration error: {e}", actor=ActorType.automation)

        timeout = (ep.timeout_ms / 1000.0) if ep.timeout_ms else self.default_timeout_seconds
        t0 = time.monotonic()
        try:
            r = self.session.request(ep.method.value, url, json=body, headers=headers, auth=auth, timeout=timeout)
        except requests.RequestException as e:
            duration_ms = int((time.monotonic() - t0) * 1000)
            if self.logger:
                self.logger.warning(f"[executor] {ep.method.value} {loc.name} failed: {e}")
            return self.machine.fail(
                scope,
                task.id,
                f"Request failed: {e}",
                schedule_retry=True,
                result={"durationMs": duration_ms},
                actor=ActorType.automation,
            )
        duration_ms = int((time.monotonic() - t0) * 1000)

        try:
            api_response: Any = r.json()
        except ValueError:
            api_response = (r.text or "")[:_MAX_RESPONSE_TEXT]
        result = {"httpStatus": int(r.status_code), "durationMs": duration_ms, "apiResponse": api_response}

        if self.logger:
            self.logger.info(f"[executor] {ep.method.value} {loc.name} -> HTTP {r.status_code} in {duration_ms}ms task={task.id}")
        if not is_success(cfg.success_condition, r.status_code, api_response):
            msg = f"HTTP {r.status_code}" if int(r.status_code) not in cfg.success_condition.http_status else "Response did not match success condition"
            return self.machine.fail(scope, task.id, msg, schedule_retry=True, result=result, actor=ActorType.automation)

        if cfg.webhook.enabled:
            return self.machine.await_callback(scope, task.id, result)
        if loc.execution_type == ExecutionType.SEMI_AUTOMATED:
            return self.machine.await_verification(scope, task.id, result)
        return self.machine.complete(scope, task.id, result, actor=ActorType.automation)
