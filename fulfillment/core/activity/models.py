from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fulfillment.core.redact import redact


class ActorType(str, Enum):
    user = "user"
    system = "system"
    automation = "automation"


class ActivityType(str, Enum):
    task_created = "task_created"
    task_started = "task_started"
    task_awaiting_callback = "task_awaiting_callback"
    task_awaiting_verification = "task_awaiting_verification"
    task_completed = "task_completed"
    task_failed = "task_failed"
    task_retried = "task_retried"
    task_skipped = "task_skipped"
    task_blocked = "task_blocked"
    task_verified = "task_verified"
    task_callback_duplicate = "task_callback_duplicate"
    task_callback_late = "task_callback_late"


class ActivityEvent(BaseModel):
    """
    One append-only entry of the request activity feed.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    activity_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=lambda: time.time())
    tenant_id: str
    request_id: str
    task_id: Optional[str] = None
    location_name: Optional[str] = None
    activity_type: ActivityType
    description: str = Field(min_length=1, max_length=500)
    actor_type: ActorType = ActorType.system
    actor_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    correlation_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("details")
    @classmethod
    def _redacted(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(v, dict):
            raise ValueError("details must be an object")
        return redact(v)
