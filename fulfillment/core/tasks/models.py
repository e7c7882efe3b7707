from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.core.locations.models import RequestType


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_CALLBACK = "awaiting_callback"
    MANUAL_ACTION = "manual_action"
    VERIFICATION = "verification"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


ACTIVE_STATUSES = frozenset(
    {
        TaskStatus.IN_PROGRESS,
        TaskStatus.AWAITING_CALLBACK,
        TaskStatus.MANUAL_ACTION,
        TaskStatus.VERIFICATION,
    }
)

# `failed` is terminal only once no retry is scheduled; see Task.is_terminal().
ALWAYS_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.SKIPPED})


class Task(BaseModel):
    """
    One location's share of one request.

    `status` is written only by the state machine; `version` is bumped on every
    write and used by the store for compare-and-swap updates.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str = Field(min_length=1, max_length=64)
    request_id: str = Field(min_length=1, max_length=64)
    location_id: str = Field(min_length=1, max_length=64)
    task_type: RequestType
    status: TaskStatus = TaskStatus.PENDING

    assigned_to: Optional[str] = None
    assigned_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    last_attempt_at: Optional[float] = None
    next_retry_at: Optional[float] = None

    execution_result: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None

    verified_by: Optional[str] = None
    verified_at: Optional[float] = None
    verification_notes: Optional[str] = None

    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    version: int = Field(default=1, ge=1)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())

    def is_terminal(self) -> bool:
        if self.status in ALWAYS_TERMINAL:
            return True
        return self.status == TaskStatus.FAILED and self.next_retry_at is None

    def retries_remaining(self) -> bool:
        return self.attempt_count < self.max_attempts


class TaskOrder(str, Enum):
    CREATED_AT = "created_at"
    STATUS = "status"
    PRIORITY_ORDER = "priority_order"


class TaskFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: Optional[str] = None
    location_id: Optional[str] = None
    task_type: Optional[Union[RequestType, List[RequestType]]] = None
    status: Optional[Union[TaskStatus, List[TaskStatus]]] = None
    assigned_to: Optional[str] = None
    has_errors: bool = False
    needs_retry: bool = False
    awaiting_callback: bool = False


class TaskSummary(BaseModel):
    """
    Derived rollup of a request's tasks. Computed on demand, never stored.
    """

    model_config = ConfigDict(extra="forbid")

    request_id: str
    total: int = 0
    by_status: Dict[TaskStatus, int] = Field(default_factory=lambda: {s: 0 for s in TaskStatus})
    all_completed: bool = False
    has_failures: bool = False
    pending_manual_actions: int = 0
    awaiting_callbacks: int = 0
    estimated_completion_minutes: Optional[int] = None


class TaskProgress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str
    completion_percentage: int = Field(default=0, ge=0, le=100)
    completed_count: int = 0
    total_count: int = 0
    current_phase: str = ""
    in_progress_tasks: List[Task] = Field(default_factory=list)
    action_required: List[Task] = Field(default_factory=list)


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class RequestRecord(BaseModel):
    """
    The parent data-subject request as seen by this engine: only its type and
    the status the caller decides on after reading a TaskSummary.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str = Field(min_length=1, max_length=64)
    request_type: RequestType
    status: RequestStatus = RequestStatus.PENDING
    subject: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())
