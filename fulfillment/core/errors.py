from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fulfillment.core.redact import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class FulfillmentError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.user_message)

    def __str__(self) -> str:
        return self.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


class NotFoundError(FulfillmentError):
    def __init__(self, resource: str, identifier: Optional[str] = None, **ctx: Any):
        msg = f"{resource} '{identifier}' not found" if identifier else f"{resource} not found"
        super().__init__("not_found", msg, severity=Severity.WARN, recoverable=False, context={"resource": resource, "id": identifier, **ctx})


class InvalidTransitionError(FulfillmentError):
    """
    Raised when a task operation is not legal from the task's current status.

    The message always names the task, its status and the attempted operation
    so a stuck task can be diagnosed from the error alone.
    """

    def __init__(self, *, task_id: str, current_status: str, operation: str, reason: str = "", **ctx: Any):
        msg = f"cannot {operation} task {task_id}: status is '{current_status}'"
        if reason:
            msg += f" ({reason})"
        super().__init__(
            "invalid_transition",
            msg,
            severity=Severity.WARN,
            recoverable=False,
            context={"task_id": task_id, "current_status": current_status, "operation": operation, **ctx},
        )
        self.task_id = task_id
        self.current_status = current_status
        self.operation = operation


class ValidationError(FulfillmentError):
    def __init__(self, user_message: str = "Invalid input.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class StoreUnavailableError(FulfillmentError):
    def __init__(self, user_message: str = "Record store unavailable.", **ctx: Any):
        super().__init__("store_unavailable", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class ConcurrentModificationError(FulfillmentError):
    def __init__(self, user_message: str = "Record was modified concurrently.", **ctx: Any):
        super().__init__("concurrent_modification", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
