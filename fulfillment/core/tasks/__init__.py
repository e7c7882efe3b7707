from fulfillment.core.tasks.models import (
    RequestRecord,
    RequestStatus,
    Task,
    TaskFilters,
    TaskOrder,
    TaskProgress,
    TaskStatus,
    TaskSummary,
)

__all__ = [
    "RequestRecord",
    "RequestStatus",
    "Task",
    "TaskFilters",
    "TaskOrder",
    "TaskProgress",
    "TaskStatus",
    "TaskSummary",
]
