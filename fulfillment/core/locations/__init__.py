from fulfillment.core.locations.models import (
    ActionConfig,
    AutomatedActionConfig,
    ExecutionType,
    Location,
    LocationSummary,
    ManualActionConfig,
    RequestType,
    SystemType,
)

__all__ = [
    "ActionConfig",
    "AutomatedActionConfig",
    "ExecutionType",
    "Location",
    "LocationSummary",
    "ManualActionConfig",
    "RequestType",
    "SystemType",
]
