from fulfillment.core.activity.models import ActivityEvent, ActivityType, ActorType
from fulfillment.core.activity.sink import ActivitySink, NullActivitySink, SqliteActivitySink

__all__ = ["ActivityEvent", "ActivityType", "ActorType", "ActivitySink", "NullActivitySink", "SqliteActivitySink"]
