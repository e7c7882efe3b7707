from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class FulfillmentConfig(BaseModel):
    """
    config/fulfillment.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    db_path: str = Field(default="runtime/fulfillment.sqlite", min_length=1)
    log_dir: str = Field(default="logs", min_length=1)

    # retry policy
    default_max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_base_minutes: int = Field(default=1, ge=1, le=1440)

    # scheduler / workers
    sweep_interval_seconds: float = Field(default=30.0, ge=0.05, le=86400.0)
    sweep_batch_limit: int = Field(default=100, ge=1, le=10_000)
    worker_threads: int = Field(default=4, ge=1, le=64)

    # automated execution
    http_timeout_seconds: float = Field(default=30.0, ge=0.1, le=600.0)
    default_callback_window_minutes: int = Field(default=60, ge=1, le=60 * 24 * 30)

    activity_enabled: bool = True


def default_config_dict() -> Dict[str, Any]:
    return FulfillmentConfig().model_dump()
