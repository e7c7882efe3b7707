from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Scope(BaseModel):
    """
    Explicit tenant scope passed to every engine and store operation.

    There is no ambient "current tenant": a store call without a scope cannot
    be expressed.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tenant_id: str = Field(min_length=1, max_length=64)
    actor_id: str = Field(default="system", max_length=64)
