from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestType(str, Enum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    RESTRICTION = "restriction"
    PORTABILITY = "portability"
    OBJECTION = "objection"


class SystemType(str, Enum):
    DATABASE = "database"
    API = "api"
    MANUAL = "manual"
    FILE_STORAGE = "file_storage"
    THIRD_PARTY = "third_party"


class ExecutionType(str, Enum):
    AUTOMATED = "automated"
    SEMI_AUTOMATED = "semi_automated"
    MANUAL = "manual"


class AuthType(str, Enum):
    BEARER = "bearer"
    API_KEY = "api_key"
    BASIC = "basic"
    NONE = "none"


class HttpMethod(str, Enum):
    DELETE = "DELETE"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    GET = "GET"


# ---- automated ----
class AuthConfig(BaseModel):
    """
    Secret *references* only (e.g. "vault:crm_api_key"); values are resolved at
    execution time and never persisted with the location.
    """

    model_config = ConfigDict(extra="forbid")

    header_name: Optional[str] = Field(default=None, max_length=80)
    secret_ref: Optional[str] = Field(default=None, max_length=200)
    username_ref: Optional[str] = Field(default=None, max_length=200)
    password_ref: Optional[str] = Field(default=None, max_length=200)


class RetryPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=1, le=20)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)


class EndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, max_length=2048)  # may contain {{placeholders}}
    method: HttpMethod = HttpMethod.POST
    headers: Dict[str, str] = Field(default_factory=dict)
    auth_type: AuthType = AuthType.NONE
    auth_config: Optional[AuthConfig] = None
    timeout_ms: Optional[int] = Field(default=None, ge=100, le=600_000)
    retry_policy: Optional[RetryPolicy] = None


class RequestBodyTemplate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template: Dict[str, Any] = Field(default_factory=dict)
    placeholders: List[str] = Field(default_factory=list)


class ResponseBodyMatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1, max_length=200)  # dotted path, e.g. "result.deleted"
    value: Union[bool, int, float, str]


class SuccessCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    http_status: List[int] = Field(default_factory=lambda: [200, 201, 202, 204])
    response_body_match: Optional[ResponseBodyMatch] = None


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    callback_path: str = Field(default="", max_length=400)
    expected_within: Optional[int] = Field(default=None, ge=1)  # minutes
    secret_ref: Optional[str] = Field(default=None, max_length=200)


class AutomatedActionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["automated"] = "automated"
    endpoint: EndpointConfig
    request_body: Optional[RequestBodyTemplate] = None
    success_condition: SuccessCondition = Field(default_factory=SuccessCondition)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


# ---- manual ----
class ManualInstruction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    step: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=4000)
    screenshot_url: Optional[str] = None
    warning: Optional[str] = None
    expected_result: Optional[str] = None


class ManualActionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["manual"] = "manual"
    instructions: List[ManualInstruction] = Field(default_factory=list)
    estimated_minutes: Optional[int] = Field(default=None, ge=1)
    required_role: Optional[str] = None
    documentation_url: Optional[str] = None
    verification_checklist: List[str] = Field(default_factory=list)


ActionConfig = Annotated[Union[AutomatedActionConfig, ManualActionConfig], Field(discriminator="kind")]


def _now() -> float:
    return time.time()


class Location(BaseModel):
    """
    A registered system that may hold personal data.

    Locations are never hard-deleted; `is_active=False` retires them from
    future fan-outs while existing tasks keep their reference.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    system_type: SystemType
    execution_type: ExecutionType
    supported_request_types: List[RequestType] = Field(
        default_factory=lambda: [RequestType.ERASURE, RequestType.ACCESS, RequestType.PORTABILITY]
    )
    priority_order: int = 100
    action_config: ActionConfig
    owner_email: Optional[str] = None
    owner_team: Optional[str] = None
    pii_fields: List[str] = Field(default_factory=list)
    data_categories: List[str] = Field(default_factory=list)
    is_active: bool = True
    last_verified_at: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)

    @field_validator("supported_request_types")
    @classmethod
    def _dedupe_request_types(cls, v: List[RequestType]) -> List[RequestType]:
        out: List[RequestType] = []
        for rt in v:
            if rt not in out:
                out.append(rt)
        return out

    def supports(self, request_type: RequestType) -> bool:
        return request_type in self.supported_request_types

    def webhook(self) -> Optional[WebhookConfig]:
        cfg = self.action_config
        if isinstance(cfg, AutomatedActionConfig):
            return cfg.webhook if cfg.webhook.enabled else None
        if isinstance(cfg, ManualActionConfig):
            return None
        raise TypeError(f"unsupported action config: {type(cfg).__name__}")


class LocationSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total: int = 0
    active: int = 0
    by_system_type: Dict[str, int] = Field(default_factory=dict)
    by_execution_type: Dict[str, int] = Field(default_factory=dict)
    needs_verification: int = 0
