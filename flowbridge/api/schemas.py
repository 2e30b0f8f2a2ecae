from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from flowbridge.logging import get_correlation_id
from flowbridge.storage.models import RemoteWorkflowConfig

# Maximum number of allow-list entries accepted per instance
MAX_ALLOW_LIST_ITEMS = 1000

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "upstream_error",
    "unavailable",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RemoteWorkflowConfigBody(_CamelModel):
    base_url: str = Field(..., alias="baseUrl", min_length=1, max_length=2048)
    webhook_path: str = Field(..., alias="webhookPath", min_length=1, max_length=1024)
    api_key: Optional[str] = Field(default=None, alias="apiKey", max_length=1024)
    timeout: Optional[int] = Field(default=None, gt=0, le=600_000)
    fallback_path: Optional[str] = Field(
        default=None,
        alias="fallbackPath",
        validation_alias=AliasChoices("fallbackPath", "fallbackWebhookPath"),
        max_length=1024,
    )

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("baseUrl must be an http(s) URL")
        return value

    def to_config(self, default_timeout_ms: int) -> RemoteWorkflowConfig:
        return RemoteWorkflowConfig(
            base_url=self.base_url,
            webhook_path=self.webhook_path,
            api_key=self.api_key or None,
            timeout=self.timeout or default_timeout_ms,
            fallback_path=self.fallback_path or None,
        )


class InstanceOptionsBody(_CamelModel):
    command_prefix: Optional[str] = Field(default=None, alias="commandPrefix", max_length=64)
    process_self_messages: Optional[bool] = Field(default=None, alias="processSelfMessages")
    notify_unauthorized: Optional[bool] = Field(default=None, alias="notifyUnauthorized")
    max_conversation_length: Optional[int] = Field(
        default=None, alias="maxConversationLength", ge=0, le=1000
    )
    show_typing_indicator: Optional[bool] = Field(default=None, alias="showTypingIndicator")
    enable_analytics: Optional[bool] = Field(default=None, alias="enableAnalytics")

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InstanceCreateRequest(_CamelModel):
    instance_id: str = Field(..., alias="instanceId", max_length=128)
    name: Optional[str] = Field(default=None, max_length=256)
    remote_workflow: RemoteWorkflowConfigBody = Field(
        ...,
        alias="remoteWorkflowConfig",
        validation_alias=AliasChoices("remoteWorkflowConfig", "n8nConfig"),
    )
    allowed_users: Optional[List[str]] = Field(
        default=None, alias="allowedUsers", max_length=MAX_ALLOW_LIST_ITEMS
    )
    allowed_groups: Optional[List[str]] = Field(
        default=None, alias="allowedGroups", max_length=MAX_ALLOW_LIST_ITEMS
    )
    options: Optional[InstanceOptionsBody] = None


class InstanceUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, max_length=256)
    remote_workflow: Optional[RemoteWorkflowConfigBody] = Field(
        default=None,
        alias="remoteWorkflowConfig",
        validation_alias=AliasChoices("remoteWorkflowConfig", "n8nConfig"),
    )
    allowed_users: Optional[List[str]] = Field(
        default=None, alias="allowedUsers", max_length=MAX_ALLOW_LIST_ITEMS
    )
    allowed_groups: Optional[List[str]] = Field(
        default=None, alias="allowedGroups", max_length=MAX_ALLOW_LIST_ITEMS
    )
    options: Optional[InstanceOptionsBody] = None


class WebhookSendRequest(BaseModel):
    # Presence of ``to`` and ``message`` is checked after the instance lookup
    to: Optional[str] = Field(default=None, max_length=64)
    message: Optional[str] = Field(default=None, max_length=65536)
    options: Optional[Dict[str, Any]] = None


class InstanceCreatedResponse(_CamelModel):
    message: str = "Instance created successfully"
    instance_id: str = Field(..., alias="instanceId")
    name: str
    status: str
    webhook_url: str = Field(..., alias="webhookUrl")


class InstanceSummary(_CamelModel):
    id: str
    name: str
    status: str
    created: str
    updated_at: str = Field(..., alias="updatedAt")
    client_state: str = Field(..., alias="clientState")
    is_active: bool = Field(..., alias="isActive")


class InstanceListResponse(BaseModel):
    items: List[InstanceSummary]


class WorkflowHealth(BaseModel):
    status: str
    message: str
    timestamp: str


class InstanceDetailResponse(_CamelModel):
    instance_id: str = Field(..., alias="instanceId")
    name: str
    status: str
    client_state: str = Field(..., alias="clientState")
    workflow_health: WorkflowHealth = Field(..., alias="workflowHealth")
    remote_workflow: Dict[str, Any] = Field(..., alias="remoteWorkflowConfig")
    created: str
    updated: str
    webhook_url: str = Field(..., alias="webhookUrl")
    allowed_users: int = Field(..., alias="allowedUsers")
    allowed_groups: int = Field(..., alias="allowedGroups")
    options: Dict[str, Any]


class InstanceUpdateResponse(_CamelModel):
    message: str = "Instance updated successfully"
    instance_id: str = Field(..., alias="instanceId")
    requires_restart: bool = Field(..., alias="requiresRestart")


class InstanceDeleteResponse(_CamelModel):
    message: str = "Instance deleted successfully"
    instance_id: str = Field(..., alias="instanceId")
    deleted: bool = True


class InstanceRestartResponse(_CamelModel):
    message: str = "Instance restarted successfully"
    instance_id: str = Field(..., alias="instanceId")
    status: str = "INITIALIZING"


class PairingStatusResponse(_CamelModel):
    status: str
    qr_code: Optional[str] = Field(default=None, alias="qrCode")
    state: Optional[str] = None
    message: Optional[str] = None


class SendResultResponse(_CamelModel):
    success: bool
    message_id: str = Field(..., alias="messageId")
    timestamp: str
