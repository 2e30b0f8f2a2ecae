from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from flowbridge.api.schemas import (
    Envelope,
    InstanceCreatedResponse,
    InstanceCreateRequest,
    InstanceDeleteResponse,
    InstanceDetailResponse,
    InstanceListResponse,
    InstanceRestartResponse,
    InstanceSummary,
    InstanceUpdateRequest,
    InstanceUpdateResponse,
    PairingStatusResponse,
    SendResultResponse,
    WebhookSendRequest,
    WorkflowHealth,
)
from flowbridge.config import Environment
from flowbridge.logging import get_logger, sanitize_response_data
from flowbridge.service.errors import (
    AuthenticationError,
    InitializationError,
    RateLimitedError,
    ServerError,
)
from flowbridge.service.instances import webhook_url
from flowbridge.service.lifecycle import LifecycleState
from flowbridge.service.runtime import check_rate_limit, get_runtime
from flowbridge.service.security import credentials_match
from flowbridge.storage.models import InstanceConfig, InstanceOptions

logger = get_logger(__name__)

InstanceId = Annotated[str, Path(min_length=1, max_length=128)]

# Lifecycle states from which no QR code will appear without a restart
_TERMINAL_STATES = frozenset({LifecycleState.AUTH_FAILURE.value, LifecycleState.ERROR.value})


async def enforce_api_rate_limit(request: Request, response: Response) -> None:
    """Token bucket per client address across every ``/api`` route."""
    runtime = get_runtime()
    client_ip = request.client.host if request.client else "unknown"
    limit = runtime.settings.api_rate_limit
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        f"api:{client_ip}",
        limit,
        runtime.settings.api_rate_limit_window_seconds,
        return_remaining=True,
    )
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", client_ip=client_ip, path=request.url.path)
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retry_after_seconds": reset_seconds},
        )


async def require_admin_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    settings = get_runtime().settings
    if not settings.admin_api_key:
        if settings.environment == Environment.DEVELOPMENT:
            logger.warning("admin_key_check_skipped", reason="ADMIN_API_KEY not set")
            return
        logger.error("admin_key_not_configured")
        raise ServerError("Server configuration error: Admin key not set")
    if not x_admin_key:
        logger.warning("admin_key_missing")
        raise AuthenticationError("Admin key is required")
    if not credentials_match(x_admin_key, settings.admin_api_key):
        logger.warning("admin_key_invalid")
        raise AuthenticationError("Invalid admin key")


async def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> None:
    settings = get_runtime().settings
    if not settings.api_key:
        logger.warning("api_key_check_skipped", reason="API_KEY not set")
        return
    if not x_api_key:
        logger.warning("api_key_missing")
        raise AuthenticationError("API key is required")
    if not credentials_match(x_api_key, settings.api_key):
        logger.warning("api_key_invalid")
        raise AuthenticationError("Invalid API key")


router = APIRouter(prefix="/api", dependencies=[Depends(enforce_api_rate_limit)])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)


def _ok(model) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(by_alias=True))


@admin_router.post("/instances", response_model=Envelope, status_code=201)
async def create_instance(body: InstanceCreateRequest):
    runtime = get_runtime()
    options = InstanceOptions().merged(body.options.to_patch() if body.options else {})
    config = InstanceConfig(
        instance_id=body.instance_id,
        name=body.name or body.instance_id,
        remote_workflow=body.remote_workflow.to_config(
            runtime.settings.default_workflow_timeout_ms
        ),
        allowed_users=list(body.allowed_users or []),
        allowed_groups=list(body.allowed_groups or []),
        options=options,
    )
    config = await runtime.instances.create(config)
    return _ok(
        InstanceCreatedResponse(
            instance_id=config.instance_id,
            name=config.name,
            status=LifecycleState.INITIALIZING.value,
            webhook_url=webhook_url(config.instance_id),
        )
    )


@admin_router.get("/instances", response_model=Envelope)
async def list_instances():
    runtime = get_runtime()
    items = [InstanceSummary(**info) for info in await runtime.instances.list_info()]
    return _ok(InstanceListResponse(items=items))


@admin_router.get("/instances/{instance_id}", response_model=Envelope)
async def get_instance(instance_id: InstanceId):
    runtime = get_runtime()
    config = await runtime.instances.get_config(instance_id)
    health = await runtime.pipeline.health(config.remote_workflow)
    return _ok(
        InstanceDetailResponse(
            instance_id=config.instance_id,
            name=config.name,
            status=config.status,
            client_state=await runtime.instances.get_state(instance_id),
            workflow_health=WorkflowHealth(**health),
            remote_workflow=sanitize_response_data(config.remote_workflow.to_dict()),
            created=config.created.isoformat(),
            updated=config.updated_at.isoformat(),
            webhook_url=webhook_url(instance_id),
            allowed_users=len(config.allowed_users),
            allowed_groups=len(config.allowed_groups),
            options=config.options.to_dict(),
        )
    )


@admin_router.put("/instances/{instance_id}", response_model=Envelope)
async def update_instance(body: InstanceUpdateRequest, instance_id: InstanceId):
    runtime = get_runtime()
    remote_workflow = None
    if body.remote_workflow is not None:
        remote_workflow = body.remote_workflow.to_config(
            runtime.settings.default_workflow_timeout_ms
        )
    requires_restart = await runtime.instances.update(
        instance_id,
        name=body.name,
        remote_workflow=remote_workflow,
        allowed_users=body.allowed_users,
        allowed_groups=body.allowed_groups,
        options=body.options.to_patch() if body.options else None,
    )
    return _ok(
        InstanceUpdateResponse(instance_id=instance_id, requires_restart=requires_restart)
    )


@admin_router.delete("/instances/{instance_id}", response_model=Envelope)
async def delete_instance(instance_id: InstanceId):
    runtime = get_runtime()
    await runtime.instances.delete(instance_id)
    await runtime.conversations.delete_instance(instance_id)
    return _ok(InstanceDeleteResponse(instance_id=instance_id))


@admin_router.post("/instances/{instance_id}/restart", response_model=Envelope)
async def restart_instance(instance_id: InstanceId):
    runtime = get_runtime()
    await runtime.instances.restart(instance_id)
    return _ok(InstanceRestartResponse(instance_id=instance_id))


@router.get(
    "/instances/{instance_id}/qr",
    response_model=Envelope,
    tags=["instances"],
    dependencies=[Depends(require_api_key)],
)
async def get_pairing_code(response: Response, instance_id: InstanceId):
    """Report pairing progress, initializing the instance first when needed."""
    runtime = get_runtime()
    await runtime.instances.get_config(instance_id)
    if not runtime.instances.is_initialized(instance_id):
        try:
            await runtime.instances.init(instance_id)
        except InitializationError as exc:
            raise ServerError(
                "Failed to initialize messaging client", detail={"error": exc.message}
            ) from exc

    state = await runtime.instances.get_state(instance_id)
    if state == LifecycleState.CONNECTED.value:
        return _ok(PairingStatusResponse(status="connected", state=state))

    code = await runtime.instances.pairing_code(instance_id)
    if code:
        return _ok(PairingStatusResponse(status="pending", qr_code=code, state=state))

    if state in _TERMINAL_STATES:
        return _ok(
            PairingStatusResponse(
                status="error",
                message="Pairing failed; restart the instance to request a new QR code",
                state=state,
            )
        )

    response.status_code = 202
    return _ok(
        PairingStatusResponse(
            status="initializing", message="QR code not yet generated", state=state
        )
    )


@router.post(
    "/webhook/{instance_id}",
    response_model=Envelope,
    tags=["webhook"],
    dependencies=[Depends(require_api_key)],
)
async def send_webhook_message(body: WebhookSendRequest, instance_id: InstanceId):
    runtime = get_runtime()
    logger.info("webhook_request_received", instance_id=instance_id)
    result = await runtime.messages.send_outbound(instance_id, body.to, body.message)
    return _ok(SendResultResponse(**result))


router.include_router(admin_router)
