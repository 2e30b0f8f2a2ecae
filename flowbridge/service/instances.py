"""Instance lifecycle manager.

Owns the process-local map from instance id to its live connection handle and
lifecycle state. Every lifecycle operation for one instance id (create, init,
restart, destroy, update, delete, and the handling of a connection event)
runs under that id's ``asyncio.Lock``; operations on different ids never
contend.

Connection callbacks are plain functions invoked by the messaging client. They
only schedule tracked tasks, so a misbehaving event can never raise back into
the client. Events from a handle that is no longer the registered handle for
its instance are ignored.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from flowbridge.logging import get_logger, set_correlation_id
from flowbridge.service.connection import (
    EVENT_AUTH_FAILURE,
    EVENT_AUTHENTICATED,
    EVENT_DISCONNECTED,
    EVENT_MESSAGE,
    EVENT_QR,
    EVENT_READY,
    ClientFactory,
    ConnectionHandle,
    InboundMessage,
    SentMessage,
    load_client_factory,
)
from flowbridge.service.errors import (
    ConflictError,
    InitializationError,
    NotFoundError,
    SendError,
    UnavailableError,
    ValidationError,
)
from flowbridge.service.lifecycle import (
    Authenticated,
    AuthFailed,
    DeletePairingCode,
    Disconnected,
    Effect,
    LifecycleEvent,
    LifecycleState,
    PersistStatus,
    QrReceived,
    Ready,
    Reconnect,
    SavePairingCode,
    ScheduleReconnect,
    transition,
)
from flowbridge.service.pipeline import ResponsePipeline
from flowbridge.service.security import to_chat_id
from flowbridge.storage.instances import InstanceConfigStore
from flowbridge.storage.models import InstanceConfig, RemoteWorkflowConfig
from flowbridge.storage.pairing import PairingStore

logger = get_logger(__name__)

INSTANCE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

MessageHandler = Callable[[InstanceConfig, ConnectionHandle, InboundMessage], Awaitable[None]]


@dataclass
class RuntimeEntry:
    config: InstanceConfig
    handle: ConnectionHandle
    state: LifecycleState = LifecycleState.INITIALIZING
    connect_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None


def webhook_url(instance_id: str) -> str:
    return f"/api/webhook/{instance_id}"


class InstanceManager:
    def __init__(
        self,
        configs: InstanceConfigStore,
        pairing: PairingStore,
        pipeline: ResponsePipeline,
        *,
        client_factory: Optional[ClientFactory] = None,
        client_factory_path: Optional[str] = None,
        reconnect_delay: float = 5.0,
    ) -> None:
        self.configs = configs
        self.pairing = pairing
        self.pipeline = pipeline
        self.reconnect_delay = reconnect_delay
        self._client_factory = client_factory
        self._client_factory_path = client_factory_path
        self._entries: Dict[str, RuntimeEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.message_handler: Optional[MessageHandler] = None

    # -- queries -------------------------------------------------------

    def is_initialized(self, instance_id: str) -> bool:
        return instance_id in self._entries

    def list_active(self) -> List[str]:
        return list(self._entries)

    def lifecycle_state(self, instance_id: str) -> LifecycleState:
        entry = self._entries.get(instance_id)
        return entry.state if entry else LifecycleState.NOT_INITIALIZED

    async def get_state(self, instance_id: str) -> str:
        """State reported by the connection handle, else the tracked lifecycle state."""
        entry = self._entries.get(instance_id)
        if entry is None:
            return LifecycleState.NOT_INITIALIZED.value
        try:
            reported = await entry.handle.get_state()
        except Exception as exc:
            logger.error("client_state_failed", instance_id=instance_id, error=str(exc))
            return LifecycleState.ERROR.value
        return reported or entry.state.value

    async def get_config(self, instance_id: str) -> InstanceConfig:
        entry = self._entries.get(instance_id)
        if entry is not None:
            return entry.config
        config = await self.configs.get(instance_id)
        if config is None:
            raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
        return config

    async def pairing_code(self, instance_id: str) -> Optional[str]:
        return await self.pairing.load(instance_id)

    async def info(self, instance_id: str) -> Dict[str, Any]:
        config = await self.get_config(instance_id)
        return await self._summary(config)

    async def list_info(self) -> List[Dict[str, Any]]:
        return [await self._summary(config) for config in await self.configs.list_all()]

    async def _summary(self, config: InstanceConfig) -> Dict[str, Any]:
        return {
            "id": config.instance_id,
            "name": config.name,
            "status": config.status,
            "created": config.created.isoformat(),
            "updatedAt": config.updated_at.isoformat(),
            "clientState": await self.get_state(config.instance_id),
            "isActive": self.is_initialized(config.instance_id),
        }

    # -- lifecycle operations -----------------------------------------

    def _lock(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    async def _stored_config(self, instance_id: str) -> InstanceConfig:
        # Read under the id lock; a delete queued ahead of us may have removed it
        config = await self.configs.get(instance_id)
        if config is None:
            raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
        return config

    def _resolve_factory(self) -> ClientFactory:
        if self._client_factory is None:
            self._client_factory = load_client_factory(self._client_factory_path)
        return self._client_factory

    async def create(self, config: InstanceConfig) -> InstanceConfig:
        """Validate, probe the workflow engine, persist, then initialize.

        A failure to initialize the connection is logged and does not undo
        the creation; the instance can be started later through restart.
        """
        instance_id = config.instance_id
        if not instance_id or not INSTANCE_ID_PATTERN.fullmatch(instance_id):
            raise ValidationError(
                "Instance ID can only contain alphanumeric characters, hyphens, and underscores"
            )
        remote = config.remote_workflow
        if not remote.base_url or not remote.webhook_path:
            raise ValidationError("Missing required configuration")
        if await self.configs.exists(instance_id):
            raise ConflictError(
                "Instance ID already exists", detail={"instance_id": instance_id}
            )
        if not await self.pipeline.probe(remote.base_url, remote.api_key):
            raise ValidationError(
                "Cannot connect to workflow engine", detail={"base_url": remote.base_url}
            )

        async with self._lock(instance_id):
            config.status = LifecycleState.CREATED.value
            config = await self.configs.create(config)
            logger.info("instance_created", instance_id=instance_id, name=config.name)
            try:
                await self._init(instance_id, config)
            except InitializationError as exc:
                logger.error(
                    "instance_init_failed", instance_id=instance_id, error=exc.message
                )
        return config

    async def init(self, instance_id: str) -> LifecycleState:
        async with self._lock(instance_id):
            if instance_id in self._entries:
                return self._entries[instance_id].state
            await self._init(instance_id, await self._stored_config(instance_id))
            return self._entries[instance_id].state

    async def _init(self, instance_id: str, config: InstanceConfig) -> None:
        factory = self._resolve_factory()
        session_dir = self.pairing.session_dir(instance_id)
        await asyncio.to_thread(session_dir.mkdir, parents=True, exist_ok=True)
        try:
            handle = factory(instance_id, session_dir)
        except Exception as exc:
            raise InitializationError(
                f"Failed to initialize messaging client for instance {instance_id}",
                detail={"instance_id": instance_id},
            ) from exc

        entry = RuntimeEntry(config=config, handle=handle)
        self._register_handlers(instance_id, handle)
        self._entries[instance_id] = entry
        config.status = LifecycleState.INITIALIZING.value
        await self.configs.update_status(instance_id, config.status)
        entry.connect_task = self._spawn(self._connect(instance_id, handle))
        logger.info("instance_initializing", instance_id=instance_id)

    async def destroy(self, instance_id: str) -> None:
        async with self._lock(instance_id):
            await self._destroy(instance_id)

    async def _destroy(self, instance_id: str) -> None:
        entry = self._entries.pop(instance_id, None)
        if entry is not None:
            entry.state = LifecycleState.DESTROYED
            self._cancel_timers(entry)
            try:
                await entry.handle.destroy()
            except Exception as exc:
                logger.warning(
                    "instance_teardown_failed", instance_id=instance_id, error=str(exc)
                )
        await self.configs.update_status(instance_id, LifecycleState.DESTROYED.value)
        logger.info("instance_destroyed", instance_id=instance_id)

    async def restart(self, instance_id: str) -> LifecycleState:
        async with self._lock(instance_id):
            config = await self._stored_config(instance_id)
            await self._destroy(instance_id)
            await self._init(instance_id, config)
            return self._entries[instance_id].state

    async def update(
        self,
        instance_id: str,
        *,
        name: Optional[str] = None,
        remote_workflow: Optional[RemoteWorkflowConfig] = None,
        allowed_users: Optional[List[str]] = None,
        allowed_groups: Optional[List[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Apply a partial update; returns whether the workflow config changed."""
        async with self._lock(instance_id):
            existing = await self.configs.get(instance_id)
            if existing is None:
                raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
            requires_restart = (
                remote_workflow is not None and remote_workflow != existing.remote_workflow
            )
            updated = replace(
                existing,
                name=name or existing.name,
                remote_workflow=remote_workflow or existing.remote_workflow,
                allowed_users=(
                    list(allowed_users) if allowed_users is not None else existing.allowed_users
                ),
                allowed_groups=(
                    list(allowed_groups)
                    if allowed_groups is not None
                    else existing.allowed_groups
                ),
                options=existing.options.merged(options) if options else existing.options,
            )
            await self.configs.save(updated)
            entry = self._entries.get(instance_id)
            if entry is not None:
                entry.config = updated
                if requires_restart:
                    await self._destroy(instance_id)
                    await self._init(instance_id, updated)
            logger.info(
                "instance_updated",
                instance_id=instance_id,
                requires_restart=requires_restart,
            )
            return requires_restart

    async def delete(self, instance_id: str) -> None:
        async with self._lock(instance_id):
            if not await self.configs.exists(instance_id):
                raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
            if instance_id in self._entries:
                await self._destroy(instance_id)
            await self.configs.delete(instance_id)
            await self.pairing.purge(instance_id)
        logger.info("instance_deleted", instance_id=instance_id)

    async def start_all(self) -> int:
        """Initialize every persisted instance not explicitly destroyed."""
        started = 0
        configs = await self.configs.list_all()
        logger.info("instances_starting", count=len(configs))
        for config in configs:
            if config.status == LifecycleState.DESTROYED.value:
                logger.info("instance_start_skipped", instance_id=config.instance_id)
                continue
            try:
                await self.init(config.instance_id)
                started += 1
            except Exception as exc:
                logger.error(
                    "instance_start_failed",
                    instance_id=config.instance_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return started

    async def shutdown(self) -> None:
        """Tear down every connection without touching persisted status."""
        for instance_id, entry in list(self._entries.items()):
            self._cancel_timers(entry)
            try:
                await entry.handle.destroy()
            except Exception as exc:
                logger.warning(
                    "instance_teardown_failed", instance_id=instance_id, error=str(exc)
                )
        self._entries.clear()
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("instances_shutdown")

    async def settle(self) -> None:
        """Wait until all currently scheduled connection-event tasks finish."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -- outbound ------------------------------------------------------

    async def send(self, instance_id: str, to: str, text: str) -> SentMessage:
        entry = self._entries.get(instance_id)
        if entry is None:
            if not await self.configs.exists(instance_id):
                raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
            raise UnavailableError(
                f"Messaging client for instance {instance_id} not initialized"
            )
        chat_id = to_chat_id(to)
        try:
            sent = await entry.handle.send_message(chat_id, text)
        except Exception as exc:
            logger.error(
                "message_send_failed",
                instance_id=instance_id,
                to=chat_id,
                error=str(exc),
            )
            raise SendError("Failed to send message", detail={"error": str(exc)}) from exc
        logger.info("message_sent", instance_id=instance_id, to=chat_id)
        return sent

    # -- connection events ---------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_timers(self, entry: RuntimeEntry) -> None:
        for task in (entry.connect_task, entry.reconnect_task):
            if task is not None and not task.done():
                task.cancel()
        entry.connect_task = None
        entry.reconnect_task = None

    def _is_current(self, instance_id: str, handle: ConnectionHandle) -> bool:
        entry = self._entries.get(instance_id)
        return entry is not None and entry.handle is handle

    def _register_handlers(self, instance_id: str, handle: ConnectionHandle) -> None:
        def on_qr(code: Any = "", *_: Any) -> None:
            self._dispatch(instance_id, handle, QrReceived(str(code)))

        def on_authenticated(*_: Any) -> None:
            self._dispatch(instance_id, handle, Authenticated())

        def on_auth_failure(message: Any = "", *_: Any) -> None:
            self._dispatch(instance_id, handle, AuthFailed(str(message or "")))

        def on_ready(*_: Any) -> None:
            self._dispatch(instance_id, handle, Ready())

        def on_disconnected(reason: Any = "", *_: Any) -> None:
            self._dispatch(instance_id, handle, Disconnected(str(reason or "")))

        def on_message(message: InboundMessage, *_: Any) -> None:
            self._spawn(self._handle_message(instance_id, handle, message))

        handle.on(EVENT_QR, on_qr)
        handle.on(EVENT_AUTHENTICATED, on_authenticated)
        handle.on(EVENT_AUTH_FAILURE, on_auth_failure)
        handle.on(EVENT_READY, on_ready)
        handle.on(EVENT_DISCONNECTED, on_disconnected)
        handle.on(EVENT_MESSAGE, on_message)

    def _dispatch(
        self, instance_id: str, handle: ConnectionHandle, event: LifecycleEvent
    ) -> None:
        self._spawn(self._apply_event(instance_id, handle, event))

    async def _apply_event(
        self, instance_id: str, handle: ConnectionHandle, event: LifecycleEvent
    ) -> None:
        set_correlation_id()
        event_name = type(event).__name__
        try:
            async with self._lock(instance_id):
                if not self._is_current(instance_id, handle):
                    logger.debug(
                        "stale_connection_event_ignored",
                        instance_id=instance_id,
                        lifecycle_event=event_name,
                    )
                    return
                entry = self._entries[instance_id]
                result = transition(entry.state, event, reconnect_delay=self.reconnect_delay)
                if result.state != entry.state:
                    logger.info(
                        "instance_state_changed",
                        instance_id=instance_id,
                        lifecycle_event=event_name,
                        previous=entry.state.value,
                        state=result.state.value,
                    )
                entry.state = result.state
                for effect in result.effects:
                    await self._perform(instance_id, entry, effect)
        except Exception as exc:
            logger.error(
                "connection_event_failed",
                instance_id=instance_id,
                lifecycle_event=event_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _perform(self, instance_id: str, entry: RuntimeEntry, effect: Effect) -> None:
        if isinstance(effect, SavePairingCode):
            await self.pairing.save(instance_id, effect.code)
            logger.info("pairing_code_received", instance_id=instance_id)
        elif isinstance(effect, DeletePairingCode):
            await self.pairing.delete(instance_id)
        elif isinstance(effect, PersistStatus):
            entry.config.status = effect.state.value
            await self.configs.update_status(instance_id, effect.state.value)
        elif isinstance(effect, ScheduleReconnect):
            if entry.reconnect_task is not None and not entry.reconnect_task.done():
                return
            entry.reconnect_task = self._spawn(
                self._reconnect_after(instance_id, entry.handle, effect.delay)
            )
            logger.warning(
                "instance_reconnect_scheduled",
                instance_id=instance_id,
                delay_seconds=effect.delay,
            )

    async def _reconnect_after(
        self, instance_id: str, handle: ConnectionHandle, delay: float
    ) -> None:
        await asyncio.sleep(delay)
        async with self._lock(instance_id):
            if not self._is_current(instance_id, handle):
                return
            entry = self._entries[instance_id]
            entry.reconnect_task = None
            result = transition(entry.state, Reconnect())
            if result.state == entry.state:
                return
            entry.state = result.state
            for effect in result.effects:
                await self._perform(instance_id, entry, effect)
            logger.info("instance_reconnecting", instance_id=instance_id)
            entry.connect_task = self._spawn(self._connect(instance_id, handle))

    async def _connect(self, instance_id: str, handle: ConnectionHandle) -> None:
        try:
            await handle.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("instance_connect_failed", instance_id=instance_id, error=str(exc))
            async with self._lock(instance_id):
                if not self._is_current(instance_id, handle):
                    return
                entry = self._entries[instance_id]
                entry.state = LifecycleState.ERROR
                entry.config.status = LifecycleState.ERROR.value
                await self.configs.update_status(instance_id, LifecycleState.ERROR.value)

    async def _handle_message(
        self, instance_id: str, handle: ConnectionHandle, message: InboundMessage
    ) -> None:
        set_correlation_id()
        entry = self._entries.get(instance_id)
        if entry is None or entry.handle is not handle or self.message_handler is None:
            return
        try:
            await self.message_handler(entry.config, handle, message)
        except Exception as exc:
            logger.error(
                "inbound_message_failed",
                instance_id=instance_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
