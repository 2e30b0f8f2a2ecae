"""Tests for instance lifecycle management against fake connection handles."""

import asyncio

import httpx
import pytest

from flowbridge.service.connection import InboundMessage
from flowbridge.service.errors import (
    ConflictError,
    InitializationError,
    NotFoundError,
    SendError,
    UnavailableError,
    ValidationError,
)
from flowbridge.service.instances import InstanceManager, webhook_url
from flowbridge.service.lifecycle import LifecycleState
from flowbridge.service.pipeline import ResponsePipeline
from flowbridge.storage.instances import InstanceConfigStore
from flowbridge.storage.models import InstanceConfig, RemoteWorkflowConfig
from flowbridge.storage.pairing import PairingStore

S = LifecycleState


def _probe_handler(request):
    if request.url.host == "down.example.com":
        return httpx.Response(502)
    return httpx.Response(200, json={"output": "ok"})


@pytest.fixture
def manager(tmp_path, client_factory):
    return InstanceManager(
        InstanceConfigStore(tmp_path / "instances"),
        PairingStore(tmp_path / "sessions"),
        ResponsePipeline(transport=httpx.MockTransport(_probe_handler)),
        client_factory=client_factory,
        reconnect_delay=0.01,
    )


def _config(instance_id="bot1", base_url="https://n8n.example.com"):
    return InstanceConfig(
        instance_id=instance_id,
        name="Bot",
        remote_workflow=RemoteWorkflowConfig(base_url=base_url, webhook_path="/webhook/chat"),
        allowed_users=["*"],
    )


async def _close(manager):
    await manager.shutdown()
    await manager.pipeline.close()


def test_webhook_url():
    assert webhook_url("bot1") == "/api/webhook/bot1"


class TestCreate:
    async def test_create_persists_and_initializes(self, manager, client_factory):
        try:
            await manager.create(_config())
            await manager.settle()

            assert manager.is_initialized("bot1")
            assert manager.lifecycle_state("bot1") == S.INITIALIZING
            assert client_factory.latest("bot1").connect_calls == 1
            stored = await manager.configs.get("bot1")
            assert stored.status == S.INITIALIZING.value
            assert manager.pairing.session_dir("bot1").is_dir()
        finally:
            await _close(manager)

    async def test_invalid_id_rejected(self, manager):
        try:
            with pytest.raises(ValidationError):
                await manager.create(_config("bad id!"))
            assert await manager.configs.exists("bad id!") is False
        finally:
            await _close(manager)

    async def test_missing_workflow_fields_rejected(self, manager):
        config = _config()
        config.remote_workflow.webhook_path = ""
        try:
            with pytest.raises(ValidationError) as exc_info:
                await manager.create(config)
            assert exc_info.value.message == "Missing required configuration"
        finally:
            await _close(manager)

    async def test_duplicate_id_conflicts(self, manager):
        try:
            await manager.create(_config())
            with pytest.raises(ConflictError):
                await manager.create(_config())
        finally:
            await _close(manager)

    async def test_unreachable_workflow_engine_rejected(self, manager):
        try:
            with pytest.raises(ValidationError) as exc_info:
                await manager.create(_config(base_url="https://down.example.com"))
            assert exc_info.value.message == "Cannot connect to workflow engine"
            assert await manager.configs.exists("bot1") is False
        finally:
            await _close(manager)

    async def test_client_construction_failure_keeps_config(self, manager, client_factory):
        client_factory.fail = True
        try:
            config = await manager.create(_config())
            assert config.instance_id == "bot1"
            assert not manager.is_initialized("bot1")
            assert await manager.configs.exists("bot1")
            with pytest.raises(InitializationError):
                await manager.init("bot1")
        finally:
            await _close(manager)


class TestConnectionEvents:
    async def test_pairing_then_ready(self, manager, client_factory):
        try:
            await manager.create(_config())
            handle = client_factory.latest("bot1")

            handle.emit("qr", "2@pairing-code")
            await manager.settle()
            assert manager.lifecycle_state("bot1") == S.WAITING_FOR_QR_SCAN
            assert await manager.pairing_code("bot1") == "2@pairing-code"
            assert (await manager.configs.get("bot1")).status == S.WAITING_FOR_QR_SCAN.value

            handle.emit("authenticated")
            handle.emit("ready")
            await manager.settle()
            assert manager.lifecycle_state("bot1") == S.CONNECTED
            assert await manager.get_state("bot1") == S.CONNECTED.value
            assert await manager.pairing_code("bot1") is None
            assert (await manager.configs.get("bot1")).status == S.CONNECTED.value
        finally:
            await _close(manager)

    async def test_info_summarizes_instance(self, manager):
        try:
            await manager.create(_config())
            info = await manager.info("bot1")
            assert info["id"] == "bot1"
            assert info["status"] == S.INITIALIZING.value
            assert info["clientState"] == S.INITIALIZING.value
            assert info["isActive"] is True
            with pytest.raises(NotFoundError):
                await manager.info("missing")
        finally:
            await _close(manager)

    async def test_reported_state_takes_precedence(self, manager, client_factory):
        try:
            await manager.create(_config())
            client_factory.latest("bot1").reported_state = "OPENING"
            assert await manager.get_state("bot1") == "OPENING"
            assert await manager.get_state("missing") == S.NOT_INITIALIZED.value
        finally:
            await _close(manager)

    async def test_disconnect_reconnects_once(self, manager, client_factory):
        try:
            await manager.create(_config())
            handle = client_factory.latest("bot1")
            handle.emit("ready")
            await manager.settle()

            handle.emit("disconnected", "NAVIGATION")
            handle.emit("disconnected", "NAVIGATION")
            await manager.settle()

            assert manager.lifecycle_state("bot1") == S.INITIALIZING
            assert handle.connect_calls == 2
            assert (await manager.configs.get("bot1")).status == S.INITIALIZING.value
        finally:
            await _close(manager)

    async def test_auth_failure_is_terminal(self, manager, client_factory):
        try:
            await manager.create(_config())
            handle = client_factory.latest("bot1")
            handle.emit("auth_failure", "session expired")
            await manager.settle()
            handle.emit("qr", "2@late")
            handle.emit("disconnected", "LOGOUT")
            await manager.settle()

            assert manager.lifecycle_state("bot1") == S.AUTH_FAILURE
            assert handle.connect_calls == 1
            assert await manager.pairing_code("bot1") is None
        finally:
            await _close(manager)

    async def test_connect_failure_records_error(self, manager, client_factory):
        try:
            await manager.configs.create(_config())
            await manager.init("bot1")
            client_factory.latest("bot1").fail_connect = True
            await manager.settle()

            assert manager.lifecycle_state("bot1") == S.ERROR
            assert (await manager.configs.get("bot1")).status == S.ERROR.value
        finally:
            await _close(manager)

    async def test_inbound_messages_reach_handler(self, manager, client_factory):
        received = []

        async def handler(config, handle, message):
            received.append((config.instance_id, message.body))

        manager.message_handler = handler
        try:
            await manager.create(_config())
            message = InboundMessage(id="m1", from_id="15551234567@c.us", body="hello")
            client_factory.latest("bot1").emit("message", message)
            await manager.settle()
            assert received == [("bot1", "hello")]
        finally:
            await _close(manager)


class TestDestroyRestart:
    async def test_destroy_leaves_no_entry(self, manager, client_factory):
        try:
            await manager.create(_config())
            handle = client_factory.latest("bot1")
            await manager.destroy("bot1")

            assert not manager.is_initialized("bot1")
            assert handle.destroyed is True
            assert (await manager.configs.get("bot1")).status == S.DESTROYED.value
            assert await manager.get_state("bot1") == S.NOT_INITIALIZED.value
        finally:
            await _close(manager)

    async def test_events_from_destroyed_handle_are_ignored(self, manager, client_factory):
        try:
            await manager.create(_config())
            old = client_factory.latest("bot1")
            await manager.destroy("bot1")
            old.emit("qr", "2@stale")
            old.emit("disconnected", "gone")
            await manager.settle()

            assert await manager.pairing_code("bot1") is None
            assert (await manager.configs.get("bot1")).status == S.DESTROYED.value
        finally:
            await _close(manager)

    async def test_restart_replaces_handle(self, manager, client_factory):
        try:
            await manager.create(_config())
            first = client_factory.latest("bot1")
            state = await manager.restart("bot1")
            second = client_factory.latest("bot1")

            assert state == S.INITIALIZING
            assert first is not second
            assert first.destroyed is True
            assert manager.is_initialized("bot1")
        finally:
            await _close(manager)

    async def test_restart_unknown_instance(self, manager):
        try:
            with pytest.raises(NotFoundError):
                await manager.restart("missing")
        finally:
            await _close(manager)

    async def test_start_all_skips_destroyed(self, manager):
        try:
            await manager.configs.create(_config("live"))
            destroyed = _config("gone")
            destroyed.status = S.DESTROYED.value
            await manager.configs.create(destroyed)

            assert await manager.start_all() == 1
            assert manager.list_active() == ["live"]
        finally:
            await _close(manager)


class TestUpdateDelete:
    async def test_workflow_change_restarts_active_instance(self, manager, client_factory):
        try:
            await manager.create(_config())
            first = client_factory.latest("bot1")
            requires_restart = await manager.update(
                "bot1",
                remote_workflow=RemoteWorkflowConfig(
                    base_url="https://other.example.com", webhook_path="/hook"
                ),
            )
            assert requires_restart is True
            assert client_factory.latest("bot1") is not first
            config = await manager.get_config("bot1")
            assert config.remote_workflow.base_url == "https://other.example.com"
        finally:
            await _close(manager)

    async def test_allow_list_change_does_not_restart(self, manager, client_factory):
        try:
            await manager.create(_config())
            first = client_factory.latest("bot1")
            requires_restart = await manager.update(
                "bot1",
                allowed_users=["15551234567"],
                options={"maxConversationLength": 4},
            )
            assert requires_restart is False
            assert client_factory.latest("bot1") is first
            config = await manager.get_config("bot1")
            assert config.allowed_users == ["15551234567"]
            assert config.options.max_conversation_length == 4
            assert config.options.command_prefix == "!bot"
        finally:
            await _close(manager)

    async def test_update_unknown_instance(self, manager):
        try:
            with pytest.raises(NotFoundError):
                await manager.update("missing", name="x")
        finally:
            await _close(manager)

    async def test_delete_removes_everything(self, manager, client_factory):
        try:
            await manager.create(_config())
            client_factory.latest("bot1").emit("qr", "2@code")
            await manager.settle()
            await manager.delete("bot1")

            assert not manager.is_initialized("bot1")
            assert await manager.configs.exists("bot1") is False
            assert not manager.pairing.session_dir("bot1").exists()
            with pytest.raises(NotFoundError):
                await manager.delete("bot1")
        finally:
            await _close(manager)


class TestSend:
    async def test_send_addresses_bare_numbers(self, manager, client_factory):
        try:
            await manager.create(_config())
            sent = await manager.send("bot1", "15551234567", "hi")
            assert sent.id == "msg-1"
            assert client_factory.latest("bot1").sent == [("15551234567@c.us", "hi")]
        finally:
            await _close(manager)

    async def test_send_unknown_and_inactive(self, manager):
        try:
            with pytest.raises(NotFoundError):
                await manager.send("missing", "15551234567", "hi")
            await manager.configs.create(_config())
            with pytest.raises(UnavailableError):
                await manager.send("bot1", "15551234567", "hi")
        finally:
            await _close(manager)

    async def test_send_failure_raises_send_error(self, manager, client_factory):
        try:
            await manager.create(_config())
            client_factory.latest("bot1").fail_send = True
            with pytest.raises(SendError):
                await manager.send("bot1", "15551234567", "hi")
        finally:
            await _close(manager)


class TestPerInstanceSerialization:
    async def test_restart_queued_behind_delete_finds_nothing(self, manager, client_factory):
        try:
            await manager.create(_config())
            deleted, restarted = await asyncio.gather(
                manager.delete("bot1"), manager.restart("bot1"), return_exceptions=True
            )
            await manager.settle()

            assert deleted is None
            assert isinstance(restarted, NotFoundError)
            assert manager.list_active() == []
            assert await manager.configs.exists("bot1") is False
            assert len(client_factory.handles) == 1
            with pytest.raises(NotFoundError):
                await manager.get_config("bot1")
        finally:
            await _close(manager)

    async def test_init_queued_behind_delete_finds_nothing(self, manager, client_factory):
        try:
            await manager.create(_config())
            await manager.destroy("bot1")
            deleted, initialized = await asyncio.gather(
                manager.delete("bot1"), manager.init("bot1"), return_exceptions=True
            )
            await manager.settle()

            assert deleted is None
            assert isinstance(initialized, NotFoundError)
            assert not manager.is_initialized("bot1")
            assert not manager.pairing.session_dir("bot1").exists()
        finally:
            await _close(manager)

    async def test_restart_then_destroy_agree_on_state(self, manager):
        try:
            await manager.create(_config())
            await asyncio.gather(manager.restart("bot1"), manager.destroy("bot1"))
            await manager.settle()

            assert not manager.is_initialized("bot1")
            assert (await manager.configs.get("bot1")).status == S.DESTROYED.value
        finally:
            await _close(manager)

    async def test_recreate_after_delete(self, manager, client_factory):
        try:
            await manager.create(_config())
            await manager.delete("bot1")
            await manager.create(_config())
            assert await manager.restart("bot1") == S.INITIALIZING
            assert manager.list_active() == ["bot1"]
        finally:
            await _close(manager)

    async def test_distinct_ids_do_not_wait_on_each_other(self, manager):
        try:
            await manager.create(_config("a"))
            await manager.create(_config("b"))
            async with manager._lock("a"):
                blocked = asyncio.create_task(manager.restart("a"))
                state = await asyncio.wait_for(manager.restart("b"), timeout=1)
                await asyncio.sleep(0)
                assert state == S.INITIALIZING
                assert not blocked.done()
            assert await blocked == S.INITIALIZING
        finally:
            await _close(manager)
