import asyncio
import inspect
import os
import sys
import tempfile
from collections import defaultdict
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="flowbridge_test_")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp_dir, "data"))
os.environ.setdefault("SESSIONS_DIR", os.path.join(_test_tmp_dir, "sessions"))
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowbridge.service.connection import SentMessage  # noqa: E402
from flowbridge.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeHandle:
    """In-process stand-in for a messaging-network connection."""

    def __init__(self, instance_id, session_dir, own_id="15550000000@c.us"):
        self.instance_id = instance_id
        self.session_dir = session_dir
        self.own_id = own_id
        self.handlers = defaultdict(list)
        self.sent = []
        self.typing = []
        self.connect_calls = 0
        self.destroyed = False
        self.reported_state = None
        self.fail_send = False
        self.fail_connect = False

    def on(self, event, callback):
        self.handlers[event].append(callback)

    def emit(self, event, *args):
        for callback in list(self.handlers[event]):
            callback(*args)

    async def connect(self):
        self.connect_calls += 1
        if self.fail_connect:
            raise RuntimeError("pairing page did not load")

    async def send_message(self, chat_id, text):
        if self.fail_send:
            raise RuntimeError("network unavailable")
        self.sent.append((chat_id, text))
        return SentMessage(id=f"msg-{len(self.sent)}")

    async def send_typing(self, chat_id):
        self.typing.append(chat_id)

    async def get_state(self):
        return self.reported_state

    async def destroy(self):
        self.destroyed = True


class FakeClientFactory:
    def __init__(self):
        self.handles = []
        self.fail = False

    def __call__(self, instance_id, session_dir):
        if self.fail:
            raise RuntimeError("browser could not start")
        handle = FakeHandle(instance_id, session_dir)
        self.handles.append(handle)
        return handle

    def latest(self, instance_id):
        for handle in reversed(self.handles):
            if handle.instance_id == instance_id:
                return handle
        return None


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch, client_factory):
    runtime_dir = tmp_path_factory.mktemp("runtime")
    monkeypatch.setenv("DATA_DIR", str(runtime_dir / "data"))
    monkeypatch.setenv("SESSIONS_DIR", str(runtime_dir / "sessions"))
    runtime = reset_runtime_for_tests(client_factory=client_factory)
    yield runtime
    # a test may have overridden ENVIRONMENT through the shared monkeypatch
    monkeypatch.setenv("ENVIRONMENT", "test")
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
