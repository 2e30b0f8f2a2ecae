"""Contract for the messaging-network client each instance drives.

The network client itself lives outside this package. A deployment points
``MESSAGING_CLIENT_FACTORY`` at a ``module:attribute`` callable that builds a
``ConnectionHandle`` for one instance and its session directory.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol

from flowbridge.service.errors import InitializationError

EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_AUTH_FAILURE = "auth_failure"
EVENT_READY = "ready"
EVENT_DISCONNECTED = "disconnected"
EVENT_MESSAGE = "message"


@dataclass
class InboundMessage:
    id: str
    from_id: str
    body: str
    author: Optional[str] = None
    is_group: bool = False
    mentions: List[str] = field(default_factory=list)
    from_me: bool = False
    sender_name: Optional[str] = None
    message_type: str = "chat"

    @property
    def sender_id(self) -> str:
        """The individual who wrote the message (the author inside groups)."""
        return self.author or self.from_id


@dataclass
class SentMessage:
    id: str


class ConnectionHandle(Protocol):
    own_id: Optional[str]

    def on(self, event: str, callback: Callable[..., Any]) -> None: ...

    async def connect(self) -> None: ...

    async def send_message(self, chat_id: str, text: str) -> SentMessage: ...

    async def send_typing(self, chat_id: str) -> None: ...

    async def get_state(self) -> Optional[str]: ...

    async def destroy(self) -> None: ...


ClientFactory = Callable[[str, Path], ConnectionHandle]


def load_client_factory(path: Optional[str]) -> ClientFactory:
    """Resolve a ``package.module:attribute`` string to a client factory."""
    if not path:
        raise InitializationError("No messaging client factory is configured")
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise InitializationError(
            f"Invalid messaging client factory {path!r}; expected 'module:attribute'"
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise InitializationError(
            f"Unable to load messaging client factory {path!r}"
        ) from exc
    if not callable(factory):
        raise InitializationError(f"Messaging client factory {path!r} is not callable")
    return factory
