"""Connection lifecycle as a pure state machine.

``transition`` maps the current state and one connection event to the next
state plus the side effects the instance manager must carry out. Nothing here
performs I/O, so every path can be exercised without a live connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union


class LifecycleState(str, Enum):
    CREATED = "CREATED"
    INITIALIZING = "INITIALIZING"
    WAITING_FOR_QR_SCAN = "WAITING_FOR_QR_SCAN"
    AUTHENTICATED = "AUTHENTICATED"
    CONNECTED = "CONNECTED"
    AUTH_FAILURE = "AUTH_FAILURE"
    DISCONNECTED = "DISCONNECTED"
    DESTROYED = "DESTROYED"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    ERROR = "ERROR"


# Events


@dataclass(frozen=True)
class QrReceived:
    code: str


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class AuthFailed:
    message: str = ""


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class Reconnect:
    """The pending reconnect timer fired."""


LifecycleEvent = Union[
    QrReceived, Authenticated, AuthFailed, Ready, Disconnected, Reconnect
]


# Effects


@dataclass(frozen=True)
class SavePairingCode:
    code: str


@dataclass(frozen=True)
class DeletePairingCode:
    pass


@dataclass(frozen=True)
class PersistStatus:
    state: LifecycleState


@dataclass(frozen=True)
class ScheduleReconnect:
    delay: float


Effect = Union[SavePairingCode, DeletePairingCode, PersistStatus, ScheduleReconnect]


@dataclass(frozen=True)
class Transition:
    state: LifecycleState
    effects: Tuple[Effect, ...] = ()


# States in which connection events no longer apply until an explicit restart.
TERMINAL_STATES = frozenset({LifecycleState.DESTROYED, LifecycleState.AUTH_FAILURE})


def transition(
    state: LifecycleState, event: LifecycleEvent, *, reconnect_delay: float = 5.0
) -> Transition:
    if state in TERMINAL_STATES:
        return Transition(state)

    if isinstance(event, QrReceived):
        target = LifecycleState.WAITING_FOR_QR_SCAN
        return Transition(target, (SavePairingCode(event.code), PersistStatus(target)))
    if isinstance(event, Authenticated):
        target = LifecycleState.AUTHENTICATED
        return Transition(target, (PersistStatus(target),))
    if isinstance(event, AuthFailed):
        target = LifecycleState.AUTH_FAILURE
        return Transition(target, (PersistStatus(target),))
    if isinstance(event, Ready):
        target = LifecycleState.CONNECTED
        return Transition(target, (DeletePairingCode(), PersistStatus(target)))
    if isinstance(event, Disconnected):
        if state == LifecycleState.DISCONNECTED:
            # a reconnect is already pending
            return Transition(state)
        target = LifecycleState.DISCONNECTED
        return Transition(
            target, (PersistStatus(target), ScheduleReconnect(reconnect_delay))
        )
    if isinstance(event, Reconnect):
        if state != LifecycleState.DISCONNECTED:
            return Transition(state)
        target = LifecycleState.INITIALIZING
        return Transition(target, (PersistStatus(target),))
    return Transition(state)
