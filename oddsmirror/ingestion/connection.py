"""Streaming connection lifecycle as plain data.

The transport loop asks these functions what to do next; nothing here touches
a socket, so every transition is testable on its own.
"""
from dataclasses import dataclass, replace
from enum import Enum

from ..settings import settings


class StreamExhaustedError(RuntimeError):
    """Reconnect attempts ran out; the process should exit and be restarted."""


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    max_attempts: int = 10

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.WS_RECONNECT_BASE_SECONDS,
            max_seconds=settings.WS_RECONNECT_MAX_SECONDS,
            max_attempts=settings.WS_RECONNECT_MAX_ATTEMPTS,
        )

    def delay_for(self, attempts: int) -> float:
        return min(self.base_seconds * (2 ** max(attempts, 0)), self.max_seconds)


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempts: int = 0
    subscribed_tokens: frozenset[str] = frozenset()
    last_error: str | None = None


def on_connect_started(state: ConnectionState) -> ConnectionState:
    return replace(state, status=ConnectionStatus.CONNECTING)


def on_connected(state: ConnectionState) -> ConnectionState:
    return replace(state, status=ConnectionStatus.CONNECTED, attempts=0, last_error=None)


def on_subscribed(state: ConnectionState, token_ids) -> ConnectionState:
    return replace(state, subscribed_tokens=frozenset(token_ids))


def on_disconnected(state: ConnectionState, error: str | None = None) -> ConnectionState:
    """Every drop counts against the reconnect budget until a connect succeeds."""
    return replace(
        state,
        status=ConnectionStatus.DISCONNECTED,
        attempts=state.attempts + 1,
        subscribed_tokens=frozenset(),
        last_error=error,
    )


def next_delay(state: ConnectionState, policy: BackoffPolicy) -> float:
    """Seconds to wait before the next connect; raises once the budget is spent."""
    if state.status is not ConnectionStatus.DISCONNECTED:
        return 0.0
    if state.attempts > policy.max_attempts:
        raise StreamExhaustedError(
            f"gave up after {state.attempts - 1} reconnect attempts: {state.last_error}"
        )
    if state.attempts == 0:
        return 0.0
    return policy.delay_for(state.attempts - 1)


def needs_resubscribe(state: ConnectionState, token_ids) -> bool:
    return state.status is ConnectionStatus.CONNECTED and state.subscribed_tokens != frozenset(token_ids)
