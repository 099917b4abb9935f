from __future__ import annotations

from chat_gateway.core.errors import IllegalTransition
from chat_gateway.core.models import ConnectionStatus

S = ConnectionStatus

# Same-state moves are handled by the caller as no-ops (a refreshed credential keeps
# the connection in AUTHENTICATING).
TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    S.DISCONNECTED: frozenset({S.CONNECTING, S.ERROR}),
    S.CONNECTING: frozenset({S.AUTHENTICATING, S.AUTHENTICATED, S.DISCONNECTED, S.ERROR, S.BLOCKED, S.MAINTENANCE}),
    S.AUTHENTICATING: frozenset({S.AUTHENTICATED, S.DISCONNECTED, S.ERROR}),
    S.AUTHENTICATED: frozenset({S.DISCONNECTED, S.ERROR, S.BLOCKED, S.MAINTENANCE}),
    S.ERROR: frozenset({S.CONNECTING, S.DISCONNECTED}),
    S.BLOCKED: frozenset({S.CONNECTING, S.DISCONNECTED, S.ERROR}),
    S.MAINTENANCE: frozenset({S.CONNECTING, S.DISCONNECTED, S.ERROR}),
}

EXTERNAL_COMMAND_STATES = frozenset({S.BLOCKED, S.MAINTENANCE})


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    return target == current or target in TRANSITIONS.get(current, frozenset())


def check_transition(current: ConnectionStatus, target: ConnectionStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(
            f"illegal status transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )


def reconnect_delay(base_seconds: float, attempt: int, cap_seconds: float = 300.0) -> float:
    """Exponential backoff for the ``attempt``-th scheduled reconnect (1-based)."""
    exponent = max(0, attempt - 1)
    # Avoid float overflow on absurd attempt counts; the cap wins long before.
    if exponent > 64:
        return cap_seconds
    return min(base_seconds * (2**exponent), cap_seconds)
