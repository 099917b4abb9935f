from __future__ import annotations

from datetime import datetime, timezone
import importlib
from typing import Callable, Protocol
from uuid import uuid4

from chat_gateway.core.errors import ConfigurationError
from chat_gateway.core.models import (
    ClientEvent,
    ClientEventType,
    MessagePayload,
    SendReceipt,
)

EventSink = Callable[[ClientEvent], None]


class AutomationClient(Protocol):
    """Adapter around whatever actually speaks the chat-network protocol.

    Lifecycle events are pushed through the ``EventSink`` the factory received; the
    registry feeds them to the connection's actor in arrival order.
    """

    async def initialize(self) -> None:
        ...

    async def send(self, recipient: str, payload: MessagePayload) -> SendReceipt:
        ...

    async def destroy(self) -> None:
        ...


ClientFactory = Callable[[str, EventSink], AutomationClient]


class LoopbackAutomationClient:
    """Development client: authenticates immediately and echoes every send."""

    def __init__(self, connection_id: str, emit: EventSink) -> None:
        self.connection_id = connection_id
        self.emit = emit
        self.initialized = False
        self.sent: list[tuple[str, MessagePayload]] = []

    async def initialize(self) -> None:
        self.initialized = True
        self.emit(
            ClientEvent(
                type=ClientEventType.CREDENTIAL_CHALLENGE,
                data={"credential": f"loopback:{self.connection_id}:{uuid4().hex}"},
            )
        )
        self.emit(ClientEvent(type=ClientEventType.READY, data={"account": self.connection_id}))

    async def send(self, recipient: str, payload: MessagePayload) -> SendReceipt:
        self.sent.append((recipient, payload))
        message_id = uuid4().hex
        self.emit(ClientEvent(type=ClientEventType.MESSAGE_ACK, data={"message_id": message_id, "ack": "delivered"}))
        return SendReceipt(
            message_id=message_id,
            recipient=recipient,
            connection_id=self.connection_id,
            timestamp=datetime.now(timezone.utc),
        )

    async def destroy(self) -> None:
        self.initialized = False


def build_client_factory(name: str) -> ClientFactory:
    """Resolve ``loopback`` or a ``package.module:attribute`` factory reference."""
    text = name.strip()
    if text.lower() == "loopback":
        return LoopbackAutomationClient
    if ":" not in text:
        raise ConfigurationError(f"unsupported automation client: {name!r}")
    module_name, attr = text.split(":", 1)
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"cannot load automation client {name!r}: {exc}") from exc
    if not callable(factory):
        raise ConfigurationError(f"automation client {name!r} is not callable")
    return factory
