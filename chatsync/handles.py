"""
Contract between the session service and the messaging-client engine.

A provider is any callable ``provider(client_id, session_name) -> ClientHandle``.
The handle is an async event emitter; the service registers listeners for
``qr``, ``authenticated``, ``ready``, ``message`` and ``disconnected`` before
calling ``initialize()``.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from chatsync.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

Listener = Callable[..., Awaitable[None]] | Callable[..., None]

EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_READY = "ready"
EVENT_MESSAGE = "message"
EVENT_DISCONNECTED = "disconnected"


@dataclass(slots=True)
class RawMessage:
    """
    A message as surfaced by the client engine, inbound or outbound.

    Any field may be missing on malformed events; the ingest pipeline
    drops what it cannot place.
    """

    id: Optional[str] = None
    type: Optional[str] = None
    body: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    from_me: bool = False
    timestamp: Optional[int] = None
    notify_name: Optional[str] = None


@dataclass(slots=True)
class ChatInfo:
    id: str
    name: Optional[str] = None
    is_group: bool = False
    unread_count: int = 0
    timestamp: Optional[int] = None


class ClientHandle(ABC):
    """
    One live connection for one session.

    - `on(event, fn)` registers a listener (sync or async).
    - `emit(event, *args)` is called by the engine implementation.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    async def emit(self, event: str, *args: Any) -> bool:
        any_triggered = False
        for listener in list(self._listeners.get(event, [])):
            any_triggered = True
            res = listener(*args)
            if asyncio.iscoroutine(res):
                await res
        return any_triggered

    @abstractmethod
    async def initialize(self) -> None:
        """Open the connection; pairing/ready arrive as events."""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device from the account."""

    @abstractmethod
    async def destroy(self) -> None:
        """Tear down the connection, keeping stored credentials."""

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> None: ...

    @abstractmethod
    async def get_chats(self) -> list[ChatInfo]:
        """Chats ordered most recently active first."""

    @abstractmethod
    async def fetch_messages(self, chat_id: str, limit: int) -> list[RawMessage]:
        """Up to *limit* newest messages of a chat."""

    async def sync_history(self, chat_id: str) -> None:
        """Ask the device to page older history into the client; optional."""
        return None


Provider = Callable[[str, str], ClientHandle]


def _unconfigured_provider(client_id: str, session_name: str) -> ClientHandle:
    raise ProviderUnavailableError("no client provider configured (set CLIENT_PROVIDER)")


def load_provider(path: Optional[str]) -> Provider:
    """
    Resolve a "package.module:callable" path to a provider.

    An empty path yields a provider that always fails, so the service still
    boots and reports a readable reason on every start.
    """
    if not path:
        logger.warning("CLIENT_PROVIDER not set, sessions cannot be started")
        return _unconfigured_provider

    module_name, _, attr = path.partition(":")
    if not attr:
        raise ProviderUnavailableError(f"CLIENT_PROVIDER must look like 'module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        provider = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ProviderUnavailableError(f"cannot load client provider {path!r}: {e}") from e
    logger.info(f"Client provider loaded: {path}")
    return provider
