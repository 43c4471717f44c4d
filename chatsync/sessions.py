"""
Session registry and lifecycle controller.

Each live session owns one client handle and one consumer task. The handle's
listeners only enqueue; the consumer drains the queue in order, so a session's
state transitions happen one at a time and in the order the handle emitted
them. Across sessions everything runs concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from chatsync.aio import cancel_suppress, ensure_task, logged
from chatsync.errors import InvalidRequestError, NotReadyError
from chatsync.handles import (
    EVENT_AUTHENTICATED,
    EVENT_DISCONNECTED,
    EVENT_MESSAGE,
    EVENT_QR,
    EVENT_READY,
    ClientHandle,
    Provider,
)
from chatsync.ingest import MessageIngestor
from chatsync.logging_utils import bind_session
from chatsync.metrics import record_transition, set_active_sessions
from chatsync.notifier import DISCONNECTED, PAIRING_READY, READY, EventNotifier
from chatsync.storage import SessionLocal, delete_session, ensure_session, list_sessions, update_session_status
from chatsync.utils import client_id_for, is_group_or_broadcast, normalize_phone, render_pairing_code, to_chat_id

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    QR_READY = "QR_READY"
    CONNECTED = "CONNECTED"
    SYNCING = "SYNCING"
    DISCONNECTED = "DISCONNECTED"


# DISCONNECTED has no exits: only a fresh start() creates a new runtime
ALLOWED_TRANSITIONS = {
    SessionState.INITIALIZING: {SessionState.QR_READY, SessionState.CONNECTED, SessionState.DISCONNECTED},
    SessionState.QR_READY: {SessionState.QR_READY, SessionState.CONNECTED, SessionState.DISCONNECTED},
    SessionState.CONNECTED: {SessionState.SYNCING, SessionState.DISCONNECTED},
    SessionState.SYNCING: {SessionState.CONNECTED, SessionState.DISCONNECTED},
    SessionState.DISCONNECTED: set(),
}

LIVE_STATES = frozenset({SessionState.CONNECTED, SessionState.SYNCING})

# Persisted statuses that mean "was live when the process went away"
RESTORABLE_STATES = (SessionState.CONNECTED.value, SessionState.SYNCING.value)

_STOP = object()


@dataclass
class StartResult:
    success: bool
    session_name: str
    status: Optional[str] = None
    pairing: Optional[str] = None
    error: Optional[str] = None
    already_running: bool = False


@dataclass
class Conversation:
    id: str
    phone_number: str
    display_name: Optional[str]
    unread_count: int
    last_activity: Optional[int]


@dataclass(eq=False)
class SessionRuntime:
    """In-memory state of one session's live handle."""

    name: str
    first_signal: asyncio.Future
    state: SessionState = SessionState.INITIALIZING
    handle: Optional[ClientHandle] = None
    pairing: Optional[str] = None
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    consumer: Optional[asyncio.Task] = None
    connected_once: bool = False
    closing: bool = False
    # Which flow holds SYNCING ("bulk" or "catch-up"), None otherwise
    sync_owner: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return not self.closing and self.state in LIVE_STATES

    def signal(self, state: SessionState) -> None:
        if not self.first_signal.done():
            self.first_signal.set_result(state)


class SessionRegistry:
    """
    Map of session name -> runtime.

    claim() checks and inserts without awaiting in between, which makes it
    atomic on the event loop: a second start for a name that is still
    initializing sees the first entry and backs off.
    """

    def __init__(self) -> None:
        self._runtimes: dict[str, SessionRuntime] = {}

    def __len__(self) -> int:
        return len(self._runtimes)

    def __contains__(self, name: str) -> bool:
        return name in self._runtimes

    def get(self, name: str) -> Optional[SessionRuntime]:
        return self._runtimes.get(name)

    def names(self) -> list[str]:
        return list(self._runtimes)

    def claim(self, name: str) -> Optional[SessionRuntime]:
        if name in self._runtimes:
            return None
        runtime = SessionRuntime(name=name, first_signal=asyncio.get_running_loop().create_future())
        self._runtimes[name] = runtime
        set_active_sessions(len(self._runtimes))
        return runtime

    def release(self, runtime: SessionRuntime) -> bool:
        """Remove *runtime* if it is still the registered one for its name."""
        if self._runtimes.get(runtime.name) is not runtime:
            return False
        del self._runtimes[runtime.name]
        set_active_sessions(len(self._runtimes))
        return True

    def drain(self) -> list[SessionRuntime]:
        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        set_active_sessions(0)
        return runtimes


ReadyHook = Callable[[SessionRuntime], Awaitable[None]]


class SessionManager:
    def __init__(
        self,
        provider: Provider,
        ingestor: MessageIngestor,
        notifier: EventNotifier,
        session_factory: sessionmaker = SessionLocal,
        *,
        start_timeout: float = 30.0,
        list_chats_limit: int = 100,
        list_chats_delay_ms: int = 20,
    ) -> None:
        self.registry = SessionRegistry()
        self._provider = provider
        self._ingestor = ingestor
        self._notifier = notifier
        self._session_factory = session_factory
        self._start_timeout = start_timeout
        self._list_chats_limit = list_chats_limit
        self._list_chats_delay = list_chats_delay_ms / 1000
        self._ready_hooks: list[ReadyHook] = []
        self._tasks: set[asyncio.Task] = set()

    def add_first_ready_hook(self, hook: ReadyHook) -> None:
        """Run *hook* in the background the first time each handle becomes ready."""
        self._ready_hooks.append(hook)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = ensure_task(logged(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, session_name: str, owner_id: Optional[str] = None, wait: bool = False) -> StartResult:
        """
        Start a session, or do nothing if it already has a live handle.

        With wait=True the call returns once the first pairing code or ready
        event was processed, or fails after start_timeout seconds.
        """
        if not session_name:
            raise InvalidRequestError("sessionName is required")

        runtime = self.registry.claim(session_name)
        if runtime is None:
            existing = self.registry.get(session_name)
            if existing.closing:
                raise NotReadyError(f"session '{session_name}' is being torn down, retry once it is gone")
            logger.info(f"[{session_name}] Already running ({existing.state.value}), start is a no-op")
            return StartResult(
                success=True,
                session_name=session_name,
                status=existing.state.value,
                pairing=existing.pairing,
                already_running=True,
            )

        logger.info(f"[{session_name}] Starting session")
        try:
            with self._session_factory() as db:
                ensure_session(db, session_name, owner_id, SessionState.INITIALIZING.value)
            record_transition(SessionState.INITIALIZING.value)

            runtime.handle = self._provider(client_id_for(session_name), session_name)
            self._attach(runtime)
            runtime.consumer = ensure_task(self._consume(runtime), name=f"session:{session_name}")
            await runtime.handle.initialize()
        except Exception as e:
            logger.exception(f"[{session_name}] Failed to start session")
            await self._abandon(runtime)
            return StartResult(
                success=False,
                session_name=session_name,
                status=SessionState.DISCONNECTED.value,
                error=f"failed to start session: {e}",
            )

        if not wait:
            return StartResult(success=True, session_name=session_name, status=runtime.state.value, pairing=runtime.pairing)

        try:
            state = await asyncio.wait_for(asyncio.shield(runtime.first_signal), timeout=self._start_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{session_name}] No pairing code or ready event within {self._start_timeout}s")
            await self._abandon(runtime)
            return StartResult(
                success=False,
                session_name=session_name,
                status=SessionState.DISCONNECTED.value,
                error=f"timed out after {self._start_timeout}s waiting for pairing code",
            )

        if state is SessionState.DISCONNECTED:
            return StartResult(
                success=False,
                session_name=session_name,
                status=state.value,
                error="session disconnected before it was ready",
            )
        return StartResult(success=True, session_name=session_name, status=state.value, pairing=runtime.pairing)

    async def restore_all(self) -> list[StartResult]:
        """
        Restart every session that was live when the process last stopped.

        Sessions are started concurrently; one failing never holds up the rest.
        """
        try:
            with self._session_factory() as db:
                names = [record.name for record in list_sessions(db, statuses=RESTORABLE_STATES)]
        except Exception:
            logger.exception("Failed to load sessions to restore")
            return []

        if not names:
            logger.info("No sessions to restore")
            return []

        logger.info(f"Restoring {len(names)} sessions: {names}")
        results = await asyncio.gather(*(self._restore_one(name) for name in names))
        restored = sum(1 for result in results if result.success)
        logger.info(f"Restore finished: {restored}/{len(names)} sessions started")
        return list(results)

    async def _restore_one(self, session_name: str) -> StartResult:
        try:
            return await self.start(session_name)
        except Exception as e:
            logger.exception(f"[{session_name}] Restore failed")
            return StartResult(success=False, session_name=session_name, error=str(e))

    async def delete(self, session_name: str) -> bool:
        """
        Sign out and tear down the live handle (best-effort), then delete the
        session row. Store errors propagate to the caller.

        Returns:
            True if a handle or a row existed
        """
        runtime = self.registry.get(session_name)
        # Stays registered until the row is gone; start refuses a closing entry
        owner = runtime is not None and not runtime.closing
        try:
            if owner:
                await self._teardown(runtime, logout=True)
            with self._session_factory() as db:
                existed = delete_session(db, session_name)
        finally:
            if owner:
                self.registry.release(runtime)
        return existed or runtime is not None

    async def shutdown(self) -> None:
        """Tear down every handle without signing out, so restore can resume them."""
        runtimes = self.registry.drain()
        logger.info(f"Shutting down {len(runtimes)} sessions")
        await asyncio.gather(*(self._teardown(runtime, logout=False) for runtime in runtimes))
        for task in list(self._tasks):
            await cancel_suppress(task)

    # =========================================================================
    # State
    # =========================================================================

    def transition(self, runtime: SessionRuntime, new_state: SessionState, **fields: Any) -> bool:
        """
        Move *runtime* to *new_state* and persist it.

        Illegal transitions are refused and logged. Persistence failures are
        logged; the in-memory state still advances so the session keeps
        following its handle.
        """
        if new_state not in ALLOWED_TRANSITIONS[runtime.state]:
            logger.warning(f"[{runtime.name}] Refusing transition {runtime.state.value} -> {new_state.value}")
            return False

        previous = runtime.state
        runtime.state = new_state
        record_transition(new_state.value)
        logger.info(f"[{runtime.name}] {previous.value} -> {new_state.value}")

        try:
            with self._session_factory() as db:
                update_session_status(db, runtime.name, new_state.value, **fields)
        except Exception:
            logger.exception(f"[{runtime.name}] Failed to persist status {new_state.value}")
        return True

    def require_live(self, session_name: str) -> SessionRuntime:
        runtime = self.registry.get(session_name)
        if runtime is None or not runtime.is_live:
            raise NotReadyError(f"session '{session_name}' is not connected")
        return runtime

    # =========================================================================
    # Handle events
    # =========================================================================

    def _attach(self, runtime: SessionRuntime) -> None:
        def enqueue(event: str) -> Callable[..., None]:
            def listener(*args: Any) -> None:
                runtime.events.put_nowait((event, args))

            return listener

        for event in (EVENT_QR, EVENT_AUTHENTICATED, EVENT_READY, EVENT_MESSAGE, EVENT_DISCONNECTED):
            runtime.handle.on(event, enqueue(event))

    async def _consume(self, runtime: SessionRuntime) -> None:
        bind_session(runtime.name)
        while True:
            item = await runtime.events.get()
            if item is _STOP:
                return
            event, args = item
            try:
                await self._dispatch(runtime, event, args)
            except Exception:
                logger.exception(f"[{runtime.name}] Error handling '{event}' event")
            if runtime.state is SessionState.DISCONNECTED:
                return

    async def _dispatch(self, runtime: SessionRuntime, event: str, args: tuple) -> None:
        if runtime.closing:
            return

        if event == EVENT_QR:
            await self._on_qr(runtime, args[0])
        elif event == EVENT_AUTHENTICATED:
            logger.info(f"[{runtime.name}] Authenticated")
        elif event == EVENT_READY:
            await self._on_ready(runtime)
        elif event == EVENT_MESSAGE:
            self._ingestor.ingest(runtime.name, args[0])
        elif event == EVENT_DISCONNECTED:
            await self._on_disconnected(runtime, args[0] if args else None)

    async def _on_qr(self, runtime: SessionRuntime, code: str) -> None:
        logger.info(f"[{runtime.name}] Pairing code received")
        pairing = render_pairing_code(code)
        if not self.transition(runtime, SessionState.QR_READY, pairing_payload=pairing):
            return
        runtime.pairing = pairing
        self._notifier.publish(PAIRING_READY, runtime.name, {"sessionName": runtime.name, "qr": pairing})
        runtime.signal(SessionState.QR_READY)

    async def _on_ready(self, runtime: SessionRuntime) -> None:
        if runtime.state in LIVE_STATES:
            logger.debug(f"[{runtime.name}] Ready while already {runtime.state.value}, ignoring")
            return
        if not self.transition(runtime, SessionState.CONNECTED, pairing_payload=None):
            return
        runtime.pairing = None
        self._notifier.publish(READY, runtime.name, {"sessionName": runtime.name})
        runtime.signal(SessionState.CONNECTED)

        if not runtime.connected_once:
            runtime.connected_once = True
            for hook in self._ready_hooks:
                self.spawn(hook(runtime), name=f"ready-hook:{runtime.name}")

    async def _on_disconnected(self, runtime: SessionRuntime, reason: Optional[str]) -> None:
        reason = reason or "unknown"
        logger.warning(f"[{runtime.name}] Disconnected: {reason}")
        self.transition(runtime, SessionState.DISCONNECTED)
        self.registry.release(runtime)
        runtime.handle.remove_all_listeners()
        runtime.signal(SessionState.DISCONNECTED)
        self._notifier.publish(DISCONNECTED, runtime.name, {"sessionName": runtime.name, "reason": reason})
        try:
            await runtime.handle.destroy()
        except Exception as e:
            logger.info(f"[{runtime.name}] Ignoring destroy failure after disconnect: {e}")

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _abandon(self, runtime: SessionRuntime) -> None:
        """Undo a start that failed or timed out."""
        if runtime.closing:
            # delete() is already tearing it down and will release it
            return
        if runtime.state is not SessionState.DISCONNECTED:
            self.transition(runtime, SessionState.DISCONNECTED)
        try:
            await self._teardown(runtime, logout=False)
        finally:
            self.registry.release(runtime)

    async def _teardown(self, runtime: SessionRuntime, logout: bool) -> None:
        # Flip state before the first await so scheduler steps see it gone
        runtime.closing = True
        if runtime.state is not SessionState.DISCONNECTED:
            runtime.state = SessionState.DISCONNECTED
            record_transition(SessionState.DISCONNECTED.value)
        runtime.signal(SessionState.DISCONNECTED)

        handle = runtime.handle
        if handle is not None:
            if logout:
                try:
                    await handle.logout()
                except Exception as e:
                    logger.warning(f"[{runtime.name}] Logout failed, continuing teardown: {e}")
            try:
                await handle.destroy()
            except Exception as e:
                logger.warning(f"[{runtime.name}] Destroy failed: {e}")
            handle.remove_all_listeners()

        runtime.events.put_nowait(_STOP)
        await cancel_suppress(runtime.consumer)

    # =========================================================================
    # Handle operations
    # =========================================================================

    async def send_message(self, session_name: str, target_number: str, text: str) -> None:
        """
        Send a text message through the live handle.

        No row is written here: the handle echoes the outbound message as a
        "message" event, which the ingest pipeline stores.
        """
        phone_number = normalize_phone(target_number)
        if phone_number is None:
            raise InvalidRequestError("targetNumber must contain digits")
        if not text:
            raise InvalidRequestError("text is required")

        runtime = self.require_live(session_name)
        logger.info(f"[{session_name}] Sending message to {phone_number}")
        await runtime.handle.send_message(to_chat_id(phone_number), text)

    async def list_conversations(self, session_name: str) -> list[Conversation]:
        """One-to-one chats of a live session, most recently active first."""
        runtime = self.require_live(session_name)
        chats = await runtime.handle.get_chats()
        private = [chat for chat in chats if not chat.is_group and not is_group_or_broadcast(chat.id)]
        private = private[: self._list_chats_limit]

        conversations = []
        for index, chat in enumerate(private):
            try:
                phone_number = normalize_phone(chat.id)
                if phone_number is None:
                    continue
                conversations.append(
                    Conversation(
                        id=phone_number,
                        phone_number=phone_number,
                        display_name=chat.name,
                        unread_count=chat.unread_count or 0,
                        last_activity=chat.timestamp,
                    )
                )
            except Exception as e:
                logger.warning(f"[{session_name}] Skipping chat {getattr(chat, 'id', None)}: {e}")
            if self._list_chats_delay and index < len(private) - 1:
                await asyncio.sleep(self._list_chats_delay)

        conversations.sort(key=lambda c: c.last_activity or 0, reverse=True)
        return conversations
