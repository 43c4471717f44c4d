"""
History sync scheduler.

Three ways of pulling older messages out of a live handle, all funnelled
through the ingest pipeline:

- load_history: on-demand backfill for the conversation a user has open,
  only when the local store has too little to show.
- sync_selected: bulk import of chosen conversations, paced by a fixed
  delay between chats so the account is not flagged for automation.
- catch_up: bounded scan of the most recent chats right after a handle
  first connects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Optional

from sqlalchemy.orm import sessionmaker

from chatsync.errors import InvalidRequestError, NotReadyError, SessionNotFoundError
from chatsync.ingest import MessageIngestor
from chatsync.logging_utils import bind_session
from chatsync.metrics import record_history_fetch
from chatsync.notifier import SYNC_COMPLETE, SYNC_PROGRESS, SYNC_STATUS, EventNotifier
from chatsync.sessions import SessionManager, SessionRuntime, SessionState
from chatsync.storage import (
    SessionLocal,
    get_contact,
    get_contact_messages,
    get_latest_timestamp,
    get_session_by_name,
)
from chatsync.utils import is_group_or_broadcast, normalize_phone, to_chat_id

logger = logging.getLogger(__name__)

# Values of SessionRuntime.sync_owner
BULK = "bulk"
CATCH_UP = "catch-up"


class HistorySync:
    def __init__(
        self,
        manager: SessionManager,
        ingestor: MessageIngestor,
        notifier: EventNotifier,
        session_factory: sessionmaker = SessionLocal,
        *,
        min_local_messages: int = 5,
        fetch_batch: int = 50,
        default_limit: int = 20,
        per_chat_limit: int = 10,
        inter_chat_delay_ms: int = 400,
        sync_all_limit: int = 50,
        catchup_max_chats: int = 15,
        catchup_per_chat: int = 10,
        catchup_delay_ms: int = 200,
    ) -> None:
        self._manager = manager
        self._ingestor = ingestor
        self._notifier = notifier
        self._session_factory = session_factory
        self._min_local_messages = min_local_messages
        self._fetch_batch = fetch_batch
        self.default_limit = default_limit
        self._per_chat_limit = per_chat_limit
        self._inter_chat_delay_ms = inter_chat_delay_ms
        self._sync_all_limit = sync_all_limit
        self._catchup_max_chats = catchup_max_chats
        self._catchup_per_chat = catchup_per_chat
        self._catchup_delay_ms = catchup_delay_ms

        if catchup_max_chats > 0:
            manager.add_first_ready_hook(self.catch_up)

    def _still_current(self, runtime: SessionRuntime) -> bool:
        """False once the session was deleted, disconnected or restarted."""
        return runtime.is_live and self._manager.registry.get(runtime.name) is runtime

    def _owns_sync(self, runtime: SessionRuntime, owner: str) -> bool:
        return runtime.sync_owner == owner and self._still_current(runtime)

    def _release_sync(self, runtime: SessionRuntime, owner: str) -> None:
        """Hand SYNCING back as CONNECTED, unless another flow took it over."""
        if runtime.sync_owner != owner:
            return
        runtime.sync_owner = None
        if self._still_current(runtime):
            self._manager.transition(runtime, SessionState.CONNECTED)

    # =========================================================================
    # On-demand backfill
    # =========================================================================

    async def load_history(
        self,
        session_name: str,
        contact_number: str,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> list:
        """
        Messages of one conversation, oldest first.

        Reads the store first. If it holds fewer than min_local_messages
        (or fewer than limit, when limit is smaller) and the session is live,
        one batch is fetched from the handle, ingested, and the store is
        read again. limit defaults to default_limit.
        """
        if limit is None:
            limit = self.default_limit
        phone_number = normalize_phone(contact_number)
        if phone_number is None:
            raise InvalidRequestError("contactId must contain digits")
        if limit < 1:
            raise InvalidRequestError("limit must be at least 1")

        messages = self._query_local(session_name, phone_number, limit, before_id)
        threshold = min(self._min_local_messages, limit)

        if len(messages) < threshold:
            runtime = self._manager.registry.get(session_name)
            if runtime is not None and runtime.is_live:
                logger.info(
                    f"[{session_name}] Only {len(messages)} local messages for {phone_number}, "
                    f"fetching {self._fetch_batch} from handle"
                )
                await self._backfill(runtime, phone_number)
                messages = self._query_local(session_name, phone_number, limit, before_id)

        messages.reverse()
        return messages

    def _query_local(self, session_name: str, phone_number: str, limit: int, before_id: Optional[str]) -> list:
        with self._session_factory() as db:
            record = get_session_by_name(db, session_name)
            if record is None:
                raise SessionNotFoundError(session_name)
            contact = get_contact(db, record.id, phone_number)
            if contact is None:
                return []
            return get_contact_messages(db, record.id, contact.id, limit, before_id)

    async def _backfill(self, runtime: SessionRuntime, phone_number: str) -> int:
        chat_id = to_chat_id(phone_number)
        try:
            await runtime.handle.sync_history(chat_id)
        except Exception as e:
            logger.warning(f"[{runtime.name}] sync_history failed for {chat_id}: {e}")

        record_history_fetch("on_demand")
        try:
            raws = await runtime.handle.fetch_messages(chat_id, self._fetch_batch)
        except Exception:
            logger.exception(f"[{runtime.name}] History fetch failed for {chat_id}")
            return 0

        stored = sum(1 for raw in raws if self._ingestor.ingest(runtime.name, raw))
        logger.info(f"[{runtime.name}] Backfilled {stored}/{len(raws)} messages for {chat_id}")
        return stored

    # =========================================================================
    # Bulk import of selected conversations
    # =========================================================================

    def sync_selected(
        self,
        session_name: str,
        contact_ids: Sequence[str],
        per_chat_limit: Optional[int] = None,
        inter_chat_delay_ms: Optional[int] = None,
    ) -> asyncio.Task:
        """
        Start a bulk import in the background and return its task.

        The session moves to SYNCING before this returns, so a second bulk
        request for the same session is refused until the batch ends. A
        running startup catch-up is not a reason to refuse: the batch takes
        SYNCING over and the catch-up stops before its next chat.
        Progress is reported through the notifier.
        """
        runtime = self._manager.require_live(session_name)
        if runtime.state is SessionState.SYNCING:
            if runtime.sync_owner != CATCH_UP:
                raise NotReadyError(f"session '{session_name}' is already syncing")
            logger.info(f"[{session_name}] Bulk sync takes over from startup catch-up")
        elif not self._manager.transition(runtime, SessionState.SYNCING):
            raise NotReadyError(f"session '{session_name}' cannot start a sync now")
        runtime.sync_owner = BULK

        limit = per_chat_limit or self._per_chat_limit
        delay_ms = self._inter_chat_delay_ms if inter_chat_delay_ms is None else inter_chat_delay_ms
        return self._manager.spawn(
            self._run_bulk(runtime, list(contact_ids or []), limit, delay_ms),
            name=f"sync:{session_name}",
        )

    async def _run_bulk(self, runtime: SessionRuntime, contact_ids: list[str], limit: int, delay_ms: int) -> None:
        name = runtime.name
        bind_session(name)
        try:
            targets = await self._resolve_targets(runtime, contact_ids)
            total = len(targets)
            logger.info(f"[{name}] Bulk sync of {total} chats, {limit} messages each, {delay_ms}ms apart")

            for index, (phone_number, chat_name) in enumerate(targets, start=1):
                if index > 1:
                    await asyncio.sleep(delay_ms / 1000)
                if not self._still_current(runtime):
                    logger.info(f"[{name}] Session gone, stopping bulk sync at chat {index}/{total}")
                    return

                self._notifier.publish(SYNC_STATUS, name, {"current": index, "total": total, "chatName": chat_name})
                try:
                    count = await self._import_chat(runtime, phone_number, limit)
                    logger.info(f"[{name}] Chat {index}/{total} ({phone_number}): {count} messages")
                except Exception:
                    logger.exception(f"[{name}] Sync failed for chat {phone_number}, moving on")

            if self._still_current(runtime):
                self._notifier.publish(SYNC_COMPLETE, name, {})
                logger.info(f"[{name}] Bulk sync complete")
        except Exception:
            logger.exception(f"[{name}] Bulk sync aborted")
        finally:
            self._release_sync(runtime, BULK)

    async def _resolve_targets(self, runtime: SessionRuntime, contact_ids: list[str]) -> list[tuple[str, str]]:
        """(phone number, display name) pairs, in request order, duplicates dropped."""
        if not contact_ids:
            chats = await runtime.handle.get_chats()
            targets = []
            for chat in chats:
                if chat.is_group or is_group_or_broadcast(chat.id):
                    continue
                phone_number = normalize_phone(chat.id)
                if phone_number is not None:
                    targets.append((phone_number, chat.name or phone_number))
                if len(targets) >= self._sync_all_limit:
                    break
            return targets

        seen = set()
        targets = []
        with self._session_factory() as db:
            record = get_session_by_name(db, runtime.name)
            for raw_id in contact_ids:
                phone_number = normalize_phone(raw_id)
                if phone_number is None or phone_number in seen:
                    continue
                seen.add(phone_number)
                contact = get_contact(db, record.id, phone_number) if record is not None else None
                chat_name = (contact.display_name if contact is not None else None) or phone_number
                targets.append((phone_number, chat_name))
        return targets

    async def _import_chat(self, runtime: SessionRuntime, phone_number: str, limit: int) -> int:
        chat_id = to_chat_id(phone_number)
        try:
            await runtime.handle.sync_history(chat_id)
        except Exception as e:
            logger.debug(f"[{runtime.name}] sync_history failed for {chat_id}: {e}")

        record_history_fetch("bulk")
        raws = await runtime.handle.fetch_messages(chat_id, limit)

        count = 0
        for raw in raws:
            if not self._still_current(runtime):
                break
            if self._ingestor.ingest(runtime.name, raw):
                count += 1
                self._notifier.publish(SYNC_PROGRESS, runtime.name, {"count": count})
        return count

    # =========================================================================
    # Startup catch-up
    # =========================================================================

    async def catch_up(self, runtime: SessionRuntime) -> int:
        """
        Pull the newest few messages of the most recent chats.

        Only messages strictly newer than the latest stored timestamp of the
        session are ingested; this is not a full history import. A bulk sync
        requested meanwhile takes SYNCING over, and the catch-up stops at its
        next step.
        """
        name = runtime.name
        bind_session(name)
        if not self._still_current(runtime):
            return 0
        if not self._manager.transition(runtime, SessionState.SYNCING):
            logger.info(f"[{name}] Skipping catch-up, session busy")
            return 0
        runtime.sync_owner = CATCH_UP

        stored = 0
        try:
            with self._session_factory() as db:
                record = get_session_by_name(db, name)
                if record is None:
                    return 0
                last_known = get_latest_timestamp(db, record.id)

            chats = await runtime.handle.get_chats()
            recent = chats[: self._catchup_max_chats]
            logger.info(f"[{name}] Catch-up over {len(recent)} of {len(chats)} chats, after ts={last_known}")

            for chat in recent:
                if not self._owns_sync(runtime, CATCH_UP):
                    logger.info(f"[{name}] Catch-up stopped after {stored} messages")
                    return stored
                if chat.is_group or is_group_or_broadcast(chat.id):
                    continue

                record_history_fetch("catch_up")
                try:
                    raws = await runtime.handle.fetch_messages(chat.id, self._catchup_per_chat)
                    for raw in raws:
                        if not self._owns_sync(runtime, CATCH_UP):
                            break
                        if raw.timestamp is None or int(raw.timestamp) <= last_known:
                            continue
                        if self._ingestor.ingest(name, raw):
                            stored += 1
                except Exception:
                    logger.exception(f"[{name}] Catch-up failed for chat {chat.id}")

                await asyncio.sleep(self._catchup_delay_ms / 1000)

            logger.info(f"[{name}] Catch-up stored {stored} messages")
            return stored
        finally:
            self._release_sync(runtime, CATCH_UP)
