"""
Tests for the history sync scheduler.

Tests cover:
- On-demand backfill threshold and ordering
- Bulk import of selected chats: events, pacing, partial failures
- Deleting a session mid-sync
- Startup catch-up cutoff and caps
"""

import asyncio

import pytest
import pytest_asyncio

from chatsync.errors import InvalidRequestError, NotReadyError, SessionNotFoundError
from chatsync.handles import ChatInfo
from chatsync.history import HistorySync
from chatsync.models import Message
from chatsync.sessions import SessionManager, SessionState
from chatsync.storage import SessionLocal
from tests.fakes import chat_history, make_raw, wait_until


CONTACT_A = "905551111111"
CONTACT_B = "905552222222"
CHAT_A = f"{CONTACT_A}@c.us"
CHAT_B = f"{CONTACT_B}@c.us"


@pytest_asyncio.fixture
async def manager(provider, ingestor, notifier):
    provider.on_init = "ready"
    manager = SessionManager(provider, ingestor, notifier, SessionLocal, start_timeout=1.0)
    yield manager
    await manager.shutdown()


@pytest.fixture
def history(manager, ingestor, notifier):
    return HistorySync(manager, ingestor, notifier, SessionLocal, inter_chat_delay_ms=0, catchup_max_chats=0)


async def connect(manager, provider, name="s1", chats=None, history=None):
    provider.chats = chats
    provider.history = history
    result = await manager.start(name, wait=True)
    assert result.success and result.status == "CONNECTED"
    return provider.handles[name]


class TestLoadHistory:
    @pytest.mark.asyncio
    async def test_four_local_messages_trigger_one_fetch(self, manager, provider, history, ingestor):
        handle = await connect(manager, provider, history={CHAT_A: chat_history(CONTACT_A, 8)})
        for raw in chat_history(CONTACT_A, 4):
            ingestor.ingest("s1", raw)

        messages = await history.load_history("s1", CONTACT_A, limit=20)

        assert handle.fetch_calls == [(CHAT_A, 50)]
        assert handle.sync_history_calls == [CHAT_A]
        assert len(messages) == 8

    @pytest.mark.asyncio
    async def test_five_local_messages_trigger_no_fetch(self, manager, provider, history, ingestor):
        handle = await connect(manager, provider, history={CHAT_A: chat_history(CONTACT_A, 8)})
        for raw in chat_history(CONTACT_A, 5):
            ingestor.ingest("s1", raw)

        messages = await history.load_history("s1", CONTACT_A, limit=20)

        assert handle.fetch_calls == []
        assert len(messages) == 5

    @pytest.mark.asyncio
    async def test_results_are_oldest_first(self, manager, provider, history, ingestor):
        await connect(manager, provider)
        for raw in reversed(chat_history(CONTACT_A, 7)):
            ingestor.ingest("s1", raw)

        messages = await history.load_history("s1", CONTACT_A, limit=3)

        timestamps = [m.timestamp for m in messages]
        assert timestamps == sorted(timestamps)
        assert [m.external_id for m in messages] == [f"{CONTACT_A}-4", f"{CONTACT_A}-5", f"{CONTACT_A}-6"]

    @pytest.mark.asyncio
    async def test_before_id_pages_backwards(self, manager, provider, history, ingestor):
        await connect(manager, provider)
        for raw in chat_history(CONTACT_A, 10):
            ingestor.ingest("s1", raw)

        messages = await history.load_history("s1", CONTACT_A, limit=5, before_id=f"{CONTACT_A}-5")

        assert [m.external_id for m in messages] == [f"{CONTACT_A}-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_no_handle_means_store_only(self, history, make_session, ingestor):
        make_session("offline", status="DISCONNECTED")
        ingestor.ingest("offline", make_raw("m1", sender=CHAT_A))

        messages = await history.load_history("offline", CONTACT_A)

        assert [m.external_id for m in messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_fetch_failure_falls_back_to_store(self, manager, provider, history, ingestor):
        handle = await connect(manager, provider)
        handle.fetch_errors.add(CHAT_A)
        ingestor.ingest("s1", make_raw("m1", sender=CHAT_A))

        messages = await history.load_history("s1", CONTACT_A)

        assert len(handle.fetch_calls) == 1
        assert [m.external_id for m in messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, history, db_tables):
        with pytest.raises(SessionNotFoundError):
            await history.load_history("missing", CONTACT_A)

    @pytest.mark.asyncio
    async def test_contact_without_digits(self, history, db_tables):
        with pytest.raises(InvalidRequestError):
            await history.load_history("s1", "abc")


class TestSyncSelected:
    @pytest.mark.asyncio
    async def test_two_chats_emit_status_progress_and_complete(self, manager, provider, notifier, ingestor):
        await connect(manager, provider, history={
            CHAT_A: chat_history(CONTACT_A, 3),
            CHAT_B: chat_history(CONTACT_B, 2),
        })
        history = HistorySync(manager, ingestor, notifier, SessionLocal, catchup_max_chats=0)

        task = history.sync_selected("s1", [CONTACT_A, CONTACT_B], per_chat_limit=10, inter_chat_delay_ms=200)
        await task

        sync_events = [e for e in notifier.published if e[0].startswith("sync-")]
        topics = [e[0] for e in sync_events]
        assert topics == [
            "sync-status", "sync-progress", "sync-progress", "sync-progress",
            "sync-status", "sync-progress", "sync-progress",
            "sync-complete",
        ]
        assert sync_events[0][2] == {"current": 1, "total": 2, "chatName": CONTACT_A}
        assert sync_events[4][2] == {"current": 2, "total": 2, "chatName": CONTACT_B}
        assert [e[2]["count"] for e in sync_events if e[0] == "sync-progress"] == [1, 2, 3, 1, 2]

        last_progress_a = sync_events[3][3]
        first_status_b = sync_events[4][3]
        assert first_status_b - last_progress_a >= 0.19

    @pytest.mark.asyncio
    async def test_messages_persisted_and_state_restored(self, manager, provider, history, db):
        await connect(manager, provider, history={CHAT_A: chat_history(CONTACT_A, 4)})

        task = history.sync_selected("s1", [CHAT_A], per_chat_limit=2)
        assert manager.registry.get("s1").state is SessionState.SYNCING
        await task

        assert db.query(Message).count() == 2
        assert manager.registry.get("s1").state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_chat_does_not_abort_batch(self, manager, provider, history, notifier, db):
        handle = await connect(manager, provider, history={CHAT_B: chat_history(CONTACT_B, 2)})
        handle.fetch_errors.add(CHAT_A)

        await history.sync_selected("s1", [CONTACT_A, CONTACT_B])

        assert notifier.topics().count("sync-status") == 2
        assert notifier.topics()[-1] == "sync-complete"
        assert db.query(Message).count() == 2

    @pytest.mark.asyncio
    async def test_empty_selection_imports_recent_private_chats(self, manager, provider, history, db):
        chats = [
            ChatInfo(id="120363025@g.us", name="Group", is_group=True),
            ChatInfo(id=CHAT_A, name="Ali"),
        ]
        handle = await connect(manager, provider, chats=chats, history={CHAT_A: chat_history(CONTACT_A, 2)})

        await history.sync_selected("s1", [])

        assert [chat_id for chat_id, _ in handle.fetch_calls] == [CHAT_A]
        assert db.query(Message).count() == 2

    @pytest.mark.asyncio
    async def test_second_sync_rejected_while_running(self, manager, provider, history):
        handle = await connect(manager, provider, history={CHAT_A: chat_history(CONTACT_A, 2)})
        handle.fetch_delay = 0.1

        task = history.sync_selected("s1", [CONTACT_A])
        with pytest.raises(NotReadyError):
            history.sync_selected("s1", [CONTACT_B])
        await task

    @pytest.mark.asyncio
    async def test_requires_connected_session(self, history, make_session):
        make_session("s1", status="DISCONNECTED")

        with pytest.raises(NotReadyError):
            history.sync_selected("s1", [CONTACT_A])

    @pytest.mark.asyncio
    async def test_delete_mid_sync_stops_persistence(self, manager, provider, history, notifier, db):
        handle = await connect(manager, provider, history={
            CHAT_A: chat_history(CONTACT_A, 2),
            CHAT_B: chat_history(CONTACT_B, 2),
        })
        handle.fetch_delay = 0.2

        task = history.sync_selected("s1", [CONTACT_A, CONTACT_B])
        await wait_until(lambda: len(handle.fetch_calls) == 1)
        await manager.delete("s1")
        await task

        assert task.exception() is None
        assert db.query(Message).count() == 0
        assert "sync-complete" not in notifier.topics()
        assert len(handle.fetch_calls) == 1


class TestCatchUp:
    @pytest.mark.asyncio
    async def test_only_newer_than_last_known_are_ingested(self, manager, provider, ingestor, notifier, db):
        chats = [
            ChatInfo(id=CHAT_A, name="A"),
            ChatInfo(id="120363025@g.us", is_group=True),
            ChatInfo(id=CHAT_B, name="B"),
        ]
        remote = {
            CHAT_A: [make_raw("old", sender=CHAT_A, timestamp=100), make_raw("same", sender=CHAT_A, timestamp=150)],
            CHAT_B: [make_raw("new", sender=CHAT_B, timestamp=151)],
        }
        provider.on_init = "none"
        await manager.start("s1")
        ingestor.ingest("s1", make_raw("known", sender=CHAT_A, timestamp=150))
        HistorySync(manager, ingestor, notifier, SessionLocal, catchup_delay_ms=0)
        handle = provider.handles["s1"]
        handle.chats = chats
        handle.history = remote

        await handle.emit("ready")
        await wait_until(lambda: db.query(Message).count() == 2)
        await wait_until(lambda: manager.registry.get("s1").state is SessionState.CONNECTED)

        ids = {m.external_id for m in db.query(Message).all()}
        assert ids == {"known", "new"}
        assert [chat_id for chat_id, _ in handle.fetch_calls] == [CHAT_A, CHAT_B]

    @pytest.mark.asyncio
    async def test_scans_only_capped_number_of_chats(self, manager, provider, ingestor, notifier):
        chats = [ChatInfo(id=f"90555000000{i}@c.us") for i in range(6)]
        provider.on_init = "none"
        await manager.start("s1")
        HistorySync(manager, ingestor, notifier, SessionLocal, catchup_max_chats=3, catchup_per_chat=10, catchup_delay_ms=0)
        handle = provider.handles["s1"]
        handle.chats = chats

        await handle.emit("ready")
        await wait_until(lambda: len(handle.fetch_calls) == 3)
        await wait_until(lambda: manager.registry.get("s1").state is SessionState.CONNECTED)

        assert all(limit == 10 for _, limit in handle.fetch_calls)

    @pytest.mark.asyncio
    async def test_bulk_sync_takes_over_from_catch_up(self, manager, provider, ingestor, notifier, db):
        recent = [ChatInfo(id=f"90555000000{i}@c.us") for i in range(6)]
        history = HistorySync(
            manager, ingestor, notifier, SessionLocal, inter_chat_delay_ms=0, catchup_delay_ms=200,
        )
        handle = await connect(manager, provider, chats=recent, history={CHAT_A: chat_history(CONTACT_A, 3)})
        await wait_until(lambda: manager.registry.get("s1").state is SessionState.SYNCING)

        task = history.sync_selected("s1", [CONTACT_A])
        await task

        assert task.exception() is None
        assert notifier.topics()[-1] == "sync-complete"
        assert db.query(Message).count() == 3
        assert manager.registry.get("s1").state is SessionState.CONNECTED

        # catch-up notices the takeover and stops before its next chat
        await asyncio.sleep(0.3)
        catch_up_fetches = [chat_id for chat_id, _ in handle.fetch_calls if chat_id != CHAT_A]
        assert len(catch_up_fetches) <= 1
        assert manager.registry.get("s1").state is SessionState.CONNECTED
        assert manager.registry.get("s1").sync_owner is None
