import json

import pytest

from toolflow.clock import to_datetime
from toolflow.conversation import ConversationSync
from toolflow.dedup import PersistOutcome
from tests.conftest import make_message
from tests.fakes import FlakyStore, ManualClock


class RecordingNotifier:
    def __init__(self):
        self.notes = []

    def notify(self, level, message):
        self.notes.append((level, message))


def make_sync(store=None, clock=None, notifier=None):
    return ConversationSync(
        store or FlakyStore(),
        session_id="s1",
        user_id="u1",
        clock=clock or ManualClock(),
        notifier=notifier or RecordingNotifier(),
    )


@pytest.mark.asyncio
async def test_optimistic_add_is_kept_when_stored():
    sync = make_sync()
    result = await sync.add_message("user", "What changed?")
    assert result.outcome is PersistOutcome.STORED
    assert [m.content for m in sync.messages] == ["What changed?"]
    assert result.message_id.startswith("user-")


@pytest.mark.asyncio
async def test_failed_persistence_retracts_and_notifies():
    store = FlakyStore()
    store.fail_inserts = 1
    notifier = RecordingNotifier()
    sync = make_sync(store, notifier=notifier)

    result = await sync.add_message("user", "hello")

    assert result.outcome is PersistOutcome.FAILED
    assert sync.messages == []
    assert notifier.notes == [("error", "Message could not be saved: store unavailable")]

    retry = await sync.add_message("user", "hello")
    assert retry.outcome is PersistOutcome.STORED
    assert len(sync.messages) == 1


@pytest.mark.asyncio
async def test_double_submit_is_dropped_before_the_store():
    store = FlakyStore()
    sync = make_sync(store)
    await sync.add_message("user", "go")
    second = await sync.add_message("user", "go")
    assert second.outcome is PersistOutcome.DUPLICATE
    assert store.insert_calls == 1
    assert len(sync.messages) == 1


@pytest.mark.asyncio
async def test_duplicate_of_remote_message_is_replaced_by_the_original():
    clock = ManualClock()
    store = FlakyStore()
    store.add_remote(make_message("hello", message_id="remote-1", at=clock.now()), "s1", "u1")
    sync = make_sync(store, clock)

    result = await sync.add_message("user", "hello")

    assert result.outcome is PersistOutcome.DUPLICATE
    assert result.message_id == "remote-1"
    assert [m.id for m in sync.messages] == ["remote-1"]
    await sync.poller.poll_once()
    assert [m.id for m in sync.messages] == ["remote-1"]


@pytest.mark.asyncio
async def test_duplicate_older_than_the_poll_cursor_is_not_lost():
    clock = ManualClock()
    store = FlakyStore()
    store.add_remote(make_message("hello", message_id="remote-1", at=clock.now()), "s1", "u1")
    sync = make_sync(store, clock)

    await clock.advance(1.0)
    assert (await sync.add_message("assistant", "thinking")).outcome is PersistOutcome.STORED
    await clock.advance(1.0)
    result = await sync.add_message("user", "hello")
    await sync.poller.poll_once()
    await sync.poller.poll_once()

    assert result.outcome is PersistOutcome.DUPLICATE
    assert [m.content for m in sync.messages] == ["hello", "thinking"]
    assert sync.messages[0].id == "remote-1"


@pytest.mark.asyncio
async def test_unidentified_duplicate_keeps_local_copy_until_merged():
    clock = ManualClock()
    store = FlakyStore()
    store.report_conflict_ids = False
    store.add_remote(make_message("hello", message_id="remote-1", at=clock.now()), "s1", "u1")
    sync = make_sync(store, clock)

    await clock.advance(120.0)
    result = await sync.add_message("user", "hello")

    assert result.outcome is PersistOutcome.DUPLICATE
    assert result.message_id is None
    assert [m.content for m in sync.messages] == ["hello"]

    store.touch("remote-1", "hello", to_datetime(clock.now()))
    await sync.poller.poll_once()
    assert [m.id for m in sync.messages] == ["remote-1"]


@pytest.mark.asyncio
async def test_polled_tool_rows_drive_progress():
    clock = ManualClock()
    store = FlakyStore()
    sync = make_sync(store, clock)
    store.add_remote(make_message("search please", message_id="m1", at=clock.now()), "s1", "u1")
    body = json.dumps({"toolCallId": "call-1", "status": "executing", "toolName": "execute_web-search"})
    store.add_remote(
        make_message(body, role="assistant", message_id="m2", at=clock.now() + 0.001, message_type="tool-executing"),
        "s1",
        "u1",
    )

    sync.set_active(True)
    await clock.advance(0.2)
    sync.set_active(False)

    assert [m.id for m in sync.messages] == ["m1", "m2"]
    [item] = sync.tracker.tools
    assert item.name == "execute_web-search"
    assert item.status == "executing"
    await clock.advance(1.0)
    await sync.close()


@pytest.mark.asyncio
async def test_load_and_switch_session():
    clock = ManualClock()
    store = FlakyStore()
    store.add_remote(make_message("older", message_id="m1", at=clock.now() - 3600), "s1", "u1")
    sync = make_sync(store, clock)

    loaded = await sync.load()
    assert [m.id for m in loaded] == ["m1"]

    await sync.switch_session("s2")
    assert sync.messages == []
    assert sync.poller.session_id == "s2"
    result = await sync.add_message("user", "older")
    assert result.outcome is PersistOutcome.STORED
