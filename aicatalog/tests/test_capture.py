"""Tests for the scan-then-merge capture path and tag restoration."""

import asyncio

import pytest

from aicatalog.daemon.bus import EventBus
from aicatalog.daemon.capture import CaptureMerger
from aicatalog.daemon.store import CatalogStore, MemoryStore

from conftest import SESSION_A, SESSION_B, stored_texts


@pytest.mark.asyncio
async def test_capture_creates_session(chat, merger, guard, store, tagger):
    guard.begin_session(SESSION_A)
    nodes = chat.say("How do generators work in Python?", "And async generators?")

    added = await merger.capture_new_entries(SESSION_A)

    assert [e.text for e in added] == ["How do generators work in Python?", "And async generators?"]
    session = await store.get_session(SESSION_A)
    assert session.title == "How do generators work in Python?"
    assert session.created_at == added[0].timestamp
    assert session.updated_at == added[1].timestamp
    for node, entry in zip(nodes, session.entries):
        assert tagger.entry_id(node) == entry.id
        assert tagger.session_id(node) == SESSION_A


@pytest.mark.asyncio
async def test_title_is_truncated(chat, merger, guard, store, test_config):
    guard.begin_session(SESSION_A)
    chat.say("q" * 200)

    await merger.capture_new_entries(SESSION_A)

    session = await store.get_session(SESSION_A)
    assert len(session.title) == test_config.capture.max_title_length


@pytest.mark.asyncio
async def test_second_pass_is_idempotent(chat, merger, guard, store, backend):
    guard.begin_session(SESSION_A)
    chat.say("first question", "second question")
    await merger.capture_new_entries(SESSION_A)
    before = await store.get_session(SESSION_A)
    reads, writes = backend.reads, backend.writes

    added = await merger.capture_new_entries(SESSION_A)

    assert added == []
    assert (backend.reads, backend.writes) == (reads, writes)
    after = await store.get_session(SESSION_A)
    assert after.updated_at == before.updated_at
    assert [e.id for e in after.entries] == [e.id for e in before.entries]


@pytest.mark.asyncio
async def test_short_and_empty_text_skipped(chat, merger, guard, store, tagger):
    guard.begin_session(SESSION_A)
    nodes = chat.say("   ", "k", " ok ")

    added = await merger.capture_new_entries(SESSION_A)

    assert [e.text for e in added] == ["ok"]
    assert not tagger.is_claimed(nodes[0])
    assert not tagger.is_claimed(nodes[1])


@pytest.mark.asyncio
async def test_foreign_nodes_skipped(chat, merger, guard, store, tagger):
    old_nodes = chat.say("left over from A")
    tagger.stamp(old_nodes, SESSION_A)
    guard.begin_session(SESSION_B)
    chat.say("fresh in B")

    added = await merger.capture_new_entries(SESSION_B)

    assert [e.text for e in added] == ["fresh in B"]
    assert await stored_texts(store, SESSION_A) is None
    assert not tagger.is_claimed(old_nodes[0])


@pytest.mark.asyncio
async def test_duplicate_text_collapses_to_one_entry(chat, merger, guard, store):
    guard.begin_session(SESSION_A)
    chat.say("thanks!", "something else", "thanks!")

    await merger.capture_new_entries(SESSION_A)
    chat.say("  thanks!  ")
    await merger.capture_new_entries(SESSION_A)

    texts = await stored_texts(store, SESSION_A)
    assert texts == ["thanks!", "something else"]


@pytest.mark.asyncio
async def test_entries_unique_across_many_passes(chat, merger, guard, store):
    guard.begin_session(SESSION_A)
    for i in range(5):
        chat.say(f"question {i}", "repeated question")
        await merger.capture_new_entries(SESSION_A)

    session = await store.get_session(SESSION_A)
    ids = [e.id for e in session.entries]
    texts = [e.normalized for e in session.entries]
    assert len(ids) == len(set(ids))
    assert len(texts) == len(set(texts))


@pytest.mark.asyncio
async def test_blocked_for_inactive_session(chat, merger, guard, store, backend):
    guard.begin_session(SESSION_B)
    nodes = chat.say("should not be captured")

    assert await merger.capture_new_entries(SESSION_A) == []
    assert await merger.capture_new_entries(None) == []
    assert backend.reads == 0
    assert not merger.tagger.is_claimed(nodes[0])


@pytest.mark.asyncio
async def test_store_unavailable_is_noop(chat, merger, guard, backend, tagger):
    guard.begin_session(SESSION_A)
    nodes = chat.say("anyone there?")
    backend.available = False

    assert await merger.capture_new_entries(SESSION_A) == []
    assert not tagger.is_claimed(nodes[0])


@pytest.mark.asyncio
async def test_order_converges_to_tree_order(chat, merger, guard, store):
    guard.begin_session(SESSION_A)
    chat.say("bravo")
    await merger.capture_new_entries(SESSION_A)
    chat.say("charlie")
    await merger.capture_new_entries(SESSION_A)

    # "alpha" shows up above the existing turns, e.g. history finished loading
    chat.tree.insert(chat.scroller, 0, chat.user_turn("alpha"))
    await merger.capture_new_entries(SESSION_A)

    assert await stored_texts(store, SESSION_A) == ["alpha", "bravo", "charlie"]


@pytest.mark.asyncio
async def test_unmatched_entries_trail_in_relative_order(chat, merger, guard, store):
    guard.begin_session(SESSION_A)
    chat.say("old 1", "old 2", "keep")
    await merger.capture_new_entries(SESSION_A)

    chat.rerender("keep", "new one")
    await merger.capture_new_entries(SESSION_A)

    assert await stored_texts(store, SESSION_A) == ["keep", "new one", "old 1", "old 2"]


@pytest.mark.asyncio
async def test_switch_during_load_aborts_write(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.05)
    store = CatalogStore(backend)
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder)
    guard.begin_session(SESSION_A)
    chat.say("question in A")

    pending = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    await asyncio.sleep(0.01)
    guard.begin_session(SESSION_B)

    assert await pending == []
    assert backend.writes == 0
    assert await store.load() == {}


@pytest.mark.asyncio
async def test_write_in_flight_targets_its_own_session(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.1)
    store = CatalogStore(backend)
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder)
    guard.begin_session(SESSION_A)
    chat.say("question in A")

    pending = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    # Past the load, inside the save
    await asyncio.sleep(0.15)
    guard.begin_session(SESSION_B)
    await pending

    sessions = await store.load()
    assert list(sessions) == [SESSION_A]
    assert [e.text for e in sessions[SESSION_A].entries] == ["question in A"]


@pytest.mark.asyncio
async def test_concurrent_passes_never_double_claim(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.02)
    store = CatalogStore(backend)
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder)
    guard.begin_session(SESSION_A)
    chat.say("one", "two", "three")

    results = await asyncio.gather(
        merger.capture_new_entries(SESSION_A),
        merger.capture_new_entries(SESSION_A),
    )

    assert sorted(len(r) for r in results) == [0, 3]
    assert await stored_texts(store, SESSION_A) == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_restore_matches_by_content_not_position(chat, merger, guard, store, tagger):
    guard.begin_session(SESSION_A)
    chat.say("alpha", "bravo", "charlie")
    await merger.capture_new_entries(SESSION_A)
    stored = {e.text: e.id for e in (await store.get_session(SESSION_A)).entries}

    # Reload: the tree renders the turns again, untagged and in another order
    fresh = chat.rerender("alpha", "charlie", "bravo")
    restored = await merger.restore_tags(SESSION_A)

    assert restored == 3
    assert [tagger.entry_id(n) for n in fresh] == [stored["alpha"], stored["charlie"], stored["bravo"]]

    assert await merger.capture_new_entries(SESSION_A) == []
    chat.say("delta")
    await merger.capture_new_entries(SESSION_A)
    assert await stored_texts(store, SESSION_A) == ["alpha", "charlie", "bravo", "delta"]


@pytest.mark.asyncio
async def test_restore_without_stored_data(chat, merger, guard, tagger):
    guard.begin_session(SESSION_A)
    nodes = chat.say("nothing stored")

    assert await merger.restore_tags(SESSION_A) == 0
    assert await merger.restore_tags(SESSION_B) == 0
    assert not tagger.is_claimed(nodes[0])


@pytest.mark.asyncio
async def test_capture_notifies_display(chat, merger, guard):
    guard.begin_session(SESSION_A)
    chat.say("ping me")
    received = []

    def on_update(event):
        received.append(event)

    merger.bus.subscribe("catalog.updated", on_update)
    await merger.bus.start()

    added = await merger.capture_new_entries(SESSION_A)
    await asyncio.sleep(0.05)

    assert received[0].data == {"session_id": SESSION_A, "added": [added[0].id]}
    await merger.bus.stop()


@pytest.mark.asyncio
async def test_overlapping_passes_keep_both_writes(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.05)
    store = CatalogStore(backend)
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder)
    guard.begin_session(SESSION_A)
    chat.say("first question")

    first = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    await asyncio.sleep(0.01)
    # A rescan or watcher fire lands while the first pass is still loading
    chat.say("second question")
    second = asyncio.create_task(merger.capture_new_entries(SESSION_A))

    results = await asyncio.gather(first, second)

    assert [len(r) for r in results] == [1, 1]
    assert await stored_texts(store, SESSION_A) == ["first question", "second question"]


@pytest.mark.asyncio
async def test_pass_waiting_on_write_lock_aborts_after_switch(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.05)
    store = CatalogStore(backend)
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder)
    guard.begin_session(SESSION_A)
    chat.say("first question")

    first = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    await asyncio.sleep(0.01)
    chat.say("second question")
    second = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    await asyncio.sleep(0.01)
    guard.begin_session(SESSION_B)

    assert await first == []
    assert await second == []
    assert backend.writes == 0


@pytest.mark.asyncio
async def test_dropped_write_reports_nothing_added(chat, guard, tagger, finder, test_config):
    backend = MemoryStore(latency=0.05)
    store = CatalogStore(backend)
    bus = EventBus()
    merger = CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder, bus)
    guard.begin_session(SESSION_A)
    chat.say("never lands")

    pending = asyncio.create_task(merger.capture_new_entries(SESSION_A))
    # Past the load; the host goes away before the save
    await asyncio.sleep(0.07)
    backend.available = False

    assert await pending == []
    assert bus.get_stats().get("emitted", 0) == 0


@pytest.mark.asyncio
async def test_restore_retags_nodes_stamped_for_another_session(chat, merger, guard, store, tagger):
    guard.begin_session(SESSION_B)
    chat.say("shared question")
    await merger.capture_new_entries(SESSION_B)
    stored_id = (await store.get_session(SESSION_B)).entries[0].id

    # Same text rendered again, but stamped while leaving session A
    fresh = chat.rerender("shared question")
    tagger.stamp(fresh, SESSION_A)

    assert await merger.restore_tags(SESSION_B) == 1
    assert tagger.entry_id(fresh[0]) == stored_id
    assert tagger.session_id(fresh[0]) == SESSION_B
