"""Scan-then-merge capture of new entries from the live tree."""

import asyncio
from typing import Dict, List, Optional

from loguru import logger

from .bus import Event, EventBus
from .config import CaptureConfig
from .guard import ConsistencyGuard, short_id
from .models import Entry, Session, new_entry_id, normalize_text, now_ms
from .store import CatalogStore
from .tagger import NodeTagger
from .tree import ContentTree, Node, NodeFinder, text_of


class CaptureMerger:
    """
    Turns newly observed entry nodes into persisted entries.

    Capture path:
    1. Synchronous scan: claim every untagged, non-foreign node with usable
       text and stage it as an entry. No awaits, so concurrent passes can
       never claim the same node twice.
    2. Nothing staged: return without touching the store.
    3. Under the write lock, load the full snapshot, merge staged entries
       (id-or-text identity) and re-sort to the current tree order. Passes
       for the same session overlap, so the load-to-save window is serialized.
    4. Write the full snapshot back in one call and notify the display.

    The session is re-validated before the load and again after it, since
    the whole snapshot is rewritten and a stale writer would clobber data.
    """

    def __init__(
        self,
        config: CaptureConfig,
        tree: ContentTree,
        store: CatalogStore,
        guard: ConsistencyGuard,
        tagger: NodeTagger,
        finder: NodeFinder,
        bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.tree = tree
        self.store = store
        self.guard = guard
        self.tagger = tagger
        self.finder = finder
        self.bus = bus
        self._write_lock = asyncio.Lock()

    def node_text(self, node: Node) -> str:
        return normalize_text(text_of(node))

    def _stage(self, nodes: List[Node], session_id: str) -> List[Entry]:
        staged = []
        for node in nodes:
            if self.tagger.is_foreign(node, session_id):
                continue
            if self.tagger.is_claimed(node):
                continue

            text = self.node_text(node)
            if len(text) < max(self.config.min_text_length, 1):
                continue

            entry = Entry(id=new_entry_id(), text=text, timestamp=now_ms())
            self.tagger.claim(node, entry.id, session_id)
            staged.append(entry)
            logger.debug(f"Staged entry for {short_id(session_id)}: {text[:30]!r}")
        return staged

    async def capture_new_entries(self, session_id: Optional[str]) -> List[Entry]:
        """
        Capture untagged entry nodes for `session_id`.

        Returns the entries that were actually added to the store, which is
        empty when the pass was a no-op or went stale.
        """
        if not session_id:
            return []
        if not self.guard.is_active(session_id):
            logger.debug(
                f"Capture blocked for stale session {short_id(session_id)} "
                f"(active {short_id(self.guard.active_session_id)})"
            )
            return []
        if not self.store.available:
            return []

        ticket = self.guard.ticket()
        nodes = self.finder.find_all(self.tree)
        logger.debug(f"Capture pass for {short_id(session_id)}: {len(nodes)} nodes")

        staged = self._stage(nodes, session_id)
        if not staged:
            return []

        if not self.guard.is_current(ticket):
            return []
        async with self._write_lock:
            # Another pass may have held the lock across a session switch.
            if not self.guard.is_current(ticket):
                return []
            sessions = await self.store.load()
            if not self.guard.is_current(ticket):
                logger.debug(f"Capture for {short_id(session_id)} went stale during load")
                return []

            added = self._merge(sessions, session_id, staged)
            self._reorder(sessions[session_id])

            if not await self.store.save(sessions):
                logger.debug(f"Capture for {short_id(session_id)} not persisted; write dropped")
                return []
        if added:
            logger.info(f"Captured {len(added)} new entries for {short_id(session_id)}")
        self._notify(session_id, added)
        return added

    def _merge(self, sessions: Dict[str, Session], session_id: str, staged: List[Entry]) -> List[Entry]:
        session = sessions.get(session_id)
        if session is None:
            session = Session.start(staged[0], self.config.max_title_length)
            sessions[session_id] = session
        return [entry for entry in staged if session.add_entry(entry)]

    def _reorder(self, session: Session) -> None:
        # Re-acquire nodes: anything found before the load may have been re-rendered.
        texts = [self.node_text(n) for n in self.finder.find_all(self.tree)]
        session.reorder(texts)

    def _notify(self, session_id: str, added: List[Entry]) -> None:
        if self.bus is None:
            return
        self.bus.emit_nowait(Event(
            type="catalog.updated",
            data={"session_id": session_id, "added": [e.id for e in added]},
            source="capture_merger",
        ))

    async def restore_tags(self, session_id: Optional[str]) -> int:
        """
        Re-attach stored entry ids to live nodes after a reload or switch.

        Stored entries are matched to untagged nodes by normalized text, never
        by index: stored order can legitimately differ from the tree's.
        Nodes stamped for another session but never claimed are re-tagged
        here when their text matches; stamping only keeps them out of
        capture. Returns the number of nodes tagged.
        """
        if not session_id or not self.guard.is_active(session_id):
            return 0

        ticket = self.guard.ticket()
        session = await self.store.get_session(session_id)
        if not self.guard.is_current(ticket):
            return 0
        if session is None:
            logger.debug(f"Tag restore for {short_id(session_id)}: no stored data")
            return 0

        nodes = [n for n in self.finder.find_all(self.tree) if not self.tagger.is_claimed(n)]
        restored = 0
        for entry in session.entries:
            norm = entry.normalized
            for node in nodes:
                if not self.tagger.is_claimed(node) and self.node_text(node) == norm:
                    self.tagger.claim(node, entry.id, session_id)
                    restored += 1
                    break

        logger.debug(
            f"Tag restore for {short_id(session_id)}: stored={len(session.entries)} "
            f"nodes={len(nodes)} restored={restored}"
        )
        return restored
