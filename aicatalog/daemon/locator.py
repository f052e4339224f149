"""Map a stored entry back onto the live tree for scroll-to and highlight."""

import asyncio
from typing import Dict, Optional, Tuple

from loguru import logger

from .config import LocatorConfig
from .guard import ConsistencyGuard
from .models import normalize_text
from .store import CatalogStore
from .tagger import NodeTagger
from .tree import ContentTree, Node, NodeFinder, add_class, remove_class, text_of


class Locator:
    """
    Best-effort scroll-to for an entry id.

    Fallback chain:
    1. a live node tagged with the entry id
    2. a live entry node whose text equals the stored entry text
    3. scroll to an estimate of the entry's position, wait for the tree to
       settle, then try 1 and 2 once more

    Whichever stage finds a node highlights it. If none does, nothing happens.
    """

    def __init__(
        self,
        config: LocatorConfig,
        tree: ContentTree,
        store: CatalogStore,
        guard: ConsistencyGuard,
        tagger: NodeTagger,
        finder: NodeFinder,
    ):
        self.config = config
        self.tree = tree
        self.store = store
        self.guard = guard
        self.tagger = tagger
        self.finder = finder
        self.containers = NodeFinder(config.scroll_container_selectors)
        self.retries = 0
        self._reverts: Dict[int, Tuple[Node, asyncio.TimerHandle]] = {}

    def scroll_container(self) -> Node:
        container = self.containers.find_first(self.tree)
        return container if container is not None else self.tree.root

    async def _find(self, session_id: Optional[str], entry_id: str) -> Optional[Node]:
        node = self.tagger.find_tagged(self.tree, entry_id)
        if node is not None:
            return node
        entry = await self.store.get_entry(session_id, entry_id)
        if entry is None:
            return None
        # Nodes are re-acquired after the load; earlier references may be gone.
        norm = entry.normalized
        for candidate in self.finder.find_all(self.tree):
            if normalize_text(text_of(candidate)) == norm:
                return candidate
        return None

    async def scroll_to(self, entry_id: str) -> bool:
        """Scroll to and highlight `entry_id`. Returns whether a node was found."""
        ticket = self.guard.ticket()
        session_id = ticket.session_id

        target = await self._find(session_id, entry_id)
        if not self.guard.is_current(ticket):
            return False
        if target is not None:
            self.highlight(target)
            return True

        session = await self.store.get_session(session_id)
        if not self.guard.is_current(ticket) or session is None:
            return False
        idx = session.index_of(entry_id)
        if idx == -1:
            logger.debug(f"Entry {entry_id} not found in session")
            return False

        container = self.scroll_container()
        estimated = (idx / len(session.entries)) * self.tree.scroll_height(container)
        self.tree.scroll_to(container, estimated)
        logger.debug(f"Estimated scroll to {estimated:.0f} for entry {entry_id}")

        await asyncio.sleep(self.config.settle_delay_s)
        if not self.guard.is_current(ticket):
            return False
        self.retries += 1
        target = await self._find(session_id, entry_id)
        if target is None or not self.guard.is_current(ticket):
            return False
        self.highlight(target)
        return True

    def highlight(self, node: Node) -> None:
        """Scroll `node` into view and flag it with the highlight class for a while."""
        self.tree.scroll_into_view(node)
        add_class(node, self.config.highlight_class)
        previous = self._reverts.pop(id(node), None)
        if previous is not None:
            previous[1].cancel()
        handle = asyncio.get_running_loop().call_later(
            self.config.highlight_duration_s, self._revert, node
        )
        self._reverts[id(node)] = (node, handle)

    def _revert(self, node: Node) -> None:
        self._reverts.pop(id(node), None)
        remove_class(node, self.config.highlight_class)

    @property
    def pending_highlights(self) -> int:
        return len(self._reverts)

    def cancel(self) -> None:
        """Clear live highlights now and drop their pending reverts."""
        for node, handle in self._reverts.values():
            handle.cancel()
            remove_class(node, self.config.highlight_class)
        self._reverts.clear()
