"""Feeds the display layer with the active session's stored entries."""

import inspect
from typing import Awaitable, Callable, List, Optional, Union

from loguru import logger

from .bus import Event, EventBus
from .guard import ConsistencyGuard
from .models import Entry
from .store import CatalogStore


RenderCallback = Callable[[str, List[Entry]], Union[None, Awaitable[None]]]


class DisplayFeed:
    """
    Renders from the store whenever the session switches or a capture lands.

    Loads are snapshot-then-compare: if the active session changed while the
    store was being read, the result belongs to the old session and is
    dropped instead of rendered.
    """

    def __init__(self, store: CatalogStore, guard: ConsistencyGuard, bus: EventBus):
        self.store = store
        self.guard = guard
        self.bus = bus
        self._render: Optional[RenderCallback] = None
        self.renders = 0

    def attach(self, render: RenderCallback) -> None:
        self._render = render
        self.bus.subscribe("display.refresh", self.on_event)
        self.bus.subscribe("catalog.updated", self.on_event)

    def detach(self) -> None:
        self.bus.unsubscribe("display.refresh", self.on_event)
        self.bus.unsubscribe("catalog.updated", self.on_event)
        self._render = None

    async def on_event(self, event: Event) -> None:
        session_id = event.data.get("session_id")
        if session_id and session_id != self.guard.active_session_id:
            return
        await self.refresh()

    async def current_entries(self) -> Optional[List[Entry]]:
        """Active session's entries, or None if it changed mid-load."""
        session_id = self.guard.active_session_id
        if not session_id:
            return []
        session = await self.store.get_session(session_id)
        if self.guard.active_session_id != session_id:
            return None
        return list(session.entries) if session else []

    async def refresh(self) -> None:
        if self._render is None:
            return
        session_id = self.guard.active_session_id
        entries = await self.current_entries()
        if entries is None or self._render is None:
            logger.debug("Discarded stale render")
            return
        result = self._render(session_id or "", entries)
        if inspect.isawaitable(result):
            await result
        self.renders += 1
