"""Session-change detection and the display / reconcile lifecycle."""

import asyncio
import re
from typing import Callable, Optional, Sequence
from urllib.parse import urlsplit

from loguru import logger

from .bus import Event, EventBus
from .capture import CaptureMerger
from .config import SessionConfig
from .guard import ConsistencyGuard, Ticket, short_id
from .tagger import NodeTagger
from .tasks import BackgroundTasks
from .tree import ContentTree, NodeFinder
from .watcher import ChangeWatcher


class SessionTracker:
    """
    Follows the active session and drives the other components.

    A switch has two halves:

    Display (synchronous): stamp the outgoing session's nodes, stop its
    watcher, make the new session active and ask the display to render from
    whatever is already stored.

    Reconcile (background): restore stored tags onto live nodes, run one
    capture pass, start the watcher, plus delayed re-scans for content that
    finishes rendering late. Each stage first checks the ticket taken at
    switch time, so a newer switch silently orphans the rest.
    """

    def __init__(
        self,
        config: SessionConfig,
        tree: ContentTree,
        guard: ConsistencyGuard,
        tagger: NodeTagger,
        finder: NodeFinder,
        merger: CaptureMerger,
        watcher: ChangeWatcher,
        tasks: BackgroundTasks,
        bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.tree = tree
        self.guard = guard
        self.tagger = tagger
        self.finder = finder
        self.merger = merger
        self.watcher = watcher
        self.tasks = tasks
        self.bus = bus
        self._pattern = re.compile(config.id_pattern, re.IGNORECASE)
        self.transitions = 0

    def extract_session_id(self, location: Optional[str]) -> Optional[str]:
        if not location:
            return None
        match = self._pattern.search(urlsplit(location).path)
        return match.group(1) if match else None

    def start(self) -> Optional[str]:
        """Adopt the session in the current location and reconcile it."""
        session_id = self.extract_session_id(self.tree.location)
        epoch = self.guard.begin_session(session_id)
        if session_id:
            self._schedule_reconcile(
                Ticket(session_id, epoch), self.config.initial_rescan_delays_s
            )
        logger.debug(f"Tracker started on session {short_id(session_id)}")
        return session_id

    def handle_location_change(self) -> bool:
        """
        Re-evaluate the session id from the current location.

        Safe to call redundantly. Locations without a session id (interstitial
        views) are ignored and the last known session stays active. Returns
        True when a switch happened.
        """
        new_id = self.extract_session_id(self.tree.location)
        if new_id is None:
            logger.debug(f"No session id in {self.tree.location!r}; keeping current")
            return False
        old_id = self.guard.active_session_id
        if new_id == old_id:
            return False

        logger.debug(f"Session change {short_id(old_id)} -> {short_id(new_id)}")

        # Display line
        self.tagger.stamp(self.finder.find_all(self.tree), old_id)
        self.watcher.stop()
        epoch = self.guard.begin_session(new_id)
        self.transitions += 1
        self._emit("session.changed", {"previous": old_id, "session_id": new_id})
        self._emit("display.refresh", {"session_id": new_id})

        # Capture line
        self._schedule_reconcile(Ticket(new_id, epoch), self.config.switch_rescan_delays_s)
        return True

    def _emit(self, event_type: str, data: dict) -> None:
        if self.bus is not None:
            self.bus.emit_nowait(Event(type=event_type, data=data, source="session_tracker"))

    def _schedule_reconcile(self, ticket: Ticket, rescan_delays: Sequence[float]) -> None:
        tag = short_id(ticket.session_id)
        self.tasks.spawn(self._reconcile(ticket), name=f"reconcile-{tag}")
        for delay in rescan_delays:
            self.tasks.spawn(self._rescan(ticket, delay), name=f"rescan-{tag}")

    async def _reconcile(self, ticket: Ticket) -> None:
        session_id = ticket.session_id
        if not self.guard.is_current(ticket):
            return
        await self.merger.restore_tags(session_id)
        if not self.guard.is_current(ticket):
            return
        await self.merger.capture_new_entries(session_id)
        if not self.guard.is_current(ticket):
            return
        self.watcher.start(session_id)

    async def _rescan(self, ticket: Ticket, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self.guard.is_current(ticket):
            return
        await self.merger.restore_tags(ticket.session_id)
        if not self.guard.is_current(ticket):
            return
        await self.merger.capture_new_entries(ticket.session_id)


class LocationMonitor:
    """Polls the tree's location and signals when it changes."""

    def __init__(self, tree: ContentTree, interval: float, on_change: Callable[[], object]):
        self.tree = tree
        self.interval = interval
        self.on_change = on_change
        self._last: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._last = self.tree.location
        self._task = asyncio.get_running_loop().create_task(self._poll(), name="location-monitor")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            location = self.tree.location
            if location == self._last:
                continue
            self._last = location
            try:
                self.on_change()
            except Exception as e:
                logger.exception(f"Location change handler failed: {e}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
