"""Capture engine lifecycle for AI Catalog."""

import sys
from pathlib import Path
from typing import Iterable, List, Optional

from loguru import logger

from .bus import EventBus
from .capture import CaptureMerger
from .config import Config
from .display import DisplayFeed, RenderCallback
from .guard import ConsistencyGuard
from .locator import Locator
from .models import Entry
from .session import LocationMonitor, SessionTracker
from .store import CatalogStore, JsonFileStore, KeyValueStore
from .tagger import NodeTagger
from .tasks import BackgroundTasks
from .tree import ContentTree, NodeFinder
from .watcher import ChangeWatcher


class CatalogEngine:
    """
    One capture engine bound to one content tree.

    All state that would otherwise be module-global (active session, epoch,
    debounce timer, tree subscription) lives on this instance, between
    `init()` and `teardown()`.
    """

    def __init__(
        self,
        config: Config,
        tree: ContentTree,
        backend: Optional[KeyValueStore] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.tree = tree
        self.backend = backend if backend is not None else JsonFileStore(config.store_path)
        self.store = CatalogStore(self.backend, config.storage_key)
        self.bus = bus if bus is not None else EventBus()
        self.tasks = BackgroundTasks()

        self.guard = ConsistencyGuard()
        self.tagger = NodeTagger(config.tags.entry_attr, config.tags.session_attr)
        self.finder = NodeFinder(config.capture.entry_selectors)
        self.merger = CaptureMerger(
            config.capture, tree, self.store, self.guard, self.tagger, self.finder, self.bus
        )
        self.watcher = ChangeWatcher(
            config.watcher, tree, self.merger.capture_new_entries, self.tasks
        )
        self.tracker = SessionTracker(
            config.session, tree, self.guard, self.tagger, self.finder,
            self.merger, self.watcher, self.tasks, self.bus,
        )
        self.locator = Locator(
            config.locator, tree, self.store, self.guard, self.tagger, self.finder
        )
        self.display = DisplayFeed(self.store, self.guard, self.bus)
        self.monitor = LocationMonitor(
            tree, config.session.poll_interval_s, self.notify_navigation
        )
        self._started = False

    @property
    def active_session_id(self) -> Optional[str]:
        return self.guard.active_session_id

    async def init(self, render: Optional[RenderCallback] = None) -> None:
        """Start the bus, reconcile the current session and begin watching."""
        if self._started:
            logger.warning("Catalog engine already started")
            return
        logger.info("Starting catalog engine...")

        if not self.bus.running:
            await self.bus.start()
        if render is not None:
            self.display.attach(render)

        self.tracker.start()
        self.monitor.start()
        self._started = True
        logger.info(f"Catalog engine started (session {self.active_session_id or '-'})")

    async def teardown(self) -> None:
        """Stop watching, orphan in-flight work and release the store."""
        if not self._started:
            return
        logger.info("Stopping catalog engine...")
        await self.monitor.stop()
        self.watcher.stop()
        self.locator.cancel()
        self.guard.invalidate()
        await self.tasks.cancel_all()
        self.display.detach()
        await self.bus.stop()
        await self.backend.close()
        self._started = False
        logger.info("Catalog engine stopped")

    def notify_navigation(self) -> bool:
        """Session-change signal: re-derive the session from the location."""
        return self.tracker.handle_location_change()

    async def capture_now(self) -> List[Entry]:
        """Run one capture pass for the active session immediately."""
        return await self.merger.capture_new_entries(self.active_session_id)

    async def scroll_to(self, entry_id: str) -> bool:
        return await self.locator.scroll_to(entry_id)

    async def selected_entries(self, session_id: str, entry_ids: Iterable[str]) -> List[Entry]:
        return await self.store.selected_entries(session_id, entry_ids)

    async def settle(self) -> None:
        """Wait until no background capture work is outstanding."""
        await self.tasks.drain()


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru sinks for the engine and the CLI."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
    )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level="DEBUG",
        )
