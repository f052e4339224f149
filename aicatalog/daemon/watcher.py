"""Debounced structural-change watcher."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from .config import WatcherConfig
from .guard import short_id
from .tasks import BackgroundTasks
from .tree import ContentTree, MutationRecord, Subscription


class ChangeWatcher:
    """
    Coalesces bursts of tree mutations into single capture passes.

    Observes the tree root rather than any inner container: inner containers
    get replaced wholesale across session switches, and an observer left on a
    detached node never fires again.

    The session id is fixed when `start` is called and handed to the capture
    callback at fire time as-is. If the active session moved on in between,
    the capture pass rejects it and a newer watcher is already running.
    """

    def __init__(
        self,
        config: WatcherConfig,
        tree: ContentTree,
        on_fire: Callable[[str], Awaitable],
        tasks: BackgroundTasks,
    ):
        self.config = config
        self.tree = tree
        self.on_fire = on_fire
        self.tasks = tasks
        self._subscription: Optional[Subscription] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self.session_id: Optional[str] = None
        self.fire_count = 0

    @property
    def running(self) -> bool:
        return self._subscription is not None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def start(self, session_id: str) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        delay = self.config.debounce_ms / 1000.0

        def on_mutation(records: List[MutationRecord]) -> None:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = loop.call_later(delay, self._fire, session_id)

        self.session_id = session_id
        self._subscription = self.tree.observe(on_mutation)
        logger.debug(f"Watcher started for {short_id(session_id)}")

    def _fire(self, session_id: str) -> None:
        self._timer = None
        self.fire_count += 1
        self.tasks.spawn(self.on_fire(session_id), name=f"capture-{short_id(session_id)}")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._subscription is not None:
            self._subscription.disconnect()
            self._subscription = None
            logger.debug(f"Watcher stopped for {short_id(self.session_id)}")
        self.session_id = None
