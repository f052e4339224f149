"""Shared fixtures for the capture engine tests."""

from typing import List, Optional

import pytest

from aicatalog.daemon.bus import EventBus
from aicatalog.daemon.capture import CaptureMerger
from aicatalog.daemon.config import Config
from aicatalog.daemon.guard import ConsistencyGuard
from aicatalog.daemon.store import CatalogStore, MemoryStore
from aicatalog.daemon.tagger import NodeTagger
from aicatalog.daemon.tree import ContentTree, Node, NodeFinder, text_of


SESSION_A = "aaaaaaaa-1111-2222-3333-444444444444"
SESSION_B = "bbbbbbbb-1111-2222-3333-444444444444"


def chat_url(session_id: str) -> str:
    return f"https://claude.ai/chat/{session_id}"


class Chat:
    """A fake conversation view: main > scroll container > turns."""

    def __init__(self, location: str = "/"):
        self.tree = ContentTree(location=location)
        self.main = self.tree.append(self.tree.body, self.tree.element("main"))
        self.scroller = self.tree.append(
            self.main, self.tree.element("div", {"class": "overflow-y-auto"})
        )
        self.tree.set_scroll_height(self.scroller, 1000.0)

    def user_turn(self, text: str) -> Node:
        return self.tree.element("div", {"data-testid": "user-message"}, text=text)

    def reply(self, text: str) -> Node:
        return self.tree.element("div", {"class": "font-claude-message"}, text=text)

    def say(self, *texts: str) -> List[Node]:
        """Append user turns, each followed by a reply."""
        nodes = []
        for text in texts:
            nodes.append(self.tree.append(self.scroller, self.user_turn(text)))
            self.tree.append(self.scroller, self.reply(f"reply to {text}"))
        return nodes

    def user_nodes(self) -> List[Node]:
        return self.tree.query_all('[data-testid="user-message"]')

    def rerender(self, *texts: str) -> List[Node]:
        """Replace the whole conversation with fresh, untagged nodes."""
        children = []
        turns = []
        for text in texts:
            turn = self.user_turn(text)
            turns.append(turn)
            children.extend([turn, self.reply(f"reply to {text}")])
        self.tree.replace_children(self.scroller, children)
        return turns

    def texts(self) -> List[str]:
        return [text_of(n) for n in self.user_nodes()]


@pytest.fixture
def test_config(tmp_path):
    """Configuration with short timings so tests run quickly."""
    return Config(
        store_path=tmp_path / "store.json",
        watcher={"debounce_ms": 30},
        session={
            "poll_interval_s": 0.02,
            "initial_rescan_delays_s": [0.15],
            "switch_rescan_delays_s": [0.1],
        },
        locator={"settle_delay_s": 0.05, "highlight_duration_s": 0.05},
    )


@pytest.fixture
def chat():
    return Chat(location=chat_url(SESSION_A))


@pytest.fixture
def backend():
    return MemoryStore()


@pytest.fixture
def store(backend):
    return CatalogStore(backend)


@pytest.fixture
def guard():
    return ConsistencyGuard()


@pytest.fixture
def tagger():
    return NodeTagger()


@pytest.fixture
def finder(test_config):
    return NodeFinder(test_config.capture.entry_selectors)


@pytest.fixture
def merger(test_config, chat, store, guard, tagger, finder):
    return CaptureMerger(test_config.capture, chat.tree, store, guard, tagger, finder, EventBus())


async def stored_texts(store: CatalogStore, session_id: str) -> Optional[List[str]]:
    session = await store.get_session(session_id)
    return [e.text for e in session.entries] if session else None
