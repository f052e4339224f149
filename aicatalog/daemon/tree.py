"""Host model of the live, externally-owned content tree.

The conversation UI owns this tree: it adds, removes and re-renders nodes on
its own schedule. The engine only reads text, reads and writes string
attributes, subscribes to structural changes and drives scrolling. Nodes are
BeautifulSoup tags in one parsed document; structural edits go through
ContentTree so observers hear about them. A host integration keeps a
ContentTree in sync with the real UI; tests build one directly.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag
from loguru import logger

# Elements of the tree are plain bs4 tags.
Node = Tag

BLANK_DOCUMENT = "<html><body></body></html>"


@dataclass
class MutationRecord:
    """One structural change: children added to or removed from `target`."""
    target: Node
    added: List[Node] = field(default_factory=list)
    removed: List[Node] = field(default_factory=list)


MutationCallback = Callable[[List[MutationRecord]], None]


@dataclass
class ScrollState:
    node: Node
    top: float = 0.0
    height: float = 0.0


# -- class helpers -----------------------------------------------------------

def classes(node: Node) -> List[str]:
    value = node.get("class") or []
    if isinstance(value, str):
        return value.split()
    return list(value)


def has_class(node: Node, name: str) -> bool:
    return name in classes(node)


def add_class(node: Node, name: str) -> None:
    current = classes(node)
    if name not in current:
        node["class"] = current + [name]


def remove_class(node: Node, name: str) -> None:
    remaining = [c for c in classes(node) if c != name]
    if remaining:
        node["class"] = remaining
    elif node.has_attr("class"):
        del node["class"]


def text_of(node: Node) -> str:
    """Rendered text of `node` and its descendants, one block per line."""
    return node.get_text("\n", strip=True)


class Subscription:
    """Handle returned by ContentTree.observe."""

    def __init__(self, tree: "ContentTree", callback: MutationCallback):
        self._tree = tree
        self.callback = callback
        self.active = True

    def disconnect(self) -> None:
        if self.active:
            self.active = False
            self._tree._observers.remove(self)


class ContentTree:
    """A document: parsed soup, current location, observers and scroll state."""

    def __init__(self, location: str = "/", html: Optional[str] = None):
        self.location = location
        self.soup = BeautifulSoup(html or BLANK_DOCUMENT, "html.parser")
        html_tag = self.soup.find("html")
        self.root: Node = html_tag if html_tag is not None else self.soup
        body = self.soup.find("body")
        self.body: Node = body if body is not None else self.root
        self._observers: List[Subscription] = []
        self._scroll: Dict[int, ScrollState] = {}
        self.scrolled_into_view: List[Node] = []

    # -- observers ----------------------------------------------------------

    def observe(self, callback: MutationCallback) -> Subscription:
        """Subscribe to structural changes anywhere below the root."""
        sub = Subscription(self, callback)
        self._observers.append(sub)
        return sub

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def _notify(self, record: MutationRecord) -> None:
        if not self.contains(record.target):
            return
        for sub in list(self._observers):
            if not sub.active:
                continue
            try:
                sub.callback([record])
            except Exception as e:
                logger.error(f"Mutation observer failed: {e}")

    def navigate(self, location: str) -> None:
        self.location = location

    # -- structure ----------------------------------------------------------

    def element(
        self,
        name: str,
        attrs: Optional[Dict[str, str]] = None,
        text: str = "",
        children: Iterable[Node] = (),
    ) -> Node:
        """Create a detached element; attach it with `append` or `insert`."""
        attrs = dict(attrs or {})
        cls = attrs.pop("class", None)
        node = self.soup.new_tag(name, attrs=attrs)
        if cls:
            node["class"] = cls.split()
        if text:
            node.append(text)
        for child in children:
            node.append(child)
        return node

    def contains(self, node: Node) -> bool:
        if node is self.soup:
            return True
        return any(parent is self.soup for parent in node.parents)

    def append(self, parent: Node, child: Node) -> Node:
        return self.insert(parent, len(parent.contents), child)

    def insert(self, parent: Node, index: int, child: Node) -> Node:
        if child.parent is not None:
            self.remove(child)
        parent.insert(index, child)
        self._notify(MutationRecord(target=parent, added=[child]))
        return child

    def remove(self, node: Node) -> Node:
        parent = node.parent
        if parent is None:
            return node
        attached = self.contains(parent)
        node.extract()
        if attached:
            self._notify(MutationRecord(target=parent, removed=[node]))
        return node

    def replace_children(self, parent: Node, children: Sequence[Node]) -> None:
        """Swap out every child at once, as a framework re-render does."""
        removed = [c for c in parent.contents if isinstance(c, Tag)]
        parent.clear()
        for child in children:
            if child.parent is not None:
                child.extract()
            parent.append(child)
        self._notify(MutationRecord(target=parent, added=list(children), removed=removed))

    def set_text(self, node: Node, text: str) -> None:
        """Replace the content of `node` with `text`; observed as a structural change."""
        node.string = text
        self._notify(MutationRecord(target=node))

    # -- queries ------------------------------------------------------------

    def query_all(self, selector: str) -> List[Node]:
        return self.soup.select(selector)

    def query(self, selector: str) -> Optional[Node]:
        return self.soup.select_one(selector)

    # -- scrolling ----------------------------------------------------------

    def _scroll_state(self, node: Node) -> ScrollState:
        state = self._scroll.get(id(node))
        if state is None or state.node is not node:
            state = self._scroll[id(node)] = ScrollState(node)
        return state

    def scroll_height(self, node: Node) -> float:
        return self._scroll_state(node).height

    def set_scroll_height(self, node: Node, height: float) -> None:
        self._scroll_state(node).height = float(height)

    def scroll_top(self, node: Node) -> float:
        return self._scroll_state(node).top

    def scroll_to(self, node: Node, top: float) -> None:
        state = self._scroll_state(node)
        state.top = max(0.0, min(float(top), state.height))

    def scroll_into_view(self, node: Node) -> None:
        if self.contains(node):
            self.scrolled_into_view.append(node)


class NodeFinder:
    """
    Prioritised discovery strategies.

    Selectors are tried in order and the first one yielding any node wins;
    later selectors are not consulted. When nothing matches the result is
    simply empty.
    """

    def __init__(self, selectors: Sequence[str]):
        self.selectors = list(selectors)

    def find_all(self, tree: ContentTree) -> List[Node]:
        for selector in self.selectors:
            nodes = tree.query_all(selector)
            if nodes:
                return nodes
        return []

    def find_first(self, tree: ContentTree) -> Optional[Node]:
        for selector in self.selectors:
            node = tree.query(selector)
            if node is not None:
                return node
        return None
