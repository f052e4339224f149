"""Session-local tags on live tree nodes.

Each captured node carries two string attributes: the entry id it was
captured as and the session it was captured under. Tags are a best-effort
cache correlating nodes with stored entries; the store stays authoritative.

`claim` is a conditional write on an attribute. It works as a mutex only
because the scan that calls it never awaits: on the single-threaded loop no
other capture pass can run between the check and the write. A port to real
threads would need an atomic compare-and-set per node instead.
"""

from typing import Iterable, Optional

from .tree import ContentTree, Node


class NodeTagger:
    """Reads and writes the entry-id / session-id tag pair on nodes."""

    def __init__(self, entry_attr: str = "data-aic-id", session_attr: str = "data-aic-chat"):
        self.entry_attr = entry_attr
        self.session_attr = session_attr

    def entry_id(self, node: Node) -> Optional[str]:
        return node.get(self.entry_attr) or None

    def session_id(self, node: Node) -> Optional[str]:
        return node.get(self.session_attr) or None

    def is_claimed(self, node: Node) -> bool:
        return self.entry_id(node) is not None

    def claim(self, node: Node, entry_id: str, session_id: str) -> bool:
        """Tag an untagged node with `entry_id`; False if it already has one."""
        if self.is_claimed(node):
            return False
        node[self.entry_attr] = entry_id
        node[self.session_attr] = session_id
        return True

    def stamp(self, nodes: Iterable[Node], session_id: Optional[str]) -> int:
        """
        Mark nodes as belonging to `session_id` without claiming an entry.

        Used when leaving a session so its still-mounted nodes read as foreign
        to the next one. Nodes that already carry a session tag keep it.
        """
        if not session_id:
            return 0
        count = 0
        for node in nodes:
            if self.session_id(node) is None:
                node[self.session_attr] = session_id
                count += 1
        return count

    def is_foreign(self, node: Node, session_id: Optional[str]) -> bool:
        owner = self.session_id(node)
        return owner is not None and owner != session_id

    def find_tagged(self, tree: ContentTree, entry_id: str) -> Optional[Node]:
        """The live node currently tagged with `entry_id`, if any."""
        return tree.soup.find(attrs={self.entry_attr: entry_id})
