"""Data models for the AI Catalog capture engine."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import ulid


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_entry_id() -> str:
    """Mint an entry id: a ULID, i.e. capture time plus a random suffix."""
    return str(ulid.ULID())


def normalize_text(text: Optional[str]) -> str:
    """Normalized form used for entry identity: surrounding whitespace stripped."""
    return (text or "").strip()


def _number(value: Any) -> int:
    # Stored records come from outside; anything but a number reads as 0.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


@dataclass
class Entry:
    """A single captured user turn."""
    id: str
    text: str
    timestamp: int = field(default_factory=now_ms)

    @property
    def normalized(self) -> str:
        return normalize_text(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text", "")),
            timestamp=_number(data.get("timestamp")),
        )


@dataclass
class Session:
    """
    One conversation's log of entries.

    Entry ids are unique within a session, and no two entries share
    normalized text; `add_entry` enforces both.
    """
    title: str
    created_at: int
    updated_at: int
    entries: List[Entry] = field(default_factory=list)

    @classmethod
    def start(cls, first: Entry, max_title_length: int = 60) -> "Session":
        """Create a session whose title and timestamps come from its first entry."""
        return cls(
            title=first.text[:max_title_length],
            created_at=first.timestamp,
            updated_at=first.timestamp,
        )

    def contains(self, entry: Entry) -> bool:
        norm = entry.normalized
        return any(e.id == entry.id or e.normalized == norm for e in self.entries)

    def add_entry(self, entry: Entry) -> bool:
        """Append `entry` unless an entry with the same id or normalized text exists."""
        if self.contains(entry):
            return False
        self.entries.append(entry)
        self.updated_at = entry.timestamp
        return True

    def index_of(self, entry_id: str) -> int:
        for i, entry in enumerate(self.entries):
            if entry.id == entry_id:
                return i
        return -1

    def find(self, entry_id: str) -> Optional[Entry]:
        idx = self.index_of(entry_id)
        return self.entries[idx] if idx != -1 else None

    def reorder(self, tree_texts: List[str]) -> None:
        """
        Sort entries to follow the order of `tree_texts`.

        Entries whose normalized text does not appear in `tree_texts` go to the
        end; the sort is stable so those keep their relative order.
        """
        positions: Dict[str, int] = {}
        for i, text in enumerate(tree_texts):
            positions.setdefault(normalize_text(text), i)
        missing = len(tree_texts)
        self.entries.sort(key=lambda e: positions.get(e.normalized, missing))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            title=str(data.get("title", "")),
            created_at=_number(data.get("createdAt")),
            updated_at=_number(data.get("updatedAt")),
            entries=[Entry.from_dict(e) for e in _as_list(data.get("entries")) if isinstance(e, dict)],
        )


def sessions_from_record(record: Any) -> Dict[str, Session]:
    """Decode the persisted record (session id -> session mapping)."""
    if not isinstance(record, dict):
        return {}
    return {
        session_id: Session.from_dict(data)
        for session_id, data in record.items()
        if isinstance(data, dict)
    }


def sessions_to_record(sessions: Dict[str, Session]) -> Dict[str, Any]:
    """Encode sessions into the persisted record shape."""
    return {session_id: s.to_dict() for session_id, s in sessions.items()}
