"""Persistence for captured sessions.

The engine sees storage as an opaque asynchronous key-value service that can
disappear at any moment (host shutdown). Backends raise StoreUnavailableError
or I/O errors freely; CatalogStore is the only caller and turns every failure
into a safe default, so nothing above it ever sees a storage exception.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
from loguru import logger

from .models import Entry, Session, sessions_from_record, sessions_to_record


class StoreUnavailableError(Exception):
    """The persistence host cannot be reached."""


class KeyValueStore:
    """Asynchronous key -> JSON-value store contract."""

    @property
    def available(self) -> bool:
        raise NotImplementedError

    async def get(self, key: str) -> Any:
        """Return the value for `key`, or None when absent."""
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release the backend; afterwards it reports itself unavailable."""


class MemoryStore(KeyValueStore):
    """
    In-process backend.

    `latency` adds a real suspension point to every call so callers can be
    interleaved the same way they would be against a remote host. Values are
    copied through JSON on the way in and out, matching what a serializing
    host hands back.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._available = True
        self._data: Dict[str, str] = {}
        self.reads = 0
        self.writes = 0

    @property
    def available(self) -> bool:
        return self._available

    @available.setter
    def available(self, value: bool) -> None:
        self._available = value

    async def _suspend(self) -> None:
        await asyncio.sleep(self.latency)
        if not self._available:
            raise StoreUnavailableError("memory store is unavailable")

    async def get(self, key: str) -> Any:
        await self._suspend()
        self.reads += 1
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        await self._suspend()
        self.writes += 1
        self._data[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        await self._suspend()
        self._data.pop(key, None)

    async def close(self) -> None:
        self._available = False


class JsonFileStore(KeyValueStore):
    """
    Backend keeping every key in a single JSON document on disk.

    Writes land in a sibling temp file which then replaces the target, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def available(self) -> bool:
        return not self._closed

    async def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
            content = await f.read()
        if not content.strip():
            return {}
        data = json.loads(content)
        return data if isinstance(data, dict) else {}

    async def _write_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, ensure_ascii=False))
            await f.flush()
        os.replace(tmp_path, self.path)

    def _check(self) -> None:
        if self._closed:
            raise StoreUnavailableError(f"store {self.path} is closed")

    async def get(self, key: str) -> Any:
        self._check()
        async with self._lock:
            return (await self._read_all()).get(key)

    async def set(self, key: str, value: Any) -> None:
        self._check()
        async with self._lock:
            data = await self._read_all()
            data[key] = value
            await self._write_all(data)

    async def remove(self, key: str) -> None:
        self._check()
        async with self._lock:
            data = await self._read_all()
            if key in data:
                del data[key]
                await self._write_all(data)

    async def close(self) -> None:
        self._closed = True
        logger.debug(f"Closed store: {self.path}")


class CatalogStore:
    """
    Catalog adapter over a KeyValueStore.

    The whole catalog lives under one key as a mapping of session id to
    session. Reads of a missing key, or of an unreachable host, yield an empty
    mapping; writes to an unreachable host are dropped.
    """

    def __init__(self, backend: KeyValueStore, key: str = "aicatalog_data"):
        self.backend = backend
        self.key = key

    @property
    def available(self) -> bool:
        try:
            return bool(self.backend.available)
        except Exception as e:
            logger.warning(f"Store availability check failed: {e}")
            return False

    async def load_record(self) -> Dict[str, Any]:
        """Raw persisted record; `{}` when missing or unreachable."""
        if not self.available:
            return {}
        try:
            record = await self.backend.get(self.key)
        except StoreUnavailableError as e:
            logger.debug(f"Store unavailable on read: {e}")
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read catalog: {e}")
            return {}
        return record if isinstance(record, dict) else {}

    async def load(self) -> Dict[str, Session]:
        return sessions_from_record(await self.load_record())

    async def save(self, sessions: Dict[str, Session]) -> bool:
        """Persist the full snapshot. Returns False if the write was dropped."""
        if not self.available:
            return False
        try:
            await self.backend.set(self.key, sessions_to_record(sessions))
        except StoreUnavailableError as e:
            logger.debug(f"Store unavailable on write: {e}")
            return False
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write catalog: {e}")
            return False
        return True

    async def clear(self) -> bool:
        """Remove every stored session (operator-triggered bulk clear)."""
        if not self.available:
            return False
        try:
            await self.backend.remove(self.key)
        except StoreUnavailableError as e:
            logger.debug(f"Store unavailable on clear: {e}")
            return False
        except OSError as e:
            logger.warning(f"Failed to clear catalog: {e}")
            return False
        logger.info("Catalog cleared")
        return True

    async def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return (await self.load()).get(session_id)

    async def get_entry(self, session_id: Optional[str], entry_id: str) -> Optional[Entry]:
        session = await self.get_session(session_id)
        return session.find(entry_id) if session else None

    async def selected_entries(self, session_id: str, entry_ids: Iterable[str]) -> List[Entry]:
        """Entries of `session_id` whose id is in `entry_ids`, in persisted order."""
        wanted = set(entry_ids)
        session = await self.get_session(session_id)
        if session is None:
            return []
        return [e for e in session.entries if e.id in wanted]

    async def summaries(self) -> List[Dict[str, Any]]:
        """Per-session overview, most recently updated first."""
        sessions = await self.load()
        rows = [
            {
                "session_id": session_id,
                "title": s.title or session_id[:20],
                "created_at": s.created_at,
                "updated_at": s.updated_at,
                "entry_count": len(s.entries),
            }
            for session_id, s in sessions.items()
        ]
        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        return rows

    async def export_json(self) -> str:
        """The whole catalog as pretty-printed JSON."""
        return json.dumps(await self.load_record(), indent=2, ensure_ascii=False)
