"""Record store abstraction.

Every service talks to persistence through ``RecordStore``: a keyed document
store with per-collection select/insert/update/delete and equality filters.
Conditional writes are expressed as an ``update`` whose filter includes the
value the caller last observed; an empty result means someone else got there
first.
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bookwize.config import Settings, settings
from bookwize.errors import IntegrityViolation, ZeroOrManyRows

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Filters = Optional[Dict[str, Any]]

COLLECTIONS = ("books", "members", "circulation_records", "fines", "reservations", "book_requests")

# Business keys that must stay unique within a collection
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "books": ("isbn",),
    "members": ("email",),
}


class RecordStore:
    """Interface shared by the memory, SQLite and hosted stores."""

    async def select(self, collection: str, filters: Filters = None, *,
                     single: bool = False) -> Union[List[Record], Record]:
        raise NotImplementedError

    async def insert(self, collection: str, record: Record) -> Record:
        raise NotImplementedError

    async def update(self, collection: str, filters: Filters, patch: Record, *,
                     single: bool = False) -> Union[List[Record], Record]:
        raise NotImplementedError

    async def delete(self, collection: str, filters: Filters) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @staticmethod
    def _expect_one(collection: str, rows: List[Record]) -> Record:
        if len(rows) != 1:
            raise ZeroOrManyRows(collection, len(rows))
        return rows[0]


def _matches(row: Record, filters: Filters) -> bool:
    if not filters:
        return True
    return all(row.get(key) == value for key, value in filters.items())


class MemoryRecordStore(RecordStore):
    """In-process store.

    Each call yields to the event loop before touching data so concurrent
    tasks interleave between a read and the write that depends on it, the
    same way they would against a remote store.
    """

    def __init__(self, unique_keys: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self._data: Dict[str, List[Record]] = {name: [] for name in COLLECTIONS}
        self._unique = {k: tuple(v) for k, v in (unique_keys or UNIQUE_KEYS).items()}
        self._lock = asyncio.Lock()

    def _rows(self, collection: str) -> List[Record]:
        return self._data.setdefault(collection, [])

    def _check_unique(self, collection: str, candidate: Record, skip: Optional[Record] = None) -> None:
        for key in self._unique.get(collection, ()):
            value = candidate.get(key)
            if value is None:
                continue
            for row in self._rows(collection):
                if row is not skip and row.get(key) == value:
                    raise IntegrityViolation(f"{collection}.{key} {value!r} already exists")

    async def select(self, collection, filters=None, *, single=False):
        await asyncio.sleep(0)
        async with self._lock:
            rows = [copy.deepcopy(r) for r in self._rows(collection) if _matches(r, filters)]
        return self._expect_one(collection, rows) if single else rows

    async def insert(self, collection, record):
        await asyncio.sleep(0)
        async with self._lock:
            row = copy.deepcopy(record)
            if not row.get("id"):
                row["id"] = str(uuid.uuid4())
            self._check_unique(collection, row)
            self._rows(collection).append(row)
            return copy.deepcopy(row)

    async def update(self, collection, filters, patch, *, single=False):
        await asyncio.sleep(0)
        async with self._lock:
            targets = [r for r in self._rows(collection) if _matches(r, filters)]
            if single and len(targets) != 1:
                raise ZeroOrManyRows(collection, len(targets))
            for row in targets:
                self._check_unique(collection, {**row, **patch}, skip=row)
            for row in targets:
                row.update(copy.deepcopy(patch))
            updated = [copy.deepcopy(r) for r in targets]
        return updated[0] if single else updated

    async def delete(self, collection, filters):
        await asyncio.sleep(0)
        async with self._lock:
            self._data[collection] = [r for r in self._rows(collection) if not _matches(r, filters)]


def create_store(config: Optional[Settings] = None) -> RecordStore:
    """Build the store named by ``STORE_BACKEND``."""
    config = config or settings
    backend = (config.store_backend or "sqlite").lower()
    if backend == "memory":
        return MemoryRecordStore()
    if backend == "sqlite":
        from bookwize.database import SQLiteRecordStore
        return SQLiteRecordStore(config.database_file)
    if backend == "supabase":
        from bookwize.services.supabase_store import SupabaseRecordStore
        if not config.supabase_url or not config.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set for the supabase backend")
        return SupabaseRecordStore(config.supabase_url, config.supabase_key, timeout=config.supabase_timeout)
    raise ValueError(f"Unknown STORE_BACKEND {config.store_backend!r}")
