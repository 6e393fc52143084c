import asyncio
import json
import logging
import os
import sqlite3
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bookwize.errors import IntegrityViolation, StoreError, TransientStoreFailure, ZeroOrManyRows
from bookwize.store import Filters, Record, RecordStore

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE
# 2) bookwize.db in the working directory, shared by every CLI call and the API
DEFAULT_DATABASE_FILE = "bookwize.db"
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or DEFAULT_DATABASE_FILE

TABLES: Dict[str, str] = {
    "books": """
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            isbn TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            publisher TEXT,
            quantity INTEGER NOT NULL CHECK(quantity >= 0),
            available_quantity INTEGER NOT NULL
                CHECK(available_quantity >= 0 AND available_quantity <= quantity),
            categories TEXT,
            page_count INTEGER,
            published_date TEXT,
            description TEXT,
            image_url TEXT,
            retired INTEGER NOT NULL DEFAULT 0,
            added_at TEXT,
            last_modified TEXT
        )
    """,
    "members": """
        CREATE TABLE IF NOT EXISTS members (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            membership_type TEXT NOT NULL DEFAULT 'student',
            status TEXT NOT NULL DEFAULT 'active',
            valid_until TEXT,
            joined_at TEXT,
            membership_number TEXT,
            phone TEXT
        )
    """,
    "circulation_records": """
        CREATE TABLE IF NOT EXISTS circulation_records (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            isbn TEXT NOT NULL,
            member_id TEXT NOT NULL,
            issue_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            renewal_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'issued'
        )
    """,
    "fines": """
        CREATE TABLE IF NOT EXISTS fines (
            id TEXT PRIMARY KEY,
            member_id TEXT NOT NULL,
            amount TEXT NOT NULL,
            reason TEXT NOT NULL,
            date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
        )
    """,
    "reservations": """
        CREATE TABLE IF NOT EXISTS reservations (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            isbn TEXT NOT NULL,
            member_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active'
        )
    """,
    "book_requests": """
        CREATE TABLE IF NOT EXISTS book_requests (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK(quantity >= 1),
            reason TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'approved', 'rejected')),
            decided_at TEXT,
            isbn TEXT
        )
    """,
}

# Columns added after the first schema; created on older databases at startup
MIGRATED_COLUMNS: Dict[str, Dict[str, str]] = {
    "members": {"open_loans": "INTEGER NOT NULL DEFAULT 0 CHECK(open_loans >= 0)"},
    "fines": {"loan_id": "TEXT", "payment_method": "TEXT", "settled_at": "TEXT"},
    "reservations": {"loan_id": "TEXT"},
}

# Run once, right after the column is added, to derive its value from existing rows
BACKFILLS: Dict[Tuple[str, str], str] = {
    ("members", "open_loans"): """
        UPDATE members SET open_loans = (
            SELECT COUNT(*) FROM circulation_records
            WHERE circulation_records.member_id = members.id
              AND circulation_records.return_date IS NULL
        )
    """,
}

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_records_member ON circulation_records(member_id, return_date)",
    "CREATE INDEX IF NOT EXISTS idx_records_book ON circulation_records(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_records_due ON circulation_records(return_date, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_fines_member_status ON fines(member_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_isbn ON reservations(isbn, status)",
    "CREATE INDEX IF NOT EXISTS idx_book_requests_status ON book_requests(status, created_at)",
)

JSON_COLUMNS = {"books": {"categories"}}
BOOL_COLUMNS = {"books": {"retired"}}


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; writes take explicit transactions."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=5.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while a writer holds the lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create missing tables, add columns newer than the database, build indexes."""
    for ddl in TABLES.values():
        conn.execute(ddl)

    for table, columns in MIGRATED_COLUMNS.items():
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        for name, kind in columns.items():
            if name not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {kind}")
                if (table, name) in BACKFILLS:
                    conn.execute(BACKFILLS[(table, name)])

    for ddl in INDEXES:
        conn.execute(ddl)


def initialize_database(db_file: Optional[str] = None) -> None:
    conn = get_db_connection(db_file)
    try:
        create_tables(conn)
    finally:
        conn.close()


class SQLiteRecordStore(RecordStore):
    """Record store backed by a local SQLite file.

    Each call opens its own connection on a worker thread. Updates select the
    matching ids and rewrite them inside ``BEGIN IMMEDIATE`` so a conditional
    write cannot interleave with another writer.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE
        initialize_database(self.db_file)
        self._columns = self._load_columns()

    def _load_columns(self) -> Dict[str, List[str]]:
        conn = get_db_connection(self.db_file)
        try:
            return {
                table: [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]
                for table in TABLES
            }
        finally:
            conn.close()

    # ------------------------- Encoding ------------------------- #
    def _check_columns(self, collection: str, names: Sequence[str]) -> None:
        if collection not in self._columns:
            raise StoreError(f"Unknown collection {collection!r}")
        unknown = [n for n in names if n not in self._columns[collection]]
        if unknown:
            raise StoreError(f"Unknown columns for {collection}: {', '.join(unknown)}")

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        if isinstance(value, bool):
            return int(value)
        return value

    def _decode(self, collection: str, row: sqlite3.Row) -> Record:
        record = dict(row)
        for name in JSON_COLUMNS.get(collection, ()):
            if isinstance(record.get(name), str):
                record[name] = json.loads(record[name])
        for name in BOOL_COLUMNS.get(collection, ()):
            if name in record:
                record[name] = bool(record[name])
        return record

    def _where(self, collection: str, filters: Filters):
        self._check_columns(collection, list(filters or ()))
        if not filters:
            return "", []
        clauses, params = [], []
        for name, value in filters.items():
            if value is None:
                clauses.append(f"{name} IS NULL")
            else:
                clauses.append(f"{name} = ?")
                params.append(self._encode(value))
        return " WHERE " + " AND ".join(clauses), params

    # ------------------------- Sync workers ------------------------- #
    def _run(self, fn, *args):
        conn = get_db_connection(self.db_file)
        try:
            return fn(conn, *args)
        except sqlite3.IntegrityError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise IntegrityViolation(str(exc)) from exc
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"SQLite operation failed: {exc}")
            raise TransientStoreFailure(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _select_sync(self, conn, collection, filters):
        where, params = self._where(collection, filters)
        rows = conn.execute(f"SELECT * FROM {collection}{where}", params).fetchall()
        return [self._decode(collection, r) for r in rows]

    def _insert_sync(self, conn, collection, record):
        row = dict(record)
        if not row.get("id"):
            row["id"] = str(uuid.uuid4())
        self._check_columns(collection, list(row))
        names = list(row)
        placeholders = ", ".join("?" for _ in names)
        conn.execute(
            f"INSERT INTO {collection} ({', '.join(names)}) VALUES ({placeholders})",
            [self._encode(row[n]) for n in names],
        )
        stored = conn.execute(f"SELECT * FROM {collection} WHERE id = ?", (row["id"],)).fetchone()
        return self._decode(collection, stored)

    def _update_sync(self, conn, collection, filters, patch, single):
        self._check_columns(collection, list(patch))
        where, params = self._where(collection, filters)
        conn.execute("BEGIN IMMEDIATE")
        ids = [r[0] for r in conn.execute(f"SELECT id FROM {collection}{where}", params)]
        if single and len(ids) != 1:
            conn.execute("ROLLBACK")
            return None, len(ids)
        if ids:
            assignments = ", ".join(f"{name} = ?" for name in patch)
            id_marks = ", ".join("?" for _ in ids)
            conn.execute(
                f"UPDATE {collection} SET {assignments} WHERE id IN ({id_marks})",
                [self._encode(v) for v in patch.values()] + ids,
            )
        conn.execute("COMMIT")
        if not ids:
            return [], 0
        id_marks = ", ".join("?" for _ in ids)
        rows = conn.execute(f"SELECT * FROM {collection} WHERE id IN ({id_marks})", ids).fetchall()
        return [self._decode(collection, r) for r in rows], len(ids)

    def _delete_sync(self, conn, collection, filters):
        where, params = self._where(collection, filters)
        conn.execute(f"DELETE FROM {collection}{where}", params)

    # ------------------------- RecordStore ------------------------- #
    async def select(self, collection, filters=None, *, single=False):
        rows = await asyncio.to_thread(self._run, self._select_sync, collection, filters)
        return self._expect_one(collection, rows) if single else rows

    async def insert(self, collection, record):
        return await asyncio.to_thread(self._run, self._insert_sync, collection, record)

    async def update(self, collection, filters, patch, *, single=False):
        rows, matched = await asyncio.to_thread(
            self._run, self._update_sync, collection, filters, patch, single
        )
        if rows is None:
            raise ZeroOrManyRows(collection, matched)
        return rows[0] if single else rows

    async def delete(self, collection, filters):
        await asyncio.to_thread(self._run, self._delete_sync, collection, filters)
