import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from bookwize.book import Book
from bookwize.errors import (
    IntegrityViolation,
    InventoryExhausted,
    NotFound,
    QuantityOverflow,
    TransientStoreFailure,
)
from bookwize.models import to_iso, utcnow
from bookwize.store import RecordStore
from bookwize.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)


@dataclass
class ImportReport:
    added: int = 0
    merged: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"added": self.added, "merged": self.merged, "skipped": self.skipped, "errors": self.errors}


class CatalogInventory:
    """Owns book records and their total/available copy counts.

    Copy counts only move through conditional writes: the update filter
    carries the counts that were read, so two callers racing for the same
    copy cannot both succeed.
    """

    COLLECTION = "books"

    def __init__(self, store: RecordStore, cas_retries: int = 10) -> None:
        self.store = store
        self.cas_retries = cas_retries

    # ------------------------- Lookups ------------------------- #
    async def find_by_isbn(self, isbn: str) -> Book:
        norm = ISBNValidator.normalize_isbn(isbn)
        rows = await self.store.select(self.COLLECTION, {"isbn": norm})
        if not rows:
            raise NotFound("Book", isbn)
        return Book.from_dict(rows[0])

    async def get(self, book_id: str) -> Book:
        rows = await self.store.select(self.COLLECTION, {"id": book_id})
        if not rows:
            raise NotFound("Book", book_id)
        return Book.from_dict(rows[0])

    async def list_books(self) -> List[Book]:
        rows = await self.store.select(self.COLLECTION)
        return sorted((Book.from_dict(r) for r in rows), key=lambda b: b.title.lower())

    async def search(self, query: str) -> List[Book]:
        """Case-insensitive match on title, author or ISBN."""
        t = query.lower().strip()
        if not t:
            return await self.list_books()
        return [
            b for b in await self.list_books()
            if t in b.title.lower() or t in b.author.lower() or t in b.isbn.lower()
        ]

    # ------------------------- Catalog management ------------------------- #
    async def add_book(self, book: Book, now: Optional[datetime] = None) -> Book:
        """Add a new title, or add the copies to the existing record for that ISBN."""
        now = now or utcnow()
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValueError(f"Invalid ISBN: {book.isbn!r}")
        if not TextValidator.validate_title(book.title) or not TextValidator.validate_author(book.author):
            raise ValueError("Title and author are required.")
        if book.quantity < 1:
            raise ValueError("Quantity must be at least 1.")

        for _ in range(self.cas_retries):
            try:
                existing = await self.find_by_isbn(book.isbn)
            except NotFound:
                record = book.to_dict()
                record.update(
                    id=book.id or str(uuid.uuid4()),
                    available_quantity=book.quantity,
                    retired=False,
                    added_at=to_iso(now),
                    last_modified=to_iso(now),
                )
                try:
                    stored = await self.store.insert(self.COLLECTION, record)
                except IntegrityViolation:
                    # another caller created the ISBN first; merge into it
                    continue
                logger.info(f"Catalogued {book.isbn} with {book.quantity} copies")
                return Book.from_dict(stored)

            rows = await self.store.update(
                self.COLLECTION,
                {"isbn": existing.isbn, "quantity": existing.quantity,
                 "available_quantity": existing.available_quantity},
                {"quantity": existing.quantity + book.quantity,
                 "available_quantity": existing.available_quantity + book.quantity,
                 "retired": False,
                 "last_modified": to_iso(now)},
            )
            if rows:
                logger.info(f"Added {book.quantity} copies to {existing.isbn}")
                return Book.from_dict(rows[0])
        raise TransientStoreFailure(f"Could not add copies of {book.isbn}: too much contention")

    async def import_csv(self, text: str, now: Optional[datetime] = None) -> ImportReport:
        """Import rows of ``ISBN,Title,Author,Publisher,Quantity``."""
        report = ImportReport()
        reader = csv.reader(io.StringIO(text))
        for line_no, row in enumerate(reader, 1):
            if not row or not any(cell.strip() for cell in row):
                continue
            if line_no == 1 and row[0].strip().lower() == "isbn":
                continue
            if len(row) < 5:
                report.skipped += 1
                report.errors.append(f"line {line_no}: expected 5 columns, got {len(row)}")
                continue
            isbn, title, author, publisher, quantity = (cell.strip() for cell in row[:5])
            try:
                copies = int(quantity)
            except ValueError:
                report.skipped += 1
                report.errors.append(f"line {line_no}: quantity {quantity!r} is not a whole number")
                continue
            try:
                existed = await self._exists(isbn)
                await self.add_book(
                    Book(title=title, author=author, isbn=isbn, quantity=copies, publisher=publisher or None),
                    now=now,
                )
            except ValueError as e:
                report.skipped += 1
                report.errors.append(f"line {line_no}: {e}")
                continue
            if existed:
                report.merged += 1
            else:
                report.added += 1
        logger.info(f"CSV import: {report.added} added, {report.merged} merged, {report.skipped} skipped")
        return report

    async def _exists(self, isbn: str) -> bool:
        try:
            await self.find_by_isbn(isbn)
            return True
        except NotFound:
            return False

    async def retire(self, isbn: str, now: Optional[datetime] = None) -> Book:
        """Withdraw a title from circulation without deleting it."""
        book = await self.find_by_isbn(isbn)
        rows = await self.store.update(
            self.COLLECTION, {"isbn": book.isbn},
            {"retired": True, "last_modified": to_iso(now or utcnow())},
        )
        logger.info(f"Retired {book.isbn} ({book.on_loan} copies still on loan)")
        return Book.from_dict(rows[0])

    # ------------------------- Copy counts ------------------------- #
    async def decrement_available(self, isbn: str, now: Optional[datetime] = None) -> Book:
        return await self._adjust_available(isbn, -1, now)

    async def increment_available(self, isbn: str, now: Optional[datetime] = None) -> Book:
        return await self._adjust_available(isbn, 1, now)

    async def _adjust_available(self, isbn: str, delta: int, now: Optional[datetime]) -> Book:
        stamp = to_iso(now or utcnow())
        for attempt in range(1, self.cas_retries + 1):
            book = await self.find_by_isbn(isbn)
            target = book.available_quantity + delta
            if delta < 0 and not book.is_available:
                raise InventoryExhausted(book.isbn)
            if target > book.quantity:
                raise QuantityOverflow(book.isbn)
            rows = await self.store.update(
                self.COLLECTION,
                {"isbn": book.isbn, "quantity": book.quantity,
                 "available_quantity": book.available_quantity},
                {"available_quantity": target, "last_modified": stamp},
            )
            if rows:
                return Book.from_dict(rows[0])
            logger.warning(f"Copy count of {book.isbn} changed underneath us, retrying ({attempt}/{self.cas_retries})")
        raise TransientStoreFailure(f"Could not update copies of {isbn}: too much contention")
