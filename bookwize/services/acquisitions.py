import logging
import uuid
from datetime import datetime
from typing import List, Optional

from bookwize.errors import NotFound, RequestClosed
from bookwize.models import BookRequest, BookRequestStatus, to_iso
from bookwize.store import RecordStore
from bookwize.validators import TextValidator

logger = logging.getLogger(__name__)


class BookRequestDesk:
    """Requests to acquire titles the catalog does not hold yet.

    A request is decided exactly once: the pending -> approved/rejected
    write is conditional on the request still being pending.
    """

    COLLECTION = "book_requests"

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def get(self, request_id: str) -> BookRequest:
        rows = await self.store.select(self.COLLECTION, {"id": request_id})
        if not rows:
            raise NotFound("Book request", request_id)
        return BookRequest.from_dict(rows[0])

    async def list_requests(self, status: Optional[BookRequestStatus] = None) -> List[BookRequest]:
        """Newest first."""
        filters = {"status": BookRequestStatus(status).value} if status else None
        rows = await self.store.select(self.COLLECTION, filters)
        return sorted((BookRequest.from_dict(r) for r in rows), key=lambda r: r.created_at, reverse=True)

    async def submit(self, title: str, author: str, quantity: int, reason: str, now: datetime) -> BookRequest:
        if not TextValidator.validate_title(title) or not TextValidator.validate_author(author):
            raise ValueError("Title and author are required.")
        if quantity < 1:
            raise ValueError("Quantity must be at least 1.")
        request = BookRequest(
            id=str(uuid.uuid4()),
            title=title.strip(),
            author=author.strip(),
            quantity=quantity,
            reason=(reason or "").strip(),
            created_at=now,
        )
        stored = await self.store.insert(self.COLLECTION, request.to_dict())
        logger.info(f"Book request {request.id}: {quantity} x {request.title!r}")
        return BookRequest.from_dict(stored)

    async def decide(self, request_id: str, status: BookRequestStatus, now: datetime,
                     isbn: Optional[str] = None) -> BookRequest:
        rows = await self.store.update(
            self.COLLECTION,
            {"id": request_id, "status": BookRequestStatus.PENDING.value},
            {"status": BookRequestStatus(status).value, "decided_at": to_iso(now), "isbn": isbn},
        )
        if not rows:
            current = await self.get(request_id)
            raise RequestClosed(f"Book request {request_id} is already {current.status.value}")
        logger.info(f"Book request {request_id} {status.value}")
        return BookRequest.from_dict(rows[0])

    async def reopen(self, request_id: str) -> BookRequest:
        row = await self.store.update(
            self.COLLECTION, {"id": request_id},
            {"status": BookRequestStatus.PENDING.value, "decided_at": None, "isbn": None},
            single=True,
        )
        return BookRequest.from_dict(row)
