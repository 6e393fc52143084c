import logging
import uuid
from datetime import datetime
from typing import List, Optional

from bookwize.errors import AlreadyReturned, NotFound, NotRenewable
from bookwize.models import CirculationRecord, LoanStatus, to_iso
from bookwize.store import RecordStore

logger = logging.getLogger(__name__)


class CirculationLedger:
    """The record of every loan. Records are never deleted.

    State changes are conditional on the loan still being open, so a
    duplicate return or renewal loses cleanly instead of overwriting.
    """

    COLLECTION = "circulation_records"

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def get(self, record_id: str) -> CirculationRecord:
        rows = await self.store.select(self.COLLECTION, {"id": record_id})
        if not rows:
            raise NotFound("Loan", record_id)
        return CirculationRecord.from_dict(rows[0])

    async def find(self, record_id: str) -> Optional[CirculationRecord]:
        rows = await self.store.select(self.COLLECTION, {"id": record_id})
        return CirculationRecord.from_dict(rows[0]) if rows else None

    async def open_loans_for(self, member_id: str) -> List[CirculationRecord]:
        rows = await self.store.select(self.COLLECTION, {"member_id": member_id, "return_date": None})
        return sorted((CirculationRecord.from_dict(r) for r in rows), key=lambda r: r.due_date)

    async def history_for(self, member_id: str) -> List[CirculationRecord]:
        rows = await self.store.select(self.COLLECTION, {"member_id": member_id})
        return sorted((CirculationRecord.from_dict(r) for r in rows), key=lambda r: r.issue_date)

    async def open_loans_for_book(self, book_id: str) -> List[CirculationRecord]:
        rows = await self.store.select(self.COLLECTION, {"book_id": book_id, "return_date": None})
        return [CirculationRecord.from_dict(r) for r in rows]

    async def create(self, book_id: str, isbn: str, member_id: str,
                     issue_date: datetime, due_date: datetime,
                     record_id: Optional[str] = None) -> CirculationRecord:
        record = CirculationRecord(
            id=record_id or str(uuid.uuid4()),
            book_id=book_id,
            isbn=isbn,
            member_id=member_id,
            issue_date=issue_date,
            due_date=due_date,
        )
        stored = await self.store.insert(self.COLLECTION, record.to_dict())
        return CirculationRecord.from_dict(stored)

    async def mark_returned(self, record_id: str, return_date: datetime) -> CirculationRecord:
        rows = await self.store.update(
            self.COLLECTION,
            {"id": record_id, "return_date": None},
            {"return_date": to_iso(return_date), "status": LoanStatus.RETURNED.value},
        )
        if not rows:
            # raises NotFound when the id is unknown
            await self.get(record_id)
            raise AlreadyReturned(record_id)
        return CirculationRecord.from_dict(rows[0])

    async def reopen(self, record: CirculationRecord) -> CirculationRecord:
        """Undo ``mark_returned`` for ``record`` (its state before the return)."""
        row = await self.store.update(
            self.COLLECTION,
            {"id": record.id, "status": LoanStatus.RETURNED.value},
            {"return_date": None, "status": record.status.value},
            single=True,
        )
        return CirculationRecord.from_dict(row)

    async def renew(self, record_id: str, new_due_date: datetime,
                    max_renewals: Optional[int] = None) -> CirculationRecord:
        record = await self.get(record_id)
        for _ in range(3):
            if not record.is_open:
                raise AlreadyReturned(record_id)
            if max_renewals is not None and record.renewal_count >= max_renewals:
                raise NotRenewable(record_id, f"renewal limit of {max_renewals} reached")
            rows = await self.store.update(
                self.COLLECTION,
                {"id": record_id, "return_date": None, "renewal_count": record.renewal_count},
                {"due_date": to_iso(new_due_date),
                 "renewal_count": record.renewal_count + 1,
                 "status": LoanStatus.RENEWED.value},
            )
            if rows:
                return CirculationRecord.from_dict(rows[0])
            record = await self.get(record_id)
        raise NotRenewable(record_id, "loan is being changed by another request")

    async def overdue_records(self, now: datetime) -> List[CirculationRecord]:
        """Open loans past due at ``now``. Computed on every call."""
        rows = await self.store.select(self.COLLECTION, {"return_date": None})
        records = (CirculationRecord.from_dict(r) for r in rows)
        return sorted((r for r in records if r.is_overdue(now)), key=lambda r: r.due_date)
