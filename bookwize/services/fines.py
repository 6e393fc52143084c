import logging
import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from bookwize.errors import AlreadySettled, NotFound
from bookwize.models import (
    CirculationRecord,
    Fine,
    FineReason,
    FineStatus,
    PaymentMethod,
    to_iso,
    to_money,
)
from bookwize.services.ledger import CirculationLedger
from bookwize.store import RecordStore

logger = logging.getLogger(__name__)

ZERO = to_money(0)


class FineAccrualEngine:
    """Computes overdue fines and owns the pending -> paid/waived lifecycle.

    An overdue fine is written once, when the loan is settled, and its amount
    never changes afterwards. Until then the charge for an open loan is
    computed live from the due date.
    """

    COLLECTION = "fines"

    def __init__(self, store: RecordStore, ledger: CirculationLedger, daily_rate: Decimal) -> None:
        self.store = store
        self.ledger = ledger
        self.daily_rate = to_money(daily_rate)

    @staticmethod
    def calculate_fine(record: CirculationRecord, as_of: datetime, daily_rate: Decimal) -> Decimal:
        """Whole overdue days up to the return (or ``as_of``) times ``daily_rate``.

        Partial days do not count. A loan that is not past due costs nothing.
        """
        return to_money(record.days_overdue(as_of) * to_money(daily_rate))

    def live_fine(self, record: CirculationRecord, as_of: datetime) -> Decimal:
        return self.calculate_fine(record, as_of, self.daily_rate)

    async def get(self, fine_id: str) -> Fine:
        rows = await self.store.select(self.COLLECTION, {"id": fine_id})
        if not rows:
            raise NotFound("Fine", fine_id)
        return Fine.from_dict(rows[0])

    async def assess_fine(self, member_id: str, amount, reason: FineReason, now: datetime,
                          loan_id: Optional[str] = None) -> Fine:
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValueError("Fine amount must be positive.")
        fine = Fine(
            id=str(uuid.uuid4()),
            member_id=member_id,
            amount=amount,
            reason=FineReason(reason),
            date=now,
            loan_id=loan_id,
        )
        stored = await self.store.insert(self.COLLECTION, fine.to_dict())
        logger.info(f"Assessed {fine.reason.value} fine of {amount} against member {member_id}")
        return Fine.from_dict(stored)

    async def settle(self, fine_id: str, method: PaymentMethod, now: datetime) -> Fine:
        return await self._close(fine_id, FineStatus.PAID, now, PaymentMethod(method))

    async def waive(self, fine_id: str, now: datetime) -> Fine:
        return await self._close(fine_id, FineStatus.WAIVED, now, None)

    async def _close(self, fine_id: str, status: FineStatus, now: datetime,
                     method: Optional[PaymentMethod]) -> Fine:
        rows = await self.store.update(
            self.COLLECTION,
            {"id": fine_id, "status": FineStatus.PENDING.value},
            {"status": status.value,
             "payment_method": method.value if method else None,
             "settled_at": to_iso(now)},
        )
        if not rows:
            current = await self.get(fine_id)
            raise AlreadySettled(fine_id, current.status.value)
        logger.info(f"Fine {fine_id} {status.value}")
        return Fine.from_dict(rows[0])

    async def fines_for(self, member_id: str, status: Optional[FineStatus] = None) -> List[Fine]:
        filters = {"member_id": member_id}
        if status is not None:
            filters["status"] = FineStatus(status).value
        rows = await self.store.select(self.COLLECTION, filters)
        return sorted((Fine.from_dict(r) for r in rows), key=lambda f: f.date)

    async def outstanding_balance(self, member_id: str, as_of: datetime) -> Decimal:
        """Pending fines plus the live charge on open overdue loans."""
        pending = await self.fines_for(member_id, FineStatus.PENDING)
        total = sum((f.amount for f in pending), ZERO)
        for record in await self.ledger.open_loans_for(member_id):
            total += self.live_fine(record, as_of)
        return to_money(total)

    async def accrued_overdue_fines(self, as_of: datetime) -> Dict[str, Decimal]:
        """Live overdue charges per member, without writing any fine."""
        totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for record in await self.ledger.overdue_records(as_of):
            amount = self.live_fine(record, as_of)
            if amount > ZERO:
                totals[record.member_id] += amount
        return dict(totals)
