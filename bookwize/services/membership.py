import logging
import uuid
from datetime import datetime
from typing import Optional

from bookwize.config import CirculationPolicy
from bookwize.errors import DuplicateMember, IntegrityViolation, MemberIneligible, NotFound, TransientStoreFailure
from bookwize.models import Member, MemberStatus
from bookwize.services.ledger import CirculationLedger
from bookwize.store import RecordStore
from bookwize.validators import TextValidator

logger = logging.getLogger(__name__)


class MembershipRegistry:
    """Member records and the borrowing entitlements of each membership type."""

    COLLECTION = "members"

    def __init__(self, store: RecordStore, policy: CirculationPolicy, ledger: CirculationLedger) -> None:
        self.store = store
        self.policy = policy
        self.ledger = ledger

    async def get(self, member_id: str) -> Member:
        rows = await self.store.select(self.COLLECTION, {"id": member_id})
        if not rows:
            raise NotFound("Member", member_id)
        return Member.from_dict(rows[0])

    async def find_by_email(self, email: str) -> Member:
        rows = await self.store.select(self.COLLECTION, {"email": email.strip().lower()})
        if not rows:
            raise NotFound("Member", email)
        return Member.from_dict(rows[0])

    async def register(self, member: Member) -> Member:
        if not TextValidator.validate_email(member.email):
            raise ValueError(f"Invalid email: {member.email!r}")
        if not member.name or not member.name.strip():
            raise ValueError("Member name is required.")
        member.email = member.email.strip().lower()
        member.id = member.id or str(uuid.uuid4())
        member.open_loans = 0
        try:
            stored = await self.store.insert(self.COLLECTION, member.to_dict())
        except IntegrityViolation as e:
            raise DuplicateMember(f"A member with email {member.email} already exists") from e
        logger.info(f"Registered {member.membership_type.value} member {member.id}")
        return Member.from_dict(stored)

    async def set_status(self, member_id: str, status: MemberStatus) -> Member:
        await self.get(member_id)
        row = await self.store.update(self.COLLECTION, {"id": member_id},
                                      {"status": MemberStatus(status).value}, single=True)
        logger.info(f"Member {member_id} is now {row['status']}")
        return Member.from_dict(row)

    # ------------------------- Entitlements ------------------------- #
    async def borrowing_limit(self, member_id: str) -> int:
        member = await self.get(member_id)
        return self.policy.borrowing_limit(member.membership_type)

    async def loan_period_days(self, member_id: str) -> int:
        member = await self.get(member_id)
        return self.policy.loan_period_days(member.membership_type)

    async def open_loan_count(self, member_id: str) -> int:
        return len(await self.ledger.open_loans_for(member_id))

    async def ineligibility_reason(self, member_id: str, now: datetime) -> Optional[str]:
        """Why the member may not borrow right now, or None when they may."""
        member = await self.get(member_id)
        if member.status != MemberStatus.ACTIVE:
            return f"membership is {member.status.value}"
        if not member.is_active(now):
            return "membership has expired"
        limit = self.policy.borrowing_limit(member.membership_type)
        open_loans = max(await self.open_loan_count(member_id), member.open_loans)
        if open_loans >= limit:
            return f"borrowing limit of {limit} reached"
        return None

    async def is_eligible_to_borrow(self, member_id: str, now: datetime) -> bool:
        return await self.ineligibility_reason(member_id, now) is None

    # ------------------------- Loan slots ------------------------- #
    async def claim_loan_slot(self, member_id: str) -> Member:
        """Count one more open loan against the member, refusing past the limit.

        The write is conditional on the count that was read, so two issuers
        sharing a store cannot both take the member's last slot.
        """
        member = await self.get(member_id)
        limit = self.policy.borrowing_limit(member.membership_type)
        return await self._adjust_open_loans(member_id, 1, limit)

    async def release_loan_slot(self, member_id: str) -> Member:
        return await self._adjust_open_loans(member_id, -1)

    async def restore_loan_slot(self, member_id: str) -> Member:
        """Take back a released slot without checking the limit (used when undoing a return)."""
        return await self._adjust_open_loans(member_id, 1)

    async def _adjust_open_loans(self, member_id: str, delta: int, limit: Optional[int] = None) -> Member:
        retries = self.policy.inventory_cas_retries
        for attempt in range(1, retries + 1):
            member = await self.get(member_id)
            if limit is not None and member.open_loans + delta > limit:
                raise MemberIneligible(member_id, f"borrowing limit of {limit} reached")
            rows = await self.store.update(
                self.COLLECTION,
                {"id": member_id, "open_loans": member.open_loans},
                {"open_loans": max(member.open_loans + delta, 0)},
            )
            if rows:
                return Member.from_dict(rows[0])
            logger.warning(f"Open loan count of {member_id} changed underneath us, retrying ({attempt}/{retries})")
        raise TransientStoreFailure(f"Could not update open loans of {member_id}: too much contention")
