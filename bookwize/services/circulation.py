"""Issue, return, renew and reservation workflows.

Each workflow is a short sequence of store writes. When a later step fails
the earlier steps are undone before the error propagates; if the undo itself
fails the caller gets ``PartialFailure`` naming the step that needs manual
reconciliation. Cancelling the caller never cuts a sequence short: it runs
to completion (or undoes itself) before the cancellation is delivered.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Dict, List, Optional, TypeVar

from bookwize.book import Book
from bookwize.config import CirculationPolicy, Settings
from bookwize.errors import (
    AlreadyReturned,
    DuplicateReservation,
    MemberIneligible,
    NotFound,
    NotRenewable,
    PartialFailure,
    ReservationClosed,
)
from bookwize.models import (
    BookRequest,
    BookRequestStatus,
    CirculationRecord,
    Fine,
    FineReason,
    FineStatus,
    Member,
    PaymentMethod,
    Reservation,
    ReservationStatus,
    to_money,
)
from bookwize.services.acquisitions import BookRequestDesk
from bookwize.services.fines import ZERO, FineAccrualEngine
from bookwize.services.inventory import CatalogInventory
from bookwize.services.ledger import CirculationLedger
from bookwize.services.membership import MembershipRegistry
from bookwize.store import RecordStore, create_store
from bookwize.validators import ISBNValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReturnResult:
    record: CirculationRecord
    fine: Optional[Fine] = None
    damage_fine: Optional[Fine] = None

    @property
    def fines(self) -> List[Fine]:
        return [f for f in (self.fine, self.damage_fine) if f is not None]

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "fine": self.fine.to_dict() if self.fine else None,
            "damage_fine": self.damage_fine.to_dict() if self.damage_fine else None,
        }


class CirculationService:
    """Composes inventory, ledger, membership and fines into the loan workflows."""

    RESERVATIONS = "reservations"

    def __init__(self, store: RecordStore, policy: Optional[CirculationPolicy] = None) -> None:
        self.store = store
        self.policy = policy or CirculationPolicy()
        self.ledger = CirculationLedger(store)
        self.inventory = CatalogInventory(store, cas_retries=self.policy.inventory_cas_retries)
        self.membership = MembershipRegistry(store, self.policy, self.ledger)
        self.fines = FineAccrualEngine(store, self.ledger, self.policy.daily_fine_rate)
        self.requests = BookRequestDesk(store)
        # one workflow per member at a time within this process
        self._member_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _member_lock(self, member_id: str) -> asyncio.Lock:
        lock = self._member_locks.get(member_id)
        if lock is None:
            lock = asyncio.Lock()
            self._member_locks[member_id] = lock
        return lock

    async def _compensate(self, operation: str, step: str, action: Awaitable) -> None:
        logger.warning(f"{operation}: rolling back ({step})")
        try:
            await asyncio.shield(action)
        except asyncio.CancelledError:
            # the shielded rollback keeps running
            raise
        except Exception as exc:
            logger.error(f"{operation}: rollback failed at '{step}': {exc!r}")
            raise PartialFailure(operation, step, str(exc)) from exc

    async def _run_to_completion(self, operation: str, steps: Awaitable[T]) -> T:
        """Run a write sequence in its own task so a cancelled caller cannot stop it halfway.

        A store write that was already sent (a worker thread, an HTTP request)
        lands whether or not its awaiter is still there, so instead of
        guessing what happened the caller waits for the sequence to finish or
        undo itself, then sees ``CancelledError``.
        """
        task = asyncio.ensure_future(steps)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"{operation}: caller cancelled, waiting for writes in flight to settle")
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"{operation}: failed after the caller left: {task.exception()!r}")
            raise

    # ------------------------- Loans ------------------------- #
    async def issue_book(self, isbn: str, member_id: str, now: datetime) -> CirculationRecord:
        record = await self._run_to_completion("issue_book", self._issue(isbn, member_id, now))
        logger.info(f"Issued {record.isbn} to {member_id} as loan {record.id}, due {record.due_date:%Y-%m-%d}")
        return record

    async def _issue(self, isbn: str, member_id: str, now: datetime) -> CirculationRecord:
        async with self._member_lock(member_id):
            reason = await self.membership.ineligibility_reason(member_id, now)
            if reason:
                logger.warning(f"Refused to issue {isbn} to {member_id}: {reason}")
                raise MemberIneligible(member_id, reason)
            period = await self.membership.loan_period_days(member_id)

            # the member-row counter enforces the limit for every process sharing the store
            await self.membership.claim_loan_slot(member_id)
            try:
                book = await self.inventory.decrement_available(isbn, now)
            except (Exception, asyncio.CancelledError):
                await self._compensate(
                    "issue_book", "release loan slot after failed inventory update",
                    self.membership.release_loan_slot(member_id),
                )
                raise

            loan_id = str(uuid.uuid4())
            try:
                return await self.ledger.create(
                    book.id, book.isbn, member_id, now, now + timedelta(days=period), record_id=loan_id
                )
            except (Exception, asyncio.CancelledError) as exc:
                landed = await self._landed_loan(loan_id)
                if landed is None:
                    await self._compensate(
                        "issue_book", "restore inventory after failed loan creation",
                        self._release_copy(book.isbn, member_id, now),
                    )
                elif not isinstance(exc, asyncio.CancelledError):
                    logger.warning(f"Loan {loan_id} was stored although the insert reported {exc!r}")
                    return landed
                raise

    async def _landed_loan(self, loan_id: str) -> Optional[CirculationRecord]:
        """The loan row, if an insert that reported failure was stored anyway."""
        try:
            return await asyncio.shield(self.ledger.find(loan_id))
        except Exception as exc:
            logger.error(f"issue_book: could not tell whether loan {loan_id} was stored: {exc!r}")
            raise PartialFailure("issue_book", "confirm whether the loan was stored", str(exc)) from exc

    async def _release_copy(self, isbn: str, member_id: str, now: datetime) -> None:
        await self.inventory.increment_available(isbn, now)
        await self.membership.release_loan_slot(member_id)

    async def return_book(self, record_id: str, now: datetime,
                          damage_fine: Optional[Decimal] = None) -> ReturnResult:
        record = await self.ledger.get(record_id)
        if not record.is_open:
            raise AlreadyReturned(record_id)

        result = await self._run_to_completion("return_book", self._return(record, now, damage_fine))
        logger.info(f"Loan {record_id} returned ({len(result.fines)} fine(s) assessed)")
        return result

    async def _return(self, record: CirculationRecord, now: datetime,
                      damage_fine: Optional[Decimal]) -> ReturnResult:
        async with self._member_lock(record.member_id):
            returned = await self.ledger.mark_returned(record.id, now)
            try:
                await self.inventory.increment_available(record.isbn, now)
            except (Exception, asyncio.CancelledError):
                await self._compensate(
                    "return_book", "reopen loan after failed inventory increment",
                    self.ledger.reopen(record),
                )
                raise

            try:
                await self.membership.release_loan_slot(record.member_id)
            except (Exception, asyncio.CancelledError):
                await self._compensate(
                    "return_book", "reopen loan after failed member update",
                    self._reissue_copy(record, now),
                )
                raise

            written: List[Fine] = []
            try:
                fine = None
                if record.is_overdue(now):
                    amount = self.fines.live_fine(returned, now)
                    if amount > ZERO:
                        fine = await self.fines.assess_fine(
                            record.member_id, amount, FineReason.OVERDUE, now, loan_id=record.id
                        )
                        written.append(fine)
                damage = None
                if damage_fine is not None and to_money(damage_fine) > ZERO:
                    damage = await self.fines.assess_fine(
                        record.member_id, damage_fine, FineReason.DAMAGED, now, loan_id=record.id
                    )
                    written.append(damage)
            except (Exception, asyncio.CancelledError):
                await self._compensate(
                    "return_book", "undo return after failed fine assessment",
                    self._undo_return(record, written, now),
                )
                raise

        return ReturnResult(record=returned, fine=fine, damage_fine=damage)

    async def _reissue_copy(self, record: CirculationRecord, now: datetime) -> None:
        await self.inventory.decrement_available(record.isbn, now)
        await self.ledger.reopen(record)

    async def _undo_return(self, record: CirculationRecord, written: List[Fine], now: datetime) -> None:
        for fine in written:
            await self.store.delete(self.fines.COLLECTION, {"id": fine.id})
        await self.membership.restore_loan_slot(record.member_id)
        await self._reissue_copy(record, now)

    async def renew_loan(self, record_id: str, now: datetime) -> CirculationRecord:
        record = await self.ledger.get(record_id)
        if not record.is_open:
            raise AlreadyReturned(record_id)
        if record.is_overdue(now):
            raise NotRenewable(record_id, "loan is overdue")
        if record.renewal_count >= self.policy.max_renewals:
            raise NotRenewable(record_id, f"renewal limit of {self.policy.max_renewals} reached")

        period = await self.membership.loan_period_days(record.member_id)
        renewed = await self.ledger.renew(record_id, now + timedelta(days=period), self.policy.max_renewals)
        logger.info(f"Renewed loan {record_id} until {renewed.due_date:%Y-%m-%d} (renewal {renewed.renewal_count})")
        return renewed

    # ------------------------- Reservations ------------------------- #
    async def get_reservation(self, reservation_id: str) -> Reservation:
        rows = await self.store.select(self.RESERVATIONS, {"id": reservation_id})
        if not rows:
            raise NotFound("Reservation", reservation_id)
        return Reservation.from_dict(rows[0])

    async def reservations_for(self, isbn: str) -> List[Reservation]:
        book = await self.inventory.find_by_isbn(isbn)
        rows = await self.store.select(
            self.RESERVATIONS, {"book_id": book.id, "status": ReservationStatus.ACTIVE.value}
        )
        # first come, first served
        return sorted((Reservation.from_dict(r) for r in rows), key=lambda r: r.created_at)

    async def place_reservation(self, isbn: str, member_id: str, now: datetime) -> Reservation:
        member = await self.membership.get(member_id)
        if not member.is_active(now):
            raise MemberIneligible(member_id, f"membership is {member.status.value}")
        book = await self.inventory.find_by_isbn(isbn)
        held = await self.store.select(self.RESERVATIONS, {
            "book_id": book.id, "member_id": member_id, "status": ReservationStatus.ACTIVE.value,
        })
        if held:
            raise DuplicateReservation(f"Member {member_id} already holds a reservation for {book.isbn}")
        reservation = Reservation(
            id=str(uuid.uuid4()), book_id=book.id, isbn=book.isbn, member_id=member_id, created_at=now,
        )
        stored = await self.store.insert(self.RESERVATIONS, reservation.to_dict())
        logger.info(f"Member {member_id} reserved {book.isbn}")
        return Reservation.from_dict(stored)

    async def cancel_reservation(self, reservation_id: str) -> Reservation:
        rows = await self.store.update(
            self.RESERVATIONS,
            {"id": reservation_id, "status": ReservationStatus.ACTIVE.value},
            {"status": ReservationStatus.CANCELLED.value},
        )
        if not rows:
            current = await self.get_reservation(reservation_id)
            raise ReservationClosed(f"Reservation {reservation_id} is already {current.status.value}")
        return Reservation.from_dict(rows[0])

    async def fulfill_reservation(self, reservation_id: str, now: datetime) -> CirculationRecord:
        """Issue the reserved book to the member who reserved it."""
        record = await self._run_to_completion("fulfill_reservation", self._fulfill(reservation_id, now))
        logger.info(f"Reservation {reservation_id} fulfilled as loan {record.id}")
        return record

    async def _fulfill(self, reservation_id: str, now: datetime) -> CirculationRecord:
        rows = await self.store.update(
            self.RESERVATIONS,
            {"id": reservation_id, "status": ReservationStatus.ACTIVE.value},
            {"status": ReservationStatus.FULFILLED.value},
        )
        if not rows:
            current = await self.get_reservation(reservation_id)
            raise ReservationClosed(f"Reservation {reservation_id} is already {current.status.value}")
        reservation = Reservation.from_dict(rows[0])

        try:
            record = await self._issue(reservation.isbn, reservation.member_id, now)
        except (Exception, asyncio.CancelledError):
            await self._compensate(
                "fulfill_reservation", "reopen reservation after failed issue",
                self.store.update(self.RESERVATIONS, {"id": reservation_id},
                                  {"status": ReservationStatus.ACTIVE.value}, single=True),
            )
            raise

        await self.store.update(self.RESERVATIONS, {"id": reservation_id}, {"loan_id": record.id}, single=True)
        return record

    # ------------------------- Book requests ------------------------- #
    async def request_book(self, title: str, author: str, quantity: int, reason: str,
                           now: datetime) -> BookRequest:
        return await self.requests.submit(title, author, quantity, reason, now)

    async def book_requests(self, status: Optional[BookRequestStatus] = None) -> List[BookRequest]:
        return await self.requests.list_requests(status)

    async def approve_book_request(self, request_id: str, now: datetime,
                                   isbn: Optional[str] = None) -> BookRequest:
        """Approve a pending request; with an ISBN the requested copies are catalogued too."""
        if isbn is not None:
            isbn = ISBNValidator.normalize_isbn(isbn)
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValueError(f"Invalid ISBN: {isbn!r}")
        return await self._run_to_completion("approve_book_request", self._approve(request_id, now, isbn))

    async def _approve(self, request_id: str, now: datetime, isbn: Optional[str]) -> BookRequest:
        approved = await self.requests.decide(request_id, BookRequestStatus.APPROVED, now, isbn=isbn)
        if isbn is None:
            return approved
        try:
            await self.inventory.add_book(
                Book(title=approved.title, author=approved.author, isbn=isbn, quantity=approved.quantity),
                now=now,
            )
        except (Exception, asyncio.CancelledError):
            await self._compensate(
                "approve_book_request", "reopen request after failed catalog update",
                self.requests.reopen(request_id),
            )
            raise
        return approved

    async def reject_book_request(self, request_id: str, now: datetime) -> BookRequest:
        return await self.requests.decide(request_id, BookRequestStatus.REJECTED, now)

    # ------------------------- Fines ------------------------- #
    async def assess_fine(self, member_id: str, amount, reason: FineReason, now: datetime) -> Fine:
        await self.membership.get(member_id)
        return await self.fines.assess_fine(member_id, amount, reason, now)

    async def pay_fine(self, fine_id: str, method: PaymentMethod, now: datetime) -> Fine:
        return await self.fines.settle(fine_id, method, now)

    async def waive_fine(self, fine_id: str, now: datetime) -> Fine:
        return await self.fines.waive(fine_id, now)

    async def fines_for(self, member_id: str, status: Optional[FineStatus] = None) -> List[Fine]:
        await self.membership.get(member_id)
        return await self.fines.fines_for(member_id, status)

    async def accrued_overdue_fines(self, as_of: datetime) -> Dict[str, Decimal]:
        return await self.fines.accrued_overdue_fines(as_of)

    # ------------------------- Read accessors ------------------------- #
    async def get_book(self, isbn: str) -> Book:
        return await self.inventory.find_by_isbn(isbn)

    async def get_member(self, member_id: str) -> Member:
        return await self.membership.get(member_id)

    async def open_loans(self, member_id: str) -> List[CirculationRecord]:
        await self.membership.get(member_id)
        return await self.ledger.open_loans_for(member_id)

    async def overdue_loans(self, now: datetime) -> List[CirculationRecord]:
        return await self.ledger.overdue_records(now)

    async def outstanding_balance(self, member_id: str, now: datetime) -> Decimal:
        await self.membership.get(member_id)
        return await self.fines.outstanding_balance(member_id, now)

    async def close(self) -> None:
        await self.store.close()


def build_circulation_service(config: Optional[Settings] = None,
                              store: Optional[RecordStore] = None) -> CirculationService:
    """Wire a service from settings; ``store`` overrides the configured backend."""
    return CirculationService(
        store or create_store(config),
        CirculationPolicy.from_settings(config),
    )
