import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from bookwize.errors import AlreadySettled, NotFound
from bookwize.models import CirculationRecord, FineReason, FineStatus, PaymentMethod
from bookwize.services.fines import FineAccrualEngine
from bookwize.services.ledger import CirculationLedger

from conftest import NOW, ULYSSES

DUE = NOW


def _record(return_date=None, member_id="m-1"):
    return CirculationRecord(
        id="loan-1", book_id="book-1", isbn=ULYSSES, member_id=member_id,
        issue_date=DUE - timedelta(days=14), due_date=DUE, return_date=return_date,
    )


@pytest.fixture
def engine(store):
    return FineAccrualEngine(store, CirculationLedger(store), Decimal("1.00"))


def test_three_days_late_at_two_per_day():
    record = _record(return_date=DUE + timedelta(days=3))
    assert FineAccrualEngine.calculate_fine(record, DUE + timedelta(days=3), Decimal("2.00")) == Decimal("6.00")


def test_returned_before_due_costs_nothing():
    record = _record(return_date=DUE - timedelta(days=1))
    assert FineAccrualEngine.calculate_fine(record, DUE - timedelta(days=1), Decimal("2.00")) == Decimal("0.00")


def test_partial_days_do_not_count():
    as_of = DUE + timedelta(days=1, hours=23)
    assert FineAccrualEngine.calculate_fine(_record(), as_of, Decimal("1.50")) == Decimal("1.50")


def test_fine_stops_growing_after_return():
    record = _record(return_date=DUE + timedelta(days=2))
    later = DUE + timedelta(days=30)
    assert FineAccrualEngine.calculate_fine(record, later, Decimal("1.00")) == Decimal("2.00")


def test_assess_and_settle(engine):
    fine = asyncio.run(engine.assess_fine("m-1", "4.5", FineReason.LOST, NOW))
    assert fine.amount == Decimal("4.50")
    assert fine.status == FineStatus.PENDING

    paid = asyncio.run(engine.settle(fine.id, PaymentMethod.CARD, NOW + timedelta(hours=1)))
    assert paid.status == FineStatus.PAID
    assert paid.payment_method == PaymentMethod.CARD
    assert paid.settled_at == NOW + timedelta(hours=1)


def test_assess_rejects_non_positive_amount(engine):
    with pytest.raises(ValueError):
        asyncio.run(engine.assess_fine("m-1", 0, FineReason.DAMAGED, NOW))


def test_settled_fine_cannot_change_again(engine):
    fine = asyncio.run(engine.assess_fine("m-1", 3, FineReason.OVERDUE, NOW))
    asyncio.run(engine.settle(fine.id, PaymentMethod.CASH, NOW))

    with pytest.raises(AlreadySettled, match="paid"):
        asyncio.run(engine.settle(fine.id, PaymentMethod.CASH, NOW))
    with pytest.raises(AlreadySettled):
        asyncio.run(engine.waive(fine.id, NOW))
    assert asyncio.run(engine.get(fine.id)).status == FineStatus.PAID


def test_waive_pending_fine(engine):
    fine = asyncio.run(engine.assess_fine("m-1", 3, FineReason.OVERDUE, NOW))
    waived = asyncio.run(engine.waive(fine.id, NOW))
    assert waived.status == FineStatus.WAIVED
    assert waived.payment_method is None


def test_settle_unknown_fine(engine):
    with pytest.raises(NotFound):
        asyncio.run(engine.settle("missing", PaymentMethod.CASH, NOW))


def test_outstanding_balance_includes_live_overdue_charge(engine):
    asyncio.run(engine.ledger.create("book-1", ULYSSES, "m-1", DUE - timedelta(days=14), DUE))
    asyncio.run(engine.assess_fine("m-1", "2.00", FineReason.DAMAGED, NOW))
    settled = asyncio.run(engine.assess_fine("m-1", "9.00", FineReason.LOST, NOW))
    asyncio.run(engine.settle(settled.id, PaymentMethod.ONLINE, NOW))

    assert asyncio.run(engine.outstanding_balance("m-1", DUE)) == Decimal("2.00")
    assert asyncio.run(engine.outstanding_balance("m-1", DUE + timedelta(days=4))) == Decimal("6.00")
    assert asyncio.run(engine.outstanding_balance("m-2", DUE + timedelta(days=4))) == Decimal("0.00")


def test_assessed_amount_is_a_snapshot(store):
    ledger = CirculationLedger(store)
    cheap = FineAccrualEngine(store, ledger, Decimal("1.00"))
    fine = asyncio.run(cheap.assess_fine("m-1", cheap.live_fine(_record(), DUE + timedelta(days=3)),
                                         FineReason.OVERDUE, NOW))

    dear = FineAccrualEngine(store, ledger, Decimal("5.00"))
    assert [f.amount for f in asyncio.run(dear.fines_for("m-1"))] == [Decimal("3.00")]
    assert asyncio.run(dear.get(fine.id)).amount == Decimal("3.00")


def test_accrued_overdue_fines_per_member(engine):
    async def go():
        await engine.ledger.create("b1", ULYSSES, "m-1", DUE - timedelta(days=14), DUE)
        await engine.ledger.create("b2", ULYSSES, "m-1", DUE - timedelta(days=13), DUE + timedelta(days=1))
        await engine.ledger.create("b3", ULYSSES, "m-2", DUE - timedelta(days=14), DUE)
        await engine.ledger.create("b4", ULYSSES, "m-3", DUE, DUE + timedelta(days=14))
        return await engine.accrued_overdue_fines(DUE + timedelta(days=3))

    totals = asyncio.run(go())
    assert totals == {"m-1": Decimal("5.00"), "m-2": Decimal("3.00")}
    # nothing is written
    assert asyncio.run(engine.fines_for("m-1")) == []


def test_fines_filtered_by_status(engine):
    a = asyncio.run(engine.assess_fine("m-1", 1, FineReason.OVERDUE, NOW))
    asyncio.run(engine.assess_fine("m-1", 2, FineReason.DAMAGED, NOW + timedelta(minutes=1)))
    asyncio.run(engine.waive(a.id, NOW))

    pending = asyncio.run(engine.fines_for("m-1", FineStatus.PENDING))
    assert [f.amount for f in pending] == [Decimal("2.00")]
    assert len(asyncio.run(engine.fines_for("m-1"))) == 2
