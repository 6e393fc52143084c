import asyncio
from datetime import timedelta

import pytest

from bookwize.errors import AlreadyReturned, NotFound, NotRenewable
from bookwize.models import LoanStatus
from bookwize.services.ledger import CirculationLedger

from conftest import NOW, SAPIENS, ULYSSES


@pytest.fixture
def ledger(store):
    return CirculationLedger(store)


def _create(ledger, member_id="m-1", isbn=ULYSSES, issued=NOW, days=14):
    return asyncio.run(ledger.create("book-1", isbn, member_id, issued, issued + timedelta(days=days)))


def test_create_and_list_open_loans(ledger):
    later = _create(ledger, days=21)
    sooner = _create(ledger, isbn=SAPIENS, days=7)
    _create(ledger, member_id="m-2")

    loans = asyncio.run(ledger.open_loans_for("m-1"))
    assert [r.id for r in loans] == [sooner.id, later.id]
    assert all(r.status == LoanStatus.ISSUED for r in loans)
    assert sooner.due_date == NOW + timedelta(days=7)


def test_mark_returned_closes_loan(ledger):
    record = _create(ledger)
    returned = asyncio.run(ledger.mark_returned(record.id, NOW + timedelta(days=3)))

    assert returned.return_date == NOW + timedelta(days=3)
    assert returned.status == LoanStatus.RETURNED
    assert asyncio.run(ledger.open_loans_for("m-1")) == []
    assert len(asyncio.run(ledger.history_for("m-1"))) == 1


def test_second_return_is_rejected(ledger):
    record = _create(ledger)
    asyncio.run(ledger.mark_returned(record.id, NOW))

    with pytest.raises(AlreadyReturned):
        asyncio.run(ledger.mark_returned(record.id, NOW + timedelta(days=1)))
    # first return date is kept
    assert asyncio.run(ledger.get(record.id)).return_date == NOW


def test_return_unknown_loan_raises(ledger):
    with pytest.raises(NotFound):
        asyncio.run(ledger.mark_returned("missing", NOW))


def test_reopen_undoes_return(ledger):
    record = _create(ledger)
    asyncio.run(ledger.mark_returned(record.id, NOW))

    reopened = asyncio.run(ledger.reopen(record))
    assert reopened.is_open
    assert reopened.status == LoanStatus.ISSUED


def test_renew_moves_due_date_and_counts(ledger):
    record = _create(ledger)
    new_due = NOW + timedelta(days=20)

    renewed = asyncio.run(ledger.renew(record.id, new_due, max_renewals=2))
    assert renewed.due_date == new_due
    assert renewed.renewal_count == 1
    assert renewed.status == LoanStatus.RENEWED


def test_renew_stops_at_limit(ledger):
    record = _create(ledger)
    asyncio.run(ledger.renew(record.id, NOW + timedelta(days=20), max_renewals=1))

    with pytest.raises(NotRenewable, match="renewal limit of 1"):
        asyncio.run(ledger.renew(record.id, NOW + timedelta(days=30), max_renewals=1))


def test_renew_returned_loan_raises(ledger):
    record = _create(ledger)
    asyncio.run(ledger.mark_returned(record.id, NOW))
    with pytest.raises(AlreadyReturned):
        asyncio.run(ledger.renew(record.id, NOW + timedelta(days=20)))


def test_overdue_is_computed_at_query_time(ledger):
    record = _create(ledger, days=14)
    returned = _create(ledger, isbn=SAPIENS, days=7)
    asyncio.run(ledger.mark_returned(returned.id, NOW + timedelta(days=30)))

    assert asyncio.run(ledger.overdue_records(NOW + timedelta(days=14))) == []
    overdue = asyncio.run(ledger.overdue_records(NOW + timedelta(days=15)))
    assert [r.id for r in overdue] == [record.id]
    # the stored status never says overdue
    assert overdue[0].status == LoanStatus.ISSUED
