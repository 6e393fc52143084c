import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bookwize.book import Book
from bookwize.config import CirculationPolicy
from bookwize.database import SQLiteRecordStore
from bookwize.models import Member, MembershipType
from bookwize.services.circulation import CirculationService
from bookwize.store import MemoryRecordStore

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

ULYSSES = "9780199535675"
SAPIENS = "9780099590088"


def make_members(now):
    valid = now + timedelta(days=365)
    return [
        Member(id="m-student", name="Ada Student", email="ada@example.edu",
               membership_type=MembershipType.STUDENT, valid_until=valid, joined_at=now),
        Member(id="m-faculty", name="Grace Faculty", email="grace@example.edu",
               membership_type=MembershipType.FACULTY, valid_until=valid, joined_at=now),
        Member(id="m-external", name="Linus External", email="linus@example.com",
               membership_type=MembershipType.EXTERNAL, valid_until=valid, joined_at=now),
    ]


def seed(service: CirculationService, now=NOW) -> CirculationService:
    async def go():
        await service.inventory.add_book(Book("Ulysses", "James Joyce", ULYSSES, quantity=2), now=now)
        await service.inventory.add_book(Book("Sapiens", "Yuval Noah Harari", SAPIENS, quantity=1), now=now)
        for member in make_members(now):
            await service.membership.register(member)
    asyncio.run(go())
    return service


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def policy():
    return CirculationPolicy(daily_fine_rate=Decimal("1.00"), max_renewals=2)


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def sqlite_store(tmp_path, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return SQLiteRecordStore(db_file)


@pytest.fixture
def service(store, policy):
    return CirculationService(store, policy)


@pytest.fixture
def library(service):
    """Service over an in-memory store with two titles and three members."""
    return seed(service)


@pytest.fixture(params=["memory", "sqlite"])
def any_library(request, tmp_path, policy):
    """Seeded service over each local store backend."""
    if request.param == "memory":
        backend = MemoryRecordStore()
    else:
        backend = SQLiteRecordStore(str(tmp_path / "circulation.db"))
    return seed(CirculationService(backend, policy))
