import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from bookwize.book import Book
from bookwize.config import settings
from bookwize.errors import LibraryError
from bookwize.models import (
    BookRequestStatus,
    CirculationRecord,
    FineReason,
    FineStatus,
    Member,
    MembershipType,
    MemberStatus,
    PaymentMethod,
    utcnow,
)
from bookwize.services.circulation import CirculationService, build_circulation_service

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_service: Optional[CirculationService] = None


def get_service() -> CirculationService:
    """Process-wide service, built on first use from ``settings``."""
    global _service
    if _service is None:
        _service = build_circulation_service(settings)
    return _service


def get_clock() -> datetime:
    return utcnow()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _service
    try:
        yield
    finally:
        if _service is not None:
            await _service.close()
            _service = None


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)


# --- Errors ---
STATUS_BY_CODE: Dict[str, int] = {
    "not_found": 404,
    "member_ineligible": 403,
    "inventory_exhausted": 409,
    "already_returned": 409,
    "already_settled": 409,
    "not_renewable": 409,
    "duplicate_member": 409,
    "duplicate_reservation": 409,
    "reservation_closed": 409,
    "request_closed": 409,
    "integrity_violation": 409,
    "transient_store_failure": 503,
    "quantity_overflow": 500,
    "partial_failure": 500,
    "zero_or_many_rows": 500,
    "store_error": 500,
}


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = STATUS_BY_CODE.get(exc.code, 400)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "code": "invalid_request"})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class BookModel(BaseModel):
    id: str
    isbn: str
    title: str
    author: str
    publisher: str | None = None
    quantity: int
    available_quantity: int
    retired: bool = False
    categories: List[str] | None = None


class BookCreateModel(BaseModel):
    isbn: str
    title: str
    author: str
    publisher: str | None = None
    quantity: int = Field(default=1, ge=1)
    categories: List[str] | None = None
    page_count: int | None = None
    published_date: str | None = None
    description: str | None = None


class ImportRequest(BaseModel):
    content: str = Field(description="CSV rows: ISBN,Title,Author,Publisher,Quantity")


class ImportReportModel(BaseModel):
    added: int
    merged: int
    skipped: int
    errors: List[str] = []


class MemberModel(BaseModel):
    id: str
    name: str
    email: str
    membership_type: MembershipType
    status: MemberStatus
    valid_until: datetime | None = None
    joined_at: datetime | None = None
    membership_number: str | None = None
    phone: str | None = None
    open_loans: int = 0


class MemberCreateModel(BaseModel):
    name: str
    email: str
    membership_type: MembershipType = MembershipType.STUDENT
    valid_until: datetime | None = None
    membership_number: str | None = None
    phone: str | None = None


class MemberStatusModel(BaseModel):
    status: MemberStatus


class LoanModel(BaseModel):
    id: str
    book_id: str
    isbn: str
    member_id: str
    issue_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    renewal_count: int
    status: str
    overdue: bool = False


class IssueRequest(BaseModel):
    isbn: str
    member_id: str


class ReturnRequest(BaseModel):
    damage_fine: Decimal | None = Field(default=None, ge=0)


class FineModel(BaseModel):
    id: str
    member_id: str
    amount: Decimal
    reason: FineReason
    date: datetime
    status: FineStatus
    loan_id: str | None = None
    payment_method: PaymentMethod | None = None
    settled_at: datetime | None = None


class FineCreateModel(BaseModel):
    member_id: str
    amount: Decimal = Field(gt=0)
    reason: FineReason


class PaymentModel(BaseModel):
    method: PaymentMethod = PaymentMethod.CASH


class ReturnResponse(BaseModel):
    loan: LoanModel
    fines: List[FineModel] = []


class BalanceModel(BaseModel):
    member_id: str
    balance: Decimal
    as_of: datetime


class ReservationModel(BaseModel):
    id: str
    book_id: str
    isbn: str
    member_id: str
    created_at: datetime
    status: str
    loan_id: str | None = None


class ReservationCreateModel(BaseModel):
    isbn: str
    member_id: str


class BookRequestModel(BaseModel):
    id: str
    title: str
    author: str
    quantity: int
    reason: str
    created_at: datetime
    status: BookRequestStatus
    decided_at: datetime | None = None
    isbn: str | None = None


class BookRequestCreateModel(BaseModel):
    title: str
    author: str
    quantity: int = Field(default=1, ge=1)
    reason: str = ""


class ApprovalModel(BaseModel):
    isbn: str | None = Field(default=None, description="Catalog the requested copies under this ISBN")


def _loan(record: CirculationRecord, now: datetime) -> Dict:
    return {**record.to_dict(), "overdue": record.is_overdue(now)}


# --- Health ---
@app.get("/health")
async def health(now: datetime = Depends(get_clock)):
    return {
        "status": "healthy",
        "timestamp": now.isoformat(),
        "store": settings.store_backend,
        "version": settings.app_version,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
async def list_books(q: str = Query(default="", description="Title, author or ISBN fragment"),
                     service: CirculationService = Depends(get_service)):
    return [b.to_dict() for b in await service.inventory.search(q)]


@app.get("/books/{isbn}", response_model=BookModel)
async def get_book(isbn: str, service: CirculationService = Depends(get_service)):
    return (await service.get_book(isbn)).to_dict()


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
async def add_book(payload: BookCreateModel, service: CirculationService = Depends(get_service),
                   now: datetime = Depends(get_clock)):
    book = Book(**payload.model_dump())
    return (await service.inventory.add_book(book, now=now)).to_dict()


@app.post("/books/import", response_model=ImportReportModel, dependencies=[Depends(get_api_key)])
async def import_books(payload: ImportRequest, service: CirculationService = Depends(get_service),
                       now: datetime = Depends(get_clock)):
    report = await service.inventory.import_csv(payload.content, now=now)
    return report.to_dict()


@app.delete("/books/{isbn}", response_model=BookModel, dependencies=[Depends(get_api_key)])
async def retire_book(isbn: str, service: CirculationService = Depends(get_service),
                      now: datetime = Depends(get_clock)):
    return (await service.inventory.retire(isbn, now=now)).to_dict()


@app.get("/books/{isbn}/reservations", response_model=List[ReservationModel])
async def book_reservations(isbn: str, service: CirculationService = Depends(get_service)):
    return [r.to_dict() for r in await service.reservations_for(isbn)]


# --- Members ---
@app.post("/members", response_model=MemberModel, status_code=201, dependencies=[Depends(get_api_key)])
async def register_member(payload: MemberCreateModel, service: CirculationService = Depends(get_service),
                          now: datetime = Depends(get_clock)):
    member = Member(id="", joined_at=now, **payload.model_dump())
    return (await service.membership.register(member)).to_dict()


@app.get("/members/{member_id}", response_model=MemberModel)
async def get_member(member_id: str, service: CirculationService = Depends(get_service)):
    return (await service.get_member(member_id)).to_dict()


@app.put("/members/{member_id}/status", response_model=MemberModel, dependencies=[Depends(get_api_key)])
async def set_member_status(member_id: str, payload: MemberStatusModel,
                            service: CirculationService = Depends(get_service)):
    return (await service.membership.set_status(member_id, payload.status)).to_dict()


@app.get("/members/{member_id}/loans", response_model=List[LoanModel])
async def member_loans(member_id: str, service: CirculationService = Depends(get_service),
                       now: datetime = Depends(get_clock)):
    return [_loan(r, now) for r in await service.open_loans(member_id)]


@app.get("/members/{member_id}/balance", response_model=BalanceModel)
async def member_balance(member_id: str, service: CirculationService = Depends(get_service),
                         now: datetime = Depends(get_clock)):
    balance = await service.outstanding_balance(member_id, now)
    return {"member_id": member_id, "balance": balance, "as_of": now}


@app.get("/members/{member_id}/fines", response_model=List[FineModel])
async def member_fines(member_id: str, status: FineStatus | None = None,
                       service: CirculationService = Depends(get_service)):
    return [f.to_dict() for f in await service.fines_for(member_id, status)]


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
async def issue_book(payload: IssueRequest, service: CirculationService = Depends(get_service),
                     now: datetime = Depends(get_clock)):
    record = await service.issue_book(payload.isbn, payload.member_id, now)
    return _loan(record, now)


@app.get("/loans/overdue", response_model=List[LoanModel])
async def overdue_loans(service: CirculationService = Depends(get_service),
                        now: datetime = Depends(get_clock)):
    return [_loan(r, now) for r in await service.overdue_loans(now)]


@app.get("/loans/{loan_id}", response_model=LoanModel)
async def get_loan(loan_id: str, service: CirculationService = Depends(get_service),
                   now: datetime = Depends(get_clock)):
    return _loan(await service.ledger.get(loan_id), now)


@app.post("/loans/{loan_id}/return", response_model=ReturnResponse, dependencies=[Depends(get_api_key)])
async def return_book(loan_id: str, payload: ReturnRequest | None = None,
                      service: CirculationService = Depends(get_service),
                      now: datetime = Depends(get_clock)):
    damage = payload.damage_fine if payload else None
    result = await service.return_book(loan_id, now, damage_fine=damage)
    return {"loan": _loan(result.record, now), "fines": [f.to_dict() for f in result.fines]}


@app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
async def renew_loan(loan_id: str, service: CirculationService = Depends(get_service),
                     now: datetime = Depends(get_clock)):
    return _loan(await service.renew_loan(loan_id, now), now)


# --- Fines ---
@app.post("/fines", response_model=FineModel, status_code=201, dependencies=[Depends(get_api_key)])
async def assess_fine(payload: FineCreateModel, service: CirculationService = Depends(get_service),
                      now: datetime = Depends(get_clock)):
    fine = await service.assess_fine(payload.member_id, payload.amount, payload.reason, now)
    return fine.to_dict()


@app.get("/fines/accrued")
async def accrued_fines(service: CirculationService = Depends(get_service),
                        now: datetime = Depends(get_clock)):
    totals = await service.accrued_overdue_fines(now)
    return {"as_of": now.isoformat(), "members": {k: str(v) for k, v in totals.items()}}


@app.post("/fines/{fine_id}/pay", response_model=FineModel, dependencies=[Depends(get_api_key)])
async def pay_fine(fine_id: str, payload: PaymentModel | None = None,
                   service: CirculationService = Depends(get_service),
                   now: datetime = Depends(get_clock)):
    method = payload.method if payload else PaymentMethod.CASH
    return (await service.pay_fine(fine_id, method, now)).to_dict()


@app.post("/fines/{fine_id}/waive", response_model=FineModel, dependencies=[Depends(get_api_key)])
async def waive_fine(fine_id: str, service: CirculationService = Depends(get_service),
                     now: datetime = Depends(get_clock)):
    return (await service.waive_fine(fine_id, now)).to_dict()


# --- Reservations ---
@app.post("/reservations", response_model=ReservationModel, status_code=201,
          dependencies=[Depends(get_api_key)])
async def place_reservation(payload: ReservationCreateModel,
                            service: CirculationService = Depends(get_service),
                            now: datetime = Depends(get_clock)):
    return (await service.place_reservation(payload.isbn, payload.member_id, now)).to_dict()


@app.post("/reservations/{reservation_id}/fulfill", response_model=LoanModel,
          dependencies=[Depends(get_api_key)])
async def fulfill_reservation(reservation_id: str, service: CirculationService = Depends(get_service),
                              now: datetime = Depends(get_clock)):
    return _loan(await service.fulfill_reservation(reservation_id, now), now)


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationModel,
          dependencies=[Depends(get_api_key)])
async def cancel_reservation(reservation_id: str, service: CirculationService = Depends(get_service)):
    return (await service.cancel_reservation(reservation_id)).to_dict()


# --- Book requests ---
@app.post("/book-requests", response_model=BookRequestModel, status_code=201,
          dependencies=[Depends(get_api_key)])
async def request_book(payload: BookRequestCreateModel, service: CirculationService = Depends(get_service),
                       now: datetime = Depends(get_clock)):
    request = await service.request_book(payload.title, payload.author, payload.quantity, payload.reason, now)
    return request.to_dict()


@app.get("/book-requests", response_model=List[BookRequestModel])
async def list_book_requests(status: BookRequestStatus | None = None,
                             service: CirculationService = Depends(get_service)):
    return [r.to_dict() for r in await service.book_requests(status)]


@app.post("/book-requests/{request_id}/approve", response_model=BookRequestModel,
          dependencies=[Depends(get_api_key)])
async def approve_book_request(request_id: str, payload: ApprovalModel | None = None,
                               service: CirculationService = Depends(get_service),
                               now: datetime = Depends(get_clock)):
    isbn = payload.isbn if payload else None
    return (await service.approve_book_request(request_id, now, isbn=isbn)).to_dict()


@app.post("/book-requests/{request_id}/reject", response_model=BookRequestModel,
          dependencies=[Depends(get_api_key)])
async def reject_book_request(request_id: str, service: CirculationService = Depends(get_service),
                              now: datetime = Depends(get_clock)):
    return (await service.reject_book_request(request_id, now)).to_dict()
