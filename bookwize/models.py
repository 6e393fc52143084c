from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values and bare dates are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class MembershipType(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    STAFF = "staff"
    EXTERNAL = "external"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    EXPIRED = "expired"


class LoanStatus(str, Enum):
    """Persisted loan states. Overdue is derived from the dates, never stored."""
    ISSUED = "issued"
    RENEWED = "renewed"
    RETURNED = "returned"


class FineReason(str, Enum):
    OVERDUE = "overdue"
    DAMAGED = "damaged"
    LOST = "lost"


class FineStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class BookRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Member:
    id: str
    name: str
    email: str
    membership_type: MembershipType = MembershipType.STUDENT
    status: MemberStatus = MemberStatus.ACTIVE
    valid_until: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    membership_number: Optional[str] = None
    phone: Optional[str] = None
    # open loans counted on the member row; only moved by conditional writes
    open_loans: int = 0

    def is_active(self, now: datetime) -> bool:
        if self.status != MemberStatus.ACTIVE:
            return False
        return self.valid_until is None or self.valid_until > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "membership_type": self.membership_type.value,
            "status": self.status.value,
            "valid_until": to_iso(self.valid_until),
            "joined_at": to_iso(self.joined_at),
            "membership_number": self.membership_number,
            "phone": self.phone,
            "open_loans": self.open_loans,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Member":
        return Member(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            membership_type=MembershipType(data.get("membership_type") or "student"),
            status=MemberStatus(data.get("status") or "active"),
            valid_until=from_iso(data.get("valid_until")),
            joined_at=from_iso(data.get("joined_at")),
            membership_number=data.get("membership_number"),
            phone=data.get("phone"),
            open_loans=int(data.get("open_loans") or 0),
        )


@dataclass
class CirculationRecord:
    """One loan of one copy, tracked from issue to return."""

    id: str
    book_id: str
    isbn: str
    member_id: str
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    renewal_count: int = 0
    status: LoanStatus = LoanStatus.ISSUED

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    def is_overdue(self, now: datetime) -> bool:
        return self.return_date is None and now > self.due_date

    def days_overdue(self, as_of: datetime) -> int:
        """Whole days between the due date and the return (or ``as_of``)."""
        end = as_of if self.return_date is None else min(as_of, self.return_date)
        return max(0, (end - self.due_date).days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "isbn": self.isbn,
            "member_id": self.member_id,
            "issue_date": to_iso(self.issue_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "renewal_count": self.renewal_count,
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CirculationRecord":
        return CirculationRecord(
            id=data["id"],
            book_id=data["book_id"],
            isbn=data["isbn"],
            member_id=data["member_id"],
            issue_date=from_iso(data["issue_date"]),
            due_date=from_iso(data["due_date"]),
            return_date=from_iso(data.get("return_date")),
            renewal_count=int(data.get("renewal_count") or 0),
            status=LoanStatus(data.get("status") or "issued"),
        )


@dataclass
class Fine:
    id: str
    member_id: str
    amount: Decimal
    reason: FineReason
    date: datetime
    status: FineStatus = FineStatus.PENDING
    loan_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    settled_at: Optional[datetime] = None

    @property
    def is_settled(self) -> bool:
        return self.status != FineStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "amount": str(self.amount),
            "reason": self.reason.value,
            "date": to_iso(self.date),
            "status": self.status.value,
            "loan_id": self.loan_id,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "settled_at": to_iso(self.settled_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Fine":
        method = data.get("payment_method")
        return Fine(
            id=data["id"],
            member_id=data["member_id"],
            amount=to_money(data["amount"]),
            reason=FineReason(data["reason"]),
            date=from_iso(data["date"]),
            status=FineStatus(data.get("status") or "pending"),
            loan_id=data.get("loan_id"),
            payment_method=PaymentMethod(method) if method else None,
            settled_at=from_iso(data.get("settled_at")),
        )


@dataclass
class Reservation:
    id: str
    book_id: str
    isbn: str
    member_id: str
    created_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    loan_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "isbn": self.isbn,
            "member_id": self.member_id,
            "created_at": to_iso(self.created_at),
            "status": self.status.value,
            "loan_id": self.loan_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Reservation":
        return Reservation(
            id=data["id"],
            book_id=data["book_id"],
            isbn=data["isbn"],
            member_id=data["member_id"],
            created_at=from_iso(data["created_at"]),
            status=ReservationStatus(data.get("status") or "active"),
            loan_id=data.get("loan_id"),
        )


@dataclass
class BookRequest:
    """A request to acquire a title, decided once by an administrator."""

    id: str
    title: str
    author: str
    quantity: int
    reason: str
    created_at: datetime
    status: BookRequestStatus = BookRequestStatus.PENDING
    decided_at: Optional[datetime] = None
    isbn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "quantity": self.quantity,
            "reason": self.reason,
            "created_at": to_iso(self.created_at),
            "status": self.status.value,
            "decided_at": to_iso(self.decided_at),
            "isbn": self.isbn,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BookRequest":
        return BookRequest(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            quantity=int(data.get("quantity") or 1),
            reason=data.get("reason") or "",
            created_at=from_iso(data["created_at"]),
            status=BookRequestStatus(data.get("status") or "pending"),
            decided_at=from_iso(data.get("decided_at")),
            isbn=data.get("isbn"),
        )
