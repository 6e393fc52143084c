"""Error taxonomy shared by the services, the HTTP API and the CLI.

Every error carries a stable ``code`` so the outer layers can translate it
without string matching.
"""

from typing import Optional


class LibraryError(Exception):
    """Base class for every error raised by bookwize."""

    code = "library_error"


# --- Domain errors ---

class CirculationError(LibraryError):
    """An expected, user-correctable outcome of a circulation rule."""

    code = "circulation_error"


class NotFound(CirculationError):
    code = "not_found"

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class MemberIneligible(CirculationError):
    code = "member_ineligible"

    def __init__(self, member_id: str, reason: str) -> None:
        super().__init__(f"Member {member_id} cannot borrow: {reason}")
        self.member_id = member_id
        self.reason = reason


class InventoryExhausted(CirculationError):
    code = "inventory_exhausted"

    def __init__(self, isbn: str) -> None:
        super().__init__(f"No copies of {isbn} are available")
        self.isbn = isbn


class QuantityOverflow(CirculationError):
    """Returning a copy would push available_quantity above quantity."""

    code = "quantity_overflow"

    def __init__(self, isbn: str) -> None:
        super().__init__(f"Available copies of {isbn} would exceed the total quantity")
        self.isbn = isbn


class AlreadyReturned(CirculationError):
    code = "already_returned"

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Loan {record_id} has already been returned")
        self.record_id = record_id


class AlreadySettled(CirculationError):
    code = "already_settled"

    def __init__(self, fine_id: str, status: str) -> None:
        super().__init__(f"Fine {fine_id} is already {status}")
        self.fine_id = fine_id
        self.status = status


class NotRenewable(CirculationError):
    code = "not_renewable"

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"Loan {record_id} cannot be renewed: {reason}")
        self.record_id = record_id
        self.reason = reason


class DuplicateMember(CirculationError):
    code = "duplicate_member"


class DuplicateReservation(CirculationError):
    code = "duplicate_reservation"


class ReservationClosed(CirculationError):
    code = "reservation_closed"


class RequestClosed(CirculationError):
    """A book request was already approved or rejected."""

    code = "request_closed"


# --- Store errors ---

class StoreError(LibraryError):
    """The record store rejected a request."""

    code = "store_error"


class ZeroOrManyRows(StoreError):
    """A single-row request matched zero rows or more than one."""

    code = "zero_or_many_rows"

    def __init__(self, collection: str, count: Optional[int] = None) -> None:
        detail = "" if count is None else f" (matched {count})"
        super().__init__(f"Expected exactly one row in {collection}{detail}")
        self.collection = collection
        self.count = count


class IntegrityViolation(StoreError):
    """An insert or update broke a unique key."""

    code = "integrity_violation"


class TransientStoreFailure(StoreError):
    """Network or locking failure; the request may succeed if retried."""

    code = "transient_store_failure"


class PartialFailure(LibraryError):
    """A multi-step operation failed and its compensating rollback failed too.

    ``step`` names the sub-step that could not be undone so an operator can
    reconcile the records by hand.
    """

    code = "partial_failure"

    def __init__(self, operation: str, step: str, detail: str = "") -> None:
        message = f"{operation} left inconsistent state at step '{step}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.step = step
