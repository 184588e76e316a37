from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for circulation errors.

    ``code`` identifies the rule that was violated and ``context`` carries the
    numbers (limits, counts) a client needs to explain the rejection.
    """

    status_code = 400
    code = "library_error"

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, **self.context}


# Taxonomy


class ValidationError(LibraryException):
    status_code = 400
    code = "validation_error"


class NotFoundError(LibraryException):
    status_code = 404
    code = "not_found"


class ConflictError(LibraryException):
    status_code = 409
    code = "conflict"


class PolicyViolationError(LibraryException):
    status_code = 403
    code = "policy_violation"


class ResourceUnavailableError(LibraryException):
    status_code = 409
    code = "resource_unavailable"


class DatabaseError(LibraryException):
    status_code = 500
    code = "database_error"

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Not found


class MemberNotFoundError(NotFoundError):
    code = "member_not_found"

    def __init__(self, member_id: int):
        self.member_id = member_id
        super().__init__(f"Member with ID {member_id} not found", member_id=member_id)


class BookNotFoundError(NotFoundError):
    code = "book_not_found"

    def __init__(self, book_id: int):
        self.book_id = book_id
        super().__init__(f"Book with ID {book_id} not found", book_id=book_id)


class BorrowingNotFoundError(NotFoundError):
    code = "borrowing_not_found"

    def __init__(self, borrowing_id: int):
        super().__init__(
            f"Borrowing with ID {borrowing_id} not found", borrowing_id=borrowing_id
        )


class ReservationNotFoundError(NotFoundError):
    code = "reservation_not_found"

    def __init__(self, reservation_id: int):
        super().__init__(
            f"Reservation with ID {reservation_id} not found",
            reservation_id=reservation_id,
        )


class FineNotFoundError(NotFoundError):
    code = "fine_not_found"

    def __init__(self, fine_id: int):
        super().__init__(f"Fine with ID {fine_id} not found", fine_id=fine_id)


class NotificationNotFoundError(NotFoundError):
    code = "notification_not_found"

    def __init__(self, notification_id: int):
        super().__init__(
            f"Notification with ID {notification_id} not found",
            notification_id=notification_id,
        )


class ReservedCopyNotFoundError(NotFoundError):
    code = "reserved_copy_not_found"

    def __init__(self, reservation_id: int):
        super().__init__(
            "Reserved book copy not found", reservation_id=reservation_id
        )


# Conflicts and policy rejections


class DuplicateIsbnError(ConflictError):
    code = "duplicate_isbn"

    def __init__(self, isbn: str):
        super().__init__(f"A book with ISBN {isbn} already exists", isbn=isbn)


class DuplicateMemberError(ConflictError):
    code = "duplicate_member"

    def __init__(self, email: str):
        super().__init__(f"Member with email {email} already exists", email=email)


class DuplicateLoanError(ConflictError):
    code = "duplicate_loan"

    def __init__(self, member_id: int, book_id: int):
        super().__init__(
            "You already have this book borrowed", member_id=member_id, book_id=book_id
        )


class AlreadyBorrowedError(ConflictError):
    code = "already_borrowed"

    def __init__(self, member_id: int, book_id: int):
        super().__init__(
            "You already have this book borrowed", member_id=member_id, book_id=book_id
        )


class AlreadyReservedError(ConflictError):
    code = "already_reserved"

    def __init__(self, member_id: int, book_id: int):
        super().__init__(
            "You already have an active reservation for this book",
            member_id=member_id,
            book_id=book_id,
        )


class BookCurrentlyAvailableError(ConflictError):
    code = "book_currently_available"

    def __init__(self, book_id: int):
        super().__init__(
            "This book is currently available. You can borrow it directly.",
            book_id=book_id,
            available=True,
        )


class AlreadyReturnedError(ConflictError):
    code = "already_returned"

    def __init__(self, borrowing_id: int):
        super().__init__("Book already returned", borrowing_id=borrowing_id)


class CannotCancelCompletedError(ConflictError):
    code = "cannot_cancel_completed"

    def __init__(self, reservation_id: int):
        super().__init__(
            "Cannot cancel a completed reservation", reservation_id=reservation_id
        )


class InvalidReservationTransitionError(ConflictError):
    code = "invalid_reservation_transition"

    def __init__(self, reservation_id: int, current: str, action: str):
        super().__init__(
            f"Cannot {action} a reservation that is {current}",
            reservation_id=reservation_id,
            status=current,
        )


class InvalidFineTransitionError(ConflictError):
    code = "invalid_fine_transition"

    def __init__(self, fine_id: int, current: str, target: str):
        super().__init__(
            f"Cannot mark a {current} fine as {target}", fine_id=fine_id, status=current
        )


class InsufficientRemovableStockError(ConflictError):
    code = "insufficient_removable_stock"

    def __init__(self, book_id: int, requested: int, removable: int):
        super().__init__(
            f"Cannot remove {requested} copies. "
            f"Only {removable} available copies can be removed.",
            book_id=book_id,
            requested=requested,
            removable=removable,
        )


class BorrowLimitReachedError(PolicyViolationError):
    code = "borrow_limit_reached"

    def __init__(self, limit: int, current: int):
        super().__init__(
            f"Borrowing limit reached. You can borrow up to {limit} book(s) at a time.",
            limit=limit,
            current=current,
        )


class RenewalLimitReachedError(PolicyViolationError):
    code = "renewal_limit_reached"

    def __init__(self, limit: int, renewal_count: int):
        super().__init__(
            f"Maximum renewal limit reached ({limit} renewals)",
            limit=limit,
            renewal_count=renewal_count,
        )


class CannotRenewOverdueError(PolicyViolationError):
    code = "cannot_renew_overdue"

    def __init__(self, borrowing_id: int, days_overdue: int):
        super().__init__(
            "Cannot renew overdue book. Please return it first.",
            borrowing_id=borrowing_id,
            days_overdue=days_overdue,
        )


# Resource unavailable


class NoCopyAvailableError(ResourceUnavailableError):
    code = "no_copy_available"

    def __init__(self, book_id: int):
        super().__init__(
            "No available copies of this book", book_id=book_id, can_reserve=True
        )


class NoAvailableCopyError(ResourceUnavailableError):
    code = "no_available_copy"

    def __init__(self, book_id: int, book_copy_id: int | None = None):
        if book_copy_id is None:
            message = "No available copy found for this book"
        else:
            message = f"Book copy {book_copy_id} is not available"
        super().__init__(message, book_id=book_id, book_copy_id=book_copy_id)


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    if exc.status_code >= 500:
        logger.error(f"Library error: {str(exc)}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "An unexpected error occurred. Please contact support."},
        )
    logger.warning(f"Request rejected ({exc.code}): {str(exc)}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
