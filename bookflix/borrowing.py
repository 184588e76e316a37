import logging
import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix import catalog, notifications
from bookflix.config import get_library_config
from bookflix.members import get_member
from bookflix.models import (
    OPEN_BORROWING_STATUSES,
    Book,
    Borrowing,
    BorrowingStatus,
    CopyStatus,
    Member,
    utcnow,
)
from bookflix.notifications import NotificationEmitter
from bookflix.tiers import TierPolicy, policy_for_member
from exceptions.exceptions import (
    AlreadyReturnedError,
    BorrowingNotFoundError,
    BorrowLimitReachedError,
    CannotRenewOverdueError,
    DatabaseError,
    DuplicateLoanError,
    LibraryException,
    NoCopyAvailableError,
    RenewalLimitReachedError,
)

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


# Derived values, computed from the stored dates on every read


def days_overdue(borrowing: Borrowing, now: Optional[datetime] = None) -> int:
    if borrowing.returned_date is not None:
        return 0
    now = now or utcnow()
    if now <= borrowing.due_date:
        return 0
    return math.ceil((now - borrowing.due_date) / ONE_DAY)


def days_remaining(borrowing: Borrowing, now: Optional[datetime] = None) -> int:
    if borrowing.returned_date is not None:
        return 0
    now = now or utcnow()
    if borrowing.due_date <= now:
        return 0
    return math.ceil((borrowing.due_date - now) / ONE_DAY)


def is_overdue(borrowing: Borrowing, now: Optional[datetime] = None) -> bool:
    return borrowing.returned_date is None and (now or utcnow()) > borrowing.due_date


def sync_overdue_status(borrowing: Borrowing, now: Optional[datetime] = None) -> bool:
    """Apply the time-triggered ``active -> overdue`` transition in memory."""
    if borrowing.status == BorrowingStatus.ACTIVE and is_overdue(borrowing, now):
        borrowing.status = BorrowingStatus.OVERDUE
        return True
    return False


def mark_overdue_borrowings(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    try:
        updated = (
            db.query(Borrowing)
            .filter(
                Borrowing.status == BorrowingStatus.ACTIVE,
                Borrowing.returned_date == None,
                Borrowing.due_date < now,
            )
            .update(
                {Borrowing.status: BorrowingStatus.OVERDUE},
                synchronize_session="fetch",
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("mark overdue", str(e))
    if updated:
        logger.info(f"Marked {updated} borrowing(s) overdue")
    return updated


# Queries


def count_open_loans(db: Session, member_id: int) -> int:
    return (
        db.query(Borrowing)
        .filter(
            Borrowing.member_id == member_id,
            Borrowing.status.in_(OPEN_BORROWING_STATUSES),
        )
        .count()
    )


def find_open_loan(db: Session, member_id: int, book_id: int) -> Optional[Borrowing]:
    return (
        db.query(Borrowing)
        .filter(
            Borrowing.member_id == member_id,
            Borrowing.book_id == book_id,
            Borrowing.status.in_(OPEN_BORROWING_STATUSES),
        )
        .first()
    )


def _persist_overdue(db: Session, borrowing: Borrowing, now: datetime) -> None:
    if sync_overdue_status(borrowing, now):
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError("mark overdue", str(e))
        logger.info(f"Borrowing {borrowing.id} is now overdue")


def get_borrowing(
    db: Session, borrowing_id: int, now: Optional[datetime] = None
) -> Borrowing:
    borrowing = db.get(Borrowing, borrowing_id)
    if borrowing is None:
        raise BorrowingNotFoundError(borrowing_id)
    _persist_overdue(db, borrowing, now or utcnow())
    return borrowing


def list_member_borrowings(
    db: Session,
    member_id: int,
    status: Optional[BorrowingStatus] = None,
    now: Optional[datetime] = None,
) -> List[Borrowing]:
    get_member(db, member_id)
    now = now or utcnow()
    borrowings = (
        db.query(Borrowing)
        .filter(Borrowing.member_id == member_id)
        .order_by(Borrowing.borrowed_date.desc(), Borrowing.id.desc())
        .all()
    )
    changed = [b for b in borrowings if sync_overdue_status(b, now)]
    if changed:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError("mark overdue", str(e))
    if status is not None:
        borrowings = [b for b in borrowings if b.status == status]
    return borrowings


# Lifecycle


def ensure_can_borrow(db: Session, member: Member, policy: TierPolicy) -> None:
    current = count_open_loans(db, member.id)
    if current >= policy.max_concurrent_loans:
        raise BorrowLimitReachedError(policy.max_concurrent_loans, current)


def open_loan(
    db: Session,
    member: Member,
    book: Book,
    copy_id: int,
    policy: TierPolicy,
    now: datetime,
) -> Borrowing:
    """Add the Borrowing for a copy the caller has already claimed."""
    borrowing = Borrowing(
        member_id=member.id,
        book_id=book.id,
        book_copy_id=copy_id,
        borrowed_date=now,
        due_date=now + timedelta(days=policy.loan_days),
        status=BorrowingStatus.ACTIVE,
        renewal_count=0,
        renewed=False,
    )
    db.add(borrowing)
    db.flush()
    return borrowing


def borrow_book(
    db: Session,
    member_id: int,
    book_id: int,
    notifier: NotificationEmitter,
    now: Optional[datetime] = None,
) -> Borrowing:
    now = now or utcnow()
    member = get_member(db, member_id)
    book = catalog.get_book(db, book_id)
    policy = policy_for_member(db, member)

    ensure_can_borrow(db, member, policy)
    copy = catalog.find_available_copy(db, book_id)
    if copy is None:
        raise NoCopyAvailableError(book_id)
    if find_open_loan(db, member_id, book_id):
        raise DuplicateLoanError(member_id, book_id)

    try:
        while copy is not None and not catalog.claim_copy(
            db, copy.id, CopyStatus.AVAILABLE, CopyStatus.BORROWED
        ):
            logger.warning(f"Copy {copy.id} was taken concurrently, trying another")
            copy = catalog.find_available_copy(db, book_id)
        if copy is None:
            db.rollback()
            raise NoCopyAvailableError(book_id)

        borrowing = open_loan(db, member, book, copy.id, policy, now)
        notifier.emit(notifications.book_borrowed(borrowing, book))
        db.commit()
        db.refresh(borrowing)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("borrow", str(e))

    logger.info(
        f"Member {member_id} borrowed book {book_id} (copy {copy.id}), "
        f"due {borrowing.due_date.isoformat()} on {policy.name} tier"
    )
    return borrowing


def renew_borrowing(
    db: Session, borrowing_id: int, now: Optional[datetime] = None
) -> Borrowing:
    now = now or utcnow()
    borrowing = get_borrowing(db, borrowing_id, now)
    max_renewals = get_library_config(db).max_renewals

    if borrowing.renewal_count >= max_renewals:
        raise RenewalLimitReachedError(max_renewals, borrowing.renewal_count)
    if borrowing.status == BorrowingStatus.OVERDUE:
        raise CannotRenewOverdueError(borrowing_id, days_overdue(borrowing, now))
    if borrowing.status == BorrowingStatus.RETURNED:
        raise AlreadyReturnedError(borrowing_id)

    member = get_member(db, borrowing.member_id)
    policy = policy_for_member(db, member)
    try:
        # extends the current due date, not the renewal moment
        borrowing.due_date = borrowing.due_date + timedelta(days=policy.loan_days)
        borrowing.renewed = True
        borrowing.renewal_count += 1
        db.commit()
        db.refresh(borrowing)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("renew", str(e))

    logger.info(
        f"Borrowing {borrowing_id} renewed ({borrowing.renewal_count}/{max_renewals}), "
        f"now due {borrowing.due_date.isoformat()}"
    )
    return borrowing


def return_borrowing(
    db: Session,
    borrowing_id: int,
    returned_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Borrowing:
    """Close a loan and put its copy back on the shelf.

    The reservation queue is not advanced here; promoting the next hold is a
    separate ``mark_ready`` call.
    """
    now = now or utcnow()
    borrowing = db.get(Borrowing, borrowing_id)
    if borrowing is None:
        raise BorrowingNotFoundError(borrowing_id)
    if borrowing.status == BorrowingStatus.RETURNED:
        raise AlreadyReturnedError(borrowing_id)

    try:
        borrowing.status = BorrowingStatus.RETURNED
        borrowing.returned_date = now
        if returned_by is not None:
            borrowing.returned_by = returned_by
        if not catalog.release_copy(db, borrowing.book_copy_id, CopyStatus.BORROWED):
            logger.warning(
                f"Copy {borrowing.book_copy_id} of borrowing {borrowing_id} "
                "was not marked borrowed; leaving its status unchanged"
            )
        db.commit()
        db.refresh(borrowing)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("return", str(e))

    logger.info(f"Borrowing {borrowing_id} returned")
    return borrowing


@dataclass
class DueReminderStats:
    processed: int = 0
    reminders_sent: int = 0
    errors: int = 0


def run_due_reminder_sweep(
    db: Session, notifier: NotificationEmitter, now: Optional[datetime] = None
) -> DueReminderStats:
    """Remind members whose active loans fall due on the day ``due_reminder_days`` ahead.

    Run once a day, each loan is reminded exactly once.
    """
    now = now or utcnow()
    window = get_library_config(db).due_reminder_days
    stats = DueReminderStats()
    if window <= 0:
        return stats
    day_start = datetime.combine((now + timedelta(days=window)).date(), time.min)

    candidates = [
        borrowing_id
        for (borrowing_id,) in db.query(Borrowing.id)
        .filter(
            Borrowing.status == BorrowingStatus.ACTIVE,
            Borrowing.returned_date == None,
            Borrowing.due_date >= day_start,
            Borrowing.due_date < day_start + ONE_DAY,
        )
        .order_by(Borrowing.due_date)
        .all()
    ]
    for borrowing_id in candidates:
        stats.processed += 1
        mark = notifier.checkpoint()
        try:
            borrowing = db.get(Borrowing, borrowing_id)
            remaining = days_remaining(borrowing, now)
            if remaining <= 0:
                continue
            notifier.emit(notifications.borrowing_due(borrowing, borrowing.book, remaining))
            db.commit()
            stats.reminders_sent += 1
        except (SQLAlchemyError, LibraryException) as e:
            db.rollback()
            notifier.rollback_to(mark)
            stats.errors += 1
            logger.error(f"Error sending due reminder for borrowing {borrowing_id}: {e}")

    logger.info(
        f"Due reminder sweep: {stats.reminders_sent} sent, {stats.errors} error(s)"
    )
    return stats
