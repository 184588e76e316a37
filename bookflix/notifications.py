import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix.models import Notification, utcnow
from bookflix.schemas import (
    BookBorrowed,
    BorrowingDue,
    BorrowingOverdue,
    FineIssued,
    FinePaid,
    NotificationIntent,
    ReservationExpired,
    ReservationReady,
)
from exceptions.exceptions import DatabaseError, NotificationNotFoundError

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """Collects notification intents raised while handling one action.

    Each intent is stored as an in-app ``Notification`` in the caller's
    transaction and kept in ``pending`` so it can be published once that
    transaction has committed.
    """

    def __init__(self, db: Session):
        self.db = db
        self.pending: List[NotificationIntent] = []

    def emit(self, intent: NotificationIntent) -> NotificationIntent:
        self.db.add(
            Notification(
                member_id=intent.recipient_id,
                type=intent.kind,
                title=intent.title,
                message=intent.message,
                payload=intent.model_dump(mode="json"),
                send_email=intent.send_email,
            )
        )
        self.pending.append(intent)
        logger.info(f"Queued {intent.kind} notification for member {intent.recipient_id}")
        return intent

    def checkpoint(self) -> int:
        return len(self.pending)

    def rollback_to(self, mark: int) -> None:
        del self.pending[mark:]

    def drain(self) -> List[NotificationIntent]:
        intents, self.pending = self.pending, []
        return intents


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def book_borrowed(borrowing, book) -> BookBorrowed:
    return BookBorrowed(
        recipient_id=borrowing.member_id,
        title="Book Borrowed",
        message=(
            f'You borrowed "{book.title}" by {book.author}. '
            f"It is due on {borrowing.due_date:%B %d, %Y}."
        ),
        borrowing_id=borrowing.id,
        book_id=book.id,
        due_date=borrowing.due_date,
    )


def borrowing_due(borrowing, book, days_remaining: int) -> BorrowingDue:
    return BorrowingDue(
        recipient_id=borrowing.member_id,
        title="Book Due Soon",
        message=(
            f'Your borrowed book "{book.title}" by {book.author} is due in '
            f"{_plural(days_remaining, 'day')}. "
            "Please return it on time to avoid late fees."
        ),
        borrowing_id=borrowing.id,
        book_id=book.id,
        due_date=borrowing.due_date,
        days_remaining=days_remaining,
    )


def borrowing_overdue(borrowing, book, days_overdue: int) -> BorrowingOverdue:
    return BorrowingOverdue(
        recipient_id=borrowing.member_id,
        title="Book Overdue",
        message=(
            f'Your borrowed book "{book.title}" by {book.author} is '
            f"{_plural(days_overdue, 'day')} overdue. "
            "Please return it as soon as possible."
        ),
        borrowing_id=borrowing.id,
        book_id=book.id,
        due_date=borrowing.due_date,
        days_overdue=days_overdue,
    )


def fine_issued(fine, book) -> FineIssued:
    return FineIssued(
        recipient_id=fine.member_id,
        title="Fine Issued",
        message=(
            f"A fine of ${fine.amount:.2f} has been issued for the overdue book "
            f'"{book.title}" ({_plural(fine.days_overdue, "day")} overdue).'
        ),
        fine_id=fine.id,
        borrowing_id=fine.borrowing_id,
        amount=fine.amount,
        days_overdue=fine.days_overdue,
    )


def fine_paid(fine) -> FinePaid:
    return FinePaid(
        recipient_id=fine.member_id,
        title="Payment Received",
        message=(
            f"Thank you! We've received your payment of ${fine.amount:.2f}. "
            "Your fine has been paid in full."
        ),
        fine_id=fine.id,
        amount=fine.amount,
    )


def reservation_ready(reservation, book) -> ReservationReady:
    return ReservationReady(
        recipient_id=reservation.member_id,
        title="Book Ready for Pickup",
        message=(
            f'Your reserved book "{book.title}" by {book.author} is now ready for '
            f"pickup. Please collect it before {reservation.expiry_date:%B %d, %Y}."
        ),
        reservation_id=reservation.id,
        book_id=book.id,
        book_copy_id=reservation.book_copy_id,
        expiry_date=reservation.expiry_date,
    )


def reservation_expired(reservation, book) -> ReservationExpired:
    return ReservationExpired(
        recipient_id=reservation.member_id,
        title="Reservation Expired",
        message=(
            f'Your reservation for "{book.title}" by {book.author} has expired. '
            "The book has been made available to the next person in the queue."
        ),
        reservation_id=reservation.id,
        book_id=book.id,
    )


# In-app notification queries


def list_notifications(
    db: Session, member_id: int, unread_only: bool = False, limit: int = 50
) -> List[Notification]:
    query = db.query(Notification).filter(Notification.member_id == member_id)
    if unread_only:
        query = query.filter(Notification.read == False)
    return (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )


def unread_count(db: Session, member_id: int) -> int:
    return (
        db.query(Notification)
        .filter(Notification.member_id == member_id, Notification.read == False)
        .count()
    )


def mark_read(db: Session, notification_id: int, now: Optional[datetime] = None) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None:
        raise NotificationNotFoundError(notification_id)
    if notification.read:
        return notification
    try:
        notification.read = True
        notification.read_at = now or utcnow()
        db.commit()
        db.refresh(notification)
        return notification
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("mark notification read", str(e))


def mark_all_read(db: Session, member_id: int, now: Optional[datetime] = None) -> int:
    try:
        updated = (
            db.query(Notification)
            .filter(Notification.member_id == member_id, Notification.read == False)
            .update(
                {Notification.read: True, Notification.read_at: now or utcnow()},
                synchronize_session=False,
            )
        )
        db.commit()
        return updated
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("mark all notifications read", str(e))
