import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix import notifications
from bookflix.borrowing import days_overdue, mark_overdue_borrowings
from bookflix.config import get_library_config
from bookflix.members import get_member
from bookflix.models import Borrowing, BorrowingStatus, Fine, FineStatus, utcnow
from bookflix.notifications import NotificationEmitter
from exceptions.exceptions import (
    DatabaseError,
    FineNotFoundError,
    InvalidFineTransitionError,
    LibraryException,
)

logger = logging.getLogger(__name__)


def fine_amount(days: int, rate: float) -> float:
    return round(days * rate, 2)


@dataclass
class FineSweepStats:
    processed: int = 0
    fines_created: int = 0
    fines_updated: int = 0
    notifications: int = 0
    errors: int = 0


def find_pending_fine(db: Session, borrowing_id: int) -> Optional[Fine]:
    return (
        db.query(Fine)
        .filter(Fine.borrowing_id == borrowing_id, Fine.status == FineStatus.PENDING)
        .order_by(Fine.id)
        .first()
    )


def assess_borrowing(
    db: Session,
    borrowing: Borrowing,
    rate: float,
    notifier: NotificationEmitter,
    stats: FineSweepStats,
    now: datetime,
) -> None:
    days = days_overdue(borrowing, now)
    if days <= 0:
        return
    amount = fine_amount(days, rate)

    fine = find_pending_fine(db, borrowing.id)
    if fine is not None:
        if fine.amount != amount or fine.days_overdue != days:
            fine.amount = amount
            fine.days_overdue = days
            stats.fines_updated += 1
    else:
        fine = Fine(
            member_id=borrowing.member_id,
            borrowing_id=borrowing.id,
            amount=amount,
            days_overdue=days,
            status=FineStatus.PENDING,
            issued_date=now,
        )
        db.add(fine)
        db.flush()
        notifier.emit(notifications.fine_issued(fine, borrowing.book))
        stats.notifications += 1
        stats.fines_created += 1

    notifier.emit(notifications.borrowing_overdue(borrowing, borrowing.book, days))
    stats.notifications += 1


def run_fine_sweep(
    db: Session, notifier: NotificationEmitter, now: Optional[datetime] = None
) -> FineSweepStats:
    """Accrue fines for every unreturned overdue loan.

    Safe to re-run: a loan keeps at most one pending fine, whose amount is
    recomputed in place. Each loan is committed on its own so that one bad
    record only costs its own update.
    """
    now = now or utcnow()
    rate = get_library_config(db).fine_rate
    stats = FineSweepStats()
    mark_overdue_borrowings(db, now)

    overdue_ids = [
        borrowing_id
        for (borrowing_id,) in db.query(Borrowing.id)
        .filter(
            Borrowing.status == BorrowingStatus.OVERDUE,
            Borrowing.returned_date == None,
        )
        .order_by(Borrowing.id)
        .all()
    ]
    for borrowing_id in overdue_ids:
        stats.processed += 1
        mark = notifier.checkpoint()
        before = (stats.fines_created, stats.fines_updated, stats.notifications)
        try:
            borrowing = db.get(Borrowing, borrowing_id)
            assess_borrowing(db, borrowing, rate, notifier, stats, now)
            db.commit()
        except (SQLAlchemyError, LibraryException) as e:
            db.rollback()
            notifier.rollback_to(mark)
            stats.fines_created, stats.fines_updated, stats.notifications = before
            stats.errors += 1
            logger.error(f"Error processing borrowing {borrowing_id}: {e}")

    logger.info(
        f"Fine sweep: processed={stats.processed} created={stats.fines_created} "
        f"updated={stats.fines_updated} errors={stats.errors}"
    )
    return stats


def get_fine(db: Session, fine_id: int) -> Fine:
    fine = db.get(Fine, fine_id)
    if fine is None:
        raise FineNotFoundError(fine_id)
    return fine


def list_fines(
    db: Session, member_id: Optional[int] = None, status: Optional[FineStatus] = None
) -> List[Fine]:
    query = db.query(Fine)
    if member_id is not None:
        get_member(db, member_id)
        query = query.filter(Fine.member_id == member_id)
    if status is not None:
        query = query.filter(Fine.status == status)
    return query.order_by(Fine.issued_date.desc(), Fine.id.desc()).all()


def outstanding_balance(db: Session, member_id: int) -> float:
    total = (
        db.query(func.coalesce(func.sum(Fine.amount), 0.0))
        .filter(Fine.member_id == member_id, Fine.status == FineStatus.PENDING)
        .scalar()
    )
    return round(float(total), 2)


def waive_fine(
    db: Session,
    fine_id: int,
    waived_by: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Fine:
    fine = get_fine(db, fine_id)
    if fine.status != FineStatus.PENDING:
        raise InvalidFineTransitionError(fine_id, fine.status.value, FineStatus.WAIVED.value)
    try:
        fine.status = FineStatus.WAIVED
        fine.waived_date = now or utcnow()
        if waived_by is not None:
            fine.waived_by = waived_by
        if notes:
            fine.notes = notes
        db.commit()
        db.refresh(fine)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("waive fine", str(e))
    logger.info(f"Fine {fine_id} waived by {waived_by}")
    return fine


def mark_fine_paid(
    db: Session,
    fine_id: int,
    notifier: NotificationEmitter,
    now: Optional[datetime] = None,
) -> Fine:
    """Completion callback from the payment processor."""
    fine = get_fine(db, fine_id)
    if fine.status == FineStatus.PAID:
        return fine
    if fine.status != FineStatus.PENDING:
        raise InvalidFineTransitionError(fine_id, fine.status.value, FineStatus.PAID.value)
    try:
        fine.status = FineStatus.PAID
        fine.paid_date = now or utcnow()
        notifier.emit(notifications.fine_paid(fine))
        db.commit()
        db.refresh(fine)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("mark fine paid", str(e))
    logger.info(f"Fine {fine_id} paid (${fine.amount:.2f})")
    return fine
