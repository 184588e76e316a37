import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix import catalog, notifications
from bookflix.borrowing import ensure_can_borrow, find_open_loan, open_loan
from bookflix.config import get_library_config
from bookflix.members import get_member
from bookflix.models import (
    UNRESOLVED_RESERVATION_STATUSES,
    Borrowing,
    BookCopy,
    CopyStatus,
    Reservation,
    ReservationStatus,
    utcnow,
)
from bookflix.notifications import NotificationEmitter
from bookflix.tiers import policy_for_member
from exceptions.exceptions import (
    AlreadyBorrowedError,
    AlreadyReservedError,
    BookCurrentlyAvailableError,
    CannotCancelCompletedError,
    DatabaseError,
    DuplicateLoanError,
    InvalidReservationTransitionError,
    LibraryException,
    NoAvailableCopyError,
    ReservationNotFoundError,
    ReservedCopyNotFoundError,
)

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def days_until_expiry(
    reservation: Reservation, now: Optional[datetime] = None
) -> Optional[int]:
    if reservation.status not in UNRESOLVED_RESERVATION_STATUSES:
        return None
    remaining = reservation.expiry_date - (now or utcnow())
    return max(0, math.ceil(remaining / ONE_DAY))


def is_expired(reservation: Reservation, now: Optional[datetime] = None) -> bool:
    return (
        reservation.status in UNRESOLVED_RESERVATION_STATUSES
        and (now or utcnow()) > reservation.expiry_date
    )


# Queue


def _unresolved(db: Session, book_id: int):
    return db.query(Reservation).filter(
        Reservation.book_id == book_id,
        Reservation.status.in_(UNRESOLVED_RESERVATION_STATUSES),
    )


def update_queue_positions(db: Session, book_id: int) -> List[Reservation]:
    """Renumber the book's unresolved reservations ``1..N`` by request time.

    A full re-sort rather than decrementing positions in place. The rows are
    locked for the rest of the caller's transaction where the database
    supports ``SELECT ... FOR UPDATE``.
    """
    db.flush()
    queue = (
        _unresolved(db, book_id)
        .order_by(Reservation.reserved_date, Reservation.id)
        .with_for_update()
        .all()
    )
    for position, reservation in enumerate(queue, start=1):
        if reservation.queue_position != position:
            reservation.queue_position = position
    db.flush()
    return queue


def get_book_queue(db: Session, book_id: int) -> List[Reservation]:
    catalog.get_book(db, book_id)
    return (
        _unresolved(db, book_id)
        .order_by(Reservation.queue_position, Reservation.reserved_date, Reservation.id)
        .all()
    )


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise ReservationNotFoundError(reservation_id)
    return reservation


def list_member_reservations(
    db: Session, member_id: int, status: Optional[ReservationStatus] = None
) -> List[Reservation]:
    get_member(db, member_id)
    query = db.query(Reservation).filter(Reservation.member_id == member_id)
    if status is not None:
        query = query.filter(Reservation.status == status)
    return query.order_by(Reservation.reserved_date.desc(), Reservation.id.desc()).all()


# State machine


def request_reservation(
    db: Session, member_id: int, book_id: int, now: Optional[datetime] = None
) -> Reservation:
    now = now or utcnow()
    get_member(db, member_id)
    catalog.get_book(db, book_id)
    config = get_library_config(db)

    if _unresolved(db, book_id).filter(Reservation.member_id == member_id).first():
        raise AlreadyReservedError(member_id, book_id)
    if find_open_loan(db, member_id, book_id):
        raise AlreadyBorrowedError(member_id, book_id)
    if catalog.count_available(db, book_id) > 0:
        raise BookCurrentlyAvailableError(book_id)

    expiry = now + timedelta(days=config.reservation_expiry_days)
    try:
        ahead = _unresolved(db, book_id).filter(Reservation.reserved_date <= now).count()
        reservation = Reservation(
            member_id=member_id,
            book_id=book_id,
            reserved_date=now,
            queue_expiry_date=expiry,
            expiry_date=expiry,
            status=ReservationStatus.PENDING,
            queue_position=ahead + 1,
        )
        db.add(reservation)
        update_queue_positions(db, book_id)
        db.commit()
        db.refresh(reservation)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create reservation", str(e))

    logger.info(
        f"Member {member_id} reserved book {book_id} "
        f"at queue position {reservation.queue_position}"
    )
    return reservation


def _resolve_copy(
    db: Session, reservation: Reservation, book_copy_id: Optional[int]
) -> BookCopy:
    if book_copy_id is None:
        copy = catalog.find_available_copy(db, reservation.book_id)
        if copy is None:
            raise NoAvailableCopyError(reservation.book_id)
        return copy
    copy = db.get(BookCopy, book_copy_id)
    if (
        copy is None
        or copy.book_id != reservation.book_id
        or not copy.is_active
        or copy.status != CopyStatus.AVAILABLE
    ):
        raise NoAvailableCopyError(reservation.book_id, book_copy_id)
    return copy


def mark_ready(
    db: Session,
    reservation_id: int,
    notifier: NotificationEmitter,
    book_copy_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    now = now or utcnow()
    reservation = get_reservation(db, reservation_id)
    if reservation.status != ReservationStatus.PENDING:
        raise InvalidReservationTransitionError(
            reservation_id, reservation.status.value, "mark ready"
        )
    pickup_days = get_library_config(db).pickup_window_days
    copy = _resolve_copy(db, reservation, book_copy_id)

    try:
        if not catalog.claim_copy(db, copy.id, CopyStatus.AVAILABLE, CopyStatus.RESERVED):
            db.rollback()
            raise NoAvailableCopyError(reservation.book_id, copy.id)
        reservation.book_copy_id = copy.id
        reservation.status = ReservationStatus.READY
        reservation.ready_date = now
        reservation.expiry_date = now + timedelta(days=pickup_days)
        notifier.emit(notifications.reservation_ready(reservation, reservation.book))
        db.commit()
        db.refresh(reservation)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("mark reservation ready", str(e))

    logger.info(
        f"Reservation {reservation_id} ready with copy {copy.id}, "
        f"pickup by {reservation.expiry_date.isoformat()}"
    )
    return reservation


def _held_copy(db: Session, reservation: Reservation) -> Optional[BookCopy]:
    if reservation.book_copy_id is None:
        return None
    copy = db.get(BookCopy, reservation.book_copy_id)
    if copy is None or copy.status != CopyStatus.RESERVED:
        return None
    return copy


def complete_reservation(
    db: Session,
    reservation_id: int,
    notifier: NotificationEmitter,
    now: Optional[datetime] = None,
) -> Tuple[Reservation, Borrowing]:
    """Hand a ready hold to its member; the only path from hold to loan."""
    now = now or utcnow()
    reservation = get_reservation(db, reservation_id)
    if reservation.status != ReservationStatus.READY:
        raise InvalidReservationTransitionError(
            reservation_id, reservation.status.value, "complete"
        )
    copy = _held_copy(db, reservation)
    if copy is None:
        raise ReservedCopyNotFoundError(reservation_id)

    member = get_member(db, reservation.member_id)
    policy = policy_for_member(db, member)
    ensure_can_borrow(db, member, policy)
    if find_open_loan(db, member.id, reservation.book_id):
        raise DuplicateLoanError(member.id, reservation.book_id)

    try:
        if not catalog.claim_copy(db, copy.id, CopyStatus.RESERVED, CopyStatus.BORROWED):
            db.rollback()
            raise ReservedCopyNotFoundError(reservation_id)
        borrowing = open_loan(db, member, reservation.book, copy.id, policy, now)
        reservation.book_copy_id = copy.id
        reservation.status = ReservationStatus.COMPLETED
        reservation.completed_date = now
        update_queue_positions(db, reservation.book_id)
        notifier.emit(notifications.book_borrowed(borrowing, reservation.book))
        db.commit()
        db.refresh(reservation)
        db.refresh(borrowing)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("complete reservation", str(e))

    logger.info(
        f"Reservation {reservation_id} completed as borrowing {borrowing.id}"
    )
    return reservation, borrowing


def _release_hold(db: Session, reservation: Reservation) -> bool:
    if reservation.status != ReservationStatus.READY or reservation.book_copy_id is None:
        return False
    return catalog.release_copy(db, reservation.book_copy_id, CopyStatus.RESERVED)


def cancel_reservation(
    db: Session,
    reservation_id: int,
    cancelled_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    now = now or utcnow()
    reservation = get_reservation(db, reservation_id)
    if reservation.status == ReservationStatus.COMPLETED:
        raise CannotCancelCompletedError(reservation_id)
    if reservation.status not in UNRESOLVED_RESERVATION_STATUSES:
        raise InvalidReservationTransitionError(
            reservation_id, reservation.status.value, "cancel"
        )

    try:
        released = _release_hold(db, reservation)
        reservation.status = ReservationStatus.CANCELLED
        reservation.cancelled_date = now
        if cancelled_by is not None:
            reservation.cancelled_by = cancelled_by
        update_queue_positions(db, reservation.book_id)
        db.commit()
        db.refresh(reservation)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("cancel reservation", str(e))

    logger.info(
        f"Reservation {reservation_id} cancelled"
        + (f", copy {reservation.book_copy_id} released" if released else "")
    )
    return reservation


@dataclass
class ExpirySweepStats:
    processed: int = 0
    expired: int = 0
    copies_released: int = 0
    errors: int = 0


def run_expiry_sweep(
    db: Session, notifier: NotificationEmitter, now: Optional[datetime] = None
) -> ExpirySweepStats:
    """Expire holds whose deadline has passed and renumber their queues.

    A ready hold gives its copy back to the shelf. Offering that copy to the
    next member in line is left to an explicit ``mark_ready``.
    """
    now = now or utcnow()
    stats = ExpirySweepStats()
    expired_ids = [
        reservation_id
        for (reservation_id,) in db.query(Reservation.id)
        .filter(
            Reservation.status.in_(UNRESOLVED_RESERVATION_STATUSES),
            Reservation.expiry_date < now,
        )
        .order_by(Reservation.expiry_date, Reservation.id)
        .all()
    ]
    for reservation_id in expired_ids:
        stats.processed += 1
        mark = notifier.checkpoint()
        try:
            reservation = db.get(Reservation, reservation_id)
            released = _release_hold(db, reservation)
            reservation.status = ReservationStatus.EXPIRED
            update_queue_positions(db, reservation.book_id)
            notifier.emit(notifications.reservation_expired(reservation, reservation.book))
            db.commit()
            stats.expired += 1
            if released:
                stats.copies_released += 1
        except (SQLAlchemyError, LibraryException) as e:
            db.rollback()
            notifier.rollback_to(mark)
            stats.errors += 1
            logger.error(f"Error processing expired reservation {reservation_id}: {e}")

    logger.info(
        f"Expiry sweep: {stats.expired} expired, "
        f"{stats.copies_released} copies released, {stats.errors} error(s)"
    )
    return stats
