import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix import schemas
from bookflix.models import Book, BookCopy, CopyStatus
from exceptions.exceptions import (
    BookNotFoundError,
    DatabaseError,
    DuplicateIsbnError,
    InsufficientRemovableStockError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_STOCK_LEVEL = 1000


def get_book(db: Session, book_id: int) -> Book:
    book = db.get(Book, book_id)
    if book is None or not book.is_active:
        raise BookNotFoundError(book_id)
    return book


def _active_copies(db: Session, book_id: int):
    return db.query(BookCopy).filter(
        BookCopy.book_id == book_id, BookCopy.is_active == True
    )


def count_available(db: Session, book_id: int) -> int:
    return (
        _active_copies(db, book_id)
        .filter(BookCopy.status == CopyStatus.AVAILABLE)
        .count()
    )


def count_total(db: Session, book_id: int) -> int:
    return _active_copies(db, book_id).count()


def list_copies(db: Session, book_id: int) -> List[BookCopy]:
    get_book(db, book_id)
    return _active_copies(db, book_id).order_by(BookCopy.id).all()


def find_available_copy(db: Session, book_id: int) -> Optional[BookCopy]:
    return (
        _active_copies(db, book_id)
        .filter(BookCopy.status == CopyStatus.AVAILABLE)
        .order_by(BookCopy.created_at, BookCopy.id)
        .first()
    )


def claim_copy(
    db: Session, copy_id: int, expected: CopyStatus, new_status: CopyStatus
) -> bool:
    """Move a copy from ``expected`` to ``new_status`` if nobody got there first.

    The status check is part of the UPDATE itself, so of two requests racing
    for the same copy only one sees a matched row.
    """
    matched = (
        db.query(BookCopy)
        .filter(
            BookCopy.id == copy_id,
            BookCopy.status == expected,
            BookCopy.is_active == True,
        )
        .update({BookCopy.status: new_status}, synchronize_session="fetch")
    )
    if matched:
        logger.info(f"Copy {copy_id}: {expected.value} -> {new_status.value}")
    return matched == 1


def release_copy(db: Session, copy_id: int, held: CopyStatus) -> bool:
    return claim_copy(db, copy_id, held, CopyStatus.AVAILABLE)


def _new_copy(book: Book, sequence: int) -> BookCopy:
    copy_number = f"{book.id}-{sequence}"
    barcode = f"{book.isbn}-{sequence}" if book.isbn else copy_number
    return BookCopy(
        book_id=book.id,
        copy_number=copy_number,
        barcode=barcode,
        status=CopyStatus.AVAILABLE,
        is_active=True,
    )


def add_book(db: Session, item: schemas.BookCreate) -> Book:
    if item.isbn and db.query(Book).filter(Book.isbn == item.isbn).first():
        raise DuplicateIsbnError(item.isbn)
    try:
        book = Book(**item.model_dump(exclude={"copies"}))
        db.add(book)
        db.flush()
        for sequence in range(1, item.copies + 1):
            db.add(_new_copy(book, sequence))
        db.commit()
        db.refresh(book)
        logger.info(f"Added book {book.id} ({book.title}) with {item.copies} copies")
        return book
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create book", str(e))


def set_stock_level(db: Session, book_id: int, target_count: int) -> Tuple[int, int]:
    """Reconcile the number of active copies of a book with ``target_count``.

    Growing the stock adds available copies. Shrinking it deactivates the
    oldest available copies and never touches a copy that is lent out or
    held for a reservation. Returns ``(total, available)`` afterwards.
    """
    if (
        isinstance(target_count, bool)
        or not isinstance(target_count, int)
        or not 0 <= target_count <= MAX_STOCK_LEVEL
    ):
        raise ValidationError(
            f"Copies must be a non-negative integer between 0 and {MAX_STOCK_LEVEL}",
            copies=target_count,
        )
    book = get_book(db, book_id)
    current = count_total(db, book_id)
    difference = target_count - current

    if difference < 0:
        to_remove = -difference
        removable = (
            _active_copies(db, book_id)
            .filter(BookCopy.status == CopyStatus.AVAILABLE)
            .order_by(BookCopy.created_at, BookCopy.id)
            .limit(to_remove)
            .all()
        )
        if len(removable) < to_remove:
            raise InsufficientRemovableStockError(book_id, to_remove, len(removable))

    try:
        if difference > 0:
            # copy numbers keep counting past deactivated copies
            issued = db.query(BookCopy).filter(BookCopy.book_id == book_id).count()
            for offset in range(1, difference + 1):
                db.add(_new_copy(book, issued + offset))
        elif difference < 0:
            for copy in removable:
                copy.is_active = False
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update stock", str(e))

    total, available = count_total(db, book_id), count_available(db, book_id)
    logger.info(
        f"Stock for book {book_id} set to {target_count} "
        f"(total={total}, available={available})"
    )
    return total, available
