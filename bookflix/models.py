from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, default):
    return Column(
        SAEnum(
            enum_cls,
            native_enum=False,
            values_callable=lambda members: [m.value for m in members],
            length=20,
        ),
        default=default,
        nullable=False,
        index=True,
    )


class SubscriptionType(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CopyStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    RESERVED = "reserved"
    LOST = "lost"
    MAINTENANCE = "maintenance"


class BorrowingStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FineStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


OPEN_BORROWING_STATUSES = (BorrowingStatus.ACTIVE, BorrowingStatus.OVERDUE)
UNRESOLVED_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.READY)


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    subscription_type = _enum_column(SubscriptionType, SubscriptionType.FREE)
    subscription_status = _enum_column(SubscriptionStatus, SubscriptionStatus.ACTIVE)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, nullable=True)
    category = Column(String, nullable=True)
    rating = Column(Float, default=0.0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class BookCopy(Base):
    __tablename__ = "book_copies"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    copy_number = Column(String, nullable=False)
    barcode = Column(String, unique=True, nullable=True)
    status = _enum_column(CopyStatus, CopyStatus.AVAILABLE)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=utcnow)

    book = relationship("Book", back_populates="copies")


Index("ix_book_copies_book_status", BookCopy.book_id, BookCopy.status)


class Borrowing(Base):
    __tablename__ = "borrowings"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    book_copy_id = Column(
        Integer, ForeignKey("book_copies.id"), nullable=False, index=True
    )
    borrowed_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False, index=True)
    returned_date = Column(DateTime, nullable=True)
    status = _enum_column(BorrowingStatus, BorrowingStatus.ACTIVE)
    renewed = Column(Boolean, default=False)
    renewal_count = Column(Integer, default=0, nullable=False)
    returned_by = Column(Integer, nullable=True)
    notes = Column(String, nullable=True)

    member = relationship("Member", back_populates="borrowings")
    book = relationship("Book")
    book_copy = relationship("BookCopy")


Index("ix_borrowings_member_status", Borrowing.member_id, Borrowing.status)
Index("ix_borrowings_status_due", Borrowing.status, Borrowing.due_date)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    # held copy, set once the reservation is ready for pickup
    book_copy_id = Column(Integer, ForeignKey("book_copies.id"), nullable=True)
    reserved_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    queue_expiry_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False, index=True)
    ready_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)
    cancelled_date = Column(DateTime, nullable=True)
    status = _enum_column(ReservationStatus, ReservationStatus.PENDING)
    queue_position = Column(Integer, nullable=False, default=1)
    cancelled_by = Column(Integer, nullable=True)
    notes = Column(String, nullable=True)

    member = relationship("Member", back_populates="reservations")
    book = relationship("Book")
    book_copy = relationship("BookCopy")


Index("ix_reservations_book_status", Reservation.book_id, Reservation.status)


class Fine(Base):
    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    borrowing_id = Column(
        Integer, ForeignKey("borrowings.id"), nullable=False, index=True
    )
    amount = Column(Float, nullable=False)
    days_overdue = Column(Integer, nullable=False)
    status = _enum_column(FineStatus, FineStatus.PENDING)
    issued_date = Column(DateTime, nullable=False, default=utcnow)
    paid_date = Column(DateTime, nullable=True)
    waived_date = Column(DateTime, nullable=True)
    waived_by = Column(Integer, nullable=True)
    notes = Column(String, nullable=True)

    member = relationship("Member", back_populates="fines")
    borrowing = relationship("Borrowing")


Index("ix_fines_borrowing_status", Fine.borrowing_id, Fine.status)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    send_email = Column(Boolean, default=False)
    read = Column(Boolean, default=False, index=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class LibraryConfig(Base):
    __tablename__ = "library_config"

    id = Column(Integer, primary_key=True)
    standard_loan_days = Column(Integer, default=7, nullable=False)
    premium_loan_days = Column(Integer, default=20, nullable=False)
    general_max_loans = Column(Integer, default=1, nullable=False)
    premium_max_loans = Column(Integer, default=4, nullable=False)
    max_renewals = Column(Integer, default=2, nullable=False)
    grace_period_days = Column(Integer, default=1, nullable=False)
    fine_rate = Column(Float, default=0.50, nullable=False)
    max_fine_cap = Column(Float, default=20.00, nullable=False)
    reservation_expiry_days = Column(Integer, default=3, nullable=False)
    pickup_window_days = Column(Integer, default=3, nullable=False)
    due_reminder_days = Column(Integer, default=3, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


Book.copies = relationship("BookCopy", back_populates="book")
Member.borrowings = relationship("Borrowing", back_populates="member")
Member.reservations = relationship("Reservation", back_populates="member")
Member.fines = relationship("Fine", back_populates="member")
