from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from bookflix.models import (
    BorrowingStatus,
    CopyStatus,
    FineStatus,
    ReservationStatus,
    SubscriptionStatus,
    SubscriptionType,
)


# Members


class MemberBase(BaseModel):
    email: str = Field(min_length=3)
    name: str = Field(min_length=1)


class MemberCreate(MemberBase):
    subscription_type: SubscriptionType = SubscriptionType.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE


class SubscriptionUpdate(BaseModel):
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus


class MemberSchema(MemberBase):
    id: int
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus
    is_active: bool

    class Config:
        from_attributes = True


# Catalog


class BookBase(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str | None = None
    category: str | None = None
    rating: float = Field(default=0.0, ge=0, le=5)


class BookCreate(BookBase):
    copies: int = Field(default=1, ge=0, le=1000)


class BookSchema(BookBase):
    id: int
    is_active: bool

    class Config:
        from_attributes = True


class BookAvailabilitySchema(BookSchema):
    total_copies: int
    available_copies: int


class BookCopySchema(BaseModel):
    id: int
    book_id: int
    copy_number: str
    barcode: str | None = None
    status: CopyStatus
    is_active: bool

    class Config:
        from_attributes = True


class StockUpdate(BaseModel):
    copies: int


class StockLevelSchema(BaseModel):
    book_id: int
    total_copies: int
    available_copies: int


# Borrowings


class BorrowRequestSchema(BaseModel):
    member_id: int
    book_id: int


class ReturnRequestSchema(BaseModel):
    returned_by: Optional[int] = None


class BorrowingSchema(BaseModel):
    id: int
    member_id: int
    book_id: int
    book_copy_id: int
    borrowed_date: datetime
    due_date: datetime
    returned_date: Optional[datetime] = None
    status: BorrowingStatus
    renewed: bool
    renewal_count: int
    returned_by: Optional[int] = None
    days_overdue: int = 0
    days_remaining: int = 0

    class Config:
        from_attributes = True


# Reservations


class ReservationRequestSchema(BaseModel):
    member_id: int
    book_id: int


class MarkReadySchema(BaseModel):
    book_copy_id: Optional[int] = None


class CancelReservationSchema(BaseModel):
    cancelled_by: Optional[int] = None


class ReservationSchema(BaseModel):
    id: int
    member_id: int
    book_id: int
    book_copy_id: Optional[int] = None
    reserved_date: datetime
    queue_expiry_date: datetime
    expiry_date: datetime
    ready_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    cancelled_date: Optional[datetime] = None
    status: ReservationStatus
    queue_position: int
    cancelled_by: Optional[int] = None
    days_until_expiry: Optional[int] = None
    is_expired: bool = False

    class Config:
        from_attributes = True


class ReservationCompletedSchema(BaseModel):
    reservation: ReservationSchema
    borrowing: BorrowingSchema


# Fines


class WaiveFineSchema(BaseModel):
    waived_by: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class FineSchema(BaseModel):
    id: int
    member_id: int
    borrowing_id: int
    amount: float
    days_overdue: int
    status: FineStatus
    issued_date: datetime
    paid_date: Optional[datetime] = None
    waived_date: Optional[datetime] = None
    waived_by: Optional[int] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class FineListSchema(BaseModel):
    fines: list[FineSchema]
    outstanding_balance: float


# Sweeps


class FineSweepSchema(BaseModel):
    processed: int
    fines_created: int
    fines_updated: int
    notifications: int
    errors: int
    timestamp: datetime


class NotificationSweepSchema(BaseModel):
    due_reminders_sent: int
    reservations_expired: int
    copies_released: int
    errors: int
    timestamp: datetime


# Configuration


class LibraryConfigSchema(BaseModel):
    standard_loan_days: int
    premium_loan_days: int
    general_max_loans: int
    premium_max_loans: int
    max_renewals: int
    grace_period_days: int
    fine_rate: float
    max_fine_cap: float
    reservation_expiry_days: int
    pickup_window_days: int
    due_reminder_days: int

    class Config:
        from_attributes = True


class LibraryConfigUpdate(BaseModel):
    standard_loan_days: Optional[int] = None
    premium_loan_days: Optional[int] = None
    general_max_loans: Optional[int] = None
    premium_max_loans: Optional[int] = None
    max_renewals: Optional[int] = None
    grace_period_days: Optional[int] = None
    fine_rate: Optional[float] = None
    max_fine_cap: Optional[float] = None
    reservation_expiry_days: Optional[int] = None
    pickup_window_days: Optional[int] = None
    due_reminder_days: Optional[int] = None


# Notification intents
#
# One model per state change. The ``kind`` literal doubles as the stored
# notification type and as the discriminator when decoding a published intent.


class IntentBase(BaseModel):
    recipient_id: int
    title: str
    message: str
    send_email: bool = False


class BookBorrowed(IntentBase):
    kind: Literal["book_borrowed"] = "book_borrowed"
    borrowing_id: int
    book_id: int
    due_date: datetime


class BorrowingDue(IntentBase):
    kind: Literal["borrowing_due"] = "borrowing_due"
    send_email: bool = True
    borrowing_id: int
    book_id: int
    due_date: datetime
    days_remaining: int


class BorrowingOverdue(IntentBase):
    kind: Literal["borrowing_overdue"] = "borrowing_overdue"
    send_email: bool = True
    borrowing_id: int
    book_id: int
    due_date: datetime
    days_overdue: int


class FineIssued(IntentBase):
    kind: Literal["fine_issued"] = "fine_issued"
    send_email: bool = True
    fine_id: int
    borrowing_id: int
    amount: float
    days_overdue: int


class FinePaid(IntentBase):
    kind: Literal["payment_received"] = "payment_received"
    send_email: bool = True
    fine_id: int
    amount: float


class ReservationReady(IntentBase):
    kind: Literal["reservation_ready"] = "reservation_ready"
    send_email: bool = True
    reservation_id: int
    book_id: int
    book_copy_id: int
    expiry_date: datetime


class ReservationExpired(IntentBase):
    kind: Literal["reservation_expired"] = "reservation_expired"
    send_email: bool = True
    reservation_id: int
    book_id: int


NotificationIntent = Annotated[
    Union[
        BookBorrowed,
        BorrowingDue,
        BorrowingOverdue,
        FineIssued,
        FinePaid,
        ReservationReady,
        ReservationExpired,
    ],
    Field(discriminator="kind"),
]


class IntentEnvelope(BaseModel):
    intent: NotificationIntent


class NotificationSchema(BaseModel):
    id: int
    member_id: int
    type: str
    title: str
    message: str
    payload: dict
    send_email: bool
    read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCountSchema(BaseModel):
    member_id: int
    unread: int
