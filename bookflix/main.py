import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from bookflix import borrowing as ledger
from bookflix import catalog, fines, members, notifications, reservations
from bookflix.config import get_library_config, settings, update_library_config
from bookflix.internal_message import cleanup_messaging, publish_intents, setup_messaging
from bookflix.models import Base, BorrowingStatus, FineStatus, ReservationStatus, utcnow
from bookflix.notifications import NotificationEmitter
from bookflix.schemas import (
    BookAvailabilitySchema,
    BookCopySchema,
    BookCreate,
    BorrowingSchema,
    BorrowRequestSchema,
    CancelReservationSchema,
    FineListSchema,
    FineSchema,
    FineSweepSchema,
    LibraryConfigSchema,
    LibraryConfigUpdate,
    MarkReadySchema,
    MemberCreate,
    MemberSchema,
    NotificationSchema,
    NotificationSweepSchema,
    ReservationCompletedSchema,
    ReservationRequestSchema,
    ReservationSchema,
    ReturnRequestSchema,
    StockLevelSchema,
    StockUpdate,
    SubscriptionUpdate,
    UnreadCountSchema,
    WaiveFineSchema,
)
from bookflix.storage import SessionLocal, engine
from exceptions.exceptions import add_exception_handlers

# Set up logging
logging.basicConfig(
    level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        Base.metadata.create_all(bind=engine)
        await setup_messaging(app)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)


app = FastAPI(
    title="Bookflix Circulation API",
    lifespan=lifespan,
    description="Borrowing, reservation queue and fine endpoints for Bookflix",
    version="1.0.0",
)

add_exception_handlers(app)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notifier(db: Session = Depends(get_db)) -> NotificationEmitter:
    return NotificationEmitter(db)


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def dispatch(request: Request, tasks: BackgroundTasks, notifier: NotificationEmitter):
    intents = notifier.drain()
    if intents:
        tasks.add_task(publish_intents, request.app, intents)


def borrowing_out(borrowing, now=None) -> BorrowingSchema:
    now = now or utcnow()
    return BorrowingSchema.model_validate(borrowing).model_copy(
        update={
            "days_overdue": ledger.days_overdue(borrowing, now),
            "days_remaining": ledger.days_remaining(borrowing, now),
        }
    )


def reservation_out(reservation, now=None) -> ReservationSchema:
    return ReservationSchema.model_validate(reservation).model_copy(
        update={
            "days_until_expiry": reservations.days_until_expiry(reservation, now),
            "is_expired": reservations.is_expired(reservation, now),
        }
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# Members
@app.post("/members/", response_model=MemberSchema, status_code=status.HTTP_201_CREATED)
def create_member(member: MemberCreate, db: Session = Depends(get_db)):
    return members.create_member(db, member)


@app.get("/members/{member_id}", response_model=MemberSchema)
def read_member(member_id: int, db: Session = Depends(get_db)):
    return members.get_member(db, member_id)


@app.put("/members/{member_id}/subscription", response_model=MemberSchema)
def sync_subscription(
    member_id: int, update: SubscriptionUpdate, db: Session = Depends(get_db)
):
    return members.update_subscription(db, member_id, update)


@app.get("/members/{member_id}/borrowings", response_model=List[BorrowingSchema])
def member_borrowings(
    member_id: int,
    status: Optional[BorrowingStatus] = None,
    db: Session = Depends(get_db),
):
    now = utcnow()
    items = ledger.list_member_borrowings(db, member_id, status, now)
    return [borrowing_out(b, now) for b in items]


@app.get("/members/{member_id}/reservations", response_model=List[ReservationSchema])
def member_reservations(
    member_id: int,
    status: Optional[ReservationStatus] = None,
    db: Session = Depends(get_db),
):
    now = utcnow()
    items = reservations.list_member_reservations(db, member_id, status)
    return [reservation_out(r, now) for r in items]


@app.get("/members/{member_id}/fines", response_model=FineListSchema)
def member_fines(
    member_id: int, status: Optional[FineStatus] = None, db: Session = Depends(get_db)
):
    return FineListSchema(
        fines=fines.list_fines(db, member_id, status),
        outstanding_balance=fines.outstanding_balance(db, member_id),
    )


@app.get("/members/{member_id}/notifications", response_model=List[NotificationSchema])
def member_notifications(
    member_id: int, unread_only: bool = False, db: Session = Depends(get_db)
):
    members.get_member(db, member_id)
    return notifications.list_notifications(db, member_id, unread_only)


@app.get("/members/{member_id}/notifications/unread-count", response_model=UnreadCountSchema)
def member_unread_count(member_id: int, db: Session = Depends(get_db)):
    members.get_member(db, member_id)
    return UnreadCountSchema(
        member_id=member_id, unread=notifications.unread_count(db, member_id)
    )


@app.post("/members/{member_id}/notifications/mark-all-read")
def member_mark_all_read(member_id: int, db: Session = Depends(get_db)):
    members.get_member(db, member_id)
    return {"updated": notifications.mark_all_read(db, member_id)}


@app.post("/notifications/{notification_id}/read", response_model=NotificationSchema)
def read_notification(notification_id: int, db: Session = Depends(get_db)):
    return notifications.mark_read(db, notification_id)


# Catalog
@app.post("/books/", response_model=BookAvailabilitySchema, status_code=status.HTTP_201_CREATED)
def add_book(book: BookCreate, db: Session = Depends(get_db)):
    return read_book(catalog.add_book(db, book).id, db)


@app.get("/books/{book_id}", response_model=BookAvailabilitySchema)
def read_book(book_id: int, db: Session = Depends(get_db)):
    book = catalog.get_book(db, book_id)
    return BookAvailabilitySchema.model_validate(
        {
            "id": book.id,
            "title": book.title,
            "author": book.author,
            "isbn": book.isbn,
            "category": book.category,
            "rating": book.rating,
            "is_active": book.is_active,
            "total_copies": catalog.count_total(db, book_id),
            "available_copies": catalog.count_available(db, book_id),
        }
    )


@app.get("/books/{book_id}/copies", response_model=List[BookCopySchema])
def book_copies(book_id: int, db: Session = Depends(get_db)):
    return catalog.list_copies(db, book_id)


@app.patch("/books/{book_id}/stock", response_model=StockLevelSchema)
def update_stock(book_id: int, stock: StockUpdate, db: Session = Depends(get_db)):
    total, available = catalog.set_stock_level(db, book_id, stock.copies)
    return StockLevelSchema(
        book_id=book_id, total_copies=total, available_copies=available
    )


@app.get("/books/{book_id}/queue", response_model=List[ReservationSchema])
def book_queue(book_id: int, db: Session = Depends(get_db)):
    now = utcnow()
    return [reservation_out(r, now) for r in reservations.get_book_queue(db, book_id)]


# Borrowings
@app.post(
    "/borrowings/borrow",
    response_model=BorrowingSchema,
    status_code=status.HTTP_201_CREATED,
)
def borrow_book(
    borrow_request: BorrowRequestSchema,
    request: Request,
    tasks: BackgroundTasks,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    borrowing = ledger.borrow_book(
        notifier.db, borrow_request.member_id, borrow_request.book_id, notifier
    )
    dispatch(request, tasks, notifier)
    return borrowing_out(borrowing)


@app.get("/borrowings/{borrowing_id}", response_model=BorrowingSchema)
def read_borrowing(borrowing_id: int, db: Session = Depends(get_db)):
    return borrowing_out(ledger.get_borrowing(db, borrowing_id))


@app.post("/borrowings/{borrowing_id}/renew", response_model=BorrowingSchema)
def renew_borrowing(borrowing_id: int, db: Session = Depends(get_db)):
    return borrowing_out(ledger.renew_borrowing(db, borrowing_id))


@app.post("/borrowings/{borrowing_id}/return", response_model=BorrowingSchema)
def return_borrowing(
    borrowing_id: int,
    body: Optional[ReturnRequestSchema] = None,
    db: Session = Depends(get_db),
):
    returned_by = body.returned_by if body else None
    return borrowing_out(ledger.return_borrowing(db, borrowing_id, returned_by))


# Reservations
@app.post(
    "/reservations/",
    response_model=ReservationSchema,
    status_code=status.HTTP_201_CREATED,
)
def reserve_book(reservation: ReservationRequestSchema, db: Session = Depends(get_db)):
    created = reservations.request_reservation(
        db, reservation.member_id, reservation.book_id
    )
    return reservation_out(created)


@app.get("/reservations/{reservation_id}", response_model=ReservationSchema)
def read_reservation(reservation_id: int, db: Session = Depends(get_db)):
    return reservation_out(reservations.get_reservation(db, reservation_id))


@app.post("/reservations/{reservation_id}/mark-ready", response_model=ReservationSchema)
def mark_reservation_ready(
    reservation_id: int,
    request: Request,
    tasks: BackgroundTasks,
    body: Optional[MarkReadySchema] = None,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    book_copy_id = body.book_copy_id if body else None
    reservation = reservations.mark_ready(
        notifier.db, reservation_id, notifier, book_copy_id
    )
    dispatch(request, tasks, notifier)
    return reservation_out(reservation)


@app.post("/reservations/{reservation_id}/complete", response_model=ReservationCompletedSchema)
def complete_reservation(
    reservation_id: int,
    request: Request,
    tasks: BackgroundTasks,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    reservation, borrowing = reservations.complete_reservation(
        notifier.db, reservation_id, notifier
    )
    dispatch(request, tasks, notifier)
    return ReservationCompletedSchema(
        reservation=reservation_out(reservation), borrowing=borrowing_out(borrowing)
    )


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationSchema)
def cancel_reservation(
    reservation_id: int,
    body: Optional[CancelReservationSchema] = None,
    db: Session = Depends(get_db),
):
    cancelled_by = body.cancelled_by if body else None
    return reservation_out(
        reservations.cancel_reservation(db, reservation_id, cancelled_by)
    )


# Fines
@app.get("/fines/{fine_id}", response_model=FineSchema)
def read_fine(fine_id: int, db: Session = Depends(get_db)):
    return fines.get_fine(db, fine_id)


@app.post("/fines/{fine_id}/waive", response_model=FineSchema)
def waive_fine(
    fine_id: int, body: Optional[WaiveFineSchema] = None, db: Session = Depends(get_db)
):
    body = body or WaiveFineSchema()
    return fines.waive_fine(db, fine_id, body.waived_by, body.notes)


@app.post("/fines/{fine_id}/paid", response_model=FineSchema)
def fine_paid(
    fine_id: int,
    request: Request,
    tasks: BackgroundTasks,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    fine = fines.mark_fine_paid(notifier.db, fine_id, notifier)
    dispatch(request, tasks, notifier)
    return fine


# Scheduled sweeps
@app.post(
    "/cron/calculate-fines",
    response_model=FineSweepSchema,
    dependencies=[Depends(verify_cron_secret)],
)
def calculate_fines(
    request: Request,
    tasks: BackgroundTasks,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    now = utcnow()
    stats = fines.run_fine_sweep(notifier.db, notifier, now)
    dispatch(request, tasks, notifier)
    return FineSweepSchema(
        processed=stats.processed,
        fines_created=stats.fines_created,
        fines_updated=stats.fines_updated,
        notifications=stats.notifications,
        errors=stats.errors,
        timestamp=now,
    )


@app.post(
    "/cron/send-notifications",
    response_model=NotificationSweepSchema,
    dependencies=[Depends(verify_cron_secret)],
)
def send_notifications(
    request: Request,
    tasks: BackgroundTasks,
    notifier: NotificationEmitter = Depends(get_notifier),
):
    now = utcnow()
    reminders = ledger.run_due_reminder_sweep(notifier.db, notifier, now)
    expiry = reservations.run_expiry_sweep(notifier.db, notifier, now)
    dispatch(request, tasks, notifier)
    return NotificationSweepSchema(
        due_reminders_sent=reminders.reminders_sent,
        reservations_expired=expiry.expired,
        copies_released=expiry.copies_released,
        errors=reminders.errors + expiry.errors,
        timestamp=now,
    )


# Configuration
@app.get("/config", response_model=LibraryConfigSchema)
def read_config(db: Session = Depends(get_db)):
    return get_library_config(db)


@app.put("/config", response_model=LibraryConfigSchema)
def write_config(changes: LibraryConfigUpdate, db: Session = Depends(get_db)):
    return update_library_config(db, changes.model_dump(exclude_unset=True))


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Bookflix circulation service on port {settings.port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
