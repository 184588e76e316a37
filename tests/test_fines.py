from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from bookflix import fines
from bookflix.config import update_library_config
from bookflix.borrowing import borrow_book, return_borrowing
from bookflix.models import Borrowing, BorrowingStatus, Fine, FineStatus
from exceptions.exceptions import (
    FineNotFoundError,
    InvalidFineTransitionError,
    MemberNotFoundError,
)


@pytest.fixture
def overdue_loan(db_session: Session, member, book, notifier, now):
    """General-tier loan that fell due three days before ``now``."""
    loan = borrow_book(db_session, member.id, book.id, notifier, now - timedelta(days=10))
    notifier.drain()
    return loan


def test_fine_amount():
    assert fines.fine_amount(3, 0.5) == 1.5
    assert fines.fine_amount(7, 0.35) == 2.45


def test_sweep_creates_then_updates_single_fine(
    db_session: Session, overdue_loan, notifier, now
):
    stats = fines.run_fine_sweep(db_session, notifier, now)

    assert (stats.processed, stats.fines_created, stats.fines_updated) == (1, 1, 0)
    assert stats.notifications == 2
    fine = db_session.query(Fine).one()
    assert fine.days_overdue == 3
    assert fine.amount == 1.5
    assert fine.status == FineStatus.PENDING
    db_session.refresh(overdue_loan)
    assert overdue_loan.status == BorrowingStatus.OVERDUE
    assert sorted(i.kind for i in notifier.drain()) == ["borrowing_overdue", "fine_issued"]

    stats = fines.run_fine_sweep(db_session, notifier, now + timedelta(days=1))

    assert (stats.fines_created, stats.fines_updated) == (0, 1)
    fine = db_session.query(Fine).one()
    assert fine.days_overdue == 4
    assert fine.amount == 2.0
    assert [i.kind for i in notifier.drain()] == ["borrowing_overdue"]


def test_sweep_rerun_same_day_changes_nothing(
    db_session: Session, overdue_loan, notifier, now
):
    fines.run_fine_sweep(db_session, notifier, now)
    stats = fines.run_fine_sweep(db_session, notifier, now)

    assert (stats.fines_created, stats.fines_updated) == (0, 0)
    assert db_session.query(Fine).count() == 1


def test_sweep_ignores_returned_and_current_loans(
    db_session: Session, make_member, make_book, notifier, now
):
    late = borrow_book(
        db_session, make_member().id, make_book().id, notifier, now - timedelta(days=10)
    )
    return_borrowing(db_session, late.id, now=now - timedelta(days=1))
    borrow_book(db_session, make_member().id, make_book().id, notifier, now)

    stats = fines.run_fine_sweep(db_session, notifier, now)

    assert stats.processed == 0
    assert db_session.query(Fine).count() == 0


def test_sweep_uses_configured_rate(db_session: Session, overdue_loan, notifier, now):
    update_library_config(db_session, {"fine_rate": 1.25})
    fines.run_fine_sweep(db_session, notifier, now)

    assert db_session.query(Fine).one().amount == 3.75


def test_paid_fine_is_not_updated_and_new_one_accrues(
    db_session: Session, overdue_loan, notifier, now
):
    fines.run_fine_sweep(db_session, notifier, now)
    first = db_session.query(Fine).one()
    fines.mark_fine_paid(db_session, first.id, notifier, now)

    fines.run_fine_sweep(db_session, notifier, now + timedelta(days=1))

    rows = db_session.query(Fine).order_by(Fine.id).all()
    assert [(f.status, f.amount) for f in rows] == [
        (FineStatus.PAID, 1.5),
        (FineStatus.PENDING, 2.0),
    ]


def test_waive_fine(db_session: Session, overdue_loan, notifier, now):
    fines.run_fine_sweep(db_session, notifier, now)
    fine = db_session.query(Fine).one()

    waived = fines.waive_fine(db_session, fine.id, waived_by=3, notes="First offence", now=now)

    assert waived.status == FineStatus.WAIVED
    assert waived.waived_by == 3
    assert waived.notes == "First offence"
    assert fines.outstanding_balance(db_session, overdue_loan.member_id) == 0.0
    with pytest.raises(InvalidFineTransitionError):
        fines.waive_fine(db_session, fine.id)
    with pytest.raises(InvalidFineTransitionError):
        fines.mark_fine_paid(db_session, fine.id, notifier)


def test_mark_fine_paid_is_idempotent(db_session: Session, overdue_loan, notifier, now):
    fines.run_fine_sweep(db_session, notifier, now)
    fine = db_session.query(Fine).one()
    notifier.drain()

    fines.mark_fine_paid(db_session, fine.id, notifier, now)
    again = fines.mark_fine_paid(db_session, fine.id, notifier, now + timedelta(hours=1))

    assert again.status == FineStatus.PAID
    assert again.paid_date == now
    assert [i.kind for i in notifier.drain()] == ["payment_received"]
    with pytest.raises(InvalidFineTransitionError):
        fines.waive_fine(db_session, fine.id)


def test_list_fines_and_balance(db_session: Session, overdue_loan, notifier, now):
    fines.run_fine_sweep(db_session, notifier, now)
    member_id = overdue_loan.member_id

    assert len(fines.list_fines(db_session, member_id)) == 1
    assert fines.list_fines(db_session, member_id, FineStatus.PAID) == []
    assert fines.outstanding_balance(db_session, member_id) == 1.5


def test_get_fine_unknown(db_session: Session):
    with pytest.raises(FineNotFoundError):
        fines.get_fine(db_session, 12345)


@pytest.mark.parametrize(
    "failure",
    [
        OperationalError("UPDATE fines", {}, Exception("database is locked")),
        MemberNotFoundError(42),
    ],
)
def test_sweep_counts_failures_and_continues(
    db_session: Session, make_member, make_book, notifier, now, monkeypatch, failure
):
    loans = [
        borrow_book(
            db_session, make_member().id, make_book().id, notifier, now - timedelta(days=10)
        )
        for _ in range(2)
    ]
    notifier.drain()
    original = fines.assess_borrowing

    def flaky(db, borrowing: Borrowing, *args):
        if borrowing.id == loans[0].id:
            raise failure
        return original(db, borrowing, *args)

    monkeypatch.setattr(fines, "assess_borrowing", flaky)

    stats = fines.run_fine_sweep(db_session, notifier, now)

    assert (stats.processed, stats.fines_created, stats.errors) == (2, 1, 1)
    assert db_session.query(Fine).one().borrowing_id == loans[1].id
    assert {i.borrowing_id for i in notifier.drain()} == {loans[1].id}
