import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookflix import schemas
from bookflix.models import Member
from exceptions.exceptions import DatabaseError, DuplicateMemberError, MemberNotFoundError

logger = logging.getLogger(__name__)


def get_member(db: Session, member_id: int) -> Member:
    member = db.get(Member, member_id)
    if member is None or not member.is_active:
        raise MemberNotFoundError(member_id)
    return member


def create_member(db: Session, member: schemas.MemberCreate) -> Member:
    if db.query(Member).filter(Member.email == member.email).first():
        raise DuplicateMemberError(member.email)
    try:
        db_member = Member(**member.model_dump())
        db.add(db_member)
        db.commit()
        db.refresh(db_member)
        return db_member
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create member", str(e))


def update_subscription(
    db: Session, member_id: int, update: schemas.SubscriptionUpdate
) -> Member:
    """Record the subscription facts reported by identity/billing.

    Tier policy is resolved from these on every action, so the change applies
    to the member's next borrow, renewal or reservation pickup.
    """
    member = get_member(db, member_id)
    try:
        member.subscription_type = update.subscription_type
        member.subscription_status = update.subscription_status
        db.commit()
        db.refresh(member)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update subscription", str(e))
    logger.info(
        f"Member {member_id} subscription is now "
        f"{member.subscription_type.value}/{member.subscription_status.value}"
    )
    return member
