from dataclasses import dataclass

from sqlalchemy.orm import Session

from bookflix.config import get_library_config
from bookflix.models import Member, SubscriptionStatus, SubscriptionType

PREMIUM_PLANS = (SubscriptionType.MONTHLY, SubscriptionType.YEARLY)


@dataclass(frozen=True)
class TierPolicy:
    name: str
    max_concurrent_loans: int
    loan_days: int


def resolve_tier_policy(subscription_type, subscription_status, config) -> TierPolicy:
    """Map a subscription to its borrowing rules.

    Only an active monthly or yearly plan is premium; cancelled or expired
    plans fall back to the general tier.
    """
    if (
        subscription_type in PREMIUM_PLANS
        and subscription_status == SubscriptionStatus.ACTIVE
    ):
        return TierPolicy(
            name="premium",
            max_concurrent_loans=config.premium_max_loans,
            loan_days=config.premium_loan_days,
        )
    return TierPolicy(
        name="general",
        max_concurrent_loans=config.general_max_loans,
        loan_days=config.standard_loan_days,
    )


def policy_for_member(db: Session, member: Member) -> TierPolicy:
    return resolve_tier_policy(
        member.subscription_type, member.subscription_status, get_library_config(db)
    )
