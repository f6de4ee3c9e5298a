"""Self-service subscription cancellation"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from storefront.core.errors import PreconditionFailed
from storefront.models.purchase import Purchase
from storefront.services import notification_service, stripe_service, views
from storefront.services.chat_platform import ChatPlatform
from storefront.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    purchase: Purchase
    outcome: str  # 'scheduled', 'already_scheduled', 'already_canceled'

    @property
    def message(self) -> str:
        if self.outcome == "already_canceled":
            return "Your subscription is already canceled."
        until = self.purchase.current_period_end
        suffix = f" (until {until.strftime('%Y-%m-%d')})" if until else ""
        if self.outcome == "already_scheduled":
            return f"Your subscription is already set to cancel at the end of the billing period{suffix}."
        return f"Subscription canceled. You keep access until the end of your billing period{suffix}."


def find_active_subscription_purchase(db: Session, guild_id: str, user_id: str) -> Optional[Purchase]:
    return db.query(Purchase).filter(
        Purchase.guild_id == guild_id,
        Purchase.user_id == user_id,
        Purchase.stripe_subscription_id.isnot(None),
        Purchase.status == "paid",
        Purchase.subscription_ended_at.is_(None),
    ).order_by(Purchase.paid_at.desc()).first()


def _update_subscription_rows(db: Session, subscription_id: str, values: dict) -> int:
    updated = db.query(Purchase).filter(
        Purchase.stripe_subscription_id == subscription_id,
        Purchase.status == "paid",
    ).update(values, synchronize_session=False)
    db.commit()
    return updated


def cancel_own_subscription(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> CancelResult:
    """Cancel the caller's newest live subscription at period end"""
    now = now or utcnow()
    purchase = find_active_subscription_purchase(db, guild_id, user_id)
    if purchase is None:
        raise PreconditionFailed("You don't have an active subscription purchase on record.")
    subscription_id = purchase.stripe_subscription_id

    state = stripe_service.subscription_state(stripe_service.retrieve_subscription(subscription_id))
    if state["subscription_status"] == "canceled":
        _update_subscription_rows(db, subscription_id, {
            "subscription_status": "canceled",
            "subscription_ended_at": now,
            "subscription_updated_at": now,
        })
        db.refresh(purchase)
        logger.info(f"Subscription {subscription_id} was already canceled in Stripe; marked ended locally")
        return CancelResult(purchase, "already_canceled")

    if state["cancel_at_period_end"]:
        _update_subscription_rows(db, subscription_id, dict(state, subscription_updated_at=now))
        db.refresh(purchase)
        return CancelResult(purchase, "already_scheduled")

    state = stripe_service.schedule_subscription_cancel(subscription_id)
    _update_subscription_rows(db, subscription_id, dict(
        state,
        subscription_canceled_at=now,
        subscription_updated_at=now,
    ))
    db.refresh(purchase)
    logger.info(f"Subscription {subscription_id} set to cancel at period end by user {user_id}")

    notification_service.post_purchase_log(db, platform, guild_id, views.subscription_cancel_requested(purchase))
    return CancelResult(purchase, "scheduled")
