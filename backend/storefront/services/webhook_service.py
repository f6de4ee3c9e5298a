"""Stripe webhook reconciliation

Deliveries are at-least-once and may arrive out of order. Every mutation
below is a guarded transition or an idempotent upsert, so re-running a
delivery converges on the same rows. Side effects that must not repeat
(log post, buyer DM) are keyed on the first ``created -> paid`` transition
or on a persisted flag.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.logging import webhook_logger as logger
from storefront.core.metrics import webhook_events_counter, webhook_rejections_counter
from storefront.core.errors import WebhookVerificationError
from storefront.models.purchase import Purchase
from storefront.services import entitlement_service, notification_service, stripe_service, views
from storefront.services.chat_platform import ChatPlatform
from storefront.services.stripe_service import _get_stripe_value
from storefront.services.transitions import transition
from storefront.utils.dates import utcnow

REQUIRED_METADATA = ("purchase_id", "guild_id", "user_id", "type")

SUBSCRIPTION_ENDED_ACTOR = "stripe:subscription_deleted"

# A checkout for one of these grants nothing; the deleted event may have come first
ENDED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})


def _as_dict(obj: Any) -> Dict:
    """Plain dict copy of a Stripe object for JSON storage"""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ref_id(value: Any) -> Optional[str]:
    """Expanded objects carry an id; unexpanded references are the id"""
    if value is None or isinstance(value, str):
        return value
    return _get_stripe_value(value, "id")


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

# ============================================================================
# CHECKOUT COMPLETED
# ============================================================================

def _find_purchase(db: Session, purchase_id: str, session_id: Optional[str]) -> Optional[Purchase]:
    purchase = None
    if session_id:
        purchase = db.query(Purchase).filter(
            Purchase.purchase_id == purchase_id,
            Purchase.stripe_session_id == session_id,
        ).first()
        if purchase is None:
            # Created under a different purchase id; the session id is the anchor
            purchase = db.query(Purchase).filter(Purchase.stripe_session_id == session_id).first()
    if purchase is None:
        purchase = db.query(Purchase).filter(Purchase.purchase_id == purchase_id).first()
        if purchase is not None and purchase.stripe_session_id is None and session_id:
            purchase.stripe_session_id = session_id
            db.commit()
    return purchase


def _locate_or_insert(db: Session, meta: Dict[str, str], session_id: Optional[str], now: datetime) -> Purchase:
    """Find the local purchase, or rebuild it from metadata so the payment isn't lost"""
    purchase = _find_purchase(db, meta["purchase_id"], session_id)
    if purchase is not None:
        return purchase

    logger.warning(f"No local record for purchase {meta['purchase_id']} (session {session_id}); rebuilding from metadata")
    purchase = Purchase(
        purchase_id=meta["purchase_id"],
        stripe_session_id=session_id,
        guild_id=meta["guild_id"],
        user_id=meta["user_id"],
        kind=meta["type"],
        product_id=_int_or_none(meta.get("product_id")),
        product_name=meta.get("product_name"),
        plan_key=meta.get("plan_key"),
        role_id=meta.get("role_id"),
        amount_minor=_int_or_none(meta.get("amount_minor")) or 0,
        currency=meta.get("currency") or settings.CURRENCY,
        reference_code=meta.get("reference_code"),
        status="created",
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(purchase)
        db.commit()
        return purchase
    except IntegrityError:
        # A concurrent delivery inserted it first
        purchase = _find_purchase(db, meta["purchase_id"], session_id)
        if purchase is None:
            raise
        return purchase


def _claim_buyer_notification(db: Session, purchase: Purchase, now: datetime) -> bool:
    """Set buyer_notified_at once; only the caller that sets it sends the DM"""
    claimed = db.query(Purchase).filter(
        Purchase.id == purchase.id,
        Purchase.buyer_notified_at.is_(None),
    ).update({"buyer_notified_at": now}, synchronize_session=False)
    db.commit()
    return claimed == 1


def handle_checkout_completed(session: Any, db: Session, platform: ChatPlatform, now: datetime) -> str:
    meta = dict(_get_stripe_value(session, "metadata", {}) or {})
    session_id = _get_stripe_value(session, "id")

    missing = [k for k in REQUIRED_METADATA if not meta.get(k)]
    if missing:
        logger.warning(f"Checkout session {session_id} missing metadata {missing}; acknowledging without action")
        return "ignored"
    if meta["guild_id"] != settings.ALLOWED_GUILD_ID:
        logger.warning(f"Checkout session {session_id} for foreign guild {meta['guild_id']}; acknowledging without action")
        return "ignored"

    payment_intent_id = _ref_id(_get_stripe_value(session, "payment_intent"))
    subscription_id = _ref_id(_get_stripe_value(session, "subscription"))

    evidence = {
        "stripe_payment_intent_id": payment_intent_id,
        "stripe_subscription_id": subscription_id,
    }
    if subscription_id:
        # Record what the subscription looks like now, not just "paid"
        evidence.update(stripe_service.retrieve_subscription_state(subscription_id))
        evidence["subscription_updated_at"] = now

    purchase = _locate_or_insert(db, meta, session_id, now)
    if purchase.status == "refunded":
        logger.info(f"Purchase {purchase.purchase_id} is refunded; not regressing to paid")
        return "ignored"

    # Grant before the transition so a failed delivery is retried from 'created'
    if evidence.get("subscription_status") in ENDED_SUBSCRIPTION_STATUSES:
        logger.warning(
            f"Subscription {subscription_id} for purchase {purchase.purchase_id} already ended "
            f"({evidence['subscription_status']}); recording payment without granting access"
        )
    else:
        _grant_access(db, platform, purchase, subscription_id, now)

    first_transition = False
    if purchase.status == "created":
        first_transition = transition(db, purchase, "paid", paid_at=now, **evidence)
        db.commit()

    if not first_transition:
        if purchase.status != "paid":
            logger.info(f"Purchase {purchase.purchase_id} is {purchase.status}; not regressing to paid")
            return "ignored"
        # Redelivery: refresh evidence, keep the original paid_at
        db.query(Purchase).filter(
            Purchase.id == purchase.id,
            Purchase.status == "paid",
        ).update(evidence, synchronize_session=False)
        db.commit()
        db.refresh(purchase)

    logger.info(
        f"Purchase {purchase.purchase_id} paid "
        f"({'first delivery' if first_transition else 'redelivery'}, session {session_id})"
    )
    _announce(db, platform, purchase, first_transition, now)
    return "processed"


def _grant_access(db: Session, platform: ChatPlatform, purchase: Purchase, subscription_id: Optional[str], now: datetime) -> None:
    """Role grant and entitlement upsert; both are idempotent and run on every delivery"""
    if purchase.kind != "product":
        return
    if purchase.role_id:
        notification_service.grant_role(
            platform, purchase.guild_id, purchase.user_id, purchase.role_id,
            reason=f"Stripe paid: {purchase.purchase_id}",
        )
    if purchase.product_id and purchase.plan_key:
        entitlement_service.upsert_on_paid(
            db,
            purchase.guild_id,
            purchase.user_id,
            purchase.product_id,
            purchase.plan_key,
            subscription_id=subscription_id,
            reference_code=purchase.reference_code,
            source_purchase_id=purchase.purchase_id,
            now=now,
        )


def _announce(db: Session, platform: ChatPlatform, purchase: Purchase, first_transition: bool, now: datetime) -> None:
    if first_transition:
        notification_service.post_purchase_log(db, platform, purchase.guild_id, views.purchase_completed(purchase))
        if purchase.kind == "product":
            notification_service.send_thanks(db, platform, purchase.guild_id, purchase.user_id, purchase.purchase_id)

    if purchase.buyer_notified_at is None and _claim_buyer_notification(db, purchase, now):
        notification_service.dm_user(platform, purchase.user_id, views.buyer_receipt(purchase))

# ============================================================================
# SUBSCRIPTION LIFECYCLE
# ============================================================================

def handle_subscription_updated(subscription: Any, db: Session, platform: ChatPlatform, now: datetime) -> str:
    subscription_id = _get_stripe_value(subscription, "id")
    values = stripe_service.subscription_state(subscription)
    values["subscription_updated_at"] = now
    updated = db.query(Purchase).filter(
        Purchase.stripe_subscription_id == subscription_id,
        Purchase.status == "paid",
    ).update(values, synchronize_session=False)
    db.commit()
    logger.info(
        f"Subscription {subscription_id} updated: status={values['subscription_status']}, "
        f"cancel_at_period_end={values['cancel_at_period_end']} ({updated} purchase(s))"
    )
    return "processed"


def handle_subscription_deleted(subscription: Any, db: Session, platform: ChatPlatform, now: datetime) -> str:
    """The only path that reclaims access when a recurring payment lapses"""
    subscription_id = _get_stripe_value(subscription, "id")
    latest = db.query(Purchase).filter(
        Purchase.stripe_subscription_id == subscription_id,
        Purchase.status == "paid",
        Purchase.kind == "product",
    ).order_by(Purchase.paid_at.desc()).first()
    already_ended = latest is not None and latest.subscription_ended_at is not None

    ended = db.query(Purchase).filter(
        Purchase.stripe_subscription_id == subscription_id,
        Purchase.status == "paid",
    ).update(
        {
            "subscription_status": "canceled",
            "subscription_ended_at": now,
            "subscription_updated_at": now,
        },
        synchronize_session=False,
    )
    db.commit()
    entitlement_service.revoke_for_subscription(db, subscription_id, SUBSCRIPTION_ENDED_ACTOR, now=now)
    logger.info(f"Subscription {subscription_id} ended ({ended} purchase(s))")

    if latest is None:
        return "processed"
    db.refresh(latest)

    reinstated = None
    if latest.product_id:
        reinstated = entitlement_service.reinstate_from_other_purchase(
            db, latest.guild_id, latest.user_id, latest.product_id, latest.purchase_id, now=now
        )
    if latest.role_id and reinstated is None:
        notification_service.remove_role(
            platform, latest.guild_id, latest.user_id, latest.role_id, reason="Subscription ended"
        )
    if not already_ended:
        notification_service.post_purchase_log(db, platform, latest.guild_id, views.subscription_ended(latest))
    return "processed"

# ============================================================================
# ENTRY POINT
# ============================================================================

EVENT_HANDLERS: Dict[str, Callable[[Any, Session, ChatPlatform, datetime], str]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def process_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    platform: ChatPlatform,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Verify, log and dispatch one webhook delivery.

    Raises:
        WebhookVerificationError: signature or payload invalid; nothing was written
        Exception: handler failure after verification; the event keeps the
            error text and stays unprocessed so Stripe's retry re-runs it
    """
    try:
        event = stripe_service.construct_event(payload, sig_header)
    except WebhookVerificationError as e:
        webhook_rejections_counter.labels(reason=e.message).inc()
        raise

    event_id = event["id"]
    event_type = event["type"]
    stripe_event = stripe_service.log_stripe_event(event_id, event_type, _as_dict(event), db)
    if stripe_event.processed:
        logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, outcome="duplicate").inc()
        return {"received": True, "status": "already_processed"}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        stripe_service.mark_stripe_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, outcome="unhandled").inc()
        return {"received": True, "status": "ignored"}

    try:
        outcome = handler(event["data"]["object"], db, platform, now or utcnow())
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook event {event_id} ({event_type}): {e}", exc_info=True)
        stripe_service.mark_stripe_event_processed(event_id, db, error_message=str(e)[:1000] or e.__class__.__name__)
        webhook_events_counter.labels(event_type=event_type, outcome="error").inc()
        raise

    stripe_service.mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()
    logger.info(f"Successfully processed webhook event {event_id} of type {event_type}: {outcome}")
    return {"received": True, "status": outcome}
