import logging
import stripe
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings, SUCCESS_URL, CANCEL_URL
from storefront.core.errors import (
    CheckoutCreationFailed,
    RefundExecutionFailed,
    SubscriptionServiceError,
    WebhookVerificationError,
)
from storefront.models.stripe_event import StripeEvent
from storefront.utils.dates import from_unix

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION
# No client-side retries; the webhook sender owns redelivery
stripe.max_network_retries = 0

# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, None)
    return default if value is None else value


def _error_text(e: Exception) -> str:
    """User-safe text for a Stripe error"""
    message = getattr(e, "user_message", None) or str(e) or e.__class__.__name__
    return message[:200]

# ============================================================================
# CHECKOUT
# ============================================================================

def create_checkout_session(mode: str, line_item: Dict, metadata: Dict[str, str]) -> Dict[str, str]:
    """Create a hosted checkout session.

    Args:
        mode: 'payment' or 'subscription'
        line_item: single price_data line item
        metadata: correlation bag the webhook reads back; values must be strings

    Returns:
        Dict with session id and url

    Raises:
        CheckoutCreationFailed: Stripe rejected the request or is unreachable
    """
    if not settings.STRIPE_SECRET_KEY:
        logger.error("Stripe secret key not configured.")
        raise CheckoutCreationFailed("Payments are not configured right now.")

    params = {
        "mode": mode,
        "line_items": [line_item],
        "success_url": SUCCESS_URL,
        "cancel_url": CANCEL_URL,
        "metadata": metadata,
    }
    if mode == "subscription":
        # Copy metadata onto the subscription so lifecycle events carry it too
        params["subscription_data"] = {"metadata": metadata}
    else:
        params["payment_intent_data"] = {"metadata": metadata}

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error(f"Checkout session creation failed for {metadata.get('purchase_id')}: {e}")
        raise CheckoutCreationFailed("Couldn't create a checkout link. Try again in a minute.")

    session_id = _get_stripe_value(session, "id")
    url = _get_stripe_value(session, "url")
    if not session_id or not url:
        logger.error(f"Checkout session for {metadata.get('purchase_id')} came back without id/url")
        raise CheckoutCreationFailed("Couldn't create a checkout link. Try again in a minute.")
    return {"id": session_id, "url": url}

# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def subscription_state(subscription: Any) -> Dict[str, Any]:
    """Pull status, cancel flag and period end out of a subscription object.

    Newer API versions report the period end on the subscription items
    rather than the subscription itself; both shapes are read.
    """
    period_end = _get_stripe_value(subscription, "current_period_end")
    if not period_end:
        items = _get_stripe_value(_get_stripe_value(subscription, "items"), "data", [])
        if items:
            period_end = _get_stripe_value(items[0], "current_period_end")
    return {
        "subscription_status": _get_stripe_value(subscription, "status"),
        "cancel_at_period_end": bool(_get_stripe_value(subscription, "cancel_at_period_end", False)),
        "current_period_end": from_unix(period_end),
    }


def retrieve_subscription(subscription_id: str):
    try:
        return stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        logger.error(f"Could not retrieve subscription {subscription_id} from Stripe: {e}")
        raise SubscriptionServiceError("Couldn't find that subscription in Stripe. Contact support.")


def retrieve_subscription_state(subscription_id: str) -> Dict[str, Any]:
    return subscription_state(retrieve_subscription(subscription_id))


def schedule_subscription_cancel(subscription_id: str) -> Dict[str, Any]:
    """Cancel at period end; access is kept until the paid period runs out"""
    try:
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error(f"Cancel-at-period-end failed for {subscription_id}: {e}")
        raise SubscriptionServiceError("Stripe refused to cancel your subscription. Contact support.")
    return subscription_state(subscription)

# ============================================================================
# REFUNDS
# ============================================================================

def refund_purchase_payment(
    payment_intent_id: Optional[str],
    subscription_id: Optional[str]
) -> str:
    """Refund a purchase and return the Stripe refund ID.

    A direct payment intent is refunded as-is. A subscription purchase has
    its latest invoice payment refunded and the subscription cancelled
    immediately. Nothing is returned unless Stripe confirmed a refund.

    Raises:
        RefundExecutionFailed: with Stripe's error text
    """
    try:
        if payment_intent_id:
            refund = stripe.Refund.create(payment_intent=payment_intent_id)
            return _get_stripe_value(refund, "id")

        if subscription_id:
            subscription = stripe.Subscription.retrieve(
                subscription_id, expand=["latest_invoice.payment_intent"]
            )
            invoice = _get_stripe_value(subscription, "latest_invoice")
            payment_intent = _get_stripe_value(invoice, "payment_intent")
            if isinstance(payment_intent, str):
                intent_id = payment_intent
            else:
                intent_id = _get_stripe_value(payment_intent, "id")
            if not intent_id:
                raise RefundExecutionFailed("Subscription has no paid invoice to refund.")

            refund = stripe.Refund.create(payment_intent=intent_id)
            refund_id = _get_stripe_value(refund, "id")
            try:
                stripe.Subscription.cancel(subscription_id)
            except stripe.StripeError as e:
                # Money is already back with the customer; the refund stands
                logger.error(f"Refunded {refund_id} but cancelling subscription {subscription_id} failed: {e}")
            return refund_id
    except stripe.StripeError as e:
        logger.error(f"Stripe refund failed (pi={payment_intent_id}, sub={subscription_id}): {e}")
        raise RefundExecutionFailed(_error_text(e))

    raise RefundExecutionFailed("No Stripe payment references on record.")

# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def construct_event(payload: bytes, sig_header: Optional[str]):
    """Verify the webhook signature and parse the event.

    Raises:
        WebhookVerificationError: missing secret, missing header, bad payload or bad signature
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise WebhookVerificationError("Webhook secret not configured")
    if not sig_header:
        raise WebhookVerificationError("Missing stripe-signature header")

    try:
        return stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookVerificationError("Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise WebhookVerificationError("Invalid signature")


def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        return stripe_event

    try:
        with db.begin_nested():
            stripe_event = StripeEvent(
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=False
            )
            db.add(stripe_event)
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event got there first
        stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).one()
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    """Record the outcome; an errored event stays unprocessed so redelivery re-runs it"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.error_message = error_message
        if error_message is None:
            stripe_event.processed = True
            stripe_event.processed_at = datetime.now(timezone.utc)
        db.commit()
