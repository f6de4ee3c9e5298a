"""Refund approval workflow

pending -> rejected
pending -> failed                  (re-validation failed at approval time)
pending -> approved -> executed    (Stripe confirmed the refund)
pending -> approved -> failed      (Stripe refused; purchase stays paid)
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import (
    ChatPlatformError,
    NotAuthorized,
    NotFound,
    PreconditionFailed,
    PurchaseNotRefundable,
    RefundExecutionFailed,
    RefundWindowExpired,
    RequestAlreadyDecided,
)
from storefront.core.logging import refund_logger as logger
from storefront.core.metrics import refund_outcomes_counter
from storefront.core.security import require_admin
from storefront.models.purchase import Purchase
from storefront.models.refund_request import RefundRequest
from storefront.services import entitlement_service, notification_service, stripe_service, views
from storefront.services.chat_platform import ChatPlatform
from storefront.services.money import make_refund_request_id
from storefront.services.transitions import transition
from storefront.utils.dates import as_utc, utcnow


def refund_window() -> timedelta:
    return timedelta(hours=settings.REFUND_WINDOW_HOURS)


def check_refundable(purchase: Purchase, now: datetime) -> None:
    """Raise unless the purchase is paid and inside the refund window"""
    if purchase.status != "paid":
        raise PurchaseNotRefundable(f"Purchase status is `{purchase.status}`.")
    paid_at = as_utc(purchase.paid_at)
    if paid_at is None:
        raise PurchaseNotRefundable("No payment time recorded. Can't refund safely.")
    if now - paid_at > refund_window():
        raise RefundWindowExpired(f"Refund window expired (over {settings.REFUND_WINDOW_HOURS} hours).")


def can_decide(actor) -> bool:
    if settings.REFUND_APPROVER_USER_ID:
        return actor.user_id == settings.REFUND_APPROVER_USER_ID
    return actor.is_admin


def get_purchase(db: Session, guild_id: str, purchase_id: str) -> Optional[Purchase]:
    return db.query(Purchase).filter(
        Purchase.purchase_id == purchase_id,
        Purchase.guild_id == guild_id,
    ).first()


def _rerender(platform: ChatPlatform, request: RefundRequest, purchase: Optional[Purchase]) -> None:
    notification_service.rerender_message(
        platform, request.message_channel_id, request.message_id, views.refund_request(request, purchase)
    )


def request_refund(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    actor,
    purchase_id: str,
    now: Optional[datetime] = None,
) -> RefundRequest:
    """File a pending refund request and post the approval prompt to the purchase log"""
    require_admin(actor)
    now = now or utcnow()
    purchase_id = (purchase_id or "").strip()

    purchase = get_purchase(db, guild_id, purchase_id)
    if purchase is None:
        raise NotFound("Purchase not found.")
    check_refundable(purchase, now)

    request = RefundRequest(
        request_id=make_refund_request_id(),
        guild_id=guild_id,
        purchase_id=purchase.purchase_id,
        requested_by=actor.user_id,
        status="pending",
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(request)
        db.commit()
    except IntegrityError:
        open_request = db.query(RefundRequest).filter(
            RefundRequest.purchase_id == purchase.purchase_id,
            RefundRequest.status.in_(("pending", "approved")),
        ).first()
        existing = f" `{open_request.request_id}`" if open_request else ""
        raise PreconditionFailed(f"A refund request{existing} is already open for this purchase.")

    try:
        channel_id = notification_service.ensure_purchase_log_channel(db, platform, guild_id)
        message_id = platform.send_message(channel_id, views.refund_request(request, purchase))
    except ChatPlatformError:
        # Nobody could ever act on a prompt that was never posted
        transition(db, request, "failed", failed_at=now, failure_reason="Could not post approval prompt")
        db.commit()
        refund_outcomes_counter.labels(outcome="failed").inc()
        raise

    request.message_channel_id = channel_id
    request.message_id = message_id
    db.commit()

    refund_outcomes_counter.labels(outcome="requested").inc()
    logger.info(f"Refund request {request.request_id} for {purchase.purchase_id} filed by {actor.user_id}")
    return request


def _fail(db: Session, request: RefundRequest, reason: str, now: datetime, **values) -> bool:
    won = transition(db, request, "failed", failed_at=now, failure_reason=reason[:200], **values)
    db.commit()
    if won:
        refund_outcomes_counter.labels(outcome="failed").inc()
        logger.warning(f"Refund request {request.request_id} failed: {reason}")
    return won


def decide_refund(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    request_id: str,
    actor,
    approve: bool,
    now: Optional[datetime] = None,
) -> RefundRequest:
    """Approve or reject a pending request. A request is decided exactly once."""
    if not can_decide(actor):
        raise NotAuthorized("You are not allowed to approve/reject refunds.")
    now = now or utcnow()

    request = db.query(RefundRequest).filter(
        RefundRequest.request_id == request_id,
        RefundRequest.guild_id == guild_id,
    ).first()
    if request is None:
        raise NotFound("Refund request not found.")
    if request.status != "pending":
        raise RequestAlreadyDecided(f"Request already `{request.status}`.")

    purchase = get_purchase(db, guild_id, request.purchase_id)

    if not approve:
        if not transition(db, request, "rejected", rejected_by=actor.user_id, rejected_at=now):
            db.rollback()
            raise RequestAlreadyDecided(f"Request already `{request.status}`.")
        db.commit()
        refund_outcomes_counter.labels(outcome="rejected").inc()
        logger.info(f"Refund request {request_id} rejected by {actor.user_id}")
        _rerender(platform, request, purchase)
        return request

    # Time has passed since the request was filed; check again
    failure = None
    if purchase is None:
        failure = "Purchase not found"
    else:
        try:
            check_refundable(purchase, now)
        except RefundWindowExpired:
            failure = "Refund window expired"
        except PurchaseNotRefundable as e:
            failure = e.message
    if failure:
        if not _fail(db, request, failure, now, approved_by=actor.user_id):
            raise RequestAlreadyDecided(f"Request already `{request.status}`.")
        _rerender(platform, request, purchase)
        return request

    if not transition(db, request, "approved", approved_by=actor.user_id, approved_at=now):
        db.rollback()
        raise RequestAlreadyDecided(f"Request already `{request.status}`.")
    db.commit()
    logger.info(f"Refund request {request_id} approved by {actor.user_id}; executing")

    try:
        refund_id = stripe_service.refund_purchase_payment(
            purchase.stripe_payment_intent_id, purchase.stripe_subscription_id
        )
    except RefundExecutionFailed as e:
        _fail(db, request, e.message, now)
        _rerender(platform, request, purchase)
        return request

    purchase_values = {"refunded_at": now, "stripe_refund_id": refund_id}
    if purchase.stripe_subscription_id:
        # The refund path cancels the subscription immediately
        purchase_values.update(subscription_status="canceled", subscription_ended_at=now, subscription_updated_at=now)
    if not transition(db, purchase, "refunded", **purchase_values):
        logger.error(f"Purchase {purchase.purchase_id} changed while refund {refund_id} executed")
    transition(db, request, "executed", executed_at=now, stripe_refund_id=refund_id)
    db.commit()
    refund_outcomes_counter.labels(outcome="executed").inc()
    logger.info(f"Refund {refund_id} executed for purchase {purchase.purchase_id} (request {request_id})")

    _unwind_access(db, platform, purchase, request_id, now)
    _rerender(platform, request, purchase)
    return request


def _unwind_access(db: Session, platform: ChatPlatform, purchase: Purchase, request_id: str, now: datetime) -> None:
    if purchase.kind != "product":
        return
    still_entitled = False
    if purchase.product_id:
        entitlement_service.revoke(
            db, purchase.guild_id, purchase.user_id, purchase.product_id,
            actor_id=f"refund:{request_id}",
            source_purchase_id=purchase.purchase_id,
            now=now,
        )
        entitlement_service.reinstate_from_other_purchase(
            db, purchase.guild_id, purchase.user_id, purchase.product_id, purchase.purchase_id, now=now
        )
        # Another purchase (e.g. a later upgrade) may still back the role
        entitlement = entitlement_service.get_entitlement(db, purchase.guild_id, purchase.user_id, purchase.product_id)
        still_entitled = entitlement is not None and entitlement.status == "active"
    if purchase.role_id and not still_entitled:
        notification_service.remove_role(
            platform, purchase.guild_id, purchase.user_id, purchase.role_id,
            reason=f"Refund approved ({request_id})",
        )
