"""Checkout session creation for products and donations"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import (
    AmountTooSmall,
    InvalidPlan,
    NotAuthorized,
    PlanUnavailable,
    PreconditionFailed,
    PurchaseDenied,
    TicketNotOpen,
)
from storefront.core.metrics import checkout_sessions_counter
from storefront.models.product import Product
from storefront.models.purchase import Purchase
from storefront.services import stripe_service
from storefront.services.catalog_service import get_product
from storefront.services.entitlement_service import evaluate_purchase_gate, get_entitlement
from storefront.services.money import (
    PLAN_INTERVAL,
    PLAN_KEYS,
    PLAN_LABELS,
    format_amount,
    is_subscription_plan,
    make_purchase_id,
    plan_amount,
)
from storefront.services.ticket_service import get_open_ticket_for_channel

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    purchase_id: str
    url: str
    session_id: str
    amount_minor: int


def _metadata(**values) -> Dict[str, str]:
    """Stripe metadata values are strings; unset keys are left out"""
    return {k: str(v) for k, v in values.items() if v is not None}


def _product_line_item(product: Product, plan_key: str, amount_minor: int) -> Dict:
    price_data = {
        "currency": settings.CURRENCY,
        "unit_amount": amount_minor,
        "product_data": {
            "name": f"{settings.BRAND_NAME} • {product.name} ({PLAN_LABELS[plan_key]})",
        },
    }
    if product.description:
        price_data["product_data"]["description"] = product.description[:500]
    if is_subscription_plan(plan_key):
        price_data["recurring"] = dict(PLAN_INTERVAL[plan_key])
    return {"price_data": price_data, "quantity": 1}


def _donation_line_item(amount_minor: int) -> Dict:
    return {
        "price_data": {
            "currency": settings.CURRENCY,
            "unit_amount": amount_minor,
            "product_data": {
                "name": f"{settings.BRAND_NAME} • Donation",
                "description": f"Thank you for supporting {settings.BRAND_NAME}.",
            },
        },
        "quantity": 1,
    }


def start_product_checkout(
    db: Session,
    guild_id: str,
    user_id: str,
    product: Product,
    plan_key: str,
    reference_code: Optional[str] = None,
    is_upgrade: bool = False,
) -> CheckoutResult:
    """Create a checkout session and persist the 'created' purchase behind it.

    The ownership gate is evaluated here, at session creation, not only when
    the plan buttons were rendered.
    """
    if plan_key not in PLAN_KEYS:
        raise InvalidPlan("Invalid plan.")
    if product.archived_at is not None:
        raise PlanUnavailable("That product is no longer for sale.")

    decision = evaluate_purchase_gate(db, guild_id, user_id, product.id, plan_key, is_upgrade)
    if not decision.allowed:
        logger.info(f"Checkout denied for user {user_id} product {product.id} plan {plan_key}: {decision.reason}")
        raise PurchaseDenied(decision.reason)

    amount_minor = plan_amount(product.prices, plan_key)
    if amount_minor is None:
        raise PlanUnavailable("That plan is not available.")

    purchase_id = make_purchase_id()
    mode = "subscription" if is_subscription_plan(plan_key) else "payment"
    metadata = _metadata(
        purchase_id=purchase_id,
        guild_id=guild_id,
        user_id=user_id,
        type="product",
        product_id=product.id,
        product_name=product.name,
        plan_key=plan_key,
        role_id=product.role_id,
        amount_minor=amount_minor,
        currency=settings.CURRENCY,
        reference_code=reference_code,
        upgrade="true" if is_upgrade else "false",
    )
    session = stripe_service.create_checkout_session(
        mode, _product_line_item(product, plan_key, amount_minor), metadata
    )

    purchase = Purchase(
        purchase_id=purchase_id,
        stripe_session_id=session["id"],
        guild_id=guild_id,
        user_id=user_id,
        kind="product",
        product_id=product.id,
        product_name=product.name,
        plan_key=plan_key,
        role_id=product.role_id,
        amount_minor=amount_minor,
        currency=settings.CURRENCY,
        reference_code=reference_code,
        status="created",
    )
    db.add(purchase)
    db.commit()

    checkout_sessions_counter.labels(kind="upgrade" if is_upgrade else "product", mode=mode).inc()
    logger.info(
        f"Checkout {session['id']} created: purchase {purchase_id}, user {user_id}, "
        f"product {product.id}, plan {plan_key}, {format_amount(amount_minor)}"
    )
    return CheckoutResult(purchase_id, session["url"], session["id"], amount_minor)


def start_donation_checkout(db: Session, guild_id: str, user_id: str, amount_minor: int) -> CheckoutResult:
    if amount_minor < settings.DONATION_MINIMUM_MINOR:
        raise AmountTooSmall(f"Minimum donation is {format_amount(settings.DONATION_MINIMUM_MINOR)}")

    purchase_id = make_purchase_id()
    metadata = _metadata(
        purchase_id=purchase_id,
        guild_id=guild_id,
        user_id=user_id,
        type="donation",
        amount_minor=amount_minor,
        currency=settings.CURRENCY,
    )
    session = stripe_service.create_checkout_session("payment", _donation_line_item(amount_minor), metadata)

    db.add(Purchase(
        purchase_id=purchase_id,
        stripe_session_id=session["id"],
        guild_id=guild_id,
        user_id=user_id,
        kind="donation",
        amount_minor=amount_minor,
        currency=settings.CURRENCY,
        status="created",
    ))
    db.commit()

    checkout_sessions_counter.labels(kind="donation", mode="payment").inc()
    logger.info(f"Donation checkout {session['id']} created: purchase {purchase_id}, user {user_id}, {format_amount(amount_minor)}")
    return CheckoutResult(purchase_id, session["url"], session["id"], amount_minor)


def start_ticket_checkout(db: Session, guild_id: str, channel_id: str, actor, product_id, plan_key: str) -> CheckoutResult:
    """Plan button pressed inside a purchase ticket"""
    if plan_key not in PLAN_KEYS:
        raise InvalidPlan("Invalid plan.")
    ticket = get_open_ticket_for_channel(db, guild_id, channel_id)
    if not ticket or ticket.kind != "purchase":
        raise TicketNotOpen("This isn't a valid purchase ticket channel.")
    if actor.user_id != ticket.user_id:
        raise NotAuthorized("Only the ticket owner can generate checkout links.")

    product = get_product(db, guild_id, product_id)
    return start_product_checkout(
        db, guild_id, actor.user_id, product, plan_key,
        reference_code=ticket.reference_code,
    )


def start_upgrade_checkout(db: Session, guild_id: str, user_id: str, product_id, plan_key: str) -> CheckoutResult:
    """One-time owner moving to a monthly or annual plan; full plan price, no proration"""
    product = get_product(db, guild_id, product_id)
    entitlement = get_entitlement(db, guild_id, user_id, product.id)
    if entitlement is None or entitlement.status != "active":
        raise PreconditionFailed("You don't own this product yet. Pick it from the purchase panel instead.")
    return start_product_checkout(
        db, guild_id, user_id, product, plan_key,
        reference_code=entitlement.reference_code,
        is_upgrade=True,
    )
