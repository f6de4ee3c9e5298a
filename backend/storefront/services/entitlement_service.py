import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.models.entitlement import Entitlement
from storefront.models.purchase import Purchase
from storefront.services.money import PLAN_LABELS, SUBSCRIPTION_PLANS
from storefront.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Higher rank supersedes lower; used to ignore a late replay of an older purchase
PLAN_RANK = {"one_time": 0, "monthly": 1, "annual": 1, "lifetime": 2}


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = GateDecision(True)


def get_entitlement(db: Session, guild_id: str, user_id: str, product_id: int) -> Optional[Entitlement]:
    return db.query(Entitlement).filter(
        Entitlement.guild_id == guild_id,
        Entitlement.user_id == user_id,
        Entitlement.product_id == product_id,
    ).first()


def evaluate_purchase_gate(
    db: Session,
    guild_id: str,
    user_id: str,
    product_id: int,
    plan_key: str,
    is_upgrade: bool = False,
) -> GateDecision:
    """Decide whether the user may start a checkout for this product and plan.

    Lifetime ownership blocks everything. An upgrade is only the one_time ->
    monthly/annual path without an existing subscription. Owning anything
    blocks a fresh purchase.
    """
    entitlement = get_entitlement(db, guild_id, user_id, product_id)
    if entitlement is None or entitlement.status != "active":
        return ALLOW

    owned = entitlement.plan_key
    owned_label = PLAN_LABELS.get(owned, owned)
    if owned == "lifetime":
        return GateDecision(False, "You already own lifetime access to this product.")

    if is_upgrade:
        if owned != "one_time":
            return GateDecision(False, f"Upgrades are only available from a one-time purchase. You own the {owned_label} plan.")
        if plan_key not in SUBSCRIPTION_PLANS:
            return GateDecision(False, "You can only upgrade to the Monthly or Annual plan.")
        if entitlement.stripe_subscription_id:
            return GateDecision(False, "You already have a subscription for this product.")
        return ALLOW

    return GateDecision(
        False,
        f"You already own this product ({owned_label}). Use `/upgrade` to move to a Monthly or Annual plan.",
    )


def upsert_on_paid(
    db: Session,
    guild_id: str,
    user_id: str,
    product_id: int,
    plan_key: str,
    subscription_id: Optional[str] = None,
    reference_code: Optional[str] = None,
    source_purchase_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Mark the (guild, user, product) entitlement active. Safe to repeat."""
    now = now or utcnow()
    values = {
        "status": "active",
        "plan_key": plan_key,
        "stripe_subscription_id": subscription_id,
        "source_purchase_id": source_purchase_id,
        "revoked_by": None,
        "revoked_at": None,
        "updated_at": now,
    }
    if reference_code is not None:
        values["reference_code"] = reference_code

    entitlement = get_entitlement(db, guild_id, user_id, product_id)
    if entitlement is None:
        try:
            with db.begin_nested():
                entitlement = Entitlement(
                    guild_id=guild_id,
                    user_id=user_id,
                    product_id=product_id,
                    created_at=now,
                    **values,
                )
                db.add(entitlement)
            db.commit()
            logger.info(f"Entitlement created: user {user_id} product {product_id} plan {plan_key}")
            return entitlement
        except IntegrityError:
            entitlement = get_entitlement(db, guild_id, user_id, product_id)

    if (
        entitlement.status == "active"
        and source_purchase_id
        and entitlement.source_purchase_id not in (None, source_purchase_id)
        and PLAN_RANK.get(entitlement.plan_key, 0) > PLAN_RANK.get(plan_key, 0)
    ):
        logger.info(
            f"Ignoring {plan_key} from {source_purchase_id}: entitlement already at "
            f"{entitlement.plan_key} from {entitlement.source_purchase_id}"
        )
        return entitlement

    for key, value in values.items():
        setattr(entitlement, key, value)
    db.commit()
    logger.info(f"Entitlement active: user {user_id} product {product_id} plan {plan_key}")
    return entitlement


def revoke(
    db: Session,
    guild_id: str,
    user_id: str,
    product_id: int,
    actor_id: str,
    source_purchase_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Set an active entitlement to revoked; the row is kept as history.

    With ``source_purchase_id`` only an entitlement granted by that purchase
    is revoked, so refunding an old one-time purchase leaves a later
    subscription upgrade alone.
    """
    query = db.query(Entitlement).filter(
        Entitlement.guild_id == guild_id,
        Entitlement.user_id == user_id,
        Entitlement.product_id == product_id,
        Entitlement.status == "active",
    )
    if source_purchase_id:
        query = query.filter(or_(
            Entitlement.source_purchase_id == source_purchase_id,
            Entitlement.source_purchase_id.is_(None),
        ))
    updated = query.update(
        {"status": "revoked", "revoked_by": actor_id, "revoked_at": now or utcnow(), "updated_at": now or utcnow()},
        synchronize_session=False,
    )
    db.commit()
    if updated:
        logger.info(f"Entitlement revoked: user {user_id} product {product_id} by {actor_id}")
    return bool(updated)


def reinstate_from_other_purchase(
    db: Session,
    guild_id: str,
    user_id: str,
    product_id: int,
    excluding_purchase_id: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Entitlement]:
    """Fall back to another still-paid one-off purchase of the product.

    A one-time buyer who upgraded keeps the one-time entitlement when the
    subscription later ends or is refunded.
    """
    other = db.query(Purchase).filter(
        Purchase.guild_id == guild_id,
        Purchase.user_id == user_id,
        Purchase.product_id == product_id,
        Purchase.kind == "product",
        Purchase.status == "paid",
        Purchase.stripe_subscription_id.is_(None),
        Purchase.purchase_id != (excluding_purchase_id or ""),
    ).order_by(Purchase.paid_at.desc()).first()
    if other is None:
        return None
    logger.info(f"Reinstating {other.plan_key} entitlement for user {user_id} product {product_id} from {other.purchase_id}")
    return upsert_on_paid(
        db, guild_id, user_id, product_id, other.plan_key,
        reference_code=other.reference_code,
        source_purchase_id=other.purchase_id,
        now=now,
    )


def revoke_for_subscription(db: Session, subscription_id: str, actor_id: str, now: Optional[datetime] = None) -> int:
    """Revoke every active entitlement still bound to an ended subscription"""
    if not subscription_id:
        return 0
    updated = db.query(Entitlement).filter(
        Entitlement.stripe_subscription_id == subscription_id,
        Entitlement.status == "active",
    ).update(
        {"status": "revoked", "revoked_by": actor_id, "revoked_at": now or utcnow(), "updated_at": now or utcnow()},
        synchronize_session=False,
    )
    db.commit()
    if updated:
        logger.info(f"Revoked {updated} entitlement(s) for ended subscription {subscription_id}")
    return updated
