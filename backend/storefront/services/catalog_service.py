"""Product catalog and the purchase panel that advertises it"""
import logging
from typing import List, Mapping, Optional, Union

from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import InvalidAmount, InvalidInput, InvalidPlan, NotFound
from storefront.models.product import Product
from storefront.services import views
from storefront.services.chat_platform import ChatPlatform
from storefront.services.config_service import get_config, upsert_config
from storefront.services.money import (
    DISABLE_WORDS,
    PLAN_KEYS,
    parse_amount,
    parse_price_map,
)
from storefront.utils.dates import utcnow

logger = logging.getLogger(__name__)


def parse_product_id(value: Union[str, int, None]) -> int:
    try:
        product_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInput("Invalid product ID.")
    if product_id <= 0:
        raise InvalidInput("Invalid product ID.")
    return product_id


def add_product(
    db: Session,
    guild_id: str,
    name: str,
    description: str,
    role_id: str,
    amounts: Mapping[str, Optional[str]],
) -> Product:
    """Create a product from user-entered plan amounts ("9.99")"""
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Product name is required.")
    if not role_id:
        raise InvalidInput("A role to grant is required.")

    try:
        prices = parse_price_map(amounts)
    except ValueError as e:
        raise InvalidAmount(str(e))
    if not prices:
        raise InvalidInput("You must set at least one plan amount.")

    product = Product(
        guild_id=guild_id,
        name=name[:100],
        description=(description or "").strip(),
        role_id=str(role_id),
        prices=prices,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    logger.info(f"Product {product.id} ({product.name}) added in guild {guild_id} with plans {sorted(prices)}")
    return product


def get_product(db: Session, guild_id: str, product_id, include_archived: bool = False) -> Product:
    query = db.query(Product).filter(
        Product.id == parse_product_id(product_id),
        Product.guild_id == guild_id,
    )
    if not include_archived:
        query = query.filter(Product.archived_at.is_(None))
    product = query.first()
    if not product:
        raise NotFound("Product not found.")
    return product


def set_price(db: Session, guild_id: str, product_id, plan_key: str, amount_text: str) -> Product:
    """Set or disable (amount 'none'/'off'/'disable') one plan on a product"""
    if plan_key not in PLAN_KEYS:
        raise InvalidPlan("Invalid plan.")
    product = get_product(db, guild_id, product_id)

    # Assign a new dict so the JSON column change is detected
    prices = dict(product.prices or {})
    if (amount_text or "").strip().lower() in DISABLE_WORDS:
        prices.pop(plan_key, None)
    else:
        minor = parse_amount(amount_text)
        if minor is None:
            raise InvalidAmount("Invalid amount format. Example: 9.99")
        prices[plan_key] = minor

    product.prices = prices
    product.updated_at = utcnow()
    db.commit()
    db.refresh(product)
    logger.info(f"Product {product.id} plan {plan_key} set to {prices.get(plan_key)}")
    return product


def list_products(db: Session, guild_id: str, include_archived: bool = False, limit: Optional[int] = None) -> List[Product]:
    """Newest first"""
    query = db.query(Product).filter(Product.guild_id == guild_id)
    if not include_archived:
        query = query.filter(Product.archived_at.is_(None))
    query = query.order_by(Product.created_at.desc(), Product.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def archive_product(db: Session, guild_id: str, product_id) -> Product:
    """Hide a product from the panel and checkout; purchases and entitlements keep pointing at it"""
    product = get_product(db, guild_id, product_id)
    product.archived_at = utcnow()
    db.commit()
    db.refresh(product)
    logger.info(f"Product {product.id} archived in guild {guild_id}")
    return product


def refresh_ticket_panel(db: Session, platform: ChatPlatform, guild_id: str) -> Optional[str]:
    """Edit the panel message in place, or post a new one and remember its id.

    Returns the panel message id, or None when no panel channel is set.
    """
    cfg = get_config(db, guild_id)
    channel_id = settings.TICKET_PANEL_CHANNEL_ID or (cfg.ticket_panel_channel_id if cfg else None)
    if not channel_id:
        logger.info(f"No ticket panel channel configured for guild {guild_id}")
        return None

    payload = views.ticket_panel(list_products(db, guild_id, limit=views.PANEL_PRODUCT_LIMIT))
    message_id = cfg.ticket_panel_message_id if cfg else None
    if message_id and platform.edit_message(channel_id, message_id, payload):
        return message_id

    message_id = platform.send_message(channel_id, payload)
    upsert_config(db, guild_id, ticket_panel_channel_id=channel_id, ticket_panel_message_id=message_id)
    return message_id
