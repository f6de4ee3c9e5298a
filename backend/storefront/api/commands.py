"""Slash command endpoints called by the chat gateway relay"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.core.errors import ChatPlatformError, InvalidAmount, InvalidInput
from storefront.core.metrics import platform_failures_counter
from storefront.core.security import ensure_allowed_guild, require_admin, require_gateway
from storefront.db.session import get_db
from storefront.schemas.commands import (
    AddProductRequest,
    ChannelRequest,
    CloseTicketRequest,
    DonateRequest,
    InteractionRequest,
    InteractionResponse,
    ProductIdRequest,
    RefundCommandRequest,
    RoleRequest,
    SetPriceRequest,
    SupportRequest,
    UpgradeRequest,
)
from storefront.services import (
    catalog_service,
    checkout_service,
    notification_service,
    refund_service,
    subscription_service,
    ticket_service,
    views,
)
from storefront.services.chat_platform import ChatPlatform, get_chat_platform
from storefront.services.config_service import upsert_config
from storefront.services.cooldown import checkout_cooldown
from storefront.services.money import PLAN_LABELS, format_plans, parse_amount

router = APIRouter(prefix="/api/commands", tags=["commands"], dependencies=[Depends(require_gateway)])
logger = logging.getLogger(__name__)


def _admin(body: InteractionRequest) -> None:
    ensure_allowed_guild(body.guild_id)
    require_admin(body.actor)


def _refresh_panel(db: Session, platform: ChatPlatform, guild_id: str) -> None:
    """Keep the purchase panel in sync after catalog changes"""
    try:
        catalog_service.refresh_ticket_panel(db, platform, guild_id)
    except ChatPlatformError as e:
        platform_failures_counter.labels(action="ticket_panel").inc()
        logger.warning(f"Ticket panel refresh failed for guild {guild_id}: {e}")

# ============================================================================
# ADMIN: CATALOG
# ============================================================================

@router.post("/addproduct", response_model=InteractionResponse)
def add_product(body: AddProductRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Add a product (amounts, not Stripe price IDs)"""
    _admin(body)
    product = catalog_service.add_product(
        db, body.guild_id, body.name, body.description, body.role_id,
        {"one_time": body.one_time, "monthly": body.monthly, "annual": body.annual, "lifetime": body.lifetime},
    )
    _refresh_panel(db, platform, body.guild_id)
    return InteractionResponse(
        message=f"Added **{product.name}** (ID: `{product.id}`) with plans: {format_plans(product.prices)}"
    )


@router.post("/setprice", response_model=InteractionResponse)
def set_price(body: SetPriceRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Set or disable a plan amount on an existing product"""
    _admin(body)
    product = catalog_service.set_price(db, body.guild_id, body.product_id, body.plan, body.amount)
    _refresh_panel(db, platform, body.guild_id)
    return InteractionResponse(message=f"Updated plan **{PLAN_LABELS[body.plan]}** for `{product.id}`: {format_plans(product.prices)}")


@router.post("/listproducts", response_model=InteractionResponse)
def list_products(body: InteractionRequest, db: Session = Depends(get_db)):
    _admin(body)
    products = catalog_service.list_products(db, body.guild_id)
    if not products:
        return InteractionResponse(message="No products.")
    lines = [f"`{p.id}` **{p.name}** <@&{p.role_id}> - {format_plans(p.prices)}" for p in products]
    return InteractionResponse(message="\n".join(lines)[:1900])


@router.post("/removeproduct", response_model=InteractionResponse)
def remove_product(body: ProductIdRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Archive a product; existing purchases keep their history"""
    _admin(body)
    product = catalog_service.archive_product(db, body.guild_id, body.product_id)
    _refresh_panel(db, platform, body.guild_id)
    return InteractionResponse(message=f"Product `{product.id}` removed.")


@router.post("/ticketpanel", response_model=InteractionResponse)
def ticket_panel(body: InteractionRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Repost or update the ticket panel"""
    _admin(body)
    if catalog_service.refresh_ticket_panel(db, platform, body.guild_id) is None:
        raise InvalidInput("No ticket panel channel configured.")
    return InteractionResponse(message="Ticket panel updated.")

# ============================================================================
# ADMIN: CONFIG
# ============================================================================

@router.post("/setsupportrole", response_model=InteractionResponse)
def set_support_role(body: RoleRequest, db: Session = Depends(get_db)):
    _admin(body)
    upsert_config(db, body.guild_id, support_role_id=body.role_id)
    return InteractionResponse(message=f"Support role set to <@&{body.role_id}>")


def _require_channel(platform: ChatPlatform, channel_id: str) -> None:
    if not platform.channel_exists(channel_id):
        raise InvalidInput("Pick a normal text channel.")


@router.post("/setthankschannel", response_model=InteractionResponse)
def set_thanks_channel(body: ChannelRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Set channel for 'thanks for buying' embeds"""
    _admin(body)
    _require_channel(platform, body.target_channel_id)
    upsert_config(db, body.guild_id, thanks_channel_id=body.target_channel_id)
    return InteractionResponse(message=f"Thanks channel set to <#{body.target_channel_id}>")


@router.post("/setlogchannel", response_model=InteractionResponse)
def set_log_channel(body: ChannelRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    _admin(body)
    _require_channel(platform, body.target_channel_id)
    upsert_config(db, body.guild_id, purchase_log_channel_id=body.target_channel_id)
    return InteractionResponse(message=f"Purchase log channel set to <#{body.target_channel_id}>")

# ============================================================================
# REFUNDS
# ============================================================================

@router.post("/refund", response_model=InteractionResponse)
def refund(body: RefundCommandRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Request a refund by Purchase ID (approval required; within the refund window)"""
    ensure_allowed_guild(body.guild_id)
    request = refund_service.request_refund(db, platform, body.guild_id, body.actor, body.purchase_id)
    return InteractionResponse(
        message=f"Refund request created: `{request.request_id}` (awaiting approval).",
        purchase_id=request.purchase_id,
    )

# ============================================================================
# CUSTOMER
# ============================================================================

@router.post("/donate", response_model=InteractionResponse)
def donate(body: DonateRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    ensure_allowed_guild(body.guild_id)
    amount_minor = parse_amount(body.amount)
    if amount_minor is None:
        raise InvalidAmount("Invalid amount. Example: 5 or 9.99")
    checkout_cooldown.hit(body.actor.user_id, "donate")

    result = checkout_service.start_donation_checkout(db, body.guild_id, body.actor.user_id, amount_minor)
    notification_service.dm_user(platform, body.actor.user_id, views.donation_ready(result.purchase_id, amount_minor, result.url))
    return InteractionResponse(
        message=f"Your donation checkout is ready (Purchase ID: `{result.purchase_id}`).",
        purchase_id=result.purchase_id,
        checkout_url=result.url,
    )


@router.post("/upgrade", response_model=InteractionResponse)
def upgrade(body: UpgradeRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Move a one-time purchase to a monthly or annual plan"""
    ensure_allowed_guild(body.guild_id)
    checkout_cooldown.hit(body.actor.user_id, "upgrade")

    result = checkout_service.start_upgrade_checkout(db, body.guild_id, body.actor.user_id, body.product_id, body.plan)
    notification_service.dm_user(
        platform, body.actor.user_id,
        views.checkout_ready(result.purchase_id, body.plan, result.url, is_upgrade=True),
    )
    return InteractionResponse(
        message=f"Upgrade checkout ready (Purchase ID: `{result.purchase_id}`).",
        purchase_id=result.purchase_id,
        checkout_url=result.url,
    )


@router.post("/cancelsub", response_model=InteractionResponse)
def cancel_subscription(body: InteractionRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Cancel your active subscription (keeps access until period ends)"""
    ensure_allowed_guild(body.guild_id)
    result = subscription_service.cancel_own_subscription(db, platform, body.guild_id, body.actor.user_id)
    return InteractionResponse(message=result.message, purchase_id=result.purchase.purchase_id)


@router.post("/support", response_model=InteractionResponse)
def support(body: SupportRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    ensure_allowed_guild(body.guild_id)
    handle = ticket_service.open_support_ticket(db, platform, body.guild_id, body.actor.user_id, body.topic)
    return InteractionResponse(message=f"Ticket ready: <#{handle.channel_id}>", channel_id=handle.channel_id)


@router.post("/close", response_model=InteractionResponse)
def close_ticket(body: CloseTicketRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Close the ticket the command was run in, with an optional reason"""
    ensure_allowed_guild(body.guild_id)
    ticket_service.close(db, platform, body.guild_id, body.channel_id, body.actor, reason=body.reason)
    return InteractionResponse(message="Ticket closed.")
