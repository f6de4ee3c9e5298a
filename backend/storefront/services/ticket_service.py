"""Private per-user ticket channels for purchases and support"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import ChatPlatformError, InvalidInput, NotAuthorized, PlanUnavailable, TicketNotOpen
from storefront.core.logging import ticket_logger
from storefront.core.metrics import platform_failures_counter
from storefront.models.ticket import Ticket
from storefront.services import views
from storefront.services.catalog_service import get_product
from storefront.services.chat_platform import (
    BOT_ACCESS,
    MEMBER_ACCESS,
    VIEW_CHANNEL,
    ChatPlatform,
    PermissionOverwrite,
)
from storefront.services.config_service import get_config
from storefront.services.money import list_enabled_plans
from storefront.services.transitions import transition
from storefront.utils.dates import utcnow

TICKET_KINDS = ("purchase", "support")

_CHANNEL_PREFIX = {"purchase": "ticket", "support": "support"}


@dataclass
class TicketHandle:
    channel_id: str
    ticket: Ticket
    created: bool


def get_open_ticket(db: Session, guild_id: str, user_id: str, kind: str) -> Optional[Ticket]:
    return db.query(Ticket).filter(
        Ticket.guild_id == guild_id,
        Ticket.user_id == user_id,
        Ticket.kind == kind,
        Ticket.status == "open",
    ).first()


def get_open_ticket_for_channel(db: Session, guild_id: str, channel_id: Optional[str]) -> Optional[Ticket]:
    if not channel_id:
        return None
    return db.query(Ticket).filter(
        Ticket.guild_id == guild_id,
        Ticket.channel_id == channel_id,
        Ticket.status == "open",
    ).first()


def _overwrites(guild_id: str, user_id: str, bot_user_id: str, support_role_id: Optional[str]):
    overwrites = [
        PermissionOverwrite(guild_id, "role", deny=VIEW_CHANNEL),
        PermissionOverwrite(user_id, "member", allow=MEMBER_ACCESS),
        PermissionOverwrite(bot_user_id, "member", allow=BOT_ACCESS),
    ]
    if support_role_id:
        overwrites.append(PermissionOverwrite(support_role_id, "role", allow=MEMBER_ACCESS))
    return overwrites


def open_or_reuse(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    user_id: str,
    kind: str = "purchase",
    product_id: Optional[int] = None,
    reference_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TicketHandle:
    """Return the user's open ticket of this kind, creating one when needed.

    An open record whose channel was deleted outside the bot is marked stale
    and replaced. When two calls race, the partial unique index picks the
    winner and the loser deletes the channel it just created.
    """
    if kind not in TICKET_KINDS:
        raise InvalidInput(f"Unknown ticket kind: {kind}")
    now = now or utcnow()

    existing = get_open_ticket(db, guild_id, user_id, kind)
    if existing:
        if platform.channel_exists(existing.channel_id):
            if product_id is not None:
                existing.product_id = product_id
            if reference_code is not None:
                existing.reference_code = reference_code
            db.commit()
            return TicketHandle(existing.channel_id, existing, created=False)

        stale_channel = existing.channel_id
        transition(db, existing, "stale", stale_at=now)
        db.commit()
        ticket_logger.info(f"Ticket channel {stale_channel} for user {user_id} is gone; marked stale")

    cfg = get_config(db, guild_id)
    support_role_id = cfg.support_role_id if cfg else None
    category_id = platform.ensure_category(guild_id, settings.TICKETS_CATEGORY_NAME)
    channel_id = platform.create_channel(
        guild_id,
        f"{_CHANNEL_PREFIX[kind]}-{user_id}",
        _overwrites(guild_id, user_id, platform.bot_user_id, support_role_id),
        parent_id=category_id,
    )

    ticket = Ticket(
        guild_id=guild_id,
        channel_id=channel_id,
        user_id=user_id,
        kind=kind,
        status="open",
        product_id=product_id,
        reference_code=reference_code,
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(ticket)
        db.commit()
    except IntegrityError:
        ticket_logger.info(f"Concurrent {kind} ticket for user {user_id}; dropping channel {channel_id}")
        try:
            platform.delete_channel(channel_id, reason="Duplicate ticket")
        except ChatPlatformError as e:
            platform_failures_counter.labels(action="ticket_cleanup").inc()
            ticket_logger.warning(f"Could not delete duplicate ticket channel {channel_id}: {e}")
        winner = get_open_ticket(db, guild_id, user_id, kind)
        if winner is None:
            raise
        return TicketHandle(winner.channel_id, winner, created=False)

    db.refresh(ticket)
    ticket_logger.info(f"Opened {kind} ticket {channel_id} for user {user_id} in guild {guild_id}")
    return TicketHandle(channel_id, ticket, created=True)


def _post_intro(db: Session, platform: ChatPlatform, handle: TicketHandle, payload) -> None:
    try:
        message_id = platform.send_message(handle.channel_id, payload)
    except ChatPlatformError as e:
        platform_failures_counter.labels(action="ticket_intro").inc()
        ticket_logger.warning(f"Could not post intro in ticket {handle.channel_id}: {e}")
        return
    handle.ticket.intro_message_id = message_id
    db.commit()


def open_purchase_ticket(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    user_id: str,
    product_id,
    reference_code: Optional[str] = None,
) -> TicketHandle:
    """Open (or reuse) a purchase ticket and post the plan picker for ``product_id``"""
    product = get_product(db, guild_id, product_id)
    if not list_enabled_plans(product.prices):
        raise PlanUnavailable("No plans enabled for that product.")

    handle = open_or_reuse(
        db, platform, guild_id, user_id, "purchase",
        product_id=product.id, reference_code=reference_code,
    )
    _post_intro(db, platform, handle, views.purchase_ticket_intro(user_id, product, reference_code))
    return handle


def open_support_ticket(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    user_id: str,
    topic: Optional[str] = None,
) -> TicketHandle:
    handle = open_or_reuse(db, platform, guild_id, user_id, "support")
    if handle.created:
        _post_intro(db, platform, handle, views.support_ticket_intro(user_id, topic))
    return handle


def can_close(db: Session, ticket: Ticket, actor) -> bool:
    if actor.user_id == ticket.user_id or actor.is_admin:
        return True
    cfg = get_config(db, ticket.guild_id)
    return bool(cfg and actor.has_role(cfg.support_role_id))


def close(
    db: Session,
    platform: ChatPlatform,
    guild_id: str,
    channel_id: str,
    actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Ticket:
    """Close an open ticket, then notify and delete its channel (best effort)"""
    ticket = get_open_ticket_for_channel(db, guild_id, channel_id)
    if not ticket:
        raise TicketNotOpen("This isn't a valid open ticket.")
    if not can_close(db, ticket, actor):
        raise NotAuthorized("Only the ticket owner, support staff or server admins can close this ticket.")

    closed = transition(
        db, ticket, "closed",
        closed_by=actor.user_id,
        closed_at=now or utcnow(),
        close_reason=reason[:200] if reason else None,
    )
    if not closed:
        db.rollback()
        raise TicketNotOpen("This ticket was already closed.")
    db.commit()
    ticket_logger.info(f"Ticket {channel_id} closed by {actor.user_id}")

    try:
        platform.send_message(channel_id, views.ticket_closed(actor.user_id, reason))
        platform.delete_channel(channel_id, reason=f"Ticket closed by {actor.user_id}")
    except ChatPlatformError as e:
        platform_failures_counter.labels(action="ticket_close").inc()
        ticket_logger.warning(f"Ticket {channel_id} closed but channel cleanup failed: {e}")
    return ticket
