"""Select menu and button handlers relayed by the chat gateway"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.core.errors import ChatPlatformError, InvalidInput
from storefront.core.metrics import platform_failures_counter
from storefront.core.security import ensure_allowed_guild, require_gateway
from storefront.db.session import get_db
from storefront.schemas.commands import ButtonRequest, InteractionResponse, ProductSelectRequest
from storefront.services import checkout_service, refund_service, ticket_service, views
from storefront.services.chat_platform import ChatPlatform, get_chat_platform
from storefront.services.cooldown import checkout_cooldown

router = APIRouter(prefix="/api/components", tags=["components"], dependencies=[Depends(require_gateway)])
logger = logging.getLogger(__name__)


@router.post("/product-select", response_model=InteractionResponse)
def product_select(body: ProductSelectRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Product picked from the ticket panel: open or reuse the buyer's purchase ticket"""
    ensure_allowed_guild(body.guild_id)
    if not body.values:
        raise InvalidInput("Pick a product.")
    handle = ticket_service.open_purchase_ticket(
        db, platform, body.guild_id, body.actor.user_id, body.values[0],
        reference_code=body.reference_code,
    )
    return InteractionResponse(message=f"Ticket ready: <#{handle.channel_id}>", channel_id=handle.channel_id)


def _plan_button(body: ButtonRequest, db: Session, platform: ChatPlatform) -> InteractionResponse:
    try:
        _, product_id, plan_key = body.custom_id.split(":", 2)
    except ValueError:
        raise InvalidInput("Unknown action.")
    checkout_cooldown.hit(body.actor.user_id, "checkout")

    result = checkout_service.start_ticket_checkout(
        db, body.guild_id, body.channel_id, body.actor, product_id, plan_key
    )
    try:
        platform.send_message(body.channel_id, views.checkout_ready(result.purchase_id, plan_key, result.url))
    except ChatPlatformError as e:
        # The reply still carries the link
        platform_failures_counter.labels(action="checkout_post").inc()
        logger.warning(f"Could not post checkout link in ticket {body.channel_id}: {e}")
    return InteractionResponse(
        message="Checkout link sent securely in this ticket.",
        purchase_id=result.purchase_id,
        checkout_url=result.url,
    )


def _refund_button(body: ButtonRequest, db: Session, platform: ChatPlatform, approve: bool) -> InteractionResponse:
    request_id = body.custom_id.split(":", 1)[1]
    request = refund_service.decide_refund(db, platform, body.guild_id, request_id, body.actor, approve)
    message = f"Refund request `{request.request_id}` is now `{request.status}`."
    if request.status == "failed" and request.failure_reason:
        message += f" Reason: {request.failure_reason}"
    return InteractionResponse(message=message, purchase_id=request.purchase_id)


@router.post("/button", response_model=InteractionResponse)
def button(body: ButtonRequest, db: Session = Depends(get_db), platform: ChatPlatform = Depends(get_chat_platform)):
    """Dispatch a button press by its custom id"""
    ensure_allowed_guild(body.guild_id)
    custom_id = body.custom_id or ""

    if custom_id == views.CLOSE_TICKET_ID:
        ticket_service.close(db, platform, body.guild_id, body.channel_id, body.actor)
        return InteractionResponse(message="Ticket closed.")
    if custom_id.startswith(f"{views.PLAN_BUTTON_PREFIX}:"):
        return _plan_button(body, db, platform)
    if custom_id.startswith(f"{views.REFUND_APPROVE_PREFIX}:"):
        return _refund_button(body, db, platform, approve=True)
    if custom_id.startswith(f"{views.REFUND_REJECT_PREFIX}:"):
        return _refund_button(body, db, platform, approve=False)

    raise InvalidInput("Unknown action.")
