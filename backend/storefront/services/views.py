"""Rendered chat messages

Each function turns current records into a message payload (embeds plus
components). Nothing here reads or writes the database; callers pass the
authoritative rows and re-render whenever state changes.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from storefront.core.config import settings
from storefront.services.money import (
    PLAN_LABELS,
    format_amount,
    format_plans,
    list_enabled_plans,
)

# Component custom ids understood by api/components.py
PRODUCT_SELECT_ID = "ticket_product_select"
CLOSE_TICKET_ID = "close_ticket"
PLAN_BUTTON_PREFIX = "tp"
REFUND_APPROVE_PREFIX = "refund_approve"
REFUND_REJECT_PREFIX = "refund_reject"

BUTTON_PRIMARY = 1
BUTTON_SECONDARY = 2
BUTTON_SUCCESS = 3
BUTTON_DANGER = 4

PANEL_PRODUCT_LIMIT = 25


def _embed(title: str, description: Optional[str] = None, fields: Optional[List[Dict]] = None,
           now: Optional[datetime] = None) -> Dict:
    embed = {
        "title": f"{settings.BRAND_NAME} • {title}",
        "color": settings.BRAND_COLOR,
        "footer": {"text": settings.BRAND_FOOTER},
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    if description:
        embed["description"] = description
    if fields:
        embed["fields"] = fields
    return embed


def _field(name: str, value: str, inline: bool = True) -> Dict:
    return {"name": name, "value": value, "inline": inline}


def _row(*components: Dict) -> Dict:
    return {"type": 1, "components": list(components)}


def _button(custom_id: str, label: str, style: int = BUTTON_PRIMARY) -> Dict:
    return {"type": 2, "custom_id": custom_id, "label": label, "style": style}


def plan_button_id(product_id: int, plan_key: str) -> str:
    return f"{PLAN_BUTTON_PREFIX}:{product_id}:{plan_key}"


def refund_button_id(approve: bool, request_id: str) -> str:
    prefix = REFUND_APPROVE_PREFIX if approve else REFUND_REJECT_PREFIX
    return f"{prefix}:{request_id}"

# ============================================================================
# TICKETS
# ============================================================================

def ticket_panel(products: Sequence) -> Dict:
    """Purchase panel with a select menu of the newest products"""
    products = list(products)[:PANEL_PRODUCT_LIMIT]
    if products:
        description = "Select what you want to buy. A private ticket will be created for purchase support + checkout."
    else:
        description = "No products yet. Admins: /addproduct"

    payload = {"embeds": [_embed("Purchase Tickets", description)], "components": []}
    if products:
        menu = {
            "type": 3,
            "custom_id": PRODUCT_SELECT_ID,
            "placeholder": "Select a product to open a purchase ticket",
            "min_values": 1,
            "max_values": 1,
            "options": [
                {
                    "label": p.name[:100],
                    "value": str(p.id),
                    "description": (p.description or "Purchase support")[:100],
                }
                for p in products
            ],
        }
        payload["components"].append(_row(menu))
    return payload


def plan_buttons(product) -> List[Dict]:
    buttons = [
        _button(plan_button_id(product.id, key), f"{PLAN_LABELS[key]} ({format_amount(product.prices[key])})")
        for key in list_enabled_plans(product.prices)
    ]
    rows = [_row(*buttons)] if buttons else []
    rows.append(_row(_button(CLOSE_TICKET_ID, "Close Ticket", BUTTON_DANGER)))
    return rows


def purchase_ticket_intro(user_id: str, product, reference_code: Optional[str] = None) -> Dict:
    description = (
        f"User: <@{user_id}>\n"
        f"Product: **{product.name}**\n"
        f"{product.description}\n"
        f"Pick a plan below to generate your Stripe Checkout link."
    )
    fields = [_field("Plans", format_plans(product.prices), inline=False)]
    if reference_code:
        fields.append(_field("Reference code", f"`{reference_code}`"))
    return {
        "content": f"<@{user_id}>",
        "embeds": [_embed("Purchase Ticket", description, fields)],
        "components": plan_buttons(product),
    }


def support_ticket_intro(user_id: str, topic: Optional[str] = None) -> Dict:
    description = f"User: <@{user_id}>\nTell us what you need help with and the team will reply here."
    fields = [_field("Topic", topic[:1000], inline=False)] if topic else None
    return {
        "content": f"<@{user_id}>",
        "embeds": [_embed("Support Ticket", description, fields)],
        "components": [_row(_button(CLOSE_TICKET_ID, "Close Ticket", BUTTON_DANGER))],
    }


def ticket_closed(closer_id: str, reason: Optional[str] = None) -> Dict:
    description = f"<@{closer_id}> closed this ticket."
    if reason:
        description += f"\nReason: {reason}"
    return {"embeds": [_embed("Ticket Closed", description)]}

# ============================================================================
# CHECKOUT
# ============================================================================

def checkout_ready(purchase_id: str, plan_key: str, url: str, is_upgrade: bool = False) -> Dict:
    description = (
        f"**Purchase ID:** `{purchase_id}`\n"
        f"**Plan:** {PLAN_LABELS.get(plan_key, plan_key)}\n"
    )
    if is_upgrade:
        description += "This upgrade is charged at the full plan price.\n"
    description += "Please complete your payment using the secure link below."
    fields = [_field("Checkout", f"[Complete Payment on Stripe]({url})", inline=False)]
    return {"embeds": [_embed("Secure Checkout Ready", description, fields)]}


def donation_ready(purchase_id: str, amount_minor: int, url: str) -> Dict:
    description = (
        f"**Purchase ID:** `{purchase_id}`\n"
        f"**Amount:** {format_amount(amount_minor)}\n"
        f"Thank you for supporting {settings.BRAND_NAME}."
    )
    fields = [_field("Checkout", f"[Complete Donation on Stripe]({url})", inline=False)]
    return {"embeds": [_embed("Donation Checkout Ready", description, fields)]}

# ============================================================================
# PURCHASE LOG / BUYER
# ============================================================================

def purchase_completed(purchase) -> Dict:
    fields = [
        _field("User", f"<@{purchase.user_id}>"),
        _field("Purchase ID", f"`{purchase.purchase_id}`"),
        _field("Type", purchase.kind),
        _field("Amount", format_amount(purchase.amount_minor) if purchase.amount_minor else "n/a"),
    ]
    if purchase.plan_key:
        fields.append(_field("Plan", PLAN_LABELS.get(purchase.plan_key, purchase.plan_key)))
    if purchase.product_name:
        fields.append(_field("Product", purchase.product_name, inline=False))
    if purchase.reference_code:
        fields.append(_field("Reference code", f"`{purchase.reference_code}`"))
    return {"embeds": [_embed("Purchase Completed", fields=fields)]}


def thanks(user_id: str, purchase_id: str) -> Dict:
    description = f"Thanks for buying <@{user_id}> 💜\nPurchase ID: `{purchase_id}`"
    return {"embeds": [_embed("Thank you!", description)]}


def buyer_receipt(purchase) -> Dict:
    """DM sent once per purchase; one-time buyers learn about the upgrade path"""
    if purchase.kind == "donation":
        description = (
            f"Thank you for your donation of {format_amount(purchase.amount_minor)}.\n"
            f"Purchase ID: `{purchase.purchase_id}`"
        )
        return {"embeds": [_embed("Thank you!", description)]}

    description = (
        f"Your purchase of **{purchase.product_name}** is confirmed.\n"
        f"Purchase ID: `{purchase.purchase_id}`"
    )
    if purchase.plan_key == "one_time":
        description += (
            "\n\nWant ongoing updates? You can move to a monthly or annual plan "
            "any time with `/upgrade`."
        )
    return {"embeds": [_embed("Purchase Confirmed", description)]}


def subscription_ended(purchase) -> Dict:
    fields = [
        _field("User", f"<@{purchase.user_id}>"),
        _field("Purchase ID", f"`{purchase.purchase_id}`"),
        _field("Role removed", f"<@&{purchase.role_id}>" if purchase.role_id else "n/a", inline=False),
    ]
    return {"embeds": [_embed("Subscription Ended", fields=fields)]}


def subscription_cancel_requested(purchase) -> Dict:
    fields = [
        _field("User", f"<@{purchase.user_id}>"),
        _field("Purchase ID", f"`{purchase.purchase_id}`"),
        _field("Cancel at period end", "Yes"),
    ]
    if purchase.current_period_end:
        fields.append(_field("Access until", purchase.current_period_end.strftime("%Y-%m-%d")))
    return {"embeds": [_embed("Subscription Cancellation Requested", fields=fields)]}

# ============================================================================
# REFUNDS
# ============================================================================

_REFUND_STATUS_TEXT = {
    "pending": "`pending`",
    "approved": "`approved`",
    "rejected": "`rejected`",
    "executed": "`refunded`",
    "failed": "`failed`",
}


def refund_request(request, purchase=None) -> Dict:
    """Approval prompt; buttons only while the request is pending"""
    status = _REFUND_STATUS_TEXT.get(request.status, f"`{request.status}`")
    if request.status == "failed" and request.failure_reason:
        status = f"`failed ({request.failure_reason})`"

    fields = [
        _field("Request ID", f"`{request.request_id}`"),
        _field("Purchase ID", f"`{request.purchase_id}`"),
        _field("Requested by", f"<@{request.requested_by}>"),
    ]
    if purchase is not None:
        fields.append(_field("Buyer", f"<@{purchase.user_id}>"))
        fields.append(_field("Amount", format_amount(purchase.amount_minor)))
        if purchase.product_name:
            fields.append(_field("Product", purchase.product_name, inline=False))
    decided_by = request.approved_by or request.rejected_by
    if decided_by:
        fields.append(_field("Decided by", f"<@{decided_by}>"))
    fields.append(_field("Status", status))

    components = []
    if request.status == "pending":
        components.append(_row(
            _button(refund_button_id(True, request.request_id), "Approve", BUTTON_SUCCESS),
            _button(refund_button_id(False, request.request_id), "Reject", BUTTON_DANGER),
        ))
    return {"embeds": [_embed("Refund Request", fields=fields)], "components": components}
