"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from storefront.models.base import Base
from storefront.models.product import Product
from storefront.models.guild_config import GuildConfig
from storefront.models.purchase import Purchase
from storefront.models.entitlement import Entitlement
from storefront.models.refund_request import RefundRequest
from storefront.models.ticket import Ticket
from storefront.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "Product", "GuildConfig", "Purchase", "Entitlement",
    "RefundRequest", "Ticket", "StripeEvent"
]
