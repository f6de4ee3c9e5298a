"""Pydantic schemas for commands and component actions relayed by the chat gateway"""
from pydantic import BaseModel, Field
from typing import List, Optional


class ActorContext(BaseModel):
    """Who triggered the interaction, as resolved by the gateway"""
    user_id: str
    is_admin: bool = False
    role_ids: List[str] = Field(default_factory=list)

    def has_role(self, role_id: Optional[str]) -> bool:
        return bool(role_id) and role_id in self.role_ids


class InteractionRequest(BaseModel):
    guild_id: str
    channel_id: Optional[str] = None
    actor: ActorContext


class AddProductRequest(InteractionRequest):
    name: str
    description: str = ""
    role_id: str
    one_time: Optional[str] = None
    monthly: Optional[str] = None
    annual: Optional[str] = None
    lifetime: Optional[str] = None


class SetPriceRequest(InteractionRequest):
    product_id: str
    plan: str  # 'one_time', 'monthly', 'annual', 'lifetime'
    amount: str  # '9.99' or 'none'


class ProductIdRequest(InteractionRequest):
    product_id: str


class RoleRequest(InteractionRequest):
    role_id: str


class ChannelRequest(InteractionRequest):
    target_channel_id: str


class DonateRequest(InteractionRequest):
    amount: str


class RefundCommandRequest(InteractionRequest):
    purchase_id: str


class UpgradeRequest(InteractionRequest):
    product_id: str
    plan: str  # 'monthly' or 'annual'


class SupportRequest(InteractionRequest):
    topic: Optional[str] = None


class ProductSelectRequest(InteractionRequest):
    values: List[str]
    reference_code: Optional[str] = None


class ButtonRequest(InteractionRequest):
    custom_id: str
    message_id: Optional[str] = None


class CloseTicketRequest(InteractionRequest):
    reason: Optional[str] = None


class InteractionResponse(BaseModel):
    """Ephemeral reply text for the actor"""
    message: str
    channel_id: Optional[str] = None
    purchase_id: Optional[str] = None
    checkout_url: Optional[str] = None
