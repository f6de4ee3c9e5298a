"""Purchase model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Index
from datetime import datetime, timezone
from storefront.models.base import Base


class Purchase(Base):
    """One checkout attempt and, once confirmed by Stripe, its payment evidence"""
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(String(64), unique=True, nullable=False, index=True)  # VT-...
    stripe_session_id = Column(String(255), unique=True, nullable=True, index=True)  # Webhook idempotency anchor
    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # 'product', 'donation'
    product_id = Column(Integer, nullable=True)
    product_name = Column(String(100), nullable=True)
    plan_key = Column(String(20), nullable=True)  # 'one_time', 'monthly', 'annual', 'lifetime'
    role_id = Column(String(32), nullable=True)
    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False)
    reference_code = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default="created")  # 'created', 'paid', 'refunded'

    # Stripe references
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_refund_id = Column(String(255), nullable=True)

    # Subscription side-state, evolves independently after 'paid'
    subscription_status = Column(String(50), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    subscription_canceled_at = Column(DateTime(timezone=True), nullable=True)
    subscription_ended_at = Column(DateTime(timezone=True), nullable=True)
    subscription_updated_at = Column(DateTime(timezone=True), nullable=True)

    buyer_notified_at = Column(DateTime(timezone=True), nullable=True)  # Guards the post-purchase DM

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_purchases_guild_paid', 'guild_id', 'paid_at'),
    )

    @property
    def is_subscription(self) -> bool:
        return bool(self.stripe_subscription_id)

    def __repr__(self):
        return f"<Purchase(purchase_id={self.purchase_id}, status={self.status}, kind={self.kind})>"
