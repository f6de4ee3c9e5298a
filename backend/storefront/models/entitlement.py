"""Entitlement model"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime, timezone
from storefront.models.base import Base


class Entitlement(Base):
    """What a user currently owns for a product, independent of the payment that caused it"""
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    product_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="active")  # 'active', 'revoked'
    plan_key = Column(String(20), nullable=False)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    reference_code = Column(String(64), nullable=True)
    source_purchase_id = Column(String(64), nullable=True)
    revoked_by = Column(String(64), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('guild_id', 'user_id', 'product_id', name='uq_entitlements_owner_product'),
    )

    def __repr__(self):
        return f"<Entitlement(user_id={self.user_id}, product_id={self.product_id}, plan={self.plan_key}, status={self.status})>"
