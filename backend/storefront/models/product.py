"""Product model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index
from datetime import datetime, timezone
from storefront.models.base import Base


class Product(Base):
    """Admin-managed purchasable item with up to four priced plans"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    guild_id = Column(String(32), nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    role_id = Column(String(32), nullable=False)  # Role granted after payment
    prices = Column(JSON, nullable=False, default=dict)  # {"one_time": 999, "monthly": 499, ...} in minor units
    archived_at = Column(DateTime(timezone=True), nullable=True)  # Soft removal, history stays intact
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_products_guild_created', 'guild_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Product(id={self.id}, name={self.name!r}, prices={self.prices})>"
