"""Ticket model"""
from sqlalchemy import Column, Integer, String, DateTime, Index, UniqueConstraint, text
from datetime import datetime, timezone
from storefront.models.base import Base


class Ticket(Base):
    """Private per-user channel scoped to a purpose"""
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    guild_id = Column(String(32), nullable=False)
    channel_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    kind = Column(String(20), nullable=False, default="purchase")  # 'purchase', 'support'
    status = Column(String(20), nullable=False, default="open")  # 'open', 'closed', 'stale'
    product_id = Column(Integer, nullable=True)
    reference_code = Column(String(64), nullable=True)
    intro_message_id = Column(String(32), nullable=True)
    closed_by = Column(String(32), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    close_reason = Column(String(200), nullable=True)
    stale_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('guild_id', 'channel_id', name='uq_tickets_guild_channel'),
        Index('ix_tickets_guild_user_status', 'guild_id', 'user_id', 'status'),
        # At most one open ticket per (guild, user, kind)
        Index(
            'uq_tickets_one_open_per_kind', 'guild_id', 'user_id', 'kind',
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )
