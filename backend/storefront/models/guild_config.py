"""Per-guild configuration model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from storefront.models.base import Base


class GuildConfig(Base):
    """Role, channel and message references configured per guild"""
    __tablename__ = "guild_configs"

    id = Column(Integer, primary_key=True, index=True)
    guild_id = Column(String(32), unique=True, nullable=False, index=True)
    support_role_id = Column(String(32), nullable=True)
    purchase_log_channel_id = Column(String(32), nullable=True)
    thanks_channel_id = Column(String(32), nullable=True)
    ticket_panel_channel_id = Column(String(32), nullable=True)
    ticket_panel_message_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
