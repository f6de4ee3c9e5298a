"""RefundRequest model"""
from sqlalchemy import Column, Integer, String, DateTime, Index, text
from datetime import datetime, timezone
from storefront.models.base import Base


class RefundRequest(Base):
    """Two-party refund approval record"""
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(String(64), unique=True, nullable=False, index=True)  # RR-...
    guild_id = Column(String(32), nullable=False)
    purchase_id = Column(String(64), nullable=False, index=True)
    requested_by = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # 'pending', 'approved', 'rejected', 'executed', 'failed'

    approved_by = Column(String(32), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(32), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String(200), nullable=True)
    stripe_refund_id = Column(String(255), nullable=True)

    # Where the approval prompt lives, for in-place re-rendering
    message_channel_id = Column(String(32), nullable=True)
    message_id = Column(String(32), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_refund_requests_guild_created', 'guild_id', 'created_at'),
        # One undecided or in-flight request per purchase
        Index(
            'uq_refund_requests_one_open', 'purchase_id',
            unique=True,
            sqlite_where=text("status IN ('pending', 'approved')"),
            postgresql_where=text("status IN ('pending', 'approved')"),
        ),
    )
