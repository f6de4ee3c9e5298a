"""Create storefront tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Tables may already exist when the app ran Base.metadata.create_all first
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'products' not in existing_tables:
        op.create_table(
            'products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('description', sa.Text(), nullable=False),
            sa.Column('role_id', sa.String(length=32), nullable=False),
            sa.Column('prices', sa.JSON(), nullable=False),
            sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_products_id', 'products', ['id'])
        op.create_index('ix_products_guild_created', 'products', ['guild_id', 'created_at'])

    if 'guild_configs' not in existing_tables:
        op.create_table(
            'guild_configs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('support_role_id', sa.String(length=32), nullable=True),
            sa.Column('purchase_log_channel_id', sa.String(length=32), nullable=True),
            sa.Column('thanks_channel_id', sa.String(length=32), nullable=True),
            sa.Column('ticket_panel_channel_id', sa.String(length=32), nullable=True),
            sa.Column('ticket_panel_message_id', sa.String(length=32), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_guild_configs_id', 'guild_configs', ['id'])
        op.create_index('ix_guild_configs_guild_id', 'guild_configs', ['guild_id'], unique=True)

    if 'purchases' not in existing_tables:
        op.create_table(
            'purchases',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('purchase_id', sa.String(length=64), nullable=False),
            sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('user_id', sa.String(length=32), nullable=False),
            sa.Column('kind', sa.String(length=20), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=True),
            sa.Column('product_name', sa.String(length=100), nullable=True),
            sa.Column('plan_key', sa.String(length=20), nullable=True),
            sa.Column('role_id', sa.String(length=32), nullable=True),
            sa.Column('amount_minor', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=8), nullable=False),
            sa.Column('reference_code', sa.String(length=64), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_refund_id', sa.String(length=255), nullable=True),
            sa.Column('subscription_status', sa.String(length=50), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('subscription_canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('subscription_ended_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('subscription_updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('buyer_notified_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_purchases_id', 'purchases', ['id'])
        op.create_index('ix_purchases_purchase_id', 'purchases', ['purchase_id'], unique=True)
        op.create_index('ix_purchases_stripe_session_id', 'purchases', ['stripe_session_id'], unique=True)
        op.create_index('ix_purchases_user_id', 'purchases', ['user_id'])
        op.create_index('ix_purchases_stripe_subscription_id', 'purchases', ['stripe_subscription_id'])
        op.create_index('ix_purchases_guild_paid', 'purchases', ['guild_id', 'paid_at'])

    if 'entitlements' not in existing_tables:
        op.create_table(
            'entitlements',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('user_id', sa.String(length=32), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('plan_key', sa.String(length=20), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('reference_code', sa.String(length=64), nullable=True),
            sa.Column('source_purchase_id', sa.String(length=64), nullable=True),
            sa.Column('revoked_by', sa.String(length=64), nullable=True),
            sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('guild_id', 'user_id', 'product_id', name='uq_entitlements_owner_product')
        )
        op.create_index('ix_entitlements_id', 'entitlements', ['id'])
        op.create_index('ix_entitlements_stripe_subscription_id', 'entitlements', ['stripe_subscription_id'])

    if 'refund_requests' not in existing_tables:
        op.create_table(
            'refund_requests',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('request_id', sa.String(length=64), nullable=False),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('purchase_id', sa.String(length=64), nullable=False),
            sa.Column('requested_by', sa.String(length=32), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('approved_by', sa.String(length=32), nullable=True),
            sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('rejected_by', sa.String(length=32), nullable=True),
            sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failure_reason', sa.String(length=200), nullable=True),
            sa.Column('stripe_refund_id', sa.String(length=255), nullable=True),
            sa.Column('message_channel_id', sa.String(length=32), nullable=True),
            sa.Column('message_id', sa.String(length=32), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_refund_requests_id', 'refund_requests', ['id'])
        op.create_index('ix_refund_requests_request_id', 'refund_requests', ['request_id'], unique=True)
        op.create_index('ix_refund_requests_purchase_id', 'refund_requests', ['purchase_id'])
        op.create_index('ix_refund_requests_guild_created', 'refund_requests', ['guild_id', 'created_at'])
        op.create_index(
            'uq_refund_requests_one_open', 'refund_requests', ['purchase_id'],
            unique=True,
            postgresql_where=sa.text("status IN ('pending', 'approved')"),
            sqlite_where=sa.text("status IN ('pending', 'approved')"),
        )

    if 'tickets' not in existing_tables:
        op.create_table(
            'tickets',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('guild_id', sa.String(length=32), nullable=False),
            sa.Column('channel_id', sa.String(length=32), nullable=False),
            sa.Column('user_id', sa.String(length=32), nullable=False),
            sa.Column('kind', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('product_id', sa.Integer(), nullable=True),
            sa.Column('reference_code', sa.String(length=64), nullable=True),
            sa.Column('intro_message_id', sa.String(length=32), nullable=True),
            sa.Column('closed_by', sa.String(length=32), nullable=True),
            sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('close_reason', sa.String(length=200), nullable=True),
            sa.Column('stale_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('guild_id', 'channel_id', name='uq_tickets_guild_channel')
        )
        op.create_index('ix_tickets_id', 'tickets', ['id'])
        op.create_index('ix_tickets_guild_user_status', 'tickets', ['guild_id', 'user_id', 'status'])
        op.create_index(
            'uq_tickets_one_open_per_kind', 'tickets', ['guild_id', 'user_id', 'kind'],
            unique=True,
            postgresql_where=sa.text("status = 'open'"),
            sqlite_where=sa.text("status = 'open'"),
        )

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
        op.create_index('ix_stripe_events_event_id', 'stripe_events', ['event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in ('stripe_events', 'tickets', 'refund_requests', 'entitlements',
                  'purchases', 'guild_configs', 'products'):
        if table in existing_tables:
            op.drop_table(table)
