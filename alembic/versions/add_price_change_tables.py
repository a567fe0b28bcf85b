"""Add products, subscriptions and price change tables

Revision ID: price_change_001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'price_change_001'
down_revision = None
branch_labels = None
depends_on = None

subscription_type = sa.Enum('FIXED', 'VARIABLE', 'SINGLE', name='subscriptiontype')
subscription_status = sa.Enum('ACTIVE', 'PAUSED', 'CANCELLED', 'EXPIRED', 'TRIAL', name='subscriptionstatus')
price_change_type = sa.Enum('UPGRADE', 'DOWNGRADE', 'INFLATION', 'CUSTOM', name='pricechangetype')
application_type = sa.Enum('IMMEDIATE', 'NEXT_CYCLE', 'SCHEDULED', name='applicationtype')


def upgrade():
    # Create products table
    op.create_table('products',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('base_amount', sa.Integer(), nullable=False),
        sa.Column('type', subscription_type, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_products_id'), 'products', ['id'], unique=False)
    op.create_index(op.f('ix_products_user_id'), 'products', ['user_id'], unique=False)

    # Create subscriptions table
    op.create_table('subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('reference', sa.String(), nullable=False),
        sa.Column('concept', sa.String(), nullable=False),
        sa.Column('client_name', sa.String(), nullable=False),
        sa.Column('client_email', sa.String(), nullable=True),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('type', subscription_type, nullable=False),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('next_charge_date', sa.DateTime(), nullable=True),
        sa.Column('pending_price_change_id', sa.String(), nullable=True),
        sa.Column('last_price_change_date', sa.DateTime(), nullable=True),
        sa.Column('price_change_history_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billing_suspended_for_price_change', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_product_id'), 'subscriptions', ['product_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_subscriptions_pending_price_change_id'), 'subscriptions',
                    ['pending_price_change_id'], unique=False)

    # Create product_price_changes table
    op.create_table('product_price_changes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('product_id', sa.String(), nullable=False),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.Column('old_base_amount', sa.Integer(), nullable=False),
        sa.Column('new_base_amount', sa.Integer(), nullable=False),
        sa.Column('difference', sa.Integer(), nullable=False),
        sa.Column('percentage_change', sa.Numeric(10, 2), nullable=False),
        sa.Column('change_type', price_change_type, nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('application_type', application_type, nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=True),
        sa.Column('requires_approval_for_fixed', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('auto_suspend_fixed_until_approval', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('total_subscriptions_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscriptions_applied', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscriptions_pending_approval', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscriptions_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscriptions_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_product_price_changes_id'), 'product_price_changes', ['id'], unique=False)
    op.create_index(op.f('ix_product_price_changes_product_id'), 'product_price_changes',
                    ['product_id'], unique=False)

    # Create subscription_price_changes table
    op.create_table('subscription_price_changes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('product_price_change_id', sa.String(), nullable=True),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.Column('old_amount', sa.Integer(), nullable=False),
        sa.Column('new_amount', sa.Integer(), nullable=False),
        sa.Column('difference', sa.Integer(), nullable=False),
        sa.Column('percentage_change', sa.Numeric(10, 2), nullable=False),
        sa.Column('change_type', price_change_type, nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('application_type', application_type, nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'APPLIED', 'CANCELLED', name='pricechangestatus'), nullable=False),
        sa.Column('requires_client_approval', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('client_approval_status',
                  sa.Enum('NOT_REQUIRED', 'PENDING', 'APPROVED', 'REJECTED', name='clientapprovalstatus'),
                  nullable=False),
        sa.Column('approval_token', sa.String(), nullable=True),
        sa.Column('client_approval_date', sa.DateTime(), nullable=True),
        sa.Column('client_approval_method', sa.Enum('WEB', 'AUTO_TIMEOUT', name='approvalmethod'), nullable=True),
        sa.Column('client_notified', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('client_notified_at', sa.DateTime(), nullable=True),
        sa.Column('apply_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_apply_error', sa.Text(), nullable=True),
        sa.Column('cancellation_reason',
                  sa.Enum('REJECTED_BY_CLIENT', 'CANCELLED_BY_MERCHANT', 'APPLY_FAILED', name='cancellationreason'),
                  nullable=True),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.ForeignKeyConstraint(['product_price_change_id'], ['product_price_changes.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('approval_token')
    )
    op.create_index(op.f('ix_subscription_price_changes_id'), 'subscription_price_changes', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_price_changes_subscription_id'), 'subscription_price_changes',
                    ['subscription_id'], unique=False)
    op.create_index(op.f('ix_subscription_price_changes_product_price_change_id'), 'subscription_price_changes',
                    ['product_price_change_id'], unique=False)
    op.create_index(op.f('ix_subscription_price_changes_status'), 'subscription_price_changes',
                    ['status'], unique=False)
    op.create_index(op.f('ix_subscription_price_changes_client_approval_status'), 'subscription_price_changes',
                    ['client_approval_status'], unique=False)
    op.create_index(op.f('ix_subscription_price_changes_created_at'), 'subscription_price_changes',
                    ['created_at'], unique=False)
    # At most one pending change per subscription
    op.create_index('uq_subscription_price_changes_one_pending', 'subscription_price_changes',
                    ['subscription_id'], unique=True,
                    postgresql_where=sa.text("status = 'PENDING'"),
                    sqlite_where=sa.text("status = 'PENDING'"))

    # Create notification_logs table
    op.create_table('notification_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('event', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_notification_logs_id'), 'notification_logs', ['id'], unique=False)
    op.create_index(op.f('ix_notification_logs_subscription_id'), 'notification_logs',
                    ['subscription_id'], unique=False)
    op.create_index(op.f('ix_notification_logs_event'), 'notification_logs', ['event'], unique=False)
    op.create_index(op.f('ix_notification_logs_created_at'), 'notification_logs', ['created_at'], unique=False)


def downgrade():
    # Drop notification_logs table
    op.drop_index(op.f('ix_notification_logs_created_at'), table_name='notification_logs')
    op.drop_index(op.f('ix_notification_logs_event'), table_name='notification_logs')
    op.drop_index(op.f('ix_notification_logs_subscription_id'), table_name='notification_logs')
    op.drop_index(op.f('ix_notification_logs_id'), table_name='notification_logs')
    op.drop_table('notification_logs')

    # Drop subscription_price_changes table
    op.drop_index('uq_subscription_price_changes_one_pending', table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_created_at'), table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_client_approval_status'),
                  table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_status'), table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_product_price_change_id'),
                  table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_subscription_id'), table_name='subscription_price_changes')
    op.drop_index(op.f('ix_subscription_price_changes_id'), table_name='subscription_price_changes')
    op.drop_table('subscription_price_changes')

    # Drop product_price_changes table
    op.drop_index(op.f('ix_product_price_changes_product_id'), table_name='product_price_changes')
    op.drop_index(op.f('ix_product_price_changes_id'), table_name='product_price_changes')
    op.drop_table('product_price_changes')

    # Drop subscriptions table
    op.drop_index(op.f('ix_subscriptions_pending_price_change_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_status'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_product_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_user_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_id'), table_name='subscriptions')
    op.drop_table('subscriptions')

    # Drop products table
    op.drop_index(op.f('ix_products_user_id'), table_name='products')
    op.drop_index(op.f('ix_products_id'), table_name='products')
    op.drop_table('products')

    # Drop enum types (PostgreSQL only)
    if op.get_bind().dialect.name != 'postgresql':
        return
    for name in ('cancellationreason', 'approvalmethod', 'clientapprovalstatus', 'pricechangestatus',
                 'applicationtype', 'pricechangetype', 'subscriptionstatus', 'subscriptiontype'):
        op.execute(f"DROP TYPE IF EXISTS {name}")
