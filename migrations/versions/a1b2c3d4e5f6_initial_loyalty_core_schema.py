"""Initial Loyalty Core schema.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create organizations, clients, sales, cashback and campaign tables."""
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'clients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('birthday', sa.Date(), nullable=True),
        sa.Column('segment', sa.String(50), nullable=True),
        sa.Column('segment_entered_at', sa.DateTime(), nullable=True),
        sa.Column('purchase_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('purchase_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('first_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('last_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_clients_organization_id', 'clients', ['organization_id'])
    op.create_index('ix_clients_segment', 'clients', ['segment'])
    op.create_index('ix_clients_org_segment', 'clients', ['organization_id', 'segment'])

    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('cashback_redeemed', sa.Numeric(12, 2), server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='valid'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.String(255), nullable=True),
        sa.Column('sold_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
    )
    op.create_index('ix_sales_organization_id', 'sales', ['organization_id'])
    op.create_index('ix_sales_client_sold_at', 'sales', ['client_id', 'sold_at'])

    op.create_table(
        'cashback_programs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('accumulation_type', sa.String(20), nullable=False, server_default='percentage'),
        sa.Column('accumulation_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('accumulation_min_sale_value', sa.Numeric(12, 2), server_default='0'),
        sa.Column('expiry_days', sa.Integer(), nullable=False, server_default='90'),
        sa.Column('redemption_limit_type', sa.String(20), nullable=True),
        sa.Column('redemption_limit_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_cashback_programs_organization_id', 'cashback_programs', ['organization_id'])

    op.create_table(
        'cashback_balances',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('program_id', sa.Integer(), nullable=False),
        sa.Column('available', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('accumulated_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('redeemed_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('expired_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.ForeignKeyConstraint(['program_id'], ['cashback_programs.id']),
        sa.UniqueConstraint('client_id', 'program_id', name='uq_cashback_balance_client_program'),
    )
    op.create_index('ix_cashback_balances_organization_id', 'cashback_balances', ['organization_id'])

    op.create_table(
        'campaigns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('trigger_config', sa.JSON(), nullable=True),
        sa.Column('segments', sa.JSON(), nullable=True),
        sa.Column('allow_recurrence', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('frequency_interval_value', sa.Integer(), server_default='0'),
        sa.Column('frequency_interval_unit', sa.String(20), server_default='days'),
        sa.Column('send_offset_value', sa.Integer(), server_default='0'),
        sa.Column('send_offset_unit', sa.String(20), server_default='days'),
        sa.Column('send_time_block', sa.String(5), nullable=True),
        sa.Column('template_id', sa.String(255), nullable=True),
        sa.Column('attribution_model', sa.String(20), nullable=False, server_default='last_touch'),
        sa.Column('attribution_window_days', sa.Integer(), nullable=False, server_default='14'),
        sa.Column('attribution_applicable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('reward_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reward_type', sa.String(20), nullable=True),
        sa.Column('reward_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('reward_expiry_value', sa.Integer(), nullable=True),
        sa.Column('reward_expiry_unit', sa.String(20), server_default='days'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index(
        'ix_campaigns_org_trigger_active', 'campaigns', ['organization_id', 'trigger_type', 'is_active']
    )

    op.create_table(
        'cashback_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('program_id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('sale_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('campaign_id', sa.Integer(), nullable=True),
        sa.Column('related_transaction_id', sa.Integer(), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('remaining', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('balance_before', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(12, 2), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.ForeignKeyConstraint(['program_id'], ['cashback_programs.id']),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id']),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id']),
        sa.ForeignKeyConstraint(['related_transaction_id'], ['cashback_transactions.id']),
    )
    op.create_index(
        'ix_cashback_txn_expiration_sweep', 'cashback_transactions',
        ['client_id', 'program_id', 'status', 'expires_at']
    )
    op.create_index('ix_cashback_txn_client_sale', 'cashback_transactions', ['client_id', 'sale_id'])

    op.create_table(
        'interactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('campaign_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('origin_sale_id', sa.Integer(), nullable=True),
        sa.Column('scheduled_date', sa.Date(), nullable=False),
        sa.Column('time_block', sa.String(5), nullable=False),
        sa.Column('due_at', sa.DateTime(), nullable=False),
        sa.Column('delivery_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivery_error', sa.String(500), nullable=True),
        sa.Column('provider_message_id', sa.String(255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('attributed_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id']),
        sa.ForeignKeyConstraint(['origin_sale_id'], ['sales.id']),
    )
    op.create_index('ix_interactions_frequency', 'interactions', ['client_id', 'campaign_id', 'created_at'])
    op.create_index('ix_interactions_dispatch', 'interactions', ['scheduled_date', 'time_block', 'executed_at'])
    op.create_index('ix_interactions_due', 'interactions', ['due_at', 'executed_at'])

    op.create_table(
        'campaign_conversions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('interaction_id', sa.Integer(), nullable=False),
        sa.Column('campaign_id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('attribution_model', sa.String(20), nullable=False),
        sa.Column('attribution_weight', sa.Numeric(6, 4), nullable=False, server_default='1'),
        sa.Column('attributed_revenue', sa.Numeric(12, 2), nullable=False),
        sa.Column('sale_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('interaction_at', sa.DateTime(), nullable=False),
        sa.Column('converted_at', sa.DateTime(), nullable=False),
        sa.Column('minutes_to_conversion', sa.Integer(), nullable=False),
        sa.Column('average_ticket', sa.Numeric(12, 2), nullable=True),
        sa.Column('average_cycle_days', sa.Numeric(10, 2), nullable=True),
        sa.Column('purchase_count', sa.Integer(), nullable=True),
        sa.Column('reliable_cycle', sa.Boolean(), server_default=sa.false()),
        sa.Column('days_since_last_purchase', sa.Integer(), nullable=True),
        sa.Column('conversion_type', sa.String(20), nullable=False),
        sa.Column('frequency_delta_days', sa.Numeric(10, 2), nullable=True),
        sa.Column('monetary_delta', sa.Numeric(12, 2), nullable=True),
        sa.Column('monetary_delta_percent', sa.Numeric(10, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id']),
        sa.ForeignKeyConstraint(['interaction_id'], ['interactions.id']),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id']),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.UniqueConstraint('sale_id', 'interaction_id', name='uq_conversion_sale_interaction'),
    )
    op.create_index('ix_conversions_sale', 'campaign_conversions', ['sale_id'])
    op.create_index('ix_conversions_interaction', 'campaign_conversions', ['interaction_id'])


def downgrade():
    """Drop all Loyalty Core tables."""
    op.drop_table('campaign_conversions')
    op.drop_table('interactions')
    op.drop_table('cashback_transactions')
    op.drop_table('campaigns')
    op.drop_table('cashback_balances')
    op.drop_table('cashback_programs')
    op.drop_table('sales')
    op.drop_table('clients')
    op.drop_table('organizations')
