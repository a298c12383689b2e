"""add broadcast campaigns

Revision ID: add_campaigns_001
Revises:
Create Date: 2026-10-17

Creates the tables owned by the campaign engine. customers / orders / carts
belong to the storefront schema and are only read (plus reminder flags).
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'add_campaigns_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'campaigns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),

        sa.Column('campaign_id', sa.String(length=40), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),

        # Message
        sa.Column('message_type', sa.String(length=20), nullable=False, server_default='text'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('template_name', sa.String(length=255), nullable=True),
        sa.Column('template_params', sa.JSON(), nullable=False),
        sa.Column('media_url', sa.String(length=1000), nullable=True),
        sa.Column('buttons', sa.JSON(), nullable=False),

        # Targeting
        sa.Column('target_type', sa.String(length=20), nullable=False, server_default='all'),
        sa.Column('target_labels', sa.JSON(), nullable=False),
        sa.Column('target_segment', sa.String(length=100), nullable=True),
        sa.Column('target_filters', sa.JSON(), nullable=False),

        # Counters
        sa.Column('target_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('read_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('send_rate', sa.Integer(), nullable=True, server_default='30'),

        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('enrolled_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(length=100), nullable=True),

        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_campaigns_tenant_id', 'campaigns', ['tenant_id'])
    op.create_index('ix_campaigns_campaign_id', 'campaigns', ['campaign_id'], unique=True)
    op.create_index('ix_campaigns_status', 'campaigns', ['status'])
    op.create_index('ix_campaigns_scheduled_at', 'campaigns', ['scheduled_at'])

    op.create_table(
        'campaign_recipients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),

        sa.Column('campaign_id', sa.String(length=40), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=False),

        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('message_id', sa.String(length=255), nullable=True),
        sa.Column('error_message', sa.String(length=500), nullable=True),

        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),

        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.campaign_id'], ondelete='CASCADE'),
        sa.UniqueConstraint('campaign_id', 'phone', name='uq_campaign_recipient_phone')
    )
    op.create_index('ix_campaign_recipients_tenant_id', 'campaign_recipients', ['tenant_id'])
    op.create_index('ix_campaign_recipients_message_id', 'campaign_recipients', ['message_id'])
    op.create_index('ix_campaign_recipients_campaign_status', 'campaign_recipients', ['campaign_id', 'status'])

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),

        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('event_name', sa.String(length=100), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('order_id', sa.String(length=50), nullable=True),
        sa.Column('campaign_id', sa.String(length=40), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),

        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_events_tenant_id', 'events', ['tenant_id'])
    op.create_index('ix_events_phone', 'events', ['phone'])
    op.create_index('ix_events_order_id', 'events', ['order_id'])
    op.create_index('ix_events_type_name_created', 'events', ['event_type', 'event_name', 'created_at'])


def downgrade():
    op.drop_index('ix_events_type_name_created', table_name='events')
    op.drop_index('ix_events_order_id', table_name='events')
    op.drop_index('ix_events_phone', table_name='events')
    op.drop_index('ix_events_tenant_id', table_name='events')
    op.drop_table('events')

    op.drop_index('ix_campaign_recipients_campaign_status', table_name='campaign_recipients')
    op.drop_index('ix_campaign_recipients_message_id', table_name='campaign_recipients')
    op.drop_index('ix_campaign_recipients_tenant_id', table_name='campaign_recipients')
    op.drop_table('campaign_recipients')

    op.drop_index('ix_campaigns_scheduled_at', table_name='campaigns')
    op.drop_index('ix_campaigns_status', table_name='campaigns')
    op.drop_index('ix_campaigns_campaign_id', table_name='campaigns')
    op.drop_index('ix_campaigns_tenant_id', table_name='campaigns')
    op.drop_table('campaigns')
