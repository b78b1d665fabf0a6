"""channel integrations and message audit tables

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # channel_integrations: tokens hold vault ciphertext, never plaintext
    op.create_table(
        'channel_integrations',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('access_token', sa.Text()),
        sa.Column('webhook_url', sa.String()),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('config', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_channel_integrations_tenant_id', 'channel_integrations', ['tenant_id'])
    op.create_index('ix_channel_integrations_platform_tenant', 'channel_integrations', ['platform', 'tenant_id'])

    # inbound_messages: raw webhook bodies, audit/replay only
    op.create_table(
        'inbound_messages',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('payload', sa.LargeBinary()),
        sa.Column('received_at', sa.DateTime(), server_default=sa.text('NOW()')),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_inbound_messages_platform', 'inbound_messages', ['platform'])

    # outbound_message_logs: queued -> sent|failed, finalized once
    op.create_table(
        'outbound_message_logs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('channel_id', sa.String(), nullable=False),
        sa.Column('recipient', sa.String(), nullable=False),
        sa.Column('content', postgresql.JSONB(astext_type=sa.Text())),
        sa.Column('status', sa.String(), nullable=False, server_default='queued'),
        sa.Column('response', postgresql.JSONB(astext_type=sa.Text())),
        sa.Column('timestamp', sa.DateTime(), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_outbound_message_logs_channel_id', 'outbound_message_logs', ['channel_id'])


def downgrade() -> None:
    op.drop_index('ix_outbound_message_logs_channel_id', table_name='outbound_message_logs')
    op.drop_table('outbound_message_logs')
    op.drop_index('ix_inbound_messages_platform', table_name='inbound_messages')
    op.drop_table('inbound_messages')
    op.drop_index('ix_channel_integrations_platform_tenant', table_name='channel_integrations')
    op.drop_index('ix_channel_integrations_tenant_id', table_name='channel_integrations')
    op.drop_table('channel_integrations')
