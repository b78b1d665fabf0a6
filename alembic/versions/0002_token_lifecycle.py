"""token lifecycle columns on channel_integrations

Revision ID: 0002_token_lifecycle
Revises: 0001_initial
Create Date: 2026-10-19 00:00:01

"""
from alembic import op
import sqlalchemy as sa


revision = '0002_token_lifecycle'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('channel_integrations', sa.Column('refresh_token', sa.Text(), nullable=True))
    op.add_column('channel_integrations', sa.Column('token_expiry', sa.DateTime(), nullable=True))
    op.add_column('channel_integrations', sa.Column('last_rotated', sa.DateTime(), nullable=True))
    # the rotation scan only looks at active rows close to expiry
    op.create_index('ix_channel_integrations_token_expiry', 'channel_integrations', ['token_expiry'])


def downgrade() -> None:
    op.drop_index('ix_channel_integrations_token_expiry', table_name='channel_integrations')
    op.drop_column('channel_integrations', 'last_rotated')
    op.drop_column('channel_integrations', 'token_expiry')
    op.drop_column('channel_integrations', 'refresh_token')
