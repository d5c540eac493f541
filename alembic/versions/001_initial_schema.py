"""Initial schema

Revision ID: 001
Revises: 
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('integration_id', sa.String(64)),
        sa.Column('external_id', sa.String(255)),
        sa.Column('customer_email', sa.String(320)),
        sa.Column('customer_name', sa.String(255)),
        sa.Column('customer_phone', sa.String(64)),
        sa.Column('subject', sa.String(500)),
        sa.Column('status', sa.String(32), nullable=False, server_default='open'),
        sa.Column('priority', sa.String(16), nullable=False, server_default='normal'),
        sa.Column('tags', sa.JSON, nullable=False),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('last_message_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'ix_conversations_customer',
        'conversations',
        ['organization_id', 'customer_email', 'status'],
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('external_id', sa.String(255)),
        sa.Column('direction', sa.String(16), nullable=False),
        sa.Column('content', sa.JSON, nullable=False),
        sa.Column('sender', sa.JSON, nullable=False),
        sa.Column('recipient', sa.JSON),
        sa.Column('status', sa.String(32), nullable=False, server_default='received'),
        sa.Column('ai_classification', sa.JSON),
        sa.Column('ai_response', sa.JSON),
        sa.Column('attachments', sa.JSON, nullable=False),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('delivered_at', sa.DateTime(timezone=True)),
        sa.Column('read_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('conversation_id', 'external_id', name='uq_messages_conversation_external'),
    )
    op.create_index(
        'ix_messages_conversation_created',
        'messages',
        ['conversation_id', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_messages_conversation_created', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_conversations_customer', table_name='conversations')
    op.drop_table('conversations')
