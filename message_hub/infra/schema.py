"""Table definitions for conversations and messages."""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

conversations = Table(
    "conversations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", String(64), nullable=False),
    Column("integration_id", String(64)),
    Column("external_id", String(255)),
    Column("customer_email", String(320)),
    Column("customer_name", String(255)),
    Column("customer_phone", String(64)),
    Column("subject", String(500)),
    Column("status", String(32), nullable=False, default="open"),
    Column("priority", String(16), nullable=False, default="normal"),
    Column("tags", JSON, nullable=False, default=list),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("last_message_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_conversations_customer", "organization_id", "customer_email", "status"),
)

messages = Table(
    "messages",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("conversation_id", String(36), ForeignKey("conversations.id"), nullable=False),
    Column("external_id", String(255)),
    Column("direction", String(16), nullable=False),
    Column("content", JSON, nullable=False),
    Column("sender", JSON, nullable=False),
    Column("recipient", JSON),
    Column("status", String(32), nullable=False, default="received"),
    Column("ai_classification", JSON),
    Column("ai_response", JSON),
    Column("attachments", JSON, nullable=False, default=list),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("read_at", DateTime(timezone=True)),
    # Authoritative dedup backstop
    UniqueConstraint("conversation_id", "external_id", name="uq_messages_conversation_external"),
    Index("ix_messages_conversation_created", "conversation_id", "created_at"),
)
