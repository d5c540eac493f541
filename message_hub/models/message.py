"""Message models for ingestion and persistence."""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List

DUPLICATE_MARKER = "Duplicate message"

# Shared model config: camelCase on the wire, snake_case in code
CAMEL_CONFIG = {"populate_by_name": True, "alias_generator": to_camel}


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"
    AI = "ai"


class ContentFormat(str, Enum):
    TEXT = "text"
    HTML = "html"
    MARKDOWN = "markdown"


class MessageStatus(str, Enum):
    """Lifecycle of a persisted message."""
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    SPAM = "spam"


class ProcessingStatus(str, Enum):
    """Outcome of a single ingestion call."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageContent(BaseModel):
    """Message content structure."""
    text: Optional[str] = Field(default="", description="Message text content")
    html: Optional[str] = None
    format: Optional[str] = Field(default=None, description="'text' | 'html' | 'markdown'")
    language: Optional[str] = None

    model_config = {**CAMEL_CONFIG, "frozen": True}


class Sender(BaseModel):
    """Message author."""
    type: Optional[str] = Field(default=None, description="'customer' | 'agent' | 'system' | 'ai'")
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None

    model_config = {**CAMEL_CONFIG, "frozen": True}


class Recipient(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None

    model_config = {**CAMEL_CONFIG, "frozen": True}


class Attachment(BaseModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size: int = Field(default=0, description="Size in bytes")
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    model_config = {**CAMEL_CONFIG, "frozen": True}


class IncomingMessage(BaseModel):
    """
    Raw unit submitted by an upstream connector.

    Fields are deliberately loose (plain strings, optional ids) so that the
    validator can report every problem at once.
    """
    conversation_id: Optional[str] = None
    external_id: Optional[str] = Field(None, description="Provider-native id used for dedup")
    direction: Optional[str] = Field(None, description="'inbound' | 'outbound'")
    content: MessageContent = Field(default_factory=MessageContent)
    sender: Sender = Field(default_factory=Sender)
    recipient: Optional[Recipient] = None
    attachments: List[Attachment] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    organization_id: Optional[str] = None
    integration_id: Optional[str] = None

    model_config = {**CAMEL_CONFIG, "frozen": True}


class PersistedContent(BaseModel):
    text: str
    html: Optional[str] = None
    format: ContentFormat = ContentFormat.TEXT
    language: Optional[str] = None
    encoding: str = "utf-8"

    model_config = CAMEL_CONFIG


class PersistedAttachment(BaseModel):
    filename: str
    content_type: str
    size: int = 0
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    processed: bool = False

    model_config = CAMEL_CONFIG


class PersistedMessage(BaseModel):
    """Durable record created from an IncomingMessage."""
    id: str
    conversation_id: str
    external_id: Optional[str] = None
    direction: Direction
    content: PersistedContent
    sender: Sender
    recipient: Optional[Recipient] = None
    status: MessageStatus = MessageStatus.RECEIVED
    ai_classification: Optional[Any] = None
    ai_response: Optional[Any] = None
    attachments: List[PersistedAttachment] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    model_config = CAMEL_CONFIG

    @property
    def organization_id(self) -> Optional[str]:
        return self.metadata.get("organizationId")

    @property
    def integration_id(self) -> Optional[str]:
        return self.metadata.get("integrationId")


class ProcessingResult(BaseModel):
    """Return value of ingestion. Never persisted."""
    message_id: str
    status: ProcessingStatus
    processing_time_ms: int = 0
    errors: Optional[List[str]] = None
    warnings: Optional[List[str]] = None

    model_config = CAMEL_CONFIG

    @property
    def is_duplicate(self) -> bool:
        return self.status == ProcessingStatus.COMPLETED and DUPLICATE_MARKER in (self.errors or [])
