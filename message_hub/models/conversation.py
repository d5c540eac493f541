"""Conversation model."""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List

from message_hub.models.message import CAMEL_CONFIG


class ConversationStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_CUSTOMER = "waiting_for_customer"
    WAITING_FOR_AGENT = "waiting_for_agent"
    RESOLVED = "resolved"
    CLOSED = "closed"
    SPAM = "spam"


# Statuses an inbound customer message may be threaded into
OPEN_CONVERSATION_STATUSES = (
    ConversationStatus.OPEN,
    ConversationStatus.IN_PROGRESS,
    ConversationStatus.WAITING_FOR_CUSTOMER,
)


class Conversation(BaseModel):
    id: str
    organization_id: str
    integration_id: Optional[str] = None
    external_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    subject: Optional[str] = None
    status: ConversationStatus = ConversationStatus.OPEN
    priority: str = "normal"
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = CAMEL_CONFIG

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_CONVERSATION_STATUSES
