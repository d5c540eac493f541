"""API request/response models."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from message_hub.models.message import CAMEL_CONFIG, MessageStatus
from message_hub.models.queue import QueueInfo


# ============================================================================
# Messages Models
# ============================================================================

class StatusExtra(BaseModel):
    """Optional fields a downstream worker may report along with a status."""
    ai_classification: Optional[Dict[str, Any]] = None
    ai_response: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    processed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    model_config = CAMEL_CONFIG


class StatusUpdateRequest(BaseModel):
    """Request model for a message status update."""
    status: MessageStatus = Field(..., description="New message status")
    extra: Optional[StatusExtra] = Field(None, description="Additional fields to persist")

    model_config = CAMEL_CONFIG

    def patch(self) -> Dict[str, Any]:
        if self.extra is None:
            return {}
        return self.extra.model_dump(exclude_none=True)


# ============================================================================
# Queue Models
# ============================================================================

class QueueInfoResponse(BaseModel):
    """Response model for queue inspection."""
    queue: str
    message_count: int = Field(..., description="Ready messages")
    consumer_count: int = Field(..., description="Live consumers")
    delayed_count: int = Field(default=0, description="Messages waiting for their redelivery delay")

    model_config = CAMEL_CONFIG

    @classmethod
    def from_info(cls, info: QueueInfo) -> "QueueInfoResponse":
        return cls(
            queue=info.queue,
            message_count=info.message_count,
            consumer_count=info.consumer_count,
            delayed_count=info.delayed_count,
        )


class PurgeResponse(BaseModel):
    """Response model for queue purge."""
    queue: str
    purged: int
