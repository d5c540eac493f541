"""Broker envelope, typed payloads and topology models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from message_hub.models.message import CAMEL_CONFIG


class MessageType:
    """Known envelope types."""
    MESSAGE_PROCESS = "message.process"
    AI_CLASSIFY = "ai.classify"


class QueueNames:
    MESSAGE_PROCESSING = "message.processing"
    MESSAGE_ROUTING = "message.routing"
    MESSAGE_DELIVERY = "message.delivery"
    MESSAGE_RETRY = "message.retry"
    MESSAGE_DLQ = "message.dlq"
    WEBHOOK_DELIVERY = "webhook.delivery"
    AI_PROCESSING = "ai.processing"

    @classmethod
    def all(cls) -> List[str]:
        return [
            cls.MESSAGE_PROCESSING,
            cls.MESSAGE_ROUTING,
            cls.MESSAGE_DELIVERY,
            cls.MESSAGE_RETRY,
            cls.MESSAGE_DLQ,
            cls.WEBHOOK_DELIVERY,
            cls.AI_PROCESSING,
        ]


class ExchangeNames:
    MESSAGE_EVENTS = "message.events"
    MESSAGE_ROUTING = "message.routing"
    WEBHOOK_EVENTS = "webhook.events"


class HandlerResult(str, Enum):
    """What a consumer handler decided about a delivery."""
    ACK = "ack"  # Done, remove from queue
    RETRY = "retry"  # Failed, run the retry protocol
    REJECT = "reject"  # Poison message, dead-letter immediately


# ============================================================================
# Payload schemas, one per known envelope type
# ============================================================================

class MessageProcessData(BaseModel):
    message_id: str
    conversation_id: str
    direction: str
    organization_id: Optional[str] = None
    integration_id: Optional[str] = None

    model_config = CAMEL_CONFIG


class ClassifyContext(BaseModel):
    conversation_id: str
    organization_id: Optional[str] = None

    model_config = CAMEL_CONFIG


class AIClassifyData(BaseModel):
    message_id: str
    text: str
    context: ClassifyContext

    model_config = CAMEL_CONFIG


class OpaqueData(BaseModel):
    """Fallback for envelope types this service does not know about."""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


PayloadData = Union[MessageProcessData, AIClassifyData, OpaqueData]

PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    MessageType.MESSAGE_PROCESS: MessageProcessData,
    MessageType.AI_CLASSIFY: AIClassifyData,
}


class QueueMessage(BaseModel):
    """
    Unit of work on the broker.

    Wire envelope: ``{id, type, data, timestamp, attempts, maxAttempts}`` plus
    ``delay`` (ms) when redelivery is delayed and ``error``/``failedAt`` once
    dead-lettered.
    """
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    delay_ms: Optional[int] = Field(default=None, alias="delay")
    error: Optional[str] = None
    failed_at: Optional[datetime] = None

    model_config = CAMEL_CONFIG

    @classmethod
    def create(cls, type: str, data: Union[BaseModel, Dict[str, Any]], max_attempts: int = 3) -> "QueueMessage":
        """Build a fresh envelope with a new id and zero attempts."""
        if isinstance(data, BaseModel):
            data = data.model_dump(by_alias=True, mode="json", exclude_none=True)
        return cls(
            id=str(uuid.uuid4()),
            type=type,
            data=data,
            timestamp=datetime.now(timezone.utc),
            attempts=0,
            max_attempts=max_attempts,
        )

    @classmethod
    def from_wire(cls, body: Dict[str, Any]) -> "QueueMessage":
        return cls.model_validate(body)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def payload(self) -> PayloadData:
        """Return ``data`` parsed into the schema registered for ``type``."""
        schema = PAYLOAD_SCHEMAS.get(self.type)
        if schema is None:
            return OpaqueData(type=self.type, data=self.data)
        return schema.model_validate(self.data)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


# ============================================================================
# Topology
# ============================================================================

class ExchangeKind(str, Enum):
    TOPIC = "topic"
    DIRECT = "direct"


@dataclass(frozen=True)
class Exchange:
    name: str
    kind: ExchangeKind = ExchangeKind.TOPIC
    durable: bool = True


@dataclass(frozen=True)
class Queue:
    name: str
    durable: bool = True


@dataclass(frozen=True)
class Binding:
    exchange: str
    queue: str
    routing_key: str


@dataclass
class QueueInfo:
    queue: str
    message_count: int
    consumer_count: int
    delayed_count: int = 0


@dataclass
class Topology:
    exchanges: List[Exchange] = field(default_factory=list)
    queues: List[Queue] = field(default_factory=list)
    bindings: List[Binding] = field(default_factory=list)

    def as_args(self) -> Tuple[List[Exchange], List[Queue], List[Binding]]:
        return self.exchanges, self.queues, self.bindings


def default_topology() -> Topology:
    """Exchanges, queues and bindings the service declares at startup."""
    return Topology(
        exchanges=[
            Exchange(ExchangeNames.MESSAGE_EVENTS, ExchangeKind.TOPIC),
            Exchange(ExchangeNames.MESSAGE_ROUTING, ExchangeKind.DIRECT),
            Exchange(ExchangeNames.WEBHOOK_EVENTS, ExchangeKind.TOPIC),
        ],
        queues=[Queue(name) for name in QueueNames.all()],
        bindings=[
            Binding(ExchangeNames.MESSAGE_EVENTS, QueueNames.MESSAGE_PROCESSING, "message.received"),
            Binding(ExchangeNames.MESSAGE_ROUTING, QueueNames.MESSAGE_ROUTING, "route"),
            Binding(ExchangeNames.WEBHOOK_EVENTS, QueueNames.WEBHOOK_DELIVERY, "webhook.*"),
        ],
    )
