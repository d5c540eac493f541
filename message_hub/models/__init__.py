from .message import (
    IncomingMessage,
    MessageContent,
    Sender,
    Recipient,
    Attachment,
    PersistedMessage,
    ProcessingResult,
    MessageStatus,
    ProcessingStatus,
)
from .conversation import Conversation, ConversationStatus
from .queue import QueueMessage, HandlerResult, Exchange, Queue, Binding, QueueInfo

__all__ = [
    "IncomingMessage",
    "MessageContent",
    "Sender",
    "Recipient",
    "Attachment",
    "PersistedMessage",
    "ProcessingResult",
    "MessageStatus",
    "ProcessingStatus",
    "Conversation",
    "ConversationStatus",
    "QueueMessage",
    "HandlerResult",
    "Exchange",
    "Queue",
    "Binding",
    "QueueInfo",
]
