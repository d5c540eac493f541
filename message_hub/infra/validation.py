"""Input validation and sanitization for incoming messages."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from message_hub.models.message import Direction, IncomingMessage, SenderType

MAX_CONTENT_LENGTH = 10000
MAX_ATTACHMENT_SIZE = 25 * 1024 * 1024  # 25MB

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")

_VALID_DIRECTIONS = {d.value for d in Direction}
_VALID_SENDER_TYPES = {t.value for t in SenderType}


@dataclass
class MessageValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(phone))


def validate_incoming_message(message: IncomingMessage) -> MessageValidationResult:
    """
    Validate an incoming message, collecting every problem found.

    Phone number problems are reported as warnings and do not invalidate
    the message. Has no side effects.

    Args:
        message: Message submitted by an upstream connector

    Returns:
        MessageValidationResult with accumulated errors and warnings
    """
    errors: List[str] = []
    warnings: List[str] = []

    text = message.content.text if message.content else None

    # Required fields
    if not text or not sanitize_message_content(text).strip():
        errors.append("Message content text is required")

    sender_type = message.sender.type if message.sender else None
    if not sender_type:
        errors.append("Sender type is required")
    elif sender_type not in _VALID_SENDER_TYPES:
        errors.append(f"Invalid sender type: {sender_type}")

    if message.direction not in _VALID_DIRECTIONS:
        errors.append("Direction must be either inbound or outbound")

    if not message.organization_id:
        errors.append("Organization ID is required")

    if not message.integration_id:
        errors.append("Integration ID is required")

    # Content
    if text and len(text) > MAX_CONTENT_LENGTH:
        errors.append("Message content exceeds maximum length (10,000 characters)")

    # Email
    if message.sender and message.sender.email and not is_valid_email(message.sender.email):
        errors.append("Invalid sender email format")

    if message.recipient and message.recipient.email and not is_valid_email(message.recipient.email):
        errors.append("Invalid recipient email format")

    # Phone (warnings only)
    if message.sender and message.sender.phone and not is_valid_phone(message.sender.phone):
        warnings.append("Sender phone number format may be invalid")

    if message.recipient and message.recipient.phone and not is_valid_phone(message.recipient.phone):
        warnings.append("Recipient phone number format may be invalid")

    # Attachments
    for attachment in message.attachments:
        if not attachment.filename or not attachment.content_type:
            errors.append("Attachment filename and content type are required")
        if attachment.size > MAX_ATTACHMENT_SIZE:
            errors.append(f"Attachment {attachment.filename} exceeds size limit (25MB)")

    return MessageValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def sanitize_message_content(content: Optional[str]) -> str:
    """
    Strip characters that should never reach persistence.

    Removes NUL bytes and control characters, keeping newlines and tabs.
    """
    if not content:
        return ""

    # Remove null bytes
    content = content.replace("\x00", "")

    # Remove control characters except newlines and tabs
    content = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', content)

    return content
