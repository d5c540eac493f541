"""Persistence collaborator for messages and conversations."""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from message_hub.infra.database import session_scope
from message_hub.infra.errors import DuplicateError, PersistenceError, ValidationError
from message_hub.infra.schema import conversations, messages
from message_hub.models.conversation import Conversation, ConversationStatus, OPEN_CONVERSATION_STATUSES
from message_hub.models.message import PersistedMessage

logger = logging.getLogger(__name__)

_MESSAGE_PATCHABLE = {
    "status",
    "ai_classification",
    "ai_response",
    "attachments",
    "metadata",
    "processed_at",
    "delivered_at",
    "read_at",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_column(value: Any) -> Any:
    """Convert models and enums into JSON/column friendly values."""
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json", exclude_none=True)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_column(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_column(v) for k, v in value.items()}
    return value


def _is_unique_violation(error: IntegrityError) -> bool:
    if getattr(error.orig, "pgcode", None) == "23505":
        return True
    text = str(error.orig).lower()
    return "unique" in text or "duplicate key" in text


class MessageStore:
    """SQLAlchemy Core implementation of the persistence collaborator."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(self, data: Dict[str, Any]) -> PersistedMessage:
        """
        Insert a message and bump its conversation's activity timestamp.

        Raises:
            DuplicateError: (conversation_id, external_id) already exists
            PersistenceError: any other database failure
        """
        now = _utcnow()
        row = {
            "id": str(uuid.uuid4()),
            "conversation_id": data["conversation_id"],
            "external_id": data.get("external_id"),
            "direction": _to_column(data["direction"]),
            "content": _to_column(data["content"]),
            "sender": _to_column(data["sender"]),
            "recipient": _to_column(data.get("recipient")),
            "status": _to_column(data.get("status", "received")),
            "ai_classification": _to_column(data.get("ai_classification")),
            "ai_response": _to_column(data.get("ai_response")),
            "attachments": _to_column(data.get("attachments") or []),
            "metadata": _to_column(data.get("metadata") or {}),
            "created_at": now,
            "updated_at": now,
        }

        try:
            with session_scope(self._session_factory) as session:
                session.execute(insert(messages).values(**row))
                session.execute(
                    update(conversations)
                    .where(conversations.c.id == row["conversation_id"])
                    .values(last_message_at=now, updated_at=now)
                )
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateError(row["external_id"], row["conversation_id"]) from e
            raise PersistenceError(f"Failed to create message: {e.orig}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create message: {e}") from e

        logger.debug("Message created", extra={"message_id": row["id"], "conversation_id": row["conversation_id"]})
        return PersistedMessage.model_validate(row)

    def get_message_by_id(self, message_id: str) -> Optional[PersistedMessage]:
        try:
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(messages).where(messages.c.id == message_id)
                ).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load message: {e}", context={"message_id": message_id}) from e
        return PersistedMessage.model_validate(dict(row)) if row else None

    def update_message(self, message_id: str, patch: Dict[str, Any]) -> Optional[PersistedMessage]:
        """Apply ``patch`` and return the updated message, or None if it does not exist."""
        unknown = set(patch) - _MESSAGE_PATCHABLE
        if unknown:
            raise ValidationError([f"Cannot update message fields: {', '.join(sorted(unknown))}"])

        values = {key: _to_column(value) for key, value in patch.items()}
        values["updated_at"] = _utcnow()

        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(messages).where(messages.c.id == message_id).values(**values)
                )
                if result.rowcount == 0:
                    return None
                row = session.execute(
                    select(messages).where(messages.c.id == message_id)
                ).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update message: {e}", context={"message_id": message_id}) from e
        return PersistedMessage.model_validate(dict(row))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        try:
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(conversations).where(conversations.c.id == conversation_id)
                ).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load conversation: {e}") from e
        return Conversation.model_validate(dict(row)) if row else None

    def find_open_conversations_by_customer(self, email: str, organization_id: str) -> List[Conversation]:
        """Open conversations for a customer, most recent activity first."""
        open_statuses = [s.value for s in OPEN_CONVERSATION_STATUSES]
        activity = func.coalesce(conversations.c.last_message_at, conversations.c.created_at)
        try:
            with session_scope(self._session_factory) as session:
                rows = session.execute(
                    select(conversations)
                    .where(
                        conversations.c.organization_id == organization_id,
                        conversations.c.customer_email == email,
                        conversations.c.status.in_(open_statuses),
                    )
                    .order_by(activity.desc())
                ).mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to find conversations: {e}") from e
        return [Conversation.model_validate(dict(row)) for row in rows]

    def create_conversation(
        self,
        organization_id: str,
        integration_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        subject: Optional[str] = None,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        now = _utcnow()
        row = {
            "id": conversation_id or str(uuid.uuid4()),
            "organization_id": organization_id,
            "integration_id": integration_id,
            "external_id": external_id,
            "customer_email": customer_email,
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "subject": subject,
            "status": ConversationStatus.OPEN.value,
            "priority": "normal",
            "tags": [],
            "metadata": metadata or {},
            "last_message_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with session_scope(self._session_factory) as session:
                session.execute(insert(conversations).values(**row))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create conversation: {e}") from e

        logger.info("Conversation created", extra={"conversation_id": row["id"], "organization_id": organization_id})
        return Conversation.model_validate(row)

