"""
Ingestion pipeline.

Turns an IncomingMessage into a persisted, queued unit of work:
validate -> deduplicate -> resolve conversation -> transform -> persist ->
publish -> cache. Expected failures are reported in the ProcessingResult and
never raised to the caller.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.cache import RedisCache, duplicate_key, message_cache_key
from message_hub.infra.errors import DuplicateError, MessageHubError, PersistenceError, ValidationError
from message_hub.infra.logging import log_message_error, log_message_processing
from message_hub.infra.metrics import (
    message_duplicates_total,
    message_ingestion_duration,
    message_status_updates_total,
    message_validation_failures_total,
    messages_ingested_total,
)
from message_hub.infra.validation import sanitize_message_content, validate_incoming_message
from message_hub.models.message import (
    DUPLICATE_MARKER,
    ContentFormat,
    Direction,
    IncomingMessage,
    MessageStatus,
    PersistedAttachment,
    PersistedContent,
    PersistedMessage,
    ProcessingResult,
    ProcessingStatus,
)
from message_hub.models.queue import (
    AIClassifyData,
    ClassifyContext,
    MessageProcessData,
    MessageType,
    QueueMessage,
    QueueNames,
)
from message_hub.services.message_store import MessageStore

logger = logging.getLogger(__name__)

# Status -> timestamp field stamped when the status is applied
STATUS_TIMESTAMPS = {
    MessageStatus.PROCESSED: "processed_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.READ: "read_at",
}


def _content_format(value: Optional[str]) -> ContentFormat:
    try:
        return ContentFormat(value) if value else ContentFormat.TEXT
    except ValueError:
        return ContentFormat.TEXT


class IngestionPipeline:
    """Ingestion entry point and status-update callback for downstream workers."""

    def __init__(
        self,
        store: MessageStore,
        cache: RedisCache,
        broker: BrokerAdapter,
        *,
        dedup_enabled: bool = True,
        max_attempts: int = 3,
        dedup_ttl_seconds: int = 3600,
        cache_ttl_seconds: int = 3600,
    ):
        self.store = store
        self.cache = cache
        self.broker = broker
        self.dedup_enabled = dedup_enabled
        self.max_attempts = max_attempts
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.cache_ttl_seconds = cache_ttl_seconds

    def process_incoming_message(self, incoming: IncomingMessage) -> ProcessingResult:
        """
        Run the full ingestion sequence for one message.

        Returns:
            ProcessingResult with status ``queued`` on success, ``completed``
            with the duplicate marker for duplicates, ``failed`` otherwise.
        """
        started = time.time()
        processing_id = str(uuid.uuid4())
        direction = incoming.direction if incoming.direction in (Direction.INBOUND, Direction.OUTBOUND) else "unknown"

        log_message_processing(processing_id, "processing_started", 0, direction=incoming.direction)

        # 1. Validate
        validation = validate_incoming_message(incoming)
        if not validation.is_valid:
            message_validation_failures_total.inc()
            log_message_error(processing_id, ValidationError(validation.errors, validation.warnings))
            return self._result(
                processing_id, ProcessingStatus.FAILED, started, direction,
                errors=validation.errors, warnings=validation.warnings,
            )

        # 2. Deduplicate
        dedup_key = None
        if self.dedup_enabled and incoming.external_id:
            dedup_key = duplicate_key(incoming.external_id, incoming.conversation_id)
            if self._check_duplicate(dedup_key):
                logger.warning(
                    "Duplicate message detected",
                    extra={"external_id": incoming.external_id, "conversation_id": incoming.conversation_id},
                )
                return self._duplicate_result(started, direction)

        # 3-5. Resolve conversation, transform, persist
        try:
            conversation_id = self._resolve_conversation(incoming)
            saved = self.store.create_message(self._transform(incoming, conversation_id))
        except DuplicateError:
            message_duplicates_total.inc()
            logger.warning(
                "Duplicate message rejected by store",
                extra={"external_id": incoming.external_id, "conversation_id": incoming.conversation_id},
            )
            return self._duplicate_result(started, direction)
        except PersistenceError as e:
            if dedup_key:
                # Nothing was stored; let a resubmission through
                self.cache.delete(dedup_key)
            log_message_error(processing_id, e, stage="persist")
            return self._result(processing_id, ProcessingStatus.FAILED, started, direction, errors=[e.message])

        # 6. Publish for downstream work
        try:
            self._queue_for_processing(saved)
        except MessageHubError as e:
            log_message_error(
                processing_id, e, stage="publish", persisted_message_id=saved.id,
            )
            return self._result(processing_id, ProcessingStatus.FAILED, started, direction, errors=[e.message])

        # 7. Cache (best effort)
        self._cache_message(saved)

        result = self._result(
            saved.id, ProcessingStatus.QUEUED, started, direction, warnings=validation.warnings,
        )
        log_message_processing(
            saved.id, "processing_completed", result.processing_time_ms,
            conversation_id=saved.conversation_id,
        )
        return result

    def update_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[PersistedMessage]:
        """
        Apply a status reported by a downstream consumer.

        Stamps processed_at/delivered_at/read_at for the matching status and
        refreshes the cache. Returns None if the message does not exist.
        """
        status = MessageStatus(status)
        patch: Dict[str, Any] = {**(extra or {}), "status": status}
        timestamp_field = STATUS_TIMESTAMPS.get(status)
        if timestamp_field:
            patch[timestamp_field] = datetime.now(timezone.utc)

        try:
            updated = self.store.update_message(message_id, patch)
        except MessageHubError as e:
            log_message_error(message_id, e, stage="status_update")
            raise

        if updated is None:
            logger.warning("Status update for unknown message", extra={"message_id": message_id, "status": status.value})
            return None

        message_status_updates_total.labels(status=status.value).inc()
        self._cache_message(updated)
        log_message_processing(message_id, f"status_updated_to_{status.value}")
        return updated

    def get_message(self, message_id: str) -> Optional[PersistedMessage]:
        """Cache-first lookup, falling back to the store and refilling the cache."""
        cached = self.cache.get(message_cache_key(message_id))
        if cached:
            try:
                return PersistedMessage.model_validate(cached)
            except ValueError:
                logger.warning("Discarding unreadable cache entry", extra={"message_id": message_id})

        message = self.store.get_message_by_id(message_id)
        if message is not None:
            self._cache_message(message)
        return message

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_duplicate(self, key: str) -> bool:
        # Cache outage fails open: treat as not a duplicate
        if self.cache.exists(key, on_error=False):
            message_duplicates_total.inc()
            return True
        self.cache.set(key, True, self.dedup_ttl_seconds)
        return False

    def _resolve_conversation(self, incoming: IncomingMessage) -> str:
        if incoming.conversation_id:
            conversation = self.store.get_conversation_by_id(incoming.conversation_id)
            if conversation:
                return conversation.id

        if incoming.direction == Direction.INBOUND and incoming.sender.email:
            candidates = self.store.find_open_conversations_by_customer(
                incoming.sender.email, incoming.organization_id,
            )
            for conversation in candidates:
                if conversation.is_open:
                    return conversation.id

        conversation = self.store.create_conversation(
            organization_id=incoming.organization_id,
            integration_id=incoming.integration_id,
            customer_email=incoming.sender.email,
            customer_name=incoming.sender.name,
            customer_phone=incoming.sender.phone,
            subject=incoming.metadata.get("subject"),
        )
        return conversation.id

    def _transform(self, incoming: IncomingMessage, conversation_id: str) -> Dict[str, Any]:
        content = incoming.content
        return {
            "conversation_id": conversation_id,
            "external_id": incoming.external_id,
            "direction": Direction(incoming.direction),
            "content": PersistedContent(
                text=sanitize_message_content(content.text),
                html=content.html,
                format=_content_format(content.format),
                language=content.language,
            ),
            "sender": incoming.sender,
            "recipient": incoming.recipient,
            "status": MessageStatus.RECEIVED,
            "attachments": [
                PersistedAttachment(
                    filename=a.filename,
                    content_type=a.content_type,
                    size=a.size,
                    url=a.url,
                    thumbnail_url=a.thumbnail_url,
                )
                for a in incoming.attachments
            ],
            "metadata": {
                **incoming.metadata,
                "organizationId": incoming.organization_id,
                "integrationId": incoming.integration_id,
                "receivedAt": datetime.now(timezone.utc).isoformat(),
            },
        }

    def _queue_for_processing(self, message: PersistedMessage) -> None:
        process = QueueMessage.create(
            MessageType.MESSAGE_PROCESS,
            MessageProcessData(
                message_id=message.id,
                conversation_id=message.conversation_id,
                direction=message.direction.value,
                organization_id=message.organization_id,
                integration_id=message.integration_id,
            ),
            max_attempts=self.max_attempts,
        )
        self.broker.publish(QueueNames.MESSAGE_PROCESSING, None, process)

        if message.direction == Direction.INBOUND:
            classify = QueueMessage.create(
                MessageType.AI_CLASSIFY,
                AIClassifyData(
                    message_id=message.id,
                    text=message.content.text,
                    context=ClassifyContext(
                        conversation_id=message.conversation_id,
                        organization_id=message.organization_id,
                    ),
                ),
                max_attempts=self.max_attempts,
            )
            self.broker.publish(QueueNames.AI_PROCESSING, None, classify)

    def _cache_message(self, message: PersistedMessage) -> None:
        stored = self.cache.set(
            message_cache_key(message.id),
            message.model_dump(by_alias=True, mode="json"),
            self.cache_ttl_seconds,
        )
        if not stored:
            logger.error("Error caching message", extra={"message_id": message.id})

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _duplicate_result(self, started: float, direction: str) -> ProcessingResult:
        return self._result("", ProcessingStatus.COMPLETED, started, direction, errors=[DUPLICATE_MARKER])

    def _result(
        self,
        message_id: str,
        status: ProcessingStatus,
        started: float,
        direction: str,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ) -> ProcessingResult:
        elapsed = time.time() - started
        messages_ingested_total.labels(direction=direction, status=status.value).inc()
        message_ingestion_duration.labels(direction=direction).observe(elapsed)
        return ProcessingResult(
            message_id=message_id,
            status=status,
            processing_time_ms=int(elapsed * 1000),
            errors=errors or None,
            warnings=warnings or None,
        )
