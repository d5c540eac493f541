"""Error taxonomy for the ingestion and queueing core."""

from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError


class ErrorCategory(str, Enum):
    """Categories of errors for better handling."""
    VALIDATION = "validation"  # Bad input, never retried
    DUPLICATE = "duplicate"  # Completed no-op
    PERSISTENCE = "persistence"  # Database failures
    PUBLISH = "publish"  # Broker publish failures after persistence
    TOPOLOGY = "topology"  # Fatal at startup
    CONNECTION = "connection"  # Broker/cache connectivity
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class MessageHubError(Exception):
    """Base exception for all expected failure modes."""
    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.category = category
        self.retryable = retryable
        self.context = context or {}
        super().__init__(message)


class ValidationError(MessageHubError):
    """Incoming message failed validation. Carries every problem found."""
    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(
            f"Message validation failed: {', '.join(self.errors)}",
            ErrorCategory.VALIDATION,
            retryable=False,
        )


class DuplicateError(MessageHubError):
    """Message was already ingested."""
    def __init__(self, external_id: Optional[str], conversation_id: Optional[str] = None):
        self.external_id = external_id
        self.conversation_id = conversation_id
        super().__init__(
            "Duplicate message",
            ErrorCategory.DUPLICATE,
            retryable=False,
            context={"external_id": external_id, "conversation_id": conversation_id},
        )


class PersistenceError(MessageHubError):
    """Persistence collaborator failed."""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.PERSISTENCE, retryable=True, context=context)


class PublishError(MessageHubError):
    """Broker refused or could not accept a publish."""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.PUBLISH, retryable=True, context=context)


class TopologyError(MessageHubError):
    """Exchange/queue redeclared with incompatible parameters."""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.TOPOLOGY, retryable=False, context=context)


class BrokerConnectionError(MessageHubError):
    """Broker connection could not be established or was lost."""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONNECTION, retryable=True, context=context)


class NotFoundError(MessageHubError):
    """Requested resource does not exist."""
    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = (
            f"{resource} with identifier '{identifier}' not found"
            if identifier else f"{resource} not found"
        )
        super().__init__(
            message,
            ErrorCategory.NOT_FOUND,
            retryable=False,
            context={"resource": resource, "identifier": identifier},
        )


def classify_error(error: Exception) -> Tuple[ErrorCategory, bool]:
    """
    Classify an error into a category and determine if it's retryable.

    Args:
        error: The exception to classify

    Returns:
        Tuple of (category, retryable)
    """
    if isinstance(error, MessageHubError):
        return error.category, error.retryable

    if isinstance(error, (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError)):
        return ErrorCategory.CONNECTION, True

    if isinstance(error, IntegrityError):
        return ErrorCategory.PERSISTENCE, False

    if isinstance(error, OperationalError):
        return ErrorCategory.PERSISTENCE, True

    if isinstance(error, SQLAlchemyError):
        return ErrorCategory.PERSISTENCE, False

    error_str = str(error).lower()
    if any(keyword in error_str for keyword in ["connection", "timeout", "refused"]):
        return ErrorCategory.CONNECTION, True

    return ErrorCategory.UNKNOWN, False
