"""Structured logging configuration."""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger
from message_hub.infra.config import config
from message_hub.infra.errors import classify_error


def setup_logging():
    """Setup structured JSON logging."""
    # Create logger
    logger = logging.getLogger("message_hub")
    if config.DEBUG:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

    # Remove existing handlers
    logger.handlers = []

    # Create JSON formatter
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Set levels for third-party loggers
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    return logger


# Initialize logging
app_logger = setup_logging()

message_logger = logging.getLogger("message_hub.messages")
queue_logger = logging.getLogger("message_hub.queue")


def log_message_processing(message_id: str, stage: str, duration_ms: Optional[int] = None, **context) -> None:
    """Log a message pipeline stage."""
    message_logger.info(
        f"Message {stage}",
        extra={"message_id": message_id, "stage": stage, "duration_ms": duration_ms, **context},
    )


def log_message_error(message_id: str, error: Exception, **context) -> None:
    """Log a message pipeline failure."""
    category, retryable = classify_error(error)
    message_logger.error(
        f"Message processing error: {error}",
        extra={
            "message_id": message_id,
            "error": str(error),
            "error_type": type(error).__name__,
            "error_category": category.value,
            "retryable": retryable,
            **context,
        },
    )


def log_queue_job(job_id: str, job_type: str, action: str, **context) -> None:
    """Log a queue lifecycle event (published, retrying, moved_to_dlq, ...)."""
    queue_logger.info(
        f"Queue job {action}",
        extra={"job_id": job_id, "job_type": job_type, "action": action, **context},
    )


def log_queue_error(job_id: str, job_type: str, error: Exception, **context) -> None:
    """Log a queue operation failure."""
    category, retryable = classify_error(error)
    queue_logger.error(
        f"Queue job error: {error}",
        extra={
            "job_id": job_id,
            "job_type": job_type,
            "error": str(error),
            "error_type": type(error).__name__,
            "error_category": category.value,
            "retryable": retryable,
            **context,
        },
    )
