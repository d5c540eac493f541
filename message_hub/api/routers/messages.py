"""Messages API router."""

from fastapi import APIRouter, Depends, Response, status

from message_hub.api.dependencies import get_pipeline
from message_hub.api.models import StatusUpdateRequest
from message_hub.infra.errors import NotFoundError
from message_hub.models.message import IncomingMessage, PersistedMessage, ProcessingResult, ProcessingStatus
from message_hub.services.ingestion_pipeline import IngestionPipeline

router = APIRouter(prefix="/v1")


@router.post("/messages", tags=["Messages"], response_model=ProcessingResult)
def submit_message(
    message: IncomingMessage,
    response: Response,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """
    Submit a message from an upstream connector.

    Returns 202 when the message was persisted and queued, 200 for a
    duplicate (``completed``) or a rejected/failed submission (``failed``).

    **Example Request:**
    ```json
    {
        "direction": "inbound",
        "content": {"text": "Hello"},
        "sender": {"type": "customer", "email": "a@b.com"},
        "organizationId": "org1",
        "integrationId": "int1"
    }
    ```
    """
    result = pipeline.process_incoming_message(message)
    if result.status == ProcessingStatus.QUEUED:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.get("/messages/{message_id}", tags=["Messages"], response_model=PersistedMessage)
def get_message(message_id: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    """Get a message by id (cache first)."""
    message = pipeline.get_message(message_id)
    if message is None:
        raise NotFoundError("Message", message_id)
    return message


@router.patch("/messages/{message_id}/status", tags=["Messages"], response_model=PersistedMessage)
def update_message_status(
    message_id: str,
    request: StatusUpdateRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Apply a status reported by a downstream worker."""
    message = pipeline.update_message_status(message_id, request.status, request.patch())
    if message is None:
        raise NotFoundError("Message", message_id)
    return message
