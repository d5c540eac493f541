"""Queue operations API router."""

from fastapi import APIRouter, Depends

from message_hub.api.dependencies import get_broker
from message_hub.api.models import PurgeResponse, QueueInfoResponse
from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.errors import NotFoundError, TopologyError

router = APIRouter(prefix="/v1")


@router.get("/queues/{name}", tags=["Queues"], response_model=QueueInfoResponse)
def inspect_queue(name: str, broker: BrokerAdapter = Depends(get_broker)):
    """Ready, delayed and consumer counts for a queue."""
    try:
        info = broker.inspect(name)
    except TopologyError:
        raise NotFoundError("Queue", name)
    return QueueInfoResponse.from_info(info)


@router.post("/queues/{name}/purge", tags=["Queues"], response_model=PurgeResponse)
def purge_queue(name: str, broker: BrokerAdapter = Depends(get_broker)):
    """Delete every ready and delayed message on a queue."""
    try:
        purged = broker.purge(name)
    except TopologyError:
        raise NotFoundError("Queue", name)
    return PurgeResponse(queue=name, purged=purged)
