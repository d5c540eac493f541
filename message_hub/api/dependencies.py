"""FastAPI dependencies resolving the per-process service graph."""

from fastapi import Depends, Request

from message_hub.bootstrap import Services
from message_hub.infra.broker import BrokerAdapter
from message_hub.services.ingestion_pipeline import IngestionPipeline


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_pipeline(services: Services = Depends(get_services)) -> IngestionPipeline:
    return services.pipeline


def get_broker(services: Services = Depends(get_services)) -> BrokerAdapter:
    return services.broker
