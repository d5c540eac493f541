"""Health check API router."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from message_hub import __version__
from message_hub.api.dependencies import get_services
from message_hub.bootstrap import Services
from message_hub.infra.config import config
from message_hub.infra.metrics import get_metrics_response

router = APIRouter()


@router.get("/health", tags=["Health"])
def health_check(services: Services = Depends(get_services)):
    """Combined health check endpoint."""
    broker_ok = services.broker.health_check()
    return {
        "status": "ok" if broker_ok else "degraded",
        "service": config.SERVICE_NAME,
        "version": __version__,
        "broker": services.broker.state.value,
        "cache": "ok" if services.cache.ping() else "unavailable",
    }


@router.get("/health/live", tags=["Health"])
def liveness_probe():
    """Liveness probe - indicates if the process is running."""
    return {"status": "alive"}


@router.get("/health/ready", tags=["Health"])
def readiness_probe(services: Services = Depends(get_services)):
    """Readiness probe - checks broker connectivity."""
    if services.broker.health_check():
        return {"status": "ready"}
    return JSONResponse(status_code=503, content={"status": "not_ready"})


@router.get("/metrics", tags=["Health"])
def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()
