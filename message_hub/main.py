"""FastAPI application for the message ingestion and queueing service."""

import uuid
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from message_hub import __version__
from message_hub.bootstrap import Services, build_services
from message_hub.infra.config import config
from message_hub.infra.errors import ErrorCategory, MessageHubError
from message_hub.infra.logging import app_logger
from message_hub.infra.middleware import RequestIDMiddleware, RequestLoggingMiddleware

# Error category -> HTTP status for errors escaping a route
ERROR_STATUS_CODES = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.TOPOLOGY: 409,
    ErrorCategory.CONNECTION: 503,
    ErrorCategory.PUBLISH: 503,
    ErrorCategory.PERSISTENCE: 503,
}


def create_app(services: Optional[Services] = None, start_services: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        services: Prebuilt service graph; built from config when omitted
        start_services: Connect/declare on startup and close on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown."""
        app_logger.info("Application starting up")

        graph = services
        if graph is None:
            problems = config.validate()
            if problems:
                raise RuntimeError(f"Invalid configuration: {'; '.join(problems)}")
            graph = build_services(config)

        if start_services:
            graph.start()
        app.state.services = graph

        yield

        app_logger.info("Application shutting down")
        if start_services:
            graph.shutdown()

    app = FastAPI(
        title="Message Hub API",
        description="""
    Reliable message ingestion and queueing.

    Upstream connectors submit messages, which are validated, deduplicated,
    threaded into conversations, persisted and queued for downstream
    processing. Downstream workers report status changes back.
    """,
        version=__version__,
        lifespan=lifespan,
        tags_metadata=[
            {"name": "Messages", "description": "Submit messages, read them and report status changes"},
            {"name": "Queues", "description": "Inspect and purge broker queues"},
            {"name": "Health", "description": "Health check and monitoring endpoints"},
        ],
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    from message_hub.api.routers import health, messages, queues

    app.include_router(messages.router)
    app.include_router(queues.router)
    app.include_router(health.router)

    @app.exception_handler(MessageHubError)
    async def message_hub_exception_handler(request: Request, exc: MessageHubError):
        """Map expected service errors onto HTTP statuses."""
        return JSONResponse(
            status_code=ERROR_STATUS_CODES.get(exc.category, 500),
            content={"detail": exc.message, "category": exc.category.value},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions."""
        error_id = str(uuid.uuid4())
        app_logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"error_id": error_id})
        return JSONResponse(
            status_code=500,
            content={"detail": f"Internal server error. Error ID: {error_id}"},
        )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=8000,
        timeout_keep_alive=30,
        timeout_graceful_shutdown=30,
    )
