"""REST API for the messaging engine.

This module provides HTTP endpoints for:
- Conversations, messages and read receipts
- Transactions and payment links
- Notifications
- Payment gateway webhooks
- Real-time updates via WebSocket
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from catalog import CatalogError
from engine import Engine, create_engine
from errors import (
    AuthorizationError,
    DealroomError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError
)
from workers.payment_reconciler import run_reconciler

# Configure logging
logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5

EngineFactory = Callable[[], Awaitable[Engine]]

def _error_body(exc: Exception, **extra) -> dict:
    return {"detail": str(exc), "error": type(exc).__name__, **extra}

async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.errors(), "error": "ValidationError"}
        )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))

async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_error_body(exc))

async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))

async def invalid_state_error_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body(
            exc,
            current_status=exc.current_status,
            informational=exc.informational
        )
    )

async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    body = _error_body(exc, retryable=exc.retryable, gateway_status=exc.gateway_status)
    if exc.retryable:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)}
        )
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body)

async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=_error_body(exc))

async def domain_error_handler(request: Request, exc: DealroomError) -> JSONResponse:
    logger.error(f"Unhandled domain error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(exc)
    )

def create_app(engine_factory: Optional[EngineFactory] = None) -> FastAPI:
    """Build the application.

    Args:
        engine_factory: Coroutine function returning the Engine to serve.
            Defaults to ``create_engine`` with the loaded settings.
    """

    # Lifecycle management
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Initializing API...")
        engine = await (engine_factory or create_engine)()
        app.state.engine = engine

        reconciler_task = asyncio.create_task(
            run_reconciler(engine, engine.settings['reconcile_interval'])
        )
        logger.info(
            f"Started payment reconciler (every {engine.settings['reconcile_interval']} seconds)"
        )

        yield

        logger.info("Shutting down API...")
        reconciler_task.cancel()
        try:
            await reconciler_task
        except asyncio.CancelledError:
            pass
        await engine.close()

    app = FastAPI(
        title="Dealroom API",
        description="Conversations, messages and transactions between buyers and sellers",
        version="1.0.0",
        lifespan=lifespan
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(AuthorizationError, authorization_error_handler)
    app.add_exception_handler(NotFoundError, not_found_error_handler)
    app.add_exception_handler(InvalidStateError, invalid_state_error_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(CatalogError, catalog_error_handler)
    app.add_exception_handler(DealroomError, domain_error_handler)

    @app.get("/")
    async def root():
        return {
            "name": "Dealroom API",
            "version": "1.0.0",
            "status": "running"
        }

    # Import and include all routers
    from .conversations import router as conversations_router
    from .notifications import router as notifications_router
    from .transactions import router as transactions_router
    from .webhooks import router as webhooks_router
    from .websockets import router as websocket_router

    app.include_router(conversations_router)
    app.include_router(notifications_router)
    app.include_router(transactions_router)
    app.include_router(webhooks_router)
    app.include_router(websocket_router)

    return app

# Create FastAPI app
app = create_app()

__all__ = ['app', 'create_app']
