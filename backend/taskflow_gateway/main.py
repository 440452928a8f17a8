"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, start the webhook dispatcher and
    the maintenance loop.
  • On shutdown: stop background loops, close HTTP clients, dispose the engine.

Routers:
  • /auth      — login / logout (token lifecycle)
  • /webhooks  — subscription management + delivery log
  • /api/...   — Request Gateway proxy to the resource service
  • /health    — shallow liveness check
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskflow_gateway.core.config import settings
from taskflow_gateway.core.database import async_session_factory
from taskflow_gateway.core.errors import GatewayError
from taskflow_gateway.gateway.request_gateway import RequestGateway
from taskflow_gateway.routers.auth import router as auth_router
from taskflow_gateway.routers.proxy import router as proxy_router
from taskflow_gateway.routers.webhooks import router as webhooks_router
from taskflow_gateway.services.maintenance import maintenance_loop
from taskflow_gateway.services.resource_handler import HttpResourceHandler, ResourceHandler
from taskflow_gateway.services.token_store import TokenStore
from taskflow_gateway.services.webhook_dispatcher import WebhookDispatcher

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    415: "unsupported_media_type",
}


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    # Startup — verify DB is reachable
    try:
        async with app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("Database connection verified ✓")
    except Exception:
        logger.warning(
            "Could not reach the database on startup. "
            "The app will start, but requests will fail until the DB is available."
        )

    dispatcher: WebhookDispatcher = app.state.dispatcher
    dispatcher.start()
    maintenance = asyncio.create_task(
        maintenance_loop(app.state.gateway, dispatcher), name="maintenance",
    )

    yield  # ← application runs here

    maintenance.cancel()
    with suppress(asyncio.CancelledError):
        await maintenance
    await dispatcher.stop()

    handler = app.state.gateway.resource_handler
    if isinstance(handler, HttpResourceHandler):
        await handler.aclose()

    # Shutdown — clean up the pool behind whichever factory this app was built with
    bind = app.state.session_factory.kw.get("bind")
    if bind is not None:
        await bind.dispose()
        logger.info("Database engine disposed ✓")


# ── Error envelope ──────────────────────────────────────────
async def _gateway_error_handler(_request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers)


async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = {
        "error": {
            "code": _HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
            "message": str(exc.detail),
            "details": {},
        }
    }
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    body = {
        "error": {
            "code": "validation_error",
            "message": "Request validation failed.",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    return JSONResponse(body, status_code=422)


# ── App ─────────────────────────────────────────────────────
def create_app(
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    resource_handler: ResourceHandler | None = None,
    token_store: TokenStore | None = None,
    dispatcher: WebhookDispatcher | None = None,
    gateway: RequestGateway | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators can be injected (tests pass fakes and a SQLite session
    factory); otherwise they are built from settings.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        description=(
            "Task Flow API gateway — bearer-token auth, per-IP and per-token "
            "rate limiting, and signed webhook notifications."
        ),
        lifespan=lifespan,
    )

    if dispatcher is None:
        dispatcher = WebhookDispatcher(session_factory)
    if gateway is None:
        gateway = RequestGateway(
            token_store=token_store or TokenStore(session_factory),
            resource_handler=resource_handler or HttpResourceHandler(
                settings.UPSTREAM_URL, timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
            ),
            publisher=dispatcher,
        )

    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher
    app.state.gateway = gateway

    app.add_exception_handler(GatewayError, _gateway_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]

    # Mount routers
    app.include_router(auth_router, prefix="/auth")
    app.include_router(webhooks_router, prefix="/webhooks")
    app.include_router(proxy_router, prefix="/api")

    # ── Health check ────────────────────────────────────────
    @app.get(
        "/health",
        tags=["System"],
        summary="Liveness check",
    )
    async def health_check() -> dict[str, str]:
        """Shallow health check — confirms the process is alive."""
        return {"status": "healthy"}

    return app


app = create_app()
