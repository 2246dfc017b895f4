"""FastAPI server for the Odonto protocol service.

Run with:
    uvicorn odonto.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from odonto.api.routes import router
from odonto.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from odonto.container import build_services
from odonto.errors import AIProviderError, OdontoError, RateLimitError

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the service container once and store it in app state.

    A container already present on ``app.state`` (tests) is used as is.
    """
    owned = getattr(application.state, "services", None) is None
    if owned:
        logger.info("Building services…")
        application.state.services = await asyncio.to_thread(build_services)
        logger.info("Services ready.")
    yield
    if owned:
        application.state.services.close()
        application.state.services = None


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Odonto Protocols",
    description=(
        "Treatment-protocol pipeline for dental evaluations — AI resin and "
        "cementation protocols, clinical safety rules, metered credits and "
        "multi-tooth reconciliation."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is added to the response headers (``X-Request-ID``).  It is
    client-controlled, so it only tags logs and never keys billing.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Domain error handler ─────────────────────────────────────────────
@app.exception_handler(OdontoError)
async def handle_odonto_error(request: Request, exc: OdontoError) -> JSONResponse:
    """Render ``{error, code, ...}`` with the error's status code."""
    request_id = getattr(request.state, "request_id", "?")
    if isinstance(exc, AIProviderError):
        logger.error(
            "[%s] AI error (transient=%s): %s", request_id, exc.transient, exc.detail,
        )
    elif exc.status_code >= 500:
        logger.error("[%s] %s: %s", request_id, exc.code, exc)
    else:
        logger.info("[%s] %s (%d): %s", request_id, exc.code, exc.status_code, exc)

    headers = {"X-Request-ID": request_id}
    if isinstance(exc, RateLimitError):
        result = exc.result
        headers["X-RateLimit-Remaining"] = str(result.remaining)
        headers["X-RateLimit-Reset"] = result.reset_at.isoformat()
        if result.retry_after is not None:
            headers["Retry-After"] = str(result.retry_after)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Odonto Protocols",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


def run() -> None:
    logger.info("Starting Odonto API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "odonto.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
    )


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    run()
