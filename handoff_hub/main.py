"""FastAPI application wiring for the handoff hub.

- Configures logging, CORS (optional, for the operator console), Prometheus
  metrics and rate limiting.
- Translates domain errors into ``{"error": {"kind", "message"}}`` bodies with
  the status each error kind maps to.
- Mounts the conversation, event, delivery, reconciliation and security
  routers plus health and version probes.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.rate_limits import limiter
from .errors import HandoffError
from .routers import agents, conversations, delivery, events, reconciliation, security

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Handoff Hub", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
console_origins = os.getenv("CONSOLE_ORIGINS")
if console_origins:
    origins = [o.strip() for o in console_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(agents.router)
app.include_router(conversations.router)
app.include_router(events.router)
app.include_router(delivery.router)
app.include_router(reconciliation.router)
app.include_router(security.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.exception_handler(HandoffError)
async def handoff_error_handler(request: Request, exc: HandoffError) -> JSONResponse:
    """Render domain errors with their stable ``kind`` tag."""
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_payload()})


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
