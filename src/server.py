"""FastAPI server for the shop assistant.

Run with:
    uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.agent import Orchestrator, create_shop_agent
from src.api.routes import router
from src.config import ANTHROPIC_API_KEY, CORS_ORIGINS, MODEL_NAME, SERVER_HOST, SERVER_PORT
from src.fallback import FallbackEngine
from src.services.commerce_client import get_commerce_client
from src.services.conversation_store import ConversationStore
from src.services.identity import build_identity_resolver
from src.services.metrics import metrics
from src.services.rate_limiter import build_rate_limiter
from src.tools.commerce import build_registry

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build every shared component once and store it in app state.

    The model graph is only compiled when an Anthropic key is configured;
    without one the orchestrator answers every turn with the fallback.
    """
    client = get_commerce_client()
    registry = build_registry(client)

    agent = None
    if ANTHROPIC_API_KEY:
        logger.info("Compiling LangGraph agent (%s)…", MODEL_NAME)
        agent = create_shop_agent(registry)
    else:
        logger.warning("ANTHROPIC_API_KEY not set; running in fallback-only mode")

    store = ConversationStore(client)
    store.start()

    application.state.rate_limiter = build_rate_limiter()
    application.state.identity_resolver = build_identity_resolver()
    application.state.conversation_store = store
    application.state.orchestrator = Orchestrator(
        registry, FallbackEngine(registry), client=client, agent=agent, store=store,
    )
    logger.info("Shop assistant ready.")
    yield

    store.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Shop Assistant",
    description=(
        "Chat assistant for the store: product search, order tracking, "
        "coupons, returns and support tickets."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the chat widget) ───────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so the widget
    can quote it in support tickets.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Validation errors ────────────────────────────────────────────────
@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer malformed bodies with the widget's 400 shape.

    FastAPI's default 422 body echoes the submitted input back; only the
    failing locations are logged here and nothing is echoed.
    """
    request_id = getattr(request.state, "request_id", "?")
    locations = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    logger.info("[%s] Rejected malformed request body: %s", request_id, ", ".join(locations))
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Shop Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting shop assistant API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "src.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
