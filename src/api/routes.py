"""FastAPI route definitions for the shop assistant API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from src.agent import Orchestrator
from src.api.schemas import ChatRequest, ErrorResponse, HealthResponse, RateLimitedResponse
from src.models import ChatReply, ChatTurn
from src.services.conversation_store import ConversationStore
from src.services.identity import IdentityResolver, RequestCredentials
from src.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter()

RATE_LIMITED_MESSAGE = "You're sending messages too quickly. Please wait a moment and try again."
INTERNAL_ERROR_BODY = {
    "message": "Something went wrong. Please try again.",
    "quickReplies": ["Try again"],
}


def _get_state(request: Request, name: str):
    """Retrieve a shared component from app state.

    Components are built once during the FastAPI lifespan (see
    ``server.py``); until then every request gets a 503.
    """
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return component


def rate_limit_key(body: ChatRequest, request: Request) -> str:
    """Session id, else the first forwarded-for hop, else the peer address."""
    if body.session_id:
        return body.session_id
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "default"


def _credentials(request: Request) -> RequestCredentials:
    return RequestCredentials(
        cookies=dict(request.cookies),
        authorization=request.headers.get("authorization"),
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    mode = "model" if orchestrator is not None and orchestrator.has_model else "fallback"
    return HealthResponse(mode=mode)


@router.post(
    "/chat",
    response_model=ChatReply,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 429: {"model": RateLimitedResponse}},
)
async def chat(body: ChatRequest, http_request: Request):
    """Answer one chat turn.

    Checks run in a fixed order: empty message (400), rate limit (429),
    then identity and the orchestrator.  Identity verification, the model
    loop and tool calls all block, so the whole turn is offloaded with
    ``asyncio.to_thread``.  The conversation write is queued from that
    same thread, so it still happens if the client has gone away.
    """
    orchestrator: Orchestrator = _get_state(http_request, "orchestrator")
    limiter: RateLimiter = _get_state(http_request, "rate_limiter")
    resolver: IdentityResolver = _get_state(http_request, "identity_resolver")
    store: ConversationStore | None = getattr(http_request.app.state, "conversation_store", None)
    request_id = getattr(http_request.state, "request_id", "?")

    text = body.new_message.strip()
    if not text:
        return JSONResponse(status_code=400, content={"error": "Message is required"})

    key = rate_limit_key(body, http_request)
    if not limiter.allow(key):
        logger.info("[%s] Rate limited %s", request_id, key)
        return JSONResponse(
            status_code=429,
            content=RateLimitedResponse(message=RATE_LIMITED_MESSAGE).model_dump(by_alias=True),
        )

    credentials = _credentials(http_request)

    def answer() -> ChatReply:
        identity = resolver.resolve(credentials)
        reply = orchestrator.respond(
            ChatTurn(
                new_message=text,
                history=body.messages,
                identity=identity,
                page_path=body.page_path,
                session_id=body.session_id,
                cart_items=body.cart_items,
            )
        )
        if body.session_id and store is not None:
            store.persist(
                body.session_id, identity.user_id, body.messages, text, reply, body.page_path,
            )
        return reply

    try:
        return await asyncio.to_thread(answer)
    except Exception:
        # Full traceback server-side only; the client gets a generic apology
        logger.exception("[%s] Error processing chat request", request_id)
        return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)
