"""Pydantic schemas for the FastAPI endpoints.

The chat widget speaks camelCase; fields are snake_case here and aliased.
The 200 response body is ``src.models.ChatReply``.

Over-long text is truncated rather than rejected, and ``null`` fields are
read as empty, so an untidy widget payload still gets an answer.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.models import CartItem, Message

MAX_MESSAGE_CHARS = 4000
MAX_SESSION_ID_CHARS = 100
MAX_PAGE_PATH_CHARS = 500


def _truncate(value: Any, limit: int) -> Any:
    return value[:limit] if isinstance(value, str) else value


class ChatRequest(BaseModel):
    """Incoming chat turn from the widget."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[Message] = Field(
        default_factory=list, description="Prior conversation, oldest first",
    )
    new_message: str = Field(default="", description="The shopper's message")
    session_id: str | None = Field(
        default=None,
        description="Widget session identifier; enables persistence and keys the rate limit",
    )
    page_path: str | None = Field(
        default=None, description="Path of the page the shopper is viewing",
    )
    cart_items: list[CartItem] = Field(
        default_factory=list, description="Current cart contents, for coupon and checkout help",
    )

    @field_validator("messages", "cart_items", mode="before")
    @classmethod
    def _null_list_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("new_message", mode="before")
    @classmethod
    def _clip_message(cls, value: Any) -> Any:
        return "" if value is None else _truncate(value, MAX_MESSAGE_CHARS)

    @field_validator("session_id", mode="before")
    @classmethod
    def _clip_session_id(cls, value: Any) -> Any:
        return _truncate(value, MAX_SESSION_ID_CHARS)

    @field_validator("page_path", mode="before")
    @classmethod
    def _clip_page_path(cls, value: Any) -> Any:
        return _truncate(value, MAX_PAGE_PATH_CHARS)


class ErrorResponse(BaseModel):
    error: str


class RateLimitedResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    quick_replies: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "shop-assistant"
    mode: str = Field(default="model", description="'model' or 'fallback'")
