"""Domain types shared by the orchestration loop, tools and API layer.

The UI-facing artifacts (product, order/ticket/return/coupon cards) are
pydantic models because they are serialised straight into the HTTP
response.  Request-scoped values that never leave the process
(``Identity``, ``ToolResult``) are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant", "system", "tool"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_CamelModel):
    """One conversation message as exchanged with the chat widget."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    content: str = ""
    tool_call_id: str | None = None
    name: str | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _null_content_is_empty(cls, value: Any) -> Any:
        # The widget sends null content for messages that only carried cards
        return "" if value is None else value


class CartItem(_CamelModel):
    """One line of the shopper's cart as the widget reports it."""

    id: str
    name: str
    price: float = 0.0
    quantity: int = 1
    slug: str = ""

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


# ── Artifacts ────────────────────────────────────────────────────────


class Product(_CamelModel):
    id: str
    name: str
    slug: str
    price: float
    image: str = ""
    quantity: int = 0
    max_stock: int = 0
    moq: int = 1
    in_stock: bool = False


class ProductList(BaseModel):
    products: list[Product] = Field(default_factory=list)


class OrderItem(BaseModel):
    name: str
    quantity: int
    price: float


class OrderCard(BaseModel):
    id: str
    order_number: str
    status: str
    payment_status: str
    total: float
    created_at: str
    tracking_number: str | None = None
    items: list[OrderItem] = Field(default_factory=list)


class TicketCard(BaseModel):
    id: str
    ticket_number: int
    status: str
    subject: str


class ReturnCard(BaseModel):
    id: str
    status: str
    order_number: str
    reason: str


class CouponCard(BaseModel):
    valid: bool
    code: str
    reason: str | None = None
    type: str | None = None
    value: float | None = None
    minimum_purchase: float | None = None
    maximum_discount: float | None = None
    expires: str | None = None


class CustomerProfile(BaseModel):
    name: str
    email: str
    total_orders: int = 0
    total_spent: float = 0.0
    last_order_at: str | None = None


Artifact = Union[ProductList, OrderCard, TicketCard, ReturnCard, CouponCard]


class Action(_CamelModel):
    type: Literal["add_to_cart", "view_product", "view_order", "track_order", "apply_coupon"]
    product: Product | None = None
    order_number: str | None = None
    coupon_code: str | None = None
    label: str | None = None


class ChatReply(_CamelModel):
    """The structured reply for one turn (text + artifacts + next steps)."""

    message: str
    products: list[Product] | None = None
    actions: list[Action] | None = None
    order_card: OrderCard | None = None
    ticket_card: TicketCard | None = None
    return_card: ReturnCard | None = None
    coupon_card: CouponCard | None = None
    quick_replies: list[str] = Field(default_factory=list)


def cart_actions(products: list[Product]) -> list[Action]:
    """One ``add_to_cart`` action per in-stock product, in order."""
    return [Action(type="add_to_cart", product=p) for p in products if p.in_stock]


# ── Request-scoped values ───────────────────────────────────────────


@dataclass(frozen=True)
class Identity:
    """The resolved caller.  Anonymous is a normal, expected state."""

    user_id: str | None = None
    email: str | None = None

    @classmethod
    def anonymous(cls) -> Identity:
        return cls()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


@dataclass
class ToolResult:
    """Outcome of one tool call.

    ``data`` is fed back to the model and must stay small and
    JSON-serialisable.  ``ui_artifact`` goes to the caller only.
    """

    data: Any
    ui_artifact: Artifact | None = None
    suggested_quick_replies: list[str] | None = None

    @classmethod
    def error(cls, message: str, quick_replies: list[str] | None = None) -> ToolResult:
        return cls(data={"error": message}, suggested_quick_replies=quick_replies)

    @property
    def is_error(self) -> bool:
        return isinstance(self.data, dict) and "error" in self.data


@dataclass
class ChatTurn:
    """Everything the orchestrator needs to answer one HTTP call."""

    new_message: str
    history: list[Message] = field(default_factory=list)
    identity: Identity = field(default_factory=Identity.anonymous)
    page_path: str | None = None
    session_id: str | None = None
    cart_items: list[CartItem] = field(default_factory=list)
