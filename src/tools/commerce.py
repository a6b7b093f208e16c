"""Shopping tools exposed to the language model.

Each handler takes the caller's ``Identity`` and its validated arguments,
talks to the ``CommerceClient`` collaborator, and returns a ``ToolResult``:
a small JSON ``data`` payload the model reads, an optional UI artifact for
the chat widget, and optional next-step quick replies.

Tools that need a signed-in shopper (order history, returns, profile)
check the identity themselves and answer with an explanation instead of
touching the backend.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.config import STORE_NAME
from src.models import (
    CouponCard,
    CustomerProfile,
    Identity,
    OrderCard,
    OrderItem,
    Product,
    ProductList,
    ReturnCard,
    TicketCard,
    ToolResult,
)
from src.services.commerce_client import CommerceClient, is_uuid
from src.tools.registry import ToolName, ToolRegistry, ToolSpec
from src.tools.store_info import TOPICS, get_store_info, search_store_info

logger = logging.getLogger(__name__)

RETURN_WINDOW_DAYS = 30
SEARCH_LIMIT = 4
DEFAULT_ORDER_LIMIT = 5
MAX_ORDER_LIMIT = 10

TicketCategory = Literal["order_issue", "product_inquiry", "payment", "shipping", "return", "other"]


# ── Argument models (also the JSON schema the model sees) ───────────


class SearchProductsArgs(BaseModel):
    query: str = Field(description="Search term from the user")
    limit: int = Field(
        default=SEARCH_LIMIT, ge=1, le=10, description="Maximum number of products to return",
    )


class GetProductForCartArgs(BaseModel):
    slug_or_id: str = Field(min_length=1, description="Product slug or UUID")


class TrackOrderArgs(BaseModel):
    order_number: str = Field(
        min_length=1, description="Order number (e.g. ORD-xxx) or tracking number",
    )
    email: str = Field(
        min_length=3,
        description=(
            "Email address associated with the order. Use the email from the "
            "conversation if the customer already provided it."
        ),
    )


class GetCustomerOrdersArgs(BaseModel):
    limit: int | None = Field(default=None, description="Number of orders to return (default 5)")


class CheckCouponArgs(BaseModel):
    code: str = Field(description="Coupon code to validate")
    cart_total: float | None = Field(
        default=None, description="Optional current cart total for the minimum purchase check",
    )


class CreateSupportTicketArgs(BaseModel):
    subject: str = Field(min_length=1, description="Short summary of the issue")
    description: str = Field(min_length=1, description="Detailed description of the problem")
    category: TicketCategory | None = Field(default=None, description="Issue category")
    email: str | None = Field(
        default=None,
        description="Customer email address, if the customer mentioned it in the conversation",
    )


class InitiateReturnArgs(BaseModel):
    order_id: str = Field(min_length=1, description="UUID of the order to return")
    reason: str = Field(min_length=1, description="Reason for the return")
    description: str | None = Field(default=None, description="Additional details about the return")


class GetRecommendationsArgs(BaseModel):
    context: str | None = Field(
        default=None, description="Optional category or interest for recommendations",
    )


class GetStoreInfoArgs(BaseModel):
    topic: str = Field(
        min_length=1,
        description="Topic to get info about",
        json_schema_extra={"enum": list(TOPICS)},
    )


class GetCustomerProfileArgs(BaseModel):
    pass


# ── Row → artifact mapping ──────────────────────────────────────────


def map_product(row: dict[str, Any]) -> Product:
    quantity = int(row.get("quantity") or 0)
    moq = int((row.get("metadata") or {}).get("moq") or 1)
    images = sorted(row.get("product_images") or [], key=lambda i: i.get("position") or 0)
    return Product(
        id=str(row["id"]),
        name=row["name"],
        slug=row.get("slug") or "",
        price=float(row.get("price") or 0),
        image=images[0].get("url", "") if images else "",
        quantity=quantity,
        max_stock=quantity,
        moq=moq,
        in_stock=quantity >= moq,
    )


def map_order(row: dict[str, Any]) -> OrderCard:
    return OrderCard(
        id=str(row["id"]),
        order_number=row["order_number"],
        status=row.get("status") or "unknown",
        payment_status=row.get("payment_status") or "unknown",
        total=float(row.get("total") or 0),
        created_at=str(row.get("created_at") or ""),
        tracking_number=(row.get("metadata") or {}).get("tracking_number") or None,
        items=[
            OrderItem(
                name=item.get("product_name", ""),
                quantity=int(item.get("quantity") or 0),
                price=float(item.get("unit_price") or 0),
            )
            for item in row.get("order_items") or []
        ],
    )


def _product_summaries(products: list[Product]) -> list[dict[str, Any]]:
    return [
        {"name": p.name, "price": p.price, "inStock": p.in_stock, "slug": p.slug}
        for p in products
    ]


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def evaluate_coupon(
    row: dict[str, Any] | None,
    code: str,
    cart_total: float | None = None,
    now: datetime | None = None,
) -> CouponCard:
    """Apply the coupon rules to a coupon row (``None`` when not found)."""
    now = now or datetime.now(UTC)
    if not code:
        return CouponCard(valid=False, code=code, reason="No code provided.")
    if not row:
        return CouponCard(valid=False, code=code, reason="This coupon code does not exist.")
    if not row.get("is_active"):
        return CouponCard(valid=False, code=code, reason="This coupon is no longer active.")
    if row.get("start_date") and _parse_timestamp(row["start_date"]) > now:
        return CouponCard(valid=False, code=code, reason="This coupon is not yet valid.")
    if row.get("end_date") and _parse_timestamp(row["end_date"]) < now:
        return CouponCard(valid=False, code=code, reason="This coupon has expired.")
    usage_limit = row.get("usage_limit")
    if usage_limit and int(row.get("usage_count") or 0) >= int(usage_limit):
        return CouponCard(valid=False, code=code, reason="This coupon has reached its usage limit.")
    minimum = float(row["minimum_purchase"]) if row.get("minimum_purchase") else None
    if cart_total is not None and minimum and cart_total < minimum:
        return CouponCard(
            valid=False, code=code, reason=f"Minimum purchase of GH₵{minimum:.2f} required.",
        )

    return CouponCard(
        valid=True,
        code=code,
        type=row.get("type"),
        value=float(row.get("value") or 0),
        minimum_purchase=minimum,
        maximum_discount=float(row["maximum_discount"]) if row.get("maximum_discount") else None,
        expires=row.get("end_date") or None,
    )


# ── Handlers ────────────────────────────────────────────────────────


class CommerceTools:
    """Tool handlers bound to one ``CommerceClient``."""

    def __init__(self, client: CommerceClient) -> None:
        self._client = client

    def search_products(self, identity: Identity, args: SearchProductsArgs) -> ToolResult:
        products = [map_product(r) for r in self._client.search_products(args.query, args.limit)]
        return ToolResult(
            data=_product_summaries(products),
            ui_artifact=ProductList(products=products) if products else None,
            suggested_quick_replies=(
                ["Show me more", "Add to cart"]
                if products
                else ["Try different search", "What do you recommend?"]
            ),
        )

    def get_product_for_cart(self, identity: Identity, args: GetProductForCartArgs) -> ToolResult:
        row = self._client.get_product(args.slug_or_id)
        if not row:
            return ToolResult.error("Product not found")
        product = map_product(row)
        return ToolResult(
            data={"name": product.name, "price": product.price, "inStock": product.in_stock},
            ui_artifact=ProductList(products=[product]),
        )

    def track_order(self, identity: Identity, args: TrackOrderArgs) -> ToolResult:
        row = self._client.track_order(args.order_number, args.email)
        if not row:
            return ToolResult.error(
                "Order not found. Please check the order number and email address.",
                ["Try again", "Contact support"],
            )
        order = map_order(row)
        return ToolResult(
            data={
                "order_number": order.order_number,
                "status": order.status,
                "total": order.total,
                "tracking_number": order.tracking_number,
                "items": [item.model_dump() for item in order.items[:5]],
                "created_at": order.created_at,
            },
            ui_artifact=order,
            suggested_quick_replies=["I have an issue with this order", "Track another order"],
        )

    def get_customer_orders(self, identity: Identity, args: GetCustomerOrdersArgs) -> ToolResult:
        if not identity.is_authenticated:
            return ToolResult.error(
                "Authentication required: the customer must be signed in to view their "
                "orders. Suggest signing in, or tracking an order by number and email.",
                ["Sign in", "Track order by number"],
            )
        limit = min(max(args.limit or DEFAULT_ORDER_LIMIT, 1), MAX_ORDER_LIMIT)
        orders = [map_order(r) for r in self._client.customer_orders(identity.user_id, limit)]
        return ToolResult(
            data=[
                {
                    "order_number": o.order_number,
                    "status": o.status,
                    "total": o.total,
                    "date": o.created_at,
                    "items_count": len(o.items),
                }
                for o in orders
            ],
            ui_artifact=orders[0] if orders else None,
            suggested_quick_replies=(
                ["Track an order", "Reorder"] if orders else ["Browse products"]
            ),
        )

    def check_coupon(self, identity: Identity, args: CheckCouponArgs) -> ToolResult:
        code = args.code.strip().upper()
        row = self._client.get_coupon(code) if code else None
        coupon = evaluate_coupon(row, code, args.cart_total)
        return ToolResult(
            data=coupon.model_dump(exclude_none=True),
            ui_artifact=coupon,
            suggested_quick_replies=(
                ["Apply at checkout", "Continue shopping"]
                if coupon.valid
                else ["Try another code", "Find a product"]
            ),
        )

    def create_support_ticket(
        self, identity: Identity, args: CreateSupportTicketArgs,
    ) -> ToolResult:
        email = (args.email or identity.email or "").strip()
        if not email:
            return ToolResult.error(
                "I need an email address to create a support ticket. Ask the customer "
                "for their email and include it when calling this tool.",
                ["I'll provide my email"],
            )
        row = self._client.create_ticket(
            email=email,
            subject=args.subject,
            description=args.description,
            category=args.category or "other",
            user_id=identity.user_id,
        )
        if not row:
            return ToolResult.error(
                "Failed to create ticket. Please try again.",
                ["Try again", "Contact us directly"],
            )
        ticket = TicketCard(
            id=str(row["id"]),
            ticket_number=int(row["ticket_number"]),
            status=row.get("status") or "open",
            subject=row.get("subject") or args.subject,
        )
        return ToolResult(
            data={
                "ticket_number": ticket.ticket_number,
                "subject": ticket.subject,
                "status": ticket.status,
                "email_used": email,
            },
            ui_artifact=ticket,
            suggested_quick_replies=["Continue shopping", "Track my order"],
        )

    def initiate_return(self, identity: Identity, args: InitiateReturnArgs) -> ToolResult:
        if not identity.is_authenticated:
            return ToolResult.error(
                "Authentication required: the customer must be signed in to start a return.",
                ["Sign in", "Contact support"],
            )
        ineligible = ["Check eligibility", "Contact support"]
        if not is_uuid(args.order_id):
            return ToolResult.error(
                "order_id must be the order's UUID, not the order number. Use "
                "get_customer_orders to look it up.",
                ineligible,
            )

        order = self._client.get_order(args.order_id)
        if not order or order.get("user_id") != identity.user_id:
            return ToolResult.error("No order with that ID was found on this account.", ineligible)
        if order.get("status") != "delivered":
            return ToolResult.error(
                f"Only delivered orders can be returned; this order is {order.get('status')}.",
                ineligible,
            )
        placed_at = _parse_timestamp(str(order.get("created_at")))
        if datetime.now(UTC) - placed_at > timedelta(days=RETURN_WINDOW_DAYS):
            return ToolResult.error(
                f"This order is outside the {RETURN_WINDOW_DAYS}-day return window.",
                ineligible,
            )

        row = self._client.create_return(
            user_id=identity.user_id,
            order_id=args.order_id,
            reason=args.reason,
            description=args.description or args.reason,
        )
        if not row:
            return ToolResult.error(
                "Could not create the return request. Please try again.", ineligible,
            )
        card = ReturnCard(
            id=str(row["id"]),
            status=row.get("status") or "pending",
            order_number=order["order_number"],
            reason=args.reason,
        )
        return ToolResult(
            data={"id": card.id, "status": card.status, "order_number": card.order_number},
            ui_artifact=card,
            suggested_quick_replies=["Continue shopping", "View my orders"],
        )

    def get_recommendations(self, identity: Identity, args: GetRecommendationsArgs) -> ToolResult:
        products = [map_product(r) for r in self._client.recommendations(args.context)]
        return ToolResult(
            data=_product_summaries(products),
            ui_artifact=ProductList(products=products) if products else None,
            suggested_quick_replies=["Show me more", "Search for something specific"],
        )

    def get_store_info(self, identity: Identity, args: GetStoreInfoArgs) -> ToolResult:
        info = get_store_info(args.topic)
        extra = [body for _, body in search_store_info(args.topic) if body != info]
        data: dict[str, Any] = {"topic": args.topic, "info": info}
        if extra:
            data["additional_details"] = "\n\n".join(extra)
        return ToolResult(
            data=data,
            suggested_quick_replies=[
                r for r in ("Shipping", "Returns", "Payment", "Contact")
                if r.lower() != args.topic.strip().lower()
            ],
        )

    def get_customer_profile(self, identity: Identity, args: GetCustomerProfileArgs) -> ToolResult:
        if not identity.is_authenticated:
            return ToolResult.error("Not logged in", ["Sign in"])
        profile = load_profile(self._client, identity)
        if profile is None:
            return ToolResult.error("Not logged in", ["Sign in"])
        return ToolResult(
            data={
                "name": profile.name,
                "email": profile.email,
                "total_orders": profile.total_orders,
            },
        )


def load_profile(client: CommerceClient, identity: Identity) -> CustomerProfile | None:
    """The signed-in shopper's profile, or ``None`` for guests."""
    if not identity.is_authenticated:
        return None
    row = client.get_profile(identity.user_id)
    if not row:
        return None
    email = row.get("email") or identity.email or ""
    return CustomerProfile(
        name=row.get("full_name") or (email.split("@")[0] if email else "Customer"),
        email=email,
        total_orders=int(row.get("total_orders") or 0),
        total_spent=float(row.get("total_spent") or 0),
        last_order_at=row.get("last_order_at"),
    )


def build_registry(client: CommerceClient) -> ToolRegistry:
    """The full tool table for the shop assistant."""
    tools = CommerceTools(client)
    return ToolRegistry([
        ToolSpec(
            ToolName.SEARCH_PRODUCTS,
            "Search for products by name, description, or category. Use when the "
            "customer asks about availability, what products exist, to find a "
            "product, or wants to browse.",
            SearchProductsArgs,
            tools.search_products,
        ),
        ToolSpec(
            ToolName.GET_PRODUCT_FOR_CART,
            "Get one specific product by slug or id for adding to cart. Use when "
            "the user wants to add a specific known product.",
            GetProductForCartArgs,
            tools.get_product_for_cart,
        ),
        ToolSpec(
            ToolName.TRACK_ORDER,
            "Track an order by order number and email. If the customer provided "
            "their email earlier in the conversation, use that; do not ask again.",
            TrackOrderArgs,
            tools.track_order,
        ),
        ToolSpec(
            ToolName.GET_CUSTOMER_ORDERS,
            "Get recent orders for the logged-in customer. Use for 'show me my "
            "orders', 'my recent orders' or 'reorder'. Only works for signed-in users.",
            GetCustomerOrdersArgs,
            tools.get_customer_orders,
        ),
        ToolSpec(
            ToolName.CHECK_COUPON,
            "Validate a coupon or discount code. Use when the customer asks about "
            "a promo code, discount, or coupon.",
            CheckCouponArgs,
            tools.check_coupon,
        ),
        ToolSpec(
            ToolName.CREATE_SUPPORT_TICKET,
            f"Create a support ticket to escalate an issue to the {STORE_NAME} "
            "support team. Use when the customer has a problem you cannot solve "
            "or asks for a human. Pass the customer's email if they mentioned it.",
            CreateSupportTicketArgs,
            tools.create_support_ticket,
            side_effect_free=False,
        ),
        ToolSpec(
            ToolName.INITIATE_RETURN,
            "Start a return request for a delivered order. Only for signed-in "
            f"users with a delivered order within {RETURN_WINDOW_DAYS} days. Ask for "
            "the order and the reason before calling.",
            InitiateReturnArgs,
            tools.initiate_return,
            side_effect_free=False,
        ),
        ToolSpec(
            ToolName.GET_RECOMMENDATIONS,
            "Get product recommendations. Use for 'what do you recommend?', "
            "bestsellers, popular items, generic 'show me products', or to "
            "suggest alternatives to an out-of-stock item.",
            GetRecommendationsArgs,
            tools.get_recommendations,
        ),
        ToolSpec(
            ToolName.GET_STORE_INFO,
            "Get store information and policies: shipping, returns, payment "
            "methods, delivery times, contact info, business hours.",
            GetStoreInfoArgs,
            tools.get_store_info,
        ),
        ToolSpec(
            ToolName.GET_CUSTOMER_PROFILE,
            "Get the logged-in customer's profile. Use to personalise the "
            "conversation or when they ask about their account details.",
            GetCustomerProfileArgs,
            tools.get_customer_profile,
        ),
    ])
