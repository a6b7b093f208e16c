"""Rule-based responder used when the language model is unavailable.

``FallbackEngine.respond`` walks an ordered list of regex branches over the
shopper's raw text and answers from static policy text or from the few
tools that make sense without a model (product search, recommendations,
store info).  It never calls the model and every reply carries quick
replies.
"""

from __future__ import annotations

import logging
import re

from src.config import STORE_NAME, SUPPORT_EMAIL, SUPPORT_PHONE
from src.models import (
    ChatReply,
    CustomerProfile,
    Identity,
    OrderCard,
    Product,
    ProductList,
    TicketCard,
    cart_actions,
)
from src.tools.registry import ToolName, ToolRegistry

logger = logging.getLogger(__name__)

GREETING_RE = re.compile(r"\b(hi|hello|hey|good morning|good afternoon|good evening)\b", re.I)
TRACK_RE = re.compile(r"\b(track|where.*(my|is).*(order|package)|order status)\b", re.I)
SHIPPING_RE = re.compile(r"\b(shipping|delivery|how long|deliver)\b", re.I)
RETURNS_RE = re.compile(r"\b(return|refund|exchange)\b", re.I)
PAYMENT_RE = re.compile(r"\b(pay|payment|mobile money|momo|cash on delivery)\b", re.I)
CONTACT_RE = re.compile(r"\b(contact|support|human|agent|speak|talk|help me)\b", re.I)
RECOMMEND_RE = re.compile(r"\b(recommend|popular|bestseller|suggest|trending)\b", re.I)
COUPON_RE = re.compile(r"\b(coupon|promo|discount|code)\b", re.I)
THANKS_RE = re.compile(r"\b(thanks|thank you|bye|goodbye)\b", re.I)
SEARCH_INTENT_RE = re.compile(
    r"\b(available|stock|have|find|search|look|buy|price|how much|get|show|want)\b", re.I,
)
_SEARCH_FILLER_RE = re.compile(
    r"\b(do you have|is there|are there|show me|find|search|available|in stock|price"
    r"|how much|get|buy|i want|i need)\b",
    re.I,
)

GREETING_REPLIES = ["Find a product", "Track my order", "What do you recommend?", "Store info"]


def default_quick_replies(
    text: str,
    products: list[Product],
    order_card: OrderCard | None = None,
    ticket_card: TicketCard | None = None,
) -> list[str]:
    """Next-step suggestions when no tool offered any."""
    if ticket_card:
        return ["Continue shopping", "Track my order"]
    if order_card:
        return ["I have an issue", "Track another order", "Continue shopping"]
    if products:
        return ["Add to cart", "Show me more", "Something else"]

    lower = text.lower()
    if re.search(r"\b(hi|hello|hey)\b", lower):
        return ["Find a product", "Track my order", "What do you recommend?"]
    if re.search(r"\b(thank|bye)\b", lower):
        return ["Find a product", "Track my order"]
    return ["Find a product", "Track my order", "Store info", "What do you recommend?"]


def search_query_from(text: str) -> str:
    """Strip filler phrases ("do you have", "show me", ...) from a search request."""
    return _SEARCH_FILLER_RE.sub("", text).replace("?", "").strip()


class FallbackEngine:
    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    # ── Tool shortcuts ───────────────────────────────────────────────

    def _products(self, identity: Identity, tool: ToolName, args: dict) -> list[Product]:
        result = self._registry.dispatch(identity, tool, args)
        if isinstance(result.ui_artifact, ProductList):
            return result.ui_artifact.products
        return []

    def _store_info(self, identity: Identity, topic: str) -> str:
        result = self._registry.dispatch(identity, ToolName.GET_STORE_INFO, {"topic": topic})
        # An unloaded policy file yields empty text rather than an error
        if result.is_error or not result.data.get("info"):
            return f"Please see our {topic} page or contact us at {SUPPORT_EMAIL}."
        return result.data["info"]

    @staticmethod
    def _product_reply(message: str, products: list[Product], quick_replies: list[str]) -> ChatReply:
        return ChatReply(
            message=message,
            products=products,
            actions=cart_actions(products) or None,
            quick_replies=quick_replies,
        )

    # ── Entry point ──────────────────────────────────────────────────

    def respond(
        self,
        text: str,
        identity: Identity | None = None,
        profile: CustomerProfile | None = None,
    ) -> ChatReply:
        """Answer *text* without the model.  Branches are tried in order."""
        identity = identity or Identity.anonymous()
        lower = text.lower()

        if GREETING_RE.search(text):
            name = profile.name.split(" ")[0] if profile and profile.name else ""
            greeting = f"Hi {name}! " if name else "Hi there! "
            return ChatReply(
                message=(
                    f"{greeting}I'm the {STORE_NAME} shopping assistant. I can help you "
                    "find products, track orders, check stock, and more. What can I help "
                    "you with?"
                ),
                quick_replies=list(GREETING_REPLIES),
            )

        if TRACK_RE.search(lower):
            return ChatReply(
                message=(
                    "I can help you track your order! Please provide your order number "
                    "(e.g. ORD-xxx) and the email address you used when ordering."
                ),
                quick_replies=["I have my order number", "I forgot my order number"],
            )

        if SHIPPING_RE.search(lower):
            return ChatReply(
                message=self._store_info(identity, "shipping"),
                quick_replies=["Delivery times", "Payment methods", "Returns policy"],
            )

        if RETURNS_RE.search(lower):
            return ChatReply(
                message=self._store_info(identity, "returns"),
                quick_replies=["Start a return", "Track my order", "Contact support"],
            )

        if PAYMENT_RE.search(lower):
            return ChatReply(
                message=self._store_info(identity, "payment"),
                quick_replies=["Shipping info", "Find a product"],
            )

        if CONTACT_RE.search(lower):
            return ChatReply(
                message=self._store_info(identity, "contact"),
                quick_replies=["Create a support ticket", "Track my order", "Find a product"],
            )

        if RECOMMEND_RE.search(lower):
            products = self._products(identity, ToolName.GET_RECOMMENDATIONS, {})
            if products:
                return self._product_reply(
                    "Here are some of our top picks:",
                    products,
                    ["Show me more", "Search for something specific"],
                )

        if COUPON_RE.search(lower):
            return ChatReply(
                message=(
                    "I can check a coupon code for you! Just tell me the code and I'll "
                    "verify if it's valid."
                ),
                quick_replies=["I have a code", "Find a product", "What deals are available?"],
            )

        if THANKS_RE.search(lower):
            return ChatReply(
                message=(
                    "You're welcome! If you need anything else, I'm always here to help. "
                    "Happy shopping!"
                ),
                quick_replies=["Find a product", "Track my order"],
            )

        looks_like_search = SEARCH_INTENT_RE.search(text) or (
            len(text) > 2 and not text.endswith("?")
        )
        if looks_like_search or "product" in lower or "item" in lower:
            query = search_query_from(text)
            if query:
                products = self._products(
                    identity, ToolName.SEARCH_PRODUCTS, {"query": query, "limit": 4},
                )
                if products:
                    return self._product_reply(
                        "Here's what I found:",
                        products,
                        ["Show me more", "Add to cart", "Something else"],
                    )

        products = self._products(
            identity, ToolName.SEARCH_PRODUCTS, {"query": text[:50], "limit": 3},
        )
        if products:
            return self._product_reply(
                "I found these products that might interest you:",
                products,
                ["Search for something else", "Track my order", "Store info"],
            )

        return ChatReply(
            message=(
                "I'm not quite sure what you're looking for. I can help with:\n"
                "- Finding and buying products\n"
                "- Tracking orders\n"
                "- Checking coupons\n"
                "- Store policies and info\n"
                "- Creating support tickets\n\n"
                f"For immediate assistance, you can also reach us at **{SUPPORT_PHONE}** "
                f"(call or WhatsApp) or email **{SUPPORT_EMAIL}**."
            ),
            quick_replies=["Find a product", "Track my order", "What do you recommend?", "Call us"],
        )
