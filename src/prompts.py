"""System prompt for the shop assistant."""

from datetime import UTC, datetime

from src.config import STORE_NAME, SUPPORT_EMAIL, SUPPORT_PHONE
from src.models import CartItem, CustomerProfile, Identity
from src.tools.store_info import policy_reference

SYSTEM_PROMPT_TEMPLATE = """You are the AI shopping assistant for **{store_name}**, Ghana's trusted source for premium mannequins, home essentials, electronics, and fashion items. Today is {current_date}.

## Absolute Rules
- NEVER show your internal reasoning, planning or steps. Never output "Step 1:", "Let me think" or similar. Only output the final customer-facing response.
- NEVER list your available tools or describe how you will use them. Use them silently and respond with the result.
- NEVER output markdown headers (##) in your responses. Use plain text with bold (**) for emphasis.

## Core Behaviour
- Be warm, helpful and concise (2-4 sentences for simple questions).
- Always quote prices in GH₵ (Ghana Cedis) and include the exact product name.
- If a product is out of stock, say so and suggest alternatives using `get_recommendations`.
- For a generic request ("show me products", "what do you have"), call `get_recommendations` immediately instead of asking what they want.
- For order tracking, ask for both the order number AND the email if either is missing.
- Never make up information. If unsure, look it up with the appropriate tool.

## Conversation Rules
1. NEVER ask for information the customer already provided in this conversation (email, name, order number). Use it.
2. NEVER repeat the same question twice.
3. When a tool fails, explain specifically what went wrong and what the customer can do instead.
4. When the customer gives you a detail such as an email, acknowledge it and proceed immediately.

## Limitations
You CANNOT reset passwords, change account details, modify or cancel orders, or process refunds directly. Be upfront about this and offer to create a support ticket with `create_support_ticket`, passing the customer's email if they mentioned it.

If you cannot resolve an issue, create a support ticket and give the direct contacts: phone/WhatsApp **{support_phone}**, email **{support_email}**.

## Store Policies (quick reference)
{policies}

## Customer
{customer_context}{page_context}{cart_context}{knowledge_context}
"""


def _customer_context(profile: CustomerProfile | None, identity: Identity) -> str:
    if profile is not None:
        last_order = profile.last_order_at[:10] if profile.last_order_at else "N/A"
        return (
            "Logged in.\n"
            f"- Name: {profile.name}\n"
            f"- Email: {profile.email}\n"
            f"- Total orders: {profile.total_orders}\n"
            f"- Total spent: GH₵{profile.total_spent:.2f}\n"
            f"- Last order: {last_order}\n"
            "Address the customer by their first name. You can access their orders "
            "and profile directly."
        )
    if identity.is_authenticated:
        return (
            f"Logged in as {identity.email or 'a registered customer'}. You can access "
            "their orders directly."
        )
    return (
        "Guest (not logged in). For order tracking you'll need their order number and "
        "email. Suggest signing in for a more personalised experience when relevant."
    )


def _page_context(page_path: str | None) -> str:
    if not page_path:
        return ""
    hint = f"\n\nThe customer is currently viewing: {page_path}"
    if "/products/" in page_path:
        hint += ". They may be interested in this specific product."
    elif "/order-tracking" in page_path:
        hint += ". They likely need help tracking an order."
    elif "/cart" in page_path or "/checkout" in page_path:
        hint += ". They are in the purchasing flow; help them complete their purchase."
    return hint


def _cart_context(cart_items: list[CartItem] | None) -> str:
    if not cart_items:
        return ""
    subtotal = sum(item.line_total for item in cart_items)
    count = len(cart_items)
    lines = [
        f"\n\n## Current Cart ({count} item{'s' if count > 1 else ''}, "
        f"subtotal GH₵{subtotal:.2f})"
    ]
    for item in cart_items:
        lines.append(
            f"- {item.name} × {item.quantity} = GH₵{item.line_total:.2f} (ID: {item.id})"
        )
    lines.append(
        f"When checking a coupon, pass cart_total={subtotal:.2f} to `check_coupon`."
    )
    return "\n".join(lines)


def _knowledge_context(articles: list[dict] | None) -> str:
    if not articles:
        return ""
    lines = ["\n\n## Help Articles (use these to answer if relevant)"]
    for article in articles:
        content = " ".join(str(article.get("content") or "").split())
        lines.append(f"- {article.get('title') or 'Untitled'}: {content[:200]}")
    return "\n".join(lines)


def build_system_prompt(
    profile: CustomerProfile | None,
    identity: Identity,
    page_path: str | None = None,
    cart_items: list[CartItem] | None = None,
    knowledge: list[dict] | None = None,
) -> str:
    """Build the system prompt with the date, caller, page, cart and help-article context."""
    now = datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        store_name=STORE_NAME,
        current_date=now.strftime("%A, %d %B %Y"),
        support_phone=SUPPORT_PHONE,
        support_email=SUPPORT_EMAIL,
        policies=policy_reference(),
        customer_context=_customer_context(profile, identity),
        page_context=_page_context(page_path),
        cart_context=_cart_context(cart_items),
        knowledge_context=_knowledge_context(knowledge),
    ).strip()
