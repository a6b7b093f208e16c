"""CLI entry point for the shop assistant.

This provides a simple terminal-based chat interface for testing and
development. For production, use the FastAPI server (src/server.py).

Usage:
    python -m src.main            # normal mode (quiet)
    python -m src.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from src.models import ChatReply, ChatTurn, Message

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _build_orchestrator():
    # Imported late so load_dotenv() runs before src.config reads the environment
    from src.agent import Orchestrator, create_shop_agent
    from src.config import ANTHROPIC_API_KEY
    from src.fallback import FallbackEngine
    from src.services.commerce_client import get_commerce_client
    from src.tools.commerce import build_registry

    client = get_commerce_client()
    registry = build_registry(client)
    agent = create_shop_agent(registry) if ANTHROPIC_API_KEY else None
    return Orchestrator(registry, FallbackEngine(registry), client=client, agent=agent)


def _render(reply: ChatReply) -> str:
    lines = [f"\nAssistant: {reply.message}"]
    for product in reply.products or []:
        stock = "in stock" if product.in_stock else "out of stock"
        lines.append(f"  • {product.name}: GH₵{product.price:.2f} ({stock})")
    for card in (reply.order_card, reply.ticket_card, reply.return_card, reply.coupon_card):
        if card is not None:
            lines.append(f"  [{type(card).__name__}] {card.model_dump(exclude_none=True)}")
    if reply.quick_replies:
        lines.append(f"  → {' | '.join(reply.quick_replies)}")
    return "\n".join(lines) + "\n"


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Shop assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Shop Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    orchestrator = _build_orchestrator()
    if not orchestrator.has_model:
        print("  (no ANTHROPIC_API_KEY: answering with the rule-based fallback)\n")
    history: list[Message] = []

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Happy shopping!")
            break

        if user_input.lower() == "new":
            history = []
            print("\n>> New conversation started.\n")
            continue

        try:
            reply = orchestrator.respond(ChatTurn(new_message=user_input, history=list(history)))
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAssistant: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh conversation.\n")
            continue

        print(_render(reply))
        history.append(Message(role="user", content=user_input))
        history.append(Message(role="assistant", content=reply.message))


if __name__ == "__main__":
    main()
