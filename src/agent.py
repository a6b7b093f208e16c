"""LangGraph-based orchestration loop for the shop assistant.

Architecture:
  The loop is a LangGraph StateGraph with two nodes:

    1. **model**: Claude with every tool bound; decides whether to answer
                  or to call tools
    2. **tools**: dispatches every tool call of the round through the
                  ``ToolRegistry`` and feeds the results back

  Routing:
    model → (tool calls and rounds < MAX_TOOL_ROUNDS?) → tools → model
          → (otherwise)                                → END

  The round cap bounds a turn to ``MAX_TOOL_ROUNDS + 1`` model calls.  When
  the cap is hit, whatever text the model last produced is the answer even
  if it asked for more tools.

  Failure policy:
    Any exception from a model call aborts the graph.  ``Orchestrator``
    turns it into an ``UpstreamModelError`` and answers the whole turn
    with the rule-based ``FallbackEngine`` instead.  Tool failures never
    abort the graph; the registry converts them into error results the
    model can explain.

  Memory:
    The widget sends the recent history with every request, so the graph
    is compiled without a checkpointer.  One invocation is one turn.
"""

from __future__ import annotations

import json
import logging
import operator
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from src.config import (
    ANTHROPIC_API_KEY,
    HISTORY_LIMIT,
    MAX_TOOL_ROUNDS,
    MODEL_MAX_RETRIES,
    MODEL_MAX_TOKENS,
    MODEL_NAME,
    MODEL_TEMPERATURE,
    MODEL_TIMEOUT_SECONDS,
    SUPPORT_EMAIL,
    SUPPORT_PHONE,
)
from src.fallback import FallbackEngine, default_quick_replies
from src.models import (
    ChatReply,
    ChatTurn,
    CouponCard,
    CustomerProfile,
    Identity,
    Message,
    OrderCard,
    Product,
    ProductList,
    ReturnCard,
    TicketCard,
    ToolResult,
    cart_actions,
)
from src.prompts import build_system_prompt
from src.services.commerce_client import CommerceClient
from src.services.conversation_store import ConversationStore
from src.services.metrics import metrics
from src.tools.commerce import load_profile
from src.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class UpstreamModelError(Exception):
    """The model call failed or produced nothing usable."""


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer so each node appends.
    ``results`` accumulates every ``ToolResult`` of the turn in call order
    (the UI artifacts live there and are never sent back to the model).
    ``rounds`` counts completed tool rounds.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    results: Annotated[list[ToolResult], operator.add]
    rounds: int


# ── LLM builder ─────────────────────────────────────────────────────


def _build_llm(registry: ToolRegistry):
    """Build the chat model with every registry tool bound."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,
        max_tokens=MODEL_MAX_TOKENS,
        timeout=MODEL_TIMEOUT_SECONDS,
        max_retries=MODEL_MAX_RETRIES,
    )
    return llm.bind_tools(registry.schemas())


# ── Node: model ──────────────────────────────────────────────────────


def _make_model_node(registry: ToolRegistry):
    """Create the model node.

    The tool-bound client is captured in the closure so every round of a
    turn (and every turn) reuses one client.
    """
    llm_with_tools = _build_llm(registry)

    def model_node(state: AgentState) -> dict:
        t0 = time.perf_counter()
        try:
            response = llm_with_tools.invoke(state["messages"])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "model_invoke",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "model_invoke", latency_ms=elapsed)
        logger.debug(
            "model responded in %.0fms (round %d)", elapsed, state.get("rounds", 0),
        )
        return {"messages": [response]}

    return model_node


# ── Node: tools ──────────────────────────────────────────────────────


def _pending_calls(message: AnyMessage) -> list[tuple[str, str, Any]]:
    """``(call_id, name, args)`` for every tool call, malformed ones included."""
    calls = [(tc.get("id") or "", tc["name"], tc.get("args")) for tc in message.tool_calls]
    # Args the provider could not parse stay raw strings so dispatch can explain them
    calls.extend(
        (tc.get("id") or "", tc.get("name") or "", tc.get("args"))
        for tc in message.invalid_tool_calls
    )
    return calls


def _make_tools_node(registry: ToolRegistry):
    """Create the node that executes one round of tool calls.

    Calls run concurrently only when every tool in the round is free of
    side effects; otherwise they run one after another.  Either way the
    results keep the order the model asked for them in.
    """

    def tools_node(state: AgentState, config: RunnableConfig) -> dict:
        identity = (config.get("configurable") or {}).get("identity") or Identity.anonymous()
        calls = _pending_calls(state["messages"][-1])

        def run(call: tuple[str, str, Any]) -> ToolResult:
            _, name, args = call
            return registry.dispatch(identity, name, args)

        if len(calls) > 1 and all(registry.is_side_effect_free(name) for _, name, _ in calls):
            with ThreadPoolExecutor(max_workers=len(calls)) as pool:
                results = list(pool.map(run, calls))
        else:
            results = [run(call) for call in calls]

        logger.debug(
            "Round %d ran %d tool(s): %s",
            state.get("rounds", 0) + 1, len(calls), ", ".join(name for _, name, _ in calls),
        )
        tool_messages = [
            ToolMessage(
                content=json.dumps(result.data, default=str),
                tool_call_id=call_id,
                name=name,
                status="error" if result.is_error else "success",
            )
            for (call_id, name, _), result in zip(calls, results)
        ]
        return {
            "messages": tool_messages,
            "results": results,
            "rounds": state.get("rounds", 0) + 1,
        }

    return tools_node


# ── Conditional edge ─────────────────────────────────────────────────


def should_run_tools(state: AgentState) -> str:
    """Route to tools while the model asks for them and the round cap allows."""
    last_message = state["messages"][-1]
    wants_tools = isinstance(last_message, AIMessage) and bool(
        last_message.tool_calls or last_message.invalid_tool_calls
    )
    if not wants_tools:
        return END
    if state.get("rounds", 0) >= MAX_TOOL_ROUNDS:
        logger.info("Tool round cap (%d) reached; answering with last model text", MAX_TOOL_ROUNDS)
        return END
    return "tools"


# ── Graph assembly ───────────────────────────────────────────────────


def create_shop_agent(registry: ToolRegistry):
    """Build and compile the shop assistant graph.

    Returns a compiled graph that can be invoked with:
        graph.invoke(
            {"messages": [...], "results": [], "rounds": 0},
            config={"configurable": {"identity": identity}},
        )
    """
    graph = StateGraph(AgentState)

    graph.add_node("model", _make_model_node(registry))
    graph.add_node("tools", _make_tools_node(registry))

    graph.set_entry_point("model")
    graph.add_conditional_edges("model", should_run_tools, {"tools": "tools", END: END})
    graph.add_edge("tools", "model")

    compiled = graph.compile()
    logger.debug(
        "Shop agent compiled: model %s, %d tools, round cap %d",
        MODEL_NAME, len(registry.schemas()), MAX_TOOL_ROUNDS,
    )
    return compiled


# ── Message helpers ──────────────────────────────────────────────────


def build_history(history: list[Message], limit: int = HISTORY_LIMIT) -> list[BaseMessage]:
    """Most recent user/assistant messages as LangChain messages.

    The window never starts on an assistant turn, since the model expects
    the conversation to open with the user.
    """
    recent = [m for m in history if m.role in ("user", "assistant") and m.content.strip()]
    recent = recent[-limit:] if limit > 0 else []
    while recent and recent[0].role == "assistant":
        recent.pop(0)
    return [
        HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
        for m in recent
    ]


def _message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


_THINK_RE = re.compile(r"<think>[\s\S]*?</think>", re.I)
_STEP_HEADER_RE = re.compile(r"^## Step \d+:.*$", re.M)
_STEP_LINE_RE = re.compile(r"^Step \d+:.*$", re.M)
_LETS_GO_RE = re.compile(r"^Let's get started!?\s*", re.M)
_MD_HEADER_RE = re.compile(r"^#{1,6}\s+", re.M)


def clean_model_text(text: str) -> str:
    """Strip leaked reasoning blocks, step lines and markdown headers."""
    for pattern in (_THINK_RE, _STEP_HEADER_RE, _STEP_LINE_RE, _LETS_GO_RE, _MD_HEADER_RE):
        text = pattern.sub("", text)
    return text.strip()


def _contextual_text(
    products: list[Product],
    order_card: OrderCard | None,
    ticket_card: TicketCard | None,
    coupon_card: CouponCard | None,
) -> str:
    if ticket_card:
        return "I've created a support ticket for you. Our team will follow up shortly."
    if order_card:
        return "Here are the details for your order."
    if products:
        return "Here's what I found for you:"
    if coupon_card:
        return "Here's the coupon information:"
    return (
        "I'm sorry, I wasn't able to process that properly. You can try rephrasing "
        "your request, or for immediate help, reach us directly:\n\n"
        f"- **Phone/WhatsApp:** {SUPPORT_PHONE}\n"
        f"- **Email:** {SUPPORT_EMAIL}\n\n"
        "Our team is available Mon-Sat, 8am-8pm GMT."
    )


def assemble_reply(text: str, user_text: str, results: list[ToolResult]) -> ChatReply:
    """Fold the turn's tool results and final model text into one reply."""
    products: list[Product] = []
    order_card: OrderCard | None = None
    ticket_card: TicketCard | None = None
    return_card: ReturnCard | None = None
    coupon_card: CouponCard | None = None
    quick_replies: list[str] | None = None

    for result in results:
        artifact = result.ui_artifact
        if isinstance(artifact, ProductList):
            products.extend(artifact.products)
        elif isinstance(artifact, OrderCard):
            order_card = artifact
        elif isinstance(artifact, TicketCard):
            ticket_card = artifact
        elif isinstance(artifact, ReturnCard):
            return_card = artifact
        elif isinstance(artifact, CouponCard):
            coupon_card = artifact
        if result.suggested_quick_replies:
            quick_replies = result.suggested_quick_replies

    message = clean_model_text(text) or _contextual_text(
        products, order_card, ticket_card, coupon_card,
    )
    return ChatReply(
        message=message,
        products=products or None,
        actions=cart_actions(products) or None,
        order_card=order_card,
        ticket_card=ticket_card,
        return_card=return_card,
        coupon_card=coupon_card,
        quick_replies=list(
            quick_replies or default_quick_replies(user_text, products, order_card, ticket_card)
        ),
    )


# ── Orchestrator ─────────────────────────────────────────────────────

KNOWLEDGE_SEARCH_TERMS = 3


def knowledge_terms(text: str, limit: int = KNOWLEDGE_SEARCH_TERMS) -> list[str]:
    """The first few words longer than three characters, for the help-article search."""
    return [w for w in text.lower().split() if len(w) > 3][:limit]


class Orchestrator:
    """Answers one ``ChatTurn``: model path when available, fallback otherwise.

    ``agent`` is the compiled graph from ``create_shop_agent``; pass
    ``None`` to run fallback-only (no model key configured).  When a
    ``store`` is given, every signed-in turn also queues a customer-insight
    refresh.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        fallback: FallbackEngine,
        client: CommerceClient | None = None,
        agent=None,
        store: ConversationStore | None = None,
    ) -> None:
        self._registry = registry
        self._fallback = fallback
        self._client = client
        self._agent = agent
        self._store = store

    @property
    def has_model(self) -> bool:
        return self._agent is not None

    def _load_profile(self, identity: Identity) -> CustomerProfile | None:
        if self._client is None or not identity.is_authenticated:
            return None
        try:
            return load_profile(self._client, identity)
        except Exception:
            # Personalisation only; the turn continues without it
            logger.warning("Could not load profile for %s", identity.user_id, exc_info=True)
            return None

    def _load_knowledge(self, text: str) -> list[dict]:
        terms = knowledge_terms(text)
        if self._client is None or not terms:
            return []
        try:
            return self._client.knowledge_articles(terms)
        except Exception:
            logger.warning("Help-article lookup failed; answering without it", exc_info=True)
            return []

    def _run_agent(self, turn: ChatTurn, profile: CustomerProfile | None) -> dict:
        system_prompt = build_system_prompt(
            profile,
            turn.identity,
            turn.page_path,
            cart_items=turn.cart_items,
            knowledge=self._load_knowledge(turn.new_message),
        )
        messages: list[BaseMessage] = [
            SystemMessage(content=system_prompt),
            *build_history(turn.history),
            HumanMessage(content=turn.new_message),
        ]
        try:
            state = self._agent.invoke(
                {"messages": messages, "results": [], "rounds": 0},
                config={"configurable": {"identity": turn.identity}},
            )
        except Exception as exc:
            raise UpstreamModelError(f"{type(exc).__name__}: {exc}") from exc

        final = state["messages"][-1] if state.get("messages") else None
        if not isinstance(final, AIMessage):
            raise UpstreamModelError(f"graph ended on {type(final).__name__}, not a model reply")
        return state

    def respond(self, turn: ChatTurn) -> ChatReply:
        profile = self._load_profile(turn.identity)
        reply = self._answer(turn, profile)
        if self._store is not None and turn.identity.is_authenticated:
            self._store.record_insight(
                turn.identity.user_id,
                turn.identity.email,
                profile.name if profile else None,
            )
        return reply

    def _answer(self, turn: ChatTurn, profile: CustomerProfile | None) -> ChatReply:
        if self._agent is None:
            metrics.record_event("Chat/Fallback", Reason="no_model")
            return self._fallback.respond(turn.new_message, turn.identity, profile)

        try:
            state = self._run_agent(turn, profile)
        except UpstreamModelError as exc:
            logger.warning("Model path failed, answering with fallback: %s", exc)
            metrics.record_event("Chat/Fallback", Reason="model_error")
            return self._fallback.respond(turn.new_message, turn.identity, profile)

        return assemble_reply(
            _message_text(state["messages"][-1]),
            turn.new_message,
            state.get("results", []),
        )
