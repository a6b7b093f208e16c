"""Best-effort conversation persistence.

``ConversationStore.persist`` never blocks the response: it builds the
record and hands it to a bounded queue drained by one daemon worker
thread.  A full queue drops the write (logged and counted) instead of
growing; a failed write is logged and forgotten.

The same queue carries the customer-insight refresh written after each
signed-in turn.
"""

from __future__ import annotations

import logging
import queue
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.config import PERSIST_MESSAGE_LIMIT, PERSIST_QUEUE_SIZE
from src.models import ChatReply, Message
from src.services.commerce_client import CommerceAPIError, CommerceClient
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

NEGATIVE_WORDS = (
    "angry", "frustrated", "terrible", "horrible", "worst", "hate", "bad", "awful",
    "unacceptable", "disappointed", "furious", "pathetic", "useless", "scam", "refund",
)
POSITIVE_WORDS = (
    "great", "love", "amazing", "excellent", "wonderful", "fantastic", "awesome",
    "perfect", "thank", "happy", "good", "best",
)

# First match wins
_CATEGORY_PATTERNS = (
    ("order", re.compile(r"order|track|delivery|ship")),
    ("product", re.compile(r"product|buy|price|stock|available")),
    ("return", re.compile(r"return|refund|exchange")),
    ("payment", re.compile(r"payment|pay|money|momo")),
    ("coupon", re.compile(r"coupon|promo|discount")),
    ("support", re.compile(r"support|help|ticket|issue|problem|complaint")),
    ("shipping", re.compile(r"shipping|deliver")),
)

_STOP = object()


@dataclass(frozen=True)
class ConversationRecord:
    session_id: str
    user_id: str | None
    messages: list[dict[str, str]]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class InsightRecord:
    user_id: str
    email: str | None
    name: str | None = None


def detect_sentiment(text: str) -> str:
    lower = text.lower()
    negative = sum(1 for w in NEGATIVE_WORDS if w in lower)
    positive = sum(1 for w in POSITIVE_WORDS if w in lower)
    if negative > positive:
        return "negative"
    if positive > negative:
        return "positive"
    return "neutral"


def detect_category(text: str) -> str | None:
    lower = text.lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(lower):
            return category
    return None


def detect_intent(text: str, reply: ChatReply) -> str | None:
    lower = text.lower()
    if reply.products:
        return "product_search"
    if reply.order_card:
        return "order_tracking"
    if reply.ticket_card:
        return "support_ticket"
    if reply.return_card:
        return "return_request"
    if reply.coupon_card:
        return "coupon_check"
    if re.search(r"\b(hi|hello|hey)\b", lower):
        return "greeting"
    if re.search(r"\b(thank|bye)\b", lower):
        return "closing"
    return None


def build_payload(
    session_id: str,
    user_id: str | None,
    prior: list[Message],
    new_text: str,
    reply: ChatReply,
    page_path: str | None = None,
    limit: int = PERSIST_MESSAGE_LIMIT,
) -> ConversationRecord:
    """The rolling window plus analytics metadata for one finished turn."""
    messages = [{"role": m.role, "content": m.content} for m in prior]
    messages.append({"role": "user", "content": new_text})
    messages.append({"role": "assistant", "content": reply.message or ""})

    metadata = {
        "lastActivity": datetime.now(UTC).isoformat(),
        "lastUserMessage": new_text[:200],
        "hadProducts": bool(reply.products),
        "hadOrderCard": reply.order_card is not None,
        "hadTicket": reply.ticket_card is not None,
        "messageCount": len(messages),
        "sentiment": detect_sentiment(new_text),
        "category": detect_category(new_text),
        "intent": detect_intent(new_text, reply),
        "isResolved": bool(reply.products or reply.order_card or reply.coupon_card),
        "isEscalated": reply.ticket_card is not None,
        "pageContext": page_path,
    }
    return ConversationRecord(
        session_id=session_id,
        user_id=user_id,
        messages=messages[-limit:] if limit > 0 else [],
        metadata=metadata,
    )


class ConversationStore:
    """Bounded write-behind queue in front of the conversation and insight RPCs."""

    def __init__(self, client: CommerceClient, maxsize: int = PERSIST_QUEUE_SIZE) -> None:
        self._client = client
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._drain, name="conversation-store", daemon=True,
            )
            self._worker.start()
        logger.debug("Conversation store worker started")

    def persist(
        self,
        session_id: str,
        user_id: str | None,
        prior: list[Message],
        new_text: str,
        reply: ChatReply,
        page_path: str | None = None,
    ) -> bool:
        """Queue one conversation write.  Returns ``False`` when it was dropped."""
        record = build_payload(session_id, user_id, prior, new_text, reply, page_path)
        return self._enqueue(record, f"session {session_id}")

    def record_insight(self, user_id: str, email: str | None, name: str | None = None) -> bool:
        """Queue a customer-insight refresh for a signed-in shopper."""
        return self._enqueue(InsightRecord(user_id, email, name), f"customer {user_id}")

    def _enqueue(self, record: ConversationRecord | InsightRecord, label: str) -> bool:
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            logger.warning("Persistence queue full; dropping write for %s", label)
            metrics.record_event("Chat/PersistDropped")
            return False
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued write has been attempted (tests)."""
        with self._queue.all_tasks_done:
            return self._queue.all_tasks_done.wait_for(
                lambda: not self._queue.unfinished_tasks, timeout,
            )

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker, self._worker = self._worker, None
        if worker is None:
            return
        self._queue.put(_STOP)
        worker.join(timeout)
        logger.debug("Conversation store worker stopped")

    def _drain(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is _STOP:
                    return
                self._write(record)
            finally:
                self._queue.task_done()

    def _write(self, record: ConversationRecord | InsightRecord) -> None:
        if isinstance(record, InsightRecord):
            operation, key = "customer_insight", record.user_id
        else:
            operation, key = "persist_conversation", record.session_id
        try:
            if isinstance(record, InsightRecord):
                self._client.upsert_customer_insight(record.user_id, record.email, record.name)
            else:
                self._client.upsert_conversation(
                    record.session_id, record.user_id, record.messages, record.metadata,
                )
        except Exception as exc:
            logger.error(
                "Failed %s for %s: %s", operation, key, exc,
                exc_info=not isinstance(exc, CommerceAPIError),
            )
            metrics.record_failure("supabase", operation, error_type=type(exc).__name__)
        else:
            logger.debug("Completed %s for %s", operation, key)
