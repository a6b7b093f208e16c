"""HTTP client for the store's Supabase backend (PostgREST + RPC) with retry
logic, timeout handling and a small read cache.

Every method returns raw rows (``dict``/``list``) exactly as PostgREST sends
them; shaping rows into chat artifacts is the job of ``src.tools.commerce``.
All requests use the service-role key, so row-level ownership checks that
matter for chat (e.g. "is this order yours?") are enforced by the callers.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any

import httpx

from src.config import SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL
from src.services.cache import TTLCache
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

# ── Cache key prefixes / TTLs ───────────────────────────────────────
_CK_RECOMMENDATIONS = "recs:"
_CK_ORDERS = "orders:"
RECOMMENDATIONS_TTL_SECONDS = 300.0
ORDERS_TTL_SECONDS = 30.0

PRODUCT_COLUMNS = "id,name,slug,price,quantity,metadata,product_images(url,position)"
ORDER_COLUMNS = (
    "id,order_number,status,payment_status,total,created_at,metadata,"
    "order_items(product_name,quantity,unit_price)"
)

# PostgREST treats these as filter syntax inside or=(...)
_FILTER_UNSAFE_RE = re.compile(r"[,()*%\\:\"']")
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE,
)


class CommerceAPIError(Exception):
    """Raised when a backend call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _filter_term(term: str) -> str:
    """Strip characters that would break out of an ``ilike`` filter."""
    return _FILTER_UNSAFE_RE.sub(" ", term).strip()


def is_uuid(value: str) -> bool:
    return bool(_UUID_RE.match(value.strip()))


class CommerceClient:
    """Thin wrapper around the store's PostgREST API with automatic retries.

    **Cache contract**: recommendation lists and per-customer order lists
    are cached briefly.  ``create_return`` invalidates the caller's cached
    orders so a follow-up "show my orders" reflects the new state.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        cache: TTLCache | None = None,
    ):
        self._base_url = (base_url or SUPABASE_URL).rstrip("/")
        self._api_key = api_key or SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY or ""
        self._client = httpx.Client(
            base_url=f"{self._base_url}/rest/v1",
            headers={
                "apikey": self._api_key,
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._cache = cache or TTLCache()

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers=headers,
                )
                if response.status_code >= 500:
                    raise CommerceAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CommerceAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "supabase", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if response.status_code == 204 or not response.content:
                    return None
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("supabase", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Backend attempt %d/%d for %s failed (%s)",
                    attempt, MAX_RETRIES, operation, type(exc).__name__,
                )
            except CommerceAPIError as exc:
                metrics.record_failure(
                    "supabase", operation, error_type=f"http_{exc.status_code}",
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Backend server error on attempt %d/%d for %s",
                        attempt, MAX_RETRIES, operation,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CommerceAPIError(
            f"Backend request {operation} failed after {MAX_RETRIES} retries: {last_error}"
        )

    def _first(self, path: str, params: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._request("GET", path, params={**params, "limit": 1})
        return rows[0] if rows else None

    def _insert(self, table: str, row: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._request(
            "POST",
            f"/{table}",
            json_body=row,
            headers={"Prefer": "return=representation"},
        )
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    def _rpc(self, function: str, payload: dict[str, Any]) -> Any:
        return self._request("POST", f"/rpc/{function}", json_body=payload)

    # ── Catalog ──────────────────────────────────────────────────────

    def search_products(self, query: str, limit: int = 4) -> list[dict[str, Any]]:
        """Active products whose name or description contains *query*."""
        term = _filter_term(query or "")
        if not term:
            return []
        return self._request(
            "GET",
            "/products",
            params={
                "select": PRODUCT_COLUMNS,
                "status": "eq.active",
                "or": f"(name.ilike.*{term}*,description.ilike.*{term}*)",
                "order": "name",
                "limit": limit,
            },
        ) or []

    def get_product(self, slug_or_id: str) -> dict[str, Any] | None:
        """One active product by UUID or slug."""
        value = (slug_or_id or "").strip()
        if not value:
            return None
        column = "id" if is_uuid(value) else "slug"
        return self._first(
            "/products",
            {"select": PRODUCT_COLUMNS, "status": "eq.active", column: f"eq.{value}"},
        )

    def recommendations(self, context: str | None = None, limit: int = 4) -> list[dict[str, Any]]:
        """Top-rated in-stock products, optionally narrowed by *context* (cached)."""
        term = _filter_term(context or "")
        cache_key = f"{_CK_RECOMMENDATIONS}{term.lower()}:{limit}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        params: dict[str, Any] = {
            "select": PRODUCT_COLUMNS,
            "status": "eq.active",
            "quantity": "gt.0",
            "order": "rating_avg.desc,review_count.desc",
            "limit": limit,
        }
        if term:
            params["or"] = f"(name.ilike.*{term}*,description.ilike.*{term}*)"
        rows = self._request("GET", "/products", params=params) or []
        self._cache.put(cache_key, rows, ttl=RECOMMENDATIONS_TTL_SECONDS)
        return rows

    # ── Orders ───────────────────────────────────────────────────────

    def track_order(self, order_number: str, email: str) -> dict[str, Any] | None:
        """Order matching both *order_number* and *email*, else ``None``."""
        data = self._rpc(
            "get_order_for_tracking",
            {"p_order_number": order_number.strip(), "p_email": email.strip()},
        )
        return data if isinstance(data, dict) and data else None

    def customer_orders(self, user_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Most recent orders for *user_id* (cached briefly)."""
        cache_key = f"{_CK_ORDERS}{user_id}:{limit}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        rows = self._request(
            "GET",
            "/orders",
            params={
                "select": ORDER_COLUMNS,
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
                "limit": limit,
            },
        ) or []
        self._cache.put(cache_key, rows, ttl=ORDERS_TTL_SECONDS)
        return rows

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        return self._first(
            "/orders",
            {"select": "id,order_number,status,created_at,user_id", "id": f"eq.{order_id}"},
        )

    def create_return(
        self,
        *,
        user_id: str,
        order_id: str,
        reason: str,
        description: str,
    ) -> dict[str, Any] | None:
        row = self._insert(
            "return_requests",
            {
                "order_id": order_id,
                "user_id": user_id,
                "reason": reason,
                "description": description,
                "status": "pending",
            },
        )
        removed = self._cache.invalidate_prefix(f"{_CK_ORDERS}{user_id}:")
        logger.debug("Cache: invalidated %d order lists for %s after return", removed, user_id)
        return row

    # ── Coupons ──────────────────────────────────────────────────────

    def get_coupon(self, code: str) -> dict[str, Any] | None:
        return self._first("/coupons", {"select": "*", "code": f"eq.{code}"})

    # ── Support ──────────────────────────────────────────────────────

    def create_ticket(
        self,
        *,
        email: str,
        subject: str,
        description: str,
        category: str,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Open a support ticket and attach the description as its first message."""
        ticket = self._insert(
            "support_tickets",
            {
                "user_id": user_id,
                "email": email,
                "subject": subject,
                "description": description,
                "category": category,
                "status": "open",
                "priority": "medium",
            },
        )
        if not ticket:
            return None

        try:
            self._insert(
                "support_messages",
                {
                    "ticket_id": ticket["id"],
                    "user_id": user_id,
                    "message": description,
                    "is_internal": False,
                },
            )
        except CommerceAPIError:
            # The ticket exists; the thread can still be read from the ticket body
            logger.warning("Could not add first message to ticket %s", ticket.get("id"))
        return ticket

    # ── Customers ────────────────────────────────────────────────────

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        """Profile row merged with the customer's order statistics."""
        profile = self._first("/profiles", {"select": "full_name,email", "id": f"eq.{user_id}"})
        if not profile:
            return None
        stats = self._first(
            "/customers",
            {"select": "total_orders,total_spent,last_order_at", "user_id": f"eq.{user_id}"},
        )
        return {**profile, **(stats or {})}

    def upsert_customer_insight(
        self, user_id: str, email: str | None, name: str | None = None,
    ) -> None:
        """Refresh the customer's support-insight row (visit counters, last seen)."""
        self._rpc(
            "upsert_customer_insight",
            {"p_customer_id": user_id, "p_customer_email": email, "p_customer_name": name},
        )

    # ── Support knowledge base ───────────────────────────────────────

    def knowledge_articles(self, terms: list[str], limit: int = 3) -> list[dict[str, Any]]:
        """Published help articles whose title or body mentions any of *terms*."""
        cleaned = [t for t in (_filter_term(term) for term in terms) if t]
        if not cleaned:
            return []
        clauses = ",".join(f"title.ilike.*{t}*,content.ilike.*{t}*" for t in cleaned)
        return self._request(
            "GET",
            "/support_knowledge_base",
            params={
                "select": "title,content",
                "is_published": "eq.true",
                "or": f"({clauses})",
                "limit": limit,
            },
        ) or []

    # ── Conversations ────────────────────────────────────────────────

    def upsert_conversation(
        self,
        session_id: str,
        user_id: str | None,
        messages: list[dict[str, Any]],
        metadata: dict[str, Any],
    ) -> None:
        self._rpc(
            "upsert_chat_conversation",
            {
                "p_session_id": session_id,
                "p_user_id": user_id,
                "p_messages": messages,
                "p_metadata": metadata,
            },
        )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: CommerceClient | None = None
_client_lock = threading.Lock()


def get_commerce_client() -> CommerceClient:
    """Return a module-level CommerceClient singleton (double-checked locking)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = CommerceClient()
    return _client
