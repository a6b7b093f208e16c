"""Caller identity resolution.

Identity is an enrichment, never a gate: every resolver returns
``Identity.anonymous()`` on a missing, malformed, expired or unverifiable
credential.  Whether a *tool* needs an authenticated caller is decided by
that tool.

The transport details (which cookie, which header, how the token is
encoded) stay inside the resolver.  The route hands over a
``RequestCredentials`` value and the rest of the service only ever sees
the resulting ``Identity``.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

import httpx

from src.config import SUPABASE_ANON_KEY, SUPABASE_URL
from src.models import Identity
from src.services.cache import TTLCache
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 5.0
TOKEN_CACHE_TTL_SECONDS = 60.0

_CK_TOKEN = "token:"

# sb-<project ref>-auth-token, optionally split into .0, .1, ... chunks
_AUTH_COOKIE_RE = re.compile(r"^sb-[A-Za-z0-9]+-auth-token(?:\.(\d+))?$")


@dataclass(frozen=True)
class RequestCredentials:
    """Credential material presented by the caller."""

    cookies: dict[str, str] = field(default_factory=dict)
    authorization: str | None = None


class IdentityResolver(ABC):
    @abstractmethod
    def resolve(self, credentials: RequestCredentials) -> Identity:
        """Return the caller's identity, or anonymous.  Never raises."""


class AnonymousIdentityResolver(IdentityResolver):
    """Used when no auth server is configured."""

    def resolve(self, credentials: RequestCredentials) -> Identity:
        return Identity.anonymous()


def _token_from_cookie_value(raw: str) -> str | None:
    """Decode a Supabase ``sb-<ref>-auth-token`` cookie value.

    The cookie has been seen in several shapes: a bare access token, a JSON
    array ``[access_token, refresh_token, ...]``, a JSON session object, and
    (newer SSR helpers) ``base64-`` followed by the base64 JSON session.
    """
    decoded = unquote(raw)
    if decoded.startswith("base64-"):
        padded = decoded[len("base64-"):]
        padded += "=" * (-len(padded) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")

    try:
        data: Any = json.loads(decoded)
    except ValueError:
        data = decoded

    if isinstance(data, str):
        return data or None
    if isinstance(data, list) and data and isinstance(data[0], str):
        return data[0]
    if isinstance(data, dict):
        token = data.get("access_token")
        return token if isinstance(token, str) and token else None
    return None


def _session_cookie(cookies: dict[str, str]) -> str | None:
    """The raw session cookie, reassembled when the browser split it.

    An unsplit cookie wins.  Otherwise chunks are joined from ``.0`` up to
    the first missing index.  The PKCE ``-code-verifier`` cookie never
    matches.
    """
    chunks: dict[int, str] = {}
    for name, value in cookies.items():
        match = _AUTH_COOKIE_RE.match(name)
        if not match or not value:
            continue
        if match.group(1) is None:
            return value
        chunks[int(match.group(1))] = value

    parts = []
    while len(parts) in chunks:
        parts.append(chunks[len(parts)])
    return "".join(parts) or None


def extract_access_token(credentials: RequestCredentials) -> str | None:
    """Find an access token in the Authorization header or session cookie."""
    auth = (credentials.authorization or "").strip()
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token

    raw = _session_cookie(credentials.cookies)
    return _token_from_cookie_value(raw) if raw else None


class SupabaseSessionResolver(IdentityResolver):
    """Verifies a Supabase access token against the GoTrue ``/user`` endpoint.

    Verified tokens are cached briefly so a burst of messages from one
    signed-in shopper costs a single auth round trip.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        cache: TTLCache | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or SUPABASE_URL).rstrip("/")
        self._api_key = api_key or SUPABASE_ANON_KEY or ""
        self._cache = cache or TTLCache(max_bytes=1024 * 1024)
        self._client = http_client or httpx.Client(
            base_url=self._base_url, timeout=AUTH_TIMEOUT_SECONDS,
        )

    def resolve(self, credentials: RequestCredentials) -> Identity:
        try:
            token = extract_access_token(credentials)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("Could not decode session credential: %s", exc)
            return Identity.anonymous()
        if not token:
            return Identity.anonymous()

        cached = self._cache.get(f"{_CK_TOKEN}{token}")
        if cached is not None:
            return Identity(user_id=cached["user_id"], email=cached["email"])

        t0 = time.perf_counter()
        try:
            response = self._client.get(
                "/auth/v1/user",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            metrics.record_failure("supabase_auth", "get_user", error_type=type(exc).__name__)
            logger.warning("Auth verification failed, treating caller as anonymous: %s", exc)
            return Identity.anonymous()
        elapsed = (time.perf_counter() - t0) * 1000

        if response.status_code != 200:
            # 401/403 is the normal answer for an expired token
            logger.debug("Auth server rejected token (status %d)", response.status_code)
            return Identity.anonymous()

        try:
            user = response.json()
        except ValueError:
            logger.warning("Auth server returned a non-JSON body")
            return Identity.anonymous()

        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            return Identity.anonymous()

        metrics.record_success("supabase_auth", "get_user", latency_ms=elapsed)
        identity = Identity(user_id=str(user_id), email=user.get("email") or None)
        self._cache.put(
            f"{_CK_TOKEN}{token}",
            {"user_id": identity.user_id, "email": identity.email},
            ttl=TOKEN_CACHE_TTL_SECONDS,
        )
        return identity


def build_identity_resolver() -> IdentityResolver:
    if SUPABASE_URL and SUPABASE_ANON_KEY:
        return SupabaseSessionResolver()
    logger.info("No auth server configured; all callers are anonymous")
    return AnonymousIdentityResolver()
