"""Store policy knowledge.

Loads ``STORE_INFO.md`` once at import time and splits it into one section
per ``## <topic>`` heading.  Used by the ``get_store_info`` tool, by the
rule-based fallback, and for the policy quick reference in the system
prompt.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_INFO_PATH = Path(__file__).resolve().parent / "STORE_INFO.md"

TOPICS = ("shipping", "returns", "payment", "contact", "about", "delivery_times", "hours")


def _load_store_info() -> str:
    try:
        return _INFO_PATH.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error("STORE_INFO.md not found at %s", _INFO_PATH)
        return ""


def _split_into_topics(content: str) -> dict[str, str]:
    """Map each ``## heading`` (lower-cased) to its body text."""
    sections: dict[str, str] = {}
    parts = re.split(r"^##\s+(.+?)\s*$", content, flags=re.MULTILINE)
    # parts[0] is the preamble, then alternating heading/body pairs
    for i in range(1, len(parts), 2):
        heading = parts[i].strip().lower()
        body = parts[i + 1].strip() if i + 1 < len(parts) else ""
        sections[heading] = body
    return sections


_SECTIONS: dict[str, str] = _split_into_topics(_load_store_info())


def get_store_info(topic: str) -> str:
    """Policy text for *topic*, or every section when the topic is unknown.

    The topic is normalised the loose way a model tends to send it:
    ``"Delivery Times"`` and ``"delivery-times"`` both match
    ``delivery_times``.
    """
    key = re.sub(r"[^a-z_]", "", (topic or "").lower().replace(" ", "_").replace("-", "_"))
    # Longest keys first so "delivery_times" wins over a shorter overlap
    for name in sorted(_SECTIONS, key=len, reverse=True):
        if name in key:
            return _SECTIONS[name]
    return "\n\n".join(_SECTIONS.values())


def search_store_info(query: str, max_results: int = 2) -> list[tuple[str, str]]:
    """Keyword-score sections against *query*; returns ``(topic, body)`` pairs."""
    words = {w for w in re.findall(r"[a-z]+", (query or "").lower()) if len(w) > 3}
    if not words:
        return []

    scored: list[tuple[int, str, str]] = []
    for topic, body in _SECTIONS.items():
        text = f"{topic.replace('_', ' ')} {body}".lower()
        score = sum(1 for w in words if w in text)
        if any(w in topic for w in words):
            score += 2
        if score > 0:
            scored.append((score, topic, body))

    scored.sort(key=lambda item: item[0], reverse=True)
    return [(topic, body) for _, topic, body in scored[:max_results]]


def policy_reference() -> str:
    """One line per topic, used as the prompt's quick policy reference."""
    lines = []
    for topic in ("delivery_times", "returns", "payment", "hours"):
        body = _SECTIONS.get(topic, "")
        if body:
            lines.append(f"- {topic.replace('_', ' ').capitalize()}: {' '.join(body.split())}")
    return "\n".join(lines)
