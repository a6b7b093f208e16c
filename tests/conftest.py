"""Shared test fixtures for the shop assistant test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py reads test values on load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
    os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key-456")
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-key-789")
    os.environ.pop("REDIS_URL", None)


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else str(data).encode()
        return mock

    return _make


def _product_row(
    name: str = "Female Mannequin",
    *,
    slug: str | None = None,
    price: float = 450.0,
    quantity: int = 10,
    moq: int | None = None,
    image: str | None = "https://cdn.example.com/m.jpg",
) -> dict:
    """A PostgREST ``products`` row as the commerce client returns it."""
    return {
        "id": f"prod-{(slug or name).lower().replace(' ', '-')}",
        "name": name,
        "slug": slug or name.lower().replace(" ", "-"),
        "price": price,
        "quantity": quantity,
        "metadata": {"moq": moq} if moq else {},
        "product_images": [{"url": image, "position": 0}] if image else [],
    }


def _order_row(
    order_number: str = "ORD-1001",
    *,
    status: str = "shipped",
    total: float = 900.0,
    created_at: str = "2026-10-01T10:00:00Z",
    tracking_number: str | None = "TRK-55",
) -> dict:
    return {
        "id": f"id-{order_number}",
        "order_number": order_number,
        "status": status,
        "payment_status": "paid",
        "total": total,
        "created_at": created_at,
        "metadata": {"tracking_number": tracking_number} if tracking_number else {},
        "order_items": [{"product_name": "Female Mannequin", "quantity": 2, "unit_price": 450}],
    }


@pytest.fixture
def product_row():
    """Factory fixture for PostgREST ``products`` rows."""
    return _product_row


@pytest.fixture
def order_row():
    """Factory fixture for PostgREST ``orders`` rows (with items)."""
    return _order_row


@pytest.fixture
def mock_commerce():
    """A ``CommerceClient`` stand-in that returns nothing by default."""
    from src.services.commerce_client import CommerceClient

    client = MagicMock(spec=CommerceClient)
    client.search_products.return_value = []
    client.recommendations.return_value = []
    client.get_product.return_value = None
    client.track_order.return_value = None
    client.customer_orders.return_value = []
    client.get_order.return_value = None
    client.get_coupon.return_value = None
    client.get_profile.return_value = None
    client.knowledge_articles.return_value = []
    return client
