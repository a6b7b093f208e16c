"""Tests for the tool registry and dispatcher contract."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from pydantic import BaseModel

from src.models import Identity, ToolResult
from src.tools.commerce import build_registry
from src.tools.registry import (
    ToolName,
    ToolRegistry,
    ToolSpec,
    UnknownTool,
    parse_tool_name,
)

ANON = Identity.anonymous()


class _NoArgs(BaseModel):
    pass


def _spec(name: ToolName, **kwargs) -> ToolSpec:
    return ToolSpec(
        name, f"{name.value} tool", _NoArgs, lambda identity, args: ToolResult({}), **kwargs,
    )


@pytest.fixture
def registry(mock_commerce):
    return build_registry(mock_commerce)


class TestParseToolName:
    def test_known_name(self):
        assert parse_tool_name("track_order") is ToolName.TRACK_ORDER

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_tool_name("  check_coupon ") is ToolName.CHECK_COUPON

    def test_unknown_name(self):
        assert parse_tool_name("create_order") == UnknownTool(name="create_order")

    def test_missing_name(self):
        assert parse_tool_name(None) == UnknownTool(name="")


class TestRegistryConstruction:
    def test_missing_spec_is_rejected(self):
        specs = [_spec(name) for name in ToolName if name is not ToolName.GET_STORE_INFO]
        with pytest.raises(ValueError, match="get_store_info"):
            ToolRegistry(specs)

    def test_duplicate_spec_is_rejected(self):
        specs = [_spec(name) for name in ToolName] + [_spec(ToolName.TRACK_ORDER)]
        with pytest.raises(ValueError, match="Duplicate"):
            ToolRegistry(specs)

    def test_complete_table_builds(self):
        registry = ToolRegistry([_spec(name) for name in ToolName])
        assert all(name in registry for name in ToolName)
        assert "track_order" not in registry  # only parsed names are members


class TestDispatch:
    def test_unknown_tool_is_an_error_result(self, registry):
        result = registry.dispatch(ANON, "delete_everything", {})
        assert result.data == {"error": "Unknown tool: delete_everything"}

    def test_json_string_arguments(self, registry, mock_commerce):
        registry.dispatch(ANON, "search_products", '{"query": "blender"}')
        mock_commerce.search_products.assert_called_once_with("blender", 4)

    def test_malformed_json_is_an_error_result(self, registry, mock_commerce):
        result = registry.dispatch(ANON, "search_products", '{"query": "blen')
        assert result.data["error"].startswith("Invalid arguments for search_products")
        assert "not valid JSON" in result.data["error"]
        mock_commerce.search_products.assert_not_called()

    def test_non_object_json_is_an_error_result(self, registry):
        result = registry.dispatch(ANON, "search_products", '["blender"]')
        assert "JSON object" in result.data["error"]

    def test_validation_error_names_the_field(self, registry, mock_commerce):
        result = registry.dispatch(ANON, "get_product_for_cart", {})
        assert "slug_or_id" in result.data["error"]
        mock_commerce.get_product.assert_not_called()

    def test_wrong_type_is_an_error_result(self, registry):
        result = registry.dispatch(ANON, "get_customer_orders", {"limit": "lots"})
        assert result.is_error
        assert "limit" in result.data["error"]

    def test_extra_arguments_are_ignored(self, registry, mock_commerce):
        result = registry.dispatch(ANON, "search_products", {"query": "fan", "colour": "red"})
        assert not result.is_error
        mock_commerce.search_products.assert_called_once_with("fan", 4)

    def test_handler_exception_becomes_error_result(self, registry, mock_commerce):
        mock_commerce.search_products.side_effect = RuntimeError("connection reset")
        result = registry.dispatch(ANON, "search_products", {"query": "fan"})
        assert result.is_error
        assert "connection reset" not in result.data["error"]
        assert result.suggested_quick_replies == ["Try again", "Contact support"]

    def test_records_tool_metrics(self, registry):
        with patch("src.tools.registry.metrics") as mock_metrics:
            registry.dispatch(ANON, "get_store_info", {"topic": "payment"})
            registry.dispatch(ANON, "nope", {})
        mock_metrics.record_success.assert_called_once()
        assert mock_metrics.record_success.call_args.args[:2] == ("tool", "get_store_info")
        mock_metrics.record_failure.assert_called_once_with(
            "tool", "unknown", error_type="UnknownTool",
        )


class TestSideEffects:
    def test_only_ticket_and_return_have_side_effects(self, registry):
        writers = {name for name in ToolName if not registry.is_side_effect_free(name)}
        assert writers == {ToolName.CREATE_SUPPORT_TICKET, ToolName.INITIATE_RETURN}

    def test_unknown_tool_counts_as_side_effect_free(self, registry):
        assert registry.is_side_effect_free("made_up") is True
