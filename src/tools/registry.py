"""Tool table and dispatcher.

The model names a tool with a free-form string.  That string is parsed
exactly once, at the boundary, into either a ``ToolName`` (the closed set
of tools this service offers) or an ``UnknownTool``.  The registry refuses
to build unless every ``ToolName`` has a spec, so a new tool cannot be
added to the enum and forgotten in the table.

``ToolRegistry.dispatch`` never raises: unknown tools, unparseable JSON,
arguments that fail validation and handler crashes all come back as a
``ToolResult`` whose ``data`` carries an ``error`` string the model can
relay to the shopper.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from src.models import Identity, ToolResult
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


class ToolName(StrEnum):
    SEARCH_PRODUCTS = "search_products"
    GET_PRODUCT_FOR_CART = "get_product_for_cart"
    TRACK_ORDER = "track_order"
    GET_CUSTOMER_ORDERS = "get_customer_orders"
    CHECK_COUPON = "check_coupon"
    CREATE_SUPPORT_TICKET = "create_support_ticket"
    INITIATE_RETURN = "initiate_return"
    GET_RECOMMENDATIONS = "get_recommendations"
    GET_STORE_INFO = "get_store_info"
    GET_CUSTOMER_PROFILE = "get_customer_profile"


@dataclass(frozen=True)
class UnknownTool:
    name: str


def parse_tool_name(raw: str | None) -> ToolName | UnknownTool:
    try:
        return ToolName((raw or "").strip())
    except ValueError:
        return UnknownTool(name=raw or "")


class ToolArgumentError(ValueError):
    """The model supplied arguments that cannot be used."""


Handler = Callable[[Identity, Any], ToolResult]


@dataclass(frozen=True)
class ToolSpec:
    """One tool: what the model sees and what runs when it is called.

    ``side_effect_free`` tools may run concurrently with each other inside a
    round; anything that writes (tickets, returns) runs sequentially.
    """

    name: ToolName
    description: str
    args_model: type[BaseModel]
    handler: Handler
    side_effect_free: bool = True

    def schema(self) -> dict[str, Any]:
        """Tool definition in the Anthropic ``input_schema`` format."""
        input_schema = self.args_model.model_json_schema()
        input_schema.pop("title", None)
        return {
            "name": self.name.value,
            "description": self.description,
            "input_schema": input_schema,
        }


def _parse_arguments(raw_args: Any) -> dict[str, Any]:
    if raw_args is None or raw_args == "":
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except ValueError as exc:
            raise ToolArgumentError(f"arguments are not valid JSON ({exc.msg})") from exc
        if not isinstance(parsed, dict):
            raise ToolArgumentError("arguments must be a JSON object")
        return parsed
    raise ToolArgumentError(f"arguments must be a JSON object, got {type(raw_args).__name__}")


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        problems.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(problems)


class ToolRegistry:
    """Static table of tools keyed by ``ToolName``."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        table: dict[ToolName, ToolSpec] = {}
        for spec in specs:
            if spec.name in table:
                raise ValueError(f"Duplicate tool spec for {spec.name.value}")
            table[spec.name] = spec
        missing = [name.value for name in ToolName if name not in table]
        if missing:
            raise ValueError(f"Tool registry is missing specs for: {', '.join(missing)}")
        self._specs = table

    def __contains__(self, name: object) -> bool:
        return isinstance(name, ToolName) and name in self._specs

    def spec(self, name: ToolName) -> ToolSpec:
        return self._specs[name]

    def schemas(self) -> list[dict[str, Any]]:
        """Every tool definition, in enum order, for ``bind_tools``."""
        return [self._specs[name].schema() for name in ToolName]

    def is_side_effect_free(self, raw_name: str | None) -> bool:
        parsed = parse_tool_name(raw_name)
        # Unknown tools never run a handler
        return isinstance(parsed, UnknownTool) or self._specs[parsed].side_effect_free

    def dispatch(self, identity: Identity, raw_name: str | None, raw_args: Any) -> ToolResult:
        parsed = parse_tool_name(raw_name)
        if isinstance(parsed, UnknownTool):
            logger.warning("Model requested unknown tool %r", parsed.name)
            metrics.record_failure("tool", "unknown", error_type="UnknownTool")
            return ToolResult.error(f"Unknown tool: {parsed.name}")

        spec = self._specs[parsed]
        try:
            args = spec.args_model.model_validate(_parse_arguments(raw_args))
        except ToolArgumentError as exc:
            logger.info("Bad arguments for %s: %s", parsed.value, exc)
            metrics.record_failure("tool", parsed.value, error_type="ToolArgumentError")
            return ToolResult.error(f"Invalid arguments for {parsed.value}: {exc}")
        except ValidationError as exc:
            detail = _describe_validation_error(exc)
            logger.info("Bad arguments for %s: %s", parsed.value, detail)
            metrics.record_failure("tool", parsed.value, error_type="ToolArgumentError")
            return ToolResult.error(f"Invalid arguments for {parsed.value}: {detail}")

        t0 = time.perf_counter()
        try:
            result = spec.handler(identity, args)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            logger.exception("Tool %s failed", parsed.value)
            metrics.record_failure(
                "tool", parsed.value, error_type=type(exc).__name__, latency_ms=elapsed,
            )
            return ToolResult.error(
                f"The {parsed.value} tool is temporarily unavailable. "
                "Apologise and offer another way to help.",
                ["Try again", "Contact support"],
            )

        metrics.record_success(
            "tool", parsed.value, latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return result
