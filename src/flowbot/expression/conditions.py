"""Condition evaluation — boolean trees of ``all`` / ``any`` / ``not`` / ``expr`` nodes."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowbot.errors import ExpressionSyntaxError, FlowbotError
from flowbot.expression.evaluator import ExpressionEvaluator

logger = logging.getLogger(__name__)


def is_truthy(value: Any) -> bool:
    """Truthiness for gates: ``False``, ``0``, ``""`` and ``None`` are false.

    Unlike Python, empty collections count as true.
    """
    if value is None or value is False:
        return False
    if isinstance(value, int | float) and not isinstance(value, bool):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


@dataclass(frozen=True)
class ExprNode:
    """Leaf: an expression whose result is coerced with :func:`is_truthy`."""

    expression: str


@dataclass(frozen=True)
class LiteralNode:
    value: bool


@dataclass(frozen=True)
class NotNode:
    child: ConditionNode


@dataclass(frozen=True)
class AllNode:
    children: tuple[ConditionNode, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AnyNode:
    children: tuple[ConditionNode, ...] = field(default_factory=tuple)


ConditionNode = ExprNode | LiteralNode | NotNode | AllNode | AnyNode


def parse_condition(data: Any) -> ConditionNode:
    """Build a condition tree from spec data.

    Accepted shapes: a bare string (leaf), a bool, a list (``all``), or a
    mapping with exactly one of ``all``, ``any``, ``not``, ``expr``.

    Raises:
        ExpressionSyntaxError: If the shape is not recognized.
    """
    if isinstance(data, ExprNode | LiteralNode | NotNode | AllNode | AnyNode):
        return data
    if isinstance(data, bool):
        return LiteralNode(data)
    if isinstance(data, str):
        return ExprNode(data)
    if isinstance(data, list):
        return AllNode(tuple(parse_condition(item) for item in data))
    if isinstance(data, Mapping) and len(data) == 1:
        (kind, body), = data.items()
        if kind == "expr" and isinstance(body, str):
            return ExprNode(body)
        if kind == "not":
            return NotNode(parse_condition(body))
        if kind in ("all", "any") and isinstance(body, list):
            children = tuple(parse_condition(item) for item in body)
            return AllNode(children) if kind == "all" else AnyNode(children)
    raise ExpressionSyntaxError(repr(data), "unrecognized condition shape")


class ConditionEvaluator:
    """Evaluates condition trees against a context.

    Evaluation never writes to the context. Leaf failures propagate as typed
    errors unless ``lenient=True``, in which case a failing leaf is false.
    """

    def __init__(self, evaluator: ExpressionEvaluator) -> None:
        self._evaluator = evaluator

    async def evaluate(
        self,
        condition: Any,
        context: Mapping[str, Any] | None = None,
        *,
        lenient: bool = False,
    ) -> bool:
        node = parse_condition(condition)
        return await self._evaluate_node(node, context or {}, lenient)

    async def _evaluate_node(self, node: ConditionNode, context: Mapping, lenient: bool) -> bool:
        if isinstance(node, LiteralNode):
            return node.value
        if isinstance(node, ExprNode):
            try:
                value = await self._evaluator.evaluate(node.expression, context)
            except FlowbotError as exc:
                if not lenient:
                    raise
                logger.debug("Condition %r treated as false: %s", node.expression, exc.message)
                return False
            return is_truthy(value)
        if isinstance(node, NotNode):
            return not await self._evaluate_node(node.child, context, lenient)
        if isinstance(node, AllNode):
            for child in node.children:
                if not await self._evaluate_node(child, context, lenient):
                    return False
            return True
        # AnyNode
        for child in node.children:
            if await self._evaluate_node(child, context, lenient):
                return True
        return False

    def evaluate_sync(
        self,
        condition: Any,
        context: Mapping[str, Any] | None = None,
        *,
        lenient: bool = False,
    ) -> bool:
        """Non-suspending variant (no evaluation time budget)."""
        node = parse_condition(condition)
        return self._evaluate_node_sync(node, context or {}, lenient)

    def _evaluate_node_sync(self, node: ConditionNode, context: Mapping, lenient: bool) -> bool:
        if isinstance(node, LiteralNode):
            return node.value
        if isinstance(node, ExprNode):
            try:
                return is_truthy(self._evaluator.evaluate_sync(node.expression, context))
            except FlowbotError:
                if not lenient:
                    raise
                return False
        if isinstance(node, NotNode):
            return not self._evaluate_node_sync(node.child, context, lenient)
        if isinstance(node, AllNode):
            return all(self._evaluate_node_sync(c, context, lenient) for c in node.children)
        return any(self._evaluate_node_sync(c, context, lenient) for c in node.children)
