"""Expression language and condition trees."""

from flowbot.expression.conditions import ConditionEvaluator, is_truthy, parse_condition
from flowbot.expression.evaluator import ExpressionEvaluator, stringify

__all__ = [
    "ConditionEvaluator",
    "ExpressionEvaluator",
    "is_truthy",
    "parse_condition",
    "stringify",
]
