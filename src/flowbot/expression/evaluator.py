"""Expression evaluator — a small, sandboxed expression language over ``simpleeval``.

Expressions use Python operator syntax with a few conveniences for spec authors:

* ``&&``, ``||`` and ``!`` as aliases for ``and``, ``or`` and ``not``
* ``true`` / ``false`` / ``null`` / ``undefined`` literals
* dotted access into mappings (``guild.memberCount``)
* pipe transforms: ``name|upper``, ``items|join(", ")``
* ``${...}`` tokens inside an expression are evaluated first and bound as values

``interpolate`` substitutes every ``${...}`` token in a template string.
"""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import re
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from simpleeval import (
    EvalWithCompoundTypes,
    FeatureNotAvailable,
    FunctionNotDefined,
    InvalidExpression,
    NameNotDefined,
)

from flowbot.errors import (
    EvaluationTimeoutError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    FlowbotError,
    UndefinedVariableError,
)
from flowbot.expression.functions import get_builtin_functions
from flowbot.expression.transforms import get_builtin_transforms

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\$\{([^}]+)\}")

LITERALS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}

_SLOT_PREFIX = "tpl_slot_"
_CACHE_LIMIT = 512
_BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})


def stringify(value: Any) -> str:
    """Render a value for interpolation (``None`` becomes the empty string)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def _rewrite_operators(source: str) -> str:
    """Translate ``&&``/``||``/``!``/``===``/``!==`` outside string literals."""
    out: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(source):
        ch = source[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(source):
                out.append(source[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
        elif source.startswith("&&", i):
            out.append(" and ")
            i += 2
            continue
        elif source.startswith("||", i):
            out.append(" or ")
            i += 2
            continue
        elif source.startswith("===", i) or source.startswith("!==", i):
            out.append(source[i : i + 2])
            i += 3
            continue
        elif ch == "!" and not source.startswith("!=", i):
            out.append(" not ")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class _Interpreter(EvalWithCompoundTypes):
    """One-shot simpleeval interpreter bound to a single context."""

    def __init__(
        self,
        context: Mapping[str, Any],
        functions: dict[str, Callable[..., Any]],
        transforms: dict[str, Callable[..., Any]],
        strict: bool,
    ) -> None:
        super().__init__(functions=functions, names=context)
        self.transforms = transforms
        self.strict = strict

    def _eval_name(self, node: ast.Name) -> Any:
        name = node.id
        if name in LITERALS:
            return LITERALS[name]
        if name in self.names:
            return self.names[name]
        if name in self.functions:
            return self.functions[name]
        if self.strict:
            raise UndefinedVariableError(name, self.expr)
        return None

    def _eval_attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise FeatureNotAvailable(f"Access to private attribute {node.attr!r} is not allowed")
        base = self._eval(node.value)
        if base is None:
            if self.strict:
                raise UndefinedVariableError(node.attr, self.expr)
            return None
        if isinstance(base, Mapping):
            if node.attr in base:
                return base[node.attr]
            if self.strict:
                raise UndefinedVariableError(node.attr, self.expr)
            return None
        if node.attr in _BLOCKED_ATTRIBUTES:
            raise FeatureNotAvailable(f"Method {node.attr!r} is not allowed")
        try:
            return getattr(base, node.attr)
        except AttributeError:
            if self.strict:
                raise UndefinedVariableError(node.attr, self.expr) from None
            return None

    def _eval_subscript(self, node: ast.Subscript) -> Any:
        try:
            return super()._eval_subscript(node)
        except (KeyError, IndexError, TypeError):
            if self.strict:
                raise
            return None

    def _eval_binop(self, node: ast.BinOp) -> Any:
        if isinstance(node.op, ast.BitOr):
            transform, args, kwargs = self._resolve_transform(node.right)
            if transform is not None:
                return transform(self._eval(node.left), *args, **kwargs)
        return super()._eval_binop(node)

    def _resolve_transform(self, node: ast.AST) -> tuple[Callable[..., Any] | None, list, dict]:
        if isinstance(node, ast.Name) and node.id in self.transforms:
            return self.transforms[node.id], [], {}
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in self.transforms
        ):
            args = [self._eval(arg) for arg in node.args]
            kwargs = {kw.arg: self._eval(kw.value) for kw in node.keywords}
            return self.transforms[node.func.id], args, kwargs
        return None, [], {}


class CompiledExpression:
    """A parsed expression that can be evaluated repeatedly."""

    def __init__(self, evaluator: ExpressionEvaluator, source: str, tree: ast.AST) -> None:
        self._evaluator = evaluator
        self.source = source
        self.tree = tree

    def evaluate(self, context: Mapping[str, Any] | None = None) -> Any:
        return self._evaluator._run(self.source, self.tree, context or {})


class ExpressionEvaluator:
    """Evaluates expressions and interpolates templates against a context.

    Args:
        timeout_ms: Time budget for each asynchronous ``evaluate`` call.
        strict: Raise ``UndefinedVariableError`` for unknown names instead of
            yielding ``None``.
        allow_override: Whether re-registering a function or transform name
            replaces it (with a warning) or raises ``ValueError``.
        max_workers: Threads available to asynchronous evaluation.
    """

    def __init__(
        self,
        timeout_ms: float = 5000,
        strict: bool = False,
        allow_override: bool = True,
        max_workers: int = 4,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.strict = strict
        self.allow_override = allow_override
        self.max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._stuck: set[Future] = set()
        self._functions = get_builtin_functions()
        self._transforms = get_builtin_transforms()
        self._cache: dict[str, ast.AST] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_function(self, name: str, fn: Callable[..., Any]) -> None:
        """Register a custom function (overwrites with a warning)."""
        self._functions = self._register(self._functions, "function", name, fn)

    def add_transform(self, name: str, fn: Callable[..., Any]) -> None:
        """Register a custom transform (``value|name(args)``)."""
        self._transforms = self._register(self._transforms, "transform", name, fn)

    def _register(
        self,
        table: dict[str, Callable[..., Any]],
        kind: str,
        name: str,
        fn: Callable[..., Any],
    ) -> dict[str, Callable[..., Any]]:
        if name in table:
            if not self.allow_override:
                raise ValueError(f"Expression {kind} '{name}' is already registered")
            logger.warning("Overwriting expression %s '%s'", kind, name)
        updated = dict(table)
        updated[name] = fn
        return updated

    @property
    def functions(self) -> list[str]:
        return sorted(self._functions)

    @property
    def transforms(self) -> list[str]:
        return sorted(self._transforms)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def compile(self, expression: str) -> CompiledExpression:
        """Parse *expression* once for repeated evaluation.

        Raises:
            ExpressionSyntaxError: If the expression cannot be parsed.
        """
        return CompiledExpression(self, expression, self._parse(expression))

    def _parse(self, expression: str) -> ast.AST:
        tree = self._cache.get(expression)
        if tree is not None:
            return tree
        source = _rewrite_operators(expression).strip()
        if not source:
            raise ExpressionSyntaxError(expression, "empty expression")
        try:
            module = ast.parse(source, mode="eval")
        except SyntaxError as exc:
            raise ExpressionSyntaxError(expression, exc.msg or "invalid syntax") from None
        tree = module.body
        if len(self._cache) >= _CACHE_LIMIT:
            self._cache.clear()
        self._cache[expression] = tree
        return tree

    def _run(self, expression: str, tree: ast.AST, context: Mapping[str, Any]) -> Any:
        interpreter = _Interpreter(context, self._functions, self._transforms, self.strict)
        interpreter.expr = expression
        try:
            return interpreter.eval(expression, previously_parsed=tree)
        except FlowbotError:
            raise
        except NameNotDefined as exc:
            raise UndefinedVariableError(getattr(exc, "name", str(exc)), expression) from None
        except (FunctionNotDefined, FeatureNotAvailable) as exc:
            raise ExpressionSyntaxError(expression, str(exc)) from None
        except InvalidExpression as exc:
            raise ExpressionEvaluationError(expression, str(exc)) from None
        except Exception as exc:
            raise ExpressionEvaluationError(expression, f"{type(exc).__name__}: {exc}") from exc

    def _bind_tokens(self, expression: str, context: Mapping[str, Any]) -> tuple[str, Mapping]:
        """Evaluate embedded ``${...}`` tokens and bind them as slot names."""
        stripped = expression.strip()
        whole = TOKEN_PATTERN.fullmatch(stripped)
        if whole:
            return whole.group(1).strip(), context

        bindings: dict[str, Any] = {}
        parts: list[str] = []
        last = 0
        for match in TOKEN_PATTERN.finditer(expression):
            slot = f"{_SLOT_PREFIX}{len(bindings)}"
            bindings[slot] = self.evaluate_sync(match.group(1).strip(), context)
            parts.append(expression[last : match.start()])
            parts.append(slot)
            last = match.end()
        if not bindings:
            return expression, context
        parts.append(expression[last:])
        return "".join(parts), {**context, **bindings}

    def evaluate_sync(self, expression: str, context: Mapping[str, Any] | None = None) -> Any:
        """Evaluate without a time budget (for call sites that cannot suspend)."""
        context = context if context is not None else {}
        if "${" in expression:
            expression, context = self._bind_tokens(expression, context)
        return self._run(expression, self._parse(expression), context)

    async def evaluate(self, expression: str, context: Mapping[str, Any] | None = None) -> Any:
        """Evaluate *expression*, racing the configured timeout.

        Evaluation runs on the evaluator's own worker pool. A timed-out
        worker cannot be interrupted, so it is counted as stuck; once every
        worker is stuck the pool is abandoned and a fresh one takes over.

        Raises:
            ExpressionSyntaxError: Malformed expression.
            UndefinedVariableError: Unknown name in strict mode.
            EvaluationTimeoutError: Evaluation exceeded ``timeout_ms``.
            ExpressionEvaluationError: Runtime failure while evaluating.
        """
        future = self._pool().submit(self.evaluate_sync, expression, context)
        try:
            return await asyncio.wait_for(
                asyncio.wrap_future(future), timeout=self.timeout_ms / 1000
            )
        except TimeoutError:
            if not future.done():
                self._stuck.add(future)
            raise EvaluationTimeoutError(expression, self.timeout_ms) from None

    def _pool(self) -> ThreadPoolExecutor:
        self._stuck = {future for future in self._stuck if not future.done()}
        if self._executor is not None and len(self._stuck) >= self.max_workers:
            logger.warning(
                "All %d expression workers are stuck on timed-out evaluations; "
                "starting a fresh pool",
                self.max_workers,
            )
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._stuck = set()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="flowbot-expr"
            )
        return self._executor

    def close(self) -> None:
        """Release the worker pool without waiting for stuck evaluations."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._stuck = set()

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    @staticmethod
    def has_expressions(template: Any) -> bool:
        return isinstance(template, str) and TOKEN_PATTERN.search(template) is not None

    async def interpolate(self, template: str, context: Mapping[str, Any] | None = None) -> str:
        """Substitute each ``${...}`` token left to right."""
        if not self.has_expressions(template):
            return template
        parts: list[str] = []
        last = 0
        for match in TOKEN_PATTERN.finditer(template):
            parts.append(template[last : match.start()])
            expression = match.group(1).strip()
            value = await self.evaluate(expression, context) if expression else None
            parts.append(stringify(value))
            last = match.end()
        parts.append(template[last:])
        return "".join(parts)

    def interpolate_sync(self, template: str, context: Mapping[str, Any] | None = None) -> str:
        if not self.has_expressions(template):
            return template
        return TOKEN_PATTERN.sub(
            lambda m: stringify(self.evaluate_sync(m.group(1).strip(), context)), template
        )

    async def resolve(self, value: Any, context: Mapping[str, Any] | None = None) -> Any:
        """Resolve templates inside an arbitrary config value.

        A string that is exactly one ``${...}`` token yields the raw value
        (so numbers and lists keep their type); other strings are
        interpolated; mappings and lists are resolved recursively.
        """
        if isinstance(value, str):
            whole = TOKEN_PATTERN.fullmatch(value.strip())
            if whole:
                return await self.evaluate(whole.group(1).strip(), context)
            return await self.interpolate(value, context)
        if isinstance(value, Mapping):
            return {key: await self.resolve(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [await self.resolve(item, context) for item in value]
        return value
