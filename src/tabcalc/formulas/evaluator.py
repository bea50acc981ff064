"""Tree-walking evaluator for parsed formula expressions.

References are resolved through *value providers*: zero-argument callables
keyed by reference text (``"C0"``, ``"V3"``).  A provider is invoked every
time its reference is evaluated, so re-running a parsed tree after upstream
values change sees the new values without re-parsing.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Mapping

from lark import Token, Tree

from tabcalc.formulas.errors import (
    FormulaError,
    FormulaFunctionError,
    FormulaRefError,
    FormulaTypeError,
)
from tabcalc.formulas.fn_math import LAZY_FUNCTIONS, MATH_FUNCTIONS
from tabcalc.formulas.parser import parse_formula
from tabcalc.values import for_provider, kind_of, to_bool

ValueProvider = Callable[[], Any]

TOO_DEEP_MESSAGE = "Formula is nested too deeply to evaluate"


def evaluate_formula(tree: Tree, providers: Mapping[str, ValueProvider]) -> Any:
    """Evaluate a parsed formula tree.

    Args:
        tree: Parse tree from ``parse_formula()``.
        providers: Mapping of reference text to value provider.

    Returns:
        The computed value (``int``, ``float`` or ``bool``).

    Raises:
        FormulaError: On unknown references, unknown functions, arity
            errors, operators applied to incompatible operands, or nesting
            deeper than the interpreter stack allows.
        ZeroDivisionError: On division by zero.
    """
    try:
        return _eval(tree, providers)
    except RecursionError as exc:
        raise FormulaError(TOO_DEEP_MESSAGE) from exc


def evaluate_text(text: str, providers: Mapping[str, ValueProvider] | None = None) -> Any:
    """Parse and evaluate formula *text* in one step."""
    return evaluate_formula(parse_formula(text), providers or {})


def _eval(node: Tree | Token, providers: Mapping[str, ValueProvider]) -> Any:
    """Recursively evaluate a tree node."""
    if isinstance(node, Token):
        return _eval_token(node)

    rule = node.data

    # Start rule just wraps expr
    if rule == "start":
        return _eval(node.children[0], providers)

    # Arithmetic
    if rule in _ARITHMETIC:
        left = _eval(node.children[0], providers)
        right = _eval(node.children[1], providers)
        return _ARITHMETIC[rule](left, right)
    if rule == "neg":
        return -_numeric(_eval(node.children[0], providers), "-")
    if rule == "pos":
        return _numeric(_eval(node.children[0], providers), "+")

    # Comparison
    if rule in _COMPARISON:
        op, fn = _COMPARISON[rule]
        left = _eval(node.children[0], providers)
        right = _eval(node.children[1], providers)
        if op in ("==", "!=") and not (_is_number(left) and _is_number(right)):
            if kind_of(left) == kind_of(right):
                return fn(left, right)
        return fn(_numeric(left, op), _numeric(right, op))

    # Logical (short-circuit)
    if rule == "and_":
        if not to_bool(_eval(node.children[0], providers)):
            return False
        return to_bool(_eval(node.children[1], providers))
    if rule == "or_":
        if to_bool(_eval(node.children[0], providers)):
            return True
        return to_bool(_eval(node.children[1], providers))
    if rule == "cond":
        if to_bool(_eval(node.children[0], providers)):
            return _eval(node.children[1], providers)
        return _eval(node.children[2], providers)

    # Literals
    if rule == "number":
        return _parse_number(node.children[0])
    if rule == "boolean":
        return str(node.children[0]) == "true"

    # References
    if rule == "slot_ref":
        name = str(node.children[0])
        provider = providers.get(name)
        if provider is None:
            raise FormulaRefError(name, available=sorted(providers.keys()))
        return for_provider(provider())
    if rule == "name_ref":
        raise FormulaRefError(str(node.children[0]), available=sorted(providers.keys()))

    # Function call
    if rule == "func_call":
        return _eval_func(node, providers)

    # args: should not be evaluated directly
    if rule == "args":
        return [_eval(child, providers) for child in node.children]

    raise FormulaError(f"Unknown node type: {rule}")


def _eval_token(token: Token) -> Any:
    """Evaluate a bare token (shouldn't normally happen at top level)."""
    if token.type == "NUMBER":
        return _parse_number(token)
    if token.type == "BOOL":
        return str(token) == "true"
    return str(token)


def _parse_number(token: Token) -> int | float:
    """Parse a NUMBER token to int or float."""
    s = str(token)
    if any(ch in s for ch in ".eE"):
        return float(s)
    return int(s)


# ---------- Operators ----------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal))


def _kind_name(value: Any) -> str:
    kind = kind_of(value)
    return kind.value if kind is not None else "an absent value"


def _numeric(value: Any, op: str) -> int | float:
    """Return *value* as an arithmetic operand or raise FormulaTypeError.

    Booleans count as 1/0.  Strings, vectors and object handles do not
    take part in arithmetic or ordering.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    raise FormulaTypeError(op, [_kind_name(value)])


def _binary(op: str, fn: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def apply(left: Any, right: Any) -> Any:
        if not (_is_number(left) and _is_number(right)):
            raise FormulaTypeError(op, [_kind_name(left), _kind_name(right)])
        return fn(_numeric(left, op), _numeric(right, op))

    return apply


def _divide(left: int | float, right: int | float) -> float:
    if right == 0:
        raise ZeroDivisionError("Division by zero in formula")
    return left / right


_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "add": _binary("+", lambda a, b: a + b),
    "sub": _binary("-", lambda a, b: a - b),
    "mul": _binary("*", lambda a, b: a * b),
    "div": _binary("/", _divide),
}

_COMPARISON: dict[str, tuple[str, Callable[[Any, Any], bool]]] = {
    "gt": (">", lambda a, b: a > b),
    "lt": ("<", lambda a, b: a < b),
    "gte": (">=", lambda a, b: a >= b),
    "lte": ("<=", lambda a, b: a <= b),
    "eq": ("==", lambda a, b: a == b),
    "neq": ("!=", lambda a, b: a != b),
}


# ---------- Function dispatch ----------


def _eval_func(node: Tree, providers: Mapping[str, ValueProvider]) -> Any:
    """Evaluate a function call node."""
    raw_name = str(node.children[0])
    func_name = _canonical_name(raw_name)
    args_node = node.children[1]
    raw_args = args_node.children if args_node.children else []

    if func_name not in MATH_FUNCTIONS:
        raise FormulaFunctionError(raw_name)

    # Lazy functions receive thunks so untaken branches are never evaluated
    if func_name in LAZY_FUNCTIONS:
        thunks = [_thunk(arg, providers) for arg in raw_args]
        return MATH_FUNCTIONS[func_name](thunks)

    evaluated_args = [_eval(arg, providers) for arg in raw_args]
    return MATH_FUNCTIONS[func_name](evaluated_args)


def _thunk(arg: Tree | Token, providers: Mapping[str, ValueProvider]) -> Callable[[], Any]:
    return lambda: _eval(arg, providers)


def _canonical_name(name: str) -> str:
    """``Mathf.Abs`` and ``abs`` both resolve to ``ABS``."""
    upper = name.upper()
    if upper.startswith("MATHF."):
        upper = upper[len("MATHF."):]
    return upper
