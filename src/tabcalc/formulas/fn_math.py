"""Math formula functions: IF, ABS, MIN, MAX, CLAMP, SQRT, POW, ROUND, ..."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Callable

from tabcalc.formulas.errors import FormulaFunctionError, FormulaTypeError
from tabcalc.values import kind_of, to_bool


def _num(func: str, value: Any) -> int | float:
    """Coerce a function argument to a number (booleans count as 1/0)."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    kind = kind_of(value)
    raise FormulaTypeError(func, [kind.value if kind else "an absent value"])


def _arity(func: str, args: list, count: int, usage: str) -> None:
    if len(args) != count:
        plural = "argument" if count == 1 else "arguments"
        raise FormulaFunctionError(func, f"{func} requires exactly {count} {plural}: {usage}")


def _fn_if(thunks: list[Callable[[], Any]]) -> Any:
    """IF(condition, then_value, else_value), evaluated lazily."""
    if len(thunks) != 3:
        raise FormulaFunctionError(
            "IF", "IF requires exactly 3 arguments: condition, true_value, false_value"
        )
    if to_bool(thunks[0]()):
        return thunks[1]()
    return thunks[2]()


def _fn_abs(args: list) -> int | float:
    _arity("ABS", args, 1, "value")
    return abs(_num("ABS", args[0]))


def _fn_min(args: list) -> int | float:
    if len(args) < 1:
        raise FormulaFunctionError("MIN", "MIN requires at least 1 argument")
    return min(_num("MIN", a) for a in args)


def _fn_max(args: list) -> int | float:
    if len(args) < 1:
        raise FormulaFunctionError("MAX", "MAX requires at least 1 argument")
    return max(_num("MAX", a) for a in args)


def _fn_clamp(args: list) -> int | float:
    _arity("CLAMP", args, 3, "value, min, max")
    value, low, high = (_num("CLAMP", a) for a in args)
    return max(low, min(high, value))


def _fn_sqrt(args: list) -> float:
    _arity("SQRT", args, 1, "value")
    value = _num("SQRT", args[0])
    if value < 0:
        raise FormulaFunctionError(
            "SQRT", f"SQRT cannot take the square root of a negative number: {value}"
        )
    return math.sqrt(value)


def _fn_pow(args: list) -> float:
    _arity("POW", args, 2, "base, exponent")
    base, exponent = _num("POW", args[0]), _num("POW", args[1])
    try:
        return math.pow(base, exponent)
    except ValueError as exc:
        raise FormulaFunctionError("POW", f"POW({base}, {exponent}) is undefined") from exc


def _fn_round(args: list) -> int | float:
    if len(args) == 1:
        return round(_num("ROUND", args[0]))
    if len(args) == 2:
        digits = int(round(_num("ROUND", args[1])))
        if digits < 0:
            raise FormulaFunctionError("ROUND", "ROUND decimal places must be non-negative")
        return round(float(_num("ROUND", args[0])), digits)
    raise FormulaFunctionError("ROUND", "ROUND requires 1-2 arguments: value, [decimal_places]")


def _fn_ceiling(args: list) -> int:
    _arity("CEILING", args, 1, "value")
    return math.ceil(_num("CEILING", args[0]))


def _fn_floor(args: list) -> int:
    _arity("FLOOR", args, 1, "value")
    return math.floor(_num("FLOOR", args[0]))


def _clamp01(t: float) -> float:
    return max(0.0, min(1.0, t))


def _fn_lerp(args: list) -> float:
    """LERP(from, to, t) with t clamped to [0, 1]."""
    _arity("LERP", args, 3, "from, to, t")
    start, end, t = (_num("LERP", a) for a in args)
    return start + (end - start) * _clamp01(t)


def _fn_inverse_lerp(args: list) -> float:
    """INVERSELERP(from, to, value): position of value in [from, to], clamped."""
    _arity("INVERSELERP", args, 3, "from, to, value")
    start, end, value = (_num("INVERSELERP", a) for a in args)
    if start == end:
        return 0.0
    return _clamp01((value - start) / (end - start))


def _fn_smoothstep(args: list) -> float:
    """SMOOTHSTEP(min, max, t): Hermite interpolation between min and max."""
    _arity("SMOOTHSTEP", args, 3, "min, max, t")
    start, end, t = (_num("SMOOTHSTEP", a) for a in args)
    t = _clamp01(t)
    t = -2.0 * t * t * t + 3.0 * t * t
    return end * t + start * (1.0 - t)


MATH_FUNCTIONS: dict[str, Any] = {
    "IF": _fn_if,
    "ABS": _fn_abs,
    "MIN": _fn_min,
    "MAX": _fn_max,
    "CLAMP": _fn_clamp,
    "SQRT": _fn_sqrt,
    "POW": _fn_pow,
    "ROUND": _fn_round,
    "CEILING": _fn_ceiling,
    "CEIL": _fn_ceiling,
    "FLOOR": _fn_floor,
    "LERP": _fn_lerp,
    "INVERSELERP": _fn_inverse_lerp,
    "SMOOTHSTEP": _fn_smoothstep,
}

LAZY_FUNCTIONS: set[str] = {"IF"}
