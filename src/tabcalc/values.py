"""Closed set of value kinds with explicit coercion rules.

Every value flowing through the engine is a plain Python object (``int``,
``float``, ``bool``, ``Decimal``, ``str``, a numeric tuple for vectors, or an
opaque object handle).  ``ValueKind`` classifies them; the functions here are
the only place where one kind is converted into another.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class ValueKind(str, Enum):
    integer = "integer"
    float = "float"
    double = "double"
    decimal = "decimal"
    int8 = "int8"
    uint8 = "uint8"
    int16 = "int16"
    uint16 = "uint16"
    uint32 = "uint32"
    int64 = "int64"
    uint64 = "uint64"
    boolean = "boolean"
    string = "string"
    vector = "vector"
    object_ref = "object_ref"
    any = "any"


class DataFieldType(str, Enum):
    """Storage type of a Data slot's literal text."""

    integer = "integer"
    float = "float"
    boolean = "boolean"


# Any member converts to any other member.
NUMERIC_KINDS: frozenset[ValueKind] = frozenset({
    ValueKind.integer,
    ValueKind.float,
    ValueKind.double,
    ValueKind.decimal,
    ValueKind.int8,
    ValueKind.uint8,
    ValueKind.int16,
    ValueKind.uint16,
    ValueKind.uint32,
    ValueKind.int64,
    ValueKind.uint64,
})

_INTEGER_RANGES: dict[ValueKind, tuple[int, int]] = {
    ValueKind.integer: (-(2**31), 2**31 - 1),
    ValueKind.int8: (-128, 127),
    ValueKind.uint8: (0, 255),
    ValueKind.int16: (-(2**15), 2**15 - 1),
    ValueKind.uint16: (0, 2**16 - 1),
    ValueKind.uint32: (0, 2**32 - 1),
    ValueKind.int64: (-(2**63), 2**63 - 1),
    ValueKind.uint64: (0, 2**64 - 1),
}

# Host type names accepted by ``kind_from_name`` (case-sensitive, with and
# without the ``System.`` namespace).
_TYPE_NAME_KINDS: dict[str, ValueKind] = {
    "int": ValueKind.integer,
    "Int32": ValueKind.integer,
    "integer": ValueKind.integer,
    "float": ValueKind.float,
    "Single": ValueKind.float,
    "double": ValueKind.double,
    "Double": ValueKind.double,
    "decimal": ValueKind.decimal,
    "Decimal": ValueKind.decimal,
    "sbyte": ValueKind.int8,
    "SByte": ValueKind.int8,
    "byte": ValueKind.uint8,
    "Byte": ValueKind.uint8,
    "short": ValueKind.int16,
    "Int16": ValueKind.int16,
    "ushort": ValueKind.uint16,
    "UInt16": ValueKind.uint16,
    "uint": ValueKind.uint32,
    "UInt32": ValueKind.uint32,
    "long": ValueKind.int64,
    "Int64": ValueKind.int64,
    "ulong": ValueKind.uint64,
    "UInt64": ValueKind.uint64,
    "bool": ValueKind.boolean,
    "Boolean": ValueKind.boolean,
    "boolean": ValueKind.boolean,
    "string": ValueKind.string,
    "String": ValueKind.string,
    "Vector2": ValueKind.vector,
    "Vector3": ValueKind.vector,
    "Vector4": ValueKind.vector,
    "vector": ValueKind.vector,
    "object": ValueKind.any,
    "Object": ValueKind.any,
    "any": ValueKind.any,
}


def kind_from_name(type_name: str) -> ValueKind | None:
    """Map a host type name (``"float"``, ``"System.Int32"``) to a kind."""
    name = type_name.strip()
    if name.startswith("System."):
        name = name[len("System."):]
    if name in _TYPE_NAME_KINDS:
        return _TYPE_NAME_KINDS[name]
    try:
        return ValueKind(name)
    except ValueError:
        return None


def kind_of(value: Any) -> ValueKind | None:
    """Classify a runtime value.  ``None`` (absent) has no kind."""
    if value is None:
        return None
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.boolean
    if isinstance(value, int):
        return ValueKind.integer
    if isinstance(value, float):
        return ValueKind.float
    if isinstance(value, Decimal):
        return ValueKind.decimal
    if isinstance(value, str):
        return ValueKind.string
    if isinstance(value, (tuple, list)) and value and all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in value
    ):
        return ValueKind.vector
    return ValueKind.object_ref


def is_numeric_kind(kind: ValueKind | None) -> bool:
    return kind in NUMERIC_KINDS


def is_assignable(result: ValueKind, target: ValueKind) -> bool:
    """True if a value of kind *result* may be written to a *target* slot.

    Compatible when the kinds match exactly, when the target accepts any
    value, or when both belong to the numeric class.
    """
    if result == target:
        return True
    if target == ValueKind.any:
        return True
    return result in NUMERIC_KINDS and target in NUMERIC_KINDS


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _parse_number_text(text: str) -> int | float | None:
    s = text.strip()
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        pass
    try:
        f = float(s)
    except ValueError:
        return None
    if math.isnan(f) and s.lower() not in ("nan", "+nan", "-nan"):
        return None
    return f


def for_provider(value: Any) -> Any:
    """Normalize a slot value before it is handed to the evaluator.

    Decimals become floats, boolean and numeric strings are parsed, and
    everything else passes through unchanged (operators reject what they
    cannot handle).
    """
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        parsed = _parse_number_text(value)
        if parsed is not None:
            return parsed
    return value


def to_bool(value: Any) -> bool:
    """Truthiness used by ``&&``, ``||``, ternaries and ``IF``."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        parsed = _parse_number_text(value)
        return parsed is not None and parsed != 0
    return False


def parse_data_value(field_type: DataFieldType, text: str | None) -> int | float | bool:
    """Parse a Data slot's stored text into a value of its field type.

    Empty text yields the type's zero value.  Unparseable text also yields
    the zero value; validation reports it separately.
    """
    if text is None or not text.strip():
        if field_type == DataFieldType.integer:
            return 0
        if field_type == DataFieldType.boolean:
            return False
        return 0.0

    if field_type == DataFieldType.boolean:
        return text.strip().lower() in ("true", "1")

    parsed = _parse_number_text(text)
    if field_type == DataFieldType.integer:
        if isinstance(parsed, int):
            return parsed
        if isinstance(parsed, float) and math.isfinite(parsed):
            return int(parsed)
        return 0
    if parsed is None:
        return 0.0
    return float(parsed)


def coerce_to_kind(value: Any, target: ValueKind) -> Any:
    """Convert *value* for writing into a property of kind *target*.

    Raises:
        ValueError: If the value cannot be represented (non-finite into an
            integer kind, out of range for a sized integer).
        TypeError: If no conversion exists between the two kinds.
    """
    source = kind_of(value)
    if source is None or target == ValueKind.any or source == target:
        return value
    if target == ValueKind.string:
        return format_value(value)
    if target == ValueKind.boolean and (source in NUMERIC_KINDS):
        return value != 0
    if target in NUMERIC_KINDS and source in NUMERIC_KINDS | {ValueKind.boolean}:
        number = value
        if isinstance(number, bool):
            number = int(number)
        if target in _INTEGER_RANGES:
            if isinstance(number, (float, Decimal)) and not math.isfinite(float(number)):
                raise ValueError(f"Cannot store {value!r} in a {target.value} property")
            as_int = int(round(number))
            low, high = _INTEGER_RANGES[target]
            if not low <= as_int <= high:
                raise ValueError(f"{as_int} is out of range for {target.value}")
            return as_int
        if target == ValueKind.decimal:
            try:
                return Decimal(str(number))
            except InvalidOperation as exc:
                raise ValueError(f"Cannot store {value!r} as decimal") from exc
        return float(number)
    raise TypeError(f"Cannot convert {source.value} to {target.value}")


def format_value(value: Any) -> str:
    """Display-friendly string for a value (``""`` for absent)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value == int(value):
            return str(int(value))
        return f"{value:.10g}"
    if isinstance(value, (tuple, list)):
        return "(" + ", ".join(format_value(v) for v in value) + ")"
    return str(value)
