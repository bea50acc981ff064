"""Slot validation: short-circuiting checks that return results, never raise.

Formula slots run, in order::

    presence -> syntax -> references -> circularity -> type -> duplicate target

Data slots check their literal text against the field type and the slider
range.  Property slots check target type and property path.  The first
failing check wins.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING, Any

from lark import Token, Tree
from pydantic import BaseModel, ConfigDict, model_validator

from tabcalc.formulas.errors import FormulaParseError
from tabcalc.formulas.parser import (
    COLUMN_PREFIX,
    VARIABLE_PREFIX,
    extract_references,
    extract_unknown_names,
    parse_formula,
)
from tabcalc.values import (
    DataFieldType,
    ValueKind,
    is_assignable,
    kind_of,
)

if TYPE_CHECKING:
    from tabcalc.graph import DependencyGraph
    from tabcalc.sheet import Column, Sheet, Variable
    from tabcalc.store import PropertyStore, TypeCache, TypeResolver


class ErrorKind(str, Enum):
    syntax_error = "syntax_error"
    missing_dependency = "missing_dependency"
    circular_dependency = "circular_dependency"
    type_mismatch = "type_mismatch"
    property_path_invalid = "property_path_invalid"
    target_type_invalid = "target_type_invalid"
    duplicate_target = "duplicate_target"
    invalid_range = "invalid_range"
    formula_system_error = "formula_system_error"


class Severity(str, Enum):
    warning = "warning"
    error = "error"
    critical = "critical"


class ValidationResult(BaseModel):
    """Outcome of one validation check.

    Build through ``success()`` or ``failure()``; a failure always carries a
    message.
    """

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    message: str = ""
    detail: str = ""
    suggestion: str = ""
    severity: Severity = Severity.error
    error_kind: ErrorKind | None = None

    @model_validator(mode="after")
    def _failure_has_message(self) -> ValidationResult:
        if not self.is_valid and not self.message:
            raise ValueError("A failed validation result needs a message")
        return self

    @classmethod
    def success(cls) -> ValidationResult:
        return _SUCCESS

    @classmethod
    def failure(
        cls,
        message: str,
        detail: str = "",
        suggestion: str = "",
        *,
        kind: ErrorKind = ErrorKind.formula_system_error,
        severity: Severity = Severity.error,
    ) -> ValidationResult:
        return cls(
            is_valid=False,
            message=message,
            detail=detail,
            suggestion=suggestion,
            severity=severity,
            error_kind=kind,
        )

    def __bool__(self) -> bool:
        return self.is_valid


_SUCCESS = ValidationResult(is_valid=True)


# ---------------------------------------------------------------------------
# Data values
# ---------------------------------------------------------------------------

_INTEGER_RE = re.compile(r"^[+-]?[0-9]+$")
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


def validate_data_value(field_type: DataFieldType, text: str | None) -> ValidationResult:
    """Check that *text* parses as *field_type*.  Empty text is valid."""
    if text is None or text == "":
        return ValidationResult.success()
    stripped = text.strip()

    if field_type == DataFieldType.integer:
        if not _INTEGER_RE.match(stripped) or not _INT32_MIN <= int(stripped) <= _INT32_MAX:
            return ValidationResult.failure(
                f"'{text}' is not a valid integer",
                "The data value must be a whole number (integer).",
                "Enter a valid integer value like 42 or -10.",
                kind=ErrorKind.type_mismatch,
            )
        return ValidationResult.success()

    if field_type == DataFieldType.float:
        try:
            # float() also takes digit separators ("1_000"); the field does not
            if "_" in stripped:
                raise ValueError(stripped)
            float(stripped)
        except ValueError:
            return ValidationResult.failure(
                f"'{text}' is not a valid float",
                "The data value must be a valid floating-point number.",
                "Enter a valid number like 3.14 or -2.5.",
                kind=ErrorKind.type_mismatch,
            )
        return ValidationResult.success()

    if field_type == DataFieldType.boolean:
        if stripped.lower() not in ("true", "false", "1", "0"):
            return ValidationResult.failure(
                f"'{text}' is not a valid boolean value",
                "Boolean values must be true, false, 1, or 0 (case insensitive).",
                "Enter 'true' or 'false' (or '1'/'0').",
                kind=ErrorKind.type_mismatch,
            )
        return ValidationResult.success()

    return ValidationResult.failure(
        f"Unknown data field type: {field_type}",
        "The specified data field type is not supported.",
        "Use one of: integer, float, boolean.",
    )


def validate_slider(
    field_type: DataFieldType,
    use_slider: bool,
    min_value: float,
    max_value: float,
    *,
    severity: Severity = Severity.warning,
) -> ValidationResult:
    """Numeric sliders need ``min_value < max_value``."""
    if not use_slider or field_type not in (DataFieldType.integer, DataFieldType.float):
        return ValidationResult.success()
    if min_value >= max_value:
        return ValidationResult.failure(
            "Invalid slider range",
            f"The minimum value ({min_value:g}) of a slider must be strictly less "
            f"than the maximum value ({max_value:g}).",
            "Adjust the minimum or maximum values to ensure the slider has a valid range.",
            kind=ErrorKind.invalid_range,
            severity=severity,
        )
    return ValidationResult.success()


# ---------------------------------------------------------------------------
# Types and property paths
# ---------------------------------------------------------------------------


def validate_type_name(type_name: str, types: TypeCache | TypeResolver | None) -> ValidationResult:
    """Check that *type_name* is non-empty and resolves."""
    if not type_name or not type_name.strip():
        return ValidationResult.failure(
            "Type name is empty",
            "A type name must be provided to resolve the target type.",
            "Specify a valid type name.",
            kind=ErrorKind.target_type_invalid,
        )
    if types is not None and types.resolve(type_name) is None:
        return ValidationResult.failure(
            f"Cannot resolve type '{type_name}'",
            "The specified type cannot be found among the known types.",
            "Ensure the type name is correct and that the type is declared.",
            kind=ErrorKind.target_type_invalid,
        )
    return ValidationResult.success()


def validate_property_path(
    target_type: str,
    property_path: str,
    types: TypeCache | TypeResolver | None,
    store: PropertyStore | None,
) -> ValidationResult:
    """Check that *property_path* is set and exists on *target_type*."""
    if not property_path or not property_path.strip():
        return ValidationResult.failure(
            "Property path is empty",
            "A property path is required to identify which property to access on the target type.",
            "Enter a valid property path.",
            kind=ErrorKind.property_path_invalid,
        )
    result = validate_type_name(target_type, types)
    if not result.is_valid:
        return result
    if store is not None and store.property_kind(target_type, property_path) is None:
        return ValidationResult.failure(
            f"Property path '{property_path}' not found on type '{target_type}'",
            "The property path does not exist on the specified target type.",
            "Verify the property path is spelled correctly and exists on the target type.",
            kind=ErrorKind.property_path_invalid,
        )
    return ValidationResult.success()


def target_kind(
    target_type: str, property_path: str, store: PropertyStore | None
) -> ValueKind | None:
    """Declared kind of a write-back target, or None when unknown."""
    if store is None or not target_type or not property_path:
        return None
    return store.property_kind(target_type, property_path)


def validate_result_type(value: Any, target: ValueKind | None) -> ValidationResult:
    """Check an evaluated value against its target property kind.

    Absent values and unknown targets pass.
    """
    source = kind_of(value)
    if source is None or target is None or is_assignable(source, target):
        return ValidationResult.success()
    return _type_mismatch(source, target)


def _type_mismatch(source: ValueKind, target: ValueKind) -> ValidationResult:
    return ValidationResult.failure(
        "Formula result type mismatch",
        f"The formula result of type '{source.value}' is not compatible with the "
        f"target property's type '{target.value}'.",
        "Ensure the formula produces a value that can be assigned to the target property.",
        kind=ErrorKind.type_mismatch,
    )


# ---------------------------------------------------------------------------
# Formula checks
# ---------------------------------------------------------------------------


def validate_syntax(text: str) -> ValidationResult:
    """Presence and syntax.  Empty formulas are valid (and inert)."""
    if not text or not text.strip():
        return ValidationResult.success()
    try:
        parse_formula(text)
    except FormulaParseError as exc:
        return ValidationResult.failure(
            "Invalid formula syntax",
            f"The formula could not be parsed: {exc.message}.",
            "Check the formula for syntax errors, such as mismatched parentheses or invalid operators.",
            kind=ErrorKind.syntax_error,
        )
    return ValidationResult.success()


def validate_references(
    text: str,
    *,
    column_ids: set[int],
    variable_ids: set[int],
    self_ref: str | None = None,
) -> ValidationResult:
    """Every reference must name a defined slot.

    Args:
        text: Formula text.
        column_ids: Defined column ids.
        variable_ids: Defined variable ids.
        self_ref: Reference text of the slot owning the formula (``"C3"``);
            a formula that references it fails as circular.
    """
    refs = sorted(extract_references(text), key=lambda r: (r.prefix, r.slot_id))

    if self_ref is not None and any(str(r) == self_ref for r in refs):
        owner = "column" if self_ref.startswith(COLUMN_PREFIX) else "variable"
        return ValidationResult.failure(
            "Self-referencing formula",
            f"A formula cannot reference its own {owner}, as this would create an "
            "unresolvable circular dependency.",
            f"Remove the reference to '{self_ref}' from the formula and use other "
            f"{owner}s or constant values instead.",
            kind=ErrorKind.circular_dependency,
        )

    missing_columns = [str(r) for r in refs if r.is_column and r.slot_id not in column_ids]
    missing_variables = [str(r) for r in refs if r.is_variable and r.slot_id not in variable_ids]
    if missing_columns:
        listed = ", ".join(missing_columns + missing_variables)
        return ValidationResult.failure(
            "Undefined column reference",
            f"The formula references slots that do not exist in the sheet: {listed}.",
            "Verify the references are correct. Available columns can be seen in the column list.",
            kind=ErrorKind.missing_dependency,
        )
    if missing_variables:
        return ValidationResult.failure(
            "Unknown variable reference",
            "The formula references one or more variables that are not defined: "
            f"{', '.join(missing_variables)}.",
            "Ensure all referenced variables are defined in the sheet's variable list.",
            kind=ErrorKind.missing_dependency,
        )
    try:
        unknown = sorted(extract_unknown_names(parse_formula(text)))
    except FormulaParseError:
        # reported by the syntax check
        return ValidationResult.success()
    if unknown:
        return ValidationResult.failure(
            "Unknown name in formula",
            f"The formula uses names that are not slot references: {', '.join(unknown)}.",
            f"Reference columns as {COLUMN_PREFIX}<id> and variables as {VARIABLE_PREFIX}<id>; "
            "the prefix is case-sensitive.",
            kind=ErrorKind.missing_dependency,
        )
    return ValidationResult.success()


def validate_circularity(
    slot_id: int,
    graph: DependencyGraph,
    *,
    prefix: str = COLUMN_PREFIX,
    names: dict[int, str] | None = None,
) -> ValidationResult:
    """Fail when *slot_id* is excluded from the full-graph schedule."""
    if slot_id not in graph.nodes:
        return ValidationResult.success()
    schedule = graph.schedule()
    if slot_id not in schedule.excluded:
        return ValidationResult.success()

    names = names or {}
    noun = "columns" if prefix == COLUMN_PREFIX else "variables"
    cycle = graph.find_cycle(slot_id)
    if cycle is not None:
        others = [n for n in cycle if n != slot_id]
        involved = others[0] if others else slot_id
        label = names.get(involved, f"{prefix}{involved}")
        path = " -> ".join(f"{prefix}{n}" for n in cycle)
        detail = (
            f"This formula creates a dependency loop involving '{label}' and "
            f"other {noun} ({path})."
        )
    else:
        detail = f"This formula depends on {noun} that are part of a dependency loop."
    return ValidationResult.failure(
        "Circular dependency detected",
        detail,
        "Remove the reference that creates the circular dependency or reorganize "
        "your formulas to avoid the cycle.",
        kind=ErrorKind.circular_dependency,
    )


def validate_cross_loop(
    slot_id: int,
    loop_members: frozenset[int],
    *,
    prefix: str = COLUMN_PREFIX,
) -> ValidationResult:
    """Fail when *slot_id* sits on a column-variable dependency loop."""
    if slot_id not in loop_members:
        return ValidationResult.success()
    return ValidationResult.failure(
        "Circular dependency detected",
        f"{prefix}{slot_id} is part of, or depends on, a dependency loop between columns and variables.",
        "Remove the variable reference from the column, or the column reference from the "
        "variable, that closes the loop.",
        kind=ErrorKind.circular_dependency,
    )


def validate_duplicate_target(
    column: Column,
    columns: list[Column],
    *,
    severity: Severity = Severity.warning,
) -> ValidationResult:
    """Property and formula columns must not share a ``(type, path)`` target."""
    key = _write_target(column)
    if key is None:
        return ValidationResult.success()
    for other in columns:
        if other.column_id == column.column_id or _write_target(other) != key:
            continue
        this_kind = column.kind.value
        other_kind = other.kind.value
        return ValidationResult.failure(
            f"Duplicate {this_kind} column detected: Another {other_kind} column "
            f"already writes to '{key[0]}.{key[1]}'",
            f"Column {other.reference} ({other_kind}) already uses the same target "
            "type and property path combination.",
            "Choose a different property path or target type to avoid conflicts "
            "and potential loops.",
            kind=ErrorKind.duplicate_target,
            severity=severity,
        )
    return ValidationResult.success()


def _write_target(column: Column) -> tuple[str, str] | None:
    source = column.source
    target_type = getattr(source, "target_type", "")
    path = getattr(source, "property_path", "")
    if source.kind == "data" or not target_type or not path:
        return None
    return (target_type, path)


# ---------------------------------------------------------------------------
# Static result-kind inference
# ---------------------------------------------------------------------------

_BOOLEAN_RULES = {"gt", "lt", "gte", "lte", "eq", "neq", "and_", "or_", "boolean"}
_NUMERIC_RULES = {"add", "sub", "mul", "div", "neg", "pos", "number"}


def infer_result_kind(tree: Tree | Token, slot_kinds: dict[str, ValueKind | None]) -> ValueKind | None:
    """Best-effort static kind of a formula; None when it cannot be known.

    Args:
        tree: Parse tree.
        slot_kinds: Reference text -> kind of that slot's value, where known.
    """
    if isinstance(tree, Token):
        return None
    rule = tree.data
    if rule == "start":
        return infer_result_kind(tree.children[0], slot_kinds)
    if rule in _BOOLEAN_RULES:
        return ValueKind.boolean
    if rule in _NUMERIC_RULES:
        return ValueKind.float
    if rule == "slot_ref":
        return slot_kinds.get(str(tree.children[0]))
    if rule == "cond":
        return _same_kind(
            infer_result_kind(tree.children[1], slot_kinds),
            infer_result_kind(tree.children[2], slot_kinds),
        )
    if rule == "func_call":
        name = str(tree.children[0]).upper()
        if name.startswith("MATHF."):
            name = name[len("MATHF."):]
        if name == "IF":
            args = tree.children[1].children
            if len(args) == 3:
                return _same_kind(
                    infer_result_kind(args[1], slot_kinds),
                    infer_result_kind(args[2], slot_kinds),
                )
            return None
        return ValueKind.float
    return None


def _same_kind(a: ValueKind | None, b: ValueKind | None) -> ValueKind | None:
    if a is None or b is None:
        return None
    if a == b:
        return a
    if is_assignable(a, b) and is_assignable(b, a):
        return ValueKind.float
    return None


def validate_static_type(
    text: str,
    target: ValueKind | None,
    slot_kinds: dict[str, ValueKind | None],
) -> ValidationResult:
    """Type compatibility of a formula's inferred kind with its target."""
    if target is None or not text.strip():
        return ValidationResult.success()
    try:
        inferred = infer_result_kind(parse_formula(text), slot_kinds)
    except RecursionError:
        return ValidationResult.failure(
            "Formula is nested too deeply",
            "The formula's expressions are nested deeper than can be checked or evaluated.",
            "Split the formula across several columns or variables.",
        )
    if inferred is None or is_assignable(inferred, target):
        return ValidationResult.success()
    return _type_mismatch(inferred, target)


# ---------------------------------------------------------------------------
# Whole-slot pipelines
# ---------------------------------------------------------------------------

_FIELD_KINDS = {
    DataFieldType.integer: ValueKind.integer,
    DataFieldType.float: ValueKind.float,
    DataFieldType.boolean: ValueKind.boolean,
}


def slot_kinds(sheet: Sheet, store: PropertyStore | None) -> dict[str, ValueKind | None]:
    """Statically known value kind of each slot, keyed by reference text."""
    kinds: dict[str, ValueKind | None] = {}
    for slot in [*sheet.columns, *sheet.variables]:
        source = slot.source
        if source.kind == "data":
            kinds[slot.reference] = _FIELD_KINDS.get(source.field_type)
        elif source.kind == "property":
            kinds[slot.reference] = target_kind(source.target_type, source.property_path, store)
        elif source.has_target:
            kinds[slot.reference] = target_kind(source.target_type, source.property_path, store)
        else:
            kinds[slot.reference] = None
    return kinds


def validate_property_source(
    target_type: str,
    property_path: str,
    types: TypeCache | TypeResolver | None,
    store: PropertyStore | None,
) -> ValidationResult:
    """Required fields then resolution for a property slot."""
    if not target_type:
        return ValidationResult.failure(
            "Missing target type for property column",
            "Property columns require a target type to identify which object to read the property from.",
            "Select the appropriate target type.",
            kind=ErrorKind.target_type_invalid,
        )
    result = validate_type_name(target_type, types)
    if not result.is_valid:
        return result
    if not property_path:
        return ValidationResult.failure(
            "Missing property path for property column",
            "A property path must be specified to identify which property to read from the selected target type.",
            "Enter the path of an available property.",
            kind=ErrorKind.property_path_invalid,
        )
    return validate_property_path(target_type, property_path, types, store)


def validate_formula(
    text: str,
    *,
    slot_id: int,
    prefix: str,
    graph: DependencyGraph,
    column_ids: set[int],
    variable_ids: set[int],
    target: ValueKind | None = None,
    kinds: dict[str, ValueKind | None] | None = None,
    names: dict[int, str] | None = None,
    loop_members: frozenset[int] | None = None,
) -> ValidationResult:
    """Presence, syntax, references, circularity, then static type.

    *loop_members* are the ids (of this slot's kind) caught in, or fed by, a
    loop that passes through both columns and variables.  Per-kind graphs
    cannot see such a loop.
    """
    if not text or not text.strip():
        return ValidationResult.success()
    for check in (
        lambda: validate_syntax(text),
        lambda: validate_references(
            text,
            column_ids=column_ids,
            variable_ids=variable_ids,
            self_ref=f"{prefix}{slot_id}",
        ),
        lambda: validate_circularity(slot_id, graph, prefix=prefix, names=names),
        lambda: validate_cross_loop(slot_id, loop_members or frozenset(), prefix=prefix),
        lambda: validate_static_type(text, target, kinds or {}),
    ):
        result = check()
        if not result.is_valid:
            return result
    return ValidationResult.success()


def validate_column(
    column: Column,
    sheet: Sheet,
    *,
    graph: DependencyGraph,
    types: TypeCache | TypeResolver | None = None,
    store: PropertyStore | None = None,
    duplicate_severity: Severity = Severity.warning,
    range_severity: Severity = Severity.warning,
    loop_members: frozenset[int] | None = None,
) -> ValidationResult:
    """Run the full pipeline for one column."""
    source = column.source
    if source.kind == "data":
        result = validate_data_value(source.field_type, source.value)
        if not result.is_valid:
            return result
        return validate_slider(
            source.field_type,
            source.use_slider,
            source.min_value,
            source.max_value,
            severity=range_severity,
        )

    if source.kind == "property":
        result = validate_property_source(source.target_type, source.property_path, types, store)
    else:
        result = validate_formula(
            source.formula,
            slot_id=column.column_id,
            prefix=COLUMN_PREFIX,
            graph=graph,
            column_ids=sheet.column_ids,
            variable_ids=sheet.variable_ids,
            target=target_kind(source.target_type, source.property_path, store),
            kinds=slot_kinds(sheet, store),
            names={c.column_id: c.display_name for c in sheet.columns},
            loop_members=loop_members,
        )
        if result.is_valid and source.has_target:
            result = validate_property_path(source.target_type, source.property_path, types, store)
    if not result.is_valid:
        return result
    return validate_duplicate_target(column, sheet.columns, severity=duplicate_severity)


def validate_variable(
    variable: Variable,
    sheet: Sheet,
    *,
    graph: DependencyGraph,
    types: TypeCache | TypeResolver | None = None,
    store: PropertyStore | None = None,
    loop_members: frozenset[int] | None = None,
) -> ValidationResult:
    """Run the full pipeline for one variable."""
    source = variable.source
    if source.kind == "data":
        return validate_data_value(source.field_type, source.value)
    if source.kind == "property":
        return validate_property_source(source.target_type, source.property_path, types, store)
    return validate_formula(
        source.formula,
        slot_id=variable.variable_id,
        prefix=VARIABLE_PREFIX,
        graph=graph,
        column_ids=sheet.column_ids,
        variable_ids=sheet.variable_ids,
        target=target_kind(source.target_type, source.property_path, store),
        kinds=slot_kinds(sheet, store),
        names={v.variable_id: v.display_name for v in sheet.variables},
        loop_members=loop_members,
    )

