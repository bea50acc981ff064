"""Evaluation orchestrator: variables once per pass, columns once per row.

Every pass starts from empty caches.  Slots are evaluated in scheduler
order; a slot that fails is cached as absent (``None``), gets a
diagnostic and a log event, and the pass moves on.  Slots that reference an
absent slot fail in turn, so a failure propagates to its dependents only.

Usage::

    engine = SheetEngine(load_sheet(Path("sheet.yaml")))
    result = engine.evaluate_all(rows)
    result.value("goblin", 1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

import polars as pl
from lark import Tree

from tabcalc.config import EngineSettings
from tabcalc.diagnostics import (
    CellError,
    ColumnError,
    ErrorManager,
    VariableError,
    cell_error_from,
    column_error_from,
    placeholder,
    variable_error_from,
)
from tabcalc.formulas.errors import ENGINE_ERRORS, FormulaValueError
from tabcalc.formulas.evaluator import ValueProvider, evaluate_formula
from tabcalc.formulas.parser import (
    COLUMN_PREFIX,
    VARIABLE_PREFIX,
    Reference,
    column_references,
    extract_references,
    parse_formula,
    parse_reference,
    variable_references,
)
from tabcalc.graph import DependencyGraph, VariableDependencyGraph, cross_graph_excluded
from tabcalc.logging import (
    EventLevel,
    EventType,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    make_slot_event,
)
from tabcalc.logging.events import (
    FORMULA_EVAL_ERROR,
    PROPERTY_READ_ERROR,
    PROPERTY_WRITE_REJECTED,
    RESULT_TYPE_MISMATCH,
    UPSTREAM_ABSENT,
)
from tabcalc.sheet import Column, Row, Sheet, Variable
from tabcalc.store import (
    DictPropertyStore,
    PropertyStore,
    PropertyStoreError,
    TargetTypeInvalid,
    TypeCache,
    TypeResolver,
)
from tabcalc.validation import (
    ErrorKind,
    Severity,
    ValidationResult,
    target_kind,
    validate_column,
    validate_data_value,
    validate_result_type,
    validate_variable,
)
from tabcalc.values import format_value

logger = logging.getLogger(__name__)


class TabcalcError(Exception):
    """Engine misuse (unknown slot, bad reference text, ...)."""


class ReentrantEvaluationError(TabcalcError):
    """``evaluate_all`` was called while a pass was already running."""

    def __init__(self) -> None:
        super().__init__("evaluate_all() called re-entrantly from inside an evaluation pass")


class SlotState(str, Enum):
    unconfigured = "unconfigured"
    invalid = "invalid"
    valid = "valid"
    evaluated = "evaluated"


def _blocks_evaluation(result: ValidationResult) -> bool:
    return not result.is_valid and result.severity != Severity.warning


def _failure_from_exception(exc: Exception) -> ValidationResult:
    return ValidationResult.failure(
        "Formula evaluation failed",
        f"{type(exc).__name__}: {exc}",
        "Check the referenced values and the formula's operators and functions.",
        kind=ErrorKind.formula_system_error,
    )


def _absent_provider(ref: str) -> ValueProvider:
    def provider() -> Any:
        raise FormulaValueError(ref)

    return provider


def _cached_provider(cache: Mapping[int, Any], slot_id: int, ref: str) -> ValueProvider:
    """Provider reading *cache* at call time; absent or missing raises."""

    def provider() -> Any:
        value = cache.get(slot_id)
        if value is None:
            raise FormulaValueError(ref)
        return value

    return provider


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


class VariableEvaluator:
    """Evaluates sheet variables into a pass-scoped cache."""

    def __init__(
        self,
        store: PropertyStore | None = None,
        *,
        graph: VariableDependencyGraph | None = None,
        errors: ErrorManager | None = None,
    ) -> None:
        self.store = store
        self.graph = graph
        self.errors = errors if errors is not None else ErrorManager()
        self.cache: dict[int, Any] = {}

    def set_dependency_graph(self, graph: VariableDependencyGraph | None) -> None:
        self.graph = graph

    def get_value(self, variable_id: int) -> Any:
        return self.cache.get(variable_id)

    def evaluate_all(
        self,
        variables: list[Variable],
        *,
        column_value: Callable[[int], Any] | None = None,
        skip: Iterable[int] = (),
        pass_id: str | None = None,
    ) -> dict[int, Any]:
        """Evaluate *variables* in dependency order.

        Without a graph, variables run in definition order.  With one, the
        scheduled order runs first, cycle-excluded variables are cached as
        absent, then any variable not yet cached is evaluated in definition
        order.

        Args:
            variables: Variable definitions.
            column_value: Optional ``column_id -> value`` lookup for variable
                formulas that reference columns.
            skip: Variable ids known to be invalid; cached as absent.
            pass_id: Attribution for log events.

        Returns:
            The cache (variable id -> value or None).
        """
        self.cache.clear()
        by_id = {v.variable_id: v for v in variables}
        skipped = set(skip)

        for variable_id in skipped & set(by_id):
            self.cache[variable_id] = None

        if self.graph is not None:
            schedule = self.graph.schedule(by_id)
            for variable_id in schedule.order:
                if variable_id not in self.cache:
                    self._evaluate(by_id[variable_id], column_value, pass_id)
            for variable_id in sorted(schedule.excluded):
                if variable_id not in self.cache:
                    self._fail(
                        by_id[variable_id],
                        ValidationResult.failure(
                            "Circular dependency detected",
                            f"Variable {by_id[variable_id].reference} is part of, or depends on, a dependency loop.",
                            "Remove the reference that creates the circular dependency.",
                            kind=ErrorKind.circular_dependency,
                        ),
                        pass_id,
                    )

        for variable in variables:
            if variable.variable_id not in self.cache:
                self._evaluate(variable, column_value, pass_id)

        return self.cache

    def _evaluate(
        self,
        variable: Variable,
        column_value: Callable[[int], Any] | None,
        pass_id: str | None,
    ) -> None:
        source = variable.source
        try:
            if source.kind == "data":
                value = source.parsed_value()
            elif source.kind == "property":
                value = self._read_property(variable, pass_id)
            else:
                value = self._evaluate_formula(variable, column_value)
        except ENGINE_ERRORS as exc:
            self._fail(variable, _failure_from_exception(exc), pass_id, exc=exc)
            return
        except PropertyStoreError as exc:
            kind = (
                ErrorKind.target_type_invalid
                if isinstance(exc, TargetTypeInvalid)
                else ErrorKind.property_path_invalid
            )
            self._fail(variable, ValidationResult.failure(str(exc), kind=kind), pass_id, exc=exc)
            return

        if source.kind == "formula" and source.has_target:
            check = validate_result_type(
                value, target_kind(source.target_type, source.property_path, self.store)
            )
            if not check.is_valid:
                self._fail(variable, check, pass_id)
                return

        self.cache[variable.variable_id] = value
        self.errors.clear_variable_error(variable.variable_id)

    def _read_property(self, variable: Variable, pass_id: str | None) -> Any:
        source = variable.source
        if source.target is None or self.store is None:
            emit_warning(
                EventType.property_read_failed,
                f"Property variable {variable.reference} has no target object",
                {"slot": variable.reference},
                pass_id=pass_id,
            )
            return None
        if not source.target_type or not source.property_path:
            return None
        return self.store.get(source.target, source.target_type, source.property_path)

    def _evaluate_formula(self, variable: Variable, column_value: Callable[[int], Any] | None) -> Any:
        text = variable.source.formula
        if not text.strip():
            return None
        tree = parse_formula(text)

        providers: dict[str, ValueProvider] = {}
        for ref in extract_references(text):
            name = str(ref)
            if ref.is_variable:
                providers[name] = _cached_provider(self.cache, ref.slot_id, name)
            elif column_value is not None:
                providers[name] = _column_lookup(column_value, ref.slot_id, name)

        return evaluate_formula(tree, providers)

    def _fail(
        self,
        variable: Variable,
        result: ValidationResult,
        pass_id: str | None,
        *,
        exc: Exception | None = None,
    ) -> None:
        self.cache[variable.variable_id] = None
        self.errors.set_variable_error(
            variable_error_from(result, variable.variable_id, variable.display_name)
        )
        upstream = isinstance(exc, FormulaValueError)
        emit(
            make_slot_event(
                EventType.slot_eval_error,
                EventLevel.warning,
                f"Failed to evaluate variable '{variable.display_name}' ({variable.reference}): "
                f"{result.detail or result.message}",
                slot=variable.reference,
                pass_id=pass_id,
                error_code=UPSTREAM_ABSENT if upstream else FORMULA_EVAL_ERROR,
            ),
            pass_id=pass_id,
        )
        logger.debug("variable %s failed: %s", variable.reference, result.message)


def _column_lookup(column_value: Callable[[int], Any], column_id: int, ref: str) -> ValueProvider:
    def provider() -> Any:
        value = column_value(column_id)
        if value is None:
            raise FormulaValueError(ref)
        return value

    return provider


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


class RowEvaluator:
    """Evaluates every column for one row into a row-scoped cache."""

    def __init__(
        self,
        store: PropertyStore | None = None,
        *,
        errors: ErrorManager | None = None,
    ) -> None:
        self.store = store
        self.errors = errors if errors is not None else ErrorManager()

    def evaluate_all(
        self,
        columns: list[Column],
        row: Row,
        *,
        graph: DependencyGraph | None = None,
        variables: Mapping[int, Any] | None = None,
        skip: Iterable[int] = (),
        trees: dict[int, Tree] | None = None,
        pass_id: str | None = None,
    ) -> dict[int, Any]:
        """Evaluate *columns* for *row*.

        Args:
            columns: Column definitions.
            row: The row (host object plus data column text).
            graph: Column dependency graph; definition order without one.
            variables: Variable cache of the current pass.
            skip: Column ids with blocking column errors; cached as absent.
            trees: Pass-scoped parse-tree cache keyed by column id.
            pass_id: Attribution for log events.

        Returns:
            Row cache: column id -> value or None.
        """
        cache: dict[int, Any] = {}
        by_id = {c.column_id: c for c in columns}
        variables = variables or {}
        trees = trees if trees is not None else {}

        for column_id in set(skip) & set(by_id):
            cache[column_id] = None

        if graph is not None:
            schedule = graph.schedule(by_id)
            order = schedule.order
            for column_id in schedule.excluded:
                cache.setdefault(column_id, None)
        else:
            order = [c.column_id for c in columns]

        for column_id in order:
            if column_id not in cache:
                self._evaluate(by_id[column_id], row, cache, variables, trees, pass_id)

        for column in columns:
            cache.setdefault(column.column_id, None)
        return cache

    def _evaluate(
        self,
        column: Column,
        row: Row,
        cache: dict[int, Any],
        variables: Mapping[int, Any],
        trees: dict[int, Tree],
        pass_id: str | None,
    ) -> None:
        source = column.source
        if source.kind == "data":
            text = row.data.get(column.column_id)
            check = validate_data_value(source.field_type, text)
            if not check.is_valid:
                cache[column.column_id] = None
                self._cell_failure(column, row, check, pass_id, RESULT_TYPE_MISMATCH)
                return
            cache[column.column_id] = source.parsed_value(text)
            return

        if source.kind == "property":
            cache[column.column_id] = self._read_property(column, row, pass_id)
            return

        if not source.formula.strip():
            cache[column.column_id] = None
            return

        try:
            tree = trees.get(column.column_id)
            if tree is None:
                tree = trees[column.column_id] = parse_formula(source.formula)
            value = evaluate_formula(tree, self._providers(source.formula, cache, variables))
        except ENGINE_ERRORS as exc:
            cache[column.column_id] = None
            self._cell_failure(
                column,
                row,
                _failure_from_exception(exc),
                pass_id,
                UPSTREAM_ABSENT if isinstance(exc, FormulaValueError) else FORMULA_EVAL_ERROR,
            )
            return

        if source.has_target:
            kind = target_kind(source.target_type, source.property_path, self.store)
            check = validate_result_type(value, kind)
            if not check.is_valid:
                cache[column.column_id] = None
                self._cell_failure(column, row, check, pass_id, RESULT_TYPE_MISMATCH)
                return
            cache[column.column_id] = value
            self._write_back(column, row, value, pass_id)
            return

        cache[column.column_id] = value

    def _providers(
        self, text: str, cache: Mapping[int, Any], variables: Mapping[int, Any]
    ) -> dict[str, ValueProvider]:
        providers: dict[str, ValueProvider] = {}
        for ref in extract_references(text):
            name = str(ref)
            if ref.is_column:
                providers[name] = _cached_provider(cache, ref.slot_id, name)
            elif ref.slot_id in variables:
                providers[name] = _cached_provider(variables, ref.slot_id, name)
            else:
                providers[name] = _absent_provider(name)
        return providers

    def _read_property(self, column: Column, row: Row, pass_id: str | None) -> Any:
        source = column.source
        if self.store is None:
            return None
        try:
            return self.store.get(row.target, source.target_type, source.property_path)
        except PropertyStoreError as exc:
            kind = (
                ErrorKind.target_type_invalid
                if isinstance(exc, TargetTypeInvalid)
                else ErrorKind.property_path_invalid
            )
            self._cell_failure(
                column, row, ValidationResult.failure(str(exc), kind=kind), pass_id, PROPERTY_READ_ERROR
            )
            return None

    def _write_back(self, column: Column, row: Row, value: Any, pass_id: str | None) -> None:
        source = column.source
        written = self.store is not None and self.store.set(
            row.target, source.target_type, source.property_path, value
        )
        if written:
            return
        result = ValidationResult.failure(
            f"Failed to write '{source.target_type}.{source.property_path}'",
            f"The value {format_value(value)!r} could not be stored; the previous value is unchanged.",
            "Check that the property exists and accepts values of this type.",
            kind=ErrorKind.property_path_invalid,
        )
        self.errors.set_cell_error(cell_error_from(result, column.column_id, row.key))
        emit(
            make_slot_event(
                EventType.property_write_failed,
                EventLevel.warning,
                result.message,
                slot=column.reference,
                row=row.key,
                pass_id=pass_id,
                error_code=PROPERTY_WRITE_REJECTED,
            ),
            pass_id=pass_id,
        )

    def _cell_failure(
        self,
        column: Column,
        row: Row,
        result: ValidationResult,
        pass_id: str | None,
        error_code: str,
    ) -> None:
        self.errors.set_cell_error(cell_error_from(result, column.column_id, row.key))
        event_type = (
            EventType.result_type_mismatch
            if result.error_kind == ErrorKind.type_mismatch
            else EventType.slot_eval_error
        )
        emit(
            make_slot_event(
                event_type,
                EventLevel.warning,
                f"{column.display_name} failed for row '{row.key}': {result.detail or result.message}",
                slot=column.reference,
                row=row.key,
                pass_id=pass_id,
                error_code=error_code,
            ),
            pass_id=pass_id,
        )


# ---------------------------------------------------------------------------
# Sheet engine
# ---------------------------------------------------------------------------


@dataclass
class SheetResult:
    """Values and diagnostics of one evaluation pass."""

    pass_id: str
    columns: list[Column]
    variables: dict[int, Any]
    rows: dict[str, dict[int, Any]]
    column_order: list[int] = field(default_factory=list)
    excluded_columns: frozenset[int] = frozenset()
    column_errors: list[ColumnError] = field(default_factory=list)
    cell_errors: list[CellError] = field(default_factory=list)
    variable_errors: list[VariableError] = field(default_factory=list)

    def value(self, row_key: str, column_id: int) -> Any:
        return self.rows.get(row_key, {}).get(column_id)

    def variable(self, variable_id: int) -> Any:
        return self.variables.get(variable_id)

    def display(self, row_key: str, column_id: int) -> str:
        """Cell text: the error placeholder if the cell failed, else the value."""
        for error in self.column_errors:
            if error.column_id == column_id and error.blocking:
                return error.placeholder
        for error in self.cell_errors:
            if error.column_id == column_id and error.row_key == row_key:
                return error.placeholder
        return format_value(self.value(row_key, column_id))

    @property
    def has_errors(self) -> bool:
        return bool(self.cell_errors or self.variable_errors) or any(
            e.blocking for e in self.column_errors
        )

    def to_frame(self) -> pl.DataFrame:
        """One row per sheet row; a ``row`` key column plus ``C<id>`` columns."""
        data: dict[str, pl.Series] = {
            "row": pl.Series("row", list(self.rows), dtype=pl.Utf8),
        }
        for column in self.columns:
            values = [self.rows[key].get(column.column_id) for key in self.rows]
            data[column.reference] = _series(column.reference, values)
        return pl.DataFrame(data)


_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1
_UINT64_MAX = 2**64 - 1


def _series(name: str, values: list[Any]) -> pl.Series:
    """Series with one dtype: bool, int, float, or text as a fallback.

    Integers outside Int64 use UInt64 when non-negative, else Float64.
    """
    present = [v for v in values if v is not None]
    if present and all(isinstance(v, bool) for v in present):
        return pl.Series(name, values, dtype=pl.Boolean)
    if all(isinstance(v, int) and not isinstance(v, bool) for v in present):
        if all(_INT64_MIN <= v <= _INT64_MAX for v in present):
            return pl.Series(name, values, dtype=pl.Int64)
        if all(0 <= v <= _UINT64_MAX for v in present):
            return pl.Series(name, values, dtype=pl.UInt64)
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present):
        return pl.Series(name, [None if v is None else float(v) for v in values], dtype=pl.Float64)
    return pl.Series(name, [None if v is None else format_value(v) for v in values], dtype=pl.Utf8)


class SheetEngine:
    """Owns graphs, caches and diagnostics for one sheet."""

    def __init__(
        self,
        sheet: Sheet,
        *,
        store: PropertyStore | None = None,
        resolver: TypeResolver | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.sheet = sheet
        if store is None:
            store = DictPropertyStore(sheet.types)
        self.store = store
        if resolver is None and hasattr(store, "resolve"):
            resolver = store
        self.types = TypeCache(resolver) if resolver is not None else None
        self.settings = settings or EngineSettings()

        self.column_graph = DependencyGraph()
        self.variable_graph = VariableDependencyGraph()
        self.errors = ErrorManager()
        self.variable_evaluator = VariableEvaluator(
            self.store, graph=self.variable_graph, errors=self.errors
        )
        self.row_evaluator = RowEvaluator(self.store, errors=self.errors)

        self._stale: set[str] = set()
        self._evaluated: set[str] = set()
        self._evaluating = False
        self.last_result: SheetResult | None = None
        self.rebuild()

    # ------------------------------------------------------------------
    # Graph maintenance
    # ------------------------------------------------------------------

    def rebuild(self) -> None:
        """Rebuild both graphs from the sheet and drop cached type lookups."""
        self.column_graph.clear()
        self.variable_graph.clear()
        if self.types is not None:
            self.types.clear()
        for column in self.sheet.columns:
            self._register_column(column)
        for variable in self.sheet.variables:
            self._register_variable(variable)

        self._stale = {c.reference for c in self.sheet.columns}
        self._stale |= {v.reference for v in self.sheet.variables}
        self._evaluated.clear()

        emit_info(
            EventType.graph_rebuilt,
            "Dependency graphs rebuilt",
            {
                "columns": len(self.sheet.columns),
                "variables": len(self.sheet.variables),
            },
        )
        mixed_columns, mixed_vars = self.loop_members()
        excluded = self.column_graph.schedule(self.sheet.column_ids).excluded | mixed_columns
        excluded_vars = self.variable_graph.schedule(self.sheet.variable_ids).excluded | mixed_vars
        if excluded or excluded_vars:
            slots = [f"{COLUMN_PREFIX}{i}" for i in sorted(excluded)]
            slots += [f"{VARIABLE_PREFIX}{i}" for i in sorted(excluded_vars)]
            emit_warning(
                EventType.cycle_detected,
                f"Slots excluded by dependency loops: {', '.join(slots)}",
                {"slots": slots},
            )

    def loop_members(self) -> tuple[frozenset[int], frozenset[int]]:
        """Columns and variables on, or behind, a loop running through both kinds."""
        column_variable_refs = {
            c.column_id: variable_references(c.source.formula)
            for c in self.sheet.columns
            if c.source.kind == "formula"
        }
        return cross_graph_excluded(
            self.sheet.column_ids,
            self.column_graph,
            self.sheet.variable_ids,
            self.variable_graph,
            column_variable_refs,
        )

    def _register_column(self, column: Column) -> None:
        self.column_graph.remove_dependencies(column.column_id)
        if column.source.kind == "formula":
            self.column_graph.set_dependencies(
                column.column_id, column_references(column.source.formula)
            )

    def _register_variable(self, variable: Variable) -> None:
        self.variable_graph.remove_dependencies(variable.variable_id)
        if variable.source.kind != "formula":
            return
        text = variable.source.formula
        self.variable_graph.set_dependencies(variable.variable_id, variable_references(text))
        for column_id in column_references(text):
            self.variable_graph.add_column_dependency(variable.variable_id, column_id)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_column(self, column: Column) -> set[str]:
        """Add or replace *column*; returns the slots needing recalculation."""
        columns = [c for c in self.sheet.columns if c.column_id != column.column_id]
        index = next(
            (i for i, c in enumerate(self.sheet.columns) if c.column_id == column.column_id),
            len(columns),
        )
        columns.insert(index, column)
        self.sheet.columns = columns
        self._register_column(column)
        return self.invalidate(column.reference)

    def update_variable(self, variable: Variable) -> set[str]:
        """Add or replace *variable*; returns the slots needing recalculation."""
        variables = [v for v in self.sheet.variables if v.variable_id != variable.variable_id]
        index = next(
            (i for i, v in enumerate(self.sheet.variables) if v.variable_id == variable.variable_id),
            len(variables),
        )
        variables.insert(index, variable)
        self.sheet.variables = variables
        self._register_variable(variable)
        return self.invalidate(variable.reference)

    def remove_column(self, column_id: int) -> set[str]:
        """Delete a column; its dependents now hold a missing reference."""
        if self.sheet.column(column_id) is None:
            raise TabcalcError(f"No column C{column_id}")
        affected = self.invalidate(f"{COLUMN_PREFIX}{column_id}")
        self.sheet.columns = [c for c in self.sheet.columns if c.column_id != column_id]
        self.column_graph.remove_dependencies(column_id)
        self.errors.clear_column_error(column_id)
        self._stale.discard(f"{COLUMN_PREFIX}{column_id}")
        self._evaluated.discard(f"{COLUMN_PREFIX}{column_id}")
        affected.discard(f"{COLUMN_PREFIX}{column_id}")
        return affected

    def remove_variable(self, variable_id: int) -> set[str]:
        """Delete a variable; its dependents now hold a missing reference."""
        if self.sheet.variable(variable_id) is None:
            raise TabcalcError(f"No variable V{variable_id}")
        affected = self.invalidate(f"{VARIABLE_PREFIX}{variable_id}")
        self.sheet.variables = [v for v in self.sheet.variables if v.variable_id != variable_id]
        self.variable_graph.remove_dependencies(variable_id)
        self.errors.clear_variable_error(variable_id)
        self._stale.discard(f"{VARIABLE_PREFIX}{variable_id}")
        self._evaluated.discard(f"{VARIABLE_PREFIX}{variable_id}")
        affected.discard(f"{VARIABLE_PREFIX}{variable_id}")
        return affected

    def invalidate(self, ref: str | int | Reference) -> set[str]:
        """Mark *ref* and everything downstream of it stale.

        Args:
            ref: ``"C3"``/``"V2"``, a ``Reference``, or a bare column id.

        Returns:
            The recalculation set as reference strings, *ref* included.
        """
        reference = self._as_reference(ref)
        affected: set[str] = {str(reference)}
        columns: set[int] = set()
        variables: set[int] = set()

        if reference.is_column:
            columns.add(reference.slot_id)
        else:
            variables.add(reference.slot_id)
            variables |= self.variable_graph.transitive_dependents(reference.slot_id)
            columns |= self._columns_using_variables(variables)

        # Variables reading a changed column, and whatever those feed
        pending = set(columns)
        while pending:
            column_id = pending.pop()
            downstream = self.column_graph.transitive_dependents(column_id)
            for var_id in self.variable_graph.get_variables_for_column(column_id):
                if var_id not in variables:
                    variables.add(var_id)
                    variables |= self.variable_graph.transitive_dependents(var_id)
            downstream |= self._columns_using_variables(variables)
            for dependent in downstream - columns:
                columns.add(dependent)
                pending.add(dependent)

        affected |= {f"{COLUMN_PREFIX}{i}" for i in columns}
        affected |= {f"{VARIABLE_PREFIX}{i}" for i in variables}
        self._stale |= affected
        self._evaluated -= affected
        logger.debug("invalidate %s -> %s", reference, sorted(affected))
        return affected

    def _columns_using_variables(self, variable_ids: set[int]) -> set[int]:
        if not variable_ids:
            return set()
        return {
            c.column_id
            for c in self.sheet.columns
            if c.source.kind == "formula"
            and variable_references(c.source.formula) & variable_ids
        }

    @staticmethod
    def _as_reference(ref: str | int | Reference) -> Reference:
        if isinstance(ref, Reference):
            return ref
        if isinstance(ref, int):
            return Reference(COLUMN_PREFIX, ref)
        parsed = parse_reference(ref.strip())
        if parsed is None:
            raise TabcalcError(f"Not a slot reference: {ref!r}")
        return parsed

    @property
    def stale(self) -> set[str]:
        return set(self._stale)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_column(
        self, column: Column | int, *, loops: frozenset[int] | None = None
    ) -> ValidationResult:
        """Validate one column and record (or clear) its column error.

        *loops* are precomputed mixed-loop column ids (see ``loop_members``).
        """
        if isinstance(column, int):
            found = self.sheet.column(column)
            if found is None:
                raise TabcalcError(f"No column C{column}")
            column = found
        result = validate_column(
            column,
            self.sheet,
            graph=self.column_graph,
            types=self.types,
            store=self.store,
            duplicate_severity=self.settings.duplicate_target_severity,
            range_severity=self.settings.invalid_range_severity,
            loop_members=self.loop_members()[0] if loops is None else loops,
        )
        if result.is_valid:
            self.errors.clear_column_error(column.column_id)
        else:
            self.errors.set_column_error(
                column_error_from(
                    result,
                    column.column_id,
                    column.display_name,
                    affected_row_count=len(self.sheet.rows),
                )
            )
        return result

    def validate_variable(
        self, variable: Variable | int, *, loops: frozenset[int] | None = None
    ) -> ValidationResult:
        """Validate one variable and record (or clear) its error."""
        if isinstance(variable, int):
            found = self.sheet.variable(variable)
            if found is None:
                raise TabcalcError(f"No variable V{variable}")
            variable = found
        result = validate_variable(
            variable,
            self.sheet,
            graph=self.variable_graph,
            types=self.types,
            store=self.store,
            loop_members=self.loop_members()[1] if loops is None else loops,
        )
        if result.is_valid:
            self.errors.clear_variable_error(variable.variable_id)
        else:
            self.errors.set_variable_error(
                variable_error_from(result, variable.variable_id, variable.display_name)
            )
        return result

    def validate_all(self, *, pass_id: str | None = None) -> dict[str, ValidationResult]:
        """Validate every slot; keyed by reference text."""
        results: dict[str, ValidationResult] = {}
        loop_columns, loop_variables = self.loop_members()
        for column in self.sheet.columns:
            results[column.reference] = self.validate_column(column, loops=loop_columns)
        for variable in self.sheet.variables:
            results[variable.reference] = self.validate_variable(variable, loops=loop_variables)
        for ref, result in results.items():
            if not result.is_valid:
                emit(
                    make_slot_event(
                        EventType.validation_failed,
                        EventLevel.warning if result.severity == Severity.warning else EventLevel.error,
                        result.message,
                        slot=ref,
                        pass_id=pass_id,
                        error_code=result.error_kind.value if result.error_kind else None,
                    ),
                    pass_id=pass_id,
                )
        return results

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_all(self, rows: list[Row] | None = None, *, context_row: Row | None = None) -> SheetResult:
        """Run one full pass: validate, evaluate variables, then each row.

        Args:
            rows: Rows to evaluate (default: the sheet's own rows).
            context_row: Row whose column values variable formulas may
                reference.  Without one, column references in variable
                formulas are unresolved.

        Raises:
            ReentrantEvaluationError: If called from inside a running pass.
            Exception: Anything a host store or resolver raises; the pass is
                logged as ``pass_failed`` and the exception re-raised.
        """
        if self._evaluating:
            raise ReentrantEvaluationError()
        self._evaluating = True
        pass_id = f"pass_{uuid4().hex[:12]}"
        try:
            return self._run_pass(pass_id, self.sheet.rows if rows is None else rows, context_row)
        except Exception as exc:
            emit_error(
                EventType.pass_failed,
                f"Evaluation pass aborted: {type(exc).__name__}: {exc}",
                {"pass_id": pass_id},
                error_code=type(exc).__name__,
                pass_id=pass_id,
            )
            raise
        finally:
            self._evaluating = False

    def _run_pass(self, pass_id: str, rows: list[Row], context_row: Row | None) -> SheetResult:
        emit_info(
            EventType.pass_started,
            f"Evaluation pass over {len(rows)} row(s)",
            {"pass_id": pass_id, "rows": len(rows)},
            pass_id=pass_id,
        )

        self.errors.clear_cell_errors()
        results = self.validate_all(pass_id=pass_id)
        blocked_columns = {
            c.column_id for c in self.sheet.columns if _blocks_evaluation(results[c.reference])
        }
        blocked_variables = {
            v.variable_id for v in self.sheet.variables if _blocks_evaluation(results[v.reference])
        }

        trees: dict[int, Tree] = {}
        column_value: Callable[[int], Any] | None = None
        if context_row is not None:
            context_cache = self.row_evaluator.evaluate_all(
                self.sheet.columns,
                context_row.model_copy(deep=True),
                graph=self.column_graph,
                skip=blocked_columns | self._columns_using_variables(self.sheet.variable_ids),
                trees=trees,
                pass_id=pass_id,
            )
            column_value = context_cache.get
            # Cell errors from the context probe belong to no real row
            self.errors.clear_cell_errors()

        variable_values = dict(
            self.variable_evaluator.evaluate_all(
                self.sheet.variables,
                column_value=column_value,
                skip=blocked_variables,
                pass_id=pass_id,
            )
        )

        schedule = self.column_graph.schedule(self.sheet.column_ids)
        loop_columns = self.loop_members()[0]
        row_values: dict[str, dict[int, Any]] = {}
        for row in rows:
            row_values[row.key] = self.row_evaluator.evaluate_all(
                self.sheet.columns,
                row,
                graph=self.column_graph,
                variables=variable_values,
                skip=blocked_columns,
                trees=trees,
                pass_id=pass_id,
            )

        self._stale.clear()
        self._evaluated = {c.reference for c in self.sheet.columns if c.column_id not in blocked_columns}
        self._evaluated |= {
            v.reference for v in self.sheet.variables if v.variable_id not in blocked_variables
        }

        result = SheetResult(
            pass_id=pass_id,
            columns=list(self.sheet.columns),
            variables=variable_values,
            rows=row_values,
            column_order=[i for i in schedule.order if i not in loop_columns],
            excluded_columns=schedule.excluded | loop_columns,
            column_errors=self.errors.column_errors(),
            cell_errors=self.errors.visible_cell_errors(),
            variable_errors=self.errors.variable_errors(),
        )
        self.last_result = result
        emit_info(
            EventType.pass_completed,
            f"Evaluation pass completed with {len(result.cell_errors)} cell error(s)",
            {
                "pass_id": pass_id,
                "rows": len(rows),
                "cell_errors": len(result.cell_errors),
                "column_errors": len(result.column_errors),
                "variable_errors": len(result.variable_errors),
            },
            pass_id=pass_id,
        )
        return result

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def slot_state(self, ref: str | int | Reference) -> SlotState:
        """Lifecycle state of a slot, inferred from its current definition."""
        reference = self._as_reference(ref)
        if reference.is_column:
            slot = self.sheet.column(reference.slot_id)
        else:
            slot = self.sheet.variable(reference.slot_id)
        if slot is None:
            raise TabcalcError(f"No slot {reference}")

        if _is_unconfigured(slot):
            return SlotState.unconfigured
        result = self.validate_column(slot) if reference.is_column else self.validate_variable(slot)
        if _blocks_evaluation(result):
            return SlotState.invalid
        if str(reference) in self._evaluated and str(reference) not in self._stale:
            return SlotState.evaluated
        return SlotState.valid

    def placeholder_for(self, column_id: int, row_key: str) -> str | None:
        """Placeholder text for a failed cell, or None when it has a value."""
        error = self.errors.get_column_error(column_id)
        if error is not None and error.blocking:
            return error.placeholder
        cell = self.errors.get_cell_error(column_id, row_key)
        return placeholder(cell.error_kind) if cell is not None else None


def _is_unconfigured(slot: Column | Variable) -> bool:
    source = slot.source
    if source.kind == "formula":
        return not source.formula.strip()
    if source.kind == "property":
        return not source.target_type and not source.property_path
    return False
