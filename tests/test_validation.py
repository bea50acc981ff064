"""Validation pipeline: each check, and the whole-slot pipelines."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from tabcalc.graph import DependencyGraph
from tabcalc.sheet import Column, DataSource, FormulaSource, PropertySource, Sheet, Variable
from tabcalc.store import DictPropertyStore, TypeCache
from tabcalc.validation import (
    ErrorKind,
    Severity,
    ValidationResult,
    infer_result_kind,
    validate_circularity,
    validate_column,
    validate_cross_loop,
    validate_data_value,
    validate_duplicate_target,
    validate_property_path,
    validate_references,
    validate_result_type,
    validate_slider,
    validate_static_type,
    validate_syntax,
    validate_type_name,
    validate_variable,
)
from tabcalc.formulas import parse_formula
from tabcalc.values import DataFieldType, ValueKind


@pytest.fixture
def store() -> DictPropertyStore:
    return DictPropertyStore(
        {
            "Enemy": {"health": "float", "level": "int", "name": "string", "alive": "bool"},
        }
    )


def _formula_column(column_id: int, text: str, target_type: str = "", path: str = "") -> Column:
    return Column(
        column_id=column_id,
        source=FormulaSource(formula=text, target_type=target_type, property_path=path),
    )


def _graph_for(sheet: Sheet) -> DependencyGraph:
    from tabcalc.formulas import column_references

    graph = DependencyGraph()
    for column in sheet.columns:
        if isinstance(column.source, FormulaSource):
            graph.set_dependencies(column.column_id, column_references(column.source.formula))
    return graph


# ────────────────────────────────────────────────────────────────
# Result model
# ────────────────────────────────────────────────────────────────


class TestValidationResult:
    def test_success_is_truthy(self) -> None:
        result = ValidationResult.success()
        assert result.is_valid
        assert bool(result)
        assert result.error_kind is None

    def test_failure_fields(self) -> None:
        result = ValidationResult.failure(
            "Bad", "detail", "fix it", kind=ErrorKind.syntax_error, severity=Severity.critical
        )
        assert not result
        assert result.message == "Bad"
        assert result.suggestion == "fix it"
        assert result.error_kind == ErrorKind.syntax_error
        assert result.severity == Severity.critical

    def test_failure_requires_message(self) -> None:
        with pytest.raises(ValidationError):
            ValidationResult(is_valid=False)

    def test_frozen(self) -> None:
        result = ValidationResult.failure("Bad")
        with pytest.raises(ValidationError):
            result.message = "other"  # type: ignore[misc]


# ────────────────────────────────────────────────────────────────
# Data values and sliders
# ────────────────────────────────────────────────────────────────


class TestDataValue:
    def test_messages_name_the_expected_type(self) -> None:
        as_int = validate_data_value(DataFieldType.integer, "abc")
        as_float = validate_data_value(DataFieldType.float, "abc")
        assert not as_int and not as_float
        assert "integer" in as_int.message
        assert "float" in as_float.message
        assert as_int.message != as_float.message

    @pytest.mark.parametrize(
        "field_type, text",
        [
            (DataFieldType.integer, "42"),
            (DataFieldType.integer, "-10"),
            (DataFieldType.integer, "+7"),
            (DataFieldType.float, "3.14"),
            (DataFieldType.float, "-2.5e3"),
            (DataFieldType.boolean, "TRUE"),
            (DataFieldType.boolean, "0"),
            (DataFieldType.integer, ""),
        ],
    )
    def test_valid(self, field_type: DataFieldType, text: str) -> None:
        assert validate_data_value(field_type, text).is_valid

    @pytest.mark.parametrize(
        "field_type, text",
        [
            (DataFieldType.integer, "1.5"),
            (DataFieldType.integer, "99999999999"),
            (DataFieldType.float, "1_000"),
            (DataFieldType.boolean, "yes"),
        ],
    )
    def test_invalid(self, field_type: DataFieldType, text: str) -> None:
        result = validate_data_value(field_type, text)
        assert not result.is_valid
        assert result.error_kind == ErrorKind.type_mismatch

    def test_slider_range(self) -> None:
        bad = validate_slider(DataFieldType.float, True, 5.0, 5.0)
        assert bad.error_kind == ErrorKind.invalid_range
        assert bad.severity == Severity.warning
        assert validate_slider(DataFieldType.float, True, 0.0, 1.0).is_valid
        assert validate_slider(DataFieldType.float, False, 5.0, 1.0).is_valid
        assert validate_slider(DataFieldType.boolean, True, 5.0, 1.0).is_valid

    def test_slider_severity_configurable(self) -> None:
        result = validate_slider(DataFieldType.integer, True, 3, 1, severity=Severity.error)
        assert result.severity == Severity.error


# ────────────────────────────────────────────────────────────────
# Types and property paths
# ────────────────────────────────────────────────────────────────


class TestTargets:
    def test_type_name(self, store: DictPropertyStore) -> None:
        types = TypeCache(store)
        assert validate_type_name("Enemy", types).is_valid
        assert validate_type_name("", types).error_kind == ErrorKind.target_type_invalid
        missing = validate_type_name("Dragon", types)
        assert missing.error_kind == ErrorKind.target_type_invalid
        assert "Dragon" in missing.message

    def test_property_path(self, store: DictPropertyStore) -> None:
        assert validate_property_path("Enemy", "health", store, store).is_valid
        empty = validate_property_path("Enemy", "", store, store)
        assert empty.error_kind == ErrorKind.property_path_invalid
        missing = validate_property_path("Enemy", "mana", store, store)
        assert missing.error_kind == ErrorKind.property_path_invalid
        assert "mana" in missing.message

    def test_property_path_with_unknown_type(self, store: DictPropertyStore) -> None:
        result = validate_property_path("Dragon", "health", store, store)
        assert result.error_kind == ErrorKind.target_type_invalid


# ────────────────────────────────────────────────────────────────
# Formula checks
# ────────────────────────────────────────────────────────────────


class TestFormulaChecks:
    def test_syntax(self) -> None:
        assert validate_syntax("").is_valid
        assert validate_syntax("C0 + 1").is_valid
        result = validate_syntax("C0 +")
        assert result.error_kind == ErrorKind.syntax_error

    def test_missing_references_all_listed(self) -> None:
        result = validate_references("C1 + C7 + C9", column_ids={0, 1}, variable_ids=set())
        assert result.error_kind == ErrorKind.missing_dependency
        assert "C7" in result.detail and "C9" in result.detail

    def test_missing_variable(self) -> None:
        result = validate_references("V3 * 2", column_ids=set(), variable_ids={0})
        assert result.error_kind == ErrorKind.missing_dependency
        assert "V3" in result.detail

    def test_self_reference_is_circular(self) -> None:
        result = validate_references("C2 + 1", column_ids={2}, variable_ids=set(), self_ref="C2")
        assert result.error_kind == ErrorKind.circular_dependency

    def test_unknown_names_fail(self) -> None:
        """Lower-case or bare names can never resolve, so they fail up front."""
        result = validate_references("c0 + speed", column_ids={0}, variable_ids=set())
        assert result.error_kind == ErrorKind.missing_dependency
        assert result.message == "Unknown name in formula"
        assert "c0, speed" in result.detail

    def test_functions_and_literals_are_not_names(self) -> None:
        assert validate_references("Mathf.Abs(C0) + MAX(1, 2) > 0 && true", column_ids={0}, variable_ids=set())

    def test_cross_loop(self) -> None:
        result = validate_cross_loop(1, frozenset({1}))
        assert result.error_kind == ErrorKind.circular_dependency
        assert "C1" in result.detail
        assert validate_cross_loop(1, frozenset({2})).is_valid
        assert "V1" in validate_cross_loop(1, frozenset({1}), prefix="V").detail

    def test_circularity_both_columns(self) -> None:
        sheet = Sheet(columns=[_formula_column(1, "C2 + 1"), _formula_column(2, "C1 + 1")])
        graph = _graph_for(sheet)
        for column_id in (1, 2):
            result = validate_circularity(column_id, graph)
            assert result.error_kind == ErrorKind.circular_dependency
        assert graph.topological_order([1, 2]) == []

    def test_circularity_names_the_loop(self) -> None:
        graph = DependencyGraph()
        graph.add_dependency(1, 2)
        graph.add_dependency(2, 1)
        result = validate_circularity(1, graph, names={2: "[C2] Armor"})
        assert "[C2] Armor" in result.detail
        assert "C1 -> C2 -> C1" in result.detail

    def test_circularity_unknown_node_passes(self) -> None:
        assert validate_circularity(5, DependencyGraph()).is_valid


class TestTypeCompatibility:
    def test_int_into_float_passes(self) -> None:
        assert validate_result_type(3, ValueKind.float).is_valid

    def test_string_into_float_fails(self) -> None:
        result = validate_result_type("abc", ValueKind.float)
        assert result.error_kind == ErrorKind.type_mismatch
        assert "string" in result.detail and "float" in result.detail

    @pytest.mark.parametrize(
        "value, target",
        [
            (1.5, ValueKind.int64),
            (True, ValueKind.boolean),
            ("x", ValueKind.any),
            (None, ValueKind.float),
            (1, None),
        ],
    )
    def test_assignable(self, value: object, target: ValueKind | None) -> None:
        assert validate_result_type(value, target).is_valid

    def test_bool_into_float_fails(self) -> None:
        assert not validate_result_type(True, ValueKind.float).is_valid

    def test_inferred_kinds(self) -> None:
        kinds = {"C0": ValueKind.string, "C1": ValueKind.integer}
        assert infer_result_kind(parse_formula("C1 + 2"), kinds) == ValueKind.float
        assert infer_result_kind(parse_formula("C1 > 2"), kinds) == ValueKind.boolean
        assert infer_result_kind(parse_formula("C0"), kinds) == ValueKind.string
        assert infer_result_kind(parse_formula("C1 ? C0 : C0"), kinds) == ValueKind.string
        assert infer_result_kind(parse_formula("C9"), kinds) is None

    def test_static_mismatch(self) -> None:
        result = validate_static_type("C0", ValueKind.float, {"C0": ValueKind.string})
        assert result.error_kind == ErrorKind.type_mismatch
        assert validate_static_type("C0 * 2", ValueKind.integer, {}).is_valid

    def test_nesting_too_deep_to_infer(self) -> None:
        deep = "C0 ? (" * 3000 + "1" + ") : 2" * 3000
        result = validate_static_type(deep, ValueKind.float, {})
        assert result.error_kind == ErrorKind.formula_system_error
        assert result.message == "Formula is nested too deeply"


class TestDuplicateTarget:
    def test_duplicate_names_other_column(self) -> None:
        a = _formula_column(1, "1", "Enemy", "health")
        b = Column(column_id=2, source=PropertySource(target_type="Enemy", property_path="health"))
        result = validate_duplicate_target(a, [a, b])
        assert result.error_kind == ErrorKind.duplicate_target
        assert result.severity == Severity.warning
        assert "C2" in result.detail
        assert "Enemy.health" in result.message

    def test_distinct_targets_pass(self) -> None:
        a = _formula_column(1, "1", "Enemy", "health")
        b = _formula_column(2, "1", "Enemy", "level")
        c = _formula_column(3, "1")
        assert validate_duplicate_target(a, [a, b, c]).is_valid
        assert validate_duplicate_target(c, [a, b, c]).is_valid


# ────────────────────────────────────────────────────────────────
# Whole-slot pipelines
# ────────────────────────────────────────────────────────────────


class TestColumnPipeline:
    def test_order_syntax_before_references(self, store: DictPropertyStore) -> None:
        column = _formula_column(1, "C9 +")
        sheet = Sheet(columns=[column])
        result = validate_column(column, sheet, graph=_graph_for(sheet), types=store, store=store)
        assert result.error_kind == ErrorKind.syntax_error

    def test_empty_formula_valid(self, store: DictPropertyStore) -> None:
        column = _formula_column(1, "")
        sheet = Sheet(columns=[column])
        assert validate_column(column, sheet, graph=_graph_for(sheet), store=store).is_valid

    def test_typed_target_mismatch(self, store: DictPropertyStore) -> None:
        name = Column(column_id=0, source=PropertySource(target_type="Enemy", property_path="name"))
        column = _formula_column(1, "C0", "Enemy", "health")
        sheet = Sheet(columns=[name, column])
        result = validate_column(column, sheet, graph=_graph_for(sheet), types=store, store=store)
        assert result.error_kind == ErrorKind.type_mismatch

    def test_typed_target_numeric_passes(self, store: DictPropertyStore) -> None:
        level = Column(column_id=0, source=PropertySource(target_type="Enemy", property_path="level"))
        column = _formula_column(1, "C0 * 2", "Enemy", "health")
        sheet = Sheet(columns=[level, column])
        assert validate_column(column, sheet, graph=_graph_for(sheet), types=store, store=store).is_valid

    def test_unknown_write_back_path(self, store: DictPropertyStore) -> None:
        column = _formula_column(1, "2", "Enemy", "mana")
        sheet = Sheet(columns=[column])
        result = validate_column(column, sheet, graph=_graph_for(sheet), types=store, store=store)
        assert result.error_kind == ErrorKind.property_path_invalid

    def test_property_column_required_fields(self, store: DictPropertyStore) -> None:
        no_type = Column(column_id=0, source=PropertySource(property_path="health"))
        no_path = Column(column_id=1, source=PropertySource(target_type="Enemy"))
        sheet = Sheet(columns=[no_type, no_path])
        graph = _graph_for(sheet)
        first = validate_column(no_type, sheet, graph=graph, types=store, store=store)
        second = validate_column(no_path, sheet, graph=graph, types=store, store=store)
        assert first.error_kind == ErrorKind.target_type_invalid
        assert second.error_kind == ErrorKind.property_path_invalid

    def test_data_column(self) -> None:
        column = Column(column_id=0, source=DataSource(field_type=DataFieldType.integer, value="x"))
        sheet = Sheet(columns=[column])
        result = validate_column(column, sheet, graph=DependencyGraph())
        assert result.error_kind == ErrorKind.type_mismatch

    def test_duplicate_severity_passed_through(self, store: DictPropertyStore) -> None:
        a = _formula_column(1, "1", "Enemy", "health")
        b = _formula_column(2, "2", "Enemy", "health")
        sheet = Sheet(columns=[a, b])
        result = validate_column(
            a, sheet, graph=_graph_for(sheet), types=store, store=store,
            duplicate_severity=Severity.error,
        )
        assert result.severity == Severity.error

    def test_unknown_name_in_formula(self) -> None:
        column = _formula_column(1, "c0 + 1")
        sheet = Sheet(columns=[Column(column_id=0, source=DataSource(value="1")), column])
        result = validate_column(column, sheet, graph=_graph_for(sheet))
        assert result.error_kind == ErrorKind.missing_dependency
        assert "c0" in result.detail

    def test_loop_members_fail_as_circular(self) -> None:
        column = _formula_column(1, "V0 + 1")
        sheet = Sheet(
            columns=[column],
            variables=[Variable(variable_id=0, source=FormulaSource(formula="C1 + 1"))],
        )
        graph = _graph_for(sheet)
        assert validate_column(column, sheet, graph=graph).is_valid
        result = validate_column(column, sheet, graph=graph, loop_members=frozenset({1}))
        assert result.error_kind == ErrorKind.circular_dependency


class TestVariablePipeline:
    def test_formula_variable_missing_reference(self) -> None:
        variable = Variable(variable_id=0, source=FormulaSource(formula="V4 + 1"))
        sheet = Sheet(variables=[variable])
        result = validate_variable(variable, sheet, graph=DependencyGraph())
        assert result.error_kind == ErrorKind.missing_dependency
        assert "Unknown variable reference" == result.message

    def test_data_variable(self) -> None:
        variable = Variable(variable_id=0, source=DataSource(field_type=DataFieldType.boolean, value="maybe"))
        sheet = Sheet(variables=[variable])
        result = validate_variable(variable, sheet, graph=DependencyGraph())
        assert "boolean" in result.message
