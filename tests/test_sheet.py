"""Sheet data model and YAML loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tabcalc.sheet import (
    Column,
    DataSource,
    FormulaSource,
    PropertySource,
    Row,
    SlotKind,
    Variable,
    load_rows,
    load_sheet,
    parse_sheet,
)
from tabcalc.values import DataFieldType


SHEET_YAML = """
types:
  Enemy:
    health: float
    level: int
columns:
  - id: 0
    name: Base
    kind: data
    field_type: integer
    value: 5
  - id: 1
    kind: formula
    formula: C0 * V0
    target_type: Enemy
    property_path: health
  - id: 2
    source:
      kind: property
      target_type: Enemy
      property_path: level
variables:
  - id: 0
    name: Multiplier
    kind: data
    value: 1.5
rows:
  - key: goblin
    target: {level: 3}
    data: {0: 7}
"""


class TestSlots:
    def test_discriminated_source(self) -> None:
        column = Column.model_validate({"column_id": 1, "source": {"kind": "formula", "formula": "C0"}})
        assert isinstance(column.source, FormulaSource)
        assert column.kind == SlotKind.formula

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Column.model_validate({"column_id": 1, "source": {"kind": "script"}})

    def test_negative_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Column(column_id=-1)

    def test_default_source_is_data(self) -> None:
        assert Column(column_id=0).kind == SlotKind.data

    def test_data_value_stored_as_text(self) -> None:
        source = DataSource(field_type=DataFieldType.boolean, value=True)
        assert source.value == "true"
        assert source.parsed_value() is True
        assert DataSource(field_type=DataFieldType.integer, value=3).parsed_value("8") == 8

    def test_display_names(self) -> None:
        assert Column(column_id=3, name="Health").display_name == "[C3] Health"
        prop = Column(column_id=2, source=PropertySource(target_type="Enemy", property_path="stats.armor"))
        assert prop.display_name == "[C2] armor"
        assert Column(column_id=4, source=FormulaSource()).display_name == "[C4] Formula"
        assert Variable(variable_id=1).display_name == "Data (float)"
        assert Variable(variable_id=2, source=FormulaSource()).display_name == "Formula Variable"

    def test_references(self) -> None:
        assert Column(column_id=7).reference == "C7"
        assert Variable(variable_id=7).reference == "V7"

    def test_has_target(self) -> None:
        assert FormulaSource(formula="1", target_type="Enemy", property_path="hp").has_target
        assert not FormulaSource(formula="1", target_type="Enemy").has_target

    def test_row_data_stringified(self) -> None:
        row = Row(key="r", data={0: 5, 1: False})
        assert row.data == {0: "5", 1: "false"}


class TestLoading:
    def test_load_sheet(self, tmp_path: Path) -> None:
        path = tmp_path / "sheet.yaml"
        path.write_text(SHEET_YAML)
        sheet = load_sheet(path)

        assert sheet.column_ids == {0, 1, 2}
        assert sheet.variable_ids == {0}
        assert sheet.column(0).name == "Base"
        assert sheet.column(0).source.value == "5"
        assert sheet.column(1).source.property_path == "health"
        assert isinstance(sheet.column(2).source, PropertySource)
        assert sheet.variable(0).name == "Multiplier"
        assert sheet.types["Enemy"]["level"] == "int"
        assert sheet.rows[0].data == {0: "7"}
        assert sheet.column(9) is None

    def test_parse_empty(self) -> None:
        sheet = parse_sheet({})
        assert sheet.columns == [] and sheet.variables == []

    def test_load_rows_list_or_mapping(self, tmp_path: Path) -> None:
        as_list = tmp_path / "rows.yaml"
        as_list.write_text(yaml.safe_dump([{"key": "a"}, {"key": "b", "target": {"level": 2}}]))
        as_mapping = tmp_path / "rows2.yaml"
        as_mapping.write_text(yaml.safe_dump({"rows": [{"key": "c"}]}))

        assert [r.key for r in load_rows(as_list)] == ["a", "b"]
        assert load_rows(as_list)[1].target == {"level": 2}
        assert [r.key for r in load_rows(as_mapping)] == ["c"]
