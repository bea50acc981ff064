"""Sheet data model: columns, variables, their tagged sources, and rows.

A sheet is a list of columns (``C<id>``) evaluated per row, plus a list of
variables (``V<id>``) evaluated once per pass.  Each slot carries exactly one
source kind: a literal (Data), a host property (Property) or an expression
(Formula).
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from tabcalc.formulas.parser import COLUMN_PREFIX, VARIABLE_PREFIX
from tabcalc.values import DataFieldType, parse_data_value


def _as_text(value: Any) -> str:
    # YAML hands us ints/bools for unquoted literals
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SlotKind(str, Enum):
    data = "data"
    property = "property"
    formula = "formula"


# ---------------------------------------------------------------------------
# Sources (discriminated on ``kind``)
# ---------------------------------------------------------------------------


class DataSource(BaseModel):
    """Literal value stored as text and parsed by its field type."""

    kind: Literal["data"] = "data"
    field_type: DataFieldType = DataFieldType.float
    value: str = ""
    use_slider: bool = False
    min_value: float = 0.0
    max_value: float = 1.0

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return _as_text(v)

    def parsed_value(self, text: str | None = None) -> int | float | bool:
        """Value of *text* (default: the stored value) as the field type."""
        return parse_data_value(self.field_type, self.value if text is None else text)


class PropertySource(BaseModel):
    """Value read from ``target_type.property_path`` on a host object.

    For columns the object is the row's target; variables carry their own
    ``target``.
    """

    kind: Literal["property"] = "property"
    target_type: str = ""
    property_path: str = ""
    target: dict[str, Any] | None = None


class FormulaSource(BaseModel):
    """Expression over other slots, optionally written back to a property."""

    kind: Literal["formula"] = "formula"
    formula: str = ""
    target_type: str = ""
    property_path: str = ""

    @property
    def has_target(self) -> bool:
        return bool(self.target_type) and bool(self.property_path)


SlotSource = Annotated[
    Union[DataSource, PropertySource, FormulaSource],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------


def _property_display_name(path: str) -> str:
    last = path.rsplit(".", 1)[-1]
    return last or "Property"


class Column(BaseModel):
    """A per-row slot referenced as ``C<column_id>``."""

    column_id: int = Field(ge=0)
    name: str = ""
    source: SlotSource = Field(default_factory=DataSource)

    @property
    def kind(self) -> SlotKind:
        return SlotKind(self.source.kind)

    @property
    def reference(self) -> str:
        return f"{COLUMN_PREFIX}{self.column_id}"

    @property
    def display_name(self) -> str:
        """``[C3] Health``; falls back to a name derived from the source."""
        if self.name:
            base = self.name
        elif isinstance(self.source, PropertySource):
            base = _property_display_name(self.source.property_path)
        elif isinstance(self.source, FormulaSource):
            base = "Formula"
        else:
            base = "Value"
        return f"[{self.reference}] {base}"


class Variable(BaseModel):
    """A sheet-wide slot referenced as ``V<variable_id>``."""

    variable_id: int = Field(ge=0)
    name: str = ""
    source: SlotSource = Field(default_factory=DataSource)

    @property
    def kind(self) -> SlotKind:
        return SlotKind(self.source.kind)

    @property
    def reference(self) -> str:
        return f"{VARIABLE_PREFIX}{self.variable_id}"

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        source = self.source
        if isinstance(source, DataSource):
            return f"Data ({source.field_type.value})"
        if isinstance(source, PropertySource) and source.target_type and source.property_path:
            return _property_display_name(source.property_path)
        if isinstance(source, FormulaSource):
            return "Formula Variable"
        return f"Variable {self.reference}"


class Row(BaseModel):
    """One evaluated row: a host object plus per-row data column text.

    ``target`` is the object property columns read from and formula columns
    write back to; it is mutated in place by evaluation.
    """

    key: str
    target: dict[str, Any] = Field(default_factory=dict)
    data: dict[int, str] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _stringify_data(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {k: _as_text(val) for k, val in v.items()}


class Sheet(BaseModel):
    """Column and variable definitions, with optional property schemas and rows.

    ``types`` maps a target type name to ``{property_path: kind name}`` and
    feeds ``DictPropertyStore``.
    """

    columns: list[Column] = Field(default_factory=list)
    variables: list[Variable] = Field(default_factory=list)
    types: dict[str, dict[str, str]] = Field(default_factory=dict)
    rows: list[Row] = Field(default_factory=list)

    def column(self, column_id: int) -> Column | None:
        for column in self.columns:
            if column.column_id == column_id:
                return column
        return None

    def variable(self, variable_id: int) -> Variable | None:
        for variable in self.variables:
            if variable.variable_id == variable_id:
                return variable
        return None

    @property
    def column_ids(self) -> set[int]:
        return {c.column_id for c in self.columns}

    @property
    def variable_ids(self) -> set[int]:
        return {v.variable_id for v in self.variables}


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

_SLOT_KEYS = {"id", "column_id", "variable_id", "name", "source"}


def _slot_entry(entry: dict[str, Any], id_key: str) -> dict[str, Any]:
    """Accept either nested ``source:`` blocks or flat source fields.

    Flat form::

        - id: 1
          name: Damage
          kind: formula
          formula: C0 * 2
    """
    entry = dict(entry)
    slot_id = entry.pop(id_key, entry.pop("id", None))
    out: dict[str, Any] = {id_key: slot_id, "name": entry.pop("name", "") or ""}
    if "source" in entry:
        out["source"] = entry.pop("source")
    else:
        source = {k: v for k, v in entry.items() if k not in _SLOT_KEYS}
        source.setdefault("kind", SlotKind.data.value)
        out["source"] = source
    return out


def parse_sheet(document: dict[str, Any]) -> Sheet:
    """Build a ``Sheet`` from a parsed YAML/JSON document."""
    document = document or {}
    return Sheet(
        columns=[_slot_entry(c, "column_id") for c in document.get("columns") or []],
        variables=[_slot_entry(v, "variable_id") for v in document.get("variables") or []],
        types=document.get("types") or {},
        rows=document.get("rows") or [],
    )


def load_sheet(path: Path) -> Sheet:
    """Load a sheet definition from a YAML file."""
    return parse_sheet(yaml.safe_load(Path(path).read_text()) or {})


def load_rows(path: Path) -> list[Row]:
    """Load a YAML list of rows (or a mapping with a ``rows`` key)."""
    document = yaml.safe_load(Path(path).read_text()) or []
    if isinstance(document, dict):
        document = document.get("rows") or []
    return [Row.model_validate(r) for r in document]
