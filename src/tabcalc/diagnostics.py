"""Cell, column and variable error records and their visibility rules.

A blocking column error (bad formula, unresolved target, ...) means the
column is not evaluated and every cell shows the column's placeholder, so
cell errors under it are dropped and hidden until it is cleared.  A
warning-level column error (duplicate target, slider range) leaves the
column running; cell errors under it are kept and reported alongside it.
"""

from __future__ import annotations

from pydantic import BaseModel

from tabcalc.validation import ErrorKind, Severity, ValidationResult

PLACEHOLDERS: dict[ErrorKind, str] = {
    ErrorKind.syntax_error: "[Formula Syntax Error]",
    ErrorKind.missing_dependency: "[Missing Reference]",
    ErrorKind.circular_dependency: "[Circular Reference]",
    ErrorKind.type_mismatch: "[Type Mismatch]",
    ErrorKind.property_path_invalid: "[Property Not Found]",
    ErrorKind.target_type_invalid: "[Target Type Missing]",
    ErrorKind.duplicate_target: "[Duplicate Target]",
    ErrorKind.invalid_range: "[Invalid Range]",
    ErrorKind.formula_system_error: "[Formula Error]",
}
DEFAULT_PLACEHOLDER = "[Column Error]"


def placeholder(kind: ErrorKind | None) -> str:
    """Deterministic cell marker for an error kind."""
    if kind is None:
        return DEFAULT_PLACEHOLDER
    return PLACEHOLDERS.get(kind, DEFAULT_PLACEHOLDER)


class SlotError(BaseModel):
    error_kind: ErrorKind = ErrorKind.formula_system_error
    severity: Severity = Severity.error
    message: str
    detail: str = ""
    suggestion: str = ""

    @property
    def placeholder(self) -> str:
        return placeholder(self.error_kind)

    @property
    def blocking(self) -> bool:
        """Error and critical severities stop the slot from being evaluated."""
        return self.severity != Severity.warning


class CellError(SlotError):
    """Failure of one column in one row."""

    column_id: int
    row_key: str


class ColumnError(SlotError):
    """Configuration failure affecting a whole column."""

    column_id: int
    column_name: str = ""
    affected_row_count: int = 0


class VariableError(SlotError):
    variable_id: int
    variable_name: str = ""


def _fields(result: ValidationResult) -> dict:
    return {
        "error_kind": result.error_kind or ErrorKind.formula_system_error,
        "severity": result.severity,
        "message": result.message,
        "detail": result.detail,
        "suggestion": result.suggestion,
    }


def column_error_from(
    result: ValidationResult, column_id: int, column_name: str = "", affected_row_count: int = 0
) -> ColumnError:
    return ColumnError(
        column_id=column_id,
        column_name=column_name,
        affected_row_count=affected_row_count,
        **_fields(result),
    )


def cell_error_from(result: ValidationResult, column_id: int, row_key: str) -> CellError:
    return CellError(column_id=column_id, row_key=row_key, **_fields(result))


def variable_error_from(result: ValidationResult, variable_id: int, variable_name: str = "") -> VariableError:
    return VariableError(variable_id=variable_id, variable_name=variable_name, **_fields(result))


class ErrorManager:
    """Holds the current errors of one sheet."""

    def __init__(self) -> None:
        self._columns: dict[int, ColumnError] = {}
        self._cells: dict[tuple[int, str], CellError] = {}
        self._variables: dict[int, VariableError] = {}

    # -- columns --

    def set_column_error(self, error: ColumnError) -> None:
        """Record a column error; a blocking one drops the column's cell errors."""
        self._columns[error.column_id] = error
        if not error.blocking:
            return
        for key in [k for k in self._cells if k[0] == error.column_id]:
            del self._cells[key]

    def clear_column_error(self, column_id: int) -> bool:
        return self._columns.pop(column_id, None) is not None

    def has_column_error(self, column_id: int) -> bool:
        return column_id in self._columns

    def get_column_error(self, column_id: int) -> ColumnError | None:
        return self._columns.get(column_id)

    def column_errors(self) -> list[ColumnError]:
        return [self._columns[k] for k in sorted(self._columns)]

    def _blocked(self, column_id: int) -> bool:
        error = self._columns.get(column_id)
        return error is not None and error.blocking

    # -- cells --

    def set_cell_error(self, error: CellError) -> bool:
        """Record a cell error; ignored while its column has a blocking error."""
        if self._blocked(error.column_id):
            return False
        self._cells[(error.column_id, error.row_key)] = error
        return True

    def clear_cell_error(self, column_id: int, row_key: str) -> bool:
        return self._cells.pop((column_id, row_key), None) is not None

    def get_cell_error(self, column_id: int, row_key: str) -> CellError | None:
        if self._blocked(column_id):
            return None
        return self._cells.get((column_id, row_key))

    def visible_cell_errors(self) -> list[CellError]:
        return [
            error
            for key, error in sorted(self._cells.items())
            if not self._blocked(key[0])
        ]

    # -- variables --

    def set_variable_error(self, error: VariableError) -> None:
        self._variables[error.variable_id] = error

    def clear_variable_error(self, variable_id: int) -> bool:
        return self._variables.pop(variable_id, None) is not None

    def get_variable_error(self, variable_id: int) -> VariableError | None:
        return self._variables.get(variable_id)

    def variable_errors(self) -> list[VariableError]:
        return [self._variables[k] for k in sorted(self._variables)]

    # -- bulk --

    def clear_cell_errors(self) -> None:
        self._cells.clear()

    def clear(self) -> None:
        self._columns.clear()
        self._cells.clear()
        self._variables.clear()

    def __len__(self) -> int:
        return len(self._columns) + len(self.visible_cell_errors()) + len(self._variables)
