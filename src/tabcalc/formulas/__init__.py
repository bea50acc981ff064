"""Slot formula parsing, reference extraction and evaluation.

Public API::

    from tabcalc.formulas import parse_formula, extract_references, evaluate_formula
"""

from tabcalc.formulas.errors import (
    ENGINE_ERRORS,
    FormulaError,
    FormulaFunctionError,
    FormulaParseError,
    FormulaRefError,
    FormulaTypeError,
    FormulaValueError,
)
from tabcalc.formulas.evaluator import ValueProvider, evaluate_formula, evaluate_text
from tabcalc.formulas.parser import (
    Reference,
    column_references,
    extract_references,
    extract_unknown_names,
    parse_formula,
    parse_reference,
    variable_references,
)

__all__ = [
    "ENGINE_ERRORS",
    "FormulaError",
    "FormulaFunctionError",
    "FormulaParseError",
    "FormulaRefError",
    "FormulaTypeError",
    "FormulaValueError",
    "Reference",
    "ValueProvider",
    "column_references",
    "evaluate_formula",
    "evaluate_text",
    "extract_references",
    "extract_unknown_names",
    "parse_formula",
    "parse_reference",
    "variable_references",
]
