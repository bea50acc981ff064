"""Lark-based parser for slot formulas, plus the lexical reference scanner.

Supports:
- Column references ``C0``, ``C12`` and variable references ``V0``, ``V3``
- Numeric literals and ``true`` / ``false``
- Arithmetic, comparisons, ``&&`` / ``||`` and the ternary ``cond ? a : b``
- Function calls, optionally dotted (``MAX(C0, 1)``, ``Mathf.Abs(V1)``)

References are case-sensitive; ``c0`` is not a column reference.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from lark import Lark, Token, Tree, Visitor
from lark.exceptions import LarkError, UnexpectedCharacters, UnexpectedInput

from tabcalc.formulas.errors import FormulaParseError

# LALR(1) grammar for slot formulas.
# Operator precedence (lowest to highest):
#   1. Ternary: ? :  (right-associative)
#   2. Logical or: ||
#   3. Logical and: &&
#   4. Comparison: == != > < >= <=
#   5. Addition/subtraction: + -
#   6. Multiplication/division: * /
#   7. Unary plus/minus: + -
#   8. Atoms: number, bool, function call, reference, parenthesized expr
GRAMMAR = r"""
start: expr

?expr: ternary

?ternary: logic_or
    | logic_or "?" ternary ":" ternary  -> cond

?logic_or: logic_and
    | logic_or "||" logic_and  -> or_

?logic_and: comparison
    | logic_and "&&" comparison  -> and_

?comparison: addition
    | comparison ">" addition   -> gt
    | comparison "<" addition   -> lt
    | comparison ">=" addition  -> gte
    | comparison "<=" addition  -> lte
    | comparison "==" addition  -> eq
    | comparison "!=" addition  -> neq

?addition: multiplication
    | addition "+" multiplication  -> add
    | addition "-" multiplication  -> sub

?multiplication: unary
    | multiplication "*" unary  -> mul
    | multiplication "/" unary  -> div

?unary: atom
    | "-" unary  -> neg
    | "+" unary  -> pos

?atom: NUMBER                   -> number
    | BOOL                      -> boolean
    | FUNC_NAME "(" args ")"    -> func_call
    | SLOT_REF                  -> slot_ref
    | NAME                      -> name_ref
    | "(" expr ")"

args: expr ("," expr)*
    |

BOOL.3: /(true|false)(?![A-Za-z0-9_.])/

// Column or variable reference: C0, V12
SLOT_REF.2: /[CV][0-9]+(?![A-Za-z0-9_])/

// Function names may be dotted (Mathf.Abs); the lookahead keeps them apart
// from plain identifiers.
FUNC_NAME.1: /[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*(?=\s*\()/

NAME: /[A-Za-z_][A-Za-z0-9_.]*/

NUMBER: /([0-9]+(\.[0-9]*)?|\.[0-9]+)([eE][+-]?[0-9]+)?/

%import common.WS
%ignore WS
"""

_parser = Lark(GRAMMAR, parser="lalr", start="start")

_END_TOKENS = {"$END", "<EOF>"}


def parse_formula(text: str) -> Tree:
    """Parse a formula string into a Lark Tree.

    Args:
        text: The formula text, e.g. ``"C0 * (1 - V2)"``.  A leading ``=``
            is tolerated and stripped.

    Returns:
        A Lark parse tree.

    Raises:
        FormulaParseError: If the formula is empty or has invalid syntax.
    """
    text = text.strip()
    if text.startswith("="):
        text = text[1:].lstrip()
    if not text:
        raise FormulaParseError("Formula is empty", position=0)
    try:
        return _parser.parse(text)
    except UnexpectedCharacters as exc:
        raise FormulaParseError(
            f"Unexpected character {text[exc.pos_in_stream]!r}",
            position=exc.pos_in_stream,
        ) from exc
    except UnexpectedInput as exc:
        token = getattr(exc, "token", None)
        if token is None or getattr(token, "type", "") in _END_TOKENS:
            raise FormulaParseError("Unexpected end of expression", position=len(text)) from exc
        pos = getattr(token, "start_pos", None)
        raise FormulaParseError(f"Unexpected token {str(token)!r}", position=pos) from exc
    except LarkError as exc:
        raise FormulaParseError(str(exc)) from exc


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

_IDENT_RE = re.compile(r"[A-Za-z][A-Za-z0-9_]*")
_REF_RE = re.compile(r"^([CV])(\d+)$")

COLUMN_PREFIX = "C"
VARIABLE_PREFIX = "V"


class Reference(NamedTuple):
    """A textual slot reference such as ``C3`` or ``V0``."""

    prefix: str
    slot_id: int

    @property
    def is_column(self) -> bool:
        return self.prefix == COLUMN_PREFIX

    @property
    def is_variable(self) -> bool:
        return self.prefix == VARIABLE_PREFIX

    def __str__(self) -> str:
        return f"{self.prefix}{self.slot_id}"


def parse_reference(token: str) -> Reference | None:
    """Parse ``"C3"`` into ``Reference("C", 3)``; return None for anything else."""
    m = _REF_RE.match(token)
    if m is None:
        return None
    return Reference(m.group(1), int(m.group(2)))


def extract_references(text: str | None) -> set[Reference]:
    """Scan formula text for the distinct slot references it contains.

    This is a lexical scan, not a parse: it works on formulas that would
    fail to parse, so the validation layer can still report on them.
    Identifier runs that are not exactly ``C<digits>`` or ``V<digits>`` are
    operands or function names and are ignored.

    Args:
        text: The formula text.  ``None`` and blank text yield an empty set.

    Returns:
        Set of references.  Duplicates collapse.
    """
    refs: set[Reference] = set()
    if not text:
        return refs
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c.isalpha():
            m = _IDENT_RE.match(text, i)
            end = m.end() if m else i + 1
            ref = parse_reference(text[i:end])
            if ref is not None:
                refs.add(ref)
            i = end
        elif c == "_":
            # "_C1" is an identifier, not a reference.
            while i < n and (text[i].isalnum() or text[i] == "_"):
                i += 1
        elif c.isdigit() or c == ".":
            while i < n and (text[i].isdigit() or text[i] == "."):
                i += 1
        else:
            i += 1
    return refs


def column_references(text: str | None) -> set[int]:
    """Return the ids of all ``C<id>`` references in *text*."""
    return {r.slot_id for r in extract_references(text) if r.is_column}


def variable_references(text: str | None) -> set[int]:
    """Return the ids of all ``V<id>`` references in *text*."""
    return {r.slot_id for r in extract_references(text) if r.is_variable}


class _NameCollector(Visitor):
    """Collects bare ``name_ref`` identifiers from a parse tree."""

    def __init__(self) -> None:
        self.names: set[str] = set()

    def name_ref(self, tree: Tree) -> None:
        token = tree.children[0]
        if isinstance(token, Token):
            self.names.add(str(token))


def extract_unknown_names(tree: Tree) -> set[str]:
    """Extract bare identifiers that are neither references nor functions.

    ``c0``, ``Cx`` or ``speed`` parse as names; they can never be resolved.
    """
    collector = _NameCollector()
    collector.visit(tree)
    return collector.names
