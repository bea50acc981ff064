"""Error types for formula parsing and evaluation."""

from __future__ import annotations


class FormulaError(Exception):
    """Base class for all formula-related errors.

    Any evaluator fault that is not a more specific subclass is reported to
    the user as a formula system error.
    """


class FormulaParseError(FormulaError):
    """Syntax error in a formula expression.

    Attributes:
        position: Character position where the error was detected.
        message: Human-readable description.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        self.message = message
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class FormulaRefError(FormulaError):
    """Reference to a slot that has no value provider.

    Attributes:
        ref_name: The unresolved reference, e.g. ``"C4"``.
        available: References that are currently bound.
    """

    def __init__(self, ref_name: str, available: list[str] | None = None) -> None:
        self.ref_name = ref_name
        self.available = available or []
        msg = f"Unknown reference: {ref_name!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class FormulaValueError(FormulaError):
    """A referenced slot is bound but has no value in the current pass.

    Raised when an upstream slot failed to evaluate, so the failure
    propagates to dependents instead of being read as zero.
    """

    def __init__(self, ref_name: str) -> None:
        self.ref_name = ref_name
        super().__init__(f"Reference {ref_name!r} has no value")


class FormulaFunctionError(FormulaError):
    """Unknown function or wrong number of arguments.

    Attributes:
        func_name: The function that caused the error.
    """

    def __init__(self, func_name: str, message: str | None = None) -> None:
        self.func_name = func_name
        msg = message or f"Unknown function: {func_name!r}"
        super().__init__(msg)


class FormulaTypeError(FormulaError):
    """An operator was applied to operands of incompatible kinds.

    Attributes:
        operator: The operator symbol, e.g. ``"+"``.
        kinds: Names of the operand kinds involved.
    """

    def __init__(self, operator: str, kinds: list[str]) -> None:
        self.operator = operator
        self.kinds = kinds
        super().__init__(
            f"Operator {operator!r} cannot be applied to {' and '.join(kinds)}"
        )


# Exceptions a per-slot evaluation converts into an absent value.
ENGINE_ERRORS: tuple[type[Exception], ...] = (
    FormulaError,
    ZeroDivisionError,
    OverflowError,
    ValueError,
    TypeError,
    RecursionError,
)
