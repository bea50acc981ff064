"""tabcalc: dependency-aware formula engine for spreadsheet-like slot sheets."""

__version__ = "0.4.0"
__core_api_version__ = 1
