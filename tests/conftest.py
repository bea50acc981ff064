"""Shared fixtures for tabcalc tests."""

from __future__ import annotations

import pytest

from tabcalc.logging import MemorySink, set_sink


@pytest.fixture(autouse=True)
def _no_global_sink():
    """Every test starts and ends with event logging disabled."""
    set_sink(None)
    yield
    set_sink(None)


@pytest.fixture
def memory_sink() -> MemorySink:
    sink = MemorySink()
    set_sink(sink)
    return sink
