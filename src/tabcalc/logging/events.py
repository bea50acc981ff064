"""Event model and the process-wide emit functions.

Events carry a UTC timestamp (``...Z``), a level, a type, a context dict
and an optional machine-readable ``error_code``.  Emitting never raises:
a broken sink costs at most one stderr line per minute.
"""

from __future__ import annotations

import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Pass lifecycle
    pass_started = "pass_started"
    pass_completed = "pass_completed"
    pass_failed = "pass_failed"

    # Per-slot evaluation
    slot_eval_error = "slot_eval_error"
    result_type_mismatch = "result_type_mismatch"
    property_read_failed = "property_read_failed"
    property_write_failed = "property_write_failed"

    # Configuration
    validation_failed = "validation_failed"
    cycle_detected = "cycle_detected"
    graph_rebuilt = "graph_rebuilt"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

FORMULA_EVAL_ERROR = "formula_eval_error"
UPSTREAM_ABSENT = "upstream_absent"
PROPERTY_WRITE_REJECTED = "property_write_rejected"
PROPERTY_READ_ERROR = "property_read_error"
RESULT_TYPE_MISMATCH = "result_type_mismatch"


# ---------------------------------------------------------------------------
# Context truncation
# ---------------------------------------------------------------------------

MAX_CONTEXT_STR = 256


def truncate_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with long string values truncated.

    Formula text and error messages can be arbitrarily long; log lines
    should not be.
    """
    out: dict[str, Any] = {}
    for k, v in context.items():
        if isinstance(v, dict):
            out[k] = truncate_context(v)
        elif isinstance(v, str) and len(v) > MAX_CONTEXT_STR:
            out[k] = v[:MAX_CONTEXT_STR] + "...[truncated]"
        else:
            out[k] = v
    return out


# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------

_SLOT_EVENT_REQUIRED = {"slot"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.pass_started.value: {"pass_id"},
    EventType.pass_completed.value: {"pass_id"},
    EventType.pass_failed.value: {"pass_id"},
    EventType.slot_eval_error.value: _SLOT_EVENT_REQUIRED,
    EventType.result_type_mismatch.value: _SLOT_EVENT_REQUIRED,
    EventType.property_read_failed.value: _SLOT_EVENT_REQUIRED,
    EventType.property_write_failed.value: _SLOT_EVENT_REQUIRED,
    EventType.validation_failed.value: _SLOT_EVENT_REQUIRED,
    EventType.cycle_detected.value: {"slots"},
    EventType.graph_rebuilt.value: set(),
}


def _validate_attribution(event: TabcalcEvent) -> TabcalcEvent:
    """Events lacking their required context keys are demoted to warnings."""
    required = _EVENT_REQUIRED_KEYS.get(event.event_type.value, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return event.model_copy(update={"level": EventLevel.warning, "context": ctx})
    return event


def make_slot_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    slot: str,
    row: str | None = None,
    pass_id: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> TabcalcEvent:
    """Build an event with guaranteed slot attribution context."""
    ctx: dict[str, Any] = {"slot": slot}
    if row is not None:
        ctx["row"] = row
    if pass_id is not None:
        ctx["pass_id"] = pass_id
    if extra:
        ctx.update(extra)
    return TabcalcEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class TabcalcEvent(BaseModel):
    """One line of the event log."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

# Set by ``set_log_dir`` or ``set_sink``; ``emit()`` discards events while None.
_sink: Any = None  # EventSink | MemorySink | None


def set_log_dir(log_dir: Path | str | None, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
    """Configure the module-level NDJSON sink under *log_dir*.

    Passing ``None`` disables logging.
    """
    global _sink
    if log_dir is None:
        _sink = None
        return

    from tabcalc.logging.sink import EventSink

    _sink = EventSink(Path(log_dir), fsync=fsync, tail_bytes=tail_bytes)


def configure_from(config: dict[str, Any]) -> None:
    """Apply the ``log_dir`` / ``logging_*`` keys of a loaded config."""
    tail_bytes = config.get("logging_tail_bytes")
    set_log_dir(
        config.get("log_dir"),
        fsync=bool(config.get("logging_fsync", False)),
        tail_bytes=int(tail_bytes) if tail_bytes is not None else None,
    )


def set_sink(sink: Any) -> Any:
    """Install *sink* (anything with ``write(event, *, pass_id=None)``).

    Returns the previously installed sink so callers can restore it.
    """
    global _sink
    previous = _sink
    _sink = sink
    return previous


def get_sink() -> Any:
    """Currently installed sink (None when logging is off)."""
    return _sink


def read_events(
    *,
    level: str | None = None,
    event_type: str | None = None,
    slot: str | None = None,
    pass_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """Read events from the current sink (most recent first)."""
    sink = _sink
    if sink is None:
        return []
    return sink.read(level=level, event_type=event_type, slot=slot, pass_id=pass_id, limit=limit)


# ---------------------------------------------------------------------------
# Fallback reporting
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Write *msg* to stderr at most once per ``_STDERR_INTERVAL_SECS``."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[tabcalc] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Emitting
# ---------------------------------------------------------------------------


def emit(event: TabcalcEvent, *, pass_id: str | None = None) -> None:
    """Hand *event* to the installed sink (and its pass log when *pass_id* is set).

    Context strings are truncated and attribution is checked first.  Sink
    failures are reported through ``_stderr_warning`` and never propagate.
    """
    try:
        sink = _sink
        if sink is None:
            return
        event = event.model_copy(update={"context": truncate_context(event.context)})
        event = _validate_attribution(event)
        sink.write(event, pass_id=pass_id)
    except Exception:
        _stderr_warning(f"event not written: {traceback.format_exc()}")


def _emit_at(
    level: EventLevel,
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None,
    error_code: str | None,
    pass_id: str | None,
) -> None:
    emit(
        TabcalcEvent(
            level=level,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        pass_id=pass_id,
    )


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    pass_id: str | None = None,
) -> None:
    _emit_at(EventLevel.info, event_type, message, context, None, pass_id)


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    pass_id: str | None = None,
) -> None:
    _emit_at(EventLevel.warning, event_type, message, context, error_code, pass_id)


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    pass_id: str | None = None,
) -> None:
    _emit_at(EventLevel.error, event_type, message, context, error_code, pass_id)
