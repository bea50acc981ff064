"""Structured event logging for tabcalc.

Provides a unified event schema, filesystem NDJSON and in-memory sinks,
and safe emit helpers that never raise uncaught exceptions.
"""

from tabcalc.logging.events import (
    EventLevel,
    EventType,
    TabcalcEvent,
    configure_from,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    get_sink,
    make_slot_event,
    read_events,
    set_log_dir,
    set_sink,
    truncate_context,
)
from tabcalc.logging.sink import EventSink, MemorySink

__all__ = [
    "EventLevel",
    "EventSink",
    "EventType",
    "MemorySink",
    "TabcalcEvent",
    "configure_from",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "get_sink",
    "make_slot_event",
    "read_events",
    "set_log_dir",
    "set_sink",
    "truncate_context",
]
