"""Tests for the tabcalc structured event logging system."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from tabcalc.logging import (
    EventLevel,
    EventSink,
    EventType,
    MemorySink,
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


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def sink(log_dir: Path) -> EventSink:
    return EventSink(log_dir)


# ---------------------------------------------------------------------------
# A) Event schema
# ---------------------------------------------------------------------------


class TestTabcalcEvent:
    def test_event_defaults(self) -> None:
        evt = TabcalcEvent(level=EventLevel.info, event_type=EventType.pass_started, message="hello")
        assert evt.schema_version == 1
        assert evt.ts.endswith("Z")
        assert evt.level == "info"
        assert evt.event_type == "pass_started"
        assert evt.context == {}
        assert evt.error_code is None

    def test_all_event_types_exist(self) -> None:
        expected = {
            "pass_started",
            "pass_completed",
            "pass_failed",
            "slot_eval_error",
            "result_type_mismatch",
            "property_read_failed",
            "property_write_failed",
            "validation_failed",
            "cycle_detected",
            "graph_rebuilt",
        }
        assert {t.value for t in EventType} == expected

    def test_truncate_context(self) -> None:
        long = "x" * 1000
        out = truncate_context({"formula": long, "nested": {"detail": long}, "n": 3})
        assert out["formula"].endswith("...[truncated]")
        assert len(out["formula"]) < 300
        assert out["nested"]["detail"].endswith("...[truncated]")
        assert out["n"] == 3


# ---------------------------------------------------------------------------
# B) NDJSON sink
# ---------------------------------------------------------------------------


class TestEventSink:
    def test_creates_directories(self, sink: EventSink, log_dir: Path) -> None:
        assert log_dir.is_dir()
        assert (log_dir / "passes").is_dir()

    def test_write_and_read(self, sink: EventSink, log_dir: Path) -> None:
        sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt, message="one"))
        sink.write(TabcalcEvent(level=EventLevel.error, event_type=EventType.slot_eval_error, message="two"))

        lines = (log_dir / "events.ndjson").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["message"] == "one"

        events = sink.read()
        assert [e["message"] for e in events] == ["two", "one"]

    def test_sorted_keys(self, sink: EventSink, log_dir: Path) -> None:
        sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt))
        line = (log_dir / "events.ndjson").read_text().strip()
        keys = list(json.loads(line).keys())
        assert keys == sorted(keys)

    def test_filters(self, sink: EventSink) -> None:
        sink.write(make_slot_event(EventType.slot_eval_error, EventLevel.warning, "a", slot="C1", pass_id="p1"))
        sink.write(make_slot_event(EventType.slot_eval_error, EventLevel.error, "b", slot="C2", pass_id="p2"))
        sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt, message="c"))

        assert [e["message"] for e in sink.read(level="error")] == ["b"]
        assert [e["message"] for e in sink.read(slot="C1")] == ["a"]
        assert [e["message"] for e in sink.read(pass_id="p2")] == ["b"]
        assert [e["message"] for e in sink.read(event_type="graph_rebuilt")] == ["c"]
        assert len(sink.read(limit=2)) == 2

    def test_pass_log(self, sink: EventSink, log_dir: Path) -> None:
        evt = TabcalcEvent(level=EventLevel.info, event_type=EventType.pass_started, context={"pass_id": "pass_1"})
        sink.write(evt, pass_id="pass_1")
        assert (log_dir / "passes" / "pass_1.ndjson").exists()
        assert len(sink.read_pass_log("pass_1")) == 1
        assert sink.read_pass_log("missing") == []

    def test_unsafe_pass_id_not_written(self, sink: EventSink, log_dir: Path) -> None:
        evt = TabcalcEvent(level=EventLevel.info, event_type=EventType.pass_started)
        sink.write(evt, pass_id="../escape")
        assert list((log_dir / "passes").iterdir()) == []
        assert sink.read_pass_log("../escape") == []

    def test_malformed_lines_skipped(self, sink: EventSink, log_dir: Path) -> None:
        sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt, message="ok"))
        with open(log_dir / "events.ndjson", "a") as f:
            f.write("{not json\n\n")
        assert [e["message"] for e in sink.read()] == ["ok"]


class TestTailRead:
    def test_tail_drops_partial_first_line(self, log_dir: Path) -> None:
        sink = EventSink(log_dir, tail_bytes=600)
        for i in range(20):
            sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt, message=f"m{i}"))
        events = sink.read(limit=100)
        assert 0 < len(events) < 20
        assert events[0]["message"] == "m19"


class TestConcurrencySafety:
    def test_parallel_writes_produce_whole_lines(self, sink: EventSink, log_dir: Path) -> None:
        def writer(n: int) -> None:
            for i in range(25):
                sink.write(
                    TabcalcEvent(
                        level=EventLevel.info,
                        event_type=EventType.graph_rebuilt,
                        message=f"t{n}-{i}",
                    )
                )

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = (log_dir / "events.ndjson").read_text().splitlines()
        assert len(lines) == 100
        for line in lines:
            json.loads(line)


class TestFsyncConfig:
    def test_fsync_sink_writes(self, log_dir: Path) -> None:
        sink = EventSink(log_dir, fsync=True)
        sink.write(TabcalcEvent(level=EventLevel.info, event_type=EventType.graph_rebuilt))
        assert len(sink.read()) == 1


# ---------------------------------------------------------------------------
# C) Emit helpers
# ---------------------------------------------------------------------------


class TestEmitHelpers:
    def test_emit_without_sink_is_noop(self) -> None:
        assert get_sink() is None
        emit_info(EventType.graph_rebuilt, "nothing listens")
        assert read_events() == []

    def test_levels(self, memory_sink: MemorySink) -> None:
        emit_info(EventType.graph_rebuilt, "i")
        emit_warning(EventType.cycle_detected, "w", {"slots": ["C1"]}, error_code="cycle")
        emit_error(EventType.graph_rebuilt, "e")
        levels = [e["level"] for e in read_events()]
        assert levels == ["error", "warning", "info"]
        assert read_events(level="warning")[0]["error_code"] == "cycle"

    def test_emit_never_raises(self) -> None:
        class Broken:
            def write(self, event, *, pass_id=None):
                raise OSError("disk full")

        set_sink(Broken())
        emit_info(EventType.graph_rebuilt, "swallowed")
        emit(TabcalcEvent(level=EventLevel.error, event_type=EventType.graph_rebuilt))

    def test_set_sink_returns_previous(self, memory_sink: MemorySink) -> None:
        other = MemorySink()
        assert set_sink(other) is memory_sink
        assert get_sink() is other

    def test_set_log_dir(self, log_dir: Path) -> None:
        set_log_dir(log_dir)
        emit_info(EventType.pass_started, "to disk", {"pass_id": "pass_x"}, pass_id="pass_x")
        assert isinstance(get_sink(), EventSink)
        assert (log_dir / "passes" / "pass_x.ndjson").exists()
        set_log_dir(None)
        assert get_sink() is None

    def test_configure_from(self, log_dir: Path) -> None:
        configure_from({"log_dir": str(log_dir), "logging_fsync": True, "logging_tail_bytes": 4096})
        sink = get_sink()
        assert isinstance(sink, EventSink)
        assert sink.log_dir == log_dir
        configure_from({"log_dir": None})
        assert get_sink() is None


# ---------------------------------------------------------------------------
# D) Attribution invariants
# ---------------------------------------------------------------------------


class TestAttributionInvariants:
    def test_slot_event_carries_attribution(self) -> None:
        evt = make_slot_event(
            EventType.slot_eval_error,
            EventLevel.warning,
            "boom",
            slot="C3",
            row="goblin",
            pass_id="pass_1",
            error_code="formula_eval_error",
            extra={"formula": "C1 / 0"},
        )
        assert evt.context == {"slot": "C3", "row": "goblin", "pass_id": "pass_1", "formula": "C1 / 0"}
        assert evt.error_code == "formula_eval_error"

    def test_missing_slot_downgrades_to_warning(self, memory_sink: MemorySink) -> None:
        emit_error(EventType.slot_eval_error, "no slot given")
        [event] = read_events()
        assert event["level"] == "warning"
        assert event["context"]["_missing_attribution"] == ["slot"]

    def test_missing_pass_id(self, memory_sink: MemorySink) -> None:
        emit_info(EventType.pass_completed, "done")
        [event] = read_events()
        assert event["context"]["_missing_attribution"] == ["pass_id"]

    def test_complete_event_untouched(self, memory_sink: MemorySink) -> None:
        emit_error(EventType.slot_eval_error, "ok", {"slot": "V1"})
        [event] = read_events()
        assert event["level"] == "error"
        assert "_missing_attribution" not in event["context"]


class TestExports:
    def test_public_names(self) -> None:
        import tabcalc.logging as pkg

        for name in pkg.__all__:
            assert hasattr(pkg, name)
