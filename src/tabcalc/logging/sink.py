"""Event sinks: an NDJSON file log and an in-memory list.

``EventSink`` lays out a log directory as::

    <log_dir>/events.ndjson            every event
    <log_dir>/passes/<pass_id>.ndjson  events of one evaluation pass

One event per line, keys sorted.  Appends hold an exclusive ``flock`` and
reads a shared one, each for a single syscall, so several processes may
share a log directory.  Reads only look at the last ``tail_bytes`` of a
file.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from tabcalc.logging.events import TabcalcEvent

# Pass ids become file names
_PASS_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

TAIL_BYTES = 2 * 1024 * 1024
READ_LIMIT_CAP = 2000


def _matches(
    record: dict[str, Any],
    level: str | None,
    event_type: str | None,
    slot: str | None,
    pass_id: str | None,
) -> bool:
    context = record.get("context") or {}
    return (
        (not level or record.get("level") == level)
        and (not event_type or record.get("event_type") == event_type)
        and (not slot or context.get("slot") == slot)
        and (not pass_id or context.get("pass_id") == pass_id)
    )


def select_events(
    records: list[dict[str, Any]],
    *,
    level: str | None = None,
    event_type: str | None = None,
    slot: str | None = None,
    pass_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """Filter *records* (oldest first) and return the newest *limit* matches, newest first."""
    cap = min(limit, READ_LIMIT_CAP)
    selected: list[dict[str, Any]] = []
    for record in reversed(records):
        if len(selected) >= cap:
            break
        if _matches(record, level, event_type, slot, pass_id):
            selected.append(record)
    return selected


@contextmanager
def _locked(path: Path, flags: int, lock: int) -> Iterator[int]:
    fd = os.open(str(path), flags)
    try:
        fcntl.flock(fd, lock)
        yield fd
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def _parse_lines(text: str) -> Iterator[dict[str, Any]]:
    """Decode NDJSON *text*, skipping blank and corrupt lines."""
    for raw in text.splitlines():
        raw = raw.strip()
        if not raw:
            continue
        try:
            yield json.loads(raw)
        except json.JSONDecodeError:
            continue


class EventSink:
    """File-backed sink; safe for concurrent appends."""

    def __init__(self, log_dir: Path, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
        self.log_dir = Path(log_dir)
        self.fsync = fsync
        self.tail_bytes = TAIL_BYTES if tail_bytes is None else tail_bytes
        self.passes_dir.mkdir(parents=True, exist_ok=True)

    @property
    def events_path(self) -> Path:
        return self.log_dir / "events.ndjson"

    @property
    def passes_dir(self) -> Path:
        return self.log_dir / "passes"

    def _pass_path(self, pass_id: str) -> Path | None:
        if not _PASS_ID_RE.match(pass_id):
            return None
        return self.passes_dir / f"{pass_id}.ndjson"

    def write(self, event: TabcalcEvent, *, pass_id: str | None = None) -> None:
        """Append *event* to ``events.ndjson`` and, for a valid *pass_id*, its pass log."""
        payload = (json.dumps(event.model_dump(mode="json"), sort_keys=True, default=str) + "\n").encode("utf-8")
        targets = [self.events_path]
        if pass_id:
            pass_path = self._pass_path(pass_id)
            if pass_path is not None:
                targets.append(pass_path)
        for path in targets:
            self._append(path, payload)

    def read(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        slot: str | None = None,
        pass_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Query the global log; newest events first."""
        return select_events(
            self._load(self.events_path),
            level=level,
            event_type=event_type,
            slot=slot,
            pass_id=pass_id,
            limit=limit,
        )

    def read_pass_log(self, pass_id: str) -> list[dict[str, Any]]:
        """Events of one pass in write order; empty for unknown or unsafe ids."""
        path = self._pass_path(pass_id)
        if path is None:
            return []
        return self._load(path)

    def _append(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _locked(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, fcntl.LOCK_EX) as fd:
            os.write(fd, payload)
            if self.fsync:
                os.fsync(fd)

    def _load(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        return list(_parse_lines(self._tail(path)))

    def _tail(self, path: Path) -> str:
        with _locked(path, os.O_RDONLY, fcntl.LOCK_SH) as fd:
            size = os.fstat(fd).st_size
            start = max(0, size - self.tail_bytes)
            os.lseek(fd, start, os.SEEK_SET)
            chunk = os.read(fd, size - start)
        if start > 0:
            # first line is cut off
            _, _, chunk = chunk.partition(b"\n")
        return chunk.decode("utf-8", errors="replace")


class MemorySink:
    """In-process sink with the same read interface as ``EventSink``."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.passes: dict[str, list[dict[str, Any]]] = {}

    def write(self, event: TabcalcEvent, *, pass_id: str | None = None) -> None:
        record = event.model_dump(mode="json")
        self.events.append(record)
        if pass_id:
            self.passes.setdefault(pass_id, []).append(record)

    def read(self, **filters: Any) -> list[dict[str, Any]]:
        return select_events(self.events, **filters)

    def read_pass_log(self, pass_id: str) -> list[dict[str, Any]]:
        return list(self.passes.get(pass_id, []))

    def clear(self) -> None:
        self.events.clear()
        self.passes.clear()
