"""Trace sink protocol and the built-in JSONL file sink."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from retour.core.hasher import canonical_json_bytes
from retour.observability.events import TraceEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class TraceSink(Protocol):
    """Protocol that every trace sink must implement.

    Attributes
    ----------
    sink_name : str
        A unique human-readable identifier for this sink instance.
    """

    @property
    def sink_name(self) -> str:
        ...

    def accept(self, event: TraceEvent) -> None:
        """Accept one trace event.  May raise; the dispatcher swallows it."""
        ...


class JsonlTraceSink:
    """Appends trace events as canonical JSON lines to one file.

    Parameters
    ----------
    path:
        Target file.  Parent directories are created on first use.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def sink_name(self) -> str:
        return "jsonl"

    @property
    def path(self) -> Path:
        return self._path

    def accept(self, event: TraceEvent) -> None:
        line = canonical_json_bytes(event.model_dump(mode="json")) + b"\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("ab") as fh:
                fh.write(line)
        logger.debug("JsonlTraceSink: wrote %s to %s", event.event_id, self._path)

    def read_events(self, run_id: str | None = None) -> list[TraceEvent]:
        """Read back all events, optionally filtered by run."""
        if not self._path.exists():
            return []
        events: list[TraceEvent] = []
        for raw in self._path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            event = TraceEvent.model_validate(json.loads(raw))
            if run_id is None or event.run_id == run_id:
                events.append(event)
        return events
