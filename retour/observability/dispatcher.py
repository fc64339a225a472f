"""TraceDispatcher — fans trace events out to every registered sink.

Tracing is optional.  A failing sink is logged and skipped; no sink
failure, and no absence of sinks, ever propagates into the pipeline.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from retour.observability.events import TraceEvent

if TYPE_CHECKING:
    from retour.observability.sinks import TraceSink

logger = logging.getLogger(__name__)


class TraceDispatcher:
    """Routes trace events to all configured sinks.

    Usage
    -----
    >>> dispatcher = TraceDispatcher()
    >>> dispatcher.register_sink(JsonlTraceSink(".retour/traces.jsonl"))
    >>> dispatcher.emit(event)
    """

    def __init__(self, sinks: list[TraceSink] | None = None) -> None:
        self._sinks: list[TraceSink] = []
        for sink in sinks or []:
            self.register_sink(sink)

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def register_sink(self, sink: TraceSink) -> None:
        """Register a sink.  Duplicate registration is ignored."""
        if sink not in self._sinks:
            self._sinks.append(sink)
            logger.info("Registered trace sink: %s", sink.sink_name)

    def unregister_sink(self, sink: TraceSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)
            logger.info("Unregistered trace sink: %s", sink.sink_name)

    @property
    def registered_sinks(self) -> list[TraceSink]:
        return list(self._sinks)

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    def emit(self, event: TraceEvent) -> list[str]:
        """Deliver an event to every sink.

        Returns the names of sinks that accepted it.  Never raises.
        """
        succeeded: list[str] = []
        for sink in self._sinks:
            try:
                sink.accept(event)
                succeeded.append(sink.sink_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Trace sink %s failed for event %s (%s): %s",
                    getattr(sink, "sink_name", repr(sink)),
                    event.name,
                    event.run_id,
                    exc,
                )
        return succeeded
