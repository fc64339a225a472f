"""Optional structured tracing of collaborator calls and state changes."""

from retour.observability.dispatcher import TraceDispatcher
from retour.observability.events import (
    QA_EVALUATABLE_STEPS,
    TraceEvent,
    TraceKind,
    step_supports_qa,
    trace_name,
)
from retour.observability.sinks import JsonlTraceSink, TraceSink

__all__ = [
    "JsonlTraceSink",
    "QA_EVALUATABLE_STEPS",
    "TraceDispatcher",
    "TraceEvent",
    "TraceKind",
    "TraceSink",
    "step_supports_qa",
    "trace_name",
]
