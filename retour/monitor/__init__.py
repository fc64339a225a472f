"""Run monitor — read-only projection plus Rich rendering."""

from retour.monitor.projection import RunProjection, RunSnapshot, StepState
from retour.monitor.renderer import MonitorRenderer

__all__ = ["MonitorRenderer", "RunProjection", "RunSnapshot", "StepState"]
