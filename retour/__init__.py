"""retour: phase-gated pipeline orchestration and validation core.

Drives each run of a real-estate visualization pipeline through a fixed
sequence of phases:
  - Phase state machine with optimistic, idempotent transitions
  - Job ledger with idempotency keys, TTL locks and reclaim
  - Three-stage validation: schema, deterministic rules, semantic judge
  - Progressive learning of policy rules across runs, owners and globally
  - Retry orchestration with corrective instructions and human escalation
"""

__version__ = "0.1.0"
__description__ = "Phase-gated pipeline orchestration and validation core"

from retour.core.orchestrator import Orchestrator
from retour.monitor.projection import RunProjection

__all__ = ["Orchestrator", "RunProjection", "__version__"]
