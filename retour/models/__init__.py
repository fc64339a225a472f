"""retour data models — all Pydantic v2, all frozen (immutable)."""

from retour.models.analysis import SpaceAnalysis, SpaceCategory, SpaceInfo
from retour.models.artifacts import Artifact, ArtifactKind, ArtifactMetadata, QualityTier
from retour.models.jobs import (
    AlreadyRunning,
    AttemptRecord,
    ContentionReason,
    HumanDecision,
    Job,
    JobService,
    JobStatus,
    LockToken,
)
from retour.models.phases import (
    LEGAL_PHASE_TRANSITIONS,
    PHASE_STEP,
    TRANSITION_TABLE,
    Phase,
    PhaseTransition,
    PhaseTrigger,
)
from retour.models.policy import (
    ContextConditions,
    PolicyContext,
    PolicyRule,
    PromotionLogEntry,
    PromotionType,
    RuleScope,
    RuleStatus,
    StrengthStage,
)
from retour.models.runs import Run
from retour.models.verdicts import (
    ComparisonVerdict,
    Expectations,
    Failure,
    FailureType,
    Fix,
    FixTarget,
    NextStep,
    Severity,
)

__all__ = [
    # phases
    "LEGAL_PHASE_TRANSITIONS",
    "PHASE_STEP",
    "Phase",
    "PhaseTransition",
    "PhaseTrigger",
    "TRANSITION_TABLE",
    # runs
    "Run",
    # jobs
    "AlreadyRunning",
    "AttemptRecord",
    "ContentionReason",
    "HumanDecision",
    "Job",
    "JobService",
    "JobStatus",
    "LockToken",
    # artifacts
    "Artifact",
    "ArtifactKind",
    "ArtifactMetadata",
    "QualityTier",
    # analysis
    "SpaceAnalysis",
    "SpaceCategory",
    "SpaceInfo",
    # verdicts
    "ComparisonVerdict",
    "Expectations",
    "Failure",
    "FailureType",
    "Fix",
    "FixTarget",
    "NextStep",
    "Severity",
    # policy
    "ContextConditions",
    "PolicyContext",
    "PolicyRule",
    "PromotionLogEntry",
    "PromotionType",
    "RuleScope",
    "RuleStatus",
    "StrengthStage",
]
