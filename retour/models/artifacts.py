"""Artifact references — immutable pointers to produced outputs.

Raw bytes never cross the core boundary; an Artifact only records where
the output lives and what it is.  ``artifact_id`` is the content address
of kind + storage reference + metadata, so identical writes collapse.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from retour.core.hasher import content_address


class ArtifactKind(str, Enum):
    IMAGE = "image"
    JSON = "json"
    PANORAMA = "panorama"
    TOUR = "tour"


class QualityTier(str, Enum):
    """Output resolution tier."""

    Q1K = "1K"
    Q2K = "2K"
    Q4K = "4K"


# Acceptable long-edge pixel range per tier.
QUALITY_DIMENSION_LIMITS: dict[QualityTier, tuple[int, int]] = {
    QualityTier.Q1K: (800, 1200),
    QualityTier.Q2K: (1800, 2400),
    QualityTier.Q4K: (3600, 4200),
}

# Steps 0-3 always run at 2K regardless of the requested tier.
FORCED_2K_STEPS: frozenset[int] = frozenset({0, 1, 2, 3})


def effective_quality(step_id: int, requested: QualityTier) -> QualityTier:
    """Return the tier a step actually renders at."""
    if step_id in FORCED_2K_STEPS:
        return QualityTier.Q2K
    return requested


class ArtifactMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    sha256: str = ""
    quality_tier: QualityTier | None = None
    mime_type: str = ""

    def within_tier(self) -> bool:
        """Whether the long edge fits the declared quality tier.

        Artifacts without dimensions or tier are not checked.
        """
        if self.quality_tier is None or self.width is None or self.height is None:
            return True
        low, high = QUALITY_DIMENSION_LIMITS[self.quality_tier]
        return low <= max(self.width, self.height) <= high


class Artifact(BaseModel):
    """A reference to a produced output, owned by the job that created it."""

    model_config = ConfigDict(frozen=True)

    artifact_id: str
    kind: ArtifactKind
    storage_ref: str
    metadata: ArtifactMetadata = ArtifactMetadata()
    job_id: str | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def create(
        cls,
        kind: ArtifactKind,
        storage_ref: str,
        *,
        job_id: str | None = None,
        **metadata: Any,
    ) -> Artifact:
        """Build an artifact whose id is derived from its content."""
        meta = ArtifactMetadata(**metadata)
        artifact_id = content_address(
            {
                "kind": kind.value,
                "storage_ref": storage_ref,
                "metadata": meta.model_dump(mode="json"),
            }
        )
        return cls(
            artifact_id=artifact_id,
            kind=kind,
            storage_ref=storage_ref,
            metadata=meta,
            job_id=job_id,
        )
