"""Space-analysis document schema — the structural contract of stage 1.

The analysis document accompanies every floor-plan artifact and is the
only input the deterministic rule battery reads.  Extra keys are
forbidden at every level, and embedded image payloads are rejected so
that only references ever cross the boundary.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictInt

_BASE64_PREFIX = re.compile(r"^[A-Za-z0-9+/=]+$")


def _looks_like_image_data(value: str) -> bool:
    if value.startswith("data:image"):
        return True
    return len(value) > 1000 and bool(_BASE64_PREFIX.match(value[:100]))


def _no_image_data(value: str) -> str:
    if _looks_like_image_data(value):
        raise ValueError("embedded image data is not allowed; pass a reference")
    return value


SafeStr = Annotated[str, AfterValidator(_no_image_data)]


def find_embedded_images(obj: Any, path: str = "$") -> list[str]:
    """Return JSON paths of every string that looks like inline image data."""
    found: list[str] = []
    if isinstance(obj, str):
        if _looks_like_image_data(obj):
            found.append(path)
    elif isinstance(obj, dict):
        for key, value in obj.items():
            found.extend(find_embedded_images(value, f"{path}.{key}"))
    elif isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            found.extend(find_embedded_images(item, f"{path}[{idx}]"))
    return found


class SpaceCategory(str, Enum):
    BATHROOM = "bathroom"
    BEDROOM = "bedroom"
    KITCHEN = "kitchen"
    LIVING_ROOM = "living_room"
    DINING_ROOM = "dining_room"
    CORRIDOR = "corridor"
    BALCONY = "balcony"
    TERRACE = "terrace"
    LAUNDRY = "laundry"
    STORAGE = "storage"
    OFFICE = "office"
    ENTRANCE = "entrance"
    OTHER = "other"


# Categories expected in any residential plan.
CRITICAL_CATEGORIES: frozenset[SpaceCategory] = frozenset(
    {SpaceCategory.BATHROOM, SpaceCategory.BEDROOM, SpaceCategory.KITCHEN}
)

# Categories that should always show some furniture.
HABITABLE_CATEGORIES: frozenset[SpaceCategory] = frozenset(
    {
        SpaceCategory.BEDROOM,
        SpaceCategory.LIVING_ROOM,
        SpaceCategory.DINING_ROOM,
        SpaceCategory.KITCHEN,
        SpaceCategory.OFFICE,
    }
)


class _Strict(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DetectedFurnishing(_Strict):
    item_type: SafeStr = Field(min_length=1)
    count: StrictInt = Field(ge=1)
    confidence: float = Field(ge=0.0, le=1.0)


class SpaceInfo(_Strict):
    space_id: str = Field(pattern=r"^space_[a-z0-9_]+$")
    label: SafeStr = Field(min_length=1, max_length=100)
    category: SpaceCategory
    confidence: float = Field(ge=0.0, le=1.0)
    detected_furnishings: list[DetectedFurnishing]
    geometry_notes: SafeStr = Field(max_length=500)
    ambiguity_flags: list[Annotated[SafeStr, Field(max_length=200)]]


class SpaceAnalysis(_Strict):
    """Output of the space-analysis worker for one floor plan."""

    run_id: str = Field(min_length=1)
    step_id: str = Field(min_length=1)
    spaces: list[SpaceInfo]
    global_notes: SafeStr = Field(max_length=2000)
    processing_time_ms: StrictInt = Field(ge=0)
    model_used: str = Field(min_length=1)

    def categories(self) -> set[SpaceCategory]:
        return {s.category for s in self.spaces}
