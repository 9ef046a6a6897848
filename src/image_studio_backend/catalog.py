"""
Static capability catalog of the supported AI image backends.

The catalog is pure data: quality/speed scores, declared capabilities and
cost tier per backend, plus the capability and quality requirements of each
task type. Iteration order is significant; it breaks ties during ranking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Sequence, Tuple

from .errors import RequestValidationError


class CostTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class BackendDescriptor:
    """Immutable metadata describing one backend."""

    id: str
    display_name: str
    quality: int
    speed: int
    capabilities: FrozenSet[str]
    cost: CostTier
    tier: str
    specializations: Tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    def supports(self, required: Iterable[str]) -> bool:
        return all(capability in self.capabilities for capability in required)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "quality": self.quality,
            "speed": self.speed,
            "capabilities": sorted(self.capabilities),
            "cost": self.cost.value,
            "tier": self.tier,
            "specializations": list(self.specializations),
            "description": self.description,
        }


@dataclass(frozen=True)
class TaskRequirement:
    required_capabilities: FrozenSet[str]
    preferred_quality: int
    description: str


DEFAULT_DESCRIPTORS: Tuple[BackendDescriptor, ...] = (
    BackendDescriptor(
        id="gemini",
        display_name="Gemini 2.5 Flash Image",
        quality=10,
        speed=7,
        capabilities=frozenset({"optimize", "edit", "refine", "background_replace"}),
        cost=CostTier.HIGH,
        tier="premium",
        specializations=("professional_photography", "product_optimization", "color_correction"),
        description="Premium quality product photography and precise edits",
    ),
    BackendDescriptor(
        id="sora",
        display_name="Sora Image",
        quality=8,
        speed=8,
        capabilities=frozenset({"optimize", "edit", "refine", "artistic_style"}),
        cost=CostTier.MEDIUM,
        tier="creative",
        specializations=("creative_effects", "artistic_transformation", "style_transfer"),
        description="Creative and artistic transformations",
    ),
    BackendDescriptor(
        id="chatgpt",
        display_name="ChatGPT Vision",
        quality=7,
        speed=9,
        capabilities=frozenset({"optimize", "edit", "refine"}),
        cost=CostTier.LOW,
        tier="standard",
        specializations=("general_editing", "basic_enhancement", "quick_fixes"),
        description="Fast general-purpose editing",
    ),
)

TASK_REQUIREMENTS: Dict[str, TaskRequirement] = {
    "optimize": TaskRequirement(frozenset({"optimize"}), 9, "Professional product image optimization"),
    "edit": TaskRequirement(frozenset({"edit"}), 8, "Advanced image editing and enhancement"),
    "refine": TaskRequirement(frozenset({"refine"}), 7, "Fine-tuning and detail refinement"),
}


class ModelCapabilityCatalog:
    """Lookup table of backend descriptors and task requirements."""

    def __init__(
        self,
        descriptors: Sequence[BackendDescriptor] = DEFAULT_DESCRIPTORS,
        requirements: Dict[str, TaskRequirement] | None = None,
    ) -> None:
        self._descriptors: Dict[str, BackendDescriptor] = {d.id: d for d in descriptors}
        self._requirements = dict(requirements or TASK_REQUIREMENTS)

    def capabilities_of(self, backend_id: str) -> BackendDescriptor:
        try:
            return self._descriptors[backend_id]
        except KeyError:
            raise KeyError(f"Unknown backend: {backend_id}") from None

    def all_backends(self) -> Tuple[BackendDescriptor, ...]:
        return tuple(self._descriptors.values())

    def backend_ids(self) -> List[str]:
        return list(self._descriptors)

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._descriptors

    def requirement_for(self, task_type: str) -> TaskRequirement:
        try:
            return self._requirements[task_type]
        except KeyError:
            valid = ", ".join(self._requirements)
            raise RequestValidationError(f"Invalid task type: {task_type}. Must be one of: {valid}") from None

    def task_types(self) -> List[str]:
        return list(self._requirements)

    def priority_order(self) -> List[str]:
        """Static fallback order, highest quality first (stable for equal quality)."""
        return [d.id for d in sorted(self._descriptors.values(), key=lambda d: -d.quality)]
