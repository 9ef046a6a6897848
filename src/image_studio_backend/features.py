"""
Scenario/feature catalog.

A feature is a named transformation (e.g. "Color palette swap") with a prompt
template and processing options that decide which processing mode a request
runs in: single step, two step, dual image or masked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from omegaconf import OmegaConf

from .configuration import FEATURES_PATH
from .errors import FeatureNotFoundError, RequestValidationError

USER_INPUT_REQUIRED = "USER_INPUT_REQUIRED"


@dataclass(frozen=True)
class ProcessingOptions:
    dual_image: bool = False
    mask_required: bool = False
    mask_supported: bool = False
    two_step: bool = False
    step2_prompt: Optional[str] = None
    custom_prompt: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ProcessingOptions":
        data = data or {}
        return cls(
            dual_image=bool(data.get("dual_image", False)),
            mask_required=bool(data.get("mask_required", False)),
            mask_supported=bool(data.get("mask_supported", False)) or bool(data.get("mask_required", False)),
            two_step=bool(data.get("two_step", False)),
            step2_prompt=data.get("step2_prompt") or None,
            custom_prompt=bool(data.get("custom_prompt", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dual_image": self.dual_image,
            "mask_required": self.mask_required,
            "mask_supported": self.mask_supported,
            "two_step": self.two_step,
            "step2_prompt": self.step2_prompt,
            "custom_prompt": self.custom_prompt,
        }


@dataclass(frozen=True)
class Feature:
    code: str
    name: str
    scenario: str
    prompt_template: str
    processing_options: ProcessingOptions = field(default_factory=ProcessingOptions)
    preferred_backends: Tuple[str, ...] = ()
    description: str = ""

    def build_prompt(self, custom_prompt: Optional[str] = None) -> str:
        """
        Build the step-one prompt for this feature.

        Custom-prompt features use the user's text verbatim and require it;
        other features append the user's text as additional instructions.
        """
        text = (custom_prompt or "").strip()
        if self.processing_options.custom_prompt or self.prompt_template == USER_INPUT_REQUIRED:
            if not text:
                raise RequestValidationError(f"Feature {self.code} requires a custom prompt")
            return text
        if text:
            return f"{self.prompt_template} Additional instructions: {text}"
        return self.prompt_template


@dataclass(frozen=True)
class Scenario:
    code: str
    name: str
    description: str
    sort_order: int
    features: Tuple[Feature, ...] = ()


class FeatureCatalog:
    """Features keyed by code, loaded from a YAML catalog."""

    def __init__(self, features: List[Feature], scenarios: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._features: Dict[str, Feature] = {feature.code: feature for feature in features}
        self._scenarios = scenarios or {}

    @classmethod
    def load(cls, path: Path = FEATURES_PATH) -> "FeatureCatalog":
        raw = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
        features = [
            Feature(
                code=code,
                name=entry.get("name", code),
                scenario=entry.get("scenario", ""),
                prompt_template=entry.get("prompt_template", ""),
                processing_options=ProcessingOptions.from_mapping(entry.get("processing_options")),
                preferred_backends=tuple(entry.get("preferred_backends") or ()),
                description=entry.get("description", ""),
            )
            for code, entry in (raw.get("features") or {}).items()  # type: ignore[union-attr]
        ]
        return cls(features, raw.get("scenarios") or {})  # type: ignore[union-attr, arg-type]

    def get(self, code: str) -> Feature:
        try:
            return self._features[code]
        except KeyError:
            raise FeatureNotFoundError(code) from None

    def list(self, scenario: Optional[str] = None) -> List[Feature]:
        return [f for f in self._features.values() if scenario is None or f.scenario == scenario]

    def scenarios(self) -> List[Scenario]:
        result = [
            Scenario(
                code=code,
                name=entry.get("name", code),
                description=entry.get("description", ""),
                sort_order=int(entry.get("sort_order", 0)),
                features=tuple(self.list(code)),
            )
            for code, entry in self._scenarios.items()
        ]
        return sorted(result, key=lambda s: s.sort_order)
