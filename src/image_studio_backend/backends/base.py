"""
Uniform interface to an external AI image backend.

The engine only talks to backends through BackendClient; the concrete wire
format lives in the subclasses. Every failure is raised as a BackendError
subclass carrying the upstream HTTP status when there is one, so that the
fallback protocol can tell rate limits and authentication failures apart from
ordinary transient errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..catalog import BackendDescriptor


@dataclass(frozen=True)
class BackendConfig:
    """Connection settings for one backend client."""

    name: str
    api_key: str
    api_url: str
    model: str
    timeout: float = 120.0
    connection_test_timeout: float = 15.0


@dataclass
class ProcessOptions:
    """
    Inputs for one image processing call.

    Attributes:
        task_type: optimize, edit or refine
        prompts: One backend request is made per prompt
        context: Session editing context, passed through as metadata
        mask_data: Base64 or data-URL mask, forwarded untouched
        second_image_path: Reference image for dual-image features
    """

    task_type: str
    prompts: Sequence[str]
    context: Dict[str, Any] = field(default_factory=dict)
    mask_data: Optional[str] = None
    second_image_path: Optional[Path] = None


@dataclass
class BackendVariant:
    image_bytes: bytes
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessResult:
    variants: List[BackendVariant]


@dataclass
class GenerateResult:
    image_bytes: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionCheck:
    ok: bool
    error: Optional[str] = None


class BackendClient(ABC):
    """Abstract async client for one backend."""

    def __init__(self, descriptor: BackendDescriptor, config: BackendConfig) -> None:
        self.descriptor = descriptor
        self.config = config

    @property
    def backend_id(self) -> str:
        return self.descriptor.id

    def describe(self) -> BackendDescriptor:
        return self.descriptor

    def public_config(self) -> Dict[str, Any]:
        """Connection settings safe to expose (no credentials)."""
        return {
            "name": self.config.name,
            "api_url": self.config.api_url,
            "model": self.config.model,
            "timeout": self.config.timeout,
        }

    @abstractmethod
    async def process(self, image_path: Path, options: ProcessOptions) -> ProcessResult:
        ...

    @abstractmethod
    async def generate(self, prompt: str, style: Optional[str], size: str) -> GenerateResult:
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionCheck:
        ...
