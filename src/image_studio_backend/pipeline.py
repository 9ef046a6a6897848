"""
Processing pipeline: turns a job's processing plan into persisted variants.

A plan carries exactly one processing mode, chosen once when the request is
accepted:

- SingleStep: one or more prompts against the input image
- TwoStep: step 1 output is stored as a temporary image and fed to step 2;
  only step 2's output becomes variants
- DualImage: a second reference image travels with the input image
- Masked: mask data travels with the input image, untouched
- TextToImage: no input image, one generated image

The pipeline never writes job status. It returns a PipelineResult and leaves
the terminal transition to JobLifecycleManager.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .backends import BackendClient, BackendVariant, ProcessOptions
from .database import JobDatabase
from .errors import PersistenceError, RequestValidationError
from .fallback import FallbackExecutor, FallbackOutcome
from .features import Feature
from .storage import LocalImageStore
from .utils import score_variant, utcnow

logger = logging.getLogger(__name__)

NO_VARIANTS_MESSAGE = "No variants produced"


@dataclass(frozen=True)
class SingleStep:
    prompts: Tuple[str, ...]


@dataclass(frozen=True)
class TwoStep:
    step1_prompt: str
    step2_prompt: str
    second_image_path: Optional[Path] = None


@dataclass(frozen=True)
class DualImage:
    prompts: Tuple[str, ...]
    second_image_path: Path


@dataclass(frozen=True)
class Masked:
    prompts: Tuple[str, ...]
    mask_data: str


@dataclass(frozen=True)
class TextToImage:
    prompt: str
    style: str
    size: str
    style_description: Optional[str] = None


ProcessingMode = Union[SingleStep, TwoStep, DualImage, Masked, TextToImage]


def select_mode(
    feature: Feature,
    prompt: str,
    second_image_path: Optional[Path] = None,
    mask_data: Optional[str] = None,
) -> ProcessingMode:
    """
    Choose the processing mode for a feature request.

    Raises:
        RequestValidationError: If the feature needs a second image or a mask
            that the request does not supply
    """
    options = feature.processing_options
    if options.dual_image and second_image_path is None:
        raise RequestValidationError(f"Feature {feature.code} requires a second image")
    if options.mask_required and not mask_data:
        raise RequestValidationError(f"Feature {feature.code} requires mask data")

    if options.two_step:
        if not options.step2_prompt:
            raise RequestValidationError(f"Feature {feature.code} is two-step but has no step 2 prompt")
        return TwoStep(prompt, options.step2_prompt, second_image_path if options.dual_image else None)
    if options.dual_image:
        return DualImage((prompt,), second_image_path)  # type: ignore[arg-type]
    if mask_data:
        if options.mask_supported:
            return Masked((prompt,), mask_data)
        logger.warning(f"Feature {feature.code} does not support masks, ignoring mask data")
    return SingleStep((prompt,))


@dataclass
class ProcessingPlan:
    """
    What to run for one job.

    Attributes:
        task_type: Task used for backend ranking (optimize, edit or refine)
        mode: The processing mode
        image_path: Input image (None for text-to-image)
        user_preference: Backend to try first
        context: Session editing context
        has_user_prompt: Whether the user supplied their own text
    """

    task_type: str
    mode: ProcessingMode
    image_path: Optional[Path] = None
    user_preference: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    has_user_prompt: bool = False
    session_id: Optional[str] = None

    @property
    def contextual(self) -> bool:
        return bool(self.context.get("previous_edits"))

    def process_options(
        self,
        prompts: Sequence[str],
        second_image_path: Optional[Path] = None,
        mask_data: Optional[str] = None,
    ) -> ProcessOptions:
        context = {**self.context, "user_prompt": self.has_user_prompt}
        return ProcessOptions(
            task_type=self.task_type,
            prompts=list(prompts),
            context=context,
            mask_data=mask_data,
            second_image_path=second_image_path,
        )


@dataclass
class PipelineResult:
    success: bool
    variant_ids: List[str] = field(default_factory=list)
    backend_used: Optional[str] = None
    chain: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ProcessingPipeline:
    def __init__(
        self,
        executor: FallbackExecutor,
        image_store: LocalImageStore,
        database: JobDatabase,
        clock: Callable = utcnow,
    ) -> None:
        self.executor = executor
        self.image_store = image_store
        self.database = database
        self._clock = clock

    async def run(self, job_id: str, plan: ProcessingPlan) -> PipelineResult:
        mode = plan.mode
        logger.info(f"Job {job_id}: running {type(mode).__name__} {plan.task_type}")

        if isinstance(mode, TwoStep):
            return await self._run_two_step(job_id, plan, mode)

        if isinstance(mode, TextToImage):
            outcome = await self._generate(plan, mode)
            variants = [BackendVariant(outcome.result.image_bytes, 1.0, outcome.result.metadata)] if outcome.success else []
        else:
            if isinstance(mode, DualImage):
                options = plan.process_options(mode.prompts, second_image_path=mode.second_image_path)
            elif isinstance(mode, Masked):
                options = plan.process_options(mode.prompts, mask_data=mode.mask_data)
            else:
                options = plan.process_options(mode.prompts)
            outcome = await self._process(plan, plan.image_path, options)
            variants = outcome.result.variants if outcome.success else []

        if not outcome.success:
            return PipelineResult(False, chain=list(outcome.chain), error=outcome.error)
        return self._persist_variants(job_id, plan, variants, outcome.backend_used, list(outcome.chain), step=1)

    async def _process(self, plan: ProcessingPlan, image_path: Optional[Path], options: ProcessOptions) -> FallbackOutcome:
        if image_path is None:
            raise RequestValidationError("An input image is required")

        async def unit_of_work(client: BackendClient):
            return await client.process(image_path, options)

        return await self.executor.execute(plan.task_type, unit_of_work, plan.user_preference)

    async def _generate(self, plan: ProcessingPlan, mode: TextToImage) -> FallbackOutcome:
        async def unit_of_work(client: BackendClient):
            return await client.generate(mode.prompt, mode.style_description or mode.style, mode.size)

        return await self.executor.execute(plan.task_type, unit_of_work, plan.user_preference)

    async def _run_two_step(self, job_id: str, plan: ProcessingPlan, mode: TwoStep) -> PipelineResult:
        first = await self._process(plan, plan.image_path, plan.process_options([mode.step1_prompt]))
        if not first.success:
            return PipelineResult(False, chain=list(first.chain), error=f"Step 1 failed: {first.error}")

        try:
            intermediate = self.image_store.save_temp(first.result.variants[0].image_bytes)
        except PersistenceError as exc:
            return PipelineResult(False, backend_used=first.backend_used, chain=list(first.chain), error=f"Step 1 failed: {exc.detail}")

        # Step 2 starts with the backend that handled step 1.
        step2_plan = ProcessingPlan(
            task_type=plan.task_type,
            mode=mode,
            image_path=intermediate,
            user_preference=first.backend_used,
            context=plan.context,
            has_user_prompt=plan.has_user_prompt,
            session_id=plan.session_id,
        )
        try:
            second = await self._process(
                step2_plan,
                intermediate,
                step2_plan.process_options([mode.step2_prompt], second_image_path=mode.second_image_path),
            )
        finally:
            self.image_store.discard(intermediate)

        chain = list(first.chain) + list(second.chain)
        if not second.success:
            return PipelineResult(False, backend_used=first.backend_used, chain=chain, error=f"Step 2 failed: {second.error}")
        return self._persist_variants(job_id, plan, second.result.variants, second.backend_used, chain, step=2)

    def _persist_variants(
        self,
        job_id: str,
        plan: ProcessingPlan,
        variants: Sequence[BackendVariant],
        backend_used: Optional[str],
        chain: List[str],
        step: int,
    ) -> PipelineResult:
        variant_ids: List[str] = []
        for index, variant in enumerate(variants):
            try:
                variant_ids.append(self._persist_variant(job_id, plan, index, variant, backend_used, step))
            except (PersistenceError, sqlite3.Error, OSError) as exc:
                logger.warning(f"Job {job_id}: skipping variant {index + 1}: {exc}")

        if not variant_ids:
            return PipelineResult(False, backend_used=backend_used, chain=chain, error=NO_VARIANTS_MESSAGE)

        logger.info(f"Job {job_id}: stored {len(variant_ids)}/{len(variants)} variant(s) from {backend_used}")
        return PipelineResult(True, variant_ids=variant_ids, backend_used=backend_used, chain=chain)

    def _persist_variant(
        self,
        job_id: str,
        plan: ProcessingPlan,
        index: int,
        variant: BackendVariant,
        backend_used: Optional[str],
        step: int,
    ) -> str:
        now = self._clock()
        stored = self.image_store.save_result(variant.image_bytes, job_id, index)
        image = self.database.insert_image({
            "id": uuid4().hex,
            "session_id": plan.session_id,
            "kind": "result",
            "filename": stored.filename,
            "path": stored.path,
            "thumbnail_path": stored.thumbnail_path,
            "width": stored.width,
            "height": stored.height,
            "mime_type": stored.mime_type,
            "s3_key": stored.s3_key,
            "created_at": now,
        })
        metadata = {
            **variant.metadata,
            "backend_used": backend_used,
            "step": step,
            "backend_score": variant.score,
        }
        row = self.database.insert_variant(
            uuid4().hex,
            job_id,
            image["id"],
            score_variant(index, plan.has_user_prompt, plan.contextual),
            metadata,
            now,
        )
        return row["id"]
