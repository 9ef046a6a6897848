"""
Application service wiring HTTP requests to the orchestration core.

ImageStudioService validates requests, builds a ProcessingPlan, registers the
job (honouring idempotency keys) and launches processing. Everything that can
be rejected is rejected here, before a job row exists.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import httpx
from omegaconf import DictConfig, OmegaConf

from .catalog import ModelCapabilityCatalog
from .config_store import ApiConfigStore
from .configuration import (
    BackendSettings,
    ChainedConfigurationProvider,
    ConfigurationCache,
    EnvironmentConfigurationProvider,
    make_runtime_config,
)
from .database import JobDatabase
from .errors import PersistenceError, RequestValidationError, ResourceNotFoundError
from .fallback import FallbackExecutor
from .features import FeatureCatalog
from .job_manager import JobLifecycleManager, JobRecord, JobRequest
from .models import (
    ApiConfigCreate,
    BackendOut,
    ConnectionTestOut,
    EditRequest,
    FeatureEditRequest,
    FeatureOut,
    GenerateRequest,
    JobAccepted,
    JobDetail,
    JobSummary,
    JobType,
    Recommendation,
    RefineRequest,
    ScenarioOut,
    SelectionOut,
    VariantOut,
)
from .pipeline import ProcessingPipeline, ProcessingPlan, SingleStep, TextToImage, select_mode
from .prompts import PromptBuilder, PromptContext
from .registry import BackendRegistry, ClientFactory
from .selector import ModelSelector
from .storage import LocalImageStore, read_dimensions
from .utils import utcnow

logger = logging.getLogger(__name__)

GENERATION_RANKING_TASK = "optimize"
FEATURE_RANKING_TASK = "edit"


class ImageStudioService:
    def __init__(
        self,
        settings: DictConfig,
        database: JobDatabase,
        config_store: ApiConfigStore,
        registry: BackendRegistry,
        selector: ModelSelector,
        jobs: JobLifecycleManager,
        pipeline: ProcessingPipeline,
        image_store: LocalImageStore,
        features: FeatureCatalog,
        prompts: Optional[PromptBuilder] = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.config_store = config_store
        self.registry = registry
        self.catalog = registry.catalog
        self.selector = selector
        self.jobs = jobs
        self.pipeline = pipeline
        self.image_store = image_store
        self.features = features
        self.prompts = prompts or PromptBuilder()

    # Sessions and images

    def create_session(self, project_id: Optional[str], context: Dict[str, Any]) -> Dict[str, Any]:
        context = {"previous_edits": [], **context}
        return self.database.create_session(uuid4().hex, project_id, context, utcnow())

    def get_session(self, session_id: str) -> Dict[str, Any]:
        session = self.database.get_session(session_id)
        if session is None:
            raise ResourceNotFoundError("Session", session_id)
        return session

    def upload_image(self, data: bytes, filename: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        if session_id is not None:
            self.get_session(session_id)
        if not data:
            raise RequestValidationError("Uploaded file is empty")
        try:
            read_dimensions(data)
        except PersistenceError as exc:
            raise RequestValidationError(f"Uploaded file is not a readable image: {filename}") from exc
        stored = self.image_store.save_upload(data, filename)
        image = self.database.insert_image({
            "id": uuid4().hex,
            "session_id": session_id,
            "kind": "upload",
            "filename": stored.filename,
            "path": stored.path,
            "thumbnail_path": stored.thumbnail_path,
            "width": stored.width,
            "height": stored.height,
            "mime_type": stored.mime_type,
            "created_at": utcnow(),
        })
        logger.info(f"Stored upload {image['id']} ({stored.width}x{stored.height})")
        return image

    def get_image(self, image_id: str) -> Dict[str, Any]:
        image = self.database.get_image(image_id)
        if image is None:
            raise ResourceNotFoundError("Image", image_id)
        return image

    def image_path(self, image_id: str) -> Path:
        return self.get_image(image_id)["path"]

    def image_file(self, image_id: str) -> Dict[str, Any]:
        """Image record whose file is present on local storage."""
        image = self.get_image(image_id)
        if not Path(image["path"]).is_file():
            raise ResourceNotFoundError("Image file", image_id)
        return image

    def image_url(self, image_id: str, s3_key: Optional[str] = None) -> str:
        """Presigned S3 URL when mirrored, otherwise the local download route."""
        return self.image_store.url_for(s3_key) or f"/images/{image_id}/file"

    # Features

    def list_scenarios(self) -> List[ScenarioOut]:
        return [
            ScenarioOut(
                code=scenario.code,
                name=scenario.name,
                description=scenario.description,
                features=[self._feature_out(feature) for feature in scenario.features],
            )
            for scenario in self.features.scenarios()
        ]

    @staticmethod
    def _feature_out(feature) -> FeatureOut:
        return FeatureOut(
            code=feature.code,
            name=feature.name,
            scenario=feature.scenario,
            prompt_template=feature.prompt_template,
            processing_options=feature.processing_options.to_dict(),
            preferred_backends=list(feature.preferred_backends),
        )

    # Job submission

    def _validate_preference(self, backend_id: Optional[str]) -> Optional[str]:
        if backend_id and backend_id not in self.catalog:
            raise RequestValidationError(
                f"Unknown backend: {backend_id}. Must be one of: {', '.join(self.catalog.backend_ids())}"
            )
        return backend_id or None

    def _session_context(self, session_id: Optional[str]) -> Dict[str, Any]:
        return dict(self.get_session(session_id)["context"]) if session_id else {}

    def _submit(self, request: JobRequest, plan: ProcessingPlan) -> JobAccepted:
        creation = self.jobs.create(request)
        if creation.created:
            self.jobs.launch(creation.job.id, plan, self.pipeline)
        return JobAccepted(
            job_id=creation.job.id,
            status=creation.job.status,
            created=creation.created,
            recommended_backend=self.selector.recommend(plan.task_type, plan.user_preference),
        )

    async def submit_edit(self, request: EditRequest, idempotency_key: Optional[str] = None) -> JobAccepted:
        preference = self._validate_preference(request.preferred_backend)
        image_path = self.image_path(request.image_id)
        context = self._session_context(request.session_id)
        task_type = request.type.value

        prompts = self.prompts.build(task_type, request.prompt, PromptContext.from_mapping(context))
        plan = ProcessingPlan(
            task_type=task_type,
            mode=SingleStep(tuple(prompts)),
            image_path=image_path,
            user_preference=preference,
            context=context,
            has_user_prompt=bool(request.prompt),
            session_id=request.session_id,
        )
        job_request = JobRequest(
            type=JobType(task_type),
            session_id=request.session_id,
            input_image_id=request.image_id,
            prompt=request.prompt,
            idempotency_key=idempotency_key,
        )
        return self._submit(job_request, plan)

    async def submit_feature_edit(self, request: FeatureEditRequest, idempotency_key: Optional[str] = None) -> JobAccepted:
        feature = self.features.get(request.feature_code)
        preference = self._validate_preference(request.preferred_backend)
        image_path = self.image_path(request.image_id)
        second_image_path = self.image_path(request.second_image_id) if request.second_image_id else None
        context = self._session_context(request.session_id)

        prompt = feature.build_prompt(request.custom_prompt)
        mode = select_mode(feature, prompt, second_image_path, request.mask_data)

        if preference is None:
            preference = next((b for b in feature.preferred_backends if self.registry.is_available(b)), None)

        plan = ProcessingPlan(
            task_type=FEATURE_RANKING_TASK,
            mode=mode,
            image_path=image_path,
            user_preference=preference,
            context=context,
            has_user_prompt=bool(request.custom_prompt),
            session_id=request.session_id,
        )
        job_request = JobRequest(
            type=JobType.EDIT,
            session_id=request.session_id,
            input_image_id=request.image_id,
            prompt=prompt,
            feature_id=feature.code,
            feature_context={
                "feature_name": feature.name,
                "custom_prompt": request.custom_prompt,
                "second_image_id": request.second_image_id,
                "has_mask": bool(request.mask_data),
                "mode": type(mode).__name__,
            },
            idempotency_key=idempotency_key,
        )
        return self._submit(job_request, plan)

    async def submit_refine(self, request: RefineRequest, idempotency_key: Optional[str] = None) -> JobAccepted:
        preference = self._validate_preference(request.preferred_backend)
        image_path = self.image_path(request.image_id)
        context = self._session_context(request.session_id)

        prompts = self.prompts.build("refine", request.prompt, PromptContext.from_mapping(context))
        plan = ProcessingPlan(
            task_type="refine",
            mode=SingleStep(tuple(prompts)),
            image_path=image_path,
            user_preference=preference,
            context=context,
            has_user_prompt=True,
            session_id=request.session_id,
        )
        job_request = JobRequest(
            type=JobType.REFINE,
            session_id=request.session_id,
            input_image_id=request.image_id,
            prompt=request.prompt,
            idempotency_key=idempotency_key,
        )
        accepted = self._submit(job_request, plan)
        if accepted.created:
            edits = list(context.get("previous_edits") or [])
            edits.append({
                "type": "refine",
                "prompt": request.prompt,
                "timestamp": utcnow().isoformat(),
                "job_id": accepted.job_id,
            })
            self.database.update_session_context(request.session_id, {**context, "previous_edits": edits}, utcnow())
        return accepted

    async def submit_generation(self, request: GenerateRequest, idempotency_key: Optional[str] = None) -> JobAccepted:
        generation = self.settings.generation
        style = request.style or generation.default_style
        size = request.size or generation.default_size
        if style not in generation.styles:
            raise RequestValidationError(f"Invalid style. Must be one of: {', '.join(generation.styles.keys())}")
        if size not in generation.sizes:
            raise RequestValidationError(f"Invalid size. Must be one of: {', '.join(generation.sizes)}")
        preference = self._validate_preference(request.preferred_backend)
        if request.session_id is not None:
            self.get_session(request.session_id)

        prompt = request.prompt.strip()
        plan = ProcessingPlan(
            task_type=GENERATION_RANKING_TASK,
            mode=TextToImage(prompt, style, size, str(generation.styles[style])),
            user_preference=preference,
            has_user_prompt=True,
            session_id=request.session_id,
        )
        job_request = JobRequest(
            type=JobType.GENERATE,
            session_id=request.session_id,
            project_id=request.project_id,
            prompt=prompt,
            feature_context={"style": style, "size": size},
            idempotency_key=idempotency_key,
        )
        return self._submit(job_request, plan)

    def generation_options(self) -> Dict[str, Any]:
        return OmegaConf.to_container(self.settings.generation, resolve=True)  # type: ignore[return-value]

    # Jobs

    def get_job(self, job_id: str) -> JobDetail:
        job = self.jobs.get(job_id)
        return job.to_detail(self._variants(job))

    def _variants(self, job: JobRecord) -> List[VariantOut]:
        return [
            VariantOut(
                id=row["id"],
                job_id=row["job_id"],
                image_id=row["image_id"],
                score=row["score"],
                metadata=row["metadata"],
                image_path=row["image_path"],
                thumbnail_path=row["thumbnail_path"],
                url=self.image_url(row["image_id"], row["s3_key"]),
                created_at=row["created_at"],
            )
            for row in self.database.list_variants(job.id)
        ]

    def list_jobs(self, status: Optional[str] = None, session_id: Optional[str] = None, limit: int = 50) -> List[JobSummary]:
        return [job.to_summary() for job in self.jobs.list(status, session_id, limit)]

    def list_retryable(self, limit: int = 10) -> List[JobSummary]:
        return [job.to_summary() for job in self.jobs.list_retryable(limit)]

    def recover_stalled(self) -> int:
        return self.jobs.recover_stalled()

    # Backends

    def list_backends(self) -> List[BackendOut]:
        return [
            BackendOut(**descriptor.to_dict(), available=self.registry.is_available(descriptor.id))
            for descriptor in self.catalog.all_backends()
        ]

    def recommend(self, task_type: str, preference: Optional[str] = None) -> Recommendation:
        preference = self._validate_preference(preference)
        ranking = [SelectionOut(**result.to_dict()) for result in self.selector.rank(task_type)]
        return Recommendation(
            task_type=task_type,
            backend_id=self.selector.recommend(task_type, preference),
            ranking=ranking,
        )

    def registry_summary(self) -> Dict[str, Any]:
        return {**self.registry.summary(), "stats": self.registry.stats()}

    async def test_connections(self, backend_id: Optional[str] = None) -> List[ConnectionTestOut]:
        if backend_id:
            self._validate_preference(backend_id)
            checks = {backend_id: await self.registry.test_connection(backend_id)}
        else:
            checks = await self.registry.test_all_connections()

        record = self.config_store.active_record()
        if record is not None and checks:
            self.config_store.record_test_results(
                record.id,
                {name: {"ok": check.ok, "error": check.error} for name, check in checks.items()},
            )
        return [ConnectionTestOut(backend_id=name, ok=check.ok, error=check.error) for name, check in checks.items()]

    # API configurations

    def list_configs(self) -> List[Dict[str, Any]]:
        return [record.to_public_dict() for record in self.config_store.list()]

    def create_config(self, request: ApiConfigCreate) -> Dict[str, Any]:
        unknown = [backend_id for backend_id in request.backends if backend_id not in self.catalog]
        if unknown:
            raise RequestValidationError(f"Unknown backends: {', '.join(unknown)}")
        record = self.config_store.create(
            name=request.name,
            api_key=request.api_key,
            base_url=request.base_url,
            backends={
                backend_id: BackendSettings(settings.enabled, settings.model_name)
                for backend_id, settings in request.backends.items()
            },
            activate=request.activate,
        )
        if request.activate:
            self.registry.refresh()
        return record.to_public_dict()

    def activate_config(self, config_id: str) -> Dict[str, Any]:
        record = self.config_store.activate(config_id)
        self.registry.refresh()
        return record.to_public_dict()

    def delete_config(self, config_id: str) -> None:
        record = self.config_store.get(config_id)
        self.config_store.delete(config_id)
        if record.is_active:
            self.registry.refresh()

    def refresh_configuration(self) -> Dict[str, Any]:
        self.registry.refresh()
        return self.registry_summary()

    # Lifecycle

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "configured": self.registry.cache.get() is not None,
            "available_backends": self.registry.available_backends(),
            "running_jobs": self.jobs.active_tasks,
            "s3_enabled": self.image_store.s3_enabled,
        }

    async def shutdown(self) -> None:
        await self.jobs.shutdown(float(self.settings.jobs.shutdown_grace_seconds))


def build_service(
    overrides: Optional[Dict[str, Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    client_factory: Optional[ClientFactory] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> ImageStudioService:
    """
    Assemble the service from engine settings.

    Args:
        overrides: Settings merged over the packaged config.yaml
        transport: httpx transport for backend clients (tests use MockTransport)
        client_factory: Replaces the HTTP backend clients entirely
        sleep: Replaces the backoff timer
    """
    settings = make_runtime_config(overrides)
    database_path = Path(settings.storage.database_path)

    database = JobDatabase(database_path)
    config_store = ApiConfigStore(database_path)
    provider = ChainedConfigurationProvider(config_store, EnvironmentConfigurationProvider(settings))
    cache = ConfigurationCache(provider, ttl_seconds=float(settings.registry.config_cache_ttl_seconds))

    catalog = ModelCapabilityCatalog()
    registry = BackendRegistry(cache, catalog, settings, transport=transport, client_factory=client_factory)
    selector = ModelSelector(registry, catalog)
    executor_kwargs: Dict[str, Any] = {}
    if sleep is not None:
        executor_kwargs["sleep"] = sleep
    executor = FallbackExecutor(
        selector,
        registry,
        max_retries_per_backend=int(settings.fallback.max_retries_per_backend),
        base_delay=float(settings.fallback.base_delay_seconds),
        **executor_kwargs,
    )

    image_store = LocalImageStore(
        Path(settings.storage.root),
        thumbnail_size=int(settings.storage.thumbnail_size),
        s3_bucket=str(settings.storage.s3_bucket or ""),
    )
    jobs = JobLifecycleManager(
        database,
        max_attempts=int(settings.jobs.max_attempts),
        stall_threshold_seconds=float(settings.jobs.stall_threshold_seconds),
        idempotency_window_seconds=float(settings.jobs.idempotency_window_seconds),
        error_message_limit=int(settings.jobs.error_message_limit),
        backend_name_limit=int(settings.jobs.backend_name_limit),
    )
    pipeline = ProcessingPipeline(executor, image_store, database)

    return ImageStudioService(
        settings=settings,
        database=database,
        config_store=config_store,
        registry=registry,
        selector=selector,
        jobs=jobs,
        pipeline=pipeline,
        image_store=image_store,
        features=FeatureCatalog.load(),
    )
