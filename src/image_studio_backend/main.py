from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response

from .errors import ImageStudioError
from .middleware import RateLimiter, RateLimitMiddleware
from .models import (
    ApiConfigCreate,
    ApiConfigOut,
    BackendOut,
    ConnectionTestOut,
    ConnectionTestRequest,
    EditRequest,
    FeatureEditRequest,
    GenerateRequest,
    ImageOut,
    JobAccepted,
    JobDetail,
    JobSummary,
    Recommendation,
    RecoveryResult,
    RefineRequest,
    ScenarioOut,
    SessionCreate,
    SessionOut,
)
from .service import ImageStudioService, build_service


def _image_out(image: Dict[str, Any], service: ImageStudioService) -> ImageOut:
    return ImageOut(
        **{
            **image,
            "path": str(image["path"]),
            "thumbnail_path": str(image["thumbnail_path"]) if image.get("thumbnail_path") else None,
            "url": service.image_url(image["id"], image.get("s3_key")),
        }
    )


def create_app(service: Optional[ImageStudioService] = None) -> FastAPI:
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        recovered = service.recover_stalled()
        app.state.recovered_on_startup = recovered
        yield
        await service.shutdown()

    app = FastAPI(title="Image Studio API", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    allowed_origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(requests_per_minute=int(service.settings.http.rate_limit_per_minute)),
    )

    @app.exception_handler(ImageStudioError)
    async def handle_image_studio_error(request: Request, exc: ImageStudioError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def get_service() -> ImageStudioService:
        return service

    @app.get("/healthz")
    def healthcheck(svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.health()

    # Sessions and images

    @app.post("/sessions", response_model=SessionOut, status_code=201)
    def create_session(payload: SessionCreate, svc: ImageStudioService = Depends(get_service)) -> SessionOut:
        return SessionOut(**svc.create_session(payload.project_id, payload.context))

    @app.get("/sessions/{session_id}", response_model=SessionOut)
    def get_session(session_id: str, svc: ImageStudioService = Depends(get_service)) -> SessionOut:
        return SessionOut(**svc.get_session(session_id))

    @app.post("/images", response_model=ImageOut, status_code=201)
    async def upload_image(
        image: UploadFile = File(...),
        session_id: Optional[str] = Form(None),
        svc: ImageStudioService = Depends(get_service),
    ) -> ImageOut:
        data = await image.read()
        await image.close()
        stored = svc.upload_image(data, image.filename or "upload.png", session_id or None)
        return _image_out(stored, svc)

    @app.get("/images/{image_id}", response_model=ImageOut)
    def get_image(image_id: str, svc: ImageStudioService = Depends(get_service)) -> ImageOut:
        return _image_out(svc.get_image(image_id), svc)

    @app.get("/images/{image_id}/file")
    def download_image(image_id: str, svc: ImageStudioService = Depends(get_service)) -> FileResponse:
        image = svc.image_file(image_id)
        return FileResponse(image["path"], media_type=image["mime_type"], filename=image["filename"])

    @app.get("/features", response_model=List[ScenarioOut])
    def list_features(svc: ImageStudioService = Depends(get_service)) -> List[ScenarioOut]:
        return svc.list_scenarios()

    @app.get("/generate/options")
    def generation_options(svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.generation_options()

    # Job submission

    @app.post("/edit", response_model=JobAccepted, status_code=202)
    async def submit_edit(
        payload: EditRequest,
        idempotency_key: Optional[str] = Header(None),
        svc: ImageStudioService = Depends(get_service),
    ) -> JobAccepted:
        return await svc.submit_edit(payload, idempotency_key)

    @app.post("/edit/feature", response_model=JobAccepted, status_code=202)
    async def submit_feature_edit(
        payload: FeatureEditRequest,
        idempotency_key: Optional[str] = Header(None),
        svc: ImageStudioService = Depends(get_service),
    ) -> JobAccepted:
        return await svc.submit_feature_edit(payload, idempotency_key)

    @app.post("/edit/refine", response_model=JobAccepted, status_code=202)
    async def submit_refine(
        payload: RefineRequest,
        idempotency_key: Optional[str] = Header(None),
        svc: ImageStudioService = Depends(get_service),
    ) -> JobAccepted:
        return await svc.submit_refine(payload, idempotency_key)

    @app.post("/generate", response_model=JobAccepted, status_code=202)
    async def submit_generation(
        payload: GenerateRequest,
        idempotency_key: Optional[str] = Header(None),
        svc: ImageStudioService = Depends(get_service),
    ) -> JobAccepted:
        return await svc.submit_generation(payload, idempotency_key)

    # Jobs

    @app.get("/jobs", response_model=List[JobSummary])
    def list_jobs(
        status: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
        svc: ImageStudioService = Depends(get_service),
    ) -> List[JobSummary]:
        return svc.list_jobs(status, session_id, limit)

    @app.get("/jobs/retryable", response_model=List[JobSummary])
    def list_retryable(limit: int = 10, svc: ImageStudioService = Depends(get_service)) -> List[JobSummary]:
        return svc.list_retryable(limit)

    @app.post("/jobs/recover", response_model=RecoveryResult)
    def recover_stalled(svc: ImageStudioService = Depends(get_service)) -> RecoveryResult:
        return RecoveryResult(recovered=svc.recover_stalled())

    @app.get("/jobs/{job_id}", response_model=JobDetail)
    def get_job(job_id: str, svc: ImageStudioService = Depends(get_service)) -> JobDetail:
        return svc.get_job(job_id)

    # Backends

    @app.get("/models", response_model=List[BackendOut])
    def list_backends(svc: ImageStudioService = Depends(get_service)) -> List[BackendOut]:
        return svc.list_backends()

    @app.get("/models/recommend", response_model=Recommendation)
    def recommend(
        task_type: str = "optimize",
        preferred_backend: Optional[str] = None,
        svc: ImageStudioService = Depends(get_service),
    ) -> Recommendation:
        return svc.recommend(task_type, preferred_backend)

    @app.get("/models/summary")
    def registry_summary(svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.registry_summary()

    @app.post("/models/test", response_model=List[ConnectionTestOut])
    async def test_connections(
        payload: Optional[ConnectionTestRequest] = None,
        svc: ImageStudioService = Depends(get_service),
    ) -> List[ConnectionTestOut]:
        return await svc.test_connections(payload.backend_id if payload else None)

    # API configurations

    @app.get("/config", response_model=List[ApiConfigOut])
    def list_configs(svc: ImageStudioService = Depends(get_service)) -> List[Dict[str, Any]]:
        return svc.list_configs()

    @app.post("/config", response_model=ApiConfigOut, status_code=201)
    def create_config(payload: ApiConfigCreate, svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.create_config(payload)

    @app.post("/config/refresh")
    def refresh_config(svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.refresh_configuration()

    @app.post("/config/{config_id}/activate", response_model=ApiConfigOut)
    def activate_config(config_id: str, svc: ImageStudioService = Depends(get_service)) -> Dict[str, Any]:
        return svc.activate_config(config_id)

    @app.delete("/config/{config_id}", status_code=204)
    def delete_config(config_id: str, svc: ImageStudioService = Depends(get_service)) -> Response:
        svc.delete_config(config_id)
        return Response(status_code=204)

    return app


app = create_app()
