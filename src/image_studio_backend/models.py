from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.FAILED})


class JobType(str, Enum):
    OPTIMIZE = "optimize"
    EDIT = "edit"
    REFINE = "refine"
    EXPORT = "export"
    GENERATE = "generate"


class ProcessingTask(str, Enum):
    OPTIMIZE = "optimize"
    EDIT = "edit"
    REFINE = "refine"


class SessionCreate(BaseModel):
    project_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class SessionOut(BaseModel):
    id: str
    project_id: Optional[str] = None
    context: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ImageOut(BaseModel):
    id: str
    session_id: Optional[str] = None
    kind: str
    filename: str
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: str
    path: str
    thumbnail_path: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime


class EditRequest(BaseModel):
    image_id: str
    type: ProcessingTask = ProcessingTask.EDIT
    prompt: Optional[str] = None
    session_id: Optional[str] = None
    preferred_backend: Optional[str] = None


class FeatureEditRequest(BaseModel):
    image_id: str
    feature_code: str
    custom_prompt: Optional[str] = None
    second_image_id: Optional[str] = None
    mask_data: Optional[str] = None
    session_id: Optional[str] = None
    preferred_backend: Optional[str] = None


class RefineRequest(BaseModel):
    session_id: str
    image_id: str
    prompt: str = Field(min_length=1)
    preferred_backend: Optional[str] = None


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    style: Optional[str] = None
    size: Optional[str] = None
    session_id: Optional[str] = None
    project_id: Optional[str] = None
    preferred_backend: Optional[str] = None


class VariantOut(BaseModel):
    id: str
    job_id: str
    image_id: str
    score: float
    metadata: Dict[str, Any]
    image_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime


class JobSummary(BaseModel):
    id: str
    type: JobType
    status: JobStatus
    attempts: int
    backend_used: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class JobDetail(JobSummary):
    input_image_id: Optional[str] = None
    project_id: Optional[str] = None
    prompt: Optional[str] = None
    feature_id: Optional[str] = None
    feature_context: Dict[str, Any] = Field(default_factory=dict)
    error_msg: Optional[str] = None
    last_error: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result_variant_ids: List[str] = Field(default_factory=list)
    variants: List[VariantOut] = Field(default_factory=list)


class JobAccepted(BaseModel):
    job_id: str
    status: JobStatus
    created: bool
    recommended_backend: Optional[str] = None


class RecoveryResult(BaseModel):
    recovered: int


class SelectionOut(BaseModel):
    backend_id: str
    score: int
    available: bool
    capable: bool
    reason: str


class BackendOut(BaseModel):
    id: str
    name: str
    quality: int
    speed: int
    capabilities: List[str]
    cost: str
    tier: str
    specializations: List[str]
    description: str
    available: bool


class Recommendation(BaseModel):
    task_type: str
    backend_id: str
    ranking: List[SelectionOut]


class ConnectionTestRequest(BaseModel):
    backend_id: Optional[str] = None


class ConnectionTestOut(BaseModel):
    backend_id: str
    ok: bool
    error: Optional[str] = None


class BackendSettingsIn(BaseModel):
    enabled: bool = True
    model_name: str = ""


class ApiConfigCreate(BaseModel):
    name: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    base_url: str = "https://api.laozhang.ai/v1/chat/completions"
    backends: Dict[str, BackendSettingsIn] = Field(default_factory=dict)
    activate: bool = False


class ApiConfigOut(BaseModel):
    id: str
    name: str
    api_key_masked: str
    base_url: str
    backends: Dict[str, BackendSettingsIn]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class FeatureOut(BaseModel):
    code: str
    name: str
    scenario: str
    prompt_template: str
    processing_options: Dict[str, Any]
    preferred_backends: List[str]


class ScenarioOut(BaseModel):
    code: str
    name: str
    description: str
    features: List[FeatureOut]
