"""
Job lifecycle management.

This module owns the job state machine:

    pending -> queued -> running -> done | error | failed
                 ^          |
                 +----------+   (retry, while attempts < max_attempts)

- Job creation with idempotency-key deduplication
- Validated, atomic status transitions with a sticky last_error
- Attempt counting capped at max_attempts
- Recovery of jobs stalled in running
- Launching processing as fire-and-forget asyncio tasks

JobLifecycleManager is the only component that writes job status; the
processing pipeline reports its outcome as a PipelineResult instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, NamedTuple, Optional, Set
from uuid import uuid4

from .database import JobDatabase
from .errors import InvalidStatusError, InvalidTransitionError, JobNotFoundError
from .models import TERMINAL_STATUSES, JobDetail, JobStatus, JobSummary, JobType, VariantOut
from .utils import truncate, utcnow

if TYPE_CHECKING:
    from .pipeline import ProcessingPipeline, ProcessingPlan

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.ERROR, JobStatus.FAILED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.ERROR, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.QUEUED, JobStatus.DONE, JobStatus.ERROR, JobStatus.FAILED}),
    JobStatus.DONE: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.FAILED: frozenset(),
}

RECOVERY_MESSAGE = "Job timeout - recovered for retry"
EXHAUSTED_MESSAGE = "Maximum retry attempts exceeded"


def predecessors_of(target: JobStatus) -> List[str]:
    return [status.value for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


@dataclass
class JobRequest:
    """Everything needed to register a job."""

    type: JobType
    session_id: Optional[str] = None
    input_image_id: Optional[str] = None
    project_id: Optional[str] = None
    prompt: Optional[str] = None
    feature_id: Optional[str] = None
    feature_context: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    enqueue: bool = True

    @property
    def idempotency_scope(self) -> str:
        return self.session_id or "global"


@dataclass
class JobRecord:
    """
    Internal representation of a persisted job.

    Attributes:
        attempts: Processing attempts so far, never above the configured cap
        error_msg: Message of the current failure, cleared by later transitions
        last_error: Most recent failure message, retained across transitions
        result_variant_ids: Variants produced by the successful run
    """

    id: str
    type: JobType
    status: JobStatus
    attempts: int
    created_at: datetime
    updated_at: datetime
    session_id: Optional[str] = None
    input_image_id: Optional[str] = None
    project_id: Optional[str] = None
    prompt: Optional[str] = None
    backend_used: Optional[str] = None
    error_msg: Optional[str] = None
    last_error: Optional[str] = None
    feature_id: Optional[str] = None
    feature_context: Dict[str, Any] = field(default_factory=dict)
    result_variant_ids: List[str] = field(default_factory=list)
    idempotency_key: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls(**{**row, "type": JobType(row["type"]), "status": JobStatus(row["status"])})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            type=self.type,
            status=self.status,
            attempts=self.attempts,
            backend_used=self.backend_used,
            session_id=self.session_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self, variants: Optional[List[VariantOut]] = None) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            input_image_id=self.input_image_id,
            project_id=self.project_id,
            prompt=self.prompt,
            feature_id=self.feature_id,
            feature_context=self.feature_context,
            error_msg=self.error_msg,
            last_error=self.last_error,
            queued_at=self.queued_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            result_variant_ids=self.result_variant_ids,
            variants=variants or [],
        )


class JobCreation(NamedTuple):
    job: JobRecord
    created: bool


class JobLifecycleManager:
    """
    Coordinator for job state and background processing.

    Attributes:
        max_attempts: Attempt cap; a job at the cap is failed instead of re-queued
        stall_threshold: How long a job may sit in running before recovery
        idempotency_window: How long an idempotency key keeps resolving to its job
    """

    def __init__(
        self,
        database: JobDatabase,
        max_attempts: int = 3,
        stall_threshold_seconds: float = 600,
        idempotency_window_seconds: float = 3600,
        error_message_limit: int = 1000,
        backend_name_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.max_attempts = max_attempts
        self.stall_threshold = timedelta(seconds=stall_threshold_seconds)
        self.idempotency_window = timedelta(seconds=idempotency_window_seconds)
        self.error_message_limit = error_message_limit
        self.backend_name_limit = backend_name_limit
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()
        self._in_progress: Set[str] = set()

    def create(self, request: JobRequest) -> JobCreation:
        """
        Register a job, or return the job already registered under the same key.

        The idempotency lookup and the insert share one transaction, so a
        replayed key never creates a second row.
        """
        now = self._clock()
        status = JobStatus.QUEUED if request.enqueue else JobStatus.PENDING
        row = {
            "id": uuid4().hex,
            "type": request.type.value,
            "status": status.value,
            "session_id": request.session_id,
            "input_image_id": request.input_image_id,
            "project_id": request.project_id,
            "prompt": request.prompt,
            "feature_id": request.feature_id,
            "feature_context": request.feature_context,
            "created_at": now,
            "queued_at": now if request.enqueue else None,
        }
        idempotency = (request.idempotency_scope, request.idempotency_key) if request.idempotency_key else None
        stored, created = self.database.create_job(row, idempotency, now - self.idempotency_window)
        job = JobRecord.from_row(stored)
        if created:
            logger.info(f"Created {job.type.value} job {job.id} ({job.status.value})")
        else:
            logger.info(f"Idempotency key {request.idempotency_key} matched existing job {job.id}")
        return JobCreation(job, created)

    def get(self, job_id: str) -> JobRecord:
        row = self.database.get_job(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return JobRecord.from_row(row)

    def list(self, status: Optional[str] = None, session_id: Optional[str] = None, limit: int = 50) -> List[JobRecord]:
        if status is not None:
            status = self._validate_status(status).value
        return [JobRecord.from_row(row) for row in self.database.list_jobs(status, session_id, limit)]

    @staticmethod
    def _validate_status(status: Any) -> JobStatus:
        try:
            return JobStatus(status)
        except ValueError:
            raise InvalidStatusError(str(status), [s.value for s in JobStatus]) from None

    def transition(
        self,
        job_id: str,
        status: Any,
        error_message: Optional[str] = None,
        backend_used: Optional[str] = None,
        result_variant_ids: Optional[List[str]] = None,
    ) -> JobRecord:
        """
        Move a job to a new status.

        Args:
            job_id: Job to update
            status: Target status (JobStatus or its string value)
            error_message: Failure reason; also becomes the sticky last_error
            backend_used: Backend that handled the job
            result_variant_ids: Variants to attach (on done)

        Raises:
            InvalidStatusError: Unknown status value
            JobNotFoundError: Unknown job id
            InvalidTransitionError: The job's current status does not allow it
        """
        target = self._validate_status(status)
        row = self.database.transition_job(
            job_id,
            target.value,
            predecessors_of(target),
            self._clock(),
            error_message=truncate(error_message, self.error_message_limit),
            backend_used=truncate(backend_used, self.backend_name_limit),
            result_variant_ids=result_variant_ids,
            max_attempts=self.max_attempts,
            exhausted_message=EXHAUSTED_MESSAGE,
        )
        if row is None:
            current = self.database.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidTransitionError(job_id, current["status"], target.value)

        job = JobRecord.from_row(row)
        if target is JobStatus.QUEUED and job.status is JobStatus.FAILED:
            logger.warning(f"Job {job_id} reached {self.max_attempts} attempts, marked failed instead of re-queued")
        else:
            logger.info(f"Job {job_id} -> {job.status.value}")
        return job

    def increment_attempts(self, job_id: str) -> JobRecord:
        row = self.database.increment_attempts(job_id, self.max_attempts, self._clock())
        if row is None:
            raise JobNotFoundError(job_id)
        return JobRecord.from_row(row)

    def recover_stalled(self) -> int:
        """
        Return jobs stuck in running to the queue (or fail them at the cap).

        Jobs this manager is still processing are never recovered, however
        long they have been running.
        """
        now = self._clock()
        count = self.database.recover_stalled(
            now - self.stall_threshold,
            now,
            self.max_attempts,
            RECOVERY_MESSAGE,
            EXHAUSTED_MESSAGE,
            exclude_ids=sorted(self._in_progress),
        )
        if count:
            logger.warning(f"Recovered {count} stalled job(s)")
        return count

    def list_retryable(self, limit: int = 10) -> List[JobRecord]:
        """Queued jobs with attempts to spare, oldest first."""
        return [JobRecord.from_row(row) for row in self.database.list_retryable(limit, self.max_attempts)]

    async def run(self, job_id: str, plan: "ProcessingPlan", pipeline: "ProcessingPipeline") -> JobRecord:
        """
        Process one job and record its terminal status.

        Attempts are counted when processing starts. Any exception escaping
        the pipeline is recorded as a job error rather than propagated.
        """
        self.increment_attempts(job_id)
        self.transition(job_id, JobStatus.RUNNING)
        self._in_progress.add(job_id)

        try:
            try:
                result = await pipeline.run(job_id, plan)
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Processing job {job_id} crashed")
                return self._finish(job_id, JobStatus.ERROR, error_message=f"Processing failed: {exc}")

            if result.success:
                return self._finish(
                    job_id,
                    JobStatus.DONE,
                    backend_used=result.backend_used,
                    result_variant_ids=result.variant_ids,
                )
            return self._finish(
                job_id,
                JobStatus.ERROR,
                error_message=result.error,
                backend_used=result.backend_used,
            )
        finally:
            self._in_progress.discard(job_id)

    def _finish(self, job_id: str, status: JobStatus, **fields: Any) -> JobRecord:
        try:
            return self.transition(job_id, status, **fields)
        except InvalidTransitionError as exc:
            logger.warning(f"Could not record {status.value} for job {job_id}: {exc}")
            return self.get(job_id)

    def launch(self, job_id: str, plan: "ProcessingPlan", pipeline: "ProcessingPipeline") -> asyncio.Task:
        """Start processing in the background and keep a reference until it ends."""
        task = asyncio.get_running_loop().create_task(self.run(job_id, plan, pipeline), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Wait for in-flight jobs without cancelling them.

        Jobs still running after the timeout stay in running and are picked
        up later by recover_stalled().
        """
        if not self._tasks:
            return
        logger.info(f"Waiting up to {timeout}s for {len(self._tasks)} running job(s)")
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} job(s) still running at shutdown; they will be recovered as stalled")
