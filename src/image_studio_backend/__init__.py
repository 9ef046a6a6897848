"""
Image Studio Backend - AI model orchestration for product image editing

This package provides a FastAPI-based web service that routes image editing
and generation requests across several third-party AI image backends. It
enables:

- Backend selection by task capability, quality and availability
- Multi-backend fallback with bounded exponential backoff
- Asynchronous job execution with an atomic job state machine
- Feature-driven processing (single step, two step, dual image, masked)
- Operator-managed API configurations with a TTL cache

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - service: Request validation and wiring of the core components
    - catalog / selector: Backend capabilities and task ranking
    - registry / configuration / config_store: Active credentials and clients
    - fallback: Retry and fallback across ranked backends
    - job_manager / database: Job lifecycle and SQLite persistence
    - pipeline / features / prompts: Turning a request into variants
    - backends: OpenAI-compatible HTTP clients per backend

Usage:
    Run the API server with:
        uvicorn image_studio_backend.main:app --reload --host 0.0.0.0 --port 8000

    Or use the development script:
        uv run uvicorn image_studio_backend.main:app --reload

Architecture Principles:
    - Only the job lifecycle manager writes job status
    - Every validation failure happens before a job exists
    - Backend calls are async and never block other jobs
"""
