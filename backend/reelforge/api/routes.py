"""API route handlers and Pydantic response schemas.

Three routers share one ``ControlPlaneStore`` kept on ``app.state``:

- ``/api/daemon``: queue, claim, status and progress endpoints used by daemons
- ``/api/storage``: upload grants and multipart media uploads
- ``/api/admin``: operator tooling (project creation, status rollback)
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile
from pydantic import Field

from reelforge.control_plane.storage import StorageService
from reelforge.control_plane.store import ControlPlaneStore
from reelforge.schemas.status import AssetKind, JobType
from reelforge.schemas.wire import (
    AdminStatusResult,
    AdminStatusUpdate,
    AssetRegistration,
    ClaimResult,
    CreationSnapshot,
    EligibleProject,
    JobCreate,
    JobCreateResult,
    JobStatusUpdate,
    LanguageProgressAggregate,
    LanguageProgressUpdate,
    ProjectCreate,
    ProjectSummary,
    QueuedJob,
    RegisteredAsset,
    ScriptPayload,
    ScriptResponse,
    StatusUpdate,
    StorageGrant,
    StorageGrantRequest,
    StorageUpload,
    SweepRequest,
    SweepResult,
    TranscriptionSnapshot,
    WireModel,
)

logger = logging.getLogger(__name__)

daemon_router = APIRouter(prefix="/api/daemon", tags=["daemon"])
storage_router = APIRouter(prefix="/api/storage", tags=["storage"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class HealthResponse(WireModel):
    ok: bool = True
    service: str


class EligibleProjectsResponse(WireModel):
    projects: list[EligibleProject] = Field(default_factory=list)


class JobQueueResponse(WireModel):
    jobs: list[QueuedJob] = Field(default_factory=list)


class JobExistsResponse(WireModel):
    exists: bool


class OkResponse(WireModel):
    ok: bool = True


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_store(request: Request) -> ControlPlaneStore:
    return request.app.state.store


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def _password_matches(request: Request, supplied: Optional[str]) -> bool:
    expected = request.app.state.settings.api.password
    return bool(supplied) and hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_daemon(
    request: Request,
    x_daemon_password: Optional[str] = Header(default=None),
    x_daemon_id: Optional[str] = Header(default=None),
) -> str:
    """Authenticate a daemon request and return the caller's daemon id."""
    if not _password_matches(request, x_daemon_password) or not (x_daemon_id or "").strip():
        raise HTTPException(status_code=403, detail="Invalid daemon credentials")
    return x_daemon_id.strip()


async def require_admin(
    request: Request,
    x_daemon_password: Optional[str] = Header(default=None),
) -> None:
    if not _password_matches(request, x_daemon_password):
        raise HTTPException(status_code=403, detail="Invalid admin credentials")


# ---------------------------------------------------------------------------
# Daemon endpoints
# ---------------------------------------------------------------------------

@daemon_router.get("/health", response_model=HealthResponse)
async def daemon_health(daemon_id: str = Depends(require_daemon)):
    return HealthResponse(service="daemon-api")


@daemon_router.get("/projects/eligible", response_model=EligibleProjectsResponse)
async def eligible_projects(
    limit: int = Query(default=10, ge=1, le=100),
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return EligibleProjectsResponse(projects=await store.eligible_projects(daemon_id, limit))


@daemon_router.get("/jobs/queue", response_model=JobQueueResponse)
async def job_queue(
    limit: int = Query(default=10, ge=1, le=100),
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return JobQueueResponse(jobs=await store.list_queue(daemon_id, limit))


@daemon_router.get("/jobs/exists", response_model=JobExistsResponse)
async def job_exists(
    project_id: str = Query(alias="projectId"),
    job_type: JobType = Query(alias="type"),
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return JobExistsResponse(exists=await store.job_exists(project_id, job_type.value, daemon_id))


@daemon_router.post("/jobs", response_model=JobCreateResult)
async def create_job(
    body: JobCreate,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.create_job(body, daemon_id)


@daemon_router.post("/jobs/sweep-stale", response_model=SweepResult)
async def sweep_stale_jobs(
    body: SweepRequest,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    logger.info(f"Sweep requested by {daemon_id}: ttl={body.ttl_minutes}m dry_run={body.dry_run}")
    return await store.sweep_stale(body)


@daemon_router.post("/jobs/{job_id}/claim", response_model=ClaimResult)
async def claim_job(
    job_id: str,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return ClaimResult(claimed=await store.claim_job(job_id, daemon_id))


@daemon_router.post("/jobs/{job_id}/status", response_model=OkResponse)
async def set_job_status(
    job_id: str,
    body: JobStatusUpdate,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    await store.set_job_status(job_id, body.status)
    return OkResponse()


@daemon_router.get("/projects/{project_id}/creation-snapshot", response_model=CreationSnapshot)
async def creation_snapshot(
    project_id: str,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.creation_snapshot(project_id, daemon_id)


@daemon_router.get("/projects/{project_id}/transcription-snapshot", response_model=TranscriptionSnapshot)
async def transcription_snapshot(
    project_id: str,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.transcription_snapshot(project_id, daemon_id)


@daemon_router.get("/projects/{project_id}/script", response_model=ScriptResponse)
async def get_script(
    project_id: str,
    language: Optional[str] = Query(default=None),
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.get_script(project_id, language, daemon_id)


@daemon_router.post("/projects/{project_id}/script", response_model=ScriptResponse)
async def upsert_script(
    project_id: str,
    body: ScriptPayload,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.upsert_script(project_id, body, daemon_id)


@daemon_router.post("/projects/{project_id}/status", response_model=ProjectSummary)
async def set_project_status(
    project_id: str,
    body: StatusUpdate,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.set_project_status(project_id, body, daemon_id)


@daemon_router.get("/projects/{project_id}/language-progress", response_model=LanguageProgressAggregate)
async def get_language_progress(
    project_id: str,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.get_language_progress(project_id, daemon_id)


@daemon_router.post("/projects/{project_id}/language-progress", response_model=LanguageProgressAggregate)
async def update_language_progress(
    project_id: str,
    body: LanguageProgressUpdate,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.update_language_progress(project_id, body, daemon_id)


@daemon_router.post("/projects/{project_id}/assets", response_model=RegisteredAsset)
async def register_asset(
    project_id: str,
    body: AssetRegistration,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.register_asset(project_id, body, daemon_id)


# ---------------------------------------------------------------------------
# Storage endpoints
# ---------------------------------------------------------------------------

@storage_router.get("/health", response_model=HealthResponse)
async def storage_health(daemon_id: str = Depends(require_daemon)):
    return HealthResponse(service="storage")


@storage_router.post("/grant", response_model=StorageGrant)
async def storage_grant(
    body: StorageGrantRequest,
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
):
    await store.get_project(body.project_id)
    return storage.issue_grant(body)


@storage_router.post("/projects/{project_id}/assets", response_model=StorageUpload)
async def storage_upload(
    project_id: str,
    kind: AssetKind = Form(alias="type"),
    data: str = Form(),
    signature: str = Form(),
    is_final: bool = Form(default=False, alias="isFinal"),
    file: UploadFile = File(),
    daemon_id: str = Depends(require_daemon),
    store: ControlPlaneStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
):
    await store.get_project(project_id)
    grant = storage.verify_grant(data, signature, project_id, kind)
    return storage.save_upload(
        project_id,
        kind,
        grant,
        file.filename or "upload.bin",
        file.content_type,
        file.file,
        is_final=is_final,
    )


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@admin_router.post("/projects", status_code=201, response_model=ProjectSummary, dependencies=[Depends(require_admin)])
async def admin_create_project(body: ProjectCreate, store: ControlPlaneStore = Depends(get_store)):
    return await store.create_project(body)


@admin_router.get("/projects/{project_id}", response_model=ProjectSummary, dependencies=[Depends(require_admin)])
async def admin_get_project(project_id: str, store: ControlPlaneStore = Depends(get_store)):
    return await store.get_project(project_id)


@admin_router.post(
    "/projects/{project_id}/status",
    response_model=AdminStatusResult,
    dependencies=[Depends(require_admin)],
)
async def admin_set_status(
    project_id: str,
    body: AdminStatusUpdate,
    store: ControlPlaneStore = Depends(get_store),
):
    return await store.admin_set_status(project_id, body)


@admin_router.get(
    "/projects/{project_id}/language-progress",
    response_model=LanguageProgressAggregate,
    dependencies=[Depends(require_admin)],
)
async def admin_language_progress(project_id: str, store: ControlPlaneStore = Depends(get_store)):
    return await store.get_language_progress(project_id, None)
