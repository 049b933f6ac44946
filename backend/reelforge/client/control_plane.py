"""Async client for the control-plane daemon, storage and admin APIs.

Every request carries the shared ``x-daemon-password`` secret and the daemon
identity header ``x-daemon-id``. Status writes are retried once on transient
failures so that a blip does not leave a job stuck in ``running``.

Usage:
    async with ControlPlaneClient(settings) as client:
        await client.verify_services_access()
        projects = await client.eligible_projects(limit=2)
"""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from reelforge.client.errors import ControlPlaneError, UploadRejected
from reelforge.config import Settings
from reelforge.schemas.extras import StatusExtra
from reelforge.schemas.status import AssetKind, JobStatus, JobType, ProjectStatus
from reelforge.schemas.wire import (
    AdminStatusResult,
    AdminStatusUpdate,
    AssetRegistration,
    CreationSnapshot,
    EligibleProject,
    JobCreate,
    JobCreateResult,
    LanguageProgressAggregate,
    LanguageProgressUpdate,
    ProjectCreate,
    ProjectSummary,
    QueuedJob,
    RegisteredAsset,
    ScriptPayload,
    StorageGrant,
    StorageGrantRequest,
    StorageUpload,
    SweepRequest,
    SweepResult,
    TranscriptionSnapshot,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_ATTEMPTS = 10

_MIME_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
}


def guess_mime(path: Path) -> str:
    """Mime type for an upload, with stable answers for the media we produce."""
    suffix = path.suffix.lower()
    if suffix in _MIME_TYPES:
        return _MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _is_retriable(exc: BaseException) -> bool:
    """Transport failures and 5xx answers are worth one more try."""
    if isinstance(exc, ControlPlaneError):
        return exc.retriable
    return isinstance(exc, httpx.TransportError)


_retry_status_write = retry(
    stop=stop_after_attempt(2),
    wait=wait_fixed(0.2),
    retry=retry_if_exception(_is_retriable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class ControlPlaneClient:
    """Typed wrapper around the control-plane HTTP contract."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storage_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.daemon_id = settings.daemon_id
        self._transport = transport
        self._storage_transport = storage_transport or transport
        self._client: Optional[httpx.AsyncClient] = None
        self._storage_client: Optional[httpx.AsyncClient] = None

    def _build_client(self, base_url: str, transport) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            headers={
                "accept": "application/json",
                "x-daemon-password": self.settings.api.password,
                "x-daemon-id": self.daemon_id,
            },
            timeout=self.settings.request_timeout,
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client(self.settings.api.base_url, self._transport)
        return self._client

    @property
    def storage_client(self) -> httpx.AsyncClient:
        if self._storage_client is None:
            self._storage_client = self._build_client(self.settings.api.storage_url, self._storage_transport)
        return self._storage_client

    async def close(self) -> None:
        for client in (self._client, self._storage_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._storage_client = None

    async def __aenter__(self) -> "ControlPlaneClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        storage: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ) -> Any:
        http = client or (self.storage_client if storage else self.client)
        label = "Storage API" if storage else "API"
        logger.debug("%s %s%s", method, http.base_url, path)
        response = await http.request(method, path, **kwargs)
        if response.is_error:
            raise ControlPlaneError.from_response(response, label)
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    async def _verify_health(self, path: str, *, storage: bool) -> None:
        label = "Storage API" if storage else "API"
        delay = min(0.5, max(0.1, self.settings.request_timeout / 10))
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(HEALTH_CHECK_ATTEMPTS),
            wait=wait_fixed(delay),
            before_sleep=before_sleep_log(logger, logging.ERROR),
            reraise=True,
        ):
            with attempt:
                logger.info(f"{label} health check (attempt {attempt.retry_state.attempt_number})")
                await self._request("GET", path, storage=storage)

    async def verify_services_access(self) -> None:
        """Fail unless both the API and storage health endpoints answer."""
        await self._verify_health(self.settings.api.health_path, storage=False)
        await self._verify_health(self.settings.api.storage_health_path, storage=True)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    async def eligible_projects(self, limit: int) -> list[EligibleProject]:
        payload = await self._request("GET", "/api/daemon/projects/eligible", params={"limit": limit})
        return [EligibleProject.model_validate(p) for p in payload["projects"]]

    async def queued_jobs(self, limit: int) -> list[QueuedJob]:
        payload = await self._request("GET", "/api/daemon/jobs/queue", params={"limit": limit})
        return [QueuedJob.model_validate(j) for j in payload["jobs"]]

    async def claim_job(self, job_id: str) -> bool:
        payload = await self._request("POST", f"/api/daemon/jobs/{job_id}/claim")
        return bool(payload and payload.get("claimed"))

    @_retry_status_write
    async def set_job_status(self, job_id: str, status: JobStatus) -> None:
        await self._request(
            "POST", f"/api/daemon/jobs/{job_id}/status", json={"status": JobStatus(status).value}
        )

    async def job_exists(self, project_id: str, job_type: JobType) -> bool:
        payload = await self._request(
            "GET",
            "/api/daemon/jobs/exists",
            params={"projectId": project_id, "type": JobType(job_type).value},
        )
        return bool(payload.get("exists"))

    async def create_job(
        self,
        project_id: str,
        user_id: str,
        job_type: JobType,
        payload: Optional[dict] = None,
    ) -> JobCreateResult:
        body = JobCreate(project_id=project_id, user_id=user_id, type=job_type, payload=payload)
        result = await self._request("POST", "/api/daemon/jobs", json=body.to_wire())
        return JobCreateResult.model_validate(result)

    async def sweep_stale(self, request: SweepRequest) -> SweepResult:
        result = await self._request("POST", "/api/daemon/jobs/sweep-stale", json=request.to_wire())
        return SweepResult.model_validate(result)

    # ------------------------------------------------------------------
    # project state
    # ------------------------------------------------------------------

    async def get_creation_snapshot(self, project_id: str) -> CreationSnapshot:
        payload = await self._request("GET", f"/api/daemon/projects/{project_id}/creation-snapshot")
        return CreationSnapshot.model_validate(payload)

    async def get_transcription_snapshot(self, project_id: str) -> TranscriptionSnapshot:
        payload = await self._request("GET", f"/api/daemon/projects/{project_id}/transcription-snapshot")
        return TranscriptionSnapshot.model_validate(payload)

    async def get_script(self, project_id: str, language: Optional[str] = None) -> Optional[str]:
        params = {"language": language} if language else None
        payload = await self._request("GET", f"/api/daemon/projects/{project_id}/script", params=params)
        return payload.get("text") if payload else None

    async def upsert_script(self, project_id: str, text: str, language: Optional[str] = None) -> None:
        body = ScriptPayload(text=text, language_code=language)
        await self._request("POST", f"/api/daemon/projects/{project_id}/script", json=body.to_wire())

    @_retry_status_write
    async def set_status(
        self,
        project_id: str,
        status: ProjectStatus,
        message: Optional[str] = None,
        extra: Optional[StatusExtra | dict] = None,
    ) -> None:
        if isinstance(extra, StatusExtra):
            extra = extra.to_wire(exclude_none=True)
        body = {"status": ProjectStatus(status).value, "message": message, "extra": extra}
        logger.info("POST status %s -> %s (%s)", project_id, ProjectStatus(status).value, message or "")
        await self._request("POST", f"/api/daemon/projects/{project_id}/status", json=body)

    async def get_language_progress(self, project_id: str) -> LanguageProgressAggregate:
        payload = await self._request("GET", f"/api/daemon/projects/{project_id}/language-progress")
        return LanguageProgressAggregate.model_validate(payload)

    async def update_language_progress(
        self, project_id: str, update: LanguageProgressUpdate
    ) -> LanguageProgressAggregate:
        body = update.model_dump(by_alias=True, mode="json", include=update.model_fields_set | {"language_code"})
        payload = await self._request(
            "POST", f"/api/daemon/projects/{project_id}/language-progress", json=body
        )
        return LanguageProgressAggregate.model_validate(payload)

    # ------------------------------------------------------------------
    # assets
    # ------------------------------------------------------------------

    async def upload_asset(
        self,
        project_id: str,
        kind: AssetKind,
        file_path: Path,
        *,
        is_final: bool = False,
        language: Optional[str] = None,
    ) -> RegisteredAsset:
        """Upload a local file through storage and register it with the project.

        Flow: request a signed grant from the API, stream the file to the
        storage service, then register the stored path with the API. When the
        storage host does not know the project yet (separate hosts with
        replication lag), the upload is retried against the API host.
        """
        kind = AssetKind(kind)
        path = Path(file_path).resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Unable to access asset at {path}")
        mime = guess_mime(path)
        size = path.stat().st_size

        grant_payload = await self._request(
            "POST",
            "/api/storage/grant",
            json=StorageGrantRequest(
                project_id=project_id, kind=kind, max_bytes=max(size, 1), mime_types=[mime]
            ).to_wire(),
        )
        grant = StorageGrant.model_validate(grant_payload)
        if size > grant.max_bytes:
            raise UploadRejected(f"File too large for granted upload (max {grant.max_bytes} bytes)")
        if grant.mime_types and mime not in grant.mime_types:
            raise UploadRejected(f"Mime type {mime} not allowed by grant")

        form = {"type": kind.value, "data": grant.data, "signature": grant.signature}
        if kind == AssetKind.video:
            form["isFinal"] = "true" if is_final else "false"
        if language:
            form["languageCode"] = language

        async def perform_upload(client: httpx.AsyncClient) -> StorageUpload:
            with open(path, "rb") as fh:
                result = await self._request(
                    "POST",
                    f"/api/storage/projects/{project_id}/assets",
                    client=client,
                    data=form,
                    files={"file": (path.name, fh, mime)},
                )
            return StorageUpload.model_validate(result)

        try:
            stored = await perform_upload(self.storage_client)
        except ControlPlaneError as e:
            different_hosts = self.settings.api.storage_url != self.settings.api.base_url
            if e.status_code == 404 and "Project not found" in e.message and different_hosts:
                logger.warning(
                    f"Storage upload for project {project_id} falling back to API host: {e.message}"
                )
                stored = await perform_upload(self.client)
            else:
                raise

        registration = AssetRegistration(
            type=kind,
            path=stored.path,
            url=stored.url,
            is_final=is_final if kind == AssetKind.video else False,
            local_path=str(path),
            language_code=language,
        )
        registered = await self._request(
            "POST", f"/api/daemon/projects/{project_id}/assets", json=registration.to_wire()
        )
        asset = RegisteredAsset.model_validate(registered)
        logger.info(f"Uploaded {kind.value} asset for project {project_id}: {asset.path}")
        return asset

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------

    async def admin_create_project(self, data: ProjectCreate) -> ProjectSummary:
        payload = await self._request("POST", "/api/admin/projects", json=data.to_wire())
        return ProjectSummary.model_validate(payload)

    async def admin_get_project(self, project_id: str) -> ProjectSummary:
        payload = await self._request("GET", f"/api/admin/projects/{project_id}")
        return ProjectSummary.model_validate(payload)

    async def admin_set_status(self, project_id: str, request: AdminStatusUpdate) -> AdminStatusResult:
        payload = await self._request(
            "POST", f"/api/admin/projects/{project_id}/status", json=request.to_wire()
        )
        return AdminStatusResult.model_validate(payload)

    async def admin_language_progress(self, project_id: str) -> LanguageProgressAggregate:
        payload = await self._request("GET", f"/api/admin/projects/{project_id}/language-progress")
        return LanguageProgressAggregate.model_validate(payload)
