"""Persistence operations behind the daemon, storage and admin HTTP routes.

Every method opens its own session from the injected factory and commits
before returning, so one store instance can be shared by concurrent requests.
Ownership rules live here rather than in the route handlers: a project locked
by one daemon rejects writes from any other daemon with ``ProjectLocked``.
"""

import logging
import re
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from reelforge.db.models import (
    AudioCandidate,
    ImageAsset,
    Job,
    Project,
    ProjectLanguageProgress,
    ProjectStatusHistory,
    Script,
    VideoAsset,
    utcnow,
)
from reelforge.orchestrator.progress import aggregate_progress, row_to_wire
from reelforge.orchestrator.state import (
    ACTIONABLE_STATUSES,
    JOB_TYPE_FOR_STATUS,
    build_progress_reset_plan,
    downstream_job_types,
    job_type_for_status,
)
from reelforge.schemas.extras import TranscriptionExtra, validate_status_extra
from reelforge.schemas.status import (
    TERMINAL_STATUSES,
    AssetKind,
    JobStatus,
    ProjectStatus,
)
from reelforge.schemas.wire import (
    AdminStatusResult,
    AdminStatusUpdate,
    AssetRegistration,
    CreationSnapshot,
    EligibleProject,
    FinalVoiceover,
    JobCreate,
    JobCreateResult,
    LanguageProgressAggregate,
    LanguageProgressUpdate,
    ProjectCreate,
    ProjectSummary,
    QueuedJob,
    RegisteredAsset,
    ScriptPayload,
    ScriptResponse,
    StatusUpdate,
    SweepRequest,
    SweepResult,
    TranscriptionSnapshot,
    normalize_language_code,
)

logger = logging.getLogger(__name__)

LANGUAGE_CODE_PATTERN = re.compile(r"^[a-z0-9-]+$")
ACTIVE_JOB_STATUSES = (JobStatus.queued.value, JobStatus.running.value)
ADMIN_HISTORY_MESSAGE = "Updated via Admin UI"


class StoreError(Exception):
    """Base error; ``status_code`` is the HTTP status the API answers with."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPayload(StoreError):
    status_code = 400


class ProjectLocked(StoreError):
    status_code = 403


class ProjectNotFound(StoreError):
    status_code = 404


class JobNotFound(StoreError):
    status_code = 404


def _expected_job_type():
    """SQL CASE mapping ``projects.status`` to the job type it expects."""
    return case(
        {status.value: job_type.value for status, job_type in JOB_TYPE_FOR_STATUS.items()},
        value=Project.status,
        else_=None,
    )


def _owned_by_or_free(daemon_id: str):
    return or_(Project.current_daemon_id.is_(None), Project.current_daemon_id == daemon_id)


def _job_to_wire(job: Job) -> QueuedJob:
    return QueuedJob(
        id=job.id,
        project_id=job.project_id,
        user_id=job.user_id,
        type=job.type,
        status=job.status,
        payload=job.payload,
        created_at=job.created_at,
    )


class ControlPlaneStore:
    """Control-plane state: projects, jobs, language progress and assets."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _load_project(
        self,
        session: AsyncSession,
        project_id: str,
        daemon_id: Optional[str] = None,
    ) -> Project:
        project = await session.get(Project, project_id)
        if project is None or project.deleted_at is not None:
            raise ProjectNotFound("Project not found")
        if daemon_id is not None and project.current_daemon_id and project.current_daemon_id != daemon_id:
            raise ProjectLocked("Project locked by another daemon")
        return project

    async def _ensure_progress_rows(
        self, session: AsyncSession, project: Project, extra_languages: tuple[str, ...] = ()
    ) -> list[ProjectLanguageProgress]:
        result = await session.execute(
            select(ProjectLanguageProgress).where(ProjectLanguageProgress.project_id == project.id)
        )
        rows = {row.language_code: row for row in result.scalars()}
        wanted = list(project.languages or []) + [code for code in extra_languages if code not in (project.languages or [])]
        for code in wanted:
            if code not in rows:
                row = ProjectLanguageProgress(
                    project_id=project.id,
                    language_code=code,
                    transcription_done=False,
                    captions_done=False,
                    video_parts_done=False,
                    final_video_done=False,
                    disabled=False,
                )
                session.add(row)
                rows[code] = row
        await session.flush()
        order = {code: index for index, code in enumerate(project.languages or [])}
        return sorted(rows.values(), key=lambda r: (order.get(r.language_code, len(order)), r.language_code))

    def _progress_response(self, rows: list[ProjectLanguageProgress]) -> LanguageProgressAggregate:
        wire_rows = [row_to_wire(row) for row in rows]
        return LanguageProgressAggregate(progress=wire_rows, aggregate=aggregate_progress(wire_rows))

    @staticmethod
    def _validate_language(code: Optional[str]) -> str:
        normalized = normalize_language_code(code)
        if not normalized or not LANGUAGE_CODE_PATTERN.match(normalized):
            raise InvalidPayload(f"Invalid language code: {code!r}")
        return normalized

    # ------------------------------------------------------------------
    # projects
    # ------------------------------------------------------------------

    async def create_project(self, data: ProjectCreate) -> ProjectSummary:
        languages = [self._validate_language(code) for code in data.languages]
        async with self._session_factory() as session:
            project = Project(
                user_id=data.user_id,
                status=ProjectStatus.New.value,
                languages=languages,
                prompt=data.prompt,
                raw_script=data.raw_script,
                settings=data.settings.to_wire(),
            )
            session.add(project)
            await session.flush()
            session.add(ProjectStatusHistory(project_id=project.id, status=project.status, message="Project created"))
            await session.commit()
            logger.info("Created project %s (languages=%s)", project.id, languages)
            return self._summary(project)

    async def get_project(self, project_id: str) -> ProjectSummary:
        async with self._session_factory() as session:
            return self._summary(await self._load_project(session, project_id))

    @staticmethod
    def _summary(project: Project) -> ProjectSummary:
        return ProjectSummary(
            id=project.id,
            status=project.status,
            user_id=project.user_id,
            languages=list(project.languages or []),
            current_daemon_id=project.current_daemon_id,
            final_video_path=project.final_video_path,
            final_video_url=project.final_video_url,
        )

    async def list_history(self, project_id: str) -> list[ProjectStatusHistory]:
        async with self._session_factory() as session:
            await self._load_project(session, project_id)
            result = await session.execute(
                select(ProjectStatusHistory)
                .where(ProjectStatusHistory.project_id == project_id)
                .order_by(ProjectStatusHistory.created_at)
            )
            return list(result.scalars())

    async def eligible_projects(self, daemon_id: str, limit: int) -> list[EligibleProject]:
        """Actionable projects this daemon may work, least recently touched first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Project)
                .where(
                    Project.status.in_([s.value for s in ACTIONABLE_STATUSES]),
                    Project.deleted_at.is_(None),
                    _owned_by_or_free(daemon_id),
                )
                .order_by(Project.updated_at)
                .limit(limit)
            )
            return [
                EligibleProject(
                    id=p.id,
                    status=p.status,
                    user_id=p.user_id,
                    created_at=p.created_at,
                    updated_at=p.updated_at,
                )
                for p in result.scalars()
            ]

    async def creation_snapshot(self, project_id: str, daemon_id: str) -> CreationSnapshot:
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            payload = dict(project.settings or {})
            payload.update(
                projectId=project.id,
                status=project.status,
                userId=project.user_id,
                prompt=project.prompt,
                rawScript=project.raw_script,
                languages=list(project.languages or []),
            )
            return CreationSnapshot.model_validate(payload)

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    async def list_queue(self, daemon_id: str, limit: int) -> list[QueuedJob]:
        """Queued jobs the caller could claim right now, oldest first."""
        running = aliased(Job)
        has_running = (
            select(running.id)
            .where(running.project_id == Job.project_id, running.status == JobStatus.running.value)
            .correlate(Job)
            .exists()
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Job)
                .join(Project, Project.id == Job.project_id)
                .where(
                    Job.status == JobStatus.queued.value,
                    Project.deleted_at.is_(None),
                    _owned_by_or_free(daemon_id),
                    Job.type == _expected_job_type(),
                    ~has_running,
                )
                .order_by(Job.created_at, Job.id)
                .limit(limit)
            )
            return [_job_to_wire(job) for job in result.scalars()]

    async def claim_job(self, job_id: str, daemon_id: str) -> bool:
        """Atomically move a queued job to running and lock its project.

        The job update carries every claim condition in its WHERE clause:
        queued job, job type matching the project status, project not deleted
        and unowned or owned by the caller, and no other running job on the
        project. The project lock is taken in the same transaction; if either
        update touches no row the whole claim is rolled back.
        """
        running = aliased(Job)
        project_ready = (
            select(Project.id)
            .where(
                Project.id == Job.project_id,
                Project.deleted_at.is_(None),
                _owned_by_or_free(daemon_id),
                Job.type == _expected_job_type(),
            )
            .correlate(Job)
            .exists()
        )
        has_running = (
            select(running.id)
            .where(running.project_id == Job.project_id, running.status == JobStatus.running.value)
            .correlate(Job)
            .exists()
        )
        async with self._session_factory() as session:
            claimed = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.queued.value, project_ready, ~has_running)
                .values(status=JobStatus.running.value, daemon_id=daemon_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await session.rollback()
                return False

            project_id = await session.scalar(select(Job.project_id).where(Job.id == job_id))
            locked = await session.execute(
                update(Project)
                .where(Project.id == project_id, _owned_by_or_free(daemon_id))
                .values(current_daemon_id=daemon_id, current_daemon_locked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if locked.rowcount != 1:
                await session.rollback()
                return False

            await session.commit()
            logger.info("Daemon %s claimed job %s (project %s)", daemon_id, job_id, project_id)
            return True

    async def job_exists(self, project_id: str, job_type: str, daemon_id: str) -> bool:
        async with self._session_factory() as session:
            await self._load_project(session, project_id, daemon_id)
            found = await session.scalar(
                select(Job.id)
                .where(
                    Job.project_id == project_id,
                    Job.type == job_type,
                    Job.status.in_(ACTIVE_JOB_STATUSES),
                )
                .limit(1)
            )
            return found is not None

    async def create_job(self, data: JobCreate, daemon_id: str) -> JobCreateResult:
        """Queue a job unless it is stale for the project status or already active.

        Jobs carrying a ``languageCode`` payload are deduplicated per language,
        other jobs per (project, type).
        """
        async with self._session_factory() as session:
            project = await self._load_project(session, data.project_id, daemon_id)
            expected = job_type_for_status(project.status)
            if expected is None or expected != data.type:
                logger.info(
                    "Skipping %s job for project %s in status %s", data.type.value, project.id, project.status
                )
                return JobCreateResult(created=False, reason="status_mismatch")

            language = normalize_language_code((data.payload or {}).get("languageCode"))
            result = await session.execute(
                select(Job).where(
                    Job.project_id == project.id,
                    Job.type == data.type.value,
                    Job.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            for active in result.scalars():
                active_language = normalize_language_code((active.payload or {}).get("languageCode"))
                if active_language == language:
                    return JobCreateResult(created=False, job_id=active.id, reason="exists")

            job = Job(
                project_id=project.id,
                user_id=data.user_id,
                type=data.type.value,
                status=JobStatus.queued.value,
                payload=data.payload,
            )
            session.add(job)
            await session.commit()
            logger.info("Queued %s job %s for project %s", job.type, job.id, project.id)
            return JobCreateResult(created=True, job_id=job.id)

    async def set_job_status(self, job_id: str, status: JobStatus) -> None:
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFound("Job not found")
            job.status = JobStatus(status).value
            await session.commit()

    async def get_job(self, job_id: str) -> QueuedJob:
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFound("Job not found")
            return _job_to_wire(job)

    async def list_jobs(self, project_id: str) -> list[QueuedJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Job).where(Job.project_id == project_id).order_by(Job.created_at, Job.id)
            )
            return [_job_to_wire(job) for job in result.scalars()]

    async def sweep_stale(self, request: SweepRequest) -> SweepResult:
        """Fail jobs whose last update is older than ``ttl_minutes``."""
        cutoff = utcnow() - timedelta(minutes=request.ttl_minutes)
        statuses = [JobStatus.running.value]
        if request.include_queued:
            statuses.append(JobStatus.queued.value)
        async with self._session_factory() as session:
            stmt = select(Job.id).where(Job.status.in_(statuses), Job.updated_at < cutoff)
            if request.project_id:
                stmt = stmt.where(Job.project_id == request.project_id)
            stmt = stmt.order_by(Job.updated_at).limit(request.limit)
            job_ids = list((await session.execute(stmt)).scalars())
            updated = 0
            if job_ids and not request.dry_run:
                result = await session.execute(
                    update(Job)
                    .where(Job.id.in_(job_ids), Job.status.in_(statuses))
                    .values(status=JobStatus.failed.value)
                    .execution_options(synchronize_session=False)
                )
                updated = result.rowcount
                await session.commit()
                logger.warning("Swept %d stale job(s) older than %d minutes", updated, request.ttl_minutes)
            return SweepResult(matched=len(job_ids), updated=updated, dry_run=request.dry_run, job_ids=job_ids)

    # ------------------------------------------------------------------
    # scripts
    # ------------------------------------------------------------------

    async def get_script(self, project_id: str, language: Optional[str], daemon_id: str) -> ScriptResponse:
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            code = normalize_language_code(language) or project.primary_language
            text = await session.scalar(
                select(Script.text).where(Script.project_id == project.id, Script.language_code == code)
            )
            return ScriptResponse(text=text, language_code=code)

    async def upsert_script(self, project_id: str, payload: ScriptPayload, daemon_id: str) -> ScriptResponse:
        if not payload.text.strip():
            raise InvalidPayload("Script text is required")
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            code = self._validate_language(payload.language_code or project.primary_language)
            script = await session.scalar(
                select(Script).where(Script.project_id == project.id, Script.language_code == code)
            )
            if script is None:
                session.add(Script(project_id=project.id, language_code=code, text=payload.text))
            else:
                script.text = payload.text
            await session.commit()
            return ScriptResponse(text=payload.text, language_code=code)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def set_project_status(self, project_id: str, update_: StatusUpdate, daemon_id: str) -> ProjectSummary:
        """Write a daemon status transition, its history entry and side effects."""
        try:
            extra = validate_status_extra(update_.status, update_.extra)
        except (ValidationError, TypeError) as e:
            raise InvalidPayload(f"Invalid extra for status {update_.status.value}: {e}") from e

        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            project.status = update_.status.value

            if isinstance(extra, TranscriptionExtra) and extra.final_voiceovers:
                await self._apply_final_voiceovers(session, project, extra)

            if update_.status == ProjectStatus.ProcessAudio:
                primary_text = await session.scalar(
                    select(Script.text).where(
                        Script.project_id == project.id,
                        Script.language_code == project.primary_language,
                    )
                )
                if primary_text:
                    project.final_script_text = primary_text

            session.add(
                ProjectStatusHistory(
                    project_id=project.id,
                    status=project.status,
                    message=update_.message,
                    extra=extra.to_wire(exclude_none=True) if extra is not None else None,
                )
            )

            if update_.status in TERMINAL_STATUSES:
                project.current_daemon_id = None
                project.current_daemon_locked_at = None

            await session.commit()
            logger.info("Project %s -> %s (%s)", project.id, project.status, update_.message or "")
            return self._summary(project)

    async def _apply_final_voiceovers(
        self, session: AsyncSession, project: Project, extra: TranscriptionExtra
    ) -> None:
        for language, candidate_id in extra.final_voiceovers.items():
            code = normalize_language_code(language)
            await session.execute(
                update(AudioCandidate)
                .where(AudioCandidate.project_id == project.id, AudioCandidate.language_code == code)
                .values(is_final=(AudioCandidate.id == candidate_id))
                .execution_options(synchronize_session=False)
            )
        chosen_id = extra.final_voiceover_id or extra.final_voiceovers.get(project.primary_language)
        if chosen_id is None:
            chosen_id = next(iter(extra.final_voiceovers.values()))
        chosen = await session.get(AudioCandidate, chosen_id)
        if chosen is not None:
            project.final_voiceover_id = chosen.id
            project.final_voiceover_path = chosen.path
            project.final_voiceover_url = chosen.public_url

    async def admin_set_status(self, project_id: str, request: AdminStatusUpdate) -> AdminStatusResult:
        """Operator status override with optional scoped progress rollback.

        No job is created here; the scheduler recreates the job for the new
        status on its next tick.
        """
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id)
            target = request.status
            project.status = target.value
            session.add(
                ProjectStatusHistory(
                    project_id=project.id,
                    status=target.value,
                    message=request.message or ADMIN_HISTORY_MESSAGE,
                )
            )
            if target in TERMINAL_STATUSES:
                project.current_daemon_id = None
                project.current_daemon_locked_at = None

            reset_languages: list[str] = []
            cleared_final = False
            if request.reset_progress:
                plan = build_progress_reset_plan(target)
                scoped = request.languages_to_reset
                if scoped is not None:
                    scoped = [self._validate_language(code) for code in scoped]
                # An explicit empty selection resets no language
                if not plan.empty and scoped != []:
                    rows = await self._ensure_progress_rows(session, project, tuple(scoped or ()))
                    for row in rows:
                        if scoped is None or row.language_code in scoped:
                            for column, value in plan.updates.items():
                                setattr(row, column, value)
                            reset_languages.append(row.language_code)
                    if plan.clear_final_video:
                        cleared_final = True
                        await self._clear_final_videos(session, project, scoped)

            cancelled = 0
            job_types = [t.value for t in downstream_job_types(target)]
            if job_types:
                result = await session.execute(
                    update(Job)
                    .where(
                        Job.project_id == project.id,
                        Job.type.in_(job_types),
                        Job.status.in_(ACTIVE_JOB_STATUSES),
                    )
                    .values(status=JobStatus.failed.value)
                    .execution_options(synchronize_session=False)
                )
                cancelled = result.rowcount

            await session.commit()
            logger.info(
                "Admin set project %s -> %s (reset=%s, cancelled_jobs=%d)",
                project.id, target.value, reset_languages, cancelled,
            )
            return AdminStatusResult(
                status=target,
                reset_languages=reset_languages,
                cleared_final_video=cleared_final,
                cancelled_jobs=cancelled,
            )

    async def _clear_final_videos(
        self, session: AsyncSession, project: Project, languages: Optional[list[str]]
    ) -> None:
        stmt = update(VideoAsset).where(VideoAsset.project_id == project.id, VideoAsset.is_final.is_(True))
        if languages is not None:
            stmt = stmt.where(VideoAsset.language_code.in_(languages))
        await session.execute(stmt.values(is_final=False).execution_options(synchronize_session=False))
        if languages is None or project.primary_language in languages:
            project.final_video_path = None
            project.final_video_url = None

    # ------------------------------------------------------------------
    # language progress
    # ------------------------------------------------------------------

    async def get_language_progress(self, project_id: str, daemon_id: Optional[str]) -> LanguageProgressAggregate:
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            rows = await self._ensure_progress_rows(session, project)
            await session.commit()
            return self._progress_response(rows)

    async def update_language_progress(
        self, project_id: str, update_: LanguageProgressUpdate, daemon_id: str
    ) -> LanguageProgressAggregate:
        code = self._validate_language(update_.language_code)
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            rows = await self._ensure_progress_rows(session, project, (code,))
            row = next(r for r in rows if r.language_code == code)
            for column, value in update_.changes().items():
                if column in ("failed_step", "failure_reason") or value is not None:
                    setattr(row, column, value)
            await session.commit()
            return self._progress_response(rows)

    # ------------------------------------------------------------------
    # assets
    # ------------------------------------------------------------------

    async def transcription_snapshot(self, project_id: str, daemon_id: str) -> TranscriptionSnapshot:
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            result = await session.execute(
                select(AudioCandidate)
                .where(AudioCandidate.project_id == project.id, AudioCandidate.is_final.is_(True))
                .order_by(AudioCandidate.created_at)
            )
            finals = list(result.scalars())
            final_map = {
                (c.language_code or project.primary_language): FinalVoiceover(
                    id=c.id, path=c.path, public_url=c.public_url, local_path=c.local_path
                )
                for c in finals
            }
            if project.final_voiceover_id:
                selection = next((c for c in finals if c.id == project.final_voiceover_id), None)
            else:
                selection = next(
                    (c for c in finals if (c.language_code or project.primary_language) == project.primary_language),
                    finals[0] if finals else None,
                )
            return TranscriptionSnapshot(
                final_voiceover_id=selection.id if selection else project.final_voiceover_id,
                local_path=selection.local_path if selection else None,
                storage_path=selection.path if selection else None,
                public_url=selection.public_url if selection else None,
                final_voiceovers=final_map,
            )

    async def register_asset(self, project_id: str, registration: AssetRegistration, daemon_id: str) -> RegisteredAsset:
        """Record an uploaded asset; a final video replaces the language's previous final."""
        language = normalize_language_code(registration.language_code)
        async with self._session_factory() as session:
            project = await self._load_project(session, project_id, daemon_id)
            if registration.type == AssetKind.audio:
                asset = AudioCandidate(
                    project_id=project.id,
                    language_code=language or project.primary_language,
                    path=registration.path,
                    public_url=registration.url,
                    local_path=registration.local_path,
                    is_final=False,
                )
            elif registration.type == AssetKind.image:
                asset = ImageAsset(
                    project_id=project.id,
                    path=registration.path,
                    public_url=registration.url,
                    local_path=registration.local_path,
                )
            else:
                language = language or project.primary_language
                if registration.is_final:
                    await session.execute(
                        update(VideoAsset)
                        .where(
                            VideoAsset.project_id == project.id,
                            VideoAsset.language_code == language,
                            VideoAsset.is_final.is_(True),
                        )
                        .values(is_final=False)
                        .execution_options(synchronize_session=False)
                    )
                    if language == project.primary_language:
                        project.final_video_path = registration.path
                        project.final_video_url = registration.url
                asset = VideoAsset(
                    project_id=project.id,
                    language_code=language,
                    path=registration.path,
                    public_url=registration.url,
                    local_path=registration.local_path,
                    is_final=registration.is_final,
                )
            session.add(asset)
            await session.commit()
            return RegisteredAsset(
                kind=registration.type,
                id=asset.id,
                path=asset.path,
                url=asset.public_url or "",
                is_final=registration.is_final if registration.type == AssetKind.video else None,
                language_code=getattr(asset, "language_code", None),
                local_path=asset.local_path,
            )

    async def list_video_assets(self, project_id: str) -> list[VideoAsset]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(VideoAsset).where(VideoAsset.project_id == project_id).order_by(VideoAsset.created_at)
            )
            return list(result.scalars())
