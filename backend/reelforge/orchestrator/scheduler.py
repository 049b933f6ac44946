"""Daemon poll loop with bounded concurrency.

Each tick:

1. compute free capacity (``max_concurrency`` minus tasks in flight)
2. list eligible projects and make sure each has a job for its status
3. list the visible queue and claim jobs until capacity is used
4. start one asyncio task per claimed job whose project is not in flight

Tasks run under ``asyncio.wait_for`` with the configured task timeout. The job
is marked ``done`` when the executor returns, ``failed`` when it raises or
times out.
"""

import asyncio
import contextlib
import logging
import signal
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from reelforge.client.control_plane import ControlPlaneClient
from reelforge.client.errors import ControlPlaneError
from reelforge.config import Settings
from reelforge.orchestrator.context import PhaseFailed
from reelforge.orchestrator.executor import PhaseExecutor
from reelforge.orchestrator.state import PER_LANGUAGE_JOB_STATUSES, job_type_for_status
from reelforge.schemas.extras import ErrorExtra
from reelforge.schemas.status import JobStatus, JobType, ProjectStatus
from reelforge.schemas.wire import EligibleProject, QueuedJob
from reelforge.services.toolchain import Toolchain
from reelforge.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 1.0

_CONTROL_PLANE_ERRORS = (ControlPlaneError, httpx.HTTPError)


@dataclass
class InFlightTask:
    job: QueuedJob
    task: asyncio.Task
    started_at: float


class Scheduler:
    """Polls the control plane and runs claimed jobs as asyncio tasks."""

    def __init__(self, settings: Settings, client: ControlPlaneClient, executor: PhaseExecutor):
        self.settings = settings
        self.client = client
        self.executor = executor
        self.in_flight: dict[str, InFlightTask] = {}
        self._stopping: Optional[asyncio.Event] = None

    @property
    def capacity(self) -> int:
        return self.settings.daemon.max_concurrency - len(self.in_flight)

    async def ensure_jobs(self, projects: list[EligibleProject]) -> None:
        """Create the expected job for every eligible project that has none.

        Projects already running here are skipped; their task moves them on.
        """
        for project in projects:
            if project.id in self.in_flight:
                continue
            job_type = job_type_for_status(project.status)
            if job_type is None:
                continue
            try:
                if project.status in PER_LANGUAGE_JOB_STATUSES:
                    await self._ensure_language_jobs(project, job_type)
                    continue
                if await self.client.job_exists(project.id, job_type):
                    continue
                await self._create_job(project, job_type)
            except _CONTROL_PLANE_ERRORS as e:
                logger.warning(f"Failed to ensure {job_type.value} job for project {project.id}: {e}")

    async def _ensure_language_jobs(self, project: EligibleProject, job_type: JobType) -> None:
        """One job per enabled language whose transcription is not done yet.

        ``create_job`` deduplicates per ``languageCode``, so languages that
        still have an active job are left alone. With nothing pending a single
        language-less job lets the phase advance the project.
        """
        state = await self.client.get_language_progress(project.id)
        pending = [row.language_code for row in state.progress if not row.disabled and not row.transcription_done]
        if not pending:
            await self._create_job(project, job_type)
            return
        for language in pending:
            await self._create_job(project, job_type, {"languageCode": language})

    async def _create_job(self, project: EligibleProject, job_type: JobType, payload: Optional[dict] = None) -> None:
        result = await self.client.create_job(project.id, project.user_id, job_type, payload)
        if result.created:
            logger.info(f"Created {job_type.value} job {result.job_id} for project {project.id}")
        else:
            logger.debug(f"No {job_type.value} job created for {project.id}: {result.reason}")

    async def claim_jobs(self, limit: int) -> list[QueuedJob]:
        claimed: list[QueuedJob] = []
        for job in await self.client.queued_jobs(limit):
            if len(claimed) >= limit:
                break
            if job.project_id in self.in_flight:
                continue
            if await self.client.claim_job(job.id):
                logger.info(f"Claimed {job.type.value} job {job.id} for project {job.project_id}")
                claimed.append(job)
        return claimed

    async def tick(self) -> list[QueuedJob]:
        """Run one scheduling pass; returns the jobs started."""
        capacity = self.capacity
        if capacity <= 0:
            return []
        try:
            projects = await self.client.eligible_projects(capacity)
            await self.ensure_jobs(projects)
            jobs = await self.claim_jobs(capacity)
        except _CONTROL_PLANE_ERRORS as e:
            logger.error(f"Tick error: {e}")
            return []

        started = []
        for job in jobs:
            if job.project_id in self.in_flight:
                continue
            self.start_task(job)
            started.append(job)
        return started

    def start_task(self, job: QueuedJob) -> asyncio.Task:
        task = asyncio.create_task(self._run_task(job), name=f"job-{job.id}")
        self.in_flight[job.project_id] = InFlightTask(job=job, task=task, started_at=time.monotonic())
        return task

    async def _execute(self, job: QueuedJob) -> JobStatus:
        timeout = self.settings.daemon.task_timeout_seconds
        try:
            await asyncio.wait_for(self.executor.execute(job), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Task timeout after {timeout}s for job {job.id} (project {job.project_id})")
            try:
                await self.client.set_status(
                    job.project_id,
                    ProjectStatus.Error,
                    "Task timeout",
                    ErrorExtra(failed_step=job.type.value, error_log=f"Task exceeded {timeout}s"),
                )
            except _CONTROL_PLANE_ERRORS as e:
                logger.error(f"Failed to report timeout for project {job.project_id}: {e}")
            return JobStatus.failed
        except PhaseFailed:
            return JobStatus.failed
        except Exception as e:
            logger.error(f"Job {job.id} failed: {type(e).__name__}: {e}", exc_info=True)
            return JobStatus.failed
        return JobStatus.done

    async def _run_task(self, job: QueuedJob) -> None:
        reason = (job.payload or {}).get("reason")
        logger.info(
            f"Starting {job.type.value} job {job.id} for project {job.project_id}"
            + (f" (reason={reason})" if reason else "")
        )
        try:
            status = await self._execute(job)
            try:
                await self.client.set_job_status(job.id, status)
            except _CONTROL_PLANE_ERRORS as e:
                logger.error(f"Failed to mark job {job.id} {status.value}: {e}")
            logger.info(f"Job {job.id} finished: {status.value}")
        finally:
            self.in_flight.pop(job.project_id, None)

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()

    async def run(self, once: bool = False) -> None:
        """Tick until ``stop()`` is called, then wait briefly for in-flight tasks."""
        self._stopping = asyncio.Event()
        interval = self.settings.daemon.interval_ms / 1000
        logger.info(
            f"Daemon {self.client.daemon_id} polling every {interval:.2f}s "
            f"(max concurrency {self.settings.daemon.max_concurrency})"
        )
        while not self._stopping.is_set():
            await self.tick()
            if once:
                await self.drain()
                return
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
        await self.shutdown()

    async def drain(self) -> None:
        """Wait for every in-flight task to finish."""
        tasks = [entry.task for entry in self.in_flight.values()]
        if tasks:
            await asyncio.gather(*tasks)

    async def shutdown(self, grace: float = SHUTDOWN_GRACE_SECONDS) -> None:
        tasks = [entry.task for entry in self.in_flight.values()]
        if not tasks:
            return
        logger.info(f"Waiting up to {grace:.1f}s for {len(tasks)} in-flight task(s)")
        _, pending = await asyncio.wait(tasks, timeout=grace)
        if pending:
            logger.warning(f"{len(pending)} task(s) still running at shutdown")


async def run_daemon(
    settings: Settings,
    toolchain: Toolchain,
    *,
    once: bool = False,
    client: Optional[ControlPlaneClient] = None,
) -> Scheduler:
    """Verify access to the control plane and run the poll loop until stopped."""
    problems = toolchain.validate()
    if problems:
        raise RuntimeError("Toolchain not ready: " + "; ".join(problems))

    workspaces = WorkspaceManager(settings.workspaces.ensure_projects_dir())
    async with (client or ControlPlaneClient(settings)) as cp:
        await cp.verify_services_access()
        scheduler = Scheduler(settings, cp, PhaseExecutor(settings, cp, toolchain, workspaces))
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, scheduler.stop)
        await scheduler.run(once=once)
    return scheduler
