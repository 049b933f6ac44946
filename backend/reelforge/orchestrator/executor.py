"""Phase dispatch for claimed jobs.

The executor fetches a fresh creation snapshot for every job and dispatches on
the project's current status, so a job always runs the phase the project is
actually in. Phases are idempotent: completed languages are skipped and
existing outputs reused, which makes re-running a job after a crash safe.
"""

import logging
import time
from typing import Awaitable, Callable, Dict

from reelforge.client.control_plane import ControlPlaneClient
from reelforge.config import Settings
from reelforge.orchestrator.context import PhaseContext, PhaseFailed
from reelforge.orchestrator.state import job_type_for_status
from reelforge.phases.audio import run_audio_phase
from reelforge.phases.captions import run_captions_phase
from reelforge.phases.images import run_images_phase
from reelforge.phases.metadata import run_metadata_phase
from reelforge.phases.script import run_script_phase
from reelforge.phases.transcription import run_transcription_phase
from reelforge.phases.video_main import run_video_main_phase
from reelforge.phases.video_parts import run_video_parts_phase
from reelforge.schemas.extras import ErrorExtra
from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import QueuedJob
from reelforge.services.toolchain import Toolchain
from reelforge.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

PhaseHandler = Callable[[PhaseContext], Awaitable[None]]

PHASE_HANDLERS: Dict[ProjectStatus, PhaseHandler] = {
    ProjectStatus.New: run_script_phase,
    ProjectStatus.ProcessScript: run_script_phase,
    ProjectStatus.ProcessAudio: run_audio_phase,
    ProjectStatus.ProcessTranscription: run_transcription_phase,
    ProjectStatus.ProcessMetadata: run_metadata_phase,
    ProjectStatus.ProcessCaptionsVideo: run_captions_phase,
    ProjectStatus.ProcessImagesGeneration: run_images_phase,
    ProjectStatus.ProcessVideoPartsGeneration: run_video_parts_phase,
    ProjectStatus.ProcessVideoMain: run_video_main_phase,
}


def _preview(text, limit: int = 80) -> str:
    if not text:
        return ""
    flat = " ".join(str(text).split())
    return flat if len(flat) <= limit else f"{flat[: limit - 3]}..."


class PhaseExecutor:
    """Runs the phase matching a project's status for a claimed job."""

    def __init__(
        self,
        settings: Settings,
        client: ControlPlaneClient,
        toolchain: Toolchain,
        workspaces: WorkspaceManager,
    ):
        self.settings = settings
        self.client = client
        self.toolchain = toolchain
        self.workspaces = workspaces

    async def execute(self, job: QueuedJob) -> bool:
        """Run the phase for ``job``.

        Returns:
            False when the job does not match the project's status and was
            skipped, True when a phase ran to completion.

        Raises:
            PhaseFailed: The phase reported its own failure.
            Exception: Anything unexpected, after the project is set to Error.
        """
        snapshot = await self.client.get_creation_snapshot(job.project_id)
        handler = PHASE_HANDLERS.get(snapshot.status)
        expected = job_type_for_status(snapshot.status)
        if handler is None or expected != job.type:
            logger.warning(
                f"Skipping job {job.id}: type {job.type.value} does not match "
                f"project {job.project_id} status {snapshot.status.value}"
            )
            return False

        ctx = PhaseContext(
            settings=self.settings,
            client=self.client,
            toolchain=self.toolchain,
            workspaces=self.workspaces,
            snapshot=snapshot,
            job=job,
        )
        logger.info(
            f"Executing {job.type.value} for project {job.project_id} "
            f"(status={snapshot.status.value}, languages={','.join(snapshot.languages)})"
        )
        if snapshot.creation_guidance:
            logger.debug(f"Creation guidance: {_preview(snapshot.creation_guidance)}")
        if snapshot.avoidance_guidance:
            logger.debug(f"Avoidance guidance: {_preview(snapshot.avoidance_guidance)}")

        start = time.monotonic()
        try:
            await handler(ctx)
        except PhaseFailed:
            logger.info(f"Phase {job.type.value} failed for project {job.project_id} (reported)")
            raise
        except Exception as e:
            logger.error(
                f"Executor crashed on project {job.project_id}: {type(e).__name__}: {e}", exc_info=True
            )
            await self.client.set_status(
                job.project_id,
                ProjectStatus.Error,
                "Executor crashed",
                ErrorExtra(failed_step=job.type.value, error_log=f"{type(e).__name__}: {e}"),
            )
            raise
        logger.info(f"Phase {job.type.value} completed in {time.monotonic() - start:.2f}s")
        return True
