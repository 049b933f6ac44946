"""State machine constants and transition logic for the project pipeline.

Defines the ordered status chain, the job type expected for each actionable
status, and the progress-reset plans used when an operator rolls a project
back to an earlier stage.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from reelforge.schemas.status import JobType, ProjectStatus

# Project statuses in pipeline order
STATUS_ORDER: tuple[ProjectStatus, ...] = (
    ProjectStatus.New,
    ProjectStatus.ProcessScript,
    ProjectStatus.ProcessScriptValidate,
    ProjectStatus.ProcessAudio,
    ProjectStatus.ProcessAudioValidate,
    ProjectStatus.ProcessTranscription,
    ProjectStatus.ProcessMetadata,
    ProjectStatus.ProcessCaptionsVideo,
    ProjectStatus.ProcessImagesGeneration,
    ProjectStatus.ProcessVideoPartsGeneration,
    ProjectStatus.ProcessVideoMain,
    ProjectStatus.Done,
)

# Job type a daemon must hold to work a project in the given status
JOB_TYPE_FOR_STATUS: Dict[ProjectStatus, JobType] = {
    ProjectStatus.New: JobType.script,
    ProjectStatus.ProcessScript: JobType.script,
    ProjectStatus.ProcessAudio: JobType.audio,
    ProjectStatus.ProcessTranscription: JobType.transcription,
    ProjectStatus.ProcessMetadata: JobType.metadata,
    ProjectStatus.ProcessCaptionsVideo: JobType.captions_video,
    ProjectStatus.ProcessImagesGeneration: JobType.images,
    ProjectStatus.ProcessVideoPartsGeneration: JobType.video_parts,
    ProjectStatus.ProcessVideoMain: JobType.video_main,
}

# Statuses the scheduler looks at; validation gates wait for a human
ACTIONABLE_STATUSES = frozenset(JOB_TYPE_FOR_STATUS)

# Statuses that run one job per pending language, keyed by ``languageCode``
PER_LANGUAGE_JOB_STATUSES = frozenset({ProjectStatus.ProcessTranscription})

# Stage to status the job type runs under
STATUS_FOR_JOB_TYPE: Dict[JobType, ProjectStatus] = {
    JobType.script: ProjectStatus.ProcessScript,
    JobType.audio: ProjectStatus.ProcessAudio,
    JobType.transcription: ProjectStatus.ProcessTranscription,
    JobType.metadata: ProjectStatus.ProcessMetadata,
    JobType.captions_video: ProjectStatus.ProcessCaptionsVideo,
    JobType.images: ProjectStatus.ProcessImagesGeneration,
    JobType.video_parts: ProjectStatus.ProcessVideoPartsGeneration,
    JobType.video_main: ProjectStatus.ProcessVideoMain,
}

# Language-progress flag names, keyed by their wire name
PROGRESS_FLAGS = {
    "transcriptionDone": "transcription_done",
    "captionsDone": "captions_done",
    "videoPartsDone": "video_parts_done",
    "finalVideoDone": "final_video_done",
}

_ALL_FLAGS = ("transcriptionDone", "captionsDone", "videoPartsDone", "finalVideoDone")

# Flags cleared when rolling back to a status
PROGRESS_RESET_FIELDS: Dict[ProjectStatus, tuple[str, ...]] = {
    ProjectStatus.New: _ALL_FLAGS,
    ProjectStatus.ProcessScript: _ALL_FLAGS,
    ProjectStatus.ProcessScriptValidate: _ALL_FLAGS,
    ProjectStatus.ProcessAudio: _ALL_FLAGS,
    ProjectStatus.ProcessAudioValidate: _ALL_FLAGS,
    ProjectStatus.ProcessTranscription: _ALL_FLAGS,
    ProjectStatus.ProcessMetadata: ("captionsDone", "videoPartsDone", "finalVideoDone"),
    ProjectStatus.ProcessCaptionsVideo: ("captionsDone", "videoPartsDone", "finalVideoDone"),
    ProjectStatus.ProcessImagesGeneration: ("videoPartsDone", "finalVideoDone"),
    ProjectStatus.ProcessVideoPartsGeneration: ("videoPartsDone", "finalVideoDone"),
    ProjectStatus.ProcessVideoMain: ("finalVideoDone",),
}


@dataclass(frozen=True)
class ProgressResetPlan:
    """Column updates applied to each language row during a rollback."""

    updates: Dict[str, object] = field(default_factory=dict)
    clear_final_video: bool = False

    @property
    def empty(self) -> bool:
        return not self.updates


def job_type_for_status(status: ProjectStatus | str) -> Optional[JobType]:
    """Return the job type expected for ``status``, or None for non-actionable statuses."""
    try:
        return JOB_TYPE_FOR_STATUS.get(ProjectStatus(status))
    except ValueError:
        return None


def status_index(status: ProjectStatus) -> int:
    """Position of ``status`` in the pipeline, or -1 for off-chain statuses."""
    try:
        return STATUS_ORDER.index(ProjectStatus(status))
    except ValueError:
        return -1


def downstream_statuses(status: ProjectStatus) -> list[ProjectStatus]:
    """Return ``status`` and every status after it on the pipeline chain.

    Args:
        status: Rollback target.

    Returns:
        Ordered statuses from ``status`` through ``Done``; empty for Error and
        Cancelled.
    """
    index = status_index(status)
    if index < 0:
        return []
    return list(STATUS_ORDER[index:])


def downstream_job_types(status: ProjectStatus) -> list[JobType]:
    """Job types belonging to ``status`` or any later stage, without duplicates."""
    types: list[JobType] = []
    for candidate in downstream_statuses(status):
        job_type = JOB_TYPE_FOR_STATUS.get(candidate)
        if job_type is not None and job_type not in types:
            types.append(job_type)
    return types


def build_progress_reset_plan(status: ProjectStatus) -> ProgressResetPlan:
    """Build the per-language reset applied when rolling back to ``status``.

    Every reset also re-enables the language and clears its failure marker.
    Terminal statuses have no plan.
    """
    fields = PROGRESS_RESET_FIELDS.get(ProjectStatus(status))
    if not fields:
        return ProgressResetPlan()
    updates: Dict[str, object] = {PROGRESS_FLAGS[name]: False for name in fields}
    updates.update(disabled=False, failed_step=None, failure_reason=None)
    return ProgressResetPlan(
        updates=updates,
        clear_final_video="finalVideoDone" in fields,
    )
