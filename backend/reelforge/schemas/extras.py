"""Per-status ``extra`` payloads attached to status updates and history entries.

The ``extra`` object is a tagged union keyed by the target project status: each
status accepts exactly one model, and unknown keys are rejected so a typo in a
phase never silently lands in the history table.
"""

from typing import Any, Optional

from pydantic import ConfigDict, Field

from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import WireModel


class StatusExtra(WireModel):
    model_config = ConfigDict(extra="forbid")


class NoteExtra(StatusExtra):
    """Free-form context for statuses that carry no phase output."""

    reason: Optional[str] = None
    request_text: Optional[str] = None
    previous_status: Optional[ProjectStatus] = None


class ScriptExtra(StatusExtra):
    primary_language: str
    script_languages: list[str] = Field(default_factory=list)
    translated_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)


class AudioValidateExtra(StatusExtra):
    audio_candidates: dict[str, list[str]] = Field(default_factory=dict)
    candidate_local_paths: dict[str, str] = Field(default_factory=dict)
    failed_languages: list[str] = Field(default_factory=list)


class TranscriptionExtra(StatusExtra):
    final_voiceovers: dict[str, str] = Field(default_factory=dict)
    final_voiceover_id: Optional[str] = None
    final_voiceover_local_paths: dict[str, str] = Field(default_factory=dict)
    audio_local_path: Optional[str] = None
    pending_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)


class MetadataExtra(StatusExtra):
    transcription_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)


class CaptionsExtra(StatusExtra):
    metadata_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)


class ImagesExtra(StatusExtra):
    ready_languages: list[str] = Field(default_factory=list)
    captions_skipped: bool = False
    failed_languages: list[str] = Field(default_factory=list)


class VideoPartsExtra(StatusExtra):
    images_dir: Optional[str] = None
    image_count: int = 0
    failed_languages: list[str] = Field(default_factory=list)


class VideoMainExtra(StatusExtra):
    video_parts_languages: list[str] = Field(default_factory=list)
    effect_name: Optional[str] = None
    failed_languages: list[str] = Field(default_factory=list)


class DoneExtra(StatusExtra):
    completed_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)
    video_logs: dict[str, str] = Field(default_factory=dict)
    final_video_paths: dict[str, str] = Field(default_factory=dict)
    final_url: Optional[str] = None
    effect_name: Optional[str] = None


class ErrorExtra(StatusExtra):
    failed_step: Optional[str] = None
    failed_language: Optional[str] = None
    log_path: Optional[str] = None
    command: Optional[str] = None
    error_log: Optional[str] = None
    pending_languages: list[str] = Field(default_factory=list)
    completed_languages: list[str] = Field(default_factory=list)
    failed_languages: list[str] = Field(default_factory=list)


STATUS_EXTRA_MODELS: dict[ProjectStatus, type[StatusExtra]] = {
    ProjectStatus.New: NoteExtra,
    ProjectStatus.ProcessScript: NoteExtra,
    ProjectStatus.ProcessScriptValidate: ScriptExtra,
    ProjectStatus.ProcessAudio: ScriptExtra,
    ProjectStatus.ProcessAudioValidate: AudioValidateExtra,
    ProjectStatus.ProcessTranscription: TranscriptionExtra,
    ProjectStatus.ProcessMetadata: MetadataExtra,
    ProjectStatus.ProcessCaptionsVideo: CaptionsExtra,
    ProjectStatus.ProcessImagesGeneration: ImagesExtra,
    ProjectStatus.ProcessVideoPartsGeneration: VideoPartsExtra,
    ProjectStatus.ProcessVideoMain: VideoMainExtra,
    ProjectStatus.Done: DoneExtra,
    ProjectStatus.Error: ErrorExtra,
    ProjectStatus.Cancelled: NoteExtra,
}


def validate_status_extra(
    status: ProjectStatus, payload: Optional[dict[str, Any] | StatusExtra]
) -> Optional[StatusExtra]:
    """Validate ``payload`` against the model registered for ``status``.

    Args:
        status: Target project status.
        payload: Raw camelCase dict, an already-built model, or None.

    Returns:
        The validated model, or None when no extra was supplied.

    Raises:
        pydantic.ValidationError: If the payload does not match the status model.
        TypeError: If a model built for another status is supplied.
    """
    if payload is None:
        return None
    model = STATUS_EXTRA_MODELS[ProjectStatus(status)]
    if isinstance(payload, StatusExtra):
        if not isinstance(payload, model):
            raise TypeError(
                f"{type(payload).__name__} is not a valid extra for status {status}"
            )
        return payload
    return model.model_validate(payload)
