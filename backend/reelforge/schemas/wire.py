"""Pydantic schemas for the daemon <-> control-plane HTTP contract.

Every model serialises with camelCase keys (``model_dump(by_alias=True)``) and
accepts either camelCase or snake_case on input, so the same classes back the
FastAPI routes and the httpx client.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from reelforge.schemas.status import AssetKind, JobStatus, JobType, ProjectStatus

DEFAULT_LANGUAGE = "en"
MAX_FAILED_STEP_LENGTH = 64
MAX_FAILURE_REASON_LENGTH = 512


class WireModel(BaseModel):
    """Base class for camelCase wire payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs) -> dict:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


def normalize_language_code(code: Any) -> Optional[str]:
    """Trim and lower-case a language code; return None for blanks."""
    if not isinstance(code, str):
        return None
    normalized = code.strip().lower()
    return normalized or None


def normalize_language_list(values: Any, fallback: str = DEFAULT_LANGUAGE) -> list[str]:
    """Normalise a list (or single code) of languages, keeping first-seen order."""
    if isinstance(values, str):
        values = [values]
    seen: list[str] = []
    for value in values or []:
        code = normalize_language_code(value)
        if code and code not in seen:
            seen.append(code)
    return seen or [fallback]


def format_failure_reason(reason: Optional[str]) -> Optional[str]:
    """Trim a failure reason and cap it at 512 characters with an ellipsis."""
    if not isinstance(reason, str):
        return None
    trimmed = reason.strip()
    if not trimmed:
        return None
    if len(trimmed) <= MAX_FAILURE_REASON_LENGTH:
        return trimmed
    return f"{trimmed[: MAX_FAILURE_REASON_LENGTH - 3]}..."


def normalize_failed_step(step: Optional[str]) -> Optional[str]:
    if not isinstance(step, str):
        return None
    trimmed = step.strip().lower()
    return trimmed[:MAX_FAILED_STEP_LENGTH] or None


# ---------------------------------------------------------------------------
# Creation snapshot
# ---------------------------------------------------------------------------


class VoiceAssignment(WireModel):
    voice_id: Optional[str] = None
    voice_provider: Optional[str] = None
    source: Optional[str] = None


class VoiceOption(WireModel):
    """One entry of the voice catalog the daemon resolves against."""

    id: str
    provider: Optional[str] = None
    languages: list[str] = Field(default_factory=list)

    @field_validator("languages", mode="before")
    @classmethod
    def normalize_languages(cls, v):
        return [code for code in (normalize_language_code(x) for x in (v or [])) if code]


class TemplateInfo(WireModel):
    id: Optional[str] = None
    code: Optional[str] = None
    captions_preset: Optional[str] = None
    art_style_prompt: Optional[str] = None
    overlay_url: Optional[str] = None
    music_url: Optional[str] = None


class ProjectSettings(WireModel):
    """Creation-time options chosen by the user."""

    use_exact_text_as_script: bool = False
    duration_seconds: Optional[int] = None
    auto_approve_script: bool = False
    auto_approve_audio: bool = False
    captions_enabled: bool = True
    include_default_music: bool = True
    add_overlay: bool = True
    watermark_enabled: bool = False
    include_call_to_action: bool = False
    script_creation_guidance_enabled: bool = False
    script_creation_guidance: Optional[str] = None
    script_avoidance_guidance_enabled: bool = False
    script_avoidance_guidance: Optional[str] = None
    audio_style_guidance_enabled: bool = False
    audio_style_guidance: Optional[str] = None
    voice_id: Optional[str] = None
    voice_assignments: dict[str, VoiceAssignment] = Field(default_factory=dict)
    voice_providers: dict[str, str] = Field(default_factory=dict)
    voices: list[VoiceOption] = Field(default_factory=list)
    template: Optional[TemplateInfo] = None


class CreationSnapshot(ProjectSettings):
    """Everything a phase needs to know about a project, fetched per task."""

    project_id: str
    status: ProjectStatus
    user_id: str
    prompt: Optional[str] = None
    raw_script: Optional[str] = None
    languages: list[str] = Field(default_factory=lambda: [DEFAULT_LANGUAGE])

    @field_validator("languages", mode="before")
    @classmethod
    def normalize_languages(cls, v):
        return normalize_language_list(v)

    @property
    def primary_language(self) -> str:
        return self.languages[0]

    @property
    def creation_guidance(self) -> str:
        if not self.script_creation_guidance_enabled:
            return ""
        return (self.script_creation_guidance or "").strip()

    @property
    def avoidance_guidance(self) -> str:
        if not self.script_avoidance_guidance_enabled:
            return ""
        return (self.script_avoidance_guidance or "").strip()

    @property
    def audio_style(self) -> Optional[str]:
        if not self.audio_style_guidance_enabled:
            return None
        return (self.audio_style_guidance or "").strip() or None


class ProjectCreate(WireModel):
    user_id: str
    languages: list[str] = Field(default_factory=lambda: [DEFAULT_LANGUAGE])
    prompt: Optional[str] = None
    raw_script: Optional[str] = None
    settings: ProjectSettings = Field(default_factory=ProjectSettings)

    @field_validator("languages", mode="before")
    @classmethod
    def normalize_languages(cls, v):
        return normalize_language_list(v)


class ProjectSummary(WireModel):
    id: str
    status: ProjectStatus
    user_id: str
    languages: list[str]
    current_daemon_id: Optional[str] = None
    final_video_path: Optional[str] = None
    final_video_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Language progress
# ---------------------------------------------------------------------------


class LanguageProgressRow(WireModel):
    language_code: str
    transcription_done: bool = False
    captions_done: bool = False
    video_parts_done: bool = False
    final_video_done: bool = False
    disabled: bool = False
    failed_step: Optional[str] = None
    failure_reason: Optional[str] = None


class StageAggregate(WireModel):
    done: bool
    remaining: list[str] = Field(default_factory=list)


class ProgressAggregate(WireModel):
    transcription: StageAggregate
    captions: StageAggregate
    video_parts: StageAggregate
    final_video: StageAggregate


class LanguageProgressAggregate(WireModel):
    progress: list[LanguageProgressRow]
    aggregate: ProgressAggregate

    def row(self, language_code: str) -> Optional[LanguageProgressRow]:
        for entry in self.progress:
            if entry.language_code == language_code:
                return entry
        return None


class LanguageProgressUpdate(WireModel):
    """Partial update; only fields explicitly sent are written."""

    language_code: str
    transcription_done: Optional[bool] = None
    captions_done: Optional[bool] = None
    video_parts_done: Optional[bool] = None
    final_video_done: Optional[bool] = None
    disabled: Optional[bool] = None
    failed_step: Optional[str] = None
    failure_reason: Optional[str] = None

    @field_validator("language_code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        code = normalize_language_code(v)
        if code is None:
            raise ValueError("languageCode is required")
        return code

    @field_validator("failed_step", mode="before")
    @classmethod
    def cap_step(cls, v):
        return normalize_failed_step(v)

    @field_validator("failure_reason", mode="before")
    @classmethod
    def cap_reason(cls, v):
        return format_failure_reason(v)

    def changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "language_code"
        }


# ---------------------------------------------------------------------------
# Scripts, status, transcription
# ---------------------------------------------------------------------------


class ScriptPayload(WireModel):
    text: str
    language_code: Optional[str] = None


class ScriptResponse(WireModel):
    text: Optional[str] = None
    language_code: Optional[str] = None


class StatusUpdate(WireModel):
    status: ProjectStatus
    message: Optional[str] = None
    extra: Optional[dict[str, Any]] = None


class AdminStatusUpdate(WireModel):
    status: ProjectStatus
    message: Optional[str] = None
    reset_progress: bool = False
    languages_to_reset: Optional[list[str]] = None

    @field_validator("languages_to_reset", mode="before")
    @classmethod
    def normalize_languages(cls, v):
        if v is None:
            return None
        return [code for code in (normalize_language_code(x) for x in v) if code]


class AdminStatusResult(WireModel):
    status: ProjectStatus
    reset_languages: list[str] = Field(default_factory=list)
    cleared_final_video: bool = False
    cancelled_jobs: int = 0


class FinalVoiceover(WireModel):
    id: str
    path: str
    public_url: Optional[str] = None
    local_path: Optional[str] = None


class TranscriptionSnapshot(WireModel):
    final_voiceover_id: Optional[str] = None
    local_path: Optional[str] = None
    storage_path: Optional[str] = None
    public_url: Optional[str] = None
    final_voiceovers: dict[str, FinalVoiceover] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Assets and storage
# ---------------------------------------------------------------------------


class AssetRegistration(WireModel):
    type: AssetKind
    path: str
    url: str
    is_final: bool = False
    local_path: Optional[str] = None
    language_code: Optional[str] = None


class RegisteredAsset(WireModel):
    kind: AssetKind
    id: str
    path: str
    url: str
    is_final: Optional[bool] = None
    language_code: Optional[str] = None
    local_path: Optional[str] = None


class StorageGrantRequest(WireModel):
    project_id: str
    kind: AssetKind
    max_bytes: int = Field(gt=0)
    mime_types: list[str] = Field(default_factory=list)


class StorageGrant(WireModel):
    data: str
    signature: str
    expires_at: datetime
    max_bytes: int
    mime_types: list[str]
    kind: AssetKind
    project_id: str


class StorageUpload(WireModel):
    kind: AssetKind
    path: str
    url: str
    is_final: Optional[bool] = None


# ---------------------------------------------------------------------------
# Jobs and scheduling
# ---------------------------------------------------------------------------


class EligibleProject(WireModel):
    id: str
    status: ProjectStatus
    user_id: str
    created_at: datetime
    updated_at: datetime


class QueuedJob(WireModel):
    id: str
    project_id: str
    user_id: Optional[str] = None
    type: JobType
    status: JobStatus
    payload: Optional[dict[str, Any]] = None
    created_at: datetime


class JobCreate(WireModel):
    project_id: str
    user_id: str
    type: JobType
    payload: Optional[dict[str, Any]] = None


class JobCreateResult(WireModel):
    created: bool
    job_id: Optional[str] = None
    reason: Optional[str] = None


class JobStatusUpdate(WireModel):
    status: JobStatus


class ClaimResult(WireModel):
    claimed: bool


class SweepRequest(WireModel):
    ttl_minutes: int = Field(default=15, ge=1)
    limit: int = Field(default=200, ge=1, le=1000)
    dry_run: bool = False
    include_queued: bool = False
    project_id: Optional[str] = None


class SweepResult(WireModel):
    matched: int
    updated: int
    dry_run: bool
    job_ids: list[str] = Field(default_factory=list)
