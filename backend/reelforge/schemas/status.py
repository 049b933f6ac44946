"""Project and job status vocabulary shared by the daemon and the control plane."""

from enum import Enum


class ProjectStatus(str, Enum):
    """Lifecycle of a project, in pipeline order."""

    New = "New"
    ProcessScript = "ProcessScript"
    ProcessScriptValidate = "ProcessScriptValidate"
    ProcessAudio = "ProcessAudio"
    ProcessAudioValidate = "ProcessAudioValidate"
    ProcessTranscription = "ProcessTranscription"
    ProcessMetadata = "ProcessMetadata"
    ProcessCaptionsVideo = "ProcessCaptionsVideo"
    ProcessImagesGeneration = "ProcessImagesGeneration"
    ProcessVideoPartsGeneration = "ProcessVideoPartsGeneration"
    ProcessVideoMain = "ProcessVideoMain"
    Done = "Done"
    Error = "Error"
    Cancelled = "Cancelled"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"
    paused = "paused"


class JobType(str, Enum):
    script = "script"
    audio = "audio"
    transcription = "transcription"
    metadata = "metadata"
    captions_video = "captions_video"
    images = "images"
    video_parts = "video_parts"
    video_main = "video_main"


class AssetKind(str, Enum):
    audio = "audio"
    image = "image"
    video = "video"


# Statuses after which the project no longer belongs to any daemon
TERMINAL_STATUSES = frozenset({ProjectStatus.Done, ProjectStatus.Error, ProjectStatus.Cancelled})

# Values accepted as a language failure step
FAILURE_STEPS = (
    "script",
    "audio",
    "transcription",
    "metadata",
    "captions",
    "video_parts",
    "video_main",
)
