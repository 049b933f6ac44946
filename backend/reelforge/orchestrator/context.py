"""Per-task context handed to every phase executor."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from reelforge.client.control_plane import ControlPlaneClient
from reelforge.config import Settings
from reelforge.orchestrator.progress import LanguageProgressTracker
from reelforge.schemas.wire import CreationSnapshot, QueuedJob
from reelforge.services.toolchain import Toolchain, ToolContext
from reelforge.services.workspace import LanguageWorkspace, WorkspaceManager


class PhaseFailed(Exception):
    """A phase failure that has already been reported to the control plane."""

    def __init__(self, message: str, step: Optional[str] = None, language: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.language = language


@dataclass
class PhaseContext:
    settings: Settings
    client: ControlPlaneClient
    toolchain: Toolchain
    workspaces: WorkspaceManager
    snapshot: CreationSnapshot
    job: Optional[QueuedJob] = None
    progress: LanguageProgressTracker = field(init=False)

    def __post_init__(self):
        self.progress = LanguageProgressTracker(self.client, self.snapshot.project_id)

    @property
    def project_id(self) -> str:
        return self.snapshot.project_id

    @property
    def languages(self) -> list[str]:
        return self.snapshot.languages

    @property
    def primary_language(self) -> str:
        return self.snapshot.primary_language

    @property
    def payload(self) -> dict[str, Any]:
        if self.job is None or not self.job.payload:
            return {}
        return self.job.payload

    def language_workspace(self, language: str) -> LanguageWorkspace:
        return self.workspaces.language_workspace(self.project_id, language)

    def log_dir(self, language: str, kind: str) -> Path:
        return self.workspaces.log_dir(self.project_id, language, kind)

    def tool_context(self, language: str, kind: str) -> ToolContext:
        return ToolContext(
            project_id=self.project_id,
            language=language,
            workspace=self.language_workspace(language),
            log_dir=self.log_dir(language, kind),
            commands_root=self.workspaces.workspace_root(self.project_id),
        )
