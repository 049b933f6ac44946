"""
Workspace management service for reelforge.

Handles the per-project filesystem layout with path traversal protection:

- {projects}/{project_id}/workspace/{lang}/ - per-language artifacts
- {projects}/{project_id}/workspace/images/ - images shared by all languages
- {projects}/{project_id}/workspace/commands.txt - transcript of external commands
- {projects}/{project_id}/logs/{lang}/{kind}/ - per-command logs
- {projects}/{project_id}/logs/errors/ - error snapshots written on phase failure
"""
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LANGUAGE_CODE_PATTERN = re.compile(r"^[a-z0-9-]+$")


def sanitize_language_code(code: str) -> str:
    """Trim and lower-case ``code``; reject anything unsafe as a directory name."""
    normalized = (code or "").strip().lower()
    if not LANGUAGE_CODE_PATTERN.match(normalized):
        raise ValueError(f"Invalid language code: {code!r}")
    return normalized


def timestamp_slug() -> str:
    """Filesystem-safe UTC timestamp, e.g. 2024-05-01T10-11-12.123456Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%fZ")


@dataclass(frozen=True)
class LanguageWorkspace:
    """Well-known artifact locations inside one language directory."""

    root: Path
    language: str

    @property
    def script_file(self) -> Path:
        return self.root / "script.txt"

    @property
    def transcript(self) -> Path:
        return self.root / "transcript.txt"

    @property
    def metadata_dir(self) -> Path:
        return self.root / "metadata"

    @property
    def blocks(self) -> Path:
        return self.metadata_dir / "transcript-blocks.json"

    @property
    def captions_overlay(self) -> Path:
        return self.root / "captions-video" / "out-alpha-validated.webm"

    @property
    def main_video(self) -> Path:
        return self.root / "video-basic-effects" / "final" / "simple.1080p.mp4"

    @property
    def final_video(self) -> Path:
        return self.root / "video-merge-layers" / "final.1080p.mp4"

    @property
    def image_style(self) -> Path:
        return self.root / "prompts" / "image-style.txt"

    def audio_run_dir(self, run_id: str) -> Path:
        return self.root / "audio" / run_id


class WorkspaceManager:
    """
    Manage filesystem artifacts for pipeline projects.

    Implements path traversal protection so that neither a project id nor a
    language code can escape the projects root.
    """

    def __init__(self, projects_root: str | Path):
        """
        Initialize WorkspaceManager with the projects root.

        Args:
            projects_root: Root directory for all project workspaces.
                Created if missing.
        """
        self.base_dir = Path(projects_root).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _inside(self, path: Path) -> Path:
        resolved = path.resolve()
        # Path traversal protection
        if not resolved.is_relative_to(self.base_dir):
            raise ValueError("Invalid project path")
        return resolved

    def project_dir(self, project_id: str) -> Path:
        project_dir = self._inside(self.base_dir / str(project_id))
        project_dir.mkdir(exist_ok=True)
        return project_dir

    def workspace_root(self, project_id: str) -> Path:
        root = self.project_dir(project_id) / "workspace"
        root.mkdir(exist_ok=True)
        return root

    def language_workspace(self, project_id: str, language: str) -> LanguageWorkspace:
        code = sanitize_language_code(language)
        root = self._inside(self.workspace_root(project_id) / code)
        root.mkdir(parents=True, exist_ok=True)
        return LanguageWorkspace(root=root, language=code)

    def images_dir(self, project_id: str) -> Path:
        images = self.workspace_root(project_id) / "images"
        images.mkdir(exist_ok=True)
        return images

    def log_dir(self, project_id: str, language: str, kind: str) -> Path:
        code = sanitize_language_code(language)
        log_dir = self._inside(self.project_dir(project_id) / "logs" / code / kind)
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def commands_file(self, project_id: str) -> Path:
        return self.workspace_root(project_id) / "commands.txt"

    def persist_error_log(self, project_id: str, payload: dict) -> Optional[Path]:
        """Write an error snapshot; returns None when the log itself cannot be written.

        A failure here is logged and never replaces the error being reported.
        """
        if not isinstance(project_id, str) or not project_id.strip():
            return None
        try:
            error_dir = self.project_dir(project_id.strip()) / "logs" / "errors"
            error_dir.mkdir(parents=True, exist_ok=True)
            path = error_dir / f"error-{timestamp_slug()}.json.txt"
            path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not persist error log for project {project_id}: {e}")
            return None
        return path
