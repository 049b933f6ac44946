"""Helpers shared by the phase executors."""

import json
import logging
from pathlib import Path
from typing import Iterable, NoReturn, Optional

import httpx

from reelforge.client.errors import ControlPlaneError
from reelforge.orchestrator.context import PhaseContext, PhaseFailed
from reelforge.schemas.extras import ErrorExtra
from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import normalize_language_code
from reelforge.services.commands import CommandFailed
from reelforge.services.toolchain import ToolchainError
from reelforge.services.voices import VoiceResolutionError

logger = logging.getLogger(__name__)

# Errors that fail a single language instead of the whole phase
LANGUAGE_ERRORS = (
    ToolchainError,
    CommandFailed,
    VoiceResolutionError,
    ControlPlaneError,
    httpx.HTTPError,
    OSError,
    ValueError,
)


class NoActiveLanguages(RuntimeError):
    """Every configured language is disabled or failed."""


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def read_blocks(path: Path) -> list:
    """Load a metadata blocks file; raise ValueError when missing or empty."""
    if not path.is_file():
        raise ValueError(f"Metadata not found: {path}")
    blocks = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(blocks, list) or not blocks:
        raise ValueError(f"Metadata has no blocks: {path}")
    return blocks


def has_blocks(path: Path) -> bool:
    try:
        read_blocks(path)
    except ValueError:
        return False
    return True


async def resolve_voiceover_path(ctx: PhaseContext, language: str, snapshot=None) -> Path:
    """Locate the approved voiceover for ``language`` on local disk.

    Order: the per-language final voiceover, the job payload's
    ``audioLocalPath`` for the same language, then the project-level final
    voiceover for the primary language.
    """
    if snapshot is None:
        snapshot = await ctx.client.get_transcription_snapshot(ctx.project_id)
    candidates: list[Optional[str]] = []
    entry = snapshot.final_voiceovers.get(language)
    if entry is not None:
        candidates.append(entry.local_path)
    if normalize_language_code(ctx.payload.get("languageCode")) == language:
        candidates.append(ctx.payload.get("audioLocalPath"))
    if language == ctx.primary_language:
        candidates.append(snapshot.local_path)
    for candidate in candidates:
        if candidate and Path(candidate).is_file():
            return Path(candidate)
    raise ValueError(f"Final voiceover missing for {language}")


async def fail_phase(
    ctx: PhaseContext,
    step: str,
    message: str,
    error: BaseException,
    *,
    language: Optional[str] = None,
    pending: Iterable[str] = (),
    completed: Iterable[str] = (),
) -> NoReturn:
    """Report a phase-level failure and raise PhaseFailed.

    Sets the project to Error with an ``ErrorExtra`` and writes an error log
    file under ``logs/errors``.
    """
    command = getattr(error, "command_line", None)
    log_path = getattr(error, "log_path", None)
    failed = ctx.progress.disabled_languages(ctx.languages) if ctx.progress.loaded else []
    error_text = describe_error(error)

    error_log = ctx.workspaces.persist_error_log(ctx.project_id, {
        "projectId": ctx.project_id,
        "status": ProjectStatus.Error.value,
        "message": message,
        "step": step,
        "language": language,
        "error": error_text,
        "command": command,
        "logPath": str(log_path) if log_path else None,
    })
    extra = ErrorExtra(
        failed_step=step,
        failed_language=language,
        log_path=str(log_path) if log_path else None,
        command=command,
        error_log=str(error_log) if error_log else error_text,
        pending_languages=list(pending),
        completed_languages=list(completed),
        failed_languages=failed,
    )
    logger.error(f"{message} for project {ctx.project_id}: {error_text}")
    await ctx.client.set_status(ctx.project_id, ProjectStatus.Error, message, extra)
    raise PhaseFailed(message, step=step, language=language) from error


async def require_active_languages(ctx: PhaseContext, step: str, message: str) -> list[str]:
    """Refresh progress and return enabled languages, failing the phase when none remain."""
    await ctx.progress.refresh()
    active = ctx.progress.active_languages(ctx.languages)
    if not active:
        await fail_phase(ctx, step, message, NoActiveLanguages("No languages left to process"))
    return active
