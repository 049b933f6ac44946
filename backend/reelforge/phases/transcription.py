"""Transcription phase: one transcript per approved voiceover."""

import logging

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import (
    LANGUAGE_ERRORS,
    describe_error,
    require_active_languages,
    resolve_voiceover_path,
)
from reelforge.schemas.extras import MetadataExtra, TranscriptionExtra
from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import normalize_language_code

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Transcription failed"


async def run_transcription_phase(ctx: PhaseContext) -> None:
    """Transcribe the job's language, or every pending language when the job names none.

    The project stays in ProcessTranscription while other languages are still
    pending; the job that completes the last one advances it to ProcessMetadata.
    """
    await ctx.progress.refresh()
    requested = normalize_language_code(ctx.payload.get("languageCode"))
    targets = [requested] if requested in ctx.languages else ctx.languages
    snapshot = await ctx.client.get_transcription_snapshot(ctx.project_id)

    for language in targets:
        if ctx.progress.is_disabled(language) or ctx.progress.is_done(language, "transcription_done"):
            continue
        try:
            audio = await resolve_voiceover_path(ctx, language, snapshot)
            workspace = ctx.language_workspace(language)
            await ctx.toolchain.transcribe(
                ctx.tool_context(language, "transcription"),
                audio_path=audio,
                output_path=workspace.transcript,
            )
            if not workspace.transcript.is_file() or not workspace.transcript.read_text(encoding="utf-8").strip():
                raise ValueError(f"Empty transcript for {language}")
            await ctx.progress.mark_done(language, "transcription_done")
        except LANGUAGE_ERRORS as e:
            logger.warning(f"Transcription for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "transcription", describe_error(e))

    active = await require_active_languages(ctx, "transcription", FAILURE_MESSAGE)
    failed = ctx.progress.disabled_languages(ctx.languages)
    pending = ctx.progress.pending(ctx.languages, "transcription_done")
    if pending:
        await ctx.client.set_status(
            ctx.project_id,
            ProjectStatus.ProcessTranscription,
            "Waiting for transcriptions",
            TranscriptionExtra(pending_languages=pending, failed_languages=failed),
        )
        return

    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessMetadata,
        "Transcription complete",
        MetadataExtra(transcription_languages=active, failed_languages=failed),
    )
