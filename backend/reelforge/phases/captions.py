"""Captions phase: render a transparent captions overlay per language."""

import logging

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import (
    LANGUAGE_ERRORS,
    describe_error,
    read_blocks,
    require_active_languages,
    resolve_voiceover_path,
)
from reelforge.schemas.extras import ImagesExtra
from reelforge.schemas.status import ProjectStatus

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Captions overlay generation failed"
DEFAULT_PRESET = "acid"


async def run_captions_phase(ctx: PhaseContext) -> None:
    await ctx.progress.refresh()
    template = ctx.snapshot.template
    preset = (template.captions_preset if template else None) or DEFAULT_PRESET
    renderer = ctx.settings.pipeline.captions_renderer
    snapshot = await ctx.client.get_transcription_snapshot(ctx.project_id)

    for language in ctx.progress.pending(ctx.languages, "captions_done"):
        workspace = ctx.language_workspace(language)
        try:
            read_blocks(workspace.blocks)
            audio = await resolve_voiceover_path(ctx, language, snapshot)
            await ctx.toolchain.render_captions(
                ctx.tool_context(language, "captions"),
                metadata_path=workspace.blocks,
                audio_path=audio,
                preset=preset,
                renderer=renderer,
                output_path=workspace.captions_overlay,
            )
            await ctx.progress.mark_done(language, "captions_done")
        except LANGUAGE_ERRORS as e:
            logger.warning(f"Captions for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "captions", describe_error(e))

    active = await require_active_languages(ctx, "captions", FAILURE_MESSAGE)
    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessImagesGeneration,
        "Captions ready",
        ImagesExtra(ready_languages=active, failed_languages=ctx.progress.disabled_languages(ctx.languages)),
    )
