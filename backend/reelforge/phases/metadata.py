"""Metadata phase: split each transcript into timed blocks.

The primary language is processed first; its block count becomes the target
for every other language so that all cuts share the same image sequence.
"""

import logging
from typing import Optional

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import (
    LANGUAGE_ERRORS,
    describe_error,
    has_blocks,
    read_blocks,
    require_active_languages,
)
from reelforge.schemas.extras import CaptionsExtra, ImagesExtra
from reelforge.schemas.status import ProjectStatus

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Metadata generation failed"


async def run_metadata_phase(ctx: PhaseContext) -> None:
    active = await require_active_languages(ctx, "metadata", FAILURE_MESSAGE)
    primary = ctx.primary_language
    ordered = sorted(active, key=lambda code: code != primary)

    target_blocks: Optional[int] = None
    primary_blocks = ctx.language_workspace(primary).blocks
    if has_blocks(primary_blocks):
        target_blocks = len(read_blocks(primary_blocks))

    for language in ordered:
        workspace = ctx.language_workspace(language)
        try:
            if has_blocks(workspace.blocks):
                logger.info(f"Reusing metadata for {ctx.project_id}/{language}")
            else:
                if not workspace.transcript.is_file():
                    raise ValueError(f"Transcript not found for {language}")
                await ctx.toolchain.generate_metadata(
                    ctx.tool_context(language, "metadata"),
                    transcript_path=workspace.transcript,
                    output_path=workspace.blocks,
                    target_blocks=None if language == primary else target_blocks,
                    mode=ctx.settings.pipeline.script_mode,
                )
            blocks = read_blocks(workspace.blocks)
            if language == primary:
                target_blocks = len(blocks)
        except LANGUAGE_ERRORS as e:
            logger.warning(f"Metadata for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "metadata", describe_error(e))

    active = await require_active_languages(ctx, "metadata", FAILURE_MESSAGE)
    failed = ctx.progress.disabled_languages(ctx.languages)

    if not ctx.snapshot.captions_enabled:
        for language in active:
            if not ctx.progress.is_done(language, "captions_done"):
                await ctx.progress.mark_done(language, "captions_done")
        await ctx.client.set_status(
            ctx.project_id,
            ProjectStatus.ProcessImagesGeneration,
            "Metadata ready; captions disabled",
            ImagesExtra(ready_languages=active, captions_skipped=True, failed_languages=failed),
        )
        return

    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessCaptionsVideo,
        "Metadata ready",
        CaptionsExtra(metadata_languages=active, failed_languages=failed),
    )
