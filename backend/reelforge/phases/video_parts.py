"""Video parts phase: animate the shared images into a main video per language."""

import logging

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import LANGUAGE_ERRORS, describe_error, read_blocks, require_active_languages
from reelforge.schemas.extras import VideoMainExtra
from reelforge.schemas.status import ProjectStatus

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Video parts rendering failed"
DEFAULT_EFFECT = "basic"


def effect_name(ctx: PhaseContext) -> str:
    template = ctx.snapshot.template
    return (template.code if template else None) or DEFAULT_EFFECT


async def run_video_parts_phase(ctx: PhaseContext) -> None:
    await ctx.progress.refresh()
    effect = effect_name(ctx)
    images_dir = ctx.workspaces.images_dir(ctx.project_id)

    for language in ctx.progress.pending(ctx.languages, "video_parts_done"):
        workspace = ctx.language_workspace(language)
        try:
            read_blocks(workspace.blocks)
            await ctx.toolchain.render_video_parts(
                ctx.tool_context(language, "video-parts"),
                metadata_path=workspace.blocks,
                images_dir=images_dir,
                effect=effect,
                output_path=workspace.main_video,
            )
            await ctx.progress.mark_done(language, "video_parts_done")
        except LANGUAGE_ERRORS as e:
            logger.warning(f"Video parts for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "video_parts", describe_error(e))

    active = await require_active_languages(ctx, "video_parts", FAILURE_MESSAGE)
    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessVideoMain,
        "Video parts ready",
        VideoMainExtra(
            video_parts_languages=active,
            effect_name=effect,
            failed_languages=ctx.progress.disabled_languages(ctx.languages),
        ),
    )
