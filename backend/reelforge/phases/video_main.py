"""Video main phase: merge every layer into the final video per language."""

import logging
from typing import Optional

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import (
    LANGUAGE_ERRORS,
    NoActiveLanguages,
    describe_error,
    fail_phase,
    read_blocks,
    resolve_voiceover_path,
)
from reelforge.phases.video_parts import effect_name
from reelforge.schemas.extras import DoneExtra
from reelforge.schemas.status import AssetKind, ProjectStatus
from reelforge.services.toolchain import FinalVideoOptions

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Final video compilation failed"


def _final_video_options(ctx: PhaseContext) -> FinalVideoOptions:
    snapshot = ctx.snapshot
    template = snapshot.template
    return FinalVideoOptions(
        include_default_music=snapshot.include_default_music,
        music_url=template.music_url if template else None,
        add_overlay=snapshot.add_overlay,
        overlay_url=template.overlay_url if template else None,
        watermark_enabled=snapshot.watermark_enabled,
        include_call_to_action=snapshot.include_call_to_action,
    )


async def run_video_main_phase(ctx: PhaseContext) -> None:
    await ctx.progress.refresh()
    snapshot = await ctx.client.get_transcription_snapshot(ctx.project_id)
    options = _final_video_options(ctx)

    video_logs: dict[str, str] = {}
    final_paths: dict[str, str] = {}
    final_urls: dict[str, str] = {}
    last_error: Optional[BaseException] = None

    for language in ctx.progress.pending(ctx.languages, "final_video_done"):
        workspace = ctx.language_workspace(language)
        tool_ctx = ctx.tool_context(language, "video-main")
        try:
            read_blocks(workspace.blocks)
            if not workspace.main_video.is_file():
                raise ValueError(f"Main video not found for {language}")
            overlay = None
            if ctx.snapshot.captions_enabled:
                overlay = workspace.captions_overlay
                if not overlay.is_file():
                    raise ValueError(f"Captions overlay not found for {language}")
            audio = await resolve_voiceover_path(ctx, language, snapshot)

            await ctx.toolchain.build_final_video(
                tool_ctx,
                main_video=workspace.main_video,
                audio_path=audio,
                captions_overlay=overlay,
                metadata_path=workspace.blocks,
                options=options,
                output_path=workspace.final_video,
            )
            asset = await ctx.client.upload_asset(
                ctx.project_id, AssetKind.video, workspace.final_video, is_final=True, language=language
            )
            await ctx.progress.mark_done(language, "final_video_done")
            video_logs[language] = str(tool_ctx.log_dir)
            final_paths[language] = str(workspace.final_video)
            final_urls[language] = asset.url
        except LANGUAGE_ERRORS as e:
            last_error = e
            logger.warning(f"Final video for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "video_main", describe_error(e))

    await ctx.progress.refresh()
    completed = [
        code for code in ctx.progress.active_languages(ctx.languages)
        if ctx.progress.is_done(code, "final_video_done")
    ]
    if not completed:
        await fail_phase(
            ctx, "video_main", FAILURE_MESSAGE,
            last_error or NoActiveLanguages("No languages left to process"),
        )

    # Languages finished by an earlier run of this phase
    for language in completed:
        if language not in final_paths:
            final_paths[language] = str(ctx.language_workspace(language).final_video)

    primary = ctx.primary_language
    final_url = final_urls.get(primary) or next(iter(final_urls.values()), None)
    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.Done,
        "Video ready",
        DoneExtra(
            completed_languages=completed,
            failed_languages=ctx.progress.disabled_languages(ctx.languages),
            video_logs=video_logs,
            final_video_paths=final_paths,
            final_url=final_url,
            effect_name=effect_name(ctx),
        ),
    )
