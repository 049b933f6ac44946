"""Script phase: generate, import or refine the primary script, then translate it.

Modes:
    generate    the toolchain writes a script from the project prompt
    exact text  the user's raw script is used verbatim and auto-approved
    refine      ``reason=script_refinement`` on the job payload rewrites the
                existing script following ``requestText``
"""

import logging

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import LANGUAGE_ERRORS, NoActiveLanguages, describe_error, fail_phase
from reelforge.schemas.extras import NoteExtra, ScriptExtra
from reelforge.schemas.status import ProjectStatus
from reelforge.services.toolchain import ToolchainError

logger = logging.getLogger(__name__)

REFINEMENT_REASON = "script_refinement"
FAILURE_MESSAGE = "Script generation failed"


async def _primary_script(ctx: PhaseContext, refine: bool) -> str:
    snapshot = ctx.snapshot
    tool_ctx = ctx.tool_context(ctx.primary_language, "script")
    if refine:
        request_text = (ctx.payload.get("requestText") or "").strip()
        if not request_text:
            raise ValueError("Script refinement requires requestText")
        existing = await ctx.client.get_script(ctx.project_id, ctx.primary_language)
        if not existing or not existing.strip():
            raise ValueError("No existing script to refine")
        return await ctx.toolchain.refine_script(
            tool_ctx,
            script=existing,
            request_text=request_text,
            creation_guidance=snapshot.creation_guidance,
            avoidance_guidance=snapshot.avoidance_guidance,
        )
    if snapshot.use_exact_text_as_script:
        raw = (snapshot.raw_script or "").strip()
        if not raw:
            raise ValueError("Exact script text is missing")
        return raw
    prompt = (snapshot.prompt or "").strip()
    if not prompt:
        raise ValueError("Prompt is required to generate a script")
    return await ctx.toolchain.generate_script(
        tool_ctx,
        prompt=prompt,
        duration_seconds=snapshot.duration_seconds,
        creation_guidance=snapshot.creation_guidance,
        avoidance_guidance=snapshot.avoidance_guidance,
        mode=ctx.settings.pipeline.script_mode,
    )


async def run_script_phase(ctx: PhaseContext) -> None:
    snapshot = ctx.snapshot
    primary = ctx.primary_language
    refine = ctx.payload.get("reason") == REFINEMENT_REASON
    request_text = ctx.payload.get("requestText") if refine else None

    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessScript,
        "Refining script" if refine else "Generating script",
        NoteExtra(reason=ctx.payload.get("reason"), request_text=request_text),
    )
    await ctx.progress.refresh()

    try:
        text = (await _primary_script(ctx, refine)).strip()
        if not text:
            raise ToolchainError("Script generator returned empty text")
        workspace = ctx.language_workspace(primary)
        workspace.script_file.write_text(text, encoding="utf-8")
        await ctx.client.upsert_script(ctx.project_id, text, primary)
    except LANGUAGE_ERRORS as e:
        await fail_phase(ctx, "script", FAILURE_MESSAGE, e, language=primary)

    translate = not refine or ctx.payload.get("refinePropagateTranslations") is True
    translated: list[str] = []
    for language in ctx.languages[1:]:
        if ctx.progress.is_disabled(language) or not translate:
            continue
        try:
            translation = (await ctx.toolchain.translate_script(
                ctx.tool_context(language, "script"), script=text, source_language=primary
            )).strip()
            if not translation:
                raise ToolchainError(f"Translation to {language} returned empty text")
            ctx.language_workspace(language).script_file.write_text(translation, encoding="utf-8")
            await ctx.client.upsert_script(ctx.project_id, translation, language)
            translated.append(language)
        except LANGUAGE_ERRORS as e:
            logger.warning(f"Translation to {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "script", describe_error(e))

    script_languages = ctx.progress.active_languages(ctx.languages)
    if not script_languages:
        await fail_phase(ctx, "script", FAILURE_MESSAGE, NoActiveLanguages("No languages left to process"))

    auto_approved = snapshot.auto_approve_script or snapshot.use_exact_text_as_script
    next_status = ProjectStatus.ProcessAudio if auto_approved else ProjectStatus.ProcessScriptValidate
    await ctx.client.set_status(
        ctx.project_id,
        next_status,
        "Script approved" if auto_approved else "Script ready for review",
        ScriptExtra(
            primary_language=primary,
            script_languages=script_languages,
            translated_languages=translated,
            failed_languages=ctx.progress.disabled_languages(ctx.languages),
        ),
    )
