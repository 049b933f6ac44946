"""Audio phase: synthesize one voiceover per enabled language."""

import logging
from typing import Optional

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import LANGUAGE_ERRORS, NoActiveLanguages, describe_error, fail_phase
from reelforge.schemas.extras import AudioValidateExtra, TranscriptionExtra
from reelforge.schemas.status import AssetKind, JobType, ProjectStatus
from reelforge.schemas.wire import RegisteredAsset
from reelforge.services.voices import resolve_voice
from reelforge.services.workspace import timestamp_slug

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Voiceover generation failed"

# Flags that depend on the voiceover and are cleared when a new one is approved
VOICEOVER_DEPENDENT_FLAGS = ("transcription_done", "captions_done", "video_parts_done", "final_video_done")


async def _synthesize(ctx: PhaseContext, language: str, run_id: str) -> RegisteredAsset:
    text = await ctx.client.get_script(ctx.project_id, language)
    if not text and language != ctx.primary_language:
        text = await ctx.client.get_script(ctx.project_id, ctx.primary_language)
    if not text or not text.strip():
        raise ValueError(f"No script text for {language}")

    voice = resolve_voice(
        ctx.snapshot,
        language,
        job_voice=ctx.payload.get("voiceId"),
        default_voice=ctx.settings.audio.default_voice,
        default_provider=ctx.settings.audio.default_provider,
        style=ctx.snapshot.audio_style or ctx.settings.audio.default_style,
    )
    logger.info(f"Voice for {ctx.project_id}/{language}: {voice.voice_id} ({voice.provider}, {voice.source})")

    workspace = ctx.language_workspace(language)
    output = workspace.audio_run_dir(run_id) / "take-1.wav"
    await ctx.toolchain.synthesize_voiceover(
        ctx.tool_context(language, "audio"), text=text.strip(), voice=voice, output_path=output
    )
    return await ctx.client.upload_asset(ctx.project_id, AssetKind.audio, output, language=language)


async def run_audio_phase(ctx: PhaseContext) -> None:
    await ctx.progress.refresh()
    active = ctx.progress.active_languages(ctx.languages)
    run_id = timestamp_slug()

    candidates: dict[str, RegisteredAsset] = {}
    last_error: Optional[BaseException] = None
    for language in active:
        try:
            candidates[language] = await _synthesize(ctx, language, run_id)
        except LANGUAGE_ERRORS as e:
            last_error = e
            logger.warning(f"Voiceover for {language} failed for project {ctx.project_id}: {e}")
            await ctx.progress.mark_failure(language, "audio", describe_error(e))

    if not candidates:
        await fail_phase(
            ctx, "audio", FAILURE_MESSAGE,
            last_error or NoActiveLanguages("No languages left to process"),
            pending=active,
        )

    failed = ctx.progress.disabled_languages(ctx.languages)
    if not ctx.snapshot.auto_approve_audio:
        await ctx.client.set_status(
            ctx.project_id,
            ProjectStatus.ProcessAudioValidate,
            "Voiceover ready for review",
            AudioValidateExtra(
                audio_candidates={lang: [asset.id] for lang, asset in candidates.items()},
                candidate_local_paths={asset.id: asset.local_path for asset in candidates.values() if asset.local_path},
                failed_languages=failed,
            ),
        )
        return

    primary = candidates.get(ctx.primary_language) or next(iter(candidates.values()))
    await ctx.progress.reset(candidates, VOICEOVER_DEPENDENT_FLAGS)
    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessTranscription,
        "Voiceover approved",
        TranscriptionExtra(
            final_voiceovers={lang: asset.id for lang, asset in candidates.items()},
            final_voiceover_id=primary.id,
            final_voiceover_local_paths={
                lang: asset.local_path for lang, asset in candidates.items() if asset.local_path
            },
            audio_local_path=primary.local_path,
            pending_languages=list(candidates),
            failed_languages=failed,
        ),
    )
    for language, asset in candidates.items():
        result = await ctx.client.create_job(
            ctx.project_id,
            ctx.snapshot.user_id,
            JobType.transcription,
            {"languageCode": language, "audioCandidateId": asset.id, "audioLocalPath": asset.local_path},
        )
        if not result.created:
            logger.info(f"Transcription job for {ctx.project_id}/{language} not created: {result.reason}")
