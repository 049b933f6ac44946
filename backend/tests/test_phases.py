"""Phase behaviour driven through the scheduler with the placeholder toolchain.

Covers per-language failure isolation, resuming without repeating finished
work, review gates, exact-text and refinement script modes, and project-level
failures.
"""

from pathlib import Path

import pytest

from reelforge.schemas.status import JobType, ProjectStatus
from reelforge.schemas.wire import AdminStatusUpdate
from reelforge.services.toolchain.placeholder import PlaceholderToolchain


async def _extra(store, project_id, status: ProjectStatus) -> dict:
    """Extra of the latest history entry for ``status``."""
    entries = [e for e in await store.list_history(project_id) if e.status == status.value]
    assert entries, f"no history entry for {status.value}"
    return entries[-1].extra or {}


# ---------------------------------------------------------------------------
# Per-language failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_translation_disables_only_that_language(client, store, new_project, make_scheduler, drive):
    tool = PlaceholderToolchain(fail_on={"translate_script": ["fr"]})
    project = await new_project(languages=("en", "es", "fr"))

    final = await drive(make_scheduler(tool), project.id)
    assert final.status == ProjectStatus.Done

    done = await _extra(store, project.id, ProjectStatus.Done)
    assert done["completedLanguages"] == ["en", "es"]
    assert done["failedLanguages"] == ["fr"]

    state = await client.admin_language_progress(project.id)
    fr = state.row("fr")
    assert fr.disabled
    assert fr.failed_step == "script"
    assert "Injected translate_script failure" in fr.failure_reason
    assert "fr" not in tool.calls_for("synthesize_voiceover")
    assert "fr" not in tool.calls_for("build_final_video")


@pytest.mark.asyncio
async def test_late_language_failure_keeps_other_outputs(client, store, new_project, make_scheduler, drive):
    tool = PlaceholderToolchain(fail_on={"render_video_parts": ["es"]})
    project = await new_project()

    final = await drive(make_scheduler(tool), project.id)
    assert final.status == ProjectStatus.Done
    done = await _extra(store, project.id, ProjectStatus.Done)
    assert done["completedLanguages"] == ["en"]
    assert done["failedLanguages"] == ["es"]
    assert (await client.admin_language_progress(project.id)).row("es").failed_step == "video_parts"


@pytest.mark.asyncio
async def test_metadata_failure_disables_only_that_language(client, store, new_project, make_scheduler, drive):
    tool = PlaceholderToolchain(fail_on={"generate_metadata": ["fr"]})
    project = await new_project(languages=("en", "de", "fr"))

    final = await drive(make_scheduler(tool), project.id)
    assert final.status == ProjectStatus.Done
    done = await _extra(store, project.id, ProjectStatus.Done)
    assert done["completedLanguages"] == ["en", "de"]
    assert done["failedLanguages"] == ["fr"]

    fr = (await client.admin_language_progress(project.id)).row("fr")
    assert fr.disabled
    assert fr.failed_step == "metadata"
    assert fr.transcription_done
    assert "fr" not in tool.calls_for("render_captions")
    assert sorted(tool.calls_for("build_final_video")) == ["de", "en"]


@pytest.mark.asyncio
async def test_every_language_failing_errors_the_project(store, new_project, make_scheduler, drive):
    tool = PlaceholderToolchain(fail_on={"synthesize_voiceover": ["*"]})
    project = await new_project()

    final = await drive(make_scheduler(tool), project.id)
    assert final.status == ProjectStatus.Error
    error = await _extra(store, project.id, ProjectStatus.Error)
    assert error["failedStep"] == "audio"
    assert sorted(error["failedLanguages"]) == ["en", "es"]
    history = [e for e in await store.list_history(project.id) if e.status == ProjectStatus.Error.value]
    assert history[-1].message == "Voiceover generation failed"


@pytest.mark.asyncio
async def test_image_failure_is_project_level(store, new_project, make_scheduler, drive):
    tool = PlaceholderToolchain(fail_on={"generate_images": ["*"]})
    project = await new_project()

    final = await drive(make_scheduler(tool), project.id)
    assert final.status == ProjectStatus.Error
    assert final.current_daemon_id is None

    error = await _extra(store, project.id, ProjectStatus.Error)
    assert error["failedStep"] == "images"
    assert error["failedLanguage"] == "en"
    error_log = Path(error["errorLog"])
    assert error_log.is_file()
    assert "Injected generate_images failure" in error_log.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rerun_without_reset_repeats_no_work(client, new_project, make_scheduler, drive, toolchain):
    project = await new_project()
    scheduler = make_scheduler()
    assert (await drive(scheduler, project.id)).status == ProjectStatus.Done
    calls_before = list(toolchain.calls)

    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.ProcessMetadata))
    final = await drive(scheduler, project.id)

    assert final.status == ProjectStatus.Done
    assert toolchain.calls == calls_before


@pytest.mark.asyncio
async def test_scoped_reset_reruns_only_that_language(client, new_project, make_scheduler, drive, toolchain):
    project = await new_project()
    scheduler = make_scheduler()
    assert (await drive(scheduler, project.id)).status == ProjectStatus.Done
    assert toolchain.calls_for("render_video_parts") == ["en", "es"]

    result = await client.admin_set_status(
        project.id,
        AdminStatusUpdate(
            status=ProjectStatus.ProcessVideoPartsGeneration, reset_progress=True, languages_to_reset=["es"]
        ),
    )
    assert result.reset_languages == ["es"]
    final = await drive(scheduler, project.id)

    assert final.status == ProjectStatus.Done
    assert toolchain.calls_for("render_video_parts") == ["en", "es", "es"]
    assert toolchain.calls_for("build_final_video") == ["en", "es", "es"]
    assert toolchain.calls_for("generate_images") == ["en"]


# ---------------------------------------------------------------------------
# Review gates and script modes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_review_gates_pause_the_pipeline(client, store, new_project, make_scheduler, drive, toolchain):
    project = await new_project(auto_approve_script=False, auto_approve_audio=False)
    scheduler = make_scheduler()

    paused = await drive(scheduler, project.id, until=(ProjectStatus.ProcessScriptValidate,))
    assert paused.status == ProjectStatus.ProcessScriptValidate
    # Nothing is scheduled while waiting for review
    assert await scheduler.tick() == []
    assert not await client.job_exists(project.id, JobType.audio)

    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.ProcessAudio))
    paused = await drive(scheduler, project.id, until=(ProjectStatus.ProcessAudioValidate,))
    assert paused.status == ProjectStatus.ProcessAudioValidate

    extra = await _extra(store, project.id, ProjectStatus.ProcessAudioValidate)
    assert sorted(extra["audioCandidates"]) == ["en", "es"]
    assert toolchain.calls_for("transcribe") == []


@pytest.mark.asyncio
async def test_exact_text_is_used_verbatim_and_auto_approved(client, new_project, make_scheduler, drive, toolchain):
    project = await new_project(
        prompt=None,
        raw_script="  Cats purr when calm. They also purr when hurt.  ",
        use_exact_text_as_script=True,
        auto_approve_script=False,
        auto_approve_audio=False,
    )
    final = await drive(make_scheduler(), project.id, until=(ProjectStatus.ProcessAudioValidate, ProjectStatus.Error))

    assert final.status == ProjectStatus.ProcessAudioValidate
    assert toolchain.calls_for("generate_script") == []
    assert await client.get_script(project.id, "en") == "Cats purr when calm. They also purr when hurt."
    assert (await client.get_script(project.id, "es")).startswith("[es] Cats purr")


@pytest.mark.asyncio
async def test_refinement_rewrites_primary_only(client, new_project, make_scheduler, drive, toolchain):
    project = await new_project(auto_approve_script=False)
    scheduler = make_scheduler()
    await drive(scheduler, project.id, until=(ProjectStatus.ProcessScriptValidate,))
    original = await client.get_script(project.id, "en")

    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.ProcessScript))
    created = await client.create_job(
        project.id,
        project.user_id,
        JobType.script,
        {"reason": "script_refinement", "requestText": "Add a fun fact."},
    )
    assert created.created
    final = await drive(scheduler, project.id, until=(ProjectStatus.ProcessScriptValidate, ProjectStatus.Error))

    assert final.status == ProjectStatus.ProcessScriptValidate
    assert await client.get_script(project.id, "en") == f"{original} Add a fun fact."
    assert toolchain.calls_for("refine_script") == ["en"]
    assert toolchain.calls_for("translate_script") == ["es"]


@pytest.mark.asyncio
async def test_captions_disabled_skips_overlay(client, store, new_project, make_scheduler, drive, toolchain, workspaces):
    project = await new_project(captions_enabled=False)
    final = await drive(make_scheduler(), project.id)

    assert final.status == ProjectStatus.Done
    assert toolchain.calls_for("render_captions") == []
    images = await _extra(store, project.id, ProjectStatus.ProcessImagesGeneration)
    assert images["captionsSkipped"] is True
    video = workspaces.language_workspace(project.id, "en").final_video
    assert video.read_bytes() == b"final:en:main+audio"
