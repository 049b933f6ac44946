"""End-to-end: a two-language project from New to Done through the HTTP contract.

The daemon scheduler, phase executors and placeholder toolchain run against
the in-process control plane; uploads go through signed storage grants and
land in the media directory.
"""

import json

import pytest

from reelforge.orchestrator.scheduler import run_daemon
from reelforge.schemas.status import JobStatus, ProjectStatus

EXPECTED_PATH = [
    ProjectStatus.New,
    ProjectStatus.ProcessScript,
    ProjectStatus.ProcessAudio,
    ProjectStatus.ProcessTranscription,
    ProjectStatus.ProcessMetadata,
    ProjectStatus.ProcessCaptionsVideo,
    ProjectStatus.ProcessImagesGeneration,
    ProjectStatus.ProcessVideoPartsGeneration,
    ProjectStatus.ProcessVideoMain,
    ProjectStatus.Done,
]


@pytest.mark.asyncio
async def test_two_language_project_reaches_done(client, store, settings, new_project, make_scheduler, drive, toolchain):
    project = await new_project(languages=("en", "es"))

    final = await drive(make_scheduler(), project.id)
    assert final.status == ProjectStatus.Done
    assert final.current_daemon_id is None
    assert final.final_video_url and final.final_video_url.endswith(".mp4")

    # Status history follows the pipeline order without skipping a stage
    seen = []
    for entry in await store.list_history(project.id):
        status = ProjectStatus(entry.status)
        if not seen or seen[-1] != status:
            seen.append(status)
    assert seen == EXPECTED_PATH

    state = await client.admin_language_progress(project.id)
    for row in state.progress:
        assert row.transcription_done and row.captions_done and row.video_parts_done and row.final_video_done
        assert not row.disabled
    assert state.aggregate.final_video.done

    finals = [v for v in await store.list_video_assets(project.id) if v.is_final]
    assert sorted(v.language_code for v in finals) == ["en", "es"]
    for video in finals:
        assert (settings.storage.media_dir / video.path).is_file()

    jobs = await store.list_jobs(project.id)
    assert {job.status for job in jobs} == {JobStatus.done}
    assert sorted(job.payload["languageCode"] for job in jobs if job.type.value == "transcription") == ["en", "es"]

    # Each language ran each per-language stage exactly once; images once per project
    for operation in ("synthesize_voiceover", "transcribe", "render_captions", "render_video_parts", "build_final_video"):
        assert sorted(toolchain.calls_for(operation)) == ["en", "es"], operation
    assert toolchain.calls_for("generate_images") == ["en"]


@pytest.mark.asyncio
async def test_translated_metadata_matches_primary_block_count(new_project, make_scheduler, drive, workspaces):
    project = await new_project(languages=("en", "es"), prompt="Purring helps bones heal")
    assert (await drive(make_scheduler(), project.id)).status == ProjectStatus.Done

    counts = {
        language: len(json.loads(workspaces.language_workspace(project.id, language).blocks.read_text("utf-8")))
        for language in ("en", "es")
    }
    assert counts["en"] == counts["es"]
    images = sorted(workspaces.images_dir(project.id).glob("*.png"))
    assert len(images) == counts["en"]


@pytest.mark.asyncio
async def test_run_daemon_once(settings, client_factory, new_project, toolchain, client):
    project = await new_project(languages=("en",))

    scheduler = await run_daemon(settings, toolchain, once=True, client=client_factory("daemon-a"))
    assert scheduler.in_flight == {}

    summary = await client.admin_get_project(project.id)
    assert summary.status == ProjectStatus.ProcessAudio
    assert toolchain.calls_for("generate_script") == ["en"]
