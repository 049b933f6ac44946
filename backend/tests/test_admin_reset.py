"""Operator rollbacks: status override, scoped progress reset and job cancellation."""

import pytest

from reelforge.schemas.status import AssetKind, JobStatus, JobType, ProjectStatus
from reelforge.schemas.wire import AdminStatusUpdate, AssetRegistration, LanguageProgressUpdate

ALL_DONE = dict(transcription_done=True, captions_done=True, video_parts_done=True, final_video_done=True)


async def _finished_project(client, store, new_project):
    """A Done project with final videos for en and es and a failed fr."""
    project = await new_project(languages=("en", "es", "fr"))
    for language in ("en", "es"):
        await client.update_language_progress(project.id, LanguageProgressUpdate(language_code=language, **ALL_DONE))
        await store.register_asset(
            project.id,
            AssetRegistration(
                type=AssetKind.video,
                path=f"{project.id}/video/{language}.mp4",
                url=f"http://media/{language}.mp4",
                is_final=True,
                language_code=language,
            ),
            "daemon-a",
        )
    await client.update_language_progress(
        project.id,
        LanguageProgressUpdate(language_code="fr", disabled=True, failed_step="video_main", failure_reason="ffmpeg"),
    )
    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.Done))
    return project


def _final_languages(videos) -> set:
    return {video.language_code for video in videos if video.is_final}


@pytest.mark.asyncio
async def test_scoped_reset_touches_only_listed_languages(client, store, new_project):
    project = await _finished_project(client, store, new_project)

    result = await client.admin_set_status(
        project.id,
        AdminStatusUpdate(status=ProjectStatus.ProcessVideoMain, reset_progress=True, languages_to_reset=["ES"]),
    )
    assert result.status == ProjectStatus.ProcessVideoMain
    assert result.reset_languages == ["es"]
    assert result.cleared_final_video

    state = await client.admin_language_progress(project.id)
    assert state.row("en").final_video_done
    assert not state.row("es").final_video_done
    assert state.row("es").video_parts_done
    assert state.row("fr").disabled

    assert _final_languages(await store.list_video_assets(project.id)) == {"en"}
    summary = await client.admin_get_project(project.id)
    assert summary.status == ProjectStatus.ProcessVideoMain
    # Primary language untouched, so the project-level final video stays
    assert summary.final_video_url == "http://media/en.mp4"


@pytest.mark.asyncio
async def test_empty_language_selection_resets_nothing(client, store, new_project):
    project = await _finished_project(client, store, new_project)

    result = await client.admin_set_status(
        project.id,
        AdminStatusUpdate(
            status=ProjectStatus.ProcessVideoPartsGeneration, reset_progress=True, languages_to_reset=[]
        ),
    )
    assert result.status == ProjectStatus.ProcessVideoPartsGeneration
    assert result.reset_languages == []
    assert not result.cleared_final_video

    state = await client.admin_language_progress(project.id)
    for language in ("en", "es"):
        assert state.row(language).video_parts_done
        assert state.row(language).final_video_done
    assert state.row("fr").disabled
    assert _final_languages(await store.list_video_assets(project.id)) == {"en", "es"}
    assert (await client.admin_get_project(project.id)).final_video_url == "http://media/en.mp4"


@pytest.mark.asyncio
async def test_full_reset_reenables_failed_languages(client, store, new_project):
    project = await _finished_project(client, store, new_project)

    result = await client.admin_set_status(
        project.id, AdminStatusUpdate(status=ProjectStatus.ProcessMetadata, reset_progress=True)
    )
    assert result.reset_languages == ["en", "es", "fr"]

    state = await client.admin_language_progress(project.id)
    for row in state.progress:
        assert not row.captions_done
        assert not row.video_parts_done
        assert not row.final_video_done
        assert not row.disabled
        assert row.failed_step is None
        assert row.failure_reason is None
    assert state.row("en").transcription_done

    assert _final_languages(await store.list_video_assets(project.id)) == set()
    assert (await client.admin_get_project(project.id)).final_video_url is None


@pytest.mark.asyncio
async def test_reset_without_flag_keeps_progress(client, store, new_project):
    project = await _finished_project(client, store, new_project)

    result = await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.ProcessImagesGeneration))
    assert result.reset_languages == []
    assert not result.cleared_final_video
    assert (await client.admin_language_progress(project.id)).row("es").final_video_done


@pytest.mark.asyncio
async def test_rollback_fails_downstream_jobs(client, store, new_project):
    project = await new_project()
    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.ProcessVideoMain))
    created = await client.create_job(project.id, project.user_id, JobType.video_main)
    assert created.created

    result = await client.admin_set_status(
        project.id, AdminStatusUpdate(status=ProjectStatus.ProcessVideoPartsGeneration, reset_progress=True)
    )
    assert result.cancelled_jobs == 1
    assert (await store.get_job(created.job_id)).status == JobStatus.failed
    # The scheduler queues the video_parts job on its next tick
    assert not await client.job_exists(project.id, JobType.video_parts)


@pytest.mark.asyncio
async def test_terminal_override_releases_lock(client, store, new_project):
    project = await new_project()
    job = await client.create_job(project.id, project.user_id, JobType.script)
    assert await client.claim_job(job.job_id)

    await client.admin_set_status(project.id, AdminStatusUpdate(status=ProjectStatus.Cancelled, message="stop"))
    summary = await client.admin_get_project(project.id)
    assert summary.status == ProjectStatus.Cancelled
    assert summary.current_daemon_id is None

    history = await store.list_history(project.id)
    assert (ProjectStatus.Cancelled.value, "stop") in [(entry.status, entry.message) for entry in history]
