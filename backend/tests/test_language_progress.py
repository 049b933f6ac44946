"""Language progress rows through the daemon API and the tracker."""

import pytest

from reelforge.client.errors import ControlPlaneError
from reelforge.orchestrator.progress import LanguageProgressTracker
from reelforge.schemas.wire import LanguageProgressUpdate


@pytest.mark.asyncio
async def test_rows_created_for_every_language(client, new_project):
    project = await new_project(languages=("EN", "es", "fr"))
    state = await client.get_language_progress(project.id)
    assert [row.language_code for row in state.progress] == ["en", "es", "fr"]
    assert all(not row.disabled for row in state.progress)
    assert state.aggregate.transcription.remaining == ["en", "es", "fr"]


@pytest.mark.asyncio
async def test_partial_update_leaves_other_fields(client, new_project):
    project = await new_project()
    await client.update_language_progress(
        project.id, LanguageProgressUpdate(language_code="en", transcription_done=True)
    )
    state = await client.update_language_progress(
        project.id, LanguageProgressUpdate(language_code="en", captions_done=True)
    )
    row = state.row("en")
    assert row.transcription_done and row.captions_done
    assert not row.video_parts_done
    assert state.aggregate.transcription.remaining == ["es"]


@pytest.mark.asyncio
async def test_failure_marker_is_capped(client, new_project):
    project = await new_project()
    state = await client.update_language_progress(
        project.id,
        LanguageProgressUpdate(
            language_code="es",
            disabled=True,
            failed_step="Captions" + "-" * 80,
            failure_reason="boom " * 200,
        ),
    )
    row = state.row("es")
    assert row.disabled
    assert len(row.failed_step) == 64
    assert row.failed_step.startswith("captions")
    assert len(row.failure_reason) == 512
    assert row.failure_reason.endswith("...")
    # Disabled languages never hold back an aggregate
    assert state.aggregate.captions.remaining == ["en"]


@pytest.mark.asyncio
async def test_invalid_language_code_rejected(client, new_project):
    project = await new_project()
    with pytest.raises(ControlPlaneError) as exc_info:
        await client.update_language_progress(
            project.id, LanguageProgressUpdate(language_code="../etc", captions_done=True)
        )
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_tracker_views(client, new_project):
    project = await new_project(languages=("en", "es", "fr"))
    tracker = LanguageProgressTracker(client, project.id)
    await tracker.refresh()

    await tracker.mark_done("en", "transcription_done")
    await tracker.mark_failure("fr", "audio", "voice provider down")

    assert tracker.active_languages(["en", "es", "fr"]) == ["en", "es"]
    assert tracker.disabled_languages(["en", "es", "fr"]) == ["fr"]
    assert tracker.pending(["en", "es", "fr"], "transcription_done") == ["es"]
    assert tracker.row("fr").failed_step == "audio"

    await tracker.reset(["en"], ["transcription_done"])
    assert not tracker.is_done("en", "transcription_done")


@pytest.mark.asyncio
async def test_tracker_requires_refresh(client):
    tracker = LanguageProgressTracker(client, "missing")
    assert not tracker.loaded
    with pytest.raises(RuntimeError):
        tracker.pending(["en"], "captions_done")
