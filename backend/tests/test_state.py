"""State machine tables, rollback plans and progress aggregation."""

import pytest

from reelforge.orchestrator.progress import aggregate_progress
from reelforge.orchestrator.state import (
    ACTIONABLE_STATUSES,
    PER_LANGUAGE_JOB_STATUSES,
    build_progress_reset_plan,
    downstream_job_types,
    job_type_for_status,
    status_index,
)
from reelforge.schemas.extras import DoneExtra, ErrorExtra, validate_status_extra
from reelforge.schemas.status import JobType, ProjectStatus
from reelforge.schemas.wire import (
    LanguageProgressRow,
    LanguageProgressUpdate,
    format_failure_reason,
    normalize_language_list,
)


@pytest.mark.parametrize(
    "status, expected",
    [
        (ProjectStatus.New, JobType.script),
        (ProjectStatus.ProcessScript, JobType.script),
        (ProjectStatus.ProcessAudio, JobType.audio),
        (ProjectStatus.ProcessCaptionsVideo, JobType.captions_video),
        (ProjectStatus.ProcessVideoMain, JobType.video_main),
        (ProjectStatus.ProcessScriptValidate, None),
        (ProjectStatus.ProcessAudioValidate, None),
        (ProjectStatus.Done, None),
        (ProjectStatus.Error, None),
        ("NotAStatus", None),
    ],
)
def test_job_type_for_status(status, expected):
    assert job_type_for_status(status) == expected


def test_validation_gates_are_not_actionable():
    assert ProjectStatus.ProcessScriptValidate not in ACTIONABLE_STATUSES
    assert ProjectStatus.ProcessAudioValidate not in ACTIONABLE_STATUSES
    assert PER_LANGUAGE_JOB_STATUSES <= ACTIONABLE_STATUSES


def test_status_order():
    assert status_index(ProjectStatus.New) < status_index(ProjectStatus.ProcessVideoMain)
    assert status_index(ProjectStatus.Error) == -1


def test_downstream_job_types():
    assert downstream_job_types(ProjectStatus.ProcessImagesGeneration) == [
        JobType.images,
        JobType.video_parts,
        JobType.video_main,
    ]
    assert downstream_job_types(ProjectStatus.New)[0] == JobType.script
    assert downstream_job_types(ProjectStatus.Cancelled) == []


def test_reset_plan_for_metadata_keeps_transcription():
    plan = build_progress_reset_plan(ProjectStatus.ProcessMetadata)
    assert plan.updates == {
        "captions_done": False,
        "video_parts_done": False,
        "final_video_done": False,
        "disabled": False,
        "failed_step": None,
        "failure_reason": None,
    }
    assert plan.clear_final_video


def test_reset_plan_for_early_status_clears_everything():
    plan = build_progress_reset_plan(ProjectStatus.ProcessAudio)
    assert plan.updates["transcription_done"] is False
    assert plan.updates["final_video_done"] is False


def test_terminal_statuses_have_no_reset_plan():
    assert build_progress_reset_plan(ProjectStatus.Done).empty
    assert not build_progress_reset_plan(ProjectStatus.Error).clear_final_video


def test_aggregate_ignores_disabled_languages():
    rows = [
        LanguageProgressRow(language_code="en", transcription_done=True, captions_done=True),
        LanguageProgressRow(language_code="es", transcription_done=True),
        LanguageProgressRow(language_code="fr", disabled=True, failed_step="audio"),
    ]
    aggregate = aggregate_progress(rows)
    assert aggregate.transcription.done
    assert aggregate.transcription.remaining == []
    assert not aggregate.captions.done
    assert aggregate.captions.remaining == ["es"]
    assert aggregate.final_video.remaining == ["en", "es"]


def test_aggregate_with_every_language_disabled_is_done():
    aggregate = aggregate_progress([LanguageProgressRow(language_code="en", disabled=True)])
    assert aggregate.video_parts.done


def test_failure_marker_truncation():
    update = LanguageProgressUpdate(
        language_code=" ES ",
        failed_step="  VIDEO_MAIN" + "x" * 100,
        failure_reason="r" * 600,
    )
    assert update.language_code == "es"
    assert len(update.failed_step) == 64
    assert update.failed_step.startswith("video_main")
    assert len(update.failure_reason) == 512
    assert update.failure_reason.endswith("...")
    assert format_failure_reason("   ") is None


def test_update_reports_only_sent_fields():
    update = LanguageProgressUpdate(language_code="en", captions_done=True)
    assert update.changes() == {"captions_done": True}


def test_language_list_normalization():
    assert normalize_language_list([" EN", "es", "en", ""]) == ["en", "es"]
    assert normalize_language_list(None) == ["en"]
    assert normalize_language_list("PT-BR") == ["pt-br"]


def test_status_extra_validation():
    extra = validate_status_extra(ProjectStatus.Done, {"completedLanguages": ["en"], "finalUrl": "http://x"})
    assert isinstance(extra, DoneExtra)
    assert extra.completed_languages == ["en"]
    error = validate_status_extra(ProjectStatus.Error, ErrorExtra(failed_step="images"))
    assert error.failed_step == "images"
    assert validate_status_extra(ProjectStatus.Done, None) is None


def test_extra_for_wrong_status_rejected():
    with pytest.raises(TypeError):
        validate_status_extra(ProjectStatus.ProcessMetadata, DoneExtra())
