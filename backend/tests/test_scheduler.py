"""Scheduler capacity, task timeouts and executor dispatch."""

from datetime import datetime

import pytest

from reelforge.schemas.status import JobStatus, JobType, ProjectStatus
from reelforge.schemas.wire import AdminStatusUpdate, QueuedJob
from reelforge.services.toolchain.placeholder import PlaceholderToolchain


class CrashingToolchain(PlaceholderToolchain):
    async def generate_script(self, ctx, **kwargs):
        raise KeyError("prompt")


async def _history_messages(store, project_id, status: ProjectStatus) -> list[str]:
    return [e.message for e in await store.list_history(project_id) if e.status == status.value]


@pytest.mark.asyncio
async def test_tick_respects_max_concurrency(new_project, make_scheduler):
    for _ in range(3):
        await new_project(languages=("en",))
    scheduler = make_scheduler(PlaceholderToolchain(delay=0.2))

    started = await scheduler.tick()
    assert len(started) == 2
    assert len(scheduler.in_flight) == 2
    assert scheduler.capacity == 0
    assert await scheduler.tick() == []

    await scheduler.drain()
    assert scheduler.in_flight == {}
    assert scheduler.capacity == 2


@pytest.mark.asyncio
async def test_task_timeout_errors_project(settings, store, new_project, make_scheduler, drive):
    run_settings = settings.model_copy(
        update={"daemon": settings.daemon.model_copy(update={"task_timeout_seconds": 1})}
    )
    project = await new_project(languages=("en",))

    final = await drive(make_scheduler(PlaceholderToolchain(delay=3), run_settings=run_settings), project.id)
    assert final.status == ProjectStatus.Error
    assert final.current_daemon_id is None
    assert "Task timeout" in await _history_messages(store, project.id, ProjectStatus.Error)

    jobs = await store.list_jobs(project.id)
    assert [(job.type, job.status) for job in jobs] == [(JobType.script, JobStatus.failed)]


@pytest.mark.asyncio
async def test_executor_crash_errors_project(store, new_project, make_scheduler, drive):
    project = await new_project(languages=("en",))

    final = await drive(make_scheduler(CrashingToolchain()), project.id)
    assert final.status == ProjectStatus.Error
    assert "Executor crashed" in await _history_messages(store, project.id, ProjectStatus.Error)

    error = [e for e in await store.list_history(project.id) if e.status == ProjectStatus.Error.value][-1]
    assert error.extra["failedStep"] == "script"
    assert error.extra["errorLog"].startswith("KeyError")
    assert [job.status for job in await store.list_jobs(project.id)] == [JobStatus.failed]


@pytest.mark.asyncio
async def test_executor_skips_job_for_other_status(new_project, make_scheduler, toolchain):
    project = await new_project(languages=("en",))
    job = QueuedJob(
        id="manual-1",
        project_id=project.id,
        user_id=project.user_id,
        type=JobType.audio,
        status=JobStatus.running,
        payload={},
        created_at=datetime(2024, 1, 1),
    )

    assert await make_scheduler().executor.execute(job) is False
    assert toolchain.calls == []


@pytest.mark.asyncio
async def test_tick_survives_rejected_credentials(settings, client_factory, new_project, make_scheduler):
    await new_project(languages=("en",))
    wrong = settings.model_copy(update={"api": settings.api.model_copy(update={"password": "wrong"})})
    scheduler = make_scheduler(daemon_client=client_factory("daemon-a", base_settings=wrong))

    assert await scheduler.tick() == []
    assert scheduler.in_flight == {}


@pytest.mark.asyncio
async def test_failed_transcription_jobs_are_recreated(store, new_project, make_scheduler, drive, toolchain):
    project = await new_project(languages=("en", "es"))
    scheduler = make_scheduler()
    paused = await drive(scheduler, project.id, until=(ProjectStatus.ProcessTranscription,))
    assert paused.status == ProjectStatus.ProcessTranscription

    # Lose the queued transcription jobs, as a sweep after a crash would
    for job in await store.list_jobs(project.id):
        if job.type == JobType.transcription:
            await store.set_job_status(job.id, JobStatus.failed)

    final = await drive(scheduler, project.id)
    assert final.status == ProjectStatus.Done
    assert sorted(toolchain.calls_for("transcribe")) == ["en", "es"]

    transcription = [job for job in await store.list_jobs(project.id) if job.type == JobType.transcription]
    assert sorted((job.payload["languageCode"], job.status) for job in transcription) == [
        ("en", JobStatus.done),
        ("en", JobStatus.failed),
        ("es", JobStatus.done),
        ("es", JobStatus.failed),
    ]


@pytest.mark.asyncio
async def test_rollback_to_transcription_resumes(client, new_project, make_scheduler, drive, toolchain):
    project = await new_project(languages=("en", "es"))
    scheduler = make_scheduler()
    assert (await drive(scheduler, project.id)).status == ProjectStatus.Done

    await client.admin_set_status(
        project.id, AdminStatusUpdate(status=ProjectStatus.ProcessTranscription, reset_progress=True)
    )
    final = await drive(scheduler, project.id)

    assert final.status == ProjectStatus.Done
    assert sorted(toolchain.calls_for("transcribe")) == ["en", "en", "es", "es"]
    assert toolchain.calls_for("synthesize_voiceover") == ["en", "es"]
