"""Shared fixtures: a throwaway control plane served in-process over ASGI.

Every test gets its own SQLite database, media directory and projects root
under ``tmp_path``. Daemon clients talk to the FastAPI app through
``httpx.ASGITransport`` so no sockets are opened.
"""

import httpx
import pytest
import pytest_asyncio

from reelforge.api.app import create_app
from reelforge.client.control_plane import ControlPlaneClient
from reelforge.config import CONFIG_FILE_ENV, INSTANCE_ID_ENV, Settings
from reelforge.db import build_engine, init_database
from reelforge.orchestrator.executor import PhaseExecutor
from reelforge.orchestrator.scheduler import Scheduler
from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import ProjectCreate, ProjectSettings
from reelforge.services.toolchain.placeholder import PlaceholderToolchain
from reelforge.services.workspace import WorkspaceManager

API_PASSWORD = "test-secret"


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    # Keep a developer's config.yaml or instance id out of the tests
    monkeypatch.setenv(CONFIG_FILE_ENV, str(tmp_path / "absent.yaml"))
    monkeypatch.delenv(INSTANCE_ID_ENV, raising=False)
    return Settings(
        daemon={"id": "daemon-a", "interval_ms": 50, "max_concurrency": 2, "task_timeout_seconds": 60},
        api={"password": API_PASSWORD},
        workspaces={
            "script": str(tmp_path / "tools" / "script"),
            "script_v2": str(tmp_path / "tools" / "script-v2"),
            "caption": str(tmp_path / "tools" / "caption"),
            "projects": str(tmp_path / "projects"),
        },
        storage={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'control.db'}",
            "media_dir": str(tmp_path / "media"),
        },
        toolchain={"kind": "placeholder"},
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings.storage.database_url)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def app(settings, engine):
    return create_app(settings, engine)


@pytest.fixture
def store(app):
    return app.state.store


@pytest_asyncio.fixture
async def client_factory(settings, app):
    """Build daemon clients with their own identity, closed after the test."""
    clients: list[ControlPlaneClient] = []

    def build(daemon_id: str = "daemon-a", base_settings: Settings = None) -> ControlPlaneClient:
        base = base_settings or settings
        daemon = base.daemon.model_copy(update={"id": daemon_id, "instance_id": None})
        client = ControlPlaneClient(
            base.model_copy(update={"daemon": daemon}),
            transport=httpx.ASGITransport(app=app),
        )
        clients.append(client)
        return client

    yield build
    for client in clients:
        await client.close()


@pytest.fixture
def client(client_factory) -> ControlPlaneClient:
    return client_factory("daemon-a")


@pytest.fixture
def workspaces(settings) -> WorkspaceManager:
    return WorkspaceManager(settings.workspaces.ensure_projects_dir())


@pytest.fixture
def toolchain() -> PlaceholderToolchain:
    return PlaceholderToolchain()


@pytest.fixture
def new_project(client):
    """Create a project through the admin API; keyword args become project settings."""

    async def create(languages=("en", "es"), prompt="Why cats purr", raw_script=None, **options):
        options.setdefault("auto_approve_script", True)
        options.setdefault("auto_approve_audio", True)
        return await client.admin_create_project(
            ProjectCreate(
                user_id="user-1",
                languages=list(languages),
                prompt=prompt,
                raw_script=raw_script,
                settings=ProjectSettings(**options),
            )
        )

    return create


@pytest.fixture
def make_scheduler(settings, client, workspaces, toolchain):
    def build(tool=None, run_settings: Settings = None, daemon_client: ControlPlaneClient = None) -> Scheduler:
        run_settings = run_settings or settings
        cp = daemon_client or client
        executor = PhaseExecutor(run_settings, cp, tool or toolchain, workspaces)
        return Scheduler(run_settings, cp, executor)

    return build


@pytest.fixture
def drive(client):
    """Tick a scheduler until the project reaches one of ``until`` (Done/Error by default)."""

    async def run(scheduler, project_id, until=(ProjectStatus.Done, ProjectStatus.Error), max_ticks=30):
        project = await client.admin_get_project(project_id)
        for _ in range(max_ticks):
            if project.status in until:
                break
            await scheduler.tick()
            await scheduler.drain()
            project = await client.admin_get_project(project_id)
        return project

    return run
