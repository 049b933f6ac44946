"""Configuration loading: defaults, YAML file, environment overrides and coercion."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from reelforge.config import (
    CONFIG_FILE_ENV,
    DEFAULT_INTERVAL_MS,
    DEFAULT_REQUEST_TIMEOUT_MS,
    INSTANCE_ID_ENV,
    Settings,
    load_settings,
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(CONFIG_FILE_ENV, str(tmp_path / "absent.yaml"))
    monkeypatch.delenv(INSTANCE_ID_ENV, raising=False)
    for name in ("REELFORGE_DAEMON__MAX_CONCURRENCY", "REELFORGE_API__PASSWORD"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings()
    assert settings.daemon_id == "reelforge-daemon"
    assert settings.daemon.interval_ms == DEFAULT_INTERVAL_MS
    assert settings.daemon.max_concurrency == 2
    assert settings.request_timeout == DEFAULT_REQUEST_TIMEOUT_MS / 1000
    assert settings.api.storage_url == settings.api.base_url
    assert settings.toolchain.kind == "command"
    assert settings.pipeline.captions_renderer == "python"


def test_instance_id_from_environment(monkeypatch):
    monkeypatch.setenv(INSTANCE_ID_ENV, "  worker-7 ")
    assert Settings().daemon_id == "worker-7"


def test_explicit_instance_id_wins_over_environment(monkeypatch):
    monkeypatch.setenv(INSTANCE_ID_ENV, "worker-7")
    assert Settings(daemon={"instance_id": "pinned"}).daemon_id == "pinned"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, DEFAULT_INTERVAL_MS),
        ("", DEFAULT_INTERVAL_MS),
        ("abc", DEFAULT_INTERVAL_MS),
        (10, DEFAULT_INTERVAL_MS),
        ("250", 250),
        (1500.7, 1500),
    ],
)
def test_interval_coercion(raw, expected):
    assert Settings(daemon={"interval_ms": raw}).daemon.interval_ms == expected


def test_request_timeout_below_minimum_falls_back():
    settings = Settings(daemon={"request_timeout_ms": 5})
    assert settings.daemon.request_timeout_ms == DEFAULT_REQUEST_TIMEOUT_MS


def test_health_paths_normalized():
    settings = Settings(api={"health_path": "healthz", "storage_health_path": "  "})
    assert settings.api.health_path == "/healthz"
    assert settings.api.storage_health_path == "/api/storage/health"


def test_pipeline_options_normalized():
    settings = Settings(pipeline={"captions_renderer": "LEGACY", "script_mode": "quick"})
    assert settings.pipeline.captions_renderer == "legacy"
    assert settings.pipeline.script_mode == "fast"
    assert Settings(pipeline={"captions_renderer": "other"}).pipeline.captions_renderer == "python"


def test_yaml_file_and_env_priority(tmp_path, monkeypatch):
    config = tmp_path / "reelforge.yaml"
    config.write_text(
        "daemon:\n"
        "  id: yaml-daemon\n"
        "  max_concurrency: 3\n"
        "api:\n"
        "  base_url: http://control:9000\n"
        "  storage_base_url: http://storage:9001\n"
        "audio:\n"
        "  default_voice: ''\n",
        encoding="utf-8",
    )
    monkeypatch.setenv(CONFIG_FILE_ENV, str(config))
    monkeypatch.setenv("REELFORGE_DAEMON__MAX_CONCURRENCY", "5")

    settings = Settings()
    assert settings.daemon_id == "yaml-daemon"
    assert settings.daemon.max_concurrency == 5
    assert settings.api.base_url == "http://control:9000"
    assert settings.api.storage_url == "http://storage:9001"
    assert settings.audio.default_voice == "Kore"


def test_settings_are_frozen():
    settings = Settings()
    with pytest.raises(ValidationError):
        settings.daemon = None


def test_load_settings_creates_projects_dir(tmp_path):
    projects = tmp_path / "work" / "projects"
    settings = load_settings(workspaces={"projects": str(projects)})
    assert settings.workspaces.projects == projects.resolve()
    assert projects.is_dir()
    assert Path(settings.workspaces.script).is_absolute()


def test_default_workspaces_resolve_against_working_directory(tmp_path):
    workspaces = Settings().workspaces
    assert workspaces.script == (tmp_path / "workspaces" / "script").resolve()
    assert workspaces.script_v2 == (tmp_path / "workspaces" / "script-v2").resolve()
    assert workspaces.caption == (tmp_path / "workspaces" / "caption").resolve()
    assert workspaces.projects.is_absolute()
