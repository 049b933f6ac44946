"""Configuration management with YAML and environment variable support.

Settings are loaded once (normally by the CLI) and passed explicitly into the
daemon, the control-plane app and the phase executors. The object is frozen so
that a running daemon never observes a configuration change mid-flight.
"""

import os
from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_INTERVAL_MS = 1000
MIN_INTERVAL_MS = 50
DEFAULT_REQUEST_TIMEOUT_MS = 15000
MIN_REQUEST_TIMEOUT_MS = 1000

CONFIG_FILE_ENV = "REELFORGE_CONFIG_FILE"
INSTANCE_ID_ENV = "DAEMON_INSTANCE_ID"


def _to_int(value, fallback: int, minimum: int) -> int:
    """Coerce a raw config value, falling back when missing, invalid or below minimum."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return fallback
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return fallback
    if parsed < minimum:
        return fallback
    return parsed


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from a YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with __call__
        return None, field_name, False

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # REELFORGE_CONFIG_FILE wins over config.yaml in the current directory
        yaml_path = Path(os.environ.get(CONFIG_FILE_ENV, "config.yaml"))
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class DaemonConfig(BaseModel):
    """Scheduler identity and pacing."""

    model_config = ConfigDict(frozen=True)

    id: str = "reelforge-daemon"
    instance_id: Optional[str] = Field(default=None, validate_default=True)
    interval_ms: int = DEFAULT_INTERVAL_MS
    max_concurrency: int = 2
    task_timeout_seconds: int = 3600
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS

    @field_validator("instance_id", mode="before")
    @classmethod
    def read_runtime_instance_id(cls, v):
        """Fall back to DAEMON_INSTANCE_ID so several daemons can share one config file."""
        if isinstance(v, str) and v.strip():
            return v.strip()
        runtime = os.environ.get(INSTANCE_ID_ENV, "").strip()
        return runtime or None

    @field_validator("interval_ms", mode="before")
    @classmethod
    def normalize_interval(cls, v):
        return _to_int(v, DEFAULT_INTERVAL_MS, MIN_INTERVAL_MS)

    @field_validator("max_concurrency", mode="before")
    @classmethod
    def normalize_concurrency(cls, v):
        return _to_int(v, 2, 1)

    @field_validator("task_timeout_seconds", mode="before")
    @classmethod
    def normalize_task_timeout(cls, v):
        return _to_int(v, 3600, 1)

    @field_validator("request_timeout_ms", mode="before")
    @classmethod
    def normalize_request_timeout(cls, v):
        return _to_int(v, DEFAULT_REQUEST_TIMEOUT_MS, MIN_REQUEST_TIMEOUT_MS)

    @property
    def effective_id(self) -> str:
        return (self.instance_id or self.id).strip()


class ApiConfig(BaseModel):
    """Control-plane endpoints and shared secret."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "http://127.0.0.1:8000"
    password: str = "change-me"
    health_path: str = "/api/daemon/health"
    storage_base_url: Optional[str] = None
    storage_health_path: str = "/api/storage/health"

    @field_validator("health_path", "storage_health_path", mode="before")
    @classmethod
    def ensure_leading_slash(cls, v, info):
        if v is None or not str(v).strip():
            return cls.model_fields[info.field_name].default
        v = str(v).strip()
        return v if v.startswith("/") else f"/{v}"

    @property
    def storage_url(self) -> str:
        return self.storage_base_url or self.base_url


class WorkspacesConfig(BaseModel):
    """Filesystem roots used by the daemon.

    ``script``, ``script_v2`` and ``caption`` are the working directories of the
    external script, metadata and caption tools. ``projects`` holds every
    per-project workspace and is created on demand.
    """

    model_config = ConfigDict(frozen=True, validate_default=True)

    script: Path = Path("workspaces/script")
    script_v2: Path = Path("workspaces/script-v2")
    caption: Path = Path("workspaces/caption")
    projects: Path = Path("workspaces/projects")

    @field_validator("script", "script_v2", "caption", "projects", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to an absolute Path object."""
        if isinstance(v, str):
            v = Path(v.strip())
        return Path(v).expanduser().resolve()

    def ensure_projects_dir(self) -> Path:
        self.projects.mkdir(parents=True, exist_ok=True)
        return self.projects

    def missing_tool_dirs(self) -> list[Path]:
        return [p for p in (self.script, self.script_v2, self.caption) if not p.is_dir()]


class AudioConfig(BaseModel):
    """Voiceover fallbacks."""

    model_config = ConfigDict(frozen=True)

    default_voice: str = "Kore"
    default_provider: str = "minimax"
    default_style: Optional[str] = None

    @field_validator("default_voice", mode="before")
    @classmethod
    def fallback_voice(cls, v):
        if v is None or not str(v).strip():
            return "Kore"
        return str(v).strip()

    @field_validator("default_style", mode="before")
    @classmethod
    def blank_style_is_none(cls, v):
        if v is None or not str(v).strip():
            return None
        return str(v).strip()


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    model_config = ConfigDict(frozen=True)

    captions_renderer: Literal["python", "legacy"] = "python"
    script_mode: Literal["fast", "normal"] = "normal"

    @field_validator("captions_renderer", mode="before")
    @classmethod
    def normalize_renderer(cls, v):
        return "legacy" if str(v or "").strip().lower() == "legacy" else "python"

    @field_validator("script_mode", mode="before")
    @classmethod
    def normalize_script_mode(cls, v):
        if v is None or not str(v).strip():
            return "normal"
        return "normal" if str(v).strip().lower() == "normal" else "fast"


class ToolchainConfig(BaseModel):
    """Which media toolchain backs the phases.

    ``command`` runs the external tools described by ``commands`` (argument
    templates formatted with ``str.format``), ``placeholder`` writes stand-in
    artifacts and is used for local runs and tests.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["command", "placeholder"] = "command"
    commands: dict[str, list[str]] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Storage and database configuration for the control plane."""

    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite+aiosqlite:///reelforge.db"
    media_dir: Path = Path("media")

    @field_validator("media_dir", mode="before")
    @classmethod
    def convert_media_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: REELFORGE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml or REELFORGE_CONFIG_FILE)
    4. Init arguments and field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="REELFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    workspaces: WorkspacesConfig = Field(default_factory=WorkspacesConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. .env file
        3. YAML file
        4. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )

    @property
    def daemon_id(self) -> str:
        return self.daemon.effective_id

    @property
    def request_timeout(self) -> float:
        """HTTP request timeout in seconds."""
        return self.daemon.request_timeout_ms / 1000


def load_settings(**overrides) -> Settings:
    """Build settings and make sure the projects workspace exists."""
    settings = Settings(**overrides)
    settings.workspaces.ensure_projects_dir()
    return settings
