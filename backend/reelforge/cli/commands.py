"""CLI commands for reelforge using Typer and Rich.

Commands:
- run: Start the pipeline daemon (poll, claim, execute)
- check: Validate configuration, workspaces, tooling and control-plane access
- serve: Run the reference control-plane API
- create: Create a project through the admin API
- reset: Roll a project back to an earlier status
- sweep: Fail stale running (and optionally queued) jobs
- progress: Show per-language progress for a project
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

from reelforge import validate_dependencies
from reelforge.client.control_plane import ControlPlaneClient
from reelforge.client.errors import ControlPlaneError
from reelforge.config import CONFIG_FILE_ENV, Settings, ToolchainConfig, load_settings
from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import AdminStatusUpdate, ProjectCreate, ProjectSettings, SweepRequest

app = typer.Typer(name="reelforge", help="Multi-language short-video pipeline daemon")
console = Console()

_CLIENT_ERRORS = (ControlPlaneError, httpx.HTTPError)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
):
    """Configure logging and the configuration file for every command."""
    if config is not None:
        os.environ[CONFIG_FILE_ENV] = str(config)
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings(placeholder: bool = False) -> Settings:
    settings = load_settings()
    if placeholder:
        settings = settings.model_copy(update={"toolchain": ToolchainConfig(kind="placeholder")})
    return settings


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code=1)


@app.command()
def run(
    once: bool = typer.Option(False, "--once", help="Run a single tick and wait for its tasks"),
    placeholder: bool = typer.Option(False, "--placeholder", help="Use the placeholder toolchain"),
):
    """Start the daemon: poll for work, claim jobs and run pipeline phases."""
    from reelforge.orchestrator.scheduler import run_daemon
    from reelforge.services.toolchain import get_toolchain

    settings = _settings(placeholder)
    if settings.toolchain.kind == "command":
        try:
            validate_dependencies()
        except RuntimeError as e:
            _fail(str(e))

    console.print(f"[green]Daemon:[/green] {settings.daemon_id}")
    console.print(f"[green]API:[/green] {settings.api.base_url}")
    try:
        asyncio.run(run_daemon(settings, get_toolchain(settings), once=once))
    except (RuntimeError, *_CLIENT_ERRORS) as e:
        _fail(str(e))
    console.print("[yellow]Daemon stopped[/yellow]")


@app.command()
def check():
    """Validate configuration, workspaces, tooling and control-plane access."""
    from reelforge.services.toolchain import get_toolchain

    settings = _settings()
    table = Table(title="Runtime configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("daemon id", settings.daemon_id)
    table.add_row("interval", f"{settings.daemon.interval_ms} ms")
    table.add_row("max concurrency", str(settings.daemon.max_concurrency))
    table.add_row("task timeout", f"{settings.daemon.task_timeout_seconds} s")
    table.add_row("request timeout", f"{settings.daemon.request_timeout_ms} ms")
    table.add_row("api", settings.api.base_url)
    table.add_row("storage", settings.api.storage_url)
    table.add_row("password", "***" if settings.api.password else "(empty)")
    table.add_row("projects", str(settings.workspaces.projects))
    table.add_row("toolchain", settings.toolchain.kind)
    table.add_row("script mode", settings.pipeline.script_mode)
    table.add_row("captions renderer", settings.pipeline.captions_renderer)
    table.add_row("default voice", f"{settings.audio.default_voice} ({settings.audio.default_provider})")
    console.print(table)

    problems = list(get_toolchain(settings).validate())
    if settings.toolchain.kind == "command":
        try:
            validate_dependencies()
        except RuntimeError as e:
            problems.append(str(e))

    async def _verify():
        async with ControlPlaneClient(settings) as client:
            await client.verify_services_access()

    try:
        asyncio.run(_verify())
    except _CLIENT_ERRORS as e:
        problems.append(f"Control plane unreachable: {e}")

    if problems:
        for problem in problems:
            console.print(f"[red]✗[/red] {problem}")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] All checks passed")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Run the reference control-plane API."""
    import uvicorn

    from reelforge.api.app import create_app

    settings = _settings()
    uvicorn.run(
        create_app(settings),
        host=host or settings.server.host,
        port=port or settings.server.port,
    )


@app.command()
def create(
    prompt: Optional[str] = typer.Argument(None, help="Prompt for script generation"),
    languages: List[str] = typer.Option(["en"], "--language", "-l", help="Target language (repeatable)"),
    user_id: str = typer.Option("local-user", "--user", help="Owner user id"),
    script_file: Optional[Path] = typer.Option(None, "--script-file", help="Use this text as the exact script"),
    auto_approve: bool = typer.Option(True, "--auto-approve/--review", help="Skip script and audio review"),
    captions: bool = typer.Option(True, "--captions/--no-captions", help="Render captions overlay"),
    voice: Optional[str] = typer.Option(None, "--voice", help="Project voice id"),
):
    """Create a project through the admin API."""
    if not prompt and script_file is None:
        _fail("Provide a prompt or --script-file")
    raw_script = script_file.read_text(encoding="utf-8") if script_file else None
    data = ProjectCreate(
        user_id=user_id,
        languages=languages,
        prompt=prompt,
        raw_script=raw_script,
        settings=ProjectSettings(
            use_exact_text_as_script=raw_script is not None,
            auto_approve_script=auto_approve,
            auto_approve_audio=auto_approve,
            captions_enabled=captions,
            voice_id=voice,
        ),
    )

    async def _create():
        async with ControlPlaneClient(_settings()) as client:
            return await client.admin_create_project(data)

    try:
        project = asyncio.run(_create())
    except _CLIENT_ERRORS as e:
        _fail(str(e))
    console.print(f"[green]Created project:[/green] {project.id} ({', '.join(project.languages)})")


@app.command()
def reset(
    project_id: str = typer.Argument(..., help="Project id"),
    status: ProjectStatus = typer.Argument(..., help="Target status"),
    reset_progress: bool = typer.Option(False, "--reset-progress", help="Clear downstream progress flags"),
    languages: Optional[List[str]] = typer.Option(None, "--language", "-l", help="Only reset these languages"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="History message"),
):
    """Roll a project back to STATUS, optionally clearing downstream progress."""
    request = AdminStatusUpdate(
        status=status,
        message=message,
        reset_progress=reset_progress,
        languages_to_reset=languages or None,
    )

    async def _reset():
        async with ControlPlaneClient(_settings()) as client:
            return await client.admin_set_status(project_id, request)

    try:
        result = asyncio.run(_reset())
    except _CLIENT_ERRORS as e:
        _fail(str(e))
    console.print(f"[green]Project {project_id}:[/green] {result.status.value}")
    if result.reset_languages:
        console.print(f"Reset languages: {', '.join(result.reset_languages)}")
    if result.cleared_final_video:
        console.print("Final video cleared")
    if result.cancelled_jobs:
        console.print(f"Failed {result.cancelled_jobs} active job(s)")


@app.command()
def sweep(
    ttl_minutes: int = typer.Option(15, "--ttl", help="Minutes without update before a job is stale"),
    limit: int = typer.Option(200, "--limit", help="Maximum jobs to update"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without updating"),
    include_queued: bool = typer.Option(False, "--include-queued", help="Also fail stale queued jobs"),
    project_id: Optional[str] = typer.Option(None, "--project", help="Restrict to one project"),
):
    """Mark stale jobs failed."""
    request = SweepRequest(
        ttl_minutes=ttl_minutes,
        limit=limit,
        dry_run=dry_run,
        include_queued=include_queued,
        project_id=project_id,
    )

    async def _sweep():
        async with ControlPlaneClient(_settings()) as client:
            return await client.sweep_stale(request)

    try:
        result = asyncio.run(_sweep())
    except _CLIENT_ERRORS as e:
        _fail(str(e))
    if result.dry_run:
        console.print(f"[yellow]Dry run:[/yellow] {result.matched} stale job(s) would be failed")
    else:
        console.print(f"Matched {result.matched} stale job(s), failed {result.updated}")
    for job_id in result.job_ids:
        console.print(f"  {job_id}")


@app.command()
def progress(project_id: str = typer.Argument(..., help="Project id")):
    """Show per-language progress for a project."""

    async def _progress():
        async with ControlPlaneClient(_settings()) as client:
            project = await client.admin_get_project(project_id)
            return project, await client.admin_language_progress(project_id)

    try:
        project, state = asyncio.run(_progress())
    except _CLIENT_ERRORS as e:
        _fail(str(e))

    console.print(f"[bold]Project {project.id}[/bold] status={project.status.value}")
    table = Table()
    table.add_column("Language", style="cyan")
    for title in ("Transcription", "Captions", "Video parts", "Final video"):
        table.add_column(title, justify="center")
    table.add_column("Failure")

    def mark(flag: bool) -> str:
        return "[green]✓[/green]" if flag else "-"

    for row in state.progress:
        failure = ""
        if row.disabled:
            failure = f"[red]{row.failed_step or 'disabled'}[/red] {row.failure_reason or ''}".strip()
        table.add_row(
            row.language_code,
            mark(row.transcription_done),
            mark(row.captions_done),
            mark(row.video_parts_done),
            mark(row.final_video_done),
            failure,
        )
    console.print(table)
    if project.final_video_url:
        console.print(f"[green]Final video:[/green] {project.final_video_url}")
