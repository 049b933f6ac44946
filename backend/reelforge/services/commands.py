"""External command execution with per-command logs and a workspace transcript.

Each command writes a log file containing the command line, both output
streams and the exit code. When a workspace root is given, the command line is
also appended to ``commands.txt`` followed by a DONE or FAIL marker, so the
file reads as a replayable history of everything run for the project.
"""

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DONE_MARKER = "✅ DONE\n\n"
FAIL_MARKER = "❌ FAIL\n----\n\n"

_ALLOWED_ARG = re.compile(r"^[\w@./:+-]+$")

# One lock per commands.txt so concurrent tasks never interleave lines
_write_locks: dict[Path, asyncio.Lock] = {}


class CommandFailed(RuntimeError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, message: str, command_line: str, exit_code: Optional[int], log_path: Optional[Path]):
        super().__init__(message)
        self.command_line = command_line
        self.exit_code = exit_code
        self.log_path = log_path


@dataclass
class CommandResult:
    command_line: str
    exit_code: int
    stdout: str
    stderr: str
    log_path: Path


def quote_arg(value: str) -> str:
    if _ALLOWED_ARG.match(value):
        return value
    return json.dumps(value)


def format_command(args: Sequence[str], cwd: Optional[Path] = None) -> str:
    """Render a command the way it appears in logs and commands.txt."""
    base = " ".join(quote_arg(str(a)) for a in args).strip()
    prefix = f"cd {quote_arg(str(cwd))} && " if cwd else ""
    return f"{prefix}{base}"


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _write_locks.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[path] = lock
    return lock


async def _append(path: Path, text: str) -> None:
    async with _lock_for(path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)


@asynccontextmanager
async def workspace_command_log(workspace_root: Optional[Path], command_line: str):
    """Record ``command_line`` in ``commands.txt`` and mark it DONE or FAIL on exit."""
    if workspace_root is None:
        yield
        return
    commands_path = Path(workspace_root) / "commands.txt"
    await _append(commands_path, f"{command_line.rstrip()}\n")
    try:
        yield
    except BaseException:
        await _append(commands_path, FAIL_MARKER)
        raise
    await _append(commands_path, DONE_MARKER)


def format_command_log(command_line: str, stdout: str, stderr: str, exit_code: Optional[int]) -> str:
    return (
        f"Command: {command_line}\n"
        f"--- STDOUT ---\n{stdout}\n"
        f"--- STDERR ---\n{stderr}\n"
        f"Exit code: {exit_code}\n"
    )


async def run_command(
    args: Sequence[str],
    *,
    log_path: Path,
    cwd: Optional[Path] = None,
    workspace_root: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """Run ``args`` and capture its output into ``log_path``.

    Args:
        args: Program and arguments; no shell is involved.
        log_path: File receiving the command transcript.
        cwd: Working directory for the process.
        workspace_root: Directory holding ``commands.txt``; skipped when None.
        env: Extra environment variables layered over the daemon's own.

    Returns:
        CommandResult for a zero exit code.

    Raises:
        CommandFailed: On a non-zero exit code or when the program is missing.
    """
    command_line = format_command(args, cwd)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    process_env = {**os.environ, **env} if env else None

    async with workspace_command_log(workspace_root, command_line):
        logger.info(f"Running: {command_line}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(a) for a in args],
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as e:
            log_path.write_text(format_command_log(command_line, "", str(e), None), encoding="utf-8")
            raise CommandFailed(f"Failed to start command: {e}", command_line, None, log_path) from e

        stdout_b, stderr_b = await proc.communicate()
        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        log_path.write_text(format_command_log(command_line, stdout, stderr, proc.returncode), encoding="utf-8")

        if proc.returncode != 0:
            raise CommandFailed(
                f"Command failed with exit code {proc.returncode}: {command_line}",
                command_line,
                proc.returncode,
                log_path,
            )

    return CommandResult(
        command_line=command_line,
        exit_code=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        log_path=log_path,
    )
