"""Toolchain selection, command templates and the command-backed toolchain."""

import json
import sys

import pytest

from reelforge.services.toolchain import ToolchainError, ToolContext, get_toolchain
from reelforge.services.toolchain.command import CommandToolchain, render_args
from reelforge.services.toolchain.placeholder import PlaceholderToolchain, fit_blocks
from reelforge.services.voices import ResolvedVoice

# Copies argv[1] to argv[2], upper-casing it
COPY_UPPER = "import sys, pathlib; p = pathlib.Path(sys.argv[2]); p.write_text(pathlib.Path(sys.argv[1]).read_text().upper())"
# Writes its own argv (minus the script) as JSON into the path after --output
ECHO_ARGS = (
    "import sys, json, pathlib; a = sys.argv[1:]; "
    "pathlib.Path(a[a.index('--output') + 1]).write_text(json.dumps(a))"
)


def _tool_context(workspaces, language="es") -> ToolContext:
    return ToolContext(
        project_id="p1",
        language=language,
        workspace=workspaces.language_workspace("p1", language),
        log_dir=workspaces.log_dir("p1", language, "test"),
        commands_root=workspaces.workspace_root("p1"),
    )


def _command_settings(settings, commands):
    for path in (settings.workspaces.script, settings.workspaces.script_v2, settings.workspaces.caption):
        path.mkdir(parents=True, exist_ok=True)
    toolchain = settings.toolchain.model_copy(update={"kind": "command", "commands": commands})
    return settings.model_copy(update={"toolchain": toolchain})


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def test_render_args_drops_empty_optionals():
    args = render_args(
        ["tool", "--style={style}", "--voice", "{voice}", "{flag}"],
        {"style": None, "voice": "anna", "flag": ""},
    )
    assert args == ["tool", "--voice", "anna"]


def test_render_args_unknown_placeholder():
    with pytest.raises(ToolchainError, match="Unknown placeholder"):
        render_args(["tool", "{missing}"], {"voice": "anna"})


def test_registry(settings):
    assert isinstance(get_toolchain(settings), PlaceholderToolchain)
    command_settings = settings.model_copy(
        update={"toolchain": settings.toolchain.model_copy(update={"kind": "command"})}
    )
    assert isinstance(get_toolchain(command_settings), CommandToolchain)


def test_validate_reports_missing_tool_dirs(settings):
    toolchain = CommandToolchain(settings)
    problems = toolchain.validate()
    assert any("Missing tool workspace" in p for p in problems)

    ready = CommandToolchain(_command_settings(settings, {"transcribe": []}))
    assert ready.validate() == ["Empty command template for transcribe"]


# ---------------------------------------------------------------------------
# Command toolchain
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_translate_runs_configured_command(settings, workspaces):
    toolchain = CommandToolchain(_command_settings(settings, {
        "translate_script": [sys.executable, "-c", COPY_UPPER, "{script_file}", "{output}"],
    }))
    ctx = _tool_context(workspaces)

    text = await toolchain.translate_script(ctx, script="hola mundo", source_language="en")
    assert text == "HOLA MUNDO"

    logs = list(ctx.log_dir.glob("translate_script-*.log"))
    assert len(logs) == 1
    assert "Exit code: 0" in logs[0].read_text(encoding="utf-8")
    assert "DONE" in (ctx.commands_root / "commands.txt").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_voiceover_arguments(settings, workspaces):
    toolchain = CommandToolchain(_command_settings(settings, {
        "synthesize_voiceover": [
            sys.executable, "-c", ECHO_ARGS, "--provider={provider}",
            "--voice", "{voice_id}", "--style={style}", "--output", "{output}",
        ],
    }))
    ctx = _tool_context(workspaces)
    output = ctx.workspace.audio_run_dir("run-1") / "take-1.wav"

    await toolchain.synthesize_voiceover(
        ctx, text="hola", voice=ResolvedVoice("luis", "minimax", "language"), output_path=output
    )
    args = json.loads(output.read_text())
    assert args == ["--provider=minimax", "--voice", "luis", "--output", str(output)]
    assert (output.parent / "script.txt").read_text(encoding="utf-8") == "hola"


@pytest.mark.asyncio
async def test_missing_output_is_toolchain_error(settings, workspaces):
    toolchain = CommandToolchain(_command_settings(settings, {
        "transcribe": [sys.executable, "-c", "pass", "{audio}", "{output}"],
    }))
    ctx = _tool_context(workspaces)
    with pytest.raises(ToolchainError, match="did not produce"):
        await toolchain.transcribe(ctx, audio_path=ctx.workspace.root / "a.wav", output_path=ctx.workspace.transcript)


# ---------------------------------------------------------------------------
# Placeholder toolchain
# ---------------------------------------------------------------------------

def test_fit_blocks():
    assert fit_blocks(["a", "b", "c"], 2) == ["a", "b c"]
    assert fit_blocks(["a"], 3) == ["a", "a", "a"]
    assert fit_blocks(["a", "b"], None) == ["a", "b"]


@pytest.mark.asyncio
async def test_placeholder_metadata_matches_target(workspaces):
    toolchain = PlaceholderToolchain()
    ctx = _tool_context(workspaces)
    ctx.workspace.transcript.write_text("Uno. Dos. Tres. Cuatro.", encoding="utf-8")

    await toolchain.generate_metadata(
        ctx, transcript_path=ctx.workspace.transcript, output_path=ctx.workspace.blocks, target_blocks=2
    )
    blocks = json.loads(ctx.workspace.blocks.read_text(encoding="utf-8"))
    assert [b["text"] for b in blocks] == ["Uno.", "Dos. Tres. Cuatro."]


@pytest.mark.asyncio
async def test_placeholder_injected_failure(workspaces):
    toolchain = PlaceholderToolchain(fail_on={"translate_script": ["es"]})
    with pytest.raises(ToolchainError, match="Injected translate_script failure for es"):
        await toolchain.translate_script(_tool_context(workspaces, "es"), script="hi", source_language="en")
    assert await toolchain.translate_script(_tool_context(workspaces, "fr"), script="hi", source_language="en") == "[fr] hi"
    assert toolchain.calls_for("translate_script") == ["es", "fr"]
