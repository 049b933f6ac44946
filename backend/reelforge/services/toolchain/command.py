"""Toolchain backed by external command-line tools.

Each operation is an argument template (``settings.toolchain.commands``, with
``DEFAULT_COMMANDS`` as fallback) formatted with ``str.format``. An argument
whose placeholders all resolve to an empty value is dropped, which is how
optional flags such as ``--style={style}`` are expressed.
"""

import logging
import string
from pathlib import Path
from typing import Any, Optional

from reelforge.config import Settings
from reelforge.services.commands import run_command
from reelforge.services.toolchain.base import FinalVideoOptions, Toolchain, ToolchainError, ToolContext
from reelforge.services.voices import ResolvedVoice
from reelforge.services.workspace import timestamp_slug

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}

DEFAULT_COMMANDS: dict[str, list[str]] = {
    "generate_script": [
        "npm", "run", "prompt-to-text", "--",
        "--prompt-file", "{prompt_file}", "--language", "{language}", "--mode", "{mode}",
        "--duration={duration_seconds}", "--guidance-file={guidance_file}",
        "--avoid-file={avoidance_file}", "--output", "{output}",
    ],
    "refine_script": [
        "npm", "run", "prompt-to-text", "--", "--refine",
        "--script-file", "{script_file}", "--request-file", "{request_file}",
        "--language", "{language}", "--guidance-file={guidance_file}",
        "--avoid-file={avoidance_file}", "--output", "{output}",
    ],
    "translate_script": [
        "npm", "run", "-s", "translate", "--",
        "--input", "{script_file}", "--from", "{source_language}", "--to", "{language}",
        "--output", "{output}",
    ],
    "synthesize_voiceover": [
        "npm", "run", "audio:{provider}", "--",
        "--text-file", "{text_file}", "--voice", "{voice_id}", "--output", "{output}",
        "--style={style}",
    ],
    "transcribe": [
        "npm", "run", "audio:transcribe:faster-whisper", "--",
        "{audio}", "{output}", "--language", "{short_language}",
    ],
    "generate_metadata": [
        "npm", "run", "transcript:json", "--", "{transcript}", "{output}",
        "--target-blocks={target_blocks}",
    ],
    "render_captions": [
        "npm", "run", "{captions_script}", "--",
        "--input", "{metadata}", "--audio={audio}", "--output", "{output}", "--preset", "{preset}",
    ],
    "generate_images": [
        "npm", "run", "-s", "image:blocks-to-qwen", "--",
        "--workspace={output_dir}", "--blocks-json={metadata}",
        "--style-prompt={style_prompt_file}", "{fast_flag}",
    ],
    "render_video_parts": [
        "npm", "run", "-s", "video:basic-effects", "--",
        "--workspace={workspace}", "--blocks-json={metadata}",
        "--images-dir={images_dir}", "--transition-name={effect}",
    ],
    "build_final_video": [
        "npm", "run", "-s", "video:merge-layers", "--", "1080p",
        "--final", "{output}", "--main-video", "{main_video}", "--audio", "{audio}",
        "--captions={captions}", "--background-music={music}", "--overlay={overlay}",
        "{watermark_flag}", "{cta_flag}",
    ],
}

# Which configured tool workspace each operation runs in
TOOL_WORKSPACES = {
    "generate_script": "script",
    "refine_script": "script",
    "translate_script": "script",
    "synthesize_voiceover": "script",
    "transcribe": "script_v2",
    "generate_metadata": "script_v2",
    "generate_images": "script_v2",
    "render_video_parts": "script_v2",
    "build_final_video": "script_v2",
    "render_captions": "caption",
}

_formatter = string.Formatter()


def render_args(template: list[str], values: dict[str, Any]) -> list[str]:
    """Format ``template`` with ``values``, dropping arguments that resolve to nothing.

    Raises:
        ToolchainError: If the template references an unknown placeholder.
    """
    args: list[str] = []
    for part in template:
        try:
            fields = [name for _, name, _, _ in _formatter.parse(part) if name]
        except ValueError as e:
            raise ToolchainError(f"Malformed command template {part!r}: {e}") from e
        unknown = [name for name in fields if name not in values]
        if unknown:
            raise ToolchainError(f"Unknown placeholder {unknown[0]!r} in command template {part!r}")
        if fields and all(values[name] in (None, "") for name in fields):
            continue
        args.append(part.format(**{k: "" if v is None else v for k, v in values.items()}))
    return args


class CommandToolchain(Toolchain):
    """Run the configured external tools through the command runner."""

    name = "command"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.commands = {**DEFAULT_COMMANDS, **settings.toolchain.commands}

    def validate(self) -> list[str]:
        problems = [f"Missing tool workspace: {p}" for p in self.settings.workspaces.missing_tool_dirs()]
        for name, template in self.commands.items():
            if not template:
                problems.append(f"Empty command template for {name}")
        return problems

    def _cwd(self, operation: str) -> Path:
        return getattr(self.settings.workspaces, TOOL_WORKSPACES[operation])

    async def _invoke(self, operation: str, ctx: ToolContext, values: dict[str, Any], output: Path) -> Path:
        template = self.commands.get(operation)
        if not template:
            raise ToolchainError(f"No command configured for {operation}")
        output.parent.mkdir(parents=True, exist_ok=True)
        args = render_args(
            template,
            {"project_id": ctx.project_id, "language": ctx.language, "output": str(output), **values},
        )
        log_path = ctx.log_dir / f"{operation}-{timestamp_slug()}.log"
        await run_command(args, cwd=self._cwd(operation), log_path=log_path, workspace_root=ctx.commands_root)
        if not output.exists():
            raise ToolchainError(f"{operation} did not produce {output}")
        return output

    def _write_input(self, ctx: ToolContext, name: str, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        path = ctx.workspace.root / "inputs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return str(path)

    async def _text_operation(self, operation: str, ctx: ToolContext, values: dict[str, Any]) -> str:
        output = ctx.workspace.root / "inputs" / f"{operation}.out.txt"
        output.unlink(missing_ok=True)
        await self._invoke(operation, ctx, values, output)
        text = output.read_text(encoding="utf-8").strip()
        if not text:
            raise ToolchainError(f"{operation} returned empty text")
        return text

    async def generate_script(self, ctx, *, prompt, duration_seconds=None, creation_guidance="",
                              avoidance_guidance="", mode="normal"):
        return await self._text_operation("generate_script", ctx, {
            "prompt_file": self._write_input(ctx, "prompt.txt", prompt),
            "duration_seconds": duration_seconds,
            "guidance_file": self._write_input(ctx, "guidance.txt", creation_guidance),
            "avoidance_file": self._write_input(ctx, "avoidance.txt", avoidance_guidance),
            "mode": mode,
        })

    async def refine_script(self, ctx, *, script, request_text, creation_guidance="", avoidance_guidance=""):
        return await self._text_operation("refine_script", ctx, {
            "script_file": self._write_input(ctx, "current-script.txt", script),
            "request_file": self._write_input(ctx, "refine-request.txt", request_text),
            "guidance_file": self._write_input(ctx, "guidance.txt", creation_guidance),
            "avoidance_file": self._write_input(ctx, "avoidance.txt", avoidance_guidance),
        })

    async def translate_script(self, ctx, *, script, source_language):
        return await self._text_operation("translate_script", ctx, {
            "script_file": self._write_input(ctx, f"source-{source_language}.txt", script),
            "source_language": source_language,
        })

    async def synthesize_voiceover(self, ctx, *, text, voice: ResolvedVoice, output_path):
        text_file = output_path.parent / "script.txt"
        text_file.parent.mkdir(parents=True, exist_ok=True)
        text_file.write_text(text, encoding="utf-8")
        return await self._invoke("synthesize_voiceover", ctx, {
            "text_file": str(text_file),
            "voice_id": voice.voice_id,
            "provider": voice.provider,
            "style": voice.style,
        }, output_path)

    async def transcribe(self, ctx, *, audio_path, output_path):
        return await self._invoke("transcribe", ctx, {
            "audio": str(audio_path),
            "short_language": ctx.language.split("-")[0],
        }, output_path)

    async def generate_metadata(self, ctx, *, transcript_path, output_path, target_blocks=None, mode="normal"):
        return await self._invoke("generate_metadata", ctx, {
            "transcript": str(transcript_path),
            "target_blocks": target_blocks,
            "mode": mode,
        }, output_path)

    async def render_captions(self, ctx, *, metadata_path, audio_path, preset, renderer, output_path):
        return await self._invoke("render_captions", ctx, {
            "metadata": str(metadata_path),
            "audio": str(audio_path) if audio_path else None,
            "preset": preset,
            "captions_script": "render:headless" if renderer == "legacy" else "render:python",
        }, output_path)

    async def generate_images(self, ctx, *, metadata_path, style_prompt, output_dir, mode="normal"):
        style_file = None
        if style_prompt:
            style_file = ctx.workspace.image_style
            style_file.parent.mkdir(parents=True, exist_ok=True)
            style_file.write_text(style_prompt, encoding="utf-8")
        await self._invoke("generate_images", ctx, {
            "metadata": str(metadata_path),
            "output_dir": str(output_dir),
            "style_prompt_file": str(style_file) if style_file else None,
            "fast_flag": "--fast" if mode == "fast" else None,
        }, output_dir)
        return sorted(p for p in output_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)

    async def render_video_parts(self, ctx, *, metadata_path, images_dir, effect, output_path):
        return await self._invoke("render_video_parts", ctx, {
            "workspace": str(ctx.workspace.root),
            "metadata": str(metadata_path),
            "images_dir": str(images_dir),
            "effect": effect,
        }, output_path)

    async def build_final_video(self, ctx, *, main_video, audio_path, captions_overlay, metadata_path,
                                options: FinalVideoOptions, output_path):
        output_path.unlink(missing_ok=True)
        return await self._invoke("build_final_video", ctx, {
            "main_video": str(main_video),
            "audio": str(audio_path),
            "captions": str(captions_overlay) if captions_overlay else None,
            "metadata": str(metadata_path),
            "music": options.music_url if options.include_default_music else None,
            "overlay": options.overlay_url if options.add_overlay else None,
            "watermark_flag": "--watermark" if options.watermark_enabled else None,
            "cta_flag": "--call-to-action" if options.include_call_to_action else None,
        }, output_path)
