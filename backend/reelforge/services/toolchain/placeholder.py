"""Stand-in toolchain that writes small deterministic artifacts.

Used for local dry runs and tests. ``fail_on`` injects failures per operation
and language, ``delay`` slows every call down, and ``calls`` records what ran
so tests can assert that completed work is not repeated.
"""

import asyncio
import base64
import json
import logging
import re
import wave
from pathlib import Path
from typing import Iterable, Optional

from reelforge.services.toolchain.base import FinalVideoOptions, Toolchain, ToolchainError, ToolContext
from reelforge.services.voices import ResolvedVoice

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000

_PNG_1PX = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def fit_blocks(sentences: list[str], target: Optional[int]) -> list[str]:
    """Merge or pad ``sentences`` so there are exactly ``target`` of them."""
    if not target or target <= 0:
        return sentences or [""]
    blocks = list(sentences) or [""]
    while len(blocks) > target:
        tail = blocks.pop()
        blocks[-1] = f"{blocks[-1]} {tail}".strip()
    while len(blocks) < target:
        blocks.append(blocks[-1])
    return blocks


class PlaceholderToolchain(Toolchain):
    name = "placeholder"

    def __init__(
        self,
        fail_on: Optional[dict[str, Iterable[str]]] = None,
        delay: float = 0.0,
    ):
        self.fail_on = {op: set(langs) for op, langs in (fail_on or {}).items()}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def _enter(self, operation: str, ctx: ToolContext) -> None:
        self.calls.append((operation, ctx.language))
        if self.delay:
            await asyncio.sleep(self.delay)
        targets = self.fail_on.get(operation, set())
        if ctx.language in targets or "*" in targets:
            raise ToolchainError(f"Injected {operation} failure for {ctx.language}")
        logger.debug(f"Placeholder {operation} for {ctx.project_id}/{ctx.language}")

    def calls_for(self, operation: str) -> list[str]:
        return [lang for op, lang in self.calls if op == operation]

    @staticmethod
    def _write(path: Path, data: bytes | str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            path.write_text(data, encoding="utf-8")
        else:
            path.write_bytes(data)
        return path

    async def generate_script(self, ctx, *, prompt, duration_seconds=None, creation_guidance="",
                              avoidance_guidance="", mode="normal"):
        await self._enter("generate_script", ctx)
        lines = [f"{prompt.strip().rstrip('.')}."]
        if creation_guidance:
            lines.append(f"{creation_guidance.rstrip('.')}.")
        lines.append("Thanks for watching.")
        return " ".join(lines)

    async def refine_script(self, ctx, *, script, request_text, creation_guidance="", avoidance_guidance=""):
        await self._enter("refine_script", ctx)
        return f"{script.strip()} {request_text.strip()}"

    async def translate_script(self, ctx, *, script, source_language):
        await self._enter("translate_script", ctx)
        return f"[{ctx.language}] {script.strip()}"

    async def synthesize_voiceover(self, ctx, *, text, voice: ResolvedVoice, output_path):
        await self._enter("synthesize_voiceover", ctx)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with wave.open(str(output_path), "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(SAMPLE_RATE)
            wav.writeframes(b"\x00\x00" * (SAMPLE_RATE // 10))
        # Sidecar text lets the placeholder transcription echo the script back
        self._write(output_path.with_suffix(".txt"), text)
        return output_path

    async def transcribe(self, ctx, *, audio_path, output_path):
        await self._enter("transcribe", ctx)
        sidecar = Path(audio_path).with_suffix(".txt")
        text = sidecar.read_text(encoding="utf-8") if sidecar.exists() else f"Transcript for {ctx.language}."
        return self._write(output_path, text)

    async def generate_metadata(self, ctx, *, transcript_path, output_path, target_blocks=None, mode="normal"):
        await self._enter("generate_metadata", ctx)
        sentences = split_sentences(Path(transcript_path).read_text(encoding="utf-8"))
        blocks = [
            {"index": i, "text": text, "start": float(i * 3), "end": float(i * 3 + 3)}
            for i, text in enumerate(fit_blocks(sentences, target_blocks))
        ]
        return self._write(output_path, json.dumps(blocks, indent=2))

    async def render_captions(self, ctx, *, metadata_path, audio_path, preset, renderer, output_path):
        await self._enter("render_captions", ctx)
        return self._write(output_path, f"captions:{preset}:{renderer}".encode("utf-8"))

    async def generate_images(self, ctx, *, metadata_path, style_prompt, output_dir, mode="normal"):
        await self._enter("generate_images", ctx)
        blocks = json.loads(Path(metadata_path).read_text(encoding="utf-8"))
        return [self._write(Path(output_dir) / f"block-{i:03d}.png", _PNG_1PX) for i in range(len(blocks))]

    async def render_video_parts(self, ctx, *, metadata_path, images_dir, effect, output_path):
        await self._enter("render_video_parts", ctx)
        return self._write(output_path, f"video-parts:{effect}:{ctx.language}".encode("utf-8"))

    async def build_final_video(self, ctx, *, main_video, audio_path, captions_overlay, metadata_path,
                                options: FinalVideoOptions, output_path):
        await self._enter("build_final_video", ctx)
        layers = ["main", "audio"] + (["captions"] if captions_overlay else [])
        return self._write(output_path, f"final:{ctx.language}:{'+'.join(layers)}".encode("utf-8"))
