"""Abstract base class for media toolchains.

A toolchain turns phase inputs (prompts, scripts, audio, metadata, images)
into artifacts on disk. Phases only talk to this interface, so the external
tools can be swapped for stand-ins in local runs and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from reelforge.services.voices import ResolvedVoice
from reelforge.services.workspace import LanguageWorkspace


class ToolchainError(RuntimeError):
    """A tool ran but did not produce a usable artifact."""


@dataclass(frozen=True)
class ToolContext:
    """Where a single tool invocation runs and logs."""

    project_id: str
    language: str
    workspace: LanguageWorkspace
    log_dir: Path
    commands_root: Optional[Path] = None


@dataclass(frozen=True)
class FinalVideoOptions:
    include_default_music: bool = True
    music_url: Optional[str] = None
    add_overlay: bool = True
    overlay_url: Optional[str] = None
    watermark_enabled: bool = False
    include_call_to_action: bool = False


class Toolchain(ABC):
    """Async interface every toolchain implements.

    Methods that produce files take the destination path and return it once
    the artifact exists; text-producing methods return the text.
    """

    name: str = "toolchain"

    def validate(self) -> list[str]:
        """Return human-readable problems that would prevent the toolchain from running."""
        return []

    @abstractmethod
    async def generate_script(
        self,
        ctx: ToolContext,
        *,
        prompt: str,
        duration_seconds: Optional[int] = None,
        creation_guidance: str = "",
        avoidance_guidance: str = "",
        mode: str = "normal",
    ) -> str:
        """Write a narration script for ``prompt`` in ``ctx.language``."""
        ...

    @abstractmethod
    async def refine_script(
        self,
        ctx: ToolContext,
        *,
        script: str,
        request_text: str,
        creation_guidance: str = "",
        avoidance_guidance: str = "",
    ) -> str:
        """Rewrite ``script`` following the reviewer's ``request_text``."""
        ...

    @abstractmethod
    async def translate_script(self, ctx: ToolContext, *, script: str, source_language: str) -> str:
        """Translate ``script`` from ``source_language`` into ``ctx.language``."""
        ...

    @abstractmethod
    async def synthesize_voiceover(
        self, ctx: ToolContext, *, text: str, voice: ResolvedVoice, output_path: Path
    ) -> Path:
        ...

    @abstractmethod
    async def transcribe(self, ctx: ToolContext, *, audio_path: Path, output_path: Path) -> Path:
        ...

    @abstractmethod
    async def generate_metadata(
        self,
        ctx: ToolContext,
        *,
        transcript_path: Path,
        output_path: Path,
        target_blocks: Optional[int] = None,
        mode: str = "normal",
    ) -> Path:
        """Split the transcript into timed blocks (a JSON list).

        Args:
            target_blocks: Block count to match, taken from the primary
                language so that every language lines up with the same images.
        """
        ...

    @abstractmethod
    async def render_captions(
        self,
        ctx: ToolContext,
        *,
        metadata_path: Path,
        audio_path: Optional[Path],
        preset: str,
        renderer: str,
        output_path: Path,
    ) -> Path:
        ...

    @abstractmethod
    async def generate_images(
        self,
        ctx: ToolContext,
        *,
        metadata_path: Path,
        style_prompt: Optional[str],
        output_dir: Path,
        mode: str = "normal",
    ) -> list[Path]:
        """Generate one image per metadata block into ``output_dir``."""
        ...

    @abstractmethod
    async def render_video_parts(
        self,
        ctx: ToolContext,
        *,
        metadata_path: Path,
        images_dir: Path,
        effect: str,
        output_path: Path,
    ) -> Path:
        ...

    @abstractmethod
    async def build_final_video(
        self,
        ctx: ToolContext,
        *,
        main_video: Path,
        audio_path: Path,
        captions_overlay: Optional[Path],
        metadata_path: Path,
        options: FinalVideoOptions,
        output_path: Path,
    ) -> Path:
        """Merge the main video, voiceover, captions and extras into the final cut."""
        ...
