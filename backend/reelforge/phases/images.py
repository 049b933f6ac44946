"""Images phase: one shared image set generated from the primary metadata.

Images are a project-level stage, so a failure here fails the whole project
rather than a single language. A ``manifest.json`` in the images directory
marks a completed run and lets a resumed job skip regeneration.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from reelforge.orchestrator.context import PhaseContext
from reelforge.phases.common import LANGUAGE_ERRORS, has_blocks, fail_phase, require_active_languages
from reelforge.schemas.extras import VideoPartsExtra
from reelforge.schemas.status import AssetKind, ProjectStatus
from reelforge.services.toolchain import ToolchainError

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Image generation failed"
MANIFEST_NAME = "manifest.json"


def _load_manifest(images_dir: Path) -> Optional[list[Path]]:
    manifest = images_dir / MANIFEST_NAME
    if not manifest.is_file():
        return None
    names = json.loads(manifest.read_text(encoding="utf-8"))
    paths = [images_dir / name for name in names]
    if not paths or not all(p.is_file() for p in paths):
        return None
    return paths


def _source_language(ctx: PhaseContext, active: list[str]) -> str:
    """Primary language, or the first enabled language with metadata when it is disabled."""
    if ctx.primary_language in active:
        return ctx.primary_language
    for language in active:
        if has_blocks(ctx.language_workspace(language).blocks):
            return language
    return active[0]


async def run_images_phase(ctx: PhaseContext) -> None:
    active = await require_active_languages(ctx, "images", FAILURE_MESSAGE)
    source = _source_language(ctx, active)
    workspace = ctx.language_workspace(source)
    images_dir = ctx.workspaces.images_dir(ctx.project_id)

    template = ctx.snapshot.template
    if template and template.art_style_prompt and template.art_style_prompt.strip():
        workspace.image_style.parent.mkdir(parents=True, exist_ok=True)
        workspace.image_style.write_text(template.art_style_prompt.strip(), encoding="utf-8")
    style_prompt = None
    if workspace.image_style.is_file():
        style_prompt = workspace.image_style.read_text(encoding="utf-8").strip() or None

    try:
        images = _load_manifest(images_dir)
        if images is not None:
            logger.info(f"Reusing {len(images)} images for project {ctx.project_id}")
        else:
            if not has_blocks(workspace.blocks):
                raise ValueError(f"Metadata not found for {source}")
            images = await ctx.toolchain.generate_images(
                ctx.tool_context(source, "images"),
                metadata_path=workspace.blocks,
                style_prompt=style_prompt,
                output_dir=images_dir,
                mode=ctx.settings.pipeline.script_mode,
            )
            if not images:
                raise ToolchainError("Image generator produced no images")
            for image in images:
                await ctx.client.upload_asset(ctx.project_id, AssetKind.image, image)
            (images_dir / MANIFEST_NAME).write_text(
                json.dumps([p.name for p in images], indent=2), encoding="utf-8"
            )
    except LANGUAGE_ERRORS as e:
        await fail_phase(ctx, "images", FAILURE_MESSAGE, e, language=source, pending=active)

    await ctx.client.set_status(
        ctx.project_id,
        ProjectStatus.ProcessVideoPartsGeneration,
        "Images ready",
        VideoPartsExtra(
            images_dir=str(images_dir),
            image_count=len(images),
            failed_languages=ctx.progress.disabled_languages(ctx.languages),
        ),
    )
