"""Per-language progress: aggregation rules and the daemon-side tracker.

A language row carries four stage flags plus a failure marker. Disabled
languages are excluded from every aggregate so that one failed language never
holds back the others.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

import httpx

from reelforge.client.errors import ControlPlaneError
from reelforge.schemas.wire import (
    LanguageProgressAggregate,
    LanguageProgressRow,
    LanguageProgressUpdate,
    ProgressAggregate,
    StageAggregate,
    format_failure_reason,
    normalize_failed_step,
)

if TYPE_CHECKING:
    from reelforge.client.control_plane import ControlPlaneClient

logger = logging.getLogger(__name__)

# Aggregate stage name -> row attribute
STAGE_FLAGS = {
    "transcription": "transcription_done",
    "captions": "captions_done",
    "video_parts": "video_parts_done",
    "final_video": "final_video_done",
}


def row_to_wire(row) -> LanguageProgressRow:
    """Convert an ORM progress row (or any attribute-compatible object)."""
    return LanguageProgressRow(
        language_code=row.language_code,
        transcription_done=bool(row.transcription_done),
        captions_done=bool(row.captions_done),
        video_parts_done=bool(row.video_parts_done),
        final_video_done=bool(row.final_video_done),
        disabled=bool(row.disabled),
        failed_step=row.failed_step,
        failure_reason=row.failure_reason,
    )


def aggregate_progress(rows: Iterable[LanguageProgressRow]) -> ProgressAggregate:
    """Compute per-stage completion over non-disabled languages."""
    active = [row for row in rows if not row.disabled]
    stages = {}
    for stage, attr in STAGE_FLAGS.items():
        remaining = [row.language_code for row in active if not getattr(row, attr)]
        stages[stage] = StageAggregate(done=not remaining, remaining=remaining)
    return ProgressAggregate(**stages)


class LanguageProgressTracker:
    """Reads and writes one project's language progress through the control plane."""

    def __init__(self, client: "ControlPlaneClient", project_id: str):
        self.client = client
        self.project_id = project_id
        self._state: Optional[LanguageProgressAggregate] = None
        self._failed_here: set[str] = set()

    @property
    def loaded(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> LanguageProgressAggregate:
        if self._state is None:
            raise RuntimeError("Language progress not loaded; call refresh() first")
        return self._state

    async def refresh(self) -> LanguageProgressAggregate:
        self._state = await self.client.get_language_progress(self.project_id)
        return self._state

    def row(self, language: str) -> Optional[LanguageProgressRow]:
        return self.state.row(language)

    def is_disabled(self, language: str) -> bool:
        if language in self._failed_here:
            return True
        row = self.row(language)
        return bool(row and row.disabled)

    def is_done(self, language: str, flag: str) -> bool:
        row = self.row(language)
        return bool(row and getattr(row, flag))

    def active_languages(self, languages: Iterable[str]) -> list[str]:
        """Configured languages that are not disabled, in configured order."""
        return [code for code in languages if not self.is_disabled(code)]

    def disabled_languages(self, languages: Iterable[str]) -> list[str]:
        return [code for code in languages if self.is_disabled(code)]

    def pending(self, languages: Iterable[str], flag: str) -> list[str]:
        """Active languages whose ``flag`` is still false."""
        return [code for code in self.active_languages(languages) if not self.is_done(code, flag)]

    async def update(self, language: str, **changes) -> LanguageProgressAggregate:
        payload = LanguageProgressUpdate(language_code=language, **changes)
        self._state = await self.client.update_language_progress(self.project_id, payload)
        return self._state

    async def mark_done(self, language: str, flag: str) -> None:
        await self.update(language, **{flag: True})

    async def reset(self, languages: Iterable[str], flags: Iterable[str]) -> None:
        flags = tuple(flags)
        for code in languages:
            await self.update(code, **{flag: False for flag in flags})

    async def mark_failure(self, language: str, step: str, reason: Optional[str]) -> None:
        """Disable ``language`` with a failure marker.

        A failure to persist the marker is logged and does not interrupt the
        phase, which still treats the language as failed for this run.
        """
        self._failed_here.add(language)
        try:
            await self.update(
                language,
                disabled=True,
                failed_step=normalize_failed_step(step),
                failure_reason=format_failure_reason(reason),
            )
        except (ControlPlaneError, httpx.HTTPError) as e:
            logger.warning(
                "Failed to persist language failure marker for %s/%s (%s): %s",
                self.project_id, language, step, e,
            )
        else:
            logger.warning("Language %s disabled at %s for project %s: %s", language, step, self.project_id, reason)
