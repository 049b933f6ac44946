"""Voice resolution for voiceover synthesis.

Resolution order for a language:

1. the voice requested on the job payload (``voiceId``)
2. the project-level voice
3. the per-language voice assignment
4. the configured global default

Job and project voices are skipped when the voice catalog says they do not
speak the language. The provider must be one the synthesis tool supports.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from reelforge.schemas.wire import CreationSnapshot, VoiceOption, normalize_language_code

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = frozenset({"minimax", "elevenlabs", "inworld"})
STYLE_CAPABLE_PROVIDERS = frozenset({"elevenlabs"})


class VoiceResolutionError(ValueError):
    """No usable voice/provider pair for a language."""


@dataclass(frozen=True)
class ResolvedVoice:
    voice_id: str
    provider: str
    source: str
    style: Optional[str] = None


class VoiceCatalog:
    """Lookup over the voices known to the project."""

    def __init__(self, voices: Iterable[VoiceOption]):
        self._by_id = {v.id: v for v in voices}

    def get(self, voice_id: str) -> Optional[VoiceOption]:
        return self._by_id.get(voice_id)

    def provider_for(self, voice_id: str) -> Optional[str]:
        entry = self.get(voice_id)
        return entry.provider if entry else None

    def supports_language(self, voice_id: str, language: str) -> bool:
        """Unknown voices and voices without a language list are assumed compatible."""
        entry = self.get(voice_id)
        if entry is None or not entry.languages:
            return True
        code = normalize_language_code(language) or ""
        return code in entry.languages or code.split("-")[0] in entry.languages


def _normalize_provider(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip().lower() or None


def resolve_voice(
    snapshot: CreationSnapshot,
    language: str,
    *,
    job_voice: Optional[str] = None,
    default_voice: str,
    default_provider: str,
    style: Optional[str] = None,
) -> ResolvedVoice:
    """Pick the voice and provider for ``language``.

    Raises:
        VoiceResolutionError: When the chosen voice has no supported provider.
    """
    catalog = VoiceCatalog(snapshot.voices)
    candidates: list[tuple[str, str, Optional[str]]] = []
    if job_voice and job_voice.strip():
        candidates.append((job_voice.strip(), "job", None))
    if snapshot.voice_id:
        candidates.append((snapshot.voice_id, "project", None))
    assignment = snapshot.voice_assignments.get(language)
    if assignment and assignment.voice_id:
        candidates.append((assignment.voice_id, "language", assignment.voice_provider))

    chosen = None
    for voice_id, source, provider_hint in candidates:
        if source == "language" or catalog.supports_language(voice_id, language):
            chosen = (voice_id, source, provider_hint)
            break
        logger.info(f"Voice {voice_id} ({source}) does not support {language}; trying next option")

    if chosen is None:
        voice_id, source, provider = default_voice, "default", default_provider
    else:
        voice_id, source, provider = chosen
        provider = (
            provider
            or snapshot.voice_providers.get(voice_id)
            or catalog.provider_for(voice_id)
        )

    provider = _normalize_provider(provider)
    if provider not in SUPPORTED_PROVIDERS:
        raise VoiceResolutionError("Voice provider missing or unsupported")

    if style and provider not in STYLE_CAPABLE_PROVIDERS:
        logger.debug(f"Dropping audio style for provider {provider} (voice {voice_id})")
        style = None

    return ResolvedVoice(voice_id=voice_id, provider=provider, source=source, style=style)
