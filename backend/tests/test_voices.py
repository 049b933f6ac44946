"""Voice and provider resolution for voiceover synthesis."""

import pytest

from reelforge.schemas.status import ProjectStatus
from reelforge.schemas.wire import CreationSnapshot, VoiceAssignment, VoiceOption
from reelforge.services.voices import VoiceCatalog, VoiceResolutionError, resolve_voice

DEFAULTS = dict(default_voice="Kore", default_provider="minimax")


def _snapshot(**options) -> CreationSnapshot:
    return CreationSnapshot(
        project_id="p1",
        status=ProjectStatus.ProcessAudio,
        user_id="u1",
        languages=["en", "es", "pt-br"],
        voices=[
            VoiceOption(id="anna", provider="elevenlabs", languages=["en"]),
            VoiceOption(id="luis", provider="minimax", languages=["es", "PT"]),
            VoiceOption(id="any", provider="inworld"),
        ],
        **options,
    )


def test_default_voice_when_nothing_configured():
    voice = resolve_voice(_snapshot(), "en", **DEFAULTS)
    assert (voice.voice_id, voice.provider, voice.source) == ("Kore", "minimax", "default")


def test_job_voice_wins():
    voice = resolve_voice(_snapshot(voice_id="any"), "en", job_voice=" anna ", **DEFAULTS)
    assert (voice.voice_id, voice.provider, voice.source) == ("anna", "elevenlabs", "job")


def test_project_voice_skipped_when_language_unsupported():
    snapshot = _snapshot(
        voice_id="anna",
        voice_assignments={"es": VoiceAssignment(voice_id="luis")},
    )
    assert resolve_voice(snapshot, "en", **DEFAULTS).voice_id == "anna"
    voice = resolve_voice(snapshot, "es", **DEFAULTS)
    assert (voice.voice_id, voice.source) == ("luis", "language")


def test_incompatible_voices_fall_back_to_default():
    voice = resolve_voice(_snapshot(voice_id="anna"), "es", job_voice="anna", **DEFAULTS)
    assert voice.source == "default"


def test_regional_code_matches_base_language():
    voice = resolve_voice(_snapshot(voice_id="luis"), "pt-br", **DEFAULTS)
    assert voice.voice_id == "luis"


def test_provider_from_assignment_then_project_map():
    snapshot = _snapshot(
        voice_assignments={"en": VoiceAssignment(voice_id="custom", voice_provider="ElevenLabs")},
        voice_providers={"other": "inworld"},
    )
    assert resolve_voice(snapshot, "en", **DEFAULTS).provider == "elevenlabs"

    snapshot = _snapshot(voice_id="other", voice_providers={"other": "inworld"})
    assert resolve_voice(snapshot, "en", **DEFAULTS).provider == "inworld"


def test_unknown_provider_rejected():
    with pytest.raises(VoiceResolutionError, match="Voice provider missing or unsupported"):
        resolve_voice(_snapshot(voice_id="mystery"), "en", **DEFAULTS)
    with pytest.raises(VoiceResolutionError):
        resolve_voice(_snapshot(), "en", default_voice="Kore", default_provider="acme")


def test_style_kept_only_for_style_capable_provider():
    assert resolve_voice(_snapshot(), "en", job_voice="anna", style="warm", **DEFAULTS).style == "warm"
    assert resolve_voice(_snapshot(), "en", style="warm", **DEFAULTS).style is None


def test_catalog_lookup():
    catalog = VoiceCatalog(_snapshot().voices)
    assert catalog.provider_for("luis") == "minimax"
    assert catalog.provider_for("nobody") is None
    assert catalog.supports_language("any", "fr")
    assert catalog.supports_language("nobody", "fr")
    assert not catalog.supports_language("anna", "es")
