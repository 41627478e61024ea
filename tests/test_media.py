import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from viralclips import presets, subtitles, transcript
from viralclips.errors import SubtitleWriteError, TranscriptionFailed


def test_every_preset_is_usable():
    assert presets.available_presets() == ["instagram", "tiktok", "youtube"]
    for name in presets.available_presets():
        profile = presets.PRESETS[name]
        assert profile.video_filters
        assert profile.audio_filters


@pytest.mark.parametrize("name", ["snapchat", "", None, 42])
def test_unknown_preset_falls_back_to_default(name):
    assert presets.resolve_preset(name).name == presets.DEFAULT_PRESET


def test_preset_lookup_is_case_insensitive():
    assert presets.resolve_preset("  YouTube ").name == "youtube"


def test_materialize_writes_text_verbatim(tmp_path):
    text = "1\n00:00:00,000 --> 00:00:01,000\nHéllo\n"
    artifact = subtitles.materialize(text, tmp_path / "temp")

    assert artifact.path.read_text(encoding="utf-8") == text
    assert artifact.path.suffix == ".srt"

    artifact.discard()
    artifact.discard()
    assert artifact.discarded is True
    assert not artifact.path.exists()


def test_materialize_reports_write_failures(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(SubtitleWriteError):
        subtitles.materialize("caption", blocker)


def test_subtitle_artifact_context_manager(tmp_path):
    path = tmp_path / "cap.srt"
    path.write_text("x", encoding="utf-8")

    with subtitles.SubtitleArtifact(path):
        assert path.exists()
    assert not path.exists()


def test_subtitle_filter_escapes_path():
    value = subtitles.subtitle_filter(Path("/data/it's:here.srt"))
    assert value.startswith("subtitles='/data/it\\'s\\:here.srt':force_style='")
    assert "FontSize=24" in value


def test_escape_filter_path_rejects_newlines():
    with pytest.raises(ValueError):
        subtitles.escape_filter_path(Path("/tmp/bad\nname.srt"))


def test_segments_to_srt_numbers_cues_and_skips_blank_text():
    srt = subtitles.segments_to_srt(
        [
            {"start": 0, "end": 1.25, "text": " first "},
            {"start": 1.25, "end": 2, "text": "   "},
            SimpleNamespace(start=3661.5, end=3662, text="second"),
        ]
    )
    assert srt == (
        "1\n00:00:00,000 --> 00:00:01,250\nfirst\n"
        "\n"
        "2\n01:01:01,500 --> 01:01:02,000\nsecond\n"
    )


def test_calculate_confidence_defaults_missing_scores():
    assert transcript.calculate_confidence([]) == 0
    assert transcript.calculate_confidence([{"confidence": 0.5}, {}]) == 65


def test_transcript_wraps_api_errors(monkeypatch, tmp_path):
    media = tmp_path / "talk.mp4"
    media.write_bytes(b"audio")

    def failing(path, language):
        raise OpenAIError("quota exceeded")

    monkeypatch.setattr(transcript.settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(transcript, "_transcribe", failing)

    with pytest.raises(TranscriptionFailed) as exc:
        asyncio.run(transcript.generate_transcript(media))

    assert "quota exceeded" in exc.value.message
