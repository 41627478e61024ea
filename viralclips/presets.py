import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

logger = logging.getLogger("viralclips.presets")

DEFAULT_PRESET = "tiktok"

_VERTICAL_1080 = (
    "scale=1080:1920:force_original_aspect_ratio=increase",
    "crop=1080:1920",
)

AUDIO_ENHANCEMENT_FILTERS: Tuple[str, ...] = (
    "highpass=f=200",
    "lowpass=f=3000",
    "dynaudnorm",
)


@dataclass(frozen=True)
class PresetProfile:
    name: str
    video_filters: Tuple[str, ...]
    audio_filters: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "videoFilters": list(self.video_filters),
            "audioFilters": list(self.audio_filters),
        }


PRESETS: Dict[str, PresetProfile] = {
    "tiktok": PresetProfile(
        name="tiktok",
        video_filters=_VERTICAL_1080,
        audio_filters=("volume=1.2",),
    ),
    "youtube": PresetProfile(
        name="youtube",
        video_filters=_VERTICAL_1080,
        audio_filters=("volume=1.0",),
    ),
    "instagram": PresetProfile(
        name="instagram",
        video_filters=_VERTICAL_1080 + ("eq=brightness=0.05:contrast=1.1:saturation=1.2",),
        audio_filters=("volume=1.1",),
    ),
}


def available_presets() -> List[str]:
    return sorted(PRESETS)


def resolve_preset(name: Any) -> PresetProfile:
    """Look up a preset profile, falling back to the default for unknown names."""
    key = name.strip().lower() if isinstance(name, str) else ""
    profile = PRESETS.get(key)
    if profile is None:
        logger.warning("Unknown preset %r, using %s", name, DEFAULT_PRESET)
        return PRESETS[DEFAULT_PRESET]
    return profile
