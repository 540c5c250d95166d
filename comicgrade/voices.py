"""Closed set of grading voices and the weight table keyed by source id."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from .config import DEFAULT_SOURCE_WEIGHT, ENSEMBLE_WEIGHTS


@dataclass(frozen=True)
class VoiceProfile:
    weight: float
    model: str
    persona: str


class Voice(str, Enum):
    """The three advisory voices; also the council (trinity) seats."""

    SAGE = "SAGE"
    NYX = "NYX"
    THORNE = "THORNE"

    @property
    def profile(self) -> VoiceProfile:
        return VOICE_PROFILES[self]

    @property
    def weight(self) -> float:
        return VOICE_PROFILES[self].weight

    @classmethod
    def parse(cls, value: object) -> Optional["Voice"]:
        if isinstance(value, Voice):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


VOICE_PROFILES: Dict[Voice, VoiceProfile] = {
    Voice.SAGE: VoiceProfile(weight=40.0, model="claude", persona="conservative archivist"),
    Voice.NYX: VoiceProfile(weight=35.0, model="gemini", persona="market-minded dealer"),
    Voice.THORNE: VoiceProfile(weight=25.0, model="gpt-4", persona="strict pressing critic"),
}

# Fixed seat order used for council blends and per-voice lists.
COUNCIL_ORDER = (Voice.SAGE, Voice.NYX, Voice.THORNE)

VOICE_WEIGHTS: Dict[str, float] = {v.value: p.weight for v, p in VOICE_PROFILES.items()}


def source_weight(source: str, weights: Optional[Mapping[str, float]] = None) -> float:
    """
    Weight for a source identifier.

    Looks in ``weights`` when given, otherwise in the voice table and then the
    ensemble-model table (case-insensitive). Unknown sources fall back to
    DEFAULT_SOURCE_WEIGHT so partial or unexpected participation still counts.
    """
    key = str(source or "").strip()
    if weights is not None:
        for name, w in weights.items():
            if name.lower() == key.lower():
                return float(w)
        return DEFAULT_SOURCE_WEIGHT

    voice = Voice.parse(key)
    if voice is not None:
        return voice.weight
    return float(ENSEMBLE_WEIGHTS.get(key.lower(), DEFAULT_SOURCE_WEIGHT))
