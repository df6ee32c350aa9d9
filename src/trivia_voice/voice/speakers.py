"""Enrolled voice profiles and nearest-neighbour speaker lookup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from trivia_voice.models import AcousticFeatures, VoiceProfile

from .features import AcousticFeatureExtractor

logger = logging.getLogger("trivia_voice.speakers")


@dataclass(slots=True, frozen=True)
class DistanceWeights:
    """Empirical per-feature weights and the rejection cut-off, re-tunable per deployment."""

    pitch_weight: float = 2.0
    centroid_divisor: float = 100.0
    formant_divisor: float = 50.0
    zcr_weight: float = 1_000.0
    rejection_threshold: float = 500.0


def profile_distance(
    features: AcousticFeatures | VoiceProfile,
    profile: AcousticFeatures | VoiceProfile,
    weights: DistanceWeights | None = None,
) -> float:
    """Weighted L1-style distance. A feature only counts when both sides measured it (non-zero)."""
    weights = weights or DistanceWeights()
    score = 0.0
    if features.pitch_hz and profile.pitch_hz:
        score += abs(features.pitch_hz - profile.pitch_hz) * weights.pitch_weight
    if features.spectral_centroid and profile.spectral_centroid:
        score += abs(features.spectral_centroid - profile.spectral_centroid) / weights.centroid_divisor
    for ours, theirs in zip(features.formants_hz, profile.formants_hz):
        score += abs(ours - theirs) / weights.formant_divisor
    if features.zero_crossing_rate and profile.zero_crossing_rate:
        score += abs(features.zero_crossing_rate - profile.zero_crossing_rate) * weights.zcr_weight
    return score


class SpeakerRegistry:
    """Holds one voice profile per player; lookups never force an attribution."""

    def __init__(
        self,
        *,
        extractor: AcousticFeatureExtractor | None = None,
        weights: DistanceWeights | None = None,
    ) -> None:
        self._extractor = extractor or AcousticFeatureExtractor()
        self._weights = weights or DistanceWeights()
        self._profiles: dict[str, VoiceProfile] = {}

    @property
    def weights(self) -> DistanceWeights:
        return self._weights

    @property
    def profiles(self) -> list[VoiceProfile]:
        return list(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, player_id: object) -> bool:
        return player_id in self._profiles

    def get(self, player_id: str) -> VoiceProfile | None:
        return self._profiles.get(player_id)

    def enroll(
        self,
        player_id: str,
        samples: Sequence[float] | np.ndarray,
        sample_rate: int,
        *,
        name: str | None = None,
    ) -> VoiceProfile:
        """Extract features from a short sample and store them, replacing any earlier profile."""
        features = self._extractor.extract(samples, sample_rate)
        return self.enroll_features(player_id, features, name=name)

    def enroll_features(self, player_id: str, features: AcousticFeatures, *, name: str | None = None) -> VoiceProfile:
        profile = VoiceProfile.from_features(player_id, features, name=name)
        replaced = player_id in self._profiles
        self._profiles[player_id] = profile
        if features.is_degenerate:
            logger.warning("voice_profile_degenerate", extra={"player_id": player_id})
        logger.info(
            "voice_profile_enrolled",
            extra={"player_id": player_id, "replaced": replaced, "pitch_hz": profile.pitch_hz},
        )
        return profile

    def remove(self, player_id: str) -> bool:
        removed = self._profiles.pop(player_id, None) is not None
        if removed:
            logger.info("voice_profile_removed", extra={"player_id": player_id})
        return removed

    def clear(self) -> None:
        self._profiles.clear()

    def identify(self, features: AcousticFeatures) -> VoiceProfile | None:
        """Return the closest profile, or None when even the closest is past the rejection threshold."""
        if features.is_degenerate:
            return None

        best: VoiceProfile | None = None
        best_distance = float("inf")
        for profile in self._profiles.values():
            distance = profile_distance(features, profile, self._weights)
            if distance < best_distance:
                best_distance = distance
                best = profile

        if best is None or best_distance >= self._weights.rejection_threshold:
            logger.debug("speaker_unidentified", extra={"best_distance": best_distance, "profiles": len(self)})
            return None

        logger.debug("speaker_identified", extra={"player_id": best.player_id, "distance": best_distance})
        return best

    def identify_samples(self, samples: Sequence[float] | np.ndarray, sample_rate: int) -> VoiceProfile | None:
        return self.identify(self._extractor.extract(samples, sample_rate))
