"""Cheap acoustic features for telling a handful of voices apart.

These are not textbook DSP measurements. Formants are pitch harmonics and the
spectral centroid is an energy/time-weighted proxy. Speaker distance
thresholds are tuned against these exact numbers.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from trivia_voice.models import AcousticFeatures

logger = logging.getLogger("trivia_voice.features")

MIN_PITCH_HZ = 80
MAX_PITCH_HZ = 800
FORMANT_HARMONICS = (3, 5, 7)

SILENT_FEATURES = AcousticFeatures(pitch_hz=0.0, formants_hz=(), spectral_centroid=0.0, zero_crossing_rate=0.0)


def _as_samples(samples: Sequence[float] | np.ndarray) -> np.ndarray:
    data = np.asarray(samples, dtype=np.float64)
    if data.ndim > 1:
        # (frames, channels); only the first channel is analysed
        data = data[:, 0]
    return data


def estimate_pitch(samples: np.ndarray, sample_rate: int) -> float:
    """Autocorrelation pitch over the 80-800 Hz lag range; 0.0 when nothing correlates."""
    min_lag = int(sample_rate // MAX_PITCH_HZ)
    max_lag = int(sample_rate // MIN_PITCH_HZ)
    upper = min(max_lag, (len(samples) + 1) // 2)
    if min_lag < 1 or upper <= min_lag:
        return 0.0

    best_lag = 0
    best_correlation = 0.0
    # Longest lag first: on equal correlation the lower frequency is kept.
    for lag in range(upper - 1, min_lag - 1, -1):
        correlation = float(np.dot(samples[:-lag], samples[lag:]))
        if correlation > best_correlation:
            best_correlation = correlation
            best_lag = lag

    if best_lag == 0:
        return 0.0
    return sample_rate / best_lag


def approximate_formants(pitch_hz: float) -> tuple[float, ...]:
    if pitch_hz <= 0:
        return ()
    return tuple(pitch_hz * harmonic for harmonic in FORMANT_HARMONICS)


def approximate_spectral_centroid(samples: np.ndarray, sample_rate: int) -> float:
    count = len(samples)
    if count == 0:
        return 0.0
    magnitude = np.abs(samples)
    rms = float(np.sqrt(np.sum(samples * samples) / count))
    if rms <= 0:
        return 0.0
    weighted_sum = float(np.sum(magnitude * (np.arange(count) / count) * sample_rate))
    return weighted_sum / (rms * count)


def zero_crossing_rate(samples: np.ndarray) -> float:
    count = len(samples)
    if count < 2:
        return 0.0
    signs = samples >= 0
    crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))
    return crossings / count


class AcousticFeatureExtractor:
    """Stateless feature extraction over a mono buffer with a known sample rate."""

    def extract(self, samples: Sequence[float] | np.ndarray, sample_rate: int) -> AcousticFeatures:
        data = _as_samples(samples)
        if data.size == 0 or sample_rate <= 0:
            return SILENT_FEATURES

        pitch = estimate_pitch(data, sample_rate)
        features = AcousticFeatures(
            pitch_hz=pitch,
            formants_hz=approximate_formants(pitch),
            spectral_centroid=approximate_spectral_centroid(data, sample_rate),
            zero_crossing_rate=zero_crossing_rate(data),
        )
        if features.is_degenerate:
            logger.debug("features_degenerate", extra={"samples": int(data.size), "sample_rate": sample_rate})
        return features


def pcm16_to_float(frame: bytes) -> np.ndarray:
    """Convert little-endian signed 16-bit PCM bytes to floats in [-1, 1)."""
    usable = len(frame) - (len(frame) % 2)
    return np.frombuffer(frame[:usable], dtype="<i2").astype(np.float32) / 32768.0
