"""Short audio captures for voice enrollment and offline analysis."""

from __future__ import annotations

import time
import wave
from pathlib import Path

import numpy as np

from trivia_voice.errors import VoiceEngineError

from .features import pcm16_to_float
from .interfaces import AudioSource


def capture_sample(audio: AudioSource, *, seconds: float = 1.0) -> np.ndarray:
    """Record roughly ``seconds`` of audio from an already-opened source."""
    wanted = int(audio.sample_rate * max(0.0, seconds))
    chunks: list[np.ndarray] = []
    collected = 0
    deadline = time.monotonic() + max(1.0, seconds * 3)
    while collected < wanted and time.monotonic() < deadline:
        frame = audio.read_frame()
        if not frame:
            time.sleep(0.01)
            continue
        samples = pcm16_to_float(frame)
        chunks.append(samples)
        collected += samples.size

    if not chunks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(chunks)[:wanted]


def record_enrollment_sample(audio: AudioSource, *, seconds: float = 1.0) -> np.ndarray:
    """Open the source, record one enrollment sample and always release the device."""
    audio.open()
    try:
        return capture_sample(audio, seconds=seconds)
    finally:
        audio.close()


def read_wav_samples(path: str | Path) -> tuple[np.ndarray, int]:
    """Load the first channel of a 16-bit PCM WAV file as floats."""
    target = Path(path).expanduser()
    if not target.exists():
        raise FileNotFoundError(f"WAV file not found: {target}")

    with wave.open(str(target), "rb") as handle:
        if handle.getsampwidth() != 2:
            raise VoiceEngineError(f"Only 16-bit PCM WAV is supported, got {handle.getsampwidth() * 8}-bit")
        channels = handle.getnchannels()
        sample_rate = handle.getframerate()
        raw = handle.readframes(handle.getnframes())

    samples = pcm16_to_float(raw)
    if channels > 1:
        samples = samples[: samples.size - samples.size % channels].reshape(-1, channels)[:, 0]
    return samples, sample_rate
