"""Microphone and recognition backend powered by ``speech_recognition``."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from trivia_voice.errors import (
    ErrorKind,
    MicrophonePermissionError,
    ProviderAlreadyStartedError,
    RecognitionUnavailableError,
)

from .features import pcm16_to_float
from .interfaces import (
    AudioSource,
    ProviderClosed,
    ProviderError,
    ProviderEventSink,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
)

logger = logging.getLogger("trivia_voice.stt")

_INSTALL_HINT = "Install extras with: pip install 'party-trivia-voice[voice]'"
SAMPLE_WIDTH = 2
NORMAL_CLOSURE = 1000
PROVIDER_FAILURE = 1011


class SpeechRecognitionMicrophone(AudioSource):
    """Capture 16-bit mono PCM frames from the default (or given) input device."""

    def __init__(self, *, sample_rate: int = 16_000, chunk_size: int = 1024, device_index: int | None = None) -> None:
        try:
            import speech_recognition as sr
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(f"Microphone backend unavailable. {_INSTALL_HINT}") from exc
        self._sr = sr
        self.sample_rate = sample_rate
        self._chunk_size = chunk_size
        self._device_index = device_index
        self._microphone = None
        self._source = None

    def open(self) -> None:
        if self._source is not None:
            return
        try:
            microphone = self._sr.Microphone(
                device_index=self._device_index,
                sample_rate=self.sample_rate,
                chunk_size=self._chunk_size,
            )
        except AttributeError as exc:
            raise RecognitionUnavailableError(f"PyAudio is not available. {_INSTALL_HINT}") from exc
        try:
            source = microphone.__enter__()
        except OSError as exc:
            raise MicrophonePermissionError(f"Microphone could not be opened: {exc}") from exc
        self._microphone = microphone
        self._source = source

    def read_frame(self) -> bytes:
        source = self._source
        if source is None or source.stream is None:
            return b""
        return source.stream.read(self._chunk_size)

    def close(self) -> None:
        microphone = self._microphone
        self._microphone = None
        self._source = None
        if microphone is not None:
            microphone.__exit__(None, None, None)


class _SpeechRecognitionConnection:
    """Buffers audio into phrase windows and transcribes each window off-thread."""

    def __init__(
        self,
        sr,
        config: RecognitionConfig,
        emit: ProviderEventSink,
        *,
        phrase_bytes: int,
        silence_rms: float,
    ) -> None:
        self._sr = sr
        self._config = config
        self._emit = emit
        self._phrase_bytes = phrase_bytes
        self._silence_rms = silence_rms
        self._recognizer = sr.Recognizer()
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="speech-recognition")

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: bytes) -> None:
        with self._lock:
            if self._closed:
                return
            self._buffer.extend(frame)
            if len(self._buffer) < self._phrase_bytes:
                return
            window = bytes(self._buffer)
            self._buffer.clear()
            self._executor.submit(self._transcribe, window)

    def close(self, code: int | None = NORMAL_CLOSURE) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._buffer.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._emit(ProviderClosed(code=code))

    def _transcribe(self, window: bytes) -> None:
        if self._closed:
            return
        samples = pcm16_to_float(window)
        if samples.size == 0 or float(np.sqrt(np.mean(samples * samples))) < self._silence_rms:
            self._emit(ProviderError(ErrorKind.NO_SPEECH))
            return

        audio = self._sr.AudioData(window, sample_rate=self._config.sample_rate, sample_width=SAMPLE_WIDTH)
        try:
            text = self._recognizer.recognize_google(audio, language=self._config.language)
        except self._sr.UnknownValueError:
            self._emit(ProviderError(ErrorKind.NO_SPEECH))
            return
        except self._sr.RequestError as exc:
            logger.warning("recognition_request_failed", extra={"error": str(exc)})
            self._emit(ProviderError(ErrorKind.PROVIDER_TRANSIENT, f"Speech recognition service request failed: {exc}"))
            self.close(code=PROVIDER_FAILURE)
            return

        if not self._closed and text:
            self._emit(ProviderTranscript(text=text, is_final=True))
        if not self._config.continuous:
            self.close()


class SpeechRecognitionProvider:
    """Phrase-window recognition through ``Recognizer.recognize_google``."""

    def __init__(self, *, phrase_seconds: float = 4.0, silence_rms: float = 0.01) -> None:
        try:
            import speech_recognition as sr
        except ImportError:
            sr = None
        self._sr = sr
        self._phrase_seconds = max(0.5, phrase_seconds)
        self._silence_rms = silence_rms
        self._active: _SpeechRecognitionConnection | None = None

    def is_supported(self) -> bool:
        return self._sr is not None

    def open(self, config: RecognitionConfig, emit: ProviderEventSink) -> _SpeechRecognitionConnection:
        if self._sr is None:
            raise RecognitionUnavailableError(f"Speech recognition backend unavailable. {_INSTALL_HINT}")
        if self._active is not None and not self._active.closed:
            raise ProviderAlreadyStartedError("A recognition stream is already open")

        phrase_bytes = int(config.sample_rate * self._phrase_seconds) * SAMPLE_WIDTH
        connection = _SpeechRecognitionConnection(
            self._sr,
            config,
            emit,
            phrase_bytes=phrase_bytes,
            silence_rms=self._silence_rms,
        )
        self._active = connection
        emit(ProviderOpened())
        return connection
