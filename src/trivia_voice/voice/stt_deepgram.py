"""Streaming recognition backend for the Deepgram live-transcription websocket."""

from __future__ import annotations

import json
import logging
import threading
from urllib.parse import urlencode

from trivia_voice.errors import (
    ErrorKind,
    ProviderAlreadyStartedError,
    ProviderTransientError,
    RecognitionUnavailableError,
)

from .interfaces import (
    ProviderClosed,
    ProviderError,
    ProviderEventSink,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
)

logger = logging.getLogger("trivia_voice.stt.deepgram")

LISTEN_URL = "wss://api.deepgram.com/v1/listen"
_INSTALL_HINT = "Install extras with: pip install 'party-trivia-voice[deepgram]'"
NORMAL_CLOSURE = 1000


class _DeepgramConnection:
    """One live websocket; a reader thread turns Deepgram messages into provider events."""

    def __init__(self, ws, config: RecognitionConfig, emit: ProviderEventSink, *, closed_errors: tuple) -> None:
        self._ws = ws
        self._config = config
        self._emit = emit
        self._closed_errors = closed_errors
        self._lock = threading.Lock()
        self._closed = False
        self._finished = False
        self._reader = threading.Thread(target=self._receive_loop, name="deepgram-receiver", daemon=True)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._reader.start()

    def send(self, frame: bytes) -> None:
        if self._closed or not frame:
            return
        try:
            self._ws.send(frame)
        except self._closed_errors:
            # The reader thread reports the close.
            return

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._ws.send(json.dumps({"type": "CloseStream"}))
        except self._closed_errors:
            pass
        try:
            self._ws.close()
        except self._closed_errors as exc:
            logger.debug("deepgram_close_failed", extra={"error": str(exc)})
        self._finish(NORMAL_CLOSURE)

    def _receive_loop(self) -> None:
        try:
            for raw in self._ws:
                self._handle_message(raw)
        except self._closed_errors as exc:
            if not self._closed:
                logger.warning("deepgram_connection_lost", extra={"error": str(exc)})
                self._emit(ProviderError(ErrorKind.PROVIDER_TRANSIENT, f"Deepgram connection lost: {exc}"))
        self._finish(getattr(self._ws, "close_code", None))

    def _handle_message(self, raw) -> None:
        if isinstance(raw, bytes):
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("deepgram_message_unreadable")
            return

        kind = payload.get("type", "")
        if kind == "Results":
            self._handle_results(payload)
        elif kind == "UtteranceEnd":
            logger.debug("deepgram_utterance_end", extra={"last_word_end": payload.get("last_word_end")})
        elif kind == "Metadata":
            logger.debug("deepgram_metadata", extra={"request_id": payload.get("request_id")})
        elif kind == "Error":
            detail = payload.get("description") or payload.get("message") or "Deepgram error"
            logger.warning("deepgram_error", extra={"detail": detail})
            self._emit(ProviderError(ErrorKind.PROVIDER_TRANSIENT, detail))

    def _handle_results(self, payload: dict) -> None:
        alternatives = payload.get("channel", {}).get("alternatives") or [{}]
        text = (alternatives[0].get("transcript") or "").strip()
        if not text or self._closed:
            return
        is_final = bool(payload.get("is_final", False))
        self._emit(ProviderTranscript(text=text, is_final=is_final))
        if is_final and not self._config.continuous:
            self.close()

    def _finish(self, code: int | None) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._closed = True
        self._emit(ProviderClosed(code=code))


class DeepgramProvider:
    """Live transcription over ``wss://api.deepgram.com/v1/listen``.

    Without an API key the backend reports itself unsupported, so a session built
    on it settles in the terminal ``unsupported-platform`` error.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "nova-2",
        utterance_end_ms: int = 1_000,
        smart_format: bool = True,
        endpoint: str = LISTEN_URL,
        open_timeout: float = 10.0,
        close_timeout: float = 2.0,
    ) -> None:
        try:
            from websockets.exceptions import ConnectionClosed, WebSocketException
            from websockets.sync.client import connect
        except ImportError:
            connect = None
            ConnectionClosed = WebSocketException = None
        self._connect = connect
        self._closed_errors = (ConnectionClosed, OSError) if ConnectionClosed else (OSError,)
        self._open_errors = (WebSocketException, OSError, TimeoutError) if WebSocketException else (OSError,)
        self._api_key = api_key or ""
        self._model = model
        self._utterance_end_ms = utterance_end_ms
        self._smart_format = smart_format
        self._endpoint = endpoint
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._active: _DeepgramConnection | None = None

    def is_supported(self) -> bool:
        return self._connect is not None and bool(self._api_key)

    def listen_url(self, config: RecognitionConfig) -> str:
        query = {
            "encoding": "linear16",
            "sample_rate": config.sample_rate,
            "channels": 1,
            "model": self._model,
            "language": config.language,
            # Utterance-end events need interim results; the session drops interims it was not asked for.
            "interim_results": "true",
            "utterance_end_ms": self._utterance_end_ms,
            "vad_events": "true",
            "smart_format": "true" if self._smart_format else "false",
        }
        return f"{self._endpoint}?{urlencode(query)}"

    def open(self, config: RecognitionConfig, emit: ProviderEventSink) -> _DeepgramConnection:
        if self._connect is None:
            raise RecognitionUnavailableError(f"Deepgram backend unavailable. {_INSTALL_HINT}")
        if not self._api_key:
            raise RecognitionUnavailableError("Deepgram API key not set (TRIVIA_VOICE_DEEPGRAM_API_KEY or DEEPGRAM_API_KEY)")
        if self._active is not None and not self._active.closed:
            raise ProviderAlreadyStartedError("A recognition stream is already open")

        try:
            ws = self._connect(
                self.listen_url(config),
                additional_headers={"Authorization": f"Token {self._api_key}"},
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
            )
        except self._open_errors as exc:
            raise ProviderTransientError(f"Deepgram connection failed: {exc}") from exc

        connection = _DeepgramConnection(ws, config, emit, closed_errors=self._closed_errors)
        self._active = connection
        logger.info("deepgram_connected", extra={"model": self._model, "language": config.language})
        emit(ProviderOpened())
        connection.start()
        return connection
