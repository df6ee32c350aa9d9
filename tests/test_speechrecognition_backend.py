from __future__ import annotations

import sys
import threading
import types

import numpy as np
import pytest

from trivia_voice.errors import ErrorKind, ProviderAlreadyStartedError
from trivia_voice.voice.interfaces import (
    ProviderClosed,
    ProviderError,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
)
from trivia_voice.voice.stt_speechrecognition import SpeechRecognitionProvider


class _UnknownValueError(Exception):
    pass


class _RequestError(Exception):
    pass


class _FakeSpeechRecognitionModule(types.SimpleNamespace):
    UnknownValueError = _UnknownValueError
    RequestError = _RequestError

    def __init__(self, outcome: str | Exception = "red") -> None:
        super().__init__()
        self.outcome = outcome
        self.languages: list[str] = []
        module = self

        class Recognizer:
            def recognize_google(self, audio, language: str = "en-US") -> str:
                module.languages.append(language)
                if isinstance(module.outcome, Exception):
                    raise module.outcome
                return module.outcome

        class AudioData:
            def __init__(self, frame_data: bytes, sample_rate: int, sample_width: int) -> None:
                self.frame_data = frame_data

        self.Recognizer = Recognizer
        self.AudioData = AudioData


class EventCollector:
    def __init__(self, expected: int) -> None:
        self.events: list = []
        self._expected = expected
        self._done = threading.Event()

    def __call__(self, event) -> None:
        self.events.append(event)
        if len(self.events) >= self._expected:
            self._done.set()

    def wait(self) -> list:
        assert self._done.wait(timeout=2.0)
        return list(self.events)


LOUD = (np.full(800, 8_000, dtype="<i2")).tobytes()
SILENT = bytes(1_600)


def make_provider(monkeypatch, fake: _FakeSpeechRecognitionModule) -> SpeechRecognitionProvider:
    monkeypatch.setitem(sys.modules, "speech_recognition", fake)
    return SpeechRecognitionProvider(phrase_seconds=0.5)


def test_full_window_is_transcribed(monkeypatch) -> None:
    fake = _FakeSpeechRecognitionModule("red")
    provider = make_provider(monkeypatch, fake)
    collector = EventCollector(expected=2)

    connection = provider.open(RecognitionConfig(sample_rate=1_600, language="en-GB"), collector)
    connection.send(LOUD)
    events = collector.wait()
    connection.close()

    assert provider.is_supported() is True
    assert events == [ProviderOpened(), ProviderTranscript(text="red", is_final=True)]
    assert fake.languages == ["en-GB"]


def test_silent_window_reports_no_speech(monkeypatch) -> None:
    provider = make_provider(monkeypatch, _FakeSpeechRecognitionModule("red"))
    collector = EventCollector(expected=2)

    connection = provider.open(RecognitionConfig(sample_rate=1_600), collector)
    connection.send(SILENT)
    events = collector.wait()
    connection.close()

    assert events[1] == ProviderError(ErrorKind.NO_SPEECH)


def test_unintelligible_window_reports_no_speech(monkeypatch) -> None:
    provider = make_provider(monkeypatch, _FakeSpeechRecognitionModule(_UnknownValueError()))
    collector = EventCollector(expected=2)

    connection = provider.open(RecognitionConfig(sample_rate=1_600), collector)
    connection.send(LOUD)
    events = collector.wait()
    connection.close()

    assert events[1] == ProviderError(ErrorKind.NO_SPEECH)


def test_request_failure_is_transient_and_closes(monkeypatch) -> None:
    provider = make_provider(monkeypatch, _FakeSpeechRecognitionModule(_RequestError("offline")))
    collector = EventCollector(expected=3)

    connection = provider.open(RecognitionConfig(sample_rate=1_600), collector)
    connection.send(LOUD)
    events = collector.wait()

    assert events[1].kind == ErrorKind.PROVIDER_TRANSIENT
    assert events[2] == ProviderClosed(code=1011)
    assert connection.closed is True


def test_single_shot_stream_closes_after_first_phrase(monkeypatch) -> None:
    provider = make_provider(monkeypatch, _FakeSpeechRecognitionModule("blue"))
    collector = EventCollector(expected=3)

    connection = provider.open(RecognitionConfig(continuous=False, sample_rate=1_600), collector)
    connection.send(LOUD)
    events = collector.wait()

    assert events[1:] == [ProviderTranscript(text="blue"), ProviderClosed(code=1000)]


def test_second_open_while_live_is_refused(monkeypatch) -> None:
    provider = make_provider(monkeypatch, _FakeSpeechRecognitionModule())
    first = provider.open(RecognitionConfig(), lambda event: None)

    with pytest.raises(ProviderAlreadyStartedError):
        provider.open(RecognitionConfig(), lambda event: None)

    first.close()
    provider.open(RecognitionConfig(), lambda event: None).close()


def test_missing_backend_is_unsupported(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "speech_recognition", None)

    assert SpeechRecognitionProvider().is_supported() is False
