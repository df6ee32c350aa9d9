from __future__ import annotations

import asyncio
import json
import queue
import sys
import threading
import time
import types
from urllib.parse import parse_qs, urlsplit

import pytest

from trivia_voice.errors import ErrorKind, ProviderAlreadyStartedError, RecognitionUnavailableError
from trivia_voice.models import SessionState
from trivia_voice.voice.interfaces import (
    ProviderClosed,
    ProviderError,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
)
from trivia_voice.voice.session import MicrophoneArbiter, SessionError, SpeechSession, TranscriptReceived
from trivia_voice.voice.stt_deepgram import DeepgramProvider


class _WebSocketException(Exception):
    pass


class _ConnectionClosed(_WebSocketException):
    pass


class FakeWebSocket:
    def __init__(self, url: str, additional_headers=None, **options) -> None:
        self.url = url
        self.headers = dict(additional_headers or {})
        self.options = options
        self.sent: list = []
        self.close_code: int | None = None
        self.closed = False
        self._incoming: queue.Queue = queue.Queue()

    def send(self, message) -> None:
        if self.closed:
            raise _ConnectionClosed("sent 1000 (OK)")
        self.sent.append(message)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = 1000
        self._incoming.put(None)

    def __iter__(self):
        while True:
            item = self._incoming.get(timeout=5)
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    def results(self, text: str, *, is_final: bool) -> None:
        payload = {"type": "Results", "is_final": is_final, "channel": {"alternatives": [{"transcript": text}]}}
        self._incoming.put(json.dumps(payload))

    def message(self, payload: dict) -> None:
        self._incoming.put(json.dumps(payload))

    def server_close(self, code: int) -> None:
        self.close_code = code
        self._incoming.put(None)

    def drop(self) -> None:
        self.close_code = 1006
        self._incoming.put(_ConnectionClosed("no close frame received"))


class FakeWebSockets:
    """Stands in for ``websockets.sync.client`` and ``websockets.exceptions``."""

    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.refuse: Exception | None = None

    def connect(self, url: str, **options) -> FakeWebSocket:
        if self.refuse is not None:
            raise self.refuse
        socket = FakeWebSocket(url, **options)
        self.sockets.append(socket)
        return socket

    def install(self, monkeypatch) -> None:
        package = types.ModuleType("websockets")
        sync = types.ModuleType("websockets.sync")
        client = types.ModuleType("websockets.sync.client")
        exceptions = types.ModuleType("websockets.exceptions")
        client.connect = self.connect
        exceptions.ConnectionClosed = _ConnectionClosed
        exceptions.WebSocketException = _WebSocketException
        package.sync = sync
        package.exceptions = exceptions
        sync.client = client
        monkeypatch.setitem(sys.modules, "websockets", package)
        monkeypatch.setitem(sys.modules, "websockets.sync", sync)
        monkeypatch.setitem(sys.modules, "websockets.sync.client", client)
        monkeypatch.setitem(sys.modules, "websockets.exceptions", exceptions)


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


class SilentAudio:
    sample_rate = 16_000

    def __init__(self) -> None:
        self.close_calls = 0

    def open(self) -> None:
        return None

    def read_frame(self) -> bytes:
        time.sleep(0.005)
        return bytes(640)

    def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def fake_websockets(monkeypatch) -> FakeWebSockets:
    fake = FakeWebSockets()
    fake.install(monkeypatch)
    return fake


def test_stream_opens_with_listen_options(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key", utterance_end_ms=1_500)
    collector = EventCollector(expected=1)

    connection = provider.open(RecognitionConfig(language="en-GB", sample_rate=16_000), collector)
    socket = fake_websockets.sockets[0]
    query = parse_qs(urlsplit(socket.url).query)
    connection.close()

    assert provider.is_supported() is True
    assert socket.url.startswith("wss://api.deepgram.com/v1/listen?")
    assert socket.headers == {"Authorization": "Token dg-key"}
    assert query["encoding"] == ["linear16"]
    assert query["sample_rate"] == ["16000"]
    assert query["model"] == ["nova-2"]
    assert query["language"] == ["en-GB"]
    assert query["interim_results"] == ["true"]
    assert query["utterance_end_ms"] == ["1500"]
    assert query["vad_events"] == ["true"]
    assert collector.events[0] == ProviderOpened()


def test_interim_and_final_results_are_forwarded(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=3)

    connection = provider.open(RecognitionConfig(), collector)
    socket = fake_websockets.sockets[0]
    connection.send(b"\x01\x00" * 160)
    socket.results("re", is_final=False)
    socket.message({"type": "UtteranceEnd", "last_word_end": 1.2})
    socket.results("   ", is_final=True)
    socket.results("red", is_final=True)
    events = collector.wait()
    connection.close()

    assert events == [
        ProviderOpened(),
        ProviderTranscript(text="re", is_final=False),
        ProviderTranscript(text="red", is_final=True),
    ]
    assert socket.sent[0] == b"\x01\x00" * 160


def test_close_ends_stream_once(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=2)

    connection = provider.open(RecognitionConfig(), collector)
    socket = fake_websockets.sockets[0]
    connection.close()
    connection.close()
    events = collector.wait()
    time.sleep(0.05)

    assert events == [ProviderOpened(), ProviderClosed(code=1000)]
    assert collector.events == events
    assert json.loads(socket.sent[-1]) == {"type": "CloseStream"}
    assert socket.closed is True


def test_single_shot_stream_closes_after_first_final(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=3)

    provider.open(RecognitionConfig(continuous=False), collector)
    fake_websockets.sockets[0].results("blue", is_final=True)
    events = collector.wait()

    assert events[1:] == [ProviderTranscript(text="blue"), ProviderClosed(code=1000)]


def test_server_close_reports_its_code(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=2)

    provider.open(RecognitionConfig(), collector)
    fake_websockets.sockets[0].server_close(1011)

    assert collector.wait()[1] == ProviderClosed(code=1011)


def test_dropped_connection_is_transient(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=3)

    provider.open(RecognitionConfig(), collector)
    fake_websockets.sockets[0].drop()
    events = collector.wait()

    assert events[1].kind == ErrorKind.PROVIDER_TRANSIENT
    assert "connection lost" in events[1].message
    assert events[2] == ProviderClosed(code=1006)


def test_error_message_is_transient(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    collector = EventCollector(expected=2)

    connection = provider.open(RecognitionConfig(), collector)
    fake_websockets.sockets[0].message({"type": "Error", "description": "rate limited"})
    events = collector.wait()
    connection.close()

    assert events[1] == ProviderError(ErrorKind.PROVIDER_TRANSIENT, "rate limited")


def test_refused_connection_raises(fake_websockets: FakeWebSockets) -> None:
    fake_websockets.refuse = _WebSocketException("server rejected WebSocket connection: HTTP 401")
    provider = DeepgramProvider("bad-key")

    with pytest.raises(Exception, match="HTTP 401"):
        provider.open(RecognitionConfig(), lambda event: None)


def test_second_open_while_live_is_refused(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider("dg-key")
    first = provider.open(RecognitionConfig(), lambda event: None)

    with pytest.raises(ProviderAlreadyStartedError):
        provider.open(RecognitionConfig(), lambda event: None)

    first.close()
    provider.open(RecognitionConfig(), lambda event: None).close()


def test_missing_api_key_is_unsupported_platform(fake_websockets: FakeWebSockets) -> None:
    provider = DeepgramProvider(None)

    assert provider.is_supported() is False
    with pytest.raises(RecognitionUnavailableError) as caught:
        provider.open(RecognitionConfig(), lambda event: None)
    assert caught.value.kind == ErrorKind.UNSUPPORTED_PLATFORM

    async def _run() -> SpeechSession:
        session = SpeechSession(provider, SilentAudio(), arbiter=MicrophoneArbiter())
        await session.start()
        return session

    session = asyncio.run(_run())
    assert session.state == SessionState.ERROR
    assert session.terminal_error == ErrorKind.UNSUPPORTED_PLATFORM
    assert fake_websockets.sockets == []


def test_missing_websockets_is_unsupported(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "websockets", None)
    monkeypatch.setitem(sys.modules, "websockets.sync", None)
    monkeypatch.setitem(sys.modules, "websockets.sync.client", None)
    monkeypatch.setitem(sys.modules, "websockets.exceptions", None)

    assert DeepgramProvider("dg-key").is_supported() is False


def test_session_publishes_interim_results_when_enabled(fake_websockets: FakeWebSockets) -> None:
    async def _run() -> list:
        provider = DeepgramProvider("dg-key")
        audio = SilentAudio()
        session = SpeechSession(
            provider,
            audio,
            config=RecognitionConfig(interim_results=True),
            arbiter=MicrophoneArbiter(),
        )
        events = session.subscribe()
        await session.start()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while session.state != SessionState.LISTENING:
            assert loop.time() < deadline
            await asyncio.sleep(0.005)

        socket = fake_websockets.sockets[0]
        socket.results("gre", is_final=False)
        socket.results("green", is_final=True)
        transcripts = []
        while len(transcripts) < 2:
            event = await asyncio.wait_for(events.get(), timeout=2.0)
            if isinstance(event, TranscriptReceived):
                transcripts.append(event.transcript)
        while not socket.sent:
            assert loop.time() < deadline + 2.0
            await asyncio.sleep(0.005)
        await session.aclose()
        return [(item.text, item.is_final) for item in transcripts]

    assert asyncio.run(_run()) == [("gre", False), ("green", True)]


def test_session_drops_interims_and_recovers_from_dropped_socket(fake_websockets: FakeWebSockets) -> None:
    async def _run() -> tuple[list, list, int]:
        provider = DeepgramProvider("dg-key")
        session = SpeechSession(
            provider,
            SilentAudio(),
            restart_backoff_seconds=0.01,
            arbiter=MicrophoneArbiter(),
        )
        events = session.subscribe()
        await session.start()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while session.state != SessionState.LISTENING:
            assert loop.time() < deadline
            await asyncio.sleep(0.005)

        fake_websockets.sockets[0].drop()
        while len(fake_websockets.sockets) < 2 or session.state != SessionState.LISTENING:
            assert loop.time() < deadline
            await asyncio.sleep(0.005)

        socket = fake_websockets.sockets[1]
        socket.results("yel", is_final=False)
        socket.results("yellow", is_final=True)
        seen = []
        errors = []
        while not seen:
            event = await asyncio.wait_for(events.get(), timeout=2.0)
            if isinstance(event, TranscriptReceived):
                seen.append((event.transcript.text, event.transcript.is_final))
            elif isinstance(event, SessionError):
                errors.append(event.kind)
        await session.aclose()
        return seen, errors, len(fake_websockets.sockets)

    seen, errors, sockets = asyncio.run(_run())
    assert seen == [("yellow", True)]
    assert errors == [ErrorKind.PROVIDER_TRANSIENT]
    assert sockets == 2
