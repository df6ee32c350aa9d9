"""Contracts for microphones and streaming speech-recognition providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Union

from trivia_voice.errors import ErrorKind


@dataclass(slots=True, frozen=True)
class RecognitionConfig:
    """Provider options honoured by every backend."""

    continuous: bool = True
    language: str = "en-US"
    interim_results: bool = False
    sample_rate: int = 16_000


@dataclass(slots=True, frozen=True)
class ProviderOpened:
    """Connection is open and the provider is ready for audio."""


@dataclass(slots=True, frozen=True)
class ProviderTranscript:
    text: str
    is_final: bool = True


@dataclass(slots=True, frozen=True)
class ProviderClosed:
    code: int | None = None


@dataclass(slots=True, frozen=True)
class ProviderError:
    kind: ErrorKind
    message: str = ""


ProviderEvent = Union[ProviderOpened, ProviderTranscript, ProviderClosed, ProviderError]
ProviderEventSink = Callable[[ProviderEvent], None]


class ProviderConnection(Protocol):
    """One live recognition stream."""

    def send(self, frame: bytes) -> None:
        """Forward a chunk of 16-bit mono PCM audio."""

    def close(self) -> None:
        """Close the stream. Safe to call more than once."""


class RecognitionProvider(Protocol):
    """Opens recognition streams.

    Events may be pushed from any thread. An error that ends the stream is
    followed by ``ProviderClosed``. The session closes the connection itself
    after any other non-fatal error except ``no-speech`` and ``aborted``.
    """

    def is_supported(self) -> bool:
        """Whether recognition is available on this platform at all."""

    def open(self, config: RecognitionConfig, emit: ProviderEventSink) -> ProviderConnection:
        """Open a stream; raise ``ProviderAlreadyStartedError`` if one is already live."""


class AudioSource(Protocol):
    """Exclusive handle on a microphone."""

    sample_rate: int

    def open(self) -> None:
        """Acquire the device; raise ``MicrophonePermissionError`` when access is refused."""

    def read_frame(self) -> bytes:
        """Block for the next chunk of 16-bit mono PCM; ``b""`` when nothing is available."""

    def close(self) -> None:
        """Release the device."""
