"""Error taxonomy shared by the speech session and the answer engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Host-visible error categories."""

    PERMISSION_DENIED = "permission-denied"
    UNSUPPORTED_PLATFORM = "unsupported-platform"
    PROVIDER_TRANSIENT = "provider-transient"
    NO_SPEECH = "no-speech"
    ABORTED = "aborted"

    @property
    def is_fatal(self) -> bool:
        return self in (ErrorKind.PERMISSION_DENIED, ErrorKind.UNSUPPORTED_PLATFORM)


class VoiceEngineError(RuntimeError):
    """Base class for voice engine failures."""

    kind: ErrorKind = ErrorKind.PROVIDER_TRANSIENT


class MicrophonePermissionError(VoiceEngineError):
    """Raised when the microphone cannot be opened for lack of user consent or device access."""

    kind = ErrorKind.PERMISSION_DENIED


class RecognitionUnavailableError(VoiceEngineError):
    """Raised when no speech-recognition capability is present on this platform."""

    kind = ErrorKind.UNSUPPORTED_PLATFORM


class ProviderTransientError(VoiceEngineError):
    """Recoverable recognition-provider failure."""

    kind = ErrorKind.PROVIDER_TRANSIENT


class ProviderAlreadyStartedError(VoiceEngineError):
    """Raised by a provider asked to open while a connection is already live."""
