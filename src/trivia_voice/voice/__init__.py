"""Voice answer engine: listening, matching and speaker attribution."""

from .attribution import SpokenAttribution, extract_speaker_name
from .engine import AnswerListener, NullAnswerListener, VoiceAnswerEngine
from .features import AcousticFeatureExtractor
from .interfaces import (
    AudioSource,
    ProviderClosed,
    ProviderConnection,
    ProviderError,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
    RecognitionProvider,
)
from .matching import MatchMode, MatchResult, MatchRule, PhraseMatcher, normalize
from .session import MicrophoneArbiter, SessionError, SpeechSession, StateChanged, TranscriptReceived
from .speakers import DistanceWeights, SpeakerRegistry, profile_distance

__all__ = [
    "AcousticFeatureExtractor",
    "AnswerListener",
    "AudioSource",
    "DistanceWeights",
    "MatchMode",
    "MatchResult",
    "MatchRule",
    "MicrophoneArbiter",
    "NullAnswerListener",
    "PhraseMatcher",
    "ProviderClosed",
    "ProviderConnection",
    "ProviderError",
    "ProviderOpened",
    "ProviderTranscript",
    "RecognitionConfig",
    "RecognitionProvider",
    "SessionError",
    "SpeakerRegistry",
    "SpeechSession",
    "SpokenAttribution",
    "StateChanged",
    "TranscriptReceived",
    "VoiceAnswerEngine",
    "extract_speaker_name",
    "normalize",
    "profile_distance",
]
