from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Lifecycle states of a speech session."""

    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPED = "stopped"
    ERROR = "error"


class RoundKind(str, Enum):
    TRIVIA = "trivia"
    TOP_TEN = "top_ten"


@dataclass(slots=True, frozen=True)
class Transcript:
    text: str
    is_final: bool = True
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True, frozen=True)
class AcousticFeatures:
    """Coarse voice feature vector extracted from one audio buffer."""

    pitch_hz: float
    formants_hz: tuple[float, ...]
    spectral_centroid: float
    zero_crossing_rate: float

    @property
    def is_degenerate(self) -> bool:
        """A zero pitch means no voiced signal was found; attribution is impossible."""
        return self.pitch_hz <= 0


@dataclass(slots=True, frozen=True)
class VoiceProfile:
    """Enrolled voice of one player. Replaced, never mutated."""

    player_id: str
    pitch_hz: float
    formants_hz: tuple[float, ...]
    spectral_centroid: float
    zero_crossing_rate: float
    name: str | None = None

    @classmethod
    def from_features(cls, player_id: str, features: AcousticFeatures, *, name: str | None = None) -> VoiceProfile:
        return cls(
            player_id=player_id,
            pitch_hz=features.pitch_hz,
            formants_hz=tuple(features.formants_hz[:3]),
            spectral_centroid=features.spectral_centroid,
            zero_crossing_rate=features.zero_crossing_rate,
            name=name,
        )


@dataclass(slots=True, frozen=True)
class Player:
    id: str
    name: str


@dataclass(slots=True, frozen=True)
class RoundDescriptor:
    """Candidate answers for one round, supplied fresh by the host."""

    candidates: tuple[str, ...]
    kind: RoundKind = RoundKind.TRIVIA
    correct_answer: str | None = None

    def __post_init__(self) -> None:
        unique: list[str] = []
        for candidate in self.candidates:
            if candidate not in unique:
                unique.append(candidate)
        object.__setattr__(self, "candidates", tuple(unique))

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RoundDescriptor:
        """Build a round from the host page payload (``answers``/``candidates`` or ``listItems``)."""
        if payload.get("listItems") is not None:
            return cls(candidates=tuple(payload["listItems"]), kind=RoundKind.TOP_TEN)

        candidates = payload.get("candidates")
        if candidates is None:
            candidates = payload.get("answers")
        if candidates is None:
            raise ValueError("Round payload needs 'candidates', 'answers' or 'listItems'")
        return cls(
            candidates=tuple(candidates),
            kind=RoundKind.TRIVIA,
            correct_answer=payload.get("correctAnswer"),
        )
