"""Round orchestration: transcripts in, accepted answers and speaker credit out."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

from trivia_voice.errors import ErrorKind
from trivia_voice.models import Player, RoundDescriptor, RoundKind, SessionState, Transcript

from .attribution import extract_speaker_name
from .features import AcousticFeatureExtractor
from .matching import MatchMode, PhraseMatcher
from .session import SessionError, SpeechSession, StateChanged, TranscriptReceived
from .speakers import SpeakerRegistry


class AnswerListener(Protocol):
    """Host callbacks for engine outcomes."""

    def answer_accepted(self, candidate: str, speaker_id: str | None) -> None:
        """A candidate was credited for the first time this round."""

    def listening_state_changed(self, state: SessionState) -> None:
        """The speech session moved to a new lifecycle state."""

    def error(self, kind: ErrorKind, message: str) -> None:
        """Session problem; only permission-denied and unsupported-platform are fatal."""

    def round_complete(self) -> None:
        """Every candidate of a top-ten round has been found."""


class NullAnswerListener:
    def answer_accepted(self, candidate: str, speaker_id: str | None) -> None:
        return None

    def listening_state_changed(self, state: SessionState) -> None:
        return None

    def error(self, kind: ErrorKind, message: str) -> None:
        return None

    def round_complete(self) -> None:
        return None


class VoiceAnswerEngine:
    """Single owner of per-round state; transcripts are handled one at a time, in arrival order."""

    def __init__(
        self,
        session: SpeechSession,
        *,
        listener: AnswerListener | None = None,
        matcher: PhraseMatcher | None = None,
        registry: SpeakerRegistry | None = None,
        extractor: AcousticFeatureExtractor | None = None,
        competitive: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._listener = listener or NullAnswerListener()
        self._matcher = matcher or PhraseMatcher()
        self._registry = registry or SpeakerRegistry()
        self._extractor = extractor or AcousticFeatureExtractor()
        self._competitive = competitive
        self._logger = logger or logging.getLogger("trivia_voice.engine")

        self._round: RoundDescriptor | None = None
        self._claimed: list[str] = []
        self._players: list[Player] = []
        self._scores: dict[str, int] = {}
        self._completion_reported = False
        self._events: asyncio.Queue | None = None
        self._consumer_task: asyncio.Task[None] | None = None

        if not session.supported:
            self._listener.error(ErrorKind.UNSUPPORTED_PLATFORM, "Speech recognition is not available on this platform")

    @property
    def session(self) -> SpeechSession:
        return self._session

    @property
    def registry(self) -> SpeakerRegistry:
        return self._registry

    @property
    def current_round(self) -> RoundDescriptor | None:
        return self._round

    @property
    def claimed(self) -> tuple[str, ...]:
        return tuple(self._claimed)

    @property
    def scores(self) -> dict[str, int]:
        return dict(self._scores)

    @property
    def attribution_active(self) -> bool:
        return self._competitive and len(self._registry) > 0

    @property
    def round_complete(self) -> bool:
        if self._round is None or not self._round.candidates:
            return False
        if self._round.kind == RoundKind.TRIVIA:
            return bool(self._claimed)
        return len(self._claimed) >= len(self._round.candidates)

    def set_competitive(self, competitive: bool) -> None:
        self._competitive = competitive

    def set_players(self, players: Iterable[Player]) -> None:
        """Replace the roster; profiles and scores of departed players are dropped."""
        self._players = list(players)
        present = {player.id for player in self._players}
        for profile in self._registry.profiles:
            if profile.player_id not in present:
                self._registry.remove(profile.player_id)
        self._scores = {player_id: score for player_id, score in self._scores.items() if player_id in present}

    def remove_player(self, player_id: str) -> None:
        self._players = [player for player in self._players if player.id != player_id]
        self._registry.remove(player_id)
        self._scores.pop(player_id, None)

    async def start(self) -> None:
        """Subscribe to the session and begin consuming its events."""
        if self._consumer_task is not None and not self._consumer_task.done():
            return
        self._events = self._session.subscribe()
        self._consumer_task = asyncio.create_task(self._consume(self._events), name="voice-answer-engine")

    async def reset_round(self, round_descriptor: RoundDescriptor | Iterable[str]) -> None:
        """Begin a new round: fresh claims and a freshly started session."""
        if not isinstance(round_descriptor, RoundDescriptor):
            round_descriptor = RoundDescriptor(candidates=tuple(round_descriptor))
        self._round = round_descriptor
        self._claimed = []
        self._completion_reported = False
        self._logger.info(
            "round_started",
            extra={"kind": round_descriptor.kind.value, "candidates": len(round_descriptor.candidates)},
        )
        await self._session.restart()

    async def stop(self) -> None:
        await self._session.stop()

    async def aclose(self) -> None:
        task = self._consumer_task
        self._consumer_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._events is not None:
            self._session.unsubscribe(self._events)
            self._events = None
        await self._session.aclose()

    async def _consume(self, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            try:
                if isinstance(event, TranscriptReceived):
                    await self.handle_transcript(event.transcript)
                elif isinstance(event, StateChanged):
                    self._listener.listening_state_changed(event.state)
                elif isinstance(event, SessionError):
                    self._listener.error(event.kind, event.message)
            except Exception:  # noqa: BLE001 - one bad transcript must not stop listening.
                self._logger.exception("engine_event_failed", extra={"event": type(event).__name__})

    async def handle_transcript(self, transcript: Transcript | str) -> list[str]:
        """Match one transcript against the current round and credit any newly found answers."""
        if isinstance(transcript, str):
            transcript = Transcript(text=transcript)
        current = self._round
        if current is None:
            return []
        if current.kind == RoundKind.TRIVIA and self._claimed:
            return []

        phrase = transcript.text
        speaker_id: str | None = None
        if self._competitive and self._players:
            spoken = extract_speaker_name(phrase, self._players)
            if spoken.player is not None:
                speaker_id = spoken.player.id
                phrase = spoken.answer

        mode = MatchMode.MULTI if current.kind == RoundKind.TOP_TEN else MatchMode.SINGLE
        result = self._matcher.match(phrase, current.candidates, claimed=self._claimed, mode=mode)
        if not result:
            self._logger.debug("transcript_unmatched", extra={"transcript": transcript.text})
            return []

        if speaker_id is None and self.attribution_active:
            speaker_id = await self._identify_speaker()

        # The round may have changed while the speaker lookup ran.
        if self._round is not current:
            return []

        accepted: list[str] = []
        for candidate in result.candidates:
            if candidate in self._claimed:
                continue
            self._claimed.append(candidate)
            accepted.append(candidate)
            self._credit(current, candidate, speaker_id)
            self._logger.info(
                "answer_accepted",
                extra={"candidate": candidate, "speaker_id": speaker_id, "rule": result.rule.value},
            )
            self._listener.answer_accepted(candidate, speaker_id)
            if current.kind == RoundKind.TRIVIA:
                break

        if current.kind == RoundKind.TOP_TEN and self.round_complete and not self._completion_reported:
            self._completion_reported = True
            self._logger.info("round_complete", extra={"found": len(self._claimed)})
            self._listener.round_complete()
        return accepted

    async def _identify_speaker(self) -> str | None:
        snapshot = self._session.audio_snapshot()
        if snapshot is None or snapshot.size == 0:
            return None
        try:
            features = await asyncio.to_thread(self._extractor.extract, snapshot, self._session.sample_rate)
        except Exception:  # noqa: BLE001
            self._logger.exception("speaker_features_failed")
            return None
        if features.is_degenerate:
            return None
        profile = self._registry.identify(features)
        return profile.player_id if profile is not None else None

    def _credit(self, current: RoundDescriptor, candidate: str, speaker_id: str | None) -> None:
        if speaker_id is None:
            return
        if current.kind == RoundKind.TRIVIA and current.correct_answer is not None and candidate != current.correct_answer:
            return
        self._scores[speaker_id] = self._scores.get(speaker_id, 0) + 1
