"""CLI host for exercising the voice answer engine."""

from __future__ import annotations

import asyncio

import typer
from rich import print

from trivia_voice.config import settings
from trivia_voice.errors import ErrorKind
from trivia_voice.models import Player, RoundDescriptor, RoundKind, SessionState
from trivia_voice.telemetry import configure_logging
from trivia_voice.voice import (
    AcousticFeatureExtractor,
    DistanceWeights,
    MatchMode,
    PhraseMatcher,
    RecognitionConfig,
    SpeakerRegistry,
    SpeechSession,
    VoiceAnswerEngine,
)

app = typer.Typer(help="Party trivia voice answer engine")


def _build_matcher() -> PhraseMatcher:
    return PhraseMatcher(
        coverage_threshold=settings.coverage_threshold,
        max_answers_per_phrase=settings.max_answers_per_phrase,
    )


def _build_registry() -> SpeakerRegistry:
    return SpeakerRegistry(
        weights=DistanceWeights(
            pitch_weight=settings.pitch_weight,
            centroid_divisor=settings.centroid_divisor,
            formant_divisor=settings.formant_divisor,
            zcr_weight=settings.zcr_weight,
            rejection_threshold=settings.speaker_rejection_threshold,
        )
    )


def _build_provider(backend: str):
    name = backend.strip().lower()
    if name == "deepgram":
        from trivia_voice.voice.stt_deepgram import DeepgramProvider

        api_key = settings.deepgram_api_key.get_secret_value() if settings.deepgram_api_key else None
        return DeepgramProvider(
            api_key,
            model=settings.deepgram_model,
            utterance_end_ms=settings.utterance_end_ms,
        )
    if name == "speechrecognition":
        from trivia_voice.voice.stt_speechrecognition import SpeechRecognitionProvider

        return SpeechRecognitionProvider(phrase_seconds=settings.phrase_seconds)
    raise ValueError(f"Unknown recognition backend {backend!r}; use speechrecognition or deepgram")


def _build_session(provider, microphone) -> SpeechSession:
    return SpeechSession(
        provider,
        microphone,
        config=RecognitionConfig(
            continuous=settings.continuous,
            language=settings.language,
            interim_results=settings.interim_results,
            sample_rate=settings.sample_rate,
        ),
        restart_backoff_seconds=settings.restart_backoff_seconds,
        snapshot_samples=settings.snapshot_samples,
    )


def _parse_player(raw: str) -> Player:
    player_id, _, name = raw.partition(":")
    player_id = player_id.strip()
    if not player_id:
        raise typer.BadParameter(f"Player must look like 'id:name', got {raw!r}")
    return Player(id=player_id, name=(name or player_id).strip())


class _ConsoleListener:
    """Prints engine outcomes and ends the round when it completes."""

    def __init__(self, done: asyncio.Event, *, single_answer: bool) -> None:
        self._done = done
        self._single_answer = single_answer

    def answer_accepted(self, candidate: str, speaker_id: str | None) -> None:
        print({"answer_accepted": candidate, "speaker_id": speaker_id})
        if self._single_answer:
            self._done.set()

    def listening_state_changed(self, state: SessionState) -> None:
        print({"listening": state.value})

    def error(self, kind: ErrorKind, message: str) -> None:
        print({"error": kind.value, "message": message, "fatal": kind.is_fatal})
        if kind.is_fatal:
            self._done.set()

    def round_complete(self) -> None:
        print({"round": "complete"})
        self._done.set()


@app.command("settings")
def show_settings() -> None:
    """Show effective configuration."""
    print(settings.model_dump())


@app.command()
def match(
    phrase: str,
    candidate: list[str] = typer.Option(..., "--candidate", "-c", help="Candidate answer (repeatable)"),
    claimed: list[str] = typer.Option([], "--claimed", help="Already-credited candidate (repeatable)"),
    top_ten: bool = typer.Option(False, help="Use multi-answer (top-ten) matching"),
) -> None:
    """Match a phrase against candidates offline."""
    mode = MatchMode.MULTI if top_ten else MatchMode.SINGLE
    result = _build_matcher().match(phrase, candidate, claimed=claimed, mode=mode)
    print(
        {
            "phrase": phrase,
            "mode": mode.value,
            "matched": list(result.candidates),
            "rule": result.rule.value if result.rule else None,
        }
    )
    if not result:
        raise typer.Exit(code=1)


@app.command()
def analyze(wav_file: str = typer.Argument(..., help="16-bit PCM WAV file")) -> None:
    """Print the acoustic feature vector of a recording."""
    from trivia_voice.voice.input import read_wav_samples

    try:
        samples, sample_rate = read_wav_samples(wav_file)
    except (FileNotFoundError, RuntimeError) as exc:
        print({"error": str(exc)})
        raise typer.Exit(code=1)

    features = AcousticFeatureExtractor().extract(samples, sample_rate)
    print(
        {
            "sample_rate": sample_rate,
            "samples": int(samples.size),
            "pitch_hz": round(features.pitch_hz, 2),
            "formants_hz": [round(value, 2) for value in features.formants_hz],
            "spectral_centroid": round(features.spectral_centroid, 2),
            "zero_crossing_rate": round(features.zero_crossing_rate, 5),
            "degenerate": features.is_degenerate,
        }
    )


@app.command()
def play(
    candidate: list[str] = typer.Option(..., "--candidate", "-c", help="Candidate answer (repeatable)"),
    correct: str = typer.Option(None, help="Correct answer for a trivia round"),
    top_ten: bool = typer.Option(False, help="Top-ten round: collect every item"),
    player: list[str] = typer.Option([], "--player", "-p", help="Player as id:name (repeatable)"),
    enroll: bool = typer.Option(False, help="Record a voice sample per player before the round"),
    enroll_seconds: float = typer.Option(1.5, help="Length of each enrollment sample"),
    backend: str = typer.Option(None, help="Recognition backend: speechrecognition or deepgram"),
) -> None:
    """Run one live round against the microphone."""
    configure_logging(settings.log_level)
    try:
        provider = _build_provider(backend or settings.stt_backend)
    except ValueError as exc:
        print({"error": str(exc)})
        raise typer.Exit(code=2)

    try:
        from trivia_voice.voice.input import record_enrollment_sample
        from trivia_voice.voice.stt_speechrecognition import SpeechRecognitionMicrophone
    except ImportError:
        print({"error": "Voice extras are missing. Install with: pip install 'party-trivia-voice[voice]'"})
        raise typer.Exit(code=1)

    try:
        microphone = SpeechRecognitionMicrophone(sample_rate=settings.sample_rate, chunk_size=settings.frame_samples)
    except RuntimeError as exc:
        print({"error": str(exc)})
        raise typer.Exit(code=1)

    players = [_parse_player(raw) for raw in player]
    registry = _build_registry()
    if enroll:
        for entry in players:
            input(f"{entry.name}: press Enter and say a few words ...")
            try:
                samples = record_enrollment_sample(microphone, seconds=enroll_seconds)
            except RuntimeError as exc:
                print({"error": str(exc)})
                raise typer.Exit(code=1)
            profile = registry.enroll(entry.id, samples, microphone.sample_rate, name=entry.name)
            print({"enrolled": entry.id, "pitch_hz": round(profile.pitch_hz, 2)})

    round_descriptor = RoundDescriptor(
        candidates=tuple(candidate),
        kind=RoundKind.TOP_TEN if top_ten else RoundKind.TRIVIA,
        correct_answer=correct,
    )

    async def _run() -> dict[str, int]:
        done = asyncio.Event()
        engine = VoiceAnswerEngine(
            _build_session(provider, microphone),
            listener=_ConsoleListener(done, single_answer=not top_ten),
            matcher=_build_matcher(),
            registry=registry,
            competitive=bool(players),
        )
        engine.set_players(players)
        await engine.start()
        try:
            await engine.reset_round(round_descriptor)
            await done.wait()
        finally:
            await engine.aclose()
        return engine.scores

    try:
        scores = asyncio.run(_run())
    except KeyboardInterrupt:
        print({"round": "interrupted"})
        raise typer.Exit(code=130)
    print({"scores": scores})


if __name__ == "__main__":
    app()
