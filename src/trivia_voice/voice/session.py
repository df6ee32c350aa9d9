"""Speech session lifecycle: one microphone, one recognition stream, auto-recovery."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Union

import numpy as np

from trivia_voice.errors import (
    ErrorKind,
    MicrophonePermissionError,
    ProviderAlreadyStartedError,
    RecognitionUnavailableError,
)
from trivia_voice.models import SessionState, Transcript

from .features import pcm16_to_float
from .interfaces import (
    AudioSource,
    ProviderClosed,
    ProviderConnection,
    ProviderError,
    ProviderEvent,
    ProviderOpened,
    ProviderTranscript,
    RecognitionConfig,
    RecognitionProvider,
)


@dataclass(slots=True, frozen=True)
class StateChanged:
    state: SessionState
    previous: SessionState


@dataclass(slots=True, frozen=True)
class TranscriptReceived:
    transcript: Transcript


@dataclass(slots=True, frozen=True)
class SessionError:
    kind: ErrorKind
    message: str
    fatal: bool = False


SessionEvent = Union[StateChanged, TranscriptReceived, SessionError]


class MicrophoneArbiter:
    """Ensures at most one session holds the microphone at a time."""

    def __init__(self) -> None:
        self._owner: SpeechSession | None = None

    @property
    def owner(self) -> SpeechSession | None:
        return self._owner

    async def acquire(self, session: SpeechSession) -> None:
        previous = self._owner
        if previous is not None and previous is not session:
            owner_loop = previous.loop
            running = asyncio.get_running_loop()
            if owner_loop is None or owner_loop is running:
                await previous.stop()
            elif owner_loop.is_running():
                await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(previous.stop(), owner_loop))
            else:
                # Owner's event loop is gone; its tasks died with it.
                previous.abandon()
        self._owner = session

    def release(self, session: SpeechSession) -> None:
        if self._owner is session:
            self._owner = None


DEFAULT_ARBITER = MicrophoneArbiter()
READ_SETTLE_SECONDS = 1.0


class SpeechSession:
    """State machine over an unreliable recognition provider.

    Provider callbacks land on one inbound queue and are handled by a single
    dispatcher task; consumers read typed events from their own subscription
    queue. All state is mutated on the owning event loop.
    """

    def __init__(
        self,
        provider: RecognitionProvider,
        audio: AudioSource,
        *,
        config: RecognitionConfig | None = None,
        restart_backoff_seconds: float = 0.3,
        retry_delay_seconds: float = 1.0,
        snapshot_samples: int = 2_048,
        arbiter: MicrophoneArbiter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._provider = provider
        self._audio = audio
        self._config = config or RecognitionConfig()
        self._restart_backoff_seconds = restart_backoff_seconds
        self._retry_delay_seconds = retry_delay_seconds
        self._snapshot_samples = max(1, snapshot_samples)
        self._arbiter = arbiter or DEFAULT_ARBITER
        self._logger = logger or logging.getLogger("trivia_voice.session")

        self._state = SessionState.IDLE
        self._subscribers: list[asyncio.Queue[SessionEvent]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbound: asyncio.Queue[tuple[int, ProviderEvent]] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._connection: ProviderConnection | None = None
        self._audio_open = False
        self._generation = 0
        self._stop_requested = True
        self._terminal: ErrorKind | None = None
        self._reading: asyncio.Future[bytes] | None = None
        self._recent = np.zeros(0, dtype=np.float32)

        self._supported = bool(provider.is_supported())
        if not self._supported:
            self._terminal = ErrorKind.UNSUPPORTED_PLATFORM
            self._state = SessionState.ERROR
            self._logger.error("speech_recognition_unsupported")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> RecognitionConfig:
        return self._config

    @property
    def supported(self) -> bool:
        return self._supported

    @property
    def terminal_error(self) -> ErrorKind | None:
        return self._terminal

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        """Event loop the session was started on, if any."""
        return self._loop

    @property
    def sample_rate(self) -> int:
        return int(getattr(self._audio, "sample_rate", self._config.sample_rate))

    def subscribe(self) -> asyncio.Queue[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def audio_snapshot(self) -> np.ndarray | None:
        """Most recent captured samples, for speaker attribution alongside a transcript."""
        if self._recent.size == 0:
            return None
        return self._recent.copy()

    async def start(self) -> None:
        """Acquire the microphone and open the provider. No-op while starting or listening."""
        if self._terminal is not None:
            self._logger.info("speech_session_start_refused", extra={"reason": self._terminal.value})
            return
        if self._state in (SessionState.STARTING, SessionState.LISTENING):
            return

        self._stop_requested = False
        self._ensure_dispatcher()
        opened = await self._open()
        if not opened and self._terminal is None and self._config.continuous and not self._stop_requested:
            self._schedule_restart(self._restart_backoff_seconds, attempt=1)

    async def stop(self) -> None:
        """Release everything and cancel any pending restart. No-op while idle."""
        self._stop_requested = True
        self._generation += 1
        self._cancel_restart()
        if self._state == SessionState.IDLE and self._connection is None and not self._audio_open:
            return

        await self._release()
        if self._terminal is None:
            self._set_state(SessionState.IDLE)
        self._logger.info("speech_session_stopped")

    async def restart(self) -> None:
        """Stop then start fresh, dropping any pending backoff timer."""
        await self.stop()
        await self.start()

    async def retry(self) -> None:
        """Manual retry after the user re-grants microphone access."""
        if self._terminal == ErrorKind.PERMISSION_DENIED:
            self._terminal = None
            self._set_state(SessionState.IDLE)
        await self.start()

    def abandon(self) -> None:
        """Synchronously drop the device and connection of a session whose event loop has closed."""
        self._stop_requested = True
        self._generation += 1
        self._pump_task = None
        self._restart_task = None
        self._dispatch_task = None
        self._reading = None
        connection = self._connection
        self._connection = None
        if connection is not None:
            try:
                connection.close()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("provider_close_failed", extra={"error": f"{type(exc).__name__}: {exc}"})
        if self._audio_open:
            self._audio_open = False
            try:
                self._audio.close()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("microphone_close_failed", extra={"error": f"{type(exc).__name__}: {exc}"})
        if self._terminal is None:
            self._state = SessionState.IDLE
        self._logger.info("speech_session_abandoned")

    async def aclose(self) -> None:
        await self.stop()
        task = self._dispatch_task
        self._dispatch_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscribers.clear()

    async def __aenter__(self) -> SpeechSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _ensure_dispatcher(self) -> None:
        loop = asyncio.get_running_loop()
        if self._dispatch_task is not None and not self._dispatch_task.done() and self._loop is loop:
            return
        self._loop = loop
        self._inbound = asyncio.Queue()
        self._dispatch_task = loop.create_task(self._dispatch_loop(), name="speech-session-dispatch")

    def _push(self, generation: int, event: ProviderEvent) -> None:
        """Provider-facing sink; safe to call from any thread."""
        loop, inbound = self._loop, self._inbound
        if loop is None or inbound is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            inbound.put_nowait((generation, event))
        else:
            loop.call_soon_threadsafe(inbound.put_nowait, (generation, event))

    async def _dispatch_loop(self) -> None:
        assert self._inbound is not None
        while True:
            generation, event = await self._inbound.get()
            if generation != self._generation:
                self._logger.debug("provider_event_stale", extra={"event": type(event).__name__})
                continue
            try:
                await self._handle_event(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("provider_event_failed", extra={"event": type(event).__name__})

    async def _handle_event(self, event: ProviderEvent) -> None:
        if isinstance(event, ProviderOpened):
            if self._state == SessionState.STARTING:
                self._set_state(SessionState.LISTENING)
            return

        if isinstance(event, ProviderTranscript):
            text = event.text.strip()
            if self._state != SessionState.LISTENING or not text:
                return
            if not event.is_final and not self._config.interim_results:
                return
            self._publish(TranscriptReceived(Transcript(text=text, is_final=event.is_final)))
            return

        if isinstance(event, ProviderError):
            await self._handle_provider_error(event)
            return

        if isinstance(event, ProviderClosed):
            self._logger.info("provider_closed", extra={"code": event.code})
            await self._end_stream()

    async def _handle_provider_error(self, event: ProviderError) -> None:
        if event.kind == ErrorKind.NO_SPEECH:
            self._logger.debug("provider_no_speech")
            return
        if event.kind == ErrorKind.ABORTED and self._config.continuous:
            self._logger.debug("provider_aborted")
            return
        if event.kind.is_fatal:
            await self._fail(event.kind, event.message)
            return

        self._logger.warning("provider_error", extra={"kind": event.kind.value, "detail": event.message})
        self._set_state(SessionState.ERROR)
        self._publish(SessionError(kind=event.kind, message=event.message, fatal=False))
        await self._end_stream()

    async def _end_stream(self) -> None:
        """Drop the current stream, then restart it (continuous) or settle in ``stopped``."""
        await self._release()
        # Later events from the dropped stream are stale.
        self._generation += 1
        if self._terminal is not None:
            return
        if self._config.continuous and not self._stop_requested:
            self._schedule_restart(self._restart_backoff_seconds, attempt=1)
        else:
            self._set_state(SessionState.STOPPED)

    async def _open(self) -> bool:
        self._set_state(SessionState.STARTING)
        await self._release()
        self._generation += 1
        generation = self._generation

        try:
            await self._arbiter.acquire(self)
            await asyncio.to_thread(self._audio.open)
            self._audio_open = True
        except (MicrophonePermissionError, RecognitionUnavailableError) as exc:
            await self._fail(exc.kind, str(exc))
            return False
        if generation != self._generation:
            await self._release()
            return False

        try:
            connection = await asyncio.to_thread(self._provider.open, self._config, partial(self._push, generation))
        except ProviderAlreadyStartedError:
            self._logger.info("provider_already_started")
            if generation == self._generation:
                self._start_pump(generation)
                self._set_state(SessionState.LISTENING)
            return True
        except (MicrophonePermissionError, RecognitionUnavailableError) as exc:
            await self._fail(exc.kind, str(exc))
            return False
        except Exception as exc:  # noqa: BLE001 - any provider failure is treated as transient.
            self._logger.warning("provider_open_failed", extra={"error": f"{type(exc).__name__}: {exc}"})
            await self._release()
            self._set_state(SessionState.ERROR)
            self._publish(SessionError(kind=ErrorKind.PROVIDER_TRANSIENT, message=str(exc), fatal=False))
            return False

        if generation != self._generation:
            connection.close()
            await self._release()
            return False

        self._connection = connection
        self._start_pump(generation)
        self._logger.info("speech_session_started", extra={"continuous": self._config.continuous})
        return True

    def _start_pump(self, generation: int) -> None:
        self._pump_task = asyncio.create_task(self._pump(generation), name="speech-session-audio")

    async def _pump(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        while generation == self._generation:
            reading = loop.run_in_executor(None, self._audio.read_frame)
            self._reading = reading
            try:
                frame = await asyncio.shield(reading)
            except OSError as exc:
                self._push(generation, ProviderError(ErrorKind.PROVIDER_TRANSIENT, f"audio read failed: {exc}"))
                return
            if generation != self._generation:
                return
            if not frame:
                await asyncio.sleep(0.01)
                continue

            self._remember(frame)
            connection = self._connection
            if connection is None:
                continue
            try:
                connection.send(frame)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("provider_send_failed", extra={"error": f"{type(exc).__name__}: {exc}"})

    def _remember(self, frame: bytes) -> None:
        samples = pcm16_to_float(frame)
        combined = np.concatenate((self._recent, samples))
        self._recent = combined[-self._snapshot_samples :]

    def _schedule_restart(self, delay: float, *, attempt: int) -> None:
        if self.restart_pending:
            return
        self._set_state(SessionState.STARTING)
        self._logger.info("speech_session_restart_scheduled", extra={"delay": delay, "attempt": attempt})
        self._restart_task = asyncio.create_task(
            self._restart_after(delay, attempt),
            name="speech-session-restart",
        )

    async def _restart_after(self, delay: float, attempt: int) -> None:
        await asyncio.sleep(delay)
        if self._stop_requested or self._terminal is not None:
            return
        self._restart_task = None
        if self._connection is not None and self._state == SessionState.LISTENING:
            return
        if await self._open():
            return
        if self._stop_requested or self._terminal is not None:
            return
        if attempt == 1:
            self._schedule_restart(self._retry_delay_seconds, attempt=2)
            return

        self._logger.error("speech_session_restart_abandoned")
        self._set_state(SessionState.ERROR)
        self._publish(SessionError(kind=ErrorKind.PROVIDER_TRANSIENT, message="auto-restart abandoned", fatal=False))

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _release(self) -> None:
        pump = self._pump_task
        self._pump_task = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        await self._settle_read()

        connection = self._connection
        self._connection = None
        if connection is not None:
            try:
                connection.close()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("provider_close_failed", extra={"error": f"{type(exc).__name__}: {exc}"})

        if self._audio_open:
            self._audio_open = False
            try:
                self._audio.close()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("microphone_close_failed", extra={"error": f"{type(exc).__name__}: {exc}"})
        self._arbiter.release(self)

    async def _settle_read(self) -> None:
        """Wait for a microphone read still running in a worker thread before the device is closed."""
        reading = self._reading
        self._reading = None
        if reading is None:
            return
        if not reading.done():
            await asyncio.wait({reading}, timeout=READ_SETTLE_SECONDS)
        if not reading.done():
            self._logger.warning("microphone_read_still_running", extra={"timeout": READ_SETTLE_SECONDS})
            return
        if not reading.cancelled():
            # Marks a read failure as retrieved.
            reading.exception()

    async def _fail(self, kind: ErrorKind, message: str) -> None:
        self._terminal = kind
        self._cancel_restart()
        await self._release()
        self._set_state(SessionState.ERROR)
        self._logger.error("speech_session_failed", extra={"kind": kind.value, "detail": message})
        self._publish(SessionError(kind=kind, message=message, fatal=True))

    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        self._logger.debug("speech_session_state", extra={"state": state.value, "previous": previous.value})
        self._publish(StateChanged(state=state, previous=previous))

    def _publish(self, event: SessionEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)
