from __future__ import annotations

import asyncio
import contextlib
import functools
import itertools
import logging
from typing import Callable, Optional

from services.presence.contracts import (
    RecognitionUnsupported,
    SessionStateError,
    TranscriptEnded,
    TranscriptionEvent,
    TranscriptResult,
)
from services.presence.core.subscriptions import Listeners
from services.presence.core.transcriber import RecognitionEngine, Transcriber

log = logging.getLogger("presence.transcription")

_session_ids = itertools.count(1)

EngineFactory = Callable[[], RecognitionEngine]


class TranscriptionSession:
    """Owns a continuous speech-recognition resource while open.

    • The engine comes from `engine_factory`, called once in a worker thread
      by the first session (or by `prepare()`) and then reused. A factory
      raising `RecognitionUnsupported` ends that session with reason
      "unsupported" and puts the object in degraded mode: later `start()`
      calls are no-ops returning None.
    • `feed_audio()` pushes capture audio into the running Transcriber.
    • Interim and final hypotheses are published as `TranscriptResult`.
    • When the stream ends by itself (idle timeout, engine failure, a
      listener raising) the session closes and publishes `TranscriptEnded`.
      `stop()` publishes nothing and drops any hypothesis still being decoded.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        *,
        language: str = "en-US",
        sample_rate_hz: int = 16000,
        window_ms: int = 3000,
        tail_ms: int = 2000,
        stride_ms: int = 400,
        endpoint_ms: int = 800,
        voice_threshold: float = 0.01,
        idle_timeout_s: Optional[float] = 8.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._engine_factory = engine_factory
        self.language = language
        self._transcriber_opts = dict(
            sample_rate_hz=sample_rate_hz,
            window_ms=window_ms,
            tail_ms=tail_ms,
            stride_ms=stride_ms,
            endpoint_ms=endpoint_ms,
            voice_threshold=voice_threshold,
            idle_timeout_s=idle_timeout_s,
            emit_partials=True,
        )
        self._loop = loop
        self._engine: Optional[RecognitionEngine] = None
        self._engine_load: Optional[asyncio.Future] = None
        self.supported: Optional[bool] = None  # unknown until the first start
        self._listeners: Listeners[TranscriptionEvent] = Listeners()
        self._transcriber: Optional[Transcriber] = None
        self._task: Optional[asyncio.Task] = None
        self._session_id: Optional[int] = None

    # ----------------- lifecycle ---------------
    @property
    def is_open(self) -> bool:
        return self._task is not None

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    async def prepare(self) -> bool:
        """Load the engine ahead of the first start; False when unsupported."""
        return await self._load_engine() is not None

    def start(self) -> Optional[int]:
        """Begin listening; return the session id, or None when unsupported.

        Never blocks: the engine is loaded off the loop by the session task,
        and audio fed meanwhile waits in the transcriber queue.
        """
        if self._task is not None:
            raise SessionStateError("transcription session already open")
        if self.supported is False:
            log.debug("event=transcription_start_skipped reason=unsupported")
            return None

        loop = self._loop or asyncio.get_running_loop()
        session_id = next(_session_ids)
        transcriber = Transcriber(self._engine, **self._transcriber_opts)
        self._transcriber = transcriber
        self._session_id = session_id
        self._task = loop.create_task(self._pump(session_id, transcriber))
        self._task.add_done_callback(functools.partial(self._on_pump_done, session_id))
        log.info("event=transcription_started session=%s lang=%s", session_id, self.language)
        return session_id

    def stop(self) -> None:
        """Release the recognizer. No event from this session is delivered after return."""
        task, session_id = self._task, self._session_id
        if task is None:
            return
        self._release()
        task.cancel()
        log.info("event=transcription_stopped session=%s", session_id)

    def __enter__(self) -> "TranscriptionSession":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def feed_audio(self, pcm16_le: bytes) -> None:
        if self._transcriber is None:
            raise SessionStateError("transcription session is not open")
        if not self._transcriber.feed_audio(pcm16_le):
            log.debug("event=transcription_frame_dropped session=%s", self._session_id)

    # ----------------- listeners ---------------
    def subscribe(self, listener: Callable[[TranscriptionEvent], None]):
        return self._listeners.subscribe(listener)

    # ----------------- internals ---------------
    async def _load_engine(self) -> Optional[RecognitionEngine]:
        if self._engine is not None:
            return self._engine
        if self.supported is False:
            return None
        if self._engine_load is None:
            # one load shared by every session; a stopped session must not cancel it
            self._engine_load = asyncio.ensure_future(asyncio.to_thread(self._engine_factory))
        try:
            engine = await asyncio.shield(self._engine_load)
        except RecognitionUnsupported as exc:
            if self.supported is not False:
                self.supported = False
                log.warning("event=recognition_unsupported error=%s", exc)
            return None
        except Exception:
            self._engine_load = None  # retried by the next session
            raise
        self._engine = engine
        self.supported = True
        return engine

    def _release(self) -> None:
        self._task = None
        self._session_id = None
        self._transcriber = None

    async def _pump(self, session_id: int, transcriber: Transcriber) -> str:
        """Run one session; return why it ended."""
        engine = await self._load_engine()
        if engine is None:
            return "unsupported"
        transcriber.engine = engine

        rev = 0
        async with contextlib.aclosing(transcriber.run()) as stream:
            while True:
                try:
                    kind, text = await stream.__anext__()
                except StopAsyncIteration:
                    return transcriber.end_reason or "end"
                except Exception as exc:
                    log.warning("event=transcription_failed session=%s error=%s", session_id, exc, exc_info=True)
                    return "error"
                if session_id != self._session_id:
                    return "superseded"
                rev += 1
                self._listeners.emit(
                    TranscriptResult(session_id=session_id, text=text, is_final=(kind == "FINAL"), rev=rev))

    def _on_pump_done(self, session_id: int, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # a subscriber raised on a result, or the engine factory failed
            log.error("event=transcription_task_failed session=%s error=%s", session_id, exc, exc_info=exc)
            reason = "error"
        else:
            reason = task.result()
        if session_id != self._session_id:
            return
        self._release()
        log.info("event=transcription_ended session=%s reason=%s", session_id, reason)
        self._listeners.emit(TranscriptEnded(session_id=session_id, reason=reason))
