from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Callable, Optional, Union

from services.presence.contracts import (
    AudioChunk,
    AudioInput,
    AudioStream,
    CaptureEvent,
    SessionStateError,
    VolumeSample,
)
from services.presence.core.audio_window import AudioWindow
from services.presence.core.subscriptions import Listeners

log = logging.getLogger("presence.capture")

_session_ids = itertools.count(1)


class AudioCaptureSession:
    """Owns the microphone while open.

    Responsibilities
    ----------------
    • `start()` opens the backend stream; a backend that cannot open raises
      `DeviceUnavailable` and the session stays closed.
    • Every captured block becomes an `AudioChunk` (outbound audio) followed
      by a `VolumeSample` (RMS over the last `volume_window_ms`).
    • `stop()` releases the device synchronously. Blocks that were already
      queued on the loop carry the old session id and are dropped.

    Notes
    -----
    • Backend callbacks run on the audio thread; they are handed to the
      control loop with `call_soon_threadsafe`, so listeners always run on
      the loop, one block at a time.
    • Subscribing never touches the device.
    """

    def __init__(
        self,
        backend: AudioInput,
        *,
        sample_rate_hz: int = 16000,
        block_ms: int = 40,
        volume_window_ms: int = 100,
        device: Optional[Union[int, str]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._backend = backend
        self.sample_rate_hz = int(sample_rate_hz)
        self.block_size = max(1, (self.sample_rate_hz * int(block_ms)) // 1000)
        self.device = device
        self._loop = loop
        self._window = AudioWindow(window_size_ms=volume_window_ms, sample_rate_hz=self.sample_rate_hz)
        self._listeners: Listeners[CaptureEvent] = Listeners()
        self._stream: Optional[AudioStream] = None
        self._session_id: Optional[int] = None
        self.dropped_blocks = 0

    # ----------------- lifecycle ---------------
    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    def start(self) -> int:
        """Open the microphone and return the new session id."""
        if self._stream is not None:
            raise SessionStateError("capture session already open")
        loop = self._loop or asyncio.get_running_loop()
        session_id = next(_session_ids)

        def on_block(pcm16_le: bytes, timestamp: float) -> None:
            loop.call_soon_threadsafe(self._deliver, session_id, pcm16_le, timestamp)

        stream = self._backend.open(
            sample_rate_hz=self.sample_rate_hz,
            block_size=self.block_size,
            device=self.device,
            callback=on_block,
        )
        try:
            stream.start()
        except BaseException:
            stream.close()
            raise

        self._window.clear()
        self._stream = stream
        self._session_id = session_id
        log.info("event=capture_started session=%s rate=%s block=%s", session_id, self.sample_rate_hz, self.block_size)
        return session_id

    def stop(self) -> None:
        """Release the device. No event from this session is delivered after return."""
        stream, session_id = self._stream, self._session_id
        if stream is None:
            return
        self._stream = None
        self._session_id = None
        self._window.clear()
        try:
            stream.stop()
        finally:
            stream.close()
        log.info("event=capture_stopped session=%s", session_id)

    def __enter__(self) -> "AudioCaptureSession":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    # ----------------- listeners ---------------
    def subscribe(self, listener: Callable[[CaptureEvent], None]):
        return self._listeners.subscribe(listener)

    # ----------------- delivery ----------------
    def _deliver(self, session_id: int, pcm16_le: bytes, timestamp: float) -> None:
        if session_id != self._session_id:
            self.dropped_blocks += 1
            log.debug("event=capture_block_dropped session=%s current=%s", session_id, self._session_id)
            return
        self._window.append(pcm16_le)
        level = self._window.rms()
        self._listeners.emit(AudioChunk(session_id=session_id, data=pcm16_le, timestamp=timestamp))
        # a listener may have stopped us while handling the chunk
        if session_id == self._session_id:
            self._listeners.emit(VolumeSample(session_id=session_id, level=level, timestamp=timestamp))
