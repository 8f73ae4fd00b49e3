from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator, Optional, Protocol, Tuple

import numpy as np

from services.presence.core.audio_window import AudioWindow, pcm16_rms
from services.presence.core.volume_gate import evaluate


class RecognitionEngine(Protocol):
    """Minimal engine interface the Transcriber needs.

    Implementations accept a float32 array in [-1, 1] (mono) and return a
    text hypothesis for that audio.
    """

    async def transcribe(self, audio_f32: np.ndarray) -> str:  # pragma: no cover - interface only
        ...


class Ev(Enum):
    AUDIO = auto()
    END = auto()


@dataclass
class Event:
    kind: Ev
    data: Optional[bytes] = None  # PCM16 LE for AUDIO


def _stitch(prev: str, new: str) -> str:
    """Greedy suffix/prefix overlap stitcher.

    Example: prev="turn on the ki", new="the kitchen lights" ->
             "turn on the kitchen lights"
    """
    if not prev:
        return new
    if not new:
        return prev
    max_k = min(len(prev), len(new))
    for k in range(max_k, 0, -1):
        if prev.endswith(new[:k]):
            return prev + new[k:]
    return prev + new


class Transcriber:
    """Continuous recognition loop built around a rolling window.

    Responsibilities
    ----------------
    • Ingest PCM16 frames into an AudioWindow.
    • Emit a PARTIAL hypothesis every `stride_ms` of voiced audio.
    • After `endpoint_ms` of silence following speech (or on END),
      emit a FINAL hypothesis and reset for the next utterance.
    • Stop by itself after `idle_timeout_s` without any audio (`end_reason`
      becomes "idle"); an explicit END sets it to "end".

    Notes
    -----
    • `engine` may be None at construction when the owner is still loading
      it; it must be set before `run()` is iterated.
    • Feeding is synchronous (`put_nowait`) because it is called from event
      handlers that must not suspend. A full queue drops the frame.
    """

    def __init__(
        self,
        engine: Optional[RecognitionEngine],
        *,
        sample_rate_hz: int = 16000,
        window_ms: int = 3000,
        tail_ms: int = 2000,
        stride_ms: int = 400,
        emit_partials: bool = True,
        endpoint_ms: int = 800,
        voice_threshold: float = 0.01,
        idle_timeout_s: Optional[float] = None,
    ) -> None:
        self.engine = engine
        self.win = AudioWindow(window_size_ms=window_ms, sample_rate_hz=sample_rate_hz, default_tail_ms=tail_ms)
        self.tail_ms = int(tail_ms)
        self.emit_partials = bool(emit_partials)
        self.stride_samples = max(1, (sample_rate_hz * int(stride_ms)) // 1000)
        self.endpoint_samples = max(1, (sample_rate_hz * int(endpoint_ms)) // 1000)
        self.voice_threshold = float(voice_threshold)
        self.idle_timeout_s = idle_timeout_s
        self.end_reason: Optional[str] = None
        self.dropped_frames = 0
        self.hypothesis: str = ""
        self.q: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=1024)
        self._reset_state()

    # ----------------- feeders -----------------
    def feed_audio(self, pcm16_le: bytes) -> bool:
        try:
            self.q.put_nowait(Event(Ev.AUDIO, data=pcm16_le))
        except asyncio.QueueFull:
            self.dropped_frames += 1
            return False
        return True

    def end(self) -> None:
        self._put_control(Event(Ev.END))

    def _put_control(self, ev: Event) -> None:
        # controls are never dropped; make room by discarding the oldest frame
        if self.q.full():
            self.q.get_nowait()
            self.dropped_frames += 1
        self.q.put_nowait(ev)

    # ----------------- runner ------------------
    async def run(self) -> AsyncIterator[Tuple[str, str]]:
        """Consume events and yield ("PARTIAL" | "FINAL", text)."""
        while True:
            try:
                if self.idle_timeout_s:
                    ev = await asyncio.wait_for(self.q.get(), self.idle_timeout_s)
                else:
                    ev = await self.q.get()
            except asyncio.TimeoutError:
                ev = Event(Ev.END)
                self.end_reason = "idle"

            if ev.kind is Ev.AUDIO and ev.data:
                n = self.win.append(ev.data)
                voiced = evaluate(pcm16_rms(ev.data), self.voice_threshold)
                if voiced:
                    self._voiced = True
                    self._silence = 0
                elif self._voiced:
                    self._silence += n

                if self._voiced and self._silence >= self.endpoint_samples:
                    final_text = await self._finalize()
                    if final_text:
                        yield ("FINAL", final_text)
                    continue

                if self.emit_partials and voiced:
                    self._since_emit += n
                    if self._since_emit >= self.stride_samples:
                        self._since_emit = 0
                        tail = self.win.tail_ms(self.tail_ms, as_float=True)
                        text = (await self.engine.transcribe(tail)).strip()
                        if text:
                            self.hypothesis = _stitch(self.hypothesis, text)
                            yield ("PARTIAL", self.hypothesis)
                continue

            # Controls
            if ev.kind is Ev.END:
                final_text = await self._finalize()
                if final_text:
                    yield ("FINAL", final_text)
                if self.end_reason is None:
                    self.end_reason = "end"
                break

    # ----------------- utils -------------------
    async def _finalize(self) -> str:
        final_text = ""
        if self._voiced:
            full = self.win.full(as_float=True)
            text = (await self.engine.transcribe(full)).strip() if full.size else ""
            final_text = _stitch(self.hypothesis, text) if text else self.hypothesis
        self._reset_state()
        return final_text

    def _reset_state(self) -> None:
        self.win.clear()
        self._since_emit = 0
        self._silence = 0
        self._voiced = False
        self.hypothesis = ""
