"""Shared fakes: no microphone, no model, no wall clock."""
import itertools
from typing import Optional

import numpy as np
import pytest

from services.presence.contracts import (
    AudioChunk,
    DeviceUnavailable,
    SessionStateError,
    TranscriptEnded,
    TranscriptResult,
    VolumeSample,
)
from services.presence.core.affect import AffectStateMachine
from services.presence.core.cooldown import ManualScheduler
from services.presence.core.remote import LocalConversation
from services.presence.core.subscriptions import Listeners

SR = 16000
SR_MS = SR // 1000


def pcm16_value_ms(value: int, ms: int) -> bytes:
    """Repeat one int16 sample value for `ms` milliseconds."""
    return np.full(SR_MS * ms, value, dtype=np.int16).tobytes()


# ----------------- audio backend -----------------
class FakeStream:
    def __init__(self, backend: "FakeAudioInput", callback) -> None:
        self.backend = backend
        self.callback = callback
        self.started = False
        self.closed = False

    def start(self) -> None:
        if self.backend.fail_on_start:
            raise DeviceUnavailable("permission denied")
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True


class FakeAudioInput:
    """Microphone backend driven by the test via `push()`."""

    def __init__(self, *, fail_on_open: bool = False, fail_on_start: bool = False) -> None:
        self.fail_on_open = fail_on_open
        self.fail_on_start = fail_on_start
        self.streams: list[FakeStream] = []
        self.opened_with: Optional[dict] = None

    def open(self, *, sample_rate_hz, block_size, device, callback) -> FakeStream:
        if self.fail_on_open:
            raise DeviceUnavailable("no input device")
        self.opened_with = dict(sample_rate_hz=sample_rate_hz, block_size=block_size, device=device)
        stream = FakeStream(self, callback)
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeStream:
        return self.streams[-1]

    def push(self, pcm16_le: bytes, timestamp: float = 0.0) -> None:
        stream = self.current
        if stream.started and not stream.closed:
            stream.callback(pcm16_le, timestamp)


# ----------------- recognition engine -----------------
class ScriptedEngine:
    """Returns queued hypotheses in order, then repeats the last one."""

    def __init__(self, *texts: str) -> None:
        self.texts = list(texts) or [""]
        self.calls = 0

    async def transcribe(self, audio_f32: np.ndarray) -> str:
        text = self.texts[min(self.calls, len(self.texts) - 1)]
        self.calls += 1
        return text


class FailingEngine:
    async def transcribe(self, audio_f32: np.ndarray) -> str:
        raise RuntimeError("decoder crashed")


# ----------------- session doubles for the state machine -----------------
class FakeCapture:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.listeners = Listeners()
        self.session_id: Optional[int] = None
        self.starts = 0
        self.stops = 0
        self._ids = itertools.count(1)

    @property
    def is_open(self) -> bool:
        return self.session_id is not None

    def start(self) -> int:
        if self.session_id is not None:
            raise SessionStateError("capture session already open")
        if self.fail:
            raise DeviceUnavailable("no microphone")
        self.starts += 1
        self.session_id = next(self._ids)
        return self.session_id

    def stop(self) -> None:
        if self.session_id is not None:
            self.stops += 1
        self.session_id = None

    def subscribe(self, listener):
        return self.listeners.subscribe(listener)

    def volume(self, level: float, session_id: Optional[int] = None) -> None:
        sid = session_id if session_id is not None else self.session_id
        self.listeners.emit(VolumeSample(session_id=sid, level=level, timestamp=0.0))

    def chunk(self, data: bytes, session_id: Optional[int] = None) -> None:
        sid = session_id if session_id is not None else self.session_id
        self.listeners.emit(AudioChunk(session_id=sid, data=data, timestamp=0.0))


class FakeTranscription:
    def __init__(self, *, supported: bool = True) -> None:
        self.supported = supported
        self.listeners = Listeners()
        self.session_id: Optional[int] = None
        self.starts = 0
        self.fed: list[bytes] = []
        self._ids = itertools.count(100)

    @property
    def is_open(self) -> bool:
        return self.session_id is not None

    def start(self) -> Optional[int]:
        if self.session_id is not None:
            raise SessionStateError("transcription session already open")
        if not self.supported:
            return None
        self.starts += 1
        self.session_id = next(self._ids)
        return self.session_id

    def stop(self) -> None:
        self.session_id = None

    def feed_audio(self, pcm16_le: bytes) -> None:
        if self.session_id is None:
            raise SessionStateError("transcription session is not open")
        self.fed.append(pcm16_le)

    def subscribe(self, listener):
        return self.listeners.subscribe(listener)

    def result(self, text: str, session_id: Optional[int] = None, is_final: bool = False) -> None:
        sid = session_id if session_id is not None else self.session_id
        self.listeners.emit(TranscriptResult(session_id=sid, text=text, is_final=is_final))

    def end(self, reason: str = "idle") -> None:
        sid = self.session_id
        self.session_id = None
        self.listeners.emit(TranscriptEnded(session_id=sid, reason=reason))


# ----------------- fixtures -----------------
@pytest.fixture()
def clock():
    return ManualScheduler()


@pytest.fixture()
def capture():
    return FakeCapture()


@pytest.fixture()
def transcription():
    return FakeTranscription()


@pytest.fixture()
def remote():
    return LocalConversation()


@pytest.fixture()
def machine(capture, transcription, remote, clock):
    m = AffectStateMachine(
        capture, transcription, remote,
        scheduler=clock,
        listening_threshold=0.01,
        talking_threshold=0.05,
        talking_cooldown_ms=2000,
    )
    yield m
    m.close()
