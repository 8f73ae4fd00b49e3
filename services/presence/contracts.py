from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, TypedDict, Union

PCM_MIME_TYPE = "audio/pcm;rate=16000"


# --------- Errors ---------
class PresenceError(Exception):
    """Base class for every error raised by the presence engine."""


class DeviceUnavailable(PresenceError):
    """
    No microphone, or permission to use it was denied. Fatal to the connection.
    """


class RecognitionUnsupported(PresenceError):
    """
    Speech recognition is not available on this platform. Never fatal.
    """


class TransportError(PresenceError):
    """
    The remote conversation transport failed. Owned by the connection layer.
    """


class SessionStateError(PresenceError, RuntimeError):
    """
    A session was driven out of order (double start, feed while closed, ...).
    """


# --------- Types ---------
class Emotion(str, Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    SAD = "sad"


@dataclass(frozen=True)
class AffectState:
    """Read-only affect snapshot consumed by the presentation layer."""
    agent_talking: bool = False
    agent_emotion: Emotion = Emotion.NEUTRAL
    user_listening: bool = False
    user_emotion: Emotion = Emotion.NEUTRAL

    @property
    def display_emotion(self) -> Emotion:
        """The agent's own emotion wins while it is talking."""
        return self.agent_emotion if self.agent_talking else self.user_emotion


@dataclass(frozen=True)
class VolumeLevels:
    user: float = 0.0
    """
    Latest normalized microphone volume (0 while capture is closed).
    """
    agent: float = 0.0
    """
    Latest normalized model output volume.
    """


# --------- Local session events ---------
@dataclass(frozen=True)
class AudioChunk:
    session_id: int
    data: bytes  # PCM16 LE mono
    timestamp: float
    mime_type: str = PCM_MIME_TYPE


@dataclass(frozen=True)
class VolumeSample:
    session_id: int
    level: float  # 0..1
    timestamp: float


@dataclass(frozen=True)
class TranscriptResult:
    session_id: int
    text: str
    """
    Best-guess text of the most recent utterance (full replace).
    """
    is_final: bool = False
    rev: int = 0
    """
    Revision number of the hypothesis within the session.
    """


@dataclass(frozen=True)
class TranscriptEnded:
    session_id: int
    reason: str = "idle"


CaptureEvent = Union[AudioChunk, VolumeSample]
TranscriptionEvent = Union[TranscriptResult, TranscriptEnded]


# --------- Remote conversation events ---------
class ContentPart(TypedDict, total=False):
    text: str
    """
    Response text fragment, if the part carries any.
    """
    inline_audio: bytes
    """
    Optional inline audio payload of the part.
    """


@dataclass(frozen=True)
class ModelContent:
    parts: list[ContentPart] = field(default_factory=list)


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class OutputVolume:
    level: float


@dataclass(frozen=True)
class TransportClosed:
    reason: str = ""


RemoteEvent = Union[ModelContent, TurnComplete, OutputVolume, TransportClosed]


# --------- Protocols ---------
class Subscription(Protocol):
    def unsubscribe(self) -> None: ...
    """
    Remove the listener. Safe to call more than once.
    """


Classifier = Callable[[str], Emotion]


class RemoteConversation(Protocol):
    """
    Opaque bidirectional stream to the conversational model.
    """
    def send(self, chunk: AudioChunk) -> None: ...
    """
    Forward one outbound audio chunk. Must not block.
    """
    def subscribe(self, listener: Callable[[RemoteEvent], None]) -> Subscription: ...
    """
    Receive content, turn-complete, output-volume and transport-closed events.
    """


class AudioStream(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def close(self) -> None: ...


class AudioInput(Protocol):
    """
    Microphone backend. `open` must raise if no input device can be used.
    """
    def open(
        self,
        *,
        sample_rate_hz: int,
        block_size: int,
        device: Optional[Union[int, str]],
        callback: Callable[[bytes, float], None],
    ) -> AudioStream: ...
    """
    Open a mono PCM16 input stream. `callback(pcm16_le, timestamp)` may be
    called from a foreign thread once the stream is started.
    """
