"""Adapter side of the remote conversation boundary.

The transport itself (handshake, auth, wire codec) lives outside this package;
the engine only needs `send()` and the event subscription of
`services.presence.contracts.RemoteConversation`.
"""
from __future__ import annotations

import base64
import logging
from typing import Callable, Iterable

from services.presence.contracts import (
    AudioChunk,
    ContentPart,
    ModelContent,
    OutputVolume,
    RemoteEvent,
    TransportClosed,
    TransportError,
    TurnComplete,
)
from services.presence.core.subscriptions import Listeners

log = logging.getLogger("presence.remote")


def aggregate_text(parts: Iterable[ContentPart]) -> str:
    """Join the text fragments of a partial model turn (empty if none)."""
    return " ".join(p["text"] for p in parts if p.get("text")).strip()


def realtime_input(chunk: AudioChunk) -> dict:
    """Render a chunk the way a realtime-input message carries it."""
    return {
        "mimeType": chunk.mime_type,
        "data": base64.b64encode(chunk.data).decode("ascii"),
    }


class LocalConversation:
    """In-process RemoteConversation.

    Records every outbound chunk, both as sent and rendered as a
    realtime-input message, and lets the caller play the model side
    (content, turn completion, output volume, transport loss). Used by the
    CLI monitor and by tests.
    """

    def __init__(self) -> None:
        self._listeners: Listeners[RemoteEvent] = Listeners()
        self.sent: list[AudioChunk] = []
        self.messages: list[dict] = []
        self.closed = False

    # RemoteConversation
    def send(self, chunk: AudioChunk) -> None:
        if self.closed:
            raise TransportError("conversation transport is closed")
        self.sent.append(chunk)
        self.messages.append(realtime_input(chunk))

    def subscribe(self, listener: Callable[[RemoteEvent], None]):
        return self._listeners.subscribe(listener)

    # model side
    def emit_content(self, *texts: str) -> None:
        self._listeners.emit(ModelContent(parts=[ContentPart(text=t) for t in texts]))

    def emit_turn_complete(self) -> None:
        self._listeners.emit(TurnComplete())

    def emit_output_volume(self, level: float) -> None:
        self._listeners.emit(OutputVolume(level=level))

    def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        log.info("event=transport_closed reason=%s", reason)
        self._listeners.emit(TransportClosed(reason=reason))
