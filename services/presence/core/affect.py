from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional

from services.presence.config import PresenceConfig
from services.presence.contracts import (
    AffectState,
    AudioChunk,
    CaptureEvent,
    Classifier,
    DeviceUnavailable,
    Emotion,
    ModelContent,
    OutputVolume,
    RemoteConversation,
    RemoteEvent,
    TranscriptEnded,
    TranscriptionEvent,
    TranscriptResult,
    TransportClosed,
    TurnComplete,
    VolumeLevels,
    VolumeSample,
)
from services.presence.core.capture import AudioCaptureSession
from services.presence.core.cooldown import CooldownTimer, LoopScheduler, Scheduler
from services.presence.core.remote import aggregate_text
from services.presence.core.sentiment import classify
from services.presence.core.subscriptions import Listeners
from services.presence.core.transcription import TranscriptionSession
from services.presence.core.volume_gate import check_threshold, evaluate

log = logging.getLogger("presence.affect")


class Phase(Enum):
    DISCONNECTED = "disconnected"
    ACTIVE = "active"
    MUTED = "muted"


class AffectStateMachine:
    """Fuses capture, transcription and remote events into one AffectState.

    Control signals
    ---------------
    • `connect` / `disconnect` / `mute` / `unmute` are idempotent and are
      the only things that open or close the capture and transcription
      sessions. The mute flag survives a disconnect.
    • `enter_edit` / `exit_edit` apply the edit-context policy: entering
      forces a disconnect, leaving reconnects only if `reconnect_after_edit`.

    Event handling
    --------------
    • Every handler is synchronous and runs to completion on the control
      loop, so two events never interleave inside a transition.
    • Local events tagged with a session id other than the one currently
      owned are ignored, which covers blocks queued before a `stop()`.
    • Remote events are ignored while disconnected, except transport loss.

    Ownership
    ---------
    • The state, the talking cooldown and the session lifecycles belong to
      this object only. Readers get frozen snapshots.
    """

    def __init__(
        self,
        capture: AudioCaptureSession,
        transcription: TranscriptionSession,
        remote: RemoteConversation,
        *,
        classifier: Classifier = classify,
        scheduler: Optional[Scheduler] = None,
        listening_threshold: float = 0.01,
        talking_threshold: float = 0.05,
        talking_cooldown_ms: float = 2000,
        restart_transcription: bool = True,
        reconnect_after_edit: bool = False,
    ) -> None:
        self._capture = capture
        self._transcription = transcription
        self._remote = remote
        self._classify = classifier
        self.listening_threshold = check_threshold(listening_threshold)
        self.talking_threshold = check_threshold(talking_threshold)
        self.talking_cooldown_ms = talking_cooldown_ms
        self.restart_transcription = restart_transcription
        self.reconnect_after_edit = reconnect_after_edit

        self._talking_cooldown = CooldownTimer(scheduler or LoopScheduler())
        self._state = AffectState()
        self._levels = VolumeLevels()
        self._listeners: Listeners[AffectState] = Listeners()

        self._connected = False
        self._muted = False
        self._editing = False
        self._resume_after_edit = False
        self._capture_id: Optional[int] = None
        self._transcription_id: Optional[int] = None
        self.last_error: Optional[Exception] = None
        self.ignored_events = 0

        self._subscriptions = [
            capture.subscribe(self._on_capture),
            transcription.subscribe(self._on_transcription),
            remote.subscribe(self._on_remote),
        ]

    @classmethod
    def from_config(
        cls,
        config: PresenceConfig,
        capture: AudioCaptureSession,
        transcription: TranscriptionSession,
        remote: RemoteConversation,
        **kwargs,
    ) -> "AffectStateMachine":
        return cls(
            capture,
            transcription,
            remote,
            listening_threshold=config.thresholds.listening,
            talking_threshold=config.thresholds.talking,
            talking_cooldown_ms=config.cooldown.talking_ms,
            restart_transcription=config.recognition.restart_on_end,
            reconnect_after_edit=config.policy.reconnect_after_edit,
            **kwargs,
        )

    # ----------------- readers -----------------
    @property
    def phase(self) -> Phase:
        if not self._connected:
            return Phase.DISCONNECTED
        return Phase.MUTED if self._muted else Phase.ACTIVE

    @property
    def muted(self) -> bool:
        return self._muted

    def snapshot(self) -> AffectState:
        return self._state

    def levels(self) -> VolumeLevels:
        return self._levels

    def subscribe(self, listener: Callable[[AffectState], None]):
        """Call `listener` with every changed snapshot."""
        return self._listeners.subscribe(listener)

    # ----------------- control signals ---------
    def connect(self) -> None:
        if self._connected:
            return
        if self._editing:
            log.info("event=connect_refused reason=editing")
            return
        self._connected = True
        self.last_error = None
        log.info("event=connected muted=%s", self._muted)
        if not self._muted:
            self._open_sessions()

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._close_sessions()
        self._talking_cooldown.cancel()
        self._update(agent_talking=False, user_listening=False, user_emotion=Emotion.NEUTRAL)
        log.info("event=disconnected")

    def mute(self) -> None:
        if self._muted:
            return
        self._muted = True
        if self._connected:
            self._close_sessions()
        self._update(user_listening=False, user_emotion=Emotion.NEUTRAL)
        log.info("event=muted connected=%s", self._connected)

    def unmute(self) -> None:
        if not self._muted:
            return
        self._muted = False
        log.info("event=unmuted connected=%s", self._connected)
        if self._connected:
            self._open_sessions()

    def enter_edit(self) -> None:
        if self._editing:
            return
        self._editing = True
        self._resume_after_edit = self._connected
        if self._connected:
            log.info("event=edit_disconnect")
            self.disconnect()

    def exit_edit(self) -> None:
        if not self._editing:
            return
        self._editing = False
        resume, self._resume_after_edit = self._resume_after_edit, False
        if resume and self.reconnect_after_edit:
            log.info("event=edit_reconnect")
            self.connect()

    def close(self) -> None:
        """Disconnect and detach from every session. The machine is unusable afterwards."""
        self.disconnect()
        self._talking_cooldown.cancel()
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()
        self._listeners.clear()

    def __enter__(self) -> "AffectStateMachine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ----------------- session lifecycle -------
    def _open_sessions(self) -> None:
        try:
            self._capture_id = self._capture.start()
        except DeviceUnavailable as exc:
            self.last_error = exc
            log.error("event=capture_failed error=%s", exc)
            self.disconnect()
            raise
        self._transcription_id = self._transcription.start()

    def _close_sessions(self) -> None:
        self._capture_id = None
        self._transcription_id = None
        self._levels = replace(self._levels, user=0.0)
        try:
            self._capture.stop()
        finally:
            self._transcription.stop()

    # ----------------- event handlers ----------
    def _on_capture(self, ev: CaptureEvent) -> None:
        if self._capture_id is None or ev.session_id != self._capture_id:
            self.ignored_events += 1
            return
        if isinstance(ev, AudioChunk):
            self._remote.send(ev)
            if self._transcription_id is not None:
                self._transcription.feed_audio(ev.data)
        elif isinstance(ev, VolumeSample):
            self._levels = replace(self._levels, user=ev.level)
            self._update(user_listening=evaluate(ev.level, self.listening_threshold))

    def _on_transcription(self, ev: TranscriptionEvent) -> None:
        if self._transcription_id is None or ev.session_id != self._transcription_id:
            self.ignored_events += 1
            return
        if isinstance(ev, TranscriptResult):
            self._update(user_emotion=self._classify(ev.text))
        elif isinstance(ev, TranscriptEnded):
            self._transcription_id = None
            self._update(user_emotion=Emotion.NEUTRAL)
            if self.phase is Phase.ACTIVE and self.restart_transcription:
                log.info("event=transcription_restart after=%s", ev.reason)
                self._transcription_id = self._transcription.start()

    def _on_remote(self, ev: RemoteEvent) -> None:
        if isinstance(ev, TransportClosed):
            log.warning("event=transport_lost reason=%s", ev.reason)
            self.disconnect()
            return
        if not self._connected:
            self.ignored_events += 1
            return
        if isinstance(ev, OutputVolume):
            self._levels = replace(self._levels, agent=ev.level)
            if evaluate(ev.level, self.talking_threshold):
                self._update(agent_talking=True)
                self._talking_cooldown.arm(self.talking_cooldown_ms, self._on_talking_cooldown)
        elif isinstance(ev, ModelContent):
            text = aggregate_text(ev.parts)
            if text:
                self._update(agent_emotion=self._classify(text))
        elif isinstance(ev, TurnComplete):
            self._update(agent_emotion=Emotion.NEUTRAL)

    def _on_talking_cooldown(self) -> None:
        self._update(agent_talking=False)

    def _update(self, **changes) -> None:
        state = replace(self._state, **changes)
        if state == self._state:
            return
        self._state = state
        log.debug("event=affect_changed state=%s", state)
        self._listeners.emit(state)
