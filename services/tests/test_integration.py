"""Real capture + transcription sessions wired through the state machine."""
import asyncio

import pytest

from conftest import FakeAudioInput, ScriptedEngine, pcm16_value_ms
from services.presence.contracts import DeviceUnavailable, Emotion, RecognitionUnsupported
from services.presence.core.affect import AffectStateMachine, Phase
from services.presence.core.capture import AudioCaptureSession
from services.presence.core.cooldown import ManualScheduler
from services.presence.core.remote import LocalConversation
from services.presence.core.transcription import TranscriptionSession

VOICED = pcm16_value_ms(3277, 40)
SILENT = pcm16_value_ms(0, 40)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


def build(backend, engine):
    return build_with_factory(backend, lambda: engine)


def build_with_factory(backend, factory):
    capture = AudioCaptureSession(backend, block_ms=40, volume_window_ms=40)
    transcription = TranscriptionSession(factory, stride_ms=400, idle_timeout_s=None)
    remote = LocalConversation()
    machine = AffectStateMachine(capture, transcription, remote, scheduler=ManualScheduler())
    return machine, capture, transcription, remote


@pytest.mark.asyncio
async def test_microphone_to_affect():
    backend = FakeAudioInput()
    machine, capture, transcription, remote = build(backend, ScriptedEngine("I am so happy today"))
    with machine:
        machine.connect()
        assert capture.is_open and transcription.is_open

        for _ in range(10):
            backend.push(VOICED)
        await wait_until(lambda: machine.snapshot().user_emotion is Emotion.HAPPY)

        s = machine.snapshot()
        assert s.user_listening is True
        assert len(remote.sent) == 10
        assert remote.sent[0].data == VOICED

        backend.push(SILENT)
        await wait_until(lambda: machine.snapshot().user_listening is False)

        machine.disconnect()
        assert not capture.is_open
        assert not transcription.is_open
        assert machine.snapshot().user_emotion is Emotion.NEUTRAL


@pytest.mark.asyncio
async def test_block_in_flight_at_disconnect_never_lands():
    backend = FakeAudioInput()
    machine, capture, transcription, remote = build(backend, ScriptedEngine("hi"))
    with machine:
        machine.connect()
        backend.push(VOICED)  # queued on the loop
        machine.disconnect()
        await asyncio.sleep(0.01)
        assert remote.sent == []
        assert machine.snapshot().user_listening is False


@pytest.mark.asyncio
async def test_missing_microphone_forces_disconnect():
    machine, capture, transcription, remote = build(FakeAudioInput(fail_on_open=True), ScriptedEngine("hi"))
    with machine:
        with pytest.raises(DeviceUnavailable):
            machine.connect()
        assert machine.phase is Phase.DISCONNECTED
        assert not transcription.is_open


@pytest.mark.asyncio
async def test_unsupported_recognition_keeps_presence_running():
    def factory():
        raise RecognitionUnsupported("no recognizer on this platform")

    backend = FakeAudioInput()
    machine, capture, transcription, remote = build_with_factory(backend, factory)
    with machine:
        machine.connect()
        await wait_until(lambda: transcription.supported is False)
        await asyncio.sleep(0.01)
        assert machine.phase is Phase.ACTIVE
        assert capture.is_open
        assert not transcription.is_open

        backend.push(VOICED)
        await wait_until(lambda: machine.snapshot().user_listening)
        assert len(remote.sent) == 1
        assert machine.snapshot().user_emotion is Emotion.NEUTRAL
