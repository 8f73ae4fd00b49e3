import argparse
import asyncio
import logging
import sys
from typing import Optional

from services.presence.config import PresenceConfig
from services.presence.contracts import AffectState, DeviceUnavailable
from services.presence.core.affect import AffectStateMachine
from services.presence.core.capture import AudioCaptureSession
from services.presence.core.remote import LocalConversation
from services.presence.core.transcription import TranscriptionSession
from services.presence.engines.sounddevice_input import SoundDeviceInput
from services.presence.engines.whisper_engine import WhisperEngine, whisper_language


def build_transcription(config: PresenceConfig) -> TranscriptionSession:
    cap = config.capture
    rec = config.recognition
    return TranscriptionSession(
        lambda: WhisperEngine(rec.model, language=whisper_language(rec.language),
                              device=rec.device, compute_type=rec.compute_type),
        language=rec.language,
        sample_rate_hz=cap.sample_rate_hz,
        window_ms=rec.window_ms,
        tail_ms=rec.tail_ms,
        stride_ms=rec.stride_ms,
        endpoint_ms=rec.endpoint_ms,
        voice_threshold=config.thresholds.listening,
        idle_timeout_s=rec.idle_timeout_s,
    )


def build_machine(config: PresenceConfig, remote, transcription: Optional[TranscriptionSession] = None) -> AffectStateMachine:
    cap = config.capture
    capture = AudioCaptureSession(
        SoundDeviceInput(),
        sample_rate_hz=cap.sample_rate_hz,
        block_ms=cap.block_ms,
        volume_window_ms=cap.volume_window_ms,
        device=cap.device,
    )
    if transcription is None:
        transcription = build_transcription(config)
    return AffectStateMachine.from_config(config, capture, transcription, remote)


def format_state(s: AffectState) -> str:
    return (f"talking={s.agent_talking!s:<5} agent={s.agent_emotion.value:<7} "
            f"listening={s.user_listening!s:<5} user={s.user_emotion.value:<7} "
            f"display={s.display_emotion.value}")


async def monitor(config: PresenceConfig, duration_s: Optional[float]) -> int:
    """Run the live microphone against an in-process conversation and print
    every affect change."""
    remote = LocalConversation()
    transcription = build_transcription(config)
    # model download/load happens here, before the microphone opens
    if not await transcription.prepare():
        print("speech recognition unavailable; user emotion stays neutral", file=sys.stderr)
    with build_machine(config, remote, transcription) as machine:
        machine.subscribe(lambda s: print(format_state(s), flush=True))
        try:
            machine.connect()
        except DeviceUnavailable as exc:
            print(f"capture error: {exc}", file=sys.stderr)
            return 1
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)
    sent_bytes = sum(len(m["data"]) for m in remote.messages)
    print(f"sent {len(remote.messages)} realtime-input messages ({sent_bytes} base64 bytes)", file=sys.stderr)
    return 0


def main() -> int:
    p = argparse.ArgumentParser(description="Live affect monitor for the presence engine")
    p.add_argument("--config", default="configs/dev.yaml")
    p.add_argument("--model", default=None, help="override recognition.model")
    p.add_argument("--duration", type=float, default=None, help="stop after N seconds")
    p.add_argument("--debug", action="store_true")
    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    config = PresenceConfig.load(args.config)
    if args.model:
        config = config.merge_patch({"recognition": {"model": args.model}})

    try:
        return asyncio.run(monitor(config, args.duration))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
