import logging
import time
from typing import Callable, Optional, Union

from services.presence.contracts import DeviceUnavailable

log = logging.getLogger("presence.engines.sounddevice")

CHANNELS = 1
DTYPE = "int16"


class _Stream:
    def __init__(self, stream, sd) -> None:
        self._stream = stream
        self._sd = sd

    def start(self) -> None:
        try:
            self._stream.start()
        except self._sd.PortAudioError as exc:
            raise DeviceUnavailable(f"cannot start microphone: {exc}") from exc

    def stop(self) -> None:
        # blocks until the audio thread has left the callback
        self._stream.stop()

    def close(self) -> None:
        self._stream.close()


class SoundDeviceInput:
    """Microphone backend on top of sounddevice (PortAudio), PCM16 mono."""

    def open(
        self,
        *,
        sample_rate_hz: int,
        block_size: int,
        device: Optional[Union[int, str]],
        callback: Callable[[bytes, float], None],
    ) -> _Stream:
        try:
            import sounddevice as sd
        except OSError as exc:  # PortAudio shared library missing
            raise DeviceUnavailable(f"audio backend unavailable: {exc}") from exc

        def _on_audio(indata, frames, time_info, status) -> None:
            if status:
                log.debug("event=capture_status status=%s", status)
            callback(bytes(indata), time.monotonic())

        try:
            sd.check_input_settings(device=device, channels=CHANNELS, dtype=DTYPE, samplerate=sample_rate_hz)
            stream = sd.RawInputStream(
                samplerate=sample_rate_hz,
                blocksize=block_size,
                device=device,
                channels=CHANNELS,
                dtype=DTYPE,
                callback=_on_audio,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailable(f"no usable input device: {exc}") from exc
        return _Stream(stream, sd)
