import asyncio
import logging

import numpy as np
from faster_whisper import WhisperModel

from services.presence.contracts import RecognitionUnsupported

DEFAULT_MODEL = "tiny.en"
DEVICE = "cpu"
COMPUTE_TYPE = "int8"

log = logging.getLogger("presence.engines.whisper")


class WhisperEngine:
    """faster-whisper recognition engine for the streaming Transcriber.

    Decoding is blocking, so it runs in a worker thread and the control loop
    never stalls on it.
    """

    def __init__(self,
                 model: str = DEFAULT_MODEL,
                 language: str = "en",
                 device: str = DEVICE,
                 compute_type: str = COMPUTE_TYPE):
        try:
            self._model = WhisperModel(model, device=device, compute_type=compute_type)
        except (OSError, RuntimeError, ValueError) as exc:
            raise RecognitionUnsupported(f"cannot load whisper model {model!r}: {exc}") from exc
        self.language = language
        log.info("event=whisper_loaded model=%s device=%s compute=%s", model, device, compute_type)

    async def transcribe(self, audio_f32: np.ndarray) -> str:
        return await asyncio.to_thread(self._decode, audio_f32)

    def _decode(self, audio_f32: np.ndarray) -> str:
        segments, _ = self._model.transcribe(
            audio_f32, language=self.language, beam_size=1, vad_filter=False, word_timestamps=False)
        return " ".join(seg.text.strip() for seg in segments).strip()


def whisper_language(tag: str) -> str:
    """Map a BCP-47 tag such as "en-US" to the whisper code "en"."""
    return tag.split("-", 1)[0].lower()
