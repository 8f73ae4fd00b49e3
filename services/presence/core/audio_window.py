"""Rolling window over PCM16 mono audio."""
from typing import Optional

import numpy as np

PCM16_FULL_SCALE = 32768.0


class AudioWindow:
    """
    Bounded rolling window for **PCM16 little-endian mono** audio.

    Two consumers share it
    ----------------------
    - The capture session keeps a short window (~100 ms) and asks for its
      `rms()` after every block to publish a normalized volume sample.
    - The transcriber keeps a few seconds and hands `tail_ms()` / `full()`
      to the recognition engine as float32 in [-1, 1].

    Storage
    -------
    - Fixed-size NumPy int16 ring buffer, so appends never allocate beyond
      the incoming block and memory is bounded by `window_size_ms`.
    - Reads return copies in chronological order.

    >>> win = AudioWindow(window_size_ms=3000, sample_rate_hz=16000)
    >>> n = win.append(pcm16_frame_bytes)   # samples appended
    >>> level = win.rms(100)                # 0..1 over the last 100 ms
    """

    def __init__(
        self,
        window_size_ms: int,
        sample_rate_hz: int = 16000,
        channels: int = 1,
        default_tail_ms: int = 2000,
    ) -> None:
        assert window_size_ms > 0, "window_size_ms must be > 0"
        assert sample_rate_hz > 0, "sample_rate_hz must be > 0"
        assert channels == 1, "Only mono is supported (channels=1)"

        self.window_size_ms = int(window_size_ms)
        self.sample_rate_hz = int(sample_rate_hz)
        # a tail longer than the window is just the window
        self.default_tail_ms = min(int(default_tail_ms), self.window_size_ms)
        self.max_samples = max(1, (self.sample_rate_hz * self.window_size_ms) // 1000)

        self._buf = np.zeros(self.max_samples, dtype=np.int16)
        self._write = 0
        self._size = 0
        self._total_samples = 0

    # ---------------------------------------------------------------------
    # Append & Read APIs
    # ---------------------------------------------------------------------
    def append(self, pcm16_le: bytes) -> int:
        """Append a PCM16 little-endian mono frame; return samples appended."""
        arr = np.frombuffer(pcm16_le, dtype="<i2")
        n = int(arr.size)
        self._total_samples += n
        if n == 0:
            return 0

        cap = self.max_samples
        if n >= cap:
            self._buf[:] = arr[-cap:]
            self._write = 0
            self._size = cap
            return n

        first = min(n, cap - self._write)
        self._buf[self._write:self._write + first] = arr[:first]
        rest = n - first
        if rest:
            self._buf[:rest] = arr[first:]
        self._write = (self._write + n) % cap
        self._size = min(cap, self._size + n)
        return n

    def full(self, *, as_float: bool = False) -> np.ndarray:
        """All samples currently held, oldest first."""
        if self._size < self.max_samples:
            data = self._buf[:self._size].copy()
        else:
            data = np.concatenate((self._buf[self._write:], self._buf[:self._write]))
        return _as_float(data) if as_float else data

    def tail_ms(self, ms: Optional[int] = None, *, as_float: bool = False) -> np.ndarray:
        """The most recent `ms` of audio (everything if fewer are held)."""
        if ms is None:
            ms = self.default_tail_ms
        n_samples = max(0, (self.sample_rate_hz * int(ms)) // 1000)
        data = self.full()
        if 0 < n_samples < data.size:
            data = data[-n_samples:]
        return _as_float(data) if as_float else data

    def rms(self, ms: Optional[int] = None) -> float:
        """Root-mean-square level of the tail, normalized to 0..1."""
        tail = self.tail_ms(ms if ms is not None else self.window_size_ms, as_float=True)
        if tail.size == 0:
            return 0.0
        level = float(np.sqrt(np.mean(np.square(tail, dtype=np.float64))))
        return min(1.0, level)

    def clear(self) -> None:
        """Drop the held audio. `total_samples` keeps counting."""
        self._write = 0
        self._size = 0

    # ---------------------------------------------------------------------
    # Metrics
    # ---------------------------------------------------------------------
    @property
    def total_samples(self) -> int:
        """Samples ever appended (monotonic)."""
        return self._total_samples

    @property
    def current_samples(self) -> int:
        return self._size

    @property
    def current_duration_ms(self) -> int:
        return (1000 * self._size) // self.sample_rate_hz


def _as_float(x: np.ndarray) -> np.ndarray:
    # int16 full scale -> float32 in [-1, 1]
    return x.astype(np.float32) / PCM16_FULL_SCALE


def pcm16_rms(pcm16_le: bytes) -> float:
    """Normalized RMS of a single PCM16 LE block (0 for an empty block)."""
    arr = np.frombuffer(pcm16_le, dtype="<i2")
    if arr.size == 0:
        return 0.0
    level = float(np.sqrt(np.mean(np.square(arr, dtype=np.float64)))) / PCM16_FULL_SCALE
    return min(1.0, level)
