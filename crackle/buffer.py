"""Capture accumulator for streamed microphone audio."""

from __future__ import annotations

import numpy as np

from crackle.utils import as_mono_float32


class CaptureAccumulator:
    """Append-only store of captured samples since the last reset.

    Chunks are kept as a list and joined only when the accumulated signal is
    read, so :meth:`append` stays O(1) on the audio callback path. Growth is
    unbounded; the owner resets after every analysis cycle.

    Not thread-safe on its own. The pipeline serializes access.
    """

    __slots__ = ("_chunks", "_length")

    def __init__(self) -> None:
        """Initialize an empty accumulator."""
        self._chunks: list[np.ndarray] = []
        self._length = 0

    def append(self, chunk: np.ndarray) -> None:
        """Append *chunk* after everything received so far."""
        # Copy: device callbacks reuse their input buffers
        samples = as_mono_float32(chunk).copy()
        if samples.size == 0:
            return
        self._chunks.append(samples)
        self._length += samples.size

    def length(self) -> int:
        """Number of samples accumulated since the last reset."""
        return self._length

    def __len__(self) -> int:
        return self._length

    def is_ready_for_analysis(self, required_length: int) -> bool:
        """Whether at least *required_length* samples have been accumulated."""
        return self._length >= required_length

    def take(self) -> np.ndarray:
        """Return the accumulated signal and reset."""
        if not self._chunks:
            captured = np.zeros(0, dtype=np.float32)
        elif len(self._chunks) == 1:
            captured = self._chunks[0]
        else:
            captured = np.concatenate(self._chunks)
        self.reset()
        return captured

    def reset(self) -> None:
        """Discard all accumulated samples."""
        self._chunks = []
        self._length = 0
