"""Tests for the capture accumulator."""

from __future__ import annotations

import numpy as np

from crackle.buffer import CaptureAccumulator


def _chunk(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


class TestCaptureAccumulator:
    """Append, threshold and reset behavior."""

    def test_starts_empty(self) -> None:
        acc = CaptureAccumulator()
        assert acc.length() == 0
        assert len(acc) == 0
        assert acc.take().size == 0

    def test_appends_in_order(self) -> None:
        acc = CaptureAccumulator()
        acc.append(_chunk(1, 2))
        acc.append(_chunk(3))
        assert acc.length() == 3
        np.testing.assert_array_equal(acc.take(), _chunk(1, 2, 3))

    def test_take_returns_and_resets(self) -> None:
        acc = CaptureAccumulator()
        acc.append(_chunk(1, 2))
        acc.append(_chunk(3))
        np.testing.assert_array_equal(acc.take(), _chunk(1, 2, 3))
        assert acc.length() == 0

    def test_reset_discards_everything(self) -> None:
        acc = CaptureAccumulator()
        acc.append(_chunk(1, 2, 3))
        acc.reset()
        assert acc.length() == 0
        assert acc.take().size == 0

    def test_ready_at_required_length(self) -> None:
        acc = CaptureAccumulator()
        acc.append(_chunk(1, 2))
        assert not acc.is_ready_for_analysis(3)
        acc.append(_chunk(3))
        assert acc.is_ready_for_analysis(3)
        acc.append(_chunk(4))
        assert acc.is_ready_for_analysis(3)

    def test_copies_appended_chunks(self) -> None:
        acc = CaptureAccumulator()
        source = _chunk(1, 2, 3)
        acc.append(source)
        source[:] = 0
        np.testing.assert_array_equal(acc.take(), _chunk(1, 2, 3))

    def test_keeps_first_channel_of_frames(self) -> None:
        acc = CaptureAccumulator()
        frames = np.array([[1, 10], [2, 20]], dtype=np.float32)
        acc.append(frames)
        np.testing.assert_array_equal(acc.take(), _chunk(1, 2))

    def test_ignores_empty_chunks(self) -> None:
        acc = CaptureAccumulator()
        acc.append(np.zeros(0, dtype=np.float32))
        assert acc.length() == 0

    def test_converts_to_float32(self) -> None:
        acc = CaptureAccumulator()
        acc.append(np.array([0.5, -0.5], dtype=np.float64))
        assert acc.take().dtype == np.float32
