"""Tests for cross-correlation alignment."""

from __future__ import annotations

import numpy as np
import pytest

from crackle import alignment
from crackle.alignment import (
    CrossCorrelationAligner,
    cross_correlate,
    find_peak_index,
    shift_by_lag,
)
from crackle.errors import (
    InsufficientCapturedLength,
    InvalidParameters,
    LagExceedsBufferLength,
    LowCorrelationConfidence,
)
from crackle.reference import generate_sine


def _noise(size: int, seed: int = 0) -> np.ndarray:
    return (np.random.default_rng(seed).standard_normal(size) * 0.2).astype(np.float32)


def _zeros(size: int) -> np.ndarray:
    return np.zeros(size, dtype=np.float32)


class TestCrossCorrelate:
    """Full linear cross-correlation."""

    def test_length_is_n_plus_m_minus_one(self) -> None:
        assert cross_correlate(_noise(50), _noise(20, seed=1)).size == 69

    def test_matches_numpy_correlate(self) -> None:
        captured, reference = _noise(40), _noise(15, seed=1)
        expected = np.correlate(
            captured.astype(np.float64), reference.astype(np.float64), mode="full"
        )
        np.testing.assert_allclose(cross_correlate(captured, reference, "direct"), expected)

    def test_fft_matches_direct(self) -> None:
        captured, reference = _noise(300), _noise(120, seed=1)
        direct = cross_correlate(captured, reference, "direct")
        fft = cross_correlate(captured, reference, "fft")
        np.testing.assert_allclose(fft, direct, rtol=1e-9, atol=1e-9)

    def test_fft_of_silence_is_zero(self) -> None:
        result = cross_correlate(_zeros(30), _noise(10), "fft")
        assert result.size == 39
        assert not result.any()

    def test_rejects_unknown_method(self) -> None:
        with pytest.raises(InvalidParameters):
            cross_correlate(_noise(10), _noise(5), "wavelet")  # type: ignore[arg-type]

    def test_rejects_empty_signal(self) -> None:
        with pytest.raises(InvalidParameters):
            cross_correlate(_zeros(0), _noise(5))


class TestFindPeakIndex:
    """Argmax and tie-breaking."""

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_fft_and_direct_agree(self, seed: int) -> None:
        reference = _noise(200, seed=seed)
        captured = np.concatenate([_zeros(37), reference, _noise(80, seed=seed + 10)])
        direct, _ = find_peak_index(captured, reference, "direct")
        fft, _ = find_peak_index(captured, reference, "fft")
        assert direct == fft == 37 + 199

    @pytest.mark.parametrize("method", ["direct", "fft"])
    def test_ties_resolve_to_lowest_index(self, method: str) -> None:
        # Correlation is [1, 2, 2, 1]
        captured = np.ones(3, dtype=np.float32)
        reference = np.ones(2, dtype=np.float32)
        index, correlation = find_peak_index(captured, reference, method)  # type: ignore[arg-type]
        np.testing.assert_allclose(correlation, [1, 2, 2, 1], atol=1e-9)
        assert index == 1


class TestShiftByLag:
    """Lag compensation."""

    def test_zero_lag_returns_input(self) -> None:
        captured = _noise(10)
        assert shift_by_lag(captured, 0) is captured

    def test_positive_lag_drops_leading_samples(self) -> None:
        captured = np.arange(10, dtype=np.float32)
        np.testing.assert_array_equal(shift_by_lag(captured, 3), np.arange(3, 10))

    def test_negative_lag_prepends_zeros(self) -> None:
        captured = np.arange(1, 4, dtype=np.float32)
        np.testing.assert_array_equal(shift_by_lag(captured, -2), [0, 0, 1, 2, 3])

    def test_lag_equal_to_length_raises(self) -> None:
        captured = _noise(10)
        with pytest.raises(LagExceedsBufferLength):
            shift_by_lag(captured, len(captured))

    def test_lag_one_short_of_length_keeps_one_sample(self) -> None:
        captured = np.arange(10, dtype=np.float32)
        np.testing.assert_array_equal(shift_by_lag(captured, 9), [9])


class TestCrossCorrelationAligner:
    """End-to-end alignment."""

    def test_identical_signals_have_zero_lag(self) -> None:
        reference = generate_sine(440.0, 8000, 0.1)
        result = CrossCorrelationAligner().align(reference.copy(), reference)
        assert result.lag == 0
        np.testing.assert_array_equal(result.aligned, reference)

    @pytest.mark.parametrize("method", ["direct", "fft", "auto"])
    def test_recovers_prepended_delay(self, method: str) -> None:
        reference = _noise(400)
        captured = np.concatenate([_zeros(25), reference, _zeros(75)])
        aligner = CrossCorrelationAligner(method)  # type: ignore[arg-type]
        result = aligner.align(captured, reference)
        assert result.lag == 25
        np.testing.assert_array_equal(result.aligned[: reference.size], reference)

    def test_recovers_early_capture_as_negative_lag(self) -> None:
        reference = _noise(400)
        captured = np.concatenate([reference[10:], _zeros(60)])
        result = CrossCorrelationAligner().align(captured, reference)
        assert result.lag == -10
        assert result.aligned.size == captured.size + 10
        np.testing.assert_array_equal(result.aligned[10 : reference.size], reference[10:])

    def test_recovers_delay_of_sine_tone(self) -> None:
        reference = generate_sine(50.0, 1000, 0.1)
        captured = np.concatenate([_zeros(7), reference, _zeros(43)])
        result = CrossCorrelationAligner().align(captured, reference)
        assert result.lag == 7
        assert result.peak_to_mean > 1.0

    def test_short_capture_fails_before_correlating(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail(*_args: object, **_kwargs: object) -> None:
            raise AssertionError("correlation should not run")

        monkeypatch.setattr(alignment, "find_peak_index", fail)
        with pytest.raises(InsufficientCapturedLength):
            CrossCorrelationAligner().align(_noise(99), _noise(100))

    def test_low_confidence_is_rejected_when_enabled(self) -> None:
        aligner = CrossCorrelationAligner(min_peak_to_mean=2.0)
        with pytest.raises(LowCorrelationConfidence):
            aligner.align(_zeros(150), _noise(100))

    def test_confidence_check_disabled_by_default(self) -> None:
        result = CrossCorrelationAligner().align(_zeros(150), _noise(100))
        assert result.peak_to_mean == 0.0

    def test_rejects_empty_reference(self) -> None:
        with pytest.raises(InvalidParameters):
            CrossCorrelationAligner().align(_noise(10), _zeros(0))

    @pytest.mark.parametrize(
        ("method", "min_peak_to_mean"), [("wavelet", 0.0), ("auto", -1.0)]
    )
    def test_rejects_invalid_settings(self, method: str, min_peak_to_mean: float) -> None:
        with pytest.raises(InvalidParameters):
            CrossCorrelationAligner(method, min_peak_to_mean)  # type: ignore[arg-type]
