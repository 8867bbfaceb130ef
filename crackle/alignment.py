"""Cross-correlation lag estimation between captured and reference audio.

The captured signal trails the reference by an unknown acoustic and device
delay. The lag is the argmax of the full linear cross-correlation::

    c[k] = sum_i captured[i] * reference[i - (k - (m - 1))]

for ``k`` in ``[0, n + m - 1)``, and ``lag = k - (m - 1)``. A positive lag
means the captured audio is late.

Two evaluation strategies are available. ``direct`` is ``numpy.correlate``
(O(n·m)). ``fft`` zero-pads both signals to a power of two and multiplies
their real spectra (O((n+m) log(n+m))). FFT rounding can reorder
near-identical coefficients, so the FFT path re-scores every coefficient
within a small tolerance of the maximum with an exact dot product and keeps
the lowest index among the exact maxima, which is the direct method's
tie-break.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final, Literal

import numpy as np

from crackle.errors import (
    InsufficientCapturedLength,
    InvalidParameters,
    LagExceedsBufferLength,
    LowCorrelationConfidence,
)

logger = logging.getLogger(__name__)

CorrelationMethod = Literal["auto", "direct", "fft"]

CORRELATION_METHODS: Final[tuple[str, ...]] = ("auto", "direct", "fft")

_DIRECT_MAX_OPS: Final[int] = 1 << 22
"""Above this many multiply-adds ``auto`` switches to the FFT path."""
_FFT_TIE_TOLERANCE: Final[float] = 1e-9
"""Relative band below the FFT maximum that is re-scored exactly."""


@dataclass(frozen=True, slots=True)
class AlignmentResult:
    """Outcome of aligning a captured signal to the reference."""

    lag: int
    """Samples by which the captured signal trails (positive) the reference."""
    aligned: np.ndarray
    """Captured signal shifted so index 0 lines up with the reference."""
    peak_to_mean: float
    """|correlation| at the peak divided by the mean |correlation|."""


def _as_float64(samples: np.ndarray) -> np.ndarray:
    return np.asarray(samples, dtype=np.float64).reshape(-1)


def _direct_correlate(captured: np.ndarray, reference: np.ndarray) -> np.ndarray:
    return np.correlate(captured, reference, mode="full")


def _fft_correlate(captured: np.ndarray, reference: np.ndarray) -> np.ndarray:
    n, m = captured.size, reference.size
    fft_size = 1 << (n + m - 2).bit_length()
    spectrum = np.fft.rfft(captured, n=fft_size) * np.conj(np.fft.rfft(reference, n=fft_size))
    circular = np.fft.irfft(spectrum, n=fft_size)
    # Negative lags wrap to the end of the circular result
    return np.concatenate([circular[fft_size - (m - 1) :], circular[:n]])


def _exact_coefficient(captured: np.ndarray, reference: np.ndarray, index: int) -> float:
    """Evaluate one correlation coefficient directly."""
    lag = index - (reference.size - 1)
    start = max(0, -lag)
    stop = min(reference.size, captured.size - lag)
    if stop <= start:
        return 0.0
    return float(np.dot(captured[start + lag : stop + lag], reference[start:stop]))


def _resolve_method(n: int, m: int, method: CorrelationMethod) -> str:
    if n == 0 or m == 0:
        raise InvalidParameters("cannot correlate an empty signal")
    if method not in CORRELATION_METHODS:
        raise InvalidParameters(f"unknown correlation method {method!r}")
    if method == "auto":
        return "direct" if n * m <= _DIRECT_MAX_OPS else "fft"
    return method


def cross_correlate(
    captured: np.ndarray,
    reference: np.ndarray,
    method: CorrelationMethod = "auto",
) -> np.ndarray:
    """Return the ``n + m - 1`` full cross-correlation coefficients in float64.

    Args:
        captured: Captured signal (length n).
        reference: Reference signal (length m).
        method: ``"direct"``, ``"fft"`` or ``"auto"``.

    Returns:
        Correlation array; index ``k`` corresponds to lag ``k - (m - 1)``.
    """
    cap = _as_float64(captured)
    ref = _as_float64(reference)
    if _resolve_method(cap.size, ref.size, method) == "direct":
        return _direct_correlate(cap, ref)
    if not cap.any() or not ref.any():
        return np.zeros(cap.size + ref.size - 1, dtype=np.float64)
    return _fft_correlate(cap, ref)


def find_peak_index(
    captured: np.ndarray,
    reference: np.ndarray,
    method: CorrelationMethod = "auto",
) -> tuple[int, np.ndarray]:
    """Locate the correlation maximum, lowest index winning ties.

    Returns:
        Tuple of (peak index, correlation array).
    """
    cap = _as_float64(captured)
    ref = _as_float64(reference)
    correlation = cross_correlate(cap, ref, method)
    index = int(np.argmax(correlation))
    if _resolve_method(cap.size, ref.size, method) == "direct":
        return index, correlation

    scale = float(np.sqrt(np.dot(cap, cap) * np.dot(ref, ref)))
    if scale == 0.0:
        return 0, correlation
    band = correlation[index] - _FFT_TIE_TOLERANCE * scale
    candidates = np.flatnonzero(correlation >= band)
    if candidates.size > 1:
        exact = [_exact_coefficient(cap, ref, int(k)) for k in candidates]
        index = int(candidates[int(np.argmax(exact))])
    return index, correlation


def shift_by_lag(captured: np.ndarray, lag: int) -> np.ndarray:
    """Shift *captured* so it lines up with the reference.

    Args:
        captured: Captured signal.
        lag: Positive drops the first *lag* samples, negative prepends zeros.

    Returns:
        The aligned signal. ``lag == 0`` returns *captured* itself.

    Raises:
        LagExceedsBufferLength: If ``lag >= len(captured)``.
    """
    if lag > 0:
        if lag >= captured.size:
            raise LagExceedsBufferLength(
                f"lag of {lag} samples leaves nothing of a {captured.size}-sample capture"
            )
        return captured[lag:].copy()
    if lag < 0:
        padding = np.zeros(-lag, dtype=captured.dtype)
        return np.concatenate([padding, captured])
    return captured


class CrossCorrelationAligner:
    """Estimates the capture delay and compensates for it.

    Stateless apart from its settings; safe to share between threads.
    """

    def __init__(
        self,
        method: CorrelationMethod = "auto",
        min_peak_to_mean: float = 0.0,
    ) -> None:
        """Initialize the aligner.

        Args:
            method: Correlation strategy, see :func:`cross_correlate`.
            min_peak_to_mean: Reject lags whose correlation peak is less than
                this multiple of the mean |correlation|. 0 disables the check.
        """
        if method not in CORRELATION_METHODS:
            raise InvalidParameters(f"unknown correlation method {method!r}")
        if min_peak_to_mean < 0:
            raise InvalidParameters(
                f"min_peak_to_mean must be non-negative, got {min_peak_to_mean!r}"
            )
        self._method: CorrelationMethod = method
        self._min_peak_to_mean = min_peak_to_mean

    def align(self, captured: np.ndarray, reference: np.ndarray) -> AlignmentResult:
        """Align *captured* to *reference*.

        Raises:
            InsufficientCapturedLength: Captured is shorter than the reference.
            LowCorrelationConfidence: Peak-to-mean ratio below the minimum.
            LagExceedsBufferLength: The lag consumes the whole capture.
        """
        captured = np.asarray(captured).reshape(-1)
        reference = np.asarray(reference).reshape(-1)
        if reference.size == 0:
            raise InvalidParameters("reference signal is empty")
        if captured.size < reference.size:
            raise InsufficientCapturedLength(
                f"captured {captured.size} samples, reference needs {reference.size}"
            )

        index, correlation = find_peak_index(captured, reference, self._method)
        lag = index - (reference.size - 1)

        magnitude = np.abs(correlation)
        mean_magnitude = float(magnitude.mean())
        peak_to_mean = float(magnitude[index]) / mean_magnitude if mean_magnitude > 0 else 0.0

        logger.debug(
            "Cross-correlation: lag=%d samples, peak=%.4g, peak/mean=%.2f",
            lag,
            correlation[index],
            peak_to_mean,
        )

        if self._min_peak_to_mean > 0 and peak_to_mean < self._min_peak_to_mean:
            raise LowCorrelationConfidence(
                f"peak/mean {peak_to_mean:.2f} below {self._min_peak_to_mean:.2f}"
            )

        return AlignmentResult(
            lag=lag,
            aligned=shift_by_lag(captured, lag),
            peak_to_mean=peak_to_mean,
        )
