"""Analysis configuration."""

from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass

from crackle.alignment import CORRELATION_METHODS, CorrelationMethod
from crackle.classifier import DEFAULT_CLIPPING_THRESHOLD, DEFAULT_MIN_FLAGGED_FRACTION
from crackle.errors import InvalidParameters
from crackle.reference import DEFAULT_AMPLITUDE

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS: tuple[tuple[str, type], ...] = (
    ("sample_rate", numbers.Integral),
    ("tone_frequency", numbers.Real),
    ("tone_duration", numbers.Real),
    ("tone_amplitude", numbers.Real),
    ("capture_margin", numbers.Real),
    ("clipping_threshold", numbers.Real),
    ("min_flagged_fraction", numbers.Real),
    ("min_peak_to_mean", numbers.Real),
)


@dataclass(frozen=True)
class AnalysisConfig:
    """Parameters for one analysis session.

    Attributes:
        sample_rate: Capture and playback sample rate in Hz.
        tone_frequency: Reference tone frequency in Hz.
        tone_duration: Reference tone length in seconds.
        tone_amplitude: Reference tone peak level in (0, 1].
        capture_margin: Extra capture in seconds beyond the reference length,
            covering the worst expected acoustic and device delay.
        clipping_threshold: Absolute level counted as clipped.
        min_flagged_fraction: Flagged share that must be exceeded to report
            clipping.
        single_shot: Stop after the first verdict instead of re-analyzing.
        correlation_method: ``"auto"``, ``"direct"`` or ``"fft"``.
        min_peak_to_mean: Minimum correlation peak-to-mean ratio to accept a
            lag; 0 accepts any lag.
    """

    sample_rate: int = 44_100
    tone_frequency: float = 440.0
    tone_duration: float = 5.0
    tone_amplitude: float = DEFAULT_AMPLITUDE
    capture_margin: float = 1.0
    clipping_threshold: float = DEFAULT_CLIPPING_THRESHOLD
    min_flagged_fraction: float = DEFAULT_MIN_FLAGGED_FRACTION
    single_shot: bool = False
    correlation_method: CorrelationMethod = "auto"
    min_peak_to_mean: float = 0.0

    @property
    def reference_length(self) -> int:
        """Number of samples in the reference tone."""
        return round(self.tone_duration * self.sample_rate)

    @property
    def margin_length(self) -> int:
        """Number of samples of delay headroom."""
        return round(self.capture_margin * self.sample_rate)

    @property
    def required_capture_length(self) -> int:
        """Captured samples needed before a cycle is analyzed."""
        return self.reference_length + self.margin_length

    def validate(self) -> AnalysisConfig:
        """Check every parameter, returning self for chaining.

        Raises:
            InvalidParameters: If any parameter has the wrong type or is out of range.
        """
        for name, kind in _NUMERIC_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, kind):
                raise InvalidParameters(f"{name} must be a number, got {value!r}")
        if not self.sample_rate > 0:
            raise InvalidParameters(f"sample_rate must be positive, got {self.sample_rate!r}")
        if not self.tone_frequency > 0:
            raise InvalidParameters(
                f"tone_frequency must be positive, got {self.tone_frequency!r}"
            )
        if not self.tone_duration > 0:
            raise InvalidParameters(f"tone_duration must be positive, got {self.tone_duration!r}")
        if self.reference_length <= 0:
            raise InvalidParameters(
                f"tone_duration {self.tone_duration}s at {self.sample_rate} Hz produces no samples"
            )
        if not 0 < self.tone_amplitude <= 1:
            raise InvalidParameters(
                f"tone_amplitude must be in (0, 1], got {self.tone_amplitude!r}"
            )
        if not self.capture_margin >= 0:
            raise InvalidParameters(
                f"capture_margin must be non-negative, got {self.capture_margin!r}"
            )
        if not 0 < self.clipping_threshold <= 1:
            raise InvalidParameters(
                f"clipping_threshold must be in (0, 1], got {self.clipping_threshold!r}"
            )
        if not 0 <= self.min_flagged_fraction <= 1:
            raise InvalidParameters(
                f"min_flagged_fraction must be in [0, 1], got {self.min_flagged_fraction!r}"
            )
        if self.correlation_method not in CORRELATION_METHODS:
            raise InvalidParameters(
                f"correlation_method must be one of {CORRELATION_METHODS}, "
                f"got {self.correlation_method!r}"
            )
        if not self.min_peak_to_mean >= 0:
            raise InvalidParameters(
                f"min_peak_to_mean must be non-negative, got {self.min_peak_to_mean!r}"
            )

        if self.tone_frequency >= self.sample_rate / 2:
            logger.warning(
                "tone_frequency=%.1f Hz is at or above Nyquist for %d Hz; the tone will alias",
                self.tone_frequency,
                self.sample_rate,
            )
        if self.tone_amplitude >= self.clipping_threshold:
            logger.warning(
                "tone_amplitude=%.2f reaches clipping_threshold=%.2f; "
                "tone peaks are excluded from clipping detection",
                self.tone_amplitude,
                self.clipping_threshold,
            )
        if self.margin_length == 0:
            logger.warning(
                "capture_margin is 0; any playback delay will shorten the compared window"
            )
        return self
