"""Clipping classification of aligned captured audio."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Final

import numpy as np

from crackle.errors import AlignmentError, InvalidParameters

DEFAULT_CLIPPING_THRESHOLD: Final[float] = 0.95
"""Absolute sample level treated as clipped."""
DEFAULT_MIN_FLAGGED_FRACTION: Final[float] = 0.005
"""Share of flagged samples (0.5%) that must be exceeded to report clipping."""


class VerdictKind(Enum):
    """Outcome of one analysis cycle."""

    NO_DISTORTION_DETECTED = auto()
    """Flagged share at or below the configured minimum."""

    CLIPPING_DETECTED = auto()
    """Capture clips where the reference does not, above the minimum share."""

    INSUFFICIENT_DATA = auto()
    """No overlapping samples to compare."""

    ALIGNMENT_FAILED = auto()
    """Captured audio could not be aligned to the reference."""


@dataclass(frozen=True, slots=True)
class AnalysisVerdict:
    """Result of one analysis cycle, published to the presentation layer.

    Attributes:
        kind: Classification outcome.
        detail: Percentage of compared samples that were flagged, when the
            signals could be compared.
        flagged_count: Number of flagged samples.
        comparison_length: Number of samples compared.
        lag: Estimated capture delay in samples, when alignment succeeded.
        peak_to_mean: Correlation peak-to-mean ratio, when available.
        failure: ``code`` of the alignment error for ``ALIGNMENT_FAILED``.
    """

    kind: VerdictKind
    detail: float | None = None
    flagged_count: int = 0
    comparison_length: int = 0
    lag: int | None = None
    peak_to_mean: float | None = None
    failure: str | None = None

    @classmethod
    def insufficient_data(cls, failure: str | None = None) -> AnalysisVerdict:
        """Verdict for a cycle with nothing to compare."""
        return cls(kind=VerdictKind.INSUFFICIENT_DATA, failure=failure)

    @classmethod
    def alignment_failed(cls, error: AlignmentError) -> AnalysisVerdict:
        """Verdict for a cycle whose alignment raised *error*."""
        return cls(kind=VerdictKind.ALIGNMENT_FAILED, failure=error.code)

    def with_alignment(self, lag: int, peak_to_mean: float) -> AnalysisVerdict:
        """Copy of this verdict annotated with alignment details."""
        return replace(self, lag=lag, peak_to_mean=peak_to_mean)

    @property
    def is_clipping(self) -> bool:
        """Whether the cycle reported clipping."""
        return self.kind is VerdictKind.CLIPPING_DETECTED


def _validate(clipping_threshold: float, min_flagged_fraction: float) -> None:
    if not 0 < clipping_threshold <= 1:
        raise InvalidParameters(
            f"clipping_threshold must be in (0, 1], got {clipping_threshold!r}"
        )
    if not 0 <= min_flagged_fraction <= 1:
        raise InvalidParameters(
            f"min_flagged_fraction must be in [0, 1], got {min_flagged_fraction!r}"
        )


def classify(
    aligned: np.ndarray,
    reference: np.ndarray,
    clipping_threshold: float = DEFAULT_CLIPPING_THRESHOLD,
    min_flagged_fraction: float = DEFAULT_MIN_FLAGGED_FRACTION,
) -> AnalysisVerdict:
    """Compare aligned capture against the reference over their common prefix.

    A sample is flagged when the capture is at or above the threshold while
    the reference at the same index is below it, i.e. the level was added by
    the playback or capture path rather than present in the source.

    Args:
        aligned: Captured signal already aligned to the reference.
        reference: Reference signal.
        clipping_threshold: Absolute level in (0, 1] counted as clipped.
        min_flagged_fraction: Flagged share in [0, 1] that must be exceeded.

    Returns:
        ``CLIPPING_DETECTED`` or ``NO_DISTORTION_DETECTED`` with the flagged
        percentage, or ``INSUFFICIENT_DATA`` if there is no overlap.
    """
    _validate(clipping_threshold, min_flagged_fraction)

    aligned = np.asarray(aligned).reshape(-1)
    reference = np.asarray(reference).reshape(-1)
    comparison_length = min(aligned.size, reference.size)
    if comparison_length == 0:
        return AnalysisVerdict.insufficient_data()

    captured_hot = np.abs(aligned[:comparison_length]) >= clipping_threshold
    reference_cool = np.abs(reference[:comparison_length]) < clipping_threshold
    flagged_count = int(np.count_nonzero(captured_hot & reference_cool))

    flagged_fraction = flagged_count / comparison_length
    kind = (
        VerdictKind.CLIPPING_DETECTED
        if flagged_fraction > min_flagged_fraction
        else VerdictKind.NO_DISTORTION_DETECTED
    )
    return AnalysisVerdict(
        kind=kind,
        detail=flagged_fraction * 100.0,
        flagged_count=flagged_count,
        comparison_length=comparison_length,
    )


@dataclass(frozen=True, slots=True)
class DistortionClassifier:
    """Clipping classifier bound to a threshold policy."""

    clipping_threshold: float = DEFAULT_CLIPPING_THRESHOLD
    min_flagged_fraction: float = DEFAULT_MIN_FLAGGED_FRACTION

    def __post_init__(self) -> None:
        _validate(self.clipping_threshold, self.min_flagged_fraction)

    def classify(self, aligned: np.ndarray, reference: np.ndarray) -> AnalysisVerdict:
        """Classify *aligned* against *reference*. See :func:`classify`."""
        return classify(aligned, reference, self.clipping_threshold, self.min_flagged_fraction)
