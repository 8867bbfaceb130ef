"""Exception types raised by the analysis core."""

from __future__ import annotations


class CrackleError(Exception):
    """Base class for all analyzer errors."""


class InvalidParameters(CrackleError, ValueError):
    """Configuration rejected before a session starts."""


class AlignmentError(CrackleError):
    """Captured audio could not be aligned to the reference.

    Always recoverable: the pipeline turns it into an ``ALIGNMENT_FAILED``
    verdict and keeps capturing.
    """

    code = "alignment_failed"


class InsufficientCapturedLength(AlignmentError):
    """Captured signal is shorter than the reference."""

    code = "insufficient_captured_length"


class LagExceedsBufferLength(AlignmentError):
    """Estimated delay leaves no captured samples to compare."""

    code = "lag_exceeds_buffer_length"


class LowCorrelationConfidence(AlignmentError):
    """Correlation peak is not distinct enough to trust the lag."""

    code = "low_correlation_confidence"
