"""Reference tone generation.

The reference is played through the speaker under test and is also the
baseline the captured audio is aligned to and compared against, so it must be
exactly reproducible from its parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

import numpy as np

from crackle.errors import InvalidParameters

logger = logging.getLogger(__name__)

DEFAULT_AMPLITUDE: Final[float] = 0.5
"""Peak level of the tone, well below the default clipping threshold."""


def generate_sine(
    frequency: float,
    sample_rate: float,
    duration: float,
    amplitude: float = DEFAULT_AMPLITUDE,
) -> np.ndarray:
    """Generate ``round(duration * sample_rate)`` samples of a sine tone.

    ``sample[i] = amplitude * sin(2π * frequency * i / sample_rate)``

    Args:
        frequency: Tone frequency in Hz.
        sample_rate: Sample rate in Hz.
        duration: Length in seconds.
        amplitude: Peak amplitude in (0, 1].

    Returns:
        float32 array of samples.

    Raises:
        InvalidParameters: If any parameter is out of range or the tone would
            contain no samples.
    """
    if not frequency > 0:
        raise InvalidParameters(f"frequency must be positive, got {frequency!r}")
    if not sample_rate > 0:
        raise InvalidParameters(f"sample_rate must be positive, got {sample_rate!r}")
    if not duration > 0:
        raise InvalidParameters(f"duration must be positive, got {duration!r}")
    if not 0 < amplitude <= 1:
        raise InvalidParameters(f"amplitude must be in (0, 1], got {amplitude!r}")

    n_samples = round(duration * sample_rate)
    if n_samples <= 0:
        raise InvalidParameters(
            f"duration {duration}s at {sample_rate} Hz produces no samples"
        )

    # Phase in float64; float32 phase drifts audibly over a few seconds
    phase = 2.0 * np.pi * frequency * np.arange(n_samples, dtype=np.float64) / sample_rate
    return (amplitude * np.sin(phase)).astype(np.float32)


@dataclass(frozen=True, slots=True)
class ReferenceSignalGenerator:
    """Produces the reference tone at a fixed amplitude."""

    amplitude: float = DEFAULT_AMPLITUDE

    def generate(self, frequency: float, sample_rate: float, duration: float) -> np.ndarray:
        """Generate the reference tone. See :func:`generate_sine`."""
        samples = generate_sine(frequency, sample_rate, duration, self.amplitude)
        logger.debug(
            "Generated reference tone: %.1f Hz, %d samples at %g Hz",
            frequency,
            samples.size,
            sample_rate,
        )
        return samples
