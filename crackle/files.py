"""Offline mode: export the reference tone and analyze recorded captures."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from crackle.classifier import AnalysisVerdict
from crackle.config import AnalysisConfig
from crackle.errors import InvalidParameters
from crackle.pipeline import analyze_capture
from crackle.reference import generate_sine
from crackle.utils import as_mono_float32

logger = logging.getLogger(__name__)


def write_reference_tone(
    path: str | Path,
    config: AnalysisConfig,
    *,
    repeats: int = 1,
    subtype: str | None = "PCM_16",
) -> int:
    """Write the session's reference tone to an audio file.

    The file can be played by any player near the microphone while
    ``crackle listen --no-playback`` runs, or recorded and fed to
    :func:`analyze_file`.

    Args:
        path: Output file; the format follows the extension (wav, flac, ...).
        config: Tone parameters.
        repeats: Number of back-to-back copies of the tone.
        subtype: soundfile subtype, None for the format default.

    Returns:
        Number of frames written.
    """
    config.validate()
    if repeats < 1:
        raise InvalidParameters(f"repeats must be at least 1, got {repeats!r}")

    tone = generate_sine(
        config.tone_frequency,
        config.sample_rate,
        config.tone_duration,
        config.tone_amplitude,
    )
    signal = np.tile(tone, repeats)
    sf.write(str(path), signal, config.sample_rate, subtype=subtype)
    logger.info(
        "Saved reference tone to %s: %.1f Hz, %.1fs x %d",
        path,
        config.tone_frequency,
        config.tone_duration,
        repeats,
    )
    return int(signal.size)


def read_capture(path: str | Path) -> tuple[np.ndarray, int]:
    """Load a recorded capture as mono float32.

    Multi-channel files are reduced to their first channel.

    Returns:
        Tuple of (samples, sample rate).
    """
    data, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
    samples = as_mono_float32(data)
    logger.debug("Read %d samples at %d Hz from %s", samples.size, sample_rate, path)
    return samples, int(sample_rate)


def analyze_file(path: str | Path, config: AnalysisConfig) -> list[AnalysisVerdict]:
    """Analyze a recorded capture the way a live session would.

    The recording is cut into consecutive windows of
    ``required_capture_length`` samples and each window is analyzed as one
    cycle. A recording shorter than one window is analyzed whole. The file's
    sample rate replaces ``config.sample_rate``.

    Returns:
        One verdict per window, in order. Stops after the first window in
        single-shot mode.
    """
    captured, sample_rate = read_capture(path)
    if sample_rate != config.sample_rate:
        logger.info("Using the file's sample rate of %d Hz", sample_rate)
        config = dataclasses.replace(config, sample_rate=sample_rate)
    config.validate()

    reference = generate_sine(
        config.tone_frequency,
        config.sample_rate,
        config.tone_duration,
        config.tone_amplitude,
    )

    window = config.required_capture_length
    if captured.size <= window:
        windows = [captured]
    else:
        windows = [
            captured[start : start + window]
            for start in range(0, captured.size - window + 1, window)
        ]

    verdicts: list[AnalysisVerdict] = []
    for segment in windows:
        verdicts.append(analyze_capture(segment, reference, config))
        if config.single_shot:
            break
    return verdicts
