"""Audio device access for the analyzer.

This module provides device enumeration plus the two stream collaborators of
a live session: :class:`MicrophoneCapture`, which feeds captured chunks into
an :class:`~crackle.pipeline.AnalysisPipeline`, and :class:`ReferencePlayer`,
which loops the reference tone through the speaker under test.

Both run their work in PortAudio callback threads. Callbacks never raise;
failures are logged and reported to the pipeline instead.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

import numpy as np
import sounddevice
from sounddevice import CallbackFlags

from crackle.errors import InvalidParameters

if TYPE_CHECKING:
    from crackle.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)

DeviceKind = Literal["input", "output"]

BLOCKSIZE: Final[int] = 2048
"""Audio block size (~46ms at 44.1kHz)."""


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        input_channels: Number of input channels supported.
        output_channels: Number of output channels supported.
        sample_rate: Default sample rate in Hz.
        is_default_input: Whether this is the system default input device.
        is_default_output: Whether this is the system default output device.
    """

    index: int
    name: str
    input_channels: int
    output_channels: int
    sample_rate: float
    is_default_input: bool
    is_default_output: bool

    def supports(self, kind: DeviceKind) -> bool:
        """Whether the device has channels of the given *kind*."""
        return (self.input_channels if kind == "input" else self.output_channels) > 0


def query_devices(kind: DeviceKind | None = None) -> list[AudioDevice]:
    """Query the available audio devices.

    Args:
        kind: Only return devices with ``"input"`` or ``"output"`` channels.
            None returns every device.

    Returns:
        List of AudioDevice objects.
    """
    devices = sounddevice.query_devices()
    default_input, default_output = (int(d) for d in sounddevice.default.device)

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        device = AudioDevice(
            index=i,
            name=str(dev["name"]),
            input_channels=int(dev["max_input_channels"]),
            output_channels=int(dev["max_output_channels"]),
            sample_rate=float(dev["default_samplerate"]),
            is_default_input=(i == default_input),
            is_default_output=(i == default_output),
        )
        if kind is None or device.supports(kind):
            result.append(device)
    return result


def resolve_device(selector: str | int | None, kind: DeviceKind) -> AudioDevice | None:
    """Find a device by index or by case-insensitive name substring.

    Args:
        selector: Device index, name fragment, or None for the system default.
        kind: Required direction.

    Returns:
        The matching device, or None to use the system default.

    Raises:
        InvalidParameters: If no device of that kind matches.
    """
    if selector is None or selector == "":
        return None

    devices = query_devices(kind)
    if isinstance(selector, int) or str(selector).isdigit():
        index = int(selector)
        for device in devices:
            if device.index == index:
                return device
        raise InvalidParameters(f"no {kind} device with index {index}")

    needle = str(selector).lower()
    for device in devices:
        if needle in device.name.lower():
            return device
    raise InvalidParameters(f"no {kind} device matching {selector!r}")


class MicrophoneCapture:
    """Streams mono float32 microphone audio into an analysis pipeline."""

    def __init__(
        self,
        pipeline: AnalysisPipeline,
        *,
        sample_rate: int,
        device: AudioDevice | None = None,
        blocksize: int = BLOCKSIZE,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the capture.

        Args:
            pipeline: Receives chunks, gap reports and device failures.
            sample_rate: Requested capture rate in Hz.
            device: Input device, None for the system default.
            blocksize: Frames per callback.
            on_error: Called with a reason after the input stream ends
                unexpectedly, once the pipeline has been told.
        """
        self._pipeline = pipeline
        self._on_error = on_error
        self._sample_rate = sample_rate
        self._device = device
        self._blocksize = blocksize
        self._stream: sounddevice.InputStream | None = None
        self._overflow_count = 0

    @property
    def overflow_count(self) -> int:
        """Number of callbacks that reported lost input."""
        return self._overflow_count

    @property
    def is_running(self) -> bool:
        """Whether the input stream is open."""
        return self._stream is not None

    def start(self) -> None:
        """Open and start the input stream."""
        if self._stream is not None:
            return

        self._stream = sounddevice.InputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self._blocksize,
            callback=self._callback,
            finished_callback=self._on_finished,
            device=self._device.index if self._device is not None else None,
        )
        self._stream.start()
        actual_rate = self._stream.samplerate
        logger.info(
            "Microphone capture started: device=%s, sample_rate=%d, actual=%s",
            self._device.name if self._device is not None else "default",
            self._sample_rate,
            actual_rate,
        )
        if actual_rate != self._sample_rate:
            logger.warning(
                "Capture runs at %s Hz instead of %d Hz; lag estimates will drift",
                actual_rate,
                self._sample_rate,
            )

    def stop(self) -> None:
        """Stop and close the input stream."""
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception:
                logger.exception("Failed to close microphone stream")

    def _callback(
        self,
        indata: np.ndarray,
        _frames: int,
        _time_info: object,
        status: CallbackFlags,
    ) -> None:
        """Handle one block of microphone input."""
        try:
            if status:
                logger.debug("Mic callback status: %s", status)
                if status.input_overflow:
                    self._overflow_count += 1
                    self._pipeline.report_dropped_chunk()
            self._pipeline.on_chunk_received(indata)
        except Exception:
            logger.exception("Error in microphone callback")

    def _on_finished(self) -> None:
        # Fires on both stop() and device loss; only the latter leaves a stream set
        if self._stream is not None:
            self._stream = None
            reason = "input stream ended unexpectedly"
            self._pipeline.capture_unavailable(reason)
            if self._on_error is not None:
                self._on_error(reason)


class ReferencePlayer:
    """Loops the reference tone through an output device."""

    def __init__(
        self,
        reference: np.ndarray,
        *,
        sample_rate: int,
        device: AudioDevice | None = None,
        blocksize: int = BLOCKSIZE,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the player.

        Args:
            reference: Mono tone played on repeat.
            sample_rate: Playback rate in Hz; must match the capture rate.
            device: Output device, None for the system default.
            blocksize: Frames per callback.
            on_error: Called with a reason if the output stream ends
                unexpectedly.
        """
        self._reference = np.ascontiguousarray(reference, dtype=np.float32).reshape(-1)
        if self._reference.size == 0:
            raise InvalidParameters("reference signal is empty")
        self._sample_rate = sample_rate
        self._device = device
        self._blocksize = blocksize
        self._on_error = on_error
        self._position = 0
        self._lock = threading.Lock()
        self._stream: sounddevice.OutputStream | None = None
        self._underflow_count = 0

    @property
    def underflow_count(self) -> int:
        """Number of callbacks that reported an output underflow."""
        return self._underflow_count

    def start(self) -> None:
        """Open the output stream and start looping from the beginning."""
        if self._stream is not None:
            return
        with self._lock:
            self._position = 0

        self._stream = sounddevice.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self._blocksize,
            callback=self._callback,
            finished_callback=self._on_finished,
            device=self._device.index if self._device is not None else None,
        )
        self._stream.start()
        logger.info(
            "Reference playback started: device=%s, %d samples looped",
            self._device.name if self._device is not None else "default",
            self._reference.size,
        )

    def stop(self) -> None:
        """Stop and close the output stream."""
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception:
                logger.exception("Failed to close audio output stream")

    def fill(self, outdata: np.ndarray) -> None:
        """Write the next ``len(outdata)`` looped reference samples into *outdata*."""
        frames = len(outdata)
        out = outdata.reshape(frames, -1)
        with self._lock:
            position = self._position
            written = 0
            while written < frames:
                count = min(frames - written, self._reference.size - position)
                out[written : written + count, 0] = self._reference[position : position + count]
                written += count
                position = (position + count) % self._reference.size
            self._position = position
        if out.shape[1] > 1:
            out[:, 1:] = out[:, :1]

    def _callback(
        self,
        outdata: np.ndarray,
        _frames: int,
        _time_info: object,
        status: CallbackFlags,
    ) -> None:
        """Fill one block of output with the looped reference."""
        try:
            if status:
                if status.output_underflow:
                    self._underflow_count += 1
                    logger.warning("Audio underflow detected during reference playback")
                else:
                    logger.debug("Output callback status: %s", status)
            self.fill(outdata)
        except Exception:
            logger.exception("Error in audio callback")
            outdata.fill(0)

    def _on_finished(self) -> None:
        if self._stream is not None:
            self._stream = None
            logger.error("Reference playback ended unexpectedly")
            if self._on_error is not None:
                self._on_error("output stream ended unexpectedly")
