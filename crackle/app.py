"""Live listen mode: play the reference, capture it back, print verdicts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

import numpy as np
import sounddevice

from crackle.audio import AudioDevice, MicrophoneCapture, ReferencePlayer
from crackle.classifier import AnalysisVerdict, VerdictKind
from crackle.config import AnalysisConfig
from crackle.hooks import run_hook
from crackle.pipeline import AnalysisPipeline, PipelineState
from crackle.utils import create_task

logger = logging.getLogger(__name__)

EXIT_OK: Final[int] = 0
EXIT_ERROR: Final[int] = 1
EXIT_CLIPPING: Final[int] = 3
"""Single-shot exit status when the verdict reports clipping."""


@dataclass
class ListenConfig:
    """Configuration for a live listen session."""

    analysis: AnalysisConfig
    input_device: AudioDevice | None = None
    output_device: AudioDevice | None = None
    playback: bool = True
    hook: str | None = None
    max_duration: float | None = None


def format_verdict(verdict: AnalysisVerdict) -> str:
    """Render a verdict as one line of terminal output."""
    if verdict.kind is VerdictKind.CLIPPING_DETECTED:
        text = f"CLIPPING DETECTED: {verdict.detail:.3f}% of samples clipped"
    elif verdict.kind is VerdictKind.NO_DISTORTION_DETECTED:
        text = f"No distortion detected ({verdict.detail:.3f}% of samples flagged)"
    elif verdict.kind is VerdictKind.INSUFFICIENT_DATA:
        text = "Insufficient data for analysis"
    else:
        text = f"Alignment failed ({verdict.failure or 'unknown'})"

    if verdict.lag is not None:
        text += f", lag {verdict.lag} samples"
    return text


class ListenSession:
    """Runs one live analysis session until interrupted."""

    def __init__(
        self,
        config: ListenConfig,
        *,
        capture_factory: Callable[..., MicrophoneCapture] = MicrophoneCapture,
        player_factory: Callable[..., ReferencePlayer] = ReferencePlayer,
    ) -> None:
        """Initialize the session."""
        self._config = config
        self._capture_factory = capture_factory
        self._player_factory = player_factory
        self._pipeline: AnalysisPipeline | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._hook_tasks: set[asyncio.Task[None]] = set()
        self._device_error: str | None = None

    @property
    def pipeline(self) -> AnalysisPipeline | None:
        """Pipeline of the running session."""
        return self._pipeline

    def _print_event(self, message: str) -> None:
        """Print an event message."""
        print(message, flush=True)  # noqa: T201

    async def run(self) -> int:
        """Run the session.

        Returns:
            Process exit status. In single-shot mode a clipping verdict exits
            with ``EXIT_CLIPPING``.
        """
        config = self._config
        analysis = config.analysis
        loop = asyncio.get_running_loop()

        self._shutdown_event = asyncio.Event()
        self._pipeline = pipeline = AnalysisPipeline(analysis, loop=loop)
        remove_listener = pipeline.add_verdict_listener(self._on_verdict)

        def on_device_error(reason: str) -> None:
            # PortAudio thread
            loop.call_soon_threadsafe(self._handle_device_error, reason)

        reference = pipeline.start()
        capture = self._capture_factory(
            pipeline,
            sample_rate=analysis.sample_rate,
            device=config.input_device,
            on_error=on_device_error,
        )
        player = (
            self._player_factory(
                reference,
                sample_rate=analysis.sample_rate,
                device=config.output_device,
                on_error=on_device_error,
            )
            if config.playback
            else None
        )

        try:
            self._start_streams(capture, player, reference)
        except sounddevice.PortAudioError as err:
            logger.error("Unable to open audio device: %s", err)
            capture.stop()
            if player is not None:
                player.stop()
            pipeline.stop()
            remove_listener()
            return EXIT_ERROR

        self._print_event(
            f"Listening for {analysis.tone_frequency:.0f} Hz tone "
            f"(cycle {analysis.required_capture_length / analysis.sample_rate:.1f}s)..."
        )
        self._fire_hook("start")

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            if self._shutdown_event is not None:
                self._shutdown_event.set()

        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)

        try:
            await self._wait_for_shutdown()
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGTERM)
            capture.stop()
            if player is not None:
                player.stop()
            pipeline.stop()
            remove_listener()
            self._fire_hook("stop")
            if self._hook_tasks:
                await asyncio.gather(*self._hook_tasks, return_exceptions=True)
            logger.info("Listen session stopped")

        if self._device_error is not None:
            return EXIT_ERROR
        last = pipeline.last_verdict
        if analysis.single_shot and last is not None and last.is_clipping:
            return EXIT_CLIPPING
        return EXIT_OK

    def _start_streams(
        self,
        capture: MicrophoneCapture,
        player: ReferencePlayer | None,
        reference: np.ndarray,
    ) -> None:
        if self._config.input_device is not None:
            logger.info(
                "Using input device %d: %s",
                self._config.input_device.index,
                self._config.input_device.name,
            )
        capture.start()
        if player is not None:
            player.start()
        else:
            logger.info(
                "Playback disabled; play the %d-sample reference tone externally",
                reference.size,
            )

    async def _wait_for_shutdown(self) -> None:
        if self._shutdown_event is None:
            raise RuntimeError("Session is not running")
        timeout = self._config.max_duration
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.info("Reached maximum duration of %.1fs", timeout)

    def _handle_device_error(self, reason: str) -> None:
        self._device_error = reason
        self._print_event(f"Audio device error: {reason}")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _on_verdict(self, verdict: AnalysisVerdict) -> None:
        self._print_event(format_verdict(verdict))
        self._fire_hook("verdict", verdict)
        pipeline = self._pipeline
        if (
            pipeline is not None
            and pipeline.config.single_shot
            and pipeline.state is PipelineState.IDLE
            and self._shutdown_event is not None
        ):
            self._shutdown_event.set()

    def _fire_hook(self, event: str, verdict: AnalysisVerdict | None = None) -> None:
        if not self._config.hook:
            return
        task = create_task(run_hook(self._config.hook, event=event, verdict=verdict))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)
