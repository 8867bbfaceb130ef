"""Analysis pipeline: capture accumulation, alignment and classification.

Chunks arrive on the audio input thread and are appended under a short lock.
When enough audio has accumulated, the capture is handed to the asyncio loop,
which runs alignment and classification in an executor so the input thread
never waits on analysis. Only one cycle is in flight at a time because a cycle
can only start from the ``CAPTURING`` state.

Every session carries a generation number. :meth:`AnalysisPipeline.stop`
advances it, and a finished cycle only publishes if its generation is still
current, checked under the same lock ``stop`` takes.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor
from enum import Enum, auto

import numpy as np

from crackle.alignment import CrossCorrelationAligner
from crackle.buffer import CaptureAccumulator
from crackle.classifier import AnalysisVerdict, DistortionClassifier, VerdictKind
from crackle.config import AnalysisConfig
from crackle.errors import AlignmentError, InsufficientCapturedLength, LagExceedsBufferLength
from crackle.reference import ReferenceSignalGenerator
from crackle.utils import create_task

logger = logging.getLogger(__name__)

VerdictListener = Callable[[AnalysisVerdict], None]


class PipelineState(Enum):
    """Lifecycle of an analysis session."""

    IDLE = auto()
    """Not capturing; incoming chunks are ignored."""

    CAPTURING = auto()
    """Accumulating chunks until a cycle's worth of audio is buffered."""

    ANALYZING = auto()
    """A cycle is being analyzed; new chunks queue for the next cycle."""


def analyze_capture(
    captured: np.ndarray,
    reference: np.ndarray,
    config: AnalysisConfig,
) -> AnalysisVerdict:
    """Align *captured* to *reference* and classify the result.

    Alignment failures become verdicts rather than exceptions.
    """
    aligner = CrossCorrelationAligner(config.correlation_method, config.min_peak_to_mean)
    try:
        result = aligner.align(captured, reference)
    except InsufficientCapturedLength as err:
        logger.info("Not enough audio to analyze: %s", err)
        return AnalysisVerdict.insufficient_data(failure=err.code)
    except LagExceedsBufferLength as err:
        logger.warning("Discarding cycle, check capture_margin: %s", err)
        return AnalysisVerdict.alignment_failed(err)
    except AlignmentError as err:
        logger.info("Alignment failed: %s", err)
        return AnalysisVerdict.alignment_failed(err)

    classifier = DistortionClassifier(config.clipping_threshold, config.min_flagged_fraction)
    verdict = classifier.classify(result.aligned, reference)
    return verdict.with_alignment(result.lag, result.peak_to_mean)


class AnalysisPipeline:
    """Drives one analysis session at a time.

    ``start``, ``stop`` and ``wait_for_analysis`` belong to the event loop
    thread. ``on_chunk_received``, ``report_dropped_chunk`` and
    ``capture_unavailable`` may be called from the audio input thread.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        executor: Executor | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Session configuration; validated here.
            loop: Event loop that runs analysis. Defaults to the running loop
                at :meth:`start`.
            executor: Executor for analysis work. None uses the loop default.
        """
        self._config = config.validate()
        self._loop = loop
        self._executor = executor
        self._generator = ReferenceSignalGenerator(amplitude=config.tone_amplitude)
        self._accumulator = CaptureAccumulator()
        self._lock = threading.RLock()
        self._state = PipelineState.IDLE
        self._generation = 0
        self._reference: np.ndarray | None = None
        self._analysis_task: asyncio.Task[None] | None = None
        self._last_verdict: AnalysisVerdict | None = None
        self._listeners: list[VerdictListener] = []
        self._cycle_count = 0
        self._dropped_chunk_count = 0

    @property
    def config(self) -> AnalysisConfig:
        """Session configuration."""
        return self._config

    @property
    def state(self) -> PipelineState:
        """Current lifecycle state."""
        return self._state

    @property
    def reference(self) -> np.ndarray | None:
        """Reference tone of the current session, None before the first start."""
        return self._reference

    @property
    def last_verdict(self) -> AnalysisVerdict | None:
        """Most recently published verdict; survives :meth:`stop`."""
        return self._last_verdict

    @property
    def cycle_count(self) -> int:
        """Number of verdicts published since construction."""
        return self._cycle_count

    @property
    def dropped_chunk_count(self) -> int:
        """Number of capture gaps reported by the input collaborator."""
        return self._dropped_chunk_count

    @property
    def buffered_samples(self) -> int:
        """Samples accumulated toward the next cycle."""
        with self._lock:
            return self._accumulator.length()

    def add_verdict_listener(self, listener: VerdictListener) -> Callable[[], None]:
        """Register *listener* for published verdicts.

        Listeners run on the event loop thread and must not block.

        Returns:
            Function that unregisters the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def start(self) -> np.ndarray:
        """Begin a session and return the reference tone to play.

        Calling start on a running session returns its reference unchanged.
        """
        with self._lock:
            if self._state is not PipelineState.IDLE:
                logger.debug("start() ignored: pipeline already %s", self._state.name)
                if self._reference is None:
                    raise RuntimeError("Pipeline is running without a reference tone")
                return self._reference

            if self._loop is None:
                self._loop = asyncio.get_running_loop()

            config = self._config
            self._accumulator.reset()
            self._reference = self._generator.generate(
                config.tone_frequency, config.sample_rate, config.tone_duration
            )
            self._generation += 1
            self._state = PipelineState.CAPTURING
            reference = self._reference

        logger.info(
            "Analysis started: %.1f Hz tone, %d reference samples, cycle every %d samples%s",
            config.tone_frequency,
            reference.size,
            config.required_capture_length,
            " (single shot)" if config.single_shot else "",
        )
        return reference

    def stop(self) -> None:
        """End the session, discarding buffered capture and any in-flight cycle.

        Safe to call at any time and from any thread. The last published
        verdict is kept.
        """
        with self._lock:
            previous = self._state
            self._generation += 1
            self._state = PipelineState.IDLE
            self._accumulator.reset()
            task = self._analysis_task
            self._analysis_task = None

        if task is not None and not task.done():
            self._call_in_loop(task.cancel)
        if previous is not PipelineState.IDLE:
            logger.info("Analysis stopped")

    def on_chunk_received(self, chunk: np.ndarray) -> None:
        """Append a captured chunk, starting a cycle when enough has arrived.

        Chunks are ignored while idle. While a cycle is analyzing they are
        kept for the next cycle.
        """
        with self._lock:
            if self._state is PipelineState.IDLE:
                return
            self._accumulator.append(chunk)
            if self._state is not PipelineState.CAPTURING:
                return
            if not self._accumulator.is_ready_for_analysis(self._config.required_capture_length):
                return
            captured = self._accumulator.take()
            self._state = PipelineState.ANALYZING
            generation = self._generation
            loop = self._loop

        if loop is None:
            raise RuntimeError("Pipeline is capturing without an event loop")
        loop.call_soon_threadsafe(self._launch_analysis, captured, generation)

    def report_dropped_chunk(self) -> None:
        """Discard the partial cycle after the input reported lost audio.

        A gap shifts everything after it, so the buffered audio can no longer
        be aligned as one piece.
        """
        with self._lock:
            if self._state is PipelineState.IDLE:
                return
            discarded = self._accumulator.length()
            self._accumulator.reset()
            self._dropped_chunk_count += 1
        logger.warning("Capture gap reported; discarded %d buffered samples", discarded)

    def capture_unavailable(self, reason: str | None = None) -> None:
        """Handle loss of the capture device by stopping the session."""
        logger.error("Capture unavailable%s", f": {reason}" if reason else "")
        self.stop()

    async def wait_for_analysis(self) -> None:
        """Wait until no analysis cycle is in flight."""
        while self._state is PipelineState.ANALYZING:
            task = self._analysis_task
            if task is None or task.done():
                # Launch is queued on the loop but has not run yet
                await asyncio.sleep(0)
                continue
            await asyncio.wait({task})

    def _call_in_loop(self, callback: Callable[[], object]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback()
        else:
            loop.call_soon_threadsafe(callback)

    def _launch_analysis(self, captured: np.ndarray, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not PipelineState.ANALYZING:
                return
            self._analysis_task = create_task(
                self._run_analysis(captured, generation), name="crackle-analysis"
            )

    async def _run_analysis(self, captured: np.ndarray, generation: int) -> None:
        loop = asyncio.get_running_loop()
        reference = self._reference
        if reference is None:
            raise RuntimeError("Analysis started without a reference tone")
        started = loop.time()

        verdict: AnalysisVerdict | None
        try:
            verdict = await loop.run_in_executor(
                self._executor, analyze_capture, captured, reference, self._config
            )
        except asyncio.CancelledError:
            logger.debug("Analysis cycle abandoned")
            raise
        except Exception:
            logger.exception("Analysis cycle failed")
            verdict = None

        elapsed = loop.time() - started
        if elapsed > self._config.tone_duration:
            logger.warning(
                "Analysis took %.2fs, longer than the %.2fs reference; cycles will fall behind",
                elapsed,
                self._config.tone_duration,
            )

        next_capture: np.ndarray | None = None
        with self._lock:
            if self._analysis_task is asyncio.current_task():
                self._analysis_task = None
            if generation != self._generation:
                logger.debug("Discarding verdict from a stopped session")
                return

            finished = verdict is not None and verdict.kind in (
                VerdictKind.NO_DISTORTION_DETECTED,
                VerdictKind.CLIPPING_DETECTED,
            )
            if self._config.single_shot and finished:
                self._state = PipelineState.IDLE
                self._accumulator.reset()
                logger.info("Single-shot analysis complete")
            elif self._accumulator.is_ready_for_analysis(self._config.required_capture_length):
                next_capture = self._accumulator.take()
            else:
                self._state = PipelineState.CAPTURING

            if verdict is not None:
                self._last_verdict = verdict
                self._cycle_count += 1
            cycle = self._cycle_count

        # Outside the lock: listeners see the post-cycle state and may call stop()
        if verdict is not None:
            self._publish(verdict, cycle, generation)

        if next_capture is not None:
            self._launch_analysis(next_capture, generation)

    def _publish(self, verdict: AnalysisVerdict, cycle: int, generation: int) -> None:
        logger.info(
            "Verdict #%d: %s (flagged=%s%%, lag=%s)",
            cycle,
            verdict.kind.name,
            f"{verdict.detail:.3f}" if verdict.detail is not None else "n/a",
            verdict.lag,
        )
        for listener in list(self._listeners):
            if generation != self._generation:
                logger.debug("Session stopped by a verdict listener")
                return
            try:
                listener(verdict)
            except Exception:
                logger.exception("Verdict listener failed")
