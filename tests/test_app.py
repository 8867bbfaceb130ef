"""Tests for the live listen session with fake audio streams."""

from __future__ import annotations

import asyncio
from functools import partial

import numpy as np
import pytest

try:
    import sounddevice
except OSError:
    pytest.skip("PortAudio library not available", allow_module_level=True)

from crackle.app import (
    EXIT_CLIPPING,
    EXIT_ERROR,
    EXIT_OK,
    ListenConfig,
    ListenSession,
    format_verdict,
)
from crackle.classifier import AnalysisVerdict, VerdictKind
from crackle.config import AnalysisConfig
from crackle.pipeline import AnalysisPipeline

ANALYSIS = AnalysisConfig(
    sample_rate=1000,
    tone_frequency=50.0,
    tone_duration=0.1,
    capture_margin=0.05,
    single_shot=True,
)


class FakeCapture:
    """Feeds a delayed copy of the reference once started."""

    def __init__(
        self,
        pipeline: AnalysisPipeline,
        *,
        sample_rate: int,
        device: object,
        on_error: object,
        clipped: int = 0,
        fail: Exception | None = None,
        error: str | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.on_error = on_error
        self.clipped = clipped
        self.fail = fail
        self.error = error
        self.stopped = False

    def start(self) -> None:
        if self.fail is not None:
            raise self.fail
        loop = asyncio.get_running_loop()
        if self.error is not None:
            loop.call_soon(self.on_error, self.error)  # type: ignore[arg-type]
            return
        reference = self.pipeline.reference
        assert reference is not None
        captured = np.zeros(ANALYSIS.required_capture_length, dtype=np.float32)
        captured[5 : 5 + reference.size] = reference
        captured[8 : 8 + self.clipped] = 0.99
        loop.call_soon(self.pipeline.on_chunk_received, captured)

    def stop(self) -> None:
        self.stopped = True


class FakePlayer:
    """Records the reference it was asked to play."""

    instances: list[FakePlayer] = []

    def __init__(self, reference: np.ndarray, **_kwargs: object) -> None:
        self.reference = reference
        self.started = False
        self.stopped = False
        FakePlayer.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


def _run_session(config: ListenConfig, **capture_kwargs: object) -> int:
    session = ListenSession(
        config,
        capture_factory=partial(FakeCapture, **capture_kwargs),  # type: ignore[arg-type]
        player_factory=FakePlayer,  # type: ignore[arg-type]
    )
    return asyncio.run(session.run())


class TestListenSession:
    """Session lifecycle and exit status."""

    def test_single_shot_clean(self, capsys: pytest.CaptureFixture[str]) -> None:
        FakePlayer.instances.clear()
        status = _run_session(ListenConfig(analysis=ANALYSIS, max_duration=5.0))
        assert status == EXIT_OK

        out = capsys.readouterr().out
        assert "Listening for 50 Hz tone" in out
        assert "No distortion detected" in out
        assert "lag 5 samples" in out

        (player,) = FakePlayer.instances
        assert player.started
        assert player.stopped
        assert player.reference.size == 100

    def test_single_shot_clipping(self, capsys: pytest.CaptureFixture[str]) -> None:
        status = _run_session(ListenConfig(analysis=ANALYSIS, max_duration=5.0), clipped=5)
        assert status == EXIT_CLIPPING
        assert "CLIPPING DETECTED" in capsys.readouterr().out

    def test_playback_can_be_disabled(self) -> None:
        FakePlayer.instances.clear()
        status = _run_session(ListenConfig(analysis=ANALYSIS, playback=False, max_duration=5.0))
        assert status == EXIT_OK
        assert FakePlayer.instances == []

    def test_device_open_failure(self) -> None:
        status = _run_session(
            ListenConfig(analysis=ANALYSIS, max_duration=5.0),
            fail=sounddevice.PortAudioError("no such device"),
        )
        assert status == EXIT_ERROR

    def test_device_lost_while_listening(self, capsys: pytest.CaptureFixture[str]) -> None:
        status = _run_session(
            ListenConfig(analysis=ANALYSIS, max_duration=5.0), error="input stream ended"
        )
        assert status == EXIT_ERROR
        assert "Audio device error: input stream ended" in capsys.readouterr().out

    def test_max_duration_ends_continuous_session(self) -> None:
        continuous = AnalysisConfig(
            sample_rate=1000, tone_frequency=50.0, tone_duration=0.1, capture_margin=0.05
        )
        status = _run_session(ListenConfig(analysis=continuous, max_duration=0.2))
        assert status == EXIT_OK


class TestFormatVerdict:
    """Terminal rendering."""

    def test_clipping(self) -> None:
        verdict = AnalysisVerdict(kind=VerdictKind.CLIPPING_DETECTED, detail=1.0, lag=12)
        assert format_verdict(verdict) == (
            "CLIPPING DETECTED: 1.000% of samples clipped, lag 12 samples"
        )

    def test_no_distortion(self) -> None:
        verdict = AnalysisVerdict(kind=VerdictKind.NO_DISTORTION_DETECTED, detail=0.2)
        assert format_verdict(verdict) == "No distortion detected (0.200% of samples flagged)"

    def test_insufficient_data(self) -> None:
        verdict = AnalysisVerdict.insufficient_data()
        assert format_verdict(verdict) == "Insufficient data for analysis"

    def test_alignment_failed(self) -> None:
        verdict = AnalysisVerdict(
            kind=VerdictKind.ALIGNMENT_FAILED, failure="lag_exceeds_buffer_length"
        )
        assert format_verdict(verdict) == "Alignment failed (lag_exceeds_buffer_length)"
