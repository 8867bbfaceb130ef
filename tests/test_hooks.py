"""Tests for hook execution."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import pytest

from crackle.classifier import AnalysisVerdict, VerdictKind
from crackle.hooks import hook_environment, run_hook

VERDICT = AnalysisVerdict(
    kind=VerdictKind.CLIPPING_DETECTED,
    detail=1.25,
    flagged_count=5,
    comparison_length=400,
    lag=42,
    peak_to_mean=8.0,
)


class TestHookEnvironment:
    """Environment passed to hook commands."""

    def test_verdict_variables(self) -> None:
        env = hook_environment("verdict", VERDICT)
        assert env["CRACKLE_EVENT"] == "verdict"
        assert env["CRACKLE_VERDICT"] == "clipping_detected"
        assert env["CRACKLE_FLAGGED_PERCENT"] == "1.2500"
        assert env["CRACKLE_LAG"] == "42"
        assert "CRACKLE_FAILURE" not in env

    def test_start_event_has_no_verdict(self) -> None:
        env = hook_environment("start")
        assert env["CRACKLE_EVENT"] == "start"
        assert "CRACKLE_VERDICT" not in env

    def test_failure_code(self) -> None:
        verdict = AnalysisVerdict(kind=VerdictKind.ALIGNMENT_FAILED, failure="alignment_failed")
        env = hook_environment("verdict", verdict)
        assert env["CRACKLE_FAILURE"] == "alignment_failed"
        assert "CRACKLE_LAG" not in env

    def test_inherits_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CRACKLE_TEST_MARKER", "yes")
        assert hook_environment("stop")["CRACKLE_TEST_MARKER"] == "yes"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")
class TestRunHook:
    """Running hook commands."""

    def test_command_sees_variables(self, tmp_path: Path) -> None:
        out = tmp_path / "out.txt"
        command = f'printf "%s %s" "$CRACKLE_EVENT" "$CRACKLE_VERDICT" > "{out}"'
        asyncio.run(run_hook(command, event="verdict", verdict=VERDICT))
        assert out.read_text() == "verdict clipping_detected"

    def test_failing_command_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="crackle.hooks"):
            asyncio.run(run_hook("echo oops >&2; exit 3", event="stop"))
        assert "exit 3" in caplog.text
        assert "oops" in caplog.text
