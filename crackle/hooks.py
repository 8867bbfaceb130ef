"""Hook execution for external script integration."""

from __future__ import annotations

import asyncio
import logging
import os

from crackle.classifier import AnalysisVerdict

logger = logging.getLogger(__name__)


def hook_environment(event: str, verdict: AnalysisVerdict | None = None) -> dict[str, str]:
    """Build the environment a hook command runs with.

    Args:
        event: Event type ("start", "stop" or "verdict").
        verdict: Verdict that triggered the hook, if any.
    """
    env = os.environ.copy()
    env["CRACKLE_EVENT"] = event
    if verdict is not None:
        env["CRACKLE_VERDICT"] = verdict.kind.name.lower()
        if verdict.detail is not None:
            env["CRACKLE_FLAGGED_PERCENT"] = f"{verdict.detail:.4f}"
        if verdict.lag is not None:
            env["CRACKLE_LAG"] = str(verdict.lag)
        if verdict.failure is not None:
            env["CRACKLE_FAILURE"] = verdict.failure
    return env


async def run_hook(
    command: str,
    *,
    event: str,
    verdict: AnalysisVerdict | None = None,
) -> None:
    """Execute a hook command with ``CRACKLE_`` environment variables.

    Args:
        command: Shell command to execute.
        event: Event type (e.g., "start", "verdict").
        verdict: Verdict passed to the command, for "verdict" events.
    """
    env = hook_environment(event, verdict)

    logger.debug("Running hook for %s event: %s", event, command)

    try:
        # Shell so users can pass pipelines like "notify-send crackle $CRACKLE_VERDICT"
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            logger.warning(
                "Hook command failed (exit %d): %s\nstderr: %s",
                proc.returncode,
                command,
                stderr.decode().strip() if stderr else "(empty)",
            )
        elif stdout or stderr:
            logger.debug(
                "Hook output: stdout=%s stderr=%s",
                stdout.decode().strip() if stdout else "(empty)",
                stderr.decode().strip() if stderr else "(empty)",
            )
    except Exception:
        logger.exception("Failed to execute hook command: %s", command)
