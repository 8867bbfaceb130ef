"""Command line entry point for the loudspeaker clipping analyzer."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from collections.abc import Sequence

import soundfile as sf

from crackle.alignment import CORRELATION_METHODS
from crackle.app import (
    EXIT_CLIPPING,
    EXIT_ERROR,
    EXIT_OK,
    ListenConfig,
    ListenSession,
    format_verdict,
)
from crackle.audio import query_devices, resolve_device
from crackle.config import AnalysisConfig
from crackle.errors import InvalidParameters
from crackle.files import analyze_file, write_reference_tone
from crackle.settings import CONFIG_FIELDS, AnalyzerSettings, get_analyzer_settings

logger = logging.getLogger(__name__)

EXIT_USAGE = 2

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# argparse dest -> settings field, for flags that are persisted
_PERSISTED_FLAGS = {
    "sample_rate": "sample_rate",
    "frequency": "tone_frequency",
    "duration": "tone_duration",
    "amplitude": "tone_amplitude",
    "margin": "capture_margin",
    "threshold": "clipping_threshold",
    "min_fraction": "min_flagged_fraction",
    "method": "correlation_method",
    "min_peak_to_mean": "min_peak_to_mean",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog="crackle",
        description="Detect clipping in a loudspeaker by playing a tone and listening to it.",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help="Logging level (default: INFO, or the saved setting)",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory holding settings.json (default: ~/.config/crackle)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    analysis = argparse.ArgumentParser(add_help=False)
    group = analysis.add_argument_group("analysis")
    group.add_argument("--sample-rate", type=int, default=None, help="Sample rate in Hz (44100)")
    group.add_argument("--frequency", type=float, default=None, help="Tone frequency in Hz (440)")
    group.add_argument("--duration", type=float, default=None, help="Tone length in seconds (5)")
    group.add_argument("--amplitude", type=float, default=None, help="Tone peak level (0.5)")
    group.add_argument(
        "--margin", type=float, default=None, help="Extra capture for delay, in seconds (1)"
    )
    group.add_argument(
        "--threshold", type=float, default=None, help="Level counted as clipped (0.95)"
    )
    group.add_argument(
        "--min-fraction",
        type=float,
        default=None,
        help="Flagged share that must be exceeded to report clipping (0.005)",
    )
    group.add_argument(
        "--method",
        choices=CORRELATION_METHODS,
        default=None,
        help="Cross-correlation strategy (auto)",
    )
    group.add_argument(
        "--min-peak-to-mean",
        type=float,
        default=None,
        help="Reject alignments with a weaker correlation peak (0 disables)",
    )
    group.add_argument(
        "--single-shot",
        action="store_true",
        help="Stop after the first verdict",
    )

    listen = sub.add_parser(
        "listen", parents=[analysis], help="Play the tone and analyze the microphone live"
    )
    listen.add_argument("--input-device", default=None, help="Input device index or name")
    listen.add_argument("--output-device", default=None, help="Output device index or name")
    listen.add_argument(
        "--playback",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Play the reference tone (disable when another player is used)",
    )
    listen.add_argument(
        "--hook",
        default=None,
        help="Shell command run on start, stop and verdict events (CRACKLE_* env vars)",
    )
    listen.add_argument(
        "--max-duration", type=float, default=None, help="Stop after this many seconds"
    )

    sub.add_parser("devices", help="List audio input and output devices")

    tone = sub.add_parser("tone", parents=[analysis], help="Export the reference tone to a file")
    tone.add_argument("output", help="Output file (format from extension, e.g. tone.wav)")
    tone.add_argument("--repeats", type=int, default=1, help="Copies of the tone to write")

    analyze = sub.add_parser(
        "analyze", parents=[analysis], help="Analyze a recording of the reference tone"
    )
    analyze.add_argument("input", help="Recorded audio file")

    return parser


def _flag_updates(args: argparse.Namespace) -> dict[str, object]:
    updates: dict[str, object] = {
        field: getattr(args, dest)
        for dest, field in _PERSISTED_FLAGS.items()
        if getattr(args, dest, None) is not None
    }
    for dest in ("input_device", "output_device", "hook"):
        if getattr(args, dest, None) is not None:
            updates[dest] = getattr(args, dest)
    return updates


def _effective_config(
    settings: AnalyzerSettings, updates: dict[str, object], *, single_shot: bool
) -> AnalysisConfig:
    overrides = {name: value for name, value in updates.items() if name in CONFIG_FIELDS}
    config = dataclasses.replace(settings.to_config(single_shot=single_shot), **overrides)
    return config.validate()


def _print_devices() -> int:
    devices = query_devices()
    if not devices:
        print("No audio devices found.")  # noqa: T201
        return EXIT_OK

    print("Audio devices:")  # noqa: T201
    for device in devices:
        markers = []
        if device.is_default_input:
            markers.append("default input")
        if device.is_default_output:
            markers.append("default output")
        suffix = f" [{', '.join(markers)}]" if markers else ""
        print(  # noqa: T201
            f"  {device.index:>3}: {device.name} "
            f"(in {device.input_channels}, out {device.output_channels}, "
            f"{device.sample_rate:.0f} Hz){suffix}"
        )
    return EXIT_OK


def _print_verdicts(path: str, config: AnalysisConfig) -> int:
    verdicts = analyze_file(path, config)
    for number, verdict in enumerate(verdicts, start=1):
        print(f"Window {number}: {format_verdict(verdict)}")  # noqa: T201
    return EXIT_CLIPPING if any(v.is_clipping for v in verdicts) else EXIT_OK


async def _run(args: argparse.Namespace) -> int:
    settings = await get_analyzer_settings(args.config_dir)
    if args.log_level is None and settings.log_level in LOG_LEVELS:
        logging.getLogger().setLevel(settings.log_level)

    # Validate before persisting so a bad flag never reaches settings.json
    updates = _flag_updates(args)
    config = _effective_config(settings, updates, single_shot=args.single_shot)
    if args.command == "listen":
        input_device = resolve_device(updates.get("input_device", settings.input_device), "input")
        output_device = resolve_device(
            updates.get("output_device", settings.output_device), "output"
        )
    settings.update(**updates)

    try:
        if args.command == "tone":
            frames = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: write_reference_tone(args.output, config, repeats=args.repeats),
            )
            print(f"Saved {frames} frames to {args.output}")  # noqa: T201
            return EXIT_OK

        if args.command == "analyze":
            return await asyncio.get_running_loop().run_in_executor(
                None, _print_verdicts, args.input, config
            )

        session = ListenSession(
            ListenConfig(
                analysis=config,
                input_device=input_device,
                output_device=output_device,
                playback=args.playback,
                hook=settings.hook,
                max_duration=args.max_duration,
            )
        )
        return await session.run()
    finally:
        await settings.flush()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "devices":
        return _print_devices()

    try:
        return asyncio.run(_run(args))
    except InvalidParameters as err:
        logger.error("Invalid parameters: %s", err)
        return EXIT_USAGE
    except (OSError, sf.SoundFileError) as err:
        logger.error("%s", err)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
