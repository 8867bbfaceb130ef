"""Settings persistence for the analyzer CLI.

Settings are loaded from disk at startup and saved with debouncing. Command
line flags override them and are written back, so the next run reuses the
same devices and thresholds.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

from crackle.config import AnalysisConfig

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 60.0

# Fields that map one-to-one onto AnalysisConfig
CONFIG_FIELDS = (
    "sample_rate",
    "tone_frequency",
    "tone_duration",
    "tone_amplitude",
    "capture_margin",
    "clipping_threshold",
    "min_flagged_fraction",
    "correlation_method",
    "min_peak_to_mean",
)


def _expected_types(name: str) -> tuple[type, ...]:
    if name == "sample_rate":
        return (int,)
    if name in CONFIG_FIELDS and name != "correlation_method":
        return (int, float)
    return (str,)


def _has_expected_type(name: str, value: Any) -> bool:
    # JSON booleans would pass as ints
    return not isinstance(value, bool) and isinstance(value, _expected_types(name))


@dataclass
class AnalyzerSettings:
    """Persisted analyzer settings.

    Unset analysis fields fall back to the :class:`AnalysisConfig` defaults.
    Changes are debounced and saved after 60 seconds of inactivity, or
    immediately on flush().
    """

    log_level: str | None = None
    input_device: str | None = None
    output_device: str | None = None
    hook: str | None = None

    sample_rate: int | None = None
    tone_frequency: float | None = None
    tone_duration: float | None = None
    tone_amplitude: float | None = None
    capture_margin: float | None = None
    clipping_threshold: float | None = None
    min_flagged_fraction: float | None = None
    correlation_method: str | None = None
    min_peak_to_mean: float | None = None

    # Internal state (not serialized)
    _settings_file: Path | None = field(default=None, repr=False, compare=False)
    _debounce_save_handle: asyncio.TimerHandle | None = field(
        default=None, repr=False, compare=False
    )

    # Fields to exclude from serialization
    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def to_config(self, *, single_shot: bool = False) -> AnalysisConfig:
        """Build an analysis configuration from the stored values."""
        overrides = {
            name: getattr(self, name) for name in CONFIG_FIELDS if getattr(self, name) is not None
        }
        return AnalysisConfig(single_shot=single_shot, **overrides)

    def update(self, **updates: Any) -> None:
        """Update settings fields. None values are ignored; changes trigger a save."""
        known = {f.name for f in fields(self)} - self._internal_fields
        unknown = set(updates) - known
        if unknown:
            raise TypeError(f"unknown settings: {', '.join(sorted(unknown))}")

        changed = False
        for field_name, value in updates.items():
            if value is not None and getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True

        if changed:
            self._schedule_save()

    async def load(self) -> None:
        """Load settings from disk."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load)

    async def flush(self) -> None:
        """Immediately save any pending changes to disk."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
            self._debounce_save_handle = None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._save)

    def _schedule_save(self) -> None:
        """Schedule a debounced save operation."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()

        loop = asyncio.get_running_loop()
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called by the timer to save settings in executor."""
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed settings file %s", self._settings_file)
            return

        for f in fields(self):
            if f.name in self._internal_fields or f.name not in data:
                continue
            value = data[f.name]
            if value is not None and not _has_expected_type(f.name, value):
                logger.warning(
                    "Ignoring %s=%r in %s: expected %s",
                    f.name,
                    value,
                    self._settings_file,
                    " or ".join(t.__name__ for t in _expected_types(f.name)),
                )
                continue
            setattr(self, f.name, value)
        logger.info("Loaded settings from %s", self._settings_file)

    def _save(self) -> None:
        """Save settings to the settings file (blocking I/O)."""
        if self._settings_file is None:
            return
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            self._settings_file.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
            logger.debug("Saved settings to %s", self._settings_file)
        except OSError as e:
            logger.warning("Failed to save settings to %s: %s", self._settings_file, e)


async def get_analyzer_settings(config_dir: str | None = None) -> AnalyzerSettings:
    """Create and load analyzer settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/crackle.

    Returns:
        AnalyzerSettings instance with settings loaded from disk.
    """
    config_path = Path(config_dir) if config_dir else Path.home() / ".config" / "crackle"
    settings = AnalyzerSettings(_settings_file=config_path / "settings.json")
    await settings.load()
    return settings
