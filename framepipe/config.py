"""
Runtime settings for framepipe.

Settings come from the environment so that a deployment can point the
library at a specific FFmpeg build without code changes:

    FRAMEPIPE_FFMPEG          explicit path to the ffmpeg executable
    FRAMEPIPE_FFPROBE         explicit path to the ffprobe executable
    FRAMEPIPE_LOGLEVEL        value passed to the engine's -loglevel (default: error)
    FRAMEPIPE_HANDLE_SIGNALS  install the SIGINT/SIGTERM teardown handler (default: 1)
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass
class Settings:
    """Process-wide framepipe settings."""
    ffmpeg: str | None = None
    ffprobe: str | None = None
    loglevel: str = "error"
    handle_signals: bool = True

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            ffmpeg=env.get("FRAMEPIPE_FFMPEG") or None,
            ffprobe=env.get("FRAMEPIPE_FFPROBE") or None,
            loglevel=env.get("FRAMEPIPE_LOGLEVEL") or "error",
            handle_signals=_parse_bool(env.get("FRAMEPIPE_HANDLE_SIGNALS"), True),
        )


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    value = value.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"Invalid boolean setting: {value!r}")


def get_settings() -> Settings:
    """Return settings for the current environment (re-read on every call)."""
    return Settings.from_env()


def load_config(config_path: str | Path) -> dict:
    """Load a YAML config file into a dict (empty file -> empty dict)."""
    with open(config_path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")
    return data
