"""
Locating the FFmpeg and FFprobe executables.
"""

import os
import shutil

from ..config import get_settings
from ..errors import ToolMissingError


_INSTALL_HINT = "Please install FFmpeg: https://ffmpeg.org/download.html"


def _locate(program: str, override: str | None, env_name: str) -> str:
    if override:
        if os.path.isfile(override):
            return override
        raise ToolMissingError(f"{env_name} points to a missing file: {override}")
    path = shutil.which(program)
    if path is None:
        raise ToolMissingError(f"{program} not found in PATH. {_INSTALL_HINT}")
    return path


def get_ffmpeg_path() -> str:
    """Get path to FFmpeg executable."""
    return _locate("ffmpeg", get_settings().ffmpeg, "FRAMEPIPE_FFMPEG")


def get_ffprobe_path() -> str:
    """Get path to FFprobe executable."""
    return _locate("ffprobe", get_settings().ffprobe, "FRAMEPIPE_FFPROBE")


def engine_loglevel() -> str:
    """Loglevel passed to every engine invocation."""
    return get_settings().loglevel
