"""
Live capture from webcams and other video devices through FFmpeg.

Device naming differs per platform:
    Linux    /dev/videoN  (v4l2)
    macOS    N            (avfoundation)
    Windows  video=<name> (dshow), name taken from FFmpeg's device listing
"""

import logging
import os
import re
import subprocess
import sys

from ..errors import FramePipeError, NoStreamError, SourceNotFoundError
from .decoder import FrameReader, pix_fmt_for_depth
from .probe import StreamInfo, parse_number
from .tools import engine_loglevel, get_ffmpeg_path

logger = logging.getLogger(__name__)


_QUOTED = re.compile(r'"(.*?)"')
_DIMENSIONS = re.compile(r"\d{2,}x\d{2,}")
_FPS = re.compile(r"(\d+(?:\.\d+)?) fps")
_CODEC = re.compile(r"Video: (.+?)[, ]")


def webcam_format(platform: str | None = None) -> str:
    """FFmpeg input device format for the current (or given) platform."""
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return "v4l2"
    if platform == "darwin":
        return "avfoundation"
    if platform in ("win32", "cygwin"):
        return "dshow"
    raise FramePipeError(f"Camera capture is not supported on {platform}")


def parse_devices(listing: str) -> list[str]:
    """
    Extract video device names from ``ffmpeg -list_devices true -f dshow`` output.

    Only the section between the "DirectShow video devices" and
    "DirectShow audio devices" headers is considered. Some vendors ship
    several devices under one display name; when a name repeats, the
    later device is reported by its alternative name instead.

    Newer FFmpeg builds print no section headers and tag each device
    line with its type instead, e.g. ``"Integrated Camera" (video)``;
    devices tagged with anything but ``(video)`` are skipped.
    """
    lowered = listing.lower()
    start = lowered.find("directshow video devices")
    if start != -1:
        listing = listing[start:]
        lowered = lowered[start:]
    end = lowered.find("directshow audio devices")
    if end != -1:
        listing = listing[:end]

    devices: list[list[str]] = []  # [name, alternative name]
    skipping = False
    for line in listing.replace("\r\n", "\n").split("\n"):
        match = _QUOTED.search(line)
        if match is None:
            continue
        if "Alternative name" in line:
            if devices and not skipping:
                devices[-1][1] = match.group(1)
            continue
        tag = line[match.end():].strip()
        skipping = tag.startswith("(") and tag != "(video)"
        if not skipping:
            devices.append([match.group(1), ""])

    names: list[str] = []
    for name, alternative in devices:
        if name in names and alternative:
            names.append(alternative)
        else:
            names.append(name)
    return names


def parse_camera_info(header: str, info: StreamInfo) -> StreamInfo:
    """
    Fill size, fps and codec of ``info`` from an FFmpeg input header.

    Example header line:
        Stream #0:0: Video: mjpeg (Baseline) (MJPG / 0x47504A4D), yuvj422p(pc), 1280x720, 30 fps, 30 tbr
    """
    index = header.find("Stream #")
    if index != -1:
        header = header[index:]

    match = _DIMENSIONS.search(header)
    if match:
        width, height = match.group(0).split("x")
        info.width = int(width)
        info.height = int(height)

    match = _FPS.search(header)
    if match:
        info.fps = parse_number(match.group(1))

    match = _CODEC.search(header)
    if match:
        info.codec = match.group(1)
    return info


def list_devices() -> list[str]:
    """List DirectShow video devices (Windows only)."""
    cmd = [
        get_ffmpeg_path(),
        "-hide_banner",
        "-list_devices", "true",
        "-f", "dshow",
        "-i", "dummy",
    ]
    # FFmpeg always exits non-zero here; the listing is on stderr.
    result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    return parse_devices(result.stderr)


def device_name(stream: int, platform: str | None = None) -> str:
    """
    Resolve a numeric camera index to the device identifier FFmpeg expects.

    Raises:
        SourceNotFoundError: If no device exists for that index
    """
    platform = platform or sys.platform
    fmt = webcam_format(platform)
    if fmt == "v4l2":
        device = f"/dev/video{stream}"
        if not os.path.exists(device):
            raise SourceNotFoundError(f"Camera device not found: {device}")
        return device
    if fmt == "avfoundation":
        return str(stream)

    devices = list_devices()
    if not 0 <= stream < len(devices):
        raise SourceNotFoundError(
            f"Could not find device with index {stream} ({len(devices)} video devices)"
        )
    return f"video={devices[stream]}"


class Camera(FrameReader):
    """
    Frame-by-frame reader for a live capture device.

    A live stream has no end, so ``frames`` is 0 and ``read()`` only
    returns False once the device stops or the camera is closed.

    Args:
        stream: Zero-based camera index
        depth: 4 for RGBA frames (default), 3 for RGB

    Raises:
        ToolMissingError: If ffmpeg is not installed
        SourceNotFoundError: If no device exists for ``stream``
        NoStreamError: If FFmpeg reports no usable video format for the device
    """

    def __init__(self, stream: int = 0, depth: int = 4):
        pix_fmt_for_depth(depth)
        get_ffmpeg_path()
        name = device_name(stream)
        info = StreamInfo(filename=name, depth=depth, stream=0)
        parse_camera_info(self._device_header(name), info)
        if info.width == 0 or info.height == 0:
            raise NoStreamError(f"Could not determine frame size of camera: {name}")
        self._index = stream
        super().__init__(info)

    def __repr__(self) -> str:
        return f"Camera({self.name!r}, {self.width}x{self.height}x{self.depth}, fps={self.fps})"

    @property
    def name(self) -> str:
        """Device identifier passed to FFmpeg."""
        return self._info.filename

    @property
    def index(self) -> int:
        return self._index

    @staticmethod
    def _device_header(name: str) -> str:
        # Opens the device briefly; some webcams visibly switch on and off.
        cmd = [
            get_ffmpeg_path(),
            "-hide_banner",
            "-f", webcam_format(),
            "-i", name,
        ]
        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        return result.stderr

    def _decode_command(self) -> list[str]:
        return [
            get_ffmpeg_path(),
            "-hide_banner",
            "-loglevel", engine_loglevel(),
            "-f", webcam_format(),
            "-i", self.name,
            "-f", "image2pipe",
            "-pix_fmt", pix_fmt_for_depth(self.depth),
            "-vcodec", "rawvideo",
            "-",
        ]
