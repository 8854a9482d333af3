"""
FFprobe-based metadata probing.

Runs ffprobe in its compact output mode, one line per stream:

    stream|index=0|codec_name=h264|width=480|height=270|...

and turns that into an ordered list of key/value records, then into a
typed StreamInfo.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NoStreamError, ProbeError, SourceNotFoundError
from .tools import get_ffprobe_path

logger = logging.getLogger(__name__)


AUXILIARY_STREAM_TYPES = ("audio", "subtitle", "data", "attachment")


@dataclass
class StreamInfo:
    """Metadata for one video stream (or capture device)."""
    filename: str
    width: int = 0
    height: int = 0
    depth: int = 4
    bitrate: int = 0      # bits/s
    frames: int = 0       # 0 when unknown
    duration: float = 0.0  # seconds
    fps: float = 0.0
    codec: str = ""
    audio_codec: str | None = None
    stream: int = 0
    has_streams: bool = False
    extra: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def resolution(self) -> tuple[int, int]:
        """Return (width, height) tuple."""
        return (self.width, self.height)

    @property
    def frame_size(self) -> int:
        """Bytes in one raw frame."""
        return self.width * self.height * self.depth

    @classmethod
    def from_probe(
        cls,
        filename: str | Path,
        record: dict[str, str],
        stream: int = 0,
        depth: int = 4,
    ) -> "StreamInfo":
        """
        Build a StreamInfo from one ffprobe stream record.

        Missing or unparsable numeric fields become 0. The frame rate is
        only computed when both parts of ``r_frame_rate`` are present and
        the denominator is non-zero.
        """
        info = cls(filename=str(filename), stream=stream, depth=depth, extra=dict(record))
        info.width = int(parse_number(record.get("width")))
        info.height = int(parse_number(record.get("height")))
        info.duration = parse_number(record.get("duration"))
        info.frames = int(parse_number(record.get("nb_frames")))
        info.bitrate = int(parse_number(record.get("bit_rate")))
        info.codec = record.get("codec_name", "")

        num, sep, den = record.get("r_frame_rate", "").partition("/")
        if sep and num and den:
            denominator = parse_number(den)
            if denominator != 0:
                info.fps = parse_number(num) / denominator
        return info


def parse_number(value: str | None) -> float:
    """Parse a probe value as float; anything unparsable is 0."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_probe_output(text: str) -> list[dict[str, str]]:
    """
    Parse compact ffprobe output into one dict per stream.

    Tokens are split on the first '='. When a key repeats within a stream
    record, the first value wins.
    """
    records = []
    for line in text.splitlines():
        if not line.strip():
            continue
        record: dict[str, str] = {}
        for token in line.split("|"):
            key, sep, value = token.partition("=")
            if sep and key not in record:
                record[key] = value
        records.append(record)
    return records


def probe(source: str | Path, stream_type: str | None = None) -> list[dict[str, str]]:
    """
    Probe the streams of a media file.

    Args:
        source: Path to the media file
        stream_type: FFprobe stream specifier ('v', 'a', 's', 'd', 't'),
            or None for every stream

    Returns:
        One key/value dict per matching stream, in ffprobe's order.
        Empty if the source has no stream of that type.

    Raises:
        SourceNotFoundError: If the source does not exist
        ToolMissingError: If ffprobe is not installed
        ProbeError: If ffprobe fails to start or exits abnormally
    """
    source = Path(source)
    if not source.exists():
        raise SourceNotFoundError(f"Video not found: {source}")

    ffprobe = get_ffprobe_path()

    cmd = [ffprobe, "-show_streams"]
    if stream_type is not None:
        cmd.extend(["-select_streams", stream_type])
    cmd.extend([
        "-print_format", "compact",
        "-loglevel", "quiet",
        str(source),
    ])

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    except OSError as e:
        raise ProbeError(f"Failed to start ffprobe: {e}") from e

    if result.returncode != 0:
        raise ProbeError(
            f"FFprobe failed on {source} (status {result.returncode}): {result.stderr.strip()}"
        )

    records = parse_probe_output(result.stdout)
    logger.debug("Probed %s (%s): %d stream(s)", source, stream_type or "all", len(records))
    return records


def _has_auxiliary(records: list[dict[str, str]]) -> bool:
    return any(r.get("codec_type") in AUXILIARY_STREAM_TYPES for r in records)


def _first_audio_codec(records: list[dict[str, str]]) -> str | None:
    for record in records:
        if record.get("codec_type") == "audio":
            return record.get("codec_name") or None
    return None


def has_auxiliary_streams(source: str | Path) -> bool:
    """True if the file has any audio, subtitle, data or attachment stream."""
    return _has_auxiliary(probe(source))


def audio_codec(source: str | Path) -> str | None:
    """Codec of the file's first audio stream, or None without audio."""
    return _first_audio_codec(probe(source))


def get_video_info(video_path: str | Path, stream: int = 0, depth: int = 4) -> StreamInfo:
    """
    Get metadata for one video stream of a file.

    Args:
        video_path: Path to video file
        stream: Zero-based index among the file's video streams
        depth: Pixel depth the caller will decode at (3 or 4)

    Raises:
        NoStreamError: If the file has no such video stream
    """
    infos = get_stream_infos(video_path, depth)
    if not 0 <= stream < len(infos):
        raise NoStreamError(
            f"Video stream {stream} not found in {video_path} ({len(infos)} available)"
        )
    return infos[stream]


def get_stream_infos(video_path: str | Path, depth: int = 4) -> list[StreamInfo]:
    """
    Get metadata for every video stream of a file.

    Uses one unfiltered probe so that auxiliary streams and the audio
    codec are known without a second ffprobe run.

    Raises:
        NoStreamError: If the file has no video stream
    """
    records = probe(video_path)
    video_records = [r for r in records if r.get("codec_type") == "video"]
    if not video_records:
        raise NoStreamError(f"No video stream found in: {video_path}")

    has_streams = _has_auxiliary(records)
    audio = _first_audio_codec(records)
    infos = []
    for index, record in enumerate(video_records):
        info = StreamInfo.from_probe(video_path, record, stream=index, depth=depth)
        info.has_streams = has_streams
        info.audio_codec = audio
        infos.append(info)
    return infos
