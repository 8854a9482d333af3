"""
FFmpeg-based video encoder for frame encoding.

Raw frames are written to FFmpeg's stdin. Output parameters follow the
same defaults imageio-ffmpeg uses: libx264 at a CRF derived from a 0..1
quality, 16-pixel macroblock padding, infinite GIF looping.
"""

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path

import numpy as np

from ..config import load_config
from ..errors import BufferTooSmallError, SourceNotFoundError
from .decoder import pix_fmt_for_depth
from .process import CancelToken, Pipeline, PipelineState
from .tools import engine_loglevel, get_ffmpeg_path

logger = logging.getLogger(__name__)


# Codecs whose quality knob is -crf (0 = lossless, 51 = worst).
H264_CODECS = {"libx264", "libx264rgb", "h264"}


@dataclass
class WriterOptions:
    """
    Encoding options; every field is optional.

    None means "use the default" (see ``resolve_options``), so an explicit
    quality of 0 (best) is not mistaken for an unset value.

    Attributes:
        bitrate: Target bitrate in bits/s; overrides quality when set
        quality: 0 (best) .. 1 (worst), default 0.5
        macro: Macroblock size the frame size is padded to, default 16
        fps: Output frame rate, default 25
        codec: FFmpeg encoder name, default chosen from the file extension
        loop: GIF loop count; 0 loops forever, -1 plays once
        delay: GIF final-frame delay in centiseconds; 0/None reuses the previous delay
        stream_file: Media file whose audio/subtitle/data/attachment streams
            are copied into the output
        audio_codec: Re-encode the copied audio with this codec instead of copying it
    """
    bitrate: int | None = None
    quality: float | None = None
    macro: int | None = None
    fps: float | None = None
    codec: str | None = None
    loop: int | None = None
    delay: int | None = None
    stream_file: str | Path | None = None
    audio_codec: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "WriterOptions":
        """Build options from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown writer option(s): {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> dict:
        """Only the fields that were set."""
        return {k: v for k, v in asdict(self).items() if v is not None}


def load_writer_options(config_path: str | Path) -> WriterOptions:
    """Load WriterOptions from a YAML file."""
    return WriterOptions.from_dict(load_config(config_path))


@dataclass(frozen=True)
class ResolvedOptions:
    """WriterOptions with every default applied."""
    bitrate: int | None
    quality: float
    macro: int
    fps: float
    codec: str
    loop: int
    delay: int
    stream_file: str | None
    audio_codec: str | None


def default_codec(filename: str | Path) -> str:
    """Encoder chosen from the output extension."""
    suffix = Path(filename).suffix.lower()
    if suffix == ".wmv":
        return "msmpeg4"
    if suffix == ".gif":
        return "gif"
    return "libx264"


def is_gif(filename: str | Path) -> bool:
    return Path(filename).suffix.lower() == ".gif"


def resolve_options(filename: str | Path, options: WriterOptions | None = None) -> ResolvedOptions:
    """
    Apply defaults to sparse writer options.

    Raises:
        SourceNotFoundError: If ``stream_file`` is given but does not exist
    """
    options = options or WriterOptions()

    stream_file = None
    if options.stream_file is not None:
        if not Path(options.stream_file).exists():
            raise SourceNotFoundError(f"Stream file not found: {options.stream_file}")
        stream_file = str(options.stream_file)

    quality = 0.5 if options.quality is None else options.quality
    quality = min(max(float(quality), 0.0), 1.0)

    return ResolvedOptions(
        bitrate=options.bitrate or None,
        quality=quality,
        macro=options.macro or 16,
        fps=options.fps or 25,
        codec=options.codec or default_codec(filename),
        loop=0 if options.loop is None else options.loop,
        delay=options.delay or -1,
        stream_file=stream_file,
        audio_codec=options.audio_codec or None,
    )


def padded_size(width: int, height: int, macro: int) -> tuple[int, int]:
    """Round width and height up to the next multiple of ``macro``."""
    if macro > 1:
        if width % macro:
            width += macro - width % macro
        if height % macro:
            height += macro - height % macro
    return width, height


class VideoWriter:
    """
    Encode raw frames to a video or GIF file.

    If the requested size is not a multiple of the macroblock size, it is
    padded up at construction; ``width``/``height`` then report the padded
    size and every frame passed to ``write()`` must be that size.

    Args:
        filename: Output file (overwritten if it exists)
        width: Frame width in pixels
        height: Frame height in pixels
        options: Sparse encoding options
        depth: Bytes per input pixel, 4 for RGBA (default) or 3 for RGB

    Raises:
        ValueError: If width/height are not positive or depth is invalid
        ToolMissingError: If ffmpeg is not installed
        SourceNotFoundError: If ``options.stream_file`` does not exist
    """

    def __init__(
        self,
        filename: str | Path,
        width: int,
        height: int,
        options: WriterOptions | None = None,
        depth: int = 4,
    ):
        if width <= 0 or height <= 0:
            raise ValueError("width and height must be greater than 0")
        pix_fmt_for_depth(depth)
        get_ffmpeg_path()

        self.filename = str(filename)
        self.depth = depth
        self.options = resolve_options(filename, options)
        self.source_width = width
        self.source_height = height
        self.width, self.height = padded_size(width, height, self.options.macro)
        self._pipeline: Pipeline | None = None

    def __enter__(self) -> "VideoWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        elif self._pipeline is not None:
            self._pipeline.kill()

    def __repr__(self) -> str:
        return (
            f"VideoWriter({self.filename!r}, {self.width}x{self.height}x{self.depth}, "
            f"codec={self.codec!r}, fps={self.fps})"
        )

    @property
    def codec(self) -> str:
        return self.options.codec

    @property
    def fps(self) -> float:
        return self.options.fps

    @property
    def bitrate(self) -> int | None:
        return self.options.bitrate

    @property
    def quality(self) -> float:
        return self.options.quality

    @property
    def macro(self) -> int:
        return self.options.macro

    @property
    def loop(self) -> int:
        return self.options.loop

    @property
    def delay(self) -> int:
        return self.options.delay

    @property
    def stream_file(self) -> str | None:
        return self.options.stream_file

    @property
    def audio_codec(self) -> str | None:
        return self.options.audio_codec

    @property
    def frame_size(self) -> int:
        """Bytes expected per ``write()``: padded width * height * depth."""
        return self.width * self.height * self.depth

    @property
    def padded(self) -> bool:
        return (self.width, self.height) != (self.source_width, self.source_height)

    @property
    def pipeline(self) -> Pipeline | None:
        return self._pipeline

    def quality_args(self) -> list[str]:
        """Rate control: explicit bitrate, else a codec-specific quality scale."""
        if self.bitrate:
            return ["-b:v", str(self.bitrate)]
        if self.codec in H264_CODECS:
            return ["-crf", str(int(self.quality * 51))]
        return ["-qscale:v", str(int(self.quality * 30) + 1)]

    def build_command(self) -> list[str]:
        """
        Full FFmpeg argument vector for this writer.

        With a stream file, the video is mapped once as ``0:v:0`` right
        after the second input. When ``audio_codec`` is set, only
        ``-c:a CODEC -map 1:a?`` is appended at the end; repeating the
        video map there would put the video into the output twice.
        """
        gif = is_gif(self.filename)
        copy_streams = self.stream_file is not None and not gif

        cmd = [
            get_ffmpeg_path(),
            "-y",
            "-loglevel", engine_loglevel(),
            "-f", "rawvideo",
            "-vcodec", "rawvideo",
            "-s", f"{self.width}x{self.height}",
            "-pix_fmt", pix_fmt_for_depth(self.depth),
            "-r", f"{self.fps:.02f}",
            "-i", "-",
        ]

        # GIF cannot hold the extra streams.
        if copy_streams:
            cmd.extend(["-i", self.stream_file, "-map", "0:v:0"])
            if self.audio_codec is None:
                cmd.extend(["-map", "1:a?"])
            cmd.extend(["-map", "1:s?", "-map", "1:d?", "-map", "1:t?"])
            if self.audio_codec is None:
                cmd.extend(["-c:a", "copy"])
            cmd.extend(["-c:s", "copy", "-c:d", "copy", "-c:t", "copy", "-shortest"])

        # Encoded output is always 8-bit without alpha.
        cmd.extend(["-vcodec", self.codec, "-pix_fmt", "rgb8" if gif else "yuv420p"])
        cmd.extend(self.quality_args())

        if gif:
            cmd.extend(["-loop", str(self.loop), "-final_delay", str(self.delay)])

        if self.padded:
            cmd.extend(["-vf", f"scale={self.width}:{self.height}"])

        # Must follow the 0:v:0 map so the video stays output stream 0.
        if copy_streams and self.audio_codec is not None:
            cmd.extend(["-c:a", self.audio_codec, "-map", "1:a?"])

        cmd.append(self.filename)
        return cmd

    def pad_frame(self, frame) -> bytes:
        """
        Pad a frame of the requested (unpadded) size to the writer's size.

        The extra columns and rows on the right and bottom are zero.
        """
        src = np.frombuffer(
            frame,
            dtype=np.uint8,
            count=self.source_width * self.source_height * self.depth,
        ).reshape(self.source_height, self.source_width, self.depth)
        out = np.zeros((self.height, self.width, self.depth), dtype=np.uint8)
        out[:self.source_height, :self.source_width] = src
        return out.tobytes()

    def write(self, frame, cancel: CancelToken | None = None) -> None:
        """
        Encode one frame.

        Only the first ``frame_size`` bytes of ``frame`` are used.

        Raises:
            BufferTooSmallError: If the frame is shorter than ``frame_size``
            PipeIOError: If the engine rejected the data or died
        """
        size = memoryview(frame).nbytes
        if size < self.frame_size:
            raise BufferTooSmallError(
                f"Frame has {size} bytes, writer expects {self.frame_size} "
                f"({self.width}x{self.height}x{self.depth})"
            )
        if self._pipeline is None:
            self._pipeline = Pipeline(self.build_command(), "w")
        if self._pipeline.state is PipelineState.UNOPENED:
            self._pipeline.start()
        self._pipeline.write(memoryview(frame).cast("B")[:self.frame_size], cancel)

    def close(self) -> None:
        """
        Finish the file: close stdin and wait for FFmpeg.

        Raises:
            PipeIOError: If FFmpeg exited with a non-zero status
        """
        if self._pipeline is not None:
            self._pipeline.close(check=True)
