"""
FFmpeg-based video decoder for frame extraction.

Streams raw RGB/RGBA frames out of FFmpeg's stdout, one fixed-size buffer
at a time, either sequentially or for an explicit set of frame indices.
"""

import logging
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np

from ..errors import (
    BufferTooSmallError,
    FrameIndexError,
    NoStreamError,
    PipeIOError,
    PipelineCancelled,
    SourceNotFoundError,
)
from .probe import StreamInfo, get_stream_infos, get_video_info
from .process import CancelToken, Pipeline, PipelineState
from .select import build_select_expression
from .tools import engine_loglevel, get_ffmpeg_path

logger = logging.getLogger(__name__)


PIX_FMTS = {3: "rgb24", 4: "rgba"}


def pix_fmt_for_depth(depth: int) -> str:
    """Raw pixel format for a pixel depth of 3 (RGB) or 4 (RGBA)."""
    try:
        return PIX_FMTS[depth]
    except KeyError:
        raise ValueError(f"depth must be 3 or 4, got {depth}") from None


class FrameReader:
    """
    Shared sequential reading logic for videos and cameras.

    The decode pipeline is only started on the first ``read()``. Each
    successful read leaves exactly one frame in ``frame_buffer``.
    """

    def __init__(self, info: StreamInfo):
        pix_fmt_for_depth(info.depth)
        if info.width <= 0 or info.height <= 0:
            raise NoStreamError(
                f"Unusable frame size {info.width}x{info.height} for {info.filename}"
            )
        self._info = info
        self._framebuffer = None
        self._pipeline: Pipeline | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __iter__(self) -> Iterator:
        while self.read():
            yield self._framebuffer

    @property
    def info(self) -> StreamInfo:
        return self._info

    @property
    def width(self) -> int:
        return self._info.width

    @property
    def height(self) -> int:
        return self._info.height

    @property
    def depth(self) -> int:
        return self._info.depth

    @property
    def fps(self) -> float:
        return self._info.fps

    @property
    def codec(self) -> str:
        return self._info.codec

    @property
    def frames(self) -> int:
        return self._info.frames

    @property
    def frame_size(self) -> int:
        """Bytes in one frame: width * height * depth."""
        return self._info.frame_size

    @property
    def frame_buffer(self):
        """The most recently read frame (None before the first read)."""
        return self._framebuffer

    @property
    def pipeline(self) -> Pipeline | None:
        return self._pipeline

    def set_frame_buffer(self, buffer) -> None:
        """
        Read future frames into a caller-owned buffer.

        The buffer may be larger than one frame; only the first
        ``frame_size`` bytes are written.

        Raises:
            BufferTooSmallError: If the buffer cannot hold one frame
        """
        size = memoryview(buffer).nbytes
        if size < self.frame_size:
            raise BufferTooSmallError(
                f"Frame buffer holds {size} bytes, {self.frame_size} required"
            )
        self._framebuffer = buffer

    def frame_array(self) -> np.ndarray:
        """The current frame as a (height, width, depth) uint8 view."""
        if self._framebuffer is None:
            raise ValueError("No frame has been read yet")
        data = np.frombuffer(self._framebuffer, dtype=np.uint8, count=self.frame_size)
        return data.reshape(self.height, self.width, self.depth)

    def _decode_command(self) -> list[str]:
        raise NotImplementedError

    def read(self, cancel: CancelToken | None = None) -> bool:
        """
        Read the next frame into the frame buffer.

        Returns:
            True if a full frame was read. False at end of stream; the
            pipeline is closed at that point and never reopened.
        """
        if self._pipeline is None:
            self._pipeline = Pipeline(self._decode_command(), "r")
        if self._pipeline.state is PipelineState.CLOSED:
            return False
        if self._pipeline.state is PipelineState.UNOPENED:
            self._pipeline.start()
        if self._framebuffer is None:
            self._framebuffer = bytearray(self.frame_size)

        try:
            total = self._pipeline.read_into(self._framebuffer, self.frame_size, cancel)
        except PipelineCancelled:
            raise
        except PipeIOError as e:
            # A dead engine and a finished one look the same from here.
            logger.debug("Treating read failure as end of stream: %s", e)
            total = -1

        if total < self.frame_size:
            self._pipeline.close(check=False)
            return False
        return True

    def close(self) -> None:
        """Close the pipe and wait for the engine. Safe to call repeatedly."""
        if self._pipeline is not None:
            self._pipeline.close(check=False)


class Video(FrameReader):
    """
    Frame-by-frame reader for one video stream of a media file.

    Args:
        filename: Path to the video file
        stream: Zero-based index among the file's video streams
        depth: 4 for RGBA frames (default), 3 for RGB

    Raises:
        SourceNotFoundError: If the file does not exist
        ToolMissingError: If ffmpeg or ffprobe is not installed
        NoStreamError: If the file has no such video stream, or the
            stream reports no usable frame size

    Containers that do not record a frame count (Matroska, WebM) report
    ``frames == 0``. Sequential reading works on them, but ``read_frame``
    and ``read_frames`` raise FrameIndexError for every index.
    """

    def __init__(self, filename: str | Path, stream: int = 0, depth: int = 4):
        pix_fmt_for_depth(depth)
        path = Path(filename)
        if not path.exists():
            raise SourceNotFoundError(f"Video not found: {path}")
        get_ffmpeg_path()
        super().__init__(get_video_info(filename, stream, depth))

    @classmethod
    def streams(cls, filename: str | Path, depth: int = 4) -> list["Video"]:
        """Open every video stream of a file, probing it only once."""
        path = Path(filename)
        if not path.exists():
            raise SourceNotFoundError(f"Video not found: {path}")
        get_ffmpeg_path()
        videos = []
        for info in get_stream_infos(filename, depth):
            video = cls.__new__(cls)
            FrameReader.__init__(video, info)
            videos.append(video)
        return videos

    def __repr__(self) -> str:
        return (
            f"Video({self.filename!r}, stream={self.stream}, "
            f"{self.width}x{self.height}x{self.depth}, frames={self.frames})"
        )

    @property
    def filename(self) -> str:
        return self._info.filename

    @property
    def bitrate(self) -> int:
        return self._info.bitrate

    @property
    def duration(self) -> float:
        return self._info.duration

    @property
    def audio_codec(self) -> str | None:
        return self._info.audio_codec

    @property
    def stream(self) -> int:
        return self._info.stream

    @property
    def has_streams(self) -> bool:
        """True if the file also carries audio/subtitle/data/attachment streams."""
        return self._info.has_streams

    def _decode_command(self, select: str | None = None) -> list[str]:
        cmd = [
            get_ffmpeg_path(),
            "-loglevel", engine_loglevel(),
            "-i", self.filename,
            "-f", "image2pipe",
            "-pix_fmt", pix_fmt_for_depth(self.depth),
            "-vcodec", "rawvideo",
            "-map", f"0:v:{self.stream}",
        ]
        if select is not None:
            # Frame-rate sync off, so the engine emits exactly the selected frames.
            cmd.extend(["-vf", select, "-vsync", "0"])
        cmd.append("-")
        return cmd

    def _check_index(self, n: int) -> None:
        if not 0 <= n < self.frames:
            raise FrameIndexError(
                f"Frame index {n} is not in frame count range [0, {self.frames})"
            )

    def _read_selected(
        self,
        indices: Sequence[int],
        buffers: Sequence,
        cancel: CancelToken | None,
    ) -> None:
        # `indices` must be ascending: the engine emits frames in stream order.
        with Pipeline(self._decode_command(build_select_expression(*indices)), "r") as pipeline:
            for index, buffer in zip(indices, buffers):
                total = pipeline.read_into(buffer, self.frame_size, cancel)
                if total < self.frame_size:
                    raise PipeIOError(
                        f"Engine stopped before frame {index} was complete "
                        f"({total} of {self.frame_size} bytes)"
                    )
            pipeline.drain()

    def read_frame(self, n: int, cancel: CancelToken | None = None) -> None:
        """
        Read frame ``n`` (zero-based) into the frame buffer.

        Runs a separate one-shot pipeline; sequential reading progress is
        not affected.

        Raises:
            FrameIndexError: If n is outside [0, frames)
            PipeIOError: If the engine fails or emits a truncated frame
        """
        self._check_index(n)
        if self._framebuffer is None:
            self._framebuffer = bytearray(self.frame_size)
        self._read_selected([n], [self._framebuffer], cancel)

    def read_frames(self, *n: int, cancel: CancelToken | None = None) -> list[bytearray]:
        """
        Read several frames by index.

        Every index is validated before the engine is started.

        Returns:
            One new buffer per requested index, in the order requested.
            Repeated indices get equal, separate buffers.

        Raises:
            FrameIndexError: If no index is given or any is out of range
            PipeIOError: If the engine fails or emits a truncated frame
        """
        if not n:
            raise FrameIndexError("No frame indices specified")
        for index in n:
            self._check_index(index)

        wanted = sorted(set(n))
        buffers = [bytearray(self.frame_size) for _ in wanted]
        self._read_selected(wanted, buffers, cancel)

        decoded = dict(zip(wanted, buffers))
        frames = []
        handed_out = set()
        for index in n:
            if index in handed_out:
                frames.append(bytearray(decoded[index]))
            else:
                frames.append(decoded[index])
                handed_out.add(index)
        return frames


def read_video_frame(filename: str | Path, n: int, buffer) -> None:
    """
    Decode frame ``n`` of a video straight into ``buffer`` as RGBA.

    Raises:
        SourceNotFoundError: If the file does not exist
        BufferTooSmallError: If buffer is None or smaller than one frame
        FrameIndexError: If n is out of range
    """
    path = Path(filename)
    if not path.exists():
        raise SourceNotFoundError(f"Video not found: {path}")
    if buffer is None:
        raise BufferTooSmallError("No frame buffer given")
    video = Video(path)
    video.set_frame_buffer(buffer)
    video.read_frame(n)
