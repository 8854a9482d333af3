"""
Frame copy pipeline orchestrator.

Coordinates decode -> process -> encode, frame by frame, without
touching the disk in between.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .decoder import Video
from .encoder import VideoWriter, WriterOptions
from .probe import StreamInfo
from .process import CancelToken

logger = logging.getLogger(__name__)


FrameProcessor = Callable[[bytearray], "bytes | bytearray | None"]


@dataclass
class FramePipelineConfig:
    """Configuration for the copy pipeline; None keeps the source's value."""

    # Output settings
    fps: float | None = None
    codec: str | None = None
    bitrate: int | None = None
    quality: float | None = None

    # Macroblock size; 1 keeps the source frame size exactly
    macro: int = 1

    # Copy audio/subtitle/data/attachment streams from the input
    copy_streams: bool = True

    # Pixel depth frames are handed to the processor in
    depth: int = 4


class FramePipeline:
    """
    Re-encode a video, optionally transforming every frame.

    The output keeps the source's frame rate, bitrate and codec unless
    the config overrides them, and carries over the source's other
    streams when it has any.

    Args:
        config: Pipeline configuration
    """

    def __init__(self, config: FramePipelineConfig | None = None):
        self.config = config or FramePipelineConfig()
        self._input_info: StreamInfo | None = None

    @property
    def input_info(self) -> StreamInfo | None:
        """Get info about current input video."""
        return self._input_info

    def writer_options(self, video: Video) -> WriterOptions:
        """Writer options derived from the source and the config overrides."""
        cfg = self.config
        options = WriterOptions(
            fps=cfg.fps or video.fps or None,
            codec=cfg.codec or video.codec or None,
            quality=cfg.quality,
            macro=cfg.macro,
        )
        # An explicit quality wins over the source bitrate.
        if cfg.bitrate is not None:
            options.bitrate = cfg.bitrate
        elif cfg.quality is None:
            options.bitrate = video.bitrate or None
        if cfg.copy_streams and video.has_streams:
            options.stream_file = video.filename
        return options

    def process(
        self,
        input_path: str | Path,
        output_path: str | Path,
        frame_processor: FrameProcessor | None = None,
        progress_callback: Callable[[str, int, int], None] | None = None,
        cancel: CancelToken | None = None,
    ) -> int:
        """
        Run the copy pipeline.

        Args:
            input_path: Path to input video
            output_path: Path for output video
            frame_processor: Optional function applied to every frame buffer.
                Returns the replacement frame, or None to keep the frame
                (possibly modified in place).
            progress_callback: Optional callback(stage, current, total)
            cancel: Optional token to abort a long copy

        Returns:
            Number of frames written
        """
        video = Video(input_path, depth=self.config.depth)
        self._input_info = video.info
        total = video.frames

        writer = VideoWriter(
            output_path,
            video.width,
            video.height,
            options=self.writer_options(video),
            depth=self.config.depth,
        )
        logger.info(
            "Copying %s -> %s (%dx%d, %d frames, codec=%s)",
            input_path, output_path, video.width, video.height, total, writer.codec,
        )

        written = 0
        if progress_callback:
            progress_callback("copy", 0, total)
        with video, writer:
            while video.read(cancel):
                frame = video.frame_buffer
                if frame_processor is not None:
                    result = frame_processor(frame)
                    if result is not None:
                        frame = result
                if writer.padded:
                    frame = writer.pad_frame(frame)
                writer.write(frame, cancel)
                written += 1
                if progress_callback:
                    progress_callback("copy", written, total)

        logger.info("Wrote %d frames to %s", written, output_path)
        return written

    def passthrough(
        self,
        input_path: str | Path,
        output_path: str | Path,
        progress_callback: Callable[[str, int, int], None] | None = None,
    ) -> int:
        """
        Run pipeline in passthrough mode (decode + encode, no processing).

        Useful for testing the pipeline without any frame changes.
        """
        return self.process(
            input_path,
            output_path,
            frame_processor=None,
            progress_callback=progress_callback,
        )
