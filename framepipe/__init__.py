"""
framepipe - video, camera and image frame IO over FFmpeg pipes.
"""

import logging

from .errors import (
    BufferTooSmallError,
    FrameIndexError,
    FramePipeError,
    ImageFormatError,
    NoStreamError,
    PipeIOError,
    PipelineCancelled,
    ProbeError,
    SourceNotFoundError,
    ToolMissingError,
)
from .image import read_image, write_image
from .pipeline import (
    Camera,
    CancelToken,
    FramePipeline,
    FramePipelineConfig,
    StreamInfo,
    Video,
    VideoWriter,
    WriterOptions,
    build_select_expression,
    close_all,
    load_writer_options,
    read_video_frame,
)
from .pipeline.probe import probe

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "BufferTooSmallError",
    "FrameIndexError",
    "FramePipeError",
    "ImageFormatError",
    "NoStreamError",
    "PipeIOError",
    "PipelineCancelled",
    "ProbeError",
    "SourceNotFoundError",
    "ToolMissingError",
    "read_image",
    "write_image",
    "Camera",
    "CancelToken",
    "FramePipeline",
    "FramePipelineConfig",
    "StreamInfo",
    "Video",
    "VideoWriter",
    "WriterOptions",
    "build_select_expression",
    "close_all",
    "load_writer_options",
    "probe",
    "read_video_frame",
]
