"""
Pipeline module for video I/O operations.

Provides FFmpeg-based frame reading, camera capture and encoding.
"""

from .camera import Camera, parse_camera_info, parse_devices
from .decoder import Video, read_video_frame
from .encoder import VideoWriter, WriterOptions, load_writer_options, resolve_options
from .pipeline import FramePipeline, FramePipelineConfig
from .probe import (
    StreamInfo,
    audio_codec,
    get_video_info,
    has_auxiliary_streams,
    parse_probe_output,
)
from .process import (
    CancelToken,
    Pipeline,
    PipelineState,
    close_all,
    install_signal_handlers,
    open_pipeline,
    uninstall_signal_handlers,
)
from .select import build_select_expression

__all__ = [
    "Camera",
    "parse_camera_info",
    "parse_devices",
    "Video",
    "read_video_frame",
    "VideoWriter",
    "WriterOptions",
    "load_writer_options",
    "resolve_options",
    "FramePipeline",
    "FramePipelineConfig",
    "StreamInfo",
    "audio_codec",
    "has_auxiliary_streams",
    "get_video_info",
    "parse_probe_output",
    "CancelToken",
    "Pipeline",
    "PipelineState",
    "close_all",
    "install_signal_handlers",
    "open_pipeline",
    "uninstall_signal_handlers",
    "build_select_expression",
]
