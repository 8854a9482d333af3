"""
Error types raised by framepipe.

Every failure of the external engine, the probe tool or the pipes between
them surfaces as one of these. All of them derive from ``FramePipeError``
(itself a ``RuntimeError``), and the ones with an obvious builtin
counterpart also derive from it so callers can catch either.
"""


class FramePipeError(RuntimeError):
    """Base class for all framepipe errors."""


class SourceNotFoundError(FramePipeError, FileNotFoundError):
    """A media file or capture device does not exist."""


class ToolMissingError(FramePipeError):
    """FFmpeg or FFprobe could not be located."""


class ProbeError(FramePipeError):
    """FFprobe failed to start, exited abnormally, or reported nothing usable."""


class NoStreamError(ProbeError):
    """The source has no stream of the requested type."""


class FrameIndexError(FramePipeError, IndexError):
    """A frame index is outside the known frame count, or none was given."""


class BufferTooSmallError(FramePipeError, ValueError):
    """A caller-supplied frame buffer cannot hold a full frame."""


class PipeIOError(FramePipeError):
    """Pipe transfer failed or the engine exited with a non-zero status."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class PipelineCancelled(PipeIOError):
    """A blocking read or write was interrupted through a CancelToken."""


class ImageFormatError(FramePipeError, ValueError):
    """A still image could not be decoded, or its extension is unsupported."""
