"""
Still image reading and writing.

Images use the same layout as video frames: row-major RGBA bytes.
"""

from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import BufferTooSmallError, ImageFormatError, SourceNotFoundError


_FORMATS = {
    ".png": "PNG",
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
}


def read_image(filename: str | Path, buffer=None) -> tuple[int, int, bytearray]:
    """
    Decode an image to RGBA bytes.

    Args:
        filename: Path to a PNG, JPEG or any other format Pillow reads
        buffer: Optional caller-owned buffer of at least width*height*4 bytes

    Returns:
        (width, height, data), where data is ``buffer`` if one was given

    Raises:
        SourceNotFoundError: If the file does not exist
        ImageFormatError: If the file cannot be decoded
        BufferTooSmallError: If ``buffer`` cannot hold the image
    """
    path = Path(filename)
    if not path.exists():
        raise SourceNotFoundError(f"Image not found: {path}")

    try:
        with Image.open(path) as img:
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageFormatError(f"{path} is an invalid image format: {e}") from e

    width, height = rgba.size
    data = rgba.tobytes()

    if buffer is None:
        return width, height, bytearray(data)

    view = memoryview(buffer).cast("B")
    if view.nbytes < len(data):
        raise BufferTooSmallError(
            f"Image buffer holds {view.nbytes} bytes, {len(data)} required"
        )
    view[:len(data)] = data
    return width, height, buffer


def write_image(filename: str | Path, width: int, height: int, buffer) -> None:
    """
    Encode RGBA bytes to a PNG or JPEG file (chosen by extension).

    JPEG has no alpha channel, so it is dropped.

    Raises:
        ImageFormatError: If the extension is not .png, .jpg or .jpeg
        BufferTooSmallError: If ``buffer`` is shorter than width*height*4
    """
    path = Path(filename)
    fmt = _FORMATS.get(path.suffix.lower())
    if fmt is None:
        raise ImageFormatError(f"Unsupported image extension: {path.suffix or path.name}")

    size = width * height * 4
    if memoryview(buffer).nbytes < size:
        raise BufferTooSmallError(
            f"Image buffer holds {memoryview(buffer).nbytes} bytes, {size} required"
        )

    pixels = np.frombuffer(buffer, dtype=np.uint8, count=size).reshape(height, width, 4)
    img = Image.fromarray(pixels)
    if fmt == "JPEG":
        img = img.convert("RGB")
    img.save(path, format=fmt)
