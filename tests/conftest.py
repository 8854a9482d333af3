"""Pytest configuration and shared fixtures."""

import shutil
import subprocess
import sys

import pytest


HAVE_FFMPEG = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

requires_ffmpeg = pytest.mark.skipif(not HAVE_FFMPEG, reason="ffmpeg/ffprobe not installed")


def python_argv(code: str) -> list[str]:
    """Argument vector running ``code`` in a child Python interpreter."""
    return [sys.executable, "-c", code]


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch):
    """Keep tests from installing process-wide signal handlers."""
    monkeypatch.setenv("FRAMEPIPE_HANDLE_SIGNALS", "0")


@pytest.fixture
def fake_tools(monkeypatch):
    """Point ffmpeg/ffprobe discovery at an existing executable."""
    monkeypatch.setenv("FRAMEPIPE_FFMPEG", sys.executable)
    monkeypatch.setenv("FRAMEPIPE_FFPROBE", sys.executable)
    return sys.executable


def _make_clip(path, frames: int, size: str, audio: bool) -> None:
    cmd = [
        "ffmpeg", "-y", "-loglevel", "error",
        "-f", "lavfi", "-i", f"testsrc=size={size}:rate=25",
    ]
    if audio:
        cmd.extend(["-f", "lavfi", "-i", "sine=frequency=440:sample_rate=44100"])
    cmd.extend(["-frames:v", str(frames), "-c:v", "mpeg4", "-q:v", "2", "-pix_fmt", "yuv420p"])
    if audio:
        cmd.extend(["-c:a", "aac", "-shortest"])
    cmd.append(str(path))
    subprocess.run(cmd, check=True)


@pytest.fixture(scope="session")
def clip(tmp_path_factory):
    """30-frame 64x48 test clip with an audio track."""
    if not HAVE_FFMPEG:
        pytest.skip("ffmpeg/ffprobe not installed")
    path = tmp_path_factory.mktemp("media") / "clip.mp4"
    _make_clip(path, frames=30, size="64x48", audio=True)
    return path


@pytest.fixture(scope="session")
def silent_clip(tmp_path_factory):
    """30-frame 64x48 test clip without audio."""
    if not HAVE_FFMPEG:
        pytest.skip("ffmpeg/ffprobe not installed")
    path = tmp_path_factory.mktemp("media") / "silent.mp4"
    _make_clip(path, frames=30, size="64x48", audio=False)
    return path
