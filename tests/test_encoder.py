"""Tests for writer option resolution, command building and frame writing."""

import numpy as np
import pytest

from conftest import python_argv
from framepipe.errors import BufferTooSmallError, PipeIOError, SourceNotFoundError
from framepipe.pipeline.encoder import (
    VideoWriter,
    WriterOptions,
    default_codec,
    padded_size,
    resolve_options,
)
from framepipe.pipeline.process import PipelineState


def _flag_value(cmd, flag, occurrence=0):
    positions = [i for i, arg in enumerate(cmd) if arg == flag]
    return cmd[positions[occurrence] + 1]


class TestResolveOptions:
    """Defaults for sparse options."""

    def test_defaults(self):
        opts = resolve_options("out.mp4")
        assert opts.bitrate is None
        assert opts.quality == 0.5
        assert opts.macro == 16
        assert opts.fps == 25
        assert opts.codec == "libx264"
        assert opts.loop == 0
        assert opts.delay == -1
        assert opts.stream_file is None
        assert opts.audio_codec is None

    @pytest.mark.parametrize(
        "filename,codec",
        [("a.mp4", "libx264"), ("a.MKV", "libx264"), ("a.wmv", "msmpeg4"), ("a.gif", "gif")],
    )
    def test_codec_from_extension(self, filename, codec):
        assert default_codec(filename) == codec

    def test_explicit_codec_wins(self):
        assert resolve_options("a.wmv", WriterOptions(codec="mpeg4")).codec == "mpeg4"

    def test_zero_quality_is_kept(self):
        assert resolve_options("a.mp4", WriterOptions(quality=0)).quality == 0.0

    @pytest.mark.parametrize("quality,expected", [(-0.5, 0.0), (2.0, 1.0)])
    def test_quality_clamped(self, quality, expected):
        assert resolve_options("a.mp4", WriterOptions(quality=quality)).quality == expected

    def test_zero_means_unset(self):
        opts = resolve_options("a.gif", WriterOptions(bitrate=0, macro=0, fps=0, delay=0))
        assert opts.bitrate is None
        assert opts.macro == 16
        assert opts.fps == 25
        assert opts.delay == -1

    def test_play_once(self):
        assert resolve_options("a.gif", WriterOptions(loop=-1)).loop == -1

    def test_missing_stream_file(self, tmp_path):
        with pytest.raises(SourceNotFoundError):
            resolve_options("a.mp4", WriterOptions(stream_file=tmp_path / "missing.mp4"))


class TestWriterOptions:
    """Mapping conversion."""

    def test_from_dict(self):
        opts = WriterOptions.from_dict({"fps": 30, "quality": 0.2})
        assert opts.fps == 30
        assert opts.quality == 0.2
        assert opts.codec is None

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="framerate"):
            WriterOptions.from_dict({"framerate": 30})

    def test_to_dict_drops_unset(self):
        assert WriterOptions(fps=30, loop=0).to_dict() == {"fps": 30, "loop": 0}


class TestPadding:
    """Macroblock padding."""

    @pytest.mark.parametrize(
        "size,macro,expected",
        [((480, 270), 16, (480, 272)), ((64, 48), 16, (64, 48)), ((5, 7), 1, (5, 7)), ((17, 1), 8, (24, 8))],
    )
    def test_padded_size(self, size, macro, expected):
        assert padded_size(*size, macro) == expected

    def test_writer_reports_padded_size(self, fake_tools):
        writer = VideoWriter("out.mp4", 480, 270)
        assert (writer.width, writer.height) == (480, 272)
        assert (writer.source_width, writer.source_height) == (480, 270)
        assert writer.padded
        assert writer.frame_size == 480 * 272 * 4

        cmd = writer.build_command()
        assert _flag_value(cmd, "-s") == "480x272"
        assert _flag_value(cmd, "-vf") == "scale=480:272"

    def test_no_scale_filter_without_padding(self, fake_tools):
        writer = VideoWriter("out.mp4", 64, 48)
        assert not writer.padded
        assert "-vf" not in writer.build_command()

    def test_pad_frame(self, fake_tools):
        writer = VideoWriter("out.mp4", 3, 2, WriterOptions(macro=4), depth=3)
        frame = np.full((2, 3, 3), 200, dtype=np.uint8)
        padded = np.frombuffer(writer.pad_frame(frame.tobytes()), dtype=np.uint8).reshape(4, 4, 3)
        assert (padded[:2, :3] == 200).all()
        assert (padded[2:, :] == 0).all()
        assert (padded[:, 3:] == 0).all()


class TestBuildCommand:
    """FFmpeg argument vectors."""

    def test_input_section(self, fake_tools):
        writer = VideoWriter("out.mp4", 64, 48, WriterOptions(fps=30))
        cmd = writer.build_command()
        assert cmd[0] == fake_tools
        assert cmd[1] == "-y"
        assert _flag_value(cmd, "-f") == "rawvideo"
        assert _flag_value(cmd, "-pix_fmt") == "rgba"
        assert _flag_value(cmd, "-r") == "30.00"
        assert _flag_value(cmd, "-i") == "-"
        assert _flag_value(cmd, "-pix_fmt", 1) == "yuv420p"
        assert cmd[-1] == "out.mp4"

    def test_rgb_input(self, fake_tools):
        writer = VideoWriter("out.mp4", 64, 48, depth=3)
        assert _flag_value(writer.build_command(), "-pix_fmt") == "rgb24"

    @pytest.mark.parametrize("quality,crf", [(0, "0"), (0.5, "25"), (1, "51")])
    def test_h264_quality(self, fake_tools, quality, crf):
        writer = VideoWriter("out.mp4", 64, 48, WriterOptions(quality=quality))
        assert writer.quality_args() == ["-crf", crf]

    @pytest.mark.parametrize("quality,qscale", [(0, "1"), (0.5, "16"), (1, "31")])
    def test_other_codec_quality(self, fake_tools, quality, qscale):
        writer = VideoWriter("out.avi", 64, 48, WriterOptions(quality=quality, codec="mpeg4"))
        assert writer.quality_args() == ["-qscale:v", qscale]

    def test_bitrate_overrides_quality(self, fake_tools):
        writer = VideoWriter("out.mp4", 64, 48, WriterOptions(bitrate=400000, quality=0.1))
        cmd = writer.build_command()
        assert _flag_value(cmd, "-b:v") == "400000"
        assert "-crf" not in cmd

    def test_gif(self, fake_tools):
        writer = VideoWriter("out.gif", 64, 48, WriterOptions(loop=3, delay=50))
        cmd = writer.build_command()
        assert _flag_value(cmd, "-vcodec", 1) == "gif"
        assert _flag_value(cmd, "-pix_fmt", 1) == "rgb8"
        assert _flag_value(cmd, "-loop") == "3"
        assert _flag_value(cmd, "-final_delay") == "50"

    def test_stream_copy(self, fake_tools, tmp_path):
        source = tmp_path / "source.mp4"
        source.write_bytes(b"")
        writer = VideoWriter("out.mp4", 64, 48, WriterOptions(stream_file=source))
        cmd = writer.build_command()

        maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
        assert maps == ["0:v:0", "1:a?", "1:s?", "1:d?", "1:t?"]
        assert _flag_value(cmd, "-i", 1) == str(source)
        assert _flag_value(cmd, "-c:a") == "copy"
        assert "-shortest" in cmd

    def test_stream_copy_with_audio_codec(self, fake_tools, tmp_path):
        source = tmp_path / "source.mp4"
        source.write_bytes(b"")
        writer = VideoWriter("out.mp4", 64, 48, WriterOptions(stream_file=source, audio_codec="aac"))
        cmd = writer.build_command()

        maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
        assert maps == ["0:v:0", "1:s?", "1:d?", "1:t?", "1:a?"]
        assert maps.count("0:v:0") == 1
        assert _flag_value(cmd, "-c:a") == "aac"
        assert cmd[-4:] == ["aac", "-map", "1:a?", "out.mp4"]

    def test_gif_ignores_stream_file(self, fake_tools, tmp_path):
        source = tmp_path / "source.mp4"
        source.write_bytes(b"")
        writer = VideoWriter("out.gif", 64, 48, WriterOptions(stream_file=source))
        assert "-map" not in writer.build_command()


class TestWrite:
    """Writing frames through a stand-in engine."""

    def _writer(self, monkeypatch, code, **kwargs):
        writer = VideoWriter("out.mp4", 4, 4, WriterOptions(macro=1), **kwargs)
        monkeypatch.setattr(writer, "build_command", lambda: python_argv(code))
        return writer

    def test_invalid_size(self, fake_tools):
        with pytest.raises(ValueError):
            VideoWriter("out.mp4", 0, 10)

    def test_invalid_depth(self, fake_tools):
        with pytest.raises(ValueError):
            VideoWriter("out.mp4", 10, 10, depth=2)

    def test_short_frame_rejected_before_start(self, fake_tools):
        writer = VideoWriter("out.mp4", 4, 4, WriterOptions(macro=1))
        with pytest.raises(BufferTooSmallError):
            writer.write(bytes(10))
        assert writer.pipeline is None

    def test_writes_frame_size_bytes(self, monkeypatch, fake_tools):
        # 3 frames of 4x4 RGBA; the second frame is oversized.
        code = "import sys; data = sys.stdin.buffer.read(); sys.exit(0 if len(data) == 192 else 3)"
        with self._writer(monkeypatch, code) as writer:
            writer.write(bytes(64))
            writer.write(bytes(100))
            writer.write(np.zeros((4, 4, 4), dtype=np.uint8))
        assert writer.pipeline.state is PipelineState.CLOSED

    def test_engine_failure_reported_on_close(self, monkeypatch, fake_tools):
        code = "import sys; sys.stdin.buffer.read(); sys.stderr.write('bad params'); sys.exit(1)"
        writer = self._writer(monkeypatch, code)
        writer.write(bytes(64))
        with pytest.raises(PipeIOError, match="bad params"):
            writer.close()

    def test_exception_in_block_kills_engine(self, monkeypatch, fake_tools):
        code = "import sys, time; time.sleep(30)"
        with pytest.raises(RuntimeError):
            with self._writer(monkeypatch, code) as writer:
                writer.write(bytes(64))
                raise RuntimeError("abort")
        assert writer.pipeline.state is PipelineState.CLOSED
