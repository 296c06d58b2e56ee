"""Tests for ffmpeg helpers and the timing check."""

import subprocess

import pytest


DIAGNOSTICS = """Input #0, matroska,webm, from 'pane-1.raw.webm':
  Duration: 00:01:02.50, start: 0.000000, bitrate: N/A
  Stream #0:0(eng): Video: vp8, yuv420p(progressive), 2560x1440, SAR 1:1 DAR 16:9, 25 fps
"""

DECODE = """frame=  120 fps=0.0 q=-0.0 size=N/A time=00:00:02.00 bitrate=N/A
frame=  301 fps=0.0 q=-0.0 Lsize=N/A time=00:00:05.01 bitrate=N/A speed=12x
"""


class TestParsers:
    """Tests for stderr parsers."""

    def test_parse_duration(self):
        """Test container duration parsing."""
        from proofcast.ffmpeg import parse_duration

        assert parse_duration(DIAGNOSTICS) == pytest.approx(62.5)
        assert parse_duration("Duration: N/A") is None

    def test_parse_last_time_and_frames(self):
        """Test that the last progress line wins."""
        from proofcast.ffmpeg import parse_frame_count, parse_last_time

        assert parse_last_time(DECODE) == pytest.approx(5.01)
        assert parse_frame_count(DECODE) == 301

    def test_parse_video_size(self):
        """Test stream size parsing."""
        from proofcast.ffmpeg import parse_video_size

        assert parse_video_size(DIAGNOSTICS) == (2560, 1440)


class TestRunFFmpeg:
    """Tests for encoder invocation."""

    def test_retries_with_vsync_when_fps_mode_is_unknown(self, monkeypatch):
        """Test the legacy -vsync retry."""
        from proofcast.ffmpeg import run_ffmpeg

        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            if "-fps_mode" in cmd:
                raise subprocess.CalledProcessError(1, cmd, "", "Unrecognized option 'fps_mode'.")
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)

        run_ffmpeg("ffmpeg", ["-i", "in.webm", "-fps_mode", "cfr", "out.mp4"])

        assert calls[1] == ["ffmpeg", "-y", "-i", "in.webm", "-vsync", "cfr", "out.mp4"]

    def test_other_failures_propagate(self, monkeypatch):
        """Test that unrelated errors are not retried."""
        from proofcast.ffmpeg import run_ffmpeg

        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, "", "No such file")

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(subprocess.CalledProcessError):
            run_ffmpeg("ffmpeg", ["-i", "missing.webm", "-fps_mode", "cfr", "out.mp4"])

    def test_resolve_ffmpeg_missing_binary(self):
        """Test a clear error when ffmpeg cannot be found."""
        from proofcast.ffmpeg import resolve_ffmpeg

        with pytest.raises(RuntimeError, match="FFmpeg not found"):
            resolve_ffmpeg("definitely-not-an-ffmpeg-binary")


class TestTimingCheck:
    """Tests for output timing validation."""

    def _patch(self, monkeypatch, duration_s, frames):
        from proofcast import ffmpeg as ff

        monkeypatch.setattr(ff, "probe_duration", lambda ffmpeg, path: duration_s)
        monkeypatch.setattr(ff, "probe_frame_count", lambda ffmpeg, path: frames)

    def test_within_tolerance(self, monkeypatch):
        """Test that a small drift passes."""
        from proofcast.ffmpeg import check_video_timing

        self._patch(monkeypatch, 10.2, 612)

        report = check_video_timing("ffmpeg", "run.mp4", 10.0, strict=True)

        assert report.ok
        assert report.worst_delta_s == pytest.approx(0.2)

    def test_drift_raises_under_ci(self, monkeypatch):
        """Test that CI turns drift into an error."""
        from proofcast.errors import TimingMismatchError
        from proofcast.ffmpeg import check_video_timing

        monkeypatch.setenv("CI", "true")
        self._patch(monkeypatch, 10.0, 540)

        with pytest.raises(TimingMismatchError):
            check_video_timing("ffmpeg", "run.mp4", 10.0)

    def test_drift_only_warns_locally(self, monkeypatch):
        """Test that drift outside CI is reported, not raised."""
        from proofcast.ffmpeg import check_video_timing

        monkeypatch.delenv("CI", raising=False)
        self._patch(monkeypatch, 11.0, 660)

        report = check_video_timing("ffmpeg", "run.mp4", 10.0)

        assert not report.ok


class TestPosterFrame:
    """Tests for embedding the thumbnail as an MP4 poster."""

    def _files(self, tmp_path):
        video = tmp_path / "run.mp4"
        video.write_bytes(b"mp4")
        image = tmp_path / "thumbnail.png"
        image.write_bytes(b"\x89PNG\r\n")
        return video, image

    def test_poster_is_attached_in_place(self, tmp_path, monkeypatch):
        """Test the attached_pic copy and the in-place replace."""
        from proofcast.ffmpeg import embed_poster

        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            with open(cmd[-1], "wb") as f:
                f.write(b"mp4+poster")
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)
        video, image = self._files(tmp_path)

        assert embed_poster("ffmpeg", video, image)

        [cmd] = calls
        assert cmd[cmd.index("-disposition:v:1") + 1] == "attached_pic"
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert video.read_bytes() == b"mp4+poster"
        assert not (tmp_path / "run.poster.mp4").exists()

    def test_failure_keeps_the_video(self, tmp_path, monkeypatch):
        """Test that a failed embed leaves the original untouched."""
        from proofcast.ffmpeg import embed_poster

        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, "", "Could not write header")

        monkeypatch.setattr(subprocess, "run", fake_run)
        video, image = self._files(tmp_path)

        assert not embed_poster("ffmpeg", video, image)
        assert video.read_bytes() == b"mp4"
