"""Tests for capture backends."""

import asyncio
import io
from pathlib import Path

import pytest

from conftest import FakeVideo


def _screen(tmp_path, platform_name, **kwargs):
    from proofcast.capture import ScreenCapture

    capture = ScreenCapture(tmp_path / "run.mp4", ffmpeg="ffmpeg", **kwargs)
    capture.platform = platform_name
    return capture


class FakeProcess:
    def __init__(self, returncode=0):
        self.stdin = io.BytesIO()
        self.returncode = returncode
        self.waited = False

    def wait(self, timeout=None):
        self.waited = True
        return self.returncode

    def poll(self):
        return self.returncode


class TestScreenCapture:
    """Tests for whole-screen capture."""

    def test_x11_uses_display(self, tmp_path):
        """Test x11grab arguments."""
        args = _screen(tmp_path, "x11", display=":99", display_size=(1920, 1080)).build_args()

        assert args[args.index("-f") + 1] == "x11grab"
        assert args[args.index("-i") + 1] == ":99.0"
        assert args[args.index("-video_size") + 1] == "1920x1080"
        assert args[-1] == str(tmp_path / "run.mp4")

    def test_x11_without_display_fails(self, tmp_path, monkeypatch):
        """Test that a headless Linux host cannot screen-capture."""
        from proofcast.errors import CaptureError

        monkeypatch.delenv("DISPLAY", raising=False)

        with pytest.raises(CaptureError, match="DISPLAY"):
            _screen(tmp_path, "x11").build_args()

    def test_macos_requires_screen_index(self, tmp_path):
        """Test the avfoundation screen index requirement."""
        from proofcast.errors import CaptureError

        with pytest.raises(CaptureError, match="screen index"):
            _screen(tmp_path, "macos").build_args()

        args = _screen(tmp_path, "macos", screen_index=1).build_args()
        assert args[args.index("-i") + 1] == "1:none"

    def test_windows_uses_gdigrab(self, tmp_path):
        """Test gdigrab arguments."""
        args = _screen(tmp_path, "windows").build_args()

        assert args[args.index("-f") + 1] == "gdigrab"
        assert args[args.index("-i") + 1] == "desktop"

    def test_availability_reports_remediation(self, tmp_path):
        """Test that unsupported platforms explain themselves."""
        available, details = _screen(tmp_path, "wayland").is_available()

        assert not available
        assert "Xvfb" in details

    def test_zero_frames_is_a_hard_failure(self, tmp_path):
        """Test that an empty capture raises CaptureValidationError."""
        from proofcast.errors import CaptureValidationError

        capture = _screen(tmp_path, "x11", display=":0")
        process = FakeProcess()
        capture.process = process

        with pytest.raises(CaptureValidationError):
            capture.stop_sync()

        assert process.waited
        assert capture.process is None

    def test_immediate_exit_closes_the_log(self, tmp_path, monkeypatch):
        """Test that an ffmpeg that dies on startup raises and releases its log file."""
        import subprocess

        from proofcast.errors import CaptureError

        monkeypatch.setattr(subprocess, "Popen", lambda cmd, **kwargs: FakeProcess(returncode=1))
        capture = _screen(tmp_path, "x11", display=":0", start_settle_s=0)

        with pytest.raises(CaptureError, match="code 1"):
            capture.start_sync()

        assert capture._log_file.closed
        assert capture.process is None
        assert (tmp_path / "run.ffmpeg.log").exists()

    def test_stop_without_start_returns_none(self, tmp_path):
        """Test that stopping an unstarted capture is harmless."""
        assert _screen(tmp_path, "x11").stop_sync() is None


class TestScreencastCapture:
    """Tests for per-page screencasts."""

    def test_stop_closes_page_and_saves_once(self, tmp_path):
        """Test that stop() saves the raw file and is idempotent."""
        from conftest import FakePage
        from proofcast.capture import ScreencastCapture

        page = FakePage()
        page.video = FakeVideo()
        capture = ScreencastCapture(page, tmp_path / "pane-1.raw.webm")

        async def scenario():
            assert await capture.start()
            first = await capture.stop()
            second = await capture.stop()
            return first, second

        first, second = asyncio.run(scenario())

        assert page.is_closed()
        assert first == second == tmp_path / "pane-1.raw.webm"
        assert len(page.video.saved) == 1
        assert page.video.deleted
