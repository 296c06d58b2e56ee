"""
Capture backends.

Two ways to get pixels out of a run:
- ScreencastCapture: Playwright's per-page video recording (one raw webm per pane)
- ScreenCapture: a whole-screen FFmpeg process (x11grab / avfoundation / gdigrab)

Both are owned by exactly one pane or session and stopped exactly once.
"""
import asyncio
import logging
import os
import platform
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional, Tuple

from playwright.async_api import Page

from config.settings import (
    FFMPEG_PATH, OUTPUT_FPS, SCREEN_SIZE, SCREEN_START_SETTLE_S, SCREEN_STOP_TIMEOUT_S,
)
from proofcast import ffmpeg as ff
from proofcast.errors import CaptureError, CaptureValidationError

logger = logging.getLogger(__name__)


class CaptureBackend:
    """Interface shared by the capture backends."""

    raw_path: Path

    async def start(self) -> bool:
        raise NotImplementedError

    async def stop(self) -> Optional[Path]:
        """Stop capturing and return the written file, or None."""
        raise NotImplementedError


class ScreencastCapture(CaptureBackend):
    """
    Per-page screencast recorded by the browser itself.

    Recording starts when the page's context is created with a video
    directory; stopping closes the page (which flushes the video) and saves
    it under raw_path.
    """

    def __init__(self, page: Page, raw_path: Path):
        self.page = page
        self.raw_path = Path(raw_path)
        self._stopped = False

    async def start(self) -> bool:
        return self.page.video is not None

    async def stop(self) -> Optional[Path]:
        if self._stopped:
            return self.raw_path if self.raw_path.exists() else None
        self._stopped = True
        video = self.page.video
        if not self.page.is_closed():
            await self.page.close()
        if video is None:
            return None
        await video.save_as(str(self.raw_path))
        await video.delete()
        return self.raw_path if self.raw_path.exists() else None


def detect_platform() -> str:
    """Detect the screen-capture platform: "x11", "wayland", "headless", "macos" or "windows"."""
    system = platform.system().lower()

    if system == "linux":
        if os.environ.get("DISPLAY"):
            return "x11"
        if os.environ.get("WAYLAND_DISPLAY"):
            return "wayland"
        return "headless"

    elif system == "darwin":
        return "macos"

    elif system == "windows":
        return "windows"

    return "unknown"


REMEDIATION = {
    "macos": (
        "Grant Screen Recording permission to your terminal app "
        "(System Settings > Privacy & Security > Screen Recording) and check the screen index "
        '(ffmpeg -f avfoundation -list_devices true -i "").'
    ),
    "x11": "Make sure DISPLAY points at a running X server, for example by running under xvfb-run.",
    "headless": "No display server found. Run under xvfb-run or set DISPLAY.",
    "wayland": "Wayland sessions are not supported by x11grab; run under Xvfb or an X11 session.",
    "windows": "Make sure the desktop is unlocked and visible while recording.",
}


class ScreenCapture(CaptureBackend):
    """
    Whole-screen FFmpeg capture.

    Stopping sends "q" on stdin (graceful quit), waits a fixed timeout, then
    escalates to an interrupt and finally a kill. A capture that decodes to
    zero frames is a hard failure.
    """

    def __init__(
        self,
        output_path: Path,
        fps: int = OUTPUT_FPS,
        display: Optional[str] = None,
        display_size: Tuple[int, int] = SCREEN_SIZE,
        screen_index: Optional[int] = None,
        ffmpeg: Optional[str] = None,
        stop_timeout_s: float = SCREEN_STOP_TIMEOUT_S,
        start_settle_s: float = SCREEN_START_SETTLE_S,
    ):
        self.raw_path = Path(output_path)
        self.fps = fps
        self.display = display
        self.display_size = display_size
        self.screen_index = screen_index
        self.ffmpeg = ffmpeg or FFMPEG_PATH
        self.stop_timeout_s = stop_timeout_s
        self.start_settle_s = start_settle_s
        self.platform = detect_platform()
        self.process: Optional[subprocess.Popen] = None
        self._log_file = None

    def is_available(self) -> Tuple[bool, str]:
        """Check if screen capture is available on this system."""
        if self.platform in ("headless", "wayland", "unknown"):
            return False, REMEDIATION.get(self.platform, f"Unsupported platform: {platform.system()}")
        if self.platform == "macos" and self.screen_index is None:
            return False, "Screen capture on macOS needs a screen index. " + REMEDIATION["macos"]
        return True, "Screen capture available"

    def build_args(self) -> list[str]:
        """Encoder arguments for the current platform (without the binary)."""
        width, height = self.display_size
        size = f"{width}x{height}"
        fps = str(self.fps)

        if self.platform == "macos":
            if self.screen_index is None:
                raise CaptureError("Screen capture on macOS needs a screen index. " + REMEDIATION["macos"])
            source = ["-f", "avfoundation", "-framerate", fps, "-i", f"{self.screen_index}:none"]
            filters = f"fps={fps},format=yuv420p"
        elif self.platform == "windows":
            source = [
                "-thread_queue_size", "1024", "-rtbufsize", "512M",
                "-use_wallclock_as_timestamps", "1",
                "-f", "gdigrab", "-video_size", size, "-framerate", fps, "-i", "desktop",
            ]
            filters = "format=yuv420p"
        else:
            display = self.display or os.environ.get("DISPLAY")
            if not display:
                raise CaptureError("Screen capture on Linux requires DISPLAY. " + REMEDIATION["headless"])
            source = [
                "-thread_queue_size", "1024", "-rtbufsize", "512M",
                "-use_wallclock_as_timestamps", "1",
                "-f", "x11grab", "-video_size", size, "-framerate", fps, "-i", f"{display}.0",
            ]
            filters = "format=yuv420p"

        return [
            "-y", *source,
            "-vf", filters,
            "-c:v", "libx264", "-preset", "ultrafast", "-tune", "zerolatency",
            "-r", fps, "-vsync", "cfr", "-crf", "18",
            "-pix_fmt", "yuv420p", "-movflags", "+faststart",
            str(self.raw_path),
        ]

    def start_sync(self) -> bool:
        cmd = [self.ffmpeg, *self.build_args()]
        self.raw_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_file = open(self.raw_path.with_suffix(".ffmpeg.log"), "w")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=self._log_file,
            )
        except OSError as e:
            self._log_file.close()
            raise CaptureError(f"Could not start screen capture: {e}") from e
        # Bad devices or displays make ffmpeg exit within a few hundred ms
        time.sleep(self.start_settle_s)
        if self.process.poll() is not None:
            code = self.process.returncode
            self.process = None
            self._log_file.close()
            raise CaptureError(
                f"FFmpeg screen capture exited immediately (code {code}); "
                f"see {self.raw_path.with_suffix('.ffmpeg.log')}"
            )
        logger.info("Screen capture started (%s) -> %s", self.platform, self.raw_path.name)
        return True

    async def start(self) -> bool:
        return await asyncio.to_thread(self.start_sync)

    def stop_sync(self) -> Optional[Path]:
        """
        Stop the capture process and validate the output.

        Raises:
            CaptureValidationError: when the file decodes to zero frames
        """
        proc = self.process
        if proc is None:
            return None
        self.process = None

        try:
            if proc.stdin:
                proc.stdin.write(b"q")
                proc.stdin.close()
        except (BrokenPipeError, OSError):
            pass

        try:
            proc.wait(timeout=self.stop_timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning("Screen capture did not quit in %.1fs, interrupting", self.stop_timeout_s)
            if os.name == "nt":
                proc.terminate()
            else:
                proc.send_signal(signal.SIGINT)
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        finally:
            if self._log_file:
                self._log_file.close()

        frames = ff.probe_frame_count(self.ffmpeg, self.raw_path) if self.raw_path.exists() else 0
        if frames <= 0:
            hint = REMEDIATION.get(self.platform, "")
            raise CaptureValidationError(
                f"Screen capture produced no frames ({self.raw_path}). {hint}".strip()
            )
        logger.info("Screen capture stopped: %d frames", frames)
        return self.raw_path

    async def stop(self) -> Optional[Path]:
        return await asyncio.to_thread(self.stop_sync)

    def kill(self):
        """Hard kill for exit-time cleanup."""
        if self.process and self.process.poll() is None:
            self.process.kill()
