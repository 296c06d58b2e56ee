"""
FFmpeg invocation and probing helpers.

All probes read ffmpeg's diagnostic (stderr) output rather than requiring
ffprobe, so a single ffmpeg binary is enough for composition.
"""
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config.settings import (
    FFMPEG_PATH, OUTPUT_FPS, TIMING_TOLERANCE_S,
    VIDEO_CODEC, VIDEO_PRESET, VIDEO_CRF, PIXEL_FORMAT, is_ci,
)
from proofcast.errors import TimingMismatchError

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_SIZE_RE = re.compile(r"Stream.*Video:.* (\d{3,5})x(\d{3,5})")


def resolve_ffmpeg(ffmpeg: Optional[str] = None) -> str:
    """Return a usable ffmpeg binary path or raise RuntimeError."""
    candidate = ffmpeg or FFMPEG_PATH
    found = shutil.which(candidate)
    if not found:
        raise RuntimeError(f"FFmpeg not found ({candidate}). Install ffmpeg or set FFMPEG_PATH.")
    return found


def encoder_args(fps: int = OUTPUT_FPS) -> list[str]:
    """Constant-framerate H.264 output arguments shared by every encode."""
    return [
        "-r", str(fps),
        "-fps_mode", "cfr",
        "-c:v", VIDEO_CODEC,
        "-preset", VIDEO_PRESET,
        "-crf", str(VIDEO_CRF),
        "-pix_fmt", PIXEL_FORMAT,
        "-movflags", "+faststart",
    ]


def run_ffmpeg(ffmpeg: str, args: list[str]) -> subprocess.CompletedProcess:
    """
    Run ffmpeg, retrying with -vsync when the build predates -fps_mode.

    Raises:
        subprocess.CalledProcessError: when the encode fails
    """
    cmd = [ffmpeg, "-y", *args]
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        if "-fps_mode" not in args or "fps_mode" not in (e.stderr or ""):
            raise
        legacy = list(args)
        i = legacy.index("-fps_mode")
        legacy[i] = "-vsync"
        logger.info("ffmpeg rejected -fps_mode, retrying with -vsync")
        return subprocess.run([ffmpeg, "-y", *legacy], capture_output=True, text=True, check=True)


def _diagnostics(ffmpeg: str, path: Path) -> str:
    # ffmpeg -i with no output exits non-zero; the stream info is still on stderr
    result = subprocess.run(
        [ffmpeg, "-hide_banner", "-i", str(path)],
        capture_output=True, text=True,
    )
    return result.stderr or ""


def _decode(ffmpeg: str, path: Path) -> str:
    result = subprocess.run(
        [ffmpeg, "-hide_banner", "-i", str(path), "-map", "0:v:0", "-f", "null", "-"],
        capture_output=True, text=True,
    )
    return result.stderr or ""


def _hms(match) -> float:
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_duration(text: str) -> Optional[float]:
    """Container duration in seconds from `ffmpeg -i` output."""
    match = _DURATION_RE.search(text)
    return _hms(match) if match else None


def parse_last_time(text: str) -> Optional[float]:
    """Last decoded `time=` position in seconds."""
    matches = list(_TIME_RE.finditer(text))
    return _hms(matches[-1]) if matches else None


def parse_frame_count(text: str) -> Optional[int]:
    """Last `frame=` counter from a decode pass."""
    matches = _FRAME_RE.findall(text)
    return int(matches[-1]) if matches else None


def parse_video_size(text: str) -> Optional[tuple[int, int]]:
    match = _SIZE_RE.search(text)
    return (int(match.group(1)), int(match.group(2))) if match else None


def probe_duration(ffmpeg: str, path: Path) -> float:
    """
    Duration of a media file in seconds.

    Screencast webm files often carry no container duration (N/A), so this
    falls back to decoding the video stream and reading the last time= value.
    """
    duration = parse_duration(_diagnostics(ffmpeg, path))
    if duration:
        return duration
    return parse_last_time(_decode(ffmpeg, path)) or 0.0


def probe_frame_count(ffmpeg: str, path: Path) -> int:
    """Decoded video frame count (0 when it cannot be determined)."""
    return parse_frame_count(_decode(ffmpeg, path)) or 0


def probe_size(ffmpeg: str, path: Path) -> Optional[tuple[int, int]]:
    return parse_video_size(_diagnostics(ffmpeg, path))


def probe_audio_duration_ms(ffmpeg: str, path: Path) -> int:
    """Clip duration in ms, estimated from 128kbps mp3 size when probing fails."""
    duration = parse_duration(_diagnostics(ffmpeg, path))
    if duration:
        return int(round(duration * 1000))
    size = Path(path).stat().st_size if Path(path).exists() else 0
    return int(size * 8 / 128_000 * 1000)


@dataclass
class TimingReport:
    """Probed output timing compared with the measured run duration."""
    expected_s: float
    probed_s: float
    frames: int
    fps: int = OUTPUT_FPS
    tolerance_s: float = TIMING_TOLERANCE_S

    @property
    def frame_duration_s(self) -> float:
        return self.frames / self.fps if self.fps else 0.0

    @property
    def worst_delta_s(self) -> float:
        return max(
            abs(self.probed_s - self.expected_s),
            abs(self.frame_duration_s - self.expected_s),
        )

    @property
    def ok(self) -> bool:
        return self.worst_delta_s <= self.tolerance_s

    def describe(self) -> str:
        return (
            f"expected {self.expected_s:.2f}s, container {self.probed_s:.2f}s, "
            f"frames {self.frames} ({self.frame_duration_s:.2f}s @ {self.fps}fps)"
        )


def check_video_timing(
    ffmpeg: str,
    video: Path,
    expected_s: float,
    fps: int = OUTPUT_FPS,
    tolerance_s: float = TIMING_TOLERANCE_S,
    strict: Optional[bool] = None,
) -> TimingReport:
    """
    Compare a composed video against the run's wall-clock duration.

    A mismatch beyond tolerance is logged as a warning. With strict (default:
    the CI flag) it raises instead, since nobody is watching the output.

    Raises:
        TimingMismatchError: on mismatch when strict
    """
    report = TimingReport(
        expected_s=expected_s,
        probed_s=probe_duration(ffmpeg, video),
        frames=probe_frame_count(ffmpeg, video),
        fps=fps,
        tolerance_s=tolerance_s,
    )
    if report.ok:
        logger.info("Video timing OK: %s", report.describe())
        return report

    message = f"Video timing mismatch for {Path(video).name}: {report.describe()}"
    if is_ci() if strict is None else strict:
        raise TimingMismatchError(message)
    logger.warning(message)
    return report


def embed_poster(ffmpeg: str, video: Path, image: Path) -> bool:
    """
    Attach an image to an MP4 as its poster frame (attached_pic), in place.

    Streams are copied, not re-encoded. A failure leaves the video untouched.

    Returns:
        True if the poster was embedded
    """
    video, image = Path(video), Path(image)
    if not video.exists() or not image.exists():
        return False
    tmp = video.with_suffix(".poster.mp4")
    args = [
        "-i", str(video), "-i", str(image),
        "-map", "0", "-map", "1", "-c", "copy",
        "-disposition:v:1", "attached_pic",
        str(tmp),
    ]
    try:
        subprocess.run([ffmpeg, "-y", *args], capture_output=True, text=True, check=True)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.warning("Could not embed poster frame: %s", e)
        tmp.unlink(missing_ok=True)
        return False
    tmp.replace(video)
    return True
