"""
Central configuration for proofcast.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent.parent
ARTIFACTS_DIR = Path(os.getenv("PROOFCAST_ARTIFACTS_DIR", "artifacts"))
TTS_CACHE_DIR = Path(os.getenv("PROOFCAST_TTS_CACHE", ".cache/tts"))
SFX_DIR = Path(os.getenv("PROOFCAST_SFX_DIR", BASE_DIR / "sfx"))  # <name>.wav / <name>.mp3 effect clips

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Encoder
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
OUTPUT_FPS = 60
VIDEO_CODEC = "libx264"
VIDEO_PRESET = "veryfast"
VIDEO_CRF = 18
PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"

# Viewports (CSS pixels)
BROWSER_VIEWPORT = (1280, 720)
TERMINAL_VIEWPORT = (800, 600)
SCREEN_SIZE = (1920, 1080)

# TTS settings
TTS_MODEL = "tts-1"
TTS_VOICE = "nova"
TTS_SPEED = 1.0
TRANSLATE_MODEL = "gpt-4o-mini"
SPEAK_BUFFER_MS = 200
EFFECT_VOLUME = 0.5

# Composition
PTS_WARP_RANGE = (0.25, 4.0)
TIMING_TOLERANCE_S = 0.75

# Timeouts
SELECTOR_TIMEOUT_MS = 3000
NAVIGATION_TIMEOUT_MS = 30000
DOC_HASH_TIMEOUT_MS = 10000
SCREEN_STOP_TIMEOUT_S = 2.5
SCREEN_START_SETTLE_S = 0.3
PROCESS_STOP_TIMEOUT_S = 3.0

# Capture
CAPTURE_PADDING = 16
TAIL_PAUSE_MS = 300
TERMINAL_SEND_PAUSE_MS = 300

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--hide-scrollbars",
    "--disable-extensions",
    "--disable-sync",
    "--no-first-run",
    "--disable-background-networking",
]

_TRUTHY = {"1", "true", "yes", "on"}


def _under_pytest() -> bool:
    return "PYTEST_CURRENT_TEST" in os.environ


def default_mode() -> str:
    """Resolve the execution mode from PROOFCAST_MODE, else by context."""
    mode = os.getenv("PROOFCAST_MODE", "").strip().lower()
    if mode in ("human", "fast"):
        return mode
    return "fast" if _under_pytest() else "human"


def default_record() -> bool:
    """Resolve whether to record video from PROOFCAST_RECORD, else by context."""
    value = os.getenv("PROOFCAST_RECORD")
    if value is not None and value.strip():
        return value.strip().lower() in _TRUTHY
    return not _under_pytest()


def is_ci() -> bool:
    """True when running under a CI environment flag."""
    return os.getenv("CI", "").strip().lower() in _TRUTHY


def validate_api_keys():
    """Check that required API keys are configured."""
    missing = []
    if not os.getenv("OPENAI_API_KEY", OPENAI_API_KEY or ""):
        missing.append("OPENAI_API_KEY")
    return missing


def get_run_paths(artifact_dir: Path) -> dict:
    """Get the standard artifact paths for a run directory."""
    return {
        "video": artifact_dir / "run.mp4",
        "subtitles": artifact_dir / "captions.vtt",
        "metadata": artifact_dir / "run.json",
        "thumbnail": artifact_dir / "thumbnail.png",
    }
