"""
WebVTT subtitle generation from step records.
"""
from pathlib import Path
from typing import Iterable, Optional

from proofcast.models import StepRecord


def format_vtt_time(ms: int) -> str:
    """Format milliseconds as a WebVTT timestamp (HH:MM:SS.mmm)."""
    ms = max(0, int(ms))
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    seconds = (ms % 60_000) // 1000
    millis = ms % 1000
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def generate_webvtt(steps: Iterable[StepRecord]) -> str:
    """Render one cue per step, labeled "Step N: caption"."""
    lines = ["WEBVTT", ""]
    for step in steps:
        lines.append(f"{format_vtt_time(step.start_ms)} --> {format_vtt_time(step.end_ms)}")
        lines.append(f"Step {step.index}: {step.caption}")
        lines.append("")
    return "\n".join(lines) + "\n"


def steps_for_role(steps: Iterable[StepRecord], role: str, shared: str = "both") -> list[StepRecord]:
    """Steps tagged with role, plus those tagged as shared."""
    return [s for s in steps if s.role in (role, shared)]


def write_subtitles(path: Path, steps: Iterable[StepRecord], role: Optional[str] = None) -> Path:
    """Write a VTT file, optionally restricted to one role's steps."""
    steps = list(steps)
    if role is not None:
        steps = steps_for_role(steps, role)
    path = Path(path)
    path.write_text(generate_webvtt(steps), encoding="utf-8")
    return path


def count_cues(vtt_text: str) -> int:
    return sum(1 for line in vtt_text.splitlines() if " --> " in line)
