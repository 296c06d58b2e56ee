"""
Shared data types for proofcast sessions.

Step records, audio events and crop rectangles are produced during a run and
consumed once at finish. They are plain dataclasses with dict serializers for
run metadata.
"""
import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple


class Mode(str, Enum):
    """Execution profile for actors and session pacing."""
    HUMAN = "human"   # Animated cursor, per-key typing, pacing pauses
    FAST = "fast"     # Everything instantaneous


class RecordMode(str, Enum):
    """How a session captures video."""
    SCREENCAST = "screencast"  # One browser screencast per pane, composed at finish
    SCREEN = "screen"          # One whole-screen ffmpeg capture
    NONE = "none"              # No video


class PaneKind(str, Enum):
    """Kinds of surfaces a session can manage."""
    BROWSER = "browser"
    TERMINAL = "terminal"


class AudioKind(str, Enum):
    """Kinds of timed audio clips."""
    SPEAK = "speak"
    EFFECT = "effect"


DelayRange = Tuple[int, int]


@dataclass(frozen=True)
class ActorDelays:
    """Named (min_ms, max_ms) timing ranges for one actor."""
    breathe_ms: DelayRange = (0, 0)
    after_scroll_into_view_ms: DelayRange = (0, 0)
    mouse_move_step_ms: DelayRange = (0, 0)
    click_effect_ms: DelayRange = (0, 0)
    click_hold_ms: DelayRange = (0, 0)
    after_click_ms: DelayRange = (0, 0)
    before_type_ms: DelayRange = (0, 0)
    key_delay_ms: DelayRange = (0, 0)
    key_boundary_pause_ms: DelayRange = (0, 0)
    select_open_ms: DelayRange = (0, 0)
    select_option_ms: DelayRange = (0, 0)
    after_drag_ms: DelayRange = (0, 0)

    def to_dict(self) -> dict:
        return {name: list(value) for name, value in asdict(self).items()}


@dataclass(frozen=True)
class StepRecord:
    """One labeled, timed unit of scenario work."""
    index: int
    caption: str
    start_ms: int
    end_ms: int
    pane_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def to_dict(self) -> dict:
        data = {
            "index": self.index,
            "caption": self.caption,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
        }
        if self.pane_id is not None:
            data["paneId"] = self.pane_id
        if self.role is not None:
            data["role"] = self.role
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StepRecord":
        return cls(
            index=int(data["index"]),
            caption=str(data["caption"]),
            start_ms=int(data["startMs"]),
            end_ms=int(data["endMs"]),
            pane_id=data.get("paneId"),
            role=data.get("role"),
        )


@dataclass(frozen=True)
class AudioEvent:
    """A timed narration or effect clip awaiting mix-in."""
    kind: AudioKind
    start_ms: int
    duration_ms: int
    audio_path: Path
    label: str
    volume: float = 1.0

    def __post_init__(self):
        if isinstance(self.kind, str):
            object.__setattr__(self, "kind", AudioKind(self.kind))
        object.__setattr__(self, "volume", min(1.0, max(0.0, float(self.volume))))

    def summary(self) -> dict:
        """Metadata-friendly summary (no file paths)."""
        return {
            "type": self.kind.value,
            "startMs": self.start_ms,
            "durationMs": self.duration_ms,
            "label": self.label,
        }


def _even(value: float) -> int:
    return int(math.floor(value / 2 + 0.5)) * 2


@dataclass(frozen=True)
class CropRect:
    """Crop rectangle in even-aligned pixels."""
    x: int
    y: int
    w: int
    h: int

    @classmethod
    def from_box(cls, box: dict, padding: int, viewport_w: int, viewport_h: int) -> "CropRect":
        """
        Derive a full-height crop around an element's bounding box.

        Args:
            box: Playwright bounding box dict (x, y, width, height)
            padding: Horizontal padding in CSS pixels on each side
            viewport_w: Logical viewport width
            viewport_h: Logical viewport height

        Returns:
            CropRect with even x/w, spanning the whole viewport height
        """
        x = _even(max(0, math.floor(box["x"] - padding)))
        w = min(_even(math.ceil(box["width"] + 2 * padding)), (viewport_w - x) // 2 * 2)
        return cls(x=x, y=0, w=max(2, w), h=viewport_h // 2 * 2)

    def scaled(self, factor: int) -> "CropRect":
        if factor == 1:
            return self
        return CropRect(self.x * factor, self.y * factor, self.w * factor, self.h * factor)

    def to_filter(self) -> str:
        return f"crop={self.w}:{self.h}:{self.x}:{self.y}"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExternalService:
    """A collaborator started elsewhere: a dev server or a sync relay."""
    url: str
    stop: Callable[[], Awaitable[None]]


@dataclass
class SyncSample:
    """One matched add/see caption pair from a collaboration run."""
    item: str
    adder: str
    observer: str
    added_ms: int
    seen_ms: int

    @property
    def delta_s(self) -> float:
        return self.seen_ms / 1000 - self.added_ms / 1000

    @property
    def ok(self) -> bool:
        return self.delta_s > 0

    def to_dict(self) -> dict:
        return {
            "item": self.item,
            "adder": self.adder,
            "observer": self.observer,
            "addedMs": self.added_ms,
            "seenMs": self.seen_ms,
            "deltaS": round(self.delta_s, 3),
            "ok": self.ok,
        }


@dataclass
class SyncReport:
    """Aggregated latency and causality figures for a collaboration run."""
    samples: list[SyncSample] = field(default_factory=list)
    window: int = 5

    @property
    def deltas(self) -> list[float]:
        return [s.delta_s for s in self.samples]

    @property
    def negatives(self) -> int:
        return sum(1 for s in self.samples if not s.ok)

    @property
    def ok(self) -> bool:
        return self.negatives == 0

    @property
    def min_s(self) -> Optional[float]:
        return min(self.deltas) if self.samples else None

    @property
    def max_s(self) -> Optional[float]:
        return max(self.deltas) if self.samples else None

    @property
    def avg_s(self) -> Optional[float]:
        return sum(self.deltas) / len(self.samples) if self.samples else None

    @property
    def head_avg_s(self) -> Optional[float]:
        head = self.deltas[: self.window]
        return sum(head) / len(head) if head else None

    @property
    def tail_avg_s(self) -> Optional[float]:
        tail = self.deltas[-self.window:]
        return sum(tail) / len(tail) if tail else None

    @property
    def trend_s(self) -> Optional[float]:
        """Mean of the last deltas minus mean of the first ones."""
        if not self.samples:
            return None
        return self.tail_avg_s - self.head_avg_s

    def to_dict(self) -> dict:
        def r(v):
            return None if v is None else round(v, 3)

        return {
            "n": len(self.samples),
            "min": r(self.min_s),
            "avg": r(self.avg_s),
            "max": r(self.max_s),
            "negatives": self.negatives,
            "trend": r(self.trend_s),
            "ok": self.ok,
            "samples": [s.to_dict() for s in self.samples],
        }


@dataclass
class SessionResult:
    """Everything a finished session produced."""
    video: Optional[Path]
    subtitles: Path
    metadata: Path
    artifact_dir: Path
    duration_ms: int
    steps: list[StepRecord]
    audio_events: Optional[list[AudioEvent]] = None
    role_subtitles: dict = field(default_factory=dict)
    thumbnail: Optional[Path] = None
    sync_report: Optional[SyncReport] = None
