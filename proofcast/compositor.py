"""
Video composition pipeline.

Merges N raw per-pane captures into one constant-framerate H.264 file.
Each pane's screencast starts on its own clock, so raw timestamps cannot be
trusted to line up: every stream is retimed to span the part of the run it
was open for, padded with black up to the moment its pane opened,
resampled to a fixed framerate, optionally cropped, and only then stacked.
"""
import logging
import math
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from config.settings import BROWSER_VIEWPORT, FFMPEG_PATH, OUTPUT_FPS, PTS_WARP_RANGE
from proofcast import ffmpeg as ff
from proofcast.errors import CompositionError
from proofcast.models import CropRect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridLayout:
    """Grid layout with an explicit column count."""
    cols: int


LayoutSpec = Union[str, GridLayout, dict, None]


@dataclass(frozen=True)
class ResolvedLayout:
    """Layout after applying the auto rule: "single", "row", "column" or "grid"."""
    kind: str
    cols: int = 1


@dataclass
class StreamProbe:
    """What the encoder told us about one raw capture."""
    path: Path
    frames: int = 0
    duration_s: float = 0.0
    width: int = 0
    height: int = 0


@dataclass
class CompositionPlan:
    """Fully built encoder invocation."""
    args: list[str]
    filter_graph: str
    layout: ResolvedLayout
    crop: Optional[CropRect] = None


@dataclass
class CompositionResult:
    """Outcome of compose()."""
    output_path: Path
    layout: str
    fallback: bool = False


def resolve_layout(layout: LayoutSpec, n: int) -> ResolvedLayout:
    """
    Decide the stacking layout for n inputs.

    One input is never stacked. "auto" means row for up to 3 inputs and a
    grid otherwise; a grid without explicit columns uses ceil(sqrt(n)).
    """
    if n <= 1:
        return ResolvedLayout("single", 1)
    if isinstance(layout, dict):
        layout = GridLayout(int(layout["cols"]))
    if isinstance(layout, GridLayout):
        return ResolvedLayout("grid", max(1, layout.cols))
    kind = (layout or "auto").lower()
    if kind == "auto":
        kind = "row" if n <= 3 else "grid"
    if kind == "row":
        return ResolvedLayout("row", n)
    if kind == "column":
        return ResolvedLayout("column", 1)
    if kind == "grid":
        return ResolvedLayout("grid", math.ceil(math.sqrt(n)))
    raise ValueError(f"Unknown layout: {layout!r}")


def grid_positions(n: int, cols: int) -> str:
    """
    xstack layout string for n cells in rows of `cols`.

    A cell's x offset is the sum of the widths of the cells before it in its
    row; its y offset is the sum of the heights of the first cell of each
    row above it.
    """
    cells = []
    for idx in range(n):
        row, col = divmod(idx, cols)
        x = "+".join(f"w{row * cols + k}" for k in range(col)) or "0"
        y = "+".join(f"h{k * cols}" for k in range(row)) or "0"
        cells.append(f"{x}_{y}")
    return "|".join(cells)


def setpts_expression(target_s: Optional[float], frames: int, raw_duration_s: float) -> str:
    """
    Timestamp correction for one stream.

    With a known target and frame count, frame N is shown at N * (T / frames),
    so the stream spans exactly T. Otherwise existing timestamps are scaled
    by T / raw_duration, clamped to PTS_WARP_RANGE.
    """
    if target_s and target_s > 0 and frames > 0:
        return f"setpts=N*{target_s / frames:.9f}/TB"
    if target_s and target_s > 0 and raw_duration_s > 0.1:
        low, high = PTS_WARP_RANGE
        factor = min(high, max(low, target_s / raw_duration_s))
        return f"setpts=(PTS-STARTPTS)*{factor:.6f}"
    return "setpts=PTS-STARTPTS"


def start_pad_filter(offset_s: float, fps: int = OUTPUT_FPS) -> Optional[str]:
    """Black lead-in for a stream whose pane opened offset_s into the run."""
    if offset_s < 1.0 / fps:
        return None
    return f"tpad=start_duration={offset_s:.3f}:color=black"


def crop_scale_factor(actual_width: int, logical_width: int) -> int:
    """Integer device-pixel-ratio between the captured and logical widths."""
    if actual_width <= 0 or logical_width <= 0:
        return 1
    return max(1, round(actual_width / logical_width))


def scale_crop(crop: CropRect, actual_width: int, logical_width: int) -> CropRect:
    return crop.scaled(crop_scale_factor(actual_width, logical_width))


def plan_composition(
    probes: Sequence[StreamProbe],
    output: Path,
    layout: LayoutSpec = "auto",
    target_duration_s: Optional[float] = None,
    crop: Optional[CropRect] = None,
    logical_width: int = BROWSER_VIEWPORT[0],
    fps: int = OUTPUT_FPS,
    start_offsets: Optional[Sequence[float]] = None,
) -> CompositionPlan:
    """
    Build the encoder arguments for a composition without running anything.

    Args:
        probes: One StreamProbe per raw input, in pane order
        output: Destination file
        layout: "auto", "row", "column", "grid", GridLayout(cols) or {"cols": k}
        target_duration_s: Measured wall-clock duration of the run
        crop: Crop in logical (CSS) pixels, applied to every stream
        logical_width: Configured viewport width the crop was measured in
        fps: Output framerate
        start_offsets: Seconds into the run at which each stream began

    Returns:
        CompositionPlan with args (excluding the ffmpeg binary and -y)
    """
    if not probes:
        raise ValueError("No inputs to compose")

    resolved = resolve_layout(layout, len(probes))
    offsets = list(start_offsets or [])
    chains = []
    scaled_crop = None
    widths = []
    heights = []
    for i, p in enumerate(probes):
        offset = offsets[i] if i < len(offsets) else 0.0
        pad = start_pad_filter(offset, fps)
        span = target_duration_s
        if span and pad:
            # A late pane only covers the tail of the run
            span = max(span - offset, 0.1)
        parts = [setpts_expression(span, p.frames, p.duration_s), f"fps={fps}"]
        if pad:
            parts.append(pad)
        width, height = p.width, p.height
        if crop is not None:
            scaled_crop = scale_crop(crop, p.width, logical_width)
            parts.append(scaled_crop.to_filter())
            width, height = scaled_crop.w, scaled_crop.h
        chains.append(parts)
        widths.append(width)
        heights.append(height)

    args: list[str] = []
    for p in probes:
        args.extend(["-i", str(p.path)])

    if resolved.kind == "single":
        graph = ",".join(chains[0])
        args.extend(["-vf", graph])
    else:
        tallest = max(heights) if all(heights) else 0
        widest = max(widths) if all(widths) else 0
        labels = []
        nodes = []
        for i, parts in enumerate(chains):
            if resolved.kind == "row" and tallest and heights[i] != tallest:
                parts = parts + [f"pad=iw:{tallest}:0:0:color=black"]
            elif resolved.kind == "column" and widest and widths[i] != widest:
                parts = parts + [f"pad={widest}:ih:0:0:color=black"]
            nodes.append(f"[{i}:v]{','.join(parts)}[v{i}]")
            labels.append(f"[v{i}]")
        n = len(probes)
        if resolved.kind == "row":
            stack = f"{''.join(labels)}hstack=inputs={n}:shortest=1[v]"
        elif resolved.kind == "column":
            stack = f"{''.join(labels)}vstack=inputs={n}:shortest=1[v]"
        else:
            stack = (
                f"{''.join(labels)}xstack=inputs={n}:"
                f"layout={grid_positions(n, resolved.cols)}:fill=black:shortest=1[v]"
            )
        graph = ";".join(nodes + [stack])
        args.extend(["-filter_complex", graph, "-map", "[v]"])

    args.extend(ff.encoder_args(fps))
    args.append(str(output))
    return CompositionPlan(args=args, filter_graph=graph, layout=resolved, crop=scaled_crop)


class VideoCompositor:
    """Composes raw pane captures into a single synchronized video."""

    def __init__(self, ffmpeg: Optional[str] = None, fps: int = OUTPUT_FPS):
        self.ffmpeg = ffmpeg or FFMPEG_PATH
        self.fps = fps

    def probe(self, path: Path, frames: bool = True, size: bool = True) -> StreamProbe:
        """Probe one raw capture for duration, frame count and size."""
        probe = StreamProbe(path=Path(path))
        probe.duration_s = ff.probe_duration(self.ffmpeg, path)
        if frames:
            probe.frames = ff.probe_frame_count(self.ffmpeg, path)
        if size:
            dims = ff.probe_size(self.ffmpeg, path)
            if dims:
                probe.width, probe.height = dims
        return probe

    def compose(
        self,
        inputs: Sequence[Path],
        output: Path,
        layout: LayoutSpec = "auto",
        target_duration_s: Optional[float] = None,
        crop: Optional[CropRect] = None,
        logical_width: int = BROWSER_VIEWPORT[0],
        cleanup: bool = True,
        start_offsets: Optional[Sequence[float]] = None,
    ) -> CompositionResult:
        """
        Compose raw captures into output, falling back to the first stream.

        Raw inputs are deleted once either the composite or the fallback has
        been written (when cleanup is set).

        Raises:
            CompositionError: if both the composite and the fallback fail
        """
        inputs = [Path(p) for p in inputs]
        output = Path(output)
        probes = [
            self.probe(p, frames=bool(target_duration_s), size=True)
            for p in inputs
        ]
        plan = plan_composition(
            probes, output, layout=layout, target_duration_s=target_duration_s,
            crop=crop, logical_width=logical_width, fps=self.fps, start_offsets=start_offsets,
        )
        logger.info(
            "Composing %d stream(s) as %s into %s", len(inputs), plan.layout.kind, output.name
        )

        fallback = False
        try:
            ff.run_ffmpeg(self.ffmpeg, plan.args)
        except subprocess.CalledProcessError as e:
            logger.warning(
                "Composition failed (%s), falling back to first stream: %s",
                e.returncode, _tail(e.stderr),
            )
            self._reencode_single(inputs[0], output)
            fallback = True

        if cleanup:
            for path in inputs:
                if path.resolve() != output.resolve():
                    path.unlink(missing_ok=True)

        return CompositionResult(output_path=output, layout=plan.layout.kind, fallback=fallback)

    def _reencode_single(self, source: Path, output: Path):
        args = ["-i", str(source), "-vf", f"fps={self.fps},format=yuv420p",
                *ff.encoder_args(self.fps), str(output)]
        try:
            ff.run_ffmpeg(self.ffmpeg, args)
        except subprocess.CalledProcessError as e:
            raise CompositionError(f"Fallback re-encode of {source.name} failed: {_tail(e.stderr)}") from e


def _tail(text: Optional[str], lines: int = 5) -> str:
    if not text:
        return ""
    return " | ".join(text.strip().splitlines()[-lines:])


def compose_videos(
    inputs: Sequence[Path],
    output: Path,
    layout: LayoutSpec = "auto",
    target_duration_s: Optional[float] = None,
    crop: Optional[CropRect] = None,
    logical_width: int = BROWSER_VIEWPORT[0],
    cleanup: bool = True,
    start_offsets: Optional[Sequence[float]] = None,
) -> CompositionResult:
    """
    Convenience function to compose raw captures.

    Args:
        inputs: Raw capture files in pane order
        output: Destination mp4
        layout: "auto", "row", "column", "grid" or GridLayout(cols)
        target_duration_s: Measured run duration for timestamp correction
        crop: Optional crop in logical pixels
        logical_width: Logical viewport width for crop scaling
        cleanup: Delete raw inputs afterwards
        start_offsets: Per-input start offsets in seconds

    Returns:
        CompositionResult
    """
    compositor = VideoCompositor()
    return compositor.compose(
        inputs, output, layout=layout, target_duration_s=target_duration_s,
        crop=crop, logical_width=logical_width, cleanup=cleanup, start_offsets=start_offsets,
    )
