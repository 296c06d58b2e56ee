"""
Session orchestration.

A Session owns one browser and a set of panes (browser pages with an Actor,
or terminal views with a shell process). Scenario code runs labeled steps
against those panes; finish() stops every capture, tears everything down,
composes the raw captures into one video, mixes narration in and writes
subtitles plus JSON metadata.

State machine: created -> initialized -> running -> finishing -> finished.
A session is single-use.
"""
import asyncio
import atexit
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from config.settings import (
    ARTIFACTS_DIR, BROWSER_VIEWPORT, CAPTURE_PADDING, CHROMIUM_ARGS, FFMPEG_PATH,
    OUTPUT_FPS, TAIL_PAUSE_MS, TERMINAL_VIEWPORT, default_mode, default_record,
    get_run_paths,
)
from proofcast.actor import Actor, merge_delays, pick_ms
from proofcast.capture import ScreenCapture, ScreencastCapture
from proofcast.channels import FileSink, OutputChannel, attach_page_events
from proofcast.compositor import LayoutSpec, VideoCompositor
from proofcast.errors import (
    CaptureError, CaptureValidationError, CompositionError, ProofcastError,
    SessionUsageError, TimingMismatchError,
)
from proofcast.ffmpeg import check_video_timing, embed_poster, resolve_ffmpeg
from proofcast.models import (
    CropRect, Mode, PaneKind, RecordMode, SessionResult, StepRecord,
)
from proofcast.narrator import NarrationOptions, create_audio_director, mix_audio_into_video
from proofcast.subtitles import write_subtitles
from proofcast.terminal import TerminalHandle, TerminalProcess, terminal_page_html
from proofcast.window_layout import create_window_placer

logger = logging.getLogger(__name__)

StepFn = Callable[[], Union[Awaitable[Any], Any]]


class SessionState(str, Enum):
    """Lifecycle of a Session."""
    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    FINISHING = "finishing"
    FINISHED = "finished"


@dataclass
class BrowserPane:
    """A browser page driven by an Actor."""
    id: str
    label: str
    context: BrowserContext
    page: Page
    actor: Actor
    viewport: Tuple[int, int]
    capture: Optional[ScreencastCapture] = None
    events: Optional[OutputChannel] = None
    created_ms: int = 0
    kind: PaneKind = field(default=PaneKind.BROWSER, init=False)


@dataclass
class TerminalPane:
    """A terminal view page backed by a shell process."""
    id: str
    label: str
    context: BrowserContext
    page: Page
    process: TerminalProcess
    viewport: Tuple[int, int]
    capture: Optional[ScreencastCapture] = None
    created_ms: int = 0
    kind: PaneKind = field(default=PaneKind.TERMINAL, init=False)


Pane = Union[BrowserPane, TerminalPane]


class BrowserLauncher:
    """Starts and stops Chromium through Playwright."""

    def __init__(self):
        self._playwright = None

    async def launch(self, headless: bool, args: list[str]) -> Browser:
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=headless, args=args)

    async def close(self, browser: Browser):
        try:
            await browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


def slugify(text: str) -> str:
    """Create a filesystem-safe slug from text."""
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "-", text.lower()).strip("-")
    return cleaned[:60] if cleaned else "session"


async def _call(fn: Optional[StepFn]):
    if fn is None:
        return None
    result = fn()
    if inspect.isawaitable(result):
        return await result
    return result


class Session:
    """Single-use orchestrator for one recorded scenario run."""

    def __init__(
        self,
        name: str = "session",
        mode: Optional[str] = None,
        record: Optional[bool] = None,
        record_mode: Optional[str] = None,
        headed: Optional[bool] = None,
        output_dir: Optional[Path] = None,
        layout: LayoutSpec = "auto",
        delays: Optional[dict] = None,
        narration: Optional[NarrationOptions] = None,
        ffmpeg: Optional[str] = None,
        screen_index: Optional[int] = None,
        display: Optional[str] = None,
        display_size: Optional[Tuple[int, int]] = None,
        seed: Optional[int] = None,
        jitter: bool = False,
        launcher: Optional[BrowserLauncher] = None,
    ):
        """
        Configure a session. Nothing is launched until init().

        Args:
            name: Used for the artifact directory name
            mode: "human" or "fast" (default from PROOFCAST_MODE / context)
            record: Record video (default from PROOFCAST_RECORD / context)
            record_mode: "screencast" (default) or "screen"
            headed: Show the browser (default: human mode)
            output_dir: Artifact directory (default artifacts/<name>-<timestamp>)
            layout: Composition layout for multiple panes ("auto" by default)
            delays: Partial actor delay overrides
            narration: NarrationOptions (silent when omitted)
            ffmpeg: FFmpeg binary
            screen_index: avfoundation screen index (macOS screen mode)
            display: X display for screen mode (default $DISPLAY)
            display_size: Screen size for screen mode
            seed: Seed for cursor paths and jitter
            jitter: Pick actor delays within their range instead of the midpoint
            launcher: Browser launcher (Playwright Chromium by default)
        """
        self.name = name
        self.mode = Mode(mode or default_mode())
        recording = default_record() if record is None else record
        if not recording:
            self.record_mode = RecordMode.NONE
        else:
            self.record_mode = RecordMode(record_mode or RecordMode.SCREENCAST)
        if self.record_mode == RecordMode.SCREEN:
            self.headed = True
        else:
            self.headed = (self.mode == Mode.HUMAN) if headed is None else headed
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        self.artifact_dir = Path(output_dir) if output_dir else ARTIFACTS_DIR / f"{slugify(name)}-{timestamp}"
        self.paths = get_run_paths(self.artifact_dir)
        self.layout = layout
        self.delays = delays
        self.narration = narration
        self.ffmpeg = ffmpeg or FFMPEG_PATH
        self.screen_index = screen_index
        self.display = display
        self.display_size = display_size
        self.seed = seed
        self.jitter = jitter
        self.launcher = launcher or BrowserLauncher()
        self.compositor = VideoCompositor(self.ffmpeg, OUTPUT_FPS)

        self.state = SessionState.CREATED
        self.browser: Optional[Browser] = None
        self.audio = None
        self.window_placer = None
        self.screen_capture: Optional[ScreenCapture] = None
        self.crop: Optional[CropRect] = None
        self.crop_logical_width = BROWSER_VIEWPORT[0]
        self.result: Optional[SessionResult] = None
        self.start_time = 0.0
        self._panes: dict[str, Pane] = {}
        self._steps: list[StepRecord] = []
        self._pane_counter = 0
        self._step_counter = 0
        self._cleanups: list[Callable] = []

    # -- properties --------------------------------------------------------

    @property
    def recording(self) -> bool:
        return self.record_mode != RecordMode.NONE

    @property
    def steps(self) -> list[StepRecord]:
        return list(self._steps)

    @property
    def panes(self) -> list[Pane]:
        return list(self._panes.values())

    @property
    def actor(self) -> Actor:
        """The first browser pane's actor."""
        for pane in self._panes.values():
            if isinstance(pane, BrowserPane):
                return pane.actor
        raise SessionUsageError("No browser pane has been opened")

    def pane(self, pane_id: str) -> Pane:
        try:
            return self._panes[pane_id]
        except KeyError:
            raise SessionUsageError(f"Unknown pane id: {pane_id}") from None

    def _elapsed_ms(self) -> int:
        return int(round((time.monotonic() - self.start_time) * 1000))

    def _require_open(self):
        if self.state in (SessionState.FINISHING, SessionState.FINISHED):
            raise SessionUsageError("Session is already finished")

    # -- lifecycle ---------------------------------------------------------

    async def init(self):
        """Launch the browser and start session-wide services."""
        if self.state != SessionState.CREATED:
            raise SessionUsageError(f"Session cannot be initialized from state {self.state.value}")

        if self.recording:
            self.ffmpeg = resolve_ffmpeg(self.ffmpeg)
            self.compositor.ffmpeg = self.ffmpeg
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Session %s: mode=%s record=%s headed=%s -> %s",
            self.name, self.mode.value, self.record_mode.value, self.headed, self.artifact_dir,
        )
        self.browser = await self.launcher.launch(headless=not self.headed, args=CHROMIUM_ARGS)
        self.start_time = time.monotonic()
        self.audio = create_audio_director(self.narration, self.start_time, self.ffmpeg, mode=self.mode)
        self.window_placer = create_window_placer(headless=not self.headed)
        atexit.register(self._kill_orphans)
        self.state = SessionState.INITIALIZED

        if self.record_mode == RecordMode.SCREEN:
            capture = ScreenCapture(
                self.paths["video"],
                display=self.display,
                screen_index=self.screen_index,
                ffmpeg=self.ffmpeg,
                **({"display_size": self.display_size} if self.display_size else {}),
            )
            try:
                await capture.start()
                self.screen_capture = capture
            except CaptureError as e:
                logger.warning("Screen capture could not start, continuing without video: %s", e)

    async def __aenter__(self) -> "Session":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            await self.capture_failure_screenshots()
        if self.state in (SessionState.FINISHING, SessionState.FINISHED):
            return False
        if exc is None:
            await self.finish()
        else:
            try:
                await self.finish()
            except ProofcastError as e:
                logger.error("Teardown after a failed scenario also failed: %s", e)
        return False

    async def run(self, scenario: Callable[["Session"], Awaitable[Any]]) -> SessionResult:
        """
        Run a scenario coroutine function and finish the session.

        A failing scenario still gets per-pane failure screenshots and a full
        teardown before its exception propagates.
        """
        if self.state == SessionState.CREATED:
            await self.init()
        try:
            await scenario(self)
        except Exception:
            await self.capture_failure_screenshots()
            if self.state not in (SessionState.FINISHING, SessionState.FINISHED):
                try:
                    await self.finish()
                except ProofcastError as e:
                    logger.error("Teardown after a failed scenario also failed: %s", e)
            raise
        if self.state == SessionState.FINISHED and self.result is not None:
            return self.result
        return await self.finish()

    # -- panes -------------------------------------------------------------

    def _next_pane_id(self) -> str:
        self._pane_counter += 1
        return f"pane-{self._pane_counter}"

    async def _new_context(self, pane_id: str, viewport: Tuple[int, int]) -> BrowserContext:
        width, height = viewport
        options = {"viewport": {"width": width, "height": height}}
        if self.record_mode == RecordMode.SCREENCAST:
            try:
                return await self.browser.new_context(
                    **options,
                    record_video_dir=str(self.artifact_dir / "raw"),
                    record_video_size={"width": width, "height": height},
                )
            except PlaywrightError as e:
                logger.warning("Screencast capture failed to start for %s, no video for this pane: %s",
                               pane_id, e)
        return await self.browser.new_context(**options)

    async def _prepare(self):
        self._require_open()
        if self.state == SessionState.CREATED:
            await self.init()

    async def open_page(
        self,
        url: Optional[str] = None,
        viewport: Optional[Tuple[int, int]] = None,
        label: Optional[str] = None,
        cursor_id: Optional[str] = None,
    ) -> BrowserPane:
        """
        Open a browser pane in a fresh isolated context.

        Args:
            url: Navigate here once the page is ready
            viewport: (width, height) in CSS pixels
            label: Display label (defaults to the pane id)
            cursor_id: Overlay cursor identity

        Returns:
            BrowserPane with .page and .actor
        """
        await self._prepare()
        pane_id = self._next_pane_id()
        viewport = tuple(viewport or BROWSER_VIEWPORT)
        created_ms = self._elapsed_ms()
        context = await self._new_context(pane_id, viewport)
        page = await context.new_page()

        capture = None
        if self.record_mode == RecordMode.SCREENCAST and page.video is not None:
            capture = ScreencastCapture(page, self.artifact_dir / f"{pane_id}.raw.webm")

        actor = Actor(
            page, mode=self.mode, delays=self.delays, cursor_id=cursor_id or "default",
            seed=self.seed, jitter=self.jitter,
        )
        actor.audio = self.audio
        await actor.install_init_scripts(show_cursor=True)

        events = OutputChannel(
            f"{pane_id}:events",
            [FileSink(self.artifact_dir / f"{pane_id}.console.log", line_mode=True)],
        )
        events.start()
        attach_page_events(page, events)

        pane = BrowserPane(
            id=pane_id, label=label or pane_id, context=context, page=page,
            actor=actor, viewport=viewport, capture=capture, events=events,
            created_ms=created_ms,
        )
        self._panes[pane_id] = pane

        if url:
            await actor.goto(url)
            await actor.inject_cursor()
        logger.info("Opened %s (%s)", pane_id, url or "blank")
        return pane

    async def open_terminal(
        self,
        command: Optional[str] = None,
        viewport: Optional[Tuple[int, int]] = None,
        label: Optional[str] = None,
    ) -> TerminalHandle:
        """
        Open a terminal pane running a shell command (interactive sh if None).

        Returns:
            TerminalHandle with send() and wait_for_output()
        """
        await self._prepare()
        pane_id = self._next_pane_id()
        viewport = tuple(viewport or TERMINAL_VIEWPORT)
        created_ms = self._elapsed_ms()
        context = await self._new_context(pane_id, viewport)
        page = await context.new_page()
        await page.set_content(terminal_page_html(label or command or "Terminal"))

        capture = None
        if self.record_mode == RecordMode.SCREENCAST and page.video is not None:
            capture = ScreencastCapture(page, self.artifact_dir / f"{pane_id}.raw.webm")

        process = TerminalProcess(command, self.artifact_dir / f"{pane_id}.log", page)
        await process.start()

        self._panes[pane_id] = TerminalPane(
            id=pane_id, label=label or pane_id, context=context, page=page,
            process=process, viewport=viewport, capture=capture,
            created_ms=created_ms,
        )
        return TerminalHandle(pane_id, page, process)

    async def tile_windows(self, gap: int = 0) -> int:
        """Place headed pane windows side by side; returns how many moved."""
        pages = [p.page for p in self._panes.values()]
        if not pages:
            return 0
        width = max(p.viewport[0] for p in self._panes.values())
        height = max(p.viewport[1] for p in self._panes.values())
        return await self.window_placer.tile(pages, width, height + 80, gap=gap)

    async def set_capture_crop(
        self, selector: str, padding: int = CAPTURE_PADDING, pane_id: Optional[str] = None
    ) -> CropRect:
        """Crop the composed video to a column around an element."""
        pane = self.pane(pane_id) if pane_id else None
        if pane is None:
            pane = next((p for p in self._panes.values() if isinstance(p, BrowserPane)), None)
        if not isinstance(pane, BrowserPane):
            raise SessionUsageError("set_capture_crop needs a browser pane")
        element = await pane.actor.wait_for(selector)
        box = await element.bounding_box()
        if not box:
            raise SessionUsageError(f'Capture selector "{selector}" has no bounding box')
        self.crop = CropRect.from_box(box, padding, pane.viewport[0], pane.viewport[1])
        self.crop_logical_width = pane.viewport[0]
        logger.info("Capture crop: %s", self.crop)
        return self.crop

    def add_cleanup(self, fn: Callable):
        """Register a sync or async callable to run during finish()."""
        self._cleanups.append(fn)

    # -- steps -------------------------------------------------------------

    async def _breathe(self):
        for pane in self._panes.values():
            if isinstance(pane, BrowserPane):
                await pane.actor.breathe()
                return
        delay = pick_ms(merge_delays(self.mode, self.delays).breathe_ms)
        if delay > 0:
            await asyncio.sleep(delay / 1000)

    async def step(
        self,
        caption: str,
        fn: Optional[StepFn] = None,
        narration: Optional[str] = None,
        pane_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> StepRecord:
        """
        Run one labeled unit of scenario work.

        With narration in human mode the clip is generated first, then the
        action and the speech run together.

        Args:
            caption: Subtitle text for the step
            fn: Sync or async callable doing the work
            narration: Text to speak during the step
            pane_id: Pane the step is about (validated)
            role: Role tag (collaboration runs)

        Returns:
            The appended StepRecord
        """
        self._require_open()
        if self.state == SessionState.CREATED:
            raise SessionUsageError("Call init() or open a pane before running steps")
        if pane_id is not None:
            self.pane(pane_id)
        self.state = SessionState.RUNNING

        self._step_counter += 1
        index = self._step_counter
        start_ms = self._elapsed_ms()
        logger.info("  Step %d: %s", index, caption)

        if narration and self.mode == Mode.HUMAN and self.audio.enabled:
            await self.audio.warmup(narration)
            await asyncio.gather(_call(fn), self.audio.speak(narration))
        else:
            await _call(fn)

        await self._breathe()
        record = StepRecord(
            index=index, caption=caption, start_ms=start_ms, end_ms=self._elapsed_ms(),
            pane_id=pane_id, role=role,
        )
        self._steps.append(record)
        return record

    # -- teardown ----------------------------------------------------------

    async def capture_failure_screenshots(self):
        """Best-effort screenshot of every open pane as {pane}-failure.png."""
        for pane in self._panes.values():
            if pane.page.is_closed():
                continue
            path = self.artifact_dir / f"{pane.id}-failure.png"
            try:
                await pane.page.screenshot(path=str(path))
                logger.info("Failure screenshot: %s", path)
            except PlaywrightError as e:
                logger.warning("Could not screenshot %s: %s", pane.id, e)

    async def _take_thumbnail(self) -> Optional[Path]:
        for pane in self._panes.values():
            if isinstance(pane, BrowserPane) and not pane.page.is_closed():
                try:
                    await pane.page.screenshot(path=str(self.paths["thumbnail"]))
                except PlaywrightError as e:
                    logger.warning("Thumbnail screenshot failed: %s", e)
                    return None
                await asyncio.sleep(0.08)
                return self.paths["thumbnail"]
        return None

    async def _stop_captures(self) -> Tuple[list[Tuple[Path, int]], Optional[Path]]:
        """
        Stop the screen capture and every pane screencast.

        Returns:
            ([(raw_path, pane created_ms), ...], screen video or None)
        """
        screen_video = None
        if self.screen_capture is not None:
            capture, self.screen_capture = self.screen_capture, None
            screen_video = await capture.stop()

        raw = []
        for pane in self._panes.values():
            if pane.capture is None:
                continue
            try:
                path = await pane.capture.stop()
            except PlaywrightError as e:
                logger.warning("Could not save screencast for %s: %s", pane.id, e)
                continue
            if path is not None:
                raw.append((path, pane.created_ms))
        return raw, screen_video

    async def _teardown(self):
        for pane in self._panes.values():
            if isinstance(pane, BrowserPane) and pane.events is not None:
                await pane.events.close()
            if not pane.page.is_closed():
                await pane.page.close()
            await pane.context.close()
        if self.browser is not None:
            await self.launcher.close(self.browser)
            self.browser = None

        for pane in self._panes.values():
            if isinstance(pane, TerminalPane):
                await pane.process.stop()

        for fn in reversed(self._cleanups):
            await _call(fn)
        self._cleanups.clear()

        if self.audio is not None:
            self.audio.close()

    def _kill_orphans(self):
        """Exit-time safety net for processes a crashed run left behind."""
        if self.screen_capture is not None:
            self.screen_capture.kill()
        for pane in self._panes.values():
            if isinstance(pane, TerminalPane):
                pane.process.kill()
        if self.audio is not None:
            self.audio.close()

    async def finish(self) -> SessionResult:
        """
        Stop captures, tear down, compose, mix and write artifacts.

        Raises:
            SessionUsageError: on a second call
            CaptureValidationError: when a screen capture produced no frames
            TimingMismatchError: on output timing drift under CI
        """
        if self.state in (SessionState.FINISHING, SessionState.FINISHED):
            raise SessionUsageError("finish() was already called; sessions are single-use")
        if self.state == SessionState.CREATED:
            raise SessionUsageError("Session was never initialized")
        self.state = SessionState.FINISHING

        thumbnail = None
        raw: list[Tuple[Path, int]] = []
        screen_video = None
        try:
            if self.recording:
                if self.mode == Mode.HUMAN:
                    await asyncio.sleep(TAIL_PAUSE_MS / 1000)
                thumbnail = await self._take_thumbnail()
            duration_ms = self._elapsed_ms()
            raw, screen_video = await self._stop_captures()
        except CaptureValidationError:
            await self._teardown()
            self._mark_finished()
            raise
        await self._teardown()

        video = await self._produce_video(raw, screen_video, duration_ms)
        timing_error = None
        if video is not None:
            try:
                await asyncio.to_thread(check_video_timing, self.ffmpeg, video, duration_ms / 1000)
            except TimingMismatchError as e:
                timing_error = e

        events = self.audio.events if self.audio is not None else []
        if video is not None and events:
            video = await asyncio.to_thread(mix_audio_into_video, video, events, self.ffmpeg)
        if video is not None and thumbnail is not None:
            await asyncio.to_thread(embed_poster, self.ffmpeg, video, thumbnail)

        subtitles = write_subtitles(self.paths["subtitles"], self._steps)
        result = SessionResult(
            video=video,
            subtitles=subtitles,
            metadata=self.paths["metadata"],
            artifact_dir=self.artifact_dir,
            duration_ms=duration_ms,
            steps=list(self._steps),
            audio_events=events or None,
            thumbnail=thumbnail,
        )
        self._write_extra_artifacts(result)
        self._write_metadata(result)

        self.result = result
        self._mark_finished()
        logger.info("Session finished in %.1fs: %s", duration_ms / 1000, video or "no video")
        if timing_error is not None:
            raise timing_error
        return result

    def _mark_finished(self):
        self.state = SessionState.FINISHED
        atexit.unregister(self._kill_orphans)

    async def _produce_video(
        self, raw: list[Tuple[Path, int]], screen_video: Optional[Path], duration_ms: int
    ) -> Optional[Path]:
        if self.record_mode == RecordMode.SCREEN:
            return screen_video
        if self.record_mode != RecordMode.SCREENCAST or not raw:
            return None
        # Offsets are on the session clock, the same one subtitles and audio use
        try:
            result = await asyncio.to_thread(
                self.compositor.compose,
                [path for path, _ in raw],
                self.paths["video"],
                layout=self.layout,
                target_duration_s=duration_ms / 1000,
                crop=self.crop,
                logical_width=self.crop_logical_width,
                start_offsets=[created / 1000 for _, created in raw],
            )
        except CompositionError as e:
            logger.error("No video produced: %s", e)
            return None
        return result.output_path

    def _write_extra_artifacts(self, result: SessionResult):
        """Hook for subclasses to add artifacts before metadata is written."""

    def _metadata_extra(self, result: SessionResult) -> dict:
        return {}

    def _write_metadata(self, result: SessionResult):
        metadata = {
            "name": self.name,
            "mode": self.mode.value,
            "recordMode": self.record_mode.value,
            "durationMs": result.duration_ms,
            "steps": [s.to_dict() for s in result.steps],
            "videoPath": str(result.video) if result.video else None,
            "subtitlesPath": str(result.subtitles),
            "thumbnailPath": str(result.thumbnail) if result.thumbnail else None,
            "panes": [
                {"id": p.id, "kind": p.kind.value, "label": p.label}
                for p in self._panes.values()
            ],
            "timestamp": datetime.now().isoformat(),
        }
        if result.audio_events:
            metadata["audioEvents"] = [e.summary() for e in result.audio_events]
        metadata.update(self._metadata_extra(result))
        with open(result.metadata, "w") as f:
            json.dump(metadata, f, indent=2)


async def run_session(scenario: Callable[[Session], Awaitable[Any]], **options) -> SessionResult:
    """
    Convenience function to run a scenario in a fresh Session.

    Args:
        scenario: async def scenario(session)
        **options: Session keyword arguments

    Returns:
        SessionResult
    """
    session = Session(**options)
    return await session.run(scenario)
