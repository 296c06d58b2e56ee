"""
Two-actor collaboration sessions.

Two browser actors work on one shared document that an external relay keeps
in sync. The first actor creates the document; its address (the location
fragment after navigation) is handed to the second actor and to an optional
reviewer process that edits the same document over a line protocol on stdin.
Every step is tagged with the acting role, which yields per-role subtitle
tracks and, after the run, a sync-latency audit.
"""
import asyncio
import json
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.settings import (
    BROWSER_VIEWPORT, CAPTURE_PADDING, DOC_HASH_TIMEOUT_MS, SCREEN_SIZE,
)
from proofcast.errors import ElementNotFoundError, SessionUsageError
from proofcast.models import ExternalService, Mode, RecordMode, SessionResult, StepRecord
from proofcast.session import BrowserPane, Session, StepFn
from proofcast.subtitles import write_subtitles
from proofcast.sync_audit import ADD_PATTERN, SEE_PATTERN, audit_sync, format_sample, summarize
from proofcast.terminal import TerminalHandle, TerminalProcess

logger = logging.getLogger(__name__)

BOTH = "both"

SYNC_OVERLAY_SCRIPT = """
(label) => {
  window.__pc_role = label;
  if (window.__pc_overlay_installed) return;
  window.__pc_overlay_installed = true;
  const tick = () => {
    if (!document.body) return;
    let el = document.getElementById('__pc_sync_overlay');
    if (!el) {
      el = document.createElement('div');
      el.id = '__pc_sync_overlay';
      el.style.cssText = 'position:fixed;top:8px;left:8px;z-index:999999;' +
        'font:12px/1.3 ui-monospace,Menlo,Consolas,monospace;color:#fff;' +
        'background:rgba(0,0,0,0.6);border:1px solid rgba(255,255,255,0.25);' +
        'border-radius:6px;padding:6px 8px;white-space:pre;pointer-events:none';
      document.body.appendChild(el);
    }
    const epoch = window.__pc_epochMs || Date.now();
    const seq = window.__pc_seq === undefined ? '-' : window.__pc_seq;
    const applied = window.__pc_applied === undefined ? '-' : window.__pc_applied;
    el.textContent = window.__pc_role + ' t=' + (Date.now() - epoch) + 'ms\\n' +
      'seq=' + seq + '\\napplied=' + applied;
  };
  window.addEventListener('DOMContentLoaded', tick);
  setInterval(tick, 100);
}
"""


@dataclass(frozen=True)
class ActorSpec:
    """One collaborating actor: role id, display label and app path."""
    id: str
    label: str
    path: str = "/"


def build_actor_url(base_url: str, path: str, ws_url: Optional[str] = None, fragment: str = "") -> str:
    """Join base URL and path, add ?ws= for the relay and the document fragment."""
    parts = urlsplit(base_url.rstrip("/") + "/" + path.lstrip("/"))
    query = parse_qsl(parts.query, keep_blank_values=True)
    if ws_url:
        query = [(k, v) for k, v in query if k != "ws"] + [("ws", ws_url)]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), fragment.lstrip("#")))


class CollabSession(Session):
    """Session with two role-tagged actors sharing one synced document."""

    def __init__(
        self,
        actors: Sequence[ActorSpec],
        base_url: str,
        relay: Optional[ExternalService] = None,
        ws_url: Optional[str] = None,
        reviewer_command: Optional[Sequence[str]] = None,
        show_reviewer: bool = False,
        viewport: Tuple[int, int] = BROWSER_VIEWPORT,
        capture_selector: Optional[str] = None,
        capture_padding: int = CAPTURE_PADDING,
        sync_overlay: bool = False,
        add_pattern: str = ADD_PATTERN,
        see_pattern: str = SEE_PATTERN,
        **options,
    ):
        """
        Configure a collaboration session.

        Args:
            actors: Exactly two ActorSpecs with distinct ids
            base_url: App base URL (from the dev server collaborator)
            relay: Sync relay collaborator; its url is used and stop() runs at finish
            ws_url: Relay URL when no relay object is given
            reviewer_command: argv of the reviewer CLI; --ws/--doc/--log are appended
            show_reviewer: Show the reviewer as a recorded terminal pane
            viewport: Viewport of each actor page
            capture_selector: Crop the video to a column around this element
            capture_padding: Horizontal padding around the crop element
            sync_overlay: Show a debug overlay with role and elapsed time
            add_pattern: Caption regex for "item added" steps
            see_pattern: Caption regex for "item observed" steps
            **options: Session keyword arguments
        """
        actors = list(actors)
        ids = [a.id for a in actors]
        if len(actors) != 2 or len(set(ids)) != 2:
            raise SessionUsageError("Collaboration needs exactly two actors with distinct ids")
        if BOTH in ids:
            raise SessionUsageError(f'"{BOTH}" is reserved and cannot be an actor id')
        options.setdefault("name", "collab")
        super().__init__(**options)
        self.actor_specs = actors
        self.base_url = base_url
        self.relay = relay
        self.ws_url = relay.url if relay else ws_url
        self.reviewer_command = list(reviewer_command) if reviewer_command else None
        self.show_reviewer = show_reviewer
        self.viewport = tuple(viewport)
        self.capture_selector = capture_selector
        self.capture_padding = capture_padding
        self.sync_overlay = sync_overlay
        self.add_pattern = add_pattern
        self.see_pattern = see_pattern
        self.doc_url: Optional[str] = None
        self._role_panes: dict[str, BrowserPane] = {}
        self._reviewer: Optional[TerminalProcess] = None
        self._reviewer_is_pane = False

    @property
    def actor_ids(self) -> list[str]:
        return [a.id for a in self.actor_specs]

    def actor_for(self, role: str):
        """Actor bound to a role id."""
        try:
            return self._role_panes[role].actor
        except KeyError:
            raise SessionUsageError(f"Unknown actor role: {role}") from None

    def page_for(self, role: str):
        try:
            return self._role_panes[role].page
        except KeyError:
            raise SessionUsageError(f"Unknown actor role: {role}") from None

    async def init(self):
        await super().init()
        if self.relay is not None:
            self.add_cleanup(self.relay.stop)

        for spec in self.actor_specs:
            pane = await self.open_page(viewport=self.viewport, label=spec.label, cursor_id=spec.id)
            if self.sync_overlay:
                await pane.page.add_init_script(f"({SYNC_OVERLAY_SCRIPT})({json.dumps(spec.label)})")
            self._role_panes[spec.id] = pane

        await self._bootstrap_document()
        if self.headed:
            await self._tile()

        if self.capture_selector and self.record_mode == RecordMode.SCREENCAST:
            first = self._role_panes[self.actor_ids[0]]
            try:
                await self.set_capture_crop(self.capture_selector, self.capture_padding, pane_id=first.id)
            except ElementNotFoundError:
                logger.warning('Capture selector "%s" not found, recording full viewport',
                               self.capture_selector)

        if self.sync_overlay:
            epoch_ms = int((time.time() - (time.monotonic() - self.start_time)) * 1000)
            for spec in self.actor_specs:
                await self.page_for(spec.id).evaluate("(epoch) => { window.__pc_epochMs = epoch; }", epoch_ms)

    async def _tile(self):
        if self.record_mode == RecordMode.SCREEN:
            screen_w, screen_h = self.display_size or SCREEN_SIZE
            tile_w, tile_h = screen_w // 3, screen_h
        else:
            tile_w, tile_h = self.viewport[0], self.viewport[1] + 80
        # Actors first, then the reviewer terminal when it is shown
        pages = [self._role_panes[i].page for i in self.actor_ids]
        pages += [p.page for p in self.panes if p.page not in pages]
        await self.window_placer.tile(pages, tile_w, tile_h)

    async def _bootstrap_document(self):
        """First actor creates the doc; its fragment is shared with everyone else."""
        first, second = self.actor_specs
        first_pane = self._role_panes[first.id]
        await first_pane.actor.goto(build_actor_url(self.base_url, first.path, self.ws_url))

        try:
            await first_pane.page.wait_for_function(
                "() => document.location.hash.length > 1", timeout=DOC_HASH_TIMEOUT_MS
            )
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(
                "location.hash", DOC_HASH_TIMEOUT_MS,
                f"{first.label} never received a document address in its URL fragment",
            ) from e
        fragment = await first_pane.page.evaluate("() => document.location.hash")
        self.doc_url = fragment[1:] if fragment.startswith("#") else fragment
        logger.info("Shared document: %s", self.doc_url)

        if self.reviewer_command:
            await self._start_reviewer()

        second_pane = self._role_panes[second.id]
        await second_pane.actor.goto(
            build_actor_url(self.base_url, second.path, self.ws_url, fragment=fragment)
        )
        await asyncio.sleep(0.8 if self.mode == Mode.HUMAN else 0.1)
        await first_pane.actor.inject_cursor()
        await second_pane.actor.inject_cursor()

    async def _start_reviewer(self):
        log_path = self.artifact_dir / "reviewer.log"
        log_path.write_text("", encoding="utf-8")
        argv = [
            *self.reviewer_command,
            "--ws", self.ws_url or "",
            "--doc", self.doc_url or "",
            "--log", str(log_path),
        ]
        command = shlex.join(argv)
        if self.show_reviewer:
            handle: TerminalHandle = await self.open_terminal(command, label="Reviewer")
            self._reviewer = handle.process
            self._reviewer_is_pane = True
        else:
            self._reviewer = TerminalProcess(command, self.artifact_dir / "reviewer.out.log")
            await self._reviewer.start()
            self.add_cleanup(self._reviewer.stop)

    async def reviewer(self, command: str):
        """Send one line-protocol command (e.g. ADD "title") to the reviewer."""
        if self._reviewer is None or not self._reviewer.running:
            raise SessionUsageError("Reviewer process is not running")
        await self._reviewer.send(command.rstrip("\n"))

    async def set_overlay_state(self, role: str, seq=None, applied=None):
        """Update the debug overlay counters on one actor's page."""
        await self.page_for(role).evaluate(
            "([seq, applied]) => { if (seq !== null) window.__pc_seq = seq;"
            " if (applied !== null) window.__pc_applied = applied; }",
            [seq, applied],
        )

    async def step(
        self,
        role: str,
        caption: str,
        fn: Optional[StepFn] = None,
        narration: Optional[str] = None,
    ) -> StepRecord:
        """
        Run a step on behalf of one actor or both.

        Raises:
            SessionUsageError: when role is neither an actor id nor "both"
        """
        if role != BOTH and role not in self._role_panes:
            raise SessionUsageError(f'Unknown step role "{role}" (expected one of {self.actor_ids} or "{BOTH}")')
        pane_id = self._role_panes[role].id if role != BOTH else None
        return await super().step(caption, fn, narration=narration, pane_id=pane_id, role=role)

    def _kill_orphans(self):
        super()._kill_orphans()
        if self._reviewer is not None and not self._reviewer_is_pane:
            self._reviewer.kill()

    def _write_extra_artifacts(self, result: SessionResult):
        for role in self.actor_ids:
            result.role_subtitles[role] = write_subtitles(
                self.artifact_dir / f"{role}-captions.vtt", result.steps, role=role
            )

        report = audit_sync(result.steps, self.actor_ids, self.add_pattern, self.see_pattern)
        result.sync_report = report
        for sample in report.samples:
            if sample.ok:
                logger.info(format_sample(sample))
            else:
                logger.error(format_sample(sample))
        summary = summarize(report)
        if summary:
            (logger.info if report.ok else logger.error)(summary)

    def _metadata_extra(self, result: SessionResult) -> dict:
        extra = {
            "actors": [{"id": a.id, "label": a.label, "path": a.path} for a in self.actor_specs],
            "docUrl": self.doc_url,
            "roleSubtitles": {role: str(path) for role, path in result.role_subtitles.items()},
        }
        if result.sync_report is not None:
            extra["syncAudit"] = result.sync_report.to_dict()
        return extra
