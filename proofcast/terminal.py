"""
Terminal panes.

A terminal pane is a browser page rendering a log view plus a shell
subprocess. Its stdout/stderr are tee'd into that view and into a log file
through one OutputChannel, so the pane can be recorded like any other page.
"""
import asyncio
import html
import logging
import os
import re
import signal
from pathlib import Path
from typing import Optional

from playwright.async_api import Page

from config.settings import PROCESS_STOP_TIMEOUT_S, TERMINAL_SEND_PAUSE_MS
from proofcast.channels import FileSink, OutputChannel, PageSink
from proofcast.errors import ElementNotFoundError, SessionUsageError

logger = logging.getLogger(__name__)


def terminal_page_html(title: str) -> str:
    """Self-contained HTML for the in-page terminal view."""
    return f"""<!doctype html>
<html>
<head>
<meta charset="utf-8">
<title>{html.escape(title)}</title>
<style>
  html, body {{ margin: 0; height: 100%; background: #0f172a; }}
  #title {{ font: 600 13px system-ui, sans-serif; color: #cbd5e1; background: #1e293b;
            padding: 6px 12px; border-bottom: 1px solid #334155; }}
  #out {{ font: 13px/1.45 ui-monospace, Menlo, Consolas, monospace; color: #e2e8f0;
          margin: 0; padding: 10px 12px; white-space: pre-wrap; word-break: break-word;
          height: calc(100% - 50px); overflow-y: auto; }}
</style>
</head>
<body>
<div id="title">{html.escape(title)}</div>
<pre id="out"></pre>
<script>
  const out = document.getElementById('out');
  window.__pc_appendOutput = (text) => {{
    out.textContent += text;
    if (out.textContent.length > 200000) out.textContent = out.textContent.slice(-150000);
    out.scrollTop = out.scrollHeight;
  }};
  window.__pc_setTitle = (text) => {{ document.getElementById('title').textContent = text; }};
</script>
</body>
</html>
"""


class TerminalProcess:
    """Shell subprocess whose output streams into a page and a log file."""

    def __init__(self, command: Optional[str], log_path: Path, page: Optional[Page] = None):
        """
        Initialize a terminal process.

        Args:
            command: Shell command line, or None for an interactive sh
            log_path: File receiving all output
            page: Page with the terminal view (optional)
        """
        self.command = command
        self.log_path = Path(log_path)
        self.page = page
        self.process: Optional[asyncio.subprocess.Process] = None
        self._buffer = ""
        self._output_event = asyncio.Event()
        sinks = [FileSink(self.log_path), self._remember]
        if page is not None:
            sinks.append(PageSink(page))
        self.channel = OutputChannel(f"terminal:{self.log_path.stem}", sinks)
        self._readers: list[asyncio.Task] = []
        self._stopped = False

    def _remember(self, chunk: str):
        self._buffer += chunk
        self._output_event.set()

    @property
    def output(self) -> str:
        """Everything the process has printed so far."""
        return self._buffer

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self):
        argv = ["sh", "-c", self.command] if self.command else ["sh"]
        self.channel.start()
        # Own process group, so stop() reaches whatever the shell forks
        self.process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=(os.name == "posix"),
        )
        self._readers = [
            asyncio.create_task(self._pump(self.process.stdout)),
            asyncio.create_task(self._pump(self.process.stderr)),
        ]
        if self.command:
            self.channel.put(f"$ {self.command}\n")
        logger.info("Terminal started (pid %s): %s", self.process.pid, self.command or "sh")

    async def _pump(self, stream: asyncio.StreamReader):
        while True:
            data = await stream.read(4096)
            if not data:
                return
            self.channel.put(data.decode("utf-8", errors="replace"))

    async def send(self, line: str, pause_ms: int = TERMINAL_SEND_PAUSE_MS):
        """Write a line to the process's stdin, then pause so output can render."""
        if not self.running or self.process.stdin is None:
            raise SessionUsageError("Terminal process is not running")
        self.channel.put(f"$ {line}\n")
        self.process.stdin.write((line + "\n").encode("utf-8"))
        await self.process.stdin.drain()
        await asyncio.sleep(pause_ms / 1000)

    async def wait_for_output(self, pattern: str, timeout_ms: int = 10000) -> re.Match:
        """
        Wait until the accumulated output matches a regex.

        Raises:
            ElementNotFoundError: if the pattern does not appear in time
        """
        regex = re.compile(pattern)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            match = regex.search(self._buffer)
            if match:
                return match
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ElementNotFoundError(pattern, timeout_ms, f"Terminal output never matched /{pattern}/")
            self._output_event.clear()
            try:
                await asyncio.wait_for(self._output_event.wait(), remaining)
            except asyncio.TimeoutError:
                continue

    def _signal_group(self, hard: bool = False):
        """Signal the shell and every process it started."""
        proc = self.process
        if proc is None:
            return
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL if hard else signal.SIGTERM)
            elif hard:
                proc.kill()
            else:
                proc.terminate()
        except ProcessLookupError:
            pass

    async def stop(self, timeout_s: float = PROCESS_STOP_TIMEOUT_S):
        """
        Terminate the process group and flush its remaining output.

        Children that ignore SIGTERM get SIGKILL after timeout_s. Output
        readers are given the same budget to hit EOF, then cancelled.
        """
        proc = self.process
        if proc is not None and not self._stopped:
            self._stopped = True
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            # The shell may be gone while its children still hold the pipes
            self._signal_group()
            try:
                await asyncio.wait_for(proc.wait(), timeout_s)
            except asyncio.TimeoutError:
                logger.warning("Terminal (pid %s) ignored SIGTERM, killing", proc.pid)
                self._signal_group(hard=True)
                await proc.wait()
        if self._readers:
            _, pending = await asyncio.wait(self._readers, timeout=timeout_s)
            if pending:
                self._signal_group(hard=True)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            self._readers = []
        await self.channel.close()

    def kill(self):
        """Hard kill for exit-time cleanup."""
        if self.process is not None and not self._stopped:
            self._signal_group(hard=True)


class TerminalHandle:
    """What scenario code gets back from Session.open_terminal()."""

    def __init__(self, pane_id: str, page: Page, process: TerminalProcess):
        self.pane_id = pane_id
        self.page = page
        self.process = process

    async def send(self, line: str):
        await self.process.send(line)

    async def wait_for_output(self, pattern: str, timeout_ms: int = 10000) -> re.Match:
        return await self.process.wait_for_output(pattern, timeout_ms)

    async def set_title(self, title: str):
        await self.page.evaluate("(t) => window.__pc_setTitle && window.__pc_setTitle(t)", title)

    @property
    def output(self) -> str:
        return self.process.output
