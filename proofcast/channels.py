"""
Single-consumer output channels.

Producers (pipe readers, Playwright event callbacks) only enqueue text; one
consumer task per channel delivers it to the sinks in order. Sinks are plain
callables or coroutine functions taking the text chunk.
"""
import asyncio
import inspect
import logging
from pathlib import Path
from typing import Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

logger = logging.getLogger(__name__)

_CLOSE = object()


class OutputChannel:
    """Queue of text chunks drained by exactly one consumer task."""

    def __init__(self, name: str, sinks: Optional[list[Callable]] = None):
        self.name = name
        self.sinks = list(sinks or [])
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._consume(), name=f"channel:{self.name}")

    def put(self, chunk: str):
        """Enqueue text; safe to call from synchronous callbacks."""
        self._queue.put_nowait(chunk)

    async def _consume(self):
        while True:
            chunk = await self._queue.get()
            if chunk is _CLOSE:
                return
            for sink in self.sinks:
                result = sink(chunk)
                if inspect.isawaitable(result):
                    await result

    async def close(self):
        """Drain everything queued so far, stop the consumer and close file sinks."""
        if self._task is None:
            return
        self._queue.put_nowait(_CLOSE)
        await self._task
        self._task = None
        for sink in self.sinks:
            if isinstance(sink, FileSink):
                sink.close()


class FileSink:
    """Appends chunks to a log file."""

    def __init__(self, path: Path, line_mode: bool = False):
        self.path = Path(path)
        self.line_mode = line_mode
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, "a", encoding="utf-8")

    def __call__(self, chunk: str):
        self._handle.write(chunk + "\n" if self.line_mode else chunk)
        self._handle.flush()

    def close(self):
        self._handle.close()


class PageSink:
    """Relays chunks into an in-page log view via a window function."""

    def __init__(self, page: Page, function: str = "__pc_appendOutput"):
        self.page = page
        self.function = function

    async def __call__(self, chunk: str):
        if self.page.is_closed():
            return
        try:
            await self.page.evaluate(
                f"(text) => window.{self.function} && window.{self.function}(text)", chunk
            )
        except PlaywrightError as e:
            logger.debug("Dropped output for closed page: %s", e)


def attach_page_events(page: Page, channel: OutputChannel):
    """Route console messages and uncaught page errors into a channel."""
    page.on("console", lambda msg: channel.put(f"[console.{msg.type}] {msg.text}"))
    page.on("pageerror", lambda err: channel.put(f"[pageerror] {err}"))
