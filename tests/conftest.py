"""Shared fakes for proofcast tests.

The fakes mimic just enough of Playwright's async page/context/browser
surface for sessions and actors to run without a real browser.
"""

import asyncio
import subprocess
from pathlib import Path

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class FakeMouse:
    def __init__(self):
        self.calls = []

    async def move(self, x, y, steps=1):
        self.calls.append(("move", x, y))

    async def down(self):
        self.calls.append(("down",))

    async def up(self):
        self.calls.append(("up",))

    async def click(self, x, y):
        self.calls.append(("click", x, y))

    @property
    def moves(self):
        return [(c[1], c[2]) for c in self.calls if c[0] == "move"]


class FakeKeyboard:
    def __init__(self):
        self.typed = []
        self.pressed = []

    async def type(self, text, delay=0):
        self.typed.append((text, delay))

    async def press(self, key):
        self.pressed.append(key)


class FakeElement:
    def __init__(self, box=None, text=""):
        self.box = box or {"x": 100, "y": 200, "width": 40, "height": 20}
        self.text = text
        self.clicked = 0
        self.focused = False

    async def bounding_box(self):
        return self.box

    async def text_content(self):
        return self.text

    async def evaluate(self, script, arg=None):
        return None

    async def click(self):
        self.clicked += 1

    async def focus(self):
        self.focused = True


class FakePage:
    def __init__(self, elements=None, navigation_delay_s=0.02):
        self.elements = dict(elements or {})
        self.options = {}
        self.navigation_delay_s = navigation_delay_s
        self.mouse = FakeMouse()
        self.keyboard = FakeKeyboard()
        self.init_scripts = []
        self.evaluated = []
        self.visited = []
        self.handlers = {}
        self.screenshots = []
        self.content = None
        self.hash = "#doc-123"
        self.video = None
        self.context = None
        self._closed = False

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        if selector in self.elements:
            return self.elements[selector]
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def query_selector(self, selector):
        return self.elements.get(selector)

    async def query_selector_all(self, selector):
        return list(self.options.get(selector, []))

    async def evaluate(self, script, arg=None):
        self.evaluated.append((script, arg))
        if "document.location.hash" in script:
            return self.hash
        return None

    async def wait_for_function(self, script, timeout=None):
        if not self.hash:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        return True

    async def goto(self, url, wait_until=None, timeout=None):
        await asyncio.sleep(self.navigation_delay_s)
        self.visited.append(url)

    async def add_init_script(self, script=None, path=None):
        self.init_scripts.append(script)

    async def set_content(self, html):
        self.content = html

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def is_closed(self):
        return self._closed

    async def close(self):
        self._closed = True

    async def screenshot(self, path=None):
        Path(path).write_bytes(b"\x89PNG\r\n")
        self.screenshots.append(path)


class FakeContext:
    def __init__(self, browser, options):
        self.browser = browser
        self.options = options
        self.pages = []
        self.closed = False

    async def new_page(self):
        page = self.browser.page_factory()
        page.context = self
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory=None):
        self.page_factory = page_factory or FakePage
        self.contexts = []
        self.version = "fake"

    async def new_context(self, **options):
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    @property
    def pages(self):
        return [p for c in self.contexts for p in c.pages]


class FakeLauncher:
    """Stands in for BrowserLauncher."""

    def __init__(self, page_factory=None):
        self.browser = FakeBrowser(page_factory)
        self.launched_with = None
        self.closed = False

    async def launch(self, headless, args):
        self.launched_with = {"headless": headless, "args": args}
        return self.browser

    async def close(self, browser):
        self.closed = True


class FakeVideo:
    """Stands in for a Playwright page video."""

    def __init__(self):
        self.saved = []
        self.deleted = False

    async def save_as(self, path):
        Path(path).write_bytes(b"webm")
        self.saved.append(path)

    async def delete(self):
        self.deleted = True


class FakeFFmpeg:
    """Replaces subprocess.run for ffmpeg invocations."""

    def __init__(self, fail_composite=False, fail_all_encodes=False):
        self.fail_composite = fail_composite
        self.fail_all_encodes = fail_all_encodes
        self.encodes = []

    def __call__(self, cmd, capture_output=True, text=True, check=False):
        if "-f" in cmd and "null" in cmd:
            return subprocess.CompletedProcess(cmd, 0, "", "frame=  290 fps=0.0 time=00:00:04.83 bitrate=N/A")
        if len(cmd) == 4 and cmd[1] == "-hide_banner":
            stderr = ("  Duration: N/A, start: 0.000000, bitrate: N/A\n"
                      "  Stream #0:0: Video: vp8, yuv420p(progressive), 1280x720, SAR 1:1 DAR 16:9")
            return subprocess.CompletedProcess(cmd, 1, "", stderr)
        self.encodes.append(cmd)
        if self.fail_all_encodes or (self.fail_composite and "-filter_complex" in cmd):
            raise subprocess.CalledProcessError(1, cmd, "", "Invalid filter graph")
        Path(cmd[-1]).write_bytes(b"mp4")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    @property
    def graphs(self):
        return [cmd[cmd.index("-filter_complex") + 1] for cmd in self.encodes if "-filter_complex" in cmd]


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def fast_session_options(tmp_path, launcher):
    """Options for a fast, non-recording session backed by fakes."""
    return {
        "name": "test",
        "mode": "fast",
        "record": False,
        "output_dir": tmp_path / "run",
        "launcher": launcher,
    }
