"""
Best-effort placement of headed browser windows.

Chromium exposes window bounds over CDP; other browsers and headless runs get
a placer that does nothing. The choice is made once, when the session starts.
"""
import logging
from dataclasses import dataclass
from typing import Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowRect:
    """Outer window bounds in screen pixels."""
    left: int
    top: int
    width: int
    height: int


def tile_rects(count: int, tile_width: int, tile_height: int, left: int = 0, top: int = 0,
               gap: int = 0) -> list[WindowRect]:
    """Side-by-side tiles from left to right."""
    return [
        WindowRect(left + i * (tile_width + gap), top, tile_width, tile_height)
        for i in range(count)
    ]


class WindowPlacer:
    """Places browser windows via the Chrome DevTools Protocol."""

    async def place(self, page: Page, rect: WindowRect) -> bool:
        """
        Move and resize the window hosting page.

        Returns:
            True if the window was placed, False if the browser refused
        """
        try:
            cdp = await page.context.new_cdp_session(page)
            target = await cdp.send("Browser.getWindowForTarget")
            await cdp.send("Browser.setWindowBounds", {
                "windowId": target["windowId"],
                "bounds": {"windowState": "normal"},
            })
            await cdp.send("Browser.setWindowBounds", {
                "windowId": target["windowId"],
                "bounds": {
                    "left": rect.left,
                    "top": rect.top,
                    "width": rect.width,
                    "height": rect.height,
                },
            })
            await cdp.detach()
            return True
        except PlaywrightError as e:
            logger.warning("Window placement failed: %s", e)
            return False

    async def tile(self, pages: Sequence[Page], tile_width: int, tile_height: int,
                   left: int = 0, top: int = 0, gap: int = 0) -> int:
        """Tile windows left to right; returns how many were placed."""
        placed = 0
        for page, rect in zip(pages, tile_rects(len(pages), tile_width, tile_height, left, top, gap)):
            if await self.place(page, rect):
                placed += 1
        return placed


class NoopWindowPlacer(WindowPlacer):
    """Placer for headless runs and non-Chromium browsers."""

    async def place(self, page: Page, rect: WindowRect) -> bool:
        return False


def create_window_placer(headless: bool, browser_name: str = "chromium") -> WindowPlacer:
    if headless or browser_name != "chromium":
        return NoopWindowPlacer()
    return WindowPlacer()
