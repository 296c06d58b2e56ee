"""
Input simulation for one browser page.

The Actor turns declarative actions (click this, type that, drag here) into
pointer and keyboard events. In human mode the cursor travels along WindMouse
paths with eased per-step pacing and a visible overlay cursor; in fast mode
it jumps straight to the target and nothing waits.
"""
import asyncio
import math
import random
from dataclasses import replace, fields
from typing import Iterable, Optional, Sequence, Tuple

from playwright.async_api import Page, ElementHandle
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.settings import SELECTOR_TIMEOUT_MS, NAVIGATION_TIMEOUT_MS
from proofcast.errors import ElementNotFoundError, OptionNotFoundError
from proofcast.models import ActorDelays, DelayRange, Mode

Point = Tuple[int, int]


DEFAULT_DELAYS = {
    Mode.FAST: ActorDelays(),
    Mode.HUMAN: ActorDelays(
        breathe_ms=(300, 300),
        after_scroll_into_view_ms=(350, 350),
        mouse_move_step_ms=(3, 3),
        click_effect_ms=(25, 25),
        click_hold_ms=(90, 90),
        after_click_ms=(70, 70),
        before_type_ms=(55, 55),
        key_delay_ms=(35, 35),
        key_boundary_pause_ms=(30, 30),
        select_open_ms=(120, 120),
        select_option_ms=(70, 70),
        after_drag_ms=(120, 120),
    ),
}

WORD_BOUNDARY_CHARS = (" ", "@", ".")
EASE_AMPLITUDE = 0.4


def _round(value: float) -> int:
    """Round half up, so 2.5 -> 3 and -2.5 -> -2."""
    return int(math.floor(value + 0.5))


def pick_ms(delay: DelayRange) -> int:
    """Resolve a delay range to its deterministic midpoint."""
    min_ms, max_ms = delay
    if max_ms <= min_ms:
        return min_ms
    return _round((min_ms + max_ms) / 2)


def merge_delays(mode, overrides: Optional[dict] = None) -> ActorDelays:
    """
    Resolve the timing profile for a mode, applying partial overrides.

    Args:
        mode: Mode or its string value
        overrides: Mapping of ActorDelays field name to (min_ms, max_ms)

    Returns:
        ActorDelays for the mode with overrides applied
    """
    base = DEFAULT_DELAYS[Mode(mode)]
    if not overrides:
        return base
    known = {f.name for f in fields(ActorDelays)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown delay names: {', '.join(sorted(unknown))}")
    return replace(base, **{k: tuple(v) for k, v in overrides.items()})


def step_ease_multiplier(i: int, n: int, amplitude: float = EASE_AMPLITUDE) -> float:
    """Cosine pacing: slower at the ends of a path, faster in the middle."""
    if n <= 1:
        return 1.0
    t = min(1.0, max(0.0, i / (n - 1)))
    return 1 + amplitude * math.cos(2 * math.pi * t)


def eased_step_ms(base_ms: int, i: int, n: int, factor: float = 1.0) -> int:
    return max(0, _round(base_ms * factor * step_ease_multiplier(i, n)))


def wind_mouse(
    start: Sequence[float],
    end: Sequence[float],
    gravity: float = 9,
    wind: float = 3,
    max_step: float = 18,
    target_area: float = 15,
    rng: Optional[random.Random] = None,
    max_iterations: int = 2000,
) -> list[Point]:
    """
    Generate a human-like cursor path with the WindMouse particle model.

    Gravity pulls the particle toward the target; wind pushes it around while
    it is far away and damps out once it is inside target_area, where the
    velocity cap also shrinks so the cursor settles onto the target.

    Args:
        start: (x, y) starting position
        end: (x, y) target position
        gravity: Pull strength toward the target
        wind: Wind magnitude far from the target
        max_step: Initial velocity cap
        target_area: Distance below which wind damps
        rng: Random source (module random when omitted)
        max_iterations: Hard cap on simulation steps

    Returns:
        Pixel-distinct integer points ending exactly at the rounded target
    """
    rnd = rng or random
    sqrt3 = math.sqrt(3)
    sqrt5 = math.sqrt(5)
    sx, sy = float(start[0]), float(start[1])
    dx, dy = float(end[0]), float(end[1])
    vx = vy = wx = wy = 0.0
    m0 = max_step
    points: list[Point] = []

    for _ in range(max_iterations):
        dist = math.hypot(dx - sx, dy - sy)
        if dist < 1:
            break
        w_mag = min(wind, dist)
        if dist >= target_area:
            wx = wx / sqrt3 + (rnd.random() * 2 - 1) * w_mag / sqrt5
            wy = wy / sqrt3 + (rnd.random() * 2 - 1) * w_mag / sqrt5
        else:
            wx /= sqrt3
            wy /= sqrt3
            if m0 < 3:
                m0 = rnd.random() * 3 + 3
            else:
                m0 /= sqrt5

        vx += wx + gravity * (dx - sx) / dist
        vy += wy + gravity * (dy - sy) / dist
        v_mag = math.hypot(vx, vy)
        if v_mag > m0:
            clip = m0 / 2 + rnd.random() * m0 / 2
            vx = (vx / v_mag) * clip
            vy = (vy / v_mag) * clip

        sx += vx
        sy += vy
        point = (_round(sx), _round(sy))
        if not points or points[-1] != point:
            points.append(point)

    target = (_round(dx), _round(dy))
    if not points or points[-1] != target:
        points.append(target)
    return points


def linear_path(start: Sequence[float], end: Sequence[float], steps: int) -> list[Point]:
    """Smoothstep-eased straight path with steps + 1 points, endpoints included."""
    steps = max(1, steps)
    points = []
    for i in range(steps + 1):
        t = i / steps
        ease = t * t * (3 - 2 * t)
        points.append((
            _round(start[0] + (end[0] - start[0]) * ease),
            _round(start[1] + (end[1] - start[1]) * ease),
        ))
    return points


def _center(box: dict) -> Point:
    return _round(box["x"] + box["width"] / 2), _round(box["y"] + box["height"] / 2)


# ---------------------------------------------------------------------------
#  In-page scripts
# ---------------------------------------------------------------------------

CURSOR_OVERLAY_SCRIPT = """
(function() {
  if (window.__pc_cursors || !document.body) return;
  window.__pc_cursors = {};

  var PALETTE = [
    { fill: 'white', stroke: 'black' },
    { fill: '#f0abfc', stroke: '#86198f' },
    { fill: '#93c5fd', stroke: '#1e40af' },
    { fill: '#fde68a', stroke: '#92400e' },
  ];

  function cursorFor(id) {
    if (window.__pc_cursors[id]) return window.__pc_cursors[id];
    var index = Object.keys(window.__pc_cursors).length;
    var colors = PALETTE[index % PALETTE.length];
    var el = document.createElement('div');
    el.id = '__pc_cursor_' + id;
    el.style.cssText = 'position:fixed;top:0;left:0;width:20px;height:20px;' +
      'pointer-events:none;z-index:' + (999999 - index) + ';' +
      'transform:translate(-2px,-2px);transition:transform 40ms ease-in-out;will-change:transform';
    el.innerHTML = '<svg width="20" height="20" viewBox="0 0 20 20" fill="none">' +
      '<path d="M3 2L3 17L7.5 12.5L11.5 18L14 16.5L10 11L16 11L3 2Z" fill="' + colors.fill +
      '" stroke="' + colors.stroke + '" stroke-width="1.2" stroke-linejoin="round"/></svg>';
    document.body.appendChild(el);
    window.__pc_cursors[id] = el;
    return el;
  }

  var ripples = document.createElement('div');
  ripples.style.cssText = 'position:fixed;top:0;left:0;width:100%;height:100%;z-index:999998;pointer-events:none;';
  document.body.appendChild(ripples);

  var style = document.createElement('style');
  style.textContent = '@keyframes __pc_ripple { 0% { width:0; height:0; opacity:1; } ' +
    '100% { width:80px; height:80px; opacity:0; } }';
  document.head.appendChild(style);

  window.__pc_moveCursor = function(x, y, id) {
    cursorFor(id || 'default').style.transform = 'translate(' + (x - 2) + 'px,' + (y - 2) + 'px)';
  };

  window.__pc_clickEffect = function(x, y) {
    var ring = document.createElement('div');
    ring.style.cssText = 'position:fixed;pointer-events:none;left:' + x + 'px;top:' + y + 'px;' +
      'width:0;height:0;border:3px solid rgba(96,165,250,0.9);border-radius:50%;' +
      'transform:translate(-50%,-50%);animation:__pc_ripple 0.6s ease-out forwards;';
    ripples.appendChild(ring);
    setTimeout(function() { ring.remove(); }, 700);
  };
})();
"""

CURSOR_INIT_SCRIPT = (
    "document.addEventListener('DOMContentLoaded', () => {" + CURSOR_OVERLAY_SCRIPT + "});"
)

HIDE_CURSOR_INIT_SCRIPT = """
document.addEventListener('DOMContentLoaded', () => {
  const s = document.createElement('style');
  s.textContent = '* { cursor: none !important; }';
  document.head.appendChild(s);
});
"""

FAST_MODE_INIT_SCRIPT = """
document.addEventListener('DOMContentLoaded', () => {
  const s = document.createElement('style');
  s.textContent = `
    *, *::before, *::after {
      animation-duration: 1ms !important;
      animation-iteration-count: 1 !important;
      transition-duration: 1ms !important;
      scroll-behavior: auto !important;
    }
  `;
  document.head.appendChild(s);
});
"""

SCROLL_SCRIPT = """
({ selector, deltaY, behavior }) => {
  if (!selector) {
    window.scrollBy({ top: deltaY, behavior });
    return;
  }
  const root = document.querySelector(selector);
  if (!root) return;
  const isScrollable = (el) => {
    const overflow = getComputedStyle(el).overflowY;
    return el.scrollHeight > el.clientHeight + 1 &&
      (overflow === 'auto' || overflow === 'scroll' || overflow === 'overlay');
  };
  const direct = root instanceof HTMLElement && isScrollable(root) ? root : null;
  const viewport = root.querySelector('[data-slot="scroll-area-viewport"]');
  const descendant = Array.from(root.querySelectorAll('*'))
    .find((n) => n instanceof HTMLElement && isScrollable(n));
  (direct || viewport || descendant || root).scrollBy({ top: deltaY, behavior });
}
"""

SCROLL_INTO_VIEW_SCRIPT = "(e, b) => e.scrollIntoView({ block: 'center', behavior: b })"


class Actor:
    """
    Simulated user bound to exactly one page.

    cursor_x/cursor_y hold the last commanded pointer position; after every
    movement-producing call they equal that call's final target.
    """

    def __init__(
        self,
        page: Page,
        mode=Mode.HUMAN,
        delays: Optional[dict] = None,
        cursor_id: str = "default",
        seed: Optional[int] = None,
        jitter: bool = False,
        selector_timeout_ms: int = SELECTOR_TIMEOUT_MS,
    ):
        """
        Initialize an actor.

        Args:
            page: Playwright page to drive
            mode: "human" or "fast"
            delays: Partial ActorDelays overrides as {name: (min_ms, max_ms)}
            cursor_id: Overlay cursor identity (one color per id)
            seed: Seed for the path and jitter random source
            jitter: Pick delays uniformly within their range instead of the midpoint
            selector_timeout_ms: Default bound for element resolution
        """
        self.page = page
        self.mode = Mode(mode)
        self.delays = merge_delays(self.mode, delays)
        self.cursor_id = cursor_id
        self.cursor_x = 0
        self.cursor_y = 0
        self.selector_timeout_ms = selector_timeout_ms
        self.jitter = jitter
        self._rng = random.Random(seed) if seed is not None else None
        self.audio = None

    @property
    def human(self) -> bool:
        return self.mode == Mode.HUMAN

    def _pick(self, delay: DelayRange) -> int:
        if self.jitter and delay[1] > delay[0]:
            return (self._rng or random).randint(delay[0], delay[1])
        return pick_ms(delay)

    async def _sleep(self, ms: int):
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    async def _pause(self, delay: DelayRange):
        await self._sleep(self._pick(delay))

    # -- page setup --------------------------------------------------------

    async def install_init_scripts(self, show_cursor: bool):
        """Register per-navigation scripts: overlay cursor in human mode, no-animation CSS in fast."""
        if self.human and show_cursor:
            await self.page.add_init_script(HIDE_CURSOR_INIT_SCRIPT)
            await self.page.add_init_script(CURSOR_INIT_SCRIPT)
        elif not self.human:
            await self.page.add_init_script(FAST_MODE_INIT_SCRIPT)

    async def inject_cursor(self):
        """Install the overlay cursor into the current document (human mode only)."""
        if not self.human:
            return
        await self.page.evaluate(CURSOR_OVERLAY_SCRIPT)

    # -- resolution --------------------------------------------------------

    async def wait_for(self, selector: str, timeout_ms: Optional[int] = None) -> ElementHandle:
        """Wait for a visible element, raising ElementNotFoundError on timeout."""
        timeout = self.selector_timeout_ms if timeout_ms is None else timeout_ms
        try:
            element = await self.page.wait_for_selector(selector, state="visible", timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(selector, timeout) from e
        if element is None:
            raise ElementNotFoundError(selector, timeout)
        return element

    async def _box(self, selector: str, element: ElementHandle) -> dict:
        box = await element.bounding_box()
        if not box:
            raise ElementNotFoundError(selector, 0, f'Element has no bounding box: "{selector}"')
        return box

    async def _scroll_into_view(self, element: ElementHandle):
        behavior = "smooth" if self.human else "auto"
        await element.evaluate(SCROLL_INTO_VIEW_SCRIPT, behavior)
        await self._pause(self.delays.after_scroll_into_view_ms)

    async def _resolve_center(self, selector: str) -> Point:
        element = await self.wait_for(selector)
        await self._scroll_into_view(element)
        return _center(await self._box(selector, element))

    # -- cursor movement ---------------------------------------------------

    async def _show_cursor(self, x: int, y: int):
        await self.page.evaluate(f"window.__pc_moveCursor?.({x}, {y}, '{self.cursor_id}')")

    async def _travel(self, target: Point):
        """Animate the pointer from the current position to target (human only)."""
        if self.human:
            points = wind_mouse((self.cursor_x, self.cursor_y), target, rng=self._rng)
            base = self._pick(self.delays.mouse_move_step_ms)
            for i, (x, y) in enumerate(points):
                await self.page.mouse.move(x, y)
                await self._show_cursor(x, y)
                await self._sleep(eased_step_ms(base, i, len(points)))
        self.cursor_x, self.cursor_y = target

    async def _follow(self, points: list[Point], factor: float = 1.0):
        """Move the (possibly pressed) pointer through an explicit path."""
        base = self._pick(self.delays.mouse_move_step_ms)
        for i, (x, y) in enumerate(points):
            await self.page.mouse.move(x, y)
            if self.human:
                await self._show_cursor(x, y)
                await self._sleep(eased_step_ms(base, i, len(points), factor))

    async def _click_effect(self, x: int, y: int):
        if self.human:
            await self.page.evaluate(f"window.__pc_clickEffect?.({x}, {y})")
            await self._pause(self.delays.click_effect_ms)

    async def _press_at(self, x: int, y: int):
        if self.human:
            await self.page.mouse.down()
            await self._pause(self.delays.click_hold_ms)
            await self.page.mouse.up()
            await self._pause(self.delays.after_click_ms)
        else:
            await self.page.mouse.click(x, y)

    async def move_cursor_to(self, x: float, y: float):
        """Move the pointer to page coordinates without clicking."""
        target = (_round(x), _round(y))
        await self._travel(target)
        if not self.human:
            await self.page.mouse.move(*target)

    # -- public actions ----------------------------------------------------

    async def goto(self, url: str):
        """Navigate and wait for the network to go idle."""
        await self.page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)

    async def breathe(self):
        """Pacing pause between steps."""
        await self._pause(self.delays.breathe_ms)

    async def hover(self, selector: str):
        target = await self._resolve_center(selector)
        await self._travel(target)
        if not self.human:
            await self.page.mouse.move(*target)

    async def click(self, selector: str):
        """Move to an element's center and click it."""
        x, y = await self._resolve_center(selector)
        await self._travel((x, y))
        await self._click_effect(x, y)
        await self._press_at(x, y)

    async def click_at(self, x: float, y: float):
        """Click at raw page coordinates."""
        target = (_round(x), _round(y))
        await self._travel(target)
        if self.human:
            await self.page.mouse.move(*target)
        await self._click_effect(*target)
        await self._press_at(*target)

    async def type(self, selector: str, text: str):
        """
        Type text into an element.

        Human mode clicks the field, then sends one key at a time with a
        per-key delay and an extra pause after word-boundary characters.
        Fast mode sends the whole string with no delay.
        """
        xterm = await self.page.query_selector(f"{selector} .xterm-helper-textarea")
        if xterm is not None:
            await self._type_into_terminal(xterm, text)
            return

        await self.click(selector)
        await self._pause(self.delays.before_type_ms)

        if not self.human:
            await self.page.keyboard.type(text, delay=0)
            return

        for ch in text:
            await self.page.keyboard.type(ch, delay=self._pick(self.delays.key_delay_ms))
            if ch in WORD_BOUNDARY_CHARS:
                await self._pause(self.delays.key_boundary_pause_ms)

    async def _type_into_terminal(self, textarea: ElementHandle, text: str):
        await textarea.focus()
        char_delay = self._pick(self.delays.key_delay_ms) if self.human else 0
        for ch in text:
            if ch == "\n":
                await self.page.keyboard.press("Enter")
            else:
                await self.page.keyboard.type(ch, delay=0)
            await self._sleep(char_delay)

    async def press_key(self, key: str):
        """Press a single key such as "Enter" or "Control+A"."""
        await self.page.keyboard.press(key)
        await self._pause(self.delays.after_click_ms)

    async def select_option(self, trigger_selector: str, value_text: str):
        """
        Open a custom select and pick the option whose text matches exactly.

        Raises:
            OptionNotFoundError: when no [role="option"] has the given text
        """
        await self.click(trigger_selector)
        await self._pause(self.delays.select_open_ms)

        option_selector = '[role="option"]'
        await self.wait_for(option_selector)
        await self._pause(self.delays.select_option_ms)

        for option in await self.page.query_selector_all(option_selector):
            text = ((await option.text_content()) or "").strip()
            if text != value_text:
                continue
            target = _center(await self._box(option_selector, option))
            await self._travel(target)
            await self._click_effect(*target)
            await option.click()
            await self._pause(self.delays.after_click_ms)
            return

        raise OptionNotFoundError(trigger_selector, value_text)

    async def scroll(self, selector: Optional[str], delta_y: int):
        """
        Scroll the page, or the scrollable node inside a container.

        The container may be a non-scrolling wrapper, so the target is the
        element itself if it scrolls, else a nested scroll-area viewport,
        else its first scrollable descendant.
        """
        if selector:
            await self.hover(selector)
        behavior = "smooth" if self.human else "auto"
        await self.page.evaluate(
            SCROLL_SCRIPT,
            {"selector": selector, "deltaY": delta_y, "behavior": behavior},
        )
        await self._sleep(600 if self.human else 50)

    async def drag_coords(self, start: Sequence[float], end: Sequence[float]):
        """Press at start, drag along an eased straight path, release at end."""
        start = (_round(start[0]), _round(start[1]))
        end = (_round(end[0]), _round(end[1]))

        await self._travel(start)
        await self.page.mouse.move(*start)
        await self.page.mouse.down()
        await self._pause(self.delays.click_hold_ms)

        await self._follow(linear_path(start, end, 25 if self.human else 5))

        await self._pause(self.delays.after_click_ms)
        await self.page.mouse.up()
        self.cursor_x, self.cursor_y = end
        await self._pause(self.delays.after_drag_ms)

    async def drag(self, from_selector: str, to_selector: str):
        """Drag from one element's center to another's."""
        start = _center(await self._box(from_selector, await self.wait_for(from_selector)))
        end = _center(await self._box(to_selector, await self.wait_for(to_selector)))
        await self.drag_coords(start, end)

    async def drag_by_offset(self, selector: str, dx: int, dy: int):
        """Drag an element by a pixel offset from its center."""
        x, y = await self._resolve_center(selector)
        await self.drag_coords((x, y), (x + dx, y + dy))

    async def select_text(self, from_selector: str, to_selector: Optional[str] = None):
        """Drag-select from the top-left of one element to the bottom-right of another."""
        first = await self.wait_for(from_selector)
        await self._scroll_into_view(first)
        first_box = await self._box(from_selector, first)
        start = (first_box["x"] + 2, first_box["y"] + 2)

        last_box = first_box
        if to_selector:
            last_box = await self._box(to_selector, await self.wait_for(to_selector))
        end = (last_box["x"] + last_box["width"] - 2, last_box["y"] + last_box["height"] - 2)
        await self.drag_coords(start, end)

    async def draw(self, canvas_selector: str, points: Iterable[Sequence[float]]):
        """
        Draw a stroke on a canvas.

        Args:
            canvas_selector: Canvas (or any element) to draw on
            points: (x, y) pairs normalized to 0..1 of the element box
        """
        canvas = await self.wait_for(canvas_selector)
        box = await self._box(canvas_selector, canvas)
        absolute = [
            (_round(box["x"] + px * box["width"]), _round(box["y"] + py * box["height"]))
            for px, py in points
        ]
        if len(absolute) < 2:
            return

        await self._travel(absolute[0])
        await self.page.mouse.move(*absolute[0])
        await self.page.mouse.down()

        segment_steps = 12 if self.human else 1
        for prev, nxt in zip(absolute, absolute[1:]):
            await self._follow(linear_path(prev, nxt, segment_steps), factor=2)

        await self.page.mouse.up()
        self.cursor_x, self.cursor_y = absolute[-1]
        await self._pause(self.delays.after_drag_ms)

    # -- narration passthrough ---------------------------------------------

    async def speak(self, text: str, **options):
        """Narrate through the session's audio director (no-op without one)."""
        if self.audio is not None:
            await self.audio.speak(text, **options)

    async def warmup(self, text: str, **options):
        if self.audio is not None:
            await self.audio.warmup(text, **options)
