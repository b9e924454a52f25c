"""Pointer gestures for action clicks.

Linear, instantaneous clicks in the exact centre of a button are easy to
spot. The pointer here travels a gently bowed path with slower first and
last steps, lands at a random point inside the element's box, and holds the
button down for a short random interval.
"""

import asyncio
import math
import random
from typing import Any, List, Tuple

Point = Tuple[int, int]

# Sideways bow of the path, as a fraction of the distance travelled
MAX_BOW = 0.15


def curve_points(start: Point, end: Point, steps: int, rng: random.Random) -> List[Point]:
    """Quadratic Bezier from ``start`` to ``end`` in ``steps`` segments.

    The single control point sits at the midpoint, pushed sideways by a
    random share of the distance. The last point is always exactly ``end``.
    """
    (x0, y0), (x2, y2) = start, end
    bow = rng.uniform(-MAX_BOW, MAX_BOW)
    x1 = (x0 + x2) / 2 - (y2 - y0) * bow
    y1 = (y0 + y2) / 2 + (x2 - x0) * bow

    points = []
    for i in range(steps + 1):
        t = i / steps
        u = 1 - t
        points.append((
            round(u * u * x0 + 2 * u * t * x1 + t * t * x2),
            round(u * u * y0 + 2 * u * t * y1 + t * t * y2),
        ))
    return points


def step_delays(steps: int, base_ms: float, rng: random.Random) -> List[float]:
    """Per-segment delays in ms: about twice as slow at both ends as mid-path."""
    delays = []
    for i in range(steps):
        edge = abs(2 * (i + 0.5) / steps - 1)
        delays.append(max(1.0, base_ms * (1 + edge) * rng.uniform(0.75, 1.25)))
    return delays


class HumanBehavior:
    """Human-like pointer activity on a Playwright page."""

    def __init__(self, intensity: float = 1.0, rng: random.Random | None = None):
        self.intensity = max(0.5, min(2.0, intensity))
        self.rng = rng or random.Random()
        self._position: Point | None = None

    def _start_point(self, page: Any) -> Point:
        if self._position:
            return self._position
        vp = page.viewport_size
        return (vp["width"] // 2 if vp else 500, vp["height"] // 2 if vp else 300)

    async def move_to(self, page: Any, end: Point) -> None:
        """Move the pointer to ``end`` along a bowed path."""
        start = self._start_point(page)
        steps = max(10, min(40, int(math.dist(start, end) / 10)))
        points = curve_points(start, end, steps, self.rng)
        delays = step_delays(steps, 5 * self.intensity, self.rng)
        # points[0] is where the pointer already is
        for point, delay in zip(points[1:], delays):
            await page.mouse.move(point[0], point[1])
            await asyncio.sleep(delay / 1000)
        self._position = end

    async def click_element(self, page: Any, element: Any) -> bool:
        """Click a random point inside ``element``'s box.

        Returns False when the element has no visible box (zero size or
        detached); nothing is clicked in that case.
        """
        box = await element.bounding_box()
        if not box or not box["width"] or not box["height"]:
            return False

        end = (
            int(box["x"] + self.rng.random() * box["width"]),
            int(box["y"] + self.rng.random() * box["height"]),
        )
        await self.move_to(page, end)
        await page.mouse.down()
        await asyncio.sleep(self.rng.uniform(0.04, 0.12) * self.intensity)
        await page.mouse.up()
        return True

    async def random_micro_movement(self, page: Any) -> None:
        """Small random pointer drift; humans rarely keep the mouse still."""
        cx, cy = self._start_point(page)
        x = max(0, cx + self.rng.randint(-30, 30))
        y = max(0, cy + self.rng.randint(-30, 30))
        await page.mouse.move(x, y)
        self._position = (x, y)
