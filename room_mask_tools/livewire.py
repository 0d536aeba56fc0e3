"""
Multi-resolution cost pyramid and coarse-to-fine live-wire tracing.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np
from skimage.draw import line
from skimage.graph import route_through_array

from .edges import to_grayscale

logger = logging.getLogger(__name__)

DEFAULT_PYRAMID_LEVELS = 5
MIN_LEVEL_SIZE = 8
COST_FLOOR = 0.01
DEFAULT_COARSE_MARGIN = 3


@dataclass
class CostLevel:
    """One level of a cost pyramid; scale is the pixel size relative to level 0."""

    width: int
    height: int
    data: np.ndarray
    scale: int


@dataclass
class SearchWindow:
    """Inclusive rectangle searched at one pyramid level."""

    level: int
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def cells(self) -> int:
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)


@dataclass
class LiveWireResult:
    """Traced path in level-0 pixel coordinates plus search diagnostics."""

    path: List[Tuple[int, int]]
    cost: float
    levels_visited: List[int] = field(default_factory=list)
    cells_searched: int = 0
    bounds: List[SearchWindow] = field(default_factory=list)
    fallback: bool = False


def gradient_cost(image: np.ndarray, smooth_iterations: int = 0) -> np.ndarray:
    """
    Finite-difference gradient magnitude used as a traversal cost.

    Args:
        image: Grayscale or color image, or an already computed float field
        smooth_iterations: Number of 3x3 box-blur passes over the result

    Returns:
        (H, W) float64 cost, never below a small positive floor
    """
    gray = to_grayscale(image).astype(np.float64)
    if gray.shape[0] < 2 or gray.shape[1] < 2:
        return np.full(gray.shape, COST_FLOOR)
    gy, gx = np.gradient(gray)
    cost = np.hypot(gx, gy)
    for _ in range(max(0, int(smooth_iterations))):
        cost = cv2.blur(cost, (3, 3), borderType=cv2.BORDER_REPLICATE)
    return cost + COST_FLOOR


def _downsample(data: np.ndarray) -> np.ndarray:
    """2x2 box mean; an odd trailing row or column is dropped, a single one is repeated."""
    height, width = data.shape
    next_h, next_w = max(1, height // 2), max(1, width // 2)
    rows = np.minimum(np.arange(next_h * 2), height - 1)
    cols = np.minimum(np.arange(next_w * 2), width - 1)
    sampled = data[np.ix_(rows, cols)]
    return sampled.reshape(next_h, 2, next_w, 2).mean(axis=(1, 3))


def pyramid_from_cost(cost: np.ndarray, levels: int = DEFAULT_PYRAMID_LEVELS) -> List[CostLevel]:
    """
    Build a cost pyramid from a base cost grid.

    Stops early once a level is no larger than 8x8.

    Args:
        cost: (H, W) base cost
        levels: Maximum number of levels

    Returns:
        Levels ordered finest first
    """
    current = np.asarray(cost, dtype=np.float64)
    scale = 1
    pyramid = []
    for _ in range(max(1, int(levels))):
        height, width = current.shape
        pyramid.append(CostLevel(width=width, height=height, data=current, scale=scale))
        if width <= MIN_LEVEL_SIZE and height <= MIN_LEVEL_SIZE:
            break
        current = _downsample(current)
        scale *= 2
    return pyramid


def build_cost_pyramid(image: np.ndarray, levels: int = DEFAULT_PYRAMID_LEVELS,
                       smooth_iterations: int = 0) -> List[CostLevel]:
    """Gradient cost of an image, downsampled into a pyramid."""
    return pyramid_from_cost(gradient_cost(image, smooth_iterations), levels)


def snap_to_pixel(point: Tuple[float, float], width: int, height: int) -> Tuple[int, int]:
    """Clamp a pixel-space point onto the (col, row) grid cell containing it."""
    x = int(min(max(np.floor(point[0]), 0), width - 1))
    y = int(min(max(np.floor(point[1]), 0), height - 1))
    return x, y


def straight_path(start: Tuple[int, int], end: Tuple[int, int]) -> List[Tuple[int, int]]:
    rows, cols = line(start[1], start[0], end[1], end[0])
    return list(zip(cols.tolist(), rows.tolist()))


def _route(level: CostLevel, start: Tuple[int, int], end: Tuple[int, int],
           window: SearchWindow, allow_diagonals: bool):
    """Shortest path inside a window; returns (path, cost) or None when unreachable."""
    # Copy: cached levels are read-only
    sub = np.array(level.data[window.min_y:window.max_y + 1, window.min_x:window.max_x + 1],
                   dtype=np.float64)
    local_start = (start[1] - window.min_y, start[0] - window.min_x)
    local_end = (end[1] - window.min_y, end[0] - window.min_x)
    try:
        indices, cost = route_through_array(
            sub, local_start, local_end, fully_connected=allow_diagonals, geometric=True
        )
    except ValueError:
        return None
    path = [(int(c) + window.min_x, int(r) + window.min_y) for r, c in indices]
    return path, float(cost)


def _window_around(path: List[Tuple[int, int]], level: CostLevel, level_index: int,
                   margin: int, start: Tuple[int, int], end: Tuple[int, int]) -> SearchWindow:
    xs = [p[0] / level.scale for p in path] + [start[0], end[0]]
    ys = [p[1] / level.scale for p in path] + [start[1], end[1]]
    grow = margin * (level_index + 1)
    return SearchWindow(
        level=level.scale,
        min_x=int(max(0, np.floor(min(xs)) - grow)),
        min_y=int(max(0, np.floor(min(ys)) - grow)),
        max_x=int(min(level.width - 1, np.ceil(max(xs)) + grow)),
        max_y=int(min(level.height - 1, np.ceil(max(ys)) + grow)),
    )


def trace_live_wire(pyramid: List[CostLevel], start: Tuple[float, float], end: Tuple[float, float],
                    allow_diagonals: bool = True,
                    coarse_margin: int = DEFAULT_COARSE_MARGIN) -> LiveWireResult:
    """
    Coarse-to-fine minimum-cost path between two level-0 pixel positions.

    The coarsest level is searched over its full grid. Each finer level is
    restricted to the bounding box of the previous level's path grown by
    ``coarse_margin * (level_index + 1)`` cells. Step cost is the mean of the
    two cells' costs times 1 for axis moves or sqrt(2) for diagonal moves.

    Args:
        pyramid: Cost levels ordered finest first
        start: (x, y) start in level-0 pixels
        end: (x, y) end in level-0 pixels
        allow_diagonals: Use 8-connectivity; otherwise strictly 4-connected
        coarse_margin: Base margin of the refinement window

    Returns:
        LiveWireResult whose path runs from the pixel-snapped start to the
        pixel-snapped end; a straight line when the end is unreachable
    """
    if not pyramid:
        raise ValueError("Cost pyramid is empty")
    base = pyramid[0]
    start_px = snap_to_pixel(start, base.width, base.height)
    end_px = snap_to_pixel(end, base.width, base.height)

    result = LiveWireResult(path=[], cost=float("inf"))
    previous: Optional[List[Tuple[int, int]]] = None
    ordered = list(reversed(pyramid))
    for index, level in enumerate(ordered):
        level_start = snap_to_pixel((start_px[0] / level.scale, start_px[1] / level.scale),
                                    level.width, level.height)
        level_end = snap_to_pixel((end_px[0] / level.scale, end_px[1] / level.scale),
                                  level.width, level.height)
        if previous is None:
            window = SearchWindow(level.scale, 0, 0, level.width - 1, level.height - 1)
        else:
            window = _window_around(previous, level, index, coarse_margin, level_start, level_end)
        routed = _route(level, level_start, level_end, window, allow_diagonals)
        if routed is None and previous is not None:
            window = SearchWindow(level.scale, 0, 0, level.width - 1, level.height - 1)
            routed = _route(level, level_start, level_end, window, allow_diagonals)
        result.levels_visited.append(level.scale)
        result.bounds.append(window)
        result.cells_searched += window.cells
        if routed is None:
            logger.debug("No path at scale %d inside %s", level.scale, window)
            continue
        path, cost = routed
        previous = [(x * level.scale, y * level.scale) for x, y in path]
        if level is base:
            result.path = path
            result.cost = cost

    if not result.path:
        logger.debug("Live-wire target unreachable, using straight line")
        result.path = straight_path(start_px, end_px)
        result.fallback = True
    return result


def path_deviation(path: List[Tuple[int, int]], start: Tuple[float, float],
                   end: Tuple[float, float]) -> float:
    """Largest perpendicular distance of path vertices from the start-end chord."""
    if not path:
        return 0.0
    a = np.asarray(start, dtype=np.float64)
    b = np.asarray(end, dtype=np.float64)
    pts = np.asarray(path, dtype=np.float64)
    chord = b - a
    length = float(np.hypot(chord[0], chord[1]))
    if length == 0:
        return float(np.max(np.hypot(pts[:, 0] - a[0], pts[:, 1] - a[1])))
    cross = chord[0] * (pts[:, 1] - a[1]) - chord[1] * (pts[:, 0] - a[0])
    return float(np.max(np.abs(cross)) / length)
