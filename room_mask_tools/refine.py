"""
Boundary refinement, morphology and brush painting on coverage grids.
"""

import logging
import math
from typing import List, Optional, Sequence

import cv2
import numpy as np
from scipy import ndimage

from .core import Bounds, Point, RoomMask

logger = logging.getLogger(__name__)

DILATION_BUDGET_PX = 5
MAX_BRUSH_GRID = 4096
BRUSH_RESOLUTION = 512


def disc_kernel(radius: int) -> np.ndarray:
    """Elliptical structuring element of diameter 2 * radius + 1."""
    size = 2 * int(radius) + 1
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))


def dilate_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """
    Grow a mask with a disc structuring element.

    Args:
        mask: (H, W) uint8 coverage
        radius: Disc radius in pixels (<= 0 returns a copy)
    """
    mask = np.asarray(mask, dtype=np.uint8)
    radius = int(round(radius))
    if radius <= 0:
        return mask.copy()
    return cv2.dilate(mask, disc_kernel(radius))


def erode_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    mask = np.asarray(mask, dtype=np.uint8)
    radius = int(round(radius))
    if radius <= 0:
        return mask.copy()
    return cv2.erode(mask, disc_kernel(radius), borderType=cv2.BORDER_CONSTANT, borderValue=0)


def feather_mask(mask: np.ndarray, radius: float) -> np.ndarray:
    """
    Soften mask edges with a Gaussian blur.

    Args:
        mask: (H, W) uint8 coverage
        radius: Feather radius in pixels; sigma is half of it

    Returns:
        Blurred uint8 coverage (a copy when radius <= 0)
    """
    mask = np.asarray(mask, dtype=np.uint8)
    if radius <= 0:
        return mask.copy()
    size = 2 * int(math.ceil(radius)) + 1
    blurred = cv2.GaussianBlur(mask.astype(np.float32), (size, size), sigmaX=radius / 2.0,
                               borderType=cv2.BORDER_CONSTANT)
    return np.clip(np.round(blurred), 0, 255).astype(np.uint8)


def feather_radius_for(width: int, height: int, amount: float) -> int:
    """Feather radius in pixels for a feather amount relative to the grid size."""
    amount = min(max(amount, 0.0), 0.25)
    return int(round(max(width, height) * amount))


def band_size_for(width: int, height: int, edge_width: float) -> int:
    """Refinement band in pixels for an edge-band width relative to the grid size."""
    edge_width = min(max(edge_width, 0.005), 0.25)
    return max(1, int(round(max(width, height) * edge_width)))


def dilation_radius_for(image_width: int, image_height: int, mask_width: int, mask_height: int,
                        budget_px: float = DILATION_BUDGET_PX) -> int:
    """
    Convert a fixed budget of source-image pixels into mask pixels.

    Args:
        image_width: Source image width
        image_height: Source image height
        mask_width: Mask grid width
        mask_height: Mask grid height
        budget_px: Dilation in source-image pixels
    """
    largest = max(image_width, image_height)
    if largest <= 0:
        return 0
    return max(0, int(round(budget_px / largest * max(mask_width, mask_height))))


def refine_boundary_to_edges(initial: np.ndarray, energy: np.ndarray, band_size: int,
                             edge_threshold: float, connectivity: int = 8) -> np.ndarray:
    """
    Pull a rough mask out to the nearest strong edges.

    The filled initial mask is eroded by one pixel to get safe interior
    seeds. Growth spreads from the seeds through pixels inside a band of
    ``band_size`` pixels around the initial mask; a pixel whose energy is
    above ``edge_threshold`` is accepted but frozen, so growth never passes
    through it. Holes are filled at the end.

    Args:
        initial: (H, W) uint8 rough mask
        energy: (H, W) edge energy in [0, 1]
        band_size: Band radius in pixels
        edge_threshold: Energy level that stops growth
        connectivity: 4 or 8 neighbour growth

    Returns:
        (H, W) uint8 mask with values 0 or 255
    """
    initial = np.asarray(initial)
    energy = np.asarray(energy, dtype=np.float64)
    if initial.shape != energy.shape:
        raise ValueError(f"Mask shape {initial.shape} does not match energy shape {energy.shape}")

    filled = ndimage.binary_fill_holes(initial > 0)
    if not filled.any():
        return np.zeros(initial.shape, dtype=np.uint8)

    structure = ndimage.generate_binary_structure(2, 1 if connectivity == 4 else 2)
    seeds = ndimage.binary_erosion(filled, structure=structure)
    if not seeds.any():
        seeds = filled
    band = dilate_mask(filled.astype(np.uint8) * 255, band_size) > 0

    passable = band & (energy <= edge_threshold)
    grown = ndimage.binary_propagation(seeds, structure=structure, mask=passable | seeds)
    frozen = band & ~passable & ndimage.binary_dilation(grown, structure=structure)
    result = ndimage.binary_fill_holes(grown | frozen)
    return np.where(result, 255, 0).astype(np.uint8)


def interpolate_stroke(points: Sequence, spacing: float) -> List[Point]:
    """
    Resample a polyline so consecutive points are at most ``spacing`` apart.
    """
    pts = [Point.from_tuple(p) for p in points]
    if len(pts) < 2 or spacing <= 0:
        return pts
    result = [pts[0]]
    for a, b in zip(pts, pts[1:]):
        steps = max(1, int(math.ceil(a.distance_to(b) / spacing)))
        for step in range(1, steps + 1):
            t = step / steps
            result.append(Point(a.x + (b.x - a.x) * t, a.y + (b.y - a.y) * t))
    return result


def _brush_coverage(distance: np.ndarray, radius: float, hardness: float) -> np.ndarray:
    hardness = min(max(hardness, 0.0), 1.0)
    core = radius * hardness
    coverage = np.zeros_like(distance)
    coverage[distance <= core] = 255.0
    soft = (distance > core) & (distance < radius)
    if radius > core:
        coverage[soft] = 255.0 * (radius - distance[soft]) / (radius - core)
    return coverage


def _combine(old: np.ndarray, coverage: np.ndarray, mode: str) -> np.ndarray:
    coverage = np.clip(np.round(coverage), 0, 255).astype(np.uint16)
    if mode == "add":
        return np.maximum(old, coverage).astype(np.uint8)
    if mode == "erase":
        return (old.astype(np.uint16) * (255 - coverage) // 255).astype(np.uint8)
    raise ValueError(f"Unknown brush mode: {mode}")


def stamp_brush(data: np.ndarray, cx: float, cy: float, radius: float,
                hardness: float = 1.0, mode: str = "add") -> None:
    """
    Stamp a disc in place at pixel coordinates (cx, cy).

    Coverage is full within ``radius * hardness`` and falls off linearly to
    zero at ``radius``. Add keeps the maximum; erase scales the existing
    value by (255 - coverage) / 255.
    """
    if radius <= 0:
        return
    height, width = data.shape
    x0 = max(0, int(math.floor(cx - radius)))
    x1 = min(width, int(math.ceil(cx + radius)) + 1)
    y0 = max(0, int(math.floor(cy - radius)))
    y1 = min(height, int(math.ceil(cy + radius)) + 1)
    if x0 >= x1 or y0 >= y1:
        return
    ys, xs = np.mgrid[y0:y1, x0:x1]
    distance = np.hypot(xs + 0.5 - cx, ys + 0.5 - cy)
    coverage = _brush_coverage(distance, radius, hardness)
    data[y0:y1, x0:x1] = _combine(data[y0:y1, x0:x1], coverage, mode)


def apply_brush_stroke(data: np.ndarray, points: Sequence, radius: float, hardness: float = 1.0,
                       mode: str = "add", pressures: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Paint a stroke of interpolated disc stamps onto a copy of ``data``.

    Args:
        data: (H, W) uint8 coverage
        points: Stroke points in pixel coordinates
        radius: Brush radius in pixels
        hardness: Fraction of the radius painted at full coverage
        mode: "add" or "erase"
        pressures: Optional per-point pressure in [0, 1] scaling the radius

    Returns:
        New uint8 array with the stroke applied
    """
    result = np.array(data, dtype=np.uint8, copy=True)
    pts = [Point.from_tuple(p) for p in points]
    if not pts or radius <= 0:
        return result
    if pressures is None:
        pressures = [1.0] * len(pts)
    if len(pressures) != len(pts):
        raise ValueError("pressures must match the number of stroke points")

    spacing = max(radius * 0.5, 0.5)
    stamps = [(pts[0], pressures[0])]
    for (a, pa), (b, pb) in zip(zip(pts, pressures), zip(pts[1:], pressures[1:])):
        steps = max(1, int(math.ceil(a.distance_to(b) / spacing)))
        for step in range(1, steps + 1):
            t = step / steps
            stamps.append((Point(a.x + (b.x - a.x) * t, a.y + (b.y - a.y) * t), pa + (pb - pa) * t))
    for point, pressure in stamps:
        stamp_brush(result, point.x, point.y, radius * min(max(pressure, 0.0), 1.0), hardness, mode)
    return result


def _grown_grid(mask: RoomMask, target: Bounds):
    """Extend a mask's grid to cover target at the same pixel density."""
    if mask.bounds.width <= 0 or mask.bounds.height <= 0:
        return mask.copy()
    density_x = mask.width / mask.bounds.width
    density_y = mask.height / mask.bounds.height
    union = mask.bounds.union(target).clamped()
    left = int(math.floor((mask.bounds.min_x - union.min_x) * density_x))
    top = int(math.floor((mask.bounds.min_y - union.min_y) * density_y))
    right = int(math.floor((union.max_x - mask.bounds.max_x) * density_x))
    bottom = int(math.floor((union.max_y - mask.bounds.max_y) * density_y))
    left, top, right, bottom = (max(0, v) for v in (left, top, right, bottom))
    new_width = mask.width + left + right
    new_height = mask.height + top + bottom
    if not (left or top or right or bottom) or max(new_width, new_height) > MAX_BRUSH_GRID:
        return mask.copy()
    data = np.zeros((new_height, new_width), dtype=np.uint8)
    data[top:top + mask.height, left:left + mask.width] = mask.data
    bounds = Bounds(
        mask.bounds.min_x - left / density_x,
        mask.bounds.min_y - top / density_y,
        mask.bounds.max_x + right / density_x,
        mask.bounds.max_y + bottom / density_y,
    ).clamped()
    return RoomMask(new_width, new_height, bounds, data)


def apply_circular_brush_to_mask(mask: Optional[RoomMask], center: Point, radius: float,
                                 mode: str = "add", hardness: float = 1.0,
                                 pressure: float = 1.0) -> RoomMask:
    """
    Paint a normalized circle onto a RoomMask without touching the input.

    Adding outside the mask's bounds grows the grid at the same pixel
    density; adding to an empty mask starts a new grid around the circle.

    Args:
        mask: Existing mask (None starts from nothing)
        center: Normalized brush center
        radius: Normalized brush radius
        mode: "add" or "erase"
        hardness: Fraction of the radius painted at full coverage
        pressure: Radius multiplier in [0, 1]

    Returns:
        New RoomMask with the stamp applied
    """
    radius = radius * min(max(pressure, 0.0), 1.0)
    center = center.clamped()
    circle = Bounds(center.x - radius, center.y - radius, center.x + radius, center.y + radius).clamped()
    if mask is None or not mask.has_coverage():
        if mode == "erase" or radius <= 0:
            return mask.copy() if mask is not None else RoomMask.empty()
        size = max(1, int(round(max(circle.width, circle.height) * BRUSH_RESOLUTION)))
        working = RoomMask(
            max(1, int(round(circle.width * BRUSH_RESOLUTION))) if circle.width > 0 else size,
            max(1, int(round(circle.height * BRUSH_RESOLUTION))) if circle.height > 0 else size,
            circle,
        )
    elif mode == "add":
        working = _grown_grid(mask, circle)
    else:
        working = mask.copy()
    if radius <= 0:
        return working

    bounds = working.bounds
    xs = bounds.min_x + (np.arange(working.width) + 0.5) / working.width * bounds.width
    ys = bounds.min_y + (np.arange(working.height) + 0.5) / working.height * bounds.height
    distance = np.hypot(xs[None, :] - center.x, ys[:, None] - center.y)
    coverage = _brush_coverage(distance, radius, hardness)
    working.data = _combine(working.data, coverage, mode)
    return working
