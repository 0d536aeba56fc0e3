"""
Polygon and stroke rasterization into coverage grids.
"""

import logging
from typing import List, Optional, Sequence

import cv2
import numpy as np
from scipy import ndimage

from .core import Bounds, Point, RoomMask, clamp_polygon

logger = logging.getLogger(__name__)


def _polygon_array(points) -> np.ndarray:
    return np.array([Point.from_tuple(p).to_tuple() for p in points], dtype=np.float64)


def rasterize_polygon(points: Sequence, width: int, height: int,
                      bounds: Optional[Bounds] = None) -> np.ndarray:
    """
    Even-odd scanline fill of a normalized polygon.

    Pixel (i, j) is filled when its center, mapped through ``bounds`` into
    normalized image space, lies inside the polygon.

    Args:
        points: Polygon vertices in normalized image space
        width: Output width in pixels
        height: Output height in pixels
        bounds: Rectangle the grid covers (full image if None)

    Returns:
        (height, width) uint8 array with 255 inside and 0 outside
    """
    mask = np.zeros((height, width), dtype=np.uint8)
    if len(points) < 3 or width <= 0 or height <= 0:
        return mask

    bounds = bounds or Bounds.full()
    pts = _polygon_array(points)
    x0, y0 = pts[:, 0], pts[:, 1]
    x1, y1 = np.roll(x0, -1), np.roll(y0, -1)

    centers_x = bounds.min_x + (np.arange(width) + 0.5) / width * bounds.width
    for row in range(height):
        sample_y = bounds.min_y + (row + 0.5) / height * bounds.height
        # Half-open rule so a vertex on the scanline counts once
        crossing = (y0 <= sample_y) != (y1 <= sample_y)
        if not np.any(crossing):
            continue
        ax, ay, bx, by = x0[crossing], y0[crossing], x1[crossing], y1[crossing]
        xs = np.sort(ax + (sample_y - ay) / (by - ay) * (bx - ax))
        for left, right in zip(xs[0::2], xs[1::2]):
            mask[row, (centers_x >= left) & (centers_x < right)] = 255
    return mask


def room_mask_from_polygon(polygon: Sequence, resolution: int = 256,
                           padding: float = 0.0) -> Optional[RoomMask]:
    """
    Rasterize a polygon into a RoomMask fitted around it.

    Args:
        polygon: Vertices in normalized image space
        resolution: Pixel count along the longer side of the bounds
        padding: Normalized margin added around the polygon's bounding box

    Returns:
        RoomMask, or None when the polygon has fewer than 3 points
    """
    points = clamp_polygon(polygon)
    if len(points) < 3:
        return None
    bounds = Bounds.around(points, padding)
    span = max(bounds.width, bounds.height, 1e-6)
    width = max(1, int(round(resolution * max(bounds.width, 1e-6) / span)))
    height = max(1, int(round(resolution * max(bounds.height, 1e-6) / span)))
    data = rasterize_polygon(points, width, height, bounds)
    return RoomMask(width, height, bounds, data)


def rasterize_freehand_path(points: Sequence, width: int, height: int,
                            stroke_radius: float = 0.0025, close_path: bool = True) -> np.ndarray:
    """
    Draw a freehand path as a thick polyline.

    Args:
        points: Path points normalized to the grid (0..1 on both axes)
        width: Grid width
        height: Grid height
        stroke_radius: Stroke half-width as a fraction of the longer grid side
        close_path: Connect the last point back to the first

    Returns:
        (height, width) uint8 boundary mask
    """
    mask = np.zeros((height, width), dtype=np.uint8)
    if not points or width <= 0 or height <= 0:
        return mask
    pts = _polygon_array(clamp_polygon(points))
    pixels = np.stack([pts[:, 0] * width, pts[:, 1] * height], axis=1)
    pixels = np.round(pixels - 0.5).astype(np.int32)
    pixels[:, 0] = np.clip(pixels[:, 0], 0, width - 1)
    pixels[:, 1] = np.clip(pixels[:, 1], 0, height - 1)
    radius_px = max(0.5, stroke_radius * max(width, height))
    thickness = max(1, int(round(radius_px * 2)))
    if len(pixels) == 1:
        cv2.circle(mask, tuple(int(v) for v in pixels[0]), max(0, int(round(radius_px))), 255, -1)
        return mask
    cv2.polylines(mask, [pixels.reshape(-1, 1, 2)], close_path, 255, thickness=thickness)
    return mask


def fill_mask_interior(mask: np.ndarray) -> np.ndarray:
    """Fill every hole enclosed by non-zero pixels."""
    filled = ndimage.binary_fill_holes(np.asarray(mask) > 0)
    result = np.asarray(mask, dtype=np.uint8).copy()
    result[filled & (result == 0)] = 255
    return result


def composite_max(masks: List[np.ndarray]) -> np.ndarray:
    """
    Pixelwise maximum of equally shaped masks.

    Raises:
        ValueError: if no masks are given or shapes differ
    """
    if not masks:
        raise ValueError("composite_max needs at least one mask")
    shape = np.asarray(masks[0]).shape
    result = np.zeros(shape, dtype=np.uint8)
    for mask in masks:
        mask = np.asarray(mask)
        if mask.shape != shape:
            raise ValueError(f"Mask shape {mask.shape} does not match {shape}")
        np.maximum(result, mask.astype(np.uint8), out=result)
    return result


def build_circle_mask(center: Point, radius: float, resolution: int = 512,
                      min_size: int = 32) -> RoomMask:
    """
    Circular RoomMask around a normalized center, used when a selection fails.

    Args:
        center: Normalized center of the circle
        radius: Normalized radius
        resolution: Pixels per unit of normalized space
        min_size: Lower bound on the grid's side length
    """
    center = center.clamped()
    bounds = Bounds(center.x - radius, center.y - radius,
                    center.x + radius, center.y + radius).clamped()
    width = max(min_size, int(round(bounds.width * resolution)))
    height = max(min_size, int(round(bounds.height * resolution)))
    xs = bounds.min_x + (np.arange(width) + 0.5) / width * bounds.width
    ys = bounds.min_y + (np.arange(height) + 0.5) / height * bounds.height
    dist_sq = (xs[None, :] - center.x) ** 2 + (ys[:, None] - center.y) ** 2
    data = np.where(dist_sq <= radius * radius, 255, 0).astype(np.uint8)
    return RoomMask(width, height, bounds, data)


def crop_mask(data: np.ndarray, padding: int = 0):
    """
    Crop a coverage grid to its non-zero bounding box.

    Returns:
        (cropped, (x0, y0)) or (None, None) when the grid is empty
    """
    rows = np.flatnonzero(np.any(data, axis=1))
    cols = np.flatnonzero(np.any(data, axis=0))
    if rows.size == 0:
        return None, None
    y0 = max(0, int(rows[0]) - padding)
    y1 = min(data.shape[0], int(rows[-1]) + 1 + padding)
    x0 = max(0, int(cols[0]) - padding)
    x1 = min(data.shape[1], int(cols[-1]) + 1 + padding)
    return data[y0:y1, x0:x1].copy(), (x0, y0)
