"""
Core data structures for room masks: bounds, points, masks and zones.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

EMPTY_MASK_SIZE = 32


@dataclass(frozen=True)
class Point:
    """A point in normalized [0, 1] image space."""

    x: float
    y: float

    def to_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)

    def clamped(self) -> "Point":
        """Return the point clamped to the unit square."""
        return Point(clamp01(self.x), clamp01(self.y))

    def distance_to(self, other: "Point") -> float:
        return float(np.hypot(self.x - other.x, self.y - other.y))

    @classmethod
    def from_tuple(cls, value) -> "Point":
        if isinstance(value, Point):
            return value
        return cls(float(value[0]), float(value[1]))


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle in normalized image space."""

    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 1.0
    max_y: float = 1.0

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def clamped(self) -> "Bounds":
        """
        Clamp to the unit square and repair inverted edges.

        Returns:
            New Bounds with 0 <= min <= max <= 1 on both axes
        """
        min_x, max_x = sorted((clamp01(self.min_x), clamp01(self.max_x)))
        min_y, max_y = sorted((clamp01(self.min_y), clamp01(self.max_y)))
        return Bounds(min_x, min_y, max_x, max_y)

    def contains(self, point: Point) -> bool:
        return self.min_x <= point.x <= self.max_x and self.min_y <= point.y <= self.max_y

    def union(self, other: "Bounds") -> "Bounds":
        return Bounds(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
        )

    def to_dict(self) -> Dict[str, float]:
        """Convert bounds to the dictionary stored in encoded masks."""
        return {"minX": self.min_x, "minY": self.min_y, "maxX": self.max_x, "maxY": self.max_y}

    @classmethod
    def from_dict(cls, data: Dict) -> "Bounds":
        """Create bounds from a dictionary with minX/minY/maxX/maxY keys."""
        return cls(
            float(data["minX"]),
            float(data["minY"]),
            float(data["maxX"]),
            float(data["maxY"]),
        )

    @classmethod
    def full(cls) -> "Bounds":
        return cls(0.0, 0.0, 1.0, 1.0)

    @classmethod
    def around(cls, points: List[Point], padding: float = 0.0) -> "Bounds":
        """Bounding box of points grown by padding, clamped to the unit square."""
        if not points:
            return cls.full()
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        return cls(min(xs) - padding, min(ys) - padding, max(xs) + padding, max(ys) + padding).clamped()


class RoomMask:
    """
    Single-channel coverage grid placed over a rectangle of the image.

    The grid covers ``bounds`` in normalized space; pixel (i, j) covers the
    sub-rectangle whose center maps to ((i + 0.5) / width, (j + 0.5) / height)
    inside those bounds.
    """

    def __init__(self, width: int, height: int, bounds: Optional[Bounds] = None,
                 data: Optional[np.ndarray] = None):
        """
        Initialize a room mask.

        Args:
            width: Grid width in pixels (must be positive)
            height: Grid height in pixels (must be positive)
            bounds: Normalized rectangle covered by the grid (full image if None)
            data: (height, width) coverage values 0-255 (zeros if None)
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Mask dimensions must be positive, got {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        self.bounds = bounds or Bounds.full()
        if data is None:
            data = np.zeros((self.height, self.width), dtype=np.uint8)
        data = np.asarray(data)
        if data.shape != (self.height, self.width):
            raise ValueError(
                f"Mask data shape {data.shape} does not match {self.height}x{self.width}"
            )
        self.data = data.astype(np.uint8, copy=False)

    @classmethod
    def empty(cls) -> "RoomMask":
        """Blank mask used when nothing has been selected yet."""
        return cls(EMPTY_MASK_SIZE, EMPTY_MASK_SIZE, Bounds.full())

    @classmethod
    def blank(cls, width: int, height: int, bounds: Optional[Bounds] = None) -> "RoomMask":
        return cls(width, height, bounds)

    def copy(self) -> "RoomMask":
        return RoomMask(self.width, self.height, self.bounds, self.data.copy())

    def has_coverage(self) -> bool:
        """True when at least one pixel is non-zero."""
        return bool(np.any(self.data))

    def pixel_at(self, point: Point) -> Optional[Tuple[int, int]]:
        """Map a normalized point to the (col, row) it falls in, or None if outside."""
        if self.bounds.width <= 0 or self.bounds.height <= 0:
            return None
        if not self.bounds.contains(point):
            return None
        u = (point.x - self.bounds.min_x) / self.bounds.width
        v = (point.y - self.bounds.min_y) / self.bounds.height
        col = min(self.width - 1, max(0, int(np.floor(u * self.width))))
        row = min(self.height - 1, max(0, int(np.floor(v * self.height))))
        return col, row

    def contains(self, point: Point, threshold: int = 0) -> bool:
        """Check whether a normalized point lands on coverage above threshold."""
        pixel = self.pixel_at(point)
        if pixel is None:
            return False
        col, row = pixel
        return int(self.data[row, col]) > threshold

    def centroid(self) -> Point:
        """
        Mean of the centers of all covered pixels.

        Returns:
            Normalized centroid, or the center of the bounds for an empty mask
        """
        rows, cols = np.nonzero(self.data)
        if rows.size == 0:
            return Point(
                (self.bounds.min_x + self.bounds.max_x) / 2,
                (self.bounds.min_y + self.bounds.max_y) / 2,
            )
        cx = float(np.mean(cols + 0.5)) / self.width
        cy = float(np.mean(rows + 0.5)) / self.height
        return Point(
            clamp01(self.bounds.min_x + cx * self.bounds.width),
            clamp01(self.bounds.min_y + cy * self.bounds.height),
        )

    def coverage_ratio(self) -> float:
        return float(np.count_nonzero(self.data)) / float(self.data.size)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RoomMask):
            return NotImplemented
        return (
            self.width == other.width
            and self.height == other.height
            and self.bounds == other.bounds
            and np.array_equal(self.data, other.data)
        )

    def __repr__(self) -> str:
        return f"RoomMask({self.width}x{self.height}, bounds={self.bounds})"


@dataclass(frozen=True)
class EntranceZone:
    """Door-like opening the wand may grow through, in raster pixel coordinates."""

    id: str
    center: Point
    radius: float

    def contains_pixel(self, x: float, y: float) -> bool:
        return (x - self.center.x) ** 2 + (y - self.center.y) ** 2 <= self.radius ** 2


@dataclass(frozen=True)
class Roi:
    """Rectangle of the source raster in pixel units."""

    x: int
    y: int
    width: int
    height: int

    def clipped(self, raster_width: int, raster_height: int) -> "Roi":
        """Clip to the raster; the result keeps at least one pixel."""
        x = min(max(0, int(self.x)), max(0, raster_width - 1))
        y = min(max(0, int(self.y)), max(0, raster_height - 1))
        width = max(1, min(int(self.width), raster_width - x))
        height = max(1, min(int(self.height), raster_height - y))
        return Roi(x, y, width, height)

    def slice(self, image: np.ndarray) -> np.ndarray:
        return image[self.y:self.y + self.height, self.x:self.x + self.width]

    @classmethod
    def full(cls, image: np.ndarray) -> "Roi":
        return cls(0, 0, int(image.shape[1]), int(image.shape[0]))


@dataclass
class SignedDistanceField:
    """Distance to a region boundary per pixel; negative inside the region."""

    width: int
    height: int
    bounds: Bounds
    values: np.ndarray


def clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def clamp_polygon(points) -> List[Point]:
    """Convert any point-like sequence to clamped Points."""
    return [Point.from_tuple(p).clamped() for p in points]


def as_rgb(image: np.ndarray) -> np.ndarray:
    """
    Normalize an image array to (H, W, 3) uint8.

    Args:
        image: Grayscale (H, W), RGB (H, W, 3) or RGBA (H, W, 4) array

    Returns:
        RGB uint8 array (alpha is dropped)
    """
    image = np.asarray(image)
    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = image[:, :, :3]
    elif image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Unsupported image shape {image.shape}")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image
