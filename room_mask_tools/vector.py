"""
Vectorization: marching-squares contour extraction, simplification and
signed distance fields.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from .core import Bounds, Point, RoomMask, SignedDistanceField, clamp01
from .edges import smooth_polygon
from .raster import rasterize_polygon, room_mask_from_polygon

logger = logging.getLogger(__name__)

ISO_LEVEL = 127.5
SIMPLIFY_TOLERANCE = 0.75
DEDUPE_EPSILON = 1e-6
SDF_BAND_RADIUS = 48.0
SDF_SMOOTH_ITERATIONS = 2
SDF_SMOOTH_WEIGHT = 0.2
GAP_THRESHOLD = 0.075

# Corner bits: top-left 8, top-right 4, bottom-right 2, bottom-left 1.
# Sides: T(op), R(ight), B(ottom), L(eft). Saddles 5 and 10 are handled apart.
_SEGMENTS = {
    1: [("L", "B")],
    2: [("B", "R")],
    3: [("L", "R")],
    4: [("T", "R")],
    6: [("T", "B")],
    7: [("L", "T")],
    8: [("L", "T")],
    9: [("T", "B")],
    11: [("T", "R")],
    12: [("L", "R")],
    13: [("B", "R")],
    14: [("L", "B")],
}

EdgeKey = Tuple[str, int, int]


@dataclass
class RoundTripResult:
    """Polygon rebuilt through a signed distance field, with its IoU error."""

    sdf: SignedDistanceField
    mask: RoomMask
    polygon: List[Point]
    error: float


@dataclass
class GapMarker:
    """Long polygon edge flagged as a possible gap in a room outline."""

    id: str
    position: Point
    radius: float
    severity: str
    description: str


def polygon_area(points: Sequence) -> float:
    """Signed shoelace area (positive for clockwise on screen, y pointing down)."""
    if len(points) < 3:
        return 0.0
    coords = np.array([Point.from_tuple(p).to_tuple() for p in points], dtype=np.float64)
    x, y = coords[:, 0], coords[:, 1]
    return float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)) / 2.0


def polygon_centroid(points: Sequence) -> Point:
    """Area centroid of a simple polygon; vertex mean for degenerate input."""
    coords = np.array([Point.from_tuple(p).to_tuple() for p in points], dtype=np.float64)
    if len(coords) == 0:
        return Point(0.5, 0.5)
    area = polygon_area(points)
    if abs(area) < 1e-12:
        mean = coords.mean(axis=0)
        return Point(float(mean[0]), float(mean[1]))
    x, y = coords[:, 0], coords[:, 1]
    xn, yn = np.roll(x, -1), np.roll(y, -1)
    cross = x * yn - xn * y
    cx = float(((x + xn) * cross).sum() / (6.0 * area))
    cy = float(((y + yn) * cross).sum() / (6.0 * area))
    return Point(cx, cy)


def _edge_point(field: np.ndarray, key: EdgeKey, level: float) -> Tuple[float, float]:
    kind, gx, gy = key
    a = field[gy, gx]
    b = field[gy, gx + 1] if kind == "h" else field[gy + 1, gx]
    t = 0.5 if b == a else (level - a) / (b - a)
    t = min(max(t, 0.0), 1.0)
    if kind == "h":
        return gx + t, float(gy)
    return float(gx), gy + t


def _cell_edges(cx: int, cy: int) -> Dict[str, EdgeKey]:
    return {
        "T": ("h", cx, cy),
        "B": ("h", cx, cy + 1),
        "L": ("v", cx, cy),
        "R": ("v", cx + 1, cy),
    }


def _march(field: np.ndarray, level: float) -> List[Tuple[EdgeKey, EdgeKey]]:
    """Emit boundary segments for every 2x2 cell of a padded field."""
    inside = field > level
    tl, tr = inside[:-1, :-1], inside[:-1, 1:]
    bl, br = inside[1:, :-1], inside[1:, 1:]
    cases = (tl.astype(np.uint8) << 3) | (tr.astype(np.uint8) << 2) | (br.astype(np.uint8) << 1) | bl
    segments = []
    rows, cols = np.nonzero((cases != 0) & (cases != 15))
    for cy, cx in zip(rows.tolist(), cols.tolist()):
        case = int(cases[cy, cx])
        sides = _cell_edges(cx, cy)
        if case in (5, 10):
            center = field[cy:cy + 2, cx:cx + 2].mean()
            center_inside = center > level
            # 5: top-right and bottom-left inside; 10: top-left and bottom-right
            if (case == 5) == center_inside:
                pairs = [("L", "T"), ("B", "R")]
            else:
                pairs = [("T", "R"), ("L", "B")]
        else:
            pairs = _SEGMENTS[case]
        for a, b in pairs:
            segments.append((sides[a], sides[b]))
    return segments


def _stitch(segments: List[Tuple[EdgeKey, EdgeKey]]) -> List[List[EdgeKey]]:
    """Join segments sharing grid-edge keys into closed loops."""
    touching: Dict[EdgeKey, List[int]] = defaultdict(list)
    for index, (a, b) in enumerate(segments):
        touching[a].append(index)
        touching[b].append(index)

    used = [False] * len(segments)
    loops = []
    for start in range(len(segments)):
        if used[start]:
            continue
        used[start] = True
        first, current = segments[start]
        loop = [first]
        while current != first:
            loop.append(current)
            next_index = None
            for candidate in touching[current]:
                if not used[candidate]:
                    next_index = candidate
                    break
            if next_index is None:
                break
            used[next_index] = True
            a, b = segments[next_index]
            current = b if a == current else a
        if len(loop) >= 3:
            loops.append(loop)
    return loops


def douglas_peucker(points: np.ndarray, tolerance: float) -> np.ndarray:
    """
    Simplify an open polyline, keeping both endpoints.

    Uses an explicit work stack so very long chains do not recurse.
    """
    count = len(points)
    if count < 3:
        return points
    keep = np.zeros(count, dtype=bool)
    keep[0] = keep[-1] = True
    stack = [(0, count - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue
        a, b = points[start], points[end]
        segment = b - a
        length = float(np.hypot(segment[0], segment[1]))
        inner = points[start + 1:end]
        if length == 0:
            distances = np.hypot(inner[:, 0] - a[0], inner[:, 1] - a[1])
        else:
            distances = np.abs(segment[0] * (inner[:, 1] - a[1]) - segment[1] * (inner[:, 0] - a[0])) / length
        offset = int(np.argmax(distances))
        if distances[offset] > tolerance:
            split = start + 1 + offset
            keep[split] = True
            stack.append((start, split))
            stack.append((split, end))
    return points[keep]


def simplify_closed(points: np.ndarray, tolerance: float = SIMPLIFY_TOLERANCE) -> np.ndarray:
    """Douglas-Peucker on a closed loop split at the vertex farthest from the first."""
    if len(points) < 4:
        return points
    far = int(np.argmax(np.hypot(points[:, 0] - points[0, 0], points[:, 1] - points[0, 1])))
    if far == 0:
        return points[:1]
    first = douglas_peucker(points[:far + 1], tolerance)
    second = douglas_peucker(np.vstack([points[far:], points[:1]]), tolerance)
    return np.vstack([first[:-1], second[:-1]])


def _dedupe(coords: np.ndarray, epsilon: float = DEDUPE_EPSILON) -> np.ndarray:
    result = []
    for point in coords:
        if result and np.hypot(*(point - result[-1])) <= epsilon:
            continue
        result.append(point)
    while len(result) > 1 and np.hypot(*(result[0] - result[-1])) <= epsilon:
        result.pop()
    return np.array(result) if result else np.zeros((0, 2))


def _largest_loop(field: np.ndarray, level: float,
                  tolerance: Optional[float] = SIMPLIFY_TOLERANCE) -> np.ndarray:
    """
    Largest closed iso-contour of a padded field, in padded grid coordinates.

    Pass tolerance=None to get the dense, unsimplified loop.
    """
    loops = _stitch(_march(field, level))
    if not loops:
        return np.zeros((0, 2))
    best = None
    best_area = 0.0
    for loop in loops:
        coords = np.array([_edge_point(field, key, level) for key in loop], dtype=np.float64)
        area = polygon_area(coords)
        if best is None or abs(area) > abs(best_area):
            best, best_area = coords, area
    if best_area < 0:
        best = best[::-1]
    if len(loops) > 1:
        logger.debug("Kept largest of %d contour loops", len(loops))
    if tolerance is None:
        return _dedupe(best)
    return _dedupe(simplify_closed(best, tolerance))


def extract_polygon(mask: np.ndarray, tolerance: float = SIMPLIFY_TOLERANCE) -> List[Point]:
    """
    Trace the outline of a coverage grid.

    Args:
        mask: (H, W) coverage values 0-255
        tolerance: Douglas-Peucker tolerance in pixels

    Returns:
        Normalized polygon (pixel centers map to (i + 0.5) / W), or [] when empty
    """
    mask = np.asarray(mask)
    if mask.size == 0 or not np.any(mask > ISO_LEVEL):
        return []
    height, width = mask.shape
    field = np.pad(mask.astype(np.float64), 1, mode="constant", constant_values=0)
    coords = _largest_loop(field, ISO_LEVEL, tolerance)
    if len(coords) < 3:
        return []
    return [Point(clamp01((gx - 0.5) / width), clamp01((gy - 0.5) / height)) for gx, gy in coords]


def _to_bounds(points: List[Point], bounds: Bounds) -> List[Point]:
    return [
        Point(clamp01(bounds.min_x + p.x * bounds.width), clamp01(bounds.min_y + p.y * bounds.height))
        for p in points
    ]


def room_mask_to_polygon(mask: RoomMask) -> List[Point]:
    """Outline of a RoomMask in normalized image space."""
    return _to_bounds(extract_polygon(mask.data), mask.bounds)


def compute_signed_distance_field(mask: RoomMask, band_radius: float = SDF_BAND_RADIUS) -> SignedDistanceField:
    """
    Euclidean signed distance field of a mask, in pixels.

    Values are negative inside, positive outside, zero half a pixel from
    the boundary, and clamped to +-band_radius.
    """
    inside = mask.data > ISO_LEVEL
    if not inside.any():
        values = np.full(inside.shape, band_radius, dtype=np.float32)
    elif inside.all():
        values = np.full(inside.shape, -band_radius, dtype=np.float32)
    else:
        outside_distance = ndimage.distance_transform_edt(~inside)
        inside_distance = ndimage.distance_transform_edt(inside)
        values = np.where(inside, 0.5 - inside_distance, outside_distance - 0.5)
        values = np.clip(values, -band_radius, band_radius).astype(np.float32)
    return SignedDistanceField(mask.width, mask.height, mask.bounds, values)


def sdf_to_mask(sdf: SignedDistanceField) -> RoomMask:
    data = np.where(sdf.values < 0, 255, 0).astype(np.uint8)
    return RoomMask(sdf.width, sdf.height, sdf.bounds, data)


def sdf_to_polygon(sdf: SignedDistanceField, smoothing_iterations: int = SDF_SMOOTH_ITERATIONS,
                   smoothing_weight: float = SDF_SMOOTH_WEIGHT,
                   tolerance: float = SIMPLIFY_TOLERANCE) -> List[Point]:
    """
    Zero iso-contour of a signed distance field in normalized image space.

    Smoothing runs on the dense contour, before simplification.
    """
    padding = float(np.max(np.abs(sdf.values))) + 1.0 if sdf.values.size else 1.0
    field = np.pad(-sdf.values.astype(np.float64), 1, mode="constant", constant_values=-padding)
    coords = _largest_loop(field, 0.0, tolerance=None)
    if len(coords) < 3:
        return []
    local = [Point(clamp01((gx - 0.5) / sdf.width), clamp01((gy - 0.5) / sdf.height)) for gx, gy in coords]
    local = smooth_polygon(local, smoothing_iterations, smoothing_weight)
    pixels = np.array([[p.x * sdf.width, p.y * sdf.height] for p in local], dtype=np.float64)
    pixels = _dedupe(simplify_closed(pixels, tolerance))
    if len(pixels) < 3:
        return []
    local = [Point(clamp01(x / sdf.width), clamp01(y / sdf.height)) for x, y in pixels]
    return _to_bounds(local, sdf.bounds)


def polygon_to_sdf(polygon: Sequence, resolution: int = 256, padding: float = 0.02) -> Optional[SignedDistanceField]:
    mask = room_mask_from_polygon(polygon, resolution, padding)
    if mask is None:
        return None
    return compute_signed_distance_field(mask)


def round_trip(polygon: Sequence, resolution: int = 256, padding: float = 0.02) -> Optional[RoundTripResult]:
    """
    Polygon -> mask -> signed distance field -> polygon.

    Args:
        polygon: Normalized input polygon
        resolution: Mask resolution along the longer side
        padding: Normalized margin around the polygon

    Returns:
        RoundTripResult whose error is 1 - IoU between the input polygon's
        mask and the rebuilt polygon's mask, or None for degenerate input
    """
    mask = room_mask_from_polygon(polygon, resolution, padding)
    if mask is None:
        return None
    sdf = compute_signed_distance_field(mask)
    rebuilt = sdf_to_polygon(sdf)
    rebuilt_data = rasterize_polygon(rebuilt, mask.width, mask.height, mask.bounds)
    original = mask.data > 0
    restored = rebuilt_data > 0
    union = np.logical_or(original, restored).sum()
    iou = 1.0 if union == 0 else np.logical_and(original, restored).sum() / union
    return RoundTripResult(sdf=sdf, mask=mask, polygon=rebuilt, error=float(1.0 - iou))


def compute_gap_markers(mask: Optional[RoomMask], threshold: float = GAP_THRESHOLD) -> List[GapMarker]:
    """
    Flag outline edges longer than threshold as potential gaps.

    Severity is "error" beyond 1.6x the threshold, "warning" beyond 1.2x,
    otherwise "info".
    """
    if mask is None or not mask.has_coverage():
        return []
    polygon = room_mask_to_polygon(mask)
    if len(polygon) < 2:
        return []
    markers = []
    for index, current in enumerate(polygon):
        following = polygon[(index + 1) % len(polygon)]
        gap = current.distance_to(following)
        if gap <= threshold:
            continue
        if gap > threshold * 1.6:
            severity = "error"
        elif gap > threshold * 1.2:
            severity = "warning"
        else:
            severity = "info"
        markers.append(GapMarker(
            id=f"gap-{index}",
            position=Point((current.x + following.x) / 2, (current.y + following.y) / 2),
            radius=gap / 2,
            severity=severity,
            description=f"Gap of {gap * 100:.1f}% between mask edges",
        ))
    return markers
