"""
Edge model: gradient maps, polygon snapping and multi-scale edge energy.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from .core import Point, as_rgb, clamp01

logger = logging.getLogger(__name__)

GRAY_WEIGHTS = (0.299, 0.587, 0.114)
MIN_SNAP_DISTANCE = 8
SNAP_STEPS = 24
MIN_GAIN_RATIO = 0.05


@dataclass
class EdgeMap:
    """Sobel gradient of an image with its per-pixel magnitude."""

    width: int
    height: int
    magnitudes: np.ndarray
    gradient_x: np.ndarray
    gradient_y: np.ndarray
    max_magnitude: float

    def sample(self, x: float, y: float) -> float:
        """Bilinear sample of the magnitude at pixel coordinates (clamped)."""
        return _bilinear(self.magnitudes, x, y)

    def direction(self, x: float, y: float) -> np.ndarray:
        """Gradient vector at the nearest pixel."""
        col = int(min(max(round(x), 0), self.width - 1))
        row = int(min(max(round(y), 0), self.height - 1))
        return np.array([self.gradient_x[row, col], self.gradient_y[row, col]], dtype=np.float64)


def _bilinear(field: np.ndarray, x: float, y: float) -> float:
    height, width = field.shape
    x = min(max(x, 0.0), width - 1)
    y = min(max(y, 0.0), height - 1)
    x0, y0 = int(np.floor(x)), int(np.floor(y))
    x1, y1 = min(x0 + 1, width - 1), min(y0 + 1, height - 1)
    tx, ty = x - x0, y - y0
    top = field[y0, x0] * (1 - tx) + field[y0, x1] * tx
    bottom = field[y1, x0] * (1 - tx) + field[y1, x1] * tx
    return float(top * (1 - ty) + bottom * ty)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert an image to float32 luma.

    Args:
        image: (H, W) grayscale or (H, W, 3|4) color array

    Returns:
        (H, W) float32 array in the 0-255 range
    """
    image = np.asarray(image)
    if image.ndim == 2:
        return image.astype(np.float32)
    rgb = as_rgb(image).astype(np.float32)
    r, g, b = GRAY_WEIGHTS
    return rgb[:, :, 0] * r + rgb[:, :, 1] * g + rgb[:, :, 2] * b


def build_edge_map(image: np.ndarray) -> EdgeMap:
    """
    Build an edge map: grayscale, 3x3 box blur, Sobel gradients.

    Args:
        image: Grayscale or color image array

    Returns:
        EdgeMap with magnitudes, raw gradients and the global maximum
    """
    gray = to_grayscale(image)
    blurred = cv2.blur(gray, (3, 3), borderType=cv2.BORDER_REPLICATE)
    gx = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    magnitudes = cv2.magnitude(gx, gy)
    height, width = gray.shape
    return EdgeMap(
        width=width,
        height=height,
        magnitudes=magnitudes,
        gradient_x=gx,
        gradient_y=gy,
        max_magnitude=float(magnitudes.max()) if magnitudes.size else 0.0,
    )


def _unit(vector: np.ndarray) -> Optional[np.ndarray]:
    length = float(np.hypot(vector[0], vector[1]))
    if length == 0:
        return None
    return vector / length


def snap_polygon_to_edges(polygon: Sequence, edge_map: EdgeMap, image_width: int,
                          image_height: int, search_radius: Optional[float] = None,
                          orientation_weight: float = 0.5, strength: float = 1.0) -> List[Point]:
    """
    Move each vertex along its edge normals onto the strongest nearby edge.

    The score of a candidate is its magnitude minus a distance penalty minus
    an orientation penalty that grows when the local gradient is perpendicular
    to the search line, i.e. the edge runs along the search direction instead
    of across it. A vertex only moves when the winning magnitude beats the
    magnitude at its current position by more than 5% of the global maximum.

    Args:
        polygon: Normalized vertices (closed, last joins first)
        edge_map: Edge map of the image the polygon lies on
        image_width: Width used to convert to pixels
        image_height: Height used to convert to pixels
        search_radius: Search distance in pixels (derived from image size if None)
        orientation_weight: Strength of the orientation penalty (0 disables it)
        strength: Fraction of the search radius actually searched (0 leaves every vertex in place)

    Returns:
        New list of clamped normalized points, same length as the input
    """
    points = [Point.from_tuple(p) for p in polygon]
    if not points or edge_map.max_magnitude == 0:
        return [p.clamped() for p in points]

    max_dimension = max(image_width, image_height)
    if search_radius is None:
        search_radius = max(12.0, max_dimension * 0.02)
    max_distance = max(float(MIN_SNAP_DISTANCE), float(search_radius)) * min(max(strength, 0.0), 1.0)
    if max_distance < 1.0:
        return [p.clamped() for p in points]
    step = max(1, int(round(max_distance / SNAP_STEPS)))
    distance_penalty = edge_map.max_magnitude / max(max_distance, 1.0) / 6.0
    minimum_gain = edge_map.max_magnitude * MIN_GAIN_RATIO
    distances = np.arange(step, max_distance + 1e-9, step)

    snapped = []
    count = len(points)
    for index, point in enumerate(points):
        prev_point = points[(index - 1) % count]
        next_point = points[(index + 1) % count]
        current = np.array([point.x * image_width, point.y * image_height])
        incoming = _unit(current - np.array([prev_point.x * image_width, prev_point.y * image_height]))
        outgoing = _unit(np.array([next_point.x * image_width, next_point.y * image_height]) - current)
        normals = [np.array([-d[1], d[0]]) for d in (incoming, outgoing) if d is not None]
        if not normals:
            snapped.append(point.clamped())
            continue

        base_magnitude = edge_map.sample(current[0], current[1])
        best_magnitude = base_magnitude
        best_score = base_magnitude
        best = current
        for normal in normals:
            for direction in (1.0, -1.0):
                for distance in distances:
                    cx = min(max(current[0] + normal[0] * distance * direction, 0.0), image_width - 1)
                    cy = min(max(current[1] + normal[1] * distance * direction, 0.0), image_height - 1)
                    magnitude = edge_map.sample(cx, cy)
                    score = magnitude - distance * distance_penalty
                    if orientation_weight > 0 and magnitude > 0:
                        gradient = _unit(edge_map.direction(cx, cy))
                        if gradient is not None:
                            alignment = abs(float(np.dot(gradient, normal)))
                            score -= orientation_weight * magnitude * (1.0 - alignment)
                    if score > best_score:
                        best_score = score
                        best_magnitude = magnitude
                        best = np.array([cx, cy])

        if best_magnitude <= base_magnitude + minimum_gain or best_magnitude <= minimum_gain:
            snapped.append(point.clamped())
        else:
            snapped.append(Point(clamp01(best[0] / image_width), clamp01(best[1] / image_height)))
    return snapped


def smooth_polygon(polygon: Sequence, iterations: int = 1, weight: float = 0.25) -> List[Point]:
    """
    Closed-loop neighbour averaging.

    Args:
        polygon: Normalized vertices
        iterations: Number of smoothing passes
        weight: Pull towards each neighbour per pass (clamped to 0..0.45)

    Returns:
        Smoothed points clamped to [0, 1]
    """
    points = [Point.from_tuple(p) for p in polygon]
    if len(points) < 3 or iterations <= 0:
        return [p.clamped() for p in points]
    weight = min(max(weight, 0.0), 0.45)
    coords = np.array([p.to_tuple() for p in points], dtype=np.float64)
    for _ in range(int(iterations)):
        prev = np.roll(coords, 1, axis=0)
        nxt = np.roll(coords, -1, axis=0)
        coords = coords * (1 - 2 * weight) + (prev + nxt) * weight
    coords = np.clip(coords, 0.0, 1.0)
    return [Point(float(x), float(y)) for x, y in coords]


def edge_energy_multi_scale(image: np.ndarray, scales: int = 3,
                            base_sigma: float = 0.8) -> np.ndarray:
    """
    Gradient energy combined over several Gaussian scales.

    Each scale k blurs with sigma = base_sigma * 2**k, takes the Sobel
    magnitude normalized to that scale's maximum and contributes with weight
    1 / 2**k, so fine detail dominates.

    Args:
        image: Grayscale or color image array
        scales: Number of scales
        base_sigma: Sigma of the finest scale

    Returns:
        (H, W) float32 energy in [0, 1]
    """
    gray = to_grayscale(image)
    energy = np.zeros_like(gray, dtype=np.float32)
    total_weight = 0.0
    for level in range(max(1, int(scales))):
        sigma = base_sigma * (2 ** level)
        blurred = cv2.GaussianBlur(gray, (0, 0), sigmaX=sigma, sigmaY=sigma,
                                   borderType=cv2.BORDER_REPLICATE)
        gx = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
        gy = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
        magnitude = cv2.magnitude(gx, gy)
        peak = float(magnitude.max())
        weight = 1.0 / (2 ** level)
        if peak > 0:
            energy += magnitude / peak * weight
        total_weight += weight
    energy /= total_weight
    peak = float(energy.max())
    if peak > 0:
        energy /= peak
    return energy
