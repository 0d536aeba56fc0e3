"""
Smart wand: perceptual-color region selection and edge-aware region growing.
"""

import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from skimage.color import rgb2lab

from .core import EntranceZone, as_rgb

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 18.0
ANTI_ALIAS_FALLOFF_RATIO = 0.3
DEFERRAL_PROBABILITY = 0.1
MIN_REGION_AREA = 4
MAX_FILL_RATIO = 0.65
MIN_MAX_PIXELS = 512

_OFFSETS_4 = ((1, 0), (-1, 0), (0, 1), (0, -1))
_OFFSETS_8 = _OFFSETS_4 + ((1, 1), (-1, 1), (1, -1), (-1, -1))


@dataclass
class RegionGrowth:
    """Outcome of an edge-aware region grow."""

    mask: np.ndarray
    iterations: int
    accepted: int
    frontier: int
    entrance_locked: bool = False
    locked_entrance_id: Optional[str] = None
    fallback: bool = False


def rgb_to_lab(image: np.ndarray) -> np.ndarray:
    """
    Convert an sRGB image to CIE L*a*b* (D65).

    Args:
        image: Grayscale, RGB or RGBA uint8 array

    Returns:
        (H, W, 3) float64 Lab array
    """
    return rgb2lab(as_rgb(image))


def delta_e(lab: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Euclidean (CIE76) distance of every Lab pixel to a reference color."""
    return np.sqrt(np.sum((lab - np.asarray(reference)) ** 2, axis=-1))


def _structure(connectivity: int) -> np.ndarray:
    if connectivity not in (4, 8):
        raise ValueError(f"Connectivity must be 4 or 8, got {connectivity}")
    return ndimage.generate_binary_structure(2, 1 if connectivity == 4 else 2)


def _seed_index(seed: Tuple[float, float], width: int, height: int) -> Tuple[int, int]:
    x = int(min(max(np.floor(seed[0]), 0), width - 1))
    y = int(min(max(np.floor(seed[1]), 0), height - 1))
    return x, y


def color_distance(layers: Union[np.ndarray, Sequence[np.ndarray]], seed: Tuple[float, float],
                   sample_all_layers: bool = False) -> np.ndarray:
    """
    Perceptual distance of every pixel to the seed pixel's color.

    Args:
        layers: One image or a list of equally sized images
        seed: (x, y) pixel position of the seed
        sample_all_layers: Average the distances over every layer instead of
            using only the first one

    Returns:
        (H, W) float distance field
    """
    if isinstance(layers, np.ndarray):
        layers = [layers]
    if not layers:
        raise ValueError("At least one layer is required")
    used = layers if sample_all_layers else layers[:1]
    height, width = np.asarray(used[0]).shape[:2]
    sx, sy = _seed_index(seed, width, height)
    total = np.zeros((height, width), dtype=np.float64)
    for layer in used:
        if np.asarray(layer).shape[:2] != (height, width):
            raise ValueError("All layers must share the same size")
        lab = rgb_to_lab(layer)
        total += delta_e(lab, lab[sy, sx])
    return total / len(used)


def magic_wand_select(layers: Union[np.ndarray, Sequence[np.ndarray]], seed: Tuple[float, float],
                      tolerance: float = DEFAULT_TOLERANCE, connectivity: int = 8,
                      contiguous: bool = True, anti_alias: bool = False,
                      anti_alias_falloff: Optional[float] = None,
                      sample_all_layers: bool = False) -> np.ndarray:
    """
    Select pixels whose Lab color is close to the seed's.

    Args:
        layers: One image or a list of equally sized images
        seed: (x, y) pixel position of the seed
        tolerance: Maximum Lab distance for full coverage
        connectivity: 4 or 8 neighbour flood in contiguous mode
        contiguous: Flood from the seed; otherwise threshold the whole image
        anti_alias: Give pixels just beyond tolerance partial coverage
        anti_alias_falloff: Width of the partial-coverage ring in Lab units
            (defaults to 30% of the tolerance)
        sample_all_layers: Average distances over every layer

    Returns:
        (H, W) uint8 coverage 0-255
    """
    distance = color_distance(layers, seed, sample_all_layers)
    height, width = distance.shape
    structure = _structure(connectivity)
    within = distance <= tolerance

    if contiguous:
        labels, _ = ndimage.label(within, structure=structure)
        sx, sy = _seed_index(seed, width, height)
        core = labels == labels[sy, sx]
    else:
        core = within

    coverage = np.where(core, 255.0, 0.0)
    if anti_alias:
        falloff = anti_alias_falloff if anti_alias_falloff is not None else tolerance * ANTI_ALIAS_FALLOFF_RATIO
        if falloff > 0:
            ring = (distance > tolerance) & (distance < tolerance + falloff)
            if contiguous:
                ring &= ndimage.binary_dilation(core, structure=structure)
            partial = 255.0 * (1.0 - (distance - tolerance) / falloff)
            coverage = np.where(ring, np.maximum(coverage, partial), coverage)
    return np.clip(np.round(coverage), 0, 255).astype(np.uint8)


def _zone_lookup(zones: List[EntranceZone], height: int, width: int,
                 origin: Tuple[int, int]) -> np.ndarray:
    """Index of the first zone covering each pixel, -1 where none does."""
    lookup = np.full((height, width), -1, dtype=np.int32)
    if not zones:
        return lookup
    ys, xs = np.mgrid[0:height, 0:width]
    gx = xs + origin[0]
    gy = ys + origin[1]
    for index in reversed(range(len(zones))):
        zone = zones[index]
        inside = (gx - zone.center.x) ** 2 + (gy - zone.center.y) ** 2 <= zone.radius ** 2
        lookup[inside] = index
    return lookup


def grow_region(image: np.ndarray, seed: Tuple[float, float], edge_magnitudes: np.ndarray,
                tolerance: float = DEFAULT_TOLERANCE, gradient_threshold: Optional[float] = None,
                max_pixels: Optional[int] = None, entrance_zones: Optional[List[EntranceZone]] = None,
                lock_entrance_id: Optional[str] = None, origin: Tuple[int, int] = (0, 0),
                connectivity: int = 4, rng_seed: int = 1,
                min_area: int = MIN_REGION_AREA) -> RegionGrowth:
    """
    Grow a region from a seed, stopping at strong edges and color changes.

    Pixels whose edge magnitude exceeds ``gradient_threshold`` are a hard stop
    unless they lie inside an entrance zone (or are the seed). Accepting a
    pixel inside a zone locks the selection onto that zone. Each neighbour is
    deferred to a secondary queue with 10% probability using a seeded RNG, so
    growth is reproducible without favouring an axis.

    Args:
        image: (H, W, 3) RGB region the seed lies in
        seed: (x, y) seed position in local pixels
        edge_magnitudes: (H, W) edge strength of the same region
        tolerance: Maximum Lab distance from the seed color
        gradient_threshold: Edge stop level (defaults to the field maximum)
        max_pixels: Cap on accepted pixels (defaults to 65% of the area)
        entrance_zones: Zones in source-raster pixel coordinates
        lock_entrance_id: Only this zone may be crossed when set
        origin: Offset of the region inside the source raster
        connectivity: 4 or 8 neighbour growth
        rng_seed: Seed for the deferral RNG
        min_area: Results smaller than this collapse to the seed pixel

    Returns:
        RegionGrowth with a 0/255 mask and growth counters
    """
    edge_magnitudes = np.asarray(edge_magnitudes, dtype=np.float64)
    height, width = edge_magnitudes.shape
    if np.asarray(image).shape[:2] != (height, width):
        raise ValueError("Image and edge field must share the same size")
    if gradient_threshold is None:
        gradient_threshold = max(float(edge_magnitudes.max()), 1.0)
    if max_pixels is None:
        max_pixels = max(MIN_MAX_PIXELS, int(width * height * MAX_FILL_RATIO))

    zones = list(entrance_zones or [])
    if lock_entrance_id is not None:
        zones = [zone for zone in zones if zone.id == lock_entrance_id]
    zone_index = _zone_lookup(zones, height, width, origin)

    sx, sy = _seed_index(seed, width, height)
    distance = color_distance(image, (sx, sy))
    passable = (edge_magnitudes <= gradient_threshold) | (zone_index >= 0)
    passable[sy, sx] = True
    acceptable = passable & (distance <= tolerance)

    offsets = _OFFSETS_8 if connectivity == 8 else _OFFSETS_4
    rng = random.Random(rng_seed)
    visited = np.zeros((height, width), dtype=bool)
    mask = np.zeros((height, width), dtype=np.uint8)
    queue = deque([(sx, sy)])
    deferred = deque()
    iterations = 0
    accepted = 0
    locked_id = None

    while accepted < max_pixels:
        if not queue:
            if not deferred:
                break
            queue, deferred = deferred, queue
        x, y = queue.popleft()
        if visited[y, x]:
            continue
        visited[y, x] = True
        iterations += 1
        if not acceptable[y, x]:
            continue
        mask[y, x] = 255
        accepted += 1
        if locked_id is None and zone_index[y, x] >= 0:
            locked_id = zones[zone_index[y, x]].id
        for dx, dy in offsets:
            nx, ny = x + dx, y + dy
            if nx < 0 or ny < 0 or nx >= width or ny >= height or visited[ny, nx]:
                continue
            if rng.random() < DEFERRAL_PROBABILITY:
                deferred.append((nx, ny))
            else:
                queue.append((nx, ny))

    frontier = len(queue) + len(deferred)
    if accepted < min_area:
        logger.debug("Region of %d px below minimum %d, keeping seed pixel", accepted, min_area)
        mask[:] = 0
        mask[sy, sx] = 255
        return RegionGrowth(mask, iterations, 1, frontier, False, None, fallback=True)

    return RegionGrowth(mask, iterations, accepted, frontier, locked_id is not None, locked_id)
