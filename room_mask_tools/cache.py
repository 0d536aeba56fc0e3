"""
Per-region preprocessing cache.

Entries hold everything the interactive tools derive from an image region:
grayscale, contrast-enhanced and denoised planes, the edge map, the cost
field and its pyramid. An entry becomes visible only once fully built, and
concurrent requests for a key that is still being built wait for that build.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from . import config as settings
from .config import PreprocessConfig
from .core import Roi, as_rgb
from .edges import EdgeMap, build_edge_map, to_grayscale
from .livewire import CostLevel, pyramid_from_cost

logger = logging.getLogger(__name__)


@dataclass
class EntryStats:
    """Usage counters of one cache entry."""

    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    hits: int = 0

    def touch(self) -> None:
        self.last_used = time.time()
        self.hits += 1


@dataclass(frozen=True)
class PreprocessResult:
    """Immutable preprocessing artifacts of one image region."""

    key: str
    roi: Roi
    width: int
    height: int
    grayscale: np.ndarray
    clahe: np.ndarray
    denoised: np.ndarray
    normalized: np.ndarray
    edge_map: EdgeMap
    cost: np.ndarray
    cost_levels: List[CostLevel]
    stats: EntryStats = field(default_factory=EntryStats, compare=False)

    @property
    def origin_x(self) -> int:
        return self.roi.x

    @property
    def origin_y(self) -> int:
        return self.roi.y


def hash_raster_region(raster: np.ndarray, roi: Optional[Roi] = None) -> str:
    """
    Approximate content key of a raster region.

    Samples an 8x8 grid of pixels inside the region and digests them with
    the rectangle. Collisions are tolerated; pass an explicit key where that
    matters.
    """
    raster = np.asarray(raster)
    height, width = raster.shape[:2]
    region = (roi or Roi(0, 0, width, height)).clipped(width, height)
    rows = np.linspace(0, max(region.height - 1, 0), settings.HASH_SAMPLE_GRID).astype(int)
    cols = np.linspace(0, max(region.width - 1, 0), settings.HASH_SAMPLE_GRID).astype(int)
    sample = region.slice(raster)[np.ix_(rows, cols)]
    digest = hashlib.blake2b(np.ascontiguousarray(sample).tobytes(), digest_size=8).hexdigest()
    return f"{region.x}:{region.y}:{region.width}:{region.height}:{digest}"


def _frozen(array: np.ndarray) -> np.ndarray:
    array.flags.writeable = False
    return array


def apply_clahe(gray: np.ndarray, tile_size: int, clip_limit: float) -> np.ndarray:
    """Tile-based contrast limited histogram equalization on a 0-255 plane."""
    height, width = gray.shape
    tile_size = max(4, int(tile_size))
    grid = (max(1, width // tile_size), max(1, height // tile_size))
    clahe = cv2.createCLAHE(clipLimit=max(clip_limit, 0.01), tileGridSize=grid)
    return clahe.apply(np.clip(np.round(gray), 0, 255).astype(np.uint8)).astype(np.float32)


def apply_denoise(plane: np.ndarray, radius: int, sigma: float) -> np.ndarray:
    radius = min(max(int(radius), 0), 4)
    if radius == 0:
        return plane.copy()
    size = 2 * radius + 1
    return cv2.GaussianBlur(plane, (size, size), sigmaX=sigma, borderType=cv2.BORDER_REPLICATE)


def normalize_plane(plane: np.ndarray) -> np.ndarray:
    low, high = float(plane.min()), float(plane.max())
    if high - low <= 1e-5:
        return np.zeros_like(plane, dtype=np.float32)
    return ((plane - low) / (high - low)).astype(np.float32)


def cost_field(edge_map: EdgeMap, normalized: np.ndarray) -> np.ndarray:
    """Traversal cost: high across strong gradients, slightly lower on bright areas."""
    gradient = edge_map.magnitudes / max(edge_map.max_magnitude, 1.0)
    cost = 1.0 + gradient * settings.COST_GRADIENT_GAIN - normalized * settings.COST_INTENSITY_BOOST
    return np.clip(cost, settings.COST_MIN, settings.COST_MAX).astype(np.float64)


def build_preprocess(raster: np.ndarray, roi: Optional[Roi] = None,
                     config: Optional[PreprocessConfig] = None, key: Optional[str] = None) -> PreprocessResult:
    """
    Run the full preprocessing pipeline on a raster region.

    Args:
        raster: Source image (grayscale, RGB or RGBA)
        roi: Region in raster pixels (whole raster if None)
        config: Pipeline parameters
        key: Cache key recorded in the result

    Returns:
        PreprocessResult with read-only arrays
    """
    config = config or PreprocessConfig()
    rgb = as_rgb(raster)
    height, width = rgb.shape[:2]
    region_roi = (roi or Roi(0, 0, width, height)).clipped(width, height)
    region = region_roi.slice(rgb)

    grayscale = to_grayscale(region)
    clahe = apply_clahe(grayscale, config.clahe_tile_size, config.clahe_clip_limit)
    denoised = apply_denoise(clahe, config.denoise_kernel_radius, config.denoise_sigma)
    normalized = normalize_plane(denoised)
    prepped = np.clip(np.round(normalized * 255), 0, 255).astype(np.uint8)
    edge_map = build_edge_map(prepped)
    cost = cost_field(edge_map, normalized)
    levels = pyramid_from_cost(cost, config.pyramid_levels)

    for array in (grayscale, clahe, denoised, normalized, cost, edge_map.magnitudes,
                  edge_map.gradient_x, edge_map.gradient_y):
        _frozen(array)
    for level in levels:
        _frozen(level.data)

    return PreprocessResult(
        key=key or hash_raster_region(raster, region_roi),
        roi=region_roi,
        width=region_roi.width,
        height=region_roi.height,
        grayscale=grayscale,
        clahe=clahe,
        denoised=denoised,
        normalized=normalized,
        edge_map=edge_map,
        cost=cost,
        cost_levels=levels,
    )


class PreprocessCache:
    """Thread-safe LRU cache of PreprocessResult entries."""

    def __init__(self, capacity: int = settings.CACHE_CAPACITY):
        """
        Initialize the cache.

        Args:
            capacity: Maximum number of entries kept; least recently used
                entries are evicted beyond it
        """
        if capacity <= 0:
            raise ValueError("Cache capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[str, PreprocessResult]" = OrderedDict()
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get_or_build(self, raster: np.ndarray, roi: Optional[Roi] = None,
                     cache_key: Optional[str] = None,
                     config: Optional[PreprocessConfig] = None) -> Tuple[PreprocessResult, bool]:
        """
        Return the entry for a region, building it on first use.

        Args:
            raster: Source image
            roi: Region in raster pixels
            cache_key: Explicit key (content hash of the region if None)
            config: Pipeline parameters used when building

        Returns:
            (entry, cache_hit)
        """
        key = cache_key or hash_raster_region(raster, roi)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                entry.stats.touch()
                self._hits += 1
                return entry, True
            pending = self._pending.get(key)
            if pending is None:
                pending = Future()
                self._pending[key] = pending
                owner = True
                self._misses += 1
            else:
                owner = False

        if not owner:
            entry = pending.result()
            with self._lock:
                entry.stats.touch()
                self._hits += 1
            return entry, True

        try:
            entry = build_preprocess(raster, roi, config, key)
        except Exception as exc:
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(exc)
            raise

        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._pending.pop(key, None)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted preprocess entry %s", evicted)
        pending.set_result(entry)
        logger.debug("Built preprocess entry %s (%dx%d)", key, entry.width, entry.height)
        return entry, False

    def get(self, key: str) -> Optional[PreprocessResult]:
        """Return a published entry without building or counting a hit."""
        with self._lock:
            return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        """Entry count, hit and miss counters."""
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "capacity": self.capacity,
            }

    def clear(self) -> None:
        """Drop all entries and reset the counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
