"""
Segmentation provider seam and region pipelines.

Tools never call the algorithms directly: they go through a
SegmentationProvider so a synchronous implementation and one that offloads
work to an executor can be swapped freely. The region pipelines (smart wand,
live-wire, vectorize-and-snap) run on top of the preprocessing cache.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import config as settings
from .cache import PreprocessCache, PreprocessResult, build_preprocess
from .config import PreprocessConfig
from .core import Bounds, EntranceZone, Point, Roi, RoomMask, as_rgb, clamp01
from .edges import edge_energy_multi_scale, smooth_polygon, snap_polygon_to_edges
from .livewire import trace_live_wire
from .raster import composite_max, fill_mask_interior, rasterize_freehand_path
from .refine import (band_size_for, dilate_mask, dilation_radius_for, feather_mask,
                     feather_radius_for, refine_boundary_to_edges)
from .vector import extract_polygon
from .wand import grow_region, magic_wand_select

logger = logging.getLogger(__name__)


class SegmentationProvider(ABC):
    """Capability object exposing the mask operations the tools need."""

    @abstractmethod
    def magic_wand_select(self, layers, seed: Tuple[float, float], tolerance: float = 18.0,
                          connectivity: int = 8, contiguous: bool = True, anti_alias: bool = False,
                          anti_alias_falloff: Optional[float] = None,
                          sample_all_layers: bool = False) -> np.ndarray:
        """Coverage of pixels perceptually close to the seed color."""

    @abstractmethod
    def refine_boundary_to_edges(self, initial: np.ndarray, energy: np.ndarray, band_size: int,
                                 edge_threshold: float, connectivity: int = 8) -> np.ndarray:
        """Grow a rough mask out to nearby strong edges."""

    @abstractmethod
    def edge_energy_multi_scale(self, image: np.ndarray, scales: int = 3,
                                base_sigma: float = 0.8) -> np.ndarray:
        """Normalized gradient energy over several scales."""

    @abstractmethod
    def rasterize_freehand_path(self, points: Sequence, width: int, height: int,
                                stroke_radius: float = 0.0025, close_path: bool = True) -> np.ndarray:
        """Thick polyline through grid-normalized points."""

    @abstractmethod
    def fill_mask_interior(self, mask: np.ndarray) -> np.ndarray:
        """Fill enclosed holes."""

    @abstractmethod
    def dilate_mask(self, mask: np.ndarray, radius: int) -> np.ndarray:
        """Disc dilation by a pixel radius."""

    @abstractmethod
    def feather_mask(self, mask: np.ndarray, radius: float) -> np.ndarray:
        """Gaussian edge softening."""

    @abstractmethod
    def composite_max(self, masks: List[np.ndarray]) -> np.ndarray:
        """Pixelwise maximum of several masks."""


class LocalSegmentation(SegmentationProvider):
    """Runs every operation synchronously on the calling thread."""

    def magic_wand_select(self, layers, seed, tolerance=18.0, connectivity=8, contiguous=True,
                          anti_alias=False, anti_alias_falloff=None, sample_all_layers=False):
        return magic_wand_select(layers, seed, tolerance, connectivity, contiguous, anti_alias,
                                 anti_alias_falloff, sample_all_layers)

    def refine_boundary_to_edges(self, initial, energy, band_size, edge_threshold, connectivity=8):
        return refine_boundary_to_edges(initial, energy, band_size, edge_threshold, connectivity)

    def edge_energy_multi_scale(self, image, scales=3, base_sigma=0.8):
        return edge_energy_multi_scale(image, scales, base_sigma)

    def rasterize_freehand_path(self, points, width, height, stroke_radius=0.0025, close_path=True):
        return rasterize_freehand_path(points, width, height, stroke_radius, close_path)

    def fill_mask_interior(self, mask):
        return fill_mask_interior(mask)

    def dilate_mask(self, mask, radius):
        return dilate_mask(mask, radius)

    def feather_mask(self, mask, radius):
        return feather_mask(mask, radius)

    def composite_max(self, masks):
        return composite_max(masks)


class OffloadedSegmentation(SegmentationProvider):
    """
    Runs every operation on an executor.

    The blocking methods keep the provider interface; ``submit`` exposes the
    future for callers that want to stay responsive while work runs.
    """

    def __init__(self, executor: Executor, delegate: Optional[SegmentationProvider] = None):
        """
        Args:
            executor: Executor the work is submitted to
            delegate: Provider doing the actual work (local if None)
        """
        self.executor = executor
        self.delegate = delegate or LocalSegmentation()

    def submit(self, operation: str, *args, **kwargs) -> Future:
        """Schedule one provider operation and return its future."""
        method = getattr(self.delegate, operation, None)
        if method is None or operation.startswith("_"):
            raise ValueError(f"Unknown segmentation operation: {operation}")
        return self.executor.submit(method, *args, **kwargs)

    def _run(self, operation: str, *args, **kwargs):
        return self.submit(operation, *args, **kwargs).result()

    def magic_wand_select(self, layers, seed, tolerance=18.0, connectivity=8, contiguous=True,
                          anti_alias=False, anti_alias_falloff=None, sample_all_layers=False):
        return self._run("magic_wand_select", layers, seed, tolerance, connectivity, contiguous,
                         anti_alias, anti_alias_falloff, sample_all_layers)

    def refine_boundary_to_edges(self, initial, energy, band_size, edge_threshold, connectivity=8):
        return self._run("refine_boundary_to_edges", initial, energy, band_size, edge_threshold, connectivity)

    def edge_energy_multi_scale(self, image, scales=3, base_sigma=0.8):
        return self._run("edge_energy_multi_scale", image, scales, base_sigma)

    def rasterize_freehand_path(self, points, width, height, stroke_radius=0.0025, close_path=True):
        return self._run("rasterize_freehand_path", points, width, height, stroke_radius, close_path)

    def fill_mask_interior(self, mask):
        return self._run("fill_mask_interior", mask)

    def dilate_mask(self, mask, radius):
        return self._run("dilate_mask", mask, radius)

    def feather_mask(self, mask, radius):
        return self._run("feather_mask", mask, radius)

    def composite_max(self, masks):
        return self._run("composite_max", masks)


_LOCAL = LocalSegmentation()


def call_segmentation(provider: Optional[SegmentationProvider], operation: str, *args, **kwargs):
    """Call an operation on ``provider``, or on the local implementation when it is None."""
    target = provider if provider is not None else _LOCAL
    return getattr(target, operation)(*args, **kwargs)


# ============================================================================
# Mask finishing shared by the tools
# ============================================================================

def sample_energy_for_mask(mask: RoomMask, energy: np.ndarray) -> np.ndarray:
    """
    Bilinearly resample a full-image energy field onto a mask's grid.

    Args:
        mask: Mask whose bounds select the part of the image to sample
        energy: (H, W) energy of the whole image

    Returns:
        (mask.height, mask.width) float32 energy
    """
    energy = np.asarray(energy, dtype=np.float32)
    height, width = energy.shape
    bounds = mask.bounds
    span_x = bounds.width or 1.0
    span_y = bounds.height or 1.0
    u = bounds.min_x + (np.arange(mask.width) + 0.5) / mask.width * span_x
    v = bounds.min_y + (np.arange(mask.height) + 0.5) / mask.height * span_y
    sx = np.clip(u, 0, 1) * (width - 1)
    sy = np.clip(v, 0, 1) * (height - 1)
    x0 = np.floor(sx).astype(int)
    y0 = np.floor(sy).astype(int)
    x1 = np.minimum(x0 + 1, width - 1)
    y1 = np.minimum(y0 + 1, height - 1)
    wx = (sx - x0)[None, :]
    wy = (sy - y0)[:, None]
    top = energy[np.ix_(y0, x0)] * (1 - wx) + energy[np.ix_(y0, x1)] * wx
    bottom = energy[np.ix_(y1, x0)] * (1 - wx) + energy[np.ix_(y1, x1)] * wx
    return (top * (1 - wy) + bottom * wy).astype(np.float32)


def finish_mask(provider: Optional[SegmentationProvider], mask: RoomMask, energy: Optional[np.ndarray],
                selection, image_size: Optional[Tuple[int, int]] = None) -> RoomMask:
    """
    Refine a freshly built mask to edges, feather it and optionally dilate it.

    Args:
        provider: Segmentation provider (local if None)
        mask: Rough mask
        energy: Full-image edge energy, or None to skip refinement
        selection: SelectionSettings driving stickiness, band, feather and dilation
        image_size: (width, height) of the source image, used to size the
            5 px dilation; the mask's own size is used when None

    Returns:
        New RoomMask
    """
    data = mask.data
    if energy is not None:
        edge_threshold = clamp01(0.2 + selection.smart_stickiness * 0.5)
        band = band_size_for(mask.width, mask.height, selection.edge_band_width)
        sampled = sample_energy_for_mask(mask, energy)
        data = call_segmentation(provider, "refine_boundary_to_edges", data, sampled, band,
                                 edge_threshold, selection.wand_connectivity)
    feather = feather_radius_for(mask.width, mask.height, selection.feather_amount)
    data = call_segmentation(provider, "feather_mask", data, feather)
    if selection.dilate_by_5px:
        image_width, image_height = image_size or (mask.width, mask.height)
        radius = dilation_radius_for(image_width, image_height, mask.width, mask.height)
        if radius > 0:
            data = call_segmentation(provider, "dilate_mask", data, radius)
    return RoomMask(mask.width, mask.height, mask.bounds, data)


# ============================================================================
# Region pipelines
# ============================================================================

def _preprocess(raster: np.ndarray, roi: Optional[Roi], cache_key: Optional[str],
                config: Optional[PreprocessConfig],
                cache: Optional[PreprocessCache]) -> Tuple[PreprocessResult, bool]:
    if cache is None:
        return build_preprocess(raster, roi, config, cache_key), False
    return cache.get_or_build(raster, roi, cache_key, config)


def to_local_pixel(point: Point, entry: PreprocessResult, raster_width: int,
                   raster_height: int) -> Tuple[float, float]:
    """Normalized image point to pixel coordinates inside the entry's region."""
    x = clamp01(point.x) * raster_width - entry.origin_x
    y = clamp01(point.y) * raster_height - entry.origin_y
    return (min(max(x, 0.0), entry.width - 1), min(max(y, 0.0), entry.height - 1))


def to_global_point(x: float, y: float, entry: PreprocessResult, raster_width: int,
                    raster_height: int) -> Point:
    """Region pixel coordinates to a normalized image point."""
    return Point(clamp01((x + entry.origin_x) / raster_width),
                 clamp01((y + entry.origin_y) / raster_height))


def _polygon_to_global(polygon: List[Point], entry: PreprocessResult, raster_width: int,
                       raster_height: int) -> List[Point]:
    return [to_global_point(p.x * entry.width, p.y * entry.height, entry, raster_width, raster_height)
            for p in polygon]


@dataclass
class VectorizeRequest:
    raster: np.ndarray
    mask: np.ndarray
    roi: Optional[Roi] = None
    cache_key: Optional[str] = None
    config: Optional[PreprocessConfig] = None
    smoothing_iterations: int = 1
    snap_search_radius: Optional[float] = None
    snap_strength: float = 1.0


@dataclass
class VectorizeResult:
    polygon: List[Point]
    snapped_polygon: List[Point]
    debug: Dict[str, Any] = field(default_factory=dict)


def vectorize_and_snap(request: VectorizeRequest,
                       cache: Optional[PreprocessCache] = None) -> VectorizeResult:
    """
    Trace a region mask, smooth the outline and snap it to image edges.

    Args:
        request: Raster, region-local mask and options
        cache: Preprocessing cache (results are built uncached if None)

    Returns:
        VectorizeResult with smoothed and snapped polygons in image space
    """
    raster = as_rgb(request.raster)
    raster_height, raster_width = raster.shape[:2]
    entry, cache_hit = _preprocess(raster, request.roi, request.cache_key, request.config, cache)
    if np.asarray(request.mask).shape != (entry.height, entry.width):
        raise ValueError(
            f"Mask shape {np.asarray(request.mask).shape} does not match region {entry.height}x{entry.width}"
        )
    raw = extract_polygon(request.mask)
    iterations = max(0, int(request.smoothing_iterations))
    smoothed = smooth_polygon(raw, iterations) if iterations > 0 else raw
    snapped = snap_polygon_to_edges(smoothed, entry.edge_map, entry.width, entry.height,
                                    request.snap_search_radius, strength=request.snap_strength)
    return VectorizeResult(
        polygon=_polygon_to_global(smoothed, entry, raster_width, raster_height),
        snapped_polygon=_polygon_to_global(snapped, entry, raster_width, raster_height),
        debug={
            "cache_hit": cache_hit,
            "raw_polygon": _polygon_to_global(raw, entry, raster_width, raster_height),
            "smooth_iterations": iterations,
        },
    )


@dataclass
class LiveWireRequest:
    raster: np.ndarray
    start: Point
    end: Point
    roi: Optional[Roi] = None
    cache_key: Optional[str] = None
    config: Optional[PreprocessConfig] = None
    coarse_margin: int = 3
    allow_diagonals: bool = True


@dataclass
class LiveWirePath:
    path: List[Point]
    cost: float
    debug: Dict[str, Any] = field(default_factory=dict)


def live_wire_path(request: LiveWireRequest, cache: Optional[PreprocessCache] = None) -> LiveWirePath:
    """
    Live-wire path between two normalized points over the region's cost pyramid.

    Path points are pixel centers in normalized image space; the first and
    last equal the centers of the pixels containing start and end.
    """
    raster = as_rgb(request.raster)
    raster_height, raster_width = raster.shape[:2]
    entry, cache_hit = _preprocess(raster, request.roi, request.cache_key, request.config, cache)
    start = to_local_pixel(Point.from_tuple(request.start), entry, raster_width, raster_height)
    end = to_local_pixel(Point.from_tuple(request.end), entry, raster_width, raster_height)
    traced = trace_live_wire(entry.cost_levels, start, end, request.allow_diagonals, request.coarse_margin)
    path = [to_global_point(x + 0.5, y + 0.5, entry, raster_width, raster_height) for x, y in traced.path]
    return LiveWirePath(
        path=path,
        cost=traced.cost,
        debug={
            "cache_hit": cache_hit,
            "levels_visited": traced.levels_visited,
            "cells_searched": traced.cells_searched,
            "bounds": traced.bounds,
            "fallback": traced.fallback,
        },
    )


@dataclass
class SmartWandRequest:
    raster: np.ndarray
    seed: Point
    roi: Optional[Roi] = None
    cache_key: Optional[str] = None
    config: Optional[PreprocessConfig] = None
    color_tolerance: float = 18.0
    gradient_threshold: Optional[float] = None
    max_pixels: Optional[int] = None
    entrance_zones: Sequence[EntranceZone] = ()
    lock_entrance_id: Optional[str] = None
    rng_seed: int = 1
    snap_search_radius: float = settings.WAND_SNAP_SEARCH_RADIUS
    snap_strength: float = 1.0


@dataclass
class SmartWandResult:
    polygon: List[Point]
    mask: np.ndarray
    bounds: Bounds
    entrance_locked: bool
    locked_entrance_id: Optional[str]
    debug: Dict[str, Any] = field(default_factory=dict)

    def to_room_mask(self) -> RoomMask:
        """The grown region as a RoomMask over its image-space bounds."""
        height, width = self.mask.shape
        return RoomMask(width, height, self.bounds, self.mask.copy())


def _entrance_near_polygon(polygon: List[Point], zones: Sequence[EntranceZone], raster_width: int,
                           raster_height: int, lock_id: Optional[str]) -> Optional[str]:
    """First zone within 1.5x its radius of any snapped vertex."""
    scale = max(raster_width, raster_height)
    for zone in zones:
        if lock_id is not None and zone.id != lock_id:
            continue
        cx = zone.center.x / raster_width
        cy = zone.center.y / raster_height
        reach = zone.radius / scale * settings.WAND_ENTRANCE_GRACE
        for point in polygon:
            if np.hypot(point.x - cx, point.y - cy) <= reach:
                return zone.id
    return None


def smart_wand(request: SmartWandRequest, cache: Optional[PreprocessCache] = None) -> SmartWandResult:
    """
    Grow a region from a seed, trace it and snap the outline to edges.

    Args:
        request: Raster, normalized seed and growth options
        cache: Preprocessing cache (results are built uncached if None)

    Returns:
        SmartWandResult with the snapped polygon in image space, the region
        mask and the entrance lock status
    """
    raster = as_rgb(request.raster)
    raster_height, raster_width = raster.shape[:2]
    entry, cache_hit = _preprocess(raster, request.roi, request.cache_key, request.config, cache)
    seed = to_local_pixel(Point.from_tuple(request.seed), entry, raster_width, raster_height)
    zones = list(request.entrance_zones)
    growth = grow_region(
        entry.roi.slice(raster),
        seed,
        entry.edge_map.magnitudes,
        tolerance=request.color_tolerance,
        gradient_threshold=request.gradient_threshold,
        max_pixels=request.max_pixels,
        entrance_zones=zones,
        lock_entrance_id=request.lock_entrance_id,
        origin=(entry.origin_x, entry.origin_y),
        rng_seed=request.rng_seed,
    )
    polygon_local = extract_polygon(growth.mask)
    snapped_local = snap_polygon_to_edges(polygon_local, entry.edge_map, entry.width, entry.height,
                                          request.snap_search_radius, strength=request.snap_strength)
    snapped = _polygon_to_global(snapped_local, entry, raster_width, raster_height)

    locked, locked_id = growth.entrance_locked, growth.locked_entrance_id
    if not locked and zones:
        locked_id = _entrance_near_polygon(snapped, zones, raster_width, raster_height,
                                           request.lock_entrance_id)
        locked = locked_id is not None
    if locked:
        logger.debug("Smart wand locked onto entrance %s", locked_id)

    bounds = Bounds(
        entry.origin_x / raster_width,
        entry.origin_y / raster_height,
        (entry.origin_x + entry.width) / raster_width,
        (entry.origin_y + entry.height) / raster_height,
    ).clamped()
    return SmartWandResult(
        polygon=snapped,
        mask=growth.mask,
        bounds=bounds,
        entrance_locked=locked,
        locked_entrance_id=locked_id,
        debug={
            "cache_hit": cache_hit,
            "iterations": growth.iterations,
            "accepted": growth.accepted,
            "frontier": growth.frontier,
            "rng_seed": request.rng_seed,
            "fallback": growth.fallback,
        },
    )
