"""
Pointer-driven selection tools: lasso, smart lasso, smart wand and paintbrush.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import config as settings
from .cache import PreprocessCache
from .core import Bounds, EntranceZone, Point, RoomMask, as_rgb, clamp_polygon
from .raster import build_circle_mask, crop_mask
from .refine import apply_circular_brush_to_mask, feather_radius_for
from .segmentation import (LiveWireRequest, SegmentationProvider, SmartWandRequest, call_segmentation,
                           finish_mask, live_wire_path, smart_wand)
from .state import (TOOL_LASSO, TOOL_PAINTBRUSH, TOOL_SMART_LASSO, TOOL_SMART_WAND,
                    SelectionSettings, SelectionStore)

logger = logging.getLogger(__name__)


@dataclass
class PointerEvent:
    """Pointer sample in normalized image space with button and modifier state."""

    point: Point
    button: int = 0
    buttons: int = 1
    pressure: float = 1.0
    alt: bool = False
    ctrl: bool = False
    meta: bool = False
    shift: bool = False
    double_click: bool = False

    @classmethod
    def at(cls, x: float, y: float, **kwargs) -> "PointerEvent":
        return cls(Point(x, y), **kwargs)


class ImmediateExecutor(Executor):
    """Executor running every job on the submitting thread."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future = Future()
        if not future.set_running_or_notify_cancel():
            return future
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


class CancellationToken:
    """
    Monotonic request counter; only the latest request id is current.

    ``lock`` is taken by ``next`` and ``cancel``. Holding it across an id
    check and the store write that depends on it makes the pair atomic.
    """

    def __init__(self):
        self._current = 0
        self.lock = threading.RLock()

    def next(self) -> int:
        """Start a new request and return its id."""
        with self.lock:
            self._current += 1
            return self._current

    def cancel(self) -> None:
        """Invalidate every request issued so far."""
        with self.lock:
            self._current += 1

    def is_current(self, request_id: int) -> bool:
        with self.lock:
            return request_id == self._current

    @property
    def current(self) -> int:
        with self.lock:
            return self._current


@dataclass(eq=False)
class ToolContext:
    """
    Everything a tool needs from its surroundings.

    ``image`` is the (H, W, 3) raster being annotated; ``layers`` optionally
    lists several equally sized rasters the wand may sample. Edge energy is
    computed on first use when not supplied.
    """

    store: SelectionStore
    segmentation: Optional[SegmentationProvider] = None
    image: Optional[np.ndarray] = None
    layers: Optional[List[np.ndarray]] = None
    edge_energy: Optional[np.ndarray] = None
    cache: Optional[PreprocessCache] = None
    executor: Executor = field(default_factory=ImmediateExecutor)
    entrance_zones: List[EntranceZone] = field(default_factory=list)
    snap_fn: Optional[Callable[[Point], Point]] = None

    def __post_init__(self):
        if self.image is not None:
            self.image = as_rgb(self.image)
        self._energy_lock = threading.Lock()

    @property
    def image_size(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the raster, or None without one."""
        if self.image is None:
            return None
        return int(self.image.shape[1]), int(self.image.shape[0])

    def clamp(self, point) -> Point:
        return Point.from_tuple(point).clamped()

    def snap(self, point) -> Point:
        """Apply the caller's snapping function, then clamp."""
        point = self.clamp(point)
        if self.snap_fn is not None:
            point = self.clamp(self.snap_fn(point))
        return point

    def source_layers(self) -> List[np.ndarray]:
        if self.layers:
            return list(self.layers)
        return [self.image] if self.image is not None else []

    def energy(self) -> Optional[np.ndarray]:
        """Full-image edge energy, computed through the provider on first use."""
        if self.image is None:
            return None
        height, width = self.image.shape[:2]
        with self._energy_lock:
            if self.edge_energy is None or np.asarray(self.edge_energy).shape != (height, width):
                self.edge_energy = call_segmentation(
                    self.segmentation, "edge_energy_multi_scale", self.source_layers()[0],
                    settings.EDGE_ENERGY_SCALES, settings.EDGE_ENERGY_BASE_SIGMA,
                )
            return self.edge_energy


def build_freehand_mask(ctx: ToolContext, points: Sequence) -> Optional[RoomMask]:
    """
    Rasterize a closed freehand outline into a filled RoomMask fitted around it.

    Returns:
        RoomMask, or None for fewer than 3 points
    """
    points = clamp_polygon(points)
    if len(points) < 3:
        return None
    tight = Bounds.around(points)
    padding = max(tight.width, tight.height) * 0.12 + 0.015
    bounds = Bounds.around(points, padding)
    width_ratio = bounds.width or 1.0
    height_ratio = bounds.height or 1.0
    scale = settings.FREEHAND_BASE_RESOLUTION / max(width_ratio, height_ratio, 0.02)

    def grid_size(ratio: float) -> int:
        size = int(round(max(ratio, 0.02) * scale))
        return max(settings.FREEHAND_MIN_SIZE, min(settings.FREEHAND_MAX_SIZE, size))

    width, height = grid_size(width_ratio), grid_size(height_ratio)
    local = [((p.x - bounds.min_x) / width_ratio, (p.y - bounds.min_y) / height_ratio) for p in points]
    stroke_radius = max(1.0 / max(width, height), 0.0025)
    boundary = call_segmentation(ctx.segmentation, "rasterize_freehand_path", local, width, height,
                                 stroke_radius, True)
    filled = call_segmentation(ctx.segmentation, "fill_mask_interior", boundary)
    return RoomMask(width, height, bounds, filled)


class RoomTool(ABC):
    """Base class for pointer-driven selection tools."""

    tool_id = ""

    def __init__(self):
        self.token = CancellationToken()

    @abstractmethod
    def on_pointer_down(self, ctx: ToolContext, event: PointerEvent):
        """Handle a button press; may return a Future for scheduled work."""

    @abstractmethod
    def on_pointer_move(self, ctx: ToolContext, event: PointerEvent):
        """Handle pointer motion."""

    @abstractmethod
    def on_pointer_up(self, ctx: ToolContext, event: PointerEvent):
        """Handle a button release."""

    def _current_request(self, request_id: int) -> Callable[[], bool]:
        """Store guard that passes only while ``request_id`` is the latest request."""
        return lambda: self.token.is_current(request_id)

    def on_cancel(self, ctx: ToolContext) -> None:
        """Discard in-flight work and transient state; the committed mask is kept."""
        self.token.cancel()
        self.reset()
        ctx.store.clear_previews()

    def reset(self) -> None:
        """Forget gesture state."""


class LassoTool(RoomTool):
    """Freehand outline committed as a filled, feathered mask on release."""

    tool_id = TOOL_LASSO

    def __init__(self):
        super().__init__()
        self.points: List[Point] = []
        self.drawing = False

    def reset(self) -> None:
        self.points = []
        self.drawing = False

    def _add_point(self, point: Point) -> bool:
        if self.points and self.points[-1].distance_to(point) <= settings.LASSO_MIN_POINT_DISTANCE:
            return False
        self.points.append(point)
        return True

    def on_pointer_down(self, ctx, event):
        self.token.next()
        self.points = [ctx.snap(event.point)]
        self.drawing = True
        ctx.store.preview_polygon(self.points)

    def on_pointer_move(self, ctx, event):
        if not self.drawing:
            return
        if self._add_point(ctx.snap(event.point)):
            ctx.store.preview_polygon(self.points)

    def on_pointer_up(self, ctx, event):
        if not self.drawing:
            return
        self._add_point(ctx.snap(event.point))
        points = self.points
        self.reset()
        mask = build_freehand_mask(ctx, points)
        if mask is None:
            ctx.store.preview_polygon(None)
            return
        selection = ctx.store.get_state().settings
        radius = feather_radius_for(mask.width, mask.height, selection.feather_amount)
        data = call_segmentation(ctx.segmentation, "feather_mask", mask.data, radius)
        ctx.store.commit_mask(RoomMask(mask.width, mask.height, mask.bounds, data))


class SmartLassoTool(RoomTool):
    """
    Anchor-based lasso whose segments follow image edges via live-wire.

    Each press adds an anchor joined to the previous one by a live-wire
    path. Moving the pointer previews the path from the last anchor, and a
    double click or a press-and-release near the first anchor closes the
    outline, which is then rasterized, refined to edges and committed.
    """

    tool_id = TOOL_SMART_LASSO

    def __init__(self):
        super().__init__()
        self.anchors: List[Point] = []
        self.committed_path: List[Point] = []
        self.preview_computations = 0
        self._segment_starts: List[int] = []
        self._last_preview: Optional[Point] = None
        self._closing = False

    def reset(self) -> None:
        self.anchors = []
        self.committed_path = []
        self._segment_starts = []
        self._last_preview = None
        self._closing = False

    def _trace(self, ctx: ToolContext, start: Point, end: Point) -> List[Point]:
        """Live-wire segment from start to end, pinned to both anchors."""
        if ctx.image is None or start == end:
            return [start, end]
        request = LiveWireRequest(ctx.image, start, end, cache_key=ctx.store.get_state().cache_key)
        traced = live_wire_path(request, ctx.cache)
        return [start] + traced.path[1:-1] + [end]

    def _add_path_segment(self, segment: List[Point]) -> None:
        if self.committed_path and segment and segment[0] == self.committed_path[-1]:
            segment = segment[1:]
        self.committed_path.extend(segment)

    def _near_first_anchor(self, point: Point) -> bool:
        return (len(self.anchors) >= 3
                and point.distance_to(self.anchors[0]) <= settings.LIVE_WIRE_CLOSE_DISTANCE)

    def on_pointer_down(self, ctx, event):
        point = ctx.snap(event.point)
        self.token.next()
        self._last_preview = None
        if not self.anchors:
            self.anchors = [point]
            self.committed_path = [point]
            self._segment_starts = [0]
        elif event.double_click or self._near_first_anchor(point):
            self._closing = True
            return
        else:
            start = len(self.committed_path)
            segment = self._trace(ctx, self.anchors[-1], point)
            self._add_path_segment(segment)
            self.anchors.append(point)
            self._segment_starts.append(start)
        ctx.store.preview_polygon(self.committed_path)

    def on_pointer_move(self, ctx, event):
        if not self.anchors or self._closing:
            return
        point = ctx.snap(event.point)
        last = self._last_preview
        if last is not None and max(abs(point.x - last.x), abs(point.y - last.y)) < settings.LIVE_WIRE_MIN_MOVE:
            return
        self._last_preview = point
        request_id = self.token.next()
        return ctx.executor.submit(self._preview_job, ctx, request_id, self.anchors[-1], point)

    def _preview_job(self, ctx: ToolContext, request_id: int, start: Point, end: Point) -> bool:
        """Trace one preview segment and show it unless a newer request superseded it."""
        try:
            segment = self._trace(ctx, start, end)
        except Exception as exc:
            logger.warning("Live-wire preview failed: %s", exc)
            return False
        if not self.token.is_current(request_id):
            logger.debug("Dropping stale live-wire preview %d", request_id)
            return False
        with self.token.lock:
            shown = ctx.store.preview_polygon(self.committed_path + segment[1:],
                                              guard=self._current_request(request_id))
            if shown is None:
                logger.debug("Dropping stale live-wire preview %d", request_id)
                return False
            self.preview_computations += 1
        return True

    def on_pointer_up(self, ctx, event):
        if self._closing or event.double_click:
            self.finish(ctx)

    def undo_last_anchor(self, ctx: ToolContext) -> None:
        """Remove the most recent anchor and the path segment leading to it."""
        if not self.anchors:
            return
        self.token.next()
        self.anchors.pop()
        cut = self._segment_starts.pop()
        self.committed_path = self.committed_path[:cut] if self.anchors else []
        ctx.store.preview_polygon(self.committed_path or None)

    def finish(self, ctx: ToolContext) -> Optional[RoomMask]:
        """
        Close the outline back to the first anchor and commit it.

        Returns:
            The committed mask, or None when fewer than 3 anchors were placed
        """
        self.token.next()
        if len(self.anchors) < 3:
            self.reset()
            ctx.store.preview_polygon(None)
            return None
        self._add_path_segment(self._trace(ctx, self.anchors[-1], self.anchors[0]))
        polygon = list(self.committed_path)
        if len(polygon) > 1 and polygon[-1] == polygon[0]:
            polygon.pop()
        self.reset()

        selection = ctx.store.get_state().settings
        ctx.store.set_busy(settings.BUSY_REFINING)
        try:
            mask = build_freehand_mask(ctx, polygon)
            if mask is not None:
                mask = finish_mask(ctx.segmentation, mask, ctx.energy(), selection, ctx.image_size)
        except Exception:
            ctx.store.clear_previews()
            raise
        if mask is None:
            ctx.store.clear_previews()
            return None
        ctx.store.commit_mask(mask)
        return mask


@dataclass
class WandOutcome:
    mask: RoomMask
    entrance_locked: bool = False
    locked_entrance_id: Optional[str] = None


class SmartWandTool(RoomTool):
    """
    Click-to-select tool growing a region from the clicked color.

    Every click issues a new request; only the latest request's result is
    committed. When detection yields nothing, a circle around the seed is
    committed instead.
    """

    tool_id = TOOL_SMART_WAND

    def __init__(self):
        super().__init__()
        self.pending: Optional[Future] = None

    def reset(self) -> None:
        if self.pending is not None:
            self.pending.cancel()
        self.pending = None

    def on_pointer_down(self, ctx, event):
        seed = ctx.snap(event.point)
        request_id = self.token.next()
        state = ctx.store.get_state()
        ctx.store.set_busy(settings.BUSY_DETECTING)
        future = ctx.executor.submit(self._job, ctx, request_id, seed, state.settings,
                                     state.locked_entrance_id, state.cache_key)
        self.pending = future
        return future

    def on_pointer_move(self, ctx, event):
        pass

    def on_pointer_up(self, ctx, event):
        pass

    def _mask_from_selection(self, ctx: ToolContext, data: np.ndarray, region: Bounds,
                             selection: SelectionSettings) -> Optional[RoomMask]:
        height, width = data.shape
        padding = max(2, int(round(max(width, height) * 0.005)))
        cropped, origin = crop_mask(data, padding)
        if cropped is None:
            return None
        x0, y0 = origin
        crop_h, crop_w = cropped.shape
        bounds = Bounds(
            region.min_x + x0 / width * region.width,
            region.min_y + y0 / height * region.height,
            region.min_x + (x0 + crop_w) / width * region.width,
            region.min_y + (y0 + crop_h) / height * region.height,
        ).clamped()
        mask = RoomMask(crop_w, crop_h, bounds, cropped)
        return finish_mask(ctx.segmentation, mask, ctx.energy(), selection, ctx.image_size)

    def _detect(self, ctx: ToolContext, seed: Point, selection: SelectionSettings,
                locked_entrance_id: Optional[str], cache_key: Optional[str]) -> Optional[WandOutcome]:
        if ctx.image is None:
            return None
        tolerance = selection.wand_lab_tolerance()
        if ctx.entrance_zones:
            request = SmartWandRequest(
                ctx.image, seed, cache_key=cache_key, color_tolerance=tolerance,
                entrance_zones=ctx.entrance_zones, lock_entrance_id=locked_entrance_id,
                snap_strength=selection.snap_strength,
            )
            result = smart_wand(request, ctx.cache)
            if result.debug.get("fallback"):
                return None
            mask = self._mask_from_selection(ctx, result.mask, result.bounds, selection)
            if mask is None:
                return None
            return WandOutcome(mask, result.entrance_locked, result.locked_entrance_id)

        layers = ctx.source_layers()
        height, width = layers[0].shape[:2]
        data = call_segmentation(
            ctx.segmentation, "magic_wand_select", layers, (seed.x * width, seed.y * height),
            tolerance, selection.wand_connectivity, selection.wand_contiguous,
            selection.wand_anti_alias, None, selection.wand_sample_all_layers,
        )
        mask = self._mask_from_selection(ctx, data, Bounds.full(), selection)
        return WandOutcome(mask) if mask is not None else None

    def _job(self, ctx: ToolContext, request_id: int, seed: Point, selection: SelectionSettings,
             locked_entrance_id: Optional[str], cache_key: Optional[str]) -> Optional[WandOutcome]:
        """
        Detect a region and commit it if this is still the latest request.

        Returns:
            The committed outcome, or None when the result was stale
        """
        try:
            outcome = self._detect(ctx, seed, selection, locked_entrance_id, cache_key)
        except Exception as exc:
            logger.warning("Smart wand failed, using fallback circle: %s", exc)
            outcome = None
        if not self.token.is_current(request_id):
            logger.debug("Dropping stale smart wand result %d", request_id)
            return None
        if outcome is None:
            radius = max(settings.FALLBACK_CIRCLE_MIN_RADIUS, selection.brush_radius * 0.75)
            logger.debug("No region detected at %s, committing circle of radius %.3f", seed, radius)
            outcome = WandOutcome(build_circle_mask(seed, radius, settings.FALLBACK_CIRCLE_RESOLUTION))
        with self.token.lock:
            committed = ctx.store.commit_mask(outcome.mask, outcome.entrance_locked, outcome.locked_entrance_id,
                                              guard=self._current_request(request_id))
        if committed is None:
            logger.debug("Dropping smart wand result %d cancelled before commit", request_id)
            return None
        return outcome


def is_erase_event(event: PointerEvent) -> bool:
    """Right button or the alt/ctrl modifiers switch the brush to erasing."""
    return event.button == 2 or event.buttons == 2 or event.alt or event.ctrl


class PaintbrushTool(RoomTool):
    """
    Circular brush painting straight into the committed mask.

    A press clones the committed mask into a working copy; every sample is
    stamped onto that copy and committed so dragging shows live results.
    """

    tool_id = TOOL_PAINTBRUSH

    def __init__(self):
        super().__init__()
        self.working: Optional[RoomMask] = None
        self.mode = "add"
        self.active = False
        self._last: Optional[Point] = None

    def reset(self) -> None:
        self.working = None
        self.active = False
        self._last = None

    def _radius(self, selection: SelectionSettings) -> float:
        return max(0.0025, selection.brush_radius)

    def _stamp(self, selection: SelectionSettings, point: Point, pressure: float) -> None:
        if self.working is None and self.mode == "erase":
            return
        self.working = apply_circular_brush_to_mask(
            self.working, point, self._radius(selection), self.mode, selection.brush_hardness, pressure
        )

    def _commit(self, ctx: ToolContext) -> None:
        # erasing with nothing committed leaves the store without a mask
        if self.working is not None:
            ctx.store.commit_mask(self.working)

    def on_pointer_down(self, ctx, event):
        state = ctx.store.get_state()
        self.token.next()
        self.mode = "erase" if is_erase_event(event) else "add"
        self.working = state.mask.copy() if state.mask is not None else None
        self.active = True
        point = ctx.snap(event.point)
        self._last = point
        self._stamp(state.settings, point, event.pressure)
        self._commit(ctx)

    def on_pointer_move(self, ctx, event):
        if not self.active:
            return
        selection = ctx.store.get_state().settings
        point = ctx.snap(event.point)
        step = max(self._radius(selection) * 0.5, settings.PAINTBRUSH_MIN_STEP)
        last = self._last or point
        steps = max(1, int(np.ceil(last.distance_to(point) / step)))
        for index in range(1, steps + 1):
            t = index / steps
            self._stamp(selection, Point(last.x + (point.x - last.x) * t, last.y + (point.y - last.y) * t),
                        event.pressure)
        self._last = point
        self._commit(ctx)

    def on_pointer_up(self, ctx, event):
        if not self.active:
            return
        if self._last is None or self._last != ctx.snap(event.point):
            self.on_pointer_move(ctx, event)
        self.reset()


def default_tools() -> Dict[str, RoomTool]:
    tools = [LassoTool(), SmartLassoTool(), SmartWandTool(), PaintbrushTool()]
    return {tool.tool_id: tool for tool in tools}


class ToolSession:
    """Routes pointer events to the active tool and swaps tools on request."""

    def __init__(self, context: ToolContext, tools: Optional[Dict[str, RoomTool]] = None):
        """
        Args:
            context: Shared tool context
            tools: Tool implementations by id (one of each built-in tool if None)
        """
        self.context = context
        self.tools = tools if tools is not None else default_tools()
        self.active: Optional[RoomTool] = None

    def activate(self, tool_id: str) -> RoomTool:
        """Cancel the current tool and make ``tool_id`` the active one."""
        if tool_id not in self.tools:
            raise ValueError(f"Unknown tool: {tool_id}")
        if self.active is not None:
            self.active.on_cancel(self.context)
        self.active = self.tools[tool_id]
        self.context.store.set_tool(tool_id)
        logger.debug("Activated tool %s", tool_id)
        return self.active

    def pointer_down(self, event: PointerEvent):
        """Forward a press; returns the future of any work the tool scheduled."""
        if self.active is not None:
            return self.active.on_pointer_down(self.context, event)
        return None

    def pointer_move(self, event: PointerEvent):
        if self.active is not None:
            return self.active.on_pointer_move(self.context, event)
        return None

    def pointer_up(self, event: PointerEvent):
        if self.active is not None:
            return self.active.on_pointer_up(self.context, event)
        return None

    def cancel(self) -> None:
        if self.active is not None:
            self.active.on_cancel(self.context)
