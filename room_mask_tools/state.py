"""
Selection state and its per-session store.

State objects are immutable; every change goes through a pure transition
function and the store swaps in the new state and notifies subscribers.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, Tuple

from .config import SMART_STICKINESS
from .core import Point, RoomMask, clamp_polygon
from .raster import room_mask_from_polygon
from .refine import apply_circular_brush_to_mask
from .vector import GapMarker, compute_gap_markers

logger = logging.getLogger(__name__)

TOOL_LASSO = "lasso"
TOOL_SMART_LASSO = "smart_lasso"
TOOL_SMART_WAND = "smart_wand"
TOOL_PAINTBRUSH = "paintbrush"
TOOLS = (TOOL_LASSO, TOOL_SMART_LASSO, TOOL_SMART_WAND, TOOL_PAINTBRUSH)

POLYGON_MASK_RESOLUTION = 512

Listener = Callable[["SelectionState"], None]


def _clamp(value: float, low: float, high: float) -> float:
    return float(min(max(value, low), high))


@dataclass(frozen=True)
class SelectionSettings:
    """User tunables shared by the tools."""

    brush_radius: float = 0.08
    brush_hardness: float = 1.0
    wand_tolerance: float = 0.15
    wand_connectivity: int = 8
    wand_contiguous: bool = True
    wand_anti_alias: bool = True
    wand_sample_all_layers: bool = False
    snap_strength: float = 0.65
    smart_stickiness: float = SMART_STICKINESS
    feather_amount: float = 0.015
    edge_band_width: float = 0.02
    dilate_by_5px: bool = False

    def clamped(self) -> "SelectionSettings":
        """Return a copy with every value forced into its valid range."""
        connectivity = 4 if self.wand_connectivity == 4 else 8
        return replace(
            self,
            brush_radius=_clamp(self.brush_radius, 0.01, 0.5),
            brush_hardness=_clamp(self.brush_hardness, 0.0, 1.0),
            wand_tolerance=_clamp(self.wand_tolerance, 0.0, 1.0),
            wand_connectivity=connectivity,
            snap_strength=_clamp(self.snap_strength, 0.0, 1.0),
            smart_stickiness=_clamp(self.smart_stickiness, 0.0, 1.0),
            feather_amount=_clamp(self.feather_amount, 0.0, 0.25),
            edge_band_width=_clamp(self.edge_band_width, 0.005, 0.25),
        )

    def wand_lab_tolerance(self) -> float:
        """Map the 0-1 tolerance slider to a Lab distance."""
        return max(4.0, round(12 + self.wand_tolerance * 48))


@dataclass(frozen=True)
class SelectionState:
    """Snapshot of everything the selection UI renders."""

    tool: Optional[str] = None
    mask: Optional[RoomMask] = None
    preview_mask: Optional[RoomMask] = None
    preview_polygon: Optional[Tuple[Point, ...]] = None
    busy_message: Optional[str] = None
    settings: SelectionSettings = field(default_factory=SelectionSettings)
    entrance_locked: bool = False
    locked_entrance_id: Optional[str] = None
    cache_key: Optional[str] = None
    gap_markers: Tuple[GapMarker, ...] = ()
    version: int = 0


def _bump(state: SelectionState, **changes) -> SelectionState:
    return replace(state, version=state.version + 1, **changes)


def with_tool(state: SelectionState, tool: Optional[str]) -> SelectionState:
    if tool is not None and tool not in TOOLS:
        raise ValueError(f"Unknown tool: {tool}")
    return _bump(state, tool=tool, preview_mask=None, preview_polygon=None, busy_message=None)


def with_settings(state: SelectionState, **changes) -> SelectionState:
    settings = replace(state.settings, **changes).clamped()
    return _bump(state, settings=settings)


def with_busy(state: SelectionState, message: Optional[str]) -> SelectionState:
    return _bump(state, busy_message=message)


def with_preview_polygon(state: SelectionState, polygon: Optional[Sequence]) -> SelectionState:
    preview = tuple(clamp_polygon(polygon)) if polygon is not None else None
    return _bump(state, preview_polygon=preview)


def with_preview_mask(state: SelectionState, mask: Optional[RoomMask]) -> SelectionState:
    return _bump(state, preview_mask=mask.copy() if mask is not None else None)


def with_committed_mask(state: SelectionState, mask: Optional[RoomMask]) -> SelectionState:
    """Replace the committed mask with a private copy and clear previews and busy status."""
    committed = mask.copy() if mask is not None else None
    return _bump(
        state,
        mask=committed,
        preview_mask=None,
        preview_polygon=None,
        busy_message=None,
        gap_markers=tuple(compute_gap_markers(committed)),
    )


def without_previews(state: SelectionState) -> SelectionState:
    """Drop transient preview and busy state; the committed mask is untouched."""
    return _bump(state, preview_mask=None, preview_polygon=None, busy_message=None)


def with_entrance_lock(state: SelectionState, locked: bool,
                       entrance_id: Optional[str] = None) -> SelectionState:
    return _bump(state, entrance_locked=locked, locked_entrance_id=entrance_id if locked else None)


def with_cache_key(state: SelectionState, cache_key: Optional[str]) -> SelectionState:
    return _bump(state, cache_key=cache_key)


def cleared(state: SelectionState) -> SelectionState:
    """Fresh state that keeps the active tool and settings."""
    return SelectionState(tool=state.tool, settings=state.settings, version=state.version + 1)


class SelectionStore:
    """Owns one SelectionState and notifies subscribers of every change."""

    def __init__(self, initial: Optional[SelectionState] = None):
        self._state = initial or SelectionState()
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    def get_state(self) -> SelectionState:
        with self._lock:
            return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener; it is called at once with the current state.

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)
            state = self._state
        listener(state)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, transition: Callable[[SelectionState], SelectionState],
               guard: Optional[Callable[[], bool]] = None) -> Optional[SelectionState]:
        with self._lock:
            if guard is not None and not guard():
                return None
            self._state = transition(self._state)
            state = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            listener(state)
        return state

    def set_tool(self, tool: Optional[str]) -> SelectionState:
        return self._apply(lambda s: with_tool(s, tool))

    def update_settings(self, **changes) -> SelectionState:
        return self._apply(lambda s: with_settings(s, **changes))

    def set_busy(self, message: Optional[str]) -> SelectionState:
        return self._apply(lambda s: with_busy(s, message))

    def preview_polygon(self, polygon: Optional[Sequence],
                        guard: Optional[Callable[[], bool]] = None) -> Optional[SelectionState]:
        """Show a preview outline; returns None without any change when ``guard`` fails."""
        return self._apply(lambda s: with_preview_polygon(s, polygon), guard)

    def preview_mask(self, mask: Optional[RoomMask]) -> SelectionState:
        return self._apply(lambda s: with_preview_mask(s, mask))

    def commit_mask(self, mask: Optional[RoomMask], entrance_locked: Optional[bool] = None,
                    entrance_id: Optional[str] = None,
                    guard: Optional[Callable[[], bool]] = None) -> Optional[SelectionState]:
        """
        Atomically replace the committed mask with a copy of ``mask``.

        Args:
            mask: Mask to commit (None clears the selection)
            entrance_locked: New entrance lock status, or None to keep the current one
            entrance_id: Id of the locked entrance
            guard: Checked under the store lock; when it returns False nothing changes

        Returns:
            The new state, or None when the guard rejected the commit
        """
        logger.debug("Committing mask %r", mask)

        def transition(state: SelectionState) -> SelectionState:
            state = with_committed_mask(state, mask)
            if entrance_locked is not None:
                state = with_entrance_lock(state, entrance_locked, entrance_id)
            return state

        return self._apply(transition, guard)

    def clear_previews(self) -> SelectionState:
        return self._apply(without_previews)

    def commit_polygon(self, polygon: Sequence,
                       resolution: int = POLYGON_MASK_RESOLUTION) -> SelectionState:
        """Rasterize a polygon and commit it; fewer than 3 points only clears the preview."""
        mask = room_mask_from_polygon(polygon, resolution)
        if mask is None:
            return self.preview_polygon(None)
        return self.commit_mask(mask)

    def apply_brush(self, point: Point, mode: str = "add",
                    radius: Optional[float] = None, pressure: float = 1.0) -> SelectionState:
        """Stamp the brush onto the committed mask using the current settings."""
        def transition(state: SelectionState) -> SelectionState:
            brush_radius = state.settings.brush_radius if radius is None else radius
            painted = apply_circular_brush_to_mask(
                state.mask, point, brush_radius, mode, state.settings.brush_hardness, pressure
            )
            return with_committed_mask(state, painted)

        return self._apply(transition)

    def set_entrance_lock(self, locked: bool, entrance_id: Optional[str] = None) -> SelectionState:
        return self._apply(lambda s: with_entrance_lock(s, locked, entrance_id))

    def set_cache_key(self, cache_key: Optional[str]) -> SelectionState:
        return self._apply(lambda s: with_cache_key(s, cache_key))

    def clear(self) -> SelectionState:
        return self._apply(cleared)
