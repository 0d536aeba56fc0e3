"""
Room Mask Tools Package

Interactive region masking and vectorization for floor-plan style images.
Provides mask encoding, raster/vector conversion, edge snapping, live-wire
tracing, region growing and pointer-driven selection tools.
"""

import logging

__version__ = "0.1.0"
__author__ = "room_mask_tools"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from .core import Bounds, EntranceZone, Point, Roi, RoomMask, SignedDistanceField
from .codec import (MaskDecodeError, decode_room_mask, decode_room_mask_from_data_url, encode_room_mask,
                    encode_room_mask_to_data_url)
from .raster import rasterize_polygon, room_mask_from_polygon
from .vector import (compute_signed_distance_field, extract_polygon, room_mask_to_polygon, round_trip,
                     sdf_to_mask, sdf_to_polygon)
from .edges import build_edge_map, smooth_polygon, snap_polygon_to_edges
from .livewire import build_cost_pyramid, trace_live_wire
from .wand import grow_region, magic_wand_select
from .refine import apply_circular_brush_to_mask, refine_boundary_to_edges
from .cache import PreprocessCache
from .segmentation import (LocalSegmentation, OffloadedSegmentation, SegmentationProvider, live_wire_path,
                           smart_wand, vectorize_and_snap)
from .state import SelectionSettings, SelectionState, SelectionStore
from .tools import (LassoTool, PaintbrushTool, PointerEvent, SmartLassoTool, SmartWandTool, ToolContext,
                    ToolSession)
from .eval import MaskEvaluator
from .config import PreprocessConfig, setup_logging

__all__ = [
    "Bounds",
    "EntranceZone",
    "Point",
    "Roi",
    "RoomMask",
    "SignedDistanceField",
    "MaskDecodeError",
    "encode_room_mask",
    "decode_room_mask",
    "encode_room_mask_to_data_url",
    "decode_room_mask_from_data_url",
    "rasterize_polygon",
    "room_mask_from_polygon",
    "extract_polygon",
    "room_mask_to_polygon",
    "compute_signed_distance_field",
    "sdf_to_mask",
    "sdf_to_polygon",
    "round_trip",
    "build_edge_map",
    "snap_polygon_to_edges",
    "smooth_polygon",
    "build_cost_pyramid",
    "trace_live_wire",
    "magic_wand_select",
    "grow_region",
    "refine_boundary_to_edges",
    "apply_circular_brush_to_mask",
    "PreprocessCache",
    "PreprocessConfig",
    "SegmentationProvider",
    "LocalSegmentation",
    "OffloadedSegmentation",
    "smart_wand",
    "live_wire_path",
    "vectorize_and_snap",
    "SelectionSettings",
    "SelectionState",
    "SelectionStore",
    "PointerEvent",
    "ToolContext",
    "ToolSession",
    "LassoTool",
    "SmartLassoTool",
    "SmartWandTool",
    "PaintbrushTool",
    "MaskEvaluator",
    "setup_logging",
]
