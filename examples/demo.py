#!/usr/bin/env python3
"""
Example usage of room mask tools on a synthetic floor plan.
"""

import numpy as np
import matplotlib.pyplot as plt

from room_mask_tools import (MaskEvaluator, PointerEvent, PreprocessCache, RoomMask, SelectionStore,
                             ToolContext, ToolSession, decode_room_mask_from_data_url, rasterize_polygon,
                             encode_room_mask_to_data_url, extract_polygon, live_wire_path,
                             room_mask_from_polygon, room_mask_to_polygon, round_trip, setup_logging,
                             vectorize_and_snap)
from room_mask_tools.core import Point
from room_mask_tools.segmentation import LiveWireRequest, VectorizeRequest
from room_mask_tools.state import TOOL_LASSO, TOOL_PAINTBRUSH, TOOL_SMART_WAND


def create_floor_plan():
    """Two rooms separated by a wall with a doorway."""
    image = np.full((240, 320, 3), 235, dtype=np.uint8)
    image[20:220, 20:24] = 30
    image[20:220, 296:300] = 30
    image[20:24, 20:300] = 30
    image[216:220, 20:300] = 30
    # Dividing wall with a door gap
    image[20:100, 158:162] = 30
    image[140:220, 158:162] = 30
    image[24:216, 162:296] = (210, 225, 240)
    return image


def demo_tools(image):
    """Drive the tools with synthetic pointer events."""
    print("=== Tool Demo ===")
    store = SelectionStore()
    context = ToolContext(store=store, image=image, cache=PreprocessCache())
    session = ToolSession(context)

    session.activate(TOOL_SMART_WAND)
    session.pointer_down(PointerEvent.at(0.75, 0.5))
    wand_mask = store.get_state().mask
    print(f"Smart wand selected {wand_mask.coverage_ratio():.1%} of a {wand_mask.width}x{wand_mask.height} grid")

    session.activate(TOOL_LASSO)
    session.pointer_down(PointerEvent.at(0.1, 0.15))
    for x, y in [(0.45, 0.15), (0.45, 0.85), (0.1, 0.85)]:
        session.pointer_move(PointerEvent.at(x, y))
    session.pointer_up(PointerEvent.at(0.1, 0.15))
    lasso_mask = store.get_state().mask
    print(f"Lasso committed a {lasso_mask.width}x{lasso_mask.height} mask")

    session.activate(TOOL_PAINTBRUSH)
    store.update_settings(brush_radius=0.03)
    session.pointer_down(PointerEvent.at(0.2, 0.5))
    session.pointer_move(PointerEvent.at(0.3, 0.5))
    session.pointer_up(PointerEvent.at(0.3, 0.5))
    print(f"Paintbrush stroke, gap markers: {len(store.get_state().gap_markers)}")
    return wand_mask, store.get_state().mask


def demo_vectorization(image, mask):
    """Encode, trace and snap a mask."""
    print("\n=== Vectorization Demo ===")
    url = encode_room_mask_to_data_url(mask)
    restored = decode_room_mask_from_data_url(url)
    print(f"Data URL length {len(url)}, round trip exact: {restored == mask}")

    polygon = room_mask_to_polygon(mask)
    print(f"Traced polygon with {len(polygon)} vertices")

    square = [(0.25, 0.25), (0.75, 0.25), (0.75, 0.75), (0.25, 0.75)]
    result = round_trip(square)
    print(f"SDF round trip error for a square: {result.error:.4f}")

    cache = PreprocessCache()
    height, width = image.shape[:2]
    grid = rasterize_polygon([(0.1, 0.12), (0.48, 0.12), (0.48, 0.9), (0.1, 0.9)], width, height)
    snapped = vectorize_and_snap(VectorizeRequest(image, grid), cache)
    print(f"Snapped outline has {len(snapped.snapped_polygon)} vertices (cache hit: {snapped.debug['cache_hit']})")

    wire = live_wire_path(LiveWireRequest(image, Point(0.1, 0.1), Point(0.9, 0.9)), cache)
    print(f"Live-wire path: {len(wire.path)} points, levels {wire.debug['levels_visited']}")
    print(f"Cache stats: {cache.stats()}")
    return snapped


def demo_evaluation(wand_mask):
    """Compare the wand selection with the right room's outline."""
    print("\n=== Evaluation Demo ===")
    evaluator = MaskEvaluator()
    right_room = room_mask_from_polygon([(0.506, 0.1), (0.925, 0.1), (0.925, 0.9), (0.506, 0.9)], 256)
    scores = evaluator.compare_masks(wand_mask, right_room)
    print(f"IoU {scores['iou']:.3f}, Dice {scores['dice']:.3f}")
    outline = extract_polygon(wand_mask.data)
    print(f"Wand outline has {len(outline)} vertices")
    return scores


def create_visualization(image, wand_mask: RoomMask, final_mask: RoomMask, snapped):
    """Plot the floor plan with the selections and snapped outline."""
    print("\n=== Creating Visualization ===")
    height, width = image.shape[:2]
    fig, axes = plt.subplots(1, 3, figsize=(15, 5))

    axes[0].imshow(image)
    axes[0].set_title("Floor Plan")
    axes[0].axis("off")

    for ax, mask, title in ((axes[1], wand_mask, "Smart Wand"), (axes[2], final_mask, "Lasso + Brush")):
        b = mask.bounds
        ax.imshow(image)
        ax.imshow(mask.data, cmap="Reds", alpha=0.5,
                  extent=(b.min_x * width, b.max_x * width, b.max_y * height, b.min_y * height))
        ax.set_xlim(0, width)
        ax.set_ylim(height, 0)
        ax.set_title(title)
        ax.axis("off")

    xs = [p.x * width for p in snapped.snapped_polygon]
    ys = [p.y * height for p in snapped.snapped_polygon]
    axes[2].plot(xs + xs[:1], ys + ys[:1], color="cyan", linewidth=1.5)

    plt.tight_layout()
    viz_path = "/tmp/room_mask_demo.png"
    plt.savefig(viz_path, dpi=150, bbox_inches="tight")
    plt.close()
    print(f"Visualization saved to: {viz_path}")
    return viz_path


def main():
    """Run all demonstrations."""
    setup_logging()
    print("Room Mask Tools - Complete Demo")
    print("=" * 50)

    image = create_floor_plan()
    wand_mask, final_mask = demo_tools(image)
    snapped = demo_vectorization(image, final_mask)
    demo_evaluation(wand_mask)
    viz_path = create_visualization(image, wand_mask, final_mask, snapped)

    print("\n" + "=" * 50)
    print("Demo completed successfully!")
    print(f"Check the visualization at: {viz_path}")


if __name__ == "__main__":
    main()
