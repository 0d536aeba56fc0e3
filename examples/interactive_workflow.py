#!/usr/bin/env python3
"""
Interactive example showing how to host the selection tools in an application.
Work runs on a thread pool so the "UI" thread never blocks on segmentation.
"""

import io
import logging
import sys
from concurrent.futures import ThreadPoolExecutor, wait

import numpy as np
from PIL import Image

from room_mask_tools import (OffloadedSegmentation, PointerEvent, PreprocessCache, SelectionStore, ToolContext,
                             ToolSession, decode_room_mask, encode_room_mask, setup_logging)
from room_mask_tools.core import EntranceZone, Point
from room_mask_tools.state import TOOL_PAINTBRUSH, TOOL_SMART_LASSO, TOOL_SMART_WAND

logger = logging.getLogger("room_mask_tools.examples")


class RoomMaskApp:
    """Simple room definition application demonstrating tool usage."""

    def __init__(self, image_path_or_array, workers: int = 2):
        """Initialize the app with an image path or array."""
        if isinstance(image_path_or_array, str):
            self.image = np.array(Image.open(image_path_or_array).convert("RGB"))
        else:
            self.image = image_path_or_array
        self.height, self.width = self.image.shape[:2]

        self.executor = ThreadPoolExecutor(max_workers=workers)
        # Tool jobs block on provider calls, so the provider gets its own pool
        self.segmentation_executor = ThreadPoolExecutor(max_workers=workers)
        self.store = SelectionStore()
        self.context = ToolContext(
            store=self.store,
            segmentation=OffloadedSegmentation(self.segmentation_executor),
            image=self.image,
            cache=PreprocessCache(),
            executor=self.executor,
        )
        self.session = ToolSession(self.context)
        self.unsubscribe = self.store.subscribe(self._on_state)
        print(f"Initialized room mask app for image size: {self.width}x{self.height}")

    def _on_state(self, state):
        if state.busy_message:
            print(f"  [busy] {state.busy_message}")

    def add_entrance(self, zone_id, x, y, radius):
        """Register a doorway in pixel coordinates."""
        self.context.entrance_zones.append(EntranceZone(zone_id, Point(x, y), radius))
        print(f"Added entrance {zone_id} at ({x}, {y})")

    def set_tool(self, tool_name):
        self.session.activate(tool_name)
        print(f"Current tool: {tool_name}")

    def click(self, x, y, **kwargs):
        """Press and release at normalized coordinates."""
        event = PointerEvent.at(x, y, **kwargs)
        self.session.pointer_down(event)
        self.session.pointer_up(event)

    def drag(self, points, **kwargs):
        first, rest = points[0], points[1:]
        self.session.pointer_down(PointerEvent.at(*first, **kwargs))
        for point in rest:
            self.session.pointer_move(PointerEvent.at(*point, **kwargs))
        self.session.pointer_up(PointerEvent.at(*points[-1], **kwargs))

    def wait_for_tool(self):
        """Block until the smart wand's pending request finishes."""
        tool = self.session.tools[TOOL_SMART_WAND]
        if tool.pending is not None:
            wait([tool.pending])

    def export_mask(self):
        """Encode the committed mask and check that it reads back as a PNG."""
        mask = self.store.get_state().mask
        if mask is None:
            print("Nothing selected")
            return None
        data = encode_room_mask(mask)
        with Image.open(io.BytesIO(data)) as png:
            print(f"Exported {len(data)} bytes, PNG {png.size[0]}x{png.size[1]} mode {png.mode}")
        restored = decode_room_mask(data)
        print(f"Decoded bounds: {restored.bounds.to_dict()}")
        return data

    def close(self):
        self.unsubscribe()
        self.executor.shutdown(wait=True)
        self.segmentation_executor.shutdown(wait=True)


def create_plan():
    image = np.full((200, 300, 3), 240, dtype=np.uint8)
    image[10:190, 10:14] = 40
    image[10:190, 286:290] = 40
    image[10:14, 10:290] = 40
    image[186:190, 10:290] = 40
    image[10:80, 148:152] = 40
    image[120:190, 148:152] = 40
    return image


def main():
    setup_logging(verbose="-v" in sys.argv)
    app = RoomMaskApp(create_plan())
    try:
        app.add_entrance("door-1", 150, 100, 20)

        print("\n--- Smart wand ---")
        app.set_tool(TOOL_SMART_WAND)
        app.click(0.25, 0.5)
        # A second click supersedes the first; only its result is committed
        app.click(0.3, 0.5)
        app.wait_for_tool()
        state = app.store.get_state()
        print(f"Entrance locked: {state.entrance_locked} ({state.locked_entrance_id})")

        print("\n--- Smart lasso ---")
        app.set_tool(TOOL_SMART_LASSO)
        for x, y in [(0.55, 0.1), (0.95, 0.1), (0.95, 0.9), (0.55, 0.9)]:
            app.click(x, y)
        app.click(0.55, 0.1)
        print(f"Committed mask: {app.store.get_state().mask}")

        print("\n--- Paintbrush (erase with right button) ---")
        app.set_tool(TOOL_PAINTBRUSH)
        app.drag([(0.6, 0.5), (0.8, 0.5)], button=2, buttons=2)
        print(f"Gap markers after erase: {[m.severity for m in app.store.get_state().gap_markers]}")

        print("\n--- Export ---")
        app.export_mask()
    finally:
        app.close()


if __name__ == "__main__":
    main()
