"""
Tests for pointer-driven tools, the tool context and the tool session.
"""

import logging
from concurrent.futures import Executor, Future

import pytest
import numpy as np

from room_mask_tools import (EntranceZone, LocalSegmentation, Point, PointerEvent, SelectionStore, ToolContext,
                             ToolSession)
from room_mask_tools.state import TOOL_LASSO, TOOL_PAINTBRUSH, TOOL_SMART_LASSO, TOOL_SMART_WAND
from room_mask_tools import tools as tool_module
from room_mask_tools.tools import CancellationToken, ImmediateExecutor, build_freehand_mask, is_erase_event

SQUARE = [(0.2, 0.2), (0.8, 0.2), (0.8, 0.8), (0.2, 0.8)]


class ManualExecutor(Executor):
    """Executor that queues jobs until run_all is called."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for future, fn, args, kwargs in jobs:
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)


class FailingWand(LocalSegmentation):
    def magic_wand_select(self, *args, **kwargs):
        raise RuntimeError("wand backend unavailable")


def floor_plan(door=False):
    image = np.full((60, 100, 3), 240, dtype=np.uint8)
    image[:, 48:52] = 40
    if door:
        image[25:35, 48:52] = 240
    return image


def make_session(tool_id, **context):
    store = SelectionStore()
    session = ToolSession(ToolContext(store=store, **context))
    session.activate(tool_id)
    return session, store


def click(session, x, y, **kwargs):
    event = PointerEvent.at(x, y, **kwargs)
    result = session.pointer_down(event)
    session.pointer_up(event)
    return result


def cancel_after_first_check(session):
    """Make the active tool's first id check pass, then cancel the session."""
    token = session.active.token
    original = token.is_current
    calls = []

    def is_current(request_id):
        current = original(request_id)
        if not calls:
            calls.append(request_id)
            session.cancel()
        return current

    token.is_current = is_current
    return calls


class TestHelpers:
    """Test executor, token and context helpers."""

    def test_immediate_executor(self):
        """Test that jobs run synchronously and errors land in the future."""
        executor = ImmediateExecutor()
        assert executor.submit(lambda a, b: a + b, 2, 3).result() == 5
        failed = executor.submit(lambda: 1 / 0)
        assert isinstance(failed.exception(), ZeroDivisionError)

    def test_cancellation_token(self):
        """Test that only the latest request is current."""
        token = CancellationToken()
        first = token.next()
        second = token.next()
        assert not token.is_current(first)
        assert token.is_current(second)
        token.cancel()
        assert not token.is_current(second)

    def test_context_snap_and_size(self):
        """Test snapping, clamping and image size."""
        ctx = ToolContext(store=SelectionStore(), image=np.zeros((30, 40), dtype=np.uint8),
                          snap_fn=lambda p: Point(round(p.x, 1), round(p.y, 1)))
        assert ctx.image.shape == (30, 40, 3)
        assert ctx.image_size == (40, 30)
        assert ctx.snap((0.33, 1.4)) == Point(0.3, 1.0)

    def test_energy_is_computed_once(self):
        """Test lazy edge energy."""
        ctx = ToolContext(store=SelectionStore(), image=floor_plan())
        energy = ctx.energy()
        assert energy.shape == (60, 100)
        assert ctx.energy() is energy
        assert ToolContext(store=SelectionStore()).energy() is None

    def test_freehand_mask(self):
        """Test grid sizing and filling of a freehand outline."""
        ctx = ToolContext(store=SelectionStore())
        mask = build_freehand_mask(ctx, SQUARE)
        assert (mask.width, mask.height) == (896, 896)
        assert mask.contains(Point(0.5, 0.5))
        assert not mask.contains(Point(0.15, 0.15))
        assert build_freehand_mask(ctx, SQUARE[:2]) is None

    def test_erase_events(self):
        """Test the modifiers that switch the brush to erasing."""
        assert is_erase_event(PointerEvent.at(0, 0, button=2))
        assert is_erase_event(PointerEvent.at(0, 0, buttons=2))
        assert is_erase_event(PointerEvent.at(0, 0, alt=True))
        assert is_erase_event(PointerEvent.at(0, 0, ctrl=True))
        assert not is_erase_event(PointerEvent.at(0, 0, shift=True))


class TestLassoTool:
    """Test the freehand lasso."""

    def test_draw_and_commit(self):
        """Test that a drawn outline is previewed and then committed."""
        session, store = make_session(TOOL_LASSO)
        session.pointer_down(PointerEvent.at(*SQUARE[0]))
        for point in SQUARE[1:]:
            session.pointer_move(PointerEvent.at(*point))
        assert len(store.get_state().preview_polygon) == 4
        session.pointer_up(PointerEvent.at(*SQUARE[-1]))
        state = store.get_state()
        assert state.preview_polygon is None
        assert state.mask.contains(Point(0.5, 0.5))

    def test_ignores_tiny_moves(self):
        """Test the minimum distance between recorded points."""
        session, store = make_session(TOOL_LASSO)
        session.pointer_down(PointerEvent.at(0.2, 0.2))
        session.pointer_move(PointerEvent.at(0.201, 0.2))
        assert len(store.get_state().preview_polygon) == 1

    def test_too_few_points(self):
        """Test that a click without drawing commits nothing."""
        session, store = make_session(TOOL_LASSO)
        click(session, 0.4, 0.4)
        state = store.get_state()
        assert state.mask is None
        assert state.preview_polygon is None


class TestSmartLassoTool:
    """Test the anchor-based live-wire lasso."""

    def test_close_on_first_anchor(self):
        """Test closing the outline by clicking the first anchor."""
        session, store = make_session(TOOL_SMART_LASSO)
        for point in SQUARE:
            click(session, *point)
        assert session.active.anchors == [Point(*p) for p in SQUARE]
        click(session, 0.2005, 0.2)
        state = store.get_state()
        assert state.mask.contains(Point(0.5, 0.5))
        assert state.busy_message is None
        assert session.active.anchors == []

    def test_double_click_closes(self):
        """Test closing with a double click."""
        session, store = make_session(TOOL_SMART_LASSO)
        for point in SQUARE[:3]:
            click(session, *point)
        click(session, 0.3, 0.7, double_click=True)
        assert store.get_state().mask is not None

    def test_first_anchor_needs_three_anchors(self):
        """Test that the close rule applies only once there are three anchors."""
        session, _ = make_session(TOOL_SMART_LASSO)
        click(session, 0.2, 0.2)
        click(session, 0.8, 0.2)
        click(session, 0.2005, 0.2)
        assert len(session.active.anchors) == 3

    def test_preview_throttling(self):
        """Test that small pointer moves do not start new traces."""
        session, store = make_session(TOOL_SMART_LASSO)
        click(session, 0.2, 0.2)
        tool = session.active
        session.pointer_move(PointerEvent.at(0.5, 0.5))
        session.pointer_move(PointerEvent.at(0.501, 0.5))
        assert tool.preview_computations == 1
        session.pointer_move(PointerEvent.at(0.51, 0.5))
        assert tool.preview_computations == 2
        assert store.get_state().preview_polygon[-1] == Point(0.51, 0.5)

    def test_stale_preview_is_dropped(self):
        """Test that an older preview never overwrites a newer one."""
        executor = ManualExecutor()
        session, store = make_session(TOOL_SMART_LASSO, executor=executor)
        click(session, 0.2, 0.2)
        first = session.pointer_move(PointerEvent.at(0.5, 0.5))
        second = session.pointer_move(PointerEvent.at(0.6, 0.5))
        executor.run_all()
        assert first.result() is False
        assert second.result() is True
        assert store.get_state().preview_polygon[-1] == Point(0.6, 0.5)

    def test_cancel_before_preview_is_shown(self):
        """Test that a cancel landing after the id check still drops the preview."""
        session, store = make_session(TOOL_SMART_LASSO)
        click(session, 0.2, 0.2)
        tool = session.active
        calls = cancel_after_first_check(session)
        future = session.pointer_move(PointerEvent.at(0.5, 0.5))
        assert calls
        assert future.result() is False
        assert tool.preview_computations == 0
        assert store.get_state().preview_polygon is None

    def test_undo_last_anchor(self):
        """Test removing anchors one by one."""
        session, store = make_session(TOOL_SMART_LASSO)
        for point in SQUARE[:3]:
            click(session, *point)
        tool = session.active
        tool.undo_last_anchor(session.context)
        assert tool.anchors == [Point(0.2, 0.2), Point(0.8, 0.2)]
        assert tool.committed_path == [Point(0.2, 0.2), Point(0.8, 0.2)]
        tool.undo_last_anchor(session.context)
        tool.undo_last_anchor(session.context)
        assert tool.committed_path == []
        assert store.get_state().preview_polygon is None

    def test_finish_needs_three_anchors(self):
        """Test that finishing early commits nothing."""
        session, store = make_session(TOOL_SMART_LASSO)
        click(session, 0.2, 0.2)
        click(session, 0.8, 0.2)
        assert session.active.finish(session.context) is None
        assert store.get_state().mask is None

    def test_traces_on_image(self):
        """Test a full outline traced over an image and refined to edges."""
        session, store = make_session(TOOL_SMART_LASSO, image=floor_plan())
        for point in [(0.1, 0.1), (0.4, 0.1), (0.4, 0.9), (0.1, 0.9)]:
            click(session, *point)
        assert len(session.active.committed_path) > 4
        click(session, 0.1, 0.1)
        state = store.get_state()
        assert state.mask.contains(Point(0.25, 0.5))
        assert not state.mask.contains(Point(0.75, 0.5))


class TestSmartWandTool:
    """Test the click-to-select wand."""

    def test_fallback_circle_without_image(self):
        """Test that the wand commits a circle when nothing can be detected."""
        session, store = make_session(TOOL_SMART_WAND)
        future = click(session, 0.3, 0.3)
        assert future.done()
        state = store.get_state()
        assert state.mask.contains(Point(0.3, 0.3))
        assert not state.mask.contains(Point(0.5, 0.5))
        assert state.busy_message is None

    def test_selects_room(self):
        """Test Lab selection of one room on an image."""
        session, store = make_session(TOOL_SMART_WAND, image=floor_plan())
        click(session, 0.25, 0.5)
        mask = store.get_state().mask
        assert mask.contains(Point(0.25, 0.5))
        assert not mask.contains(Point(0.75, 0.5))

    def test_entrance_lock(self):
        """Test the entrance-aware pipeline and the committed lock."""
        zones = [EntranceZone("door", Point(50, 30), 6)]
        session, store = make_session(TOOL_SMART_WAND, image=floor_plan(door=True), entrance_zones=zones)
        outcome = click(session, 0.25, 0.5).result()
        assert outcome.entrance_locked
        state = store.get_state()
        assert state.entrance_locked
        assert state.locked_entrance_id == "door"

    def test_only_latest_click_commits(self):
        """Test that a superseded request is dropped."""
        executor = ManualExecutor()
        session, store = make_session(TOOL_SMART_WAND, executor=executor)
        first = click(session, 0.2, 0.2)
        second = click(session, 0.8, 0.8)
        assert store.get_state().busy_message == "Detecting region…"
        executor.run_all()
        assert first.result() is None
        assert second.result() is not None
        mask = store.get_state().mask
        assert mask.contains(Point(0.8, 0.8))
        assert not mask.contains(Point(0.2, 0.2))

    def test_cancel_discards_pending(self):
        """Test that cancelling drops queued work and the busy status."""
        executor = ManualExecutor()
        session, store = make_session(TOOL_SMART_WAND, executor=executor)
        future = click(session, 0.5, 0.5)
        session.cancel()
        executor.run_all()
        assert future.cancelled()
        state = store.get_state()
        assert state.mask is None
        assert state.busy_message is None

    def test_cancel_before_commit(self):
        """Test that a cancel landing after the id check commits nothing."""
        session, store = make_session(TOOL_SMART_WAND)
        calls = cancel_after_first_check(session)
        future = click(session, 0.5, 0.5)
        assert calls
        assert future.result() is None
        state = store.get_state()
        assert state.mask is None
        assert not state.entrance_locked
        assert state.busy_message is None

    def test_snap_strength_reaches_pipeline(self, monkeypatch):
        """Test that the snap strength setting is passed to region detection."""
        requests = []
        detect = tool_module.smart_wand

        def recording_smart_wand(request, cache=None):
            requests.append(request)
            return detect(request, cache)

        monkeypatch.setattr(tool_module, "smart_wand", recording_smart_wand)
        zones = [EntranceZone("door", Point(50, 30), 6)]
        session, store = make_session(TOOL_SMART_WAND, image=floor_plan(door=True), entrance_zones=zones)
        store.update_settings(snap_strength=0.0)
        click(session, 0.25, 0.5)
        assert requests[0].snap_strength == 0.0

    def test_failure_falls_back(self, caplog):
        """Test that provider errors fall back to the circle."""
        session, store = make_session(TOOL_SMART_WAND, image=floor_plan(), segmentation=FailingWand())
        with caplog.at_level(logging.WARNING, logger="room_mask_tools"):
            click(session, 0.25, 0.5)
        assert store.get_state().mask.contains(Point(0.25, 0.5))
        assert "fallback circle" in caplog.text


class TestPaintbrushTool:
    """Test painting and erasing."""

    def test_paint_stroke(self):
        """Test that a drag paints a continuous stroke."""
        session, store = make_session(TOOL_PAINTBRUSH)
        store.update_settings(brush_radius=0.03)
        session.pointer_down(PointerEvent.at(0.3, 0.5))
        session.pointer_move(PointerEvent.at(0.6, 0.5))
        session.pointer_up(PointerEvent.at(0.6, 0.5))
        mask = store.get_state().mask
        for x in (0.3, 0.4, 0.5, 0.6):
            assert mask.contains(Point(x, 0.5))
        assert not mask.contains(Point(0.45, 0.6))

    def test_right_button_erases(self):
        """Test erasing with the secondary button."""
        session, store = make_session(TOOL_PAINTBRUSH)
        click(session, 0.5, 0.5)
        assert store.get_state().mask.contains(Point(0.5, 0.5))
        click(session, 0.5, 0.5, button=2, buttons=2)
        assert not store.get_state().mask.contains(Point(0.5, 0.5))

    def test_erase_without_mask_commits_nothing(self):
        """Test that erasing an empty selection leaves the store without a mask."""
        session, store = make_session(TOOL_PAINTBRUSH)
        version = store.get_state().version
        session.pointer_down(PointerEvent.at(0.4, 0.4, alt=True))
        session.pointer_move(PointerEvent.at(0.6, 0.4, alt=True))
        session.pointer_up(PointerEvent.at(0.6, 0.4, alt=True))
        state = store.get_state()
        assert state.mask is None
        assert state.version == version

    def test_moves_without_press_do_nothing(self):
        """Test that hovering does not paint."""
        session, store = make_session(TOOL_PAINTBRUSH)
        session.pointer_move(PointerEvent.at(0.5, 0.5))
        assert store.get_state().mask is None


class TestToolSession:
    """Test tool switching and event routing."""

    def test_activate(self):
        """Test activating tools and rejecting unknown ones."""
        session, store = make_session(TOOL_LASSO)
        assert store.get_state().tool == TOOL_LASSO
        session.activate(TOOL_PAINTBRUSH)
        assert store.get_state().tool == TOOL_PAINTBRUSH
        with pytest.raises(ValueError):
            session.activate("scissors")

    def test_switching_cancels_gesture(self):
        """Test that switching tools drops an unfinished outline."""
        session, store = make_session(TOOL_LASSO)
        session.pointer_down(PointerEvent.at(0.2, 0.2))
        session.pointer_move(PointerEvent.at(0.5, 0.2))
        lasso = session.active
        session.activate(TOOL_SMART_WAND)
        assert lasso.points == []
        assert store.get_state().preview_polygon is None

    def test_no_active_tool(self):
        """Test that events without an active tool are ignored."""
        session = ToolSession(ToolContext(store=SelectionStore()))
        assert session.pointer_down(PointerEvent.at(0.5, 0.5)) is None
        session.cancel()


if __name__ == "__main__":
    pytest.main([__file__])
