"""
Tests for boundary refinement, morphology and brushes.
"""

import pytest
import numpy as np

from room_mask_tools import Bounds, Point, RoomMask, refine_boundary_to_edges
from room_mask_tools.refine import (apply_brush_stroke, apply_circular_brush_to_mask, band_size_for, dilate_mask,
                                    dilation_radius_for, erode_mask, feather_mask, feather_radius_for,
                                    interpolate_stroke, stamp_brush)


def left_block(width=16, height=8, last_column=4):
    mask = np.zeros((height, width), dtype=np.uint8)
    mask[:, :last_column + 1] = 255
    return mask


class TestRefineBoundary:
    """Test edge-bounded region growth inside a band."""

    def test_stops_at_ridge(self):
        """Test that growth is frozen on a high-energy column."""
        energy = np.zeros((8, 16))
        energy[:, 6] = 1.0
        refined = refine_boundary_to_edges(left_block(), energy, band_size=6, edge_threshold=0.4)
        assert (refined[:, 6] == 255).all()
        assert (refined[:, 7:] == 0).all()

    def test_limited_by_band(self):
        """Test that growth never leaves the band around the initial mask."""
        refined = refine_boundary_to_edges(left_block(), np.zeros((8, 16)), band_size=2, edge_threshold=0.4)
        assert (refined[:, :7] == 255).all()
        assert (refined[:, 7:] == 0).all()

    def test_fills_holes(self):
        """Test that interior holes are filled."""
        initial = np.zeros((12, 12), dtype=np.uint8)
        initial[2:10, 2:10] = 255
        initial[5:7, 5:7] = 0
        energy = np.ones((12, 12))
        refined = refine_boundary_to_edges(initial, energy, band_size=1, edge_threshold=0.5)
        assert (refined[2:10, 2:10] == 255).all()

    def test_empty_and_mismatch(self):
        """Test empty input and shape validation."""
        assert not refine_boundary_to_edges(np.zeros((5, 5)), np.zeros((5, 5)), 2, 0.5).any()
        with pytest.raises(ValueError):
            refine_boundary_to_edges(np.zeros((5, 5)), np.zeros((4, 5)), 2, 0.5)


class TestMorphology:
    """Test dilation, erosion and feathering."""

    def test_dilate_disc(self):
        """Test the disc shape of the structuring element."""
        mask = np.zeros((11, 11), dtype=np.uint8)
        mask[5, 5] = 255
        dilated = dilate_mask(mask, 2)
        assert dilated[5, 7] == 255
        assert dilated[7, 5] == 255
        assert dilated[7, 7] == 0
        assert np.array_equal(dilate_mask(mask, 0), mask)

    def test_erode(self):
        """Test that erosion shrinks a block by its radius."""
        mask = np.zeros((10, 10), dtype=np.uint8)
        mask[2:8, 2:8] = 255
        eroded = erode_mask(mask, 1)
        assert np.count_nonzero(eroded) == 16

    def test_feather(self):
        """Test that feathering softens edges and keeps the core."""
        mask = np.zeros((40, 40), dtype=np.uint8)
        mask[10:30, 10:30] = 255
        feathered = feather_mask(mask, 4)
        assert feathered[20, 20] == 255
        assert 0 < feathered[20, 10] < 255
        assert feathered[0, 0] == 0
        assert np.array_equal(feather_mask(mask, 0), mask)

    def test_radius_helpers(self):
        """Test conversions of relative amounts into pixels."""
        assert feather_radius_for(100, 50, 0.05) == 5
        assert feather_radius_for(100, 50, 0.9) == 25
        assert band_size_for(200, 100, 0.05) == 10
        assert band_size_for(10, 10, 0.0) == 1
        assert dilation_radius_for(1000, 500, 200, 100) == 1
        assert dilation_radius_for(0, 0, 10, 10) == 0


class TestBrushes:
    """Test stamps, strokes and normalized brushes."""

    def test_interpolate_stroke(self):
        """Test resampling of a segment."""
        points = interpolate_stroke([(0, 0), (1, 0)], 0.25)
        assert [p.x for p in points] == pytest.approx([0, 0.25, 0.5, 0.75, 1.0])

    def test_stamp_add_and_erase(self):
        """Test adding and erasing a hard disc."""
        data = np.zeros((20, 20), dtype=np.uint8)
        stamp_brush(data, 10, 10, 3)
        assert data[10, 10] == 255
        assert data[10, 16] == 0
        stamp_brush(data, 10, 10, 3, mode="erase")
        assert not data.any()

    def test_soft_stamp(self):
        """Test partial coverage outside the hard core."""
        data = np.zeros((20, 20), dtype=np.uint8)
        stamp_brush(data, 10, 10, 6, hardness=0.5)
        assert data[9, 9] == 255
        assert 0 < data[9, 14] < 255

    def test_unknown_mode(self):
        """Test rejection of unknown brush modes."""
        with pytest.raises(ValueError):
            stamp_brush(np.zeros((5, 5), dtype=np.uint8), 2, 2, 1, mode="blur")

    def test_stroke(self):
        """Test a continuous stroke on a copy of the input."""
        data = np.zeros((20, 20), dtype=np.uint8)
        stroked = apply_brush_stroke(data, [(2, 10), (17, 10)], radius=2)
        assert (stroked[10, 2:18] == 255).all()
        assert not data.any()
        with pytest.raises(ValueError):
            apply_brush_stroke(data, [(2, 10), (17, 10)], radius=2, pressures=[1.0])

    def test_brush_on_empty_mask(self):
        """Test that adding to nothing starts a grid around the circle."""
        mask = apply_circular_brush_to_mask(None, Point(0.5, 0.5), 0.05)
        assert mask.bounds.min_x == pytest.approx(0.45)
        assert mask.contains(Point(0.5, 0.5))
        erased = apply_circular_brush_to_mask(None, Point(0.5, 0.5), 0.05, mode="erase")
        assert not erased.has_coverage()

    def test_brush_grows_grid(self):
        """Test that adding outside the bounds extends the grid."""
        mask = RoomMask(20, 20, Bounds(0.4, 0.4, 0.6, 0.6), np.full((20, 20), 255, dtype=np.uint8))
        grown = apply_circular_brush_to_mask(mask, Point(0.8, 0.5), 0.05)
        assert grown.bounds.max_x > 0.8
        assert grown.contains(Point(0.8, 0.5))
        assert grown.contains(Point(0.5, 0.5))
        assert mask.bounds == Bounds(0.4, 0.4, 0.6, 0.6)

    def test_brush_erase(self):
        """Test erasing from an existing mask keeps its grid."""
        mask = RoomMask(20, 20, Bounds(0.4, 0.4, 0.6, 0.6), np.full((20, 20), 255, dtype=np.uint8))
        erased = apply_circular_brush_to_mask(mask, Point(0.5, 0.5), 0.03, mode="erase")
        assert erased.bounds == mask.bounds
        assert not erased.contains(Point(0.5, 0.5))
        assert erased.contains(Point(0.42, 0.42))
        assert mask.contains(Point(0.5, 0.5))


if __name__ == "__main__":
    pytest.main([__file__])
