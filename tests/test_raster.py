"""
Tests for polygon and freehand rasterization.
"""

import pytest
import numpy as np

from room_mask_tools import Bounds, Point, rasterize_polygon, room_mask_from_polygon
from room_mask_tools.raster import (build_circle_mask, composite_max, crop_mask, fill_mask_interior,
                                    rasterize_freehand_path)

UNIT_SQUARE = [(0.25, 0.25), (0.75, 0.25), (0.75, 0.75), (0.25, 0.75)]


class TestRasterizePolygon:
    """Test even-odd polygon filling."""

    def test_square(self):
        """Test that exactly the pixel centers inside the square are filled."""
        mask = rasterize_polygon(UNIT_SQUARE, 100, 100)
        assert mask.dtype == np.uint8
        assert np.count_nonzero(mask) == 50 * 50
        assert mask[25, 25] == 255
        assert mask[24, 25] == 0
        assert mask[74, 74] == 255
        assert mask[75, 74] == 0

    def test_degenerate_polygon(self):
        """Test that fewer than 3 points produce an empty mask."""
        assert not rasterize_polygon([(0.1, 0.1), (0.9, 0.9)], 10, 10).any()

    def test_bounds_mapping(self):
        """Test filling a grid that covers only part of the image."""
        mask = rasterize_polygon(UNIT_SQUARE, 10, 10, Bounds(0.25, 0.25, 0.75, 0.75))
        assert mask.all()

    def test_room_mask_from_polygon(self):
        """Test fitting a RoomMask around a polygon."""
        mask = room_mask_from_polygon([(0.1, 0.2), (0.5, 0.2), (0.5, 0.4)], resolution=64)
        assert mask.bounds == Bounds(0.1, 0.2, 0.5, 0.4)
        assert (mask.width, mask.height) == (64, 32)
        assert mask.has_coverage()
        assert room_mask_from_polygon([(0.1, 0.1), (0.2, 0.2)]) is None


class TestFreehand:
    """Test freehand path rasterization and filling."""

    def test_closed_path_fills(self):
        """Test that a closed outline fills to a solid region."""
        boundary = rasterize_freehand_path(UNIT_SQUARE, 40, 40, stroke_radius=0.02)
        assert boundary[20, 20] == 0
        filled = fill_mask_interior(boundary)
        assert filled[20, 20] == 255
        assert filled[2, 2] == 0

    def test_open_path_does_not_fill(self):
        """Test that an open path leaves its interior empty."""
        boundary = rasterize_freehand_path(UNIT_SQUARE, 40, 40, stroke_radius=0.02, close_path=False)
        assert fill_mask_interior(boundary)[20, 20] == 0

    def test_single_point(self):
        """Test that a lone point stamps a dot."""
        boundary = rasterize_freehand_path([(0.5, 0.5)], 21, 21, stroke_radius=0.1)
        assert boundary[10, 10] == 255
        assert boundary[0, 0] == 0


class TestMaskHelpers:
    """Test compositing, circles and cropping."""

    def test_composite_max(self):
        """Test pixelwise maximum."""
        a = np.array([[0, 200], [50, 0]], dtype=np.uint8)
        b = np.array([[100, 10], [50, 255]], dtype=np.uint8)
        assert composite_max([a, b]).tolist() == [[100, 200], [50, 255]]

    def test_composite_max_errors(self):
        """Test invalid composite input."""
        with pytest.raises(ValueError):
            composite_max([])
        with pytest.raises(ValueError):
            composite_max([np.zeros((2, 2)), np.zeros((3, 2))])

    def test_circle_mask(self):
        """Test the fallback circle mask."""
        mask = build_circle_mask(Point(0.5, 0.5), 0.1, resolution=512)
        assert mask.bounds == Bounds(pytest.approx(0.4), pytest.approx(0.4), pytest.approx(0.6),
                                     pytest.approx(0.6))
        assert mask.contains(Point(0.5, 0.5))
        assert not mask.contains(Point(0.41, 0.41))

    def test_circle_mask_minimum_size(self):
        """Test that tiny circles still get a usable grid."""
        mask = build_circle_mask(Point(0.5, 0.5), 0.01, resolution=512, min_size=32)
        assert mask.width >= 32 and mask.height >= 32

    def test_crop(self):
        """Test cropping to the covered area with padding."""
        data = np.zeros((10, 10), dtype=np.uint8)
        data[4:6, 3:5] = 255
        cropped, origin = crop_mask(data, padding=1)
        assert origin == (2, 3)
        assert cropped.shape == (4, 4)
        assert crop_mask(np.zeros((3, 3), dtype=np.uint8)) == (None, None)


if __name__ == "__main__":
    pytest.main([__file__])
