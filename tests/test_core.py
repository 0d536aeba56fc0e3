"""
Tests for room mask core data structures.
"""

import pytest
import numpy as np

from room_mask_tools import Bounds, EntranceZone, Point, Roi, RoomMask
from room_mask_tools.core import as_rgb, clamp_polygon


class TestPoint:
    """Test Point behaviour."""

    def test_clamped(self):
        """Test clamping to the unit square."""
        assert Point(-0.5, 1.5).clamped() == Point(0.0, 1.0)

    def test_from_tuple(self):
        """Test conversion from tuples and passthrough of Points."""
        point = Point(0.2, 0.3)
        assert Point.from_tuple(point) is point
        assert Point.from_tuple((0.2, 0.3)) == point

    def test_distance(self):
        """Test Euclidean distance."""
        assert Point(0, 0).distance_to(Point(0.3, 0.4)) == pytest.approx(0.5)


class TestBounds:
    """Test Bounds functionality."""

    def test_clamped_repairs_inverted(self):
        """Test that clamping sorts inverted edges."""
        bounds = Bounds(0.8, 1.2, 0.2, -0.1).clamped()
        assert bounds == Bounds(0.2, 0.0, 0.8, 1.0)

    def test_serialization(self):
        """Test bounds to/from dict conversion."""
        bounds = Bounds(0.1, 0.2, 0.3, 0.4)
        data = bounds.to_dict()
        assert data == {"minX": 0.1, "minY": 0.2, "maxX": 0.3, "maxY": 0.4}
        assert Bounds.from_dict(data) == bounds

    def test_around(self):
        """Test padded bounding box of points."""
        bounds = Bounds.around([Point(0.2, 0.3), Point(0.4, 0.5)], padding=0.1)
        assert bounds.min_x == pytest.approx(0.1)
        assert bounds.max_y == pytest.approx(0.6)
        assert Bounds.around([]) == Bounds.full()


class TestRoomMask:
    """Test RoomMask functionality."""

    def test_creation(self):
        """Test basic mask creation."""
        mask = RoomMask(10, 5)
        assert mask.data.shape == (5, 10)
        assert mask.data.dtype == np.uint8
        assert mask.bounds == Bounds.full()
        assert not mask.has_coverage()

    def test_invalid_dimensions(self):
        """Test that non-positive sizes are rejected."""
        with pytest.raises(ValueError):
            RoomMask(0, 5)
        with pytest.raises(ValueError):
            RoomMask(4, 4, data=np.zeros((3, 4)))

    def test_empty(self):
        """Test the default empty mask."""
        mask = RoomMask.empty()
        assert (mask.width, mask.height) == (32, 32)
        assert not mask.has_coverage()

    def test_copy_is_independent(self):
        """Test that copies do not share data."""
        mask = RoomMask(4, 4)
        clone = mask.copy()
        clone.data[0, 0] = 255
        assert mask.data[0, 0] == 0
        assert clone != mask

    def test_contains(self):
        """Test point lookup through the bounds."""
        data = np.zeros((10, 10), dtype=np.uint8)
        data[:, 5:] = 255
        mask = RoomMask(10, 10, Bounds(0.5, 0.5, 1.0, 1.0), data)
        assert mask.contains(Point(0.9, 0.7))
        assert not mask.contains(Point(0.6, 0.7))
        assert not mask.contains(Point(0.1, 0.1))

    def test_centroid(self):
        """Test centroid of covered pixels mapped through the bounds."""
        data = np.zeros((4, 4), dtype=np.uint8)
        data[0:2, 0:2] = 255
        mask = RoomMask(4, 4, Bounds(0.0, 0.0, 0.4, 0.4), data)
        centroid = mask.centroid()
        assert centroid.x == pytest.approx(0.1)
        assert centroid.y == pytest.approx(0.1)

    def test_centroid_of_empty_mask(self):
        """Test that an empty mask reports the center of its bounds."""
        mask = RoomMask(4, 4, Bounds(0.2, 0.2, 0.6, 0.4))
        assert mask.centroid() == Point(pytest.approx(0.4), pytest.approx(0.3))


class TestHelpers:
    """Test Roi, zones and image helpers."""

    def test_roi_clipped(self):
        """Test clipping a region to the raster."""
        roi = Roi(-5, 8, 100, 100).clipped(20, 10)
        assert roi == Roi(0, 8, 20, 2)

    def test_roi_slice(self):
        """Test slicing an image with a region."""
        image = np.arange(20).reshape(4, 5)
        assert Roi(1, 2, 2, 2).slice(image).tolist() == [[11, 12], [16, 17]]

    def test_entrance_zone(self):
        """Test pixel containment of an entrance zone."""
        zone = EntranceZone("door", Point(10, 10), 3)
        assert zone.contains_pixel(12, 10)
        assert not zone.contains_pixel(14, 10)

    def test_as_rgb(self):
        """Test image normalization to RGB."""
        assert as_rgb(np.zeros((3, 4))).shape == (3, 4, 3)
        assert as_rgb(np.zeros((3, 4, 4), dtype=np.uint8)).shape == (3, 4, 3)
        with pytest.raises(ValueError):
            as_rgb(np.zeros((3, 4, 2)))

    def test_clamp_polygon(self):
        """Test point-like conversion with clamping."""
        assert clamp_polygon([(1.5, 0.5), Point(-1, 0)]) == [Point(1.0, 0.5), Point(0.0, 0.0)]


if __name__ == "__main__":
    pytest.main([__file__])
