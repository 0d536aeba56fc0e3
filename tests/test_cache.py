"""
Tests for region preprocessing and the LRU preprocess cache.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
import numpy as np

from room_mask_tools import PreprocessCache, PreprocessConfig, Roi
from room_mask_tools.cache import build_preprocess, hash_raster_region, normalize_plane


@pytest.fixture
def plan_image():
    image = np.full((64, 80, 3), 230, dtype=np.uint8)
    image[10:54, 10:14] = 30
    image[10:14, 10:70] = 30
    return image


class TestBuildPreprocess:
    """Test the preprocessing pipeline."""

    def test_artifacts(self, plan_image):
        """Test shapes and ranges of the produced planes."""
        entry = build_preprocess(plan_image)
        assert (entry.width, entry.height) == (80, 64)
        assert entry.grayscale.shape == (64, 80)
        assert 0.0 <= entry.normalized.min() and entry.normalized.max() <= 1.0
        assert entry.edge_map.max_magnitude > 0
        assert entry.cost.min() >= 0.1 and entry.cost.max() <= 10.0
        assert entry.cost_levels[0].data.shape == (64, 80)

    def test_walls_cost_more(self, plan_image):
        """Test that the cost is higher across walls than on open floor."""
        entry = build_preprocess(plan_image)
        assert entry.cost[30, 14] > entry.cost[30, 40]

    def test_roi(self, plan_image):
        """Test preprocessing a clipped region."""
        entry = build_preprocess(plan_image, Roi(60, 50, 40, 40))
        assert entry.roi == Roi(60, 50, 20, 14)
        assert (entry.origin_x, entry.origin_y) == (60, 50)
        assert entry.grayscale.shape == (14, 20)

    def test_arrays_are_read_only(self, plan_image):
        """Test that published arrays cannot be modified."""
        entry = build_preprocess(plan_image)
        with pytest.raises(ValueError):
            entry.cost[0, 0] = 5.0
        with pytest.raises(ValueError):
            entry.cost_levels[-1].data[0, 0] = 5.0

    def test_config(self, plan_image):
        """Test custom pipeline parameters."""
        entry = build_preprocess(plan_image, config=PreprocessConfig(pyramid_levels=2, denoise_kernel_radius=0))
        assert len(entry.cost_levels) == 2
        assert np.array_equal(entry.denoised, entry.clahe)

    def test_normalize_flat_plane(self):
        """Test that a flat plane normalizes to zeros."""
        assert not normalize_plane(np.full((3, 3), 7.0)).any()


class TestHashing:
    """Test region content keys."""

    def test_stable(self, plan_image):
        """Test that equal content hashes equally."""
        assert hash_raster_region(plan_image) == hash_raster_region(plan_image.copy())

    def test_region_and_content(self, plan_image):
        """Test that the key changes with the rectangle and the sampled pixels."""
        changed = plan_image.copy()
        changed[0, 0] = 0
        assert hash_raster_region(plan_image) != hash_raster_region(changed)
        assert hash_raster_region(plan_image) != hash_raster_region(plan_image, Roi(0, 0, 40, 40))

    def test_samples_eight_by_eight_grid(self, plan_image):
        """Test that only the 8x8 grid spanning the region's corners is sampled."""
        off_grid = plan_image.copy()
        off_grid[1, 1] = 0
        off_grid[40, 60] = 0
        assert hash_raster_region(plan_image) == hash_raster_region(off_grid)
        corner = plan_image.copy()
        corner[63, 79] = 0
        assert hash_raster_region(plan_image) != hash_raster_region(corner)


class TestPreprocessCache:
    """Test LRU behaviour and concurrent builds."""

    def test_hit_and_miss(self, plan_image):
        """Test that the second request is served from the cache."""
        cache = PreprocessCache(capacity=4)
        first, first_hit = cache.get_or_build(plan_image)
        second, second_hit = cache.get_or_build(plan_image)
        assert not first_hit and second_hit
        assert first is second
        assert first.stats.hits == 1
        stats = cache.stats()
        assert stats["hits"] == 1 and stats["misses"] == 1 and stats["entries"] == 1

    def test_explicit_key(self, plan_image):
        """Test caching under a caller-chosen key."""
        cache = PreprocessCache()
        entry, _ = cache.get_or_build(plan_image, cache_key="plan")
        assert entry.key == "plan"
        assert "plan" in cache
        assert cache.get("plan") is entry
        assert cache.get("missing") is None

    def test_lru_eviction(self, plan_image):
        """Test that the least recently used entry is evicted."""
        cache = PreprocessCache(capacity=2)
        cache.get_or_build(plan_image, cache_key="a")
        cache.get_or_build(plan_image, cache_key="b")
        cache.get_or_build(plan_image, cache_key="a")
        cache.get_or_build(plan_image, cache_key="c")
        assert "a" in cache and "c" in cache
        assert "b" not in cache
        assert len(cache) == 2
        assert cache.stats()["evictions"] == 1

    def test_concurrent_requests_build_once(self, plan_image):
        """Test that concurrent requests for one key share a single build."""
        cache = PreprocessCache()
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(cache.get_or_build, plan_image, None, "shared") for _ in range(8)]
            results = [future.result() for future in futures]
        entries = {id(entry) for entry, _ in results}
        assert len(entries) == 1
        assert sum(1 for _, hit in results if not hit) == 1
        assert cache.stats()["misses"] == 1

    def test_failed_build_is_not_cached(self):
        """Test that a failing build propagates and leaves no entry."""
        cache = PreprocessCache()
        with pytest.raises(ValueError):
            cache.get_or_build(np.zeros((4, 4, 2), dtype=np.uint8), cache_key="bad")
        assert "bad" not in cache

    def test_clear(self, plan_image):
        """Test dropping entries and counters."""
        cache = PreprocessCache()
        cache.get_or_build(plan_image)
        cache.clear()
        assert len(cache) == 0
        assert cache.stats()["misses"] == 0

    def test_invalid_capacity(self):
        """Test rejection of a non-positive capacity."""
        with pytest.raises(ValueError):
            PreprocessCache(capacity=0)


if __name__ == "__main__":
    pytest.main([__file__])
