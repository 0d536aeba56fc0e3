"""
Configuration defaults and logging setup for room_mask_tools.
"""

import logging
import os
import sys
from dataclasses import asdict, dataclass
from typing import Dict, Optional

# ============================================================================
# PREPROCESSING CACHE
# ============================================================================

CACHE_CAPACITY = int(os.environ.get("ROOM_MASK_CACHE_CAPACITY", 16))
CLAHE_TILE_SIZE = 32
CLAHE_CLIP_LIMIT = 2.0
DENOISE_KERNEL_RADIUS = 1
DENOISE_SIGMA = 1.2
PYRAMID_LEVELS = 5
HASH_SAMPLE_GRID = 8

# Cost field: clip(1 + gradient * GAIN - intensity * BOOST, MIN, MAX)
COST_GRADIENT_GAIN = 6.0
COST_INTENSITY_BOOST = 0.35
COST_MIN = 0.1
COST_MAX = 10.0

# ============================================================================
# TOOLS
# ============================================================================

LASSO_MIN_POINT_DISTANCE = 0.003
LIVE_WIRE_MIN_MOVE = 0.003
LIVE_WIRE_CLOSE_DISTANCE = 0.01
PAINTBRUSH_MIN_STEP = 0.003

FREEHAND_BASE_RESOLUTION = 896
FREEHAND_MIN_SIZE = 48
FREEHAND_MAX_SIZE = 1200

WAND_SNAP_SEARCH_RADIUS = 24
WAND_ENTRANCE_GRACE = 1.5
FALLBACK_CIRCLE_RESOLUTION = 512
FALLBACK_CIRCLE_MIN_RADIUS = 0.02

EDGE_ENERGY_SCALES = 3
EDGE_ENERGY_BASE_SIGMA = 0.8
SMART_STICKINESS = 0.55

BUSY_DETECTING = "Detecting region…"
BUSY_REFINING = "Refining edges…"
BUSY_TRACING = "Tracing edges…"

# ============================================================================
# LOGGING
# ============================================================================

LOGGER_NAME = "room_mask_tools"
LOG_LEVEL = os.environ.get("ROOM_MASK_LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class PreprocessConfig:
    """Parameters of the region preprocessing pipeline."""

    clahe_tile_size: int = CLAHE_TILE_SIZE
    clahe_clip_limit: float = CLAHE_CLIP_LIMIT
    denoise_kernel_radius: int = DENOISE_KERNEL_RADIUS
    denoise_sigma: float = DENOISE_SIGMA
    pyramid_levels: int = PYRAMID_LEVELS

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PreprocessConfig":
        """Create a config from a partial dictionary; missing keys keep defaults."""
        if not data:
            return cls()
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger for scripts and examples.

    Args:
        verbose: Log at DEBUG instead of LOG_LEVEL
        log_file: Optional path of a detailed log file

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Called more than once from examples
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    level = logging.DEBUG if verbose else getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console)

    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)

    logging.captureWarnings(True)
    return logger
