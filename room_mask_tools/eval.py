"""
Evaluation metrics for room masks and polygons.
"""

import json
import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import confusion_matrix, f1_score, jaccard_score

from .core import Bounds, RoomMask, clamp_polygon
from .raster import rasterize_polygon
from .vector import polygon_area, polygon_centroid

logger = logging.getLogger(__name__)


def resample_mask(mask: RoomMask, bounds: Bounds, width: int, height: int) -> np.ndarray:
    """
    Nearest-neighbour sample of a mask onto another grid.

    Args:
        mask: Source mask
        bounds: Normalized rectangle covered by the target grid
        width: Target grid width
        height: Target grid height

    Returns:
        (height, width) uint8 coverage, zero outside the mask's bounds
    """
    xs = bounds.min_x + (np.arange(width) + 0.5) / width * bounds.width
    ys = bounds.min_y + (np.arange(height) + 0.5) / height * bounds.height
    src = mask.bounds
    if src.width <= 0 or src.height <= 0:
        return np.zeros((height, width), dtype=np.uint8)
    cols = np.floor((xs - src.min_x) / src.width * mask.width).astype(int)
    rows = np.floor((ys - src.min_y) / src.height * mask.height).astype(int)
    valid_cols = (cols >= 0) & (cols < mask.width)
    valid_rows = (rows >= 0) & (rows < mask.height)
    sampled = mask.data[np.ix_(np.clip(rows, 0, mask.height - 1), np.clip(cols, 0, mask.width - 1))]
    return np.where(valid_rows[:, None] & valid_cols[None, :], sampled, 0).astype(np.uint8)


class MaskEvaluator:
    """Overlap metrics between predicted and reference selections."""

    def __init__(self, threshold: int = 0):
        """
        Initialize the evaluator.

        Args:
            threshold: Coverage above which a pixel counts as selected
        """
        self.threshold = threshold

    def _binary(self, pred_mask: np.ndarray, gt_mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        pred_mask = np.asarray(pred_mask)
        gt_mask = np.asarray(gt_mask)
        if pred_mask.shape != gt_mask.shape:
            raise ValueError("Predicted and ground truth masks must have the same shape")
        return (pred_mask > self.threshold).ravel(), (gt_mask > self.threshold).ravel()

    def intersection_over_union(self, pred_mask: np.ndarray, gt_mask: np.ndarray) -> float:
        """
        Calculate Intersection over Union (IoU) score.

        Args:
            pred_mask: Predicted coverage
            gt_mask: Ground truth coverage

        Returns:
            IoU score (0.0 to 1.0); two empty masks score 1.0
        """
        pred, gt = self._binary(pred_mask, gt_mask)
        if not pred.any() and not gt.any():
            return 1.0
        return float(jaccard_score(gt, pred))

    def dice_coefficient(self, pred_mask: np.ndarray, gt_mask: np.ndarray) -> float:
        """
        Calculate Dice coefficient (F1-score of the selected class).

        Returns:
            Dice coefficient (0.0 to 1.0); two empty masks score 1.0
        """
        pred, gt = self._binary(pred_mask, gt_mask)
        if not pred.any() and not gt.any():
            return 1.0
        return float(f1_score(gt, pred))

    def pixel_accuracy(self, pred_mask: np.ndarray, gt_mask: np.ndarray) -> float:
        pred, gt = self._binary(pred_mask, gt_mask)
        return float(np.mean(pred == gt))

    def confusion_counts(self, pred_mask: np.ndarray, gt_mask: np.ndarray) -> Dict[str, int]:
        """True/false positive and negative pixel counts."""
        pred, gt = self._binary(pred_mask, gt_mask)
        tn, fp, fn, tp = confusion_matrix(gt, pred, labels=[False, True]).ravel()
        return {"tp": int(tp), "fp": int(fp), "fn": int(fn), "tn": int(tn)}

    def compare_masks(self, pred: RoomMask, gt: RoomMask, resolution: int = 256) -> Dict[str, float]:
        """
        Compare two room masks that may cover different bounds.

        Both masks are resampled onto a common grid over the union of their
        bounds before scoring.
        """
        bounds = pred.bounds.union(gt.bounds).clamped()
        span = max(bounds.width, bounds.height, 1e-6)
        width = max(1, int(round(resolution * bounds.width / span)))
        height = max(1, int(round(resolution * bounds.height / span)))
        pred_grid = resample_mask(pred, bounds, width, height)
        gt_grid = resample_mask(gt, bounds, width, height)
        return {
            "iou": self.intersection_over_union(pred_grid, gt_grid),
            "dice": self.dice_coefficient(pred_grid, gt_grid),
            "pixel_accuracy": self.pixel_accuracy(pred_grid, gt_grid),
        }

    def compare_polygons(self, pred: Sequence, gt: Sequence, resolution: int = 256) -> Dict[str, float]:
        """
        Compare two outlines by rasterizing them on a shared grid.

        Args:
            pred: Predicted polygon in normalized coordinates
            gt: Reference polygon in normalized coordinates
            resolution: Grid size along the longer side of the joint bounds

        Returns:
            Dictionary with iou, dice, both areas and the centroid offset
        """
        pred_points = clamp_polygon(pred)
        gt_points = clamp_polygon(gt)
        if len(pred_points) < 3 or len(gt_points) < 3:
            raise ValueError("Both polygons need at least 3 points")
        bounds = Bounds.around(pred_points + gt_points)
        span = max(bounds.width, bounds.height, 1e-6)
        width = max(1, int(round(resolution * max(bounds.width, 1e-6) / span)))
        height = max(1, int(round(resolution * max(bounds.height, 1e-6) / span)))
        pred_grid = rasterize_polygon(pred_points, width, height, bounds)
        gt_grid = rasterize_polygon(gt_points, width, height, bounds)
        pred_centroid = polygon_centroid(pred_points)
        gt_centroid = polygon_centroid(gt_points)
        return {
            "iou": self.intersection_over_union(pred_grid, gt_grid),
            "dice": self.dice_coefficient(pred_grid, gt_grid),
            "pred_area": abs(polygon_area(pred_points)),
            "gt_area": abs(polygon_area(gt_points)),
            "centroid_offset": pred_centroid.distance_to(gt_centroid),
        }

    def save_evaluation_report(self, results: Dict, filepath: str) -> None:
        """
        Save evaluation results to a JSON file.

        Args:
            results: Evaluation results dictionary
            filepath: Path to save the report
        """
        def convert_numpy(obj):
            if isinstance(obj, np.ndarray):
                return obj.tolist()
            if isinstance(obj, np.integer):
                return int(obj)
            if isinstance(obj, np.floating):
                return float(obj)
            if isinstance(obj, dict):
                return {k: convert_numpy(v) for k, v in obj.items()}
            if isinstance(obj, (list, tuple)):
                return [convert_numpy(item) for item in obj]
            return obj

        with open(filepath, "w") as f:
            json.dump(convert_numpy(results), f, indent=2)
        logger.info("Saved evaluation report to %s", filepath)

    def load_evaluation_report(self, filepath: str) -> Optional[Dict]:
        with open(filepath, "r") as f:
            return json.load(f)
