"""
Grid alignment: RANSAC calibration and dot matching.

The alignment maps grid-pattern coordinates into camera pixels. It is
re-estimated from random three-dot samples and kept only when it explains
the current detections at least as well as the alignment already in use.

Dependencies: numpy, scipy
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from .models import DetectedDot, GridPattern, Vector2, points_array

logger = logging.getLogger(__name__)

TRANSFORM_MODELS = ("translation", "similarity")


# =============================================================================
# ALIGNMENT
# =============================================================================

def _matrix(rotation: float, scale: Vector2, translation: Vector2) -> np.ndarray:
    cos, sin = np.cos(rotation), np.sin(rotation)
    return np.array([
        [scale.x * cos, -scale.y * sin, translation.x],
        [scale.x * sin, scale.y * cos, translation.y],
        [0.0, 0.0, 1.0],
    ])


@dataclass(frozen=True)
class GridAlignment:
    """Pattern-to-camera transform. Replaced, never edited."""
    rotation: float = 0.0
    scale: Vector2 = Vector2(1.0, 1.0)
    translation: Vector2 = Vector2(0.0, 0.0)
    confidence: float = 0.0
    calibration_matrix: np.ndarray = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.calibration_matrix is None:
            object.__setattr__(
                self, "calibration_matrix", _matrix(self.rotation, self.scale, self.translation)
            )

    @classmethod
    def identity(cls) -> "GridAlignment":
        return cls()

    def with_confidence(self, confidence: float) -> "GridAlignment":
        return GridAlignment(self.rotation, self.scale, self.translation, confidence)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map an (N, 2) array of pattern points into camera space."""
        m = self.calibration_matrix
        return points @ m[:2, :2].T + m[:2, 2]

    def transform_point(self, point) -> Vector2:
        x, y = self.transform_points(np.array([[point[0], point[1]]], dtype=np.float64))[0]
        return Vector2(float(x), float(y))


def estimate_transform(
    expected: np.ndarray,
    detected: np.ndarray,
    model: str = "translation",
) -> Optional[GridAlignment]:
    """
    Fit an alignment taking `expected` pattern points onto `detected` points.

    "translation" only shifts the expected centroid onto the detected one
    (rotation 0, scale 1). "similarity" is a least-squares fit of rotation,
    uniform scale and translation.
    """
    if len(expected) < 3 or len(expected) != len(detected):
        return None
    mu_e = expected.mean(axis=0)
    mu_d = detected.mean(axis=0)

    if model == "translation":
        t = mu_d - mu_e
        return GridAlignment(translation=Vector2(float(t[0]), float(t[1])), confidence=0.8)

    if model != "similarity":
        raise ValueError(f"Unknown transform model: {model} (expected one of {TRANSFORM_MODELS})")

    e = expected - mu_e
    d = detected - mu_d
    variance = float((e ** 2).sum())
    if variance < 1e-9:
        return None
    a = float((e[:, 0] * d[:, 0] + e[:, 1] * d[:, 1]).sum())
    b = float((e[:, 0] * d[:, 1] - e[:, 1] * d[:, 0]).sum())
    rotation = float(np.arctan2(b, a))
    scale = float(np.hypot(a, b) / variance)
    if scale <= 0:
        return None
    cos, sin = np.cos(rotation), np.sin(rotation)
    rotated = np.array([cos * mu_e[0] - sin * mu_e[1], sin * mu_e[0] + cos * mu_e[1]])
    t = mu_d - scale * rotated
    return GridAlignment(
        rotation=rotation,
        scale=Vector2(scale, scale),
        translation=Vector2(float(t[0]), float(t[1])),
        confidence=0.8,
    )


def score_alignment(
    detected: np.ndarray,
    expected: np.ndarray,
    alignment: GridAlignment,
    threshold: float = 20.0,
    tree: Optional[cKDTree] = None,
) -> float:
    """Sum of (1 - d/threshold) over expected dots landing near a detection."""
    if len(detected) == 0 or len(expected) == 0:
        return 0.0
    tree = tree if tree is not None else cKDTree(detected)
    dist, _ = tree.query(alignment.transform_points(expected))
    near = dist < threshold
    return float((1.0 - dist[near] / threshold).sum())


# =============================================================================
# CALIBRATOR
# =============================================================================

@dataclass
class CalibrationResult:
    alignment: Optional[GridAlignment]
    accepted: bool
    score: float
    min_match_count: float
    attempted: bool = True


class GridCalibrator:
    """
    RANSAC-style estimation of the pattern-to-camera alignment.

    Each attempt samples three detections at a time, pairs them with their
    nearest enabled pattern dots, fits a transform and scores it against
    the whole pattern. The best candidate is kept only if it clears the
    acceptance bar and beats the current alignment on the same detections.
    """

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)

    def calibrate(
        self,
        dots: Sequence[DetectedDot],
        pattern: GridPattern,
        settings: Dict,
        current: Optional[GridAlignment] = None,
    ) -> CalibrationResult:
        total = len(pattern.dots)
        min_match_count = min(10.0, 0.3 * total)
        enabled = pattern.enabled_dots()

        if not dots or not enabled or len(dots) < min_match_count:
            logger.debug("Calibration skipped: %d dots, need %.1f", len(dots), min_match_count)
            return CalibrationResult(current, False, 0.0, min_match_count, attempted=False)

        detected = points_array(d.position for d in dots)
        expected = points_array(d.position for d in enabled)
        detected_tree = cKDTree(detected)
        expected_tree = cKDTree(expected)

        radius = settings["correspondence_radius"]
        threshold = settings["inlier_threshold"]
        model = settings["transform_model"]
        sample_size = min(3, len(detected))

        best: Optional[GridAlignment] = None
        best_score = 0.0
        for _ in range(settings["ransac_iterations"]):
            sample = detected[self._rng.choice(len(detected), size=sample_size, replace=False)]
            dist, nearest = expected_tree.query(sample, distance_upper_bound=radius)
            found = np.isfinite(dist) & (dist < radius)
            if found.sum() < 3:
                continue

            candidate = estimate_transform(expected[nearest[found]], sample[found], model)
            if candidate is None:
                continue

            score = score_alignment(detected, expected, candidate, threshold, detected_tree)
            if score > best_score:
                best_score = score
                best = candidate

        incumbent_score = 0.0
        if current is not None:
            incumbent_score = score_alignment(detected, expected, current, threshold, detected_tree)

        if best is None or best_score <= min_match_count * 0.7 or best_score < incumbent_score:
            logger.debug(
                "Calibration rejected: best=%.2f incumbent=%.2f bar=%.2f",
                best_score, incumbent_score, min_match_count * 0.7,
            )
            return CalibrationResult(current, False, best_score, min_match_count)

        alignment = best.with_confidence(min(1.0, best_score / total))
        logger.info(
            "Calibration accepted: translation=(%.1f, %.1f) rotation=%.3f confidence=%.2f",
            alignment.translation.x, alignment.translation.y,
            alignment.rotation, alignment.confidence,
        )
        return CalibrationResult(alignment, True, best_score, min_match_count)


# =============================================================================
# MATCHING
# =============================================================================

def match_dots_to_grid(
    dots: List[DetectedDot],
    pattern: GridPattern,
    alignment: Optional[GridAlignment],
    match_threshold: float = 30.0,
) -> List[DetectedDot]:
    """
    Pair enabled pattern dots with detections, one to one.

    Pattern dots are projected through the alignment (identity if none yet).
    Pairs farther apart than `match_threshold` are never made. Matched
    detections get `id`, `expected_position` and `displacement` in place.
    """
    for dot in dots:
        dot.matched = False
        dot.id = None
        dot.expected_position = None
        dot.displacement = None

    enabled = pattern.enabled_dots()
    if not dots or not enabled:
        return dots

    alignment = alignment or GridAlignment.identity()
    projected = alignment.transform_points(points_array(d.position for d in enabled))
    detected = points_array(d.position for d in dots)

    distance = cdist(projected, detected)
    gated = np.where(distance < match_threshold, distance, match_threshold * 1e3)
    rows, cols = linear_sum_assignment(gated)

    for r, c in zip(rows, cols):
        if distance[r, c] >= match_threshold:
            continue
        dot = dots[c]
        expected = Vector2(float(projected[r, 0]), float(projected[r, 1]))
        dot.matched = True
        dot.id = enabled[r].id
        dot.expected_position = expected
        dot.displacement = Vector2(dot.position[0] - expected.x, dot.position[1] - expected.y)
    return dots
