"""
Dot detection.

Finds bright reference dots in a preprocessed frame. Blob detection
(flood fill over above-threshold pixels) is the main algorithm; template
matching and optical flow can contribute extra candidates. Every
algorithm's confidence is scaled by its weight before candidates are
merged by proximity.

Dependencies: opencv, numpy, scipy
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import cv2
import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .models import DetectedDot, Vector2, points_array
from .preprocessing import ImageBuffer

logger = logging.getLogger(__name__)


# =============================================================================
# ALGORITHM VARIANTS
# =============================================================================

class DetectionAlgorithm(str, Enum):
    BLOB = "blob_detection"
    TEMPLATE_MATCHING = "template_matching"
    OPTICAL_FLOW = "optical_flow"


@dataclass(frozen=True)
class BlobParams:
    min_threshold: int = 50
    min_area: int = 10
    max_area: int = 1000


@dataclass(frozen=True)
class TemplateMatchParams:
    threshold: float = 0.7
    template_size: int = 9
    sigma: float = 2.0
    min_intensity: int = 50


@dataclass(frozen=True)
class OpticalFlowParams:
    window: int = 15
    max_error: float = 30.0
    min_intensity: int = 50


AlgorithmParams = Union[BlobParams, TemplateMatchParams, OpticalFlowParams]


@dataclass(frozen=True)
class AlgorithmConfig:
    algorithm: DetectionAlgorithm
    params: AlgorithmParams
    weight: float = 1.0
    enabled: bool = True


def build_algorithms(settings: Dict) -> List[AlgorithmConfig]:
    """Detection algorithm list described by a settings dict."""
    return [
        AlgorithmConfig(
            DetectionAlgorithm.BLOB,
            BlobParams(
                min_threshold=settings["min_threshold"],
                min_area=settings["min_area"],
                max_area=settings["max_area"],
            ),
            weight=settings["blob_weight"],
            enabled=settings["blob_enabled"],
        ),
        AlgorithmConfig(
            DetectionAlgorithm.TEMPLATE_MATCHING,
            TemplateMatchParams(
                threshold=settings["template_threshold"],
                template_size=settings["template_size"],
                sigma=settings["template_sigma"],
                min_intensity=settings["min_threshold"],
            ),
            weight=settings["template_matching_weight"],
            enabled=settings["template_matching_enabled"],
        ),
        AlgorithmConfig(
            DetectionAlgorithm.OPTICAL_FLOW,
            OpticalFlowParams(
                window=settings["optical_flow_window"],
                max_error=settings["optical_flow_max_error"],
                min_intensity=settings["min_threshold"],
            ),
            weight=settings["optical_flow_weight"],
            enabled=settings["optical_flow_enabled"],
        ),
    ]


# =============================================================================
# BLOB DETECTION
# =============================================================================

@dataclass
class Blob:
    """Connected region of above-threshold pixels."""
    area: int
    center_x: float
    center_y: float
    mean_intensity: float


def flood_fill_blob(
    pixels: np.ndarray,
    start_x: int,
    start_y: int,
    threshold: int,
    visited: np.ndarray,
) -> Blob:
    """4-connected flood fill from (start_x, start_y) using an explicit stack.

    Pixels at or above `threshold` join the blob and are marked in `visited`.
    """
    height, width = pixels.shape
    stack = [(start_x, start_y)]
    area = 0
    total_x = total_y = total_intensity = 0

    while stack:
        x, y = stack.pop()
        if x < 0 or x >= width or y < 0 or y >= height:
            continue
        if visited[y, x]:
            continue
        value = int(pixels[y, x])
        if value < threshold:
            continue

        visited[y, x] = True
        total_x += x
        total_y += y
        total_intensity += value
        area += 1

        stack.append((x + 1, y))
        stack.append((x - 1, y))
        stack.append((x, y + 1))
        stack.append((x, y - 1))

    if area == 0:
        return Blob(0, float(start_x), float(start_y), 0.0)
    return Blob(area, total_x / area, total_y / area, total_intensity / area)


def detect_blobs(image: ImageBuffer, params: BlobParams) -> List[DetectedDot]:
    """Raster-scan for seeds above `min_threshold` and flood-fill each blob."""
    pixels = image.pixels
    visited = np.zeros(pixels.shape, dtype=bool)
    t = params.min_threshold
    dots: List[DetectedDot] = []

    # argwhere yields (row, col) in raster order
    for y, x in np.argwhere(pixels > t):
        if visited[y, x]:
            continue
        blob = flood_fill_blob(pixels, int(x), int(y), t, visited)
        if not params.min_area <= blob.area <= params.max_area:
            continue
        dots.append(DetectedDot(
            position=Vector2(blob.center_x, blob.center_y),
            intensity=blob.mean_intensity / 255.0,
            size=2.0 * np.sqrt(blob.area / np.pi),
            confidence=min(1.0, (blob.mean_intensity - t) / (255.0 - t)),
        ))
    return dots


# =============================================================================
# TEMPLATE MATCHING
# =============================================================================

def _dot_template(size: int, sigma: float) -> np.ndarray:
    size = size if size % 2 == 1 else size + 1
    kernel = cv2.getGaussianKernel(size, sigma)
    template = kernel @ kernel.T
    return np.round(template / template.max() * 255).astype(np.uint8)


def detect_template_matches(image: ImageBuffer, params: TemplateMatchParams) -> List[DetectedDot]:
    """Normalised cross-correlation against a Gaussian dot template."""
    template = _dot_template(params.template_size, params.sigma)
    size = template.shape[0]
    if image.width < size or image.height < size:
        return []

    response = cv2.matchTemplate(image.pixels, template, cv2.TM_CCOEFF_NORMED)
    response = np.nan_to_num(response)
    # keep only local maxima
    dilated = cv2.dilate(response, np.ones((size, size), np.uint8))
    peaks = np.argwhere((response >= params.threshold) & (response >= dilated))

    half = size // 2
    dots: List[DetectedDot] = []
    for row, col in peaks:
        cx, cy = int(col) + half, int(row) + half
        value = int(image.pixels[cy, cx])
        if value <= params.min_intensity:
            continue
        dots.append(DetectedDot(
            position=Vector2(float(cx), float(cy)),
            intensity=value / 255.0,
            size=float(params.sigma * 2),
            confidence=float(min(1.0, response[row, col])),
        ))
    return dots


# =============================================================================
# OPTICAL FLOW
# =============================================================================

def track_optical_flow(
    previous: Optional[ImageBuffer],
    image: ImageBuffer,
    previous_dots: Sequence[DetectedDot],
    params: OpticalFlowParams,
) -> List[DetectedDot]:
    """Carry last frame's dots into this frame with pyramidal Lucas-Kanade."""
    if previous is None or not previous_dots or previous.shape != image.shape:
        return []

    points = points_array(d.position for d in previous_dots).astype(np.float32).reshape(-1, 1, 2)
    window = max(3, int(params.window))
    moved, status, error = cv2.calcOpticalFlowPyrLK(
        previous.pixels, image.pixels, points, None,
        winSize=(window, window), maxLevel=2,
    )
    if moved is None:
        return []

    dots: List[DetectedDot] = []
    for prev_dot, point, ok, err in zip(previous_dots, moved.reshape(-1, 2), status.ravel(), error.ravel()):
        if not ok or err > params.max_error:
            continue
        x, y = float(point[0]), float(point[1])
        col, row = int(round(x)), int(round(y))
        if not (0 <= col < image.width and 0 <= row < image.height):
            continue
        value = int(image.pixels[row, col])
        if value <= params.min_intensity:
            continue
        dots.append(DetectedDot(
            position=Vector2(x, y),
            intensity=value / 255.0,
            size=prev_dot.size,
            confidence=float(1.0 - err / params.max_error) if params.max_error > 0 else 0.0,
        ))
    return dots


# =============================================================================
# MERGING
# =============================================================================

def _combine(group: List[DetectedDot]) -> DetectedDot:
    if len(group) == 1:
        return group[0]
    n = len(group)
    return DetectedDot(
        position=Vector2(
            sum(d.position.x for d in group) / n,
            sum(d.position.y for d in group) / n,
        ),
        intensity=sum(d.intensity for d in group) / n,
        size=sum(d.size for d in group) / n,
        confidence=max(d.confidence for d in group),
    )


def merge_dots(dots: Sequence[DetectedDot], merge_threshold: float = 20.0) -> List[DetectedDot]:
    """
    Merge candidates closer than `merge_threshold` into single dots.

    Groups are the transitive closure of the "near" relation, so a chain of
    neighbours collapses into one dot. Merging repeats on group centroids
    until no two outputs are near each other, which makes the result a
    fixed point: merging it again changes nothing.
    """
    groups: List[List[DetectedDot]] = [[d] for d in dots]

    while len(groups) > 1:
        centers = points_array(_combine(g).position for g in groups)
        pairs = cKDTree(centers).query_pairs(r=merge_threshold, output_type="ndarray")
        if len(pairs):
            dist = np.linalg.norm(centers[pairs[:, 0]] - centers[pairs[:, 1]], axis=1)
            pairs = pairs[dist < merge_threshold]
        if not len(pairs):
            break

        n = len(groups)
        adjacency = coo_matrix(
            (np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n)
        )
        _, labels = connected_components(adjacency, directed=False)

        merged: Dict[int, List[DetectedDot]] = {}
        for label, group in zip(labels, groups):
            merged.setdefault(int(label), []).extend(group)
        groups = list(merged.values())

    return [_combine(g) for g in groups]


# =============================================================================
# DOT DETECTOR
# =============================================================================

class DotDetector:
    """
    Runs the enabled detection algorithms and merges their candidates.

    Keeps the previous frame and its dots for optical flow.
    """

    def __init__(self):
        self._previous_image: Optional[ImageBuffer] = None
        self._previous_dots: List[DetectedDot] = []

    def detect(self, image: ImageBuffer, settings: Dict) -> List[DetectedDot]:
        candidates: List[DetectedDot] = []

        for config in build_algorithms(settings):
            if not config.enabled:
                continue
            try:
                found = self._run(config, image)
            except (cv2.error, ValueError) as e:
                logger.warning("%s failed, skipping its candidates: %s", config.algorithm.value, e)
                found = []

            for dot in found:
                dot.confidence *= config.weight
            candidates.extend(found)

        dots = merge_dots(candidates, settings["merge_threshold"])
        logger.debug("%d candidates merged into %d dots", len(candidates), len(dots))

        self._previous_image = image
        self._previous_dots = [
            DetectedDot(d.position, d.intensity, d.size, d.confidence) for d in dots
        ]
        return dots

    def _run(self, config: AlgorithmConfig, image: ImageBuffer) -> List[DetectedDot]:
        if config.algorithm is DetectionAlgorithm.BLOB:
            return detect_blobs(image, config.params)
        if config.algorithm is DetectionAlgorithm.TEMPLATE_MATCHING:
            return detect_template_matches(image, config.params)
        if config.algorithm is DetectionAlgorithm.OPTICAL_FLOW:
            return track_optical_flow(self._previous_image, image, self._previous_dots, config.params)
        return []

    def reset(self) -> None:
        """Forget the previous frame."""
        self._previous_image = None
        self._previous_dots = []
