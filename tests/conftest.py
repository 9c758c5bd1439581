"""
Shared pytest fixtures for the gridwatch test suite.

All frames are synthetic: black images with filled white discs drawn at
known positions, so centroids and areas are easy to reason about.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Tuple

import cv2
import numpy as np
import pytest

from gridwatch.models import CameraFrame, DetectedDot, GridDot, GridPattern, Vector2
from gridwatch.settings import build_detection_settings

WIDTH, HEIGHT = 320, 240


def render_dots(
    positions: Iterable[Tuple[float, float]],
    radius: int = 4,
    value: int = 255,
    width: int = WIDTH,
    height: int = HEIGHT,
) -> np.ndarray:
    """Black uint8 image with a filled disc at each (x, y)."""
    image = np.zeros((height, width), dtype=np.uint8)
    for x, y in positions:
        cv2.circle(image, (int(round(x)), int(round(y))), radius, int(value), -1)
    return image


def make_frame(image: np.ndarray, timestamp: float = 0.0, frame_number: int = 0) -> CameraFrame:
    return CameraFrame(image, width=image.shape[1], height=image.shape[0],
                       timestamp=timestamp, frame_number=frame_number)


def make_dot(x: float, y: float, intensity: float = 1.0, size: float = 8.0,
             confidence: float = 0.9) -> DetectedDot:
    return DetectedDot(position=Vector2(x, y), intensity=intensity, size=size, confidence=confidence)


def positions_of(pattern: GridPattern, skip: Sequence[str] = ()) -> list:
    return [d.position for d in pattern.dots if d.id not in skip]


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

@pytest.fixture()
def square_pattern() -> GridPattern:
    """Four dots on a 2x2 grid, 60 px apart, ids grid_<col>_<row>."""
    return GridPattern.regular_grid(2, 2, spacing=60.0, center=(160.0, 120.0))


@pytest.fixture()
def large_pattern() -> GridPattern:
    """Twenty dots on a 5x4 grid, 50 px apart, centred in the frame."""
    return GridPattern.regular_grid(5, 4, spacing=50.0, center=(160.0, 120.0))


@pytest.fixture()
def single_dot_pattern() -> GridPattern:
    return GridPattern(dots=(GridDot("a", Vector2(100.0, 100.0), intensity=0.5, size=8.0),))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture()
def raw_settings() -> dict:
    """No preprocessing, so drawn dots reach the detector untouched."""
    return build_detection_settings(preprocessing=[], random_seed=7)
