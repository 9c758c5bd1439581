"""
Image buffer, background model and preprocessing filters.

Everything here works on ImageBuffer values: a width x height grayscale
array that is copied on construction and never shared between frames.

Dependencies: opencv, numpy
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence

import cv2
import numpy as np

from .models import CameraFrame

logger = logging.getLogger(__name__)


# =============================================================================
# IMAGE BUFFER
# =============================================================================

@dataclass(frozen=True)
class ImageBuffer:
    """Grayscale intensity image (uint8, rows x cols)."""
    pixels: np.ndarray = field(repr=False)

    def __post_init__(self):
        pixels = np.array(self.pixels, dtype=np.uint8, copy=True)
        if pixels.ndim != 2 or pixels.size == 0:
            raise ValueError(f"Expected a non-empty 2-D image, got shape {pixels.shape}")
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def shape(self):
        return self.pixels.shape

    def get(self, x: int, y: int) -> int:
        return int(self.pixels[y, x])

    @classmethod
    def from_frame(cls, frame: CameraFrame) -> "ImageBuffer":
        """Copy a camera frame into an ImageBuffer.

        Accepts a flat buffer of width*height values, a 2-D array, or a
        3-channel BGR array (converted to grayscale).
        """
        data = np.asarray(frame.image)
        if frame.width <= 0 or frame.height <= 0 or data.size == 0:
            raise ValueError("Empty camera frame")
        if data.ndim == 3 and data.shape[2] == 3:
            data = cv2.cvtColor(data.astype(np.uint8), cv2.COLOR_BGR2GRAY)
        if data.size != frame.width * frame.height:
            raise ValueError(
                f"Frame buffer has {data.size} values, expected "
                f"{frame.width}x{frame.height}"
            )
        return cls(data.reshape(frame.height, frame.width))


# =============================================================================
# FILTERS
# =============================================================================

def _odd(size: int) -> int:
    size = max(1, int(size))
    return size if size % 2 == 1 else size + 1


def gaussian_blur(image: ImageBuffer, kernel_size: int = 3, sigma: float = 1.0) -> ImageBuffer:
    k = _odd(kernel_size)
    return ImageBuffer(cv2.GaussianBlur(image.pixels, (k, k), sigma))


def median_filter(image: ImageBuffer, kernel_size: int = 3) -> ImageBuffer:
    return ImageBuffer(cv2.medianBlur(image.pixels, _odd(kernel_size)))


def subtract_background(
    image: ImageBuffer,
    background: np.ndarray,
    threshold: float = 30,
    reference: Optional[ImageBuffer] = None,
) -> ImageBuffer:
    """Zero every pixel within `threshold` of the background, keep the rest.

    The difference is taken on `reference` (the unfiltered frame the
    background was learned from) when given, otherwise on `image` itself.
    """
    source = reference if reference is not None else image
    diff = np.abs(source.pixels.astype(np.float32) - background)
    return ImageBuffer(np.where(diff > threshold, image.pixels, 0))


def equalize_histogram(image: ImageBuffer) -> ImageBuffer:
    """Global histogram equalization through a CDF lookup table."""
    histogram = np.bincount(image.pixels.ravel(), minlength=256)
    cdf = np.cumsum(histogram)
    lut = np.round(cdf * 255.0 / image.pixels.size).astype(np.uint8)
    return ImageBuffer(lut[image.pixels])


# =============================================================================
# BACKGROUND MODEL
# =============================================================================

class BackgroundModel:
    """
    Exponential moving average of past frames.

    The first frame seeds the model directly; later frames blend in at
    `learning_rate`. A frame of a different size re-seeds the model.
    """

    def __init__(self, learning_rate: float = 0.01):
        self.learning_rate = learning_rate
        self._model: Optional[np.ndarray] = None

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    @property
    def image(self) -> Optional[np.ndarray]:
        return self._model

    def update(self, image: ImageBuffer) -> None:
        current = image.pixels.astype(np.float32)
        if self._model is None or self._model.shape != current.shape:
            if self._model is not None:
                logger.info("Frame size changed to %dx%d, re-seeding background model",
                            image.width, image.height)
            self._model = current.copy()
            logger.info("Background model initialized (%dx%d)", image.width, image.height)
            return
        a = self.learning_rate
        self._model *= (1.0 - a)
        self._model += current * a

    def reset(self) -> None:
        self._model = None


# =============================================================================
# PREPROCESSING PIPELINE
# =============================================================================

class PreprocessStep(str, Enum):
    GAUSSIAN_BLUR = "gaussian_blur"
    MEDIAN_FILTER = "median_filter"
    BACKGROUND_SUBTRACTION = "background_subtraction"
    HISTOGRAM_EQUALIZATION = "histogram_equalization"


def preprocess(
    image: ImageBuffer,
    steps: Sequence,
    background: Optional[BackgroundModel],
    settings: Dict,
) -> ImageBuffer:
    """Apply the enabled steps in order. No steps returns the input.

    Background subtraction compares the raw frame with the background
    model, so earlier smoothing steps cannot create false foreground.
    """
    raw = image
    for name in steps:
        step = PreprocessStep(name)
        if step is PreprocessStep.GAUSSIAN_BLUR:
            image = gaussian_blur(image, settings["blur_kernel_size"], settings["blur_sigma"])
        elif step is PreprocessStep.MEDIAN_FILTER:
            image = median_filter(image, settings["median_kernel_size"])
        elif step is PreprocessStep.BACKGROUND_SUBTRACTION:
            if background is not None and background.image is not None \
                    and background.image.shape == image.shape:
                image = subtract_background(
                    image, background.image, settings["background_threshold"], reference=raw
                )
        elif step is PreprocessStep.HISTOGRAM_EQUALIZATION:
            image = equalize_histogram(image)
    return image
