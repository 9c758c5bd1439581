"""
gridwatch: projected dot-grid disturbance detection.

Compares camera frames against a calibrated pattern of reference dots
and reports dots that disappear, move, brighten or dim.

Dependencies: opencv, numpy, scipy, pyyaml
"""

from .models import (
    Vector2,
    BoundingBox2D,
    GridDot,
    GridPattern,
    CameraFrame,
    DetectedDot,
    DisturbanceType,
    DisturbanceMetadata,
    GridDisturbance,
)
from .settings import (
    DEFAULT_DETECTION_SETTINGS,
    SENSITIVITY_PROFILES,
    get_default_settings,
    build_detection_settings,
    get_profile,
    load_settings,
    save_settings,
    load_pattern,
)
from .preprocessing import (
    ImageBuffer,
    BackgroundModel,
    PreprocessStep,
    gaussian_blur,
    median_filter,
    subtract_background,
    equalize_histogram,
    preprocess,
)
from .detector import (
    DetectionAlgorithm,
    AlgorithmConfig,
    DotDetector,
    detect_blobs,
    flood_fill_blob,
    merge_dots,
)
from .calibration import (
    GridAlignment,
    GridCalibrator,
    CalibrationResult,
    estimate_transform,
    match_dots_to_grid,
)
from .classifier import (
    ValidationStep,
    classify_disturbances,
    validate_disturbances,
)
from .pipeline import (
    DISTURBANCE_DETECTED,
    DetectionContext,
    ProcessedFrame,
    GridDisturbanceDetector,
)

__all__ = [
    # Models
    "Vector2",
    "BoundingBox2D",
    "GridDot",
    "GridPattern",
    "CameraFrame",
    "DetectedDot",
    "DisturbanceType",
    "DisturbanceMetadata",
    "GridDisturbance",
    # Settings
    "DEFAULT_DETECTION_SETTINGS",
    "SENSITIVITY_PROFILES",
    "get_default_settings",
    "build_detection_settings",
    "get_profile",
    "load_settings",
    "save_settings",
    "load_pattern",
    # Preprocessing
    "ImageBuffer",
    "BackgroundModel",
    "PreprocessStep",
    "gaussian_blur",
    "median_filter",
    "subtract_background",
    "equalize_histogram",
    "preprocess",
    # Detection
    "DetectionAlgorithm",
    "AlgorithmConfig",
    "DotDetector",
    "detect_blobs",
    "flood_fill_blob",
    "merge_dots",
    # Calibration
    "GridAlignment",
    "GridCalibrator",
    "CalibrationResult",
    "estimate_transform",
    "match_dots_to_grid",
    # Classification
    "ValidationStep",
    "classify_disturbances",
    "validate_disturbances",
    # Pipeline
    "DISTURBANCE_DETECTED",
    "DetectionContext",
    "ProcessedFrame",
    "GridDisturbanceDetector",
]
