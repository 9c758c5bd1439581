"""
Detection settings, sensitivity profiles and file loaders.

Settings are a flat dict of named knobs. Defaults live in
DEFAULT_DETECTION_SETTINGS; overrides are validated against its keys.

Dependencies: pyyaml
"""

import json
import os
from typing import Dict

import yaml

from .calibration import TRANSFORM_MODELS
from .classifier import ValidationStep
from .models import GridPattern
from .preprocessing import PreprocessStep


# =============================================================================
# DEFAULT SETTINGS
# =============================================================================

DEFAULT_DETECTION_SETTINGS = {
    # Emission
    "minimum_disturbance_size": 10,  # percent of severity required to emit

    # Background model
    "learning_rate": 0.01,

    # Preprocessing, applied in list order
    "preprocessing": ["gaussian_blur", "background_subtraction"],
    "blur_kernel_size": 3,
    "blur_sigma": 1.0,
    "median_kernel_size": 3,
    "background_threshold": 30,

    # Blob detection
    "blob_enabled": True,
    "blob_weight": 0.6,
    "min_threshold": 50,
    "min_area": 10,
    "max_area": 1000,

    # Template matching
    "template_matching_enabled": False,
    "template_matching_weight": 0.4,
    "template_threshold": 0.7,
    "template_size": 9,
    "template_sigma": 2.0,

    # Optical flow
    "optical_flow_enabled": False,
    "optical_flow_weight": 0.5,
    "optical_flow_window": 15,
    "optical_flow_max_error": 30.0,

    # Candidate merging
    "merge_threshold": 20.0,

    # Calibration
    "auto_calibration": True,
    "calibration_interval": 30,
    "calibrated_confidence": 0.8,
    "ransac_iterations": 100,
    "correspondence_radius": 100.0,
    "inlier_threshold": 20.0,
    "transform_model": "translation",
    "random_seed": None,

    # Matching and classification
    "match_threshold": 30.0,
    "motion_threshold": 5.0,
    "intensity_change_threshold": 0.2,
    "displacement_scale": 50.0,

    # Validation, applied in list order
    "validation": ["size_filter", "intensity_filter", "geometry_check", "temporal_consistency"],
    "min_size": 2.0,
    "max_size": 50.0,
    "min_intensity": 0.1,
    "max_aspect_ratio": 3.0,
    "min_persistence_frames": 1,
    "max_frame_gap": 3,
    "persistence_radius": 20.0,
}


def get_default_settings() -> Dict:
    """Return a copy of the default detection settings."""
    settings = DEFAULT_DETECTION_SETTINGS.copy()
    settings["preprocessing"] = list(settings["preprocessing"])
    settings["validation"] = list(settings["validation"])
    return settings


def _check_value(key: str, value) -> None:
    """Reject values the pipeline would only fail on at the next frame."""
    if key == "preprocessing":
        steps = [s.value for s in PreprocessStep]
        bad = [name for name in value if name not in steps]
    elif key == "validation":
        steps = [s.value for s in ValidationStep]
        bad = [name for name in value if name not in steps]
    elif key == "transform_model":
        steps = list(TRANSFORM_MODELS)
        bad = [] if value in steps else [value]
    else:
        return
    if bad:
        raise ValueError(f"Invalid {key} value(s) {bad} (expected from {steps})")


def merge_settings(base: Dict, overrides: Dict) -> Dict:
    """Copy of `base` with `overrides` applied. Unknown keys or values are rejected."""
    merged = {k: list(v) if isinstance(v, list) else v for k, v in base.items()}
    for key, value in overrides.items():
        if key not in DEFAULT_DETECTION_SETTINGS:
            raise ValueError(f"Unknown detection setting: {key}")
        if isinstance(value, (list, tuple)):
            value = list(value)
        elif key in ("preprocessing", "validation"):
            raise ValueError(f"{key} must be a list of step names")
        _check_value(key, value)
        merged[key] = value
    return merged


def build_detection_settings(**kwargs) -> Dict:
    """Build detection settings from defaults + overrides."""
    return merge_settings(get_default_settings(), kwargs)


# =============================================================================
# SENSITIVITY PROFILES
# =============================================================================

SENSITIVITY_PROFILES = {
    "paranormal_low": {
        "minimum_disturbance_size": 20,
        "motion_threshold": 10.0,
        "min_persistence_frames": 3,
        "auto_calibration": True,
    },
    "paranormal_medium": {
        "minimum_disturbance_size": 10,
        "motion_threshold": 5.0,
        "min_persistence_frames": 2,
        "auto_calibration": True,
    },
    "paranormal_high": {
        "minimum_disturbance_size": 5,
        "motion_threshold": 2.0,
        "min_persistence_frames": 2,
        "auto_calibration": True,
    },
    "standard_general": {
        "minimum_disturbance_size": 15,
        "motion_threshold": 8.0,
        "min_persistence_frames": 2,
        "auto_calibration": False,
    },
    "precision_lab": {
        "minimum_disturbance_size": 2,
        "motion_threshold": 1.0,
        "min_persistence_frames": 1,
        "auto_calibration": False,
    },
}


def get_profile(name: str) -> Dict:
    """Settings overrides for a named sensitivity profile."""
    if name not in SENSITIVITY_PROFILES:
        raise ValueError(
            f"Unknown sensitivity profile: {name} "
            f"(expected one of {sorted(SENSITIVITY_PROFILES)})"
        )
    return dict(SENSITIVITY_PROFILES[name])


# =============================================================================
# FILE I/O
# =============================================================================

def _read_structured(path: str) -> Dict:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"File not found: {path}")
    with open(path) as f:
        if path.endswith((".yaml", ".yml")):
            data = yaml.safe_load(f) or {}
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top of {path}")
    return data


def load_settings(path: str) -> Dict:
    """Load a YAML or JSON settings file and merge with defaults.

    A top-level `profile` key applies that sensitivity profile before the
    remaining keys.
    """
    overrides = _read_structured(path)
    settings = get_default_settings()
    profile = overrides.pop("profile", None)
    if profile:
        settings = merge_settings(settings, get_profile(profile))
    return merge_settings(settings, overrides)


def save_settings(settings: Dict, path: str) -> None:
    """Write settings as YAML or JSON, chosen by file extension."""
    with open(path, "w") as f:
        if path.endswith((".yaml", ".yml")):
            yaml.safe_dump(dict(settings), f, sort_keys=False)
        else:
            json.dump(settings, f, indent=2)


def load_pattern(path: str) -> GridPattern:
    """Load a grid pattern from a YAML or JSON file."""
    return GridPattern.from_dict(_read_structured(path))
