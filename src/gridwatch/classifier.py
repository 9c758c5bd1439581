"""
Disturbance classification and validation.

Matched and unmatched dots are turned into typed GridDisturbance records,
then passed through an ordered chain of filters. Filters only drop
records; they never change the ones they keep.

Dependencies: numpy
"""

import uuid
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .calibration import GridAlignment
from .models import (
    BoundingBox2D,
    DetectedDot,
    DisturbanceMetadata,
    DisturbanceType,
    GridDisturbance,
    GridDot,
    GridPattern,
    Vector2,
)

OCCLUSION_INTENSITY = 0.8
OCCLUSION_CONFIDENCE = 0.7


# =============================================================================
# CLASSIFICATION
# =============================================================================

def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _occlusion(dot: GridDot, position: Vector2, frame_number: int, timestamp: float) -> GridDisturbance:
    return GridDisturbance(
        id=_new_id("occlusion"),
        timestamp=timestamp,
        frame_number=frame_number,
        affected_dots=(dot.id,),
        disturbance_type=DisturbanceType.DOT_OCCLUSION,
        intensity=OCCLUSION_INTENSITY,
        position=position,
        size=Vector2(dot.size, dot.size),
        duration=0.0,
        confidence=OCCLUSION_CONFIDENCE,
        metadata=DisturbanceMetadata(
            original_positions=(position,),
            current_positions=(),
            original_intensities=(dot.intensity,),
            current_intensities=(),
            bounding_box=BoundingBox2D.around(position, dot.size),
            classification="occlusion",
        ),
    )


def _displacement(
    dot: DetectedDot,
    expected: GridDot,
    magnitude: float,
    scale: float,
    frame_number: int,
    timestamp: float,
) -> GridDisturbance:
    pos, exp = dot.position, dot.expected_position
    box = BoundingBox2D(
        min(pos.x, exp.x) - dot.size / 2,
        min(pos.y, exp.y) - dot.size / 2,
        abs(pos.x - exp.x) + dot.size,
        abs(pos.y - exp.y) + dot.size,
    )
    return GridDisturbance(
        id=_new_id("displacement"),
        timestamp=timestamp,
        frame_number=frame_number,
        affected_dots=(dot.id,),
        disturbance_type=DisturbanceType.DOT_DISPLACEMENT,
        intensity=min(1.0, magnitude / scale),
        position=pos,
        size=Vector2(dot.size, dot.size),
        duration=0.0,
        confidence=dot.confidence,
        metadata=DisturbanceMetadata(
            original_positions=(exp,),
            current_positions=(pos,),
            original_intensities=(expected.intensity,),
            current_intensities=(dot.intensity,),
            bounding_box=box,
            classification="displacement",
            velocity_vector=dot.displacement,
        ),
    )


def _intensity_change(
    dot: DetectedDot,
    expected: GridDot,
    delta: float,
    frame_number: int,
    timestamp: float,
) -> GridDisturbance:
    brighter = delta > 0
    return GridDisturbance(
        id=_new_id("intensity"),
        timestamp=timestamp,
        frame_number=frame_number,
        affected_dots=(dot.id,),
        disturbance_type=DisturbanceType.DOT_BRIGHTENING if brighter else DisturbanceType.DOT_DIMMING,
        intensity=abs(delta),
        position=dot.position,
        size=Vector2(dot.size, dot.size),
        duration=0.0,
        confidence=dot.confidence,
        metadata=DisturbanceMetadata(
            original_positions=(dot.expected_position or dot.position,),
            current_positions=(dot.position,),
            original_intensities=(expected.intensity,),
            current_intensities=(dot.intensity,),
            bounding_box=BoundingBox2D.around(dot.position, dot.size),
            classification="brightening" if brighter else "dimming",
        ),
    )


def classify_disturbances(
    dots: Sequence[DetectedDot],
    pattern: GridPattern,
    alignment: Optional[GridAlignment],
    settings: Dict,
    frame_number: int = 0,
    timestamp: float = 0.0,
) -> List[GridDisturbance]:
    """
    Compare matched detections against the pattern.

    Produces, in order: an occlusion for every enabled dot without a match,
    a displacement for every match moved beyond `motion_threshold`, and a
    brightening/dimming for every remaining match whose intensity differs
    by more than `intensity_change_threshold`. Each dot yields at most one.
    """
    alignment = alignment or GridAlignment.identity()
    disturbances: List[GridDisturbance] = []

    matched = {d.id: d for d in dots if d.matched and d.id is not None}

    for expected in pattern.enabled_dots():
        if expected.id not in matched:
            position = alignment.transform_point(expected.position)
            disturbances.append(_occlusion(expected, position, frame_number, timestamp))

    changed: List[Tuple[DetectedDot, GridDot, float]] = []
    for dot in matched.values():
        expected = pattern.get(dot.id)
        if expected is None or not expected.enabled:
            continue

        magnitude = float(np.hypot(*dot.displacement)) if dot.displacement else 0.0
        if dot.expected_position is not None and magnitude > settings["motion_threshold"]:
            disturbances.append(_displacement(
                dot, expected, magnitude, settings["displacement_scale"], frame_number, timestamp
            ))
            continue

        delta = dot.intensity - expected.intensity
        if abs(delta) > settings["intensity_change_threshold"]:
            changed.append((dot, expected, delta))

    for dot, expected, delta in changed:
        disturbances.append(_intensity_change(dot, expected, delta, frame_number, timestamp))

    return disturbances


# =============================================================================
# VALIDATION FILTERS
# =============================================================================

class ValidationStep(str, Enum):
    SIZE_FILTER = "size_filter"
    INTENSITY_FILTER = "intensity_filter"
    GEOMETRY_CHECK = "geometry_check"
    TEMPORAL_CONSISTENCY = "temporal_consistency"


def filter_by_size(
    disturbances: Iterable[GridDisturbance],
    min_size: float = 2.0,
    max_size: float = 50.0,
) -> List[GridDisturbance]:
    return [d for d in disturbances if min_size <= max(d.size.x, d.size.y) <= max_size]


def filter_by_intensity(
    disturbances: Iterable[GridDisturbance],
    min_intensity: float = 0.1,
) -> List[GridDisturbance]:
    return [d for d in disturbances if d.intensity >= min_intensity]


def filter_by_geometry(
    disturbances: Iterable[GridDisturbance],
    max_aspect_ratio: float = 3.0,
) -> List[GridDisturbance]:
    kept = []
    for d in disturbances:
        short = min(d.size.x, d.size.y)
        if short <= 0:
            continue
        if max(d.size.x, d.size.y) / short <= max_aspect_ratio:
            kept.append(d)
    return kept


# frame number paired with that frame's unfiltered disturbances
CandidateHistory = Sequence[Tuple[int, Sequence[GridDisturbance]]]


def is_persistent(
    disturbance: GridDisturbance,
    history: CandidateHistory,
    min_frames: int = 1,
    max_frame_gap: int = 3,
    radius: float = 20.0,
) -> bool:
    """
    True when the same kind of disturbance was seen near the same place in
    at least `min_frames` frames (this one included), walking back through
    `history` without skipping more than `max_frame_gap` frames at a time.
    """
    hits = 1
    last_frame = disturbance.frame_number
    for frame_number, candidates in reversed(history):
        if hits >= min_frames:
            break
        if frame_number >= disturbance.frame_number:
            continue
        if last_frame - frame_number > max_frame_gap:
            break
        for other in candidates:
            if other.disturbance_type is not disturbance.disturbance_type:
                continue
            if np.hypot(other.position.x - disturbance.position.x,
                        other.position.y - disturbance.position.y) <= radius:
                hits += 1
                last_frame = frame_number
                break
    return hits >= min_frames


def filter_by_persistence(
    disturbances: Iterable[GridDisturbance],
    history: CandidateHistory,
    min_frames: int = 1,
    max_frame_gap: int = 3,
    radius: float = 20.0,
) -> List[GridDisturbance]:
    if min_frames <= 1:
        return list(disturbances)
    return [d for d in disturbances if is_persistent(d, history, min_frames, max_frame_gap, radius)]


def validate_disturbances(
    disturbances: Sequence[GridDisturbance],
    settings: Dict,
    history: CandidateHistory = (),
) -> List[GridDisturbance]:
    """Run the validation steps listed in settings, in order."""
    kept = list(disturbances)
    for name in settings["validation"]:
        step = ValidationStep(name)
        if step is ValidationStep.SIZE_FILTER:
            kept = filter_by_size(kept, settings["min_size"], settings["max_size"])
        elif step is ValidationStep.INTENSITY_FILTER:
            kept = filter_by_intensity(kept, settings["min_intensity"])
        elif step is ValidationStep.GEOMETRY_CHECK:
            kept = filter_by_geometry(kept, settings["max_aspect_ratio"])
        elif step is ValidationStep.TEMPORAL_CONSISTENCY:
            kept = filter_by_persistence(
                kept, history,
                settings["min_persistence_frames"],
                settings["max_frame_gap"],
                settings["persistence_radius"],
            )
    return kept
