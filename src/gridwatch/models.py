"""
Shared data types for grid disturbance detection.

Patterns, frames, detected dots and disturbances are plain dataclasses.
Only DetectedDot is mutable (the matcher annotates it in place); everything
handed to callers is frozen.

Dependencies: numpy
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple


# =============================================================================
# GEOMETRY
# =============================================================================

class Vector2(NamedTuple):
    x: float
    y: float

    def norm(self) -> float:
        return float(np.hypot(self.x, self.y))


class BoundingBox2D(NamedTuple):
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def around(cls, center: Vector2, size: float) -> "BoundingBox2D":
        """Square box of side `size` centred on `center`."""
        return cls(center.x - size / 2, center.y - size / 2, size, size)


# =============================================================================
# GRID PATTERN
# =============================================================================

@dataclass(frozen=True)
class GridDot:
    """One expected reference point of the projected pattern."""
    id: str
    position: Vector2
    intensity: float = 1.0  # 0-1
    size: float = 5.0  # beam diameter in pixels
    enabled: bool = True


@dataclass(frozen=True)
class GridPattern:
    """Ordered set of expected dots, edited outside the detector."""
    dots: Tuple[GridDot, ...]
    id: str = "pattern"
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "dots", tuple(self.dots))

    def __len__(self) -> int:
        return len(self.dots)

    def enabled_dots(self) -> List[GridDot]:
        return [d for d in self.dots if d.enabled]

    def get(self, dot_id: str) -> Optional[GridDot]:
        for dot in self.dots:
            if dot.id == dot_id:
                return dot
        return None

    @classmethod
    def regular_grid(
        cls,
        cols: int,
        rows: int,
        spacing: float = 50.0,
        center: Tuple[float, float] = (0.0, 0.0),
        intensity: float = 1.0,
        size: float = 5.0,
    ) -> "GridPattern":
        """Rectangular grid centred on `center`, ids `grid_<col>_<row>`."""
        cx, cy = center
        dots = []
        for y in range(rows):
            for x in range(cols):
                dots.append(GridDot(
                    id=f"grid_{x}_{y}",
                    position=Vector2(
                        (x - (cols - 1) / 2) * spacing + cx,
                        (y - (rows - 1) / 2) * spacing + cy,
                    ),
                    intensity=intensity,
                    size=size,
                ))
        return cls(dots=tuple(dots), id=f"grid_{cols}x{rows}", name="Regular grid")

    @classmethod
    def from_dict(cls, data: Dict) -> "GridPattern":
        """Build a pattern from parsed YAML/JSON."""
        raw_dots = data.get("dots")
        if not isinstance(raw_dots, list) or not raw_dots:
            raise ValueError("Pattern must contain a non-empty 'dots' list")
        dots = []
        for i, raw in enumerate(raw_dots):
            try:
                x, y = raw["position"]
            except (KeyError, TypeError, ValueError):
                raise ValueError(f"Dot {i} needs a 'position' of [x, y]")
            dots.append(GridDot(
                id=str(raw.get("id", f"dot_{i}")),
                position=Vector2(float(x), float(y)),
                intensity=float(raw.get("intensity", 1.0)),
                size=float(raw.get("size", 5.0)),
                enabled=bool(raw.get("enabled", True)),
            ))
        return cls(dots=tuple(dots), id=str(data.get("id", "pattern")), name=str(data.get("name", "")))


# =============================================================================
# FRAMES AND DETECTIONS
# =============================================================================

@dataclass
class CameraFrame:
    """Raw grayscale frame from the capture side."""
    image: np.ndarray = field(repr=False)
    width: int
    height: int
    timestamp: float
    frame_number: int = 0


@dataclass
class DetectedDot:
    """Candidate dot found in the current frame."""
    position: Vector2
    intensity: float
    size: float
    confidence: float
    matched: bool = False
    id: Optional[str] = None
    expected_position: Optional[Vector2] = None
    displacement: Optional[Vector2] = None


# =============================================================================
# DISTURBANCES
# =============================================================================

class DisturbanceType(str, Enum):
    DOT_OCCLUSION = "dot_occlusion"
    DOT_DISPLACEMENT = "dot_displacement"
    DOT_BRIGHTENING = "dot_brightening"
    DOT_DIMMING = "dot_dimming"


@dataclass(frozen=True)
class DisturbanceMetadata:
    original_positions: Tuple[Vector2, ...]
    current_positions: Tuple[Vector2, ...]
    original_intensities: Tuple[float, ...]
    current_intensities: Tuple[float, ...]
    bounding_box: BoundingBox2D
    classification: str
    velocity_vector: Optional[Vector2] = None


@dataclass(frozen=True)
class GridDisturbance:
    """Classified deviation between the frame and the expected pattern."""
    id: str
    timestamp: float
    frame_number: int
    affected_dots: Tuple[str, ...]
    disturbance_type: DisturbanceType
    intensity: float  # severity, 0-1
    position: Vector2
    size: Vector2
    duration: float
    confidence: float
    metadata: DisturbanceMetadata

    def to_dict(self) -> Dict:
        """JSON-friendly representation."""
        meta = self.metadata
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "frame_number": self.frame_number,
            "affected_dots": list(self.affected_dots),
            "disturbance_type": self.disturbance_type.value,
            "intensity": round(self.intensity, 4),
            "position": [self.position.x, self.position.y],
            "size": [self.size.x, self.size.y],
            "duration": self.duration,
            "confidence": round(self.confidence, 4),
            "classification": meta.classification,
            "bounding_box": list(meta.bounding_box),
            "velocity_vector": list(meta.velocity_vector) if meta.velocity_vector else None,
        }


def points_array(points: Iterable[Tuple[float, float]]) -> np.ndarray:
    """Stack (x, y) pairs into an (N, 2) float array."""
    arr = np.array([(p[0], p[1]) for p in points], dtype=np.float64)
    return arr.reshape(-1, 2)
