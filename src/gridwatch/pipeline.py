"""
Grid disturbance detector: camera frame -> validated disturbances.

Per frame:
    1. Background model update
    2. Preprocessing (blur / background subtraction / equalization)
    3. Dot detection & merging
    4. Calibration (first frames, then periodically)
    5. Dot matching & disturbance classification
    6. Validation, history bookkeeping, event emission

Frame-synchronous and single-threaded: callers deliver one frame at a
time and only touch settings between frames.

Dependencies: opencv, numpy, scipy
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .calibration import GridAlignment, GridCalibrator, match_dots_to_grid
from .classifier import classify_disturbances, validate_disturbances
from .detector import DotDetector
from .models import CameraFrame, DetectedDot, GridDisturbance, GridPattern
from .preprocessing import BackgroundModel, ImageBuffer, preprocess
from .settings import get_default_settings, merge_settings

logger = logging.getLogger(__name__)

DISTURBANCE_DETECTED = "disturbance-detected"

FRAME_HISTORY_SIZE = 10
DETECTION_HISTORY_SIZE = 100


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ProcessedFrame:
    """Snapshot of one processed frame."""
    original_frame: CameraFrame = field(repr=False)
    detected_dots: Tuple[DetectedDot, ...]
    disturbances: Tuple[GridDisturbance, ...]
    grid_alignment: GridAlignment
    timestamp: float


@dataclass
class DetectionContext:
    """Bounded rolling history kept between frames."""
    frame_history: Deque[ProcessedFrame] = field(
        default_factory=lambda: deque(maxlen=FRAME_HISTORY_SIZE))
    previous_detections: Deque[GridDisturbance] = field(
        default_factory=lambda: deque(maxlen=DETECTION_HISTORY_SIZE))
    # (frame number, unfiltered disturbances) for the persistence check
    candidate_history: Deque[Tuple[int, Tuple[GridDisturbance, ...]]] = field(
        default_factory=lambda: deque(maxlen=FRAME_HISTORY_SIZE))
    current_pattern: Optional[GridPattern] = None


# =============================================================================
# DETECTOR
# =============================================================================

class GridDisturbanceDetector:
    """
    Stateful grid disturbance detector.

    Usage:
        detector = GridDisturbanceDetector(build_detection_settings(motion_threshold=8))
        detector.add_listener("disturbance-detected", on_disturbance)

        for frame in frames:
            result = detector.process_frame(frame, pattern)

        detector.dispose()
    """

    def __init__(self, settings: Optional[Dict] = None):
        """
        Args:
            settings: Detection settings dict. None = use defaults.
        """
        self._settings = merge_settings(get_default_settings(), settings or {})
        self._listeners: Dict[str, List[Callable[[GridDisturbance], None]]] = {}

        self._background = BackgroundModel(self._settings["learning_rate"])
        self._dot_detector = DotDetector()
        self._calibrator = GridCalibrator(self._settings["random_seed"])

        self._frame_count = 0
        self._is_calibrated = False
        self._alignment: Optional[GridAlignment] = None
        self.context = DetectionContext()

    # -- state --

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def is_calibrated(self) -> bool:
        return self._is_calibrated

    @property
    def grid_alignment(self) -> Optional[GridAlignment]:
        return self._alignment

    @property
    def background_model(self) -> BackgroundModel:
        return self._background

    # -- frame processing --

    def process_frame(self, frame: CameraFrame, pattern: GridPattern) -> ProcessedFrame:
        """Run the full pipeline on one frame and emit validated disturbances."""
        self._frame_count += 1
        settings = self._settings
        self.context.current_pattern = pattern

        try:
            image = ImageBuffer.from_frame(frame)
        except ValueError as e:
            logger.warning("Skipping frame %d: %s", self._frame_count, e)
            return self._finish(frame, [], [], [])

        self._background.learning_rate = settings["learning_rate"]
        self._background.update(image)

        cleaned = preprocess(image, settings["preprocessing"], self._background, settings)
        dots = self._dot_detector.detect(cleaned, settings)

        if self._should_calibrate():
            result = self._calibrator.calibrate(dots, pattern, settings, self._alignment)
            if result.accepted:
                self._alignment = result.alignment
                if result.alignment.confidence > settings["calibrated_confidence"]:
                    self._is_calibrated = True
            elif result.attempted and self._alignment is None:
                logger.warning(
                    "Frame %d: calibration failed (score %.2f, %d dots), no alignment yet",
                    self._frame_count, result.score, len(dots),
                )

        dots = match_dots_to_grid(dots, pattern, self._alignment, settings["match_threshold"])
        candidates = classify_disturbances(
            dots, pattern, self._alignment, settings,
            frame_number=self._frame_count, timestamp=frame.timestamp,
        )
        validated = validate_disturbances(candidates, settings, self.context.candidate_history)

        logger.debug(
            "Frame %d: %d dots, %d candidates, %d validated",
            self._frame_count, len(dots), len(candidates), len(validated),
        )
        return self._finish(frame, dots, candidates, validated)

    def _should_calibrate(self) -> bool:
        if not self._is_calibrated:
            return True
        if not self._settings["auto_calibration"]:
            return False
        interval = max(1, int(self._settings["calibration_interval"]))
        return self._frame_count % interval == 0

    def _finish(
        self,
        frame: CameraFrame,
        dots: List[DetectedDot],
        candidates: List[GridDisturbance],
        validated: List[GridDisturbance],
    ) -> ProcessedFrame:
        processed = ProcessedFrame(
            original_frame=frame,
            detected_dots=tuple(dots),
            disturbances=tuple(validated),
            grid_alignment=self._alignment or GridAlignment.identity(),
            timestamp=time.time(),
        )

        self.context.frame_history.append(processed)
        self.context.previous_detections.extend(validated)
        self.context.candidate_history.append((self._frame_count, tuple(candidates)))

        threshold = self._settings["minimum_disturbance_size"] / 100
        for disturbance in validated:
            if disturbance.intensity > threshold:
                self._emit(DISTURBANCE_DETECTED, disturbance)

        return processed

    # -- events --

    def add_listener(self, event: str, callback: Callable[[GridDisturbance], None]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[[GridDisturbance], None]) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def remove_all_listeners(self) -> None:
        self._listeners = {}

    def _emit(self, event: str, payload: GridDisturbance) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %s raised", event)

    # =========================================================================
    # SETTINGS & STATE MANAGEMENT
    # =========================================================================

    def update_settings(self, **partial) -> None:
        """Merge new settings. Applies from the next frame on."""
        self._settings = merge_settings(self._settings, partial)
        if "random_seed" in partial:
            self._calibrator = GridCalibrator(self._settings["random_seed"])
        logger.info("Detection settings updated: %s", sorted(partial))

    def get_settings(self) -> Dict:
        return merge_settings(self._settings, {})

    def reset(self) -> None:
        """Full reset: background, frame count, calibration and history."""
        self._background.reset()
        self._dot_detector.reset()
        self._calibrator = GridCalibrator(self._settings["random_seed"])
        self._frame_count = 0
        self._is_calibrated = False
        self._alignment = None
        self.context = DetectionContext()
        logger.info("Grid disturbance detector reset")

    def dispose(self) -> None:
        """Reset and detach all listeners."""
        self.reset()
        self.remove_all_listeners()
