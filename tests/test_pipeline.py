"""
Tests for gridwatch.pipeline: the frame-by-frame detector facade.

Frames are rendered from the pattern itself, so with preprocessing off
the first frame calibrates to (near) identity.
"""

from __future__ import annotations

import numpy as np
import pytest

from conftest import make_frame, positions_of, render_dots
from gridwatch.models import DisturbanceType, GridPattern
from gridwatch.pipeline import DISTURBANCE_DETECTED, GridDisturbanceDetector
from gridwatch.settings import build_detection_settings


def calibrated_detector(pattern: GridPattern, settings: dict) -> GridDisturbanceDetector:
    detector = GridDisturbanceDetector(settings)
    detector.process_frame(make_frame(render_dots(positions_of(pattern)), timestamp=0.0), pattern)
    return detector


class TestCalibrationFlow:
    def test_first_frame_calibrates(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        assert detector.is_calibrated
        assert detector.grid_alignment.confidence > 0.8
        assert detector.grid_alignment.translation.x == pytest.approx(0.0, abs=1e-6)

    def test_uncalibrated_frame_reports_identity(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = GridDisturbanceDetector(raw_settings)
        blank = make_frame(np.zeros((240, 320), dtype=np.uint8))
        result = detector.process_frame(blank, square_pattern)
        assert detector.grid_alignment is None
        assert result.grid_alignment.confidence == 0.0
        assert np.allclose(result.grid_alignment.calibration_matrix, np.eye(3))

    def test_recalibrates_on_interval(self, square_pattern: GridPattern, raw_settings: dict,
                                      monkeypatch: pytest.MonkeyPatch) -> None:
        detector = calibrated_detector(square_pattern, dict(raw_settings, calibration_interval=3))
        calls = []
        original = detector._calibrator.calibrate

        def spy(*args, **kwargs):
            calls.append(detector.frame_count)
            return original(*args, **kwargs)

        monkeypatch.setattr(detector._calibrator, "calibrate", spy)
        frame = make_frame(render_dots(positions_of(square_pattern)))
        for _ in range(5):
            detector.process_frame(frame, square_pattern)
        assert calls == [3, 6]

    def test_no_recalibration_without_auto_calibration(self, square_pattern: GridPattern,
                                                       raw_settings: dict) -> None:
        settings = dict(raw_settings, calibration_interval=2, auto_calibration=False)
        detector = calibrated_detector(square_pattern, settings)
        before = detector.grid_alignment
        shifted = [(p.x + 8, p.y) for p in positions_of(square_pattern)]
        for _ in range(4):
            detector.process_frame(make_frame(render_dots(shifted)), square_pattern)
        assert detector.grid_alignment is before


class TestDisturbances:
    def test_occlusion_end_to_end(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        events = []
        detector.add_listener(DISTURBANCE_DETECTED, events.append)

        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_1_1"])), timestamp=1.0)
        result = detector.process_frame(frame, square_pattern)

        assert len(result.disturbances) == 1
        occlusion = result.disturbances[0]
        assert occlusion.disturbance_type is DisturbanceType.DOT_OCCLUSION
        assert occlusion.affected_dots == ("grid_1_1",)
        assert occlusion.frame_number == 2
        assert occlusion.timestamp == 1.0
        assert events == [occlusion]

    def test_displacement_end_to_end(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        moved = [(p.x + 12, p.y) if i == 0 else p for i, p in enumerate(positions_of(square_pattern))]
        result = detector.process_frame(make_frame(render_dots(moved)), square_pattern)

        assert len(result.disturbances) == 1
        displacement = result.disturbances[0]
        assert displacement.disturbance_type is DisturbanceType.DOT_DISPLACEMENT
        assert displacement.affected_dots == ("grid_0_0",)
        assert displacement.intensity == pytest.approx(12 / 50, abs=0.01)

    def test_static_scene_is_quiet_with_background_subtraction(self, square_pattern: GridPattern) -> None:
        """With default preprocessing a static scene is all background."""
        detector = GridDisturbanceDetector(build_detection_settings(random_seed=1))
        frame = make_frame(render_dots(positions_of(square_pattern)))
        detector.process_frame(frame, square_pattern)
        result = detector.process_frame(frame, square_pattern)
        assert result.detected_dots == ()

    def test_emission_threshold(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, dict(raw_settings, minimum_disturbance_size=90))
        events = []
        detector.add_listener(DISTURBANCE_DETECTED, events.append)
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        result = detector.process_frame(frame, square_pattern)
        assert len(result.disturbances) == 1
        assert events == []

    def test_listener_errors_do_not_stop_the_frame(self, square_pattern: GridPattern,
                                                   raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        events = []

        def broken(disturbance):
            raise RuntimeError("listener failure")

        detector.add_listener(DISTURBANCE_DETECTED, broken)
        detector.add_listener(DISTURBANCE_DETECTED, events.append)
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        detector.process_frame(frame, square_pattern)
        assert len(events) == 1

    def test_remove_listener(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        events = []
        detector.add_listener(DISTURBANCE_DETECTED, events.append)
        detector.remove_listener(DISTURBANCE_DETECTED, events.append)
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        detector.process_frame(frame, square_pattern)
        assert events == []

    def test_persistence_delays_emission(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, dict(raw_settings, min_persistence_frames=2))
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        assert detector.process_frame(frame, square_pattern).disturbances == ()
        assert len(detector.process_frame(frame, square_pattern).disturbances) == 1


class TestStateManagement:
    def test_reset_invariant(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        for _ in range(3):
            detector.process_frame(frame, square_pattern)

        detector.reset()
        assert detector.frame_count == 0
        assert not detector.is_calibrated
        assert detector.grid_alignment is None
        assert len(detector.context.frame_history) == 0
        assert len(detector.context.previous_detections) == 0
        assert not detector.background_model.is_initialized

    def test_history_is_bounded_fifo(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = GridDisturbanceDetector(raw_settings)
        for i in range(30):
            blank = make_frame(np.zeros((240, 320), dtype=np.uint8), timestamp=float(i))
            detector.process_frame(blank, square_pattern)

        history = detector.context.frame_history
        assert len(history) == 10
        assert history[0].original_frame.timestamp == 20.0
        assert history[-1].original_frame.timestamp == 29.0
        # four occlusions per frame for thirty frames
        assert len(detector.context.previous_detections) == 100
        assert detector.context.previous_detections[0].frame_number == 6

    def test_invalid_frame_still_counts(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = GridDisturbanceDetector(raw_settings)
        frame = make_frame(np.zeros((240, 320), dtype=np.uint8))
        frame.image = np.array([], dtype=np.uint8)
        result = detector.process_frame(frame, square_pattern)
        assert detector.frame_count == 1
        assert result.detected_dots == ()
        assert result.disturbances == ()
        assert not detector.background_model.is_initialized

    def test_settings_apply_from_next_frame(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = calibrated_detector(square_pattern, raw_settings)
        detector.update_settings(validation=["intensity_filter"], min_intensity=0.9)
        frame = make_frame(render_dots(positions_of(square_pattern, skip=["grid_0_0"])))
        assert detector.process_frame(frame, square_pattern).disturbances == ()
        assert detector.get_settings()["min_intensity"] == 0.9

    def test_unknown_setting_rejected(self) -> None:
        detector = GridDisturbanceDetector()
        with pytest.raises(ValueError):
            detector.update_settings(sensitivityy=0.5)

    @pytest.mark.parametrize("partial", [
        {"validation": ["roundness"]},
        {"preprocessing": ["sharpen"]},
        {"transform_model": "affine"},
    ])
    def test_invalid_setting_value_rejected_before_frame(self, square_pattern: GridPattern,
                                                         raw_settings: dict, partial: dict) -> None:
        detector = GridDisturbanceDetector(raw_settings)
        with pytest.raises(ValueError):
            detector.update_settings(**partial)
        result = detector.process_frame(make_frame(render_dots(positions_of(square_pattern))), square_pattern)
        assert detector.is_calibrated
        assert result.disturbances == ()

    def test_invalid_setting_value_rejected_by_constructor(self) -> None:
        with pytest.raises(ValueError):
            GridDisturbanceDetector({"transform_model": "affine"})

    def test_random_seed_update_reseeds_calibrator(self) -> None:
        detector = GridDisturbanceDetector(build_detection_settings(random_seed=1))
        detector.update_settings(random_seed=2)
        fresh = GridDisturbanceDetector(build_detection_settings(random_seed=2))
        assert detector._calibrator._rng.integers(1 << 30) == fresh._calibrator._rng.integers(1 << 30)

    def test_get_settings_returns_copy(self) -> None:
        detector = GridDisturbanceDetector()
        settings = detector.get_settings()
        settings["motion_threshold"] = 999
        settings["validation"].append("size_filter")
        assert detector.get_settings()["motion_threshold"] == 5.0
        assert len(detector.get_settings()["validation"]) == 4

    def test_dispose_detaches_listeners(self, square_pattern: GridPattern, raw_settings: dict) -> None:
        detector = GridDisturbanceDetector(raw_settings)
        events = []
        detector.add_listener(DISTURBANCE_DETECTED, events.append)
        detector.dispose()
        detector.process_frame(make_frame(np.zeros((240, 320), dtype=np.uint8)), square_pattern)
        assert events == []
        assert detector.frame_count == 1
