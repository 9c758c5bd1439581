"""
Tests for gridwatch.settings and the CLI argument handling.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from gridwatch.__main__ import _parse_grid, main
from gridwatch.models import GridPattern
from gridwatch.settings import (
    DEFAULT_DETECTION_SETTINGS,
    SENSITIVITY_PROFILES,
    build_detection_settings,
    get_default_settings,
    get_profile,
    load_pattern,
    load_settings,
    save_settings,
)


class TestSettings:
    def test_defaults_are_copies(self) -> None:
        settings = get_default_settings()
        settings["preprocessing"].append("median_filter")
        assert "median_filter" not in DEFAULT_DETECTION_SETTINGS["preprocessing"]

    def test_overrides(self) -> None:
        settings = build_detection_settings(motion_threshold=12.0)
        assert settings["motion_threshold"] == 12.0
        assert settings["merge_threshold"] == 20.0

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_detection_settings(merge_treshold=5)

    @pytest.mark.parametrize("overrides", [
        {"validation": ["roundness"]},
        {"validation": "size_filter"},
        {"preprocessing": ["gaussian_blur", "sharpen"]},
        {"transform_model": "affine"},
    ])
    def test_invalid_values_rejected(self, overrides: dict) -> None:
        with pytest.raises(ValueError):
            build_detection_settings(**overrides)

    def test_valid_step_lists_accepted(self) -> None:
        settings = build_detection_settings(
            preprocessing=("median_filter", "histogram_equalization"),
            validation=["temporal_consistency"],
            transform_model="similarity",
        )
        assert settings["preprocessing"] == ["median_filter", "histogram_equalization"]

    def test_bad_value_in_settings_file(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("transform_model: affine\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_settings(str(path))

    def test_temporal_filtering_profiles(self) -> None:
        assert get_profile("paranormal_high")["min_persistence_frames"] == 2
        assert get_profile("precision_lab")["min_persistence_frames"] == 1

    def test_profiles_only_use_known_keys(self) -> None:
        for name in SENSITIVITY_PROFILES:
            build_detection_settings(**get_profile(name))

    def test_unknown_profile(self) -> None:
        with pytest.raises(ValueError):
            get_profile("ghost_hunter")


class TestFiles:
    def test_yaml_settings_with_profile(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("profile: paranormal_low\nmerge_threshold: 12\n", encoding="utf-8")
        settings = load_settings(str(path))
        assert settings["motion_threshold"] == 10.0
        assert settings["min_persistence_frames"] == 3
        assert settings["merge_threshold"] == 12

    def test_json_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        settings = build_detection_settings(validation=["size_filter"], random_seed=3)
        save_settings(settings, str(path))
        assert load_settings(str(path)) == settings

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_load_pattern(self, tmp_path: Path) -> None:
        path = tmp_path / "pattern.json"
        path.write_text(json.dumps({
            "id": "lab",
            "dots": [
                {"id": "a", "position": [10, 20], "intensity": 0.5},
                {"position": [30, 20], "enabled": False},
            ],
        }), encoding="utf-8")
        pattern = load_pattern(str(path))
        assert pattern.id == "lab"
        assert [d.id for d in pattern.dots] == ["a", "dot_1"]
        assert pattern.dots[0].intensity == 0.5
        assert len(pattern.enabled_dots()) == 1

    def test_pattern_without_dots(self, tmp_path: Path) -> None:
        path = tmp_path / "pattern.yaml"
        path.write_text("name: empty\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_pattern(str(path))


class TestRegularGrid:
    def test_layout(self) -> None:
        pattern = GridPattern.regular_grid(3, 2, spacing=40.0, center=(100.0, 100.0))
        assert len(pattern) == 6
        assert pattern.dots[0].id == "grid_0_0"
        assert pattern.dots[0].position == (60.0, 80.0)
        assert pattern.get("grid_2_1").position == (140.0, 120.0)


class TestCli:
    def test_parse_grid(self) -> None:
        assert _parse_grid("8x6") == (8, 6)

    def test_missing_video_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            main([str(tmp_path / "missing.mp4"), "--grid", "4x3"])
        assert exc.value.code == 1
