# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""Tests for grading configuration and presets."""

import json

import pytest

from meshgrade.core.config import (
    YAML_AVAILABLE,
    ConfigurationError,
    GradingConfig,
    LANDMARK_RADIUS_FACTOR,
    PRESETS,
    get_preset,
    list_presets,
)


class TestValidation:
    """Configuration checks run before any mesh is touched."""

    def test_valid_config(self):
        config = GradingConfig(min_length=1.0, max_length=10.0)
        assert config.validate() == []
        assert config.check() is config

    def test_min_greater_than_max(self):
        config = GradingConfig(min_length=5.0, max_length=1.0)
        with pytest.raises(ConfigurationError) as exc:
            config.check()
        assert any("max_length" in e for e in exc.value.errors)

    def test_non_positive_min(self):
        errors = GradingConfig(min_length=0.0, max_length=1.0).validate()
        assert any("min_length" in e for e in errors)

    def test_unknown_mode_and_side_reported_together(self):
        errors = GradingConfig(min_length=1.0, max_length=2.0, mode="magic", side="up").validate()
        assert len(errors) == 2

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            GradingConfig(min_length=-1.0, max_length=1.0).check()

    def test_bad_relaxation_factor(self):
        errors = GradingConfig(min_length=1.0, max_length=2.0, relaxation_factor=0.0).validate()
        assert errors

    def test_error_tolerance_fallback(self):
        assert GradingConfig(min_length=2.0, max_length=4.0).effective_error_tolerance == 2.0
        assert (
            GradingConfig(min_length=2.0, max_length=4.0, error_tolerance=-1).effective_error_tolerance
            == 2.0
        )
        assert (
            GradingConfig(min_length=2.0, max_length=4.0, error_tolerance=0.5).effective_error_tolerance
            == 0.5
        )


class TestLandmarkRadius:
    def test_defaults_to_multiple_of_max_length(self):
        config = GradingConfig(min_length=1.0, max_length=10.0)
        assert config.effective_landmark_radius == pytest.approx(LANDMARK_RADIUS_FACTOR * 10.0)

    def test_explicit_radius_kept(self):
        config = GradingConfig(min_length=1.0, max_length=10.0, landmark_radius=12.5)
        assert config.effective_landmark_radius == 12.5

    def test_negative_radius_rejected(self):
        errors = GradingConfig(min_length=1.0, max_length=10.0, landmark_radius=-1.0).validate()
        assert any("landmark_radius" in e for e in errors)


class TestSerialization:
    """Loading and saving configs."""

    def test_from_dict_normalizes_values(self):
        config = GradingConfig.from_dict(
            {
                "min_length": "1",
                "max_length": 8,
                "mode": "Distance",
                "side": " LEFT ",
                "left_ear_channel": [0, -70, 0],
            }
        )
        assert config.min_length == 1.0
        assert config.mode == "distance"
        assert config.side == "left"
        assert config.left_ear_channel == (0.0, -70.0, 0.0)

    def test_from_dict_coerces_numeric_strings(self):
        config = GradingConfig.from_dict(
            {
                "min_length": 1,
                "max_length": 8,
                "error_tolerance": "0.2",
                "left_gamma": "0.5",
                "right_gamma": 0.3,
                "convergence_tolerance": "0.01",
                "landmark_radius": "40",
            }
        )
        assert config.error_tolerance == 0.2
        assert isinstance(config.error_tolerance, float)
        assert config.left_gamma == 0.5
        assert config.convergence_tolerance == 0.01
        assert config.landmark_radius == 40.0
        assert config.effective_error_tolerance == 0.2

    def test_from_dict_rejects_non_numeric(self):
        with pytest.raises(ConfigurationError) as exc:
            GradingConfig.from_dict(
                {"min_length": 1, "max_length": 8, "error_tolerance": "fine", "left_gamma": [1]}
            )
        assert any("error_tolerance" in e for e in exc.value.errors)
        assert any("left_gamma" in e for e in exc.value.errors)

    def test_from_dict_null_keeps_default(self):
        config = GradingConfig.from_dict({"min_length": 1, "max_length": 8, "error_tolerance": None})
        assert config.error_tolerance is None

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError):
            GradingConfig.from_dict({"min_length": 1, "max_length": 2, "speed": 3})

    def test_from_dict_requires_lengths(self):
        with pytest.raises(ConfigurationError) as exc:
            GradingConfig.from_dict({"min_length": 1})
        assert any("max_length" in e for e in exc.value.errors)

    def test_bad_landmark_length(self):
        with pytest.raises(ConfigurationError):
            GradingConfig.from_dict({"min_length": 1, "max_length": 2, "left_ear_channel": [1, 2]})

    def test_json_round_trip(self, tmp_path):
        config = GradingConfig(
            min_length=1.5, max_length=6.0, side="right", right_ear_channel=(0.0, 70.0, 0.0)
        )
        path = tmp_path / "grading.json"
        config.to_json(path)

        assert json.loads(path.read_text())["side"] == "right"
        assert GradingConfig.load(path) == config

    @pytest.mark.skipif(not YAML_AVAILABLE, reason="PyYAML not installed")
    def test_yaml_round_trip(self, tmp_path):
        config = GradingConfig(min_length=1.0, max_length=5.0, mode="distance", iterations=3)
        path = tmp_path / "grading.yaml"
        config.to_yaml(path)

        assert GradingConfig.load(path) == config

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            GradingConfig.load(tmp_path / "missing.json")

    def test_replace(self):
        config = GradingConfig(min_length=1.0, max_length=5.0)
        changed = config.replace(iterations=2)

        assert changed.iterations == 2
        assert config.iterations == 10


class TestPresets:
    def test_all_presets_valid(self):
        for name in list_presets():
            assert PRESETS[name].validate() == [], name

    def test_get_preset(self):
        assert get_preset("hrtf-left").side == "left"
        assert get_preset("curvature-only").mode == "hybrid"
        assert get_preset("nonexistent") is None
