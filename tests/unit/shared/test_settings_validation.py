"""
Tests for configuration validation and YAML loading.
"""

import pytest

from learncore.shared.config import ClassificationConfig, LearnCoreSettings


def test_default_weights():
    config = ClassificationConfig()

    assert config.deterministic_weight == 0.6
    assert config.ai_weight == 0.4
    assert (config.spread_weight, config.completion_weight, config.consistency_weight) == (0.4, 0.3, 0.3)


def test_blend_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ClassificationConfig(deterministic_weight=0.6, ai_weight=0.6)


def test_weights_must_lie_in_unit_interval():
    with pytest.raises(ValueError):
        ClassificationConfig(spread_weight=1.5)


def test_load_from_yaml(tmp_path):
    """Test that the learncore root key feeds the sub-configs."""
    config_path = tmp_path / "learncore.yaml"
    config_path.write_text(
        "learncore:\n"
        "  recommendation:\n"
        "    default_limit: 5\n"
        "  classification:\n"
        "    deterministic_weight: 0.7\n"
        "    ai_weight: 0.3\n",
        encoding="utf-8",
    )

    loaded = LearnCoreSettings.load_from_yaml(config_path)

    assert loaded.recommendation.default_limit == 5
    assert loaded.classification.deterministic_weight == 0.7


def test_missing_yaml_uses_defaults(tmp_path):
    loaded = LearnCoreSettings.load_from_yaml(tmp_path / "missing.yaml")
    assert loaded.recommendation.default_limit == 10
