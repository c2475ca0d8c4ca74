"""Configuration validation, overrides and scenario presets."""

from __future__ import annotations

import json
import sys
import warnings
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PARENT = ROOT.parent
for candidate in (PARENT, ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

import pytest

from society_abm.config import (
    ConfigurationError,
    SocietyConfig,
    apply_preset,
    get_preset,
    list_presets,
    load_preset,
)
from society_abm.models import Strategy


def test_defaults_are_valid() -> None:
    cfg = SocietyConfig()
    cfg.validate()
    counts = cfg.strategy_counts()
    assert sum(counts.values()) == cfg.N_AGENTS
    assert counts[Strategy.RECIPROCATOR] == 4
    assert counts[Strategy.HUMAN] == 0
    json.dumps(cfg.snapshot())


def test_proportions_are_allocated() -> None:
    cfg = SocietyConfig(N_AGENTS=10, STRATEGY_DISTRIBUTION={"cooperator": 0.5, "tit-for-tat": 0.5})
    counts = cfg.strategy_counts()
    assert counts[Strategy.COOPERATOR] == 5
    assert counts[Strategy.RECIPROCATOR] == 5


def test_mismatched_counts_are_rescaled_with_warning() -> None:
    cfg = SocietyConfig(N_AGENTS=8, STRATEGY_DISTRIBUTION={"cooperator": 3, "defector": 1})
    with pytest.warns(UserWarning):
        counts = cfg.strategy_counts()
    assert counts[Strategy.COOPERATOR] == 6
    assert counts[Strategy.DEFECTOR] == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"N_AGENTS": -1},
        {"N_EPOCHS": -2},
        {"ROUNDS_PER_EPOCH": 2.5},
        {"STRATEGY_DISTRIBUTION": {"gambler": 3}},
        {"STRATEGY_DISTRIBUTION": {"cooperator": -1}},
        {"STRATEGY_DISTRIBUTION": {"cooperator": 0, "defector": 0}},
        {"COALITION_THRESHOLD": 1.5},
        {"KARMA_FRACTION": -0.1},
        {"TRUST_LOSS_EXPLOITED": 0.01},
        {"ISOLATION_THRESHOLD": 0.7},
        {"INTERACTION_TOPOLOGY": "ring"},
        {"REBIRTH_STRATEGY": "clone"},
        {"SAMPLED_PAIR_FRACTION": 0.0},
        {"MIN_COALITION_SIZE": 1},
        {"REBIRTH_MIN_ATP": 0.0},
    ],
)
def test_invalid_configuration_fails_fast(overrides) -> None:
    with pytest.raises(ConfigurationError):
        SocietyConfig().copy_with_overrides(overrides)


def test_configuration_error_is_value_error() -> None:
    assert issubclass(ConfigurationError, ValueError)


def test_unknown_override_key() -> None:
    with pytest.raises(KeyError):
        SocietyConfig().copy_with_overrides({"NOT_A_SETTING": 1})


def test_distribution_is_replaced_but_dotted_keys_merge() -> None:
    base = SocietyConfig()
    replaced = base.copy_with_overrides({"N_AGENTS": 4, "STRATEGY_DISTRIBUTION": {"defector": 4}})
    assert replaced.STRATEGY_DISTRIBUTION == {"defector": 4}

    merged = base.copy_with_overrides({"STRATEGY_DISTRIBUTION.defector": 5, "N_AGENTS": 15})
    assert merged.STRATEGY_DISTRIBUTION["defector"] == 5
    assert merged.STRATEGY_DISTRIBUTION["reciprocator"] == 4
    # The original is untouched
    assert base.STRATEGY_DISTRIBUTION["defector"] == 2


def test_builtin_presets_validate_without_warnings() -> None:
    presets = list_presets()
    assert {"cooperative-majority", "hostile-world", "human-balanced"} <= {p.name for p in presets}
    for preset in presets:
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            cfg = apply_preset(SocietyConfig(), preset)
            assert sum(cfg.strategy_counts().values()) == cfg.N_AGENTS
        assert cfg.active_preset == preset.name


def test_get_preset_is_case_insensitive() -> None:
    assert get_preset("Hostile_World").name == "hostile-world"
    with pytest.raises(KeyError):
        get_preset("utopia")


def test_load_preset_from_file(tmp_path: Path) -> None:
    path = tmp_path / "tiny.json"
    path.write_text(json.dumps({"label": "Tiny", "overrides": {"N_AGENTS": 4, "N_EPOCHS": 1}}), encoding="utf-8")
    preset = load_preset(path)
    assert preset.name == "tiny"
    assert preset.label == "Tiny"
    cfg = apply_preset(SocietyConfig(), preset)
    assert cfg.N_AGENTS == 4
    assert cfg.N_EPOCHS == 1
    assert preset.to_metadata()["source"] == str(path.resolve())


def test_load_preset_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_preset(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"overrides": [1, 2, 3]}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_preset(bad)
