"""
Simulation configuration dataclass and scenario presets for Society ABM.

This module provides the configuration system for the multi-agent trust
society, including every tunable parameter, the built-in scenario presets,
and validation utilities. The configuration structure is designed to support:

1. **Reproducibility**: Every run captures a complete configuration snapshot
   together with the random seed, enabling exact replication of results.

2. **Scenarios**: Built-in presets bundle overrides that reproduce classic
   settings (cooperative majority, hostile world, reciprocity dominance,
   trust scarcity, a pure learning society, and human-player tables).

3. **Fail-fast validation**: Malformed populations, strategy mixes, payoff
   or trust tables are rejected before a single round executes.

Theoretical Foundation
----------------------
The payoff matrix and strategy set follow the iterated prisoner's dilemma
tradition:

    Axelrod, R. (1984). The Evolution of Cooperation. Basic Books.

    Nowak, M. A. (2006). Five rules for the evolution of cooperation.
    Science, 314(5805), 1560-1563.

Key design decisions:

- **Directional trust**: Every agent keeps its own trust toward each
  partner; trust is asymmetric and bounded to [0, 1].

- **ATP economy**: Interactions cost ATP and pay out according to the
  prisoner's dilemma matrix; exhausted agents die at the epoch boundary.

- **Karma**: Agents that die in good standing are reborn into the same
  slot, carrying a fraction of their final ATP and reputation forward.

Usage
-----
Basic configuration:

    >>> config = SocietyConfig()
    >>> config = config.copy_with_overrides({"N_AGENTS": 20})

With a scenario preset:

    >>> from society_abm.config import get_preset, apply_preset
    >>> preset = get_preset("hostile-world")
    >>> config = apply_preset(SocietyConfig(), preset)
"""

from __future__ import annotations

import copy
import json
import math
import os
import warnings
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Strategy
from .utils import allocate_counts, normalize_strategy_label

INTERACTION_TOPOLOGIES = ("random", "complete", "sampled")
REBIRTH_STRATEGIES = ("inherit", "resample")


class ConfigurationError(ValueError):
    """Raised when a configuration cannot produce a valid simulation."""


@dataclass
class SocietyConfig:
    """Configuration for one society simulation run."""

    # Population
    # =========================================================================
    # STRATEGY_DISTRIBUTION accepts either integer counts (summing to
    # N_AGENTS) or proportions (summing to 1.0). Keys are strategy tags.
    # =========================================================================
    N_AGENTS: int = 12
    STRATEGY_DISTRIBUTION: Dict[str, float] = field(
        default_factory=lambda: {
            "cooperator": 3,
            "defector": 2,
            "reciprocator": 4,
            "cautious": 2,
            "adaptive": 1,
            "human": 0,
        }
    )
    RANDOM_SEED: Optional[int] = 42

    # Schedule
    N_EPOCHS: int = 5
    ROUNDS_PER_EPOCH: int = 10

    # Interaction topology
    # "random": each live agent seeks INTERACTIONS_PER_ROUND random partners
    # "complete": every live pair meets once per round
    # "sampled": a SAMPLED_PAIR_FRACTION subset of all pairs meets per round
    INTERACTION_TOPOLOGY: str = "random"
    INTERACTIONS_PER_ROUND: int = 2
    SAMPLED_PAIR_FRACTION: float = 0.5

    # ATP economy (prisoner's dilemma payoffs, applied on top of the cost)
    INITIAL_ATP: float = 100.0
    INTERACTION_COST: float = 2.0
    COOPERATION_REWARD: float = 6.0
    EXPLOITATION_REWARD: float = 8.0
    SUCKERS_PAYOFF: float = -3.0
    MUTUAL_DEFECTION_PAYOFF: float = 1.0

    # Trust rules (observer's trust toward the observed partner)
    INITIAL_TRUST: float = 0.5
    TRUST_GAIN_COOPERATE: float = 0.08
    TRUST_LOSS_EXPLOITED: float = 0.12
    TRUST_LOSS_EXPLOITER: float = 0.02
    TRUST_LOSS_MUTUAL_DEFECTION: float = 0.036
    CAUTIOUS_TRUST_THRESHOLD: float = 0.4

    # Social structure
    COALITION_THRESHOLD: float = 0.6
    MIN_COALITION_SIZE: int = 2
    ACTIVE_EDGE_THRESHOLD: float = 0.5
    ISOLATION_THRESHOLD: float = 0.2

    # Lifecycle (evaluated at epoch boundaries)
    ENABLE_REBIRTH: bool = True
    EXCLUSION_TRUST_THRESHOLD: float = 0.0  # strict "<"; 0.0 disables trust-collapse deaths
    REBIRTH_TRUST_THRESHOLD: float = 0.3
    KARMA_FRACTION: float = 0.4
    REBIRTH_MIN_ATP: float = 20.0  # floor so a reborn agent never starts exhausted
    REBIRTH_STRATEGY: str = "inherit"

    # Event detection
    TRUST_COLLAPSE_DELTA: float = 0.1
    COOPERATION_SURGE_DELTA: float = 0.1
    STABLE_COOPERATION_RATE: float = 0.7
    STABLE_TRUST_VOLATILITY: float = 0.05
    STABILITY_WINDOW: int = 3

    # Buffers
    INTERACTION_BUFFER_SIZE: int = 500
    PAIR_HISTORY_DEPTH: int = 10
    ATP_HISTORY_DEPTH: int = 200

    active_preset: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep-copied, JSON-safe representation of the configuration."""
        return asdict(self)

    def copy_with_overrides(self, overrides: Optional[Dict[str, Any]] = None) -> "SocietyConfig":
        """Return a new, validated config with the provided overrides merged in."""
        new_cfg = copy.deepcopy(self)
        if overrides:
            _apply_overrides(new_cfg, overrides)
        new_cfg.validate()
        return new_cfg

    def strategy_counts(self) -> Dict[Strategy, int]:
        """Resolve STRATEGY_DISTRIBUTION into integer head-counts per strategy."""
        weights = self.strategy_weights()
        total = sum(weights.values())
        all_integral = all(float(v).is_integer() for v in weights.values())
        # A lone weight of 1 reads as "100%" rather than "one agent"
        is_proportion = not all_integral or math.isclose(total, 1.0, abs_tol=1e-9)
        if self.N_AGENTS > 0 and not is_proportion and int(round(total)) != self.N_AGENTS:
            warnings.warn(
                f"STRATEGY_DISTRIBUTION counts sum to {int(round(total))} but "
                f"N_AGENTS={self.N_AGENTS}; rescaling proportionally.",
                UserWarning,
                stacklevel=2,
            )
        allocation = allocate_counts({s.value: w for s, w in weights.items()}, self.N_AGENTS)
        return {strategy: allocation[strategy.value] for strategy in Strategy}

    def strategy_weights(self) -> Dict[Strategy, float]:
        if not isinstance(self.STRATEGY_DISTRIBUTION, dict):
            raise ConfigurationError("STRATEGY_DISTRIBUTION must be a mapping of strategy -> weight.")
        weights: Dict[Strategy, float] = {strategy: 0.0 for strategy in Strategy}
        for raw_key, raw_value in self.STRATEGY_DISTRIBUTION.items():
            tag = normalize_strategy_label(raw_key)
            if tag is None:
                raise ConfigurationError(f"Unknown strategy '{raw_key}' in STRATEGY_DISTRIBUTION.")
            try:
                value = float(raw_value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"Strategy weight for '{raw_key}' must be numeric, got {raw_value!r}."
                ) from exc
            if math.isnan(value) or math.isinf(value) or value < 0:
                raise ConfigurationError(f"Strategy weight for '{raw_key}' must be a finite non-negative number.")
            weights[Strategy(tag)] += value
        if self.N_AGENTS > 0 and sum(weights.values()) <= 0:
            raise ConfigurationError("STRATEGY_DISTRIBUTION must assign a positive weight to at least one strategy.")
        return weights

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if the configuration is unusable."""
        for name in ("N_AGENTS", "N_EPOCHS", "ROUNDS_PER_EPOCH", "INTERACTIONS_PER_ROUND",
                     "MIN_COALITION_SIZE", "STABILITY_WINDOW", "INTERACTION_BUFFER_SIZE",
                     "PAIR_HISTORY_DEPTH", "ATP_HISTORY_DEPTH"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}.")
            if value < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}.")
        if self.MIN_COALITION_SIZE < 2:
            raise ConfigurationError("MIN_COALITION_SIZE must be at least 2.")
        if self.STABILITY_WINDOW < 1:
            raise ConfigurationError("STABILITY_WINDOW must be at least 1.")
        if self.PAIR_HISTORY_DEPTH < 1:
            raise ConfigurationError("PAIR_HISTORY_DEPTH must be at least 1.")

        if self.INTERACTION_TOPOLOGY not in INTERACTION_TOPOLOGIES:
            raise ConfigurationError(
                f"Unknown INTERACTION_TOPOLOGY '{self.INTERACTION_TOPOLOGY}'. "
                f"Available: {', '.join(INTERACTION_TOPOLOGIES)}"
            )
        if self.REBIRTH_STRATEGY not in REBIRTH_STRATEGIES:
            raise ConfigurationError(
                f"Unknown REBIRTH_STRATEGY '{self.REBIRTH_STRATEGY}'. "
                f"Available: {', '.join(REBIRTH_STRATEGIES)}"
            )
        if not 0.0 < self.SAMPLED_PAIR_FRACTION <= 1.0:
            raise ConfigurationError("SAMPLED_PAIR_FRACTION must lie in (0, 1].")

        for name in ("INITIAL_TRUST", "TRUST_GAIN_COOPERATE", "TRUST_LOSS_EXPLOITED",
                     "TRUST_LOSS_EXPLOITER", "TRUST_LOSS_MUTUAL_DEFECTION",
                     "CAUTIOUS_TRUST_THRESHOLD", "COALITION_THRESHOLD", "ACTIVE_EDGE_THRESHOLD",
                     "ISOLATION_THRESHOLD", "EXCLUSION_TRUST_THRESHOLD", "REBIRTH_TRUST_THRESHOLD",
                     "KARMA_FRACTION", "TRUST_COLLAPSE_DELTA", "COOPERATION_SURGE_DELTA",
                     "STABLE_COOPERATION_RATE", "STABLE_TRUST_VOLATILITY"):
            value = float(getattr(self, name))
            if math.isnan(value) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must lie in [0, 1], got {value}.")

        if self.TRUST_GAIN_COOPERATE <= 0.0:
            raise ConfigurationError("TRUST_GAIN_COOPERATE must be positive.")
        if self.TRUST_LOSS_EXPLOITED <= 0.0:
            raise ConfigurationError("TRUST_LOSS_EXPLOITED must be positive.")
        if self.TRUST_LOSS_EXPLOITED < max(self.TRUST_LOSS_EXPLOITER, self.TRUST_LOSS_MUTUAL_DEFECTION):
            raise ConfigurationError(
                "TRUST_LOSS_EXPLOITED must be the largest trust penalty "
                "(being exploited outweighs exploiting or mutual defection)."
            )
        if self.ISOLATION_THRESHOLD >= self.COALITION_THRESHOLD:
            raise ConfigurationError("ISOLATION_THRESHOLD must be below COALITION_THRESHOLD.")

        for name in ("INITIAL_ATP", "INTERACTION_COST", "COOPERATION_REWARD", "EXPLOITATION_REWARD",
                     "SUCKERS_PAYOFF", "MUTUAL_DEFECTION_PAYOFF", "REBIRTH_MIN_ATP"):
            value = float(getattr(self, name))
            if math.isnan(value) or math.isinf(value):
                raise ConfigurationError(f"{name} must be finite.")
        if self.INITIAL_ATP < 0:
            raise ConfigurationError("INITIAL_ATP must be non-negative.")
        if self.REBIRTH_MIN_ATP <= 0:
            raise ConfigurationError("REBIRTH_MIN_ATP must be positive; a reborn agent cannot start exhausted.")
        if self.INTERACTION_COST < 0:
            raise ConfigurationError("INTERACTION_COST must be non-negative.")

        self.strategy_weights()


def _apply_overrides(config: SocietyConfig, overrides: Dict[str, Any]) -> None:
    """Recursively merge ``overrides`` into ``config``.

    ``STRATEGY_DISTRIBUTION`` is replaced wholesale so that a scenario can
    drop strategies from the default mix instead of adding to it.
    """
    REPLACE_KEYS = {"STRATEGY_DISTRIBUTION"}

    for key, value in overrides.items():
        # Dotted notation updates one entry of a dict attribute
        # (e.g., "STRATEGY_DISTRIBUTION.defector")
        if "." in key:
            top, *rest = key.split(".")
            if not hasattr(config, top):
                raise KeyError(f"Unknown configuration attribute '{top}' in override.")
            current = getattr(config, top)
            if not isinstance(current, dict):
                raise KeyError(f"Attribute '{top}' is not a dictionary; cannot set '{key}'.")
            ref = current
            for part in rest[:-1]:
                if part not in ref or not isinstance(ref[part], dict):
                    ref[part] = {}
                ref = ref[part]
            ref[rest[-1]] = copy.deepcopy(value)
            setattr(config, top, current)
            continue
        if not hasattr(config, key):
            raise KeyError(f"Unknown configuration attribute '{key}' in override.")
        current = getattr(config, key)
        if key in REPLACE_KEYS:
            setattr(config, key, copy.deepcopy(value))
        elif isinstance(current, dict) and isinstance(value, dict):
            setattr(config, key, _deep_merge_dict(current, value))
        else:
            setattr(config, key, copy.deepcopy(value))


def _deep_merge_dict(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries without mutating the originals."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge_dict(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class ScenarioPreset:
    """Reusable parameter bundle describing a named society scenario."""

    name: str
    label: str
    description: str
    overrides: Dict[str, Any] = field(default_factory=dict)
    source: str = "built-in"

    def to_metadata(self) -> Dict[str, Any]:
        """Return a serializable summary for run artefacts."""
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "source": self.source,
            "overrides": copy.deepcopy(self.overrides),
        }


def apply_preset(config: SocietyConfig, preset: Optional[ScenarioPreset]) -> SocietyConfig:
    """Return a config with the preset overrides applied."""
    if preset is None:
        return config
    updated = config.copy_with_overrides(preset.overrides)
    updated.active_preset = preset.name
    return updated


def list_presets() -> List[ScenarioPreset]:
    """Return the available built-in scenario presets."""
    return list(SCENARIO_LIBRARY.values())


def get_preset(name: str) -> ScenarioPreset:
    """Fetch a built-in preset by name (case-insensitive, ``_`` or ``-``)."""
    normalized = name.strip().lower().replace("_", "-")
    for preset in SCENARIO_LIBRARY.values():
        if preset.name.lower() == normalized:
            return preset
    raise KeyError(f"Unknown scenario preset '{name}'. Available: {', '.join(SCENARIO_LIBRARY.keys())}")


def load_preset(path: str | os.PathLike[str]) -> ScenarioPreset:
    """Load a scenario preset definition from disk."""
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise FileNotFoundError(f"Preset file not found: {file_path}")
    with file_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    overrides = payload.get("overrides") or payload.get("config") or {}
    if not isinstance(overrides, dict):
        raise ValueError(f"Preset file {file_path} must define an 'overrides' dictionary.")
    name = payload.get("name") or file_path.stem
    return ScenarioPreset(
        name=name,
        label=payload.get("label", name),
        description=payload.get("description", f"Custom scenario loaded from {file_path.name}"),
        overrides=overrides,
        source=str(file_path),
    )


SCENARIO_LIBRARY: Dict[str, ScenarioPreset] = {
    "cooperative-majority": ScenarioPreset(
        name="cooperative-majority",
        label="Cooperative Majority",
        description="Most agents cooperate. Do defectors thrive or get isolated?",
        overrides={
            "N_AGENTS": 12,
            "STRATEGY_DISTRIBUTION": {"cooperator": 5, "defector": 2, "reciprocator": 3, "cautious": 1, "adaptive": 1},
            "N_EPOCHS": 5,
        },
    ),
    "hostile-world": ScenarioPreset(
        name="hostile-world",
        label="Hostile World",
        description="Defectors outnumber cooperators. Can trust survive?",
        overrides={
            "N_AGENTS": 12,
            "STRATEGY_DISTRIBUTION": {"cooperator": 2, "defector": 5, "reciprocator": 2, "cautious": 2, "adaptive": 1},
            "N_EPOCHS": 5,
            "COOPERATION_REWARD": 7.0,
            "REBIRTH_MIN_ATP": 30.0,
        },
    ),
    "reciprocity-rules": ScenarioPreset(
        name="reciprocity-rules",
        label="Reciprocity Rules",
        description="Tit-for-tat dominates. The evolution of cooperation.",
        overrides={
            "N_AGENTS": 12,
            "STRATEGY_DISTRIBUTION": {"cooperator": 1, "defector": 2, "reciprocator": 7, "cautious": 1, "adaptive": 1},
            "N_EPOCHS": 6,
        },
    ),
    "trust-scarce": ScenarioPreset(
        name="trust-scarce",
        label="Trust Scarce",
        description="Everyone starts cautious. High cost of failure.",
        overrides={
            "N_AGENTS": 10,
            "STRATEGY_DISTRIBUTION": {"cooperator": 1, "defector": 1, "reciprocator": 2, "cautious": 5, "adaptive": 1},
            "N_EPOCHS": 6,
            "TRUST_GAIN_COOPERATE": 0.05,
            "TRUST_LOSS_EXPLOITED": 0.15,
            "COOPERATION_REWARD": 8.0,
        },
    ),
    "all-adaptive": ScenarioPreset(
        name="all-adaptive",
        label="All Adaptive",
        description="Pure learning society. Strategy emerges from interaction.",
        overrides={
            "N_AGENTS": 10,
            "STRATEGY_DISTRIBUTION": {"adaptive": 10},
            "N_EPOCHS": 8,
        },
    ),
    "human-balanced": ScenarioPreset(
        name="human-balanced",
        label="You vs. a Balanced Society",
        description="Play one agent among a balanced mix. Can you earn the society's trust?",
        overrides={
            "N_AGENTS": 8,
            "STRATEGY_DISTRIBUTION": {"human": 1, "cooperator": 2, "defector": 1, "reciprocator": 2, "cautious": 1, "adaptive": 1},
            "N_EPOCHS": 4,
            "ROUNDS_PER_EPOCH": 6,
        },
    ),
    "human-hostile": ScenarioPreset(
        name="human-hostile",
        label="You vs. a Hostile Society",
        description="Play one agent surrounded by defectors. Does cooperation still pay?",
        overrides={
            "N_AGENTS": 8,
            "STRATEGY_DISTRIBUTION": {"human": 1, "cooperator": 1, "defector": 4, "reciprocator": 1, "adaptive": 1},
            "N_EPOCHS": 4,
            "ROUNDS_PER_EPOCH": 6,
            "REBIRTH_MIN_ATP": 30.0,
        },
    ),
}
