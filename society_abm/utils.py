"""Numeric helpers and strategy label normalization for Society ABM."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np


def clamp01(value: float) -> float:
    """Clamp a scalar into the closed unit interval."""
    return float(np.clip(value, 0.0, 1.0))


def safe_mean(data: Any, default: float = 0.0) -> float:
    """Compute the mean, returning ``default`` for empty or non-finite input."""
    arr = np.asarray(data, dtype=float)
    if arr.size == 0:
        return float(default)
    with np.errstate(invalid="ignore"):
        value = float(arr.mean())
    if math.isnan(value) or math.isinf(value):
        return float(default)
    return value


def fast_mean(values: Iterable[float], default: float = 0.0) -> float:
    """Lightweight mean for Python iterables; matches NumPy for finite inputs."""
    total = 0.0
    count = 0
    for value in values:
        total += float(value)
        count += 1
    if count == 0:
        return float(default)
    return total / count


def safe_variance(data: Any) -> float:
    """Population variance, 0.0 for fewer than two observations."""
    arr = np.asarray(data, dtype=float)
    if arr.size < 2:
        return 0.0
    return float(arr.var())


def gini_coefficient(values: Iterable[float]) -> float:
    """Standard Gini coefficient of a non-negative distribution.

    Returns 0.0 for empty, single-element, or all-zero inputs instead of
    NaN. Uses the sorted-rank form ``sum((2i - n - 1) x_i) / (n * sum(x))``.
    """
    arr = np.sort(np.asarray(list(values), dtype=float))
    n = arr.size
    if n < 2:
        return 0.0
    total = float(arr.sum())
    if total <= 0.0:
        return 0.0
    ranks = np.arange(1, n + 1, dtype=float)
    gini = float(np.sum((2.0 * ranks - n - 1.0) * arr) / (n * total))
    return float(np.clip(gini, 0.0, 1.0))


def allocate_counts(weights: Mapping[str, float], total: int) -> Dict[str, int]:
    """Split ``total`` into integer counts proportional to ``weights``.

    Largest-remainder allocation; ties on the remainder go to the key that
    appears first in ``weights`` so the result is deterministic.
    """
    keys = list(weights.keys())
    weight_sum = float(sum(weights.values()))
    if total <= 0 or weight_sum <= 0.0:
        return {key: 0 for key in keys}
    quotas = {key: float(weights[key]) * total / weight_sum for key in keys}
    counts = {key: int(math.floor(quota)) for key, quota in quotas.items()}
    remaining = total - sum(counts.values())
    order = sorted(
        range(len(keys)),
        key=lambda idx: (-(quotas[keys[idx]] - counts[keys[idx]]), idx),
    )
    for idx in order[:remaining]:
        counts[keys[idx]] += 1
    return counts


def scrub_non_finite(record: Dict[str, Any], replacement: float = 0.0) -> Dict[str, Any]:
    """Replace NaN/inf floats so records stay JSON friendly."""
    cleaned = dict(record)
    for key, value in list(cleaned.items()):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            cleaned[key] = replacement
    return cleaned


STRATEGY_LABEL_NORMALIZATION = {
    "cooperator": "cooperator",
    "cooperate": "cooperator",
    "always_cooperate": "cooperator",
    "allc": "cooperator",
    "defector": "defector",
    "defect": "defector",
    "always_defect": "defector",
    "alld": "defector",
    "reciprocator": "reciprocator",
    "tit_for_tat": "reciprocator",
    "titfortat": "reciprocator",
    "tft": "reciprocator",
    "cautious": "cautious",
    "wary": "cautious",
    "adaptive": "adaptive",
    "learner": "adaptive",
    "human": "human",
    "player": "human",
    "human_player": "human",
}


def normalize_strategy_label(value: Any, default: Optional[str] = None) -> Optional[str]:
    """Map varied strategy spellings (``"Tit-for-Tat"``, ``"ALLD"``) to canonical tags."""
    if value is None:
        return default
    key = str(getattr(value, "value", value)).strip().lower()
    key = key.replace("-", "_").replace(" ", "_")
    if key in STRATEGY_LABEL_NORMALIZATION:
        return STRATEGY_LABEL_NORMALIZATION[key]
    return default


def format_member_names(names: List[str], limit: int = 3) -> str:
    """Render ``"Alice, Bob, Carol +2 more"`` style member lists."""
    shown = ", ".join(names[:limit])
    if len(names) > limit:
        shown += f" +{len(names) - limit} more"
    return shown
