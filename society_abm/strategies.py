"""
Decision rules for each agent strategy.

``decide`` is a pure function: given the deciding agent's strategy, its
trust in the opponent, the opponent's previous move toward it and the pair
history, it returns COOPERATE or DEFECT. The only stochastic rule
(``adaptive``) draws from the generator passed in, so a seeded run is fully
reproducible. ``human`` decisions are never computed here; the driver must
inject them.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np

from .models import Action, Strategy

DEFAULT_CAUTIOUS_THRESHOLD = 0.4


def decide(
    strategy: Strategy,
    trust_in_opponent: float,
    opponent_last_action: Optional[Action] = None,
    history: Sequence[Tuple[Action, Action]] = (),
    *,
    rng: Optional[np.random.Generator] = None,
    cautious_threshold: float = DEFAULT_CAUTIOUS_THRESHOLD,
    injected_action: Optional[Action] = None,
) -> Action:
    """
    Choose an action for one side of an interaction.

    Parameters
    ----------
    strategy : Strategy
        The deciding agent's strategy.
    trust_in_opponent : float
        The deciding agent's current trust toward the opponent, in [0, 1].
    opponent_last_action : Action, optional
        The opponent's move in the previous interaction of this pair.
    history : sequence of (own, opponent) action pairs
        Prior interactions of this pair, oldest first. When
        ``opponent_last_action`` is omitted the last entry is used.
    rng : numpy.random.Generator, optional
        Source of randomness for ``adaptive``; required for that strategy.
    cautious_threshold : float
        ``cautious`` cooperates only when trust strictly exceeds this.
    injected_action : Action, optional
        The externally supplied move for ``human`` agents.

    Raises
    ------
    ValueError
        For an unknown strategy, a ``human`` agent without an injected
        action, or an ``adaptive`` agent without a generator.
    """
    if opponent_last_action is None and history:
        opponent_last_action = history[-1][1]

    if strategy is Strategy.COOPERATOR:
        return Action.COOPERATE
    if strategy is Strategy.DEFECTOR:
        return Action.DEFECT
    if strategy is Strategy.RECIPROCATOR:
        # Tit-for-tat: open with cooperation, then mirror
        if opponent_last_action is None:
            return Action.COOPERATE
        return Action(opponent_last_action)
    if strategy is Strategy.CAUTIOUS:
        return Action.COOPERATE if trust_in_opponent > cautious_threshold else Action.DEFECT
    if strategy is Strategy.ADAPTIVE:
        if rng is None:
            raise ValueError("The adaptive strategy requires a random generator.")
        return Action.COOPERATE if rng.random() < trust_in_opponent else Action.DEFECT
    if strategy is Strategy.HUMAN:
        if injected_action is None:
            raise ValueError("Human agents need an externally supplied action.")
        return Action(injected_action)
    raise ValueError(f"Unknown strategy {strategy!r}")


def expected_cooperation(
    strategy: Strategy,
    trust_in_opponent: float,
    opponent_last_action: Optional[Action] = None,
    cautious_threshold: float = DEFAULT_CAUTIOUS_THRESHOLD,
) -> Optional[float]:
    """Probability that ``strategy`` cooperates next; None for externally driven agents."""
    if strategy is Strategy.COOPERATOR:
        return 1.0
    if strategy is Strategy.DEFECTOR:
        return 0.0
    if strategy is Strategy.CAUTIOUS:
        return 1.0 if trust_in_opponent > cautious_threshold else 0.0
    if strategy is Strategy.ADAPTIVE:
        return float(np.clip(trust_in_opponent, 0.0, 1.0))
    if strategy is Strategy.RECIPROCATOR:
        return 0.0 if opponent_last_action is Action.DEFECT else 1.0
    if strategy is Strategy.HUMAN:
        return None
    raise ValueError(f"Unknown strategy {strategy!r}")
