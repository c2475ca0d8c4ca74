"""Directional trust update rules.

Trust is always updated from the observer's perspective toward the observed
partner. The ordering of the four cases is fixed:

- mutual cooperation raises trust;
- being exploited (observer cooperated, partner defected) lowers it the most;
- exploiting the partner lowers the exploiter's trust modestly;
- mutual defection lowers it mildly (or leaves it flat when the penalty is 0).
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import SocietyConfig
from .models import Action
from .utils import clamp01


@dataclass(frozen=True)
class TrustRules:
    initial_trust: float = 0.5
    gain_cooperate: float = 0.08
    loss_exploited: float = 0.12
    loss_exploiter: float = 0.02
    loss_mutual_defection: float = 0.036

    @classmethod
    def from_config(cls, config: SocietyConfig) -> "TrustRules":
        return cls(
            initial_trust=float(config.INITIAL_TRUST),
            gain_cooperate=float(config.TRUST_GAIN_COOPERATE),
            loss_exploited=float(config.TRUST_LOSS_EXPLOITED),
            loss_exploiter=float(config.TRUST_LOSS_EXPLOITER),
            loss_mutual_defection=float(config.TRUST_LOSS_MUTUAL_DEFECTION),
        )

    def delta(self, self_action: Action, opponent_action: Action) -> float:
        """Signed change to the observer's trust for one outcome."""
        if self_action is Action.COOPERATE and opponent_action is Action.COOPERATE:
            return self.gain_cooperate
        if self_action is Action.COOPERATE and opponent_action is Action.DEFECT:
            return -self.loss_exploited
        if self_action is Action.DEFECT and opponent_action is Action.COOPERATE:
            return -self.loss_exploiter
        return -self.loss_mutual_defection


def update_trust(current_trust: float, self_action: Action, opponent_action: Action,
                 rules: TrustRules = TrustRules()) -> float:
    """Return the observer's new trust toward the opponent, clamped to [0, 1]."""
    return clamp01(current_trust + rules.delta(Action(self_action), Action(opponent_action)))
