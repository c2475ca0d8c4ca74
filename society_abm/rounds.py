"""Interaction round executor.

One round selects the interacting pairs for the configured topology and
resolves each pair: both sides decide simultaneously, each side's trust
toward the other is updated from its own perspective, and the payoff matrix
is applied to both ATP balances (floored at zero).
"""

from __future__ import annotations

import itertools
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .agents import SocietyAgent
from .config import SocietyConfig
from .models import Action, Interaction, Outcome
from .strategies import decide
from .trust import TrustRules, update_trust

ExternalDecider = Callable[[SocietyAgent, SocietyAgent, int, int], Action]
Pair = Tuple[SocietyAgent, SocietyAgent]


class RoundExecutor:
    """Resolves pairwise interactions for a single run's roster."""

    def __init__(self, config: SocietyConfig, rng: np.random.Generator,
                 rules: Optional[TrustRules] = None):
        self.config = config
        self.rng = rng
        self.rules = rules or TrustRules.from_config(config)

    # ------------------------------------------------------------------
    # Pair selection
    # ------------------------------------------------------------------
    def select_pairs(self, alive: Sequence[SocietyAgent]) -> List[Pair]:
        """Return this round's pairs, in execution order, for the configured topology."""
        ordered = sorted(alive, key=lambda agent: agent.id)
        if len(ordered) < 2:
            return []
        topology = self.config.INTERACTION_TOPOLOGY
        if topology == "complete":
            return list(itertools.combinations(ordered, 2))
        if topology == "sampled":
            all_pairs = list(itertools.combinations(ordered, 2))
            n_sampled = max(1, int(round(self.config.SAMPLED_PAIR_FRACTION * len(all_pairs))))
            chosen = self.rng.choice(len(all_pairs), size=min(n_sampled, len(all_pairs)), replace=False)
            return [all_pairs[idx] for idx in sorted(int(i) for i in chosen)]
        if topology == "random":
            return self._random_partner_pairs(ordered)
        raise ValueError(f"Unknown interaction topology '{topology}'")

    def _random_partner_pairs(self, ordered: List[SocietyAgent]) -> List[Pair]:
        # Each agent draws INTERACTIONS_PER_ROUND partners; repeat pairs are skipped
        seen = set()
        pairs: List[Pair] = []
        for agent in ordered:
            candidates = [other for other in ordered if other.id != agent.id]
            for _ in range(self.config.INTERACTIONS_PER_ROUND):
                partner = candidates[int(self.rng.integers(len(candidates)))]
                key = (min(agent.id, partner.id), max(agent.id, partner.id))
                if key in seen:
                    continue
                seen.add(key)
                pairs.append((agent, partner))
        return pairs

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def choose_action(self, agent: SocietyAgent, partner: SocietyAgent,
                      injected_action: Optional[Action] = None) -> Action:
        return decide(
            agent.strategy,
            agent.trust_in(partner.id),
            partner.last_actions.get(agent.id),
            agent.history_with(partner.id),
            rng=self.rng,
            cautious_threshold=self.config.CAUTIOUS_TRUST_THRESHOLD,
            injected_action=injected_action,
        )

    def payoffs(self, action1: Action, action2: Action) -> Tuple[float, float, Outcome]:
        cost = float(self.config.INTERACTION_COST)
        if action1 is Action.COOPERATE and action2 is Action.COOPERATE:
            reward = float(self.config.COOPERATION_REWARD)
            return reward - cost, reward - cost, Outcome.MUTUAL_COOPERATION
        if action1 is Action.DEFECT and action2 is Action.DEFECT:
            reward = float(self.config.MUTUAL_DEFECTION_PAYOFF)
            return reward - cost, reward - cost, Outcome.MUTUAL_DEFECTION
        exploit = float(self.config.EXPLOITATION_REWARD)
        sucker = float(self.config.SUCKERS_PAYOFF)
        if action1 is Action.DEFECT:
            return exploit - cost, sucker - cost, Outcome.AGENT2_EXPLOITED
        return sucker - cost, exploit - cost, Outcome.AGENT1_EXPLOITED

    def resolve(self, agent1: SocietyAgent, agent2: SocietyAgent, epoch: int, round_num: int,
                action1: Optional[Action] = None, action2: Optional[Action] = None) -> Interaction:
        """Play one interaction; pre-decided actions override the strategies."""
        if action1 is None:
            action1 = self.choose_action(agent1, agent2)
        if action2 is None:
            action2 = self.choose_action(agent2, agent1)
        action1, action2 = Action(action1), Action(action2)

        atp1, atp2, outcome = self.payoffs(action1, action2)
        agent1.apply_atp(atp1)
        agent2.apply_atp(atp2)

        trust1_before = agent1.trust_in(agent2.id)
        trust2_before = agent2.trust_in(agent1.id)
        trust1_after = update_trust(trust1_before, action1, action2, self.rules)
        trust2_after = update_trust(trust2_before, action2, action1, self.rules)
        agent1.record_encounter(agent2.id, action1, action2, trust1_after)
        agent2.record_encounter(agent1.id, action2, action1, trust2_after)

        return Interaction(
            epoch=epoch,
            round=round_num,
            agent1_id=agent1.id,
            agent2_id=agent2.id,
            agent1_action=action1,
            agent2_action=action2,
            agent1_atp_change=atp1,
            agent2_atp_change=atp2,
            agent1_trust_change=trust1_after - trust1_before,
            agent2_trust_change=trust2_after - trust2_before,
            outcome=outcome,
        )

    def run_round(self, roster: Dict[int, SocietyAgent], epoch: int, round_num: int,
                  external_decider: Optional[ExternalDecider] = None) -> List[Interaction]:
        """Execute one round over the live members of ``roster``."""
        alive = [agent for agent in roster.values() if agent.alive]
        interactions: List[Interaction] = []
        for agent1, agent2 in self.select_pairs(alive):
            if not (agent1.alive and agent2.alive):
                continue
            action1 = self._external_action(agent1, agent2, epoch, round_num, external_decider)
            action2 = self._external_action(agent2, agent1, epoch, round_num, external_decider)
            if action1 is None:
                action1 = self.choose_action(agent1, agent2)
            if action2 is None:
                action2 = self.choose_action(agent2, agent1)
            interactions.append(self.resolve(agent1, agent2, epoch, round_num, action1, action2))

        for agent in alive:
            agent.refresh_reputation(roster.values())
            agent.close_round()
        return interactions

    @staticmethod
    def _external_action(agent: SocietyAgent, partner: SocietyAgent, epoch: int, round_num: int,
                         external_decider: Optional[ExternalDecider]) -> Optional[Action]:
        if not agent.strategy.is_external:
            return None
        if external_decider is None:
            raise ValueError(f"{agent.name} plays the human strategy but no decider was supplied.")
        action = external_decider(agent, partner, epoch, round_num)
        if action is None:
            raise ValueError(f"Human decider returned no action for {agent.name}.")
        return Action(action)
