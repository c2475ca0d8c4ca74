"""
Population dynamics for Society ABM: deaths, rebirths and coalitions.

Everything here runs at epoch boundaries. Deaths are evaluated first, then
rebirths for the agents that just died, and finally coalitions are
recomputed from scratch over the live roster.

Key mechanisms implemented:

1. **Death**: an agent dies when its ATP is exhausted (``atp <= 0``) or when
   the average trust others hold in it falls strictly below
   ``EXCLUSION_TRUST_THRESHOLD`` (social exclusion).

2. **Karma rebirth**: a dead agent whose final reputation met
   ``REBIRTH_TRUST_THRESHOLD`` is reborn in the same id slot with
   ``generation + 1``, a fraction of its final ATP, fresh trust edges, and
   every other agent's memory of the previous life erased. Agents below the
   threshold stay dead for the rest of the run.

3. **Coalitions**: connected components of the undirected mutual-trust
   graph, where an edge requires trust >= ``COALITION_THRESHOLD`` in both
   directions. Built with networkx.

References
----------
Nowak, M. A., & Sigmund, K. (2005). Evolution of indirect reciprocity.
Nature, 437(7063), 1291-1298.
"""

from __future__ import annotations

import collections
import itertools
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import networkx as nx
import numpy as np

from .agents import SocietyAgent
from .config import SocietyConfig
from .models import (
    Coalition,
    DeathCause,
    DeathRecord,
    EventType,
    Significance,
    SocietyEvent,
    Strategy,
)
from .utils import fast_mean


@dataclass
class LifecycleOutcome:
    """Deaths and rebirths resolved at one epoch boundary."""

    deaths: List[DeathRecord] = field(default_factory=list)
    reborn: List[SocietyAgent] = field(default_factory=list)
    events: List[SocietyEvent] = field(default_factory=list)


def mutual_trust_graph(agents: Iterable[SocietyAgent], threshold: float) -> nx.Graph:
    """Undirected graph over live agents; edges need trust >= threshold both ways."""
    live = {agent.id: agent for agent in agents if agent.alive}
    graph = nx.Graph()
    graph.add_nodes_from(sorted(live))
    for a_id, b_id in itertools.combinations(sorted(live), 2):
        forward = live[a_id].trust.get(b_id)
        backward = live[b_id].trust.get(a_id)
        if forward is None or backward is None:
            continue
        if forward >= threshold and backward >= threshold:
            graph.add_edge(a_id, b_id, weight=(forward + backward) / 2.0)
    return graph


def dominant_strategy(strategies: Iterable[Strategy], previous: Optional[Strategy] = None) -> Optional[Strategy]:
    """Most common strategy; ties keep ``previous`` if tied, else enum order."""
    counts = collections.Counter(strategies)
    if not counts:
        return None
    top = max(counts.values())
    leaders = [strategy for strategy in Strategy if counts.get(strategy, 0) == top]
    if previous in leaders:
        return previous
    return leaders[0]


def detect_coalitions(agents: Iterable[SocietyAgent], threshold: float, min_size: int = 2) -> List[Coalition]:
    """
    Recompute coalitions over the live roster.

    Returns coalitions sorted by size (largest first), then by lowest member
    id, so that the ordering is reproducible.
    """
    live = {agent.id: agent for agent in agents if agent.alive}
    graph = mutual_trust_graph(live.values(), threshold)
    components = [sorted(component) for component in nx.connected_components(graph)
                  if len(component) >= min_size]
    components.sort(key=lambda members: (-len(members), members[0]))

    coalitions: List[Coalition] = []
    for members in components:
        subgraph = graph.subgraph(members)
        directed_values = []
        for a_id, b_id in subgraph.edges():
            directed_values.append(live[a_id].trust[b_id])
            directed_values.append(live[b_id].trust[a_id])
        coalitions.append(
            Coalition(
                members=tuple(members),
                average_trust=fast_mean(directed_values),
                total_atp=float(sum(live[m].atp for m in members)),
                dominant_strategy=dominant_strategy(live[m].strategy for m in members),
            )
        )
    return coalitions


def coalition_sizes(coalitions: Sequence[Coalition]) -> Dict[int, int]:
    """Map member id -> number of same-coalition partners."""
    sizes: Dict[int, int] = {}
    for coalition in coalitions:
        for member in coalition.members:
            sizes[member] = coalition.size - 1
    return sizes


class PopulationDynamics:
    """Applies the death and rebirth rules to a roster at epoch boundaries."""

    def __init__(self, config: SocietyConfig, rng: np.random.Generator):
        self.config = config
        self.rng = rng
        self.total_rebirths = 0
        self._resample_weights = self._build_resample_weights()

    def _build_resample_weights(self) -> Dict[Strategy, float]:
        # Human slots are never assigned by chance
        weights = {
            strategy: weight
            for strategy, weight in self.config.strategy_weights().items()
            if not strategy.is_external and weight > 0
        }
        return weights

    # ------------------------------------------------------------------
    def death_cause(self, agent: SocietyAgent) -> Optional[DeathCause]:
        if agent.atp <= 0.0:
            return DeathCause.ATP_EXHAUSTED
        if agent.reputation < self.config.EXCLUSION_TRUST_THRESHOLD:
            return DeathCause.TRUST_EXCLUSION
        return None

    def is_rebirth_eligible(self, agent: SocietyAgent) -> bool:
        return bool(self.config.ENABLE_REBIRTH) and agent.reputation >= self.config.REBIRTH_TRUST_THRESHOLD

    def resolve_boundary(self, roster: Dict[int, SocietyAgent], epoch: int) -> LifecycleOutcome:
        """Evaluate deaths, then rebirths, for the given epoch boundary."""
        outcome = LifecycleOutcome()
        dying = []
        for agent_id in sorted(roster):
            agent = roster[agent_id]
            if not agent.alive:
                continue
            cause = self.death_cause(agent)
            if cause is not None:
                dying.append((agent, cause))

        for agent, cause in dying:
            agent.mark_dead(epoch, cause)
            reborn = self.is_rebirth_eligible(agent)
            record = DeathRecord(
                agent_id=agent.id,
                name=agent.name,
                strategy=agent.strategy,
                generation=agent.generation,
                epoch=epoch,
                cause=cause,
                final_atp=float(agent.atp),
                final_reputation=float(agent.reputation),
                reborn=reborn,
            )
            outcome.deaths.append(record)
            reason = "ran out of ATP" if cause is DeathCause.ATP_EXHAUSTED else "was excluded by the society"
            outcome.events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.AGENT_DEATH,
                    message=f"{agent.name} ({agent.strategy.label}, gen {agent.generation}) {reason}.",
                    significance=Significance.HIGH,
                    agent_ids=(agent.id,),
                    note=cause.value,
                )
            )

        for record in outcome.deaths:
            previous = roster[record.agent_id]
            if not record.reborn:
                continue
            successor = self.rebirth(previous)
            roster[successor.id] = successor
            for other in roster.values():
                if other.id != successor.id:
                    other.forget(successor.id)
            outcome.reborn.append(successor)
            outcome.events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.AGENT_REBIRTH,
                    message=(
                        f"{successor.name} is reborn as generation {successor.generation} "
                        f"({successor.strategy.label}) with {successor.atp:.1f} ATP."
                    ),
                    significance=Significance.MEDIUM,
                    agent_ids=(successor.id,),
                    note=f"karma={successor.karma:.3f}",
                )
            )
        return outcome

    def rebirth(self, previous: SocietyAgent) -> SocietyAgent:
        """Build the next life for ``previous`` in the same id slot."""
        fraction = float(self.config.KARMA_FRACTION)
        strategy = previous.strategy
        if self.config.REBIRTH_STRATEGY == "resample" and not strategy.is_external and self._resample_weights:
            options = list(self._resample_weights)
            probs = np.array([self._resample_weights[s] for s in options], dtype=float)
            strategy = options[int(self.rng.choice(len(options), p=probs / probs.sum()))]
        self.total_rebirths += 1
        return SocietyAgent(
            previous.id,
            strategy,
            max(previous.atp * fraction, float(self.config.REBIRTH_MIN_ATP)),
            initial_trust=self.config.INITIAL_TRUST,
            generation=previous.generation + 1,
            karma=previous.reputation * fraction,
            history_depth=self.config.PAIR_HISTORY_DEPTH,
            atp_history_depth=self.config.ATP_HISTORY_DEPTH,
            name=previous.name,
        )
