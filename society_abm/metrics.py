"""
Society metrics and event detection.

``compute_metrics`` is a pure derivation from the live agent snapshots, the
interactions of the current epoch and the coalitions found at the boundary.
``EventDetector`` keeps the previous epoch's metrics and coalition set and
compares each new epoch against them to emit ``SocietyEvent`` records.

Degenerate states never produce NaN: an epoch with no interactions carries
the previous cooperation rate forward, a roster with no trust edges carries
the previous average trust forward, and the Gini coefficient of an empty,
single-agent or all-zero population is 0.
"""

from __future__ import annotations

import collections
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import networkx as nx

from .config import SocietyConfig
from .models import (
    AgentSnapshot,
    Coalition,
    EventType,
    Interaction,
    Significance,
    SocietyEvent,
    SocietyMetrics,
    Strategy,
)
from .population import dominant_strategy
from .utils import format_member_names, gini_coefficient, safe_mean, safe_variance


def live_trust_values(agents: Sequence[AgentSnapshot]) -> List[float]:
    """Directed trust values whose source and target are both alive."""
    live_ids = {agent.id for agent in agents if agent.alive}
    return [
        edge.trust
        for agent in agents
        if agent.alive
        for edge in agent.trust_edges
        if edge.target_id in live_ids and edge.target_id != agent.id
    ]


def cooperation_rate(interactions: Iterable[Interaction], default: float = 0.0) -> float:
    """Cooperate actions divided by all actions; ``default`` when there were none."""
    actions = 0
    cooperative = 0
    for interaction in interactions:
        actions += 2
        cooperative += interaction.cooperative_actions
    if actions == 0:
        return float(default)
    return cooperative / actions


def compute_metrics(
    agents: Sequence[AgentSnapshot],
    interactions: Sequence[Interaction],
    coalitions: Sequence[Coalition],
    *,
    action_counts: Optional[Tuple[int, int]] = None,
    active_edge_threshold: float = 0.5,
    total_generations: int = 0,
    previous: Optional[SocietyMetrics] = None,
) -> SocietyMetrics:
    """
    Derive the society-wide metrics for one snapshot point.

    ``action_counts`` is ``(cooperate_actions, total_actions)`` for the epoch so
    far; when omitted the counts are taken from ``interactions``, which may be
    a truncated buffer.
    """
    live = [agent for agent in agents if agent.alive]
    trust_values = live_trust_values(live)
    prior_trust = previous.average_trust if previous is not None else 0.0
    prior_cooperation = previous.cooperation_rate if previous is not None else 0.0

    n_live = len(live)
    possible_edges = n_live * (n_live - 1)
    active_edges = sum(1 for value in trust_values if value > active_edge_threshold)
    density = active_edges / possible_edges if possible_edges else 0.0

    if action_counts is None:
        rate = cooperation_rate(interactions, default=prior_cooperation)
    else:
        cooperative, total_actions = action_counts
        rate = cooperative / total_actions if total_actions else prior_cooperation

    distribution = {strategy.value: 0 for strategy in Strategy}
    for agent in live:
        distribution[agent.strategy.value] += 1

    return SocietyMetrics(
        average_trust=safe_mean(trust_values, default=prior_trust),
        trust_variance=safe_variance(trust_values),
        cooperation_rate=float(rate),
        num_coalitions=len(coalitions),
        largest_coalition=max((c.size for c in coalitions), default=0),
        alive_count=n_live,
        gini_coefficient=gini_coefficient(agent.atp for agent in live),
        network_density=float(density),
        strategy_distribution=distribution,
        total_generations=int(total_generations),
    )


def active_trust_graph(agents: Sequence[AgentSnapshot], threshold: float) -> nx.Graph:
    """Undirected graph of live agents joined by any trust edge above ``threshold``."""
    live_ids = {agent.id for agent in agents if agent.alive}
    graph = nx.Graph()
    graph.add_nodes_from(sorted(live_ids))
    for agent in agents:
        if not agent.alive:
            continue
        for edge in agent.trust_edges:
            if edge.target_id in live_ids and edge.target_id != agent.id and edge.trust > threshold:
                graph.add_edge(agent.id, edge.target_id)
    return graph


class EventDetector:
    """
    Compares consecutive epochs and emits the structural events.

    Events are produced in a fixed order (dissolved, formed, isolated,
    connected, collapse, surge, shift, stable) with agent ids sorted inside
    each type, so that identical runs yield identical logs.
    """

    def __init__(self, config: SocietyConfig):
        self.config = config
        self.previous_metrics: Optional[SocietyMetrics] = None
        self.previous_coalitions: Dict[frozenset, Coalition] = {}
        self.isolated: Set[int] = set()
        self.was_connected = False
        self.previous_dominant: Optional[Strategy] = None
        self.is_stable = False
        self._window: Deque[Tuple[float, float]] = collections.deque(maxlen=config.STABILITY_WINDOW)

    def detect(
        self,
        epoch: int,
        agents: Sequence[AgentSnapshot],
        coalitions: Sequence[Coalition],
        metrics: SocietyMetrics,
    ) -> List[SocietyEvent]:
        names = {agent.id: agent.name for agent in agents}
        events: List[SocietyEvent] = []
        events.extend(self._coalition_events(epoch, coalitions, names))
        events.extend(self._isolation_events(epoch, agents))
        events.extend(self._connectivity_events(epoch, agents))
        events.extend(self._trend_events(epoch, metrics))
        events.extend(self._strategy_events(epoch, agents))
        events.extend(self._stability_events(epoch, metrics))
        self.previous_metrics = metrics
        return events

    # ------------------------------------------------------------------
    def _coalition_events(self, epoch: int, coalitions: Sequence[Coalition],
                          names: Dict[int, str]) -> List[SocietyEvent]:
        current = {coalition.key: coalition for coalition in coalitions}
        events: List[SocietyEvent] = []

        dissolved = [c for key, c in self.previous_coalitions.items() if key not in current]
        for coalition in sorted(dissolved, key=lambda c: c.members):
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.COALITION_DISSOLVED,
                    message=f"A coalition of {coalition.size} dissolved.",
                    significance=Significance.MEDIUM,
                    agent_ids=coalition.members,
                )
            )

        formed = [c for key, c in current.items() if key not in self.previous_coalitions]
        for coalition in sorted(formed, key=lambda c: c.members):
            member_names = format_member_names([names.get(m, str(m)) for m in coalition.members])
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.COALITION_FORMED,
                    message=(
                        f"{member_names} formed a coalition of {coalition.size} "
                        f"(avg trust {coalition.average_trust:.2f})."
                    ),
                    significance=Significance.HIGH if coalition.size >= 4 else Significance.MEDIUM,
                    agent_ids=coalition.members,
                    note=coalition.dominant_strategy.value if coalition.dominant_strategy else "",
                )
            )

        self.previous_coalitions = current
        return events

    def _isolation_events(self, epoch: int, agents: Sequence[AgentSnapshot]) -> List[SocietyEvent]:
        threshold = self.config.ISOLATION_THRESHOLD
        live = sorted((agent for agent in agents if agent.alive), key=lambda agent: agent.id)
        live_ids = {agent.id for agent in live}
        self.isolated &= live_ids

        events: List[SocietyEvent] = []
        for agent in live:
            if not agent.strategy.is_defector_class:
                self.isolated.discard(agent.id)
                continue
            if agent.reputation < threshold:
                if agent.id in self.isolated:
                    continue
                self.isolated.add(agent.id)
                events.append(
                    SocietyEvent(
                        epoch=epoch,
                        type=EventType.DEFECTOR_ISOLATED,
                        message=f"{agent.name} has been isolated (reputation {agent.reputation:.2f}).",
                        significance=Significance.HIGH,
                        agent_ids=(agent.id,),
                    )
                )
            else:
                self.isolated.discard(agent.id)
        return events

    def _connectivity_events(self, epoch: int, agents: Sequence[AgentSnapshot]) -> List[SocietyEvent]:
        graph = active_trust_graph(agents, self.config.ACTIVE_EDGE_THRESHOLD)
        connected = graph.number_of_nodes() >= 2 and nx.is_connected(graph)
        events: List[SocietyEvent] = []
        if connected and not self.was_connected:
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.TRUST_NETWORK_CONNECTED,
                    message=f"The trust network now connects all {graph.number_of_nodes()} living agents.",
                    significance=Significance.MEDIUM,
                    agent_ids=tuple(sorted(graph.nodes())),
                )
            )
        self.was_connected = connected
        return events

    def _trend_events(self, epoch: int, metrics: SocietyMetrics) -> List[SocietyEvent]:
        previous = self.previous_metrics
        if previous is None:
            return []
        events: List[SocietyEvent] = []
        trust_drop = previous.average_trust - metrics.average_trust
        if trust_drop > self.config.TRUST_COLLAPSE_DELTA:
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.TRUST_COLLAPSE,
                    message=(
                        f"Average trust fell from {previous.average_trust:.2f} "
                        f"to {metrics.average_trust:.2f}."
                    ),
                    significance=Significance.CRITICAL,
                )
            )
        cooperation_rise = metrics.cooperation_rate - previous.cooperation_rate
        if cooperation_rise > self.config.COOPERATION_SURGE_DELTA:
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.COOPERATION_SURGE,
                    message=(
                        f"Cooperation rose from {previous.cooperation_rate:.0%} "
                        f"to {metrics.cooperation_rate:.0%}."
                    ),
                    significance=Significance.HIGH,
                )
            )
        return events

    def _strategy_events(self, epoch: int, agents: Sequence[AgentSnapshot]) -> List[SocietyEvent]:
        live = [agent for agent in agents if agent.alive]
        dominant = dominant_strategy((agent.strategy for agent in live), self.previous_dominant)
        events: List[SocietyEvent] = []
        if self.previous_dominant is not None and dominant is not None and dominant is not self.previous_dominant:
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.STRATEGY_SHIFT,
                    message=f"{dominant.label}s now outnumber {self.previous_dominant.label}s.",
                    significance=Significance.MEDIUM,
                    agent_ids=tuple(sorted(agent.id for agent in live if agent.strategy is dominant)),
                    note=f"{self.previous_dominant.value}->{dominant.value}",
                )
            )
        if dominant is not None:
            self.previous_dominant = dominant
        return events

    def _stability_events(self, epoch: int, metrics: SocietyMetrics) -> List[SocietyEvent]:
        self._window.append((metrics.cooperation_rate, metrics.average_trust))
        window = list(self._window)
        stable = (
            len(window) >= self.config.STABILITY_WINDOW
            and all(rate >= self.config.STABLE_COOPERATION_RATE for rate, _ in window)
            and all(
                abs(later[1] - earlier[1]) <= self.config.STABLE_TRUST_VOLATILITY
                for earlier, later in zip(window, window[1:])
            )
        )
        events: List[SocietyEvent] = []
        if stable and not self.is_stable:
            events.append(
                SocietyEvent(
                    epoch=epoch,
                    type=EventType.SOCIETY_STABLE,
                    message=(
                        f"The society has been stable for {len(window)} epochs "
                        f"(cooperation {metrics.cooperation_rate:.0%})."
                    ),
                    significance=Significance.HIGH,
                )
            )
        self.is_stable = stable
        return events
