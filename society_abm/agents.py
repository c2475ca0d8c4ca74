"""
Agent state for Society ABM.

A ``SocietyAgent`` is the mutable, engine-private record of one live
participant: its ATP balance, its directional trust toward every partner it
has met, what it last did to each partner, and a bounded memory of each
pair's history. Consumers never see this object; they receive immutable
``AgentSnapshot`` views produced by :meth:`SocietyAgent.snapshot`.

Key mechanisms implemented:

1. **Directional trust**: ``trust[partner_id]`` is this agent's trust toward
   the partner. Pairs that never met carry no edge; lookups fall back to the
   configured neutral trust.

2. **Reciprocity memory**: ``last_actions[partner_id]`` is this agent's last
   move toward the partner, which the partner's reciprocator rule mirrors.

3. **Lifecycle**: Death marks the agent dead but keeps the record so that
   historical snapshots and death records remain available. A rebirth
   builds a fresh ``SocietyAgent`` in the same id slot with the generation
   incremented.
"""

from __future__ import annotations

import collections
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .models import Action, AgentSnapshot, DeathCause, Strategy, TrustEdge

AGENT_NAMES = [
    "Alice", "Bob", "Carol", "Dave", "Eve", "Frank",
    "Grace", "Hank", "Iris", "Jack", "Kate", "Leo",
    "Mia", "Nick", "Olive", "Pat", "Quinn", "Rosa",
    "Sam", "Tara", "Uma", "Vic", "Wendy", "Xena",
]


def agent_name(agent_id: int) -> str:
    """Display label for an id slot: ``Alice``, ..., ``Xena``, ``Alice 2``, ..."""
    base = AGENT_NAMES[agent_id % len(AGENT_NAMES)]
    cycle = agent_id // len(AGENT_NAMES)
    return base if cycle == 0 else f"{base} {cycle + 1}"


@dataclass
class ActionTally:
    """Lifetime counts of this agent's own moves."""

    cooperations: int = 0
    defections: int = 0

    @property
    def interactions(self) -> int:
        return self.cooperations + self.defections

    def record(self, action: Action) -> None:
        if action is Action.COOPERATE:
            self.cooperations += 1
        else:
            self.defections += 1

    @property
    def cooperation_rate(self) -> float:
        total = self.interactions
        return self.cooperations / total if total else 0.0


class SocietyAgent:
    def __init__(
        self,
        agent_id: int,
        strategy: Strategy,
        atp: float,
        *,
        initial_trust: float = 0.5,
        generation: int = 1,
        karma: float = 0.0,
        history_depth: int = 10,
        atp_history_depth: int = 200,
        name: Optional[str] = None,
    ):
        self.id = agent_id
        self.name = name or agent_name(agent_id)
        self.strategy = Strategy(strategy)
        self.atp = float(atp)
        self.alive = True
        self.generation = int(generation)
        self.karma = float(karma)
        self.initial_trust = float(initial_trust)
        self.reputation = float(initial_trust)
        self.trust: Dict[int, float] = {}
        self.last_actions: Dict[int, Action] = {}
        self.history_depth = max(1, int(history_depth))
        self.pair_history: Dict[int, Deque[Tuple[Action, Action]]] = {}
        self.tally = ActionTally()
        self.atp_history: Deque[float] = collections.deque([self.atp], maxlen=max(1, int(atp_history_depth)))
        self.death_epoch: Optional[int] = None
        self.death_cause: Optional[DeathCause] = None

    def __repr__(self) -> str:
        state = "alive" if self.alive else "dead"
        return f"SocietyAgent(id={self.id}, name={self.name!r}, strategy={self.strategy.value}, atp={self.atp:.1f}, {state})"

    def trust_in(self, partner_id: int) -> float:
        return self.trust.get(partner_id, self.initial_trust)

    def history_with(self, partner_id: int) -> Tuple[Tuple[Action, Action], ...]:
        return tuple(self.pair_history.get(partner_id, ()))

    def record_encounter(self, partner_id: int, own_action: Action, partner_action: Action,
                         new_trust: float) -> None:
        self.trust[partner_id] = new_trust
        self.last_actions[partner_id] = own_action
        history = self.pair_history.get(partner_id)
        if history is None:
            history = collections.deque(maxlen=self.history_depth)
            self.pair_history[partner_id] = history
        history.append((own_action, partner_action))
        self.tally.record(own_action)

    def apply_atp(self, delta: float) -> None:
        """Apply a payoff, flooring the balance at zero."""
        self.atp = max(0.0, self.atp + float(delta))

    def close_round(self) -> None:
        self.atp_history.append(self.atp)

    def forget(self, partner_id: int) -> None:
        """Drop every memory of ``partner_id`` (used when that slot is reborn)."""
        self.trust.pop(partner_id, None)
        self.last_actions.pop(partner_id, None)
        self.pair_history.pop(partner_id, None)

    def mark_dead(self, epoch: int, cause: DeathCause) -> None:
        self.alive = False
        self.death_epoch = epoch
        self.death_cause = cause

    def refresh_reputation(self, others: Iterable["SocietyAgent"]) -> float:
        """Average incoming trust from live agents that hold an edge toward us."""
        received: List[float] = [
            other.trust[self.id]
            for other in others
            if other.alive and other.id != self.id and self.id in other.trust
        ]
        if received:
            self.reputation = sum(received) / len(received)
        return self.reputation

    def snapshot(self, coalition_size: int = 0, live_ids: Optional[Iterable[int]] = None) -> AgentSnapshot:
        allowed = set(live_ids) if live_ids is not None else None
        edges = tuple(
            TrustEdge(target_id=target_id, trust=float(value))
            for target_id, value in sorted(self.trust.items())
            if allowed is None or target_id in allowed
        )
        return AgentSnapshot(
            id=self.id,
            name=self.name,
            strategy=self.strategy,
            atp=float(self.atp),
            alive=self.alive,
            generation=self.generation,
            reputation=float(self.reputation),
            cooperation_rate=float(self.tally.cooperation_rate),
            coalition_size=int(coalition_size),
            karma=float(self.karma),
            trust_edges=edges,
            atp_history=tuple(float(value) for value in self.atp_history),
        )
