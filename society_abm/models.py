"""
Core dataclasses used across the Society ABM simulation.

This module defines the plain-data contracts the engine hands to its
consumers (renderers, narrative generators, query helpers). Everything here
is immutable once emitted, so a saved result can never alias the live state
of a run that is still in progress.

Key Concepts Operationalized
----------------------------
- **Strategy / Action**: The closed set of behavioural rules and the two
  moves of the prisoner's dilemma.

- **Interaction**: One pairwise encounter, with each side's move, ATP payoff
  and the change in each side's trust toward the other.

- **Coalition**: A connected cluster of agents whose trust in each other
  clears the coalition threshold in both directions.

- **SocietyMetrics / SocietyEvent**: Per-epoch aggregates and the discrete,
  append-only moments detected by comparing consecutive epochs.

References
----------
Axelrod, R. (1984). The Evolution of Cooperation. Basic Books.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd


class Action(str, Enum):
    COOPERATE = "cooperate"
    DEFECT = "defect"


class Strategy(str, Enum):
    """Closed set of behavioural rules an agent can follow."""

    COOPERATOR = "cooperator"
    DEFECTOR = "defector"
    RECIPROCATOR = "reciprocator"
    CAUTIOUS = "cautious"
    ADAPTIVE = "adaptive"
    HUMAN = "human"

    @property
    def label(self) -> str:
        return self.value.title()

    @property
    def is_defector_class(self) -> bool:
        return self is Strategy.DEFECTOR

    @property
    def is_external(self) -> bool:
        """True when decisions are injected from outside the engine."""
        return self is Strategy.HUMAN


class Outcome(str, Enum):
    MUTUAL_COOPERATION = "mutual_cooperation"
    MUTUAL_DEFECTION = "mutual_defection"
    AGENT1_EXPLOITED = "agent1_exploited"
    AGENT2_EXPLOITED = "agent2_exploited"


class EventType(str, Enum):
    COALITION_FORMED = "coalition_formed"
    COALITION_DISSOLVED = "coalition_dissolved"
    AGENT_DEATH = "agent_death"
    AGENT_REBIRTH = "agent_rebirth"
    DEFECTOR_ISOLATED = "defector_isolated"
    TRUST_NETWORK_CONNECTED = "trust_network_connected"
    COOPERATION_SURGE = "cooperation_surge"
    TRUST_COLLAPSE = "trust_collapse"
    STRATEGY_SHIFT = "strategy_shift"
    SOCIETY_STABLE = "society_stable"


class Significance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RunStatus(str, Enum):
    CONFIGURED = "configured"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeathCause(str, Enum):
    ATP_EXHAUSTED = "atp_exhausted"
    TRUST_EXCLUSION = "trust_exclusion"


def _plain(value: Any) -> Any:
    """Convert enums, tuples and nested dataclasses into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {_plain(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    return value


@dataclass(frozen=True, slots=True)
class TrustEdge:
    target_id: int
    trust: float


@dataclass(frozen=True, slots=True)
class AgentSnapshot:
    """Read-only view of one agent at a frame or epoch boundary."""

    id: int
    name: str
    strategy: Strategy
    atp: float
    alive: bool
    generation: int
    reputation: float
    cooperation_rate: float
    coalition_size: int
    karma: float
    trust_edges: Tuple[TrustEdge, ...] = ()
    atp_history: Tuple[float, ...] = ()

    def trust_toward(self, target_id: int) -> Optional[float]:
        for edge in self.trust_edges:
            if edge.target_id == target_id:
                return edge.trust
        return None

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class Interaction:
    """
    One pairwise encounter within a round.

    ``agent1_trust_change`` is the change in agent 1's trust toward agent 2,
    and ``agent2_trust_change`` the change in agent 2's trust toward agent 1.
    ATP changes include the interaction cost and are the requested deltas,
    before the zero floor is applied to balances.
    """

    epoch: int
    round: int
    agent1_id: int
    agent2_id: int
    agent1_action: Action
    agent2_action: Action
    agent1_atp_change: float
    agent2_atp_change: float
    agent1_trust_change: float
    agent2_trust_change: float
    outcome: Outcome

    @property
    def participants(self) -> Tuple[int, int]:
        return (self.agent1_id, self.agent2_id)

    @property
    def actions(self) -> Tuple[Action, Action]:
        return (self.agent1_action, self.agent2_action)

    @property
    def payoffs(self) -> Tuple[float, float]:
        return (self.agent1_atp_change, self.agent2_atp_change)

    @property
    def cooperative_actions(self) -> int:
        return sum(1 for action in self.actions if action is Action.COOPERATE)

    def involves(self, agent_id: int) -> bool:
        return agent_id in (self.agent1_id, self.agent2_id)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class Coalition:
    members: Tuple[int, ...]
    average_trust: float
    total_atp: float
    dominant_strategy: Strategy

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def key(self) -> frozenset:
        """Membership identity used to match coalitions across epochs."""
        return frozenset(self.members)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class SocietyMetrics:
    average_trust: float
    trust_variance: float
    cooperation_rate: float
    num_coalitions: int
    largest_coalition: int
    alive_count: int
    gini_coefficient: float
    network_density: float
    strategy_distribution: Dict[str, int]
    total_generations: int

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class SocietyEvent:
    epoch: int
    type: EventType
    message: str
    significance: Significance
    agent_ids: Tuple[int, ...] = ()
    round: Optional[int] = None
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class DeathRecord:
    """Historical record of an agent life that ended."""

    agent_id: int
    name: str
    strategy: Strategy
    generation: int
    epoch: int
    cause: DeathCause
    final_atp: float
    final_reputation: float
    reborn: bool

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class DecisionContext:
    """What a human player sees before choosing a move against a partner."""

    epoch: int
    round: int
    agent: AgentSnapshot
    partner: AgentSnapshot
    trust_in_partner: float
    trust_from_partner: float
    history: Tuple[Tuple[Action, Action], ...] = ()

    @property
    def partner_last_action(self) -> Optional[Action]:
        return self.history[-1][1] if self.history else None


@dataclass(frozen=True, slots=True)
class SocietyFrame:
    """One round of an animated run."""

    epoch: int
    round: int
    interactions: Tuple[Interaction, ...]
    agents: Tuple[AgentSnapshot, ...]
    coalitions: Tuple[Coalition, ...]
    metrics: SocietyMetrics
    events: Tuple[SocietyEvent, ...]
    done: bool
    epoch_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True, slots=True)
class EpochSnapshot:
    epoch: int
    agents: Tuple[AgentSnapshot, ...]
    interactions: Tuple[Interaction, ...]
    coalitions: Tuple[Coalition, ...]
    metrics: SocietyMetrics
    events: Tuple[SocietyEvent, ...]

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(slots=True)
class SocietyResult:
    """Aggregate output of a complete run."""

    config: Dict[str, Any]
    seed: int
    epochs: List[EpochSnapshot] = field(default_factory=list)
    events: List[SocietyEvent] = field(default_factory=list)
    final_metrics: Optional[SocietyMetrics] = None
    deaths: List[DeathRecord] = field(default_factory=list)

    def metrics_frame(self) -> pd.DataFrame:
        """One row per epoch with the scalar metrics and strategy counts."""
        rows = []
        for snapshot in self.epochs:
            row = {"epoch": snapshot.epoch}
            metrics = snapshot.metrics.to_dict()
            distribution = metrics.pop("strategy_distribution", {})
            row.update(metrics)
            for tag, count in distribution.items():
                row[f"strategy_{tag}"] = count
            rows.append(row)
        return pd.DataFrame(rows)

    def events_frame(self) -> pd.DataFrame:
        columns = ["epoch", "round", "type", "significance", "message", "agent_ids", "note"]
        records = [event.to_dict() for event in self.events]
        return pd.DataFrame(records, columns=columns)

    def agents_frame(self) -> pd.DataFrame:
        """Final-epoch roster, trust edges summarised as counts."""
        if not self.epochs:
            return pd.DataFrame()
        records = []
        for agent in self.epochs[-1].agents:
            record = agent.to_dict()
            edges = record.pop("trust_edges", [])
            record.pop("atp_history", None)
            record["trust_edge_count"] = len(edges)
            records.append(record)
        return pd.DataFrame(records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.config,
            "seed": self.seed,
            "epochs": [snapshot.to_dict() for snapshot in self.epochs],
            "events": [event.to_dict() for event in self.events],
            "final_metrics": self.final_metrics.to_dict() if self.final_metrics else None,
            "deaths": [record.to_dict() for record in self.deaths],
        }
