"""Simulation engine for Society ABM."""

from __future__ import annotations

import collections
import copy
import dataclasses
import math
import random
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

import numpy as np

from .agents import SocietyAgent
from .config import ConfigurationError, SocietyConfig
from .metrics import EventDetector, compute_metrics
from .models import (
    Action,
    AgentSnapshot,
    Coalition,
    DeathRecord,
    DecisionContext,
    EpochSnapshot,
    Interaction,
    RunStatus,
    SocietyEvent,
    SocietyFrame,
    SocietyMetrics,
    SocietyResult,
    Strategy,
)
from .population import PopulationDynamics, coalition_sizes, detect_coalitions
from .rounds import RoundExecutor

HumanDecider = Callable[[DecisionContext], Action]


class SimulationInvariantError(RuntimeError):
    """Trust or ATP left its valid range at a snapshot boundary."""


class SimulationStateError(RuntimeError):
    """The engine was driven from a state that does not allow the request."""


class SocietyEngine:
    """
    Orchestrates one run of the trust society: setup, rounds, epoch
    boundaries and result assembly.

    Two run modes share a single code path. ``run_animated()`` returns a lazy
    generator that yields one ``SocietyFrame`` per round; the last round of
    each epoch also carries the boundary processing (deaths, rebirths,
    coalitions, metrics and events). ``run()`` simply drains that generator
    and returns the accumulated ``SocietyResult``. Each engine instance runs
    at most once.

    Parameters
    ----------
    config : SocietyConfig, optional
        Run configuration. It is deep-copied and validated before any agent
        is created.
    human_decider : callable, optional
        ``DecisionContext -> Action`` callback that supplies moves for agents
        with the ``human`` strategy. Required by ``run``/``run_animated``
        when the population contains human agents.
    """

    def __init__(self, config: Optional[SocietyConfig] = None, human_decider: Optional[HumanDecider] = None):
        self.config = copy.deepcopy(config) if config is not None else SocietyConfig()
        self.config.validate()
        self.human_decider = human_decider

        base_seed = self.config.RANDOM_SEED
        if base_seed is None:
            base_seed = random.SystemRandom().randint(0, 2**32 - 2)
        self.seed = int(base_seed)
        self.rng = np.random.default_rng(self.seed)

        self.status = RunStatus.CONFIGURED
        self.roster: Dict[int, SocietyAgent] = self._initialize_agents()
        self.executor = RoundExecutor(self.config, self.rng)
        self.population = PopulationDynamics(self.config, self.rng)
        self.detector = EventDetector(self.config)

        self.metrics: Optional[SocietyMetrics] = None
        self.epochs: List[EpochSnapshot] = []
        self.events: List[SocietyEvent] = []
        self.deaths: List[DeathRecord] = []

        self._epoch_interactions: Deque[Interaction] = collections.deque(maxlen=self.config.INTERACTION_BUFFER_SIZE)
        self._epoch_cooperations = 0
        self._epoch_actions = 0

    def __repr__(self) -> str:
        alive = sum(1 for agent in self.roster.values() if agent.alive)
        return f"SocietyEngine(seed={self.seed}, status={self.status.value}, alive={alive}/{len(self.roster)})"

    def _initialize_agents(self) -> Dict[int, SocietyAgent]:
        """Create the initial roster, assigning strategies in a seeded random order."""
        strategies: List[Strategy] = []
        for strategy, count in self.config.strategy_counts().items():
            strategies.extend([strategy] * count)
        order = self.rng.permutation(len(strategies)) if strategies else []
        roster: Dict[int, SocietyAgent] = {}
        for agent_id, idx in enumerate(order):
            roster[agent_id] = SocietyAgent(
                agent_id,
                strategies[int(idx)],
                self.config.INITIAL_ATP,
                initial_trust=self.config.INITIAL_TRUST,
                history_depth=self.config.PAIR_HISTORY_DEPTH,
                atp_history_depth=self.config.ATP_HISTORY_DEPTH,
            )
        return roster

    # ------------------------------------------------------------------
    # Run modes
    # ------------------------------------------------------------------
    def run(self) -> SocietyResult:
        """Execute every configured epoch and return the aggregate result."""
        for _ in self.run_animated():
            pass
        return self.result()

    def run_animated(self) -> Iterator[SocietyFrame]:
        """
        Start the run and return a generator of per-round frames.

        Configuration problems are raised here, before any round executes.
        Closing the generator early (or simply abandoning it) cancels the run;
        there is nothing else to tear down.
        """
        if self.status is not RunStatus.CONFIGURED or self.epochs:
            raise SimulationStateError(f"Engine cannot be started from status '{self.status.value}'.")
        if self.get_human_agent_ids() and self.human_decider is None:
            raise ConfigurationError("The population contains human agents but no human_decider was supplied.")
        self.status = RunStatus.RUNNING
        return self._frames()

    def _frames(self) -> Iterator[SocietyFrame]:
        n_epochs = self.config.N_EPOCHS
        n_rounds = self.config.ROUNDS_PER_EPOCH
        try:
            if n_epochs == 0:
                self.status = RunStatus.COMPLETED
                yield self._frame(0, 0, (), done=True)
                return
            for epoch in range(1, n_epochs + 1):
                self._reset_epoch_buffers()
                final_epoch = epoch == n_epochs
                if n_rounds == 0:
                    snapshot = self.conclude_epoch(epoch, round_num=0, _internal=True)
                    if final_epoch:
                        self.status = RunStatus.COMPLETED
                    yield self._boundary_frame(snapshot, 0, (), done=final_epoch)
                    continue
                for round_num in range(1, n_rounds + 1):
                    interactions = self.executor.run_round(self.roster, epoch, round_num, self._external_decision)
                    self._record_interactions(interactions)
                    if round_num < n_rounds:
                        yield self._frame(epoch, round_num, tuple(interactions), done=False)
                        continue
                    snapshot = self.conclude_epoch(epoch, round_num=round_num, _internal=True)
                    if final_epoch:
                        self.status = RunStatus.COMPLETED
                    yield self._boundary_frame(snapshot, round_num, tuple(interactions), done=final_epoch)
        except GeneratorExit:
            if self.status is RunStatus.RUNNING:
                self.status = RunStatus.CANCELLED
            raise

    def result(self) -> SocietyResult:
        """Return the accumulated result (partial if the run was cancelled)."""
        return SocietyResult(
            config=self.config.snapshot(),
            seed=self.seed,
            epochs=list(self.epochs),
            events=list(self.events),
            final_metrics=self.epochs[-1].metrics if self.epochs else None,
            deaths=list(self.deaths),
        )

    # ------------------------------------------------------------------
    # Frame and snapshot assembly
    # ------------------------------------------------------------------
    def _reset_epoch_buffers(self) -> None:
        self._epoch_interactions.clear()
        self._epoch_cooperations = 0
        self._epoch_actions = 0

    def _record_interactions(self, interactions: List[Interaction]) -> None:
        self._epoch_interactions.extend(interactions)
        for interaction in interactions:
            self._epoch_cooperations += interaction.cooperative_actions
            self._epoch_actions += 2

    def _agent_snapshots(self, coalitions: Tuple[Coalition, ...]) -> Tuple[AgentSnapshot, ...]:
        sizes = coalition_sizes(coalitions)
        live_ids = [agent_id for agent_id, agent in sorted(self.roster.items()) if agent.alive]
        return tuple(
            self.roster[agent_id].snapshot(coalition_size=sizes.get(agent_id, 0), live_ids=live_ids)
            for agent_id in live_ids
        )

    def _current_coalitions(self) -> Tuple[Coalition, ...]:
        return tuple(
            detect_coalitions(self.roster.values(), self.config.COALITION_THRESHOLD, self.config.MIN_COALITION_SIZE)
        )

    def _metrics_for(self, agents: Tuple[AgentSnapshot, ...], coalitions: Tuple[Coalition, ...]) -> SocietyMetrics:
        return compute_metrics(
            agents,
            tuple(self._epoch_interactions),
            coalitions,
            action_counts=(self._epoch_cooperations, self._epoch_actions),
            active_edge_threshold=self.config.ACTIVE_EDGE_THRESHOLD,
            total_generations=self.population.total_rebirths,
            previous=self.metrics,
        )

    def _frame(self, epoch: int, round_num: int, interactions: Tuple[Interaction, ...], done: bool) -> SocietyFrame:
        coalitions = self._current_coalitions()
        agents = self._agent_snapshots(coalitions)
        metrics = self._metrics_for(agents, coalitions)
        self._check_invariants(agents)
        return SocietyFrame(
            epoch=epoch,
            round=round_num,
            interactions=interactions,
            agents=agents,
            coalitions=coalitions,
            metrics=metrics,
            events=(),
            done=done,
            epoch_complete=False,
        )

    @staticmethod
    def _boundary_frame(snapshot: EpochSnapshot, round_num: int, interactions: Tuple[Interaction, ...],
                        done: bool) -> SocietyFrame:
        return SocietyFrame(
            epoch=snapshot.epoch,
            round=round_num,
            interactions=interactions,
            agents=snapshot.agents,
            coalitions=snapshot.coalitions,
            metrics=snapshot.metrics,
            events=snapshot.events,
            done=done,
            epoch_complete=True,
        )

    def _check_invariants(self, agents: Tuple[AgentSnapshot, ...]) -> None:
        seen = set()
        for agent in agents:
            if agent.id in seen:
                raise SimulationInvariantError(f"Duplicate live agent id {agent.id} in snapshot.")
            seen.add(agent.id)
            if not math.isfinite(agent.atp) or agent.atp < 0.0:
                raise SimulationInvariantError(f"Agent {agent.id} has invalid ATP {agent.atp!r}.")
            for edge in agent.trust_edges:
                if not 0.0 <= edge.trust <= 1.0:
                    raise SimulationInvariantError(
                        f"Trust from {agent.id} to {edge.target_id} left [0, 1]: {edge.trust!r}."
                    )

    def conclude_epoch(self, epoch: int, round_num: Optional[int] = None,
                       _internal: bool = False) -> EpochSnapshot:
        """
        Close ``epoch``: resolve deaths and rebirths, recompute coalitions,
        metrics and events, and record the epoch snapshot.

        Driven runs call this automatically on the last round of each epoch;
        manual (human-player) sessions call it directly. Every event raised at
        the boundary is stamped with ``round_num``, which defaults to the last
        round of the epoch.
        """
        if not _internal:
            self._require_manual_mode()

        lifecycle = self.population.resolve_boundary(self.roster, epoch)
        self.deaths.extend(lifecycle.deaths)
        for agent in self.roster.values():
            if agent.alive:
                agent.refresh_reputation(self.roster.values())

        coalitions = self._current_coalitions()
        agents = self._agent_snapshots(coalitions)
        metrics = self._metrics_for(agents, coalitions)
        self._check_invariants(agents)

        if round_num is None:
            round_num = self.config.ROUNDS_PER_EPOCH
        events = list(lifecycle.events)
        events.extend(self.detector.detect(epoch, agents, coalitions, metrics))
        events = [dataclasses.replace(event, round=round_num) for event in events]
        snapshot = EpochSnapshot(
            epoch=epoch,
            agents=agents,
            interactions=tuple(self._epoch_interactions),
            coalitions=coalitions,
            metrics=metrics,
            events=tuple(events),
        )
        self.metrics = metrics
        self.epochs.append(snapshot)
        self.events.extend(events)
        if not _internal:
            self._reset_epoch_buffers()
        return snapshot

    # ------------------------------------------------------------------
    # Human player support
    # ------------------------------------------------------------------
    def _external_decision(self, agent: SocietyAgent, partner: SocietyAgent, epoch: int, round_num: int) -> Action:
        context = self._decision_context(agent, partner, epoch, round_num)
        return self.human_decider(context)

    def _decision_context(self, agent: SocietyAgent, partner: SocietyAgent, epoch: int,
                          round_num: int) -> DecisionContext:
        live_ids = [agent_id for agent_id, other in sorted(self.roster.items()) if other.alive]
        return DecisionContext(
            epoch=epoch,
            round=round_num,
            agent=agent.snapshot(live_ids=live_ids),
            partner=partner.snapshot(live_ids=live_ids),
            trust_in_partner=agent.trust_in(partner.id),
            trust_from_partner=partner.trust_in(agent.id),
            history=agent.history_with(partner.id),
        )

    def _require_manual_mode(self) -> None:
        if self.status is not RunStatus.CONFIGURED:
            raise SimulationStateError(
                f"Manual play is only available before a driven run (status '{self.status.value}')."
            )

    def _live_agent(self, agent_id: int) -> SocietyAgent:
        if agent_id not in self.roster:
            raise KeyError(f"Unknown agent id {agent_id}")
        agent = self.roster[agent_id]
        if not agent.alive:
            raise ValueError(f"{agent.name} is dead and cannot interact.")
        return agent

    def get_human_agent_ids(self) -> List[int]:
        return [agent_id for agent_id, agent in sorted(self.roster.items())
                if agent.alive and agent.strategy.is_external]

    def get_agent(self, agent_id: int) -> Optional[AgentSnapshot]:
        agent = self.roster.get(agent_id)
        if agent is None:
            return None
        live_ids = [other_id for other_id, other in self.roster.items() if other.alive]
        return agent.snapshot(live_ids=live_ids)

    def get_alive_agents(self) -> List[AgentSnapshot]:
        return list(self._agent_snapshots(self._current_coalitions()))

    def create_decision_context(self, agent_id: int, partner_id: int, epoch: int, round_num: int) -> DecisionContext:
        """Describe the upcoming encounter from ``agent_id``'s point of view."""
        if agent_id == partner_id:
            raise ValueError("An agent cannot interact with itself.")
        return self._decision_context(self._live_agent(agent_id), self._live_agent(partner_id), epoch, round_num)

    def execute_human_interaction(self, human_id: int, partner_id: int, action: Action,
                                  epoch: int, round_num: int) -> Interaction:
        """Play the human's chosen ``action`` against ``partner_id``'s own strategy."""
        self._require_manual_mode()
        if human_id == partner_id:
            raise ValueError("An agent cannot interact with itself.")
        human = self._live_agent(human_id)
        partner = self._live_agent(partner_id)
        if not human.strategy.is_external:
            raise ValueError(f"{human.name} is not a human-controlled agent.")
        if partner.strategy.is_external:
            raise ValueError(
                f"{partner.name} is also human-controlled; a manual interaction needs an automated partner."
            )
        human_action = Action(action)
        partner_action = self.executor.choose_action(partner, human)
        interaction = self.executor.resolve(human, partner, epoch, round_num, human_action, partner_action)
        self._record_interactions([interaction])
        human.close_round()
        partner.close_round()
        human.refresh_reputation(self.roster.values())
        partner.refresh_reputation(self.roster.values())
        return interaction
