"""Round execution, deaths, karma rebirth and coalition detection."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PARENT = ROOT.parent
for candidate in (PARENT, ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

import numpy as np
import pytest

from society_abm.agents import SocietyAgent, agent_name
from society_abm.config import SocietyConfig
from society_abm.models import Action, DeathCause, EventType, Outcome, Strategy
from society_abm.population import (
    PopulationDynamics,
    coalition_sizes,
    detect_coalitions,
    dominant_strategy,
)
from society_abm.rounds import RoundExecutor


def _roster(strategies, atp=100.0):
    return {i: SocietyAgent(i, strategy, atp) for i, strategy in enumerate(strategies)}


def test_agent_names_cycle() -> None:
    assert agent_name(0) == "Alice"
    assert agent_name(1) == "Bob"
    assert agent_name(24) == "Alice 2"


def test_payoff_matrix() -> None:
    executor = RoundExecutor(SocietyConfig(), np.random.default_rng(0))
    C, D = Action.COOPERATE, Action.DEFECT
    assert executor.payoffs(C, C) == (4.0, 4.0, Outcome.MUTUAL_COOPERATION)
    assert executor.payoffs(D, D) == (-1.0, -1.0, Outcome.MUTUAL_DEFECTION)
    assert executor.payoffs(D, C) == (6.0, -5.0, Outcome.AGENT2_EXPLOITED)
    assert executor.payoffs(C, D) == (-5.0, 6.0, Outcome.AGENT1_EXPLOITED)


@pytest.mark.parametrize("topology", ["random", "complete", "sampled"])
def test_pair_selection_has_no_duplicates(topology: str) -> None:
    cfg = SocietyConfig(INTERACTION_TOPOLOGY=topology)
    executor = RoundExecutor(cfg, np.random.default_rng(3))
    roster = _roster([Strategy.COOPERATOR] * 6)
    pairs = executor.select_pairs(list(roster.values()))
    keys = [tuple(sorted((a.id, b.id))) for a, b in pairs]
    assert len(keys) == len(set(keys))
    assert all(a.id != b.id for a, b in pairs)
    if topology == "complete":
        assert len(pairs) == 15
    if topology == "sampled":
        assert len(pairs) == round(0.5 * 15)


def test_dead_agents_are_skipped() -> None:
    cfg = SocietyConfig(INTERACTION_TOPOLOGY="complete")
    executor = RoundExecutor(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR] * 4)
    roster[2].mark_dead(1, DeathCause.ATP_EXHAUSTED)
    interactions = executor.run_round(roster, 1, 1)
    assert len(interactions) == 3
    assert not any(interaction.involves(2) for interaction in interactions)
    assert roster[2].trust == {}


def test_single_defector_among_cooperators_one_round() -> None:
    cfg = SocietyConfig(INTERACTION_TOPOLOGY="complete")
    executor = RoundExecutor(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR] * 3 + [Strategy.DEFECTOR])
    interactions = executor.run_round(roster, 1, 1)
    assert len(interactions) == 6

    defector = roster[3]
    for cooperator_id in range(3):
        cooperator = roster[cooperator_id]
        assert cooperator.trust_in(3) < cfg.INITIAL_TRUST
        assert cooperator.trust_in(3) == pytest.approx(0.38)
        # Exploiting a partner costs the exploiter a little trust
        assert defector.trust_in(cooperator_id) == pytest.approx(0.48)
        for other_id in range(3):
            if other_id != cooperator_id:
                assert cooperator.trust_in(other_id) == pytest.approx(0.58)
    assert defector.reputation == pytest.approx(0.38)
    assert defector.atp == pytest.approx(100.0 + 3 * 6.0)
    assert roster[0].atp == pytest.approx(100.0 + 2 * 4.0 - 5.0)


def test_human_agent_requires_decider() -> None:
    executor = RoundExecutor(SocietyConfig(INTERACTION_TOPOLOGY="complete"), np.random.default_rng(0))
    roster = _roster([Strategy.HUMAN, Strategy.COOPERATOR])
    with pytest.raises(ValueError):
        executor.run_round(roster, 1, 1)
    interactions = executor.run_round(roster, 1, 1, lambda agent, partner, epoch, rnd: Action.DEFECT)
    assert interactions[0].agent1_action is Action.DEFECT
    assert interactions[0].outcome is Outcome.AGENT2_EXPLOITED


def test_atp_is_floored_at_zero() -> None:
    executor = RoundExecutor(SocietyConfig(INTERACTION_TOPOLOGY="complete"), np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR, Strategy.DEFECTOR], atp=2.0)
    interaction = executor.run_round(roster, 1, 1)[0]
    assert interaction.agent1_atp_change == pytest.approx(-5.0)
    assert roster[0].atp == 0.0


def _set_trust(roster, a, b, forward, backward) -> None:
    roster[a].trust[b] = forward
    roster[b].trust[a] = backward


def test_coalitions_are_mutual_trust_components() -> None:
    roster = _roster([Strategy.COOPERATOR, Strategy.COOPERATOR, Strategy.RECIPROCATOR, Strategy.DEFECTOR])
    _set_trust(roster, 0, 1, 0.7, 0.7)
    _set_trust(roster, 1, 2, 0.65, 0.9)
    _set_trust(roster, 2, 3, 0.9, 0.3)

    coalitions = detect_coalitions(roster.values(), threshold=0.6, min_size=2)
    assert len(coalitions) == 1
    coalition = coalitions[0]
    assert coalition.members == (0, 1, 2)
    assert coalition.average_trust == pytest.approx((0.7 + 0.7 + 0.65 + 0.9) / 4)
    assert coalition.total_atp == pytest.approx(300.0)
    assert coalition.dominant_strategy is Strategy.COOPERATOR
    assert coalition_sizes(coalitions) == {0: 2, 1: 2, 2: 2}

    assert detect_coalitions(roster.values(), threshold=0.6, min_size=4) == []

    roster[1].mark_dead(1, DeathCause.ATP_EXHAUSTED)
    assert detect_coalitions(roster.values(), threshold=0.6, min_size=2) == []


def test_dominant_strategy_ties() -> None:
    strategies = [Strategy.DEFECTOR, Strategy.COOPERATOR]
    assert dominant_strategy(strategies) is Strategy.COOPERATOR
    assert dominant_strategy(strategies, previous=Strategy.DEFECTOR) is Strategy.DEFECTOR
    assert dominant_strategy([]) is None


def test_exhausted_agent_in_good_standing_is_reborn() -> None:
    cfg = SocietyConfig()
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR, Strategy.DEFECTOR, Strategy.RECIPROCATOR])
    roster[0].atp = 0.0
    roster[0].reputation = 0.6
    roster[0].generation = 2
    roster[1].trust[0] = 0.9
    roster[1].last_actions[0] = Action.DEFECT

    outcome = dynamics.resolve_boundary(roster, epoch=3)
    assert [record.agent_id for record in outcome.deaths] == [0]
    record = outcome.deaths[0]
    assert record.cause is DeathCause.ATP_EXHAUSTED
    assert record.reborn
    assert record.epoch == 3

    successor = roster[0]
    assert successor.alive
    assert successor.generation == 3
    assert successor.atp == pytest.approx(cfg.REBIRTH_MIN_ATP)
    assert successor.atp > 0.0
    assert successor.karma == pytest.approx(0.6 * cfg.KARMA_FRACTION)
    assert successor.trust == {}
    assert successor.name == "Alice"
    assert 0 not in roster[1].trust
    assert 0 not in roster[1].last_actions
    assert dynamics.total_rebirths == 1
    assert [event.type for event in outcome.events] == [EventType.AGENT_DEATH, EventType.AGENT_REBIRTH]


def test_trust_exclusion_rebirth_carries_karma_fraction_of_atp() -> None:
    cfg = SocietyConfig(EXCLUSION_TRUST_THRESHOLD=0.35, REBIRTH_TRUST_THRESHOLD=0.3)
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.DEFECTOR, Strategy.COOPERATOR], atp=80.0)
    roster[0].reputation = 0.32

    outcome = dynamics.resolve_boundary(roster, epoch=1)
    assert outcome.deaths[0].cause is DeathCause.TRUST_EXCLUSION
    assert roster[0].atp == pytest.approx(80.0 * 0.4)
    assert roster[0].generation == 2
    assert roster[0].strategy is Strategy.DEFECTOR


def test_rebirth_floor_applies() -> None:
    cfg = SocietyConfig(REBIRTH_MIN_ATP=35.0)
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR, Strategy.COOPERATOR])
    roster[0].atp = 0.0
    dynamics.resolve_boundary(roster, epoch=1)
    assert roster[0].atp == pytest.approx(35.0)


def test_agent_below_rebirth_threshold_stays_dead() -> None:
    cfg = SocietyConfig(EXCLUSION_TRUST_THRESHOLD=0.2)
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.DEFECTOR, Strategy.COOPERATOR])
    roster[0].reputation = 0.1

    outcome = dynamics.resolve_boundary(roster, epoch=2)
    assert not outcome.deaths[0].reborn
    assert not roster[0].alive
    assert roster[0].death_epoch == 2
    assert outcome.reborn == []
    assert dynamics.total_rebirths == 0

    # Already-dead agents are not processed again
    assert dynamics.resolve_boundary(roster, epoch=3).deaths == []


def test_rebirth_can_be_disabled() -> None:
    cfg = SocietyConfig(ENABLE_REBIRTH=False)
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR, Strategy.COOPERATOR])
    roster[0].atp = 0.0
    outcome = dynamics.resolve_boundary(roster, epoch=1)
    assert not outcome.deaths[0].reborn
    assert not roster[0].alive


def test_resampled_rebirth_draws_from_distribution() -> None:
    cfg = SocietyConfig(REBIRTH_STRATEGY="resample", STRATEGY_DISTRIBUTION={"defector": 12})
    dynamics = PopulationDynamics(cfg, np.random.default_rng(0))
    roster = _roster([Strategy.COOPERATOR, Strategy.COOPERATOR])
    roster[0].atp = 0.0
    dynamics.resolve_boundary(roster, epoch=1)
    assert roster[0].strategy is Strategy.DEFECTOR
