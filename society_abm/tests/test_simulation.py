"""End-to-end behaviour of the society engine."""

from __future__ import annotations

import math
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PARENT = ROOT.parent
for candidate in (PARENT, ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

import networkx as nx
import pytest

from society_abm.config import ConfigurationError, SocietyConfig, apply_preset, get_preset
from society_abm.models import Action, DeathCause, EventType, RunStatus, Strategy
from society_abm.simulation import SimulationInvariantError, SimulationStateError, SocietyEngine


def _config(**overrides) -> SocietyConfig:
    return SocietyConfig().copy_with_overrides(overrides)


def _assert_frame_bounds(frame) -> None:
    live_ids = {agent.id for agent in frame.agents}
    assert frame.metrics.alive_count == len(frame.agents)
    for agent in frame.agents:
        assert agent.alive
        assert math.isfinite(agent.atp) and agent.atp >= 0.0
        for edge in agent.trust_edges:
            assert 0.0 <= edge.trust <= 1.0
            assert edge.target_id in live_ids
    metrics = frame.metrics
    for value in (metrics.average_trust, metrics.cooperation_rate, metrics.gini_coefficient,
                  metrics.network_density):
        assert 0.0 <= value <= 1.0
    assert sum(metrics.strategy_distribution.values()) == metrics.alive_count


@pytest.mark.parametrize("topology", ["random", "complete", "sampled"])
def test_atp_and_trust_stay_in_range(topology: str) -> None:
    cfg = _config(INTERACTION_TOPOLOGY=topology, N_EPOCHS=3, ROUNDS_PER_EPOCH=5, RANDOM_SEED=11)
    engine = SocietyEngine(cfg)
    frames = list(engine.run_animated())
    assert len(frames) == 15
    for frame in frames:
        _assert_frame_bounds(frame)


def test_same_seed_gives_identical_results() -> None:
    cfg = _config(N_EPOCHS=3, ROUNDS_PER_EPOCH=4, RANDOM_SEED=2024)
    first = SocietyEngine(cfg).run()
    second = SocietyEngine(cfg).run()
    assert first.to_dict() == second.to_dict()


def test_run_and_animated_run_agree() -> None:
    cfg = _config(N_EPOCHS=2, ROUNDS_PER_EPOCH=3, RANDOM_SEED=5)
    result = SocietyEngine(cfg).run()

    engine = SocietyEngine(cfg)
    frames = list(engine.run_animated())
    assert len(frames) == 6
    assert [frame.epoch_complete for frame in frames] == [False, False, True, False, False, True]
    assert [frame.done for frame in frames] == [False] * 5 + [True]
    assert [frame.round for frame in frames] == [1, 2, 3, 1, 2, 3]

    animated = engine.result()
    assert animated.to_dict() == result.to_dict()
    boundary_frames = [frame for frame in frames if frame.epoch_complete]
    for frame, snapshot in zip(boundary_frames, animated.epochs):
        assert frame.metrics == snapshot.metrics
        assert frame.events == snapshot.events
    assert animated.events
    assert all(event.round == 3 for event in animated.events)


def test_coalitions_match_mutual_trust_components() -> None:
    cfg = _config(N_EPOCHS=4, ROUNDS_PER_EPOCH=6, RANDOM_SEED=8, INTERACTION_TOPOLOGY="complete")
    result = SocietyEngine(cfg).run()
    threshold = cfg.COALITION_THRESHOLD
    for snapshot in result.epochs:
        trust = {(agent.id, edge.target_id): edge.trust for agent in snapshot.agents for edge in agent.trust_edges}
        graph = nx.Graph()
        graph.add_nodes_from(agent.id for agent in snapshot.agents)
        for (a, b), value in trust.items():
            if a < b and value >= threshold and trust.get((b, a), 0.0) >= threshold:
                graph.add_edge(a, b)
        expected = {frozenset(c) for c in nx.connected_components(graph) if len(c) >= cfg.MIN_COALITION_SIZE}
        assert {coalition.key for coalition in snapshot.coalitions} == expected
        members = [m for coalition in snapshot.coalitions for m in coalition.members]
        assert len(members) == len(set(members))


def _defector_table(**overrides) -> SocietyConfig:
    base = {
        "N_AGENTS": 4,
        "STRATEGY_DISTRIBUTION": {"defector": 4},
        "INITIAL_ATP": 3.0,
        "INTERACTION_TOPOLOGY": "complete",
        "N_EPOCHS": 1,
        "ROUNDS_PER_EPOCH": 1,
    }
    base.update(overrides)
    return _config(**base)


def test_exhausted_agents_die_and_are_reborn() -> None:
    cfg = _defector_table()
    result = SocietyEngine(cfg).run()
    assert len(result.deaths) == 4
    for record in result.deaths:
        assert record.cause is DeathCause.ATP_EXHAUSTED
        assert record.reborn
        assert record.final_atp == 0.0
        assert record.final_reputation == pytest.approx(0.464)

    types = [event.type for event in result.events]
    assert types[:8] == [EventType.AGENT_DEATH] * 4 + [EventType.AGENT_REBIRTH] * 4

    snapshot = result.epochs[0]
    assert len(snapshot.agents) == 4
    for agent in snapshot.agents:
        assert agent.generation == 2
        assert agent.atp == pytest.approx(cfg.REBIRTH_MIN_ATP)
        assert agent.karma == pytest.approx(0.464 * 0.4)
        assert agent.trust_edges == ()
    assert result.final_metrics.total_generations == 4
    assert all(event.round == 1 for event in result.events)


def test_reborn_agents_never_start_exhausted() -> None:
    result = SocietyEngine(_defector_table(N_EPOCHS=3)).run()
    assert result.final_metrics.total_generations == 4
    for snapshot in result.epochs:
        assert len(snapshot.agents) == 4
        assert all(agent.atp > 0.0 for agent in snapshot.agents)
    assert result.epochs[1].agents[0].atp == pytest.approx(20.0 - 3.0)


def test_agents_below_rebirth_threshold_never_return() -> None:
    cfg = _defector_table(REBIRTH_TRUST_THRESHOLD=0.47, N_EPOCHS=2)
    result = SocietyEngine(cfg).run()
    assert len(result.deaths) == 4
    assert not any(record.reborn for record in result.deaths)
    for snapshot in result.epochs:
        assert snapshot.agents == ()
        assert snapshot.metrics.alive_count == 0
        for value in (snapshot.metrics.average_trust, snapshot.metrics.cooperation_rate,
                      snapshot.metrics.gini_coefficient):
            assert not math.isnan(value)
    assert result.final_metrics.total_generations == 0


def test_trust_exclusion_rebirth() -> None:
    cfg = _defector_table(INITIAL_ATP=100.0, EXCLUSION_TRUST_THRESHOLD=0.47)
    result = SocietyEngine(cfg).run()
    assert all(record.cause is DeathCause.TRUST_EXCLUSION for record in result.deaths)
    for agent in result.epochs[0].agents:
        assert agent.atp == pytest.approx(97.0 * 0.4)
        assert agent.karma == pytest.approx(0.464 * 0.4)


def test_cooperative_society_forms_one_coalition() -> None:
    cfg = _config(
        N_AGENTS=6,
        STRATEGY_DISTRIBUTION={"cooperator": 6},
        INTERACTION_TOPOLOGY="complete",
        N_EPOCHS=2,
        ROUNDS_PER_EPOCH=3,
    )
    result = SocietyEngine(cfg).run()
    first = result.epochs[0]
    assert first.metrics.cooperation_rate == 1.0
    assert first.metrics.num_coalitions == 1
    assert first.metrics.largest_coalition == 6
    assert first.metrics.gini_coefficient == 0.0
    assert first.metrics.average_trust == pytest.approx(0.74)
    types = [event.type for event in first.events]
    assert EventType.COALITION_FORMED in types
    assert EventType.TRUST_NETWORK_CONNECTED in types
    assert all(agent.coalition_size == 5 for agent in first.agents)
    assert first.agents[0].atp_history == (100.0, 120.0, 140.0, 160.0)
    assert result.deaths == []


def test_defectors_are_isolated_by_a_cooperative_majority() -> None:
    cfg = _config(
        N_AGENTS=12,
        STRATEGY_DISTRIBUTION={"cooperator": 10, "defector": 2},
        INTERACTION_TOPOLOGY="complete",
        N_EPOCHS=3,
        ROUNDS_PER_EPOCH=10,
    )
    result = SocietyEngine(cfg).run()
    isolated = [event for event in result.events if event.type is EventType.DEFECTOR_ISOLATED]
    defector_ids = {agent.id for agent in result.epochs[-1].agents if agent.strategy is Strategy.DEFECTOR}
    assert {event.agent_ids[0] for event in isolated} == defector_ids
    assert all(event.epoch == 1 for event in isolated)
    final = result.epochs[-1].agents
    cooperator_ids = {agent.id for agent in final if agent.strategy is Strategy.COOPERATOR}
    for agent in final:
        if agent.strategy is Strategy.DEFECTOR:
            assert agent.reputation < 0.2
            continue
        trust = {edge.target_id: edge.trust for edge in agent.trust_edges}
        for other_id in cooperator_ids - {agent.id}:
            assert trust[other_id] > cfg.ISOLATION_THRESHOLD


def test_all_cooperator_society_stays_cooperative() -> None:
    cfg = _config(
        N_AGENTS=12,
        STRATEGY_DISTRIBUTION={"cooperator": 12},
        INTERACTION_TOPOLOGY="complete",
        N_EPOCHS=5,
        ROUNDS_PER_EPOCH=2,
    )
    result = SocietyEngine(cfg).run()
    assert len(result.epochs) == 5
    trust_by_epoch = [snapshot.metrics.average_trust for snapshot in result.epochs]
    for snapshot in result.epochs:
        assert snapshot.metrics.cooperation_rate == 1.0
        assert snapshot.metrics.alive_count == 12
    assert all(later >= earlier for earlier, later in zip(trust_by_epoch, trust_by_epoch[1:]))
    assert trust_by_epoch[0] == pytest.approx(0.66)
    assert trust_by_epoch[-1] == pytest.approx(1.0)
    assert result.deaths == []


def test_status_and_cancellation() -> None:
    engine = SocietyEngine(_config(N_EPOCHS=3, ROUNDS_PER_EPOCH=2))
    assert engine.status is RunStatus.CONFIGURED
    frames = engine.run_animated()
    assert engine.status is RunStatus.RUNNING
    next(frames)
    next(frames)
    frames.close()
    assert engine.status is RunStatus.CANCELLED

    partial = engine.result()
    assert len(partial.epochs) == 1
    assert partial.final_metrics == partial.epochs[0].metrics
    with pytest.raises(SimulationStateError):
        engine.run()


def test_completed_engine_cannot_rerun() -> None:
    engine = SocietyEngine(_config(N_EPOCHS=1, ROUNDS_PER_EPOCH=1))
    engine.run()
    assert engine.status is RunStatus.COMPLETED
    with pytest.raises(SimulationStateError):
        engine.run_animated()


def test_zero_epochs_yields_single_done_frame() -> None:
    engine = SocietyEngine(_config(N_EPOCHS=0))
    frames = list(engine.run_animated())
    assert len(frames) == 1
    assert frames[0].done
    assert (frames[0].epoch, frames[0].round) == (0, 0)
    assert engine.status is RunStatus.COMPLETED
    result = engine.result()
    assert result.epochs == []
    assert result.final_metrics is None


def test_zero_rounds_still_closes_each_epoch() -> None:
    engine = SocietyEngine(_config(N_EPOCHS=3, ROUNDS_PER_EPOCH=0))
    frames = list(engine.run_animated())
    assert [frame.epoch for frame in frames] == [1, 2, 3]
    assert all(frame.epoch_complete and frame.round == 0 for frame in frames)
    assert all(frame.interactions == () for frame in frames)
    assert frames[-1].done
    assert all(event.round == 0 for frame in frames for event in frame.events)


def test_interaction_buffer_is_bounded() -> None:
    cfg = _config(
        N_AGENTS=6,
        STRATEGY_DISTRIBUTION={"cooperator": 6},
        INTERACTION_TOPOLOGY="complete",
        N_EPOCHS=1,
        ROUNDS_PER_EPOCH=2,
        INTERACTION_BUFFER_SIZE=5,
    )
    result = SocietyEngine(cfg).run()
    snapshot = result.epochs[0]
    assert len(snapshot.interactions) == 5
    assert snapshot.interactions[-1].round == 2
    assert snapshot.metrics.cooperation_rate == 1.0


def test_unseeded_run_reports_its_seed() -> None:
    engine = SocietyEngine(_config(RANDOM_SEED=None, N_EPOCHS=1, ROUNDS_PER_EPOCH=2))
    assert isinstance(engine.seed, int)
    assert engine.run().seed == engine.seed


def test_invalid_configuration_is_rejected_at_construction() -> None:
    with pytest.raises(ConfigurationError):
        SocietyEngine(SocietyConfig(N_AGENTS=-1))
    with pytest.raises(ConfigurationError):
        SocietyEngine(SocietyConfig(STRATEGY_DISTRIBUTION={"gambler": 12}))


def test_human_agents_need_a_decider() -> None:
    cfg = apply_preset(SocietyConfig(), get_preset("human-balanced"))
    engine = SocietyEngine(cfg)
    with pytest.raises(ConfigurationError):
        engine.run()
    assert engine.status is RunStatus.CONFIGURED


def test_human_decider_receives_context() -> None:
    cfg = apply_preset(SocietyConfig(), get_preset("human-balanced")).copy_with_overrides(
        {"N_EPOCHS": 2, "ROUNDS_PER_EPOCH": 3}
    )
    contexts = []

    def decider(context):
        contexts.append(context)
        return Action.COOPERATE

    engine = SocietyEngine(cfg, human_decider=decider)
    result = engine.run()
    human_ids = set(engine.get_human_agent_ids())
    assert len(human_ids) == 1
    assert contexts
    for context in contexts:
        assert context.agent.strategy is Strategy.HUMAN
        assert context.agent.id in human_ids
        assert context.partner.id != context.agent.id
        assert 0.0 <= context.trust_in_partner <= 1.0
    assert len(result.epochs) == 2


def test_manual_human_session() -> None:
    cfg = apply_preset(SocietyConfig(), get_preset("human-balanced"))
    engine = SocietyEngine(cfg)
    (human_id,) = engine.get_human_agent_ids()
    partner_id = next(agent.id for agent in engine.get_alive_agents() if agent.id != human_id)

    context = engine.create_decision_context(human_id, partner_id, 1, 1)
    assert context.agent.id == human_id
    assert context.trust_in_partner == pytest.approx(cfg.INITIAL_TRUST)
    assert context.history == ()

    interaction = engine.execute_human_interaction(human_id, partner_id, Action.COOPERATE, 1, 1)
    assert interaction.agent1_id == human_id
    assert interaction.agent1_action is Action.COOPERATE
    assert len(engine.create_decision_context(human_id, partner_id, 1, 2).history) == 1

    with pytest.raises(ValueError):
        engine.execute_human_interaction(partner_id, human_id, Action.DEFECT, 1, 2)
    with pytest.raises(ValueError):
        engine.create_decision_context(human_id, human_id, 1, 2)
    with pytest.raises(KeyError):
        engine.create_decision_context(human_id, 999, 1, 2)
    assert engine.get_agent(999) is None

    snapshot = engine.conclude_epoch(1)
    assert snapshot.interactions == (interaction,)
    assert engine.result().epochs == [snapshot]
    # A manual session cannot be turned into a driven run
    with pytest.raises(SimulationStateError):
        engine.run_animated()


def test_invariant_violation_is_raised() -> None:
    engine = SocietyEngine(_config(N_AGENTS=4, STRATEGY_DISTRIBUTION={"cooperator": 4}))
    engine.roster[0].trust[1] = 1.5
    with pytest.raises(SimulationInvariantError):
        engine.conclude_epoch(1)


def test_manually_closed_epoch_stamps_events_with_round() -> None:
    engine = SocietyEngine(_config(N_AGENTS=4, STRATEGY_DISTRIBUTION={"cooperator": 4}, ROUNDS_PER_EPOCH=6))
    engine.roster[0].atp = 0.0
    snapshot = engine.conclude_epoch(1, round_num=4)
    assert [event.type for event in snapshot.events][:2] == [EventType.AGENT_DEATH, EventType.AGENT_REBIRTH]
    assert all(event.round == 4 for event in snapshot.events)

    engine.roster[1].atp = 0.0
    snapshot = engine.conclude_epoch(2)
    assert snapshot.events
    assert all(event.round == 6 for event in snapshot.events)


def test_manual_interaction_needs_an_automated_partner() -> None:
    cfg = _config(N_AGENTS=3, STRATEGY_DISTRIBUTION={"human": 2, "cooperator": 1})
    engine = SocietyEngine(cfg)
    first, second = engine.get_human_agent_ids()
    with pytest.raises(ValueError, match="human-controlled"):
        engine.execute_human_interaction(first, second, Action.COOPERATE, 1, 1)
    assert engine.get_agent(first).atp_history == (cfg.INITIAL_ATP,)


def test_manual_interaction_closes_the_round() -> None:
    cfg = apply_preset(SocietyConfig(), get_preset("human-balanced"))
    engine = SocietyEngine(cfg)
    (human_id,) = engine.get_human_agent_ids()
    partner_id = next(agent.id for agent in engine.get_alive_agents() if agent.id != human_id)
    before = len(engine.get_agent(partner_id).atp_history)

    interaction = engine.execute_human_interaction(human_id, partner_id, Action.COOPERATE, 1, 1)
    human = engine.get_agent(human_id)
    partner = engine.get_agent(partner_id)
    assert human.atp_history == (cfg.INITIAL_ATP, cfg.INITIAL_ATP + interaction.agent1_atp_change)
    assert len(partner.atp_history) == before + 1
    assert partner.atp_history[-1] == pytest.approx(partner.atp)
