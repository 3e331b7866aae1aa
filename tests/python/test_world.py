from __future__ import annotations

import pytest
from pygame.math import Vector3

from flockgrid.sim.core.config import GridConfig, SimulationConfig, SteeringConfig
from flockgrid.sim.core.errors import CapacityExceeded, OutOfRangeCoordinate, UnknownAgent
from flockgrid.sim.core.world import Flock


def _small_config(**overrides) -> SimulationConfig:
    values = dict(
        initial_population=40,
        spawn_radius=25.0,
        grid=GridConfig(cell_size=10.0, dimension=9),
        seed=7,
    )
    values.update(overrides)
    return SimulationConfig(**values)


def _tiny_flock(policy: str = "clamp", **overrides) -> Flock:
    return Flock(
        SimulationConfig(
            grid=GridConfig(cell_size=10.0, dimension=3, out_of_range_policy=policy),
            update_distance_jitter=0.0,
            **overrides,
        )
    )


def test_bootstrap_spawns_initial_population():
    flock = Flock(_small_config())

    assert flock.population == 40
    assert [agent.id for agent in flock.agents] == list(range(40))
    assert flock.tick_count == 0
    flock.grid.check_membership()
    assert all(not agent.blended_statistics.is_empty for agent in flock.agents)


def test_capacity_is_enforced_and_ids_are_reused():
    flock = _tiny_flock(agent_capacity=2)
    first = flock.register_agent((0, 0, 0))
    second = flock.register_agent((1, 0, 0))

    with pytest.raises(CapacityExceeded):
        flock.register_agent((2, 0, 0))

    flock.remove_agent(first)
    assert flock.register_agent((3, 0, 0)) == first
    assert flock.population == 2
    assert flock.grid.members_of((1, 1, 1)) == [second, first]


def test_removed_agent_is_unknown():
    flock = _tiny_flock()
    agent_id = flock.register_agent((0, 0, 0))
    flock.remove_agent(agent_id)

    with pytest.raises(UnknownAgent):
        flock.agent(agent_id)
    with pytest.raises(UnknownAgent):
        flock.remove_agent(agent_id)
    assert flock.grid.coordinate_for(agent_id) is None


def test_retain_policy_refuses_unplaceable_registration():
    flock = _tiny_flock("retain")

    with pytest.raises(OutOfRangeCoordinate):
        flock.register_agent((100, 0, 0))

    assert flock.population == 0
    assert flock.grid.dirty == []
    assert flock.register_agent((0, 0, 0)) == 0


def test_clamp_policy_places_far_registration_on_the_edge():
    flock = _tiny_flock()

    agent_id = flock.register_agent((100, 0, 0))

    assert flock.agent(agent_id).cell == (0, 1, 1)


def test_retain_policy_report_keeps_last_cell():
    flock = _tiny_flock("retain")
    agent_id = flock.register_agent((0, 0, 0))
    flock.tick()

    with pytest.raises(OutOfRangeCoordinate):
        flock.report_position(agent_id, (25, 0, 0))

    assert flock.agent(agent_id).cell == (1, 1, 1)
    assert flock.grid.members_of((1, 1, 1)) == [agent_id]
    assert flock.report_position(agent_id, (10, 0, 0)) == (0, 1, 1)


def test_clamp_policy_report_moves_to_edge_cell():
    flock = _tiny_flock()
    agent_id = flock.register_agent((0, 0, 0))

    assert flock.report_position(agent_id, (25, 0, 0)) == (0, 1, 1)
    assert flock.agent(agent_id).cell == (0, 1, 1)


@pytest.mark.parametrize("policy, moves, placed", [("retain", 0, False), ("clamp", 1, True)])
def test_tick_survives_agents_leaving_the_grid(policy, moves, placed):
    flock = _tiny_flock(policy)
    agent_id = flock.register_agent((14, 0, 0), velocity=(10, 0, 0))

    metrics = flock.tick(1.0)

    agent = flock.agent(agent_id)
    assert agent.position.x == pytest.approx(24.0)
    assert metrics.out_of_range == 1
    assert metrics.moves == moves
    assert agent.cell == (0, 1, 1)
    assert agent.placed is placed
    assert flock.grid.cell_at((0, 1, 1)).local.member_count == (1 if placed else 0)
    flock.grid.check_membership()


def test_short_moves_are_not_reported():
    flock = _tiny_flock()
    flock.register_agent((0, 0, 0), velocity=(1, 0, 0))
    flock.tick()

    metrics = flock.tick(0.1)

    assert metrics.moves == 0
    assert metrics.dirty_cells == 0
    assert metrics.notifications == 0


def test_membership_matches_cells_after_many_ticks():
    flock = Flock(_small_config())
    for _ in range(60):
        flock.tick(0.1)

    flock.grid.check_membership()
    for agent in flock.agents:
        assert flock.grid.coordinate_for(agent.id) == agent.cell
        assert agent.id in flock.grid.cell_at(agent.cell)


def test_target_velocity_never_exceeds_max_speed():
    flock = Flock(_small_config(steering=SteeringConfig(max_speed=6.0, separation_weight=50.0)))
    for _ in range(30):
        flock.tick(0.1)
        for agent in flock.agents:
            assert agent.target_velocity.length() <= 6.0 + 1e-9


def test_subscribers_receive_blended_statistics_until_unsubscribed():
    flock = _tiny_flock()
    agent_id = flock.register_agent((0, 0, 0))
    received = []
    unsubscribe = flock.subscribe_statistics(agent_id, lambda aid, stats: received.append((aid, stats)))

    flock.tick()
    assert [aid for aid, _ in received] == [agent_id]
    assert received[0][1] is flock.agent(agent_id).blended_statistics

    unsubscribe()
    flock.report_position(agent_id, (2, 0, 0))
    flock.tick()
    assert len(received) == 1

    with pytest.raises(UnknownAgent):
        flock.subscribe_statistics(99, lambda aid, stats: None)


def test_dynamic_avoidance_points_cannot_be_added():
    flock = _tiny_flock()

    with pytest.raises(ValueError):
        flock.add_avoidance_point((0, 0, 0), is_static=False)


def test_static_avoidance_points_reach_agents_when_their_cell_flushes():
    flock = _tiny_flock()
    agent_id = flock.register_agent((0, 0, 0))
    flock.tick()

    assert flock.add_avoidance_point((10, 0, 0)) == (0, 1, 1)
    flock.tick()
    # Only members of flushed cells are refreshed, so the neighbour sees it after its own cell changes.
    assert len(flock.agent(agent_id).blended_statistics.avoidance_points) == 1
    flock.report_position(agent_id, (0, 0, 0))
    flock.tick()

    points = flock.agent(agent_id).blended_statistics.avoidance_points
    assert [point.is_static for point in points] == [False, True]
    assert flock.clear_avoidance_points() == 1


def _run(config: SimulationConfig, steps: int) -> list[dict]:
    with Flock(config) as flock:
        for _ in range(steps):
            flock.tick(0.1)
        return flock.snapshot().agents


def test_runs_are_deterministic_for_a_seed():
    assert _run(_small_config(), 25) == _run(_small_config(), 25)


def test_worker_pool_matches_serial_run():
    assert _run(_small_config(workers=3), 25) == _run(_small_config(), 25)


def test_reset_restores_initial_state():
    flock = Flock(_small_config())
    initial = flock.snapshot().agents
    for _ in range(10):
        flock.tick(0.1)
    flock.register_agent((0, 0, 0))

    flock.reset()

    assert flock.tick_count == 0
    assert flock.population == 40
    assert flock.snapshot().agents == initial


def test_snapshot_reports_grid_and_metadata():
    flock = Flock(_small_config())
    metrics = flock.tick()

    snapshot = flock.snapshot()

    assert snapshot.tick == 1
    assert snapshot.metrics is metrics
    assert snapshot.grid.dimension == 9
    assert snapshot.grid.cell_size == 10.0
    assert snapshot.metadata.seed == 7
    assert snapshot.metadata.tick_rate == pytest.approx(50.0)
    assert len(snapshot.agents) == 40
    assert set(snapshot.agents[0]) == {"id", "cell", "x", "y", "z", "vx", "vy", "vz", "tx", "ty", "tz", "speed", "placed"}
    assert metrics.average_speed >= 0.0
    assert metrics.occupied_cells == flock.grid.occupied_cells


def test_agent_position_is_vector_copy():
    flock = _tiny_flock()
    start = Vector3(1, 2, 3)
    agent_id = flock.register_agent(start)
    start.x = 50

    assert flock.agent(agent_id).position == Vector3(1, 2, 3)


def test_unplaced_agent_is_left_out_of_cell_statistics():
    flock = _tiny_flock("retain")
    stray = flock.register_agent((0, 0, 0))
    other = flock.register_agent((2, 0, 0))
    flock.tick()

    with pytest.raises(OutOfRangeCoordinate):
        flock.report_position(stray, (500, 0, 0))
    flock.report_position(other, (3, 0, 0))
    flock.tick()

    local = flock.grid.cell_at((1, 1, 1)).local
    assert flock.grid.members_of((1, 1, 1)) == [stray, other]
    assert not flock.agent(stray).placed
    assert local.member_count == 1
    assert local.average_position.x == pytest.approx(3.0, abs=0.01)
    assert len(local.avoidance_points) == 1
    assert flock.agent(other).blended_statistics.average_position.x == pytest.approx(3.0, abs=0.01)

    flock.report_position(stray, (1, 0, 0))
    flock.tick()

    assert flock.agent(stray).placed
    assert flock.grid.cell_at((1, 1, 1)).local.member_count == 2


class _NoScanArena(list):
    def __iter__(self):
        raise AssertionError("grid arena was scanned")


def test_idle_tick_does_not_scan_the_grid():
    flock = Flock(SimulationConfig(grid=GridConfig(dimension=70), update_distance_jitter=0.0))
    flock.register_agent((0, 0, 0))
    flock.tick()
    flock.grid._cells = _NoScanArena(flock.grid._cells)

    for _ in range(5):
        metrics = flock.tick()
        assert metrics.dirty_cells == 0
        assert metrics.occupied_cells == 1
