from __future__ import annotations

import pytest

from flockgrid import api
from flockgrid.sim.core.config import SteeringConfig
from flockgrid.sim.core.errors import CapacityExceeded, ConfigError, OutOfRangeCoordinate


def test_host_driven_flock_scenario():
    flock = api.create_grid((0, 0, 0), 10.0, 3)
    agent_id = api.register_agent(flock, (0, 0, 0))
    assert flock.agent(agent_id).cell == (1, 1, 1)
    api.tick(flock)

    assert api.report_position(flock, agent_id, (25, 0, 0)) == (0, 1, 1)
    assert set(flock.grid.dirty) == {(1, 1, 1), (0, 1, 1)}

    api.tick(flock)
    assert flock.grid.members_of((1, 1, 1)) == []
    assert flock.grid.members_of((0, 1, 1)) == [agent_id]


def test_separation_pushes_two_agents_apart():
    params = SteeringConfig(
        separation_distance=4.0,
        target_weight=0.0,
        cohesion_weight=0.0,
        alignment_weight=0.0,
    )
    flock = api.create_grid((0, 0, 0), 10.0, 3)
    left = api.register_agent(flock, (-1, 0, 0), params=params)
    right = api.register_agent(flock, (1, 0, 0), params=params)

    api.tick(flock, 0.0)

    assert flock.agent(left).target_velocity.x == pytest.approx(-0.25)
    assert flock.agent(right).target_velocity.x == pytest.approx(0.25)


def test_subscriptions_and_avoidance_points():
    flock = api.create_grid((0, 0, 0), 10.0, 3)
    agent_id = api.register_agent(flock, (0, 0, 0), velocity=(1, 0, 0))
    counts = []
    api.subscribe_statistics(flock, agent_id, lambda aid, stats: counts.append(stats.member_count))
    assert api.add_avoidance_point(flock, (0, 0, 0)) == (1, 1, 1)

    api.tick(flock)

    assert counts == [1]
    points = flock.agent(agent_id).blended_statistics.avoidance_points
    assert sum(point.is_static for point in points) == 1


def test_create_grid_forwards_options():
    flock = api.create_grid((0, 0, 0), 10.0, 3, out_of_range_policy="retain", agent_capacity=1)
    api.register_agent(flock, (0, 0, 0))

    with pytest.raises(CapacityExceeded):
        api.register_agent(flock, (0, 0, 0))
    api.remove_agent(flock, 0)
    with pytest.raises(OutOfRangeCoordinate):
        api.register_agent(flock, (100, 0, 0))
    assert flock.population == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"cell_size": 0.0},
        {"grid_dimension": 0},
        {"out_of_range_policy": "wrap"},
        {"agent_capacity": -1},
    ],
)
def test_create_grid_validates_configuration(kwargs):
    with pytest.raises(ConfigError):
        api.create_grid(**kwargs)
