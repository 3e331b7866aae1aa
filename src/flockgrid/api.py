"""Functional entry points for hosts that drive the flock from their own loop."""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

from .sim.core.config import GridConfig, SimulationConfig, SteeringConfig
from .sim.core.grid import Coordinate
from .sim.core.world import Flock, StatisticsCallback
from .sim.types.metrics import TickMetrics


def create_grid(
    origin: Sequence[float] = (0.0, 0.0, 0.0),
    cell_size: float = 20.0,
    grid_dimension: int = 70,
    *,
    out_of_range_policy: str = "clamp",
    strict: bool = False,
    **options: Any,
) -> Flock:
    """
    Build an empty flock over a `grid_dimension`^3 grid centred on `origin`.

    Remaining keyword arguments are `SimulationConfig` fields such as
    `agent_capacity`, `steering` or `workers`.
    """

    options.setdefault("initial_population", 0)
    grid = GridConfig(
        origin=tuple(origin),
        cell_size=cell_size,
        dimension=grid_dimension,
        out_of_range_policy=out_of_range_policy,
        strict=strict,
    )
    return Flock(SimulationConfig(grid=grid, **options))


def register_agent(
    flock: Flock,
    start_position: Sequence[float],
    params: Optional[SteeringConfig] = None,
    velocity: Optional[Sequence[float]] = None,
) -> int:
    return flock.register_agent(start_position, velocity=velocity, params=params)


def remove_agent(flock: Flock, agent_id: int) -> None:
    flock.remove_agent(agent_id)


def report_position(flock: Flock, agent_id: int, new_position: Sequence[float]) -> Coordinate:
    return flock.report_position(agent_id, new_position)


def tick(flock: Flock, dt: Optional[float] = None) -> TickMetrics:
    return flock.tick(dt)


def subscribe_statistics(flock: Flock, agent_id: int, callback: StatisticsCallback) -> Callable[[], None]:
    return flock.subscribe_statistics(agent_id, callback)


def add_avoidance_point(flock: Flock, position: Sequence[float], is_static: bool = True) -> Coordinate:
    return flock.add_avoidance_point(position, is_static=is_static)


__all__ = [
    "create_grid",
    "register_agent",
    "remove_agent",
    "report_position",
    "tick",
    "subscribe_statistics",
    "add_avoidance_point",
]
