from __future__ import annotations

from typing import Iterable

from ..core.agent import Agent
from ..core.grid import FlushResult
from ..types.metrics import TickMetrics


def create_metrics(
    tick: int,
    agents: Iterable[Agent],
    moves: int,
    out_of_range: int,
    flush: FlushResult,
    occupied_cells: int,
    duration_ms: float,
) -> TickMetrics:
    population = 0
    speed_sum = 0.0
    for agent in agents:
        population += 1
        speed_sum += agent.velocity.length()
    return TickMetrics(
        tick=tick,
        population=population,
        moves=moves,
        out_of_range=out_of_range,
        dirty_cells=flush.dirty_cells,
        notifications=flush.notifications,
        occupied_cells=occupied_cells,
        average_speed=speed_sum / population if population else 0.0,
        tick_duration_ms=duration_ms,
    )
