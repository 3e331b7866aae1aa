from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class TickMetrics:
    tick: int
    population: int
    moves: int
    out_of_range: int
    dirty_cells: int
    notifications: int
    occupied_cells: int
    average_speed: float
    tick_duration_ms: float = 0.0
