from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from .metrics import TickMetrics


@dataclass(slots=True)
class Snapshot:
    tick: int
    metrics: TickMetrics
    agents: List[Dict[str, Any]]
    grid: "SnapshotGrid"
    metadata: "SnapshotMetadata"


@dataclass(slots=True)
class SnapshotGrid:
    origin: List[float]
    cell_size: float
    dimension: int
    occupied_cells: int


@dataclass(slots=True)
class SnapshotMetadata:
    sim_dt: float
    tick_rate: float
    seed: int
    config_version: str
