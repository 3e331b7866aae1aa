from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml
from pygame.math import Vector3

from .agent import Target
from .errors import ConfigError

OUT_OF_RANGE_POLICIES = ("clamp", "retain")


def _require(condition: bool, name: str, message: str) -> None:
    if not condition:
        raise ConfigError(f"{name} {message}")


@dataclass
class SteeringConfig:
    max_speed: float = 10.0
    # Degrees per second.
    turn_rate: float = 90.0
    # Speed change per second.
    acceleration: float = 5.0
    separation_distance: float = 4.0
    target_weight: float = 1.0
    separation_weight: float = 1.0
    avoid_terrain_weight: float = 1.0
    cohesion_weight: float = 1.0
    alignment_weight: float = 1.0
    target: Optional[Target] = None

    def __post_init__(self) -> None:
        _require(self.max_speed > 0.0, "max_speed", "must be positive")
        _require(self.turn_rate >= 0.0, "turn_rate", "must not be negative")
        _require(self.acceleration >= 0.0, "acceleration", "must not be negative")
        _require(self.separation_distance >= 0.0, "separation_distance", "must not be negative")
        for name in ("target_weight", "separation_weight", "avoid_terrain_weight", "cohesion_weight", "alignment_weight"):
            _require(getattr(self, name) >= 0.0, name, "must not be negative")


@dataclass
class GridConfig:
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    cell_size: float = 20.0
    dimension: int = 70
    out_of_range_policy: str = "clamp"
    # Invariant violations raise instead of being repaired in place.
    strict: bool = False

    def __post_init__(self) -> None:
        self.origin = _triple(self.origin, "origin")
        _require(self.cell_size > 0.0, "cell_size", "must be positive")
        _require(isinstance(self.dimension, int) and self.dimension > 0, "dimension", "must be a positive integer")
        _require(
            self.out_of_range_policy in OUT_OF_RANGE_POLICIES,
            "out_of_range_policy",
            f"must be one of {', '.join(OUT_OF_RANGE_POLICIES)}",
        )


@dataclass
class AvoidancePointConfig:
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    is_static: bool = True

    def __post_init__(self) -> None:
        self.position = _triple(self.position, "position")


@dataclass
class SimulationConfig:
    time_step: float = 1.0 / 50.0
    agent_capacity: Optional[int] = 1500
    initial_population: int = 0
    spawn_radius: float = 10.0
    update_distance_fraction: float = 0.5
    update_distance_jitter: float = 0.1
    workers: int = 0
    seed: int = 42
    config_version: str = "v1"
    avoidance_points: List[AvoidancePointConfig] = field(default_factory=list)
    grid: GridConfig = field(default_factory=GridConfig)
    steering: SteeringConfig = field(default_factory=SteeringConfig)

    def __post_init__(self) -> None:
        _require(self.time_step > 0.0, "time_step", "must be positive")
        if self.agent_capacity is not None:
            _require(self.agent_capacity >= 0, "agent_capacity", "must not be negative")
            _require(
                self.initial_population <= self.agent_capacity,
                "initial_population",
                "must not exceed agent_capacity",
            )
        _require(self.initial_population >= 0, "initial_population", "must not be negative")
        _require(self.spawn_radius >= 0.0, "spawn_radius", "must not be negative")
        _require(self.update_distance_fraction >= 0.0, "update_distance_fraction", "must not be negative")
        _require(0.0 <= self.update_distance_jitter < 1.0, "update_distance_jitter", "must be in [0, 1)")
        _require(self.workers >= 0, "workers", "must not be negative")

    @property
    def update_distance(self) -> float:
        return self.grid.cell_size * self.update_distance_fraction

    @staticmethod
    def from_yaml(path: Path) -> "SimulationConfig":
        data = yaml.safe_load(Path(path).read_text()) or {}
        return load_config(data)


def _triple(value: object, name: str) -> tuple[float, float, float]:
    if isinstance(value, Vector3):
        return (value.x, value.y, value.z)
    if isinstance(value, (tuple, list)) and len(value) == 3:
        return (float(value[0]), float(value[1]), float(value[2]))
    raise ConfigError(f"{name} must be a sequence of three numbers")


def _known_fields(cls: type, values: dict, section: str) -> dict:
    names = {item.name for item in fields(cls)}
    unknown = sorted(str(key) for key in values if key not in names)
    if unknown:
        raise ConfigError(f"{section} has unknown field(s): {', '.join(unknown)}")
    return values


def load_config(raw: dict) -> SimulationConfig:
    steering_raw = dict(_known_fields(SteeringConfig, raw.get("steering", {}), "steering"))
    target_raw = steering_raw.pop("target", None)
    target = Target(Vector3(_triple(target_raw, "target"))) if target_raw is not None else None
    steering = SteeringConfig(target=target, **steering_raw)
    grid = GridConfig(**_known_fields(GridConfig, raw.get("grid", {}), "grid"))
    points = []
    for point in raw.get("avoidance_points", []):
        if isinstance(point, dict):
            points.append(AvoidancePointConfig(**_known_fields(AvoidancePointConfig, point, "avoidance_points")))
        else:
            points.append(AvoidancePointConfig(position=point))
    sim_values = {k: v for k, v in raw.items() if k not in {"steering", "grid", "avoidance_points"}}
    _known_fields(SimulationConfig, sim_values, "simulation")
    return SimulationConfig(grid=grid, steering=steering, avoidance_points=points, **sim_values)
