from __future__ import annotations

from typing import Tuple


class FlockError(Exception):
    """Base class for flock simulation errors."""


class ConfigError(FlockError, ValueError):
    pass


class OutOfRangeCoordinate(FlockError, ValueError):
    """A position maps outside the grid. The raw coordinate is kept for clamping and diagnostics."""

    def __init__(self, position: Tuple[float, float, float], raw: Tuple[int, int, int]):
        self.position = tuple(position)
        self.raw = tuple(raw)
        super().__init__(f"position {self.position} maps to cell {self.raw}, outside the grid")


class CapacityExceeded(FlockError):
    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"agent capacity of {capacity} exhausted")


class MissingCell(FlockError, LookupError):
    def __init__(self, coordinate: Tuple[int, int, int]):
        self.coordinate = tuple(coordinate)
        super().__init__(f"no cell allocated at {self.coordinate}")


class UnknownAgent(FlockError, KeyError):
    def __init__(self, agent_id: int):
        self.agent_id = agent_id
        super().__init__(agent_id)

    def __str__(self) -> str:
        return f"agent {self.agent_id} is not registered"


class MembershipError(FlockError):
    """Cell member sets and the agent -> coordinate map disagree."""
