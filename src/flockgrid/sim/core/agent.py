from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Tuple

from pygame.math import Vector3

if TYPE_CHECKING:
    from .config import SteeringConfig


@dataclass(slots=True)
class Target:
    """A steering goal owned by the host. Only its position is read."""

    position: Vector3 = field(default_factory=Vector3)


@dataclass(frozen=True, slots=True)
class AvoidancePoint:
    position: Vector3
    is_static: bool = False


@dataclass(frozen=True, slots=True)
class FlockStatistics:
    """
    Point-in-time aggregate of a cell (or a cell plus its neighbours).

    `member_count` is the weight used when blending; averages are zero when
    it is zero. Vectors are copies, so holders never alias agent state.
    """

    average_position: Vector3 = field(default_factory=Vector3)
    average_velocity: Vector3 = field(default_factory=Vector3)
    avoidance_points: Tuple[AvoidancePoint, ...] = ()
    member_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.member_count == 0


EMPTY_STATISTICS = FlockStatistics()


@dataclass(slots=True)
class Agent:
    id: int
    cell: Tuple[int, int, int]
    position: Vector3
    velocity: Vector3
    params: "SteeringConfig"
    target_velocity: Vector3 = field(default_factory=Vector3)
    local_statistics: FlockStatistics = EMPTY_STATISTICS
    blended_statistics: FlockStatistics = EMPTY_STATISTICS
    last_reported_position: Vector3 = field(default_factory=Vector3)
    update_distance: float = 0.0
    alive: bool = True
    # False while the last reported position is outside the grid; the agent keeps its
    # membership but is left out of its cell's statistics.
    placed: bool = True
    # Set during the parallel recompute phase, consumed by the serial commit.
    pending_cell: Optional[Tuple[int, int, int]] = None
    pending_report: bool = False
