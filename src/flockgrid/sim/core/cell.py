from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pygame.math import Vector3

from .agent import EMPTY_STATISTICS, Agent, AvoidancePoint, FlockStatistics

Coord = Tuple[int, int, int]


def face_neighbors(coordinate: Coord, dimension: int) -> Tuple[Coord, ...]:
    """Face-adjacent coordinates inside [0, dimension) on every axis."""
    x, y, z = coordinate
    neighbors: List[Coord] = []
    if x > 0:
        neighbors.append((x - 1, y, z))
    if x < dimension - 1:
        neighbors.append((x + 1, y, z))
    if y > 0:
        neighbors.append((x, y - 1, z))
    if y < dimension - 1:
        neighbors.append((x, y + 1, z))
    if z > 0:
        neighbors.append((x, y, z - 1))
    if z < dimension - 1:
        neighbors.append((x, y, z + 1))
    return tuple(neighbors)


class Cell:
    """
    One bucket of the grid.

    `local` is a pure function of the current members and static points as of
    the last `recompute_local`; `blended` is a snapshot of `local` for this
    cell and its existing neighbours as of the last `blend`. Neither is
    reactive.
    """

    __slots__ = ("coordinate", "neighbors", "_members", "_static_points", "local", "blended")

    def __init__(self, coordinate: Coord, dimension: int, first_member: Optional[int] = None) -> None:
        self.coordinate = coordinate
        self.neighbors = face_neighbors(coordinate, dimension)
        # dict keeps insertion order so notification order is deterministic.
        self._members: Dict[int, None] = {}
        self._static_points: List[AvoidancePoint] = []
        self.local = EMPTY_STATISTICS
        self.blended = EMPTY_STATISTICS
        if first_member is not None:
            self._members[first_member] = None

    @property
    def members(self) -> List[int]:
        return list(self._members)

    @property
    def member_count(self) -> int:
        return len(self._members)

    @property
    def static_points(self) -> Tuple[AvoidancePoint, ...]:
        return tuple(self._static_points)

    def __contains__(self, agent_id: int) -> bool:
        return agent_id in self._members

    def add(self, agent_id: int) -> None:
        self._members[agent_id] = None

    def remove(self, agent_id: int) -> bool:
        if agent_id not in self._members:
            return False
        del self._members[agent_id]
        return True

    def add_static_point(self, position: Vector3) -> None:
        self._static_points.append(AvoidancePoint(Vector3(position), True))

    def clear_static_points(self) -> bool:
        had_points = bool(self._static_points)
        self._static_points.clear()
        return had_points

    def recompute_local(self, agents: Sequence[Optional[Agent]]) -> FlockStatistics:
        count = 0
        sum_x = sum_y = sum_z = 0.0
        vel_x = vel_y = vel_z = 0.0
        points: List[AvoidancePoint] = []
        for agent_id in self._members:
            agent = agents[agent_id]
            if agent is None or not agent.placed:
                continue
            pos = agent.position
            vel = agent.velocity
            sum_x += pos.x
            sum_y += pos.y
            sum_z += pos.z
            vel_x += vel.x
            vel_y += vel.y
            vel_z += vel.z
            points.append(AvoidancePoint(Vector3(pos), False))
            count += 1
        points.extend(self._static_points)
        if count == 0:
            self.local = FlockStatistics(avoidance_points=tuple(points)) if points else EMPTY_STATISTICS
            return self.local
        inv = 1.0 / count
        self.local = FlockStatistics(
            average_position=Vector3(sum_x * inv, sum_y * inv, sum_z * inv),
            average_velocity=Vector3(vel_x * inv, vel_y * inv, vel_z * inv),
            avoidance_points=tuple(points),
            member_count=count,
        )
        return self.local

    def blend(self, neighbor_cells: Iterable[Optional["Cell"]]) -> FlockStatistics:
        """Count-weighted average of `local` over self and neighbours; avoidance points are concatenated."""
        sources = [self.local]
        sources.extend(cell.local for cell in neighbor_cells if cell is not None)
        total = 0
        pos = Vector3()
        vel = Vector3()
        points: List[AvoidancePoint] = []
        for stats in sources:
            points.extend(stats.avoidance_points)
            if stats.member_count == 0:
                continue
            pos += stats.average_position * stats.member_count
            vel += stats.average_velocity * stats.member_count
            total += stats.member_count
        if total == 0:
            self.blended = FlockStatistics(avoidance_points=tuple(points)) if points else EMPTY_STATISTICS
            return self.blended
        self.blended = FlockStatistics(
            average_position=pos / total,
            average_velocity=vel / total,
            avoidance_points=tuple(points),
            member_count=total,
        )
        return self.blended
