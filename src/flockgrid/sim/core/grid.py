from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from pygame.math import Vector3

from .agent import Agent, FlockStatistics
from .cell import Cell
from .errors import MembershipError, MissingCell, OutOfRangeCoordinate

logger = logging.getLogger(__name__)

StatisticsSink = Callable[[int, FlockStatistics, FlockStatistics], None]


class Coordinate(NamedTuple):
    x: int
    y: int
    z: int


def _round_nearest(value: float) -> int:
    # Halves round up so coverage is symmetric around cell centres.
    return int(math.floor(value + 0.5))


def raw_coordinate(position: Vector3, origin: Vector3, cell_size: float, dimension: int) -> Coordinate:
    """Unvalidated cell coordinate; the origin sits in the centre cell."""
    half = dimension // 2
    return Coordinate(
        _round_nearest((origin.x - position.x) / cell_size) + half,
        _round_nearest((origin.y - position.y) / cell_size) + half,
        _round_nearest((origin.z - position.z) / cell_size) + half,
    )


def in_range(coordinate: Sequence[int], dimension: int) -> bool:
    return all(0 <= value < dimension for value in coordinate)


def coordinate_of(position: Vector3, origin: Vector3, cell_size: float, dimension: int) -> Optional[Coordinate]:
    """Cell coordinate for `position`, or None when it falls outside the grid. Never clamps."""
    coordinate = raw_coordinate(position, origin, cell_size, dimension)
    if not in_range(coordinate, dimension):
        return None
    return coordinate


def clamp_coordinate(coordinate: Sequence[int], dimension: int) -> Coordinate:
    upper = dimension - 1
    return Coordinate(*(max(0, min(upper, value)) for value in coordinate))


@dataclass(frozen=True, slots=True)
class FlushResult:
    dirty_cells: int = 0
    notifications: int = 0
    coordinates: Tuple[Coordinate, ...] = field(default=(), compare=False)


class Grid:
    """
    Dense arena of lazily allocated cells plus the dirty queue and the
    agent -> coordinate membership map.

    Agents are read through the shared `agents` table (indexed by id) during
    the local recompute. Statistics leave the grid only through `sink`, and
    only for members of cells that were flushed.
    """

    def __init__(
        self,
        origin: Vector3,
        cell_size: float,
        dimension: int,
        agents: Sequence[Optional[Agent]],
        sink: Optional[StatisticsSink] = None,
        out_of_range_policy: str = "clamp",
        strict: bool = False,
    ) -> None:
        self._origin = Vector3(origin)
        self._cell_size = cell_size
        self._dimension = dimension
        self._agents = agents
        self._sink = sink
        self._policy = out_of_range_policy
        self._strict = strict
        self._cells: List[Optional[Cell]] = [None] * (dimension * dimension * dimension)
        self._allocated: List[Cell] = []
        self._occupied = 0
        self._dirty: Dict[Coordinate, None] = {}
        self._membership: Dict[int, Coordinate] = {}
        self._static_cells: Dict[Coordinate, None] = {}

    @property
    def origin(self) -> Vector3:
        return Vector3(self._origin)

    @property
    def cell_size(self) -> float:
        return self._cell_size

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def out_of_range_policy(self) -> str:
        return self._policy

    @property
    def dirty(self) -> List[Coordinate]:
        return list(self._dirty)

    @property
    def occupied_cells(self) -> int:
        return self._occupied

    def set_sink(self, sink: Optional[StatisticsSink]) -> None:
        self._sink = sink

    def cells(self) -> Iterator[Cell]:
        """Allocated cells in allocation order."""
        return iter(self._allocated)

    def coordinate_of(self, position: Vector3) -> Optional[Coordinate]:
        return coordinate_of(position, self._origin, self._cell_size, self._dimension)

    def locate(self, position: Vector3) -> Coordinate:
        raw = raw_coordinate(position, self._origin, self._cell_size, self._dimension)
        if not in_range(raw, self._dimension):
            raise OutOfRangeCoordinate((position.x, position.y, position.z), raw)
        return raw

    def resolve(self, position: Vector3) -> Optional[Coordinate]:
        """Coordinate after applying the out-of-range policy; None means keep the last valid cell."""
        raw = raw_coordinate(position, self._origin, self._cell_size, self._dimension)
        if in_range(raw, self._dimension):
            return raw
        if self._policy == "clamp":
            return clamp_coordinate(raw, self._dimension)
        return None

    def cell_at(self, coordinate: Sequence[int]) -> Optional[Cell]:
        if not in_range(coordinate, self._dimension):
            return None
        return self._cells[self._index(coordinate)]

    def coordinate_for(self, agent_id: int) -> Optional[Coordinate]:
        return self._membership.get(agent_id)

    def members_of(self, coordinate: Sequence[int]) -> List[int]:
        cell = self.cell_at(coordinate)
        return cell.members if cell is not None else []

    def mark_dirty(self, coordinate: Coordinate) -> None:
        self._dirty[coordinate] = None

    def move_agent(self, agent_id: int, new_coordinate: Optional[Sequence[int]]) -> bool:
        """
        Move `agent_id` into `new_coordinate`, creating the cell on first use.

        None (out of range) leaves everything untouched and returns False.
        Both the old and new coordinates are marked dirty; a same-cell move
        still marks the cell because the member's position changed.
        """

        if new_coordinate is None or not in_range(new_coordinate, self._dimension):
            return False
        new_coordinate = Coordinate(*new_coordinate)
        old_coordinate = self._membership.get(agent_id)
        if old_coordinate is not None:
            old_cell = self._cells[self._index(old_coordinate)]
            if old_cell is None:
                self._missing(old_coordinate)
            else:
                self._drop_member(old_cell, agent_id)
            self.mark_dirty(old_coordinate)

        index = self._index(new_coordinate)
        cell = self._cells[index]
        if cell is None:
            cell = self._allocate(new_coordinate, index)
        if agent_id not in cell:
            if not cell.member_count:
                self._occupied += 1
            cell.add(agent_id)
        self._membership[agent_id] = new_coordinate
        agent = self._agents[agent_id]
        if agent is not None:
            agent.cell = new_coordinate
        self.mark_dirty(new_coordinate)
        return True

    def remove_agent(self, agent_id: int) -> Optional[Coordinate]:
        coordinate = self._membership.pop(agent_id, None)
        if coordinate is None:
            return None
        cell = self._cells[self._index(coordinate)]
        if cell is None:
            self._missing(coordinate)
        else:
            self._drop_member(cell, agent_id)
        self.mark_dirty(coordinate)
        return coordinate

    def add_avoidance_point(self, position: Vector3) -> Coordinate:
        # Terrain is never clamped into the grid; a boundary outside it is a caller error.
        coordinate = self.locate(position)
        index = self._index(coordinate)
        cell = self._cells[index]
        if cell is None:
            cell = self._allocate(coordinate, index)
        cell.add_static_point(position)
        self._static_cells[coordinate] = None
        self.mark_dirty(coordinate)
        return coordinate

    def clear_avoidance_points(self) -> int:
        cleared = 0
        for coordinate in self._static_cells:
            cell = self._cells[self._index(coordinate)]
            if cell is not None and cell.clear_static_points():
                cleared += 1
                self.mark_dirty(coordinate)
        self._static_cells.clear()
        return cleared

    def flush(self) -> FlushResult:
        """
        Recompute statistics for every cell dirtied since the last flush.

        The queue is swapped out first, so anything dirtied while notifying
        waits for the next flush. All local recomputes finish before any
        blend so blends never read a stale dirty neighbour.
        """

        if not self._dirty:
            return FlushResult()
        dirty = list(self._dirty)
        self._dirty = {}
        cells = [self._require_cell(coordinate) for coordinate in dirty]

        for cell in cells:
            cell.recompute_local(self._agents)

        for cell in cells:
            cell.blend(self.cell_at(neighbor) for neighbor in cell.neighbors)

        notifications = 0
        sink = self._sink
        for cell in cells:
            if not cell.member_count:
                continue
            local = cell.local
            blended = cell.blended
            for agent_id in cell.members:
                if sink is not None:
                    sink(agent_id, local, blended)
                notifications += 1
        logger.debug("flushed %d cells, %d notifications", len(cells), notifications)
        return FlushResult(dirty_cells=len(cells), notifications=notifications, coordinates=tuple(dirty))

    def check_membership(self) -> None:
        """Raise MissingCell or MembershipError if membership and cell contents disagree."""
        seen: Dict[int, Coordinate] = {}
        occupied = 0
        for cell in self.cells():
            if cell.member_count:
                occupied += 1
            for agent_id in cell.members:
                if agent_id in seen:
                    raise MembershipError(f"agent {agent_id} is in {seen[agent_id]} and {cell.coordinate}")
                seen[agent_id] = Coordinate(*cell.coordinate)
        for agent_id, coordinate in self._membership.items():
            if self.cell_at(coordinate) is None:
                raise MissingCell(coordinate)
            if seen.get(agent_id) != coordinate:
                raise MembershipError(f"agent {agent_id} recorded at {coordinate} but found at {seen.get(agent_id)}")
        if len(seen) != len(self._membership):
            raise MembershipError("cells hold agents that have no recorded coordinate")
        if occupied != self._occupied:
            raise MembershipError(f"{occupied} cells have members but {self._occupied} are counted")

    def _index(self, coordinate: Sequence[int]) -> int:
        dimension = self._dimension
        return coordinate[0] + coordinate[1] * dimension + coordinate[2] * dimension * dimension

    def _require_cell(self, coordinate: Coordinate) -> Cell:
        index = self._index(coordinate)
        cell = self._cells[index]
        if cell is None:
            self._missing(coordinate)
            cell = self._allocate(coordinate, index)
        return cell

    def _allocate(self, coordinate: Coordinate, index: int) -> Cell:
        cell = Cell(coordinate, self._dimension)
        self._cells[index] = cell
        self._allocated.append(cell)
        return cell

    def _drop_member(self, cell: Cell, agent_id: int) -> None:
        if cell.remove(agent_id) and not cell.member_count:
            self._occupied -= 1

    def _missing(self, coordinate: Coordinate) -> None:
        if self._strict:
            raise MissingCell(coordinate)
        logger.warning("no cell allocated at %s; continuing with an empty cell", tuple(coordinate))
