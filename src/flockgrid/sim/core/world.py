from __future__ import annotations

import heapq
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from time import perf_counter
from typing import Callable, Dict, List, Optional, Sequence

from pygame.math import Vector3

from .agent import Agent, FlockStatistics
from .config import SimulationConfig, SteeringConfig
from .errors import CapacityExceeded, OutOfRangeCoordinate, UnknownAgent
from .grid import Coordinate, FlushResult, Grid
from ..systems import metrics as metrics_system, motion, steering
from ..types.metrics import TickMetrics
from ..types.snapshot import Snapshot, SnapshotGrid, SnapshotMetadata
from ...rng import DeterministicRng

logger = logging.getLogger(__name__)

StatisticsCallback = Callable[[int, FlockStatistics], None]


class Flock:
    """
    Host-facing simulation loop.

    Each tick runs three phases in strict order: integrate every agent and
    compute its candidate coordinate (parallel, agents write only their own
    fields), commit membership moves (serial), then flush dirty cells, which
    pushes fresh statistics to member agents and recomputes their target
    velocities.
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        self._config = config if config is not None else SimulationConfig()
        self._rng = DeterministicRng(self._config.seed)
        self._agents: List[Optional[Agent]] = []
        self._free_ids: List[int] = []
        self._subscribers: Dict[int, List[StatisticsCallback]] = {}
        self._population = 0
        self._tick = 0
        self._metrics: TickMetrics | None = None
        self._last_flush = FlushResult()
        self._executor: ThreadPoolExecutor | None = None
        if self._config.workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=self._config.workers, thread_name_prefix="flock")
        self._grid = self._build_grid()
        self._bootstrap()

    @property
    def config(self) -> SimulationConfig:
        return self._config

    @property
    def grid(self) -> Grid:
        return self._grid

    @property
    def agents(self) -> List[Agent]:
        return [agent for agent in self._agents if agent is not None]

    @property
    def population(self) -> int:
        return self._population

    @property
    def tick_count(self) -> int:
        return self._tick

    @property
    def metrics(self) -> TickMetrics | None:
        return self._metrics

    @property
    def last_flush(self) -> FlushResult:
        """Result of the most recent flush, including the coordinates it recomputed."""
        return self._last_flush

    def agent(self, agent_id: int) -> Agent:
        if 0 <= agent_id < len(self._agents):
            agent = self._agents[agent_id]
            if agent is not None:
                return agent
        raise UnknownAgent(agent_id)

    def register_agent(
        self,
        position: Sequence[float],
        velocity: Optional[Sequence[float]] = None,
        params: Optional[SteeringConfig] = None,
    ) -> int:
        """
        Add an agent and place it in the grid.

        Raises CapacityExceeded when every slot is taken, or
        OutOfRangeCoordinate when the start position cannot be placed under
        the retain policy. Nothing is created in either case.
        """

        capacity = self._config.agent_capacity
        if capacity is not None and self._population >= capacity:
            raise CapacityExceeded(capacity)
        position = Vector3(position)
        coordinate = self._grid.resolve(position)
        if coordinate is None:
            self._grid.locate(position)
        velocity = Vector3(velocity) if velocity is not None else Vector3()

        agent_id = heapq.heappop(self._free_ids) if self._free_ids else len(self._agents)
        agent = Agent(
            id=agent_id,
            cell=coordinate,
            position=position,
            velocity=velocity,
            params=params if params is not None else self._config.steering,
            target_velocity=Vector3(velocity),
            last_reported_position=Vector3(position),
            update_distance=self._sample_update_distance(),
        )
        if agent_id == len(self._agents):
            self._agents.append(agent)
        else:
            self._agents[agent_id] = agent
        self._grid.move_agent(agent_id, coordinate)
        self._population += 1
        return agent_id

    def remove_agent(self, agent_id: int) -> None:
        agent = self.agent(agent_id)
        self._grid.remove_agent(agent_id)
        agent.alive = False
        self._agents[agent_id] = None
        self._subscribers.pop(agent_id, None)
        heapq.heappush(self._free_ids, agent_id)
        self._population -= 1

    def report_position(self, agent_id: int, position: Sequence[float]) -> Coordinate:
        """
        Record a host-driven move and re-evaluate the agent's cell.

        Under the retain policy an unplaceable position raises
        OutOfRangeCoordinate. The agent stays in its last cell but is left out
        of that cell's statistics until a valid position arrives. Under the
        clamp policy the agent joins the nearest edge cell.
        """

        agent = self.agent(agent_id)
        agent.position = Vector3(position)
        coordinate = self._grid.resolve(agent.position)
        if coordinate is None:
            logger.warning("agent %d reported %s outside the grid; keeping cell %s", agent_id, tuple(agent.position), agent.cell)
            self._unplace(agent)
            self._grid.locate(agent.position)
        self._grid.move_agent(agent_id, coordinate)
        agent.placed = True
        agent.last_reported_position = Vector3(agent.position)
        return Coordinate(*coordinate)

    def subscribe_statistics(self, agent_id: int, callback: StatisticsCallback) -> Callable[[], None]:
        """Call `callback(agent_id, blended)` whenever that agent receives new statistics. Returns an unsubscriber."""
        self.agent(agent_id)
        callbacks = self._subscribers.setdefault(agent_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            registered = self._subscribers.get(agent_id)
            if registered and callback in registered:
                registered.remove(callback)

        return unsubscribe

    def add_avoidance_point(self, position: Sequence[float], is_static: bool = True) -> Coordinate:
        if not is_static:
            raise ValueError("dynamic avoidance points come from agent positions; only static points can be added")
        return self._grid.add_avoidance_point(Vector3(position))

    def clear_avoidance_points(self) -> int:
        return self._grid.clear_avoidance_points()

    def tick(self, dt: Optional[float] = None) -> TickMetrics:
        start = perf_counter()
        dt = self._config.time_step if dt is None else dt
        active = self.agents

        self._parallel_for(active, lambda agent: self._recompute(agent, dt))

        moves = 0
        out_of_range = 0
        grid = self._grid
        for agent in active:
            if not agent.pending_report:
                continue
            agent.pending_report = False
            coordinate = agent.pending_cell
            agent.pending_cell = None
            if coordinate is None:
                out_of_range += 1
                coordinate = grid.resolve(agent.position)
                if coordinate is None:
                    logger.debug("agent %d outside the grid; retrying from cell %s", agent.id, agent.cell)
                    self._unplace(agent)
                    continue
            grid.move_agent(agent.id, coordinate)
            agent.placed = True
            agent.last_reported_position = Vector3(agent.position)
            moves += 1

        flush = grid.flush()
        self._last_flush = flush

        elapsed_ms = (perf_counter() - start) * 1000.0
        metrics = metrics_system.create_metrics(
            self._tick, active, moves, out_of_range, flush, grid.occupied_cells, elapsed_ms
        )
        self._metrics = metrics
        self._tick += 1
        return metrics

    def snapshot(self, tick: Optional[int] = None) -> Snapshot:
        tick = self._tick if tick is None else tick
        metrics = self._metrics
        if metrics is None:
            metrics = TickMetrics(
                tick=tick,
                population=self._population,
                moves=0,
                out_of_range=0,
                dirty_cells=0,
                notifications=0,
                occupied_cells=self._grid.occupied_cells,
                average_speed=0.0,
            )
        time_step = self._config.time_step
        origin = self._grid.origin
        return Snapshot(
            tick=tick,
            metrics=metrics,
            agents=[self._agent_snapshot(agent) for agent in self.agents],
            grid=SnapshotGrid(
                origin=[origin.x, origin.y, origin.z],
                cell_size=self._grid.cell_size,
                dimension=self._grid.dimension,
                occupied_cells=metrics.occupied_cells,
            ),
            metadata=SnapshotMetadata(
                sim_dt=time_step,
                tick_rate=0.0 if time_step <= 0 else 1.0 / time_step,
                seed=self._config.seed,
                config_version=self._config.config_version,
            ),
        )

    def reset(self) -> None:
        for agent in self._agents:
            if agent is not None:
                agent.alive = False
        self._agents.clear()
        self._free_ids.clear()
        self._subscribers.clear()
        self._population = 0
        self._tick = 0
        self._metrics = None
        self._last_flush = FlushResult()
        self._rng.reset()
        self._grid = self._build_grid()
        self._bootstrap()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "Flock":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _build_grid(self) -> Grid:
        grid_config = self._config.grid
        return Grid(
            Vector3(grid_config.origin),
            grid_config.cell_size,
            grid_config.dimension,
            self._agents,
            sink=self._deliver,
            out_of_range_policy=grid_config.out_of_range_policy,
            strict=grid_config.strict,
        )

    def _bootstrap(self) -> None:
        for point in self._config.avoidance_points:
            self.add_avoidance_point(point.position, point.is_static)
        origin = Vector3(self._config.grid.origin)
        max_speed = self._config.steering.max_speed
        for _ in range(self._config.initial_population):
            position = origin + self._rng.next_in_cube(self._config.spawn_radius)
            velocity = self._rng.next_unit_sphere() * self._rng.next_range(0.0, max_speed)
            self.register_agent(position, velocity)
        self._grid.flush()
        if self._config.initial_population:
            logger.info("spawned %d agents", self._config.initial_population)

    def _unplace(self, agent: Agent) -> None:
        if agent.placed:
            agent.placed = False
            self._grid.mark_dirty(Coordinate(*agent.cell))

    def _sample_update_distance(self) -> float:
        jitter = self._config.update_distance_jitter
        scale = 1.0 + self._rng.next_range(-jitter, jitter) if jitter > 0.0 else 1.0
        return self._config.update_distance * scale

    def _recompute(self, agent: Agent, dt: float) -> None:
        motion.integrate(agent, dt)
        if motion.needs_report(agent):
            agent.pending_report = True
            agent.pending_cell = self._grid.coordinate_of(agent.position)

    def _parallel_for(self, agents: List[Agent], fn: Callable[[Agent], None]) -> None:
        executor = self._executor
        if executor is None or len(agents) < 2:
            for agent in agents:
                fn(agent)
            return
        chunk = max(1, math.ceil(len(agents) / (self._config.workers * 4)))
        batches = [agents[i : i + chunk] for i in range(0, len(agents), chunk)]

        def run(batch: List[Agent]) -> None:
            for agent in batch:
                fn(agent)

        # Draining the iterator is the barrier; worker exceptions re-raise here.
        for _ in executor.map(run, batches):
            pass

    def _deliver(self, agent_id: int, local: FlockStatistics, blended: FlockStatistics) -> None:
        agent = self._agents[agent_id]
        if agent is None:
            return
        agent.local_statistics = local
        agent.blended_statistics = blended
        agent.target_velocity = steering.compute_target_velocity(agent)
        for callback in list(self._subscribers.get(agent_id, ())):
            callback(agent_id, blended)

    @staticmethod
    def _agent_snapshot(agent: Agent) -> Dict[str, object]:
        position = agent.position
        velocity = agent.velocity
        target = agent.target_velocity
        return {
            "id": agent.id,
            "cell": list(agent.cell),
            "x": position.x,
            "y": position.y,
            "z": position.z,
            "vx": velocity.x,
            "vy": velocity.y,
            "vz": velocity.z,
            "tx": target.x,
            "ty": target.y,
            "tz": target.z,
            "speed": velocity.length(),
            "placed": agent.placed,
        }
