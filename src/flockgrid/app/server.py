"""HTTP and websocket host for a flock: agent registration, ticking, cell statistics."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Set

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ..sim.core.agent import FlockStatistics
from ..sim.core.cell import Cell
from ..sim.core.config import SimulationConfig
from ..sim.core.errors import CapacityExceeded, OutOfRangeCoordinate, UnknownAgent
from ..sim.core.world import Flock
from ..sim.types.metrics import TickMetrics

logger = logging.getLogger(__name__)


# ==================
# Request models
# ==================

class RegisterAgentRequest(BaseModel):
    position: List[float] = Field(min_length=3, max_length=3)
    velocity: Optional[List[float]] = Field(default=None, min_length=3, max_length=3)


class PositionRequest(BaseModel):
    position: List[float] = Field(min_length=3, max_length=3)


class TickRequest(BaseModel):
    dt: Optional[float] = Field(default=None, ge=0.0)


# ==================
# Payloads
# ==================

def statistics_payload(stats: FlockStatistics) -> Dict[str, Any]:
    return {
        "member_count": stats.member_count,
        "average_position": list(stats.average_position),
        "average_velocity": list(stats.average_velocity),
        "avoidance_points": [
            {"position": list(point.position), "is_static": point.is_static} for point in stats.avoidance_points
        ],
    }


def cell_payload(cell: Cell) -> Dict[str, Any]:
    return {
        "coordinate": list(cell.coordinate),
        "members": cell.members,
        "local": statistics_payload(cell.local),
        "blended": statistics_payload(cell.blended),
    }


class CellStream:
    """Fans flushed-cell updates out to websocket observers."""

    def __init__(self) -> None:
        self.connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.connections.add(websocket)
        logger.info("cell observer connected (%d total)", len(self.connections))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.connections.discard(websocket)
        logger.info("cell observer disconnected (%d total)", len(self.connections))

    async def broadcast(self, message: Dict[str, Any]) -> None:
        if not self.connections:
            return
        stale: Set[WebSocket] = set()
        async with self._lock:
            for connection in self.connections:
                try:
                    await connection.send_json(message)
                except (WebSocketDisconnect, RuntimeError) as exc:
                    logger.warning("dropping cell observer: %s", exc)
                    stale.add(connection)
            self.connections -= stale


class FlockService:
    """
    Owns one Flock and serialises access to it from request handlers and
    the optional free-running loop. Every tick publishes the cells its
    flush recomputed.
    """

    def __init__(self, config: SimulationConfig) -> None:
        self.flock = Flock(config)
        self.stream = CellStream()
        self.running = False
        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None

    async def register_agent(self, position: List[float], velocity: Optional[List[float]] = None) -> Dict[str, Any]:
        async with self._lock:
            agent_id = self.flock.register_agent(position, velocity=velocity)
            return self.agent_payload(agent_id)

    async def remove_agent(self, agent_id: int) -> None:
        async with self._lock:
            self.flock.remove_agent(agent_id)

    async def report_position(self, agent_id: int, position: List[float]) -> List[int]:
        async with self._lock:
            return list(self.flock.report_position(agent_id, position))

    async def add_avoidance_point(self, position: List[float]) -> List[int]:
        async with self._lock:
            return list(self.flock.add_avoidance_point(position))

    async def clear_avoidance_points(self) -> int:
        async with self._lock:
            return self.flock.clear_avoidance_points()

    async def step(self, dt: Optional[float] = None) -> TickMetrics:
        async with self._lock:
            metrics = self.flock.tick(dt)
            message = self._flush_message(metrics)
        await self.stream.broadcast(message)
        return metrics

    async def start(self) -> None:
        self.running = True
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self.running = False
        task = self._loop_task
        self._loop_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def agent_payload(self, agent_id: int) -> Dict[str, Any]:
        agent = self.flock.agent(agent_id)
        return {
            "id": agent.id,
            "cell": list(agent.cell),
            "placed": agent.placed,
            "position": list(agent.position),
            "velocity": list(agent.velocity),
            "target_velocity": list(agent.target_velocity),
        }

    def cell(self, coordinate: List[int]) -> Optional[Dict[str, Any]]:
        if not isinstance(coordinate, (list, tuple)) or len(coordinate) != 3:
            return None
        if not all(isinstance(value, int) for value in coordinate):
            return None
        cell = self.flock.grid.cell_at(coordinate)
        return cell_payload(cell) if cell is not None else None

    def _flush_message(self, metrics: TickMetrics) -> Dict[str, Any]:
        grid = self.flock.grid
        cells = []
        for coordinate in self.flock.last_flush.coordinates:
            cell = grid.cell_at(coordinate)
            if cell is not None:
                cells.append(cell_payload(cell))
        return {"type": "flush", "tick": metrics.tick, "metrics": asdict(metrics), "cells": cells}

    async def _loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.flock.config.time_step)
            await self.step()


router = APIRouter(prefix="/api", tags=["flock"])


def _service(request: Request) -> FlockService:
    return request.app.state.flock_service


@router.get("/status")
async def status(request: Request) -> Dict[str, Any]:
    service = _service(request)
    flock = service.flock
    metrics = flock.metrics
    return {
        "running": service.running,
        "tick": flock.tick_count,
        "population": flock.population,
        "occupied_cells": flock.grid.occupied_cells,
        "metrics": asdict(metrics) if metrics is not None else None,
    }


@router.post("/agents", status_code=201)
async def register_agent(body: RegisterAgentRequest, request: Request) -> Dict[str, Any]:
    try:
        return await _service(request).register_agent(body.position, body.velocity)
    except CapacityExceeded as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except OutOfRangeCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/agents/{agent_id}")
async def get_agent(agent_id: int, request: Request) -> Dict[str, Any]:
    try:
        return _service(request).agent_payload(agent_id)
    except UnknownAgent as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.delete("/agents/{agent_id}", status_code=204)
async def remove_agent(agent_id: int, request: Request) -> None:
    try:
        await _service(request).remove_agent(agent_id)
    except UnknownAgent as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.put("/agents/{agent_id}/position")
async def report_position(agent_id: int, body: PositionRequest, request: Request) -> Dict[str, Any]:
    try:
        cell = await _service(request).report_position(agent_id, body.position)
    except UnknownAgent as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except OutOfRangeCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"id": agent_id, "cell": cell}


@router.get("/cells/{x}/{y}/{z}")
async def get_cell(x: int, y: int, z: int, request: Request) -> Dict[str, Any]:
    payload = _service(request).cell([x, y, z])
    if payload is None:
        raise HTTPException(status_code=404, detail=f"no cell allocated at {(x, y, z)}")
    return payload


@router.post("/avoidance-points", status_code=201)
async def add_avoidance_point(body: PositionRequest, request: Request) -> Dict[str, Any]:
    try:
        cell = await _service(request).add_avoidance_point(body.position)
    except OutOfRangeCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"cell": cell}


@router.delete("/avoidance-points")
async def clear_avoidance_points(request: Request) -> Dict[str, Any]:
    return {"cleared_cells": await _service(request).clear_avoidance_points()}


@router.post("/tick")
async def tick(body: TickRequest, request: Request) -> Dict[str, Any]:
    metrics = await _service(request).step(body.dt)
    return asdict(metrics)


@router.post("/control/start")
async def start(request: Request) -> Dict[str, Any]:
    await _service(request).start()
    return {"running": True}


@router.post("/control/stop")
async def stop(request: Request) -> Dict[str, Any]:
    await _service(request).stop()
    return {"running": False}


@router.websocket("/cells/stream")
async def cell_stream(websocket: WebSocket) -> None:
    service: FlockService = websocket.app.state.flock_service
    await service.stream.connect(websocket)
    await websocket.send_json({"type": "connected", "tick": service.flock.tick_count})
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "expected a JSON object"})
                continue
            if message.get("type") == "cell":
                payload = service.cell(message.get("coordinate", []))
                await websocket.send_json({"type": "cell", "cell": payload})
            else:
                await websocket.send_json({"type": "error", "message": f"unknown message type: {message.get('type')}"})
    except WebSocketDisconnect:
        await service.stream.disconnect(websocket)


def create_app(config: Optional[SimulationConfig] = None) -> FastAPI:
    app = FastAPI(title="Flock Grid")
    app.state.flock_service = FlockService(config if config is not None else SimulationConfig())
    app.include_router(router)
    return app


app = create_app(SimulationConfig(initial_population=200))


__all__ = ["FlockService", "app", "create_app", "router"]
