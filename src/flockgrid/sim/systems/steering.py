from __future__ import annotations

import math
from typing import Iterable

from pygame.math import Vector3

from ..core.agent import Agent, AvoidancePoint
from ..utils.math3d import ZERO, _clamp_length, _safe_normalize, _safe_normalize_xyz


def compute_target_velocity(agent: Agent) -> Vector3:
    """
    Combine the steering terms from the agent's cached statistics.

    Reads only the agent's own fields and the last pushed statistics, so it
    is safe to run for many agents concurrently.
    """

    params = agent.params
    blended = agent.blended_statistics
    desired = Vector3(seek(agent))
    if not blended.is_empty:
        desired += cohesion(agent.position, blended.average_position) * params.cohesion_weight
        desired += alignment(agent.velocity, blended.average_velocity) * params.alignment_weight
    points = blended.avoidance_points
    if points:
        desired += separation(agent.position, points, params.separation_distance) * params.separation_weight
        desired += avoid_terrain(agent.position, points) * params.avoid_terrain_weight
    return _clamp_length(desired, params.max_speed)


def seek(agent: Agent) -> Vector3:
    """Head for the target at full speed, or hold the current heading when there is none."""
    params = agent.params
    scale = params.max_speed * params.target_weight
    target = params.target
    if target is not None:
        return _safe_normalize(target.position - agent.position) * scale
    return _safe_normalize(agent.velocity) * scale


def cohesion(position: Vector3, average_position: Vector3) -> Vector3:
    return _safe_normalize(average_position - position)


def alignment(velocity: Vector3, average_velocity: Vector3) -> Vector3:
    return _safe_normalize(average_velocity - velocity)


def repulsion(position: Vector3, point: Vector3, max_distance: float | None, power: int) -> Vector3:
    offset_x = position.x - point.x
    offset_y = position.y - point.y
    offset_z = position.z - point.z
    dist_sq = offset_x * offset_x + offset_y * offset_y + offset_z * offset_z
    if dist_sq <= 1e-18:
        return ZERO
    if max_distance is not None and dist_sq >= max_distance * max_distance:
        return ZERO
    dist = math.sqrt(dist_sq)
    direction = _safe_normalize_xyz(offset_x, offset_y, offset_z)
    return direction / (dist ** power)


def separation(position: Vector3, points: Iterable[AvoidancePoint], separation_distance: float) -> Vector3:
    """Inverse-square push away from flockmates closer than `separation_distance`."""
    accum = Vector3()
    for point in points:
        if point.is_static:
            continue
        accum += repulsion(position, point.position, separation_distance, 2)
    return accum


def avoid_terrain(position: Vector3, points: Iterable[AvoidancePoint]) -> Vector3:
    """Inverse-distance push away from every static point, regardless of range."""
    accum = Vector3()
    for point in points:
        if not point.is_static:
            continue
        accum += repulsion(position, point.position, None, 1)
    return accum
