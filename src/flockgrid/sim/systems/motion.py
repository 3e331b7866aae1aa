from __future__ import annotations

from ..core.agent import Agent
from ..utils.math3d import rotate_towards


def integrate(agent: Agent, dt: float) -> None:
    """Turn and accelerate toward the target velocity within this step's budget, then advance."""
    params = agent.params
    agent.velocity = rotate_towards(
        agent.velocity,
        agent.target_velocity,
        params.turn_rate * dt,
        params.acceleration * dt,
    )
    agent.position += agent.velocity * dt


def needs_report(agent: Agent) -> bool:
    """True once the agent has drifted at least its update distance since its last report."""
    threshold = agent.update_distance
    return agent.position.distance_squared_to(agent.last_reported_position) >= threshold * threshold
