from __future__ import annotations

import math

from pygame.math import Vector3

ZERO = Vector3()


def _safe_normalize(vector: Vector3) -> Vector3:
    return _safe_normalize_xyz(vector.x, vector.y, vector.z)


def _safe_normalize_xyz(x: float, y: float, z: float) -> Vector3:
    magnitude_sq = x * x + y * y + z * z
    if magnitude_sq < 1e-10:
        return Vector3()
    inv = 1.0 / math.sqrt(magnitude_sq)
    return Vector3(x * inv, y * inv, z * inv)


def _clamp_length(vector: Vector3, max_length: float) -> Vector3:
    if max_length <= 0:
        return Vector3()
    magnitude_sq = vector.length_squared()
    if magnitude_sq <= max_length * max_length:
        return Vector3(vector)
    if magnitude_sq == 0:
        return Vector3()
    return vector.normalize() * max_length


def _any_perpendicular(vector: Vector3) -> Vector3:
    # Cross with whichever basis axis is least aligned with the vector.
    ax = abs(vector.x)
    ay = abs(vector.y)
    az = abs(vector.z)
    if ax <= ay and ax <= az:
        axis = Vector3(1.0, 0.0, 0.0)
    elif ay <= az:
        axis = Vector3(0.0, 1.0, 0.0)
    else:
        axis = Vector3(0.0, 0.0, 1.0)
    return vector.cross(axis)


def rotate_towards(current: Vector3, target: Vector3, max_degrees: float, max_magnitude_delta: float) -> Vector3:
    """
    Rotate `current` toward `target` by at most `max_degrees` and move its
    magnitude toward the target's by at most `max_magnitude_delta`.

    Zero-length inputs fall back to a straight magnitude step along whichever
    vector has a direction.
    """

    current_len = current.length()
    target_len = target.length()
    delta = target_len - current_len
    if abs(delta) > max_magnitude_delta:
        delta = math.copysign(max(0.0, max_magnitude_delta), delta)
    new_len = max(0.0, current_len + delta)

    if current_len < 1e-9:
        if target_len < 1e-9:
            return Vector3()
        return target / target_len * new_len
    if target_len < 1e-9:
        return current / current_len * new_len

    direction = current / current_len
    axis = direction.cross(target)
    angle = math.degrees(math.atan2(axis.length(), direction.dot(target)))
    if angle <= max_degrees:
        return target / target_len * new_len
    if max_degrees <= 0.0:
        return direction * new_len
    if axis.length_squared() < 1e-12:
        axis = _any_perpendicular(direction)
    return direction.rotate(max_degrees, axis) * new_len
