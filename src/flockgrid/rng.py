from __future__ import annotations

import math
import random

from pygame.math import Vector3


class DeterministicRng:
    def __init__(self, seed: int):
        self._seed = seed
        self._random = random.Random(seed)

    def reset(self) -> None:
        self._random.seed(self._seed)

    def next_range(self, low: float, high: float) -> float:
        return self._random.uniform(low, high)

    def next_in_cube(self, half_extent: float) -> Vector3:
        return Vector3(
            self._random.uniform(-half_extent, half_extent),
            self._random.uniform(-half_extent, half_extent),
            self._random.uniform(-half_extent, half_extent),
        )

    def next_unit_sphere(self) -> Vector3:
        # Uniform on the sphere: uniform z and azimuth.
        z = self._random.uniform(-1.0, 1.0)
        azimuth = self._random.uniform(0.0, 2.0 * math.pi)
        ring = math.sqrt(max(0.0, 1.0 - z * z))
        return Vector3(ring * math.cos(azimuth), ring * math.sin(azimuth), z)
