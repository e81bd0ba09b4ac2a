import math
from dataclasses import dataclass
from typing import Iterable

import numpy as np


@dataclass(frozen=True)
class Vector:
    """Immutable 3D vector used for camera bases."""
    x: float
    y: float
    z: float

    @classmethod
    def from_iterable(cls, values: Iterable[float]) -> "Vector":
        x, y, z = (float(v) for v in values)
        return cls(x, y, z)

    def add(self, other: "Vector") -> "Vector":
        return Vector(self.x + other.x, self.y + other.y, self.z + other.z)

    def sub(self, other: "Vector") -> "Vector":
        return Vector(self.x - other.x, self.y - other.y, self.z - other.z)

    def mult(self, c: float) -> "Vector":
        return Vector(c * self.x, c * self.y, c * self.z)

    def negated(self) -> "Vector":
        return self.mult(-1.0)

    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def normalized(self) -> "Vector":
        mag = self.magnitude()
        if mag == 0.0:
            raise ValueError("Cannot normalize a zero-length vector")
        return self.mult(1.0 / mag)

    def cross(self, other: "Vector") -> "Vector":
        return Vector(self.y * other.z - self.z * other.y,
                      self.z * other.x - self.x * other.z,
                      self.x * other.y - self.y * other.x)

    def dot(self, other: "Vector") -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    def as_tuple(self):
        return (self.x, self.y, self.z)

    __add__ = add
    __sub__ = sub
    __neg__ = negated

    def __mul__(self, c: float) -> "Vector":
        return self.mult(c)

    __rmul__ = __mul__
