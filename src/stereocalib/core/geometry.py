from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

from stereocalib.core.linear_solver import solve_homogeneous


class LineOrientation(str, Enum):
    NONE = "none"
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    OTHER = "other"


@dataclass(frozen=True)
class Line2D:
    """
    Line a*x + b*y + c = 0.
    """

    a: float
    b: float
    c: float

    @classmethod
    def through(cls, p1: np.ndarray, p2: np.ndarray) -> Line2D:
        p1 = np.asarray(p1, dtype=np.float64).reshape(2)
        p2 = np.asarray(p2, dtype=np.float64).reshape(2)
        d = p2 - p1
        if not np.any(d):
            raise ValueError("a line needs two distinct points")
        a, b = -float(d[1]), float(d[0])
        return cls(a, b, -(a * float(p1[0]) + b * float(p1[1])))

    @classmethod
    def from_coeffs(cls, coeffs: np.ndarray) -> Line2D:
        a, b, c = (float(v) for v in np.asarray(coeffs, dtype=np.float64).reshape(3))
        return cls(a, b, c)

    @property
    def coeffs(self) -> np.ndarray:
        return np.array([self.a, self.b, self.c], dtype=np.float64)

    @property
    def orientation(self) -> LineOrientation:
        if self.a == 0.0 and self.b == 0.0:
            return LineOrientation.NONE
        if abs(self.a) < abs(self.b) * 1e-6:
            return LineOrientation.HORIZONTAL
        if abs(self.b) < abs(self.a) * 1e-6:
            return LineOrientation.VERTICAL
        return LineOrientation.OTHER

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        norm = np.hypot(self.a, self.b)
        if norm == 0.0:
            raise ValueError("degenerate line")
        return (self.a * p[:, 0] + self.b * p[:, 1] + self.c) / norm

    def intersection(self, other: Line2D, *, eps: float = 1e-12) -> np.ndarray | None:
        det = self.a * other.b - other.a * self.b
        scale = np.hypot(self.a, self.b) * np.hypot(other.a, other.b)
        if scale == 0.0 or abs(det) <= eps * scale:
            return None
        x = (self.b * other.c - other.b * self.c) / det
        y = (other.a * self.c - self.a * other.c) / det
        return np.array([x, y], dtype=np.float64)


@dataclass(frozen=True)
class Quadric:
    """
    Conic A*x^2 + B*x + C*x*y + D*y + E*y^2 + F = 0, stored as coeffs = [A, B, C, D, E, F].
    """

    coeffs: np.ndarray

    @staticmethod
    def _design(points: np.ndarray) -> np.ndarray:
        x = points[:, 0]
        y = points[:, 1]
        return np.stack([x * x, x, x * y, y, y * y, np.ones_like(x)], axis=1)

    @classmethod
    def fit(cls, points: np.ndarray) -> Quadric:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if points.shape[0] < 5:
            raise ValueError("quadric fit needs >= 5 points")
        return cls(solve_homogeneous(cls._design(points)))

    @classmethod
    def fit_through_point(cls, points: np.ndarray, index: int) -> Quadric:
        """
        Least-squares conic constrained to pass exactly through points[index].

        The constraint removes F; the remaining five coefficients are fitted on the differences
        between each other point's monomials and the anchor's.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if points.shape[0] < 5:
            raise ValueError("quadric fit needs >= 5 points")
        if not 0 <= index < points.shape[0]:
            raise ValueError("anchor index out of range")
        rows = cls._design(points)[:, :5]
        anchor = rows[index]
        diffs = np.delete(rows, index, axis=0) - anchor[None, :]
        abcde = solve_homogeneous(diffs)
        f = -float(anchor @ abcde)
        return cls(np.concatenate([abcde, [f]]))

    def evaluate(self, points: np.ndarray) -> np.ndarray:
        p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return self._design(p) @ self.coeffs

    def gradient(self, point: np.ndarray) -> np.ndarray:
        A, B, C, D, E, _F = self.coeffs
        x, y = np.asarray(point, dtype=np.float64).reshape(2)
        return np.array([2.0 * A * x + B + C * y, 2.0 * E * y + D + C * x], dtype=np.float64)

    def tangent_at(self, point: np.ndarray) -> Line2D:
        x, y = np.asarray(point, dtype=np.float64).reshape(2)
        a, b = self.gradient((x, y))
        return Line2D(float(a), float(b), -float(x * a + y * b))

    def curvature(self, point: np.ndarray) -> float:
        A, _B, C, _D, E, _F = self.coeffs
        fx, fy = self.gradient(point)
        fxx, fyy, fxy = 2.0 * A, 2.0 * E, C
        norm = np.hypot(fx, fy)
        if norm == 0.0:
            return float("inf")
        return float(abs(fy * fy * fxx - 2.0 * fx * fy * fxy + fx * fx * fyy) / norm**3)


def to_homogeneous(points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    return np.concatenate([points, np.ones((points.shape[0], 1), dtype=np.float64)], axis=1)


def apply_homogeneous(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    T = np.asarray(T, dtype=np.float64)
    points = np.asarray(points, dtype=np.float64).reshape(-1, T.shape[1] - 1)
    mapped = to_homogeneous(points) @ T.T
    return mapped[:, :-1] / mapped[:, -1:]


def normalization_matrix(points: np.ndarray) -> np.ndarray:
    """
    Similarity transform moving the centroid to the origin and scaling so the mean distance to the
    origin is sqrt(dim). Works for 2D (3x3 result) and 3D (4x4 result) points.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] == 0:
        raise ValueError("points must be a non-empty (N,dim) array")
    dim = points.shape[1]
    centroid = points.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(points - centroid, axis=1)))
    scale = np.sqrt(dim) / mean_dist if mean_dist > 0.0 else 1.0
    T = np.eye(dim + 1, dtype=np.float64)
    T[:dim, :dim] *= scale
    T[:dim, dim] = -scale * centroid
    return T
