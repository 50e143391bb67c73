from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from stereocalib.core.geometry import apply_homogeneous


def _vec(x, n: int) -> np.ndarray:
    v = np.asarray(x, dtype=np.float64).reshape(n)
    if not np.all(np.isfinite(v)):
        raise ValueError("non-finite values")
    v.setflags(write=False)
    return v


@dataclass(frozen=True)
class CalibrationPoint:
    """
    Observed correspondence: image point (px), real point (world units) and its grid cell.
    """

    img: np.ndarray
    real: np.ndarray
    grid: int = 0
    row: int = 0
    col: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "img", _vec(self.img, 2))
        object.__setattr__(self, "real", _vec(self.real, 3))
        object.__setattr__(self, "grid", int(self.grid))
        object.__setattr__(self, "row", int(self.row))
        object.__setattr__(self, "col", int(self.col))


@dataclass(frozen=True)
class RealGridData:
    """
    Planar calibration grid given by its four 3D corners and its row / column counts.
    """

    rows: int
    columns: int
    top_left: np.ndarray
    top_right: np.ndarray
    bottom_left: np.ndarray
    bottom_right: np.ndarray
    num: int = field(default=0)

    def __post_init__(self) -> None:
        if int(self.rows) < 2 or int(self.columns) < 2:
            raise ValueError("a grid needs >= 2 rows and >= 2 columns")
        object.__setattr__(self, "rows", int(self.rows))
        object.__setattr__(self, "columns", int(self.columns))
        for name in ("top_left", "top_right", "bottom_left", "bottom_right"):
            object.__setattr__(self, name, _vec(getattr(self, name), 3))

    @classmethod
    def from_corners(cls, rows: int, columns: int, corners: np.ndarray, num: int = 0) -> RealGridData:
        c = np.asarray(corners, dtype=np.float64).reshape(4, 3)
        return cls(rows, columns, c[0], c[1], c[2], c[3], num=num)

    @property
    def corners(self) -> np.ndarray:
        """
        (4,3) array ordered TL, TR, BL, BR.
        """
        return np.stack([self.top_left, self.top_right, self.bottom_left, self.bottom_right], axis=0)

    def with_corners(self, corners: np.ndarray) -> RealGridData:
        return RealGridData.from_corners(self.rows, self.columns, corners, num=self.num)

    def transformed(self, T: np.ndarray) -> RealGridData:
        return self.with_corners(apply_homogeneous(T, self.corners))

    def cell_weights(self, row: int, col: int) -> np.ndarray:
        if not (0 <= row < self.rows and 0 <= col < self.columns):
            raise ValueError(f"cell ({row},{col}) outside a {self.rows}x{self.columns} grid")
        s = col / (self.columns - 1)
        t = row / (self.rows - 1)
        return np.array([(1.0 - s) * (1.0 - t), s * (1.0 - t), (1.0 - s) * t, s * t], dtype=np.float64)

    def point_at(self, row: int, col: int) -> np.ndarray:
        return self.cell_weights(row, col) @ self.corners


def points_to_arrays(points: Sequence[CalibrationPoint]) -> tuple[np.ndarray, np.ndarray]:
    image = np.array([p.img for p in points], dtype=np.float64).reshape(-1, 2)
    real = np.array([p.real for p in points], dtype=np.float64).reshape(-1, 3)
    return image, real


def validate_points(points: Sequence[CalibrationPoint], grids: Sequence[RealGridData]) -> None:
    for i, p in enumerate(points):
        if not 0 <= p.grid < len(grids):
            raise ValueError(f"point {i} references missing grid {p.grid}")
        g = grids[p.grid]
        if not (0 <= p.row < g.rows and 0 <= p.col < g.columns):
            raise ValueError(f"point {i} references cell ({p.row},{p.col}) outside grid {p.grid}")
