from __future__ import annotations

from typing import Sequence

import numpy as np

from stereocalib.calibration.grids import CalibrationPoint, RealGridData, validate_points
from stereocalib.core.levenberg_marquardt import LeastSquaresProblem

CAMERA_PARAMS = 12
GRID_PARAMS = 12


def default_grid_coefficient(n_points: int, n_grids: int) -> float:
    return float(np.sqrt(n_points / (12.0 * n_grids)))


class CameraGridProblem(LeastSquaresProblem):
    """
    Joint refinement of the camera matrix and of the grid corners.

    Parameters: P row-major (12), then for each grid its TL, TR, BL, BR corners (xyz).
    Error: per point (x - Lx/M, y - Ly/M), then per grid coef * (corner - measured corner).

    Real points are re-interpolated from the current corner estimate on every evaluation. The
    estimate lives in a scratch buffer owned by the problem, the input grids are never touched.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        points: Sequence[CalibrationPoint],
        grids: Sequence[RealGridData],
        *,
        image_points: np.ndarray | None = None,
        grid_coefficient: float | None = None,
        inverse_variances: np.ndarray | None = None,
    ) -> None:
        if len(points) == 0 or len(grids) == 0:
            raise ValueError("need at least one point and one grid")
        validate_points(points, grids)

        self.grids = list(grids)
        self._P0 = np.asarray(camera_matrix, dtype=np.float64).reshape(3, 4)
        self._measured = np.stack([g.corners for g in self.grids], axis=0)
        self._corners = self._measured.copy()
        if image_points is None:
            image_points = np.array([p.img for p in points], dtype=np.float64)
        self._image = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        if self._image.shape[0] != len(points):
            raise ValueError("image_points must have one row per calibration point")

        self._grid_index = np.array([p.grid for p in points], dtype=np.int64)
        self._bilinear = np.stack([self.grids[p.grid].cell_weights(p.row, p.col) for p in points], axis=0)

        n, g = len(points), len(self.grids)
        self.grid_coefficient = default_grid_coefficient(n, g) if grid_coefficient is None else float(grid_coefficient)
        self._inverse_variances = None
        if inverse_variances is not None:
            w = np.asarray(inverse_variances, dtype=np.float64).reshape(-1)
            if w.size != self.error_size:
                raise ValueError(f"inverse_variances must have {self.error_size} entries")
            self._inverse_variances = w
        self.projection_terms = np.zeros((n, 3), dtype=np.float64)

    @property
    def n_points(self) -> int:
        return int(self._image.shape[0])

    @property
    def n_grids(self) -> int:
        return len(self.grids)

    @property
    def parameter_size(self) -> int:
        return CAMERA_PARAMS + GRID_PARAMS * self.n_grids

    @property
    def error_size(self) -> int:
        return 2 * self.n_points + GRID_PARAMS * self.n_grids

    def initial_parameters(self) -> np.ndarray:
        return np.concatenate([self._P0.reshape(-1), self._measured.reshape(-1)])

    def inverse_variances(self) -> np.ndarray | None:
        return self._inverse_variances

    def _unpack(self, params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.parameter_size:
            raise ValueError(f"expected {self.parameter_size} parameters, got {params.size}")
        self._corners[...] = params[CAMERA_PARAMS:].reshape(self.n_grids, 4, 3)
        return params[:CAMERA_PARAMS].reshape(3, 4)

    def real_points(self) -> np.ndarray:
        """
        Grid-interpolated 3D points for the corner estimate of the last evaluation.
        """
        return np.einsum("nc,ncd->nd", self._bilinear, self._corners[self._grid_index])

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        P = self._unpack(params)
        real = self.real_points()
        L = real @ P[:, :3].T + P[:, 3]
        self.projection_terms[...] = L
        reproj = self._image - L[:, :2] / L[:, 2:3]
        grid_err = self.grid_coefficient * (self._corners - self._measured)
        return np.concatenate([reproj.reshape(-1), grid_err.reshape(-1)])

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray:
        P = self._unpack(params)
        real = self.real_points()
        Xh = np.concatenate([real, np.ones((real.shape[0], 1))], axis=1)
        L = Xh @ P.T
        Lx, Ly, M = L[:, 0], L[:, 1], L[:, 2]
        M2 = M * M

        n = self.n_points
        J = np.zeros((self.error_size, self.parameter_size), dtype=np.float64)
        rx = 2 * np.arange(n)
        ry = rx + 1
        J[rx, 0:4] = -Xh / M[:, None]
        J[rx, 8:12] = (Lx / M2)[:, None] * Xh
        J[ry, 4:8] = -Xh / M[:, None]
        J[ry, 8:12] = (Ly / M2)[:, None] * Xh

        # derivatives with respect to the interpolated real point
        dx = -(P[0, :3][None, :] * M[:, None] - Lx[:, None] * P[2, :3][None, :]) / M2[:, None]
        dy = -(P[1, :3][None, :] * M[:, None] - Ly[:, None] * P[2, :3][None, :]) / M2[:, None]
        axes = np.arange(3)
        for c in range(4):
            cols = (CAMERA_PARAMS + GRID_PARAMS * self._grid_index + 3 * c)[:, None] + axes[None, :]
            w = self._bilinear[:, c][:, None]
            J[rx[:, None], cols] = w * dx
            J[ry[:, None], cols] = w * dy

        k = np.arange(GRID_PARAMS * self.n_grids)
        J[2 * n + k, CAMERA_PARAMS + k] = self.grid_coefficient
        return J

    def camera_matrix(self, params: np.ndarray) -> np.ndarray:
        return np.asarray(params, dtype=np.float64).reshape(-1)[:CAMERA_PARAMS].reshape(3, 4).copy()

    def estimated_grids(self, params: np.ndarray) -> list[RealGridData]:
        corners = np.asarray(params, dtype=np.float64).reshape(-1)[CAMERA_PARAMS:].reshape(self.n_grids, 4, 3)
        return [g.with_corners(c) for g, c in zip(self.grids, corners)]
