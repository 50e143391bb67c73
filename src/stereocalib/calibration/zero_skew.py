from __future__ import annotations

import numpy as np

from stereocalib.calibration.camera import intrinsic_skew, project_points
from stereocalib.core.levenberg_marquardt import LeastSquaresProblem


class ZeroSkewProblem(LeastSquaresProblem):
    """
    Re-fit the 12 camera-matrix entries while driving the intrinsic skew to zero.

    Error: signed reprojection error per point (x, y), then weight * skew. The weight is set at the
    first iteration so the skew term matches the reprojection residual and grows by `weight_growth`
    on every following iteration.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        image_points: np.ndarray,
        real_points: np.ndarray,
        *,
        weight_growth: float = 1.2,
    ) -> None:
        self._P0 = np.asarray(camera_matrix, dtype=np.float64).reshape(3, 4)
        self.image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        self.real_points = np.asarray(real_points, dtype=np.float64).reshape(-1, 3)
        if self.image_points.shape[0] != self.real_points.shape[0] or self.image_points.shape[0] == 0:
            raise ValueError("image_points and real_points must have the same non-zero length")
        self.weight_growth = float(weight_growth)
        self.skew_weight = 0.0

    def initial_parameters(self) -> np.ndarray:
        return self._P0.reshape(-1).copy()

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        P = np.asarray(params, dtype=np.float64).reshape(3, 4)
        reproj = self.image_points - project_points(P, self.real_points)
        return np.concatenate([reproj.reshape(-1), [self.skew_weight * intrinsic_skew(P)]])

    def before_iteration(self, iteration: int, params: np.ndarray, residual: float) -> bool:
        if iteration == 1:
            s = abs(intrinsic_skew(params))
            self.skew_weight = float(np.sqrt(residual)) / s if s > 1e-12 and residual > 0.0 else 1.0
        else:
            self.skew_weight *= self.weight_growth
        return True
