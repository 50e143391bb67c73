from __future__ import annotations

from enum import Enum
from typing import Sequence

import numpy as np

from stereocalib.core.geometry import Line2D, LineOrientation, Quadric
from stereocalib.core.levenberg_marquardt import LeastSquaresProblem
from stereocalib.distortion.model import DistortionDirection, RadialDistortionModel, direction_from_quadric

MIN_LINE_POINTS = 5


class LineFitMode(str, Enum):
    TANGENT = "tangent"
    BASIC = "basic"


def least_squares_line(points: np.ndarray) -> tuple[np.ndarray, LineOrientation]:
    """
    Orthogonal least-squares line through `points` as (A, B, C) with A x + B y + C = 0.

    Nearly vertical / horizontal point sets get the exact (1, 0, -mean x) / (0, 1, -mean y) forms.
    """
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    n = float(p.shape[0])
    x, y = p[:, 0], p[:, 1]
    sx, sy = float(x.sum()), float(y.sum())
    sxy = float(np.dot(x, y))
    sx2, sy2 = float(np.dot(x, x)), float(np.dot(y, y))

    if abs(n * sx2 - sx * sx) <= 0.05 * abs(sx):
        return np.array([1.0, 0.0, -sx / n]), LineOrientation.VERTICAL
    if abs(n * sy2 - sy * sy) <= 0.05 * abs(sy):
        return np.array([0.0, 1.0, -sy / n]), LineOrientation.HORIZONTAL

    a = sxy - sx * sy / n
    b = sy2 - sx2 + (sx * sx - sy * sy) / n
    if a == 0.0:
        # principal axes aligned with x / y
        if b > 0.0:
            return np.array([0.0, 1.0, -sy / n]), LineOrientation.HORIZONTAL
        return np.array([1.0, 0.0, -sx / n]), LineOrientation.VERTICAL
    A = (-b - np.sqrt(b * b + 4.0 * a * a)) / (2.0 * a)
    return np.array([A, 1.0, -(A * sx + sy) / n]), LineOrientation.OTHER


class LineFitProblem(LeastSquaresProblem):
    """
    Straightness penalty for radial distortion fitting.

    For every line: undistort with the current parameters, anchor at the raw point closest to the
    distortion center, fit a conic through the anchor, and measure each point's signed distance to
    the conic tangent at the anchor, scaled by max(ru/rd, rd/ru). The target (measurement) is zero.

    With `mode=LineFitMode.BASIC` the error is the signed distance of each corrected point to the
    orthogonal least-squares line of its own line instead.
    """

    def __init__(
        self,
        model: RadialDistortionModel,
        lines: Sequence[np.ndarray],
        *,
        find_initial_parameters: bool = True,
        mode: LineFitMode | str = LineFitMode.TANGENT,
    ) -> None:
        if len(lines) == 0:
            raise ValueError("need at least one line")
        self.lines = [np.asarray(line, dtype=np.float64).reshape(-1, 2) for line in lines]
        for i, line in enumerate(self.lines):
            if line.shape[0] < MIN_LINE_POINTS:
                raise ValueError(f"line {i} has {line.shape[0]} points, need >= {MIN_LINE_POINTS}")
            if not np.all(np.isfinite(line)):
                raise ValueError(f"line {i} has non-finite points")
        self.model = model
        self.find_initial_parameters = bool(find_initial_parameters)
        self.mode = LineFitMode(mode)

        n_lines = len(self.lines)
        self.least_squares_line_coeffs = np.zeros((n_lines, 3), dtype=np.float64)
        self.tangent_line_coeffs = np.zeros((n_lines, 3), dtype=np.float64)
        self.orientations = [LineOrientation.NONE] * n_lines
        self.directions = [DistortionDirection.NONE] * n_lines
        self.fit_points = [0] * n_lines
        self.quadrics: list[Quadric | None] = [None] * n_lines
        self.corrected_lines = [line.copy() for line in self.lines]

        if self.find_initial_parameters:
            model.init_parameters()
        self._update_all(model.parameters)
        self.base_directions = list(self.directions)
        if self.find_initial_parameters:
            model.set_initial_parameters_from_quadrics(self.quadrics, self.corrected_lines, self.fit_points)

    @property
    def error_size(self) -> int:
        return int(sum(line.shape[0] for line in self.lines))

    def initial_parameters(self) -> np.ndarray:
        return self.model.parameters.copy()

    def _update_line(self, i: int) -> np.ndarray:
        model = self.model
        raw = self.lines[i]
        dp = model.evaluate(raw)
        corrected = dp.pf
        self.corrected_lines[i] = corrected

        coeffs, orientation = least_squares_line(corrected)
        self.least_squares_line_coeffs[i] = coeffs
        self.orientations[i] = orientation

        center = model.distortion_center
        fit = int(np.argmin(np.sum((raw - center[None, :]) ** 2, axis=1)))
        self.fit_points[i] = fit
        quadric = Quadric.fit_through_point(corrected, fit)
        self.quadrics[i] = quadric
        tangent = quadric.tangent_at(corrected[fit])
        if np.hypot(tangent.a, tangent.b) <= 1e-12 * max(1.0, abs(tangent.c)):
            tangent = Line2D.from_coeffs(coeffs)
        self.tangent_line_coeffs[i] = tangent.coeffs
        self.directions[i] = direction_from_quadric(corrected, quadric, center, fit, tangent=tangent)

        if self.mode is LineFitMode.BASIC:
            return Line2D.from_coeffs(coeffs).signed_distance(corrected)
        return tangent.signed_distance(corrected) * dp.radius_ratio

    def _update_all(self, params: np.ndarray) -> np.ndarray:
        self.model.parameters = params
        return np.concatenate([self._update_line(i) for i in range(len(self.lines))])

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        return self._update_all(params)

    def measurements(self) -> np.ndarray:
        return np.zeros((self.error_size,), dtype=np.float64)
