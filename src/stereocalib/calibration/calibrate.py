from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Sequence

import numpy as np

from stereocalib.calibration.camera import Camera, denormalize_matrix, intrinsic_skew, project_points
from stereocalib.calibration.camera_minimization import CameraGridProblem
from stereocalib.calibration.grids import CalibrationPoint, RealGridData, points_to_arrays, validate_points
from stereocalib.calibration.zero_skew import ZeroSkewProblem
from stereocalib.core.geometry import apply_homogeneous, normalization_matrix
from stereocalib.core.levenberg_marquardt import (
    AnalyticJacobian,
    DampingMethod,
    LevenbergMarquardt,
    LMSettings,
    NumericJacobian,
)
from stereocalib.core.linear_solver import solve_homogeneous
from stereocalib.parameters import (
    AlgorithmParameter,
    bool_parameter,
    choice_parameter,
    float_parameter,
    int_parameter,
    resolve_parameters,
)

logger = logging.getLogger(__name__)

MIN_POINTS = 6

CALIBRATION_PARAMETERS: tuple[AlgorithmParameter, ...] = (
    bool_parameter("Perform only linear estimation", "linear_only", False),
    bool_parameter("Normalize points for linear estimation", "normalize_linear", True),
    bool_parameter("Normalize points for iterative estimation", "normalize_iterative", True),
    bool_parameter("Use covariance matrix", "use_covariance", True),
    bool_parameter("Minimize skew", "minimize_skew", True),
    float_parameter("Image measurements variance X", "image_variance_x", 0.25, 0.0, 100.0),
    float_parameter("Image measurements variance Y", "image_variance_y", 0.25, 0.0, 100.0),
    float_parameter("Real measurements variance X", "real_variance_x", 1.0, 0.0, 1000.0),
    float_parameter("Real measurements variance Y", "real_variance_y", 1.0, 0.0, 1000.0),
    float_parameter("Real measurements variance Z", "real_variance_z", 1.0, 0.0, 1000.0),
    int_parameter("Max iterations", "max_iterations", 100, 1, 10000),
    bool_parameter("Eliminate outliers", "eliminate_outliers", False),
    float_parameter("Outliers elimination coefficient", "outliers_coefficient", 1.5, 0.0, 1000.0),
    bool_parameter("Overwrite grids with estimated", "overwrite_grids", False),
    float_parameter("Grid error coefficient", "grid_error_coefficient", None, 0.0, 1000.0, optional=True),
    bool_parameter("Analytic jacobian", "analytic_jacobian", False),
    choice_parameter("Damping", "damping", DampingMethod.MULTIPLICATIVE.value, [m.value for m in DampingMethod]),
)


@dataclass(frozen=True)
class CalibrationSettings:
    linear_only: bool = False
    normalize_linear: bool = True
    normalize_iterative: bool = True
    use_covariance: bool = True
    minimize_skew: bool = True
    image_variance_x: float = 0.25
    image_variance_y: float = 0.25
    real_variance_x: float = 1.0
    real_variance_y: float = 1.0
    real_variance_z: float = 1.0
    max_iterations: int = 100
    eliminate_outliers: bool = False
    outliers_coefficient: float = 1.5
    overwrite_grids: bool = False
    grid_error_coefficient: float | None = None
    analytic_jacobian: bool = False
    damping: str = DampingMethod.MULTIPLICATIVE.value

    @classmethod
    def from_parameters(cls, values: Mapping[str, Any] | None = None) -> CalibrationSettings:
        return cls(**resolve_parameters(CALIBRATION_PARAMETERS, values))

    def as_parameters(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class CalibrationResult:
    camera: Camera
    points: list[CalibrationPoint]
    grids: list[RealGridData]
    estimated_grids: list[RealGridData] | None
    reprojection_errors: np.ndarray
    diagnostics: dict[str, Any]

    @property
    def mean_reprojection_error(self) -> float:
        return float(np.mean(self.reprojection_errors))


def linear_camera_matrix(image_points: np.ndarray, real_points: np.ndarray) -> np.ndarray:
    """
    Direct linear transform: the unit-norm P minimising the algebraic error of x ~ P X.
    """
    image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    real_points = np.asarray(real_points, dtype=np.float64).reshape(-1, 3)
    n = image_points.shape[0]
    if n != real_points.shape[0]:
        raise ValueError("image_points and real_points must have the same length")
    if n < MIN_POINTS:
        raise ValueError(f"linear estimation needs >= {MIN_POINTS} points")

    Xh = np.concatenate([real_points, np.ones((n, 1))], axis=1)
    x = image_points[:, 0:1]
    y = image_points[:, 1:2]
    zeros = np.zeros((n, 4))
    A = np.empty((2 * n, 12), dtype=np.float64)
    A[0::2] = np.concatenate([zeros, -Xh, y * Xh], axis=1)
    A[1::2] = np.concatenate([Xh, zeros, -x * Xh], axis=1)
    return solve_homogeneous(A).reshape(3, 4)


def find_inliers(camera_matrix: np.ndarray, image_points: np.ndarray, real_points: np.ndarray, coefficient: float) -> np.ndarray:
    errors = np.linalg.norm(image_points - project_points(camera_matrix, real_points), axis=1)
    return errors <= coefficient * float(np.mean(errors))


class CameraCalibrator:
    """
    Camera-matrix calibration from grid correspondences.

    Linear (DLT) estimate on normalized points, optional skew zeroing, joint non-linear refinement of
    the matrix and grid corners, one optional round of outlier elimination, then decomposition.
    """

    def __init__(self, settings: CalibrationSettings | None = None) -> None:
        self.settings = settings if settings is not None else CalibrationSettings()
        self._engine: LevenbergMarquardt | None = None
        self._terminated = False

    def terminate(self) -> None:
        self._terminated = True
        if self._engine is not None:
            self._engine.terminate()

    def calibrate(self, points: Sequence[CalibrationPoint], grids: Sequence[RealGridData]) -> CalibrationResult:
        points = list(points)
        grids = list(grids)
        if len(points) < MIN_POINTS:
            raise ValueError(f"calibration needs >= {MIN_POINTS} points")
        if len(grids) == 0:
            raise ValueError("calibration needs at least one grid")
        validate_points(points, grids)
        self._terminated = False
        return self._calibrate(points, grids, eliminate_outliers=self.settings.eliminate_outliers)

    def _lm_settings(self, target: float, *, use_covariance: bool) -> LMSettings:
        return LMSettings(
            max_iterations=int(self.settings.max_iterations),
            max_residual=float(target),
            damping=DampingMethod(self.settings.damping),
            use_covariance=use_covariance,
        )

    def _run(self, engine: LevenbergMarquardt):
        self._engine = engine
        if self._terminated:
            engine.terminate()
        try:
            return engine.run()
        finally:
            self._engine = None

    def _minimize_skew(self, P: np.ndarray, image: np.ndarray, real: np.ndarray, target: float, diagnostics: dict[str, Any]) -> np.ndarray:
        problem = ZeroSkewProblem(P, image, real)
        engine = LevenbergMarquardt(problem, self._lm_settings(target, use_covariance=False))
        result = self._run(engine)
        diagnostics["skew_iterations"] = diagnostics.get("skew_iterations", 0) + result.iterations
        logger.info(
            "skew minimisation: %d iterations, skew %.3g -> %.3g",
            result.iterations,
            intrinsic_skew(P),
            intrinsic_skew(result.parameters),
        )
        return result.parameters.reshape(3, 4)

    def _inverse_variances(self, n_points: int, n_grids: int, scale_image: float, scale_real: float) -> np.ndarray:
        s = self.settings
        img = np.array([s.image_variance_x, s.image_variance_y], dtype=np.float64)
        real = np.array([s.real_variance_x, s.real_variance_y, s.real_variance_z], dtype=np.float64)
        if np.any(img <= 0.0) or np.any(real <= 0.0):
            raise ValueError("measurement variances must be > 0 when covariance weighting is enabled")
        return np.concatenate([np.tile(1.0 / (img * scale_image), n_points), np.tile(1.0 / (real * scale_real), 4 * n_grids)])

    def _calibrate(self, points: list[CalibrationPoint], grids: list[RealGridData], *, eliminate_outliers: bool) -> CalibrationResult:
        s = self.settings
        image, real = points_to_arrays(points)
        n = len(points)
        diagnostics: dict[str, Any] = {"points": n}

        if s.normalize_linear:
            norm_image = normalization_matrix(image)
            norm_real = normalization_matrix(real)
        else:
            norm_image = np.eye(3)
            norm_real = np.eye(4)
        image_n = apply_homogeneous(norm_image, image)
        real_n = apply_homogeneous(norm_real, real)

        def target() -> float:
            # compared with the covariance-weighted residual, so the grid stage normally ends on max_iterations
            return n * (0.1 * norm_real[0, 0] ** 2 + 0.0625 * norm_image[0, 0] ** 2)

        P = linear_camera_matrix(image_n, real_n)
        diagnostics["linear_reprojection_error"] = float(
            np.mean(np.linalg.norm(image - project_points(denormalize_matrix(P, norm_image, norm_real), real), axis=1))
        )
        logger.info("linear estimate: mean reprojection error %.4g px", diagnostics["linear_reprojection_error"])

        if s.minimize_skew and not self._terminated:
            P = self._minimize_skew(P, image_n, real_n, target(), diagnostics)

        estimated_grids: list[RealGridData] | None = None
        if not s.linear_only and not self._terminated:
            if s.normalize_linear and not s.normalize_iterative:
                P = denormalize_matrix(P, norm_image, norm_real)
                norm_image = np.eye(3)
                norm_real = np.eye(4)
                image_n, real_n = image, real

            grids_n = [g.transformed(norm_real) for g in grids]
            weights = None
            if s.use_covariance:
                weights = self._inverse_variances(n, len(grids), norm_image[0, 0] ** 2, norm_real[0, 0] ** 2)
            problem = CameraGridProblem(
                P,
                points,
                grids_n,
                image_points=image_n,
                grid_coefficient=s.grid_error_coefficient,
                inverse_variances=weights,
            )
            engine = LevenbergMarquardt(
                problem,
                self._lm_settings(target(), use_covariance=s.use_covariance),
                jacobian=AnalyticJacobian() if s.analytic_jacobian else NumericJacobian(),
            )
            result = self._run(engine)
            diagnostics.update(
                {
                    "base_residual": result.base_residual,
                    "residual": result.residual,
                    "target_residual": result.target_residual,
                    "iterations": result.iterations,
                    "terminated": result.terminated,
                }
            )
            logger.info(
                "grid minimisation: %d iterations, residual %.6g -> %.6g (target %.6g)",
                result.iterations,
                result.base_residual,
                result.residual,
                result.target_residual,
            )
            P = problem.camera_matrix(result.parameters)
            inv_norm_real = np.linalg.inv(norm_real)
            estimated_grids = [g.transformed(inv_norm_real) for g in problem.estimated_grids(result.parameters)]

            if s.minimize_skew and not self._terminated:
                P = self._minimize_skew(P, image_n, real_n, target(), diagnostics)

        if eliminate_outliers:
            inliers = find_inliers(P, image_n, real_n, float(s.outliers_coefficient))
            kept = [p for p, keep in zip(points, inliers) if keep]
            removed = n - len(kept)
            if len(kept) < MIN_POINTS:
                logger.warning("outlier elimination skipped: only %d points would remain", len(kept))
            elif removed > 0 and not self._terminated:
                logger.info("eliminated %d outliers, recalibrating with %d points", removed, len(kept))
                result_inliers = self._calibrate(kept, grids, eliminate_outliers=False)
                diag = dict(result_inliers.diagnostics)
                diag["outliers_removed"] = removed
                return replace(result_inliers, diagnostics=diag)
            diagnostics["outliers_removed"] = 0

        P = denormalize_matrix(P, norm_image, norm_real)
        camera = Camera(P).decompose()
        errors = np.linalg.norm(image - camera.project(real), axis=1)
        diagnostics["mean_reprojection_error"] = float(np.mean(errors))
        diagnostics["terminated"] = self._terminated
        out_grids = estimated_grids if (s.overwrite_grids and estimated_grids is not None) else list(grids)
        return CalibrationResult(
            camera=camera,
            points=points,
            grids=out_grids,
            estimated_grids=estimated_grids,
            reprojection_errors=errors,
            diagnostics=diagnostics,
        )


def calibrate(
    points: Sequence[CalibrationPoint],
    grids: Sequence[RealGridData],
    settings: CalibrationSettings | None = None,
) -> CalibrationResult:
    return CameraCalibrator(settings).calibrate(points, grids)
