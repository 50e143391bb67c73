from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np

from stereocalib.core.levenberg_marquardt import DampingMethod, LevenbergMarquardt, LMSettings, NumericJacobian
from stereocalib.distortion.line_fit import LineFitMode, LineFitProblem
from stereocalib.distortion.model import DistortionDirection, RadialDistortionModel
from stereocalib.distortion.polynomial import Polynomial4Model
from stereocalib.distortion.rational import InitialMethod, Rational3Model
from stereocalib.parameters import (
    AlgorithmParameter,
    bool_parameter,
    choice_parameter,
    float_parameter,
    int_parameter,
    resolve_parameters,
)

logger = logging.getLogger(__name__)

MODELS: dict[str, type[RadialDistortionModel]] = {
    Rational3Model.name: Rational3Model,
    Polynomial4Model.name: Polynomial4Model,
}


def create_model(name: str, **kwargs: Any) -> RadialDistortionModel:
    try:
        cls = MODELS[str(name)]
    except KeyError as e:
        raise ValueError(f"unknown distortion model: {name}") from e
    return cls(**kwargs)


DISTORTION_PARAMETERS: tuple[AlgorithmParameter, ...] = (
    choice_parameter("Distortion model", "model", Rational3Model.name, list(MODELS)),
    int_parameter("Max iterations", "max_iterations", 100, 1, 10000),
    bool_parameter("Find initial parameters", "find_initial_parameters", True),
    float_parameter("Numeric derivative step", "derivative_step", 1e-4, 1e-12, 1.0),
    choice_parameter("Damping", "damping", DampingMethod.MULTIPLICATIVE.value, [m.value for m in DampingMethod]),
    choice_parameter("Line fit error", "line_fit", LineFitMode.TANGENT.value, [m.value for m in LineFitMode]),
    choice_parameter(
        "Initial parameters method",
        "initial_method",
        InitialMethod.SYMMETRIC_K1.value,
        [m.value for m in InitialMethod],
    ),
    float_parameter("Initial center X", "center_x", None, -1e6, 1e6, optional=True),
    float_parameter("Initial center Y", "center_y", None, -1e6, 1e6, optional=True),
)


@dataclass(frozen=True)
class DistortionCorrectionSettings:
    max_iterations: int = 100
    find_initial_parameters: bool = True
    derivative_step: float = 1e-4
    damping: str = DampingMethod.MULTIPLICATIVE.value
    line_fit: str = LineFitMode.TANGENT.value

    @classmethod
    def from_parameters(cls, values: Mapping[str, Any] | None = None) -> DistortionCorrectionSettings:
        resolved = resolve_parameters(DISTORTION_PARAMETERS, values)
        return cls(
            max_iterations=resolved["max_iterations"],
            find_initial_parameters=resolved["find_initial_parameters"],
            derivative_step=resolved["derivative_step"],
            damping=resolved["damping"],
            line_fit=resolved["line_fit"],
        )


@dataclass(frozen=True)
class DistortionFitResult:
    parameters: np.ndarray
    base_residual: float
    residual: float
    target_residual: float
    iterations: int
    terminated: bool
    directions: list[DistortionDirection]
    base_directions: list[DistortionDirection]


class RadialDistortionCorrector:
    """
    Fits a radial distortion model to lines that are straight in the scene, then corrects points.

    Fitting runs in a frame scaled by 1 / image diagonal; the model keeps its parameters in that frame
    (`model.image_scale`) and `correct_points` converts pixels in and out.
    """

    def __init__(
        self,
        model: RadialDistortionModel,
        image_size: tuple[int, int],
        settings: DistortionCorrectionSettings | None = None,
        *,
        center: Sequence[float] | None = None,
    ) -> None:
        w, h = int(image_size[0]), int(image_size[1])
        if w <= 0 or h <= 0:
            raise ValueError("image size must be > 0")
        self.model = model
        self.image_size = (w, h)
        self.settings = settings if settings is not None else DistortionCorrectionSettings()
        self.scale = 1.0 / float(np.hypot(w, h))
        if center is None:
            center = np.asarray(model.initial_center, dtype=np.float64) / model.image_scale
        self.center_px = np.asarray(center, dtype=np.float64).reshape(2).copy()
        self.problem: LineFitProblem | None = None
        self._engine: LevenbergMarquardt | None = None
        self.result: DistortionFitResult | None = None

    def terminate(self) -> None:
        if self._engine is not None:
            self._engine.terminate()

    def find_model_parameters(self, lines: Sequence[np.ndarray]) -> DistortionFitResult:
        if len(lines) == 0:
            raise ValueError("no correction lines")
        s = self.settings
        scaled = [np.asarray(line, dtype=np.float64).reshape(-1, 2) * self.scale for line in lines]

        model = self.model
        if model.image_scale != self.scale:
            # parameters kept from a previous fit are expressed in another frame
            model.distortion_center = np.asarray(model.distortion_center) / model.image_scale * self.scale
        model.image_scale = self.scale
        model.initial_center = self.center_px * self.scale
        if s.find_initial_parameters:
            model.distortion_center = model.initial_center

        problem = LineFitProblem(model, scaled, find_initial_parameters=s.find_initial_parameters, mode=s.line_fit)
        target = float(sum(line.shape[0] for line in scaled)) * 0.25 * self.scale * self.scale
        engine = LevenbergMarquardt(
            problem,
            LMSettings(
                max_iterations=int(s.max_iterations),
                max_residual=target,
                damping=DampingMethod(s.damping),
                use_covariance=False,
            ),
            jacobian=NumericJacobian(s.derivative_step),
        )
        self.problem = problem
        self._engine = engine
        try:
            lm = engine.run()
        finally:
            self._engine = None

        model.parameters = lm.parameters
        problem.compute_error(lm.parameters)
        self.result = DistortionFitResult(
            parameters=lm.parameters.copy(),
            base_residual=lm.base_residual,
            residual=lm.residual,
            target_residual=lm.target_residual,
            iterations=lm.iterations,
            terminated=lm.terminated,
            directions=list(problem.directions),
            base_directions=list(problem.base_directions),
        )
        logger.info(
            "%s fit: %d iterations, residual %.6g -> %.6g (target %.6g), coefficients %s",
            model.name,
            lm.iterations,
            lm.base_residual,
            lm.residual,
            target,
            np.array2string(model.coefficients, precision=6),
        )
        return self.result

    def correct_points(self, points: np.ndarray) -> np.ndarray:
        scale = self.model.image_scale
        p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return self.model.undistort(p * scale) / scale

    @property
    def base_residual(self) -> float | None:
        return None if self.result is None else self.result.base_residual

    @property
    def residual(self) -> float | None:
        return None if self.result is None else self.result.residual

    @property
    def iterations(self) -> int:
        return 0 if self.result is None else self.result.iterations


def corrector_from_parameters(image_size: tuple[int, int], values: Mapping[str, Any] | None = None) -> RadialDistortionCorrector:
    """
    Corrector and model built from a `DISTORTION_PARAMETERS` mapping. The initial center defaults to
    the image center.
    """
    resolved = resolve_parameters(DISTORTION_PARAMETERS, values)
    w, h = int(image_size[0]), int(image_size[1])
    cx = resolved["center_x"] if resolved["center_x"] is not None else 0.5 * w
    cy = resolved["center_y"] if resolved["center_y"] is not None else 0.5 * h
    kwargs: dict[str, Any] = {"center": (cx, cy)}
    if resolved["model"] == Rational3Model.name:
        kwargs["initial_method"] = resolved["initial_method"]
    model = create_model(resolved["model"], **kwargs)
    return RadialDistortionCorrector(model, (w, h), DistortionCorrectionSettings.from_parameters(values))
