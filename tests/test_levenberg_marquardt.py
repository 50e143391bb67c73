from __future__ import annotations

import numpy as np
import pytest

from stereocalib.core.levenberg_marquardt import (
    AnalyticJacobian,
    DampingMethod,
    LeastSquaresProblem,
    LevenbergMarquardt,
    LMSettings,
    NumericJacobian,
)


class ExponentialFit(LeastSquaresProblem):
    def __init__(self, start, *, weights=None) -> None:
        self.t = np.linspace(0.0, 4.0, 20)
        self.y = 2.0 * np.exp(-0.5 * self.t)
        self.start = np.asarray(start, dtype=np.float64)
        self.weights = weights

    def initial_parameters(self) -> np.ndarray:
        return self.start

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        a, b = params
        return self.y - a * np.exp(b * self.t)

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray:
        a, b = params
        e = np.exp(b * self.t)
        return np.stack([-e, -a * self.t * e], axis=1)

    def inverse_variances(self):
        return self.weights


@pytest.mark.parametrize("damping", list(DampingMethod))
def test_converges_for_every_damping(damping: DampingMethod) -> None:
    engine = LevenbergMarquardt(ExponentialFit((1.8, -0.45)), LMSettings(max_iterations=50, damping=damping))
    result = engine.run()
    assert np.allclose(result.parameters, [2.0, -0.5], atol=1e-6)
    assert result.residual < 1e-12
    assert result.iterations <= 50


def test_converges_from_far_start_with_numeric_and_analytic_jacobian() -> None:
    numeric = LevenbergMarquardt(ExponentialFit((1.0, -0.2)), LMSettings(max_iterations=200)).run()
    analytic = LevenbergMarquardt(
        ExponentialFit((1.0, -0.2)), LMSettings(max_iterations=200), jacobian=AnalyticJacobian()
    ).run()
    assert np.allclose(numeric.parameters, [2.0, -0.5], atol=1e-6)
    assert np.allclose(analytic.parameters, [2.0, -0.5], atol=1e-6)


def test_best_residual_is_non_increasing() -> None:
    engine = LevenbergMarquardt(ExponentialFit((1.0, -0.2)), LMSettings(max_iterations=60))
    engine.run()
    history = np.asarray(engine.residual_history)
    assert history.size == engine.current_iteration + 1
    assert np.all(np.diff(history) <= 0.0)
    assert np.array_equal(engine.results, engine.best_results)


def test_stops_at_target_residual() -> None:
    engine = LevenbergMarquardt(ExponentialFit((1.8, -0.45)), LMSettings(max_iterations=100, max_residual=1e-3))
    result = engine.run()
    assert result.residual <= 1e-3
    assert result.iterations < 100


def test_rejected_steps_are_rolled_back() -> None:
    problem = ExponentialFit((1.8, -0.45))
    engine = LevenbergMarquardt(problem, LMSettings(max_iterations=5), solver=lambda H, g: np.full(g.shape, 10.0))
    result = engine.run()
    assert np.array_equal(engine.results, [1.8, -0.45])
    assert np.array_equal(result.parameters, [1.8, -0.45])
    assert result.residual == result.base_residual
    assert result.iterations == 5
    assert engine.damping_factor == pytest.approx(1e-3 * 10.0**5)


class PinnedParameter(LeastSquaresProblem):
    def initial_parameters(self) -> np.ndarray:
        return np.array([0.0, 5.0])

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        return np.array([params[0] - 3.0, 2.0 * (params[0] - 3.0)])


def test_unconstrained_parameter_gets_zero_update() -> None:
    result = LevenbergMarquardt(PinnedParameter(), LMSettings(max_iterations=30)).run()
    assert abs(result.parameters[0] - 3.0) < 1e-9
    assert result.parameters[1] == 5.0


class ConstantError(LeastSquaresProblem):
    def initial_parameters(self) -> np.ndarray:
        return np.array([1.0, 2.0])

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        return np.array([1.0, 2.0])


def test_zero_jacobian_stops_without_error() -> None:
    result = LevenbergMarquardt(ConstantError(), LMSettings(max_iterations=50)).run()
    assert result.iterations == 1
    assert result.residual == pytest.approx(5.0)
    assert np.array_equal(result.parameters, [1.0, 2.0])


class CancellingFit(ExponentialFit):
    engine: LevenbergMarquardt | None = None

    def before_iteration(self, iteration: int, params: np.ndarray, residual: float) -> bool:
        if iteration == 3 and self.engine is not None:
            self.engine.terminate()
        return False


def test_terminate_is_observed_between_iterations() -> None:
    problem = CancellingFit((1.0, -0.2))
    engine = LevenbergMarquardt(problem, LMSettings(max_iterations=100))
    problem.engine = engine
    result = engine.run()
    assert result.iterations == 3
    assert result.terminated


def test_terminate_before_run_keeps_initial_parameters() -> None:
    engine = LevenbergMarquardt(ExponentialFit((1.0, -0.2)), LMSettings(max_iterations=100))
    engine.terminate()
    result = engine.run()
    assert result.iterations == 0
    assert result.terminated
    assert np.array_equal(result.parameters, [1.0, -0.2])
    assert result.residual == result.base_residual


class NanBelowZero(LeastSquaresProblem):
    def initial_parameters(self) -> np.ndarray:
        return np.array([0.0])

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        return np.array([np.nan if params[0] < 0.0 else params[0] + 1.0])


def test_numeric_jacobian_rejects_non_finite_values() -> None:
    with pytest.raises(FloatingPointError):
        LevenbergMarquardt(NanBelowZero(), LMSettings(max_iterations=5)).run()


def test_numeric_jacobian_matches_analytic() -> None:
    problem = ExponentialFit((1.0, -0.2))
    params = np.array([1.7, -0.35])
    J_num = NumericJacobian(1e-6)(problem, params)
    assert np.allclose(J_num, problem.compute_jacobian(params), rtol=1e-6, atol=1e-9)


def test_covariance_weights_enter_the_residual() -> None:
    weights = np.linspace(0.5, 2.0, 20)
    problem = ExponentialFit((1.8, -0.45), weights=weights)
    engine = LevenbergMarquardt(problem, LMSettings(max_iterations=30, use_covariance=True))
    engine.init()
    e = problem.compute_error(problem.start)
    assert engine.base_residual == pytest.approx(float(e @ (weights * e)))
    result = engine.run()
    assert np.allclose(result.parameters, [2.0, -0.5], atol=1e-6)


def test_covariance_weights_must_match_error_size() -> None:
    problem = ExponentialFit((1.8, -0.45), weights=np.ones(3))
    with pytest.raises(ValueError):
        LevenbergMarquardt(problem, LMSettings(use_covariance=True)).run()
