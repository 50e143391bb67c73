from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import numpy as np

from stereocalib.core.linear_solver import LinearSolver, solve_least_squares

logger = logging.getLogger(__name__)

_FLOAT32_EPS = float(np.finfo(np.float32).eps)


class DampingMethod(str, Enum):
    MULTIPLICATIVE = "multiplicative"
    ADDITIVE = "additive"
    NONE = "none"


class LeastSquaresProblem(ABC):
    """
    Problem definition consumed by `LevenbergMarquardt`.

    The engine minimises r(P) = e(P)^T W e(P), where e is returned by `compute_error` and W is the
    diagonal built from `inverse_variances()` when covariance weighting is enabled.
    """

    @abstractmethod
    def initial_parameters(self) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def compute_error(self, params: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{type(self).__name__} has no analytic jacobian")

    def inverse_variances(self) -> np.ndarray | None:
        return None

    def before_iteration(self, iteration: int, params: np.ndarray, residual: float) -> bool:
        """
        Called before every iteration. Return True when the error metric changed, so the engine
        re-evaluates the current residual and restarts its minimum from it.
        """
        return False


class NumericJacobian:
    """
    Central finite differences, one parameter at a time.

    The step is relative (p(1 +/- step)); parameters near zero use an absolute step of step/100.
    """

    def __init__(self, step: float = 1e-6) -> None:
        if not step > 0.0:
            raise ValueError("numeric jacobian step must be > 0")
        self.step = float(step)

    def __call__(self, problem: LeastSquaresProblem, params: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        params = np.array(params, dtype=np.float64).reshape(-1)
        work = params.copy()
        J = out
        for k in range(params.size):
            value = params[k]
            if abs(value) > _FLOAT32_EPS:
                lo = value * (1.0 - self.step)
                hi = value * (1.0 + self.step)
            else:
                lo = -self.step * 0.01
                hi = self.step * 0.01
            work[k] = lo
            e_lo = np.asarray(problem.compute_error(work), dtype=np.float64).reshape(-1)
            work[k] = hi
            e_hi = np.asarray(problem.compute_error(work), dtype=np.float64).reshape(-1)
            work[k] = value
            if J is None:
                J = np.empty((e_lo.size, params.size), dtype=np.float64)
            J[:, k] = (e_hi - e_lo) / (hi - lo)
            if not np.all(np.isfinite(J[:, k])):
                raise FloatingPointError(f"non-finite numeric derivative for parameter {k}")
        if J is None:
            raise ValueError("empty parameter vector")
        return J


class AnalyticJacobian:
    def __call__(self, problem: LeastSquaresProblem, params: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        J = np.asarray(problem.compute_jacobian(params), dtype=np.float64)
        if out is None:
            return J
        if J.shape != out.shape:
            raise ValueError(f"jacobian shape {J.shape} does not match expected {out.shape}")
        out[...] = J
        return out


@dataclass(frozen=True)
class LMSettings:
    max_iterations: int = 100
    max_residual: float = 0.0
    damping: DampingMethod = DampingMethod.MULTIPLICATIVE
    use_covariance: bool = False


@dataclass(frozen=True)
class LMResult:
    parameters: np.ndarray
    residual: float
    base_residual: float
    target_residual: float
    iterations: int
    terminated: bool


class LevenbergMarquardt:
    """
    Levenberg-Marquardt minimiser driving a `LeastSquaresProblem`.

    `results` always holds the last accepted parameters, which are also the lowest-residual ones
    (`best_results`). Rejected steps are rolled back before the damping factor is updated.
    """

    def __init__(
        self,
        problem: LeastSquaresProblem,
        settings: LMSettings | None = None,
        *,
        jacobian: NumericJacobian | AnalyticJacobian | None = None,
        solver: LinearSolver = solve_least_squares,
    ) -> None:
        self.problem = problem
        self.settings = settings if settings is not None else LMSettings()
        self.jacobian = jacobian if jacobian is not None else NumericJacobian()
        self.solver = solver
        self.damping = DampingMethod(self.settings.damping)

        self._terminate = False
        self._stalled = False
        self._weights: np.ndarray | None = None
        self._J = np.empty((0, 0), dtype=np.float64)
        self._JtJ = np.empty((0, 0), dtype=np.float64)
        self._Jte = np.empty((0,), dtype=np.float64)
        self._delta = np.empty((0,), dtype=np.float64)
        self._error = np.empty((0,), dtype=np.float64)

        self.results = np.empty((0,), dtype=np.float64)
        self.best_results = np.empty((0,), dtype=np.float64)
        self.damping_factor = 0.0
        self.base_residual = float("nan")
        self.minimum_residual = float("nan")
        self.current_residual = float("nan")
        self.last_residual = float("nan")
        self.current_iteration = 0
        self.residual_history: list[float] = []

    def _residual(self, error: np.ndarray) -> float:
        if self._weights is None:
            return float(error @ error)
        return float(error @ (self._weights * error))

    def _compute_jacobian(self, params: np.ndarray) -> np.ndarray:
        return self.jacobian(self.problem, params, out=self._J)

    def init(self) -> None:
        params = np.array(self.problem.initial_parameters(), dtype=np.float64).reshape(-1)
        error = np.asarray(self.problem.compute_error(params), dtype=np.float64).reshape(-1)
        m, n = error.size, params.size
        if m == 0 or n == 0:
            raise ValueError("error and parameter vectors must be non-empty")

        self._weights = None
        if self.settings.use_covariance:
            weights = self.problem.inverse_variances()
            if weights is not None:
                weights = np.asarray(weights, dtype=np.float64).reshape(-1)
                if weights.size != m:
                    raise ValueError(f"inverse variance vector has {weights.size} entries, expected {m}")
                if not np.all(np.isfinite(weights)) or np.any(weights < 0.0):
                    raise ValueError("inverse variances must be finite and >= 0")
                self._weights = weights

        self._J = np.zeros((m, n), dtype=np.float64)
        self._JtJ = np.zeros((n, n), dtype=np.float64)
        self._Jte = np.zeros((n,), dtype=np.float64)
        self._delta = np.zeros((n,), dtype=np.float64)
        self._error = error

        self.results = params
        self.best_results = params.copy()
        residual = self._residual(error)
        self.base_residual = residual
        self.minimum_residual = residual
        self.current_residual = residual
        self.last_residual = residual
        self.current_iteration = 0
        self.residual_history = [residual]
        self._stalled = False

        if self.damping is DampingMethod.MULTIPLICATIVE:
            self.damping_factor = 1e-3
        elif self.damping is DampingMethod.ADDITIVE:
            J = self._compute_jacobian(params)
            self.damping_factor = 1e-3 * float(np.einsum("ij,ij->", J, J)) / n
        else:
            self.damping_factor = 0.0

    def iterate(self) -> None:
        J = self._compute_jacobian(self.results)
        JtW = J.T if self._weights is None else J.T * self._weights
        np.matmul(JtW, J, out=self._JtJ)
        np.matmul(JtW, self._error, out=self._Jte)

        active = np.any(self._JtJ != 0.0, axis=0)
        if not np.any(active):
            logger.debug("jacobian is zero at iteration %d, nothing left to optimise", self.current_iteration)
            self._stalled = True
            return

        H = self._JtJ[np.ix_(active, active)]
        diag = np.diag_indices_from(H)
        if self.damping is DampingMethod.MULTIPLICATIVE:
            H[diag] *= 1.0 + self.damping_factor
        elif self.damping is DampingMethod.ADDITIVE:
            H[diag] += self.damping_factor

        self._delta.fill(0.0)
        self._delta[active] = self.solver(H, -self._Jte[active])

        candidate = self.results + self._delta
        error = np.asarray(self.problem.compute_error(candidate), dtype=np.float64).reshape(-1)
        residual = self._residual(error)

        self.last_residual = self.current_residual
        self.current_residual = residual
        previous_minimum = self.minimum_residual
        accepted = residual < previous_minimum
        if accepted:
            self.minimum_residual = residual
            self.results = candidate
            self.best_results = candidate.copy()
            self._error = error

        if residual < previous_minimum * 1.01:
            self.damping_factor *= 0.1
        elif not np.isfinite(residual) or residual >= self.last_residual:
            self.damping_factor *= 10.0

        logger.debug(
            "iteration %d: residual=%.6g minimum=%.6g lambda=%.3g %s",
            self.current_iteration,
            residual,
            self.minimum_residual,
            self.damping_factor,
            "accepted" if accepted else "rejected",
        )

    def should_stop(self) -> bool:
        return (
            self._terminate
            or self._stalled
            or self.current_iteration >= self.settings.max_iterations
            or self.current_residual <= self.settings.max_residual
        )

    def terminate(self) -> None:
        """
        Request a stop before the next iteration. The request stays set, so a `run()` started after it
        only evaluates the initial residual.
        """
        self._terminate = True

    def run(self) -> LMResult:
        self.init()
        while not self.should_stop():
            self.current_iteration += 1
            if self.problem.before_iteration(self.current_iteration, self.results, self.current_residual):
                self._error = np.asarray(self.problem.compute_error(self.results), dtype=np.float64).reshape(-1)
                residual = self._residual(self._error)
                self.current_residual = residual
                self.minimum_residual = residual
            self.iterate()
            self.residual_history.append(self.minimum_residual)

        logger.debug(
            "finished after %d iterations: base residual %.6g, best residual %.6g (target %.6g)",
            self.current_iteration,
            self.base_residual,
            self.minimum_residual,
            self.settings.max_residual,
        )
        return LMResult(
            parameters=self.best_results.copy(),
            residual=float(self.minimum_residual),
            base_residual=float(self.base_residual),
            target_residual=float(self.settings.max_residual),
            iterations=int(self.current_iteration),
            terminated=bool(self._terminate),
        )
