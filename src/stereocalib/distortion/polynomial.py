from __future__ import annotations

import numpy as np

from stereocalib.distortion.model import RadialDistortionModel


class Polynomial4Model(RadialDistortionModel):
    """
    ru = rd (1 + k1 rd + k2 rd^2 + k3 rd^3 + k4 rd^4)

    Distortion inverts the polynomial with Newton iterations.
    """

    name = "polynomial4"
    coefficient_names = ("k1", "k2", "k3", "k4")

    newton_iterations = 50
    newton_tolerance = 1e-15

    def undistort_radius(self, rd: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        rd = np.asarray(rd, dtype=np.float64)
        return rd * (1.0 + np.polyval(np.concatenate([coeffs[::-1], [0.0]]), rd))

    def _d_undistort(self, rd: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        powers = np.arange(2, coeffs.size + 2, dtype=np.float64)
        return 1.0 + np.sum(powers[None, :] * coeffs[None, :] * rd[:, None] ** (powers[None, :] - 1.0), axis=1)

    def distort_radius(self, ru: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        ru = np.asarray(ru, dtype=np.float64).reshape(-1)
        rd = ru.copy()
        for _ in range(self.newton_iterations):
            f = self.undistort_radius(rd, coeffs) - ru
            df = self._d_undistort(rd, coeffs)
            with np.errstate(invalid="ignore", divide="ignore"):
                step = f / df
            rd = rd - step
            if np.all(np.abs(step) <= self.newton_tolerance * np.maximum(1.0, np.abs(rd))):
                break
        return rd

    def undistort_radius_derivatives(self, rd: np.ndarray, ru: np.ndarray, coeffs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        rd = np.asarray(rd, dtype=np.float64)
        powers = np.arange(2, coeffs.size + 2, dtype=np.float64)
        dru_dk = rd[:, None] ** powers[None, :]
        return dru_dk, self._d_undistort(rd, coeffs)

    def initial_k1(self, ru: np.ndarray, rd: np.ndarray) -> np.ndarray:
        with np.errstate(invalid="ignore", divide="ignore"):
            return (ru / rd - 1.0) / rd

    def coefficients_from_k1(self, k1: float) -> np.ndarray:
        out = np.zeros((self.n_coefficients,), dtype=np.float64)
        out[0] = k1
        return out
