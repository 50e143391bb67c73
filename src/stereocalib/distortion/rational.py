from __future__ import annotations

from enum import Enum
from typing import Sequence

import numpy as np

from stereocalib.distortion.model import RadialDistortionModel


class InitialMethod(str, Enum):
    SYMMETRIC_K1 = "symmetric_k1"
    HIGH_K1 = "high_k1"
    GENERIC = "generic"
    ZERO = "zero"


class Rational3Model(RadialDistortionModel):
    """
    rd = ru (1 + k1 ru) / (1 + k2 ru + k3 ru^2)

    Undistortion solves (k1 - rd k3) ru^2 + (1 - rd k2) ru - rd = 0 for the root with ru(0) = 0.
    """

    name = "rational3"
    coefficient_names = ("k1", "k2", "k3")

    def __init__(
        self,
        coefficients: Sequence[float] | None = None,
        *,
        initial_method: InitialMethod | str = InitialMethod.SYMMETRIC_K1,
        **kwargs,
    ) -> None:
        super().__init__(coefficients, **kwargs)
        self.initial_method = InitialMethod(initial_method)

    def undistort_radius(self, rd: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        k1, k2, k3 = coeffs
        rd = np.asarray(rd, dtype=np.float64)
        a = k1 - rd * k3
        b = 1.0 - rd * k2
        disc = b * b + 4.0 * a * rd
        with np.errstate(invalid="ignore", divide="ignore"):
            # (-b + sqrt(disc)) / 2a written without the cancellation, finite for a = 0
            return 2.0 * rd / (b + np.sqrt(disc))

    def distort_radius(self, ru: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        k1, k2, k3 = coeffs
        ru = np.asarray(ru, dtype=np.float64)
        with np.errstate(invalid="ignore", divide="ignore"):
            return ru * (1.0 + k1 * ru) / (1.0 + k2 * ru + k3 * ru * ru)

    def undistort_radius_derivatives(self, rd: np.ndarray, ru: np.ndarray, coeffs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        k1, k2, k3 = coeffs
        a = k1 - rd * k3
        b = 1.0 - rd * k2
        with np.errstate(invalid="ignore", divide="ignore"):
            den = 2.0 * a * ru + b
            dru_dk = np.stack([-ru * ru / den, rd * ru / den, rd * ru * ru / den], axis=1)
            dru_drd = (1.0 + k2 * ru + k3 * ru * ru) / den
        return dru_dk, dru_drd

    def initial_k1(self, ru: np.ndarray, rd: np.ndarray) -> np.ndarray:
        with np.errstate(invalid="ignore", divide="ignore"):
            if self.initial_method is InitialMethod.SYMMETRIC_K1:
                return (rd - ru) / (ru + rd)
            if self.initial_method is InitialMethod.HIGH_K1:
                return (rd - ru) / (1.25 * ru * ru - ru * rd)
            if self.initial_method is InitialMethod.GENERIC:
                return rd / ru - 1.0
        return np.zeros_like(ru)

    def coefficients_from_k1(self, k1: float) -> np.ndarray:
        if self.initial_method is InitialMethod.SYMMETRIC_K1:
            c = (4.0, -4.0, 0.4) if k1 > 0.0 else (3.0, -2.0, -0.5)
        elif self.initial_method is InitialMethod.HIGH_K1:
            c = (2.0, 1.8, 0.4)
        elif self.initial_method is InitialMethod.GENERIC:
            c = (2.0, 1.0, 0.0) if k1 > 0.0 else (-1.4, -1.3, -0.5)
        else:
            c = (0.0, 0.0, 0.0)
        return k1 * np.asarray(c, dtype=np.float64)
