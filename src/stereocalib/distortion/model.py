from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Sequence

import numpy as np

from stereocalib.core.geometry import Line2D, Quadric

_FLOAT32_EPS = float(np.finfo(np.float32).eps)


class DistortionDirection(IntEnum):
    NONE = 0
    TO_CENTER = 1
    FROM_CENTER = 2
    UNKNOWN = 3

    BARREL = 1
    CUSHION = 2


@dataclass(frozen=True)
class DistortionPoint:
    """
    Evaluation of a distortion model on N points.

    pi: raw points, pd: centered / aspect-corrected distorted points, pu: undistorted points in the same
    frame, pf: undistorted points in image coordinates. rd / ru: radii of pd / pu.
    The diff_* arrays are (N, n_params) derivatives with respect to the model parameters.
    """

    pi: np.ndarray
    pd: np.ndarray
    pu: np.ndarray
    pf: np.ndarray
    rd: np.ndarray
    ru: np.ndarray
    diff_xd: np.ndarray | None = None
    diff_yd: np.ndarray | None = None
    diff_rd: np.ndarray | None = None
    diff_ru: np.ndarray | None = None
    diff_xu: np.ndarray | None = None
    diff_yu: np.ndarray | None = None
    diff_xf: np.ndarray | None = None
    diff_yf: np.ndarray | None = None

    @property
    def radius_ratio(self) -> np.ndarray:
        """
        max(ru/rd, rd/ru), 1 where either radius is zero.
        """
        rd = self.rd
        ru = self.ru
        out = np.ones_like(rd)
        ok = (rd > 0.0) & (ru > 0.0)
        q = ru[ok] / rd[ok]
        out[ok] = np.maximum(q, 1.0 / q)
        return out


class RadialDistortionModel(ABC):
    """
    Radial distortion around a center (cx, cy): the undistorted radius ru is a function of the
    distorted radius rd, parameterised by the model coefficients.

    Parameter vector: [k_1 .. k_m, cx, cy]. Coordinates are expressed in the frame given by
    `image_scale` (pixel coordinates multiplied by it).
    """

    name: ClassVar[str] = ""
    coefficient_names: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        coefficients: Sequence[float] | None = None,
        *,
        center: Sequence[float] = (0.0, 0.0),
        aspect: float = 1.0,
        numeric_derivative: bool = False,
        derivative_step: float = 1e-4,
    ) -> None:
        if not aspect > 0.0:
            raise ValueError("aspect must be > 0")
        m = len(self.coefficient_names)
        self.parameters = np.zeros((m + 2,), dtype=np.float64)
        if coefficients is not None:
            self.coefficients = coefficients
        self.initial_center = np.asarray(center, dtype=np.float64).reshape(2).copy()
        self.distortion_center = self.initial_center
        self.aspect = float(aspect)
        self.image_scale = 1.0
        self.numeric_derivative = bool(numeric_derivative)
        self.derivative_step = float(derivative_step)

    @property
    def n_coefficients(self) -> int:
        return len(self.coefficient_names)

    @property
    def parameter_count(self) -> int:
        return self.n_coefficients + 2

    @property
    def parameters(self) -> np.ndarray:
        return self._parameters

    @parameters.setter
    def parameters(self, value: np.ndarray) -> None:
        value = np.array(value, dtype=np.float64).reshape(-1)
        if value.size != len(self.coefficient_names) + 2:
            raise ValueError(f"{self.name} expects {len(self.coefficient_names) + 2} parameters")
        self._parameters = value

    @property
    def coefficients(self) -> np.ndarray:
        return self._parameters[: self.n_coefficients]

    @coefficients.setter
    def coefficients(self, value: Sequence[float]) -> None:
        value = np.asarray(value, dtype=np.float64).reshape(-1)
        if value.size != self.n_coefficients:
            raise ValueError(f"{self.name} expects {self.n_coefficients} coefficients")
        self._parameters[: self.n_coefficients] = value

    @property
    def distortion_center(self) -> np.ndarray:
        return self._parameters[self.n_coefficients :]

    @distortion_center.setter
    def distortion_center(self, value: Sequence[float]) -> None:
        self._parameters[self.n_coefficients :] = np.asarray(value, dtype=np.float64).reshape(2)

    # radial mapping, implemented by the variants

    @abstractmethod
    def undistort_radius(self, rd: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def distort_radius(self, ru: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def undistort_radius_derivatives(self, rd: np.ndarray, ru: np.ndarray, coeffs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns (d ru / d coeffs as (N, m), d ru / d rd as (N,)).
        """
        raise NotImplementedError

    @abstractmethod
    def initial_k1(self, ru: np.ndarray, rd: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def coefficients_from_k1(self, k1: float) -> np.ndarray:
        raise NotImplementedError

    # point mappings

    def _evaluate(self, points: np.ndarray, params: np.ndarray) -> DistortionPoint:
        m = self.n_coefficients
        coeffs = params[:m]
        cx, cy = params[m], params[m + 1]
        pi = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        pd = np.stack([(pi[:, 0] - cx) / self.aspect, pi[:, 1] - cy], axis=1)
        rd = np.hypot(pd[:, 0], pd[:, 1])
        ru = self.undistort_radius(rd, coeffs)
        ratio = np.ones_like(rd)
        nz = rd > 0.0
        ratio[nz] = ru[nz] / rd[nz]
        ru = np.where(nz, ru, 0.0)
        pu = pd * ratio[:, None]
        pf = np.stack([pu[:, 0] * self.aspect + cx, pu[:, 1] + cy], axis=1)
        return DistortionPoint(pi=pi, pd=pd, pu=pu, pf=pf, rd=rd, ru=ru)

    def evaluate(self, points: np.ndarray) -> DistortionPoint:
        return self._evaluate(points, self.parameters)

    def undistort(self, points: np.ndarray) -> np.ndarray:
        return self._evaluate(points, self.parameters).pf

    def distort(self, points: np.ndarray) -> np.ndarray:
        m = self.n_coefficients
        coeffs = self.parameters[:m]
        cx, cy = self.parameters[m], self.parameters[m + 1]
        p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        pu = np.stack([(p[:, 0] - cx) / self.aspect, p[:, 1] - cy], axis=1)
        ru = np.hypot(pu[:, 0], pu[:, 1])
        rd = self.distort_radius(ru, coeffs)
        ratio = np.ones_like(ru)
        nz = ru > 0.0
        ratio[nz] = rd[nz] / ru[nz]
        pd = pu * ratio[:, None]
        return np.stack([pd[:, 0] * self.aspect + cx, pd[:, 1] + cy], axis=1)

    def full_update(self, points: np.ndarray) -> DistortionPoint:
        """
        Evaluate the model and the derivatives of every intermediate quantity.
        """
        if self.numeric_derivative:
            return self._numeric_update(points)
        return self._analytic_update(points)

    def _analytic_update(self, points: np.ndarray) -> DistortionPoint:
        base = self.evaluate(points)
        m = self.n_coefficients
        n_par = self.parameter_count
        coeffs = self.coefficients
        N = base.pi.shape[0]
        xd, yd = base.pd[:, 0], base.pd[:, 1]
        rd, ru = base.rd, base.ru
        nz = rd > 0.0

        diff_xd = np.zeros((N, n_par))
        diff_yd = np.zeros((N, n_par))
        diff_xd[:, m] = -1.0 / self.aspect
        diff_yd[:, m + 1] = -1.0

        diff_rd = np.zeros((N, n_par))
        diff_rd[nz] = (xd[nz, None] * diff_xd[nz] + yd[nz, None] * diff_yd[nz]) / rd[nz, None]

        dru_dk, dru_drd = self.undistort_radius_derivatives(rd, ru, coeffs)
        diff_ru = dru_drd[:, None] * diff_rd
        diff_ru[:, :m] += dru_dk

        ratio = np.ones_like(rd)
        ratio[nz] = ru[nz] / rd[nz]
        diff_ratio = np.zeros((N, n_par))
        diff_ratio[nz] = (diff_ru[nz] * rd[nz, None] - ru[nz, None] * diff_rd[nz]) / (rd[nz, None] ** 2)

        diff_xu = diff_xd * ratio[:, None] + xd[:, None] * diff_ratio
        diff_yu = diff_yd * ratio[:, None] + yd[:, None] * diff_ratio
        diff_xf = diff_xu * self.aspect
        diff_xf[:, m] += 1.0
        diff_yf = diff_yu.copy()
        diff_yf[:, m + 1] += 1.0

        return DistortionPoint(
            pi=base.pi,
            pd=base.pd,
            pu=base.pu,
            pf=base.pf,
            rd=rd,
            ru=ru,
            diff_xd=diff_xd,
            diff_yd=diff_yd,
            diff_rd=diff_rd,
            diff_ru=diff_ru,
            diff_xu=diff_xu,
            diff_yu=diff_yu,
            diff_xf=diff_xf,
            diff_yf=diff_yf,
        )

    def _numeric_update(self, points: np.ndarray) -> DistortionPoint:
        base = self.evaluate(points)
        N = base.pi.shape[0]
        n_par = self.parameter_count
        grads = {k: np.zeros((N, n_par)) for k in ("xd", "yd", "rd", "ru", "xu", "yu", "xf", "yf")}

        def columns(d: DistortionPoint) -> dict[str, np.ndarray]:
            return {
                "xd": d.pd[:, 0],
                "yd": d.pd[:, 1],
                "rd": d.rd,
                "ru": d.ru,
                "xu": d.pu[:, 0],
                "yu": d.pu[:, 1],
                "xf": d.pf[:, 0],
                "yf": d.pf[:, 1],
            }

        params = self.parameters.copy()
        step = self.derivative_step
        for k in range(n_par):
            value = params[k]
            if abs(value) > _FLOAT32_EPS:
                lo, hi = value * (1.0 - step), value * (1.0 + step)
            else:
                lo, hi = -step * 0.01, step * 0.01
            work = params.copy()
            work[k] = lo
            c_lo = columns(self._evaluate(base.pi, work))
            work[k] = hi
            c_hi = columns(self._evaluate(base.pi, work))
            for key in grads:
                grads[key][:, k] = (c_hi[key] - c_lo[key]) / (hi - lo)

        return DistortionPoint(
            pi=base.pi,
            pd=base.pd,
            pu=base.pu,
            pf=base.pf,
            rd=base.rd,
            ru=base.ru,
            **{f"diff_{k}": v for k, v in grads.items()},
        )

    # initial parameters

    def init_parameters(self) -> None:
        self.coefficients = np.zeros((self.n_coefficients,))
        self.distortion_center = self.initial_center

    def set_initial_parameters_from_quadrics(
        self,
        quadrics: Sequence[Quadric],
        lines: Sequence[np.ndarray],
        fit_points: Sequence[int],
    ) -> float:
        """
        Estimate k1 from how far each line point is from the tangent at the line's anchor, measured
        along the ray towards the center, then expand it into the full coefficient vector.
        """
        self.distortion_center = self.initial_center
        center = self.initial_center
        samples = []
        for quadric, line, fit in zip(quadrics, lines, fit_points):
            line = np.asarray(line, dtype=np.float64).reshape(-1, 2)
            anchor = line[fit]
            tangent = quadric.tangent_at(anchor)
            if tangent.a == 0.0 and tangent.b == 0.0:
                continue
            for i, p in enumerate(line):
                if i == fit or np.linalg.norm(p - anchor) <= 1e-9:
                    continue
                rd = float(np.linalg.norm(p - center))
                if rd <= 1e-12:
                    continue
                hit = tangent.intersection(Line2D.through(p, center))
                if hit is None:
                    continue
                ru = float(np.linalg.norm(hit - center))
                samples.append((ru, rd))

        if samples:
            arr = np.asarray(samples, dtype=np.float64)
            k = self.initial_k1(arr[:, 0], arr[:, 1])
            k = k[np.isfinite(k)]
            k1 = float(np.mean(k)) if k.size else 0.0
        else:
            k1 = 0.0
        self.coefficients = self.coefficients_from_k1(k1)
        return k1


def _end_parameter(p: np.ndarray, line: Line2D, center: np.ndarray, eps: float) -> float:
    den = line.a * (center[0] - p[0]) + line.b * (center[1] - p[1])
    if den == 0.0:
        return 0.0
    k = -(line.a * p[0] + line.b * p[1] + line.c) / den
    return 0.0 if abs(k) < eps else float(k)


def direction_from_line_ends(
    p1: np.ndarray,
    p2: np.ndarray,
    line: Line2D,
    center: np.ndarray,
    *,
    eps: float = 1e-9,
) -> DistortionDirection:
    """
    Each end point p is moved along p + k (center - p) until it hits the line. k > 0 means the line
    lies between the point and the center, so the point was pushed away from the center.
    """
    center = np.asarray(center, dtype=np.float64).reshape(2)
    k1 = _end_parameter(np.asarray(p1, dtype=np.float64).reshape(2), line, center, eps)
    k2 = _end_parameter(np.asarray(p2, dtype=np.float64).reshape(2), line, center, eps)
    if k1 == 0.0 and k2 == 0.0:
        return DistortionDirection.NONE
    if k1 >= 0.0 and k2 >= 0.0:
        return DistortionDirection.FROM_CENTER
    if k1 <= 0.0 and k2 <= 0.0:
        return DistortionDirection.TO_CENTER
    return DistortionDirection.UNKNOWN


def direction_from_line(points: np.ndarray, line: Line2D, center: np.ndarray) -> DistortionDirection:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return direction_from_line_ends(points[0], points[-1], line, center)


def direction_from_quadric(
    points: np.ndarray,
    quadric: Quadric,
    center: np.ndarray,
    fit_index: int,
    *,
    tangent: Line2D | None = None,
    majority: float = 0.75,
) -> DistortionDirection:
    """
    Compare, along each center->point ray, the point on the curve with the hit on the anchor tangent.
    Points of a barrel-distorted line lie closer to the center than the tangent.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    center = np.asarray(center, dtype=np.float64).reshape(2)
    if tangent is None:
        tangent = quadric.tangent_at(points[fit_index])
    if tangent.a == 0.0 and tangent.b == 0.0:
        return DistortionDirection.NONE

    closer = 0
    farther = 0
    for i, p in enumerate(points):
        if i == fit_index:
            continue
        d_curve = float(np.linalg.norm(p - center))
        if d_curve <= 1e-12:
            continue
        hit = tangent.intersection(Line2D.through(center, p))
        if hit is None:
            continue
        d_tangent = float(np.linalg.norm(hit - center))
        tol = 1e-9 * max(d_curve, d_tangent)
        if d_curve < d_tangent - tol:
            closer += 1
        elif d_curve > d_tangent + tol:
            farther += 1

    n = points.shape[0] - 1
    if closer > majority * n:
        return DistortionDirection.TO_CENTER
    if farther > majority * n:
        return DistortionDirection.FROM_CENTER
    return DistortionDirection.NONE
