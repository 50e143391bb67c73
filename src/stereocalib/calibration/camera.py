from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from stereocalib.core.geometry import to_homogeneous


def rq_decompose(M: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    RQ decomposition M = K @ R with a non-negative diagonal in K.

    Signs are moved between the columns of K and the rows of R; R is orthogonal but its determinant
    keeps the sign of det(M).
    """
    from scipy.linalg import rq  # type: ignore

    M = np.asarray(M, dtype=np.float64).reshape(3, 3)
    K, R = rq(M)
    signs = np.sign(np.diag(K))
    signs[signs == 0.0] = 1.0
    return K * signs[None, :], signs[:, None] * R


def intrinsic_skew(matrix: np.ndarray) -> float:
    """
    Skew term K[0,1]/K[2,2] of the intrinsic factor of a 3x4 camera matrix.
    """
    K, _R = rq_decompose(np.asarray(matrix, dtype=np.float64).reshape(3, 4)[:, :3])
    if K[2, 2] == 0.0:
        return 0.0
    return float(K[0, 1] / K[2, 2])


def rotation_from_euler(angles: np.ndarray, seq: str = "xyz") -> np.ndarray:
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    return Rot.from_euler(seq, np.asarray(angles, dtype=np.float64).reshape(3)).as_matrix()


def project_points(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    P = np.asarray(matrix, dtype=np.float64).reshape(3, 4)
    L = to_homogeneous(np.asarray(points, dtype=np.float64).reshape(-1, 3)) @ P.T
    return L[:, :2] / L[:, 2:3]


@dataclass
class Camera:
    """
    Pinhole camera: 3x4 projection matrix and, after `decompose()`, its factors
    matrix = K [R | t] with t = -R C.
    """

    matrix: np.ndarray
    intrinsic: np.ndarray | None = None
    rotation: np.ndarray | None = None
    translation: np.ndarray | None = None
    center: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.matrix = np.array(self.matrix, dtype=np.float64).reshape(3, 4)

    @classmethod
    def from_decomposition(cls, K: np.ndarray, R: np.ndarray, C: np.ndarray) -> Camera:
        K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        C = np.asarray(C, dtype=np.float64).reshape(3)
        t = -R @ C
        cam = cls(K @ np.concatenate([R, t[:, None]], axis=1))
        cam.intrinsic = K / K[2, 2]
        cam.rotation = R.copy()
        cam.translation = t
        cam.center = C.copy()
        return cam

    @property
    def is_decomposed(self) -> bool:
        return self.intrinsic is not None

    def decompose(self) -> Camera:
        """
        Factor the projection matrix in place and return self.

        The matrix is rescaled so K[2,2] = 1 and R is a proper rotation.
        """
        P = self.matrix
        if not np.all(np.isfinite(P)):
            raise ValueError("camera matrix has non-finite entries")
        M = P[:, :3]
        if abs(np.linalg.det(M)) < 1e-300:
            raise ValueError("camera matrix left 3x3 block is singular")

        K, R = rq_decompose(M)
        scale = K[2, 2]
        P = P / scale
        K = K / scale
        if np.linalg.det(R) < 0.0:
            R = -R
            P = -P

        C = -np.linalg.solve(P[:, :3], P[:, 3])
        self.matrix = P
        self.intrinsic = K
        self.rotation = R
        self.center = C
        self.translation = -R @ C
        return self

    def project(self, points: np.ndarray) -> np.ndarray:
        return project_points(self.matrix, points)

    def normalized(self, norm_image: np.ndarray, norm_real: np.ndarray) -> Camera:
        """
        Camera acting on normalized coordinates: Nimg @ P @ inv(Nreal).
        """
        P = np.asarray(norm_image, dtype=np.float64) @ self.matrix @ np.linalg.inv(norm_real)
        return Camera(P)

    def denormalized(self, norm_image: np.ndarray, norm_real: np.ndarray) -> Camera:
        return Camera(denormalize_matrix(self.matrix, norm_image, norm_real))


def denormalize_matrix(matrix: np.ndarray, norm_image: np.ndarray, norm_real: np.ndarray) -> np.ndarray:
    """
    Map a camera matrix estimated on normalized points back to the original frames:
    inv(Nimg) @ P @ Nreal.
    """
    P = np.asarray(matrix, dtype=np.float64).reshape(3, 4)
    return np.linalg.solve(np.asarray(norm_image, dtype=np.float64), P) @ np.asarray(norm_real, dtype=np.float64)
