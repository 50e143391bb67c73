from __future__ import annotations

from typing import Callable

import numpy as np

LinearSolver = Callable[[np.ndarray, np.ndarray], np.ndarray]


def solve_least_squares(A: np.ndarray, b: np.ndarray, *, rcond: float | None = None) -> np.ndarray:
    """
    Solve `A x = b` in the least-squares sense with `numpy.linalg.lstsq`.

    Rank-deficient systems get the minimum-norm solution; an all-zero or non-finite `A` gives zeros.
    """
    A = np.asarray(A, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if A.ndim != 2:
        raise ValueError("A must be a 2D matrix")
    if b.shape[0] != A.shape[0]:
        raise ValueError("b length must match the number of rows of A")

    if A.size == 0 or not np.any(A) or not np.all(np.isfinite(A)):
        return np.zeros((A.shape[1],), dtype=np.float64)
    return np.linalg.lstsq(A, b, rcond=rcond)[0]


def solve_homogeneous(A: np.ndarray) -> np.ndarray:
    """
    Unit-norm minimiser of ||A x|| (the homogeneous system A x = 0 with ||x|| = 1).
    """
    A = np.asarray(A, dtype=np.float64)
    if A.ndim != 2 or A.shape[0] == 0 or A.shape[1] == 0:
        raise ValueError("A must be a non-empty 2D matrix")
    if A.shape[0] < A.shape[1]:
        # pad so the full right singular basis is returned
        A = np.vstack([A, np.zeros((A.shape[1] - A.shape[0], A.shape[1]), dtype=np.float64)])
    _u, _s, vt = np.linalg.svd(A, full_matrices=False)
    x = vt[-1]
    return x / np.linalg.norm(x)
