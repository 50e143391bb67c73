import numpy as np
import pytest

from stereocalib.core.linear_solver import solve_homogeneous, solve_least_squares


def test_least_squares_matches_direct_solve():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(4, 4)) + 4.0 * np.eye(4)
    b = rng.normal(size=4)
    x = solve_least_squares(A, b)
    assert np.allclose(x, np.linalg.solve(A, b), atol=1e-12)


def test_least_squares_rank_deficient_gives_minimum_norm():
    A = np.array([[1.0, 1.0], [1.0, 1.0]])
    b = np.array([2.0, 2.0])
    x = solve_least_squares(A, b)
    assert np.allclose(x, [1.0, 1.0], atol=1e-12)


def test_least_squares_zero_matrix():
    x = solve_least_squares(np.zeros((3, 2)), np.ones(3))
    assert np.array_equal(x, np.zeros(2))
    x = solve_least_squares(np.array([[np.inf, 0.0], [0.0, 1.0]]), np.ones(2))
    assert np.array_equal(x, np.zeros(2))


def test_least_squares_rejects_shape_mismatch():
    with pytest.raises(ValueError):
        solve_least_squares(np.eye(3), np.ones(2))


def test_homogeneous_returns_unit_null_vector():
    rng = np.random.default_rng(1)
    v = rng.normal(size=4)
    v /= np.linalg.norm(v)
    A = rng.normal(size=(7, 4))
    A -= np.outer(A @ v, v)
    x = solve_homogeneous(A)
    assert abs(np.linalg.norm(x) - 1.0) < 1e-12
    assert abs(abs(x @ v) - 1.0) < 1e-10


def test_homogeneous_underdetermined_rows():
    A = np.array([[1.0, 0.0, 0.0]])
    x = solve_homogeneous(A)
    assert np.linalg.norm(A @ x) < 1e-12
    assert abs(np.linalg.norm(x) - 1.0) < 1e-12
