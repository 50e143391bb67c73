import numpy as np
import pytest

from stereocalib.core.geometry import (
    Line2D,
    LineOrientation,
    Quadric,
    apply_homogeneous,
    normalization_matrix,
)


def test_line_through_points_and_orientation():
    h = Line2D.through((0.0, 2.0), (5.0, 2.0))
    v = Line2D.through((1.0, -1.0), (1.0, 3.0))
    d = Line2D.through((0.0, 0.0), (1.0, 1.0))
    assert h.orientation is LineOrientation.HORIZONTAL
    assert v.orientation is LineOrientation.VERTICAL
    assert d.orientation is LineOrientation.OTHER
    assert Line2D(0.0, 0.0, 1.0).orientation is LineOrientation.NONE
    assert np.allclose(h.signed_distance([[3.0, 2.0], [3.0, 5.0]]) ** 2, [0.0, 9.0])


def test_line_intersection():
    a = Line2D.through((0.0, 0.0), (2.0, 2.0))
    b = Line2D.through((0.0, 2.0), (2.0, 0.0))
    p = a.intersection(b)
    assert p is not None
    assert np.allclose(p, [1.0, 1.0])
    assert a.intersection(Line2D.through((0.0, 1.0), (1.0, 2.0))) is None


def test_line_through_same_point_rejected():
    with pytest.raises(ValueError):
        Line2D.through((1.0, 1.0), (1.0, 1.0))


def _circle(n=12, center=(1.0, -1.0), radius=2.0):
    t = np.linspace(0.0, 2.0 * np.pi, n, endpoint=False)
    return np.stack([center[0] + radius * np.cos(t), center[1] + radius * np.sin(t)], axis=1)


def test_quadric_fit_recovers_circle():
    q = Quadric.fit(_circle())
    expected = np.array([1.0, -2.0, 0.0, 2.0, 1.0, -2.0])
    c = q.coeffs / q.coeffs[0]
    assert np.allclose(c, expected, atol=1e-9)


def test_quadric_through_point_contains_anchor_and_tangent_is_perpendicular_to_radius():
    rng = np.random.default_rng(0)
    pts = _circle(20) + rng.normal(0.0, 1e-3, size=(20, 2))
    q = Quadric.fit_through_point(pts, 4)
    assert abs(q.evaluate(pts[4])[0]) < 1e-12 * np.abs(q.coeffs).max()

    exact = _circle(20)
    q = Quadric.fit_through_point(exact, 3)
    tangent = q.tangent_at(exact[3])
    normal = np.array([tangent.a, tangent.b])
    radius = exact[3] - np.array([1.0, -1.0])
    cos = abs(normal @ radius) / (np.linalg.norm(normal) * np.linalg.norm(radius))
    assert cos == pytest.approx(1.0, abs=1e-9)
    assert tangent.signed_distance(exact[3])[0] == pytest.approx(0.0, abs=1e-12)
    assert q.curvature(exact[3]) == pytest.approx(0.5, rel=1e-6)


def test_quadric_needs_five_points():
    with pytest.raises(ValueError):
        Quadric.fit_through_point(_circle(4), 0)


@pytest.mark.parametrize("dim", [2, 3])
def test_normalization_matrix_mean_distance(dim):
    rng = np.random.default_rng(dim)
    pts = rng.normal(loc=300.0, scale=80.0, size=(50, dim))
    T = normalization_matrix(pts)
    n = apply_homogeneous(T, pts)
    assert np.allclose(n.mean(axis=0), 0.0, atol=1e-12)
    assert np.mean(np.linalg.norm(n, axis=1)) == pytest.approx(np.sqrt(dim))
    assert T.shape == (dim + 1, dim + 1)
