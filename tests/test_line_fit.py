from __future__ import annotations

import numpy as np
import pytest

from stereocalib.core.geometry import Line2D, LineOrientation
from stereocalib.distortion.line_fit import LineFitMode, LineFitProblem, least_squares_line
from stereocalib.distortion.model import DistortionDirection, direction_from_line
from stereocalib.distortion.rational import Rational3Model


def _distorted(lines, coeffs, center=(0.5, 0.5)):
    true_model = Rational3Model(coeffs, center=center)
    return [true_model.distort(line) for line in lines]


def test_least_squares_lines_for_horizontal_diagonal_and_vertical_sets():
    t = np.arange(10) * 0.1
    lines = [
        np.stack([t, np.full_like(t, 0.5)], axis=1),
        np.stack([t, t], axis=1),
        np.stack([np.full_like(t, -1.0), t], axis=1),
    ]
    problem = LineFitProblem(Rational3Model(), lines, find_initial_parameters=False)
    expected = np.array([[0.0, 1.0, -0.5], [-1.0, 1.0, 0.0], [1.0, 0.0, 1.0]])
    assert np.linalg.norm(problem.least_squares_line_coeffs - expected) < 1e-6
    assert problem.orientations == [LineOrientation.HORIZONTAL, LineOrientation.OTHER, LineOrientation.VERTICAL]


def test_least_squares_line_of_tilted_points():
    x = np.linspace(-2.0, 3.0, 8)
    coeffs, orientation = least_squares_line(np.stack([x, 0.5 * x + 1.0], axis=1))
    line = Line2D.from_coeffs(coeffs)
    assert orientation is LineOrientation.OTHER
    assert np.allclose(line.signed_distance(np.array([[0.0, 1.0], [2.0, 2.0]])), 0.0, atol=1e-12)


def test_short_lines_are_rejected():
    with pytest.raises(ValueError):
        LineFitProblem(Rational3Model(), [np.zeros((4, 2))])
    with pytest.raises(ValueError):
        LineFitProblem(Rational3Model(), [])


def test_error_vanishes_at_true_parameters(unit_lines):
    coeffs = (0.2, 0.0, 0.0)
    lines = _distorted(unit_lines, coeffs)
    model = Rational3Model(coeffs, center=(0.5, 0.5))
    problem = LineFitProblem(model, lines, find_initial_parameters=False)
    assert problem.error_size == sum(line.shape[0] for line in lines)

    at_truth = problem.compute_error(np.array([0.2, 0.0, 0.0, 0.5, 0.5]))
    assert np.max(np.abs(at_truth)) < 1e-9

    at_zero = problem.compute_error(np.array([0.0, 0.0, 0.0, 0.5, 0.5]))
    assert np.linalg.norm(at_zero) > 1e-4
    assert np.array_equal(problem.measurements(), np.zeros(problem.error_size))


def test_basic_mode_measures_distance_to_least_squares_line(unit_lines):
    lines = _distorted(unit_lines, (0.2, 0.0, 0.0))
    problem = LineFitProblem(Rational3Model(center=(0.5, 0.5)), lines, find_initial_parameters=False, mode="basic")
    assert problem.mode is LineFitMode.BASIC

    at_truth = problem.compute_error(np.array([0.2, 0.0, 0.0, 0.5, 0.5]))
    assert np.max(np.abs(at_truth)) < 1e-9

    at_zero = problem.compute_error(np.array([0.0, 0.0, 0.0, 0.5, 0.5]))
    offset = 0
    for line, coeffs in zip(lines, problem.least_squares_line_coeffs):
        expected = Line2D.from_coeffs(coeffs).signed_distance(line)
        assert np.allclose(at_zero[offset : offset + len(line)], expected)
        offset += len(line)
    assert np.linalg.norm(at_zero) > 1e-4

    with pytest.raises(ValueError):
        LineFitProblem(Rational3Model(), lines, mode="conic")


@pytest.mark.parametrize(
    "k1, expected",
    [
        (0.2, DistortionDirection.FROM_CENTER),
        (-0.2, DistortionDirection.TO_CENTER),
        (0.0, DistortionDirection.NONE),
    ],
)
def test_distortion_direction_of_lines(unit_lines, k1, expected):
    lines = _distorted(unit_lines, (k1, 0.0, 0.0))
    problem = LineFitProblem(Rational3Model(center=(0.5, 0.5)), lines, find_initial_parameters=False)
    assert problem.base_directions == [expected] * len(lines)

    center = np.array([0.5, 0.5])
    for line, fit in zip(lines, problem.fit_points):
        anchor = line[fit]
        along = line[-1] - line[0]
        tangent = Line2D.through(anchor, anchor + along / np.linalg.norm(along))
        assert direction_from_line(line, tangent, center) is expected


def test_initial_parameters_from_quadrics_follow_distortion_sign(unit_lines):
    cushion = LineFitProblem(Rational3Model(center=(0.5, 0.5)), _distorted(unit_lines, (0.2, 0.0, 0.0)))
    assert cushion.model.coefficients[0] > 0.0
    barrel = LineFitProblem(Rational3Model(center=(0.5, 0.5)), _distorted(unit_lines, (-0.2, 0.0, 0.0)))
    assert barrel.model.coefficients[0] < 0.0
    assert np.array_equal(barrel.model.distortion_center, [0.5, 0.5])


def test_fit_point_is_closest_to_center(unit_lines):
    problem = LineFitProblem(Rational3Model(center=(0.5, 0.5)), unit_lines, find_initial_parameters=False)
    assert problem.fit_points == [5] * len(unit_lines)
