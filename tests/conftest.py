from __future__ import annotations

import numpy as np
import pytest

from stereocalib.calibration.camera import Camera, rotation_from_euler
from stereocalib.calibration.grids import CalibrationPoint, RealGridData


def _reference_camera() -> Camera:
    K = np.array([[520.0, 0.0, 300.0], [0.0, 520.0, 250.0], [0.0, 0.0, 1.0]])
    R = rotation_from_euler((np.pi / 30.0, -np.pi / 30.0, np.pi / 180.0))
    return Camera.from_decomposition(K, R, np.array([50.0, 50.0, 50.0]))


def _standard_grids() -> list[RealGridData]:
    min_x, max_x, min_y, max_y, z = -150.0, 250.0, -100.0, 250.0, 650.0
    dz = 0.5 * (max_x - min_x) * np.tan(np.pi / 6.0)
    grids = []
    for num, sign in enumerate((1.0, -1.0)):
        grids.append(
            RealGridData(
                7,
                7,
                top_left=(min_x, max_y, z + sign * dz),
                top_right=(max_x, max_y, z - sign * dz),
                bottom_left=(min_x, min_y, z + sign * dz),
                bottom_right=(max_x, min_y, z - sign * dz),
                num=num,
            )
        )
    return grids


@pytest.fixture
def reference_camera() -> Camera:
    return _reference_camera()


@pytest.fixture
def standard_grids() -> list[RealGridData]:
    return _standard_grids()


@pytest.fixture
def make_points():
    """
    Factory: grid correspondences for a camera, with optional Gaussian noise from an explicit rng.
    """

    def make(camera, grids, *, rng=None, image_sigma=0.0, real_sigma=0.0) -> list[CalibrationPoint]:
        points = []
        for gi, g in enumerate(grids):
            for row in range(g.rows):
                for col in range(g.columns):
                    real = g.point_at(row, col)
                    img = camera.project(real)[0]
                    if rng is not None:
                        img = img + rng.normal(0.0, image_sigma, size=2)
                        real = real + rng.normal(0.0, real_sigma, size=3)
                    points.append(CalibrationPoint(img=img, real=real, grid=gi, row=row, col=col))
        return points

    return make


def straight_lines_unit() -> list[np.ndarray]:
    t = np.linspace(0.0, 1.0, 11)
    lines = [np.stack([t, np.full_like(t, y)], axis=1) for y in (0.05, 0.15, 0.85, 0.95)]
    lines += [np.stack([np.full_like(t, x), t], axis=1) for x in (0.05, 0.95)]
    return lines


@pytest.fixture
def unit_lines() -> list[np.ndarray]:
    return straight_lines_unit()
