from __future__ import annotations


def test_public_api_exports() -> None:
    import stereocalib as sc

    assert hasattr(sc, "calibrate")
    assert hasattr(sc, "CameraCalibrator")
    assert hasattr(sc, "RadialDistortionCorrector")
    assert hasattr(sc, "Rational3Model")
    assert hasattr(sc, "Polynomial4Model")
    assert hasattr(sc, "LevenbergMarquardt")
    assert hasattr(sc, "load_camera")
    assert hasattr(sc, "save_distortion_model")
    assert set(sc.__all__) <= set(dir(sc))
