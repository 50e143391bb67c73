from stereocalib import parameters
from stereocalib.api import (
    load_calibration_data,
    load_camera,
    load_distortion_model,
    load_lines,
    save_camera,
    save_distortion_model,
)
from stereocalib.calibration.calibrate import (
    CALIBRATION_PARAMETERS,
    CalibrationResult,
    CalibrationSettings,
    CameraCalibrator,
    calibrate,
)
from stereocalib.calibration.camera import Camera
from stereocalib.calibration.grids import CalibrationPoint, RealGridData
from stereocalib.core.levenberg_marquardt import DampingMethod, LeastSquaresProblem, LevenbergMarquardt, LMSettings
from stereocalib.distortion.corrector import (
    DISTORTION_PARAMETERS,
    DistortionCorrectionSettings,
    RadialDistortionCorrector,
    create_model,
)
from stereocalib.distortion.model import DistortionDirection, RadialDistortionModel
from stereocalib.distortion.polynomial import Polynomial4Model
from stereocalib.distortion.rational import Rational3Model

__all__ = [
    "parameters",
    "CALIBRATION_PARAMETERS",
    "CalibrationPoint",
    "CalibrationResult",
    "CalibrationSettings",
    "Camera",
    "CameraCalibrator",
    "RealGridData",
    "calibrate",
    "DampingMethod",
    "LeastSquaresProblem",
    "LevenbergMarquardt",
    "LMSettings",
    "DISTORTION_PARAMETERS",
    "DistortionCorrectionSettings",
    "DistortionDirection",
    "RadialDistortionCorrector",
    "RadialDistortionModel",
    "Rational3Model",
    "Polynomial4Model",
    "create_model",
    "load_calibration_data",
    "load_camera",
    "save_camera",
    "load_lines",
    "load_distortion_model",
    "save_distortion_model",
]
