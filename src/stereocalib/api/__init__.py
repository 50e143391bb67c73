from stereocalib.api.model_io import (
    DataValidationError,
    load_calibration_data,
    load_camera,
    load_distortion_model,
    load_lines,
    load_points,
    save_calibration_data,
    save_camera,
    save_distortion_model,
    save_lines,
    save_points,
)

__all__ = [
    "DataValidationError",
    "load_calibration_data",
    "save_calibration_data",
    "load_camera",
    "save_camera",
    "load_lines",
    "save_lines",
    "load_distortion_model",
    "save_distortion_model",
    "load_points",
    "save_points",
]
