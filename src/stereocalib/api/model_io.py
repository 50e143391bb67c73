from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from stereocalib.calibration.calibrate import CalibrationResult
from stereocalib.calibration.camera import Camera
from stereocalib.calibration.grids import CalibrationPoint, RealGridData
from stereocalib.distortion.corrector import MODELS
from stereocalib.distortion.model import RadialDistortionModel
from stereocalib.distortion.rational import Rational3Model

CALIBRATION_DATA_SCHEMA = "stereocalib.calibration_data.v0"
CAMERA_SCHEMA = "stereocalib.camera.v0"
LINES_SCHEMA = "stereocalib.distortion_lines.v0"
DISTORTION_MODEL_SCHEMA = "stereocalib.distortion_model.v0"
POINTS_SCHEMA = "stereocalib.points.v0"


class DataValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise DataValidationError(msg)


def _read_json(path: Path, schema: str) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), "top-level JSON value must be an object")
    _require(data.get("schema_version") == schema, f"schema_version must be {schema}")
    return data


def _write_json(path: Path, data: dict[str, Any]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    return path


def _floats(x: Any, n: int, what: str) -> np.ndarray:
    _require(isinstance(x, (list, tuple)) and len(x) == n, f"{what} must be a list of {n} numbers")
    try:
        v = np.asarray([float(c) for c in x], dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise DataValidationError(f"{what} must be a list of {n} numbers") from e
    _require(bool(np.all(np.isfinite(v))), f"{what} has non-finite values")
    return v


def _matrix(x: Any, shape: tuple[int, int], what: str) -> np.ndarray:
    _require(isinstance(x, (list, tuple)) and len(x) == shape[0], f"{what} must have {shape[0]} rows")
    return np.stack([_floats(row, shape[1], f"{what} row") for row in x], axis=0)


def _grid_to_json(g: RealGridData) -> dict[str, Any]:
    return {
        "rows": g.rows,
        "columns": g.columns,
        "top_left": g.top_left.tolist(),
        "top_right": g.top_right.tolist(),
        "bottom_left": g.bottom_left.tolist(),
        "bottom_right": g.bottom_right.tolist(),
    }


def parse_calibration_data(data: dict[str, Any]) -> tuple[list[CalibrationPoint], list[RealGridData]]:
    _require(data.get("schema_version") == CALIBRATION_DATA_SCHEMA, f"schema_version must be {CALIBRATION_DATA_SCHEMA}")
    grids_raw = data.get("grids")
    points_raw = data.get("points")
    _require(isinstance(grids_raw, list) and len(grids_raw) > 0, "grids must be a non-empty list")
    _require(isinstance(points_raw, list) and len(points_raw) > 0, "points must be a non-empty list")

    grids = []
    for i, g in enumerate(grids_raw):
        _require(isinstance(g, dict), f"grids[{i}] must be an object")
        rows, cols = g.get("rows"), g.get("columns")
        _require(isinstance(rows, int) and rows >= 2, f"grids[{i}].rows must be an integer >= 2")
        _require(isinstance(cols, int) and cols >= 2, f"grids[{i}].columns must be an integer >= 2")
        grids.append(
            RealGridData(
                rows,
                cols,
                _floats(g.get("top_left"), 3, f"grids[{i}].top_left"),
                _floats(g.get("top_right"), 3, f"grids[{i}].top_right"),
                _floats(g.get("bottom_left"), 3, f"grids[{i}].bottom_left"),
                _floats(g.get("bottom_right"), 3, f"grids[{i}].bottom_right"),
                num=i,
            )
        )

    points = []
    for i, p in enumerate(points_raw):
        _require(isinstance(p, dict), f"points[{i}] must be an object")
        grid, row, col = p.get("grid", 0), p.get("row"), p.get("col")
        _require(isinstance(grid, int) and 0 <= grid < len(grids), f"points[{i}].grid must reference an existing grid")
        g = grids[grid]
        _require(isinstance(row, int) and 0 <= row < g.rows, f"points[{i}].row out of range")
        _require(isinstance(col, int) and 0 <= col < g.columns, f"points[{i}].col out of range")
        img = _floats(p.get("img"), 2, f"points[{i}].img")
        real = _floats(p["real"], 3, f"points[{i}].real") if p.get("real") is not None else g.point_at(row, col)
        points.append(CalibrationPoint(img=img, real=real, grid=grid, row=row, col=col))
    return points, grids


def load_calibration_data(path: Path) -> tuple[list[CalibrationPoint], list[RealGridData]]:
    return parse_calibration_data(_read_json(path, CALIBRATION_DATA_SCHEMA))


def save_calibration_data(path: Path, points: list[CalibrationPoint], grids: list[RealGridData]) -> Path:
    data = {
        "schema_version": CALIBRATION_DATA_SCHEMA,
        "grids": [_grid_to_json(g) for g in grids],
        "points": [
            {"img": p.img.tolist(), "real": p.real.tolist(), "grid": p.grid, "row": p.row, "col": p.col} for p in points
        ],
    }
    return _write_json(path, data)


def _jsonable(x: Any) -> Any:
    if isinstance(x, dict):
        return {str(k): _jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_jsonable(v) for v in x]
    if isinstance(x, np.ndarray):
        return x.tolist()
    if isinstance(x, (np.floating, np.integer, np.bool_)):
        return x.item()
    return x


def save_camera(path: Path, camera: Camera, result: CalibrationResult | None = None) -> Path:
    if not camera.is_decomposed:
        camera.decompose()
    data: dict[str, Any] = {
        "schema_version": CAMERA_SCHEMA,
        "matrix": camera.matrix.tolist(),
        "intrinsic": camera.intrinsic.tolist(),
        "rotation": camera.rotation.tolist(),
        "translation": camera.translation.tolist(),
        "center": camera.center.tolist(),
    }
    if result is not None:
        data["diagnostics"] = _jsonable(result.diagnostics)
        data["grids"] = [_grid_to_json(g) for g in result.grids]
        if result.estimated_grids is not None:
            data["estimated_grids"] = [_grid_to_json(g) for g in result.estimated_grids]
    return _write_json(path, data)


def load_camera(path: Path) -> Camera:
    data = _read_json(path, CAMERA_SCHEMA)
    camera = Camera(_matrix(data.get("matrix"), (3, 4), "matrix"))
    return camera.decompose()


def load_lines(path: Path) -> tuple[list[np.ndarray], tuple[int, int]]:
    data = _read_json(path, LINES_SCHEMA)
    image = data.get("image", {})
    w, h = image.get("width_px"), image.get("height_px")
    _require(isinstance(w, int) and isinstance(h, int) and w > 0 and h > 0, "image.width_px/height_px must be integers > 0")
    lines_raw = data.get("lines")
    _require(isinstance(lines_raw, list) and len(lines_raw) > 0, "lines must be a non-empty list")
    lines = []
    for i, line in enumerate(lines_raw):
        _require(isinstance(line, list) and len(line) >= 5, f"lines[{i}] must have >= 5 points")
        lines.append(np.stack([_floats(p, 2, f"lines[{i}] point") for p in line], axis=0))
    return lines, (w, h)


def save_lines(path: Path, lines: list[np.ndarray], image_size: tuple[int, int]) -> Path:
    data = {
        "schema_version": LINES_SCHEMA,
        "image": {"width_px": int(image_size[0]), "height_px": int(image_size[1])},
        "lines": [np.asarray(line, dtype=np.float64).reshape(-1, 2).tolist() for line in lines],
    }
    return _write_json(path, data)


def save_distortion_model(
    path: Path,
    model: RadialDistortionModel,
    image_size: tuple[int, int],
    diagnostics: dict[str, Any] | None = None,
) -> Path:
    data: dict[str, Any] = {
        "schema_version": DISTORTION_MODEL_SCHEMA,
        "model": model.name,
        "parameters": model.parameters.tolist(),
        "initial_center": model.initial_center.tolist(),
        "aspect": float(model.aspect),
        "image_scale": float(model.image_scale),
        "image": {"width_px": int(image_size[0]), "height_px": int(image_size[1])},
    }
    if isinstance(model, Rational3Model):
        data["initial_method"] = model.initial_method.value
    if diagnostics is not None:
        data["diagnostics"] = _jsonable(diagnostics)
    return _write_json(path, data)


def load_distortion_model(path: Path) -> tuple[RadialDistortionModel, tuple[int, int]]:
    data = _read_json(path, DISTORTION_MODEL_SCHEMA)
    name = data.get("model")
    _require(name in MODELS, f"model must be one of {'|'.join(MODELS)}")
    cls = MODELS[name]
    params = data.get("parameters")
    n = len(cls.coefficient_names) + 2
    params = _floats(params, n, "parameters")
    kwargs: dict[str, Any] = {
        "center": _floats(data.get("initial_center", params[-2:].tolist()), 2, "initial_center"),
        "aspect": float(data.get("aspect", 1.0)),
    }
    if cls is Rational3Model and "initial_method" in data:
        kwargs["initial_method"] = data["initial_method"]
    model = cls(**kwargs)
    model.parameters = params
    scale = float(data.get("image_scale", 1.0))
    _require(scale > 0.0, "image_scale must be > 0")
    model.image_scale = scale
    image = data.get("image", {})
    w, h = image.get("width_px"), image.get("height_px")
    _require(isinstance(w, int) and isinstance(h, int) and w > 0 and h > 0, "image.width_px/height_px must be integers > 0")
    return model, (w, h)


def load_points(path: Path) -> np.ndarray:
    data = _read_json(path, POINTS_SCHEMA)
    raw = data.get("points")
    _require(isinstance(raw, list), "points must be a list")
    if not raw:
        return np.zeros((0, 2), dtype=np.float64)
    return np.stack([_floats(p, 2, "point") for p in raw], axis=0)


def save_points(path: Path, points: np.ndarray) -> Path:
    data = {"schema_version": POINTS_SCHEMA, "points": np.asarray(points, dtype=np.float64).reshape(-1, 2).tolist()}
    return _write_json(path, data)
