from __future__ import annotations

import argparse
import json
from pathlib import Path

from stereocalib.api.model_io import (
    load_calibration_data,
    load_distortion_model,
    load_lines,
    load_points,
    save_camera,
    save_distortion_model,
    save_points,
)
from stereocalib.calibration.calibrate import CALIBRATION_PARAMETERS, CalibrationSettings, CameraCalibrator
from stereocalib.distortion.corrector import (
    DISTORTION_PARAMETERS,
    MODELS,
    RadialDistortionCorrector,
    corrector_from_parameters,
)
from stereocalib.logging_utils import setup_logging
from stereocalib.parameters import describe_parameters, parse_assignments


def run_calibrate(data_path: Path, out: Path, assignments: list[str]) -> Path:
    settings = CalibrationSettings.from_parameters(parse_assignments(assignments))
    points, grids = load_calibration_data(data_path)
    result = CameraCalibrator(settings).calibrate(points, grids)
    return save_camera(out, result.camera, result)


def run_fit_distortion(
    lines_path: Path,
    out: Path,
    assignments: list[str],
    *,
    model: str | None = None,
    center: tuple[float, float] | None = None,
) -> Path:
    lines, image_size = load_lines(lines_path)
    values: dict[str, object] = dict(parse_assignments(assignments))
    if model is not None:
        values["model"] = model
    if center is not None:
        values["center_x"], values["center_y"] = center
    corrector = corrector_from_parameters(image_size, values)
    fit = corrector.find_model_parameters(lines)
    diagnostics = {
        "base_residual": fit.base_residual,
        "residual": fit.residual,
        "target_residual": fit.target_residual,
        "iterations": fit.iterations,
        "directions": [d.name for d in fit.directions],
    }
    return save_distortion_model(out, corrector.model, image_size, diagnostics)


def run_correct_points(model_path: Path, points_path: Path, out: Path) -> Path:
    model, image_size = load_distortion_model(model_path)
    corrector = RadialDistortionCorrector(model, image_size)
    return save_points(out, corrector.correct_points(load_points(points_path)))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="stereocalib")
    parser.add_argument("--debug", action="store_true", help="Verbose (DEBUG) logging, including LM iterations.")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write the log to this file.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cal = sub.add_parser("calibrate", help="Estimate a camera matrix from grid correspondences (JSON).")
    cal.add_argument("data", type=Path, help="stereocalib.calibration_data.v0 JSON file.")
    cal.add_argument("--out", type=Path, required=True, help="Output camera JSON.")
    cal.add_argument(
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a calibration parameter (see `stereocalib parameters calibration`).",
    )

    fit = sub.add_parser("fit-distortion", help="Fit a radial distortion model to straight-line samples.")
    fit.add_argument("lines", type=Path, help="stereocalib.distortion_lines.v0 JSON file.")
    fit.add_argument("--out", type=Path, required=True, help="Output distortion model JSON.")
    fit.add_argument("--model", choices=sorted(MODELS), default=None, help="Distortion model (default: rational3).")
    fit.add_argument(
        "--center",
        type=float,
        nargs=2,
        metavar=("X", "Y"),
        default=None,
        help="Initial distortion center in pixels (default: image center).",
    )
    fit.add_argument(
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a distortion parameter (see `stereocalib parameters distortion`).",
    )

    corr = sub.add_parser("correct-points", help="Undistort points with a fitted distortion model.")
    corr.add_argument("model", type=Path)
    corr.add_argument("points", type=Path, help="stereocalib.points.v0 JSON file.")
    corr.add_argument("--out", type=Path, required=True)

    par = sub.add_parser("parameters", help="Print the tunable parameters of an algorithm as JSON.")
    par.add_argument("algorithm", choices=["calibration", "distortion"])

    args = parser.parse_args(argv)
    setup_logging(args.debug, args.log_file)

    if args.cmd == "calibrate":
        out = run_calibrate(args.data, args.out, args.assignments)
        print(f"Wrote {out}")
        return 0

    if args.cmd == "fit-distortion":
        center = tuple(args.center) if args.center is not None else None
        out = run_fit_distortion(args.lines, args.out, args.assignments, model=args.model, center=center)
        print(f"Wrote {out}")
        return 0

    if args.cmd == "correct-points":
        out = run_correct_points(args.model, args.points, args.out)
        print(f"Wrote {out}")
        return 0

    if args.cmd == "parameters":
        table = CALIBRATION_PARAMETERS if args.algorithm == "calibration" else DISTORTION_PARAMETERS
        print(json.dumps(describe_parameters(table), indent=2))
        return 0

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())
