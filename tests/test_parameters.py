from __future__ import annotations

import pytest

from stereocalib.calibration.calibrate import CALIBRATION_PARAMETERS, CalibrationSettings
from stereocalib.distortion.corrector import DISTORTION_PARAMETERS
from stereocalib.parameters import (
    ParameterValidationError,
    bool_parameter,
    choice_parameter,
    describe_parameters,
    float_parameter,
    int_parameter,
    parse_assignments,
    resolve_parameters,
)


def test_parse_values_from_strings():
    assert bool_parameter("Flag", "flag", False).parse("yes") is True
    assert bool_parameter("Flag", "flag", True).parse("0") is False
    assert int_parameter("Count", "count", 3, 1, 10).parse("7") == 7
    assert int_parameter("Count", "count", 3, 1, 10).parse(4.0) == 4
    assert float_parameter("Step", "step", 0.5, 0.0, 1.0).parse("0.25") == 0.25
    assert choice_parameter("Mode", "mode", "a", ["a", "b"]).parse("B") == "b"


@pytest.mark.parametrize(
    "param, raw",
    [
        (bool_parameter("Flag", "flag", False), "maybe"),
        (int_parameter("Count", "count", 3, 1, 10), "2.5"),
        (int_parameter("Count", "count", 3, 1, 10), 11),
        (float_parameter("Step", "step", 0.5, 0.0, 1.0), "-0.1"),
        (float_parameter("Step", "step", 0.5, 0.0, 1.0), "nan"),
        (float_parameter("Step", "step", 0.5, 0.0, 1.0), "abc"),
        (float_parameter("Step", "step", 0.5, 0.0, 1.0), None),
        (choice_parameter("Mode", "mode", "a", ["a", "b"]), "c"),
    ],
)
def test_invalid_values_are_rejected(param, raw):
    with pytest.raises(ParameterValidationError):
        param.parse(raw)


def test_optional_parameter_accepts_none():
    p = float_parameter("Center", "center_x", None, -1.0, 1.0, optional=True)
    assert p.parse(None) is None
    assert p.parse("none") is None
    assert p.describe()["optional"] is True


def test_resolve_parameters_applies_defaults_and_rejects_unknown_keys():
    params = (int_parameter("Count", "count", 3, 1, 10), bool_parameter("Flag", "flag", False))
    assert resolve_parameters(params) == {"count": 3, "flag": False}
    assert resolve_parameters(params, {"flag": "true"}) == {"count": 3, "flag": True}
    with pytest.raises(ParameterValidationError):
        resolve_parameters(params, {"cout": 4})


def test_describe_parameters_lists_bounds():
    described = describe_parameters((int_parameter("Count", "count", 3, 1, 10),))
    assert described == [{"name": "Count", "key": "count", "kind": "int", "default": 3, "min": 1, "max": 10}]


def test_parse_assignments():
    assert parse_assignments(["a=1", " b = x=y "]) == {"a": "1", "b": "x=y"}
    with pytest.raises(ParameterValidationError):
        parse_assignments(["novalue"])
    with pytest.raises(ParameterValidationError):
        parse_assignments(["=1"])


def test_published_tables_have_unique_keys_and_valid_defaults():
    for table in (CALIBRATION_PARAMETERS, DISTORTION_PARAMETERS):
        keys = [p.key for p in table]
        assert len(keys) == len(set(keys))
        for p in table:
            if p.default is not None:
                assert p.parse(p.default) == p.default


def test_calibration_table_matches_settings():
    settings = CalibrationSettings.from_parameters()
    assert settings == CalibrationSettings()
    assert set(settings.as_parameters()) == {p.key for p in CALIBRATION_PARAMETERS}


def test_none_is_a_regular_choice_for_required_parameters():
    damping = next(p for p in CALIBRATION_PARAMETERS if p.key == "damping")
    assert damping.parse("none") == "none"
    assert CalibrationSettings.from_parameters({"damping": "none"}).damping == "none"
